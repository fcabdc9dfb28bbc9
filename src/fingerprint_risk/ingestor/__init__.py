"""Ingestion layer - Device signal normalization and tracked actions."""

from fingerprint_risk.ingestor.models import (
    ActionType,
    Capabilities,
    DeviceSignals,
    InvalidActionTypeError,
    TrackedAction,
    parse_action_type,
)
from fingerprint_risk.ingestor.signals import derive_signal_hash, normalize_signals

__all__ = [
    "ActionType",
    "Capabilities",
    "DeviceSignals",
    "InvalidActionTypeError",
    "TrackedAction",
    "derive_signal_hash",
    "normalize_signals",
    "parse_action_type",
]
