"""Detection layer - Fraud pattern detectors and risk aggregation."""

from fingerprint_risk.detector.aggregator import RiskAggregator
from fingerprint_risk.detector.anomaly import score_anomaly
from fingerprint_risk.detector.bot import anti_detect_indicators, detect_bot_signals
from fingerprint_risk.detector.clicks import detect_click_fraud
from fingerprint_risk.detector.device import detect_device_anomalies
from fingerprint_risk.detector.models import (
    ActivitySnapshot,
    AnomalyResult,
    DetectionResult,
    DetectionThresholds,
    Finding,
    FraudResult,
)
from fingerprint_risk.detector.reuse import detect_identity_reuse
from fingerprint_risk.detector.velocity import detect_velocity

__all__ = [
    "ActivitySnapshot",
    "AnomalyResult",
    "DetectionResult",
    "DetectionThresholds",
    "Finding",
    "FraudResult",
    "RiskAggregator",
    "anti_detect_indicators",
    "detect_bot_signals",
    "detect_click_fraud",
    "detect_device_anomalies",
    "detect_identity_reuse",
    "detect_velocity",
    "score_anomaly",
]
