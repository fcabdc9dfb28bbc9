"""Numeric anomaly scoring over a device feature vector.

A rule-based stand-in for a trained model: the device signals are
projected onto a fixed feature vector and a small set of additive
components is read off it. The score is bounded to [0, 1].
"""

from __future__ import annotations

import logging

import numpy as np

from fingerprint_risk.detector.models import AnomalyResult, DetectionThresholds
from fingerprint_risk.ingestor.models import DeviceSignals

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLDS = DetectionThresholds()

AUTOMATION_FEATURES = ("webdriver", "phantom", "selenium", "headless", "automation")
CAPABILITY_FEATURES = ("webgl", "local_storage", "session_storage")
FEATURE_NAMES: tuple[str, ...] = (
    "hardware_concurrency",
    "device_memory",
    "touch_support",
    "mobile",
    "screen_area",
    *AUTOMATION_FEATURES,
    *CAPABILITY_FEATURES,
)

MISSING_HARDWARE_WEIGHT = 0.3
AUTOMATION_FLAG_WEIGHT = 0.2
SMALL_SCREEN_WEIGHT = 0.2
MISSING_CAPABILITY_WEIGHT = 0.1
SMALL_SCREEN_AREA = 800 * 600


def build_feature_vector(signals: DeviceSignals) -> np.ndarray:
    """Project device signals onto the fixed feature order.

    Args:
        signals: Normalized device signals.

    Returns:
        Float vector aligned with FEATURE_NAMES.
    """
    caps = signals.capabilities
    values = [
        signals.hardware_concurrency,
        signals.device_memory,
        signals.touch_support,
        signals.mobile,
        signals.screen_area,
        *(signals.automation_flags[name] for name in AUTOMATION_FEATURES),
        caps.webgl or caps.webgl2,
        caps.local_storage,
        caps.session_storage,
    ]
    return np.array(values, dtype=float)


def score_anomaly(
    signals: DeviceSignals,
    thresholds: DetectionThresholds = DEFAULT_THRESHOLDS,
) -> AnomalyResult:
    """Compute the anomaly score for one device.

    Args:
        signals: Normalized device signals.
        thresholds: Policy thresholds.

    Returns:
        AnomalyResult with score, flag, features and explanation.
    """
    vector = build_feature_vector(signals)
    features = dict(zip(FEATURE_NAMES, vector.tolist()))
    index = {name: i for i, name in enumerate(FEATURE_NAMES)}

    score = 0.0
    explanation: list[str] = []

    if vector[index["hardware_concurrency"]] == 0 and vector[index["device_memory"]] == 0:
        score += MISSING_HARDWARE_WEIGHT
        explanation.append("missing hardware information")

    automation = vector[[index[name] for name in AUTOMATION_FEATURES]]
    flag_count = int(np.count_nonzero(automation))
    if flag_count:
        score += flag_count * AUTOMATION_FLAG_WEIGHT
        explanation.append(f"{flag_count} automation flags")

    area = vector[index["screen_area"]]
    if 0 < area < SMALL_SCREEN_AREA:
        score += SMALL_SCREEN_WEIGHT
        explanation.append("unusually small screen")

    # An unreported capability map reads as every capability missing
    capabilities = vector[[index[name] for name in CAPABILITY_FEATURES]]
    missing = int(np.count_nonzero(capabilities == 0))
    if missing > 1:
        score += missing * MISSING_CAPABILITY_WEIGHT
        explanation.append(f"{missing} missing capabilities")

    score = round(min(score, 1.0), 4)
    return AnomalyResult(
        anomaly_score=score,
        is_anomaly=score > thresholds.anomaly_threshold,
        features=features,
        explanation=", ".join(explanation) if explanation else "no anomalies detected",
    )
