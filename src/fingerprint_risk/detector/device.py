"""Device and browser consistency checks."""

from __future__ import annotations

import re

from fingerprint_risk.detector.models import (
    ActivitySnapshot,
    DetectionResult,
    DetectionThresholds,
    Finding,
)

DETECTOR_NAME = "device"
DEFAULT_THRESHOLDS = DetectionThresholds()

MOBILE_UA_PATTERN = re.compile(r"mobile|android", re.IGNORECASE)


def detect_device_anomalies(
    snapshot: ActivitySnapshot,
    thresholds: DetectionThresholds = DEFAULT_THRESHOLDS,
) -> DetectionResult:
    """Flag signal combinations no genuine device produces.

    Capability checks only apply when the client reported a capability
    map; an absent map is not evidence of missing features.
    """
    signals = snapshot.signals
    findings: list[Finding] = []

    if signals.mobile and "win" in signals.platform.lower():
        findings.append(
            Finding(
                pattern="mobile_desktop_mismatch",
                reason=f"mobile/desktop mismatch: mobile device on {signals.platform} platform",
                weight=2,
                severity=2,
            )
        )

    if signals.touch_support and not MOBILE_UA_PATTERN.search(signals.user_agent):
        findings.append(
            Finding(
                pattern="touch_mismatch",
                reason="touch mismatch: touch support without a mobile user agent",
                weight=1,
                severity=1,
            )
        )

    if signals.has_resolution and (
        signals.screen_width < thresholds.min_screen_width
        or signals.screen_height < thresholds.min_screen_height
    ):
        findings.append(
            Finding(
                pattern="unusual_resolution",
                reason=(
                    f"unusual resolution: {signals.screen_width}x{signals.screen_height}"
                ),
                weight=1,
                severity=1,
            )
        )

    if signals.has_capabilities:
        caps = signals.capabilities
        if not caps.webgl and not caps.webgl2:
            findings.append(
                Finding(
                    pattern="no_webgl",
                    reason="no webgl: WebGL is not supported",
                    weight=1,
                    severity=1,
                )
            )
        if not caps.local_storage and not caps.session_storage:
            findings.append(
                Finding(
                    pattern="no_storage",
                    reason="no storage: neither local nor session storage is available",
                    weight=1,
                    severity=1,
                )
            )

    return DetectionResult(detector=DETECTOR_NAME, findings=tuple(findings))
