"""Multi-identity reuse detection.

Counts are gathered by the aggregator when it builds the snapshot; this
module only applies the policy to them.
"""

from __future__ import annotations

from fingerprint_risk.detector.models import (
    ActivitySnapshot,
    DetectionResult,
    DetectionThresholds,
    Finding,
)

DETECTOR_NAME = "reuse"
DEFAULT_THRESHOLDS = DetectionThresholds()


def detect_identity_reuse(
    snapshot: ActivitySnapshot,
    thresholds: DetectionThresholds = DEFAULT_THRESHOLDS,
) -> DetectionResult:
    """Score device signal sharing across identities.

    Args:
        snapshot: Activity snapshot carrying sibling counts.
        thresholds: Policy thresholds.

    Returns:
        DetectionResult with reuse findings.
    """
    findings: list[Finding] = []

    if snapshot.duplicate_count >= thresholds.duplicate_fingerprint_min:
        findings.append(
            Finding(
                pattern="duplicate_fingerprint",
                reason=(
                    f"duplicate fingerprint: device signal hash shared with "
                    f"{snapshot.duplicate_count} other identities"
                ),
                weight=4,
                severity=4,
            )
        )

    if snapshot.similar_count >= thresholds.similar_signature_min:
        findings.append(
            Finding(
                pattern="similar_device_signature",
                reason=(
                    f"similar device signature: sub-fingerprints shared with "
                    f"{snapshot.similar_count} other identities"
                ),
                weight=3,
                severity=3,
            )
        )

    return DetectionResult(detector=DETECTOR_NAME, findings=tuple(findings))
