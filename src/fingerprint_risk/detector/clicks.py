"""Click and visit behavior detection."""

from __future__ import annotations

from datetime import timedelta

from fingerprint_risk.detector.models import (
    ActivitySnapshot,
    DetectionResult,
    DetectionThresholds,
    Finding,
)
from fingerprint_risk.detector.velocity import actions_since, longest_short_gap_run

DETECTOR_NAME = "click_behavior"
DEFAULT_THRESHOLDS = DetectionThresholds()


def detect_click_fraud(
    snapshot: ActivitySnapshot,
    thresholds: DetectionThresholds = DEFAULT_THRESHOLDS,
) -> DetectionResult:
    """Score visit volume, click cadence and referrer absence.

    Args:
        snapshot: Activity snapshot of the identity.
        thresholds: Policy thresholds.

    Returns:
        DetectionResult with click/visit findings.
    """
    since = snapshot.taken_at - timedelta(hours=thresholds.visit_window_hours)
    visits = actions_since(snapshot.visits, since)
    total = len(visits)
    if total == 0:
        return DetectionResult(detector=DETECTOR_NAME)

    findings: list[Finding] = []

    if total > thresholds.high_visit_volume:
        findings.append(
            Finding(
                pattern="high_visit_volume",
                reason=f"high visit volume: {total} visits in the last 24h",
                weight=3,
                severity=3,
            )
        )

    run = longest_short_gap_run(
        [v.occurred_at for v in visits], thresholds.rapid_click_gap_seconds
    )
    if run >= thresholds.rapid_click_min_run:
        findings.append(
            Finding(
                pattern="rapid_clicking",
                reason=(
                    f"rapid clicking: {run} consecutive clicks less than "
                    f"{thresholds.rapid_click_gap_seconds:.0f}s apart"
                ),
                weight=2,
                severity=2,
            )
        )

    direct = sum(1 for v in visits if v.is_direct)
    if direct / total > thresholds.direct_access_ratio:
        findings.append(
            Finding(
                pattern="direct_access",
                reason=f"direct access: {round(direct / total * 100)}% of visits without referrer",
                weight=2,
                severity=2,
            )
        )

    return DetectionResult(detector=DETECTOR_NAME, findings=tuple(findings))
