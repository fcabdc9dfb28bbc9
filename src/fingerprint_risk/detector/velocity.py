"""URL creation velocity detection.

Flags identities that create short URLs faster than a human plausibly
would, either sustained over the trailing hour or in tight bursts.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime, timedelta

from fingerprint_risk.detector.models import (
    ActivitySnapshot,
    DetectionResult,
    DetectionThresholds,
    Finding,
)
from fingerprint_risk.ingestor.models import TrackedAction

logger = logging.getLogger(__name__)

DETECTOR_NAME = "velocity"
DEFAULT_THRESHOLDS = DetectionThresholds()


def actions_since(actions: Iterable[TrackedAction], since: datetime) -> list[TrackedAction]:
    """Return actions at or after ``since``, oldest first."""
    return sorted(
        (a for a in actions if a.occurred_at >= since),
        key=lambda a: a.occurred_at,
    )


def longest_short_gap_run(timestamps: list[datetime], max_gap_seconds: float) -> int:
    """Return the longest run of consecutive inter-arrival gaps under a limit.

    Args:
        timestamps: Timestamps sorted oldest first.
        max_gap_seconds: Gaps strictly below this count as short.

    Returns:
        Number of consecutive short gaps in the longest run.
    """
    longest = 0
    current = 0
    for previous, current_ts in zip(timestamps, timestamps[1:]):
        gap = (current_ts - previous).total_seconds()
        if gap < max_gap_seconds:
            current += 1
            longest = max(longest, current)
        else:
            current = 0
    return longest


def detect_velocity(
    snapshot: ActivitySnapshot,
    thresholds: DetectionThresholds = DEFAULT_THRESHOLDS,
) -> DetectionResult:
    """Score URL creation velocity over the trailing window.

    Only the highest matching tier contributes. A burst of consecutive
    creations adds a separate finding that stacks with the tier.

    Args:
        snapshot: Activity snapshot of the identity.
        thresholds: Policy thresholds.

    Returns:
        DetectionResult with velocity findings.
    """
    since = snapshot.taken_at - timedelta(minutes=thresholds.velocity_window_minutes)
    creations = actions_since(snapshot.url_creations, since)
    count = len(creations)
    findings: list[Finding] = []

    if count > thresholds.extreme_velocity:
        findings.append(
            Finding(
                pattern="extreme_velocity",
                reason=f"extreme velocity: {count} URLs created in the last hour",
                weight=4,
                severity=4,
            )
        )
    elif count > thresholds.high_velocity:
        findings.append(
            Finding(
                pattern="high_velocity",
                reason=f"high velocity: {count} URLs created in the last hour",
                weight=3,
                severity=3,
            )
        )
    elif count > thresholds.moderate_velocity:
        findings.append(
            Finding(
                pattern="moderate_velocity",
                reason=f"moderate velocity: {count} URLs created in the last hour",
                weight=2,
                severity=2,
            )
        )

    # A run of N gaps spans N + 1 creations
    run = longest_short_gap_run([a.occurred_at for a in creations], thresholds.burst_gap_seconds)
    if run > 0 and run + 1 >= thresholds.burst_min_run:
        findings.append(
            Finding(
                pattern="burst_pattern",
                reason=(
                    f"burst pattern: {run + 1} URLs created less than "
                    f"{thresholds.burst_gap_seconds:.0f}s apart"
                ),
                weight=2,
                severity=2,
            )
        )

    if findings:
        logger.debug(
            "Velocity findings for %s: count=%d patterns=%s",
            snapshot.identity_id,
            count,
            [f.pattern for f in findings],
        )
    return DetectionResult(detector=DETECTOR_NAME, findings=tuple(findings))
