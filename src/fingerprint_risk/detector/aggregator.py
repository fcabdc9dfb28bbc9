"""Risk aggregator combining all detector results.

This module provides the RiskAggregator class that evaluates an identity
by running every pattern detector over one point-in-time snapshot of its
history, folding the results into a bounded score, and persisting it.
"""

from __future__ import annotations

import dataclasses
import logging
import math
import time
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from fingerprint_risk import metrics
from fingerprint_risk.detector.anomaly import score_anomaly
from fingerprint_risk.detector.bot import detect_bot_signals
from fingerprint_risk.detector.clicks import detect_click_fraud
from fingerprint_risk.detector.device import detect_device_anomalies
from fingerprint_risk.detector.models import (
    MAX_RISK_SCORE,
    MIN_SEVERITY,
    ActivitySnapshot,
    DetectionResult,
    DetectionThresholds,
    Finding,
    FraudResult,
)
from fingerprint_risk.detector.reuse import detect_identity_reuse
from fingerprint_risk.detector.velocity import detect_velocity
from fingerprint_risk.ingestor.models import ActionType
from fingerprint_risk.storage.errors import StoreError
from fingerprint_risk.storage.repos import (
    DEFAULT_POLICY,
    ActionRepository,
    IdentityDTO,
    IdentityRepository,
    RiskEventDTO,
    StorePolicy,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

Detector = Callable[[ActivitySnapshot, DetectionThresholds], DetectionResult]

DETECTORS: tuple[Detector, ...] = (
    detect_velocity,
    detect_click_fraud,
    detect_bot_signals,
    detect_device_anomalies,
    detect_identity_reuse,
)

ML_ANOMALY_RISK_TYPE = "ml_anomaly_detected"
FALLBACK_RISK_TYPE = "comprehensive_fraud_detection"


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _worst_finding(detections: tuple[DetectionResult, ...]) -> Finding | None:
    findings = [f for d in detections for f in d.findings]
    if not findings:
        return None
    # max() keeps the first of equal keys, so ties go to detector order
    return max(findings, key=lambda f: (f.severity, f.weight))


class RiskAggregator:
    """Evaluate identities and persist their aggregate risk.

    The aggregator:
    - Loads one ActivitySnapshot per evaluation, all windows anchored at
      the same ``now``
    - Runs every detector and the anomaly scorer over that snapshot
    - Folds the results into a bounded FraudResult
    - Stores the refreshed scores and, when suspicious, one RiskEvent

    Scoring Formula:
        total = sum(detector.risk_score) + ml_score * 5
        total = clamp(total, 0, 10)

        risk_score = round_half_up(total)
        confidence = min(total / 10, 1)
        severity = max(detector.severity)
        is_suspicious = total > 3 or ml_score > 0.5

    Example:
        ```python
        async with session_factory() as session:
            aggregator = RiskAggregator(session)
            result = await aggregator.evaluate(identity_id)
            await session.commit()
        ```
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        thresholds: DetectionThresholds | None = None,
        policy: StorePolicy = DEFAULT_POLICY,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """Initialize the aggregator.

        Args:
            session: SQLAlchemy async session.
            thresholds: Detection policy. Defaults to DetectionThresholds().
            policy: Deadline and retry policy for store calls.
            clock: Source of the evaluation time.
        """
        self._thresholds = thresholds or DetectionThresholds()
        self._clock = clock
        self._identities = IdentityRepository(session, policy)
        self._actions = ActionRepository(session, policy)

    @property
    def thresholds(self) -> DetectionThresholds:
        """Return the detection policy in use."""
        return self._thresholds

    async def evaluate(self, identity_id: str) -> FraudResult:
        """Evaluate an identity and persist the outcome.

        Args:
            identity_id: The identity to evaluate.

        Returns:
            FraudResult. A missing identity yields a clean result. If the
            score or risk event could not be stored, ``persisted`` is False.

        Raises:
            StoreError: If the snapshot could not be loaded.
        """
        started = time.perf_counter()
        now = self._clock()

        identity = await self._identities.get(identity_id)
        if identity is None:
            logger.debug("Skipping evaluation of unknown identity %s", identity_id)
            metrics.EVALUATIONS_TOTAL.labels(outcome="missing").inc()
            return FraudResult.empty(identity_id, now)

        snapshot = await self.load_snapshot(identity, now)
        result = self.combine(snapshot)

        if not await self._persist(result):
            result = dataclasses.replace(result, persisted=False)

        metrics.EVALUATIONS_TOTAL.labels(
            outcome="suspicious" if result.is_suspicious else "clean"
        ).inc()
        metrics.RISK_SCORE.observe(result.risk_score)
        metrics.EVALUATION_LATENCY.observe(time.perf_counter() - started)
        return result

    async def load_snapshot(self, identity: IdentityDTO, now: datetime) -> ActivitySnapshot:
        """Read everything the detectors need, bounded above by ``now``.

        Args:
            identity: The identity to snapshot.
            now: Reference time for every window.

        Returns:
            ActivitySnapshot.
        """
        t = self._thresholds
        creations = await self._actions.get_actions_since(
            identity.id,
            ActionType.URL_CREATION,
            now - timedelta(minutes=t.velocity_window_minutes),
            until=now,
        )
        visits = await self._actions.get_actions_since(
            identity.id,
            ActionType.VISIT,
            now - timedelta(hours=t.visit_window_hours),
            until=now,
        )
        duplicates = await self._identities.count_siblings_by_hash(identity)
        similar = await self._identities.count_siblings_by_sub_signature(identity)

        return ActivitySnapshot(
            identity_id=identity.id,
            signals=identity.device_signals,
            url_creations=tuple(a.to_action() for a in creations),
            visits=tuple(v.to_action() for v in visits),
            duplicate_count=duplicates,
            similar_count=similar,
            taken_at=now,
        )

    def combine(self, snapshot: ActivitySnapshot) -> FraudResult:
        """Run all detectors over a snapshot and fold their results.

        Pure: the same snapshot always yields the same FraudResult.

        Args:
            snapshot: Activity snapshot of the identity.

        Returns:
            FraudResult (not yet persisted).
        """
        t = self._thresholds
        detections = tuple(detector(snapshot, t) for detector in DETECTORS)
        anomaly = score_anomaly(snapshot.signals, t)
        ml_score = anomaly.anomaly_score

        total = sum(d.risk_score for d in detections) + ml_score * t.ml_risk_multiplier
        total = round(max(0.0, min(float(total), float(MAX_RISK_SCORE))), 4)

        reasons = [r for d in detections for r in d.reasons]
        patterns = [p for d in detections for p in d.patterns]
        if anomaly.is_anomaly:
            reasons.append(f"ml anomaly: {anomaly.explanation}")
            patterns.append("ml_anomaly")

        worst = _worst_finding(detections)
        if worst is not None:
            risk_type = worst.pattern
        elif anomaly.is_anomaly:
            risk_type = ML_ANOMALY_RISK_TYPE
        else:
            risk_type = FALLBACK_RISK_TYPE

        return FraudResult(
            identity_id=snapshot.identity_id,
            is_suspicious=total > t.suspicious_score or ml_score > t.anomaly_threshold,
            risk_score=int(math.floor(total + 0.5)),
            severity=max((d.severity for d in detections), default=MIN_SEVERITY),
            reasons=tuple(dict.fromkeys(reasons)),
            patterns=tuple(dict.fromkeys(patterns)),
            confidence=min(total / MAX_RISK_SCORE, 1.0),
            ml_score=ml_score,
            risk_type=risk_type,
            total_score=total,
            detections=detections,
            anomaly=anomaly,
            evaluated_at=snapshot.taken_at,
        )

    async def _persist(self, result: FraudResult) -> bool:
        """Store the refreshed scores and, if suspicious, a risk event.

        Failures are logged and reported through the return value; they
        never fail the evaluation.

        Returns:
            True if every write succeeded.
        """
        event: RiskEventDTO | None = None
        if result.is_suspicious:
            event = RiskEventDTO(
                identity_id=result.identity_id,
                risk_type=result.risk_type,
                severity=result.severity,
                confidence=result.confidence,
                risk_score=result.total_score,
                description=result.description,
                patterns=list(result.patterns),
                details=result.detection_details(),
                created_at=result.evaluated_at,
            )

        try:
            await self._identities.apply_evaluation(
                result.identity_id,
                risk_score=result.risk_score,
                ml_anomaly_score=result.ml_score,
                confidence_score=result.confidence,
                event=event,
                now=result.evaluated_at,
            )
        except StoreError as e:
            metrics.PERSISTENCE_FAILURES_TOTAL.inc()
            logger.error("Failed to persist evaluation of %s: %s", result.identity_id, e)
            return False

        if event is not None:
            metrics.RISK_EVENTS_TOTAL.labels(risk_type=result.risk_type).inc()
            logger.info(
                "Risk event recorded: identity=%s, type=%s, score=%d, severity=%d",
                result.identity_id,
                result.risk_type,
                result.risk_score,
                result.severity,
            )
        return True
