"""Data models for the detector module."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from fingerprint_risk.ingestor.models import DeviceSignals, TrackedAction

MIN_SEVERITY = 1
MAX_SEVERITY = 5
MAX_RISK_SCORE = 10


@dataclass(frozen=True)
class DetectionThresholds:
    """Policy constants used by the detectors.

    Defaults reproduce the production policy. Hosts may override any of
    them through configuration.
    """

    # Velocity (url_creation per trailing hour)
    velocity_window_minutes: int = 60
    extreme_velocity: int = 20
    high_velocity: int = 10
    moderate_velocity: int = 5
    burst_gap_seconds: float = 60.0
    burst_min_run: int = 4

    # Click/visit behavior (visits per trailing day)
    visit_window_hours: int = 24
    high_visit_volume: int = 100
    rapid_click_gap_seconds: float = 5.0
    rapid_click_min_run: int = 6
    direct_access_ratio: float = 0.8

    # Bot/automation
    anti_detect_min_indicators: int = 3
    suspicious_timing_ms: float = 100.0

    # Device anomalies
    min_screen_width: int = 800
    min_screen_height: int = 600

    # Multi-identity reuse
    duplicate_fingerprint_min: int = 1
    similar_signature_min: int = 3

    # Numeric anomaly
    anomaly_threshold: float = 0.5
    ml_risk_multiplier: float = 5.0

    # Aggregation
    suspicious_score: float = 3.0


@dataclass(frozen=True)
class Finding:
    """A single matched fraud pattern.

    Attributes:
        pattern: Machine-readable pattern tag (e.g. "extreme_velocity").
        reason: Human-readable explanation.
        weight: Risk score contribution.
        severity: Seriousness of this finding (1-5).
    """

    pattern: str
    reason: str
    weight: int
    severity: int

    def to_dict(self) -> dict[str, object]:
        """Serialize to dictionary."""
        return {
            "pattern": self.pattern,
            "reason": self.reason,
            "weight": self.weight,
            "severity": self.severity,
        }


@dataclass(frozen=True)
class DetectionResult:
    """Output of one pattern detector.

    Attributes:
        detector: Name of the detector that produced this result.
        findings: Every pattern the detector matched, in match order.
    """

    detector: str
    findings: tuple[Finding, ...] = ()

    @property
    def risk_score(self) -> int:
        """Return the summed weight of all findings."""
        return sum(f.weight for f in self.findings)

    @property
    def severity(self) -> int:
        """Return the worst finding severity (1 when nothing matched)."""
        return max((f.severity for f in self.findings), default=MIN_SEVERITY)

    @property
    def reasons(self) -> list[str]:
        """Return finding reasons in match order."""
        return [f.reason for f in self.findings]

    @property
    def patterns(self) -> list[str]:
        """Return finding pattern tags in match order."""
        return [f.pattern for f in self.findings]

    @property
    def confidence(self) -> float:
        """Return min(risk_score / 10, 1)."""
        return min(self.risk_score / MAX_RISK_SCORE, 1.0)

    @property
    def is_triggered(self) -> bool:
        """Return True if at least one pattern matched."""
        return bool(self.findings)

    def to_dict(self) -> dict[str, object]:
        """Serialize to dictionary for risk event metadata."""
        return {
            "detector": self.detector,
            "risk_score": self.risk_score,
            "severity": self.severity,
            "confidence": self.confidence,
            "findings": [f.to_dict() for f in self.findings],
        }


@dataclass(frozen=True)
class AnomalyResult:
    """Output of the numeric anomaly scorer.

    Attributes:
        anomaly_score: Bounded score in [0, 1].
        is_anomaly: Whether the score exceeds the anomaly threshold.
        features: Named numeric features the score was computed from.
        explanation: Human-readable list of contributing components.
    """

    anomaly_score: float
    is_anomaly: bool
    features: dict[str, float]
    explanation: str

    def to_dict(self) -> dict[str, object]:
        """Serialize to dictionary for risk event metadata."""
        return {
            "anomaly_score": self.anomaly_score,
            "is_anomaly": self.is_anomaly,
            "features": self.features,
            "explanation": self.explanation,
        }


@dataclass(frozen=True)
class ActivitySnapshot:
    """Point-in-time view of an identity's history.

    Every detector reads the same snapshot so that no detector can
    observe another's output or a later write.

    Attributes:
        identity_id: The identity being evaluated.
        signals: Normalized device signals of the identity.
        url_creations: url_creation actions inside the velocity window.
        visits: visit actions inside the visit window.
        duplicate_count: Other identities sharing the device signal hash.
        similar_count: Other identities sharing a canvas/webgl/audio
            sub-fingerprint.
        taken_at: Reference time the windows were computed from.
    """

    identity_id: str
    signals: DeviceSignals
    url_creations: tuple[TrackedAction, ...] = ()
    visits: tuple[TrackedAction, ...] = ()
    duplicate_count: int = 0
    similar_count: int = 0
    taken_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True)
class FraudResult:
    """Aggregated fraud determination for one identity.

    Attributes:
        identity_id: The evaluated identity.
        is_suspicious: Whether a risk event should be recorded.
        risk_score: Clamped integer score in [0, 10].
        severity: Worst single finding severity (1-5).
        reasons: Deduplicated reasons in first-seen order.
        patterns: Deduplicated pattern tags in first-seen order.
        confidence: min(total / 10, 1).
        ml_score: Numeric anomaly score in [0, 1].
        total_score: Clamped unrounded total the score was derived from.
        risk_type: Pattern tag of the worst finding.
        detections: Per-detector results.
        anomaly: Numeric anomaly result.
        evaluated_at: Snapshot reference time.
        persisted: False if the score or risk event write failed.
    """

    identity_id: str
    is_suspicious: bool
    risk_score: int
    severity: int
    reasons: tuple[str, ...]
    patterns: tuple[str, ...]
    confidence: float
    ml_score: float
    risk_type: str
    total_score: float = 0.0
    detections: tuple[DetectionResult, ...] = ()
    anomaly: AnomalyResult | None = None
    evaluated_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    persisted: bool = True

    @classmethod
    def empty(cls, identity_id: str, evaluated_at: datetime | None = None) -> FraudResult:
        """Return a clean, non-suspicious result."""
        return cls(
            identity_id=identity_id,
            is_suspicious=False,
            risk_score=0,
            severity=MIN_SEVERITY,
            reasons=(),
            patterns=(),
            confidence=0.0,
            ml_score=0.0,
            risk_type="",
            evaluated_at=evaluated_at or datetime.now(UTC),
        )

    @property
    def description(self) -> str:
        """Return a one-line summary suitable for a risk event."""
        if not self.reasons:
            return "No fraud indicators detected"
        return "Fraud indicators detected: " + "; ".join(self.reasons)

    def detection_details(self) -> dict[str, Any]:
        """Return the per-detector breakdown stored with a risk event."""
        return {
            "detections": {d.detector: d.to_dict() for d in self.detections},
            "anomaly": self.anomaly.to_dict() if self.anomaly else None,
            "evaluated_at": self.evaluated_at.isoformat(),
        }

    def to_dict(self) -> dict[str, object]:
        """Serialize to dictionary."""
        return {
            "identity_id": self.identity_id,
            "is_suspicious": self.is_suspicious,
            "risk_score": self.risk_score,
            "severity": self.severity,
            "reasons": list(self.reasons),
            "patterns": list(self.patterns),
            "confidence": self.confidence,
            "ml_score": self.ml_score,
            "total_score": self.total_score,
            "risk_type": self.risk_type,
            "persisted": self.persisted,
            "evaluated_at": self.evaluated_at.isoformat(),
        }
