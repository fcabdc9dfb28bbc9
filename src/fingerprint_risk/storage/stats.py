"""Read-only aggregate queries for the operator dashboard.

Nothing in this module writes; results are plain dataclasses with a
``to_dict`` for JSON output.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select

from fingerprint_risk.ingestor.models import ActionType
from fingerprint_risk.storage.models import (
    IdentityModel,
    RateLimitWindowModel,
    RiskEventModel,
    TrackedActionModel,
)
from fingerprint_risk.storage.repos import (
    DEFAULT_POLICY,
    ActionRepository,
    IdentityRepository,
    RiskEventDTO,
    RiskEventRepository,
    StorePolicy,
    ensure_utc,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

# Lower bounds of each risk tier
MEDIUM_RISK_SCORE = 3
HIGH_RISK_SCORE = 5
CRITICAL_RISK_SCORE = 7
ML_ANOMALY_THRESHOLD = 0.5
HIGH_SEVERITY = 4

DEFAULT_PATTERN_DAYS = 7
RECENT_EVENTS_LIMIT = 10


def risk_level(score: int) -> str:
    """Return the dashboard tier for a risk score."""
    if score >= CRITICAL_RISK_SCORE:
        return "critical"
    if score >= HIGH_RISK_SCORE:
        return "high"
    if score >= MEDIUM_RISK_SCORE:
        return "medium"
    return "low"


@dataclass(frozen=True)
class DashboardStats:
    """Headline counts for the dashboard."""

    total_identities: int
    risk_tiers: dict[str, int]
    high_risk_identities: int
    ml_anomalies: int
    url_creations_24h: int
    visits_24h: int
    unique_visitors_24h: int
    risk_events_24h: int
    active_rate_limits: int
    generated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "total_identities": self.total_identities,
            "risk_tiers": dict(self.risk_tiers),
            "high_risk_identities": self.high_risk_identities,
            "ml_anomalies": self.ml_anomalies,
            "url_creations_24h": self.url_creations_24h,
            "visits_24h": self.visits_24h,
            "unique_visitors_24h": self.unique_visitors_24h,
            "risk_events_24h": self.risk_events_24h,
            "active_rate_limits": self.active_rate_limits,
            "generated_at": self.generated_at.isoformat(),
        }


@dataclass(frozen=True)
class PatternStats:
    """Frequency of one risk type over the analysis period."""

    risk_type: str
    count: int
    avg_severity: float
    max_severity: int
    last_occurrence: datetime

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "count": self.count,
            "avg_severity": self.avg_severity,
            "max_severity": self.max_severity,
            "last_occurrence": self.last_occurrence.isoformat(),
        }


@dataclass(frozen=True)
class FraudPatternReport:
    """Risk event frequencies grouped by risk type."""

    days: int
    patterns: dict[str, PatternStats] = field(default_factory=dict)
    total_events: int = 0
    high_severity_events: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "patterns": {name: stats.to_dict() for name, stats in self.patterns.items()},
            "total_events": self.total_events,
            "high_severity_events": self.high_severity_events,
            "analysis_period_days": self.days,
        }


@dataclass(frozen=True)
class RiskReport:
    """Risk summary of a single identity."""

    identity_id: str
    risk_score: int
    risk_level: str
    ml_anomaly_score: float
    confidence_score: float
    risk_reasons: list[str]
    url_creations_last_hour: int
    visits_last_hour: int
    risk_events_last_24h: int
    total_url_creations: int
    total_visits: int
    total_risk_events: int
    recent_events: list[RiskEventDTO]
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "identity_id": self.identity_id,
            "risk_score": self.risk_score,
            "risk_level": self.risk_level,
            "ml_anomaly_score": self.ml_anomaly_score,
            "confidence_score": self.confidence_score,
            "risk_reasons": list(self.risk_reasons),
            "recent_activity": {
                "url_creations_last_hour": self.url_creations_last_hour,
                "visits_last_hour": self.visits_last_hour,
                "risk_events_last_24h": self.risk_events_last_24h,
            },
            "activity_summary": {
                "total_url_creations": self.total_url_creations,
                "total_visits": self.total_visits,
                "total_risk_events": self.total_risk_events,
                "created_at": self.created_at.isoformat() if self.created_at else None,
                "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            },
            "recent_events": [
                {
                    "id": e.id,
                    "risk_type": e.risk_type,
                    "severity": e.severity,
                    "description": e.description,
                    "created_at": e.created_at.isoformat() if e.created_at else None,
                }
                for e in self.recent_events
            ],
        }


class StatsRepository:
    """Aggregate queries over identities, actions and risk events."""

    def __init__(self, session: AsyncSession, policy: StorePolicy = DEFAULT_POLICY) -> None:
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session.
            policy: Deadline and retry policy for store calls.
        """
        self.session = session
        self.policy = policy

    async def _scalar(self, stmt: Any, name: str) -> Any:
        async def op() -> Any:
            result = await self.session.execute(stmt)
            return result.scalar_one()

        return await self.policy.read(op, name)

    async def _count_actions(self, action_type: ActionType, since: datetime) -> int:
        stmt = (
            select(func.count())
            .select_from(TrackedActionModel)
            .where(
                TrackedActionModel.action_type == action_type.value,
                TrackedActionModel.occurred_at > since,
            )
        )
        return int(await self._scalar(stmt, f"stats count {action_type.value}"))

    async def dashboard_stats(self, now: datetime | None = None) -> DashboardStats:
        """Compute the headline dashboard counts.

        Args:
            now: Reference time for the trailing windows.

        Returns:
            DashboardStats.
        """
        now = ensure_utc(now or datetime.now(UTC))
        day_ago = now - timedelta(hours=24)
        hour_ago = now - timedelta(hours=1)

        total = await self._scalar(
            select(func.count()).select_from(IdentityModel), "stats total identities"
        )

        async def tiers_op() -> dict[str, int]:
            result = await self.session.execute(
                select(IdentityModel.risk_score, func.count()).group_by(IdentityModel.risk_score)
            )
            tiers = {"low": 0, "medium": 0, "high": 0, "critical": 0}
            for score, count in result.all():
                tiers[risk_level(int(score))] += int(count)
            return tiers

        tiers = await self.policy.read(tiers_op, "stats risk tiers")

        ml_anomalies = await self._scalar(
            select(func.count())
            .select_from(IdentityModel)
            .where(IdentityModel.ml_anomaly_score > ML_ANOMALY_THRESHOLD),
            "stats ml anomalies",
        )
        unique_visitors = await self._scalar(
            select(func.count(func.distinct(TrackedActionModel.identity_id))).where(
                TrackedActionModel.action_type == ActionType.VISIT.value,
                TrackedActionModel.occurred_at > day_ago,
            ),
            "stats unique visitors",
        )
        risk_events = await self._scalar(
            select(func.count())
            .select_from(RiskEventModel)
            .where(RiskEventModel.created_at > day_ago),
            "stats risk events",
        )
        active_limits = await self._scalar(
            select(func.count())
            .select_from(RateLimitWindowModel)
            .where(RateLimitWindowModel.window_start > hour_ago),
            "stats active rate limits",
        )

        return DashboardStats(
            total_identities=int(total),
            risk_tiers=tiers,
            high_risk_identities=tiers["high"] + tiers["critical"],
            ml_anomalies=int(ml_anomalies),
            url_creations_24h=await self._count_actions(ActionType.URL_CREATION, day_ago),
            visits_24h=await self._count_actions(ActionType.VISIT, day_ago),
            unique_visitors_24h=int(unique_visitors),
            risk_events_24h=int(risk_events),
            active_rate_limits=int(active_limits),
            generated_at=now,
        )

    async def fraud_pattern_frequency(
        self, days: int = DEFAULT_PATTERN_DAYS, now: datetime | None = None
    ) -> FraudPatternReport:
        """Group risk events of the trailing ``days`` by risk type.

        Args:
            days: Length of the analysis period.
            now: Reference time, defaults to the current time.

        Returns:
            FraudPatternReport, patterns ordered by descending count.
        """
        now = ensure_utc(now or datetime.now(UTC))
        since = now - timedelta(days=days)

        async def op() -> list[Any]:
            result = await self.session.execute(
                select(
                    RiskEventModel.risk_type,
                    func.count(),
                    func.avg(RiskEventModel.severity),
                    func.max(RiskEventModel.severity),
                    func.max(RiskEventModel.created_at),
                )
                .where(RiskEventModel.created_at > since)
                .group_by(RiskEventModel.risk_type)
                .order_by(func.count().desc(), RiskEventModel.risk_type)
            )
            return list(result.all())

        rows = await self.policy.read(op, "stats fraud patterns")
        patterns = {
            risk_type: PatternStats(
                risk_type=risk_type,
                count=int(count),
                avg_severity=round(float(avg_severity), 2),
                max_severity=int(max_severity),
                last_occurrence=ensure_utc(last),
            )
            for risk_type, count, avg_severity, max_severity, last in rows
        }

        high_severity = await self._scalar(
            select(func.count())
            .select_from(RiskEventModel)
            .where(
                RiskEventModel.created_at > since,
                RiskEventModel.severity >= HIGH_SEVERITY,
            ),
            "stats high severity events",
        )

        return FraudPatternReport(
            days=days,
            patterns=patterns,
            total_events=sum(p.count for p in patterns.values()),
            high_severity_events=int(high_severity),
        )

    async def risk_report(
        self, identity_id: str, now: datetime | None = None
    ) -> RiskReport | None:
        """Summarize one identity's score and recent activity.

        Args:
            identity_id: Identity id.
            now: Reference time, defaults to the current time.

        Returns:
            RiskReport, or None if the identity does not exist.
        """
        now = ensure_utc(now or datetime.now(UTC))
        identity = await IdentityRepository(self.session, self.policy).get(identity_id)
        if identity is None:
            return None

        actions = ActionRepository(self.session, self.policy)
        events = RiskEventRepository(self.session, self.policy)
        hour_ago = now - timedelta(hours=1)
        day_ago = now - timedelta(hours=24)

        creations_hour = await actions.count(identity_id, ActionType.URL_CREATION, hour_ago)
        visits_hour = await actions.count(identity_id, ActionType.VISIT, hour_ago)
        events_day = await events.count_for_identity(identity_id, day_ago)
        total_creations = await actions.count(identity_id, ActionType.URL_CREATION)
        total_visits = await actions.count(identity_id, ActionType.VISIT)
        total_events = await events.count_for_identity(identity_id)

        reasons: list[str] = []
        if creations_hour > 10:
            reasons.append(f"High URL creation velocity: {creations_hour}/hour")
        if visits_hour > 50:
            reasons.append(f"High visit velocity: {visits_hour}/hour")
        if events_day > 0:
            reasons.append(f"{events_day} recent risk events")
        if total_creations > 20:
            reasons.append(f"High total URL count: {total_creations}")

        return RiskReport(
            identity_id=identity.id,
            risk_score=identity.risk_score,
            risk_level=risk_level(identity.risk_score),
            ml_anomaly_score=identity.ml_anomaly_score,
            confidence_score=identity.confidence_score,
            risk_reasons=reasons,
            url_creations_last_hour=creations_hour,
            visits_last_hour=visits_hour,
            risk_events_last_24h=events_day,
            total_url_creations=total_creations,
            total_visits=total_visits,
            total_risk_events=total_events,
            recent_events=await events.list_for_identity(identity_id, RECENT_EVENTS_LIMIT),
            created_at=identity.created_at,
            updated_at=identity.updated_at,
        )
