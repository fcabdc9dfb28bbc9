"""Tests for dashboard aggregate queries."""

from __future__ import annotations

from datetime import timedelta
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from fingerprint_risk.ingestor.models import ActionType, DeviceSignals, TrackedAction
from fingerprint_risk.storage.repos import (
    ActionRepository,
    IdentityRepository,
    RateLimitRepository,
    RiskEventDTO,
    RiskEventRepository,
)
from fingerprint_risk.storage.stats import StatsRepository, risk_level


async def add_event(
    session: AsyncSession,
    identity_id: str,
    risk_type: str,
    severity: int,
    created_at: Any,
) -> None:
    """Store one risk event."""
    await RiskEventRepository(session).insert(
        RiskEventDTO(
            identity_id=identity_id,
            risk_type=risk_type,
            severity=severity,
            confidence=0.5,
            risk_score=5.0,
            created_at=created_at,
        )
    )


async def add_actions(
    session: AsyncSession,
    identity_id: str,
    action_type: ActionType,
    count: int,
    at: Any,
) -> None:
    """Store ``count`` actions a second apart ending at ``at``."""
    repo = ActionRepository(session)
    for i in range(count):
        await repo.insert(
            TrackedAction(
                identity_id=identity_id,
                action_type=action_type,
                occurred_at=at - timedelta(seconds=i),
            )
        )


class TestRiskLevel:
    """Tests for risk_level."""

    @pytest.mark.parametrize(
        ("score", "level"),
        [(0, "low"), (2, "low"), (3, "medium"), (5, "high"), (6, "high"), (7, "critical")],
    )
    def test_tiers(self, score: int, level: str) -> None:
        """Test the dashboard tier boundaries."""
        assert risk_level(score) == level


class TestDashboardStats:
    """Tests for StatsRepository.dashboard_stats."""

    @pytest.mark.asyncio
    async def test_empty_database(self, session: AsyncSession, clock: Any) -> None:
        """Test that an empty store reports zeros."""
        stats = await StatsRepository(session).dashboard_stats(now=clock.now)

        assert stats.total_identities == 0
        assert stats.risk_tiers == {"low": 0, "medium": 0, "high": 0, "critical": 0}
        assert stats.to_dict()["generated_at"] == clock.now.isoformat()

    @pytest.mark.asyncio
    async def test_counts(self, session: AsyncSession, clock: Any) -> None:
        """Test identity tiers and trailing-day activity counts."""
        identities = IdentityRepository(session)
        ids = []
        for i, (score, ml) in enumerate([(0, 0.0), (4, 0.1), (6, 0.6), (9, 0.9)]):
            identity = await identities.upsert(f"hash-{i}", DeviceSignals(), now=clock.now)
            await identities.update_scores(identity.id, score, ml, score / 10, now=clock.now)
            ids.append(identity.id)

        await add_actions(session, ids[0], ActionType.URL_CREATION, 3, clock.now)
        await add_actions(session, ids[0], ActionType.VISIT, 2, clock.now)
        await add_actions(session, ids[1], ActionType.VISIT, 1, clock.now)
        await add_actions(
            session, ids[1], ActionType.VISIT, 5, clock.now - timedelta(hours=30)
        )
        await add_event(session, ids[3], "webdriver", 4, clock.now - timedelta(hours=1))
        await add_event(session, ids[3], "webdriver", 4, clock.now - timedelta(days=2))
        await RateLimitRepository(session).upsert_window(
            ids[0], "url_creation", 3, clock.now - timedelta(minutes=10)
        )

        stats = await StatsRepository(session).dashboard_stats(now=clock.now)

        assert stats.total_identities == 4
        assert stats.risk_tiers == {"low": 1, "medium": 1, "high": 1, "critical": 1}
        assert stats.high_risk_identities == 2
        assert stats.ml_anomalies == 2
        assert stats.url_creations_24h == 3
        assert stats.visits_24h == 3
        assert stats.unique_visitors_24h == 2
        assert stats.risk_events_24h == 1
        assert stats.active_rate_limits == 1


class TestFraudPatternFrequency:
    """Tests for StatsRepository.fraud_pattern_frequency."""

    @pytest.mark.asyncio
    async def test_groups_by_risk_type(self, session: AsyncSession, clock: Any) -> None:
        """Test grouping, ordering and the analysis period."""
        for hours, risk_type, severity in [
            (1, "webdriver", 4),
            (2, "webdriver", 2),
            (3, "extreme_velocity", 4),
            (5, "webdriver", 3),
            (24 * 8, "duplicate_fingerprint", 4),
        ]:
            await add_event(
                session, "id-1", risk_type, severity, clock.now - timedelta(hours=hours)
            )

        report = await StatsRepository(session).fraud_pattern_frequency(7, now=clock.now)

        assert list(report.patterns) == ["webdriver", "extreme_velocity"]
        webdriver = report.patterns["webdriver"]
        assert webdriver.count == 3
        assert webdriver.avg_severity == 3.0
        assert webdriver.max_severity == 4
        assert webdriver.last_occurrence == clock.now - timedelta(hours=1)
        assert report.total_events == 4
        assert report.high_severity_events == 2
        assert report.to_dict()["analysis_period_days"] == 7

    @pytest.mark.asyncio
    async def test_empty_period(self, session: AsyncSession, clock: Any) -> None:
        """Test that no events gives an empty report."""
        report = await StatsRepository(session).fraud_pattern_frequency(1, now=clock.now)

        assert report.patterns == {}
        assert report.total_events == 0


class TestRiskReport:
    """Tests for StatsRepository.risk_report."""

    @pytest.mark.asyncio
    async def test_missing_identity(self, session: AsyncSession, clock: Any) -> None:
        """Test that an unknown identity has no report."""
        assert await StatsRepository(session).risk_report("missing", now=clock.now) is None

    @pytest.mark.asyncio
    async def test_report_reasons(self, session: AsyncSession, clock: Any) -> None:
        """Test the activity summary and heuristic reasons."""
        identities = IdentityRepository(session)
        identity = await identities.upsert("hash-1", DeviceSignals(), now=clock.now)
        await identities.update_scores(identity.id, 8, 0.2, 0.8, now=clock.now)
        await add_actions(session, identity.id, ActionType.URL_CREATION, 12, clock.now)
        await add_actions(
            session,
            identity.id,
            ActionType.URL_CREATION,
            10,
            clock.now - timedelta(hours=3),
        )
        await add_event(session, identity.id, "extreme_velocity", 4, clock.now)

        report = await StatsRepository(session).risk_report(identity.id, now=clock.now)

        assert report is not None
        assert report.risk_level == "critical"
        assert report.url_creations_last_hour == 12
        assert report.total_url_creations == 22
        assert report.risk_events_last_24h == 1
        assert report.risk_reasons == [
            "High URL creation velocity: 12/hour",
            "1 recent risk events",
            "High total URL count: 22",
        ]
        data = report.to_dict()
        assert data["recent_activity"]["url_creations_last_hour"] == 12
        assert data["recent_events"][0]["risk_type"] == "extreme_velocity"
