"""Tests for click and visit behavior detection."""

from datetime import UTC, datetime, timedelta

from fingerprint_risk.detector.clicks import detect_click_fraud
from fingerprint_risk.detector.models import ActivitySnapshot
from fingerprint_risk.ingestor.models import ActionType, DeviceSignals, TrackedAction

NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=UTC)


def make_visits(
    count: int,
    spacing_seconds: float,
    referrer: str | None = "https://news.example.com",
) -> list[TrackedAction]:
    """Create ``count`` visits ending just before NOW."""
    return [
        TrackedAction(
            identity_id="id-1",
            action_type=ActionType.VISIT,
            occurred_at=NOW - timedelta(seconds=1 + i * spacing_seconds),
            referrer=referrer,
        )
        for i in range(count)
    ]


def make_snapshot(visits: list[TrackedAction]) -> ActivitySnapshot:
    """Create a snapshot holding only visits."""
    return ActivitySnapshot(
        identity_id="id-1",
        signals=DeviceSignals(),
        visits=tuple(visits),
        taken_at=NOW,
    )


class TestDetectClickFraud:
    """Tests for detect_click_fraud."""

    def test_no_visits(self) -> None:
        """Test that no visits means no findings and no division by zero."""
        result = detect_click_fraud(make_snapshot([]))

        assert result.risk_score == 0
        assert result.findings == ()

    def test_normal_visitor(self) -> None:
        """Test that a few referred, spaced visits are clean."""
        result = detect_click_fraud(make_snapshot(make_visits(10, 600)))

        assert result.is_triggered is False

    def test_high_visit_volume(self) -> None:
        """Test that more than 100 visits a day is flagged."""
        result = detect_click_fraud(make_snapshot(make_visits(101, 300)))

        assert result.patterns == ["high_visit_volume"]
        assert result.risk_score == 3
        assert result.severity == 3

    def test_exactly_100_visits_not_flagged(self) -> None:
        """Test the visit volume boundary."""
        result = detect_click_fraud(make_snapshot(make_visits(100, 300)))

        assert "high_visit_volume" not in result.patterns

    def test_rapid_clicking(self) -> None:
        """Test that six consecutive sub-5s gaps are flagged."""
        result = detect_click_fraud(make_snapshot(make_visits(7, 2)))

        assert result.patterns == ["rapid_clicking"]
        assert result.risk_score == 2

    def test_five_quick_gaps_not_enough(self) -> None:
        """Test that five quick gaps do not trigger rapid clicking."""
        result = detect_click_fraud(make_snapshot(make_visits(6, 2)))

        assert "rapid_clicking" not in result.patterns

    def test_direct_access(self) -> None:
        """Test that mostly referrer-less visits are flagged."""
        visits = make_visits(9, 600, referrer=None) + make_visits(1, 600)

        result = detect_click_fraud(make_snapshot(visits))

        assert result.patterns == ["direct_access"]
        assert result.reasons == ["direct access: 90% of visits without referrer"]

    def test_direct_ratio_boundary(self) -> None:
        """Test that exactly 80% direct visits is not flagged."""
        visits = make_visits(8, 600, referrer="") + make_visits(2, 600)

        result = detect_click_fraud(make_snapshot(visits))

        assert result.is_triggered is False

    def test_old_visits_ignored(self) -> None:
        """Test that visits older than 24 hours do not count."""
        visits = [
            TrackedAction(
                identity_id="id-1",
                action_type=ActionType.VISIT,
                occurred_at=NOW - timedelta(hours=25, seconds=i),
            )
            for i in range(150)
        ]

        assert detect_click_fraud(make_snapshot(visits)).findings == ()

    def test_all_patterns_stack(self) -> None:
        """Test that volume, cadence and direct access add up."""
        result = detect_click_fraud(make_snapshot(make_visits(120, 1, referrer=None)))

        assert result.patterns == ["high_visit_volume", "rapid_clicking", "direct_access"]
        assert result.risk_score == 7
