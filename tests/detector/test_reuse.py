"""Tests for multi-identity reuse detection."""

from datetime import UTC, datetime

import pytest

from fingerprint_risk.detector.models import ActivitySnapshot, DetectionThresholds
from fingerprint_risk.detector.reuse import detect_identity_reuse
from fingerprint_risk.ingestor.models import DeviceSignals


def snapshot_with(duplicates: int, similar: int) -> ActivitySnapshot:
    """Create a snapshot carrying sibling counts."""
    return ActivitySnapshot(
        identity_id="id-1",
        signals=DeviceSignals(),
        duplicate_count=duplicates,
        similar_count=similar,
        taken_at=datetime(2024, 6, 1, tzinfo=UTC),
    )


class TestDetectIdentityReuse:
    """Tests for detect_identity_reuse."""

    def test_unique_device(self) -> None:
        """Test that a device seen once is clean."""
        assert detect_identity_reuse(snapshot_with(0, 0)).findings == ()

    def test_duplicate_fingerprint(self) -> None:
        """Test that one other identity on the same hash is flagged."""
        result = detect_identity_reuse(snapshot_with(1, 0))

        assert result.patterns == ["duplicate_fingerprint"]
        assert result.risk_score == 4
        assert result.severity == 4
        assert "1 other identities" in result.reasons[0]

    @pytest.mark.parametrize(("similar", "flagged"), [(2, False), (3, True), (10, True)])
    def test_similar_signature_threshold(self, similar: int, flagged: bool) -> None:
        """Test the sub-fingerprint sharing threshold."""
        result = detect_identity_reuse(snapshot_with(0, similar))

        assert ("similar_device_signature" in result.patterns) is flagged

    def test_both_findings_stack(self) -> None:
        """Test that duplicate and similar findings add up."""
        result = detect_identity_reuse(snapshot_with(2, 5))

        assert result.risk_score == 7
        assert result.severity == 4

    def test_custom_threshold(self) -> None:
        """Test that the duplicate minimum is configurable."""
        thresholds = DetectionThresholds(duplicate_fingerprint_min=3)

        assert detect_identity_reuse(snapshot_with(2, 0), thresholds).findings == ()
