"""Tests for ingestor data models."""

from datetime import UTC, datetime

import pytest

from fingerprint_risk.ingestor.models import (
    ActionType,
    Capabilities,
    DeviceSignals,
    InvalidActionTypeError,
    TrackedAction,
    parse_action_type,
)


class TestParseActionType:
    """Tests for parse_action_type."""

    def test_accepts_member(self) -> None:
        """Test that an ActionType member is returned unchanged."""
        assert parse_action_type(ActionType.VISIT) is ActionType.VISIT

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("url_creation", ActionType.URL_CREATION),
            ("visit", ActionType.VISIT),
            ("admin_access", ActionType.ADMIN_ACCESS),
            ("api_call", ActionType.API_CALL),
        ],
    )
    def test_accepts_string_values(self, raw: str, expected: ActionType) -> None:
        """Test that every string value maps to its member."""
        assert parse_action_type(raw) is expected

    def test_rejects_unknown_value(self) -> None:
        """Test that an unknown value raises InvalidActionTypeError."""
        with pytest.raises(InvalidActionTypeError, match="login"):
            parse_action_type("login")

    def test_error_is_value_error(self) -> None:
        """Test that InvalidActionTypeError is a ValueError."""
        with pytest.raises(ValueError):
            parse_action_type("URL_CREATION")


class TestDeviceSignals:
    """Tests for DeviceSignals."""

    def test_defaults_are_neutral(self) -> None:
        """Test that a default record has no evidence in it."""
        signals = DeviceSignals()

        assert signals.user_agent == ""
        assert signals.hardware_concurrency == 0
        assert signals.plugins == ()
        assert not any(signals.automation_flags.values())
        assert signals.has_capabilities is False

    def test_screen_area(self) -> None:
        """Test screen area and resolution presence."""
        assert DeviceSignals(screen_width=1920, screen_height=1080).screen_area == 2073600
        assert DeviceSignals(screen_width=1920, screen_height=1080).has_resolution is True
        assert DeviceSignals().has_resolution is False
        assert DeviceSignals(screen_width=10**200, screen_height=10**200).screen_area == 0

    def test_sub_signatures_skip_empty(self) -> None:
        """Test that only reported sub-fingerprints are returned."""
        signals = DeviceSignals(canvas="c1", audio="a1")

        assert signals.sub_signatures == {"canvas": "c1", "audio": "a1"}

    def test_to_dict_without_capabilities(self) -> None:
        """Test that capabilities serialize as None when not reported."""
        data = DeviceSignals(plugins=("PDF Viewer",)).to_dict()

        assert data["plugins"] == ["PDF Viewer"]
        assert data["capabilities"] is None

    def test_to_dict_with_capabilities(self) -> None:
        """Test that reported capabilities are serialized."""
        signals = DeviceSignals(
            capabilities=Capabilities(webgl=True, device_pixel_ratio=2.0),
            has_capabilities=True,
        )

        caps = signals.to_dict()["capabilities"]

        assert caps["webgl"] is True
        assert caps["device_pixel_ratio"] == 2.0


class TestTrackedAction:
    """Tests for TrackedAction."""

    def test_creation_defaults(self) -> None:
        """Test that id and timestamp are generated."""
        action = TrackedAction(identity_id="id-1", action_type=ActionType.VISIT)

        assert action.action_id
        assert action.occurred_at.tzinfo is not None
        assert action.is_direct is True

    def test_referrer_is_not_direct(self) -> None:
        """Test that a referred visit is not direct access."""
        action = TrackedAction(
            identity_id="id-1",
            action_type=ActionType.VISIT,
            occurred_at=datetime(2024, 1, 1, tzinfo=UTC),
            referrer="https://example.com",
        )

        assert action.is_direct is False

    def test_is_immutable(self) -> None:
        """Test that actions cannot be modified."""
        action = TrackedAction(identity_id="id-1", action_type=ActionType.VISIT)

        with pytest.raises(AttributeError):
            action.identity_id = "id-2"  # type: ignore[misc]
