"""Data models for the ingestor module."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

# Upper bound for counts and screen dimensions; larger values read as unknown
MAX_DEVICE_VALUE = 1_000_000


class ActionType(str, Enum):
    """Kinds of identity activity the engine tracks."""

    URL_CREATION = "url_creation"
    VISIT = "visit"
    ADMIN_ACCESS = "admin_access"
    API_CALL = "api_call"


class InvalidActionTypeError(ValueError):
    """Raised when an action type is outside the enumerated set."""


def parse_action_type(value: ActionType | str) -> ActionType:
    """Coerce a raw action type into an ActionType.

    Args:
        value: ActionType member or its string value.

    Returns:
        The matching ActionType.

    Raises:
        InvalidActionTypeError: If the value is not a known action type.
    """
    if isinstance(value, ActionType):
        return value
    try:
        return ActionType(str(value))
    except ValueError:
        raise InvalidActionTypeError(f"Unknown action type: {value!r}") from None


@dataclass(frozen=True)
class Capabilities:
    """Browser capability flags reported by the client."""

    webgl: bool = False
    webgl2: bool = False
    local_storage: bool = False
    session_storage: bool = False
    indexed_db: bool = False
    service_worker: bool = False
    web_audio: bool = False
    web_rtc: bool = False
    geolocation: bool = False
    notifications: bool = False
    touch_events: bool = False
    device_pixel_ratio: float = 1.0

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a snake_case dictionary."""
        return {
            "webgl": self.webgl,
            "webgl2": self.webgl2,
            "local_storage": self.local_storage,
            "session_storage": self.session_storage,
            "indexed_db": self.indexed_db,
            "service_worker": self.service_worker,
            "web_audio": self.web_audio,
            "web_rtc": self.web_rtc,
            "geolocation": self.geolocation,
            "notifications": self.notifications,
            "touch_events": self.touch_events,
            "device_pixel_ratio": self.device_pixel_ratio,
        }


@dataclass(frozen=True)
class DeviceSignals:
    """Normalized browser/device signal bundle for one identity.

    Every field has a neutral default so that a missing or malformed
    bundle still produces a usable record. Zero values for hardware
    concurrency and device memory are kept as-is because they are
    themselves evidence of automation. The permission and media-device
    API flags stay None when the bundle does not report them.
    """

    # Environment
    user_agent: str = ""
    platform: str = ""
    language: str = ""
    timezone: str = ""
    screen_width: int = 0
    screen_height: int = 0

    # Hardware
    hardware_concurrency: int = 0
    device_memory: float = 0.0
    touch_support: bool = False
    mobile: bool = False
    plugins: tuple[str, ...] = ()

    # Automation flags
    webdriver: bool = False
    phantom: bool = False
    selenium: bool = False
    headless: bool = False
    automation: bool = False

    # Sub-fingerprints
    canvas: str = ""
    webgl: str = ""
    audio: str = ""
    webgl_vendor: str = ""
    webgl_renderer: str = ""

    # Anti-detect evidence
    permissions_api: bool | None = None
    media_devices_api: bool | None = None
    timing_ms: float = 0.0
    canvas_evasion: bool = False
    anti_detect_properties: tuple[str, ...] = ()

    capabilities: Capabilities = field(default_factory=Capabilities)
    has_capabilities: bool = False

    @property
    def screen_area(self) -> int:
        """Return the screen area in pixels (0 if unknown)."""
        width, height = self.screen_width, self.screen_height
        if not (0 < width <= MAX_DEVICE_VALUE and 0 < height <= MAX_DEVICE_VALUE):
            return 0
        return width * height

    @property
    def has_resolution(self) -> bool:
        """Return True if a screen resolution was reported."""
        return self.screen_width > 0 or self.screen_height > 0

    @property
    def automation_flags(self) -> dict[str, bool]:
        """Return the five automation booleans keyed by name."""
        return {
            "webdriver": self.webdriver,
            "phantom": self.phantom,
            "selenium": self.selenium,
            "headless": self.headless,
            "automation": self.automation,
        }

    @property
    def sub_signatures(self) -> dict[str, str]:
        """Return the non-empty canvas/webgl/audio sub-fingerprints."""
        values = {"canvas": self.canvas, "webgl": self.webgl, "audio": self.audio}
        return {name: value for name, value in values.items() if value}

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dictionary for storage."""
        return {
            "user_agent": self.user_agent,
            "platform": self.platform,
            "language": self.language,
            "timezone": self.timezone,
            "screen_width": self.screen_width,
            "screen_height": self.screen_height,
            "hardware_concurrency": self.hardware_concurrency,
            "device_memory": self.device_memory,
            "touch_support": self.touch_support,
            "mobile": self.mobile,
            "plugins": list(self.plugins),
            "webdriver": self.webdriver,
            "phantom": self.phantom,
            "selenium": self.selenium,
            "headless": self.headless,
            "automation": self.automation,
            "canvas": self.canvas,
            "webgl": self.webgl,
            "audio": self.audio,
            "webgl_vendor": self.webgl_vendor,
            "webgl_renderer": self.webgl_renderer,
            "permissions_api": self.permissions_api,
            "media_devices_api": self.media_devices_api,
            "timing_ms": self.timing_ms,
            "canvas_evasion": self.canvas_evasion,
            "anti_detect_properties": list(self.anti_detect_properties),
            "capabilities": self.capabilities.to_dict() if self.has_capabilities else None,
        }


@dataclass(frozen=True)
class TrackedAction:
    """An immutable record of one identity action.

    Attributes:
        identity_id: The identity that performed the action.
        action_type: What kind of action it was.
        occurred_at: When the action happened.
        referrer: HTTP referrer for visits (empty for direct access).
        target: Optional URL id or short code the action refers to.
        action_id: Unique identifier for this action.
    """

    identity_id: str
    action_type: ActionType
    occurred_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    referrer: str | None = None
    target: str | None = None
    action_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def is_direct(self) -> bool:
        """Return True if the action carried no referrer."""
        return not self.referrer
