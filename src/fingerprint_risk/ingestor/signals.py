"""Normalization of raw client signal bundles.

The bundle arrives from an uncontrolled browser client as an untyped
key/value map. Keys may be camelCase (as collected in the browser) or
snake_case (as stored), and may be split across nested ``deviceInfo`` /
``browserInfo`` blobs. Nothing here raises: bad values fall back to
defaults.
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
from collections.abc import Mapping
from typing import Any

from fingerprint_risk.ingestor.models import MAX_DEVICE_VALUE, Capabilities, DeviceSignals

logger = logging.getLogger(__name__)

_NESTED_KEYS = ("deviceInfo", "device_info", "browserInfo", "browser_info")
_TRUE_STRINGS = frozenset({"true", "1", "yes"})

# Window properties injected by anti-detect browsers and automation drivers
_ANTI_DETECT_FLAGS = ("gologin", "puppeteer", "playwright", "stealthMode", "stealth_mode")


def _sources(raw: Mapping[str, Any]) -> list[Mapping[str, Any]]:
    """Return the top-level map followed by any nested signal blobs."""
    sources: list[Mapping[str, Any]] = [raw]
    for key in _NESTED_KEYS:
        nested = raw.get(key)
        if isinstance(nested, Mapping):
            sources.append(nested)
    return sources


def _lookup(sources: list[Mapping[str, Any]], *keys: str) -> Any:
    """Return the first non-null value for any of ``keys``."""
    for source in sources:
        for key in keys:
            value = source.get(key)
            if value is not None:
                return value
    return None


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    if isinstance(value, (int, float)):
        return value != 0
    return False


def _as_optional_bool(value: Any) -> bool | None:
    return None if value is None else _as_bool(value)


def _as_float(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return 0.0
    if not math.isfinite(number) or number < 0:
        return 0.0
    return number


def _as_int(value: Any) -> int:
    number = _as_float(value)
    if number > MAX_DEVICE_VALUE:
        return 0
    return int(number)


def _as_str(value: Any) -> str:
    if value is None or isinstance(value, bool):
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)):
        try:
            return str(value)
        except ValueError:
            # ints past the interpreter digit limit
            return ""
    try:
        return json.dumps(value, sort_keys=True, default=str)
    except (TypeError, ValueError):
        return ""


def _as_str_tuple(value: Any) -> tuple[str, ...]:
    if not isinstance(value, (list, tuple)):
        return ()
    names = []
    for item in value:
        if isinstance(item, Mapping):
            name = _as_str(item.get("name"))
        else:
            name = _as_str(item)
        if name:
            names.append(name)
    return tuple(names)


def _parse_resolution(sources: list[Mapping[str, Any]]) -> tuple[int, int]:
    """Parse a screen resolution from any of its client encodings."""
    value = _lookup(sources, "screenResolution", "screen_resolution")
    if isinstance(value, str) and "x" in value.lower():
        width, _, height = value.lower().partition("x")
        return _as_int(width.strip()), _as_int(height.strip())
    if isinstance(value, (list, tuple)) and len(value) >= 2:
        return _as_int(value[0]), _as_int(value[1])
    if isinstance(value, Mapping):
        return _as_int(value.get("width")), _as_int(value.get("height"))

    width = _lookup(sources, "screen_width", "screenWidth")
    height = _lookup(sources, "screen_height", "screenHeight")
    if width is not None or height is not None:
        return _as_int(width), _as_int(height)

    screen = _lookup(sources, "screen")
    if isinstance(screen, Mapping):
        return _as_int(screen.get("width")), _as_int(screen.get("height"))
    return 0, 0


def _parse_capabilities(sources: list[Mapping[str, Any]]) -> tuple[Capabilities, bool]:
    caps = _lookup(sources, "capabilities")
    if not isinstance(caps, Mapping):
        return Capabilities(), False

    def flag(*keys: str) -> bool:
        return _as_bool(_lookup([caps], *keys))

    ratio = _as_float(_lookup([caps], "devicePixelRatio", "device_pixel_ratio")) or 1.0
    return (
        Capabilities(
            webgl=flag("webgl"),
            webgl2=flag("webgl2"),
            local_storage=flag("localStorage", "local_storage"),
            session_storage=flag("sessionStorage", "session_storage"),
            indexed_db=flag("indexedDB", "indexed_db"),
            service_worker=flag("serviceWorker", "service_worker"),
            web_audio=flag("webAudio", "web_audio"),
            web_rtc=flag("webRTC", "web_rtc"),
            geolocation=flag("geolocation"),
            notifications=flag("notifications"),
            touch_events=flag("touchEvents", "touch_events"),
            device_pixel_ratio=ratio,
        ),
        True,
    )


def _parse_anti_detect(sources: list[Mapping[str, Any]]) -> tuple[str, ...]:
    names = list(_as_str_tuple(_lookup(sources, "antiDetectProperties", "anti_detect_properties")))
    for flag in _ANTI_DETECT_FLAGS:
        if _as_bool(_lookup(sources, flag)):
            name = "stealth_mode" if flag == "stealthMode" else flag
            if name not in names:
                names.append(name)
    return tuple(names)


def normalize_signals(raw: Any) -> DeviceSignals:
    """Normalize a raw client signal bundle into DeviceSignals.

    Args:
        raw: Untyped bundle, normally a JSON object. Any other value
            (None, list, string) yields an all-default record.

    Returns:
        DeviceSignals with every missing or malformed field defaulted.
    """
    if not isinstance(raw, Mapping):
        if raw is not None:
            logger.debug("Ignoring non-mapping signal bundle of type %s", type(raw).__name__)
        return DeviceSignals()

    sources = _sources(raw)
    capabilities, has_capabilities = _parse_capabilities(sources)
    caps_source = [c for c in (_lookup(sources, "capabilities"),) if isinstance(c, Mapping)]
    width, height = _parse_resolution(sources)

    automation_signals = _as_str_tuple(_lookup(sources, "automationSignals", "automation_signals"))

    return DeviceSignals(
        user_agent=_as_str(_lookup(sources, "userAgent", "user_agent")),
        platform=_as_str(_lookup(sources, "platform")),
        language=_as_str(_lookup(sources, "language")),
        timezone=_as_str(_lookup(sources, "timezone")),
        screen_width=width,
        screen_height=height,
        hardware_concurrency=_as_int(
            _lookup(sources + caps_source, "hardwareConcurrency", "hardware_concurrency")
        ),
        device_memory=_as_float(_lookup(sources + caps_source, "deviceMemory", "device_memory")),
        touch_support=_as_bool(_lookup(sources, "touchSupport", "touch_support")),
        mobile=_as_bool(_lookup(sources, "mobile")),
        plugins=_as_str_tuple(_lookup(sources, "plugins")),
        webdriver=_as_bool(_lookup(sources, "webdriver")),
        phantom=_as_bool(_lookup(sources, "phantom")),
        selenium=_as_bool(_lookup(sources, "selenium")),
        headless=_as_bool(_lookup(sources, "headless")),
        automation=_as_bool(_lookup(sources, "automation")),
        canvas=_as_str(_lookup(sources, "canvas")),
        webgl=_as_str(_lookup(sources, "webglFingerprint", "webgl_fingerprint", "webgl")),
        audio=_as_str(_lookup(sources, "audio")),
        webgl_vendor=_as_str(_lookup(sources, "webglVendor", "webgl_vendor")),
        webgl_renderer=_as_str(_lookup(sources, "webglRenderer", "webgl_renderer")),
        permissions_api=_as_optional_bool(
            _lookup(sources + caps_source, "permissionsApi", "permissions_api", "permissions")
        ),
        media_devices_api=_as_optional_bool(
            _lookup(sources + caps_source, "mediaDevicesApi", "media_devices_api", "mediaDevices")
        ),
        timing_ms=_as_float(_lookup(sources, "timingMs", "timing_ms", "timing")),
        canvas_evasion=_as_bool(_lookup(sources, "canvasEvasion", "canvas_evasion"))
        or "canvas_evasion" in automation_signals,
        anti_detect_properties=_parse_anti_detect(sources),
        capabilities=capabilities,
        has_capabilities=has_capabilities,
    )


def derive_signal_hash(raw: Any, signals: DeviceSignals | None = None) -> str:
    """Return the stable device signal hash for a raw bundle.

    Uses the upstream visitor id when the client supplied one, otherwise
    hashes the stable device characteristics.

    Args:
        raw: Untyped signal bundle.
        signals: Already-normalized signals, to avoid normalizing twice.

    Returns:
        Hash string. Not guaranteed unique across accounts.
    """
    if isinstance(raw, Mapping):
        for key in ("visitorId", "visitor_id", "deviceSignalHash", "device_signal_hash"):
            value = raw.get(key)
            if isinstance(value, str) and value:
                return value

    if signals is None:
        signals = normalize_signals(raw)

    stable = {
        "user_agent": signals.user_agent,
        "platform": signals.platform,
        "language": signals.language,
        "timezone": signals.timezone,
        "screen": [signals.screen_width, signals.screen_height],
        "hardware_concurrency": signals.hardware_concurrency,
        "device_memory": signals.device_memory,
        "canvas": signals.canvas,
        "webgl": signals.webgl,
        "audio": signals.audio,
        "plugins": list(signals.plugins),
    }
    payload = json.dumps(stable, sort_keys=True)
    return hashlib.sha256(payload.encode()).hexdigest()
