"""Bot, automation and anti-detect browser detection.

Direct automation flags are scored individually. Anti-detect browsers
(GoLogin, stealth-patched Puppeteer/Playwright and similar) hide those
flags, so they are caught by counting weaker indirect indicators and
emitting a single high-weight finding once enough of them coincide.
"""

from __future__ import annotations

import logging
import re

from fingerprint_risk.detector.models import (
    ActivitySnapshot,
    DetectionResult,
    DetectionThresholds,
    Finding,
)
from fingerprint_risk.ingestor.models import DeviceSignals

logger = logging.getLogger(__name__)

DETECTOR_NAME = "bot"
DEFAULT_THRESHOLDS = DetectionThresholds()

# (flag, weight, severity, reason) in report order
AUTOMATION_FLAG_RULES: tuple[tuple[str, int, int, str], ...] = (
    ("webdriver", 4, 4, "webdriver: browser is driven by WebDriver"),
    ("phantom", 4, 4, "phantom: PhantomJS runtime detected"),
    ("selenium", 4, 4, "selenium: Selenium driver artifacts present"),
    ("headless", 3, 3, "headless: headless browser detected"),
    ("automation", 3, 3, "automation: automation framework flag set"),
)

SUSPICIOUS_UA_PATTERN = re.compile(
    r"gologin|automation|headless|playwright|puppeteer|electron|phantomjs|selenium",
    re.IGNORECASE,
)
SOFTWARE_RENDERER_PATTERN = re.compile(
    r"swiftshader|llvmpipe|softpipe|software|brian paul|mesa offscreen",
    re.IGNORECASE,
)
SUSPICIOUS_PLUGIN_PATTERN = re.compile(
    r"headless|puppeteer|selenium|webdriver|gologin|automation|phantom",
    re.IGNORECASE,
)
DEFAULT_TIMEZONES = frozenset({"", "UTC", "Etc/UTC", "GMT", "Etc/GMT"})


def anti_detect_indicators(
    signals: DeviceSignals,
    thresholds: DetectionThresholds = DEFAULT_THRESHOLDS,
) -> list[str]:
    """Return the names of the anti-detect indicators present.

    Args:
        signals: Normalized device signals.
        thresholds: Policy thresholds.

    Returns:
        Indicator names in a fixed order.
    """
    indicators: list[str] = []

    if signals.anti_detect_properties:
        indicators.append("anti_detect_properties")
    if SUSPICIOUS_UA_PATTERN.search(signals.user_agent):
        indicators.append("suspicious_user_agent")
    # Unreported API flags are unknown, not missing
    if signals.permissions_api is False:
        indicators.append("missing_permissions_api")
    if signals.media_devices_api is False:
        indicators.append("missing_media_devices_api")
    if 0 < signals.timing_ms < thresholds.suspicious_timing_ms:
        indicators.append("timing_anomaly")
    if signals.canvas_evasion:
        indicators.append("canvas_evasion")

    vendor, renderer = signals.webgl_vendor, signals.webgl_renderer
    if SOFTWARE_RENDERER_PATTERN.search(f"{vendor} {renderer}") or bool(vendor) != bool(renderer):
        indicators.append("webgl_spoofing")

    # Stock profiles ship with a UTC clock and no language preference
    if signals.timezone in DEFAULT_TIMEZONES and not signals.language:
        indicators.append("default_locale")

    if any(SUSPICIOUS_PLUGIN_PATTERN.search(name) for name in signals.plugins):
        indicators.append("suspicious_plugins")

    return indicators


def detect_bot_signals(
    snapshot: ActivitySnapshot,
    thresholds: DetectionThresholds = DEFAULT_THRESHOLDS,
) -> DetectionResult:
    """Score automation flags, missing hardware info and anti-detect evidence.

    Args:
        snapshot: Activity snapshot of the identity.
        thresholds: Policy thresholds.

    Returns:
        DetectionResult with bot findings.
    """
    signals = snapshot.signals
    flags = signals.automation_flags
    findings: list[Finding] = [
        Finding(pattern=flag, reason=reason, weight=weight, severity=severity)
        for flag, weight, severity, reason in AUTOMATION_FLAG_RULES
        if flags[flag]
    ]

    if signals.hardware_concurrency == 0:
        findings.append(
            Finding(
                pattern="missing_hardware",
                reason="missing hardware: no hardware concurrency reported",
                weight=2,
                severity=2,
            )
        )
    if signals.device_memory == 0:
        findings.append(
            Finding(
                pattern="missing_memory",
                reason="missing memory: no device memory reported",
                weight=2,
                severity=2,
            )
        )
    if not signals.plugins:
        findings.append(
            Finding(
                pattern="no_plugins",
                reason="no plugins: browser reports zero plugins",
                weight=1,
                severity=1,
            )
        )

    indicators = anti_detect_indicators(signals, thresholds)
    if len(indicators) >= thresholds.anti_detect_min_indicators:
        logger.info(
            "Anti-detect browser suspected for %s: %s",
            snapshot.identity_id,
            ", ".join(indicators),
        )
        findings.append(
            Finding(
                pattern="anti_detect_browser",
                reason=(
                    f"anti-detect browser: {len(indicators)} evasion indicators "
                    f"({', '.join(indicators)})"
                ),
                weight=5,
                severity=4,
            )
        )

    return DetectionResult(detector=DETECTOR_NAME, findings=tuple(findings))
