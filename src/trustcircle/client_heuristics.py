"""
Client-side anti-automation heuristics.

Runs on the scanning or reporting device against a snapshot of its browser
environment. The detectors are advisory: they produce a local risk score and
a single classification label. Only the label and a coarse severity leave
the device (``SecurityAssessment.to_report``); the raw signals never do.
"""

from dataclasses import dataclass, field
import re
from typing import Any, Dict, FrozenSet, List, Optional

import structlog

from .constants import (
    AUTOMATION_DOCUMENT_ATTRIBUTES,
    AUTOMATION_GLOBALS,
    EMULATOR_UA_INDICATORS,
    HEADLESS_GLOBALS,
    MIN_HEADLESS_SIGNALS,
    RISK_WEIGHTS,
    SOFTWARE_RENDERER_INDICATORS,
)
from .threats import threat_severity

# Initialize structured logger
logger = structlog.get_logger(__name__)

_MOBILE_UA = re.compile(r"Android|iPhone|iPad", re.IGNORECASE)
_PHONE_UA = re.compile(r"Android|iPhone", re.IGNORECASE)
_IOS_UA = re.compile(r"iPhone|iPad", re.IGNORECASE)
_DESKTOP_PLATFORM = re.compile(r"Win|Mac|Linux", re.IGNORECASE)
_ARM_PLATFORM = re.compile(r"arm", re.IGNORECASE)
_CHROME_UA = re.compile(r"Chrome/", re.IGNORECASE)


@dataclass
class ClientEnvironment:
    """
    Snapshot of the signals a browser exposes.

    Parameters
    ----------
    user_agent : str
        ``navigator.userAgent``.
    platform : str
        ``navigator.platform``.
    webdriver : bool
        ``navigator.webdriver``.
    plugins_count : int, optional
        ``navigator.plugins.length``; None when the API is absent.
    languages : list of str
        ``navigator.languages``.
    window_globals : frozenset of str
        Names defined on ``window`` (only the ones of interest need be listed).
    document_attributes : frozenset of str
        Attributes present on ``document.documentElement``.
    has_chrome_object : bool
        Whether ``window.chrome`` exists.
    gpu_renderer : str, optional
        Unmasked WebGL renderer string.
    max_touch_points, screen_width, color_depth, hardware_concurrency : int
        Display and hardware signals.
    """

    user_agent: str
    platform: str = ""
    webdriver: bool = False
    plugins_count: Optional[int] = None
    languages: List[str] = field(default_factory=list)
    window_globals: FrozenSet[str] = frozenset()
    document_attributes: FrozenSet[str] = frozenset()
    has_chrome_object: bool = True
    gpu_renderer: Optional[str] = None
    max_touch_points: int = 0
    screen_width: int = 0
    color_depth: int = 24
    hardware_concurrency: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClientEnvironment":
        return cls(
            user_agent=data.get("user_agent", ""),
            platform=data.get("platform", ""),
            webdriver=bool(data.get("webdriver", False)),
            plugins_count=data.get("plugins_count"),
            languages=list(data.get("languages") or []),
            window_globals=frozenset(data.get("window_globals") or ()),
            document_attributes=frozenset(data.get("document_attributes") or ()),
            has_chrome_object=bool(data.get("has_chrome_object", True)),
            gpu_renderer=data.get("gpu_renderer"),
            max_touch_points=int(data.get("max_touch_points", 0)),
            screen_width=int(data.get("screen_width", 0)),
            color_depth=int(data.get("color_depth", 24)),
            hardware_concurrency=int(data.get("hardware_concurrency", 0)),
        )


def detect_emulator(env: ClientEnvironment) -> bool:
    """User agent or GPU renderer associated with emulators and software rasterizers."""
    ua = env.user_agent.lower()
    if any(indicator in ua for indicator in EMULATOR_UA_INDICATORS):
        return True
    renderer = (env.gpu_renderer or "").lower()
    return any(indicator in renderer for indicator in SOFTWARE_RENDERER_INDICATORS)


def detect_headless(env: ClientEnvironment) -> bool:
    """A ``headless`` user agent, or at least two headless fingerprints."""
    if "headless" in env.user_agent.lower():
        return True

    signals = [
        env.webdriver,
        env.plugins_count == 0,
        not env.languages,
        any(name in env.window_globals for name in HEADLESS_GLOBALS),
        bool(_CHROME_UA.search(env.user_agent)) and not env.has_chrome_object,
    ]
    return sum(signals) >= MIN_HEADLESS_SIGNALS


def detect_automation(env: ClientEnvironment) -> bool:
    """WebDriver flag, automation-driver globals or driver document attributes."""
    if env.webdriver:
        return True
    if any(name in env.window_globals for name in AUTOMATION_GLOBALS):
        return True
    return any(attr in env.document_attributes for attr in AUTOMATION_DOCUMENT_ATTRIBUTES)


def detect_inconsistencies(env: ClientEnvironment) -> List[str]:
    """Flags for signal combinations real devices do not produce."""
    flags = []
    ua = env.user_agent

    if (
        _MOBILE_UA.search(ua)
        and _DESKTOP_PLATFORM.search(env.platform)
        and not _ARM_PLATFORM.search(env.platform)
    ):
        flags.append("ua_platform_mismatch")

    if _MOBILE_UA.search(ua) and env.max_touch_points == 0:
        flags.append("touch_mismatch")

    if env.screen_width > 1920 and env.color_depth < 24:
        flags.append("display_mismatch")

    if _PHONE_UA.search(ua) and env.hardware_concurrency > 16:
        flags.append("suspicious_cpu_count")

    # iOS Safari exposes no plugin list at all
    if env.plugins_count == 0 and not _IOS_UA.search(ua):
        flags.append("no_plugins")

    return flags


@dataclass
class SecurityAssessment:
    """Local verdict; ``to_report`` is the only part ever transmitted."""

    emulator: bool
    headless: bool
    automation: bool
    inconsistency_flags: List[str]
    risk_score: float
    label: Optional[str]

    @property
    def severity(self) -> Optional[str]:
        return threat_severity(self.label) if self.label else None

    @property
    def suspicious(self) -> bool:
        return self.label is not None

    def to_report(self, fingerprint_hash: Optional[str] = None) -> Optional[Dict[str, str]]:
        """Label and coarse severity, or None when nothing was detected."""
        if self.label is None:
            return None
        report = {"threat_type": self.label, "severity": self.severity}
        if fingerprint_hash:
            report["fingerprint_hash"] = fingerprint_hash
        return report


def calculate_risk_score(
    emulator: bool, headless: bool, automation: bool, inconsistency_flags: List[str]
) -> float:
    """Weighted sum of detector outcomes, capped at 1.0."""
    score = 0.0
    if emulator:
        score += RISK_WEIGHTS["emulator"]
    if headless:
        score += RISK_WEIGHTS["headless"]
    if automation:
        score += RISK_WEIGHTS["automation"]
    score += RISK_WEIGHTS["inconsistency"] * len(inconsistency_flags)
    return min(score, 1.0)


def assess_environment(env: ClientEnvironment) -> SecurityAssessment:
    """
    Run every detector and pick the most severe label.

    Label priority: automation, headless, emulator, inconsistency.
    """
    emulator = detect_emulator(env)
    headless = detect_headless(env)
    automation = detect_automation(env)
    flags = detect_inconsistencies(env)

    label = None
    if automation:
        label = "automation"
    elif headless:
        label = "headless"
    elif emulator:
        label = "emulator"
    elif flags:
        label = "inconsistency"

    assessment = SecurityAssessment(
        emulator=emulator,
        headless=headless,
        automation=automation,
        inconsistency_flags=flags,
        risk_score=calculate_risk_score(emulator, headless, automation, flags),
        label=label,
    )
    if label:
        logger.debug("Client environment flagged", label=label, risk_score=assessment.risk_score)
    return assessment
