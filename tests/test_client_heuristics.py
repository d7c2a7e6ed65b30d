"""
Tests for the client-side anti-automation heuristics.
"""

from __future__ import annotations

import pytest

from trustcircle.client_heuristics import (
    ClientEnvironment,
    assess_environment,
    calculate_risk_score,
    detect_automation,
    detect_emulator,
    detect_headless,
    detect_inconsistencies,
)

IPHONE_UA = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_4 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.4 Mobile/15E148 Safari/604.1"
)
DESKTOP_CHROME_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36"
)
HEADLESS_UA = DESKTOP_CHROME_UA.replace("Chrome/", "HeadlessChrome/")
EMULATOR_UA = (
    "Mozilla/5.0 (Linux; Android 14; sdk_gphone64_x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/122.0.0.0 Mobile Safari/537.36"
)


@pytest.fixture
def iphone():
    return ClientEnvironment(
        user_agent=IPHONE_UA,
        platform="iPhone",
        plugins_count=0,
        languages=["en-US"],
        has_chrome_object=False,
        gpu_renderer="Apple GPU",
        max_touch_points=5,
        screen_width=390,
        hardware_concurrency=6,
    )


@pytest.fixture
def desktop():
    return ClientEnvironment(
        user_agent=DESKTOP_CHROME_UA,
        platform="Win32",
        plugins_count=5,
        languages=["en-US", "en"],
        gpu_renderer="ANGLE (NVIDIA GeForce RTX 3060)",
        screen_width=1920,
        hardware_concurrency=12,
    )


def test_real_iphone_is_clean(iphone):
    """iOS reports no plugins; that alone is not suspicious."""
    assessment = assess_environment(iphone)
    assert assessment.label is None
    assert not assessment.suspicious
    assert assessment.risk_score == 0.0
    assert assessment.to_report("fp") is None


def test_real_desktop_is_clean(desktop):
    assert assess_environment(desktop).label is None


def test_webdriver_flag_is_automation(desktop):
    desktop.webdriver = True
    assessment = assess_environment(desktop)
    assert assessment.automation
    assert assessment.label == "automation"
    assert assessment.severity == "high"


@pytest.mark.parametrize("name", ["__webdriver_evaluate", "_selenium", "$cdc_asdjflasutopfhvcZLmcfl_"])
def test_driver_globals_are_automation(desktop, name):
    desktop.window_globals = frozenset({name})
    assert detect_automation(desktop)


def test_driver_document_attribute_is_automation(desktop):
    desktop.document_attributes = frozenset({"webdriver"})
    assert detect_automation(desktop)


def test_headless_user_agent(desktop):
    desktop.user_agent = HEADLESS_UA
    assessment = assess_environment(desktop)
    assert assessment.headless
    assert assessment.label == "headless"


def test_two_weak_signals_make_headless(desktop):
    desktop.plugins_count = 0
    assert not detect_headless(desktop)
    desktop.has_chrome_object = False
    assert detect_headless(desktop)


def test_phantom_global_counts_toward_headless(desktop):
    desktop.languages = []
    desktop.window_globals = frozenset({"_phantom"})
    assert detect_headless(desktop)


def test_emulator_user_agent():
    env = ClientEnvironment(
        user_agent=EMULATOR_UA,
        platform="Linux armv8l",
        plugins_count=3,
        languages=["en-US"],
        max_touch_points=5,
    )
    assessment = assess_environment(env)
    assert assessment.emulator
    assert assessment.label == "emulator"
    assert assessment.to_report() == {"threat_type": "emulator", "severity": "medium"}


def test_software_renderer_is_emulator(desktop):
    desktop.gpu_renderer = "Google SwiftShader"
    assert detect_emulator(desktop)


def test_inconsistency_flags():
    env = ClientEnvironment(
        user_agent="Mozilla/5.0 (Linux; Android 14; Pixel 8) Chrome/122.0.0.0 Mobile",
        platform="Win32",
        plugins_count=0,
        languages=["en-US"],
        max_touch_points=0,
        screen_width=2560,
        color_depth=16,
        hardware_concurrency=32,
    )
    assert detect_inconsistencies(env) == [
        "ua_platform_mismatch",
        "touch_mismatch",
        "display_mismatch",
        "suspicious_cpu_count",
        "no_plugins",
    ]


def test_arm_linux_platform_is_consistent():
    env = ClientEnvironment(
        user_agent=EMULATOR_UA.replace("sdk_gphone64_x86_64", "Pixel 8"),
        platform="Linux armv81",
        plugins_count=3,
        max_touch_points=5,
    )
    assert "ua_platform_mismatch" not in detect_inconsistencies(env)


def test_inconsistency_only_label(desktop):
    desktop.screen_width = 2560
    desktop.color_depth = 16
    assessment = assess_environment(desktop)
    assert assessment.label == "inconsistency"
    assert assessment.severity == "low"
    assert assessment.risk_score == pytest.approx(0.1)


def test_risk_score_is_capped():
    assert calculate_risk_score(True, True, True, ["a", "b"]) == 1.0
    assert calculate_risk_score(True, False, False, ["a"]) == pytest.approx(0.4)


def test_report_carries_only_label_and_severity(desktop):
    desktop.webdriver = True
    desktop.plugins_count = 0
    report = assess_environment(desktop).to_report("fp-123")
    assert report == {"threat_type": "automation", "severity": "high", "fingerprint_hash": "fp-123"}


def test_from_dict():
    env = ClientEnvironment.from_dict(
        {
            "user_agent": DESKTOP_CHROME_UA,
            "webdriver": 1,
            "window_globals": ["_selenium"],
            "languages": None,
            "max_touch_points": "2",
        }
    )
    assert env.webdriver is True
    assert env.window_globals == frozenset({"_selenium"})
    assert env.languages == []
    assert env.max_touch_points == 2
    assert env.plugins_count is None
