"""
Tests for badge seed derivation, persistence and animation parameter matching.
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from trustcircle.data_models import AnimationParameters
from trustcircle.exceptions import ConfigurationError, InputValidationError
from trustcircle.seed_engine import (
    SeedEngine,
    get_animation_parameters,
    verify_seed_match,
    window_bounds,
    window_index,
)
from trustcircle.store import seed_key


def test_same_seed_yields_identical_parameters():
    """Animation parameters are a pure function of the seed."""
    assert get_animation_parameters("abc123") == get_animation_parameters("abc123")


def test_parameters_stay_in_range(seed_engine):
    """Every component lands inside its documented range."""
    for window in range(50):
        params = get_animation_parameters(seed_engine.derive_seed("zone-a", window))
        assert 0.0 <= params.phase_offset <= 1.0
        assert 0.8 <= params.speed_multiplier <= 1.2
        assert 0.7 <= params.color_intensity <= 1.0
        assert 0.0 <= params.motion_modifier <= 1.0
        assert params.micro_variation == 0.0


def test_micro_variation_is_per_device_and_small():
    """Device tokens add a bounded offset without changing the compared tuple."""
    base = get_animation_parameters("seed")
    a = get_animation_parameters("seed", "a" * 64)
    b = get_animation_parameters("seed", "b" * 64)
    assert 0.0 <= a.micro_variation <= 0.02
    assert a.micro_variation != b.micro_variation
    assert a.as_tuple() == base.as_tuple()


def test_empty_seed_rejected():
    with pytest.raises(InputValidationError):
        get_animation_parameters("")


def test_seed_is_deterministic_per_zone_and_window(seed_engine, now):
    """Same zone and window give the same seed; other zones or windows differ."""
    window = seed_engine.window_index(now)
    assert seed_engine.derive_seed("zone-a", window) == seed_engine.derive_seed("zone-a", window)
    assert seed_engine.derive_seed("zone-a", window) != seed_engine.derive_seed("zone-b", window)
    assert seed_engine.derive_seed("zone-a", window) != seed_engine.derive_seed("zone-a", window + 1)


def test_seed_depends_on_secret(store, now):
    one = SeedEngine(store, secret="secret-one")
    two = SeedEngine(store, secret="secret-two")
    window = one.window_index(now)
    assert one.derive_seed("zone-a", window) != two.derive_seed("zone-a", window)


def test_empty_secret_is_a_configuration_error(store):
    with pytest.raises(ConfigurationError):
        SeedEngine(store, secret="")


def test_get_or_create_seed_persists_window_record(seed_engine, store, now):
    """The seed is written once per window and read back afterwards."""
    seed = seed_engine.get_or_create_seed("zone-a", now)
    assert store.get(seed_key("zone-a", seed.window_index))["seed"] == seed.seed
    assert seed.is_valid_at(now)
    assert seed_engine.get_or_create_seed("zone-a", now + timedelta(seconds=1)).seed == seed.seed


def test_seed_rotates_with_window(seed_engine, now):
    first = seed_engine.get_or_create_seed("zone-a", now)
    later = seed_engine.get_or_create_seed("zone-a", now + timedelta(seconds=60))
    assert later.window_index == first.window_index + 1
    assert later.seed != first.seed


def test_get_or_create_seed_requires_zone(seed_engine, now):
    with pytest.raises(InputValidationError):
        seed_engine.get_or_create_seed("", now)


def test_window_bounds_cover_window(now):
    window = window_index(now, 60)
    start, end = window_bounds(window, 60)
    assert start <= now < end
    assert (end - start).total_seconds() == 60


def test_is_current_seed_accepts_previous_window_only(seed_engine, now):
    """A rotation boundary tolerates one stale window, never two."""
    window = seed_engine.window_index(now)
    assert seed_engine.is_current_seed("zone-a", seed_engine.derive_seed("zone-a", window), now)
    assert seed_engine.is_current_seed("zone-a", seed_engine.derive_seed("zone-a", window - 1), now)
    assert not seed_engine.is_current_seed("zone-a", seed_engine.derive_seed("zone-a", window - 2), now)
    assert not seed_engine.is_current_seed("zone-b", seed_engine.derive_seed("zone-a", window), now)
    assert not seed_engine.is_current_seed("zone-a", "", now)


def test_verify_seed_match_relative_band():
    expected = AnimationParameters(0.5, 1.0, 0.8, 0.4)
    inside = AnimationParameters(0.55, 1.1, 0.85, 0.45)
    outside = AnimationParameters(0.5, 1.0, 0.8, 0.47)
    assert verify_seed_match(inside, expected, 0.15)
    # One component out of its band is enough to fail
    assert not verify_seed_match(outside, expected, 0.15)


@pytest.mark.parametrize("tolerance", [0.0, 1.0, -0.1, 1.5])
def test_verify_seed_match_rejects_bad_tolerance(tolerance):
    params = AnimationParameters(0.5, 1.0, 0.8, 0.4)
    with pytest.raises(InputValidationError):
        verify_seed_match(params, params, tolerance)


def test_consecutive_windows_rarely_collide(seed_engine):
    """Parameters of neighboring windows almost never match within tolerance."""
    params = [
        get_animation_parameters(seed_engine.derive_seed("zone-a", window))
        for window in range(201)
    ]
    collisions = sum(
        verify_seed_match(params[i + 1], params[i], 0.15) for i in range(200)
    )
    assert collisions <= 10


def test_matches_current_accepts_previous_window_parameters(seed_engine, now):
    previous = get_animation_parameters(
        seed_engine.derive_seed("zone-a", seed_engine.window_index(now) - 1)
    )
    assert seed_engine.matches_current("zone-a", previous, now)
    stale = get_animation_parameters(
        seed_engine.derive_seed("zone-a", seed_engine.window_index(now) - 5)
    )
    expected = seed_engine.expected_parameters("zone-a", now)
    assert seed_engine.matches_current("zone-a", stale, now) == any(
        verify_seed_match(stale, e, 0.15) for e in expected
    )
