"""
Tests for the optical pattern codec and device pattern verification.
"""

from __future__ import annotations

from datetime import timedelta

import numpy as np
import pytest

from trustcircle.data_models import DecodedPattern
from trustcircle.exceptions import (
    ChecksumMismatchError,
    InputValidationError,
    LowConfidenceError,
    MissingDeviceTokenError,
    PrefixNotFoundError,
)
from trustcircle.pattern_codec import (
    PatternVerifier,
    bits_to_pattern,
    brightness_multiplier,
    compute_checksum,
    decode_pattern,
    device_token_to_prefix,
    encode_pattern,
    encode_to_samples,
    pattern_to_bits,
    prefix_to_hex,
)
from trustcircle.utils import hash_data

# Twelve ones, twelve zeros
BALANCED_PATTERN = 0xA5A5A5


@pytest.mark.parametrize("seed", ["alpha", "beta", "gamma", "0000", "ffff"])
def test_prefix_round_trip(seed):
    """The hex rendering of the prefix is the token's first four characters."""
    token = hash_data(seed)
    assert prefix_to_hex(device_token_to_prefix(token)) == token[:4]


@pytest.mark.parametrize("token", ["", "ab", "zzzz1234"])
def test_invalid_prefix_maps_to_zero(token):
    assert device_token_to_prefix(token) == 0


def test_prefix_to_hex_is_zero_padded():
    assert prefix_to_hex(0x00AF) == "00af"


def test_encode_pattern_layout():
    token = hash_data("device")
    pattern = encode_pattern(token, "secret")
    assert pattern >> 8 == int(token[:4], 16)
    assert pattern & 0xFF == compute_checksum(token, "secret")
    assert pattern < 2 ** 24


def test_encode_pattern_requires_token():
    with pytest.raises(MissingDeviceTokenError):
        encode_pattern("", "secret")


def test_bits_are_most_significant_first():
    bits = pattern_to_bits(0x800001)
    assert bits[0] == 1 and bits[-1] == 1 and sum(bits) == 2
    assert bits_to_pattern(bits) == 0x800001


def test_bits_to_pattern_requires_24_bits():
    with pytest.raises(InputValidationError):
        bits_to_pattern([1, 0, 1])


def test_brightness_multiplier_slots():
    """Each 150 ms slot renders its bit; the cycle repeats every 3.6 s."""
    pattern = 0x800000
    assert brightness_multiplier(pattern, 0) == pytest.approx(1.02)
    assert brightness_multiplier(pattern, 149) == pytest.approx(1.02)
    assert brightness_multiplier(pattern, 150) == pytest.approx(0.98)
    assert brightness_multiplier(pattern, 3600) == pytest.approx(1.02)


def test_noise_free_decode_recovers_exact_pattern():
    token = hash_data("noise-free")
    pattern = encode_pattern(token, "secret")
    decoded = decode_pattern(encode_to_samples(pattern))
    assert decoded is not None
    assert decoded.pattern == pattern
    assert decoded.prefix_hex == token[:4]


def test_balanced_noise_free_decode_has_full_confidence():
    decoded = decode_pattern(encode_to_samples(BALANCED_PATTERN))
    assert decoded.confidence == pytest.approx(1.0)


def test_small_noise_still_recovers_pattern():
    rng = np.random.default_rng(7)
    for _ in range(10):
        samples = encode_to_samples(BALANCED_PATTERN, noise_std=0.005, rng=rng)
        assert decode_pattern(samples).pattern == BALANCED_PATTERN


def test_confidence_decreases_as_noise_increases():
    """Average decode confidence falls monotonically with injected noise."""
    rng = np.random.default_rng(42)
    averages = []
    for noise in (0.0, 0.005, 0.01, 0.02):
        confidences = [
            decode_pattern(encode_to_samples(BALANCED_PATTERN, noise_std=noise, rng=rng)).confidence
            for _ in range(25)
        ]
        averages.append(float(np.mean(confidences)))
    assert all(a > b for a, b in zip(averages, averages[1:]))


def test_too_few_samples_yield_no_result():
    assert decode_pattern(np.full(47, 128.0)) is None


def test_dark_series_yields_no_result():
    assert decode_pattern(np.zeros(120)) is None


@pytest.fixture
def verifier(store, seed_engine):
    return PatternVerifier(store, seed_engine, min_confidence=0.2)


def test_verifier_resolves_current_pattern(verifier, paid_device, zone, now):
    pattern = verifier.current_pattern(paid_device.token, zone.zone_id, now)
    decoded = decode_pattern(encode_to_samples(pattern))
    device = verifier.verify(decoded, zone.zone_id, now)
    assert device.token == paid_device.token


def test_verifier_accepts_previous_window(verifier, paid_device, zone, now):
    pattern = verifier.current_pattern(paid_device.token, zone.zone_id, now - timedelta(seconds=60))
    decoded = decode_pattern(encode_to_samples(pattern))
    assert verifier.verify(decoded, zone.zone_id, now).token == paid_device.token


def test_verifier_rejects_forged_checksum(verifier, seed_engine, paid_device, zone, now):
    genuine = {
        compute_checksum(paid_device.token, seed_engine.pattern_secret(zone.zone_id, window))
        for window in seed_engine.live_windows(now)
    }
    checksum = next(c for c in range(256) if c not in genuine)
    forged = DecodedPattern(int(paid_device.prefix, 16), checksum, 0.9)
    with pytest.raises(ChecksumMismatchError):
        verifier.verify(forged, zone.zone_id, now)


def test_verifier_rejects_unknown_prefix(verifier, paid_device, zone, now):
    other_prefix = (int(paid_device.prefix, 16) + 1) % 0x10000
    with pytest.raises(PrefixNotFoundError):
        verifier.verify(DecodedPattern(other_prefix, 0, 0.9), zone.zone_id, now)


def test_verifier_rejects_low_confidence(verifier, paid_device, now):
    with pytest.raises(LowConfidenceError):
        verifier.verify(DecodedPattern(int(paid_device.prefix, 16), 0, 0.1), now=now)
