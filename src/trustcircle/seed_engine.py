"""
Badge seed and animation parameter engine.

A zone's seed is a pure function of (zone, rotation window, server secret):
HMAC-SHA256 keyed by the secret. Nothing about the current seed lives in
process memory; persisted seeds form a time-partitioned table keyed by
``seed:{zone}:{window}`` that is written lazily and kept for audit.

Animation parameters are derived from the seed through SHA-256 so that two
different seeds collide within the matching tolerance only by chance.
"""

from datetime import datetime, timedelta, timezone
import hmac
from typing import List, Optional, Tuple

import structlog

from . import config
from .constants import (
    COLOR_INTENSITY_RANGE,
    DEFAULT_SEED_MATCH_TOLERANCE,
    HASH_SLICE_MAX,
    MICRO_VARIATION_MAX,
    SEED_GRACE_WINDOWS,
    SPEED_MULTIPLIER_RANGE,
)
from .data_models import AnimationParameters, BadgeSeed
from .exceptions import ConfigurationError, InputValidationError
from .store import KeyValueStore, seed_key
from .utils import ensure_utc, hash_data, keyed_digest

# Initialize structured logger
logger = structlog.get_logger(__name__)

# Reference values smaller than this use it as the base of the relative band
_MIN_REFERENCE = 1e-6


def window_index(moment: Optional[datetime] = None, rotation_seconds: Optional[int] = None) -> int:
    """Index of the rotation window containing ``moment``."""
    rotation = rotation_seconds or config.SEED_ROTATION_SECONDS
    return int(ensure_utc(moment).timestamp() // rotation)


def window_bounds(window: int, rotation_seconds: Optional[int] = None) -> Tuple[datetime, datetime]:
    """Return the ``[valid_from, valid_until)`` interval of a window."""
    rotation = rotation_seconds or config.SEED_ROTATION_SECONDS
    start = datetime.fromtimestamp(window * rotation, tz=timezone.utc)
    return start, start + timedelta(seconds=rotation)


def _slice(digest: str, index: int) -> float:
    start = index * 8
    return int(digest[start:start + 8], 16) / HASH_SLICE_MAX


def get_animation_parameters(seed: str, device_token: Optional[str] = None) -> AnimationParameters:
    """
    Map a seed to badge rendering parameters.

    Four consecutive 32-bit slices of SHA-256(seed) are normalized to [0, 1]
    and scaled into each parameter's range.

    Parameters
    ----------
    seed : str
        Badge seed for the current window.
    device_token : str, optional
        When given, adds a small per-device ``micro_variation`` so badges in
        the same zone are not pixel-identical.

    Returns
    -------
    AnimationParameters
        Identical for identical seeds.
    """
    if not seed:
        raise InputValidationError("Seed must be a non-empty string", field="seed")

    digest = hash_data(seed)
    speed_low, speed_high = SPEED_MULTIPLIER_RANGE
    intensity_low, intensity_high = COLOR_INTENSITY_RANGE

    micro_variation = 0.0
    if device_token:
        micro_variation = _slice(hash_data(device_token), 0) * MICRO_VARIATION_MAX

    return AnimationParameters(
        phase_offset=_slice(digest, 0),
        speed_multiplier=speed_low + _slice(digest, 1) * (speed_high - speed_low),
        color_intensity=intensity_low
        + _slice(digest, 2) * (intensity_high - intensity_low),
        motion_modifier=_slice(digest, 3),
        micro_variation=micro_variation,
    )


def verify_seed_match(
    observed: AnimationParameters,
    expected: AnimationParameters,
    tolerance: float = DEFAULT_SEED_MATCH_TOLERANCE,
) -> bool:
    """
    Compare scanned parameters to expected ones with a relative band.

    Every component must satisfy ``|o - e| <= tolerance * |e|``; a single
    component outside its band fails the match.
    """
    if not 0.0 < tolerance < 1.0:
        raise InputValidationError("tolerance must be between 0 and 1", field="tolerance")

    for observed_value, expected_value in zip(observed.as_tuple(), expected.as_tuple()):
        band = tolerance * max(abs(expected_value), _MIN_REFERENCE)
        if abs(observed_value - expected_value) > band:
            return False
    return True


class SeedEngine:
    """
    Derives, persists and checks zone seeds.

    Parameters
    ----------
    store : KeyValueStore
        Holds the ``seed:{zone}:{window}`` table.
    secret : str, optional
        Server-held key; defaults to ``config.BADGE_SEED_SECRET``.
    rotation_seconds : int, optional
        Window length; defaults to ``config.SEED_ROTATION_SECONDS``.
    """

    def __init__(
        self,
        store: KeyValueStore,
        secret: Optional[str] = None,
        rotation_seconds: Optional[int] = None,
    ) -> None:
        self.store = store
        self.secret = secret if secret is not None else config.BADGE_SEED_SECRET
        self.rotation_seconds = rotation_seconds or config.SEED_ROTATION_SECONDS

        if not self.secret:
            raise ConfigurationError("Badge seed secret is empty", config_key="BADGE_SEED_SECRET")

        if secret is None and config.using_default_secret():
            logger.warning("Using development badge seed secret")

    def window_index(self, moment: Optional[datetime] = None) -> int:
        return window_index(moment, self.rotation_seconds)

    def derive_seed(self, zone_id: str, window: int) -> str:
        """Deterministic seed for a zone and window."""
        return keyed_digest(self.secret, f"{zone_id}:{window}")

    def pattern_secret(self, zone_id: str, window: int) -> str:
        """Rotating per-zone secret that keys the optical pattern checksum."""
        return keyed_digest(self.secret, f"pattern:{zone_id}:{window}")

    def get_or_create_seed(self, zone_id: str, now: Optional[datetime] = None) -> BadgeSeed:
        """
        Return the zone's seed for the window containing ``now``.

        The record is created and persisted on first request; concurrent
        creators converge on the same value since the seed is derived.
        """
        if not zone_id:
            raise InputValidationError("Missing zone id", field="zone_id")

        window = self.window_index(now)
        key = seed_key(zone_id, window)
        record = self.store.get(key)
        if record is not None:
            return BadgeSeed.from_dict(record)

        valid_from, valid_until = window_bounds(window, self.rotation_seconds)
        seed = BadgeSeed(
            zone_id=zone_id,
            seed=self.derive_seed(zone_id, window),
            window_index=window,
            valid_from=valid_from,
            valid_until=valid_until,
        )
        if self.store.put_if_absent(key, seed.to_dict()):
            logger.debug("Badge seed created", zone_id=zone_id, window=window)
        return seed

    def live_windows(self, now: Optional[datetime] = None, grace_windows: int = SEED_GRACE_WINDOWS) -> List[int]:
        """Current window first, then up to ``grace_windows`` previous ones."""
        current = self.window_index(now)
        return [current - offset for offset in range(grace_windows + 1)]

    def is_current_seed(
        self,
        zone_id: str,
        seed: str,
        now: Optional[datetime] = None,
        grace_windows: int = SEED_GRACE_WINDOWS,
    ) -> bool:
        """True if ``seed`` is the zone's seed for a live window."""
        if not seed:
            return False
        return any(
            hmac.compare_digest(seed, self.derive_seed(zone_id, window))
            for window in self.live_windows(now, grace_windows)
        )

    def expected_parameters(
        self,
        zone_id: str,
        now: Optional[datetime] = None,
        grace_windows: int = SEED_GRACE_WINDOWS,
    ) -> List[AnimationParameters]:
        """Animation parameters for each live window, current first."""
        self.get_or_create_seed(zone_id, now)
        return [
            get_animation_parameters(self.derive_seed(zone_id, window))
            for window in self.live_windows(now, grace_windows)
        ]

    def matches_current(
        self,
        zone_id: str,
        observed: AnimationParameters,
        now: Optional[datetime] = None,
        tolerance: Optional[float] = None,
    ) -> bool:
        """True if ``observed`` matches the parameters of a live window."""
        tolerance = tolerance if tolerance is not None else config.SEED_MATCH_TOLERANCE
        return any(
            verify_seed_match(observed, expected, tolerance)
            for expected in self.expected_parameters(zone_id, now)
        )
