"""
Optical pattern codec.

A badge carries a 24-bit pattern in its brightness: the first 16 bits are the
device token prefix (first four hex characters) and the last 8 bits are the
first byte of SHA-256(token + secret), where the secret rotates per zone and
window. Each bit occupies a 150 ms slot; a one renders at +2% brightness, a
zero at -2%.

The decoder works on a luminance series captured by a scanning camera. It
only needs the series to cover one full cycle with at least two samples per
slot; alignment to the cycle start is the caller's responsibility.
"""

from datetime import datetime
import hashlib
from typing import List, Optional, Sequence

import numpy as np
import structlog

from . import config
from .constants import (
    BIT_DURATION_MS,
    BRIGHTNESS_DELTA,
    BRIGHTNESS_HIGH,
    BRIGHTNESS_LOW,
    CHECKSUM_BITS,
    CYCLE_DURATION_MS,
    MIN_DECODE_SAMPLES,
    PATTERN_BITS,
    PREFIX_HEX_LENGTH,
    SEED_GRACE_WINDOWS,
)
from .data_models import DecodedPattern, DeviceToken
from .exceptions import (
    ChecksumMismatchError,
    InputValidationError,
    LowConfidenceError,
    MissingDeviceTokenError,
    PrefixNotFoundError,
)
from .seed_engine import SeedEngine
from .store import KeyValueStore, device_key
from .utils import timer

# Initialize structured logger
logger = structlog.get_logger(__name__)

_PATTERN_MASK = (1 << PATTERN_BITS) - 1
_CHECKSUM_MASK = (1 << CHECKSUM_BITS) - 1


# =============================================================================
# Encoding
# =============================================================================
def device_token_to_prefix(token: str) -> int:
    """
    Numeric value of the token's first four hex characters.

    Tokens that are too short or not hexadecimal map to 0.
    """
    head = (token or "")[:PREFIX_HEX_LENGTH]
    if len(head) < PREFIX_HEX_LENGTH:
        return 0
    try:
        return int(head, 16)
    except ValueError:
        return 0


def prefix_to_hex(prefix: int) -> str:
    """Render a 16-bit prefix as four lower-case hex characters."""
    return format(prefix & 0xFFFF, "04x")


def compute_checksum(token: str, secret: str) -> int:
    """First byte of SHA-256(token + secret)."""
    return hashlib.sha256(f"{token}{secret}".encode("utf-8")).digest()[0]


def encode_pattern(token: str, secret: str) -> int:
    """
    Build the 24-bit pattern for a device token.

    Parameters
    ----------
    token : str
        Device token (hex digest).
    secret : str
        Current per-zone pattern secret.

    Returns
    -------
    int
        ``prefix << 8 | checksum``.
    """
    if not token:
        raise MissingDeviceTokenError()
    prefix = device_token_to_prefix(token)
    return (prefix << CHECKSUM_BITS) | compute_checksum(token, secret)


def pattern_to_bits(pattern: int) -> List[int]:
    """Most significant bit first."""
    return [(pattern >> (PATTERN_BITS - 1 - i)) & 1 for i in range(PATTERN_BITS)]


def bits_to_pattern(bits: Sequence[int]) -> int:
    if len(bits) != PATTERN_BITS:
        raise InputValidationError(f"Expected {PATTERN_BITS} bits, got {len(bits)}", field="bits")
    pattern = 0
    for bit in bits:
        pattern = (pattern << 1) | (1 if bit else 0)
    return pattern


def brightness_multiplier(pattern: int, time_ms: float) -> float:
    """
    Brightness multiplier at ``time_ms`` into the badge animation.

    The renderer multiplies its seed-driven baseline brightness by this value.
    """
    slot = int((time_ms % CYCLE_DURATION_MS) // BIT_DURATION_MS)
    bit = (pattern >> (PATTERN_BITS - 1 - slot)) & 1
    return BRIGHTNESS_HIGH if bit else BRIGHTNESS_LOW


def encode_to_samples(
    pattern: int,
    samples_per_bit: int = 5,
    baseline: float = 128.0,
    noise_std: float = 0.0,
    rng: Optional[np.random.Generator] = None,
) -> np.ndarray:
    """
    Synthesize the luminance series a camera would record over one cycle.

    Parameters
    ----------
    pattern : int
        24-bit pattern.
    samples_per_bit : int, default=5
        Camera samples per 150 ms slot (4.5 at 30 fps).
    baseline : float, default=128.0
        Unmodulated luminance.
    noise_std : float, default=0.0
        Gaussian sensor noise, as a fraction of ``baseline``.
    rng : numpy.random.Generator, optional
        Source of noise; a fresh default generator if omitted.

    Returns
    -------
    numpy.ndarray
        ``PATTERN_BITS * samples_per_bit`` luminance values.
    """
    if samples_per_bit < 1:
        raise InputValidationError("samples_per_bit must be positive", field="samples_per_bit")

    multipliers = np.where(np.array(pattern_to_bits(pattern & _PATTERN_MASK)) == 1, BRIGHTNESS_HIGH, BRIGHTNESS_LOW)
    series = np.repeat(multipliers, samples_per_bit).astype(float)

    if noise_std > 0:
        rng = rng or np.random.default_rng()
        series = series + rng.normal(0.0, noise_std, size=series.shape)

    return series * baseline


# =============================================================================
# Decoding
# =============================================================================
@timer
def decode_pattern(samples: Sequence[float]) -> Optional[DecodedPattern]:
    """
    Recover a 24-bit pattern from a luminance series.

    The series is split into 24 equal windows (trailing remainder dropped);
    a window is a one when its mean exceeds the global mean. Per-bit
    confidence is the window's relative deviation from the global mean
    divided by the modulation depth, capped at 1; the pattern confidence is
    the average over all bits.

    Parameters
    ----------
    samples : sequence of float
        Luminance values covering one badge cycle.

    Returns
    -------
    DecodedPattern or None
        None when fewer than two samples per bit are available or the
        series carries no light.
    """
    values = np.asarray(samples, dtype=float).ravel()
    if values.size < MIN_DECODE_SAMPLES:
        logger.debug("Too few samples to decode", sample_count=int(values.size))
        return None

    samples_per_bit = values.size // PATTERN_BITS
    windows = values[: samples_per_bit * PATTERN_BITS].reshape(PATTERN_BITS, samples_per_bit)
    global_mean = float(windows.mean())
    if not np.isfinite(global_mean) or global_mean <= 0:
        return None

    window_means = windows.mean(axis=1)
    bits = (window_means > global_mean).astype(int)

    deviations = np.abs(window_means - global_mean) / global_mean
    bit_confidence = np.minimum(deviations / BRIGHTNESS_DELTA, 1.0)
    confidence = float(np.clip(bit_confidence.mean(), 0.0, 1.0))

    pattern = bits_to_pattern(bits.tolist())
    return DecodedPattern(
        prefix=pattern >> CHECKSUM_BITS,
        checksum=pattern & _CHECKSUM_MASK,
        confidence=confidence,
    )


# =============================================================================
# Verification
# =============================================================================
class PatternVerifier:
    """
    Resolves a decoded pattern to a device token.

    Lookup cost is bounded by the number of tokens sharing the decoded
    prefix: only ``device:{prefix}*`` keys are scanned.

    Parameters
    ----------
    store : KeyValueStore
        Device records.
    seed_engine : SeedEngine
        Source of the per-zone rotating pattern secret.
    min_confidence : float, optional
        Decodes below this are treated as no result.
    """

    def __init__(
        self,
        store: KeyValueStore,
        seed_engine: SeedEngine,
        min_confidence: Optional[float] = None,
    ) -> None:
        self.store = store
        self.seed_engine = seed_engine
        self.min_confidence = (
            min_confidence if min_confidence is not None else config.MIN_DECODE_CONFIDENCE
        )

    def current_pattern(self, token: str, zone_id: str, now: Optional[datetime] = None) -> int:
        """Pattern the device's badge should render right now."""
        window = self.seed_engine.window_index(now)
        return encode_pattern(token, self.seed_engine.pattern_secret(zone_id, window))

    def verify(
        self,
        decoded: DecodedPattern,
        zone_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> DeviceToken:
        """
        Authenticate a decoded pattern.

        Parameters
        ----------
        decoded : DecodedPattern
            Output of ``decode_pattern``.
        zone_id : str, optional
            Restrict candidates to one zone (the zone matched by color).
        now : datetime, optional
            Verification time.

        Returns
        -------
        DeviceToken
            The first candidate whose checksum matches.

        Raises
        ------
        LowConfidenceError
            If the decode is too noisy to be trusted.
        PrefixNotFoundError
            If no device shares the prefix.
        ChecksumMismatchError
            If candidates exist but none authenticates.
        """
        if decoded.confidence < self.min_confidence:
            raise LowConfidenceError(decoded.confidence, self.min_confidence)

        prefix_hex = decoded.prefix_hex
        candidates = [
            DeviceToken.from_dict(record)
            for _, record in self.store.scan(device_key(prefix_hex))
        ]
        if zone_id is not None:
            candidates = [device for device in candidates if device.zone_id == zone_id]

        if not candidates:
            logger.info("Decoded prefix matched no device", prefix=prefix_hex)
            raise PrefixNotFoundError(prefix_hex)

        windows = self.seed_engine.live_windows(now, SEED_GRACE_WINDOWS)
        for device in candidates:
            for window in windows:
                secret = self.seed_engine.pattern_secret(device.zone_id, window)
                if compute_checksum(device.token, secret) == decoded.checksum:
                    logger.info(
                        "Badge pattern verified",
                        device=device.short,
                        zone_id=device.zone_id,
                        confidence=round(decoded.confidence, 3),
                    )
                    return device

        logger.warning(
            "Badge pattern checksum mismatch", prefix=prefix_hex, candidates=len(candidates)
        )
        raise ChecksumMismatchError(prefix_hex, len(candidates))
