"""
Color-signature zone matching.

Identifies which zone a scanned badge belongs to from the colors in the
center of a camera frame. Every zone is scored and the best score wins,
provided its share of matching pixels clears a floor; ambient lighting
shifts therefore lower scores uniformly instead of changing the winner.
"""

from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

import numpy as np
import structlog

from .constants import (
    CENTER_REGION_FRACTION,
    COLOR_DISTANCE_THRESHOLD,
    MAX_CHANNEL_VALUE,
    MIN_MATCH_RATIO,
    PIXEL_SAMPLE_STRIDE,
)
from .data_models import Zone
from .exceptions import InputValidationError

# Initialize structured logger
logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ZoneMatch:
    """Score of one zone against a scanned color signature."""

    zone_id: str
    zone_name: str
    score: float
    match_ratio: float
    avg_distance: float


def hex_to_rgb(color: str) -> Tuple[int, int, int]:
    """Convert ``#RRGGBB`` to an RGB tuple."""
    value = color.lstrip("#")
    if len(value) != 6:
        raise InputValidationError(f"Invalid hex color: {color}", field="color")
    return tuple(int(value[i:i + 2], 16) for i in (0, 2, 4))


def sample_center_region(
    frame: np.ndarray,
    region_fraction: float = CENTER_REGION_FRACTION,
    stride: int = PIXEL_SAMPLE_STRIDE,
) -> np.ndarray:
    """
    Sample RGB pixels from a square around the frame center.

    Parameters
    ----------
    frame : numpy.ndarray
        ``(height, width, 3)`` or ``(height, width, 4)`` image; alpha is dropped.
    region_fraction : float
        Half-size of the square as a fraction of the shorter side.
    stride : int
        Take every ``stride``-th pixel in both directions.

    Returns
    -------
    numpy.ndarray
        ``(n, 3)`` float array of sampled pixels.
    """
    image = np.asarray(frame)
    if image.ndim != 3 or image.shape[2] < 3:
        raise InputValidationError("Frame must be an RGB image", field="frame")

    height, width = image.shape[:2]
    half = max(1, int(min(height, width) * region_fraction))
    cy, cx = height // 2, width // 2
    region = image[
        max(0, cy - half):cy + half:stride,
        max(0, cx - half):cx + half:stride,
        :3,
    ]
    return region.reshape(-1, 3).astype(float)


def score_zone(
    samples: np.ndarray,
    primary: str,
    secondary: str,
    threshold: float = COLOR_DISTANCE_THRESHOLD,
) -> Tuple[float, float, float]:
    """
    Score sampled pixels against a zone's two reference colors.

    A pixel matches when it lies within ``threshold`` (Euclidean RGB) of
    either reference. ``avg_distance`` is the mean distance of matching
    pixels to their nearest reference.

    Returns
    -------
    tuple of float
        ``(score, match_ratio, avg_distance)`` with
        ``score = match_ratio * (1 - avg_distance / 255)``.
    """
    pixels = np.asarray(samples, dtype=float).reshape(-1, 3)
    if pixels.shape[0] == 0:
        return 0.0, 0.0, 0.0

    references = np.array([hex_to_rgb(primary), hex_to_rgb(secondary)], dtype=float)
    distances = np.linalg.norm(pixels[:, None, :] - references[None, :, :], axis=2)
    nearest = distances.min(axis=1)
    matching = nearest < threshold

    match_count = int(matching.sum())
    match_ratio = match_count / pixels.shape[0]
    avg_distance = float(nearest[matching].mean()) if match_count else 0.0
    score = match_ratio * (1.0 - avg_distance / MAX_CHANNEL_VALUE)
    return score, match_ratio, avg_distance


def match_zone(
    samples: np.ndarray,
    zones: Iterable[Zone],
    min_match_ratio: float = MIN_MATCH_RATIO,
    threshold: float = COLOR_DISTANCE_THRESHOLD,
) -> Optional[ZoneMatch]:
    """
    Select the best-scoring zone whose match ratio clears the floor.

    Returns
    -------
    ZoneMatch or None
        None when no zone reaches ``min_match_ratio``.
    """
    best: Optional[ZoneMatch] = None
    for zone in zones:
        score, ratio, avg_distance = score_zone(
            samples, zone.color_primary, zone.color_secondary, threshold
        )
        if ratio < min_match_ratio:
            continue
        if best is None or score > best.score:
            best = ZoneMatch(zone.zone_id, zone.zone_name, score, ratio, avg_distance)

    if best is None:
        logger.debug("No zone matched color signature")
    else:
        logger.debug(
            "Zone matched color signature",
            zone_id=best.zone_id,
            score=round(best.score, 4),
            match_ratio=round(best.match_ratio, 4),
        )
    return best
