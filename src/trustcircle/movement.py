"""
Accelerometer movement classification and movement/presence correlation.

A short burst of accelerometer readings is reduced to the magnitudes of the
deltas between consecutive samples. The classifier then applies three gates
in order: a stationary floor, an environmental-vibration ceiling and a
three-factor human gate (irregularity, rotation, minimum energy). Regular
mechanical motion fails the human gate and is reported as ``mechanical``.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np
import structlog

from .constants import (
    CORRELATION_BASE_SCORE,
    CORRELATION_PENALTIES,
    ENVIRONMENTAL_MEAN_MAX,
    ENVIRONMENTAL_STD_MAX,
    HUMAN_IRREGULARITY_MIN,
    HUMAN_MEAN_MIN,
    MIN_MOVEMENT_SAMPLES,
    MOVEMENT_WINDOWS,
    ROTATION_CHANGE_MIN,
    STATIONARY_MEAN_MAX,
    STATIONARY_MOVEMENT_LOGS,
    STATIONARY_STD_MAX,
    SUSPICIOUS_MOVEMENT_HOURS,
    TRAJECTORY_PARENT_RESOLUTION,
    TRAJECTORY_WINDOW_MINUTES,
)
from .data_models import MovementAnalysis, MovementClass
from .exceptions import InputValidationError, TooFewSamplesError
from .geocell import CellIndexer
from .utils import safe_divide, timer

# Initialize structured logger
logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class MovementSample:
    """One accelerometer reading (m/s^2, gravity included)."""

    x: float
    y: float
    z: float


SampleLike = Union[MovementSample, Sequence[float]]


def _as_array(samples: Sequence[SampleLike]) -> np.ndarray:
    rows = [
        (s.x, s.y, s.z) if isinstance(s, MovementSample) else tuple(s)
        for s in samples
    ]
    array = np.asarray(rows, dtype=float)
    if array.ndim != 2 or array.shape[1] != 3:
        raise InputValidationError("Accelerometer samples must be (x, y, z)", field="samples")
    return array


def _rotation_observed(array: np.ndarray) -> bool:
    bearings = np.arctan2(array[:, 1], array[:, 0])
    changes = np.abs((np.diff(bearings) + np.pi) % (2 * np.pi) - np.pi)
    return bool(np.any(changes > ROTATION_CHANGE_MIN))


@timer
def classify_movement(samples: Sequence[SampleLike]) -> MovementAnalysis:
    """
    Classify an accelerometer burst.

    Parameters
    ----------
    samples : sequence
        ``MovementSample`` objects or ``(x, y, z)`` triples in capture order.

    Returns
    -------
    MovementAnalysis
        Statistics and the verdict.

    Raises
    ------
    TooFewSamplesError
        If fewer than ``MIN_MOVEMENT_SAMPLES`` readings were captured.
    """
    if len(samples) < MIN_MOVEMENT_SAMPLES:
        raise TooFewSamplesError(len(samples), MIN_MOVEMENT_SAMPLES, "accelerometer")

    array = _as_array(samples)
    deltas = np.linalg.norm(np.diff(array, axis=0), axis=1)
    mean = float(deltas.mean())
    std = float(deltas.std())
    irregularity = safe_divide(std, mean)
    rotation = _rotation_observed(array)

    if mean < STATIONARY_MEAN_MAX and std < STATIONARY_STD_MAX:
        classification = MovementClass.STATIONARY
    elif std < ENVIRONMENTAL_STD_MAX and mean < ENVIRONMENTAL_MEAN_MAX:
        classification = MovementClass.ENVIRONMENTAL
    elif not rotation:
        # Vibration along a fixed axis: vehicles, machines, a phone on a speaker
        classification = MovementClass.ENVIRONMENTAL
    elif irregularity > HUMAN_IRREGULARITY_MIN and mean > HUMAN_MEAN_MIN:
        classification = MovementClass.HUMAN
    else:
        classification = MovementClass.MECHANICAL

    logger.debug(
        "Movement classified",
        classification=classification.value,
        mean_delta=round(mean, 4),
        std_delta=round(std, 4),
        rotation=rotation,
    )
    return MovementAnalysis(
        classification=classification,
        mean_delta=mean,
        std_delta=std,
        irregularity=irregularity,
        rotation_detected=rotation,
        sample_count=len(samples),
    )


def movement_window(hour: int) -> int:
    """
    Index of the daytime window containing ``hour``, or -1 outside all windows.
    """
    for index, (start, end) in enumerate(MOVEMENT_WINDOWS):
        if start <= hour < end:
            return index
    return -1


# =============================================================================
# Movement / presence correlation
# =============================================================================
def score_correlation(
    indexer: CellIndexer,
    local_time: datetime,
    movement_cell: Optional[str] = None,
    last_presence_cell: Optional[str] = None,
    last_presence_at: Optional[datetime] = None,
    checked_at: Optional[datetime] = None,
    same_cell_movements: int = 0,
) -> Tuple[float, List[str]]:
    """
    Trust score of a movement check against the device's recent presence.

    Penalties:

    - ``impossible_trajectory``: coarse parent cell differs from the last
      presence check made less than 30 minutes earlier.
    - ``stationary_with_movement``: repeated movement reported from one cell.
    - ``nighttime_movement``: movement reported between 02:00 and 05:00.

    Returns
    -------
    tuple
        ``(score, flags)`` with the score clipped to [0, 1].
    """
    score = CORRELATION_BASE_SCORE
    flags: List[str] = []

    if (
        movement_cell
        and last_presence_cell
        and last_presence_at is not None
        and checked_at is not None
    ):
        age_minutes = (checked_at - last_presence_at).total_seconds() / 60.0
        if 0 <= age_minutes < TRAJECTORY_WINDOW_MINUTES:
            if indexer.is_valid(movement_cell) and indexer.is_valid(last_presence_cell):
                moved_parent = indexer.parent(movement_cell, TRAJECTORY_PARENT_RESOLUTION)
                presence_parent = indexer.parent(last_presence_cell, TRAJECTORY_PARENT_RESOLUTION)
                if moved_parent != presence_parent:
                    flags.append("impossible_trajectory")

    if same_cell_movements >= STATIONARY_MOVEMENT_LOGS:
        flags.append("stationary_with_movement")

    start, end = SUSPICIOUS_MOVEMENT_HOURS
    if start <= local_time.hour < end:
        flags.append("nighttime_movement")

    for flag in flags:
        score -= CORRELATION_PENALTIES[flag]

    return max(0.0, min(1.0, score)), flags
