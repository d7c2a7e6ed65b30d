"""
Geocell indexing and location hashing.

The H3 library is treated as a black box behind ``CellIndexer`` so the rest
of the engine never imports it directly and tests can substitute a grid.
Coordinates are converted to a cell or a legacy hash immediately and are
never stored.
"""

from typing import List, Protocol

import h3

from .constants import LEGACY_LOCATION_PRECISION
from .data_models import validate_coordinates
from .utils import hash_data


class CellIndexer(Protocol):
    """Maps coordinates to hierarchical cell identifiers."""

    def cell_for(self, lat: float, lon: float, resolution: int) -> str:
        ...

    def parent(self, cell: str, resolution: int) -> str:
        ...

    def neighbors(self, cell: str, rings: int = 1) -> List[str]:
        ...

    def resolution_of(self, cell: str) -> int:
        ...

    def is_valid(self, cell: str) -> bool:
        ...


class H3CellIndexer:
    """``CellIndexer`` backed by the ``h3`` package (v4 API)."""

    def cell_for(self, lat: float, lon: float, resolution: int) -> str:
        validate_coordinates(lat, lon)
        return h3.latlng_to_cell(lat, lon, resolution)

    def parent(self, cell: str, resolution: int) -> str:
        if h3.get_resolution(cell) <= resolution:
            return cell
        return h3.cell_to_parent(cell, resolution)

    def neighbors(self, cell: str, rings: int = 1) -> List[str]:
        return list(h3.grid_disk(cell, rings))

    def resolution_of(self, cell: str) -> int:
        return h3.get_resolution(cell)

    def is_valid(self, cell: str) -> bool:
        return bool(cell) and h3.is_valid_cell(cell)


def location_in_cell(
    indexer: CellIndexer, lat: float, lon: float, cell: str, tolerance_rings: int = 0
) -> bool:
    """
    Return True if the coordinates fall inside ``cell``.

    With ``tolerance_rings`` > 0 the adjacent rings also count, absorbing GPS
    drift at cell edges.
    """
    resolution = indexer.resolution_of(cell)
    location_cell = indexer.cell_for(lat, lon, resolution)
    if location_cell == cell:
        return True
    if tolerance_rings > 0:
        return location_cell in indexer.neighbors(cell, tolerance_rings)
    return False


def hash_location(lat: float, lon: float) -> str:
    """One-way hash of coordinates rounded to roughly 100 m, legacy scheme."""
    validate_coordinates(lat, lon)
    precision = LEGACY_LOCATION_PRECISION
    return hash_data(f"{lat:.{precision}f},{lon:.{precision}f}")
