"""
Zone registry, locator resolution and zone appearance.

Zones are created lazily: the first sign-up or presence event inside a
geocell creates that cell's zone, with colors and motion pattern derived
deterministically from the cell index. The claim on a cell goes through
``put_if_absent`` so two concurrent first events still produce one zone.

Locators are a tagged union (``LegacyLocator`` or ``GeoCellLocator``);
``locate`` is the single place that branches on the kind.
"""

import colorsys
import threading
from datetime import datetime
from typing import Dict, List, Optional, Protocol, Tuple

import structlog

from . import config
from .constants import MOTION_PATTERNS
from .data_models import (
    GeoCellLocator,
    LegacyLocator,
    PresenceEvidence,
    Zone,
    ZoneLocator,
)
from .exceptions import ZoneNotFoundError
from .geocell import CellIndexer, H3CellIndexer, hash_location, location_in_cell
from .store import KeyValueStore, zone_cell_key, zone_key
from .utils import ensure_utc, hash_data

# Initialize structured logger
logger = structlog.get_logger(__name__)


# =============================================================================
# Appearance
# =============================================================================
def hsl_to_hex(hue: float, saturation: float, lightness: float) -> str:
    """Convert HSL (degrees, percent, percent) to ``#RRGGBB``."""
    red, green, blue = colorsys.hls_to_rgb(
        (hue % 360) / 360.0,
        min(max(lightness, 0.0), 100.0) / 100.0,
        min(max(saturation, 0.0), 100.0) / 100.0,
    )
    return "#{:02X}{:02X}{:02X}".format(
        round(red * 255), round(green * 255), round(blue * 255)
    )


def generate_zone_appearance(cell_index: str) -> Dict[str, str]:
    """
    Derive a zone's theme from its cell index.

    Returns
    -------
    dict
        ``color_primary`` (dark), ``color_secondary`` (same hue, lighter),
        ``color_accent`` (shifted hue) and ``motion_pattern``.
    """
    digest = hash_data(cell_index)
    hue = int(digest[0:8], 16) % 360
    saturation = int(digest[8:12], 16) % 20 + 50
    lightness = int(digest[12:16], 16) % 15 + 25
    accent_hue = (hue + 120 + int(digest[16:20], 16) % 60) % 360

    return {
        "color_primary": hsl_to_hex(hue, saturation + 10, lightness),
        "color_secondary": hsl_to_hex(hue, saturation, lightness + 30),
        "color_accent": hsl_to_hex(accent_hue, 60, 50),
        "motion_pattern": MOTION_PATTERNS[int(digest[20:24], 16) % len(MOTION_PATTERNS)],
    }


# =============================================================================
# Zone names
# =============================================================================
class ZoneNameResolver(Protocol):
    """Reverse-geocoding collaborator."""

    def resolve(self, lat: float, lon: float) -> Optional[str]:
        ...


def fallback_zone_name(cell_index: str) -> str:
    return f"Zone {cell_index[-6:].upper()}"


class CachedZoneNameResolver:
    """
    Best-effort, cached wrapper around a ``ZoneNameResolver``.

    Names are cached per cell. Collaborator failures are logged and replaced
    by a fallback name so zone creation never blocks on geocoding.
    """

    def __init__(self, resolver: Optional[ZoneNameResolver] = None) -> None:
        self.resolver = resolver
        self._cache: Dict[str, str] = {}
        self._lock = threading.Lock()

    def name_for(self, cell_index: str, lat: float, lon: float) -> str:
        with self._lock:
            cached = self._cache.get(cell_index)
        if cached:
            return cached

        name = None
        if self.resolver is not None:
            try:
                name = self.resolver.resolve(lat, lon)
            except Exception as e:
                logger.warning(
                    "Zone name resolution failed", cell=cell_index, error=str(e)
                )

        name = name or fallback_zone_name(cell_index)
        with self._lock:
            self._cache[cell_index] = name
        return name


# =============================================================================
# Locator resolution
# =============================================================================
def locate(
    locator: ZoneLocator,
    evidence: PresenceEvidence,
    indexer: CellIndexer,
    tolerance_rings: int = 0,
) -> Tuple[bool, str]:
    """
    Decide whether presence evidence falls inside a zone.

    For geocell zones, ``tolerance_rings`` adjacent rings of cells also
    count as inside.

    Returns
    -------
    tuple
        ``(inside, location_ref)``; the reference is a cell index or a
        location hash, never coordinates.
    """
    if isinstance(locator, GeoCellLocator):
        if not evidence.has_coordinates:
            return False, evidence.location_hash or "unknown"
        cell = indexer.cell_for(evidence.lat, evidence.lon, locator.resolution)
        inside = location_in_cell(
            indexer, evidence.lat, evidence.lon, locator.index, tolerance_rings
        )
        return inside, cell

    if isinstance(locator, LegacyLocator):
        location_hash = evidence.location_hash
        if location_hash is None and evidence.has_coordinates:
            location_hash = hash_location(evidence.lat, evidence.lon)
        return location_hash in set(locator.boundary_hashes), location_hash

    raise TypeError(f"Unsupported zone locator: {type(locator).__name__}")


# =============================================================================
# Registry
# =============================================================================
class ZoneRegistry:
    """
    Zone persistence and lazy geocell zone creation.

    Parameters
    ----------
    store : KeyValueStore
        Backing store.
    indexer : CellIndexer, optional
        Defaults to ``H3CellIndexer``.
    names : CachedZoneNameResolver, optional
        Name resolution; defaults to fallback names only.
    resolution : int, optional
        Zone cell resolution; defaults to ``config.H3_RESOLUTION``.
    """

    def __init__(
        self,
        store: KeyValueStore,
        indexer: Optional[CellIndexer] = None,
        names: Optional[CachedZoneNameResolver] = None,
        resolution: Optional[int] = None,
    ) -> None:
        self.store = store
        self.indexer = indexer or H3CellIndexer()
        self.names = names or CachedZoneNameResolver()
        self.resolution = resolution if resolution is not None else config.H3_RESOLUTION

    def register_zone(self, zone: Zone) -> Zone:
        """Persist a zone unless one with the same id exists; return the stored zone."""
        if isinstance(zone.locator, GeoCellLocator):
            cell_key = zone_cell_key(zone.locator.resolution, zone.locator.index)
            if not self.store.put_if_absent(cell_key, {"zone_id": zone.zone_id}):
                existing_id = self.store.get(cell_key)["zone_id"]
                if existing_id != zone.zone_id:
                    return self.get_zone(existing_id)

        if self.store.put_if_absent(zone_key(zone.zone_id), zone.to_dict()):
            logger.info("Zone registered", zone_id=zone.zone_id, zone_name=zone.zone_name)
            return zone
        return self.get_zone(zone.zone_id)

    def find_zone(self, zone_id: str) -> Optional[Zone]:
        record = self.store.get(zone_key(zone_id))
        return Zone.from_dict(record) if record else None

    def get_zone(self, zone_id: str) -> Zone:
        zone = self.find_zone(zone_id)
        if zone is None:
            raise ZoneNotFoundError(zone_id)
        return zone

    def list_zones(self) -> List[Zone]:
        return [Zone.from_dict(record) for _, record in self.store.scan("zone:")]

    def get_or_create_geocell_zone(
        self, lat: float, lon: float, now: Optional[datetime] = None
    ) -> Zone:
        """
        Return the zone for the cell containing the coordinates, creating it
        on first use.
        """
        cell = self.indexer.cell_for(lat, lon, self.resolution)
        existing = self.store.get(zone_cell_key(self.resolution, cell))
        if existing is not None:
            zone = self.find_zone(existing["zone_id"])
            if zone is not None:
                return zone

        appearance = generate_zone_appearance(cell)
        zone = Zone(
            zone_id=cell,
            zone_name=self.names.name_for(cell, lat, lon),
            locator=GeoCellLocator(index=cell, resolution=self.resolution),
            created_at=ensure_utc(now),
            **appearance,
        )
        return self.register_zone(zone)

    def active_resident_count(self, zone_id: str) -> int:
        record = self.store.get(zone_key(zone_id)) or {}
        return int(record.get("active_resident_count", 0))

    def adjust_residents(self, zone_id: str, amount: int) -> Optional[int]:
        """Atomically change the zone's active resident counter."""
        count = self.store.increment(zone_key(zone_id), "active_resident_count", amount)
        logger.info("Zone resident count changed", zone_id=zone_id, delta=amount, count=count)
        return count


# =============================================================================
# Demo zones
# =============================================================================
DEMO_ZONE_THEMES: Dict[str, Tuple[str, str, str, str]] = {
    "oak-ridge": ("Oak Ridge", "#2D5016", "#6B8E23", "wave"),
    "briarwood": ("Briarwood", "#1B365D", "#4A90D9", "pulse"),
    "riverside": ("Riverside", "#1A4D5C", "#4ECDC4", "ripple"),
    "maplewood": ("Maplewood", "#8B4513", "#D2691E", "spiral"),
}


def demo_zones() -> List[Zone]:
    """Fixed showcase zones, located by (empty) legacy boundary sets."""
    return [
        Zone(
            zone_id=zone_id,
            zone_name=name,
            locator=LegacyLocator(()),
            color_primary=primary,
            color_secondary=secondary,
            motion_pattern=motion,
        )
        for zone_id, (name, primary, secondary, motion) in DEMO_ZONE_THEMES.items()
    ]
