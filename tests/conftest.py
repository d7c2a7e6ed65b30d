"""
Pytest fixtures for TrustCircle tests.

Uses an in-memory store, a square-grid cell indexer in place of H3 and a
fixed clock passed explicitly as ``now``.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
import math
import re

import pytest

from trustcircle.data_models import PresenceEvidence, validate_coordinates
from trustcircle.seed_engine import SeedEngine
from trustcircle.state_machine import VerificationStateMachine
from trustcircle.store import InMemoryStore, device_key
from trustcircle.threats import ThreatReporter
from trustcircle.vouching import VouchNetwork
from trustcircle.zones import ZoneRegistry

HOME_LAT = 40.7128
HOME_LON = -74.0060
FAR_LAT = 48.8566
FAR_LON = 2.3522

_CELL = re.compile(r"^r(\d+)_(-?\d+)_(-?\d+)$")


class GridIndexer:
    """Square cells of 2**-resolution degrees; parents by integer shift."""

    def cell_for(self, lat, lon, resolution):
        validate_coordinates(lat, lon)
        scale = 2 ** resolution
        return f"r{resolution}_{math.floor(lat * scale)}_{math.floor(lon * scale)}"

    def _parts(self, cell):
        match = _CELL.match(cell)
        if match is None:
            raise ValueError(f"not a grid cell: {cell}")
        return tuple(int(part) for part in match.groups())

    def parent(self, cell, resolution):
        res, i, j = self._parts(cell)
        if res <= resolution:
            return cell
        shift = res - resolution
        return f"r{resolution}_{i >> shift}_{j >> shift}"

    def neighbors(self, cell, rings=1):
        res, i, j = self._parts(cell)
        return [
            f"r{res}_{i + di}_{j + dj}"
            for di in range(-rings, rings + 1)
            for dj in range(-rings, rings + 1)
        ]

    def resolution_of(self, cell):
        return self._parts(cell)[0]

    def is_valid(self, cell):
        return bool(cell) and _CELL.match(cell) is not None


@pytest.fixture
def now():
    return datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def indexer():
    return GridIndexer()


@pytest.fixture
def registry(store, indexer):
    return ZoneRegistry(store, indexer=indexer, resolution=4)


@pytest.fixture
def zone(registry, now):
    return registry.get_or_create_geocell_zone(HOME_LAT, HOME_LON, now)


@pytest.fixture
def threats(store):
    return ThreatReporter(store)


@pytest.fixture
def seed_engine(store):
    return SeedEngine(store, secret="test-secret", rotation_seconds=60)


@pytest.fixture
def lifecycle(store, registry, threats):
    return VerificationStateMachine(store, registry, threats=threats, night_window=(22, 6))


@pytest.fixture
def network(store, lifecycle, seed_engine):
    return VouchNetwork(store, lifecycle, seed_engine)


@pytest.fixture
def paid_device(lifecycle, zone, now):
    """A paid, verifying device enrolled five days ago."""
    return lifecycle.enroll(
        "fp-paid", zone.zone_id, billing_customer_ref="cus_001", now=now - timedelta(days=5)
    )


@pytest.fixture
def make_resident(lifecycle, store, now):
    """Factory for active, paid residents old enough to vouch."""
    counter = {"n": 0}

    def _make(zone_id, age_days=60):
        counter["n"] += 1
        device = lifecycle.enroll(
            f"fp-resident-{counter['n']}",
            zone_id,
            billing_customer_ref=f"cus_r{counter['n']}",
            now=now - timedelta(days=age_days),
        )
        store.update_if(
            device_key(device.token), {}, {"nights_confirmed": 14, "movement_days_confirmed": 10}
        )
        assert lifecycle.try_activate(device.token, now)
        return device.token

    return _make


def night_evidence(day, hour=23, lat=HOME_LAT, lon=HOME_LON):
    """Presence evidence at ``hour`` device-local time on ``day`` (a date)."""
    local = datetime(day.year, day.month, day.day, hour, 0)
    return PresenceEvidence(local_time=local, lat=lat, lon=lon)


def as_utc(local):
    return local.replace(tzinfo=timezone.utc)
