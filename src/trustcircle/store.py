"""
Key-based persistence contract and an in-process implementation.

Every component reaches shared state only through a ``KeyValueStore``. Records
are plain dictionaries. Besides get/put/delete the contract offers the three
atomic primitives the protocol depends on:

- ``increment``: bounded atomic counter update (no read-modify-write in callers)
- ``update_if``: conditional update, used for status transitions that must
  happen exactly once
- ``put_if_absent``: idempotency keys (one vouch per pair, one night per date)

``InMemoryStore`` serializes those primitives with a re-entrant lock. A
database-backed store would map them onto conditional updates and counters.
"""

import copy
import threading
from typing import Any, Dict, List, Optional, Protocol, Tuple

import structlog

from .exceptions import StoreError

# Initialize structured logger
logger = structlog.get_logger(__name__)

Record = Dict[str, Any]


class KeyValueStore(Protocol):
    """Persistence operations the engine relies on."""

    def get(self, key: str) -> Optional[Record]:
        ...

    def put(self, key: str, value: Record) -> None:
        ...

    def delete(self, key: str) -> bool:
        ...

    def put_if_absent(self, key: str, value: Record) -> bool:
        ...

    def increment(
        self, key: str, field: str, amount: int = 1, maximum: Optional[int] = None
    ) -> Optional[int]:
        ...

    def update_if(self, key: str, expected: Record, changes: Record) -> bool:
        ...

    def scan(self, prefix: str) -> List[Tuple[str, Record]]:
        ...


class InMemoryStore:
    """
    Thread-safe dictionary store.

    Values are deep-copied on the way in and out so callers can never mutate
    stored state except through the store's operations.
    """

    def __init__(self) -> None:
        self._data: Dict[str, Record] = {}
        self._lock = threading.RLock()

    def get(self, key: str) -> Optional[Record]:
        with self._lock:
            value = self._data.get(key)
            return copy.deepcopy(value) if value is not None else None

    def put(self, key: str, value: Record) -> None:
        if not isinstance(value, dict):
            raise StoreError("Store values must be dictionaries", key=key)
        with self._lock:
            self._data[key] = copy.deepcopy(value)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def put_if_absent(self, key: str, value: Record) -> bool:
        """Store ``value`` only if ``key`` is unused; return True if stored."""
        with self._lock:
            if key in self._data:
                return False
            self.put(key, value)
            return True

    def increment(
        self, key: str, field: str, amount: int = 1, maximum: Optional[int] = None
    ) -> Optional[int]:
        """
        Atomically add ``amount`` to a numeric field.

        A missing record is created with the field starting at zero.

        Returns
        -------
        int or None
            The new value, or None if it would exceed ``maximum`` (the record
            is left untouched in that case).
        """
        with self._lock:
            record = self._data.get(key, {})
            current = record.get(field, 0)
            if not isinstance(current, int) or isinstance(current, bool):
                raise StoreError(f"Field {field} is not an integer counter", key=key)

            updated = current + amount
            if maximum is not None and updated > maximum:
                logger.debug(
                    "Bounded increment rejected", key=key, field=field, maximum=maximum
                )
                return None

            record[field] = updated
            self._data[key] = record
            return updated

    def update_if(self, key: str, expected: Record, changes: Record) -> bool:
        """
        Apply ``changes`` only if every field in ``expected`` currently matches.

        Returns
        -------
        bool
            True if the update was applied.
        """
        with self._lock:
            record = self._data.get(key)
            if record is None:
                return False
            for field, value in expected.items():
                if record.get(field) != value:
                    return False
            record.update(copy.deepcopy(changes))
            return True

    def scan(self, prefix: str) -> List[Tuple[str, Record]]:
        """Return ``(key, record)`` pairs whose key starts with ``prefix``, sorted."""
        with self._lock:
            return [
                (key, copy.deepcopy(value))
                for key, value in sorted(self._data.items())
                if key.startswith(prefix)
            ]

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


# =============================================================================
# Key layout
# =============================================================================
def zone_key(zone_id: str) -> str:
    return f"zone:{zone_id}"


def zone_cell_key(resolution: int, index: str) -> str:
    return f"zone_cell:{resolution}:{index}"


def device_key(token: str) -> str:
    return f"device:{token}"


def zone_member_key(zone_id: str, token: str = "") -> str:
    return f"zone_member:{zone_id}:{token}"


def seed_key(zone_id: str, window: int) -> str:
    return f"seed:{zone_id}:{window}"


def night_key(token: str, night_date: str) -> str:
    return f"night:{token}:{night_date}"


def presence_log_key(token: str, suffix: str = "") -> str:
    return f"presence_log:{token}:{suffix}"


def movement_log_key(token: str, suffix: str = "") -> str:
    return f"movement_log:{token}:{suffix}"


def movement_window_key(token: str, day: str, window: int) -> str:
    return f"movement_window:{token}:{day}:{window}"


def movement_day_key(token: str, day: str) -> str:
    return f"movement_day:{token}:{day}"


def vouch_key(voucher: str, vouchee: str) -> str:
    return f"vouch:{voucher}:{vouchee}"


def vouch_year_key(voucher: str, year: int) -> str:
    return f"vouch_year:{voucher}:{year}"


def subsidy_key(token: str) -> str:
    return f"subsidy:{token}"


def blacklist_key(fingerprint_hash: str) -> str:
    return f"blacklist:{fingerprint_hash}"


def threat_key(threat_id: str) -> str:
    return f"threat:{threat_id}"
