"""
Server-side threat reporting and fingerprint blacklist.

Clients report only a classification label; the server assigns severity,
stores a write-only record and, for high severity, blacklists the device
fingerprint. Blacklist insertion is idempotent.
"""

from datetime import datetime
from typing import Optional

import structlog

from .constants import THREAT_SEVERITY
from .data_models import ThreatRecord
from .exceptions import InputValidationError
from .store import KeyValueStore, blacklist_key, threat_key
from .utils import ensure_utc, generate_id

# Initialize structured logger
logger = structlog.get_logger(__name__)

VALID_THREAT_TYPES = tuple(THREAT_SEVERITY)


def threat_severity(threat_type: str) -> str:
    """Severity assigned to a client threat label."""
    return THREAT_SEVERITY.get(threat_type, "low")


class ThreatReporter:
    """Records threat reports and maintains the fingerprint blacklist."""

    def __init__(self, store: KeyValueStore) -> None:
        self.store = store

    def is_blacklisted(self, fingerprint_hash: Optional[str]) -> bool:
        if not fingerprint_hash:
            return False
        return self.store.get(blacklist_key(fingerprint_hash)) is not None

    def blacklist(
        self, fingerprint_hash: str, reason: str, now: Optional[datetime] = None
    ) -> bool:
        """Insert a fingerprint; returns False if it was already present."""
        inserted = self.store.put_if_absent(
            blacklist_key(fingerprint_hash),
            {"reason": reason, "blacklisted_at": ensure_utc(now).isoformat()},
        )
        if inserted:
            logger.warning("Fingerprint blacklisted", reason=reason)
        return inserted

    def report_threat(
        self,
        threat_type: str,
        fingerprint_hash: Optional[str] = None,
        ip: Optional[str] = None,
        endpoint: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ThreatRecord:
        """
        Record a client-reported threat.

        Parameters
        ----------
        threat_type : str
            One of ``VALID_THREAT_TYPES``.
        fingerprint_hash : str, optional
            Reporting device's fingerprint hash; blacklisted on high severity.
        ip : str, optional
            Source address, stored with the record.
        endpoint : str, optional
            Where the threat was observed.

        Returns
        -------
        ThreatRecord
            The stored record.

        Raises
        ------
        InputValidationError
            If the threat type is not recognized.
        """
        if threat_type not in VALID_THREAT_TYPES:
            raise InputValidationError(
                f"Invalid threat type: {threat_type}", field="threat_type"
            )

        severity = threat_severity(threat_type)
        action = "logged"
        if severity == "high" and fingerprint_hash:
            inserted = self.blacklist(fingerprint_hash, f"client_{threat_type}", now)
            action = "blacklisted" if inserted else "already_blacklisted"

        record = ThreatRecord(
            threat_id=generate_id(),
            threat_type=f"client_{threat_type}",
            severity=severity,
            action_taken=action,
            fingerprint_hash=fingerprint_hash,
            ip=ip,
            endpoint=endpoint,
            created_at=ensure_utc(now),
        )
        self.store.put(threat_key(record.threat_id), record.to_dict())

        logger.info(
            "Threat reported",
            threat_type=record.threat_type,
            severity=severity,
            action_taken=action,
        )
        return record
