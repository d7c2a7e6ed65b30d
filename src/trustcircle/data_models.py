"""
Data models for the TrustCircle engine.

This module defines the records that flow between the seed engine, the
pattern codec, the residency state machine and the vouch network. All
persisted records serialize to plain dictionaries via ``to_dict`` and are
rebuilt with ``from_dict``; the store never sees dataclass instances.

No model carries raw coordinates, addresses or fingerprints beyond the
one-way hashes the protocol already exchanges.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
import re
from typing import Any, Dict, Optional, Tuple, Union

from .constants import MOTION_PATTERNS, NIGHTS_REQUIRED, MOVEMENT_DAYS_REQUIRED
from .exceptions import InputValidationError, InvalidCoordinatesError

_HEX_COLOR = re.compile(r"^#[0-9A-Fa-f]{6}$")


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _parse_date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


# =============================================================================
# Enumerations
# =============================================================================
class DeviceStatus(str, Enum):
    """Lifecycle states of a device token."""

    VERIFYING = "verifying"
    ACTIVE = "active"
    INACTIVE = "inactive"
    REVOKED = "revoked"
    FROZEN = "frozen"
    FAILED = "failed"


class SubscriptionType(str, Enum):
    PAID = "paid"
    SUBSIDIZED = "subsidized"


class PaywallStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    GRACE = "grace"
    EXPIRED = "expired"
    BLOCKED = "blocked"


class SubsidyStatus(str, Enum):
    PENDING = "pending"
    ACTIVATED = "activated"
    EXPIRED = "expired"


class MovementClass(str, Enum):
    """Classifier verdicts for an accelerometer burst."""

    STATIONARY = "stationary"
    ENVIRONMENTAL = "environmental"
    MECHANICAL = "mechanical"
    HUMAN = "human"


# =============================================================================
# Zones
# =============================================================================
@dataclass(frozen=True)
class LegacyLocator:
    """Zone located by a set of hashed boundary coordinates."""

    boundary_hashes: Tuple[str, ...]
    kind: str = field(default="legacy", init=False)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "boundary_hashes": list(self.boundary_hashes)}


@dataclass(frozen=True)
class GeoCellLocator:
    """Zone located by a geocell index at a fixed resolution."""

    index: str
    resolution: int
    kind: str = field(default="geocell", init=False)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "index": self.index, "resolution": self.resolution}


ZoneLocator = Union[LegacyLocator, GeoCellLocator]


def locator_from_dict(data: Dict[str, Any]) -> ZoneLocator:
    """
    Rebuild a zone locator from its serialized form.

    Raises
    ------
    InputValidationError
        If the locator kind is unknown.
    """
    kind = data.get("kind")
    if kind == "legacy":
        return LegacyLocator(tuple(data.get("boundary_hashes") or ()))
    if kind == "geocell":
        return GeoCellLocator(index=data["index"], resolution=int(data["resolution"]))
    raise InputValidationError(f"Unknown zone locator kind: {kind}", field="locator")


@dataclass
class Zone:
    """
    A neighborhood zone and its badge theme.

    Parameters
    ----------
    zone_id : str
        Stable identifier. For geocell zones this is the cell index.
    zone_name : str
        Display name, resolved best-effort from coordinates.
    locator : ZoneLocator
        How devices prove they are inside the zone.
    color_primary, color_secondary : str
        ``#RRGGBB`` reference colors used by the color-signature matcher.
    color_accent : str, optional
        Third theme color, rendering only.
    motion_pattern : str
        One of ``MOTION_PATTERNS``.
    active_resident_count : int
        Verified residents; only ever changed by atomic store increments.
    """

    zone_id: str
    zone_name: str
    locator: ZoneLocator
    color_primary: str
    color_secondary: str
    color_accent: Optional[str] = None
    motion_pattern: str = "wave"
    active_resident_count: int = 0
    created_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        if not self.zone_id:
            raise ValueError("zone_id must be a non-empty string")

        for name in ("color_primary", "color_secondary"):
            if not _HEX_COLOR.match(getattr(self, name) or ""):
                raise ValueError(f"{name} must be a #RRGGBB hex color")

        if self.color_accent is not None and not _HEX_COLOR.match(self.color_accent):
            raise ValueError("color_accent must be a #RRGGBB hex color")

        if self.motion_pattern not in MOTION_PATTERNS:
            raise ValueError(f"motion_pattern must be one of {MOTION_PATTERNS}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "zone_id": self.zone_id,
            "zone_name": self.zone_name,
            "locator": self.locator.to_dict(),
            "color_primary": self.color_primary,
            "color_secondary": self.color_secondary,
            "color_accent": self.color_accent,
            "motion_pattern": self.motion_pattern,
            "active_resident_count": self.active_resident_count,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Zone":
        return cls(
            zone_id=data["zone_id"],
            zone_name=data["zone_name"],
            locator=locator_from_dict(data["locator"]),
            color_primary=data["color_primary"],
            color_secondary=data["color_secondary"],
            color_accent=data.get("color_accent"),
            motion_pattern=data.get("motion_pattern", "wave"),
            active_resident_count=int(data.get("active_resident_count", 0)),
            created_at=_parse_dt(data.get("created_at")) or utc_now(),
        )


# =============================================================================
# Badge seeds and animation
# =============================================================================
@dataclass
class BadgeSeed:
    """A zone's seed for one rotation window."""

    zone_id: str
    seed: str
    window_index: int
    valid_from: datetime
    valid_until: datetime

    def is_valid_at(self, moment: datetime) -> bool:
        """Return True if ``moment`` falls inside this seed's window."""
        return self.valid_from <= moment < self.valid_until

    def to_dict(self) -> Dict[str, Any]:
        return {
            "zone_id": self.zone_id,
            "seed": self.seed,
            "window_index": self.window_index,
            "valid_from": _iso(self.valid_from),
            "valid_until": _iso(self.valid_until),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BadgeSeed":
        return cls(
            zone_id=data["zone_id"],
            seed=data["seed"],
            window_index=int(data["window_index"]),
            valid_from=_parse_dt(data["valid_from"]),
            valid_until=_parse_dt(data["valid_until"]),
        )


@dataclass(frozen=True)
class AnimationParameters:
    """
    Rendering parameters derived from a badge seed.

    ``micro_variation`` is a per-device rendering offset; it is not part of
    the tuple compared during verification.
    """

    phase_offset: float
    speed_multiplier: float
    color_intensity: float
    motion_modifier: float
    micro_variation: float = 0.0

    def as_tuple(self) -> Tuple[float, float, float, float]:
        return (
            self.phase_offset,
            self.speed_multiplier,
            self.color_intensity,
            self.motion_modifier,
        )

    def to_dict(self) -> Dict[str, float]:
        return {
            "phase_offset": self.phase_offset,
            "speed_multiplier": self.speed_multiplier,
            "color_intensity": self.color_intensity,
            "motion_modifier": self.motion_modifier,
            "micro_variation": self.micro_variation,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnimationParameters":
        return cls(
            phase_offset=float(data["phase_offset"]),
            speed_multiplier=float(data["speed_multiplier"]),
            color_intensity=float(data["color_intensity"]),
            motion_modifier=float(data["motion_modifier"]),
            micro_variation=float(data.get("micro_variation", 0.0)),
        )


@dataclass(frozen=True)
class DecodedPattern:
    """Result of optically decoding one badge cycle."""

    prefix: int
    checksum: int
    confidence: float

    @property
    def pattern(self) -> int:
        return (self.prefix << 8) | self.checksum

    @property
    def prefix_hex(self) -> str:
        return format(self.prefix, "04x")


# =============================================================================
# Devices
# =============================================================================
@dataclass
class DeviceToken:
    """
    Anonymous device identity and its residency progress.

    The token is a one-way digest of the client fingerprint plus randomness;
    the fingerprint hash is kept only so blacklisting can be enforced.
    """

    token: str
    fingerprint_hash: str
    zone_id: str
    status: DeviceStatus = DeviceStatus.VERIFYING
    nights_confirmed: int = 0
    movement_days_confirmed: int = 0
    subscription_type: SubscriptionType = SubscriptionType.PAID
    billing_customer_ref: Optional[str] = None
    paywall_status: PaywallStatus = PaywallStatus.PENDING
    subsidy_activated_at: Optional[datetime] = None
    subscription_expires_at: Optional[datetime] = None
    grace_period_until: Optional[datetime] = None
    last_presence_at: Optional[datetime] = None
    last_presence_night: Optional[date] = None
    last_movement_at: Optional[datetime] = None
    paused: bool = False
    paused_at: Optional[date] = None
    paused_days: int = 0
    created_at: datetime = field(default_factory=utc_now)
    verification_start_date: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        if not self.token:
            raise ValueError("token must be a non-empty string")

        self.status = DeviceStatus(self.status)
        self.subscription_type = SubscriptionType(self.subscription_type)
        self.paywall_status = PaywallStatus(self.paywall_status)

        if not 0 <= self.nights_confirmed <= NIGHTS_REQUIRED:
            raise ValueError(f"nights_confirmed must be within 0..{NIGHTS_REQUIRED}")

        if not 0 <= self.movement_days_confirmed <= MOVEMENT_DAYS_REQUIRED:
            raise ValueError(
                f"movement_days_confirmed must be within 0..{MOVEMENT_DAYS_REQUIRED}"
            )

        if self.paused_days < 0:
            raise ValueError("paused_days cannot be negative")

    @property
    def prefix(self) -> str:
        """First four hex characters, the optical lookup key."""
        return self.token[:4].lower()

    @property
    def short(self) -> str:
        """Token abbreviation safe for logs."""
        return self.token[:8]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token": self.token,
            "fingerprint_hash": self.fingerprint_hash,
            "zone_id": self.zone_id,
            "status": self.status.value,
            "nights_confirmed": self.nights_confirmed,
            "movement_days_confirmed": self.movement_days_confirmed,
            "subscription_type": self.subscription_type.value,
            "billing_customer_ref": self.billing_customer_ref,
            "paywall_status": self.paywall_status.value,
            "subsidy_activated_at": _iso(self.subsidy_activated_at),
            "subscription_expires_at": _iso(self.subscription_expires_at),
            "grace_period_until": _iso(self.grace_period_until),
            "last_presence_at": _iso(self.last_presence_at),
            "last_presence_night": (
                self.last_presence_night.isoformat() if self.last_presence_night else None
            ),
            "last_movement_at": _iso(self.last_movement_at),
            "paused": self.paused,
            "paused_at": self.paused_at.isoformat() if self.paused_at else None,
            "paused_days": self.paused_days,
            "created_at": _iso(self.created_at),
            "verification_start_date": _iso(self.verification_start_date),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeviceToken":
        return cls(
            token=data["token"],
            fingerprint_hash=data["fingerprint_hash"],
            zone_id=data["zone_id"],
            status=DeviceStatus(data.get("status", "verifying")),
            nights_confirmed=int(data.get("nights_confirmed", 0)),
            movement_days_confirmed=int(data.get("movement_days_confirmed", 0)),
            subscription_type=SubscriptionType(data.get("subscription_type", "paid")),
            billing_customer_ref=data.get("billing_customer_ref"),
            paywall_status=PaywallStatus(data.get("paywall_status", "pending")),
            subsidy_activated_at=_parse_dt(data.get("subsidy_activated_at")),
            subscription_expires_at=_parse_dt(data.get("subscription_expires_at")),
            grace_period_until=_parse_dt(data.get("grace_period_until")),
            last_presence_at=_parse_dt(data.get("last_presence_at")),
            last_presence_night=_parse_date(data.get("last_presence_night")),
            last_movement_at=_parse_dt(data.get("last_movement_at")),
            paused=bool(data.get("paused", False)),
            paused_at=_parse_date(data.get("paused_at")),
            paused_days=int(data.get("paused_days", 0)),
            created_at=_parse_dt(data.get("created_at")) or utc_now(),
            verification_start_date=(
                _parse_dt(data.get("verification_start_date")) or utc_now()
            ),
        )


# =============================================================================
# Evidence
# =============================================================================
@dataclass
class PresenceEvidence:
    """
    One nightly presence observation submitted by a device.

    Parameters
    ----------
    local_time : datetime
        Device-local wall clock time of the check.
    lat, lon : float, optional
        Coordinates, used only to compute a geocell and then discarded.
    location_hash : str, optional
        Legacy hashed location, checked against boundary hashes.
    wifi_hash : str, optional
        Hashed Wi-Fi environment, logged as corroboration.
    """

    local_time: datetime
    lat: Optional[float] = None
    lon: Optional[float] = None
    location_hash: Optional[str] = None
    wifi_hash: Optional[str] = None

    def __post_init__(self) -> None:
        has_coordinates = self.lat is not None or self.lon is not None
        if has_coordinates:
            validate_coordinates(self.lat, self.lon)
        elif not self.location_hash:
            raise InputValidationError("Missing location data", field="location")

    @property
    def has_coordinates(self) -> bool:
        return self.lat is not None and self.lon is not None


def validate_coordinates(lat: Any, lon: Any) -> None:
    """
    Reject latitude/longitude values that are missing or out of range.

    Raises
    ------
    InvalidCoordinatesError
        If either value is not a finite number in range.
    """
    numeric = (int, float)
    if (
        isinstance(lat, bool)
        or isinstance(lon, bool)
        or not isinstance(lat, numeric)
        or not isinstance(lon, numeric)
    ):
        raise InvalidCoordinatesError(lat, lon)
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
        raise InvalidCoordinatesError(lat, lon)


@dataclass
class PresenceLogEntry:
    """Append-only record of a presence check, successful or not."""

    device_token: str
    checked_at: datetime
    night_date: date
    location_ref: str
    confirmed: bool
    wifi_hash: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "device_token": self.device_token,
            "checked_at": _iso(self.checked_at),
            "night_date": self.night_date.isoformat(),
            "location_ref": self.location_ref,
            "confirmed": self.confirmed,
            "wifi_hash": self.wifi_hash,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PresenceLogEntry":
        return cls(
            device_token=data["device_token"],
            checked_at=_parse_dt(data["checked_at"]),
            night_date=_parse_date(data["night_date"]),
            location_ref=data["location_ref"],
            confirmed=bool(data["confirmed"]),
            wifi_hash=data.get("wifi_hash"),
        )


@dataclass
class MovementAnalysis:
    """Output of the accelerometer classifier."""

    classification: MovementClass
    mean_delta: float
    std_delta: float
    irregularity: float
    rotation_detected: bool
    sample_count: int

    @property
    def is_human(self) -> bool:
        return self.classification == MovementClass.HUMAN

    def to_dict(self) -> Dict[str, Any]:
        return {
            "classification": self.classification.value,
            "mean_delta": round(self.mean_delta, 6),
            "std_delta": round(self.std_delta, 6),
            "irregularity": round(self.irregularity, 6),
            "rotation_detected": self.rotation_detected,
            "sample_count": self.sample_count,
        }


@dataclass
class MovementLogEntry:
    """Append-only record of a movement check."""

    device_token: str
    checked_at: datetime
    day: date
    window: int
    classification: MovementClass
    counted: bool
    trust_score: float
    cell_index: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "device_token": self.device_token,
            "checked_at": _iso(self.checked_at),
            "day": self.day.isoformat(),
            "window": self.window,
            "classification": MovementClass(self.classification).value,
            "counted": self.counted,
            "trust_score": self.trust_score,
            "cell_index": self.cell_index,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MovementLogEntry":
        return cls(
            device_token=data["device_token"],
            checked_at=_parse_dt(data["checked_at"]),
            day=_parse_date(data["day"]),
            window=int(data["window"]),
            classification=MovementClass(data["classification"]),
            counted=bool(data["counted"]),
            trust_score=float(data["trust_score"]),
            cell_index=data.get("cell_index"),
        )


# =============================================================================
# Vouch network
# =============================================================================
@dataclass
class Vouch:
    """A directed vouch edge from an active resident to a requester."""

    voucher_token: str
    vouchee_token: str
    zone_id: str
    vouched_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        if self.voucher_token == self.vouchee_token:
            raise ValueError("A device cannot vouch for itself")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "voucher_token": self.voucher_token,
            "vouchee_token": self.vouchee_token,
            "zone_id": self.zone_id,
            "vouched_at": _iso(self.vouched_at),
        }


@dataclass
class SubsidyRequest:
    """A device's request for a community-sponsored subscription."""

    request_id: str
    device_token: str
    zone_id: str
    qr_payload: str
    expires_at: datetime
    vouch_count: int = 0
    status: SubsidyStatus = SubsidyStatus.PENDING
    is_renewal: bool = False
    created_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        self.status = SubsidyStatus(self.status)

    def is_expired(self, moment: datetime) -> bool:
        return self.status == SubsidyStatus.PENDING and moment >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "device_token": self.device_token,
            "zone_id": self.zone_id,
            "qr_payload": self.qr_payload,
            "expires_at": _iso(self.expires_at),
            "vouch_count": self.vouch_count,
            "status": self.status.value,
            "is_renewal": self.is_renewal,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SubsidyRequest":
        return cls(
            request_id=data["request_id"],
            device_token=data["device_token"],
            zone_id=data["zone_id"],
            qr_payload=data["qr_payload"],
            expires_at=_parse_dt(data["expires_at"]),
            vouch_count=int(data.get("vouch_count", 0)),
            status=SubsidyStatus(data.get("status", "pending")),
            is_renewal=bool(data.get("is_renewal", False)),
            created_at=_parse_dt(data.get("created_at")) or utc_now(),
        )


# =============================================================================
# Subscriptions and threats
# =============================================================================
@dataclass
class SubscriptionStatus:
    """Evaluated access state of a device's subscription."""

    has_access: bool
    status: PaywallStatus
    subscription_type: SubscriptionType
    expires_at: Optional[datetime] = None
    in_grace_period: bool = False
    days_until_expiry: Optional[int] = None
    renewal_required: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "has_access": self.has_access,
            "status": self.status.value,
            "subscription_type": self.subscription_type.value,
            "expires_at": _iso(self.expires_at),
            "in_grace_period": self.in_grace_period,
            "days_until_expiry": self.days_until_expiry,
            "renewal_required": self.renewal_required,
        }


@dataclass
class ThreatRecord:
    """Write-only telemetry for a reported client threat."""

    threat_id: str
    threat_type: str
    severity: str
    action_taken: str
    fingerprint_hash: Optional[str] = None
    ip: Optional[str] = None
    endpoint: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "threat_id": self.threat_id,
            "threat_type": self.threat_type,
            "severity": self.severity,
            "action_taken": self.action_taken,
            "fingerprint_hash": self.fingerprint_hash,
            "ip": self.ip,
            "endpoint": self.endpoint,
            "created_at": _iso(self.created_at),
        }
