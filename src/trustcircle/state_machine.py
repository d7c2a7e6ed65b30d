"""
Presence and movement verification state machine.

A device enrolls in ``verifying`` and becomes ``active`` once it has
accumulated 14 confirmed nights of presence inside its zone and 10 days of
human movement. All status changes go through the transition table and are
applied with a conditional store update on the current status, so a
transition that races another one happens at most once. The zone's active
resident counter is only ever changed with atomic increments, by the caller
that won the transition.

Progress is never erased: an absence longer than the grace allowance only
pauses verification, and the next confirmed night resumes it.
"""

from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple

import structlog

from . import config
from .constants import (
    FREEZE_SCORE_THRESHOLD,
    GRACE_MISSED_NIGHTS,
    MIN_WINDOWS_PER_DAY,
    MOVEMENT_CELL_RESOLUTION,
    MOVEMENT_DAYS_REQUIRED,
    MOVEMENT_TRUST_THRESHOLD,
    NIGHTS_REQUIRED,
    STATIONARY_LOOKBACK_DAYS,
    VERIFICATION_DEADLINE_DAYS,
)
from .data_models import (
    DeviceStatus,
    DeviceToken,
    MovementAnalysis,
    MovementClass,
    MovementLogEntry,
    PaywallStatus,
    PresenceEvidence,
    PresenceLogEntry,
    SubscriptionType,
    validate_coordinates,
)
from .exceptions import (
    BlacklistedDeviceError,
    DeviceNotAuthorizedError,
    DeviceNotFoundError,
    InvalidTransitionError,
    MissingDeviceTokenError,
    OutsideCheckWindowError,
)
from .movement import movement_window, score_correlation
from .store import (
    KeyValueStore,
    device_key,
    movement_day_key,
    movement_log_key,
    movement_window_key,
    night_key,
    presence_log_key,
    zone_member_key,
)
from .subscription import grace_period_changes, require_active_subscription
from .threats import ThreatReporter
from .utils import ensure_utc, generate_id, hash_data
from .zones import ZoneRegistry, locate

# Initialize structured logger
logger = structlog.get_logger(__name__)

S = DeviceStatus

TRANSITIONS: Dict[DeviceStatus, FrozenSet[DeviceStatus]] = {
    S.VERIFYING: frozenset({S.VERIFYING, S.ACTIVE, S.INACTIVE, S.FAILED, S.FROZEN, S.REVOKED}),
    S.ACTIVE: frozenset({S.INACTIVE, S.FROZEN, S.REVOKED}),
    S.INACTIVE: frozenset({S.ACTIVE, S.VERIFYING, S.FROZEN, S.REVOKED}),
    S.FAILED: frozenset({S.VERIFYING, S.REVOKED}),
    S.FROZEN: frozenset(),
    S.REVOKED: frozenset(),
}

# Statuses that may not submit evidence
_EVIDENCE_BLOCKED = (S.REVOKED, S.FROZEN, S.FAILED)


class BillingEvent(str, Enum):
    """Subscription lifecycle events delivered by the billing collaborator."""

    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"


def can_transition(current: DeviceStatus, target: DeviceStatus) -> bool:
    return target in TRANSITIONS[DeviceStatus(current)]


def in_night_window(hour: int, start: int, end: int) -> bool:
    """True if ``hour`` lies in ``[start, end)``, wrapping past midnight."""
    if start > end:
        return hour >= start or hour < end
    return start <= hour < end


def night_of(local_time: datetime, start: int, end: int) -> date:
    """Calendar date of the evening a check belongs to (after-midnight checks roll back)."""
    if start > end and local_time.hour < end:
        return local_time.date() - timedelta(days=1)
    return local_time.date()


class VerificationStateMachine:
    """
    Owns the device lifecycle.

    Parameters
    ----------
    store : KeyValueStore
        Shared state.
    zones : ZoneRegistry
        Zone lookup, locator resolution and resident counters.
    threats : ThreatReporter, optional
        Blacklist checked on enrollment; defaults to one on ``store``.
    night_window : tuple of int, optional
        ``(start_hour, end_hour)`` device-local; defaults to config.
    tolerance_rings : int, optional
        Neighboring cell rings accepted as inside a geocell zone; defaults
        to config.
    """

    def __init__(
        self,
        store: KeyValueStore,
        zones: ZoneRegistry,
        threats: Optional[ThreatReporter] = None,
        night_window: Optional[Tuple[int, int]] = None,
        tolerance_rings: Optional[int] = None,
    ) -> None:
        self.store = store
        self.zones = zones
        self.threats = threats or ThreatReporter(store)
        self.night_window = night_window or (
            config.NIGHT_WINDOW_START_HOUR,
            config.NIGHT_WINDOW_END_HOUR,
        )
        self.tolerance_rings = (
            config.PRESENCE_TOLERANCE_RINGS if tolerance_rings is None else tolerance_rings
        )

    # =========================================================================
    # Records and transitions
    # =========================================================================
    def load_device(self, token: Optional[str]) -> DeviceToken:
        """
        Fetch a device record.

        Raises
        ------
        MissingDeviceTokenError
            If ``token`` is empty.
        DeviceNotFoundError
            If no record exists.
        """
        if not token:
            raise MissingDeviceTokenError()
        record = self.store.get(device_key(token))
        if record is None:
            raise DeviceNotFoundError(token[:8])
        return DeviceToken.from_dict(record)

    def find_device(self, token: str) -> Optional[DeviceToken]:
        record = self.store.get(device_key(token)) if token else None
        return DeviceToken.from_dict(record) if record else None

    def _apply_transition(
        self,
        device: DeviceToken,
        target: DeviceStatus,
        changes: Optional[Dict[str, Any]] = None,
    ) -> bool:
        if not can_transition(device.status, target):
            raise InvalidTransitionError(device.status.value, target.value)

        update = dict(changes or {})
        update["status"] = target.value
        applied = self.store.update_if(
            device_key(device.token), {"status": device.status.value}, update
        )
        if not applied:
            logger.debug(
                "Status transition lost race",
                device=device.short,
                current=device.status.value,
                target=target.value,
            )
            return False

        if device.status != S.ACTIVE and target == S.ACTIVE:
            self.zones.adjust_residents(device.zone_id, 1)
        elif device.status == S.ACTIVE and target != S.ACTIVE:
            self.zones.adjust_residents(device.zone_id, -1)

        logger.info(
            "Device status changed",
            device=device.short,
            zone_id=device.zone_id,
            previous=device.status.value,
            status=target.value,
        )
        return True

    def transition(
        self,
        token: str,
        target: DeviceStatus,
        changes: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Move a device to ``target`` if the transition table allows it.

        Returns
        -------
        bool
            False if a concurrent update changed the status first.

        Raises
        ------
        InvalidTransitionError
            If the transition is not allowed from the current status.
        """
        return self._apply_transition(self.load_device(token), DeviceStatus(target), changes)

    def _authorize_evidence(self, device: DeviceToken, now: datetime) -> None:
        if device.status in _EVIDENCE_BLOCKED:
            raise DeviceNotAuthorizedError(device.short, device.status.value)
        require_active_subscription(device, now)

    # =========================================================================
    # Enrollment
    # =========================================================================
    def enroll(
        self,
        fingerprint_hash: str,
        zone_id: str,
        subscription_type: SubscriptionType = SubscriptionType.PAID,
        billing_customer_ref: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> DeviceToken:
        """
        Create a device token in ``verifying`` for a zone.

        The token is a digest of the fingerprint hash, the time and a random
        UUID, so it cannot be reversed to the fingerprint.

        Raises
        ------
        BlacklistedDeviceError
            If the fingerprint is blacklisted.
        ZoneNotFoundError
            If the zone does not exist.
        """
        now = ensure_utc(now)
        if self.threats.is_blacklisted(fingerprint_hash):
            logger.warning("Blacklisted fingerprint attempted enrollment", zone_id=zone_id)
            raise BlacklistedDeviceError()

        zone = self.zones.get_zone(zone_id)
        token = hash_data(f"{fingerprint_hash}:{int(now.timestamp() * 1000)}:{generate_id()}")
        device = DeviceToken(
            token=token,
            fingerprint_hash=fingerprint_hash,
            zone_id=zone.zone_id,
            subscription_type=subscription_type,
            billing_customer_ref=billing_customer_ref,
            paywall_status=(
                PaywallStatus.ACTIVE if billing_customer_ref else PaywallStatus.PENDING
            ),
            created_at=now,
            verification_start_date=now,
        )
        self.store.put(device_key(token), device.to_dict())
        self.store.put(
            zone_member_key(zone.zone_id, token),
            {"token": token, "joined_at": now.isoformat()},
        )

        logger.info(
            "Device enrolled",
            device=device.short,
            zone_id=zone.zone_id,
            subscription_type=device.subscription_type.value,
        )
        return device

    # =========================================================================
    # Nightly presence
    # =========================================================================
    def record_presence(
        self, token: str, evidence: PresenceEvidence, now: Optional[datetime] = None
    ) -> int:
        """
        Record a nightly presence check.

        Every check inside the night window is logged. A successful check
        counts once per night; repeats on the same night return the current
        count unchanged.

        Returns
        -------
        int
            ``nights_confirmed`` after the check.

        Raises
        ------
        OutsideCheckWindowError
            If the device-local time is outside the night window.
        DeviceNotAuthorizedError, PaywallRequiredError
            If the device may not submit evidence.
        """
        now = ensure_utc(now)
        device = self.load_device(token)
        self._authorize_evidence(device, now)

        start, end = self.night_window
        hour = evidence.local_time.hour
        if not in_night_window(hour, start, end):
            raise OutsideCheckWindowError(hour, self.night_window)

        zone = self.zones.get_zone(device.zone_id)
        inside, location_ref = locate(
            zone.locator, evidence, self.zones.indexer, self.tolerance_rings
        )
        night = night_of(evidence.local_time, start, end)

        entry = PresenceLogEntry(
            device_token=token,
            checked_at=now,
            night_date=night,
            location_ref=location_ref or "unknown",
            confirmed=inside,
            wifi_hash=evidence.wifi_hash,
        )
        self.store.put(
            presence_log_key(token, f"{now.isoformat()}:{generate_id()[:8]}"),
            entry.to_dict(),
        )

        if not inside:
            logger.info("Presence check outside zone", device=device.short, zone_id=zone.zone_id)
            return device.nights_confirmed

        if not self.store.put_if_absent(
            night_key(token, night.isoformat()), {"checked_at": now.isoformat()}
        ):
            logger.debug("Night already confirmed", device=device.short, night=night.isoformat())
            return device.nights_confirmed

        # The deadline clock stands still for the whole of a long absence
        missed = self._missed_nights(device, night)
        credited = 0
        if device.paused or missed > GRACE_MISSED_NIGHTS:
            absent_from = device.paused_at or night - timedelta(days=missed)
            credited = max(0, (night - absent_from).days)

        self.store.update_if(
            device_key(token),
            {},
            {
                "last_presence_at": now.isoformat(),
                "last_presence_night": night.isoformat(),
                "paused": False,
                "paused_at": None,
            },
        )
        if credited:
            self.store.increment(device_key(token), "paused_days", credited)
        if device.paused:
            logger.info("Verification resumed", device=device.short, paused_days=credited)
        nights = self.store.increment(
            device_key(token), "nights_confirmed", 1, maximum=NIGHTS_REQUIRED
        )
        if nights is None:
            nights = NIGHTS_REQUIRED

        logger.info("Night confirmed", device=device.short, nights_confirmed=nights)
        self.try_activate(token, now)
        return nights

    @staticmethod
    def _last_accounted_night(device: DeviceToken) -> date:
        # The evening before verification started stands in for a confirmed night
        before_start = device.verification_start_date.date() - timedelta(days=1)
        if device.last_presence_night is None:
            return before_start
        return max(device.last_presence_night, before_start)

    @classmethod
    def _missed_nights(cls, device: DeviceToken, night: date) -> int:
        """Consecutive nights without a confirmation before ``night``."""
        return max(0, (night - cls._last_accounted_night(device)).days - 1)

    def check_absence(self, token: str, local_date: date) -> bool:
        """
        Pause verification after too many consecutive missed nights.

        Nights are counted from the last confirmed night, or from the
        evening verification started if none has been confirmed yet.
        Accumulated counts are kept and the first missed night is recorded
        so the deadline can be pushed out on resume. Returns the device's
        paused state.
        """
        device = self.load_device(token)
        if device.status != S.VERIFYING or device.paused:
            return device.paused

        missed = self._missed_nights(device, local_date)
        if missed > GRACE_MISSED_NIGHTS:
            first_missed = self._last_accounted_night(device) + timedelta(days=1)
            self.store.update_if(
                device_key(token),
                {"status": S.VERIFYING.value},
                {"paused": True, "paused_at": first_missed.isoformat()},
            )
            logger.info(
                "Verification paused after absence",
                device=device.short,
                missed_nights=missed,
                nights_confirmed=device.nights_confirmed,
            )
            return True
        return False

    @staticmethod
    def verification_deadline(device: DeviceToken) -> datetime:
        """Start date plus the allowed period, extended by time spent paused."""
        return device.verification_start_date + timedelta(
            days=VERIFICATION_DEADLINE_DAYS + device.paused_days
        )

    def check_verification_deadline(self, token: str, now: Optional[datetime] = None) -> DeviceStatus:
        """
        Fail a device that stayed in ``verifying`` past its deadline.

        Paused devices are left alone, as are devices in an absence long
        enough to pause them; that time is credited when they resume.
        """
        now = ensure_utc(now)
        device = self.load_device(token)
        if device.status != S.VERIFYING or device.paused:
            return device.status
        if self._missed_nights(device, now.date()) > GRACE_MISSED_NIGHTS:
            return device.status

        if now >= self.verification_deadline(device) and not self._thresholds_met(device):
            if self._apply_transition(device, S.FAILED):
                return S.FAILED
            return self.load_device(token).status
        return device.status

    # =========================================================================
    # Activation
    # =========================================================================
    @staticmethod
    def _thresholds_met(device: DeviceToken) -> bool:
        return (
            device.nights_confirmed >= NIGHTS_REQUIRED
            and device.movement_days_confirmed >= MOVEMENT_DAYS_REQUIRED
        )

    def try_activate(self, token: str, now: Optional[datetime] = None) -> bool:
        """
        Activate a verifying device whose evidence thresholds are met.

        Only the caller whose conditional update succeeds increments the
        zone's resident counter.
        """
        device = self.load_device(token)
        if device.status != S.VERIFYING or not self._thresholds_met(device):
            return False
        activated = self._apply_transition(
            device,
            S.ACTIVE,
            {"activated_at": ensure_utc(now).isoformat(), "paused": False, "paused_at": None},
        )
        if activated:
            logger.info("Device verified as resident", device=device.short, zone_id=device.zone_id)
        return activated

    # =========================================================================
    # Daytime movement
    # =========================================================================
    def record_movement(
        self,
        token: str,
        analysis: MovementAnalysis,
        now: Optional[datetime] = None,
        local_time: Optional[datetime] = None,
        lat: Optional[float] = None,
        lon: Optional[float] = None,
    ) -> int:
        """
        Record a classified movement burst.

        Human movement inside one of the four daytime windows registers that
        window, provided the movement/presence correlation score is high
        enough. A day is confirmed once two distinct windows register. A very
        low correlation score freezes the device.

        Returns
        -------
        int
            ``movement_days_confirmed`` after the check.
        """
        now = ensure_utc(now)
        local_time = local_time or now
        device = self.load_device(token)
        self._authorize_evidence(device, now)

        movement_cell = None
        if lat is not None or lon is not None:
            validate_coordinates(lat, lon)
            movement_cell = self.zones.indexer.cell_for(lat, lon, MOVEMENT_CELL_RESOLUTION)

        last_presence = self._last_presence(token)
        score, flags = score_correlation(
            self.zones.indexer,
            local_time,
            movement_cell=movement_cell,
            last_presence_cell=last_presence.location_ref if last_presence else None,
            last_presence_at=last_presence.checked_at if last_presence else None,
            checked_at=now,
            same_cell_movements=self._same_cell_movements(token, movement_cell, now),
        )

        day = local_time.date()
        window = movement_window(local_time.hour)
        counted = analysis.is_human and window >= 0 and score >= MOVEMENT_TRUST_THRESHOLD

        entry = MovementLogEntry(
            device_token=token,
            checked_at=now,
            day=day,
            window=window,
            classification=analysis.classification,
            counted=counted,
            trust_score=score,
            cell_index=movement_cell,
        )
        self.store.put(
            movement_log_key(token, f"{now.isoformat()}:{generate_id()[:8]}"), entry.to_dict()
        )
        self.store.update_if(device_key(token), {}, {"last_movement_at": now.isoformat()})

        if score < FREEZE_SCORE_THRESHOLD:
            logger.warning(
                "Movement correlation failed, freezing device",
                device=device.short,
                trust_score=score,
                flags=flags,
            )
            self._apply_transition(device, S.FROZEN, {"frozen_at": now.isoformat()})
            return device.movement_days_confirmed

        if not counted:
            logger.info(
                "Movement not counted",
                device=device.short,
                classification=analysis.classification.value,
                window=window,
                trust_score=score,
                flags=flags,
            )
            return device.movement_days_confirmed

        self.store.put_if_absent(
            movement_window_key(token, day.isoformat(), window), {"checked_at": now.isoformat()}
        )
        windows_seen = len(self.store.scan(f"movement_window:{token}:{day.isoformat()}:"))

        days = device.movement_days_confirmed
        if windows_seen >= MIN_WINDOWS_PER_DAY and self.store.put_if_absent(
            movement_day_key(token, day.isoformat()), {"windows": windows_seen}
        ):
            incremented = self.store.increment(
                device_key(token), "movement_days_confirmed", 1, maximum=MOVEMENT_DAYS_REQUIRED
            )
            days = incremented if incremented is not None else MOVEMENT_DAYS_REQUIRED
            logger.info("Movement day confirmed", device=device.short, movement_days_confirmed=days)
            self.try_activate(token, now)

        return days

    def _last_presence(self, token: str) -> Optional[PresenceLogEntry]:
        entries = [
            PresenceLogEntry.from_dict(record)
            for _, record in self.store.scan(presence_log_key(token))
        ]
        if not entries:
            return None
        return max(entries, key=lambda entry: entry.checked_at)

    def _same_cell_movements(self, token: str, cell: Optional[str], now: datetime) -> int:
        if not cell:
            return 0
        since = now - timedelta(days=STATIONARY_LOOKBACK_DAYS)
        count = 0
        for _, record in self.store.scan(movement_log_key(token)):
            entry = MovementLogEntry.from_dict(record)
            if (
                entry.cell_index == cell
                and entry.checked_at >= since
                and entry.classification == MovementClass.HUMAN
            ):
                count += 1
        return count

    # =========================================================================
    # Billing and administration
    # =========================================================================
    def apply_billing_event(
        self, token: str, event: BillingEvent, now: Optional[datetime] = None
    ) -> DeviceToken:
        """
        Apply a billing lifecycle event to a paid device.

        - payment succeeded: subscription active, grace cleared, an inactive
          device returns to ``active`` (if already verified) or ``verifying``
        - payment failed: seven-day grace period
        - subscription cancelled: subscription expired, device ``inactive``
        """
        now = ensure_utc(now)
        event = BillingEvent(event)
        device = self.load_device(token)
        key = device_key(token)

        if event == BillingEvent.PAYMENT_SUCCEEDED:
            self.store.update_if(
                key, {}, {"paywall_status": PaywallStatus.ACTIVE.value, "grace_period_until": None}
            )
            if device.status == S.INACTIVE:
                target = S.ACTIVE if self._thresholds_met(device) else S.VERIFYING
                self._apply_transition(device, target)
        elif event == BillingEvent.PAYMENT_FAILED:
            self.store.update_if(key, {}, grace_period_changes(now))
        else:
            self.store.update_if(
                key, {}, {"paywall_status": PaywallStatus.EXPIRED.value, "grace_period_until": None}
            )
            if device.status in (S.ACTIVE, S.VERIFYING):
                self._apply_transition(device, S.INACTIVE, {"deactivated_at": now.isoformat()})

        logger.info("Billing event applied", device=device.short, billing_event=event.value)
        return self.load_device(token)

    def revoke(self, token: str, reason: str) -> bool:
        """Permanently revoke a device."""
        device = self.load_device(token)
        logger.warning("Revoking device", device=device.short, reason=reason)
        return self._apply_transition(device, S.REVOKED, {"revoked_reason": reason})

    def restart_verification(
        self,
        token: str,
        now: Optional[datetime] = None,
        changes: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Put a device (back) into ``verifying`` with a fresh start date."""
        now = ensure_utc(now)
        update = dict(changes or {})
        update.update(
            {
                "verification_start_date": now.isoformat(),
                "paused": False,
                "paused_at": None,
                "paused_days": 0,
            }
        )
        return self._apply_transition(self.load_device(token), S.VERIFYING, update)
