"""
Vouch and subsidy network.

A device without a paid subscription can be sponsored by its neighbors:
it opens a subsidy request and collects vouches from active residents of
the same zone. The tenth vouch activates the request, grants a one-year
subsidized subscription and (re)starts residency verification.

Concurrency: the pair edge is claimed with ``put_if_absent``, the voucher's
yearly allowance is reserved with a bounded increment, and the vouchee's
count is an atomic increment. Only the vouch whose increment lands exactly
on the threshold attempts activation, and activation itself is a
conditional ``pending -> activated`` update, so it happens once.
"""

from datetime import datetime, timedelta
import json
from typing import List, Optional

import structlog

from .constants import (
    MAX_VOUCHES_PER_YEAR,
    MIN_VOUCHER_AGE_DAYS,
    SUBSIDY_REQUEST_TTL_DAYS,
    VOUCH_QR_TYPE,
    VOUCHES_REQUIRED,
)
from .data_models import (
    DeviceStatus,
    DeviceToken,
    SubscriptionType,
    SubsidyRequest,
    SubsidyStatus,
    Vouch,
)
from .exceptions import (
    InputValidationError,
    MissingDeviceTokenError,
    NoEligibleVoucherError,
    SeedMismatchError,
    SubsidyRequestNotFoundError,
    VouchNotAllowedError,
)
from .seed_engine import SeedEngine
from .state_machine import VerificationStateMachine
from .store import KeyValueStore, device_key, subsidy_key, vouch_key, vouch_year_key, zone_member_key
from .subscription import evaluate_subscription, require_active_subscription, subsidy_activation_changes
from .utils import ensure_utc, generate_id

# Initialize structured logger
logger = structlog.get_logger(__name__)

# Statuses from which an activated subsidy (re)starts verification
_RESTARTABLE = (DeviceStatus.VERIFYING, DeviceStatus.FAILED, DeviceStatus.INACTIVE)


class VouchNetwork:
    """
    Subsidy requests and vouch recording.

    Parameters
    ----------
    store : KeyValueStore
        Shared state.
    lifecycle : VerificationStateMachine
        Device records, enrollment and status transitions.
    seed_engine : SeedEngine
        Validates badge seeds presented in scan-to-vouch.
    """

    def __init__(
        self,
        store: KeyValueStore,
        lifecycle: VerificationStateMachine,
        seed_engine: SeedEngine,
    ) -> None:
        self.store = store
        self.lifecycle = lifecycle
        self.seed_engine = seed_engine

    # =========================================================================
    # Subsidy requests
    # =========================================================================
    def request_subsidy(
        self,
        fingerprint_hash: str,
        lat: Optional[float] = None,
        lon: Optional[float] = None,
        zone_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> SubsidyRequest:
        """
        Enroll a subsidized device and open its vouch request.

        The zone is either given or resolved (and lazily created) from the
        coordinates, which are not stored.
        """
        now = ensure_utc(now)
        if zone_id is None:
            if lat is None or lon is None:
                raise InputValidationError("Missing zone or location", field="location")
            zone_id = self.lifecycle.zones.get_or_create_geocell_zone(lat, lon, now).zone_id

        device = self.lifecycle.enroll(
            fingerprint_hash, zone_id, SubscriptionType.SUBSIDIZED, now=now
        )
        request_id = generate_id()
        payload = json.dumps(
            {
                "type": VOUCH_QR_TYPE,
                "deviceToken": device.token,
                "zoneId": device.zone_id,
                "requestId": request_id,
            }
        )
        return self._open_request(device, request_id, payload, now, is_renewal=False)

    def _open_request(
        self,
        device: DeviceToken,
        request_id: str,
        payload: str,
        now: datetime,
        is_renewal: bool,
    ) -> SubsidyRequest:
        current = self._load_request(device.token)
        if current is not None and current.status == SubsidyStatus.PENDING and not current.is_expired(now):
            return current

        request = SubsidyRequest(
            request_id=request_id,
            device_token=device.token,
            zone_id=device.zone_id,
            qr_payload=payload,
            expires_at=now + timedelta(days=SUBSIDY_REQUEST_TTL_DAYS),
            is_renewal=is_renewal,
            created_at=now,
        )
        self.store.put(subsidy_key(device.token), request.to_dict())
        logger.info(
            "Subsidy request opened",
            device=device.short,
            zone_id=device.zone_id,
            renewal=is_renewal,
        )
        return request

    def _load_request(self, token: str) -> Optional[SubsidyRequest]:
        record = self.store.get(subsidy_key(token))
        return SubsidyRequest.from_dict(record) if record else None

    def subsidy_status(self, token: str, now: Optional[datetime] = None) -> SubsidyRequest:
        """
        Current subsidy request of a device, expiring it if stale.

        Raises
        ------
        SubsidyRequestNotFoundError
            If the device never opened a request.
        """
        if not token:
            raise MissingDeviceTokenError()
        now = ensure_utc(now)
        request = self._load_request(token)
        if request is None:
            raise SubsidyRequestNotFoundError(token[:8])

        if request.is_expired(now):
            self.store.update_if(
                subsidy_key(token),
                {"request_id": request.request_id, "status": SubsidyStatus.PENDING.value},
                {"status": SubsidyStatus.EXPIRED.value},
            )
            logger.info("Subsidy request expired", device=token[:8])
            request = self._load_request(token)
        return request

    def renew_subsidy(self, token: str, now: Optional[datetime] = None) -> SubsidyRequest:
        """Open a renewal request for a subsidized device."""
        now = ensure_utc(now)
        device = self.lifecycle.load_device(token)
        if device.subscription_type != SubscriptionType.SUBSIDIZED:
            raise VouchNotAllowedError("not_subsidized")

        request_id = generate_id()
        payload = f"renewal:{device.token}:{request_id}"
        return self._open_request(device, request_id, payload, now, is_renewal=True)

    # =========================================================================
    # Eligibility
    # =========================================================================
    def eligibility_failure(
        self,
        voucher: DeviceToken,
        vouchee_token: str,
        zone_id: str,
        now: Optional[datetime] = None,
    ) -> Optional[str]:
        """
        Reason a voucher may not vouch, or None if eligible.

        Checked in order: self vouch, active status, same zone, account age,
        yearly allowance, existing edge.
        """
        now = ensure_utc(now)
        if voucher.token == vouchee_token:
            return "self_vouch"
        if voucher.status != DeviceStatus.ACTIVE:
            return "voucher_not_active"
        if voucher.zone_id != zone_id:
            return "different_zone"
        if now - voucher.created_at < timedelta(days=MIN_VOUCHER_AGE_DAYS):
            return "account_too_new"

        used = (self.store.get(vouch_year_key(voucher.token, now.year)) or {}).get("count", 0)
        if used >= MAX_VOUCHES_PER_YEAR:
            return "yearly_limit_reached"
        if self.store.get(vouch_key(voucher.token, vouchee_token)) is not None:
            return "already_vouched"
        return None

    def check_eligibility(
        self,
        voucher_token: str,
        vouchee_token: str,
        zone_id: str,
        now: Optional[datetime] = None,
    ) -> bool:
        voucher = self.lifecycle.find_device(voucher_token)
        if voucher is None:
            return False
        return self.eligibility_failure(voucher, vouchee_token, zone_id, now) is None

    # =========================================================================
    # Recording vouches
    # =========================================================================
    def record_vouch(
        self,
        voucher_token: str,
        vouchee_token: str,
        zone_id: str,
        now: Optional[datetime] = None,
    ) -> Vouch:
        """
        Record a vouch from an active resident for a pending request.

        Returns
        -------
        Vouch
            The stored edge.

        Raises
        ------
        PaywallRequiredError
            If the voucher's own subscription is not active.
        VouchNotAllowedError
            If the voucher fails the eligibility predicate.
        SubsidyRequestNotFoundError
            If the vouchee has no pending request.
        """
        if not voucher_token or not vouchee_token:
            raise MissingDeviceTokenError()
        now = ensure_utc(now)

        voucher = self.lifecycle.load_device(voucher_token)
        require_active_subscription(voucher, now)

        reason = self.eligibility_failure(voucher, vouchee_token, zone_id, now)
        if reason is not None:
            logger.info("Vouch rejected", voucher=voucher.short, reason=reason)
            raise VouchNotAllowedError(reason)

        request = self.subsidy_status(vouchee_token, now)
        if request.status != SubsidyStatus.PENDING:
            raise SubsidyRequestNotFoundError(vouchee_token[:8])
        if request.zone_id != zone_id:
            raise VouchNotAllowedError("different_zone")

        vouch = Vouch(voucher_token, vouchee_token, zone_id, now)
        edge = vouch_key(voucher_token, vouchee_token)
        if not self.store.put_if_absent(edge, vouch.to_dict()):
            raise VouchNotAllowedError("already_vouched")

        slot = self.store.increment(
            vouch_year_key(voucher_token, now.year), "count", 1, maximum=MAX_VOUCHES_PER_YEAR
        )
        if slot is None:
            self.store.delete(edge)
            raise VouchNotAllowedError("yearly_limit_reached")

        count = self.store.increment(subsidy_key(vouchee_token), "vouch_count", 1)
        logger.info(
            "Vouch recorded",
            voucher=voucher.short,
            vouchee=vouchee_token[:8],
            zone_id=zone_id,
            vouch_count=count,
        )

        if count == VOUCHES_REQUIRED:
            self._activate_subsidy(request, now)
        return vouch

    def _activate_subsidy(self, request: SubsidyRequest, now: datetime) -> bool:
        activated = self.store.update_if(
            subsidy_key(request.device_token),
            {"request_id": request.request_id, "status": SubsidyStatus.PENDING.value},
            {"status": SubsidyStatus.ACTIVATED.value, "activated_at": now.isoformat()},
        )
        if not activated:
            return False

        changes = subsidy_activation_changes(now)
        device = self.lifecycle.load_device(request.device_token)
        if device.status in _RESTARTABLE:
            self.lifecycle.restart_verification(device.token, now, changes)
        else:
            self.store.update_if(device_key(device.token), {}, changes)

        logger.info(
            "Subsidy activated",
            device=device.short,
            zone_id=request.zone_id,
            renewal=request.is_renewal,
        )
        return True

    # =========================================================================
    # Scan-to-vouch
    # =========================================================================
    def zone_members(self, zone_id: str) -> List[str]:
        """Tokens enrolled in a zone, in key order."""
        return [record["token"] for _, record in self.store.scan(zone_member_key(zone_id))]

    def scan_to_vouch(
        self,
        seeker_token: str,
        badge_seed: str,
        zone_id: str,
        now: Optional[datetime] = None,
    ) -> Vouch:
        """
        Let a seeker who scanned a live zone badge obtain a vouch.

        The first active member passing the full eligibility predicate (and
        holding an active subscription) vouches on the seeker's behalf.

        Raises
        ------
        SeedMismatchError
            If the presented seed is not live for the zone.
        NoEligibleVoucherError
            If no member is eligible.
        """
        now = ensure_utc(now)
        request = self.subsidy_status(seeker_token, now)
        if request.status != SubsidyStatus.PENDING:
            raise SubsidyRequestNotFoundError(seeker_token[:8])

        if not self.seed_engine.is_current_seed(zone_id, badge_seed, now):
            logger.warning("Scan-to-vouch with stale or forged seed", zone_id=zone_id)
            raise SeedMismatchError(zone_id)

        candidates = [token for token in self.zone_members(zone_id) if token != seeker_token]
        for token in candidates:
            voucher = self.lifecycle.find_device(token)
            if voucher is None:
                continue
            if self.eligibility_failure(voucher, seeker_token, zone_id, now) is not None:
                continue
            if not evaluate_subscription(voucher, now).has_access:
                continue
            try:
                return self.record_vouch(token, seeker_token, zone_id, now)
            except VouchNotAllowedError as e:
                # Lost a race for this voucher's allowance; try the next member
                logger.debug("Candidate voucher became ineligible", voucher=token[:8], reason=e.reason)

        raise NoEligibleVoucherError(zone_id, len(candidates))
