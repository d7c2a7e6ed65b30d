"""
Tests for the device lifecycle: enrollment, nightly presence, movement days,
activation, pausing, deadlines and billing events.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta
import threading

import pytest

from conftest import FAR_LAT, FAR_LON, HOME_LAT, as_utc, night_evidence
from trustcircle import state_machine
from trustcircle.data_models import (
    DeviceStatus,
    LegacyLocator,
    MovementAnalysis,
    MovementClass,
    PaywallStatus,
    PresenceEvidence,
    Zone,
)
from trustcircle.exceptions import (
    BlacklistedDeviceError,
    DeviceNotAuthorizedError,
    DeviceNotFoundError,
    InvalidTransitionError,
    OutsideCheckWindowError,
    PaywallRequiredError,
    ZoneNotFoundError,
)
from trustcircle.state_machine import (
    BillingEvent,
    VerificationStateMachine,
    can_transition,
    in_night_window,
    night_of,
)
from trustcircle.store import device_key

HUMAN = MovementAnalysis(MovementClass.HUMAN, 1.2, 0.6, 0.5, True, 40)
MECHANICAL = MovementAnalysis(MovementClass.MECHANICAL, 1.2, 0.01, 0.01, True, 40)

START = date(2026, 3, 5)


def _set_progress(store, token, nights=None, days=None):
    changes = {}
    if nights is not None:
        changes["nights_confirmed"] = nights
    if days is not None:
        changes["movement_days_confirmed"] = days
    store.update_if(device_key(token), {}, changes)


def _check_in(lifecycle, token, day, hour=23):
    evidence = night_evidence(day, hour)
    return lifecycle.record_presence(token, evidence, now=as_utc(evidence.local_time))


# =============================================================================
# Helpers
# =============================================================================
@pytest.mark.parametrize(
    "hour,inside", [(22, True), (23, True), (0, True), (5, True), (6, False), (12, False), (21, False)]
)
def test_in_night_window_wraps_midnight(hour, inside):
    assert in_night_window(hour, 22, 6) is inside


def test_night_of_rolls_after_midnight_back():
    assert night_of(datetime(2026, 3, 6, 2, 0), 22, 6) == date(2026, 3, 5)
    assert night_of(datetime(2026, 3, 5, 23, 0), 22, 6) == date(2026, 3, 5)


def test_terminal_statuses_have_no_exits():
    for target in DeviceStatus:
        assert not can_transition(DeviceStatus.FROZEN, target)
        assert not can_transition(DeviceStatus.REVOKED, target)
    assert can_transition(DeviceStatus.VERIFYING, DeviceStatus.ACTIVE)
    assert not can_transition(DeviceStatus.ACTIVE, DeviceStatus.VERIFYING)


# =============================================================================
# Enrollment
# =============================================================================
def test_enroll_creates_verifying_device(paid_device, lifecycle, zone):
    device = lifecycle.load_device(paid_device.token)
    assert device.status == DeviceStatus.VERIFYING
    assert device.zone_id == zone.zone_id
    assert device.nights_confirmed == 0
    assert device.paywall_status == PaywallStatus.ACTIVE
    assert len(device.token) == 64
    assert "fp-paid" not in device.token


def test_enroll_without_billing_ref_is_pending(lifecycle, zone, now):
    device = lifecycle.enroll("fp-unpaid", zone.zone_id, now=now)
    assert device.paywall_status == PaywallStatus.PENDING


def test_blacklisted_fingerprint_cannot_enroll(lifecycle, threats, zone, now):
    threats.blacklist("fp-bad", "automation", now)
    with pytest.raises(BlacklistedDeviceError):
        lifecycle.enroll("fp-bad", zone.zone_id, now=now)


def test_enroll_unknown_zone(lifecycle, now):
    with pytest.raises(ZoneNotFoundError):
        lifecycle.enroll("fp-x", "nowhere", now=now)


def test_load_unknown_device(lifecycle):
    with pytest.raises(DeviceNotFoundError):
        lifecycle.load_device("f" * 64)


# =============================================================================
# Nightly presence
# =============================================================================
def test_check_outside_night_window_is_rejected(lifecycle, paid_device):
    with pytest.raises(OutsideCheckWindowError):
        _check_in(lifecycle, paid_device.token, START, hour=12)


def test_one_confirmation_per_night(lifecycle, paid_device, store):
    """A check at 23:00 and another at 02:00 the next morning are the same night."""
    assert _check_in(lifecycle, paid_device.token, START, hour=23) == 1
    assert _check_in(lifecycle, paid_device.token, START + timedelta(days=1), hour=2) == 1
    assert _check_in(lifecycle, paid_device.token, START + timedelta(days=1), hour=23) == 2
    assert len(store.scan(f"presence_log:{paid_device.token}")) == 3


def test_out_of_zone_check_is_logged_not_counted(lifecycle, paid_device, store):
    evidence = night_evidence(START, lat=FAR_LAT, lon=FAR_LON)
    count = lifecycle.record_presence(
        paid_device.token, evidence, now=as_utc(evidence.local_time)
    )
    assert count == 0
    logs = [record for _, record in store.scan(f"presence_log:{paid_device.token}")]
    assert len(logs) == 1
    assert logs[0]["confirmed"] is False


def test_location_is_never_stored_raw(lifecycle, paid_device, store, zone):
    _check_in(lifecycle, paid_device.token, START)
    [(_, record)] = store.scan(f"presence_log:{paid_device.token}")
    assert record["location_ref"] == zone.zone_id
    assert "lat" not in record and "lon" not in record


def test_fourteenth_night_activates_exactly_once(lifecycle, paid_device, store, registry, zone):
    _set_progress(store, paid_device.token, nights=13, days=10)
    assert not lifecycle.try_activate(paid_device.token)
    assert lifecycle.load_device(paid_device.token).status == DeviceStatus.VERIFYING
    assert registry.active_resident_count(zone.zone_id) == 0

    assert _check_in(lifecycle, paid_device.token, START) == 14

    device = lifecycle.load_device(paid_device.token)
    assert device.status == DeviceStatus.ACTIVE
    assert registry.active_resident_count(zone.zone_id) == 1

    # Further nights neither overflow the counter nor re-count the resident
    assert _check_in(lifecycle, paid_device.token, START + timedelta(days=1)) == 14
    assert registry.active_resident_count(zone.zone_id) == 1


def test_activation_waits_for_movement_days(lifecycle, paid_device, store):
    _set_progress(store, paid_device.token, nights=13, days=9)
    _check_in(lifecycle, paid_device.token, START)
    assert lifecycle.load_device(paid_device.token).status == DeviceStatus.VERIFYING


def test_concurrent_activation_has_one_winner(lifecycle, paid_device, store, registry, zone, now):
    _set_progress(store, paid_device.token, nights=14, days=10)
    barrier = threading.Barrier(8)
    results = []

    def attempt():
        barrier.wait()
        results.append(lifecycle.try_activate(paid_device.token, now))

    threads = [threading.Thread(target=attempt) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results.count(True) == 1
    assert registry.active_resident_count(zone.zone_id) == 1


def test_absence_pauses_and_next_night_resumes(lifecycle, paid_device):
    for offset in range(3):
        _check_in(lifecycle, paid_device.token, START + timedelta(days=offset))

    # Three missed nights are within the allowance
    assert not lifecycle.check_absence(paid_device.token, START + timedelta(days=6))
    assert lifecycle.check_absence(paid_device.token, START + timedelta(days=7))

    device = lifecycle.load_device(paid_device.token)
    assert device.paused
    assert device.nights_confirmed == 3

    assert _check_in(lifecycle, paid_device.token, START + timedelta(days=8)) == 4
    assert not lifecycle.load_device(paid_device.token).paused


def test_silent_device_is_paused_from_enrollment(lifecycle, paid_device):
    # Nights are counted from the enrollment evening when none was confirmed
    assert not lifecycle.check_absence(paid_device.token, START + timedelta(days=3))
    assert lifecycle.check_absence(paid_device.token, START + timedelta(days=20))

    device = lifecycle.load_device(paid_device.token)
    assert device.paused
    assert device.paused_at == START
    assert device.nights_confirmed == 0


def test_deadline_fails_stalled_verification(lifecycle, paid_device, now):
    # Checks in every third night but never records movement days
    for offset in range(0, 46, 3):
        _check_in(lifecycle, paid_device.token, START + timedelta(days=offset))

    assert lifecycle.check_verification_deadline(paid_device.token, now) == DeviceStatus.VERIFYING
    later = now + timedelta(days=41)
    assert lifecycle.check_verification_deadline(paid_device.token, later) == DeviceStatus.FAILED

    with pytest.raises(DeviceNotAuthorizedError):
        _check_in(lifecycle, paid_device.token, START + timedelta(days=50))


def test_pause_and_resume_extend_the_deadline(lifecycle, paid_device):
    for offset in range(5):
        _check_in(lifecycle, paid_device.token, START + timedelta(days=offset))
    assert lifecycle.check_absence(paid_device.token, START + timedelta(days=40))

    assert _check_in(lifecycle, paid_device.token, START + timedelta(days=41)) == 6
    device = lifecycle.load_device(paid_device.token)
    assert not device.paused
    assert device.paused_at is None
    # Absent from the night of day 5 until the night of day 41
    assert device.paused_days == 36

    for offset in range(44, 81, 3):
        _check_in(lifecycle, paid_device.token, START + timedelta(days=offset))

    # Past the unextended deadline the device is still verifying
    unextended = as_utc(datetime(2026, 4, 20, 12, 0))
    assert lifecycle.check_verification_deadline(paid_device.token, unextended) == DeviceStatus.VERIFYING

    device = lifecycle.load_device(paid_device.token)
    assert device.status == DeviceStatus.VERIFYING
    assert device.nights_confirmed == 14
    assert device.paused_days == 36

    deadline = lifecycle.verification_deadline(device)
    assert deadline == device.verification_start_date + timedelta(days=81)
    before = deadline - timedelta(hours=1)
    assert lifecycle.check_verification_deadline(paid_device.token, before) == DeviceStatus.VERIFYING
    assert lifecycle.check_verification_deadline(paid_device.token, deadline) == DeviceStatus.FAILED


def test_deadline_waits_during_unflagged_absence(lifecycle, paid_device, now):
    _check_in(lifecycle, paid_device.token, START)
    later = now + timedelta(days=41)
    assert lifecycle.check_verification_deadline(paid_device.token, later) == DeviceStatus.VERIFYING


def test_resumed_log_only_after_pause(lifecycle, paid_device, monkeypatch):
    events = []

    class RecordingLogger:
        def _record(self, event, **fields):
            events.append(event)

        debug = info = warning = error = _record

    monkeypatch.setattr(state_machine, "logger", RecordingLogger())

    _check_in(lifecycle, paid_device.token, START)
    _check_in(lifecycle, paid_device.token, START + timedelta(days=10))
    assert "Verification resumed" not in events
    # The nine missed nights still count as paused time
    assert lifecycle.load_device(paid_device.token).paused_days == 9

    assert lifecycle.check_absence(paid_device.token, START + timedelta(days=20))
    _check_in(lifecycle, paid_device.token, START + timedelta(days=21))
    assert "Verification resumed" in events
    assert lifecycle.load_device(paid_device.token).paused_days == 19


def test_ring_tolerance_accepts_adjacent_cell(store, registry, threats, zone):
    strict = VerificationStateMachine(store, registry, threats=threats, night_window=(22, 6))
    tolerant = VerificationStateMachine(
        store, registry, threats=threats, night_window=(22, 6), tolerance_rings=1
    )
    device = strict.enroll(
        "fp-edge", zone.zone_id, billing_customer_ref="cus_e", now=as_utc(datetime(2026, 3, 5, 12))
    )
    # One grid cell north at resolution 4
    edge = night_evidence(START, lat=HOME_LAT + 1 / 16)

    assert strict.record_presence(device.token, edge, now=as_utc(edge.local_time)) == 0
    assert tolerant.record_presence(device.token, edge, now=as_utc(edge.local_time)) == 1


def test_deadline_skips_paused_devices(lifecycle, paid_device, store, now):
    store.update_if(device_key(paid_device.token), {}, {"paused": True})
    later = now + timedelta(days=60)
    assert lifecycle.check_verification_deadline(paid_device.token, later) == DeviceStatus.VERIFYING


def test_revoked_device_is_terminal(lifecycle, paid_device):
    assert lifecycle.revoke(paid_device.token, "fraud")
    with pytest.raises(InvalidTransitionError):
        lifecycle.transition(paid_device.token, DeviceStatus.VERIFYING)
    with pytest.raises(DeviceNotAuthorizedError):
        _check_in(lifecycle, paid_device.token, START)


def test_pending_paid_device_hits_paywall(lifecycle, zone, now):
    device = lifecycle.enroll("fp-unpaid", zone.zone_id, now=now)
    with pytest.raises(PaywallRequiredError) as exc_info:
        _check_in(lifecycle, device.token, START)
    assert exc_info.value.paywall is True
    assert exc_info.value.subscription.status == PaywallStatus.PENDING


def test_legacy_zone_uses_location_hash(lifecycle, registry, now):
    registry.register_zone(
        Zone(
            zone_id="legacy-1",
            zone_name="Legacy",
            locator=LegacyLocator(boundary_hashes=("hash-a", "hash-b")),
            color_primary="#2D5016",
            color_secondary="#6B8E23",
        )
    )
    device = lifecycle.enroll("fp-legacy", "legacy-1", billing_customer_ref="cus_l", now=now)
    local = datetime(2026, 3, 5, 23, 0)
    inside = PresenceEvidence(local_time=local, location_hash="hash-b")
    assert lifecycle.record_presence(device.token, inside, now=as_utc(local)) == 1


# =============================================================================
# Daytime movement
# =============================================================================
def _move(lifecycle, token, day, hour, analysis=HUMAN, minute=0, lat=None, lon=None):
    local = datetime(day.year, day.month, day.day, hour, minute)
    return lifecycle.record_movement(
        token, analysis, now=as_utc(local), local_time=local, lat=lat, lon=lon
    )


def test_two_windows_confirm_a_movement_day(lifecycle, paid_device):
    assert _move(lifecycle, paid_device.token, START, 8) == 0
    assert _move(lifecycle, paid_device.token, START, 11) == 1
    # A third window on the same day does not add another
    assert _move(lifecycle, paid_device.token, START, 15) == 1


def test_same_window_twice_is_one_window(lifecycle, paid_device):
    _move(lifecycle, paid_device.token, START, 8)
    assert _move(lifecycle, paid_device.token, START, 9, minute=30) == 0


def test_non_human_movement_is_not_counted(lifecycle, paid_device, store):
    _move(lifecycle, paid_device.token, START, 8, MECHANICAL)
    assert _move(lifecycle, paid_device.token, START, 11, MECHANICAL) == 0
    logs = [record for _, record in store.scan(f"movement_log:{paid_device.token}")]
    assert len(logs) == 2
    assert not any(record["counted"] for record in logs)


def test_tenth_movement_day_activates(lifecycle, paid_device, store, registry, zone):
    _set_progress(store, paid_device.token, nights=14, days=9)
    _move(lifecycle, paid_device.token, START, 8)
    assert _move(lifecycle, paid_device.token, START, 11) == 10
    assert lifecycle.load_device(paid_device.token).status == DeviceStatus.ACTIVE
    assert registry.active_resident_count(zone.zone_id) == 1


def test_low_correlation_freezes_device(lifecycle, paid_device, monkeypatch):
    monkeypatch.setattr("trustcircle.state_machine.FREEZE_SCORE_THRESHOLD", 0.95)
    _move(lifecycle, paid_device.token, START, 3)
    device = lifecycle.load_device(paid_device.token)
    assert device.status == DeviceStatus.FROZEN
    with pytest.raises(DeviceNotAuthorizedError):
        _move(lifecycle, paid_device.token, START, 8)


def test_far_movement_right_after_presence_is_penalized(lifecycle, paid_device, store):
    _check_in(lifecycle, paid_device.token, START + timedelta(days=1), hour=5)
    # Presence logged at 05:00; movement from another continent 20 minutes later
    day = START + timedelta(days=1)
    local = datetime(day.year, day.month, day.day, 5, 20)
    lifecycle.record_movement(
        paid_device.token, HUMAN, now=as_utc(local), local_time=local, lat=FAR_LAT, lon=FAR_LON
    )
    [(_, record)] = store.scan(f"movement_log:{paid_device.token}")
    assert record["trust_score"] == pytest.approx(0.7)
    # Before 06:00 there is no movement window to count against
    assert record["window"] == -1
    assert lifecycle.load_device(paid_device.token).status == DeviceStatus.VERIFYING


# =============================================================================
# Billing events
# =============================================================================
def test_payment_failed_opens_grace_period(lifecycle, paid_device, now):
    device = lifecycle.apply_billing_event(paid_device.token, BillingEvent.PAYMENT_FAILED, now)
    assert device.paywall_status == PaywallStatus.GRACE
    assert device.grace_period_until == now + timedelta(days=7)
    # Evidence is still accepted during grace
    assert _check_in(lifecycle, paid_device.token, START) == 1


def test_cancellation_deactivates_and_payment_reactivates(
    lifecycle, paid_device, store, registry, zone, now
):
    _set_progress(store, paid_device.token, nights=14, days=10)
    lifecycle.try_activate(paid_device.token, now)
    assert registry.active_resident_count(zone.zone_id) == 1

    device = lifecycle.apply_billing_event(
        paid_device.token, BillingEvent.SUBSCRIPTION_CANCELLED, now
    )
    assert device.status == DeviceStatus.INACTIVE
    assert device.paywall_status == PaywallStatus.EXPIRED
    assert registry.active_resident_count(zone.zone_id) == 0

    device = lifecycle.apply_billing_event(paid_device.token, "payment_succeeded", now)
    assert device.status == DeviceStatus.ACTIVE
    assert registry.active_resident_count(zone.zone_id) == 1


def test_payment_for_unverified_inactive_device_resumes_verifying(lifecycle, paid_device, now):
    lifecycle.apply_billing_event(paid_device.token, BillingEvent.SUBSCRIPTION_CANCELLED, now)
    device = lifecycle.apply_billing_event(paid_device.token, BillingEvent.PAYMENT_SUCCEEDED, now)
    assert device.status == DeviceStatus.VERIFYING
