"""
Subscription guard.

Evaluates whether a device currently has paid or community-subsidized
access. Billing itself is external; its lifecycle events are applied by the
residency state machine, which writes the fields read here.
"""

from datetime import datetime, timedelta
import math
from typing import Any, Dict, Optional

import structlog

from .constants import EXPIRY_WARNING_DAYS, GRACE_PERIOD_DAYS, SUBSIDY_DURATION_DAYS
from .data_models import (
    DeviceStatus,
    DeviceToken,
    PaywallStatus,
    SubscriptionStatus,
    SubscriptionType,
)
from .exceptions import PaywallRequiredError
from .utils import ensure_utc, token_prefix

# Initialize structured logger
logger = structlog.get_logger(__name__)

_BLOCKED_STATUSES = (DeviceStatus.REVOKED, DeviceStatus.FROZEN)


def _days_until(moment: datetime, now: datetime) -> int:
    return math.ceil((moment - now).total_seconds() / 86400)


def evaluate_subscription(
    device: Optional[DeviceToken], now: Optional[datetime] = None
) -> SubscriptionStatus:
    """
    Evaluate a device's access.

    Parameters
    ----------
    device : DeviceToken or None
        The device record; None (unknown device) yields ``pending``.
    now : datetime, optional
        Evaluation time.

    Returns
    -------
    SubscriptionStatus
        ``has_access`` is True only for active, grace or unexpired subsidized
        subscriptions on a device that is neither revoked nor frozen.
    """
    now = ensure_utc(now)
    if device is None:
        return SubscriptionStatus(False, PaywallStatus.PENDING, SubscriptionType.PAID)

    if device.status in _BLOCKED_STATUSES:
        return SubscriptionStatus(False, PaywallStatus.BLOCKED, device.subscription_type)

    if device.subscription_type == SubscriptionType.PAID:
        return _evaluate_paid(device, now)
    return _evaluate_subsidized(device, now)


def _evaluate_paid(device: DeviceToken, now: datetime) -> SubscriptionStatus:
    if device.grace_period_until is not None and now < device.grace_period_until:
        return SubscriptionStatus(
            has_access=True,
            status=PaywallStatus.GRACE,
            subscription_type=SubscriptionType.PAID,
            expires_at=device.grace_period_until,
            in_grace_period=True,
            days_until_expiry=_days_until(device.grace_period_until, now),
        )

    if device.paywall_status == PaywallStatus.ACTIVE:
        return SubscriptionStatus(True, PaywallStatus.ACTIVE, SubscriptionType.PAID)

    status = device.paywall_status
    if status == PaywallStatus.GRACE:
        # Grace period has run out without a successful payment
        status = PaywallStatus.EXPIRED
    return SubscriptionStatus(
        has_access=False,
        status=status,
        subscription_type=SubscriptionType.PAID,
        renewal_required=status == PaywallStatus.EXPIRED,
    )


def _evaluate_subsidized(device: DeviceToken, now: datetime) -> SubscriptionStatus:
    if device.subsidy_activated_at is None:
        return SubscriptionStatus(False, PaywallStatus.PENDING, SubscriptionType.SUBSIDIZED)

    expires_at = device.subscription_expires_at or (
        device.subsidy_activated_at + timedelta(days=SUBSIDY_DURATION_DAYS)
    )
    if now >= expires_at:
        return SubscriptionStatus(
            has_access=False,
            status=PaywallStatus.EXPIRED,
            subscription_type=SubscriptionType.SUBSIDIZED,
            expires_at=expires_at,
            days_until_expiry=0,
            renewal_required=True,
        )

    days_left = _days_until(expires_at, now)
    return SubscriptionStatus(
        has_access=True,
        status=PaywallStatus.ACTIVE,
        subscription_type=SubscriptionType.SUBSIDIZED,
        expires_at=expires_at,
        days_until_expiry=days_left,
        renewal_required=days_left <= EXPIRY_WARNING_DAYS,
    )


def paywall_message(status: SubscriptionStatus) -> str:
    """User-facing remediation text for a denied subscription."""
    if status.status == PaywallStatus.BLOCKED:
        return "This device has been blocked. Contact support."
    if status.status == PaywallStatus.EXPIRED:
        if status.subscription_type == SubscriptionType.SUBSIDIZED:
            return (
                "Your community sponsorship has expired. "
                "Renew by collecting vouches or subscribe."
            )
        return "Your subscription has expired. Please resubscribe to continue."
    if status.status == PaywallStatus.GRACE:
        return "Payment failed. Please update your payment method."
    return "Subscription required. Please subscribe or get sponsored by neighbors."


def require_active_subscription(
    device: Optional[DeviceToken], now: Optional[datetime] = None
) -> SubscriptionStatus:
    """
    Evaluate access and raise if it is denied.

    Raises
    ------
    PaywallRequiredError
        Carries the evaluated status so the caller can route to remediation.
    """
    status = evaluate_subscription(device, now)
    if not status.has_access:
        prefix = token_prefix(device.token if device else None)
        logger.info("Paywall required", device=prefix, paywall_status=status.status.value)
        raise PaywallRequiredError(paywall_message(status), status, prefix)
    return status


def subsidy_activation_changes(now: Optional[datetime] = None) -> Dict[str, Any]:
    """Device field changes granting a fresh subsidized subscription."""
    now = ensure_utc(now)
    return {
        "subscription_type": SubscriptionType.SUBSIDIZED.value,
        "paywall_status": PaywallStatus.ACTIVE.value,
        "subsidy_activated_at": now.isoformat(),
        "subscription_expires_at": (now + timedelta(days=SUBSIDY_DURATION_DAYS)).isoformat(),
        "grace_period_until": None,
    }


def grace_period_changes(now: Optional[datetime] = None) -> Dict[str, Any]:
    """Device field changes opening a payment grace period."""
    now = ensure_utc(now)
    return {
        "paywall_status": PaywallStatus.GRACE.value,
        "grace_period_until": (now + timedelta(days=GRACE_PERIOD_DAYS)).isoformat(),
    }
