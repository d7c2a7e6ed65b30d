"""
Custom exception classes for the TrustCircle engine.

The hierarchy mirrors how callers are expected to react:

- ``InputValidationError``: reject locally, nothing was changed.
- ``AuthorizationError``: route the user to remediation (paywall, support),
  never retry blindly.
- ``InsufficientEvidenceError``: no result this time; retry on the next poll.
  These are never recorded as negative evidence.
- ``IntegrityError``: verification failed; may be escalated as a threat.

None of these is fatal to the process.
"""

from typing import Optional, Dict, Any


class TrustCircleError(Exception):
    """
    Base exception class for all TrustCircle errors.

    Parameters
    ----------
    message : str
        Human-readable error message.
    context : dict, optional
        Additional context information about the error.
    error_code : str, optional
        Unique error code for programmatic handling.
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
    ) -> None:
        self.message = message
        self.context = context or {}
        self.error_code = error_code
        super().__init__(self.message)

    def __str__(self) -> str:
        """Return a formatted string representation of the error."""
        parts = [self.message]

        if self.error_code:
            parts.append(f"[Error Code: {self.error_code}]")

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            parts.append(f"[Context: {context_str}]")

        return " ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert the exception to a dictionary for structured logging.

        Returns
        -------
        dict
            Dictionary representation of the exception.
        """
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "context": self.context,
        }


# =============================================================================
# Input errors
# =============================================================================
class InputValidationError(TrustCircleError):
    """Exception raised for malformed or missing request input."""

    def __init__(self, message: str, field: Optional[str] = None, **kwargs) -> None:
        context = kwargs.get("context", {})
        if field:
            context["field"] = field

        super().__init__(message, context, kwargs.get("error_code", "INPUT_001"))


class MissingDeviceTokenError(InputValidationError):
    """Exception raised when a call arrives without a device token."""

    def __init__(self) -> None:
        super().__init__(
            "Missing device token", field="device_token", error_code="INPUT_002"
        )


class InvalidCoordinatesError(InputValidationError):
    """Exception raised for latitude/longitude values outside valid ranges."""

    def __init__(self, lat: Any, lon: Any) -> None:
        # Coordinates are deliberately left out of the context
        super().__init__(
            "Malformed coordinates",
            field="coordinates",
            context={"lat_type": type(lat).__name__, "lon_type": type(lon).__name__},
            error_code="INPUT_003",
        )


# =============================================================================
# Authorization errors
# =============================================================================
class AuthorizationError(TrustCircleError):
    """
    Exception raised when a device may not perform the requested action.

    Callers should surface these as a remediation signal (paywall, support)
    rather than a generic failure.
    """

    def __init__(
        self, message: str, device_prefix: Optional[str] = None, **kwargs
    ) -> None:
        context = kwargs.get("context", {})
        if device_prefix:
            context["device_prefix"] = device_prefix

        super().__init__(message, context, kwargs.get("error_code", "AUTH_001"))


class DeviceNotFoundError(AuthorizationError):
    """Exception raised when no device record exists for a token."""

    def __init__(self, device_prefix: str) -> None:
        super().__init__(
            "Device not found", device_prefix=device_prefix, error_code="AUTH_002"
        )


class DeviceNotAuthorizedError(AuthorizationError):
    """Exception raised for revoked, frozen or otherwise blocked devices."""

    def __init__(self, device_prefix: str, status: str) -> None:
        super().__init__(
            f"Device is not active (status={status})",
            device_prefix=device_prefix,
            context={"status": status},
            error_code="AUTH_003",
        )
        self.status = status


class PaywallRequiredError(AuthorizationError):
    """
    Exception raised when a device lacks an active subscription.

    Parameters
    ----------
    message : str
        User-facing remediation message.
    subscription : SubscriptionStatus
        The evaluated subscription status, returned to the caller so it can
        render the right paywall.
    """

    paywall = True

    def __init__(self, message: str, subscription: Any, device_prefix: str) -> None:
        super().__init__(
            message,
            device_prefix=device_prefix,
            context={"paywall_status": getattr(subscription, "status", None)},
            error_code="AUTH_004",
        )
        self.subscription = subscription


class BlacklistedDeviceError(AuthorizationError):
    """Exception raised when a blacklisted fingerprint tries to enroll."""

    def __init__(self) -> None:
        super().__init__("Device fingerprint is blacklisted", error_code="AUTH_005")


# =============================================================================
# Evidence-insufficient errors
# =============================================================================
class InsufficientEvidenceError(TrustCircleError):
    """
    Exception raised when there is not enough signal to produce a result.

    Safe to retry on the next poll; never counted as negative evidence.
    """

    def __init__(self, message: str, **kwargs) -> None:
        super().__init__(
            message, kwargs.get("context", {}), kwargs.get("error_code", "EVIDENCE_001")
        )


class TooFewSamplesError(InsufficientEvidenceError):
    """Exception raised when a sample burst is shorter than required."""

    def __init__(self, sample_count: int, minimum: int, source: str) -> None:
        super().__init__(
            f"Too few {source} samples: {sample_count} < {minimum}",
            context={"sample_count": sample_count, "minimum": minimum, "source": source},
            error_code="EVIDENCE_002",
        )


class LowConfidenceError(InsufficientEvidenceError):
    """Exception raised when an optical decode is too noisy to trust."""

    def __init__(self, confidence: float, minimum: float) -> None:
        super().__init__(
            "Pattern decode confidence too low",
            context={"confidence": round(confidence, 4), "minimum": minimum},
            error_code="EVIDENCE_003",
        )


class OutsideCheckWindowError(InsufficientEvidenceError):
    """Exception raised for presence checks outside the nighttime window."""

    def __init__(self, local_hour: int, window: tuple) -> None:
        super().__init__(
            "Presence check outside the nighttime window",
            context={"local_hour": local_hour, "window": window},
            error_code="EVIDENCE_004",
        )


# =============================================================================
# Integrity errors
# =============================================================================
class IntegrityError(TrustCircleError):
    """
    Exception raised when a scanned signal fails verification.

    These may be escalated to a threat report by the caller.
    """

    def __init__(self, message: str, **kwargs) -> None:
        super().__init__(
            message, kwargs.get("context", {}), kwargs.get("error_code", "INTEGRITY_001")
        )


class PrefixNotFoundError(IntegrityError):
    """Exception raised when no device token shares a decoded prefix."""

    def __init__(self, prefix_hex: str) -> None:
        super().__init__(
            "No device matches decoded prefix",
            context={"prefix": prefix_hex},
            error_code="INTEGRITY_002",
        )


class ChecksumMismatchError(IntegrityError):
    """Exception raised when prefix candidates exist but none authenticates."""

    def __init__(self, prefix_hex: str, candidates: int) -> None:
        super().__init__(
            "Decoded checksum does not match any candidate device",
            context={"prefix": prefix_hex, "candidates": candidates},
            error_code="INTEGRITY_003",
        )


class SeedMismatchError(IntegrityError):
    """Exception raised when observed badge parameters match no live seed."""

    def __init__(self, zone_id: str) -> None:
        super().__init__(
            "Badge parameters do not match the zone's current seed",
            context={"zone_id": zone_id},
            error_code="INTEGRITY_004",
        )


# =============================================================================
# Vouch network errors
# =============================================================================
class VouchError(TrustCircleError):
    """Base exception for vouch and subsidy operations."""

    def __init__(self, message: str, **kwargs) -> None:
        super().__init__(
            message, kwargs.get("context", {}), kwargs.get("error_code", "VOUCH_001")
        )


class VouchNotAllowedError(VouchError):
    """Exception raised when a voucher fails the eligibility predicate."""

    def __init__(self, reason: str) -> None:
        super().__init__(
            f"Vouch not allowed: {reason}",
            context={"reason": reason},
            error_code="VOUCH_002",
        )
        self.reason = reason


class SubsidyRequestNotFoundError(VouchError):
    """Exception raised when a device has no pending subsidy request."""

    def __init__(self, device_prefix: str) -> None:
        super().__init__(
            "No pending subsidy request",
            context={"device_prefix": device_prefix},
            error_code="VOUCH_003",
        )


class NoEligibleVoucherError(VouchError):
    """Exception raised when scan-to-vouch finds no eligible resident."""

    def __init__(self, zone_id: str, candidates: int) -> None:
        super().__init__(
            "No eligible voucher available in zone",
            context={"zone_id": zone_id, "candidates": candidates},
            error_code="VOUCH_004",
        )


# =============================================================================
# Lifecycle, storage and configuration errors
# =============================================================================
class InvalidTransitionError(TrustCircleError):
    """Exception raised for a lifecycle transition not in the transition table."""

    def __init__(self, current: str, target: str) -> None:
        super().__init__(
            f"Invalid status transition {current} -> {target}",
            context={"current": current, "target": target},
            error_code="STATE_001",
        )


class ZoneNotFoundError(TrustCircleError):
    """Exception raised when a zone id is unknown to the registry."""

    def __init__(self, zone_id: str) -> None:
        super().__init__(
            "Zone not found", context={"zone_id": zone_id}, error_code="ZONE_001"
        )


class StoreError(TrustCircleError):
    """Exception raised when the backing store rejects an operation."""

    def __init__(self, message: str, key: Optional[str] = None, **kwargs) -> None:
        context = kwargs.get("context", {})
        if key:
            context["key"] = key

        super().__init__(message, context, kwargs.get("error_code", "STORE_001"))


class ConfigurationError(TrustCircleError):
    """
    Exception raised for configuration-related errors.

    This includes invalid configuration values and missing secrets.
    """

    def __init__(self, message: str, config_key: Optional[str] = None, **kwargs) -> None:
        context = kwargs.get("context", {})
        if config_key:
            context["config_key"] = config_key

        super().__init__(message, context, kwargs.get("error_code", "CONFIG_001"))
