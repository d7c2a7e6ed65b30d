"""
Utility functions and decorators for the TrustCircle engine.

This module provides the small helpers shared across components: timing,
hashing, identifier generation and time normalization.
"""

import time
import uuid
import hashlib
import hmac
import functools
from datetime import datetime, timezone
from typing import Any, Callable, Optional, TypeVar, Union
import structlog

# Initialize structured logger
logger = structlog.get_logger(__name__)

# Type variable for generic decorators
F = TypeVar("F", bound=Callable[..., Any])


def timer(func: F) -> F:
    """
    Log the wall time of a signal-processing call at debug level.

    Applied to the optical decoder and the accelerometer classifier, whose
    cost grows with the number of samples a client submits. Failures are
    logged with the error type and re-raised unchanged.

    Examples
    --------
    >>> @timer
    ... def decode(samples):
    ...     return None
    """
    qualified = f"{func.__module__}.{func.__qualname__}"

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        started = time.perf_counter()
        outcome = "ok"
        try:
            return func(*args, **kwargs)
        except Exception as e:
            outcome = type(e).__name__
            raise
        finally:
            logger.debug(
                "Timed call finished",
                call=qualified,
                outcome=outcome,
                elapsed_ms=round((time.perf_counter() - started) * 1000, 3),
            )

    return wrapper


def hash_data(data: Union[str, bytes]) -> str:
    """
    SHA-256 hex digest of ``data``.

    Used for device tokens, legacy location hashes and the byte slices
    that seed animation parameters and zone colors, so the output width
    (64 hex characters) is relied upon by callers.
    """
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def keyed_digest(secret: str, message: str) -> str:
    """HMAC-SHA256 of ``message`` under ``secret``, hex encoded."""
    return hmac.new(
        secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256
    ).hexdigest()


def generate_id() -> str:
    """Random 32-character hexadecimal identifier."""
    return uuid.uuid4().hex


def safe_divide(numerator: float, denominator: float, default: float = 0.0) -> float:
    """
    Perform safe division with default value for zero denominator.

    Examples
    --------
    >>> safe_divide(10, 2)
    5.0
    >>> safe_divide(10, 0)
    0.0
    """
    if denominator == 0:
        return default
    return numerator / denominator


def ensure_utc(moment: Optional[datetime]) -> datetime:
    """
    Normalize a timestamp to an aware UTC datetime.

    ``None`` means now; naive values are taken to already be UTC.
    """
    if moment is None:
        return datetime.now(timezone.utc)
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def token_prefix(token: Optional[str]) -> str:
    """Abbreviate a device token for logs and error context."""
    return (token or "")[:8]
