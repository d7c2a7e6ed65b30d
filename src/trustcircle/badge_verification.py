"""
Badge scan orchestration.

A scan is verified in three stages:

1. The colors in the center of the frame select a zone.
2. The animation parameters the scanner measured must match the zone's
   seed for the current (or previous) rotation window; a recording of an
   older badge fails here.
3. When a brightness series was captured, the optical pattern is decoded
   and authenticated to a device token of that zone.

Stage failures are reported in ``ScanResult.reason``. Only integrity
failures (stale seed, forged pattern) are escalated to the threat log;
insufficient evidence is simply "no result this time".
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Sequence

import numpy as np
import structlog

from .color_matcher import match_zone
from .data_models import AnimationParameters
from .exceptions import InsufficientEvidenceError, IntegrityError
from .pattern_codec import PatternVerifier, decode_pattern
from .seed_engine import SeedEngine
from .threats import ThreatReporter
from .utils import ensure_utc
from .zones import ZoneRegistry

# Initialize structured logger
logger = structlog.get_logger(__name__)


@dataclass
class ScanResult:
    """Outcome of one badge scan."""

    verified: bool
    zone_id: Optional[str] = None
    zone_name: Optional[str] = None
    device_token: Optional[str] = None
    reason: Optional[str] = None
    confidence: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        # Token prefixes only, as in the logs
        return {
            "verified": self.verified,
            "zone_id": self.zone_id,
            "zone_name": self.zone_name,
            "device": self.device_token[:8] if self.device_token else None,
            "reason": self.reason,
            "confidence": self.confidence,
        }


class BadgeScanVerifier:
    """
    Verify a scanned badge against the zone registry and live seeds.

    Parameters
    ----------
    registry : ZoneRegistry
        Zones whose color signatures are candidates.
    seed_engine : SeedEngine
        Current badge seeds.
    pattern_verifier : PatternVerifier, optional
        Resolves decoded patterns; pattern stage is skipped without it.
    threats : ThreatReporter, optional
        Receives ``tampering`` reports on integrity failures.
    """

    def __init__(
        self,
        registry: ZoneRegistry,
        seed_engine: SeedEngine,
        pattern_verifier: Optional[PatternVerifier] = None,
        threats: Optional[ThreatReporter] = None,
    ) -> None:
        self.registry = registry
        self.seed_engine = seed_engine
        self.pattern_verifier = pattern_verifier
        self.threats = threats

    def verify_scan(
        self,
        pixels: np.ndarray,
        observed_params: Optional[AnimationParameters] = None,
        brightness_samples: Optional[Sequence[float]] = None,
        now: Optional[datetime] = None,
        fingerprint_hash: Optional[str] = None,
    ) -> ScanResult:
        """
        Run zone, seed and pattern verification on one scan.

        Parameters
        ----------
        pixels : numpy.ndarray
            ``(n, 3)`` RGB samples from the badge center.
        observed_params : AnimationParameters, optional
            Parameters measured from the animation; the seed stage is skipped
            when omitted.
        brightness_samples : sequence of float, optional
            Luminance series covering one pattern cycle.
        now : datetime, optional
            Scan time.
        fingerprint_hash : str, optional
            Scanner fingerprint attached to tampering reports.

        Returns
        -------
        ScanResult
            ``verified`` is True only when every stage that ran succeeded.
        """
        now = ensure_utc(now)

        match = match_zone(pixels, self.registry.list_zones())
        if match is None:
            return ScanResult(verified=False, reason="no_zone_match")

        result = ScanResult(verified=False, zone_id=match.zone_id, zone_name=match.zone_name)

        if observed_params is not None and not self.seed_engine.matches_current(
            match.zone_id, observed_params, now
        ):
            logger.warning("Badge animation does not match live seed", zone_id=match.zone_id)
            self._report_tampering(fingerprint_hash, now)
            result.reason = "seed_mismatch"
            return result

        if brightness_samples is not None and self.pattern_verifier is not None:
            decoded = decode_pattern(brightness_samples)
            if decoded is None:
                result.reason = "insufficient_samples"
                return result
            result.confidence = decoded.confidence

            try:
                device = self.pattern_verifier.verify(decoded, match.zone_id, now)
            except InsufficientEvidenceError as e:
                result.reason = e.error_code
                return result
            except IntegrityError as e:
                self._report_tampering(fingerprint_hash, now)
                result.reason = e.error_code
                return result
            result.device_token = device.token

        result.verified = True
        logger.info(
            "Badge scan verified",
            zone_id=result.zone_id,
            device=result.device_token[:8] if result.device_token else None,
        )
        return result

    def _report_tampering(self, fingerprint_hash: Optional[str], now: datetime) -> None:
        if self.threats is None:
            return
        self.threats.report_threat(
            "tampering", fingerprint_hash=fingerprint_hash, endpoint="badge_scan", now=now
        )
