"""
TrustCircle - Presence & Optical Identity Verification Engine

Proves that a device is held by a continuously present human living inside a
geographic micro-zone, without storing identity, address or coordinates.

The package provides the rotating badge seed engine, the optical pattern
codec used to scan badges, the multi-day residency state machine, the
neighbor vouching network, and the client-side anti-automation heuristics.
"""

__version__ = "1.0.0"
__author__ = "TrustCircle Engineering Team"
__email__ = "engineering@trustcircle.app"
