"""
Constants and protocol parameters for the TrustCircle engine.

This module centralizes the numeric parameters of the badge protocol, the
residency lifecycle and the vouching network. Values that operators may
want to tune per deployment live in ``config`` instead; everything here is
part of the protocol and must agree between the badge renderer and the
scanner.
"""

from typing import Dict, Final, Tuple

# =============================================================================
# Badge Seed Rotation
# =============================================================================

# Default length of one seed rotation window in seconds
DEFAULT_SEED_ROTATION_SECONDS: Final[int] = 60

# Number of previous windows still accepted at a rotation boundary
SEED_GRACE_WINDOWS: Final[int] = 1

# Default relative tolerance for animation parameter matching
DEFAULT_SEED_MATCH_TOLERANCE: Final[float] = 0.15

# Divisor used to normalize a 32-bit hash slice into [0, 1]
HASH_SLICE_MAX: Final[int] = 0xFFFFFFFF

# Animation parameter ranges (low, high)
SPEED_MULTIPLIER_RANGE: Final[Tuple[float, float]] = (0.8, 1.2)
COLOR_INTENSITY_RANGE: Final[Tuple[float, float]] = (0.7, 1.0)

# Upper bound of the per-device micro variation
MICRO_VARIATION_MAX: Final[float] = 0.02

# =============================================================================
# Optical Pattern Codec
# =============================================================================

# Total bits carried by one badge cycle
PATTERN_BITS: Final[int] = 24

# Device token prefix bits (first four hex characters)
PREFIX_BITS: Final[int] = 16

# Checksum bits (first byte of the keyed digest)
CHECKSUM_BITS: Final[int] = 8

# Number of hex characters that make up the prefix
PREFIX_HEX_LENGTH: Final[int] = 4

# Duration of one bit slot in milliseconds
BIT_DURATION_MS: Final[int] = 150

# Duration of a full 24-bit cycle in milliseconds
CYCLE_DURATION_MS: Final[int] = PATTERN_BITS * BIT_DURATION_MS

# Brightness modulation depth around the seed-driven baseline
BRIGHTNESS_DELTA: Final[float] = 0.02
BRIGHTNESS_HIGH: Final[float] = 1.0 + BRIGHTNESS_DELTA
BRIGHTNESS_LOW: Final[float] = 1.0 - BRIGHTNESS_DELTA

# Minimum samples per bit slot required before decoding is attempted
MIN_SAMPLES_PER_BIT: Final[int] = 2

# Minimum total samples for a decode (two per bit)
MIN_DECODE_SAMPLES: Final[int] = MIN_SAMPLES_PER_BIT * PATTERN_BITS

# Nominal camera frame rate used when synthesizing sample feeds
CAMERA_FPS: Final[int] = 30

# =============================================================================
# Color Signature Matching
# =============================================================================

# Euclidean RGB distance under which a pixel matches a reference color
COLOR_DISTANCE_THRESHOLD: Final[float] = 80.0

# Minimum share of matching pixels before a zone can be selected
MIN_MATCH_RATIO: Final[float] = 0.15

# Fraction of the shorter frame side sampled around the center
CENTER_REGION_FRACTION: Final[float] = 0.2

# Pixel stride inside the sampled center region
PIXEL_SAMPLE_STRIDE: Final[int] = 4

# Largest possible channel value, used to normalize distances
MAX_CHANNEL_VALUE: Final[float] = 255.0

# =============================================================================
# Zone Appearance
# =============================================================================

# Motion pattern tags, indexed by the zone digest
MOTION_PATTERNS: Final[Tuple[str, ...]] = ("wave", "pulse", "ripple", "spiral")

# Resolution of the residency geocell
DEFAULT_ZONE_RESOLUTION: Final[int] = 4

# Resolution of the fine cell used for movement correlation
MOVEMENT_CELL_RESOLUTION: Final[int] = 7

# Decimal places kept when hashing legacy coordinates
LEGACY_LOCATION_PRECISION: Final[int] = 3

# =============================================================================
# Movement Classification
# =============================================================================

# Minimum accelerometer samples in a burst
MIN_MOVEMENT_SAMPLES: Final[int] = 10

# Length of one accelerometer capture in seconds
MOVEMENT_CAPTURE_SECONDS: Final[float] = 5.0

# Stationary floor: both mean and std of deltas below these values
STATIONARY_MEAN_MAX: Final[float] = 0.1
STATIONARY_STD_MAX: Final[float] = 0.05

# Environmental vibration ceiling
ENVIRONMENTAL_STD_MAX: Final[float] = 0.2
ENVIRONMENTAL_MEAN_MAX: Final[float] = 0.5

# Human movement gate
HUMAN_IRREGULARITY_MIN: Final[float] = 0.3
HUMAN_MEAN_MIN: Final[float] = 0.2

# Bearing change in radians between consecutive samples counted as rotation
ROTATION_CHANGE_MIN: Final[float] = 0.1

# Four fixed daytime windows as (start_hour, end_hour), end exclusive
MOVEMENT_WINDOWS: Final[Tuple[Tuple[int, int], ...]] = (
    (6, 10),
    (10, 14),
    (14, 18),
    (18, 22),
)

# Distinct windows with human movement required for a day to count
MIN_WINDOWS_PER_DAY: Final[int] = 2

# =============================================================================
# Movement / Presence Correlation
# =============================================================================

# Starting trust score for a movement check
CORRELATION_BASE_SCORE: Final[float] = 1.0

# Penalties applied to the correlation trust score
CORRELATION_PENALTIES: Final[Dict[str, float]] = {
    "impossible_trajectory": 0.30,
    "stationary_with_movement": 0.20,
    "nighttime_movement": 0.10,
}

# Scores below this freeze the device
FREEZE_SCORE_THRESHOLD: Final[float] = 0.30

# Scores at or above this let a movement window count
MOVEMENT_TRUST_THRESHOLD: Final[float] = 0.70

# Coarse resolution compared for impossible trajectories
TRAJECTORY_PARENT_RESOLUTION: Final[int] = 4

# Presence logs younger than this are compared for trajectories
TRAJECTORY_WINDOW_MINUTES: Final[int] = 30

# Look-back and count for a stationary cell with repeated movement
STATIONARY_LOOKBACK_DAYS: Final[int] = 3
STATIONARY_MOVEMENT_LOGS: Final[int] = 3

# Hours (start inclusive, end exclusive) in which movement is suspicious
SUSPICIOUS_MOVEMENT_HOURS: Final[Tuple[int, int]] = (2, 5)

# =============================================================================
# Residency Lifecycle
# =============================================================================

# Confirmed nights and movement days required for activation
NIGHTS_REQUIRED: Final[int] = 14
MOVEMENT_DAYS_REQUIRED: Final[int] = 10

# Consecutive missed nights tolerated before progress is paused
GRACE_MISSED_NIGHTS: Final[int] = 3

# Days a device may stay in verifying before it is failed
VERIFICATION_DEADLINE_DAYS: Final[int] = 45

# =============================================================================
# Vouch & Subsidy Network
# =============================================================================

# Vouches needed to activate a subsidy request
VOUCHES_REQUIRED: Final[int] = 10

# Vouches a single resident may give per calendar year
MAX_VOUCHES_PER_YEAR: Final[int] = 3

# Minimum account age of a voucher in days
MIN_VOUCHER_AGE_DAYS: Final[int] = 30

# Lifetime of a pending subsidy request in days
SUBSIDY_REQUEST_TTL_DAYS: Final[int] = 30

# QR payload type tag for vouch requests
VOUCH_QR_TYPE: Final[str] = "tc_vouch"

# =============================================================================
# Subscription Guard
# =============================================================================

GRACE_PERIOD_DAYS: Final[int] = 7
SUBSIDY_DURATION_DAYS: Final[int] = 365
EXPIRY_WARNING_DAYS: Final[int] = 30

# =============================================================================
# Threat Reporting
# =============================================================================

# Threat types accepted from clients, mapped to severity
THREAT_SEVERITY: Final[Dict[str, str]] = {
    "automation": "high",
    "headless": "high",
    "emulator": "medium",
    "bot_pattern": "medium",
    "inconsistency": "low",
    "debugger": "low",
    "tampering": "low",
}

# =============================================================================
# Client Anti-Automation Heuristics
# =============================================================================

EMULATOR_UA_INDICATORS: Final[Tuple[str, ...]] = (
    "android sdk",
    "emulator",
    "sdk_gphone",
    "goldfish",
    "ranchu",
    "generic_x86",
    "vbox",
    "virtualbox",
    "genymotion",
)

SOFTWARE_RENDERER_INDICATORS: Final[Tuple[str, ...]] = (
    "swiftshader",
    "llvmpipe",
    "virtualbox",
    "vmware",
)

AUTOMATION_GLOBALS: Final[Tuple[str, ...]] = (
    "__webdriver_script_fn",
    "__driver_evaluate",
    "__webdriver_evaluate",
    "__selenium_evaluate",
    "__fxdriver_evaluate",
    "__driver_unwrapped",
    "__webdriver_unwrapped",
    "__selenium_unwrapped",
    "__fxdriver_unwrapped",
    "_selenium",
    "calledSelenium",
    "_Selenium_IDE_Recorder",
    "__webdriver_script_function",
    "__webdriverFunc",
    "$cdc_asdjflasutopfhvcZLmcfl_",
    "$chrome_asyncScriptInfo",
    "domAutomation",
    "domAutomationController",
)

AUTOMATION_DOCUMENT_ATTRIBUTES: Final[Tuple[str, ...]] = ("webdriver", "driver")

HEADLESS_GLOBALS: Final[Tuple[str, ...]] = ("_phantom", "__nightmare")

# Headless signals required (besides an explicit user agent) to flag a client
MIN_HEADLESS_SIGNALS: Final[int] = 2

RISK_WEIGHTS: Final[Dict[str, float]] = {
    "emulator": 0.30,
    "headless": 0.40,
    "automation": 0.40,
    "inconsistency": 0.10,
}

# =============================================================================
# Client Polling
# =============================================================================

PRESENCE_POLL_SECONDS: Final[float] = 60 * 60
MOVEMENT_POLL_SECONDS: Final[float] = 4 * 60 * 60
SEED_REFRESH_SECONDS: Final[float] = 30
