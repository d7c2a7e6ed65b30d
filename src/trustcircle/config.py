"""
Configuration management for the TrustCircle engine.

This module handles all configuration loading from environment variables
and .env files. Protocol constants live in ``constants``; the values here
are the deployment knobs (secrets, windows, logging).
"""

import os
from pathlib import Path
from dotenv import load_dotenv

from .constants import (
    DEFAULT_SEED_MATCH_TOLERANCE,
    DEFAULT_SEED_ROTATION_SECONDS,
    DEFAULT_ZONE_RESOLUTION,
)

# Load environment variables from .env file if it exists
load_dotenv()

# =============================================================================
# Base Paths
# =============================================================================
BASE_DIR: Path = Path(__file__).resolve().parent.parent

# Project root directory (parent of src/)
PROJECT_ROOT: Path = BASE_DIR.parent

# =============================================================================
# Badge Seed Configuration
# =============================================================================
# Placeholder secret; deployments must override it
DEFAULT_SEED_SECRET: str = "trustcircle-development-secret"

# Server-held secret keying the badge seed derivation
BADGE_SEED_SECRET: str = os.getenv("BADGE_SEED_SECRET", DEFAULT_SEED_SECRET)

# Length of one seed rotation window in seconds
SEED_ROTATION_SECONDS: int = int(
    os.getenv("SEED_ROTATION_SECONDS", str(DEFAULT_SEED_ROTATION_SECONDS))
)

# Relative tolerance applied when comparing animation parameters
SEED_MATCH_TOLERANCE: float = float(
    os.getenv("SEED_MATCH_TOLERANCE", str(DEFAULT_SEED_MATCH_TOLERANCE))
)

# Minimum decode confidence before a pattern is checked against devices
MIN_DECODE_CONFIDENCE: float = float(os.getenv("MIN_DECODE_CONFIDENCE", "0.5"))

# =============================================================================
# Zone Configuration
# =============================================================================
# H3 resolution used for residency zones
H3_RESOLUTION: int = int(os.getenv("H3_RESOLUTION", str(DEFAULT_ZONE_RESOLUTION)))

# Nighttime presence window in device-local hours (wraps midnight)
NIGHT_WINDOW_START_HOUR: int = int(os.getenv("NIGHT_WINDOW_START_HOUR", "22"))
NIGHT_WINDOW_END_HOUR: int = int(os.getenv("NIGHT_WINDOW_END_HOUR", "6"))

# Rings of neighboring cells accepted as inside a geocell zone (GPS drift)
PRESENCE_TOLERANCE_RINGS: int = int(os.getenv("PRESENCE_TOLERANCE_RINGS", "0"))

# =============================================================================
# Logging Configuration
# =============================================================================
# Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

# Emit JSON log lines instead of the console renderer
STRUCTURED_LOGGING: bool = os.getenv("STRUCTURED_LOGGING", "false").lower() == "true"

# Log to file in addition to console
LOG_TO_FILE: bool = os.getenv("LOG_TO_FILE", "false").lower() == "true"

# Log files directory
LOG_DIR: Path = Path(os.getenv("LOG_DIR", str(PROJECT_ROOT / "logs")))

# Maximum log file size in MB
MAX_LOG_SIZE_MB: int = int(os.getenv("MAX_LOG_SIZE_MB", "20"))

# Number of log files to retain
LOG_BACKUP_COUNT: int = int(os.getenv("LOG_BACKUP_COUNT", "5"))

# =============================================================================
# Development and Debugging Configuration
# =============================================================================
# Enable debug mode (skips validation on import)
DEBUG_MODE: bool = os.getenv("DEBUG_MODE", "false").lower() == "true"


# =============================================================================
# Configuration Validation
# =============================================================================
def validate_configuration() -> bool:
    """
    Validate the current configuration settings.

    Returns
    -------
    bool
        True if configuration is valid.

    Raises
    ------
    ValueError
        If critical configuration parameters are invalid.
    """
    errors = []

    if not BADGE_SEED_SECRET:
        errors.append("BADGE_SEED_SECRET cannot be empty")

    if SEED_ROTATION_SECONDS < 1:
        errors.append("SEED_ROTATION_SECONDS must be at least 1")

    if not 0.0 < SEED_MATCH_TOLERANCE < 1.0:
        errors.append("SEED_MATCH_TOLERANCE must be between 0 and 1")

    if not 0.0 <= MIN_DECODE_CONFIDENCE <= 1.0:
        errors.append("MIN_DECODE_CONFIDENCE must be between 0 and 1")

    if not 0 <= H3_RESOLUTION <= 15:
        errors.append("H3_RESOLUTION must be between 0 and 15")

    for name, hour in (
        ("NIGHT_WINDOW_START_HOUR", NIGHT_WINDOW_START_HOUR),
        ("NIGHT_WINDOW_END_HOUR", NIGHT_WINDOW_END_HOUR),
    ):
        if not 0 <= hour <= 23:
            errors.append(f"{name} must be between 0 and 23")

    if NIGHT_WINDOW_START_HOUR == NIGHT_WINDOW_END_HOUR:
        errors.append("Night window start and end hours must differ")

    if PRESENCE_TOLERANCE_RINGS < 0:
        errors.append("PRESENCE_TOLERANCE_RINGS cannot be negative")

    valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    if LOG_LEVEL not in valid_log_levels:
        errors.append(f"LOG_LEVEL must be one of {valid_log_levels}")

    if errors:
        raise ValueError(
            "Configuration validation failed:\n"
            + "\n".join(f"- {error}" for error in errors)
        )

    return True


def using_default_secret() -> bool:
    """Return True when the development placeholder secret is active."""
    return BADGE_SEED_SECRET == DEFAULT_SEED_SECRET


def get_config_summary() -> dict:
    """
    Get a summary of the current configuration.

    The seed secret is never included; only whether the placeholder is
    still in use.

    Returns
    -------
    dict
        Dictionary containing key configuration parameters.
    """
    return {
        "seed": {
            "rotation_seconds": SEED_ROTATION_SECONDS,
            "match_tolerance": SEED_MATCH_TOLERANCE,
            "min_decode_confidence": MIN_DECODE_CONFIDENCE,
            "default_secret": using_default_secret(),
        },
        "zones": {
            "h3_resolution": H3_RESOLUTION,
            "night_window": [NIGHT_WINDOW_START_HOUR, NIGHT_WINDOW_END_HOUR],
            "presence_tolerance_rings": PRESENCE_TOLERANCE_RINGS,
        },
        "logging": {
            "level": LOG_LEVEL,
            "structured": STRUCTURED_LOGGING,
            "to_file": LOG_TO_FILE,
            "log_dir": str(LOG_DIR),
        },
        "debug_mode": DEBUG_MODE,
    }


# Validate configuration on import
if not DEBUG_MODE:
    validate_configuration()
