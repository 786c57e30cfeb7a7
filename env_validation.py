"""Environment variable validation and management."""

import os
import logging
from dataclasses import dataclass
from typing import Dict, Optional

logger = logging.getLogger(__name__)

class EnvironmentError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass

_NUMERIC_DEFAULTS: Dict[str, str] = {
    "STORAGE_TIMEOUT": "10",
    "FAST_THRESHOLD_SECONDS": "5",
    "MEDIUM_THRESHOLD_SECONDS": "15",
    "AUTOSAVE_INTERVAL_SECONDS": "30",
    "PRACTICE_SESSION_SIZE": "30",
}

def validate_environment() -> None:
    """Validate critical environment variables.

    Raises EnvironmentError if validation fails.
    """
    # Nothing is strictly required: SQLite storage works out of the box.
    required_vars: Dict[str, str] = {}

    defaults = {
        "DB_PATH": os.getenv("DB_PATH") or "data.db",
        **_NUMERIC_DEFAULTS,
    }

    # Apply defaults before validation so dependent modules see consistent values.
    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    optional_vars = {
        "STORAGE_URL": "REST storage service URL (SQLite is used when unset)",
        "STORAGE_TOKEN": "Bearer token for the REST storage service",
    }

    missing = []
    for var, description in required_vars.items():
        if not os.getenv(var):
            missing.append(f"{var} ({description})")

    if missing:
        raise EnvironmentError(
            f"Missing required environment variables: {', '.join(missing)}"
        )

    # Validate URLs
    url_vars = {"STORAGE_URL"}
    for var in url_vars:
        value = os.getenv(var)
        if value and not (value.startswith("http://") or value.startswith("https://")):
            raise EnvironmentError(f"Invalid URL format for {var}: {value}")

    for var in _NUMERIC_DEFAULTS:
        value = os.getenv(var)
        try:
            parsed = float(value)
        except (TypeError, ValueError):
            raise EnvironmentError(f"Invalid number for {var}: {value}")
        if parsed <= 0:
            raise EnvironmentError(f"{var} must be positive, got {value}")

    if float(os.environ["FAST_THRESHOLD_SECONDS"]) > float(os.environ["MEDIUM_THRESHOLD_SECONDS"]):
        logger.warning("FAST_THRESHOLD_SECONDS is greater than MEDIUM_THRESHOLD_SECONDS; no answer will be 'medium'")

    # Log optional variables status
    for var, description in optional_vars.items():
        if not os.getenv(var):
            logger.warning("Optional environment variable not set: %s (%s)", var, description)

def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning("Invalid value for %s=%r; using %s", name, value, default)
        return default

@dataclass(frozen=True)
class AppSettings:
    storage_url: Optional[str] = None
    storage_token: Optional[str] = None
    storage_timeout: float = 10.0
    fast_threshold: float = 5.0
    medium_threshold: float = 15.0
    autosave_interval: float = 30.0
    practice_session_size: int = 30

def load_settings() -> AppSettings:
    """Read settings from the environment, falling back to defaults per variable."""
    return AppSettings(
        storage_url=os.getenv("STORAGE_URL") or None,
        storage_token=os.getenv("STORAGE_TOKEN") or None,
        storage_timeout=_env_float("STORAGE_TIMEOUT", 10.0),
        fast_threshold=_env_float("FAST_THRESHOLD_SECONDS", 5.0),
        medium_threshold=_env_float("MEDIUM_THRESHOLD_SECONDS", 15.0),
        autosave_interval=_env_float("AUTOSAVE_INTERVAL_SECONDS", 30.0),
        practice_session_size=int(_env_float("PRACTICE_SESSION_SIZE", 30)),
    )
