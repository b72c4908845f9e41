"""Environment variable validation and management."""

import os
import logging
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger(__name__)

class EnvironmentError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass

_NUMERIC_VARS = {
    "LEARNER_MODEL_LEARNING_RATE": float,
    "LEARNER_MODEL_WEIGHT_CLAMP": float,
    "ENSEMBLE_WEIGHT_FLOOR": float,
    "ENSEMBLE_WEIGHT_DECAY": float,
    "ZPD_PUSH_STEP": float,
    "EVOLUTION_SEED": int,
}

def validate_environment() -> None:
    """Validate environment variables used by the engines and the store.

    Raises EnvironmentError if validation fails.
    """
    defaults = {
        "DB_PATH": os.getenv("DB_PATH") or "data.db",
    }

    # Apply defaults before validation so dependent modules see consistent values.
    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    settings_path = os.getenv("ENGINE_SETTINGS_PATH")
    if settings_path and not Path(settings_path).is_file():
        raise EnvironmentError(f"ENGINE_SETTINGS_PATH does not point to a file: {settings_path}")

    invalid = []
    for var, parser in _NUMERIC_VARS.items():
        value = os.getenv(var)
        if value is None or value.strip() == "":
            continue
        try:
            parser(value)
        except ValueError:
            invalid.append(f"{var}={value!r}")
    if invalid:
        raise EnvironmentError(f"Invalid numeric environment variables: {', '.join(invalid)}")

    optional_vars: Dict[str, str] = {
        "ENGINE_SETTINGS_PATH": "JSON file with engine tuning parameters",
    }
    for var, description in optional_vars.items():
        if not os.getenv(var):
            logger.debug("Optional environment variable not set: %s (%s)", var, description)

def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on", "enabled"}

def get_env_float(name: str, default: Optional[float] = None) -> Optional[float]:
    """Get a float from the environment, falling back to ``default`` when unset or invalid."""
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning("Ignoring non-numeric value for %s: %r", name, value)
        return default

def get_env_int(name: str, default: Optional[int] = None) -> Optional[int]:
    """Get an integer from the environment, falling back to ``default`` when unset or invalid."""
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning("Ignoring non-integer value for %s: %r", name, value)
        return default
