"""Environment variable validation and management."""

import os
import logging
from pathlib import Path
from typing import Dict

logger = logging.getLogger(__name__)

class EnvironmentValidationError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass

def validate_environment() -> None:
    """Validate critical environment variables.

    Raises EnvironmentValidationError if validation fails.
    """
    # Nothing is strictly required: the engine runs offline with canned
    # content and the bundled engine configuration.
    required_vars: Dict[str, str] = {}

    defaults = {
        "DB_PATH": os.getenv("DB_PATH") or "data.db",
    }

    # Apply defaults before validation so dependent modules see consistent values.
    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    optional_vars = {
        "CONTENT_ORACLE_URL": "Content oracle chat completion endpoint",
        "NOTIFY_WEBHOOK_URL": "Webhook receiving engine events",
        "CURRICULUM_PATH": "Curriculum file seeded at startup",
    }

    missing = []
    for var, description in required_vars.items():
        if not os.getenv(var):
            missing.append(f"{var} ({description})")

    if missing:
        raise EnvironmentValidationError(
            f"Missing required environment variables: {', '.join(missing)}"
        )

    url_vars = {"CONTENT_ORACLE_URL", "NOTIFY_WEBHOOK_URL"}
    for var in sorted(url_vars):
        value = os.getenv(var)
        if value and not (value.startswith("http://") or value.startswith("https://")):
            raise EnvironmentValidationError(f"Invalid URL format for {var}: {value}")

    timeout = os.getenv("CONTENT_ORACLE_TIMEOUT")
    if timeout:
        try:
            if float(timeout) <= 0:
                raise ValueError(timeout)
        except ValueError as exc:
            raise EnvironmentValidationError(
                f"CONTENT_ORACLE_TIMEOUT must be a positive number: {timeout}"
            ) from exc

    for var in ("ENGINE_CONFIG_PATH", "CURRICULUM_PATH"):
        value = os.getenv(var)
        if value and not Path(value).exists():
            raise EnvironmentValidationError(f"{var} points to a missing file: {value}")

    for var, description in optional_vars.items():
        if not os.getenv(var):
            logger.warning("Optional environment variable not set: %s (%s)", var, description)

def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on", "enabled"}
