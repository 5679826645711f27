"""Runtime configuration resolved from the environment."""

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Mapping, Optional

log = logging.getLogger(__name__)

# Let's Encrypt directory URLs
LETS_ENCRYPT_STAGING = "https://acme-staging-v02.api.letsencrypt.org/directory"
LETS_ENCRYPT_PRODUCTION = "https://acme-v02.api.letsencrypt.org/directory"

ENV_PREFIX = "CERTMAGIC_"


class ConfigError(Exception):
    """Raised when a configuration value is missing or malformed."""


@dataclass(frozen=True)
class Settings:
    environment: str = "staging"
    directory_url: str = LETS_ENCRYPT_STAGING
    account_email: str = ""
    data_dir: Path = Path(".acme-data")
    http_timeout: float = 30.0
    poll_attempts: int = 30
    poll_interval: float = 2.0
    dns_propagation_timeout: float = 300.0
    dns_propagation_interval: float = 5.0
    pending_order_max_age: Optional[int] = None
    log_level: str = "INFO"


def _number(env: Mapping[str, str], name: str, default, cast):
    raw = env.get(ENV_PREFIX + name, "").strip()
    if not raw:
        return default
    try:
        value = cast(raw)
    except ValueError:
        raise ConfigError(f"{ENV_PREFIX}{name} must be a number, got {raw!r}")
    if value < 0:
        raise ConfigError(f"{ENV_PREFIX}{name} must not be negative")
    return value


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build settings from environment variables.

    Args:
        env: Mapping to read from. Defaults to os.environ.

    Returns:
        Resolved Settings

    Raises:
        ConfigError: If a value cannot be parsed
    """
    if env is None:
        env = os.environ

    environment = env.get(ENV_PREFIX + "ENVIRONMENT", "staging").strip().lower()
    if environment not in ("staging", "production"):
        raise ConfigError(f"{ENV_PREFIX}ENVIRONMENT must be 'staging' or 'production', got {environment!r}")

    directory_url = env.get(ENV_PREFIX + "DIRECTORY_URL", "").strip()
    if not directory_url:
        directory_url = LETS_ENCRYPT_PRODUCTION if environment == "production" else LETS_ENCRYPT_STAGING

    log_level = env.get(ENV_PREFIX + "LOG_LEVEL", "INFO").strip().upper()
    if log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
        raise ConfigError(f"Unknown log level: {log_level}")

    return Settings(
        environment=environment,
        directory_url=directory_url,
        account_email=env.get(ENV_PREFIX + "ACCOUNT_EMAIL", "").strip(),
        data_dir=Path(env.get(ENV_PREFIX + "DATA_DIR", "").strip() or ".acme-data"),
        http_timeout=_number(env, "HTTP_TIMEOUT", 30.0, float),
        poll_attempts=_number(env, "POLL_ATTEMPTS", 30, int),
        poll_interval=_number(env, "POLL_INTERVAL", 2.0, float),
        dns_propagation_timeout=_number(env, "DNS_PROPAGATION_TIMEOUT", 300.0, float),
        dns_propagation_interval=_number(env, "DNS_PROPAGATION_INTERVAL", 5.0, float),
        pending_order_max_age=_number(env, "PENDING_ORDER_MAX_AGE", None, int),
        log_level=log_level,
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the process-wide settings, resolved on first use."""
    settings = load_settings()
    log.debug("Loaded settings for %s environment (%s)", settings.environment, settings.directory_url)
    return settings
