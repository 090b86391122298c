"""Runtime configuration for the relay.

Settings are read from environment variables once at process start and
passed explicitly to the components that need them.
"""

import logging
import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass
class Settings:
    """Process-wide relay settings."""

    port: int = 8080
    database_url: str = "sqlite:///relay.db"
    redis_url: Optional[str] = None

    default_ttl_minutes: int = 10
    max_ttl_minutes: int = 60
    max_code_length: int = 64
    max_data_bytes: int = 1024 * 1024

    # 10 tokens per minute, burst of 10
    rate_limit_tokens: int = 10
    rate_limit_interval: float = 60.0
    rate_limit_burst: int = 10
    limiter_idle_ttl: Optional[float] = None

    sweep_interval: float = 30.0
    trust_forwarded_for: bool = False
    log_level: str = "INFO"

    @property
    def default_ttl(self) -> timedelta:
        return timedelta(minutes=self.default_ttl_minutes)


def _int_from_env(name: str, default: int, minimum: Optional[int] = None) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Invalid value '%s' for %s; using %s", raw, name, default)
        return default
    if minimum is not None and value < minimum:
        logger.warning("Invalid value '%s' for %s; using %s", raw, name, default)
        return default
    return value


def _float_from_env(name: str, default: Optional[float], positive: bool = False) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Invalid value '%s' for %s; using %s", raw, name, default)
        return default
    if positive and not value > 0:
        logger.warning("Invalid value '%s' for %s; using %s", raw, name, default)
        return default
    return value


def _bool_from_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUE_VALUES


def load_settings() -> Settings:
    """Read environment variables into a Settings object."""
    settings = Settings(
        port=_int_from_env("PORT", Settings.port, minimum=0),
        database_url=os.getenv("DATABASE_URL") or Settings.database_url,
        redis_url=os.getenv("REDIS_URL") or None,
        default_ttl_minutes=_int_from_env("SHARE_DEFAULT_TTL_MINUTES", Settings.default_ttl_minutes, minimum=1),
        max_ttl_minutes=_int_from_env("SHARE_MAX_TTL_MINUTES", Settings.max_ttl_minutes, minimum=1),
        max_code_length=_int_from_env("MAX_CODE_LENGTH", Settings.max_code_length, minimum=1),
        max_data_bytes=_int_from_env("MAX_DATA_BYTES", Settings.max_data_bytes, minimum=1),
        rate_limit_tokens=_int_from_env("RATE_LIMIT_TOKENS", Settings.rate_limit_tokens, minimum=1),
        rate_limit_interval=_float_from_env(
            "RATE_LIMIT_INTERVAL_SECONDS", Settings.rate_limit_interval, positive=True
        ),
        rate_limit_burst=_int_from_env("RATE_LIMIT_BURST", Settings.rate_limit_burst, minimum=1),
        limiter_idle_ttl=_float_from_env("LIMITER_IDLE_TTL_SECONDS", None, positive=True),
        sweep_interval=_float_from_env("SWEEP_INTERVAL_SECONDS", Settings.sweep_interval, positive=True),
        trust_forwarded_for=_bool_from_env("TRUST_FORWARDED_FOR", False),
        log_level=(os.getenv("LOG_LEVEL") or Settings.log_level).upper(),
    )
    if settings.default_ttl_minutes > settings.max_ttl_minutes:
        logger.warning(
            "SHARE_DEFAULT_TTL_MINUTES=%s exceeds SHARE_MAX_TTL_MINUTES=%s; clamping",
            settings.default_ttl_minutes,
            settings.max_ttl_minutes,
        )
        settings.default_ttl_minutes = settings.max_ttl_minutes
    return settings


def configure_logging(level: str = "INFO") -> None:
    """Configure the root logger for the relay process."""
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
