"""
Gateway configuration - environment variables loaded once at startup.

All settings come from the environment (a local .env file is honoured via
python-dotenv). Values are parsed here so the rest of the code never touches
os.environ directly.
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

load_dotenv()

DEFAULT_TIMEOUT_MS = 30000


def _int_env(name: str, default: int) -> int:
    """Read an integer env var, falling back to default on missing/invalid values."""
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid integer for {name}={raw!r}, using {default}")
        return default


def _optional_env(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return None
    return value.strip()


@dataclass(frozen=True)
class TDXSettings:
    """Connection settings for the upstream TeamDynamix API."""

    base_url: str = ""
    username: Optional[str] = None
    password: Optional[str] = None
    static_token: Optional[str] = None
    app_id: Optional[str] = None
    timeout_ms: int = DEFAULT_TIMEOUT_MS

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000


@dataclass(frozen=True)
class Settings:
    """Process-wide settings for the gateway."""

    tdx: TDXSettings
    api_key: Optional[str] = None
    admin_api_key: Optional[str] = None
    environment: str = "development"
    port: int = 8000
    cache_ttl: int = 300
    cache_max_size: int = 1000
    redis_url: Optional[str] = None
    rate_limit_window_minutes: int = 15
    rate_limit_max: int = 100
    cors_origins: tuple[str, ...] = ("*",)
    log_level: str = "INFO"

    @property
    def is_development(self) -> bool:
        return self.environment == "development"


def load_settings() -> Settings:
    """Build Settings from the current environment."""
    timeout_ms = _int_env("TDX_TIMEOUT", DEFAULT_TIMEOUT_MS)
    if timeout_ms <= 0:
        timeout_ms = DEFAULT_TIMEOUT_MS

    tdx = TDXSettings(
        base_url=(os.getenv("TDX_BASE_URL") or "").rstrip("/"),
        username=_optional_env("TDX_USERNAME"),
        password=_optional_env("TDX_PASSWORD"),
        static_token=_optional_env("TDX_TOKEN"),
        app_id=_optional_env("TDX_KB_APP_ID"),
        timeout_ms=timeout_ms,
    )

    origins = os.getenv("CORS_ORIGIN", "*")
    cors_origins = tuple(o.strip() for o in origins.split(",") if o.strip()) or ("*",)

    return Settings(
        tdx=tdx,
        api_key=_optional_env("API_KEY"),
        admin_api_key=_optional_env("ADMIN_API_KEY"),
        environment=os.getenv("ENVIRONMENT", "development").strip().lower(),
        port=_int_env("PORT", 8000),
        cache_ttl=_int_env("CACHE_TTL", 300),
        cache_max_size=_int_env("CACHE_MAX_SIZE", 1000),
        redis_url=_optional_env("REDIS_URL"),
        rate_limit_window_minutes=_int_env("RATE_LIMIT_WINDOW", 15),
        rate_limit_max=_int_env("RATE_LIMIT_MAX", 100),
        cors_origins=cors_origins,
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
