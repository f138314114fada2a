"""
CONFIG.PY - SINGLE SOURCE OF TRUTH (SSOT)

This module is the ONLY place allowed to read environment variables.

REQUIRED VARIABLES MUST EXIST: NO DEFAULTS.
If SECRET_KEY, DATABASE_URL or RUN_ENV is missing or blank the process fails
early. Tunables (request limits, portal URL, timezone, ...) are optional and
validated when present.

All config is loaded ONCE on first access and cached in a single in-memory
Config object. No dynamic reload. To use a config value, import:

    from hns_sync.config import config

Do not access os.getenv directly from any other module.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv


PROJECT_ROOT = Path(__file__).resolve().parents[1]

# Load variables from .env if it exists; OS env overrides these automatically
load_dotenv(PROJECT_ROOT / ".env")

if os.getenv("DEBUG_CONFIG") == "1":
    print("[CONFIG] Loaded .env from:", PROJECT_ROOT / ".env")


logger = logging.getLogger(__name__)

REQUIRED_ENV_KEYS = [
    "SECRET_KEY",
    "DATABASE_URL",
    "RUN_ENV",
]

OPTIONAL_ENV_DEFAULTS: Dict[str, str] = {
    "JSON_LOG_FILE": "",
    "ALEMBIC_CONFIG": "alembic.ini",
    "PORTAL_BASE_URL": "https://dwayinstalls.hns.com",
    "PORTAL_TIMEZONE": "America/New_York",
    "GOOGLE_MAPS_API_KEY": "",
    "SOFT_REQUEST_LIMIT": "40",
    "HARD_REQUEST_LIMIT": "50",
    "CRAWL_DELAYS_ENABLED": "true",
}

TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off"}


class ConfigError(RuntimeError):
    """Raised when configuration cannot be loaded."""


def _require_env(key: str) -> str:
    value = os.getenv(key)
    if value is None:
        message = f"Missing required environment variable: {key}"
        logger.error(message)
        raise ConfigError(message)
    stripped = value.strip()
    if not stripped:
        message = f"Environment variable {key} cannot be blank"
        logger.error(message)
        raise ConfigError(message)
    return stripped


def _optional_env(key: str) -> str:
    value = os.getenv(key)
    if value is None or not value.strip():
        return OPTIONAL_ENV_DEFAULTS[key]
    return value.strip()


def _parse_bool(value: str, *, key: str) -> bool:
    normalized = value.strip().lower()
    if normalized in TRUE_VALUES:
        return True
    if normalized in FALSE_VALUES:
        return False
    message = f"Config key {key} must be a boolean string; got {value!r}"
    logger.error(message)
    raise ConfigError(message)


def _parse_positive_int(value: str, *, key: str) -> int:
    try:
        parsed = int(value.strip())
    except (TypeError, ValueError):
        message = f"Config key {key} must be an integer; got {value!r}"
        logger.error(message)
        raise ConfigError(message)
    if parsed <= 0:
        message = f"Config key {key} must be positive; got {parsed}"
        logger.error(message)
        raise ConfigError(message)
    return parsed


def _clean_url(value: str, *, key: str) -> str:
    stripped = value.strip().rstrip("/")
    if not stripped.startswith(("http://", "https://")):
        message = f"Config key {key} must be an http(s) URL; got {value!r}"
        logger.error(message)
        raise ConfigError(message)
    return stripped


def _validate_timezone(value: str, *, key: str) -> str:
    try:
        ZoneInfo(value)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        message = f"Config key {key} is not a known timezone; got {value!r}"
        logger.error(message)
        raise ConfigError(message) from exc
    return value


@dataclass(slots=True, frozen=True)
class Config:
    secret_key: str
    database_url: str
    run_env: str
    json_log_file: str
    alembic_config: str
    portal_base_url: str
    portal_timezone: str
    google_maps_api_key: str
    soft_request_limit: int
    hard_request_limit: int
    crawl_delays_enabled: bool

    @classmethod
    def load_from_env(cls) -> Config:
        required = {key: _require_env(key) for key in REQUIRED_ENV_KEYS}

        soft_limit = _parse_positive_int(_optional_env("SOFT_REQUEST_LIMIT"), key="SOFT_REQUEST_LIMIT")
        hard_limit = _parse_positive_int(_optional_env("HARD_REQUEST_LIMIT"), key="HARD_REQUEST_LIMIT")
        if soft_limit > hard_limit:
            message = (
                f"SOFT_REQUEST_LIMIT ({soft_limit}) cannot exceed HARD_REQUEST_LIMIT ({hard_limit})"
            )
            logger.error(message)
            raise ConfigError(message)

        return cls(
            secret_key=required["SECRET_KEY"],
            database_url=required["DATABASE_URL"],
            run_env=required["RUN_ENV"],
            json_log_file=_optional_env("JSON_LOG_FILE"),
            alembic_config=_optional_env("ALEMBIC_CONFIG"),
            portal_base_url=_clean_url(_optional_env("PORTAL_BASE_URL"), key="PORTAL_BASE_URL"),
            portal_timezone=_validate_timezone(_optional_env("PORTAL_TIMEZONE"), key="PORTAL_TIMEZONE"),
            google_maps_api_key=_optional_env("GOOGLE_MAPS_API_KEY"),
            soft_request_limit=soft_limit,
            hard_request_limit=hard_limit,
            crawl_delays_enabled=_parse_bool(
                _optional_env("CRAWL_DELAYS_ENABLED"), key="CRAWL_DELAYS_ENABLED"
            ),
        )


@lru_cache(maxsize=1)
def load_config() -> Config:
    return Config.load_from_env()


def __getattr__(name: str) -> Any:
    if name == "config":
        return load_config()
    raise AttributeError(name)
