"""
Startup configuration validation. Fails fast on bad config.
Defaults use Docker service DNS (postgres, redis) and the public UAZAPI control plane.
"""
from __future__ import annotations

import os
import re
from typing import Optional

from .secrets import get_secret

DATABASE_URL_DEFAULT = "postgresql://wa:wa@postgres:5432/wa"
REDIS_URL_DEFAULT = "redis://redis:6379/0"
UAZAPI_BASE_URL_DEFAULT = "https://whatsapi.uazapi.com"


class ConfigError(Exception):
    """Raised when startup config is invalid."""

    def __init__(self, message: str, key: Optional[str] = None):
        self.key = key
        super().__init__(message)


def _in_docker() -> bool:
    return os.path.exists("/.dockerenv")


def _url_contains_localhost(url: str) -> bool:
    if not url or not isinstance(url, str):
        return False
    u = url.lower().strip()
    return "localhost" in u or "127.0.0.1" in u


def _fail_if_localhost_in_docker() -> None:
    """Inside Docker, DB and Redis must be reached through service DNS, not localhost."""
    if not _in_docker():
        return
    checks = [
        ("DATABASE_URL", get_secret("DATABASE_URL", DATABASE_URL_DEFAULT)),
        ("REDIS_URL", get_secret("REDIS_URL", REDIS_URL_DEFAULT)),
    ]
    for key, value in checks:
        if value and _url_contains_localhost(value):
            raise ConfigError(
                f"{key} must not contain localhost/127.0.0.1 when running in Docker. "
                "Use service DNS: postgres:5432, redis:6379",
                key=key,
            )


def _valid_database_url(url: str) -> bool:
    if not url or len(url) < 9:
        return False
    return bool(re.match(r"^(postgres(?:ql)?|sqlite)(\+[^:/]+)?://", url))


def _valid_redis_url(url: str) -> bool:
    return bool(url) and url.startswith(("redis://", "rediss://"))


def _valid_http_url(url: str) -> bool:
    return bool(url) and url.startswith(("http://", "https://"))


def validate_config(required: bool = True) -> None:
    """
    Validate startup config. Raises ConfigError on invalid config.
    When required=True, DATABASE_URL, REDIS_URL and UAZAPI_BASE_URL must be valid
    and UAZAPI_API_KEY must be set.
    """
    if required:
        db_url = get_secret("DATABASE_URL", DATABASE_URL_DEFAULT)
        if not _valid_database_url(db_url):
            raise ConfigError("DATABASE_URL must be a postgresql:// or sqlite:// URL", "DATABASE_URL")
        redis_url = get_secret("REDIS_URL", REDIS_URL_DEFAULT)
        if not _valid_redis_url(redis_url):
            raise ConfigError("REDIS_URL must be a valid redis:// URL", "REDIS_URL")
        base_url = get_secret("UAZAPI_BASE_URL", UAZAPI_BASE_URL_DEFAULT)
        if not _valid_http_url(base_url):
            raise ConfigError("UAZAPI_BASE_URL must be an http(s) URL", "UAZAPI_BASE_URL")
        if not get_secret("UAZAPI_API_KEY"):
            raise ConfigError("UAZAPI_API_KEY is required", "UAZAPI_API_KEY")
    _fail_if_localhost_in_docker()
