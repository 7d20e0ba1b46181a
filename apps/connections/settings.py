"""
Connection lifecycle config via Pydantic Settings. Empty env values fall back to defaults.
Poll interval and pairing deadline are operational tuning, not structure.
"""
from __future__ import annotations

from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from apps.shared.config import UAZAPI_BASE_URL_DEFAULT
from apps.shared.env_helpers import parse_float, parse_int
from apps.shared.secrets import get_secret

DEFAULT_DEPARTMENT_NAME = "Geral"


class ConnectionSettings(BaseSettings):
    model_config = SettingsConfigDict(extra="ignore")

    POLL_INTERVAL_SECONDS: float = 3.0
    PAIRING_DEADLINE_SECONDS: float = 120.0
    UAZAPI_BASE_URL: str = UAZAPI_BASE_URL_DEFAULT
    UAZAPI_API_KEY: str = ""
    UAZAPI_SYSTEM_NAME: str = "multiatendimento"
    GATEWAY_TIMEOUT_SECONDS: float = 20.0
    WEBHOOK_URL: str = ""
    DEFAULT_DEPARTMENT_NAME: str = DEFAULT_DEPARTMENT_NAME

    @field_validator("POLL_INTERVAL_SECONDS", "PAIRING_DEADLINE_SECONDS", "GATEWAY_TIMEOUT_SECONDS")
    @classmethod
    def _positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be > 0")
        return v

    @field_validator("UAZAPI_BASE_URL")
    @classmethod
    def _strip_slash(cls, v: str) -> str:
        return (v or UAZAPI_BASE_URL_DEFAULT).strip().rstrip("/")

    @classmethod
    def from_env(cls) -> "ConnectionSettings":
        """Build from current env through get_secret (secrets provider aware)."""
        return cls(
            POLL_INTERVAL_SECONDS=parse_float(
                get_secret("WA_PAIRING_POLL_INTERVAL_SECONDS"), 3.0,
                min_val=0.5, max_val=9.0, name="WA_PAIRING_POLL_INTERVAL_SECONDS",
            ),
            PAIRING_DEADLINE_SECONDS=parse_float(
                get_secret("WA_PAIRING_DEADLINE_SECONDS"), 120.0,
                min_val=10.0, max_val=1800.0, name="WA_PAIRING_DEADLINE_SECONDS",
            ),
            UAZAPI_BASE_URL=get_secret("UAZAPI_BASE_URL", UAZAPI_BASE_URL_DEFAULT),
            UAZAPI_API_KEY=get_secret("UAZAPI_API_KEY"),
            UAZAPI_SYSTEM_NAME=get_secret("UAZAPI_SYSTEM_NAME", "multiatendimento"),
            GATEWAY_TIMEOUT_SECONDS=float(
                parse_int(get_secret("WA_GATEWAY_TIMEOUT_SECONDS"), 20, min_val=1, max_val=120,
                          name="WA_GATEWAY_TIMEOUT_SECONDS")
            ),
            WEBHOOK_URL=get_secret("WA_WEBHOOK_URL"),
            DEFAULT_DEPARTMENT_NAME=get_secret("WA_DEFAULT_DEPARTMENT_NAME", DEFAULT_DEPARTMENT_NAME),
        )


_settings: Optional[ConnectionSettings] = None


def get_settings() -> ConnectionSettings:
    """Return cached settings. Call once at startup after env is loaded."""
    global _settings
    if _settings is None:
        _settings = ConnectionSettings.from_env()
    return _settings


def reset_settings() -> None:
    global _settings
    _settings = None
