"""
Secrets provider: abstract access to credentials (UAZAPI admin token, DB URL, ...).
Default: EnvSecretsProvider. SECRETS_PROVIDER=file reads docker/k8s secret files
(one file per key under SECRETS_DIR, default /run/secrets) and falls back to env.
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable


@runtime_checkable
class SecretsProvider(Protocol):
    """Protocol for secret lookup. Implement for Vault, AWS Secrets, etc."""

    def get(self, key: str, default: str = "") -> str:
        """Return secret value for key, or default if not found."""
        ...


class EnvSecretsProvider:
    """Read secrets from os.environ. Empty or whitespace-only values count as missing."""

    def get(self, key: str, default: str = "") -> str:
        val = os.environ.get(key)
        if val is None:
            return default
        s = val.strip()
        return s if s else default


class FileSecretsProvider:
    """Read `<secrets_dir>/<key>`; missing or blank file -> env -> default."""

    def __init__(self, secrets_dir: str = "/run/secrets"):
        self.secrets_dir = Path(secrets_dir)
        self._env = EnvSecretsProvider()

    def get(self, key: str, default: str = "") -> str:
        path = self.secrets_dir / key
        if path.is_file():
            s = path.read_text(encoding="utf-8").strip()
            if s:
                return s
        return self._env.get(key, default)


_provider: Optional[SecretsProvider] = None


def get_provider() -> SecretsProvider:
    """Return configured secrets provider. Default: EnvSecretsProvider."""
    global _provider
    if _provider is not None:
        return _provider
    kind = os.environ.get("SECRETS_PROVIDER", "env").strip().lower()
    if kind == "file":
        _provider = FileSecretsProvider(os.environ.get("SECRETS_DIR", "/run/secrets"))
    else:
        _provider = EnvSecretsProvider()
    return _provider


def set_provider(provider: Optional[SecretsProvider]) -> None:
    """Override secrets provider (tests, Vault). None resets to the env-selected default."""
    global _provider
    _provider = provider


def get_secret(key: str, default: str = "") -> str:
    """Get secret value through the configured provider."""
    return get_provider().get(key, default)
