"""Shared helpers for env parsing: empty counts as missing, numbers are clamped, never crash on startup."""
import logging
from typing import Optional

logger = logging.getLogger(__name__)


def parse_int(
    raw: Optional[str],
    default: int,
    min_val: Optional[int] = None,
    max_val: Optional[int] = None,
    name: Optional[str] = None,
    raise_on_invalid: bool = False,
) -> int:
    """
    Parse int from an environment value.

    Behavior:
        - None/empty/whitespace -> default (no warning)
        - Invalid string (e.g. "abc") -> default + warning (or ConfigError if raise_on_invalid=True)
        - Out of [min_val, max_val] -> clamped + warning (or ConfigError if raise_on_invalid=True)
    """
    from apps.shared.config import ConfigError

    s = (raw or "").strip()
    if not s:
        return default

    var_name = name or "env_var"
    try:
        n = int(s)
    except ValueError:
        if raise_on_invalid:
            raise ConfigError(f"Invalid integer value for {var_name}: '{s}'", key=var_name)
        logger.warning("Invalid integer value for %s: '%s' (using default: %d)", var_name, s, default)
        return default

    return _clamp(n, min_val, max_val, var_name, raise_on_invalid)


def parse_float(
    raw: Optional[str],
    default: float,
    min_val: Optional[float] = None,
    max_val: Optional[float] = None,
    name: Optional[str] = None,
    raise_on_invalid: bool = False,
) -> float:
    """Same contract as parse_int, for second-valued settings that may be fractional."""
    from apps.shared.config import ConfigError

    s = (raw or "").strip()
    if not s:
        return default

    var_name = name or "env_var"
    try:
        n = float(s)
    except ValueError:
        if raise_on_invalid:
            raise ConfigError(f"Invalid number for {var_name}: '{s}'", key=var_name)
        logger.warning("Invalid number for %s: '%s' (using default: %s)", var_name, s, default)
        return default

    return _clamp(n, min_val, max_val, var_name, raise_on_invalid)


def parse_bool(raw: Optional[str], default: bool = False) -> bool:
    s = (raw or "").strip().lower()
    if not s:
        return default
    return s in ("1", "true", "yes", "on")


def _clamp(n, min_val, max_val, var_name: str, raise_on_invalid: bool):
    from apps.shared.config import ConfigError

    if min_val is not None and n < min_val:
        if raise_on_invalid:
            raise ConfigError(f"Value for {var_name} ({n}) below minimum ({min_val})", key=var_name)
        logger.warning("Value for %s (%s) below minimum (%s), clamping", var_name, n, min_val)
        n = min_val

    if max_val is not None and n > max_val:
        if raise_on_invalid:
            raise ConfigError(f"Value for {var_name} ({n}) above maximum ({max_val})", key=var_name)
        logger.warning("Value for %s (%s) above maximum (%s), clamping", var_name, n, max_val)
        n = max_val

    return n
