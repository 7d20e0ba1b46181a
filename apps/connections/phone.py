"""
Phone canonicalization for migration matching.
normalize_phone is total: any input (None included) yields a digits-only string.
"""
import re
from typing import Optional

PAIRING_PHONE_PLACEHOLDER = "Aguardando..."
MIN_PHONE_DIGITS = 10

_NON_DIGITS = re.compile(r"\D")


def normalize_phone(raw: Optional[str]) -> str:
    """Strip every non-digit: "+55 (11) 91234-5678" -> "5511912345678"."""
    if not raw:
        return ""
    return _NON_DIGITS.sub("", str(raw))


def is_matchable(normalized: Optional[str]) -> bool:
    """Shorter than MIN_PHONE_DIGITS means unknown; unknown numbers are never matched."""
    return bool(normalized) and normalized.isdigit() and len(normalized) >= MIN_PHONE_DIGITS


def format_phone(raw: Optional[str]) -> str:
    """Display form. 13-digit Brazilian numbers become +55 (DD) NNNNN-NNNN; anything else is returned as given."""
    if not raw or raw == PAIRING_PHONE_PLACEHOLDER:
        return raw or ""
    digits = normalize_phone(raw)
    if len(digits) == 13 and digits.startswith("55"):
        return f"+55 ({digits[2:4]}) {digits[4:9]}-{digits[9:]}"
    return raw
