"""Tests for phone normalization: total, deterministic, digits only."""
import pytest

from apps.connections.phone import (
    PAIRING_PHONE_PLACEHOLDER,
    format_phone,
    is_matchable,
    normalize_phone,
)


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("+55 (11) 99999-8888", "5511999998888"),
        ("5511999998888", "5511999998888"),
        ("55 11 9 9999 8888", "5511999998888"),
        ("5511999998888@s.whatsapp.net", "5511999998888"),
        ("", ""),
        (None, ""),
        (PAIRING_PHONE_PLACEHOLDER, ""),
    ],
)
def test_normalize_phone(raw, expected):
    assert normalize_phone(raw) == expected


def test_normalize_is_deterministic_across_formats():
    """Different renderings of the same number match after normalization."""
    variants = ["+55 11 99999-8888", "(55) 11 999998888", "55-11-99999-8888"]
    assert len({normalize_phone(v) for v in variants}) == 1


def test_normalize_is_idempotent():
    once = normalize_phone("+1 (415) 555-0100")
    assert normalize_phone(once) == once


def test_short_numbers_are_not_matchable():
    assert is_matchable("5511999998888")
    assert is_matchable("4155550100")
    assert not is_matchable("123456789")
    assert not is_matchable("")
    assert not is_matchable(None)


def test_format_phone_brazilian_mobile():
    assert format_phone("5511999998888") == "+55 (11) 99999-8888"
    assert format_phone("+55 11 99999-8888") == "+55 (11) 99999-8888"


def test_format_phone_passthrough():
    assert format_phone("+1 415 555 0100") == "+1 415 555 0100"
    assert format_phone(PAIRING_PHONE_PLACEHOLDER) == PAIRING_PHONE_PLACEHOLDER
    assert format_phone(None) == ""
