import pytest

from zestswap.core.units import is_native_token, parse_quantity, to_hex


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("0x3d090", 250000),
        ("0X10", 16),
        ("250000", 250000),
        (250000, 250000),
        (1.9, 1),
        ("1e3", 1000),
        (True, 1),
    ],
)
def test_parse_quantity(raw, expected):
    assert parse_quantity(raw) == expected


@pytest.mark.parametrize("raw", [None, "", "not-a-number", "0xzz"])
def test_parse_quantity_default(raw):
    assert parse_quantity(raw, default=7) == 7


def test_to_hex():
    assert to_hex(255) == "0xff"


def test_native_token_addresses():
    assert is_native_token("0x0000000000000000000000000000000000000000")
    assert is_native_token("0xEeeeeEeeeEeEeeEeEeEeeEEEeeeeEeeeeeeeEEeE")
    assert not is_native_token("0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48")
    assert not is_native_token(None)
