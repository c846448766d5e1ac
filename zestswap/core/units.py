"""Helpers for EVM quantities that arrive as hex strings, decimal strings or ints."""

from typing import Any, Optional

NATIVE_TOKEN_ADDRESSES = frozenset(
    {
        "0x0000000000000000000000000000000000000000",
        "0xeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeee",
    }
)


def parse_quantity(value: Any, default: Optional[int] = None) -> Optional[int]:
    """Parse ``0x``-prefixed hex, decimal strings, ints and floats into an int."""
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    text = str(value).strip()
    try:
        if text.lower().startswith("0x"):
            return int(text, 16)
        if "." in text or "e" in text.lower():
            return int(float(text))
        return int(text)
    except ValueError:
        return default


def to_hex(value: int) -> str:
    return hex(int(value))


def is_native_token(address: Optional[str]) -> bool:
    return bool(address) and address.lower() in NATIVE_TOKEN_ADDRESSES
