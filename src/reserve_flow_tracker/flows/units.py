"""Exact conversion between on-chain integer amounts and decimal units."""

from __future__ import annotations

from decimal import Context, Decimal, DivisionByZero, Inexact, InvalidOperation, Overflow

# uint256 has 78 digits; leave room for the fractional part of any exponent.
DECIMAL_CONTEXT = Context(prec=120, traps=[InvalidOperation, DivisionByZero, Overflow, Inexact])


def scale_units(raw: int, decimals: int) -> Decimal:
    """Convert a raw integer amount to units: ``raw / 10**decimals``."""
    if decimals < 0:
        raise ValueError("decimals must be >= 0")
    return DECIMAL_CONTEXT.scaleb(Decimal(int(raw)), -decimals)


def to_raw_units(amount: Decimal, decimals: int) -> int:
    """Inverse of :func:`scale_units`; fails if ``amount`` has sub-unit precision."""
    if decimals < 0:
        raise ValueError("decimals must be >= 0")
    scaled = DECIMAL_CONTEXT.scaleb(amount, decimals)
    integral = scaled.to_integral_value(context=DECIMAL_CONTEXT)
    if integral != scaled:
        raise ValueError(f"{amount} has more than {decimals} decimal places")
    return int(integral)


def add(a: Decimal, b: Decimal) -> Decimal:
    return DECIMAL_CONTEXT.add(a, b)


def hex_to_int(value: object) -> int:
    """Parse a 0x-prefixed hex string or bytes-like (HexBytes) as an unsigned int."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        raw = bytes(value)
        return int.from_bytes(raw, "big") if raw else 0
    text = str(value).strip()
    if text.startswith(("0x", "0X")):
        text = text[2:]
    return int(text, 16) if text else 0
