"""Amount helpers for unsigned 128-bit base-unit amounts."""

from __future__ import annotations

from decimal import Decimal, localcontext


U128_MAX = 2**128 - 1
NATIVE_DECIMALS = 24

# u128 has 39 digits; the default decimal context keeps 28.
_PRECISION = 80


def ensure_u128(value: int, name: str = "amount") -> int:
    """Validate that value fits an unsigned 128-bit integer."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{name} must be an integer, got {type(value).__name__}")
    if value < 0:
        raise ValueError(f"{name} must not be negative")
    if value > U128_MAX:
        raise ValueError(f"{name} exceeds u128 range")
    return value


def parse_amount(value: str | int) -> int:
    """Parse a base-unit amount from CLI or JSON input."""
    if isinstance(value, str):
        raw = value.strip().replace("_", "")
        if not raw.isdigit():
            raise ValueError(f"Invalid amount: {value} (expected base units)")
        value = int(raw)
    return ensure_u128(value)


def base_units_to_decimal(value: int, decimals: int = NATIVE_DECIMALS) -> Decimal:
    """Convert integer base units to a Decimal in whole currency units."""
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return Decimal(value).scaleb(-decimals)


def format_amount(value: int, decimals: int = NATIVE_DECIMALS, symbol: str = "") -> str:
    """Format base units for display, trimming trailing zeros."""
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        text = f"{base_units_to_decimal(value, decimals).normalize():f}"
    return f"{text} {symbol}" if symbol else text
