from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

MINOR_UNITS_PER_MAJOR = 100
MONEY_QUANT = Decimal("0.01")
ZERO_MONEY = Decimal("0.00")
PERCENT_QUANT = Decimal("0.000001")


def to_decimal(value) -> Decimal:
    """
    Coerce a JSON number/string to Decimal via its string form.

    Going through str() keeps 12.5 as Decimal("12.5") instead of the binary
    float expansion.
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError("boolean is not a number")
    try:
        result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValueError(f"invalid decimal value: {value!r}")
    if not result.is_finite():
        raise ValueError(f"invalid decimal value: {value!r}")
    return result


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def to_minor_units(value) -> int:
    """Major-unit amount (e.g. 12.345) -> integer minor units (1235), half-up."""
    return round_half_up(to_decimal(value) * MINOR_UNITS_PER_MAJOR)


def from_minor_units(cents: int | None) -> Decimal | None:
    if cents is None:
        return None
    return (Decimal(int(cents)) / MINOR_UNITS_PER_MAJOR).quantize(MONEY_QUANT)


def format_minor_units(cents: int | None) -> str | None:
    """Render minor units as a fixed two-place decimal string ("12.50")."""
    amount = from_minor_units(cents)
    return None if amount is None else str(amount)


def format_percent(value) -> str | None:
    """Decimal("12.500000") -> "12.50", Decimal("33.333000") -> "33.333"."""
    if value is None:
        return None
    text = f"{to_decimal(value).quantize(PERCENT_QUANT, rounding=ROUND_HALF_UP):f}"
    whole, _, frac = text.partition(".")
    return f"{whole}.{frac.rstrip('0').ljust(2, '0')}"
