# Overview: Discount and total calculation in integer minor units.

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable

from ..money import PERCENT_QUANT, round_half_up, to_decimal
"""
Pricing Invariants (authoritative)

- Every amount is an integer number of cents. Percentages are Decimals
  normalized to six decimal places (33.333 stays 33.333, a float-noise
  0.30000000000000004 becomes 0.3). No float ever enters the arithmetic.
- Rounding is half-up, applied once per rounded quantity:
    overall discount  = round(subtotal * overall_percent / 100)
    line discount     = round(unit_price * quantity * line_percent / 100), per line
    total discount    = overall + sum(line discounts) + manual discount
- total = subtotal - min(total discount, subtotal); never negative.
- Same inputs always give the same cents.
"""

ZERO_PERCENT = Decimal("0")
FULL_PERCENT = Decimal("100")


def normalize_percent(value) -> Decimal:
    """
    12.5 / "12.5" / Decimal("12.5") -> Decimal("12.500000").

    Raises ValueError for values outside 0..100.
    """
    pct = to_decimal(value)
    if pct < 0 or pct > FULL_PERCENT:
        raise ValueError("discount percent must be between 0 and 100")
    return pct.quantize(PERCENT_QUANT, rounding=ROUND_HALF_UP)


def apply_percent(amount_cents: int, percent: Decimal) -> int:
    if not percent or not amount_cents:
        return 0
    return round_half_up(Decimal(amount_cents) * percent / FULL_PERCENT)


@dataclass(frozen=True)
class PricedLine:
    quantity: int
    unit_price_cents: int
    line_discount_percent: Decimal
    gross_cents: int
    line_discount_cents: int

    @property
    def line_total_cents(self) -> int:
        return self.gross_cents - self.line_discount_cents


@dataclass(frozen=True)
class SaleTotals:
    subtotal_cents: int
    overall_discount_cents: int
    line_discount_cents: int
    manual_discount_cents: int
    discount_cents: int
    total_cents: int
    lines: tuple[PricedLine, ...]

    @property
    def clamped(self) -> bool:
        requested = self.overall_discount_cents + self.line_discount_cents + self.manual_discount_cents
        return requested > self.discount_cents


def price_line(quantity: int, unit_price_cents: int, line_discount_percent: Decimal = ZERO_PERCENT) -> PricedLine:
    if quantity <= 0:
        raise ValueError("quantity must be positive")
    if unit_price_cents < 0:
        raise ValueError("unit price cannot be negative")
    if not ZERO_PERCENT <= line_discount_percent <= FULL_PERCENT:
        raise ValueError("line discount must be between 0 and 100 percent")
    gross = unit_price_cents * quantity
    return PricedLine(
        quantity=quantity,
        unit_price_cents=unit_price_cents,
        line_discount_percent=line_discount_percent,
        gross_cents=gross,
        line_discount_cents=apply_percent(gross, line_discount_percent),
    )


def calculate_totals(
    lines: Iterable[tuple[int, int, Decimal]],
    *,
    overall_discount_percent: Decimal = ZERO_PERCENT,
    manual_discount_cents: int = 0,
) -> SaleTotals:
    """
    Compute subtotal, discount and total for (quantity, unit_price_cents,
    line_discount_percent) tuples.
    """
    if not ZERO_PERCENT <= overall_discount_percent <= FULL_PERCENT:
        raise ValueError("overall discount must be between 0 and 100 percent")
    if manual_discount_cents < 0:
        raise ValueError("manual discount cannot be negative")

    priced = tuple(price_line(q, p, d) for q, p, d in lines)
    subtotal = sum(line.gross_cents for line in priced)
    overall = apply_percent(subtotal, overall_discount_percent)
    line_discounts = sum(line.line_discount_cents for line in priced)

    discount = min(overall + line_discounts + manual_discount_cents, subtotal)

    return SaleTotals(
        subtotal_cents=subtotal,
        overall_discount_cents=overall,
        line_discount_cents=line_discounts,
        manual_discount_cents=manual_discount_cents,
        discount_cents=discount,
        total_cents=subtotal - discount,
        lines=priced,
    )
