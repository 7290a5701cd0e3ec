# Overview: First-expiry-first-out batch consumption planning.

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Iterable, Sequence

from .errors import InsufficientStock
"""
FEFO Planning Rules (authoritative)

- Batches are consumed by ascending expiry date; batches without an expiry
  date come last; equal expiry dates fall back to ascending batch id.
- Expired batches are not skipped here. Whether expired stock may be sold is
  a catalogue decision (deactivate the product or adjust the batch to zero).
- A product with no batch rows at all is un-batched legacy stock: the
  aggregate quantity is treated as one implicit no-expiry batch (batch_id None).
- Planning is pure. Callers pass a snapshot read while holding the product lock.
"""


@dataclass(frozen=True)
class BatchDeduction:
    batch_id: int | None
    amount: int
    expiry_date: date | None = None

    def to_dict(self) -> dict:
        return {
            "batch_id": self.batch_id,
            "amount": self.amount,
            "expiry_date": self.expiry_date.isoformat() if self.expiry_date else None,
        }


def fefo_sort_key(batch) -> tuple:
    return (batch.expiry_date is None, batch.expiry_date or date.max, batch.id)


def fefo_order(batches: Iterable) -> list:
    return sorted(batches, key=fefo_sort_key)


def plan_deductions(
    product_id: int,
    requested: int,
    batches: Sequence,
    aggregate_quantity: int = 0,
) -> list[BatchDeduction]:
    """
    Build the ordered deduction plan for `requested` units of a product.

    `batches` is any sequence of objects exposing id, expiry_date and quantity.
    Raises InsufficientStock when the batches (or the legacy aggregate) hold
    fewer than `requested` units.
    """
    if requested <= 0:
        raise ValueError("requested quantity must be positive")

    if not batches:
        if aggregate_quantity < requested:
            raise InsufficientStock(product_id, requested, max(aggregate_quantity, 0))
        return [BatchDeduction(batch_id=None, amount=requested)]

    available = sum(b.quantity for b in batches if b.quantity > 0)
    if available < requested:
        raise InsufficientStock(product_id, requested, available)

    plan: list[BatchDeduction] = []
    remaining = requested
    for batch in fefo_order(batches):
        if remaining == 0:
            break
        if batch.quantity <= 0:
            continue
        take = min(batch.quantity, remaining)
        plan.append(BatchDeduction(batch_id=batch.id, amount=take, expiry_date=batch.expiry_date))
        remaining -= take

    return plan
