"""
Return Processing Service

Returns put sold units back into the batches the sale drew them from, so the
FEFO history stays truthful and expiry dates follow the units.

RULES:
- A return references one settled sale; each line names a sale item.
- Never more than sold: returned_quantity <= quantity per sale item.
- Units go back in reverse draw order (the last batch drawn is refilled first).
  Earlier returns are assumed to have consumed the draws the same way.
- Inventory restored via RETURN movements that reference the sale.
- One SALE_RETURNED audit event per return, same transaction.
"""

from __future__ import annotations

from collections import defaultdict

from flask import current_app

from ..extensions import db
from ..models import Sale, SaleItem, StockMovement
from ..models.inventory import MOVEMENT_RETURN, MOVEMENT_SALE
from . import inventory_service
from .audit_service import append_audit_event, SALE_RETURNED
from .concurrency import lock_for_update, product_guard, run_with_retry


class ReturnError(Exception):
    """Raised for return operation errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class SaleNotFound(ReturnError):
    pass


def _draws_for_product(sale_id: int, product_id: int) -> list[tuple[int | None, int]]:
    rows = (
        db.session.query(StockMovement)
        .filter_by(sale_id=sale_id, product_id=product_id, movement_type=MOVEMENT_SALE)
        .order_by(StockMovement.id.asc())
        .all()
    )
    return [(m.batch_id, -m.quantity_delta) for m in rows]


def _allocate_return(draws, already_returned: int, quantity: int) -> list[tuple[int | None, int]]:
    """Walk the draws newest first, skip what earlier returns used, take `quantity`."""
    allocation = []
    skip = already_returned
    remaining = quantity
    for batch_id, drawn in reversed(draws):
        if remaining == 0:
            break
        usable = drawn
        if skip:
            used = min(skip, usable)
            skip -= used
            usable -= used
        if usable <= 0:
            continue
        take = min(usable, remaining)
        allocation.append((batch_id, take))
        remaining -= take
    if remaining:
        raise ReturnError("Return exceeds the units drawn by the sale")
    return allocation


def return_items(
    sale_id: int,
    items: list[tuple[int, int]],
    *,
    actor_id: str | None = None,
    actor_name: str | None = None,
    reason: str | None = None,
) -> list[StockMovement]:
    """
    Return (sale_item_id, quantity) pairs of a settled sale to stock.

    Returns the RETURN movements written.
    """
    if not items:
        raise ReturnError("No items to return")

    requested = defaultdict(int)
    for sale_item_id, quantity in items:
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ReturnError("Return quantity must be a positive integer", details={"sale_item_id": sale_item_id})
        requested[sale_item_id] += quantity

    sale = db.session.get(Sale, sale_id)
    if sale is None:
        raise SaleNotFound("Sale not found", details={"sale_id": sale_id})

    item_products = {item.id: item.product_id for item in sale.items}
    unknown = sorted(set(requested) - item_products.keys())
    if unknown:
        raise ReturnError("Sale item does not belong to this sale", details={"sale_item_ids": unknown})

    product_ids = sorted({item_products[i] for i in requested})
    timeout = inventory_service._lock_timeout()

    def _op():
        with product_guard(product_ids, timeout=timeout):
            products = inventory_service.lock_products(product_ids)
            sale_items = lock_for_update(
                db.session.query(SaleItem).filter_by(sale_id=sale_id).order_by(SaleItem.id)
            ).all()

            per_product_new = defaultdict(int)
            per_product_returned = defaultdict(int)
            for item in sale_items:
                per_product_returned[item.product_id] += item.returned_quantity
                qty = requested.get(item.id)
                if not qty:
                    continue
                if item.returned_quantity + qty > item.quantity:
                    raise ReturnError(
                        "Cannot return more than sold",
                        details={
                            "sale_item_id": item.id,
                            "sold": item.quantity,
                            "already_returned": item.returned_quantity,
                            "requested": qty,
                        },
                    )
                per_product_new[item.product_id] += qty

            movements = []
            note = reason or f"Return for sale {sale.client_transaction_id}"
            for pid in product_ids:
                allocation = _allocate_return(
                    _draws_for_product(sale_id, pid),
                    per_product_returned[pid],
                    per_product_new[pid],
                )
                movements.extend(inventory_service.restore_stock(
                    products[pid],
                    allocation,
                    movement_type=MOVEMENT_RETURN,
                    sale_id=sale_id,
                    actor_id=actor_id,
                    actor_name=actor_name,
                    note=note,
                ))

            for item in sale_items:
                if item.id in requested:
                    item.returned_quantity += requested[item.id]

            append_audit_event(
                event_type=SALE_RETURNED,
                entity_type="sale",
                entity_id=sale_id,
                actor_id=actor_id,
                sale_id=sale_id,
                note=reason,
                payload={"items": [{"sale_item_id": k, "quantity": v} for k, v in sorted(requested.items())]},
            )
            db.session.commit()
            current_app.logger.info("Returned %s units for sale %s", sum(requested.values()), sale_id)
            return movements

    return run_with_retry(_op, **inventory_service._retry_kwargs())
