# Overview: Service-layer operations for inventory; encapsulates business logic and database work.

# backend/pharmapos/services/inventory_service.py

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from typing import Iterable, Sequence

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import Product, Batch, StockMovement
from ..models.inventory import (
    MOVEMENT_ADDITION,
    MOVEMENT_ADJUSTMENT,
    MOVEMENT_INITIAL,
    MOVEMENT_RETURN,
    MOVEMENT_SALE,
)
from ..time_utils import utcnow
from .audit_service import append_audit_event, INVENTORY_UPDATED, PRODUCT_CREATED
from .batch_planner import BatchDeduction, plan_deductions
from .concurrency import lock_for_update, product_guard, run_with_retry
from .errors import InsufficientStock
"""
Inventory Ledger Invariants (authoritative)

Stock model:
- Product.quantity is the denormalized on-hand figure.
- When a product has batch rows, Product.quantity == SUM(Batch.quantity).
- A product with no batch rows holds legacy stock in Product.quantity only.
  The first restock converts that stock into a no-expiry LEGACY batch.
- No quantity is ever negative.

Audit:
- Every quantity change writes StockMovement rows in the same DB transaction,
  one per touched batch (batch_id NULL for legacy aggregate stock).
- SUM(StockMovement.quantity_delta) for a product == Product.quantity.

Writers:
- Settlement is the only SALE writer (apply_deduction, called under its lock).
- receive_batch / adjust_stock / restore_stock are the other write paths; they
  take the same per-product lock.
"""

LEGACY_BATCH_PREFIX = "LEGACY-"

# Expiry alert windows, in days
EXPIRY_WARNING_DAYS = 90
EXPIRY_CRITICAL_DAYS = 30

EXPIRY_EXPIRED = "expired"
EXPIRY_CRITICAL = "critical"
EXPIRY_WARNING = "warning"
EXPIRY_UPCOMING = "upcoming"


@dataclass(frozen=True)
class StockSnapshot:
    product_id: int
    aggregate_quantity: int
    batches: tuple

    @property
    def batch_quantity(self) -> int:
        return sum(b.quantity for b in self.batches)

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "aggregate_quantity": self.aggregate_quantity,
            "batch_quantity": self.batch_quantity,
            "batches": [b.to_dict() for b in self.batches],
        }


def _lock_timeout() -> float:
    return current_app.config.get("SETTLEMENT_LOCK_TIMEOUT_SECONDS", 5.0)


def _retry_kwargs() -> dict:
    return {
        "attempts": current_app.config.get("SETTLEMENT_RETRY_ATTEMPTS", 3),
        "backoff_base": current_app.config.get("SETTLEMENT_RETRY_BACKOFF_SECONDS", 0.1),
    }


def get_product(product_id: int, *, lock: bool = False, require_active: bool = False) -> Product:
    query = db.session.query(Product).filter_by(id=product_id)
    if lock:
        query = lock_for_update(query)
    product = query.first()
    if product is None:
        raise ValueError("product not found")
    if require_active and not product.is_active:
        raise ValueError("product is inactive")
    return product


def lock_products(product_ids: Iterable[int]) -> dict[int, Product]:
    """Row-lock products in ascending id order and return fresh rows by id."""
    ids = sorted(set(product_ids))
    rows = lock_for_update(
        db.session.query(Product).filter(Product.id.in_(ids)).order_by(Product.id)
    ).all()
    return {p.id: p for p in rows}


def load_batches(product_id: int, *, lock: bool = False) -> list[Batch]:
    """Batches of a product in FEFO order (NULL expiry last, then id)."""
    query = db.session.query(Batch).filter(Batch.product_id == product_id).order_by(
        Batch.expiry_date.is_(None),
        Batch.expiry_date.asc(),
        Batch.id.asc(),
    )
    if lock:
        query = lock_for_update(query)
    else:
        query = query.populate_existing()
    return query.all()


def get_available(product_id: int) -> StockSnapshot:
    """
    Committed stock view of a product.

    Reads only; nothing here may be used to plan a deduction. Settlement
    re-reads under its lock.
    """
    product = db.session.query(Product).populate_existing().filter_by(id=product_id).first()
    if product is None:
        raise ValueError("product not found")
    batches = load_batches(product_id)
    return StockSnapshot(
        product_id=product.id,
        aggregate_quantity=product.quantity,
        batches=tuple(batches),
    )


def _movement(
    *,
    product_id: int,
    batch_id: int | None,
    movement_type: str,
    quantity_delta: int,
    sale_id: int | None = None,
    actor_id: str | None = None,
    actor_name: str | None = None,
    note: str | None = None,
    occurred_at=None,
) -> StockMovement:
    mv = StockMovement(
        product_id=product_id,
        batch_id=batch_id,
        movement_type=movement_type,
        quantity_delta=quantity_delta,
        sale_id=sale_id,
        actor_id=actor_id,
        actor_name=actor_name,
        note=note[:255] if note else None,
        occurred_at=occurred_at or utcnow(),
    )
    db.session.add(mv)
    return mv


def apply_deduction(
    product: Product,
    batch_deltas: Sequence[BatchDeduction],
    *,
    movement_type: str = MOVEMENT_SALE,
    sale_id: int | None = None,
    actor_id: str | None = None,
    actor_name: str | None = None,
    note: str | None = None,
    occurred_at=None,
) -> list[StockMovement]:
    """
    Decrement batches and the product aggregate inside the caller's transaction.

    The caller must hold the product lock and must have read the batches after
    taking it. Every delta is checked before anything is mutated; no commit.
    """
    total = 0
    resolved: list[tuple[Batch | None, int]] = []
    for delta in batch_deltas:
        if delta.amount <= 0:
            raise ValueError("deduction amount must be positive")
        if delta.batch_id is None:
            resolved.append((None, delta.amount))
        else:
            batch = db.session.get(Batch, delta.batch_id)
            if batch is None or batch.product_id != product.id:
                raise ValueError(f"batch {delta.batch_id} does not belong to product {product.id}")
            if batch.quantity - delta.amount < 0:
                raise InsufficientStock(product.id, delta.amount, batch.quantity, product.name)
            resolved.append((batch, delta.amount))
        total += delta.amount

    if product.quantity - total < 0:
        raise InsufficientStock(product.id, total, product.quantity, product.name)

    when = occurred_at or utcnow()
    movements = []
    for batch, amount in resolved:
        if batch is not None:
            batch.quantity -= amount
        movements.append(_movement(
            product_id=product.id,
            batch_id=batch.id if batch is not None else None,
            movement_type=movement_type,
            quantity_delta=-amount,
            sale_id=sale_id,
            actor_id=actor_id,
            actor_name=actor_name,
            note=note,
            occurred_at=when,
        ))
    product.quantity -= total
    db.session.flush()
    return movements


def _legacy_batch(product: Product) -> Batch | None:
    return db.session.query(Batch).filter_by(
        product_id=product.id,
        batch_number=f"{LEGACY_BATCH_PREFIX}{product.id}",
    ).first()


def _materialize_legacy_stock(product: Product, *, actor_id=None, actor_name=None) -> Batch | None:
    """
    Move un-batched stock into a no-expiry LEGACY batch.

    Called before the first batch is created for a product that still holds
    aggregate-only stock, so the batch-sum invariant holds from then on. The
    transfer is recorded as an ADJUSTMENT pair (-n aggregate, +n batch) that
    nets to zero for the product.
    """
    has_batches = db.session.query(Batch.id).filter_by(product_id=product.id).first() is not None
    if has_batches or product.quantity <= 0:
        return None

    legacy = Batch(
        product_id=product.id,
        batch_number=f"{LEGACY_BATCH_PREFIX}{product.id}",
        expiry_date=None,
        quantity=product.quantity,
    )
    db.session.add(legacy)
    db.session.flush()

    note = "Legacy stock moved into batch"
    _movement(product_id=product.id, batch_id=None, movement_type=MOVEMENT_ADJUSTMENT,
              quantity_delta=-product.quantity, actor_id=actor_id, actor_name=actor_name, note=note)
    _movement(product_id=product.id, batch_id=legacy.id, movement_type=MOVEMENT_ADJUSTMENT,
              quantity_delta=product.quantity, actor_id=actor_id, actor_name=actor_name, note=note)
    return legacy


def restore_stock(
    product: Product,
    batch_amounts: Sequence[tuple[int | None, int]],
    *,
    movement_type: str = MOVEMENT_RETURN,
    sale_id: int | None = None,
    actor_id: str | None = None,
    actor_name: str | None = None,
    note: str | None = None,
) -> list[StockMovement]:
    """
    Put units back into specific batches (returns). Caller holds the lock.

    batch_id None means legacy aggregate stock; if the product has been
    batched since, the units go to its LEGACY batch instead.
    """
    movements = []
    total = 0
    for batch_id, amount in batch_amounts:
        if amount <= 0:
            raise ValueError("restore amount must be positive")
        batch = None
        if batch_id is not None:
            batch = db.session.get(Batch, batch_id)
            if batch is None or batch.product_id != product.id:
                raise ValueError(f"batch {batch_id} does not belong to product {product.id}")
        elif db.session.query(Batch.id).filter_by(product_id=product.id).first() is not None:
            batch = _legacy_batch(product)
            if batch is None:
                batch = Batch(
                    product_id=product.id,
                    batch_number=f"{LEGACY_BATCH_PREFIX}{product.id}",
                    expiry_date=None,
                    quantity=0,
                )
                db.session.add(batch)
                db.session.flush()

        if batch is not None:
            batch.quantity += amount
        movements.append(_movement(
            product_id=product.id,
            batch_id=batch.id if batch is not None else None,
            movement_type=movement_type,
            quantity_delta=amount,
            sale_id=sale_id,
            actor_id=actor_id,
            actor_name=actor_name,
            note=note,
        ))
        total += amount

    product.quantity += total
    db.session.flush()
    return movements


def create_product(
    *,
    sku: str,
    name: str,
    unit_price_cents: int,
    category: str | None = None,
    unit: str = "unit",
    wholesale_price_cents: int | None = None,
    reorder_level: int = 0,
    initial_quantity: int = 0,
    batch_number: str | None = None,
    expiry_date: date | None = None,
    unit_cost_cents: int | None = None,
    actor_id: str | None = None,
    actor_name: str | None = None,
) -> Product:
    """
    Create a product, optionally with opening stock.

    Opening stock with a batch_number becomes the first batch; without one it
    is legacy aggregate stock. Either way an INITIAL movement is written.
    """
    if initial_quantity < 0:
        raise ValueError("initial quantity cannot be negative")
    if unit_price_cents < 0:
        raise ValueError("unit price cannot be negative")

    existing = db.session.query(Product.id).filter_by(sku=sku).first()
    if existing is not None:
        raise ValueError("sku already exists")

    product = Product(
        sku=sku,
        name=name,
        category=category,
        unit=unit or "unit",
        unit_price_cents=unit_price_cents,
        wholesale_price_cents=wholesale_price_cents,
        reorder_level=reorder_level,
        quantity=initial_quantity,
    )
    db.session.add(product)
    db.session.flush()

    if initial_quantity > 0:
        batch_id = None
        if batch_number:
            batch = Batch(
                product_id=product.id,
                batch_number=batch_number,
                expiry_date=expiry_date,
                quantity=initial_quantity,
                unit_cost_cents=unit_cost_cents,
            )
            db.session.add(batch)
            db.session.flush()
            batch_id = batch.id
        _movement(
            product_id=product.id,
            batch_id=batch_id,
            movement_type=MOVEMENT_INITIAL,
            quantity_delta=initial_quantity,
            actor_id=actor_id,
            actor_name=actor_name,
            note="Opening stock",
        )

    append_audit_event(
        event_type=PRODUCT_CREATED,
        entity_type="product",
        entity_id=product.id,
        actor_id=actor_id,
        payload={"sku": sku, "initial_quantity": initial_quantity},
    )
    db.session.commit()
    return product


def receive_batch(
    *,
    product_id: int,
    batch_number: str,
    quantity: int,
    expiry_date: date | None = None,
    unit_cost_cents: int | None = None,
    actor_id: str | None = None,
    actor_name: str | None = None,
    note: str | None = None,
) -> Batch:
    """
    Restock: add `quantity` units under `batch_number`.

    An existing batch with the same number is topped up (its expiry must
    match); otherwise a new batch is created. Writes one ADDITION movement.
    """
    if quantity <= 0:
        raise ValueError("quantity must be positive")
    if not batch_number:
        raise ValueError("batch_number required")

    def _op():
        with product_guard([product_id], timeout=_lock_timeout()):
            product = get_product(product_id, lock=True, require_active=True)
            _materialize_legacy_stock(product, actor_id=actor_id, actor_name=actor_name)

            batch = lock_for_update(
                db.session.query(Batch).filter_by(product_id=product_id, batch_number=batch_number)
            ).first()
            if batch is None:
                batch = Batch(
                    product_id=product_id,
                    batch_number=batch_number,
                    expiry_date=expiry_date,
                    quantity=0,
                    unit_cost_cents=unit_cost_cents,
                )
                db.session.add(batch)
                db.session.flush()
            elif batch.expiry_date != expiry_date:
                raise ValueError("batch already exists with a different expiry date")

            batch.quantity += quantity
            product.quantity += quantity
            if unit_cost_cents is not None:
                batch.unit_cost_cents = unit_cost_cents

            mv = _movement(
                product_id=product_id,
                batch_id=batch.id,
                movement_type=MOVEMENT_ADDITION,
                quantity_delta=quantity,
                actor_id=actor_id,
                actor_name=actor_name,
                note=note or f"Restock {batch_number}",
            )
            db.session.flush()

            append_audit_event(
                event_type=INVENTORY_UPDATED,
                entity_type="batch",
                entity_id=batch.id,
                actor_id=actor_id,
                note=mv.note,
                payload={"product_id": product_id, "quantity_delta": quantity, "movement": MOVEMENT_ADDITION},
            )
            db.session.commit()
            current_app.logger.info(
                "Received %s units of product %s into batch %s", quantity, product_id, batch_number
            )
            return batch

    return run_with_retry(_op, **_retry_kwargs())


def adjust_stock(
    *,
    product_id: int,
    quantity_delta: int,
    batch_id: int | None = None,
    actor_id: str | None = None,
    actor_name: str | None = None,
    note: str | None = None,
) -> list[StockMovement]:
    """
    Manual stock correction (count variance, damage, shrink).

    - Un-batched products adjust the aggregate only.
    - With batch_id, only that batch moves.
    - A negative delta without batch_id is drawn FEFO across batches.
    - A positive delta on a batched product needs batch_id.
    Never lets a quantity go negative.
    """
    if quantity_delta == 0:
        raise ValueError("quantity_delta cannot be zero")

    def _op():
        with product_guard([product_id], timeout=_lock_timeout()):
            product = get_product(product_id, lock=True)
            batches = load_batches(product_id, lock=True)
            note_text = note or "Manual adjustment"

            if batch_id is not None:
                batch = next((b for b in batches if b.id == batch_id), None)
                if batch is None:
                    raise ValueError(f"batch {batch_id} does not belong to product {product_id}")
                if batch.quantity + quantity_delta < 0:
                    raise ValueError("adjustment would make batch quantity negative")
                if quantity_delta < 0:
                    movements = apply_deduction(
                        product,
                        [BatchDeduction(batch.id, -quantity_delta, batch.expiry_date)],
                        movement_type=MOVEMENT_ADJUSTMENT,
                        actor_id=actor_id,
                        actor_name=actor_name,
                        note=note_text,
                    )
                else:
                    movements = restore_stock(
                        product,
                        [(batch.id, quantity_delta)],
                        movement_type=MOVEMENT_ADJUSTMENT,
                        actor_id=actor_id,
                        actor_name=actor_name,
                        note=note_text,
                    )
            elif quantity_delta < 0:
                if product.quantity + quantity_delta < 0:
                    raise ValueError("adjustment would make on-hand negative")
                plan = plan_deductions(product_id, -quantity_delta, batches, product.quantity)
                movements = apply_deduction(
                    product,
                    plan,
                    movement_type=MOVEMENT_ADJUSTMENT,
                    actor_id=actor_id,
                    actor_name=actor_name,
                    note=note_text,
                )
            else:
                if batches:
                    raise ValueError("batch_id required to add stock to a batched product")
                movements = restore_stock(
                    product,
                    [(None, quantity_delta)],
                    movement_type=MOVEMENT_ADJUSTMENT,
                    actor_id=actor_id,
                    actor_name=actor_name,
                    note=note_text,
                )

            append_audit_event(
                event_type=INVENTORY_UPDATED,
                entity_type="product",
                entity_id=product_id,
                actor_id=actor_id,
                note=note_text,
                payload={"quantity_delta": quantity_delta, "batch_id": batch_id, "movement": MOVEMENT_ADJUSTMENT},
            )
            db.session.commit()
            current_app.logger.info("Adjusted product %s by %s", product_id, quantity_delta)
            return movements

    return run_with_retry(_op, **_retry_kwargs())


def list_stock_movements(*, product_id: int, limit: int = 200) -> list[StockMovement]:
    get_product(product_id)
    return (
        db.session.query(StockMovement)
        .filter_by(product_id=product_id)
        .order_by(StockMovement.occurred_at.desc(), StockMovement.id.desc())
        .limit(limit)
        .all()
    )


def reconcile_product(product_id: int) -> dict:
    """
    Compare the aggregate quantity against the batch sum and the movement sum.

    consistent is False if any of the ledger invariants is broken.
    """
    product = get_product(product_id)
    batches = load_batches(product_id)

    movement_total = int(
        db.session.query(func.coalesce(func.sum(StockMovement.quantity_delta), 0))
        .filter(StockMovement.product_id == product_id)
        .scalar() or 0
    )
    per_batch = dict(
        db.session.query(StockMovement.batch_id, func.sum(StockMovement.quantity_delta))
        .filter(StockMovement.product_id == product_id, StockMovement.batch_id.isnot(None))
        .group_by(StockMovement.batch_id)
        .all()
    )

    batch_rows = []
    batches_ok = True
    for b in batches:
        moved = int(per_batch.get(b.id) or 0)
        ok = moved == b.quantity and b.quantity >= 0
        batches_ok = batches_ok and ok
        batch_rows.append({
            "batch_id": b.id,
            "batch_number": b.batch_number,
            "quantity": b.quantity,
            "movement_quantity": moved,
            "consistent": ok,
        })

    batch_total = sum(b.quantity for b in batches)
    consistent = (
        product.quantity >= 0
        and product.quantity == movement_total
        and (not batches or product.quantity == batch_total)
        and batches_ok
    )
    return {
        "product_id": product.id,
        "aggregate_quantity": product.quantity,
        "batch_quantity": batch_total if batches else None,
        "movement_quantity": movement_total,
        "batches": batch_rows,
        "consistent": consistent,
    }


def list_low_stock_products(limit: int = 200) -> list[Product]:
    return (
        db.session.query(Product)
        .filter(Product.is_active.is_(True), Product.quantity <= Product.reorder_level)
        .order_by(Product.quantity.asc(), Product.id.asc())
        .limit(limit)
        .all()
    )


@dataclass(frozen=True)
class ExpiringBatch:
    batch: Batch
    product: Product
    days_remaining: int
    status: str

    def to_dict(self) -> dict:
        data = self.batch.to_dict()
        data.update({
            "product_name": self.product.name,
            "sku": self.product.sku,
            "days_remaining": self.days_remaining,
            "status": self.status,
        })
        return data


def expiry_status(days_remaining: int, critical_days: int = EXPIRY_CRITICAL_DAYS) -> str:
    if days_remaining <= 0:
        return EXPIRY_EXPIRED
    if days_remaining <= critical_days:
        return EXPIRY_CRITICAL
    if days_remaining <= EXPIRY_WARNING_DAYS:
        return EXPIRY_WARNING
    return EXPIRY_UPCOMING


def list_expiring_batches(
    within_days: int = EXPIRY_WARNING_DAYS,
    critical_days: int = EXPIRY_CRITICAL_DAYS,
    *,
    include_expired: bool = False,
    today: date | None = None,
    limit: int = 500,
) -> list[ExpiringBatch]:
    """
    Batches of active products that still hold stock and expire within
    `within_days`, soonest first.

    Already expired batches are left out unless include_expired is set.
    """
    if within_days < 0 or critical_days < 0:
        raise ValueError("day windows must be >= 0")
    today = today or utcnow().date()

    q = (
        db.session.query(Batch, Product)
        .join(Product, Batch.product_id == Product.id)
        .filter(
            Product.is_active.is_(True),
            Batch.quantity > 0,
            Batch.expiry_date.isnot(None),
            Batch.expiry_date <= today + timedelta(days=within_days),
        )
    )
    if not include_expired:
        q = q.filter(Batch.expiry_date > today)

    rows = q.order_by(Batch.expiry_date.asc(), Batch.id.asc()).limit(limit).all()
    expiring = []
    for batch, product in rows:
        days = (batch.expiry_date - today).days
        expiring.append(ExpiringBatch(
            batch=batch,
            product=product,
            days_remaining=days,
            status=expiry_status(days, critical_days),
        ))
    return expiring
