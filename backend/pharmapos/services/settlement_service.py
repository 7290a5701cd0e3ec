# Overview: Sale settlement orchestrator; validates a cart, locks its products, plans FEFO deductions and commits the sale atomically.

# backend/pharmapos/services/settlement_service.py

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum

from flask import current_app
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from ..extensions import db
from ..models import Product, Sale, SaleItem, StockMovement
from ..models.inventory import MOVEMENT_SALE
from ..models.sales import SALE_STATUS_COMPLETED, SALE_TYPE_RETAIL, SALE_TYPE_WHOLESALE, SALE_TYPES
from ..signals import sale_completed, stock_low
from ..time_utils import utcnow
from . import inventory_service
from .audit_service import append_audit_event, SALE_COMPLETED
from .batch_planner import plan_deductions
from .concurrency import is_lock_contention, product_guard, run_with_retry
from .errors import InsufficientStock, InvalidCart, LockTimeout, PersistenceFailure, SettlementError
from .pricing_service import FULL_PERCENT, ZERO_PERCENT, calculate_totals
"""
Settlement Invariants (authoritative)

Flow: RECEIVED -> VALIDATED -> LOCKED -> PLANNED -> COMMITTED, or REJECTED.

- A cart is settled whole or not at all. Any invalid line or shortfall rejects
  the entire cart and nothing is written.
- Stock used for planning is read only after every product lock is held.
  Lines for the same product are planned together against one snapshot.
- One commit writes the sale, its items, the batch/aggregate deductions, one
  SALE movement per batch deduction and the SALE_COMPLETED audit event.
- client_transaction_id is the idempotency key. It is checked before
  validation, again once the locks are held, and finally by the unique
  constraint. A repeat returns the stored sale with duplicate=True.
- Notifications (blinker signals) are sent only after commit.
"""


class SettlementState(str, Enum):
    RECEIVED = "RECEIVED"
    VALIDATED = "VALIDATED"
    LOCKED = "LOCKED"
    PLANNED = "PLANNED"
    COMMITTED = "COMMITTED"
    REJECTED = "REJECTED"


@dataclass(frozen=True)
class CartLine:
    product_id: int
    quantity: int
    unit_price_cents: int | None = None  # None -> catalogue price
    line_discount_percent: Decimal = ZERO_PERCENT
    is_wholesale: bool = False


@dataclass(frozen=True)
class Cashier:
    id: str | None = None
    name: str | None = None
    email: str | None = None


@dataclass(frozen=True)
class Customer:
    name: str | None = None
    phone: str | None = None
    business_name: str | None = None
    business_address: str | None = None


@dataclass(frozen=True)
class SettlementRequest:
    client_transaction_id: str
    items: tuple[CartLine, ...]
    overall_discount_percent: Decimal = ZERO_PERCENT
    manual_discount_cents: int = 0
    sale_type: str = SALE_TYPE_RETAIL
    cashier: Cashier = field(default_factory=Cashier)
    customer: Customer = field(default_factory=Customer)


@dataclass
class SettlementResult:
    sale: Sale
    stock_movements: list[StockMovement]
    duplicate: bool = False

    def to_dict(self) -> dict:
        return {
            "sale": self.sale.to_dict(include_items=True),
            "stock_movements": [m.to_dict() for m in self.stock_movements],
            "duplicate": self.duplicate,
        }


class _StateTracker:
    """Logs each transition of one settlement attempt."""

    def __init__(self, client_transaction_id: str):
        self.txid = client_transaction_id
        self.state = SettlementState.RECEIVED

    def advance(self, state: SettlementState) -> None:
        current_app.logger.debug("Settlement %s: %s -> %s", self.txid, self.state.value, state.value)
        self.state = state

    def reject(self, exc: Exception) -> None:
        current_app.logger.warning(
            "Settlement %s rejected in %s: %s", self.txid, self.state.value, exc
        )
        self.state = SettlementState.REJECTED


def get_sale(sale_id: int) -> Sale | None:
    return db.session.get(Sale, sale_id)


def get_sale_by_transaction_id(client_transaction_id: str) -> Sale | None:
    return db.session.query(Sale).filter_by(client_transaction_id=client_transaction_id).first()


def sale_movements(sale_id: int) -> list[StockMovement]:
    return (
        db.session.query(StockMovement)
        .filter_by(sale_id=sale_id, movement_type=MOVEMENT_SALE)
        .order_by(StockMovement.id.asc())
        .all()
    )


def build_result(sale: Sale, *, duplicate: bool = False) -> SettlementResult:
    return SettlementResult(sale=sale, stock_movements=sale_movements(sale.id), duplicate=duplicate)


def _validate_cart(request: SettlementRequest) -> dict[int, Product]:
    if not request.client_transaction_id:
        raise InvalidCart("client_transaction_id required")
    if not request.items:
        raise InvalidCart("Cart is empty")
    if request.sale_type not in SALE_TYPES:
        raise InvalidCart(f"sale_type must be one of {', '.join(SALE_TYPES)}")
    if not ZERO_PERCENT <= request.overall_discount_percent <= FULL_PERCENT:
        raise InvalidCart("Overall discount must be between 0 and 100 percent")
    if request.manual_discount_cents < 0:
        raise InvalidCart("Manual discount cannot be negative")

    for index, line in enumerate(request.items):
        where = {"line": index, "product_id": line.product_id}
        if isinstance(line.quantity, bool) or not isinstance(line.quantity, int) or line.quantity <= 0:
            raise InvalidCart(f"Line {index + 1}: quantity must be a positive integer", details=where)
        if not ZERO_PERCENT <= line.line_discount_percent <= FULL_PERCENT:
            raise InvalidCart(f"Line {index + 1}: discount must be between 0 and 100 percent", details=where)
        if line.unit_price_cents is not None and line.unit_price_cents < 0:
            raise InvalidCart(f"Line {index + 1}: unit price cannot be negative", details=where)

    product_ids = {line.product_id for line in request.items}
    products = {
        p.id: p for p in db.session.query(Product).filter(Product.id.in_(product_ids)).all()
    }
    missing = sorted(product_ids - products.keys())
    if missing:
        raise InvalidCart("Unknown product in cart", details={"product_ids": missing})
    inactive = sorted(pid for pid, p in products.items() if not p.is_active)
    if inactive:
        raise InvalidCart("Inactive product in cart", details={"product_ids": inactive})
    return products


def _resolve_unit_price(line: CartLine, product: Product, sale_type: str) -> tuple[int, bool]:
    wholesale = line.is_wholesale or sale_type == SALE_TYPE_WHOLESALE
    if line.unit_price_cents is not None:
        return line.unit_price_cents, wholesale
    if wholesale and product.wholesale_price_cents is not None:
        return product.wholesale_price_cents, wholesale
    return product.unit_price_cents, wholesale


def _settle_locked(request: SettlementRequest, tracker: _StateTracker, timeout: float) -> tuple[int, bool]:
    """One locked attempt. Returns (sale_id, duplicate)."""
    txid = request.client_transaction_id
    product_ids = sorted({line.product_id for line in request.items})

    with product_guard(product_ids, timeout=timeout):
        existing = get_sale_by_transaction_id(txid)
        if existing is not None:
            db.session.rollback()
            return existing.id, True
        tracker.advance(SettlementState.LOCKED)

        products = inventory_service.lock_products(product_ids)
        for pid in product_ids:
            product = products.get(pid)
            if product is None or not product.is_active:
                raise InvalidCart("Product no longer available", details={"product_id": pid})

        requested = defaultdict(int)
        for line in request.items:
            requested[line.product_id] += line.quantity

        plans = {}
        for pid in product_ids:
            product = products[pid]
            batches = inventory_service.load_batches(pid, lock=True)
            try:
                plans[pid] = plan_deductions(pid, requested[pid], batches, product.quantity)
            except InsufficientStock as exc:
                raise exc.with_product_name(product.name) from None

        priced_inputs = []
        wholesale_flags = []
        for line in request.items:
            price, wholesale = _resolve_unit_price(line, products[line.product_id], request.sale_type)
            priced_inputs.append((line.quantity, price, line.line_discount_percent))
            wholesale_flags.append(wholesale)
        totals = calculate_totals(
            priced_inputs,
            overall_discount_percent=request.overall_discount_percent,
            manual_discount_cents=request.manual_discount_cents,
        )
        tracker.advance(SettlementState.PLANNED)

        now = utcnow()
        cashier = request.cashier
        customer = request.customer
        sale = Sale(
            client_transaction_id=txid,
            sale_type=request.sale_type,
            status=SALE_STATUS_COMPLETED,
            cashier_id=cashier.id,
            cashier_name=cashier.name,
            cashier_email=cashier.email,
            customer_name=customer.name,
            customer_phone=customer.phone,
            business_name=customer.business_name,
            business_address=customer.business_address,
            subtotal_cents=totals.subtotal_cents,
            overall_discount_percent=request.overall_discount_percent,
            manual_discount_cents=request.manual_discount_cents,
            discount_cents=totals.discount_cents,
            total_cents=totals.total_cents,
            created_at=now,
            completed_at=now,
        )
        db.session.add(sale)
        db.session.flush()

        for line, priced, wholesale in zip(request.items, totals.lines, wholesale_flags):
            db.session.add(SaleItem(
                sale_id=sale.id,
                product_id=line.product_id,
                product_name=products[line.product_id].name,
                quantity=priced.quantity,
                unit_price_cents=priced.unit_price_cents,
                line_discount_percent=priced.line_discount_percent,
                line_discount_cents=priced.line_discount_cents,
                line_total_cents=priced.line_total_cents,
                is_wholesale=wholesale,
            ))

        for pid in product_ids:
            inventory_service.apply_deduction(
                products[pid],
                plans[pid],
                movement_type=MOVEMENT_SALE,
                sale_id=sale.id,
                actor_id=cashier.id,
                actor_name=cashier.name,
                note=f"Sale {txid}",
                occurred_at=now,
            )

        append_audit_event(
            event_type=SALE_COMPLETED,
            entity_type="sale",
            entity_id=sale.id,
            actor_id=cashier.id,
            actor_email=cashier.email,
            sale_id=sale.id,
            occurred_at=now,
            payload={
                "client_transaction_id": txid,
                "subtotal_cents": totals.subtotal_cents,
                "discount_cents": totals.discount_cents,
                "total_cents": totals.total_cents,
                "discount_clamped": totals.clamped,
                "items": [{"product_id": pid, "quantity": requested[pid]} for pid in product_ids],
            },
        )
        db.session.commit()
        tracker.advance(SettlementState.COMMITTED)
        return sale.id, False


def _notify(sale: Sale, product_ids) -> None:
    app = current_app._get_current_object()
    try:
        sale_completed.send(
            app,
            sale_id=sale.id,
            client_transaction_id=sale.client_transaction_id,
            total_cents=sale.total_cents,
        )
        low = db.session.query(Product).filter(
            Product.id.in_(list(product_ids)),
            Product.quantity <= Product.reorder_level,
        ).all()
        for product in low:
            stock_low.send(
                app,
                product_id=product.id,
                quantity=product.quantity,
                reorder_level=product.reorder_level,
            )
    except Exception:
        # The sale is committed; a failing receiver must not turn it into an error.
        current_app.logger.exception("Post-settlement notification failed for sale %s", sale.id)


def settle_sale(request: SettlementRequest) -> SettlementResult:
    """
    Settle a cart into a completed sale.

    Returns a SettlementResult; duplicate=True when client_transaction_id was
    already settled (the stored sale is returned unchanged).

    Raises:
        InvalidCart: bad cart, unknown or inactive product.
        InsufficientStock: some line cannot be covered; names product and shortfall.
        LockTimeout: product locks not acquired in time (retryable).
        PersistenceFailure: storage write failed and was rolled back (retryable).
    """
    txid = request.client_transaction_id
    tracker = _StateTracker(txid)

    existing = get_sale_by_transaction_id(txid) if txid else None
    if existing is not None:
        current_app.logger.info("Settlement %s is a replay of sale %s", txid, existing.id)
        return build_result(existing, duplicate=True)

    try:
        _validate_cart(request)
    except InvalidCart as exc:
        tracker.reject(exc)
        raise
    tracker.advance(SettlementState.VALIDATED)

    config = current_app.config
    timeout = config.get("SETTLEMENT_LOCK_TIMEOUT_SECONDS", 5.0)

    try:
        sale_id, duplicate = run_with_retry(
            lambda: _settle_locked(request, tracker, timeout),
            attempts=config.get("SETTLEMENT_RETRY_ATTEMPTS", 3),
            backoff_base=config.get("SETTLEMENT_RETRY_BACKOFF_SECONDS", 0.1),
        )
    except SettlementError as exc:
        tracker.reject(exc)
        raise
    except IntegrityError as exc:
        db.session.rollback()
        existing = get_sale_by_transaction_id(txid)
        if existing is not None:
            current_app.logger.info("Settlement %s lost the race to sale %s", txid, existing.id)
            return build_result(existing, duplicate=True)
        failure = PersistenceFailure("Sale could not be saved", details={"reason": "integrity"})
        tracker.reject(failure)
        raise failure from exc
    except OperationalError as exc:
        db.session.rollback()
        if is_lock_contention(exc):
            failure = LockTimeout(
                "Timed out waiting for stock lock; retry with the same transaction id",
                details={"reason": "database lock"},
            )
        else:
            failure = PersistenceFailure("Sale could not be saved", details={"reason": "database"})
        tracker.reject(failure)
        raise failure from exc
    except SQLAlchemyError as exc:
        db.session.rollback()
        failure = PersistenceFailure("Sale could not be saved", details={"reason": "database"})
        tracker.reject(failure)
        raise failure from exc

    sale = db.session.get(Sale, sale_id)
    if duplicate:
        current_app.logger.info("Settlement %s is a replay of sale %s", txid, sale_id)
        return build_result(sale, duplicate=True)

    current_app.logger.info(
        "Settled sale %s (%s): %s lines, total %s cents",
        sale.id, txid, len(request.items), sale.total_cents,
    )
    _notify(sale, {line.product_id for line in request.items})
    return build_result(sale)
