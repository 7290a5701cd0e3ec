from datetime import date

import pytest

from pharmapos.extensions import db
from pharmapos.models import AuditEvent, Batch, Product, StockMovement
from pharmapos.services import inventory_service
from pharmapos.services.audit_service import INVENTORY_UPDATED, PRODUCT_CREATED
from pharmapos.services.batch_planner import BatchDeduction
from pharmapos.services.errors import InsufficientStock


def _movements(product_id):
    return (
        db.session.query(StockMovement)
        .filter_by(product_id=product_id)
        .order_by(StockMovement.id)
        .all()
    )


def test_create_product_with_opening_batch(db_session, make_product):
    product = make_product(initial_quantity=12, batch_number="LOT-1", expiry_date=date(2026, 1, 31))

    snapshot = inventory_service.get_available(product.id)
    assert snapshot.aggregate_quantity == 12
    assert [(b.batch_number, b.quantity) for b in snapshot.batches] == [("LOT-1", 12)]

    moves = _movements(product.id)
    assert [(m.movement_type, m.quantity_delta) for m in moves] == [("INITIAL", 12)]
    assert moves[0].batch_id == snapshot.batches[0].id
    assert db_session.query(AuditEvent).filter_by(event_type=PRODUCT_CREATED).count() == 1


def test_create_product_rejects_duplicate_sku(db_session, make_product):
    make_product(sku="DUP")
    with pytest.raises(ValueError):
        make_product(sku="DUP")


def test_unbatched_opening_stock_stays_on_aggregate(db_session, make_product):
    product = make_product(initial_quantity=5)
    snapshot = inventory_service.get_available(product.id)
    assert snapshot.aggregate_quantity == 5
    assert snapshot.batches == ()
    assert _movements(product.id)[0].batch_id is None


def test_snapshot_lists_batches_in_fefo_order(db_session, batched_product):
    inventory_service.receive_batch(product_id=batched_product.id, batch_number="NOEXP", quantity=4)
    inventory_service.receive_batch(
        product_id=batched_product.id, batch_number="B0", quantity=1, expiry_date=date(2024, 12, 1)
    )
    snapshot = inventory_service.get_available(batched_product.id)
    assert [b.batch_number for b in snapshot.batches] == ["B0", "B1", "B2", "NOEXP"]
    assert snapshot.aggregate_quantity == snapshot.batch_quantity == 18


def test_receive_batch_tops_up_existing_batch(db_session, batched_product):
    inventory_service.receive_batch(
        product_id=batched_product.id, batch_number="B2", quantity=5, expiry_date=date(2025, 6, 1)
    )
    b2 = db_session.query(Batch).filter_by(product_id=batched_product.id, batch_number="B2").one()
    assert b2.quantity == 15
    assert db_session.get(Product, batched_product.id).quantity == 18


def test_receive_batch_rejects_conflicting_expiry(db_session, batched_product):
    with pytest.raises(ValueError):
        inventory_service.receive_batch(
            product_id=batched_product.id, batch_number="B2", quantity=1, expiry_date=date(2027, 1, 1)
        )


def test_first_restock_moves_legacy_stock_into_a_batch(db_session, make_product):
    product = make_product(initial_quantity=6)
    inventory_service.receive_batch(
        product_id=product.id, batch_number="NEW", quantity=4, expiry_date=date(2026, 3, 1)
    )

    batches = inventory_service.load_batches(product.id)
    by_number = {b.batch_number: b.quantity for b in batches}
    assert by_number == {f"LEGACY-{product.id}": 6, "NEW": 4}
    # legacy batch has no expiry, so it is consumed after NEW
    assert batches[-1].batch_number == f"LEGACY-{product.id}"

    report = inventory_service.reconcile_product(product.id)
    assert report["consistent"]
    assert report["aggregate_quantity"] == 10


def test_apply_deduction_writes_one_movement_per_batch(db_session, batched_product):
    product = db_session.get(Product, batched_product.id)
    b1, b2 = inventory_service.load_batches(product.id)

    moves = inventory_service.apply_deduction(
        product, [BatchDeduction(b1.id, 3), BatchDeduction(b2.id, 1)], actor_id="7"
    )
    db_session.commit()

    assert [(m.batch_id, m.quantity_delta, m.movement_type) for m in moves] == [
        (b1.id, -3, "SALE"),
        (b2.id, -1, "SALE"),
    ]
    assert product.quantity == 9


def test_apply_deduction_rejects_overdraw_without_mutating(db_session, batched_product):
    product = db_session.get(Product, batched_product.id)
    b1, b2 = inventory_service.load_batches(product.id)

    with pytest.raises(InsufficientStock):
        inventory_service.apply_deduction(product, [BatchDeduction(b2.id, 2), BatchDeduction(b1.id, 4)])

    db_session.rollback()
    assert [b.quantity for b in inventory_service.load_batches(product.id)] == [3, 10]
    assert db_session.get(Product, product.id).quantity == 13


def test_adjust_negative_without_batch_drains_fefo(db_session, batched_product):
    moves = inventory_service.adjust_stock(product_id=batched_product.id, quantity_delta=-4, note="Damaged")

    assert [m.quantity_delta for m in moves] == [-3, -1]
    assert all(m.movement_type == "ADJUSTMENT" for m in moves)
    assert [b.quantity for b in inventory_service.load_batches(batched_product.id)] == [0, 9]
    assert db_session.query(AuditEvent).filter_by(event_type=INVENTORY_UPDATED).count() >= 1


def test_adjust_positive_requires_batch_on_batched_product(db_session, batched_product):
    with pytest.raises(ValueError):
        inventory_service.adjust_stock(product_id=batched_product.id, quantity_delta=2)

    b1 = inventory_service.load_batches(batched_product.id)[0]
    inventory_service.adjust_stock(product_id=batched_product.id, quantity_delta=2, batch_id=b1.id)
    assert db_session.get(Batch, b1.id).quantity == 5


def test_adjust_never_goes_negative(db_session, make_product):
    product = make_product(initial_quantity=2)
    with pytest.raises(ValueError):
        inventory_service.adjust_stock(product_id=product.id, quantity_delta=-3)
    assert db_session.get(Product, product.id).quantity == 2


def test_reconcile_detects_drift(db_session, batched_product):
    assert inventory_service.reconcile_product(batched_product.id)["consistent"]

    product = db_session.get(Product, batched_product.id)
    product.quantity = 99
    db_session.commit()

    report = inventory_service.reconcile_product(batched_product.id)
    assert not report["consistent"]
    assert report["movement_quantity"] == 13


def test_low_stock_listing(db_session, make_product):
    low = make_product(initial_quantity=2, reorder_level=5)
    make_product(initial_quantity=20, reorder_level=5)
    assert [p.id for p in inventory_service.list_low_stock_products()] == [low.id]


def test_expiring_batches_are_classified_soonest_first(db_session, make_product):
    today = date(2025, 1, 1)
    product = make_product(sku="EXP-A", initial_quantity=5, batch_number="A1", expiry_date=date(2025, 1, 20))
    inventory_service.receive_batch(product_id=product.id, batch_number="A2", quantity=5,
                                    expiry_date=date(2025, 3, 15))
    inventory_service.receive_batch(product_id=product.id, batch_number="A3", quantity=5,
                                    expiry_date=date(2025, 12, 31))
    make_product(sku="EXP-B", initial_quantity=2, batch_number="B0", expiry_date=date(2024, 12, 1))
    make_product(sku="EXP-C", initial_quantity=2, batch_number="C0")

    emptied = make_product(sku="EXP-D", initial_quantity=4, batch_number="D0", expiry_date=date(2025, 1, 10))
    inventory_service.adjust_stock(product_id=emptied.id, quantity_delta=-4, note="Destroyed")

    inactive = make_product(sku="EXP-E", initial_quantity=1, batch_number="E0", expiry_date=date(2025, 1, 5))
    inactive.is_active = False
    db_session.commit()

    def summary(entries):
        return [(e.batch.batch_number, e.days_remaining, e.status) for e in entries]

    assert summary(inventory_service.list_expiring_batches(today=today)) == [
        ("A1", 19, "critical"),
        ("A2", 73, "warning"),
    ]
    assert summary(inventory_service.list_expiring_batches(include_expired=True, today=today))[0] == (
        "B0", -31, "expired"
    )
    assert summary(inventory_service.list_expiring_batches(365, 10, today=today)) == [
        ("A1", 19, "warning"),
        ("A2", 73, "warning"),
        ("A3", 364, "upcoming"),
    ]

    entry = inventory_service.list_expiring_batches(today=today)[0].to_dict()
    assert (entry["sku"], entry["expiry_date"], entry["quantity"]) == ("EXP-A", "2025-01-20", 5)

    with pytest.raises(ValueError):
        inventory_service.list_expiring_batches(-1, today=today)
