import pytest

from pharmapos.models import AuditEvent, Product, SaleItem, StockMovement
from pharmapos.services import inventory_service
from pharmapos.services.audit_service import SALE_RETURNED
from pharmapos.services.return_service import ReturnError, SaleNotFound, return_items
from pharmapos.services.settlement_service import settle_sale


def _quantities(product_id):
    return {b.batch_number: b.quantity for b in inventory_service.load_batches(product_id)}


def test_return_refills_last_drawn_batch_first(db_session, batched_product, make_request):
    sale = settle_sale(make_request("TX-RET", [(batched_product.id, 5)])).sale
    item_id = sale.items[0].id

    moves = return_items(sale.id, [(item_id, 1)], actor_id="7", reason="Unopened")

    assert [(m.movement_type, m.quantity_delta, m.sale_id) for m in moves] == [("RETURN", 1, sale.id)]
    assert _quantities(batched_product.id) == {"B1": 0, "B2": 9}

    return_items(sale.id, [(item_id, 3)])
    # B2 had given 2, so one more there, then back into B1
    assert _quantities(batched_product.id) == {"B1": 2, "B2": 10}
    assert db_session.get(SaleItem, item_id).returned_quantity == 4
    assert inventory_service.reconcile_product(batched_product.id)["consistent"]


def test_cannot_return_more_than_sold(db_session, batched_product, make_request):
    sale = settle_sale(make_request("TX-RET-MAX", [(batched_product.id, 2)])).sale
    item_id = sale.items[0].id
    return_items(sale.id, [(item_id, 2)])

    with pytest.raises(ReturnError) as excinfo:
        return_items(sale.id, [(item_id, 1)])
    assert excinfo.value.details["already_returned"] == 2
    assert db_session.get(Product, batched_product.id).quantity == 13


def test_return_writes_audit_event(db_session, batched_product, make_request):
    sale = settle_sale(make_request("TX-RET-AUDIT", [(batched_product.id, 1)])).sale
    return_items(sale.id, [(sale.items[0].id, 1)], reason="Wrong strength")

    event = db_session.query(AuditEvent).filter_by(event_type=SALE_RETURNED).one()
    assert event.sale_id == sale.id
    assert event.note == "Wrong strength"


def test_return_to_unbatched_stock(db_session, make_product, make_request):
    product = make_product(initial_quantity=3)
    sale = settle_sale(make_request("TX-RET-LEGACY", [(product.id, 3)])).sale

    return_items(sale.id, [(sale.items[0].id, 2)])

    assert db_session.get(Product, product.id).quantity == 2
    moves = db_session.query(StockMovement).filter_by(movement_type="RETURN").all()
    assert [(m.batch_id, m.quantity_delta) for m in moves] == [(None, 2)]


def test_return_rejects_foreign_items_and_missing_sales(db_session, batched_product, make_request):
    first = settle_sale(make_request("TX-RET-A", [(batched_product.id, 1)])).sale
    second = settle_sale(make_request("TX-RET-B", [(batched_product.id, 1)])).sale

    with pytest.raises(ReturnError):
        return_items(first.id, [(second.items[0].id, 1)])
    with pytest.raises(SaleNotFound):
        return_items(999999, [(1, 1)])
    with pytest.raises(ReturnError):
        return_items(first.id, [(first.items[0].id, 0)])
