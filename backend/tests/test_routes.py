from datetime import timedelta

from pharmapos.services.concurrency import product_locks
from pharmapos.time_utils import utcnow


def _create_product(client, **overrides):
    body = {"sku": "CETI-10", "name": "Cetirizine 10mg", "unit_price_cents": 300}
    body.update(overrides)
    resp = client.post("/api/products", json=body)
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()["product"]


def _settle(client, txid, items, **extra):
    body = {"client_transaction_id": txid, "items": items}
    body.update(extra)
    return client.post("/api/sales/settle", json=body)


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.get_json()["checks"]["database"]["status"] == "healthy"


def test_settle_end_to_end(client):
    product = _create_product(client, initial_quantity=3, batch_number="B1", expiry_date="2025-01-01")
    resp = client.post(
        f"/api/inventory/{product['id']}/batches",
        json={"batch_number": "B2", "quantity": 10, "expiry_date": "2025-06-01"},
    )
    assert resp.status_code == 201

    resp = _settle(client, "TX-HTTP-1", [{"productId": product["id"], "quantity": 5}], overallDiscountPercent=12.5)
    assert resp.status_code == 201
    data = resp.get_json()
    assert data["duplicate"] is False
    assert data["sale"]["subtotal_cents"] == 1500
    assert data["sale"]["discount_cents"] == 188
    assert data["sale"]["total"] == "13.12"
    assert [m["quantity_delta"] for m in data["stock_movements"]] == [-3, -2]

    stock = client.get(f"/api/inventory/{product['id']}").get_json()["stock"]
    assert [b["quantity"] for b in stock["batches"]] == [0, 8]

    replay = _settle(client, "TX-HTTP-1", [{"productId": product["id"], "quantity": 5}])
    assert replay.status_code == 200
    assert replay.get_json()["duplicate"] is True
    assert replay.get_json()["sale"]["id"] == data["sale"]["id"]

    by_tx = client.get("/api/sales/by-transaction/TX-HTTP-1")
    assert by_tx.status_code == 200
    assert by_tx.get_json()["sale"]["id"] == data["sale"]["id"]


def test_settle_error_statuses(client, app, monkeypatch):
    product = _create_product(client, initial_quantity=2)

    resp = _settle(client, "TX-E1", [])
    assert resp.status_code == 400
    assert resp.get_json()["code"] == "INVALID_CART"

    resp = _settle(client, "bad id!", [{"product_id": product["id"], "quantity": 1}])
    assert resp.status_code == 400
    assert resp.get_json()["code"] == "VALIDATION_ERROR"

    resp = _settle(client, "TX-E2", [{"product_id": product["id"], "quantity": 5}])
    assert resp.status_code == 409
    body = resp.get_json()
    assert body["code"] == "INSUFFICIENT_STOCK"
    assert body["details"]["product_name"] == "Cetirizine 10mg"
    assert body["details"]["shortfall"] == 3

    monkeypatch.setitem(app.config, "SETTLEMENT_LOCK_TIMEOUT_SECONDS", 0.05)
    with product_locks.hold([product["id"]], timeout=1):
        resp = _settle(client, "TX-E3", [{"product_id": product["id"], "quantity": 1}])
    assert resp.status_code == 503
    assert resp.get_json()["retryable"] is True


def test_sale_lookup_and_returns(client):
    product = _create_product(client, initial_quantity=4)
    sale = _settle(client, "TX-R", [{"product_id": product["id"], "quantity": 3}]).get_json()["sale"]

    assert client.get(f"/api/sales/{sale['id']}").status_code == 200
    assert client.get("/api/sales/999999").status_code == 404

    item_id = sale["items"][0]["id"]
    resp = client.post(f"/api/sales/{sale['id']}/returns", json={"items": [{"sale_item_id": item_id, "quantity": 2}]})
    assert resp.status_code == 201
    assert resp.get_json()["sale"]["items"][0]["returned_quantity"] == 2

    resp = client.post(f"/api/sales/{sale['id']}/returns", json={"items": [{"sale_item_id": item_id, "quantity": 2}]})
    assert resp.status_code == 400

    assert client.get(f"/api/products/{product['id']}").get_json()["product"]["quantity"] == 3

    events = client.get(f"/api/sales/{sale['id']}/audit").get_json()["audit_events"]
    assert [e["event_type"] for e in events] == ["SALE_RETURNED", "SALE_COMPLETED"]
    assert client.get("/api/sales/999999/audit").status_code == 404


def test_inventory_adjust_movements_and_reconcile(client):
    product = _create_product(client, initial_quantity=10)

    resp = client.post(f"/api/inventory/{product['id']}/adjust", json={"quantity_delta": -4, "note": "Expired"})
    assert resp.status_code == 201

    resp = client.post(f"/api/inventory/{product['id']}/adjust", json={"quantity_delta": -40})
    assert resp.status_code == 400

    movements = client.get(f"/api/inventory/{product['id']}/movements").get_json()["stock_movements"]
    assert [m["movement_type"] for m in movements] == ["ADJUSTMENT", "INITIAL"]

    report = client.get(f"/api/inventory/{product['id']}/reconcile").get_json()["reconciliation"]
    assert report["consistent"]
    assert report["aggregate_quantity"] == 6

    assert client.get("/api/inventory/424242").status_code == 404


def test_duplicate_sku_conflicts(client):
    _create_product(client)
    resp = client.post("/api/products", json={"sku": "CETI-10", "name": "Again", "unit_price_cents": 1})
    assert resp.status_code == 409


def test_expiring_batches_endpoint(client):
    soon = (utcnow().date() + timedelta(days=10)).isoformat()
    later = (utcnow().date() + timedelta(days=60)).isoformat()
    product = _create_product(client, initial_quantity=5, batch_number="SOON-1", expiry_date=soon)
    resp = client.post(f"/api/inventory/{product['id']}/batches",
                       json={"batch_number": "LATER-1", "quantity": 5, "expiry_date": later})
    assert resp.status_code == 201

    data = client.get("/api/inventory/expiring").get_json()
    assert [(b["batch_number"], b["status"]) for b in data["expiring"]] == [
        ("SOON-1", "critical"),
        ("LATER-1", "warning"),
    ]
    assert data["counts"] == {"critical": 1, "warning": 1}
    assert data["expiring"][0]["days_remaining"] == 10

    data = client.get("/api/inventory/expiring?within_days=5").get_json()
    assert data["expiring"] == []

    assert client.get("/api/inventory/expiring?within_days=-1").status_code == 400
