# Overview: Flask API routes for stock operations; parses input and returns JSON responses.

# backend/pharmapos/routes/inventory.py
from flask import Blueprint, current_app, request

from ..services import inventory_service
from ..services.errors import SettlementError
from ..validation import ValidationError, parse_adjust_payload, parse_batch_payload

inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


def _not_found(e: ValueError):
    return str(e) == "product not found"


@inventory_bp.get("/<int:product_id>")
def get_stock(product_id: int):
    """Committed stock for a product: aggregate plus batches in FEFO order."""
    try:
        snapshot = inventory_service.get_available(product_id)
    except ValueError as e:
        return {"error": str(e)}, 404
    return {"stock": snapshot.to_dict()}, 200


@inventory_bp.post("/<int:product_id>/batches")
def receive_batch_route(product_id: int):
    """
    Receive stock into a batch (ADDITION).

    Body: batch_number, quantity, [expiry_date, unit_cost_cents, note]
    """
    payload = request.get_json(silent=True) or {}
    try:
        data = parse_batch_payload(payload)
        batch = inventory_service.receive_batch(product_id=product_id, **data)
    except ValidationError as e:
        return {"error": str(e)}, 400
    except SettlementError as e:
        return e.to_dict(), 503 if e.retryable else 409
    except ValueError as e:
        return {"error": str(e)}, 404 if _not_found(e) else 400

    return {"batch": batch.to_dict()}, 201


@inventory_bp.post("/<int:product_id>/adjust")
def adjust_route(product_id: int):
    """
    Manual stock correction (ADJUSTMENT).

    Body: quantity_delta (non-zero int), [batch_id, note]
    """
    payload = request.get_json(silent=True) or {}
    try:
        data = parse_adjust_payload(payload)
        movements = inventory_service.adjust_stock(product_id=product_id, **data)
    except ValidationError as e:
        return {"error": str(e)}, 400
    except SettlementError as e:
        return e.to_dict(), 503 if e.retryable else 409
    except ValueError as e:
        return {"error": str(e)}, 404 if _not_found(e) else 400

    current_app.logger.info("Adjustment on product %s wrote %s movements", product_id, len(movements))
    return {"stock_movements": [m.to_dict() for m in movements]}, 201


@inventory_bp.get("/<int:product_id>/movements")
def list_movements(product_id: int):
    limit = request.args.get("limit", default=200, type=int)
    limit = max(1, min(limit, 1000))
    try:
        movements = inventory_service.list_stock_movements(product_id=product_id, limit=limit)
    except ValueError as e:
        return {"error": str(e)}, 404
    return {"stock_movements": [m.to_dict() for m in movements]}, 200


@inventory_bp.get("/<int:product_id>/reconcile")
def reconcile(product_id: int):
    try:
        report = inventory_service.reconcile_product(product_id)
    except ValueError as e:
        return {"error": str(e)}, 404
    return {"reconciliation": report}, 200


@inventory_bp.get("/expiring")
def expiring_batches():
    """
    Batches expiring soon, soonest first.

    Query: within_days (default 90), critical_days (default 30),
    include_expired (true/false), limit
    """
    within_days = request.args.get("within_days", default=inventory_service.EXPIRY_WARNING_DAYS, type=int)
    critical_days = request.args.get("critical_days", default=inventory_service.EXPIRY_CRITICAL_DAYS, type=int)
    include_expired = request.args.get("include_expired", "false").lower() in ("1", "true", "yes")
    limit = max(1, min(request.args.get("limit", default=500, type=int), 2000))
    try:
        expiring = inventory_service.list_expiring_batches(
            within_days, critical_days, include_expired=include_expired, limit=limit
        )
    except ValueError as e:
        return {"error": str(e)}, 400

    counts = {}
    for entry in expiring:
        counts[entry.status] = counts.get(entry.status, 0) + 1
    return {
        "expiring": [entry.to_dict() for entry in expiring],
        "within_days": within_days,
        "critical_days": critical_days,
        "counts": counts,
    }, 200
