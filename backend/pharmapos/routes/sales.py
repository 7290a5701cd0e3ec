# Overview: Flask API routes for sale settlement; parses input and returns JSON responses.

# backend/pharmapos/routes/sales.py
"""Sale settlement and lookup routes."""

from flask import Blueprint, current_app, jsonify, request

from ..services import audit_service, return_service, settlement_service
from ..services.errors import InsufficientStock, InvalidCart, SettlementError
from ..services.return_service import ReturnError, SaleNotFound
from ..validation import ValidationError, parse_return_payload, parse_settlement_request


sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")


def _error_status(e: SettlementError) -> int:
    if isinstance(e, InvalidCart):
        return 400
    if isinstance(e, InsufficientStock):
        return 409
    return 503  # LockTimeout / PersistenceFailure: retry with the same transaction id


@sales_bp.post("/settle")
def settle_route():
    """
    Settle a cart into a completed sale.

    Returns:
    - 201: new sale
    - 200: client_transaction_id already settled (stored sale, duplicate=true)
    - 400: malformed request or invalid cart
    - 409: insufficient stock (details name the product and shortfall)
    - 503: lock timeout or persistence failure (retryable)
    """
    try:
        settle_request = parse_settlement_request(
            request.get_json(silent=True),
            max_lines=current_app.config["MAX_CART_LINES"],
            max_quantity=current_app.config["MAX_LINE_QUANTITY"],
        )
    except ValidationError as e:
        return jsonify({"error": str(e), "code": "VALIDATION_ERROR"}), 400

    try:
        result = settlement_service.settle_sale(settle_request)
    except SettlementError as e:
        return jsonify(e.to_dict()), _error_status(e)
    except Exception:
        current_app.logger.exception("Failed to settle sale %s", settle_request.client_transaction_id)
        return jsonify({"error": "Internal server error"}), 500

    return jsonify(result.to_dict()), 200 if result.duplicate else 201


@sales_bp.get("/<int:sale_id>")
def get_sale_route(sale_id: int):
    sale = settlement_service.get_sale(sale_id)
    if not sale:
        return jsonify({"error": "Sale not found"}), 404
    return jsonify(settlement_service.build_result(sale).to_dict()), 200


@sales_bp.get("/by-transaction/<string:client_transaction_id>")
def get_sale_by_transaction_route(client_transaction_id: str):
    sale = settlement_service.get_sale_by_transaction_id(client_transaction_id)
    if not sale:
        return jsonify({"error": "Sale not found"}), 404
    return jsonify(settlement_service.build_result(sale).to_dict()), 200


@sales_bp.post("/<int:sale_id>/returns")
def return_route(sale_id: int):
    """
    Return sold units to stock.

    Body: {"items": [{"sale_item_id", "quantity"}], "reason", "cashier"}
    """
    try:
        data = parse_return_payload(request.get_json(silent=True))
        actor = data["actor"]
        movements = return_service.return_items(
            sale_id,
            data["items"],
            actor_id=actor.id,
            actor_name=actor.name,
            reason=data["reason"],
        )
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except SaleNotFound as e:
        return jsonify({"error": str(e), "details": e.details}), 404
    except ReturnError as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except SettlementError as e:
        return jsonify(e.to_dict()), _error_status(e)

    sale = settlement_service.get_sale(sale_id)
    return jsonify({
        "sale": sale.to_dict(include_items=True),
        "stock_movements": [m.to_dict() for m in movements],
    }), 201


@sales_bp.get("/<int:sale_id>/audit")
def sale_audit_route(sale_id: int):
    """Audit trail for one sale, newest first."""
    if not settlement_service.get_sale(sale_id):
        return jsonify({"error": "Sale not found"}), 404
    events = audit_service.list_audit_events(sale_id=sale_id)
    return jsonify({"audit_events": [e.to_dict() for e in events]}), 200
