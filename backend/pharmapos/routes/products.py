# Overview: Flask API routes for product catalogue operations; parses input and returns JSON responses.

# backend/pharmapos/routes/products.py
from flask import Blueprint, current_app, request

from ..extensions import db
from ..models import Product
from ..services import inventory_service
from ..validation import ValidationError, parse_product_payload

products_bp = Blueprint("products", __name__, url_prefix="/api/products")


@products_bp.post("")
def create_product_route():
    """
    Create a product, optionally with opening stock.

    Body: sku, name, unit_price_cents, [category, unit, wholesale_price_cents,
    reorder_level, initial_quantity, batch_number, expiry_date, unit_cost_cents]
    """
    payload = request.get_json(silent=True) or {}
    try:
        data = parse_product_payload(payload)
        product = inventory_service.create_product(**data)
    except ValidationError as e:
        return {"error": str(e)}, 400
    except ValueError as e:
        db.session.rollback()
        status = 409 if "already exists" in str(e) else 400
        return {"error": str(e)}, status

    current_app.logger.info("Created product %s (%s)", product.id, product.sku)
    return {"product": product.to_dict()}, 201


@products_bp.get("/<int:product_id>")
def get_product_route(product_id: int):
    product = db.session.get(Product, product_id)
    if product is None:
        return {"error": "Product not found"}, 404
    return {"product": product.to_dict()}, 200
