from __future__ import annotations
import re
from datetime import date, datetime
from pharmapos.time_utils import parse_iso_date

from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from sqlalchemy import Boolean, Date, Integer, String, Text
from sqlalchemy.orm import DeclarativeMeta

from .money import to_minor_units
from .models import Product
from .models.sales import SALE_TYPE_RETAIL, SALE_TYPES
from .services.pricing_service import normalize_percent
from .services.settlement_service import CartLine, Cashier, Customer, SettlementRequest


# Maximum price: 9,999,999.99 (999,999,999 cents)
# This prevents database overflow issues and nonsensical prices
MAX_PRICE_CENTS = 999_999_999

MAX_TRANSACTION_ID_LENGTH = 100
MAX_CUSTOMER_NAME_LENGTH = 200
MAX_PHONE_LENGTH = 20
MAX_EMAIL_LENGTH = 255
MAX_BUSINESS_ADDRESS_LENGTH = 500

_TRANSACTION_ID_RE = re.compile(r"^[A-Za-z0-9\-_]+$")
_PHONE_RE = re.compile(r"^[\d\s+\-()]+$")
_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_UNSAFE_CHARS_RE = re.compile(r"[<>\"'&]")


class ValidationError(ValueError):
    """400-level input problem."""


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to set (security boundary)
    - required_on_create: fields required for POST
    """
    writable_fields: set[str]
    required_on_create: set[str] = None  # type: ignore


PRODUCT_POLICY = ModelValidationPolicy(
    writable_fields={
        "sku", "name", "category", "unit",
        "unit_price_cents", "wholesale_price_cents", "reorder_level",
    },
    required_on_create={"sku", "name", "unit_price_cents"},
)

# Opening-stock keys accepted alongside the product columns
PRODUCT_STOCK_FIELDS = {"initial_quantity", "batch_number", "expiry_date", "unit_cost_cents"}


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def parse_strict_int(value: Any, field: str) -> int:
    """Integers only: rejects bools, floats, decimals and scientific notation."""
    # Already an int (but not bool which is a subclass of int)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    # String input - must be plain digits (with optional leading minus)
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be an integer")
        # Reject scientific notation (e.g., "1e15", "1E10")
        if 'e' in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)")
        # Reject decimal points (e.g., "12.5")
        if '.' in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")
    # Reject floats explicitly
    if isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal")
    raise ValidationError(f"{field} must be an integer")


def parse_strict_bool(value: Any, field: str) -> bool:
    """JSON booleans only: "false", 0 and "0" are rejected, never read as truthy."""
    if isinstance(value, bool):
        return value
    raise ValidationError(f"{field} must be true or false")


def parse_date(value: Any, field: str) -> date | None:
    try:
        return parse_iso_date(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an ISO-8601 date (YYYY-MM-DD)")


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    if isinstance(coltype, Integer):
        return parse_strict_int(value, col.key)

    # Booleans
    if isinstance(coltype, Boolean):
        return parse_strict_bool(value, col.key)

    # Dates (batch expiry)
    if isinstance(coltype, Date):
        if isinstance(value, (date, datetime)):
            return parse_iso_date(value)
        return parse_date(value, col.key)

    # Strings / Text
    if isinstance(coltype, (String, Text)):
        return str(value).strip()

    # Default: leave as-is
    return value


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
    extra_fields: set[str] | None = None,
) -> dict:
    """
    Validates + normalizes incoming JSON against:
    - SQLAlchemy column metadata (nullable, type, String length)
    - a policy allowlist (writable_fields)
    - required_on_create (if partial=False)
    Returns a cleaned patch dict with only writable fields. Keys listed in
    extra_fields are allowed through but left for the caller to parse.
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    extra_fields = extra_fields or set()
    required = policy.required_on_create or set()
    if not partial:
        missing = sorted(f for f in required if f not in payload)
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    cols = _columns_by_key(model)

    # Reject unknown / non-writable fields
    for k in payload.keys():
        if k in extra_fields:
            continue
        if k not in policy.writable_fields:
            raise ValidationError(f"Field not allowed: {k}")
        if k not in cols:
            raise ValidationError(f"Unknown field: {k}")

    patch: dict = {}

    for k, raw in payload.items():
        if k in extra_fields:
            continue
        col = cols[k]

        # NULL handling
        if raw is None:
            if not col.nullable:
                raise ValidationError(f"{k} cannot be null")
            patch[k] = None
            continue

        val = _coerce_value(col, raw)

        # Blank string check for non-nullable text fields
        if isinstance(col.type, (String, Text)) and not col.nullable:
            if isinstance(val, str) and val == "":
                raise ValidationError(f"{k} cannot be blank")

        # Max length check for String(n)
        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationError(f"{k} exceeds max length {col.type.length}")

        patch[k] = val

    return patch


def _check_price(value: int | None, field: str) -> None:
    if value is None:
        return
    if value < 0:
        raise ValidationError(f"{field} must be >= 0")
    if value > MAX_PRICE_CENTS:
        raise ValidationError(f"{field} cannot exceed {MAX_PRICE_CENTS} ({MAX_PRICE_CENTS / 100:,.2f})")


def enforce_rules_product(patch: dict) -> None:
    """
    Business rules that are not captured by SQLAlchemy metadata alone.
    Keep these small and centralized.
    """
    _check_price(patch.get("unit_price_cents"), "unit_price_cents")
    _check_price(patch.get("wholesale_price_cents"), "wholesale_price_cents")
    if patch.get("reorder_level") is not None and patch["reorder_level"] < 0:
        raise ValidationError("reorder_level must be >= 0")


def parse_product_payload(payload: dict) -> dict:
    """Product create body -> kwargs for inventory_service.create_product."""
    patch = validate_payload(
        model=Product,
        payload=payload,
        policy=PRODUCT_POLICY,
        partial=False,
        extra_fields=PRODUCT_STOCK_FIELDS,
    )
    enforce_rules_product(patch)

    initial_quantity = payload.get("initial_quantity")
    patch["initial_quantity"] = 0 if initial_quantity is None else parse_strict_int(initial_quantity, "initial_quantity")
    if patch["initial_quantity"] < 0:
        raise ValidationError("initial_quantity must be >= 0")

    batch_number = payload.get("batch_number")
    patch["batch_number"] = sanitize_text(batch_number, 64) if batch_number else None
    patch["expiry_date"] = parse_date(payload.get("expiry_date"), "expiry_date")
    cost = payload.get("unit_cost_cents")
    patch["unit_cost_cents"] = None if cost is None else parse_strict_int(cost, "unit_cost_cents")
    _check_price(patch["unit_cost_cents"], "unit_cost_cents")
    if patch["expiry_date"] is not None and not patch["batch_number"]:
        raise ValidationError("expiry_date requires batch_number")
    return patch


def parse_batch_payload(payload: dict) -> dict:
    """Restock body: batch_number, quantity, optional expiry_date / unit_cost_cents / note."""
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    batch_number = sanitize_text(payload.get("batch_number"), 64)
    if not batch_number:
        raise ValidationError("batch_number is required")
    if payload.get("quantity") is None:
        raise ValidationError("quantity is required")
    quantity = parse_strict_int(payload["quantity"], "quantity")
    if quantity <= 0:
        raise ValidationError("quantity must be > 0")
    cost = payload.get("unit_cost_cents")
    unit_cost_cents = None if cost is None else parse_strict_int(cost, "unit_cost_cents")
    _check_price(unit_cost_cents, "unit_cost_cents")
    return {
        "batch_number": batch_number,
        "quantity": quantity,
        "expiry_date": parse_date(payload.get("expiry_date"), "expiry_date"),
        "unit_cost_cents": unit_cost_cents,
        "note": sanitize_text(payload.get("note"), 255),
    }


def parse_adjust_payload(payload: dict) -> dict:
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    if payload.get("quantity_delta") is None:
        raise ValidationError("quantity_delta is required")
    delta = parse_strict_int(payload["quantity_delta"], "quantity_delta")
    if delta == 0:
        raise ValidationError("quantity_delta must be non-zero")
    batch_id = payload.get("batch_id")
    return {
        "quantity_delta": delta,
        "batch_id": None if batch_id is None else parse_strict_int(batch_id, "batch_id"),
        "note": sanitize_text(payload.get("note"), 255),
    }


def parse_return_payload(payload: dict) -> dict:
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    raw_items = payload.get("items")
    if not isinstance(raw_items, list) or not raw_items:
        raise ValidationError("items must be a non-empty list")
    items = []
    for index, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise ValidationError(f"items[{index}] must be an object")
        sale_item_id = _pick(raw, "sale_item_id", "saleItemId")
        quantity = raw.get("quantity")
        if sale_item_id is None or quantity is None:
            raise ValidationError(f"items[{index}] requires sale_item_id and quantity")
        qty = parse_strict_int(quantity, f"items[{index}].quantity")
        if qty <= 0:
            raise ValidationError(f"items[{index}].quantity must be > 0")
        items.append((parse_strict_int(sale_item_id, f"items[{index}].sale_item_id"), qty))
    return {
        "items": items,
        "reason": sanitize_text(payload.get("reason"), 255),
        "actor": _parse_cashier(payload.get("cashier")),
    }


# ---------------------------------------------------------------------------
# Settlement request
# ---------------------------------------------------------------------------

def sanitize_text(value: Any, max_length: int) -> str | None:
    """Strip markup characters, trim, truncate. Empty -> None."""
    if value is None:
        return None
    text = _UNSAFE_CHARS_RE.sub("", str(value)).strip()[:max_length]
    return text or None


def _pick(data: dict, *keys: str):
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return None


def _parse_percent(value: Any, field: str) -> Decimal:
    if value is None:
        return Decimal(0)
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number")
    try:
        return normalize_percent(value)
    except ValueError as exc:
        raise ValidationError(f"{field}: {exc}")


def _parse_wholesale(line: dict, index: int) -> bool:
    flag = _pick(line, "is_wholesale", "isWholesale")
    if flag is None:
        return False
    return parse_strict_bool(flag, f"items[{index}].is_wholesale")


def _parse_price(line: dict, index: int) -> int | None:
    cents = _pick(line, "unit_price_cents", "unitPriceCents")
    if cents is not None:
        value = parse_strict_int(cents, f"items[{index}].unit_price_cents")
    else:
        major = _pick(line, "unit_price", "unitPrice")
        if major is None:
            return None
        if isinstance(major, bool):
            raise ValidationError(f"items[{index}].unit_price must be a number")
        try:
            value = to_minor_units(major)
        except ValueError:
            raise ValidationError(f"items[{index}].unit_price must be a number")
    _check_price(value, f"items[{index}].unit_price")
    return value


def _parse_cashier(raw: Any) -> Cashier:
    if raw is None:
        return Cashier()
    if not isinstance(raw, dict):
        raise ValidationError("cashier must be an object")
    cashier_id = raw.get("id")
    email = sanitize_text(raw.get("email"), MAX_EMAIL_LENGTH)
    if email and not _EMAIL_RE.match(email):
        raise ValidationError("cashier email is invalid")
    return Cashier(
        id=sanitize_text(cashier_id, 64) if cashier_id is not None else None,
        name=sanitize_text(raw.get("name"), MAX_CUSTOMER_NAME_LENGTH),
        email=email,
    )


def _parse_customer(payload: dict) -> Customer:
    raw = payload.get("customer") or {}
    if not isinstance(raw, dict):
        raise ValidationError("customer must be an object")

    phone = _pick(raw, "phone")
    if phone is not None:
        phone = str(phone).strip()
        if len(phone) > MAX_PHONE_LENGTH or (phone and not _PHONE_RE.match(phone)):
            raise ValidationError("customer phone is invalid")

    return Customer(
        name=sanitize_text(raw.get("name"), MAX_CUSTOMER_NAME_LENGTH),
        phone=phone or None,
        business_name=sanitize_text(_pick(raw, "business_name", "businessName"), MAX_CUSTOMER_NAME_LENGTH),
        business_address=sanitize_text(
            _pick(raw, "business_address", "businessAddress"), MAX_BUSINESS_ADDRESS_LENGTH
        ),
    )


def parse_settlement_request(
    payload: Any,
    *,
    max_lines: int = 1000,
    max_quantity: int = 100_000,
) -> SettlementRequest:
    """
    JSON body of POST /api/sales/settle -> SettlementRequest.

    Accepts snake_case keys and the POS client's camelCase spellings. Shape
    problems raise ValidationError; business checks (empty cart, unknown
    product, stock) are left to the settlement engine.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    txid = _pick(payload, "client_transaction_id", "clientTransactionId")
    if not isinstance(txid, str) or not txid.strip():
        raise ValidationError("client_transaction_id is required")
    txid = txid.strip()
    if len(txid) > MAX_TRANSACTION_ID_LENGTH:
        raise ValidationError(f"client_transaction_id exceeds max length {MAX_TRANSACTION_ID_LENGTH}")
    if not _TRANSACTION_ID_RE.match(txid):
        raise ValidationError("client_transaction_id may only contain letters, digits, '-' and '_'")

    raw_items = payload.get("items")
    if raw_items is None:
        raw_items = []
    if not isinstance(raw_items, list):
        raise ValidationError("items must be a list")
    if len(raw_items) > max_lines:
        raise ValidationError(f"Too many items (max {max_lines})")

    items = []
    for index, line in enumerate(raw_items):
        if not isinstance(line, dict):
            raise ValidationError(f"items[{index}] must be an object")
        product_id = _pick(line, "product_id", "productId")
        if product_id is None:
            raise ValidationError(f"items[{index}].product_id is required")
        if line.get("quantity") is None:
            raise ValidationError(f"items[{index}].quantity is required")
        quantity = parse_strict_int(line["quantity"], f"items[{index}].quantity")
        if quantity > max_quantity:
            raise ValidationError(f"items[{index}].quantity exceeds {max_quantity}")
        items.append(CartLine(
            product_id=parse_strict_int(product_id, f"items[{index}].product_id"),
            quantity=quantity,
            unit_price_cents=_parse_price(line, index),
            line_discount_percent=_parse_percent(
                _pick(line, "line_discount_percent", "lineDiscountPercent", "discount_percent"),
                f"items[{index}].line_discount_percent",
            ),
            is_wholesale=_parse_wholesale(line, index),
        ))

    manual = _pick(payload, "manual_discount_minor_units", "manualDiscountMinorUnits")
    manual_cents = 0 if manual is None else parse_strict_int(manual, "manual_discount_minor_units")
    if manual_cents < 0:
        raise ValidationError("manual_discount_minor_units must be >= 0")

    sale_type = _pick(payload, "sale_type", "saleType") or SALE_TYPE_RETAIL
    if sale_type not in SALE_TYPES:
        raise ValidationError(f"sale_type must be one of {', '.join(SALE_TYPES)}")

    return SettlementRequest(
        client_transaction_id=txid,
        items=tuple(items),
        overall_discount_percent=_parse_percent(
            _pick(payload, "overall_discount_percent", "overallDiscountPercent"),
            "overall_discount_percent",
        ),
        manual_discount_cents=manual_cents,
        sale_type=sale_type,
        cashier=_parse_cashier(payload.get("cashier")),
        customer=_parse_customer(payload),
    )
