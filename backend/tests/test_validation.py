from decimal import Decimal

import pytest

from pharmapos.validation import (
    ValidationError,
    parse_adjust_payload,
    parse_batch_payload,
    parse_product_payload,
    parse_settlement_request,
    parse_strict_int,
    sanitize_text,
)


def _payload(**overrides):
    body = {
        "client_transaction_id": "POS-1-abc_2",
        "items": [{"product_id": 1, "quantity": 2}],
    }
    body.update(overrides)
    return body


def test_parse_settlement_request_snake_case():
    req = parse_settlement_request(_payload(
        items=[{"product_id": 3, "quantity": 2, "unit_price": "12.50", "line_discount_percent": 5}],
        overall_discount_percent=12.5,
        manual_discount_minor_units=30,
        sale_type="wholesale",
        cashier={"id": 9, "name": "Sam", "email": "sam@example.com"},
    ))
    assert req.client_transaction_id == "POS-1-abc_2"
    line = req.items[0]
    assert (line.product_id, line.quantity, line.unit_price_cents, line.line_discount_percent) == (3, 2, 1250, 5)
    assert req.overall_discount_percent == Decimal("12.5")
    assert req.manual_discount_cents == 30
    assert req.sale_type == "wholesale"
    assert req.cashier.id == "9"


def test_parse_settlement_request_accepts_camel_case_aliases():
    req = parse_settlement_request({
        "clientTransactionId": "TX-9",
        "items": [{"productId": 4, "quantity": 1, "unitPrice": 2, "isWholesale": True,
                   "lineDiscountPercent": "2.5"}],
        "overallDiscountPercent": 10,
        "manualDiscountMinorUnits": 5,
        "saleType": "retail",
        "customer": {"name": "Clinic", "businessName": "Acme Clinic", "businessAddress": "1 High St"},
    })
    line = req.items[0]
    assert (line.product_id, line.unit_price_cents, line.is_wholesale) == (4, 200, True)
    assert line.line_discount_percent == Decimal("2.5")
    assert req.overall_discount_percent == 10
    assert req.customer.business_name == "Acme Clinic"
    assert req.customer.business_address == "1 High St"


@pytest.mark.parametrize("txid", ["", "has space", "semi;colon", "x" * 101, None, 12])
def test_transaction_id_format(txid):
    with pytest.raises(ValidationError):
        parse_settlement_request(_payload(client_transaction_id=txid))


@pytest.mark.parametrize("quantity", [1.5, "2.0", "1e3", True, None])
def test_quantity_must_be_plain_integer(quantity):
    with pytest.raises(ValidationError):
        parse_settlement_request(_payload(items=[{"product_id": 1, "quantity": quantity}]))


def test_limits_on_lines_and_quantity():
    with pytest.raises(ValidationError):
        parse_settlement_request(_payload(items=[{"product_id": 1, "quantity": 1}] * 3), max_lines=2)
    with pytest.raises(ValidationError):
        parse_settlement_request(_payload(items=[{"product_id": 1, "quantity": 11}]), max_quantity=10)


def test_non_positive_quantity_is_left_to_the_engine():
    req = parse_settlement_request(_payload(items=[{"product_id": 1, "quantity": 0}]))
    assert req.items[0].quantity == 0


def test_discount_percent_out_of_range():
    with pytest.raises(ValidationError):
        parse_settlement_request(_payload(overall_discount_percent=120))
    with pytest.raises(ValidationError):
        parse_settlement_request(_payload(manual_discount_minor_units=-1))


@pytest.mark.parametrize("value, expected", [
    (33.333, Decimal("33.333")),
    ("12.345", Decimal("12.345")),
    (0.1 + 0.2, Decimal("0.3")),
])
def test_discount_percent_keeps_sub_basis_point_precision(value, expected):
    req = parse_settlement_request(_payload(
        overall_discount_percent=value,
        items=[{"product_id": 1, "quantity": 1, "line_discount_percent": value}],
    ))
    assert req.overall_discount_percent == expected
    assert req.items[0].line_discount_percent == expected


def test_wholesale_flag_defaults_to_retail():
    assert parse_settlement_request(_payload()).items[0].is_wholesale is False
    req = parse_settlement_request(_payload(items=[{"product_id": 1, "quantity": 1, "is_wholesale": False}]))
    assert req.items[0].is_wholesale is False


@pytest.mark.parametrize("flag", ["false", "0", 0, 1, "true", "yes"])
def test_wholesale_flag_must_be_a_json_boolean(flag):
    with pytest.raises(ValidationError, match="is_wholesale"):
        parse_settlement_request(_payload(items=[{"product_id": 1, "quantity": 1, "isWholesale": flag}]))


def test_customer_fields_are_sanitized():
    req = parse_settlement_request(_payload(customer={"name": "  <b>Jo & Co</b> ", "phone": "+1 (555) 010-9999"}))
    assert req.customer.name == "bJo  Co/b"
    assert req.customer.phone == "+1 (555) 010-9999"

    with pytest.raises(ValidationError):
        parse_settlement_request(_payload(customer={"phone": "call me"}))
    with pytest.raises(ValidationError):
        parse_settlement_request(_payload(cashier={"email": "not-an-email"}))


def test_sanitize_text_truncates_and_blanks():
    assert sanitize_text("abcdef", 3) == "abc"
    assert sanitize_text("  <>  ", 10) is None
    assert sanitize_text(None, 10) is None


def test_parse_strict_int():
    assert parse_strict_int(" 42 ", "n") == 42
    assert parse_strict_int(-3, "n") == -3
    with pytest.raises(ValidationError):
        parse_strict_int(4.0, "n")


def test_parse_product_payload():
    data = parse_product_payload({
        "sku": " AMOX-250 ",
        "name": "Amoxicillin",
        "unit_price_cents": 450,
        "initial_quantity": 20,
        "batch_number": "L1",
        "expiry_date": "2026-04-30",
    })
    assert data["sku"] == "AMOX-250"
    assert data["initial_quantity"] == 20
    assert data["expiry_date"].isoformat() == "2026-04-30"

    with pytest.raises(ValidationError):
        parse_product_payload({"sku": "X", "name": "Y"})
    with pytest.raises(ValidationError):
        parse_product_payload({"sku": "X", "name": "Y", "unit_price_cents": -1})
    with pytest.raises(ValidationError):
        parse_product_payload({"sku": "X", "name": "Y", "unit_price_cents": 1, "quantity": 3})


def test_parse_batch_and_adjust_payloads():
    batch = parse_batch_payload({"batch_number": "L2", "quantity": "5", "expiry_date": "2026-01-01T00:00:00Z"})
    assert batch["quantity"] == 5
    assert batch["expiry_date"].isoformat() == "2026-01-01"
    with pytest.raises(ValidationError):
        parse_batch_payload({"batch_number": "L2", "quantity": 0})
    with pytest.raises(ValidationError):
        parse_batch_payload({"batch_number": "L2", "quantity": 1, "expiry_date": "31/01/2026"})

    assert parse_adjust_payload({"quantity_delta": -2})["quantity_delta"] == -2
    with pytest.raises(ValidationError):
        parse_adjust_payload({"quantity_delta": 0})
