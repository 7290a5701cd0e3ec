from __future__ import annotations

from ..extensions import db
from ..money import format_minor_units, format_percent
from ..time_utils import to_utc_z

SALE_TYPE_RETAIL = "retail"
SALE_TYPE_WHOLESALE = "wholesale"
SALE_TYPES = (SALE_TYPE_RETAIL, SALE_TYPE_WHOLESALE)

SALE_STATUS_COMPLETED = "completed"
SALE_STATUS_PENDING = "pending"


class Sale(db.Model):
    """
    Settled sale.

    client_transaction_id is the idempotency key supplied by the POS client;
    the unique constraint is the last line of defence against double posting
    when two retries race past the application-level check.

    All amounts are integer cents (BIGINT for sale totals). Percentages are
    Decimals with six decimal places (12.5% -> 12.500000).
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.UniqueConstraint("client_transaction_id", name="uq_sales_client_transaction_id"),
        db.CheckConstraint("total_cents >= 0", name="ck_sales_total_nonneg"),
        db.Index("ix_sales_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    client_transaction_id = db.Column(db.String(100), nullable=False)

    sale_type = db.Column(db.String(16), nullable=False, default=SALE_TYPE_RETAIL)
    status = db.Column(db.String(16), nullable=False, default=SALE_STATUS_COMPLETED, index=True)

    # Cashier snapshot (identity comes from the caller's session)
    cashier_id = db.Column(db.String(64), nullable=True, index=True)
    cashier_name = db.Column(db.String(200), nullable=True)
    cashier_email = db.Column(db.String(255), nullable=True)

    # Customer / business metadata
    customer_name = db.Column(db.String(200), nullable=True)
    customer_phone = db.Column(db.String(20), nullable=True)
    business_name = db.Column(db.String(200), nullable=True)
    business_address = db.Column(db.String(500), nullable=True)

    subtotal_cents = db.Column(db.BigInteger, nullable=False)
    overall_discount_percent = db.Column(db.Numeric(9, 6), nullable=False, default=0)
    manual_discount_cents = db.Column(db.BigInteger, nullable=False, default=0)
    discount_cents = db.Column(db.BigInteger, nullable=False, default=0)
    total_cents = db.Column(db.BigInteger, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Sale id={self.id} txid={self.client_transaction_id!r} total_cents={self.total_cents}>"

    def to_dict(self, include_items: bool = False) -> dict:
        data = {
            "id": self.id,
            "client_transaction_id": self.client_transaction_id,
            "sale_type": self.sale_type,
            "status": self.status,
            "cashier_id": self.cashier_id,
            "cashier_name": self.cashier_name,
            "cashier_email": self.cashier_email,
            "customer_name": self.customer_name,
            "customer_phone": self.customer_phone,
            "business_name": self.business_name,
            "business_address": self.business_address,
            "subtotal_cents": self.subtotal_cents,
            "overall_discount_percent": format_percent(self.overall_discount_percent),
            "manual_discount_cents": self.manual_discount_cents,
            "discount_cents": self.discount_cents,
            "total_cents": self.total_cents,
            "subtotal": format_minor_units(self.subtotal_cents),
            "discount": format_minor_units(self.discount_cents),
            "total": format_minor_units(self.total_cents),
            "created_at": to_utc_z(self.created_at),
            "completed_at": to_utc_z(self.completed_at) if self.completed_at else None,
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class SaleItem(db.Model):
    """
    Line of a settled sale.

    product_name is copied at settlement time so later product renames never
    rewrite sales history.
    """
    __tablename__ = "sale_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_sale_items_quantity_pos"),
        db.CheckConstraint(
            "returned_quantity >= 0 AND returned_quantity <= quantity",
            name="ck_sale_items_returned_range",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    product_name = db.Column(db.String(255), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    line_discount_percent = db.Column(db.Numeric(9, 6), nullable=False, default=0)
    line_discount_cents = db.Column(db.BigInteger, nullable=False, default=0)
    line_total_cents = db.Column(db.BigInteger, nullable=False)
    is_wholesale = db.Column(db.Boolean, nullable=False, default=False)

    returned_quantity = db.Column(db.Integer, nullable=False, default=0)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    sale = db.relationship("Sale", backref=db.backref("items", lazy=True, order_by="SaleItem.id"))
    product = db.relationship("Product")
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "unit_price": format_minor_units(self.unit_price_cents),
            "line_discount_percent": format_percent(self.line_discount_percent),
            "line_discount_cents": self.line_discount_cents,
            "line_total_cents": self.line_total_cents,
            "line_total": format_minor_units(self.line_total_cents),
            "is_wholesale": self.is_wholesale,
            "returned_quantity": self.returned_quantity,
        }
