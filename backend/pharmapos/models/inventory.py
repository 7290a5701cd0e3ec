from __future__ import annotations

from ..extensions import db
from ..money import format_minor_units
from ..time_utils import to_utc_z

MOVEMENT_SALE = "SALE"
MOVEMENT_ADJUSTMENT = "ADJUSTMENT"
MOVEMENT_ADDITION = "ADDITION"
MOVEMENT_RETURN = "RETURN"
MOVEMENT_INITIAL = "INITIAL"

MOVEMENT_TYPES = (
    MOVEMENT_SALE,
    MOVEMENT_ADJUSTMENT,
    MOVEMENT_ADDITION,
    MOVEMENT_RETURN,
    MOVEMENT_INITIAL,
)


class Product(db.Model):
    """
    Product master data with a denormalized on-hand quantity.

    INVARIANTS:
    - quantity == SUM(batches.quantity) whenever the product has batches
    - quantity >= 0
    - quantity == SUM(stock_movements.quantity_delta)

    Products without any batch rows carry legacy (un-batched) stock directly
    in the aggregate quantity field.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.CheckConstraint("quantity >= 0", name="ck_products_quantity_nonneg"),
        db.Index("ix_products_category_name", "category", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    sku = db.Column(db.String(64), nullable=False, unique=True)
    name = db.Column(db.String(255), nullable=False)
    category = db.Column(db.String(120), nullable=True, index=True)
    unit = db.Column(db.String(32), nullable=False, default="unit")

    # Authoritative storage in cents (frontend may only format for display)
    unit_price_cents = db.Column(db.Integer, nullable=False, default=0)
    wholesale_price_cents = db.Column(db.Integer, nullable=True)

    reorder_level = db.Column(db.Integer, nullable=False, default=0)
    quantity = db.Column(db.Integer, nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} name={self.name!r} quantity={self.quantity}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sku": self.sku,
            "name": self.name,
            "category": self.category,
            "unit": self.unit,
            "unit_price_cents": self.unit_price_cents,
            "unit_price": format_minor_units(self.unit_price_cents),
            "wholesale_price_cents": self.wholesale_price_cents,
            "reorder_level": self.reorder_level,
            "quantity": self.quantity,
            "is_active": self.is_active,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class Batch(db.Model):
    """
    Expiry-dated partition of a product's stock.

    A batch at quantity 0 stays in place: stock movements keep pointing at it.
    """
    __tablename__ = "batches"
    __table_args__ = (
        db.UniqueConstraint("product_id", "batch_number", name="uq_batches_product_batch_number"),
        db.CheckConstraint("quantity >= 0", name="ck_batches_quantity_nonneg"),
        # FEFO scans: product, then expiry
        db.Index("ix_batches_product_expiry", "product_id", "expiry_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    batch_number = db.Column(db.String(64), nullable=False)
    expiry_date = db.Column(db.Date, nullable=True)
    quantity = db.Column(db.Integer, nullable=False, default=0)
    unit_cost_cents = db.Column(db.Integer, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product", backref=db.backref("batches", lazy=True, order_by="Batch.id"))
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Batch id={self.id} product_id={self.product_id} number={self.batch_number!r} qty={self.quantity}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "batch_number": self.batch_number,
            "expiry_date": self.expiry_date.isoformat() if self.expiry_date else None,
            "quantity": self.quantity,
            "unit_cost_cents": self.unit_cost_cents,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
        }


class StockMovement(db.Model):
    """
    Append-only stock audit trail.

    Every change to Product.quantity / Batch.quantity writes exactly one row
    per touched batch (batch_id is NULL for un-batched aggregate stock).
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.CheckConstraint(
            "movement_type IN ('SALE', 'ADJUSTMENT', 'ADDITION', 'RETURN', 'INITIAL')",
            name="ck_stock_movements_type",
        ),
        db.Index("ix_stock_movements_product_occurred", "product_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    batch_id = db.Column(db.Integer, db.ForeignKey("batches.id"), nullable=True, index=True)

    movement_type = db.Column(db.String(16), nullable=False, index=True)
    quantity_delta = db.Column(db.Integer, nullable=False)

    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=True, index=True)

    actor_id = db.Column(db.String(64), nullable=True)
    actor_name = db.Column(db.String(200), nullable=True)
    note = db.Column(db.String(255), nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "batch_id": self.batch_id,
            "movement_type": self.movement_type,
            "quantity_delta": self.quantity_delta,
            "sale_id": self.sale_id,
            "actor_id": self.actor_id,
            "actor_name": self.actor_name,
            "note": self.note,
            "occurred_at": to_utc_z(self.occurred_at),
        }
