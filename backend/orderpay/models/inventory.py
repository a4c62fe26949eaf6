from __future__ import annotations

from ..extensions import db
from orderpay.time_utils import to_utc_z


class ProductVariant(db.Model):
    """
    Catalog variant (owned by the catalog; only base stock is read here).

    Available stock is never stored as a mutable field: it is base_stock
    plus the signed sum of StockMovement rows for the variant.
    """
    __tablename__ = "product_variants"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    base_stock = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return f"<ProductVariant id={self.id} name={self.name!r} base_stock={self.base_stock}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "base_stock": self.base_stock,
            "created_at": to_utc_z(self.created_at),
        }


class StockMovement(db.Model):
    """
    Append-only stock ledger entry.

    TYPES:
    - sold: payment settled, stock consumed (-quantity)
    - release: unpaid order cancelled/expired, checkout hold dropped (0)
    - refund: payment refunded, stock returned (+quantity); quantity is 0 when
      the order never booked sold, so nothing is returned

    quantity is always the positive magnitude from the order line;
    the sign is derived from type (see stock_ledger_service.MOVEMENT_SIGNS).
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.Index("ix_stock_movements_reference_type", "reference_id", "type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=False, index=True)

    type = db.Column(db.String(16), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)

    # Order whose transition caused this movement
    reference_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    variant = db.relationship("ProductVariant", backref=db.backref("movements", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "variant_id": self.variant_id,
            "type": self.type,
            "quantity": self.quantity,
            "reference_id": self.reference_id,
            "created_at": to_utc_z(self.created_at),
        }
