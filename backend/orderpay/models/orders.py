from __future__ import annotations

from ..extensions import db
from orderpay.time_utils import to_utc_z


class Order(db.Model):
    """
    Customer checkout unit tracked through payment and fulfillment.

    WHY: status and payment_status move together. Only the order state
    machine writes them, always as a pair, inside one transaction.

    LIFECYCLE (status / payment_status):
    - pending / pending: created by checkout, awaiting payment
    - processing / paid: gateway settled the charge
    - shipped / paid, delivered / paid: seller fulfillment
    - completed / paid: settlement sweep closed a delivered order
    - cancelled / expired: payment expired, was cancelled or denied
    - refunded / refunded: payment refunded

    Orders are never deleted.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_payment_status_expires", "payment_status", "expires_at"),
        db.Index("ix_orders_status_payment_status", "status", "payment_status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    payment_status = db.Column(db.String(16), nullable=False, default="pending", index=True)

    # Authoritative storage in cents
    grand_total_cents = db.Column(db.Integer, nullable=False)

    expires_at = db.Column(db.DateTime(timezone=True), nullable=True)
    settled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # Optimistic lock: concurrent transitions on one order cannot both commit
    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Order id={self.id} status={self.status!r} payment_status={self.payment_status!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "status": self.status,
            "payment_status": self.payment_status,
            "grand_total_cents": self.grand_total_cents,
            "expires_at": to_utc_z(self.expires_at),
            "settled_at": to_utc_z(self.settled_at),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }


class OrderItem(db.Model):
    """Order line written by checkout; read by the stock ledger."""
    __tablename__ = "order_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)

    order = db.relationship("Order", backref=db.backref("items", lazy=True))
    variant = db.relationship("ProductVariant")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "variant_id": self.variant_id,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
        }


class OrderStatusHistory(db.Model):
    """
    Audit trail of order transitions.

    IMMUTABLE: Append-only, one row per applied transition.
    """
    __tablename__ = "order_status_histories"
    __table_args__ = (
        db.Index("ix_order_status_histories_order_created", "order_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    status = db.Column(db.String(16), nullable=False)
    payment_status = db.Column(db.String(16), nullable=False)
    event = db.Column(db.String(64), nullable=False)
    note = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    order = db.relationship("Order", backref=db.backref("status_history", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "status": self.status,
            "payment_status": self.payment_status,
            "event": self.event,
            "note": self.note,
            "created_at": to_utc_z(self.created_at),
        }
