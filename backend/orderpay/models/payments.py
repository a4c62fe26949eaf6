from __future__ import annotations

from ..extensions import db
from orderpay.time_utils import to_utc_z


class Payment(db.Model):
    """
    One gateway-facing charge attempt for an order.

    WHY: external_order_id is distinct from the order id so that a retried
    charge never collides with a stale webhook for an abandoned attempt.

    IDEMPOTENCY: transaction_id is the gateway's event key. Once recorded,
    a later webhook carrying the same transaction_id is a no-op.

    Never deleted (audit trail).
    """
    __tablename__ = "payments"
    __table_args__ = (
        db.UniqueConstraint("external_order_id", name="uq_payments_external_order_id"),
        db.Index("ix_payments_order_status", "order_id", "transaction_status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    external_order_id = db.Column(db.String(64), nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)

    # Raw gateway vocabulary (pending, settlement, expire, ...)
    transaction_status = db.Column(db.String(32), nullable=False, default="pending")
    transaction_id = db.Column(db.String(128), nullable=True, index=True)
    payment_type = db.Column(db.String(64), nullable=True)
    fraud_status = db.Column(db.String(32), nullable=True)

    gateway_token = db.Column(db.String(255), nullable=True)
    redirect_url = db.Column(db.String(512), nullable=True)

    # Last webhook payload, JSON text
    raw_response = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )
    version_id = db.Column(db.Integer, nullable=False, default=1)

    order = db.relationship("Order", backref=db.backref("payments", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "external_order_id": self.external_order_id,
            "amount_cents": self.amount_cents,
            "transaction_status": self.transaction_status,
            "transaction_id": self.transaction_id,
            "payment_type": self.payment_type,
            "fraud_status": self.fraud_status,
            "snap_token": self.gateway_token,
            "redirect_url": self.redirect_url,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class PaymentNotification(db.Model):
    """
    Raw inbound webhook log.

    IMMUTABLE: One row per webhook that matched a payment, duplicates included.
    Written in its own transaction so the receipt survives later failures.
    """
    __tablename__ = "payment_notifications"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=False, index=True)

    external_order_id = db.Column(db.String(64), nullable=False)
    transaction_status = db.Column(db.String(32), nullable=True)
    transaction_id = db.Column(db.String(128), nullable=True)

    payload = db.Column(db.Text, nullable=False)
    signature_key = db.Column(db.String(256), nullable=True)
    # None when verification is disabled
    signature_valid = db.Column(db.Boolean, nullable=True)

    received_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    payment = db.relationship("Payment", backref=db.backref("notifications", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "payment_id": self.payment_id,
            "external_order_id": self.external_order_id,
            "transaction_status": self.transaction_status,
            "transaction_id": self.transaction_id,
            "signature_valid": self.signature_valid,
            "received_at": to_utc_z(self.received_at),
        }


class PaymentAttempt(db.Model):
    """
    Housekeeping record of an outbound charge request.

    Not part of the order/payment audit trail; purged after the retention window.
    """
    __tablename__ = "payment_attempts"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    external_order_id = db.Column(db.String(64), nullable=False)

    outcome = db.Column(db.String(32), nullable=False)  # created, gateway_unavailable, rejected
    error = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "external_order_id": self.external_order_id,
            "outcome": self.outcome,
            "error": self.error,
            "created_at": to_utc_z(self.created_at),
        }


class Refund(db.Model):
    """
    Refund request against a payment.

    LIFECYCLE: requested -> approved | rejected
    applied_at is set when the refund-sync sweep moved the order to refunded.
    """
    __tablename__ = "refunds"
    __table_args__ = (
        db.Index("ix_refunds_status_applied", "status", "applied_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=False, index=True)

    amount_cents = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.String(255), nullable=True)
    status = db.Column(db.String(16), nullable=False, default="requested", index=True)

    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    applied_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    payment = db.relationship("Payment", backref=db.backref("refunds", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "payment_id": self.payment_id,
            "amount_cents": self.amount_cents,
            "reason": self.reason,
            "status": self.status,
            "approved_at": to_utc_z(self.approved_at),
            "applied_at": to_utc_z(self.applied_at),
            "created_at": to_utc_z(self.created_at),
        }
