# Overview: Service-layer operations for refunds; request/approve/reject records the refund-sync sweep consumes.

"""
Refund Records

Refunds are approved here but never touch the order directly. The refund
sync sweep picks up approved, unapplied refunds and feeds refund_approved
into the order state machine, so the order transition has one source.
"""

from __future__ import annotations

from sqlalchemy import func

from ..extensions import db
from ..models import Order, Payment, Refund
from orderpay.time_utils import utcnow
from .concurrency import load_payment_for_update, lock_for_update, run_with_retry
from .order_state_machine import PAYMENT_PAID


REFUND_REQUESTED = "requested"
REFUND_APPROVED = "approved"
REFUND_REJECTED = "rejected"


class RefundError(Exception):
    """Raised for refund operation errors."""
    pass


def request_refund(payment_id: int, amount_cents: int | None = None, reason: str | None = None) -> dict:
    """
    Record a refund request against a settled payment.

    amount_cents defaults to the full remaining refundable amount.

    Raises:
        RefundError: payment missing, order not paid, or amount too large
    """
    def _op():
        payment = load_payment_for_update(payment_id)
        if payment is None:
            raise RefundError(f"Payment {payment_id} not found")

        order = db.session.query(Order).filter_by(id=payment.order_id).first()
        if order.payment_status != PAYMENT_PAID:
            raise RefundError(f"Order {order.id} is not paid (payment_status={order.payment_status})")

        already = db.session.query(
            func.coalesce(func.sum(Refund.amount_cents), 0)
        ).filter(
            Refund.payment_id == payment_id,
            Refund.status != REFUND_REJECTED,
        ).scalar()
        refundable = payment.amount_cents - int(already or 0)

        amount = refundable if amount_cents is None else amount_cents
        if amount <= 0:
            raise RefundError("Nothing left to refund on this payment")
        if amount > refundable:
            raise RefundError(f"Refund amount {amount} exceeds refundable {refundable}")

        refund = Refund(
            payment_id=payment_id,
            amount_cents=amount,
            reason=reason,
            status=REFUND_REQUESTED,
        )
        db.session.add(refund)
        db.session.flush()
        return refund.to_dict()

    return run_with_retry(_op)


def _decide(refund_id: int, new_status: str) -> dict:
    def _op():
        refund = lock_for_update(db.session.query(Refund).filter_by(id=refund_id)).first()
        if refund is None:
            raise RefundError(f"Refund {refund_id} not found")
        if refund.status != REFUND_REQUESTED:
            raise RefundError(f"Refund {refund_id} is already {refund.status}")

        refund.status = new_status
        if new_status == REFUND_APPROVED:
            refund.approved_at = utcnow()
        db.session.flush()
        return refund.to_dict()

    return run_with_retry(_op)


def approve_refund(refund_id: int) -> dict:
    return _decide(refund_id, REFUND_APPROVED)


def reject_refund(refund_id: int) -> dict:
    return _decide(refund_id, REFUND_REJECTED)


def find_unapplied_refund_order_ids(limit: int | None = None) -> list[int]:
    """Orders with an approved refund that the order does not reflect yet."""
    q = (
        db.session.query(Payment.order_id)
        .join(Refund, Refund.payment_id == Payment.id)
        .join(Order, Order.id == Payment.order_id)
        .filter(
            Refund.status == REFUND_APPROVED,
            Refund.applied_at.is_(None),
            Order.payment_status != "refunded",
        )
        .distinct()
        .order_by(Payment.order_id)
    )
    if limit:
        q = q.limit(limit)
    return [row[0] for row in q.all()]
