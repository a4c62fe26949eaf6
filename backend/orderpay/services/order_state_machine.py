# Overview: Service-layer operations for the order state machine; the only writer of order status.

"""
Order State Machine

================================================================================
PURPOSE: Map (current order state, event) -> (next state, side effects)
================================================================================

Every caller that wants to move an order (webhook ingestion, reconciliation
workers, seller fulfillment routes) goes through apply_event(). Nothing else
writes Order.status or Order.payment_status, and they are always written as a
pair.

TRANSITIONS:

    event                       precondition                          -> status / payment_status   side effect
    settlement                  payment_status=pending                -> processing / paid          book sold
    expire | cancel | deny      payment_status=pending                -> cancelled / expired        book release
    refund                      payment_status!=refunded              -> refunded / refunded        book refund
    expiry_timeout              payment_status=pending, now>=expires  -> cancelled / expired        book release
    delivered_and_paid_settle   delivered/paid, settled_at is null    -> completed / paid           settled_at=now
    refund_approved             approved refund on the order payment  -> refunded / refunded        mark refund applied
    ship                        processing/paid                       -> shipped / paid             -
    deliver                     shipped/paid                          -> delivered / paid           -

APPLYING A TRANSITION (one DB transaction, caller-owned):
    1. Lock the order row
    2. Verify the precondition against the locked row
    3. Write status and payment_status together
    4. Book stock movements through the stock ledger
    5. Append an OrderStatusHistory row naming the event

RULES:
- A failed precondition is a silent no-op: no write, no side effect, no raise.
  This is the second line of defense behind the payment transaction_id
  idempotency key, covering the same kind of event arriving on two paths
  (webhook "expire" racing the expiry sweep's "expiry_timeout").
- Any exception after step 3 propagates; the caller's transaction rolls back,
  so movements never exist without the status change or vice versa.
================================================================================
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from flask import current_app

from ..extensions import db
from ..errors import OrderNotFound, TransitionPreconditionFailed
from ..models import Order, OrderStatusHistory, Payment, Refund
from orderpay.time_utils import utcnow, to_naive_utc
from .concurrency import load_order_for_update, run_with_retry
from . import stock_ledger_service


# =============================================================================
# ORDER STATUS (CONSTANTS)
# =============================================================================

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_SHIPPED = "shipped"
STATUS_DELIVERED = "delivered"
STATUS_COMPLETED = "completed"
STATUS_CANCELLED = "cancelled"
STATUS_REFUNDED = "refunded"

PAYMENT_PENDING = "pending"
PAYMENT_PAID = "paid"
PAYMENT_EXPIRED = "expired"
PAYMENT_REFUNDED = "refunded"


# =============================================================================
# EVENTS (CONSTANTS)
# =============================================================================

EVENT_SETTLEMENT = "settlement"
EVENT_EXPIRE = "expire"
EVENT_CANCEL = "cancel"
EVENT_DENY = "deny"
EVENT_REFUND = "refund"
EVENT_EXPIRY_TIMEOUT = "expiry_timeout"
EVENT_DELIVERED_AND_PAID_SETTLE = "delivered_and_paid_settle"
EVENT_REFUND_APPROVED = "refund_approved"
EVENT_SHIP = "ship"
EVENT_DELIVER = "deliver"

# Gateway vocabulary -> internal event. Anything not listed drives no transition.
GATEWAY_EVENT_MAP = {
    "settlement": EVENT_SETTLEMENT,
    "expire": EVENT_EXPIRE,
    "cancel": EVENT_CANCEL,
    "deny": EVENT_DENY,
    "refund": EVENT_REFUND,
}


def event_for_gateway_status(transaction_status: str | None, fraud_status: str | None = None) -> str | None:
    """
    Translate raw gateway wording to an internal event tag.

    Card payments report 'capture' instead of 'settlement'; a capture only
    counts as settled when the fraud check accepted it.
    """
    if not transaction_status:
        return None
    status = transaction_status.strip().lower()
    if status == "capture":
        if fraud_status in (None, "", "accept"):
            return EVENT_SETTLEMENT
        return None
    return GATEWAY_EVENT_MAP.get(status)


# =============================================================================
# TRANSITION TABLE
# =============================================================================

@dataclass(frozen=True)
class Transition:
    event: str
    precondition: Callable[[Order, datetime], Optional[str]]
    status: str
    payment_status: str
    movement_type: Optional[str] = None
    note: str = ""


def _requires_pending_payment(order: Order, now: datetime) -> Optional[str]:
    if order.payment_status != PAYMENT_PENDING:
        return f"payment_status is {order.payment_status}"
    return None


def _requires_not_refunded(order: Order, now: datetime) -> Optional[str]:
    if order.payment_status == PAYMENT_REFUNDED:
        return "already refunded"
    return None


def _requires_expired_pending(order: Order, now: datetime) -> Optional[str]:
    reason = _requires_pending_payment(order, now)
    if reason:
        return reason
    expires_at = to_naive_utc(order.expires_at)
    if expires_at is None:
        return "order has no expires_at"
    if now < expires_at:
        return "payment window still open"
    return None


def _requires_delivered_unsettled(order: Order, now: datetime) -> Optional[str]:
    if order.status != STATUS_DELIVERED or order.payment_status != PAYMENT_PAID:
        return f"order is {order.status}/{order.payment_status}"
    if order.settled_at is not None:
        return "already settled"
    return None


def _requires_approved_refund(order: Order, now: datetime) -> Optional[str]:
    reason = _requires_not_refunded(order, now)
    if reason:
        return reason
    if _pending_approved_refund(order.id) is None:
        return "no approved refund"
    return None


def _requires_paid_processing(order: Order, now: datetime) -> Optional[str]:
    if order.status != STATUS_PROCESSING or order.payment_status != PAYMENT_PAID:
        return f"order is {order.status}/{order.payment_status}"
    return None


def _requires_shipped(order: Order, now: datetime) -> Optional[str]:
    if order.status != STATUS_SHIPPED or order.payment_status != PAYMENT_PAID:
        return f"order is {order.status}/{order.payment_status}"
    return None


TRANSITIONS: dict[str, Transition] = {
    t.event: t
    for t in (
        Transition(EVENT_SETTLEMENT, _requires_pending_payment,
                   STATUS_PROCESSING, PAYMENT_PAID, stock_ledger_service.MOVEMENT_SOLD),
        Transition(EVENT_EXPIRE, _requires_pending_payment,
                   STATUS_CANCELLED, PAYMENT_EXPIRED, stock_ledger_service.MOVEMENT_RELEASE),
        Transition(EVENT_CANCEL, _requires_pending_payment,
                   STATUS_CANCELLED, PAYMENT_EXPIRED, stock_ledger_service.MOVEMENT_RELEASE),
        Transition(EVENT_DENY, _requires_pending_payment,
                   STATUS_CANCELLED, PAYMENT_EXPIRED, stock_ledger_service.MOVEMENT_RELEASE),
        Transition(EVENT_REFUND, _requires_not_refunded,
                   STATUS_REFUNDED, PAYMENT_REFUNDED, stock_ledger_service.MOVEMENT_REFUND),
        Transition(EVENT_EXPIRY_TIMEOUT, _requires_expired_pending,
                   STATUS_CANCELLED, PAYMENT_EXPIRED, stock_ledger_service.MOVEMENT_RELEASE,
                   note="Order expired (auto worker)"),
        Transition(EVENT_DELIVERED_AND_PAID_SETTLE, _requires_delivered_unsettled,
                   STATUS_COMPLETED, PAYMENT_PAID,
                   note="Order settled (auto worker)"),
        Transition(EVENT_REFUND_APPROVED, _requires_approved_refund,
                   STATUS_REFUNDED, PAYMENT_REFUNDED,
                   note="Refund approved (auto worker)"),
        Transition(EVENT_SHIP, _requires_paid_processing,
                   STATUS_SHIPPED, PAYMENT_PAID, note="Order shipped"),
        Transition(EVENT_DELIVER, _requires_shipped,
                   STATUS_DELIVERED, PAYMENT_PAID, note="Order delivered"),
    )
}

VALID_EVENTS = set(TRANSITIONS)


@dataclass
class TransitionResult:
    order_id: int
    event: str
    applied: bool
    status: str
    payment_status: str
    reason: Optional[str] = None
    movements: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "event": self.event,
            "applied": self.applied,
            "status": self.status,
            "payment_status": self.payment_status,
            "reason": self.reason,
            "movement_count": len(self.movements),
        }


# =============================================================================
# APPLYING TRANSITIONS
# =============================================================================

def apply_event(
    order_id: int,
    event: str,
    *,
    note: str | None = None,
    now: datetime | None = None,
) -> TransitionResult:
    """
    Apply one event to one order inside the caller's transaction.

    Args:
        order_id: Order to transition
        event: One of VALID_EVENTS
        note: History note (defaults to the transition's note or the event name)
        now: Clock override for time-based preconditions

    Returns:
        TransitionResult; applied=False when the precondition did not hold

    Raises:
        ValueError: Unknown event
        OrderNotFound: Order does not exist
        InsufficientStock: settlement cannot be booked
    """
    transition = TRANSITIONS.get(event)
    if transition is None:
        raise ValueError(f"Invalid event: {event}. Must be one of {sorted(VALID_EVENTS)}")

    now = now or utcnow()

    order = load_order_for_update(order_id)
    if order is None:
        raise OrderNotFound(order_id)

    try:
        _check_precondition(order, transition, now)
    except TransitionPreconditionFailed as exc:
        current_app.logger.debug("Transition skipped: %s", exc)
        return TransitionResult(
            order_id=order.id,
            event=event,
            applied=False,
            status=order.status,
            payment_status=order.payment_status,
            reason=exc.reason,
        )

    order.status = transition.status
    order.payment_status = transition.payment_status
    if event == EVENT_DELIVERED_AND_PAID_SETTLE:
        order.settled_at = now
    db.session.flush()

    movements = []
    if transition.movement_type:
        movements = stock_ledger_service.book_movements(order.id, transition.movement_type)

    if event == EVENT_REFUND_APPROVED:
        refund = _pending_approved_refund(order.id)
        refund.applied_at = now

    db.session.add(OrderStatusHistory(
        order_id=order.id,
        status=order.status,
        payment_status=order.payment_status,
        event=event,
        note=note or transition.note or f"Event: {event}",
    ))
    db.session.flush()

    current_app.logger.info(
        "Order %s: %s applied -> %s/%s", order.id, event, order.status, order.payment_status
    )

    return TransitionResult(
        order_id=order.id,
        event=event,
        applied=True,
        status=order.status,
        payment_status=order.payment_status,
        movements=movements,
    )


def transition(order_id: int, event: str, *, note: str | None = None, now: datetime | None = None) -> TransitionResult:
    """
    Standalone entry point: apply_event in its own retried transaction.

    Used by the reconciliation workers and fulfillment routes. A retry after
    a lost race re-reads the order and normally turns into a no-op.
    """
    return run_with_retry(lambda: apply_event(order_id, event, note=note, now=now))


def _check_precondition(order: Order, transition: Transition, now: datetime) -> None:
    reason = transition.precondition(order, now)
    if reason:
        raise TransitionPreconditionFailed(order.id, transition.event, reason)


def _pending_approved_refund(order_id: int) -> Refund | None:
    return (
        db.session.query(Refund)
        .join(Payment, Payment.id == Refund.payment_id)
        .filter(
            Payment.order_id == order_id,
            Refund.status == "approved",
            Refund.applied_at.is_(None),
        )
        .order_by(Refund.id)
        .first()
    )


def get_status_history(order_id: int) -> list[OrderStatusHistory]:
    return (
        db.session.query(OrderStatusHistory)
        .filter_by(order_id=order_id)
        .order_by(OrderStatusHistory.id)
        .all()
    )
