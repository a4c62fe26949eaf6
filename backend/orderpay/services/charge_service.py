# Overview: Service-layer operations for charge creation; opens gateway sessions for pending orders.

"""
Charge Creation

WHY: A customer pays a pending order through a gateway-hosted Snap page.
This service asks the gateway for a session and records the Payment.

DESIGN:
- Eligibility: order is pending/pending, its payment window is open, and it
  has no in-flight payment: gateway status 'pending' and created less than
  CHARGE_INFLIGHT_SECONDS ago. An older pending payment is an abandoned Snap
  session (the gateway never notifies on those) and does not block a retry;
  it stays on the order as history.
- The gateway call runs with no transaction open, so no DB connection is
  held while waiting on the network.
- The Payment row is inserted only after the gateway answered, inside one
  transaction that re-locks the order and re-checks eligibility. Two
  concurrent callers for one order: the second to commit sees the first's
  payment and gets InvalidOrderState. Exactly one Payment row results.
- A gateway failure (timeout, 5xx, 4xx) creates no Payment row.
- Each attempt, successful or not, leaves a PaymentAttempt housekeeping row.
"""

from __future__ import annotations

import secrets
import time
from datetime import timedelta

from flask import current_app

from ..extensions import db, gateway
from ..errors import GatewayRejected, GatewayUnavailable, InvalidOrderState, OrderNotFound
from ..models import Order, Payment, PaymentAttempt
from orderpay.time_utils import utcnow, to_naive_utc
from .concurrency import load_order_for_update, run_with_retry
from .order_state_machine import PAYMENT_PENDING, STATUS_PENDING


ACTIVE_TRANSACTION_STATUSES = ("pending",)

ATTEMPT_CREATED = "created"
ATTEMPT_GATEWAY_UNAVAILABLE = "gateway_unavailable"
ATTEMPT_REJECTED = "rejected"


def build_external_order_id(order_id: int) -> str:
    """Unique per charge attempt: ORDER-<order id>-<epoch millis>-<random suffix>."""
    return f"ORDER-{order_id}-{int(time.time() * 1000)}-{secrets.token_hex(3)}"


def _ensure_chargeable(order: Order | None, order_id: int) -> Order:
    if order is None:
        raise OrderNotFound(order_id)

    if order.status != STATUS_PENDING or order.payment_status != PAYMENT_PENDING:
        raise InvalidOrderState(
            f"Order {order_id} is {order.status}/{order.payment_status}, not pending/pending"
        )

    expires_at = to_naive_utc(order.expires_at)
    if expires_at is not None and expires_at <= utcnow():
        raise InvalidOrderState(f"Order {order_id} payment window has expired")

    inflight_since = utcnow() - timedelta(seconds=current_app.config.get("CHARGE_INFLIGHT_SECONDS", 60))
    active = db.session.query(Payment).filter(
        Payment.order_id == order_id,
        Payment.transaction_status.in_(ACTIVE_TRANSACTION_STATUSES),
        Payment.created_at > inflight_since,
    ).first()
    if active is not None:
        raise InvalidOrderState(
            f"Order {order_id} already has an active payment ({active.external_order_id})"
        )

    return order


def create_charge(order_id: int) -> dict:
    """
    Open a gateway charge session for a pending order.

    Returns:
        {"snap_token": ..., "redirect_url": ..., "payment": {...}}

    Raises:
        OrderNotFound: order does not exist
        InvalidOrderState: order not eligible, or a concurrent charge won
        GatewayUnavailable: transient gateway failure (retry is safe)
        GatewayRejected: gateway refused the request
        StorageFailure: the payment could not be committed
    """
    def _precheck():
        order = _ensure_chargeable(db.session.query(Order).filter_by(id=order_id).first(), order_id)
        return order.grand_total_cents

    amount_cents = run_with_retry(_precheck)
    external_order_id = build_external_order_id(order_id)

    try:
        session = gateway.create_snap_transaction(external_order_id, amount_cents)
    except GatewayUnavailable as exc:
        current_app.logger.warning("Charge for order %s failed: %s", order_id, exc)
        _record_attempt(order_id, external_order_id, ATTEMPT_GATEWAY_UNAVAILABLE, str(exc))
        raise
    except GatewayRejected as exc:
        current_app.logger.warning("Charge for order %s rejected: %s", order_id, exc)
        _record_attempt(order_id, external_order_id, ATTEMPT_REJECTED, str(exc))
        raise

    def _commit():
        order = _ensure_chargeable(load_order_for_update(order_id), order_id)

        payment = Payment(
            order_id=order.id,
            external_order_id=external_order_id,
            amount_cents=amount_cents,
            transaction_status="pending",
            created_at=utcnow(),
            gateway_token=session["token"],
            redirect_url=session["redirect_url"],
        )
        db.session.add(payment)

        # Bump the order version so a concurrent charge for this order conflicts
        order.updated_at = utcnow()

        db.session.add(PaymentAttempt(
            order_id=order.id,
            external_order_id=external_order_id,
            outcome=ATTEMPT_CREATED,
        ))
        db.session.flush()
        return payment.to_dict()

    try:
        payment = run_with_retry(_commit)
    except InvalidOrderState as exc:
        _record_attempt(order_id, external_order_id, ATTEMPT_REJECTED, str(exc))
        raise

    current_app.logger.info("Charge %s created for order %s", external_order_id, order_id)

    return {
        "snap_token": session["token"],
        "redirect_url": session["redirect_url"],
        "payment": payment,
    }


def _record_attempt(order_id: int, external_order_id: str, outcome: str, error: str | None) -> None:
    def _op():
        db.session.add(PaymentAttempt(
            order_id=order_id,
            external_order_id=external_order_id,
            outcome=outcome,
            error=(error or "")[:255] or None,
        ))

    run_with_retry(_op)


def get_payment(payment_id: int) -> Payment | None:
    return db.session.query(Payment).filter_by(id=payment_id).first()


def get_order_payments(order_id: int) -> list[Payment]:
    return (
        db.session.query(Payment)
        .filter_by(order_id=order_id)
        .order_by(Payment.id)
        .all()
    )
