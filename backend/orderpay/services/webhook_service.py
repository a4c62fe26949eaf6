# Overview: Service-layer operations for webhook ingestion; dedupes gateway notifications and drives the state machine.

"""
Webhook Ingestion & Idempotency Guard

WHY: The gateway delivers notifications at least once, possibly out of order.
Only the first delivery of a given gateway transaction may move the order.

STEPS:
1. Validate the payload (malformed -> ValidationError, the only 4xx besides
   a bad signature).
2. Find the Payment by external order id. Missing -> UnknownPayment, which
   the route acknowledges with 200 so the gateway stops redelivering a
   permanently dangling pointer.
3. Append a PaymentNotification in its own committed transaction. The
   receipt survives whatever happens next.
4. Reject a bad signature (when verification is enabled).
5. In one transaction: lock order + payment, check the idempotency key
   (stored transaction_id == payload transaction_id -> already processed),
   map gateway vocabulary to an internal event, apply it through the order
   state machine, update the payment row.

IDEMPOTENCY KEY:
transaction_id is recorded only when the notification maps to a state
machine event. Midtrans reuses one transaction_id across pending ->
settlement, so recording it on a 'pending' notification would swallow the
settlement that follows.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from dataclasses import dataclass
from typing import Any, Optional

from flask import current_app

from ..extensions import db
from ..errors import InvalidSignature, UnknownPayment
from ..models import PaymentNotification
from ..validation import WebhookNotification, parse_webhook_payload
from .concurrency import (
    load_order_for_update,
    load_payment_by_external_ref,
    load_payment_for_update,
    run_with_retry,
)
from . import order_state_machine


MESSAGE_APPLIED = "Webhook processed"
MESSAGE_DUPLICATE = "Webhook already processed"
MESSAGE_NOOP = "Webhook acknowledged, no transition applied"
MESSAGE_IGNORED = "Webhook acknowledged, status has no order transition"


@dataclass
class IngestOutcome:
    applied: bool
    duplicate: bool
    message: str
    payment_id: int
    order_id: int
    event: Optional[str] = None
    status: Optional[str] = None
    payment_status: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "applied": self.applied,
            "duplicate": self.duplicate,
            "payment_id": self.payment_id,
            "order_id": self.order_id,
            "event": self.event,
            "status": self.status,
            "payment_status": self.payment_status,
        }


# =============================================================================
# SIGNATURES
# =============================================================================

def compute_signature(external_order_id: str, status_code: str | None, gross_amount: str | None, server_key: str) -> str:
    """Midtrans: SHA512(order_id + status_code + gross_amount + server_key), hex."""
    raw = f"{external_order_id}{status_code or ''}{gross_amount or ''}{server_key}"
    return hashlib.sha512(raw.encode("utf-8")).hexdigest()


def verify_signature(notification: WebhookNotification, claimed_signature: str | None) -> Optional[bool]:
    """
    Returns None when verification is disabled, else whether the claimed
    signature matches. A missing server key with verification on never
    validates.
    """
    if not current_app.config.get("PAYMENT_WEBHOOK_VERIFY_SIGNATURE", True):
        return None

    server_key = current_app.config.get("MIDTRANS_SERVER_KEY") or ""
    if not server_key or not claimed_signature:
        return False

    expected = compute_signature(
        notification.external_order_id,
        notification.status_code,
        notification.gross_amount,
        server_key,
    )
    return hmac.compare_digest(expected.lower(), claimed_signature.strip().lower())


# =============================================================================
# INGESTION
# =============================================================================

def ingest(raw_payload: Any, claimed_signature: str | None) -> IngestOutcome:
    """
    Process one inbound gateway notification.

    Returns:
        IngestOutcome (applied / duplicate / no-op)

    Raises:
        ValidationError: malformed payload
        UnknownPayment: no payment for the external order id
        InvalidSignature: verification enabled and signature mismatch
        InsufficientStock: settlement could not be booked (rolled back)
        StorageFailure: transition could not commit (sender should retry)
    """
    notification = parse_webhook_payload(raw_payload)

    def _lookup():
        payment = load_payment_by_external_ref(notification.external_order_id)
        if payment is None:
            return None
        return payment.id, payment.order_id

    found = run_with_retry(_lookup)
    if found is None:
        current_app.logger.warning(
            "Webhook for unknown payment %s (status=%s)",
            notification.external_order_id,
            notification.transaction_status,
        )
        raise UnknownPayment(notification.external_order_id)

    payment_id, order_id = found
    signature_valid = verify_signature(notification, claimed_signature)

    _record_notification(payment_id, notification, claimed_signature, signature_valid)

    if signature_valid is False:
        current_app.logger.warning(
            "Webhook signature mismatch for %s", notification.external_order_id
        )
        raise InvalidSignature("Invalid signature key")

    outcome = run_with_retry(lambda: _apply(payment_id, order_id, notification))

    current_app.logger.info(
        "Webhook %s (%s): %s",
        notification.external_order_id,
        notification.transaction_status,
        outcome.message,
    )
    return outcome


def _record_notification(
    payment_id: int,
    notification: WebhookNotification,
    claimed_signature: str | None,
    signature_valid: Optional[bool],
) -> None:
    def _op():
        db.session.add(PaymentNotification(
            payment_id=payment_id,
            external_order_id=notification.external_order_id,
            transaction_status=notification.transaction_status,
            transaction_id=notification.transaction_id,
            payload=json.dumps(notification.raw, default=str, sort_keys=True),
            signature_key=claimed_signature,
            signature_valid=signature_valid,
        ))

    run_with_retry(_op)


def _apply(payment_id: int, order_id: int, notification: WebhookNotification) -> IngestOutcome:
    # Lock order before payment: every transition path uses this order
    order = load_order_for_update(order_id)
    payment = load_payment_for_update(payment_id)

    if (
        payment.transaction_id
        and notification.transaction_id
        and payment.transaction_id == notification.transaction_id
    ):
        return IngestOutcome(
            applied=False,
            duplicate=True,
            message=MESSAGE_DUPLICATE,
            payment_id=payment.id,
            order_id=order.id,
            status=order.status,
            payment_status=order.payment_status,
        )

    event = order_state_machine.event_for_gateway_status(
        notification.transaction_status, notification.fraud_status
    )

    if event is None:
        # Informational status (pending, authorize, ...): never overwrite a terminal status
        if payment.transaction_status == "pending":
            _update_payment(payment, notification, record_transaction_id=False)
        return IngestOutcome(
            applied=False,
            duplicate=False,
            message=MESSAGE_IGNORED,
            payment_id=payment.id,
            order_id=order.id,
            status=order.status,
            payment_status=order.payment_status,
        )

    result = order_state_machine.apply_event(
        order.id,
        event,
        note=f"Midtrans: {notification.transaction_status}",
    )
    _update_payment(payment, notification, record_transaction_id=True)

    return IngestOutcome(
        applied=result.applied,
        duplicate=False,
        message=MESSAGE_APPLIED if result.applied else MESSAGE_NOOP,
        payment_id=payment.id,
        order_id=order.id,
        event=event,
        status=result.status,
        payment_status=result.payment_status,
    )


def _update_payment(payment, notification: WebhookNotification, *, record_transaction_id: bool) -> None:
    payment.transaction_status = notification.transaction_status
    if record_transaction_id and notification.transaction_id:
        payment.transaction_id = notification.transaction_id
    if notification.payment_type:
        payment.payment_type = notification.payment_type
    if notification.fraud_status:
        payment.fraud_status = notification.fraud_status
    payment.raw_response = json.dumps(notification.raw, default=str, sort_keys=True)
    db.session.flush()


def get_notifications(payment_id: int) -> list[PaymentNotification]:
    return (
        db.session.query(PaymentNotification)
        .filter_by(payment_id=payment_id)
        .order_by(PaymentNotification.id)
        .all()
    )
