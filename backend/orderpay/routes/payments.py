# Overview: Flask API routes for payments; charge creation, gateway webhook and refunds.

# backend/orderpay/routes/payments.py
"""
Payment API Routes

DESIGN:
- POST /payments/create opens a gateway charge session for a pending order
- POST /payments/webhook ingests gateway notifications
- Refund requests are recorded here and applied to orders by the refund sync worker

WEBHOOK STATUS CODES:
- 200: applied, already processed, no transition, or unknown payment
  (all "handled" from the gateway's point of view; no redelivery wanted)
- 400: malformed payload
- 401: signature mismatch
- 409: settlement could not book stock
- 503: storage failure (gateway redelivers)
"""

from flask import Blueprint, request, current_app

from ..errors import (
    GatewayRejected,
    GatewayUnavailable,
    InsufficientStock,
    InvalidOrderState,
    InvalidSignature,
    OrderNotFound,
    StorageFailure,
    UnknownPayment,
)
from ..responses import envelope, error
from ..services import charge_service, refund_service, webhook_service
from ..services.refund_service import RefundError
from ..validation import ValidationError, parse_create_payment_payload, parse_refund_payload


payments_bp = Blueprint("payments", __name__, url_prefix="/payments")

SIGNATURE_HEADER = "X-Midtrans-Signature-Key"


# =============================================================================
# CHARGE CREATION
# =============================================================================

@payments_bp.post("/create")
def create_payment_route():
    """
    Open a Snap charge session for a pending order.

    Request body:
    {
        "orderId": 123
    }

    Returns:
        201: {snap_token, redirect_url, payment}
        400: Invalid input
        404: Order not found
        409: Order not eligible for payment
        502: Gateway rejected the request
        503: Gateway unavailable (safe to retry) or storage failure
    """
    try:
        order_id = parse_create_payment_payload(request.get_json(silent=True))
        result = charge_service.create_charge(order_id)
        return envelope(result, "Snap token created", 201)

    except ValidationError as e:
        return error(str(e), 400)
    except OrderNotFound as e:
        return error(str(e), 404)
    except InvalidOrderState as e:
        return error(str(e), 409)
    except GatewayRejected as e:
        return error(str(e), 502)
    except GatewayUnavailable as e:
        return error(str(e), 503)
    except StorageFailure:
        current_app.logger.exception("Failed to store payment")
        return error("Storage failure", 503)
    except Exception:
        current_app.logger.exception("Failed to create payment")
        return error("Internal server error", 500)


# =============================================================================
# GATEWAY WEBHOOK
# =============================================================================

@payments_bp.post("/webhook")
def webhook_route():
    """
    Gateway notification endpoint.

    Request body (Midtrans):
    {
        "order_id": "ORDER-1-1700000000000-a1b2c3",
        "transaction_status": "settlement",
        "transaction_id": "T1",
        "payment_type": "bank_transfer",
        "fraud_status": "accept",
        "status_code": "200",
        "gross_amount": "10000.00",
        "signature_key": "..."   (or X-Midtrans-Signature-Key header)
    }
    """
    payload = request.get_json(silent=True)
    signature = request.headers.get(SIGNATURE_HEADER)
    if not signature and isinstance(payload, dict):
        signature = payload.get("signature_key")

    try:
        outcome = webhook_service.ingest(payload, signature)
        return envelope(outcome.to_dict(), outcome.message, 200)

    except ValidationError as e:
        return error(str(e), 400)
    except UnknownPayment:
        return envelope(None, "Payment not found, notification ignored", 200)
    except InvalidSignature as e:
        return error(str(e), 401)
    except InsufficientStock as e:
        current_app.logger.error("Webhook could not book stock: %s", e)
        return error(str(e), 409)
    except StorageFailure:
        current_app.logger.exception("Webhook transaction failed")
        return error("Storage failure", 503)
    except Exception:
        current_app.logger.exception("Failed to process webhook")
        return error("Internal server error", 500)


# =============================================================================
# PAYMENT QUERIES
# =============================================================================

@payments_bp.get("/<int:payment_id>")
def get_payment_route(payment_id: int):
    """Payment details with every notification received for it."""
    payment = charge_service.get_payment(payment_id)
    if not payment:
        return error("Payment not found", 404)

    notifications = webhook_service.get_notifications(payment_id)

    return envelope({
        "payment": payment.to_dict(),
        "notifications": [n.to_dict() for n in notifications],
    }, "Payment retrieved")


# =============================================================================
# REFUNDS
# =============================================================================

@payments_bp.post("/<int:payment_id>/refunds")
def request_refund_route(payment_id: int):
    """
    Request a refund for a settled payment.

    Request body:
    {
        "amount_cents": 5000,   (optional, defaults to the refundable remainder)
        "reason": "Damaged item"   (optional)
    }
    """
    try:
        amount_cents, reason = parse_refund_payload(request.get_json(silent=True))
        refund = refund_service.request_refund(payment_id, amount_cents, reason)
        return envelope(refund, "Refund requested", 201)

    except (ValidationError, RefundError) as e:
        return error(str(e), 400)
    except StorageFailure:
        current_app.logger.exception("Failed to store refund")
        return error("Storage failure", 503)
    except Exception:
        current_app.logger.exception("Failed to request refund")
        return error("Internal server error", 500)


@payments_bp.post("/refunds/<int:refund_id>/approve")
def approve_refund_route(refund_id: int):
    try:
        refund = refund_service.approve_refund(refund_id)
        return envelope(refund, "Refund approved")
    except RefundError as e:
        return error(str(e), 400)
    except Exception:
        current_app.logger.exception("Failed to approve refund")
        return error("Internal server error", 500)


@payments_bp.post("/refunds/<int:refund_id>/reject")
def reject_refund_route(refund_id: int):
    try:
        refund = refund_service.reject_refund(refund_id)
        return envelope(refund, "Refund rejected")
    except RefundError as e:
        return error(str(e), 400)
    except Exception:
        current_app.logger.exception("Failed to reject refund")
        return error("Internal server error", 500)
