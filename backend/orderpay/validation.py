from __future__ import annotations

from dataclasses import dataclass
from typing import Any


# Matches the width of Payment.external_order_id
MAX_EXTERNAL_ORDER_ID_LENGTH = 64

# Maximum amount: 999,999,999 cents
MAX_AMOUNT_CENTS = 999_999_999


class ValidationError(ValueError):
    """400-level input problem."""


@dataclass(frozen=True)
class WebhookNotification:
    """Normalized inbound gateway notification."""
    external_order_id: str
    transaction_status: str
    transaction_id: str | None
    payment_type: str | None
    fraud_status: str | None
    status_code: str | None
    gross_amount: str | None
    raw: dict


def coerce_int(field: str, value: Any) -> int:
    """
    Strict integer coercion.

    Accepts ints and plain digit strings; rejects bools, floats, decimals and
    scientific notation.
    """
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be an integer")
        # Reject scientific notation (e.g., "1e15", "1E10")
        if 'e' in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)")
        # Reject decimal points (e.g., "12.5")
        if '.' in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")
    if isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal")
    raise ValidationError(f"{field} must be an integer")


def _optional_str(payload: dict, key: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def parse_webhook_payload(payload: Any) -> WebhookNotification:
    """
    Validate a gateway notification body.

    Required: order_id (the gateway-facing external order id), transaction_status.
    Everything else is optional and kept verbatim in raw.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    external_order_id = _optional_str(payload, "order_id")
    if not external_order_id:
        raise ValidationError("order_id is required")
    if len(external_order_id) > MAX_EXTERNAL_ORDER_ID_LENGTH:
        raise ValidationError(f"order_id exceeds max length {MAX_EXTERNAL_ORDER_ID_LENGTH}")

    transaction_status = _optional_str(payload, "transaction_status")
    if not transaction_status:
        raise ValidationError("transaction_status is required")

    return WebhookNotification(
        external_order_id=external_order_id,
        transaction_status=transaction_status.lower(),
        transaction_id=_optional_str(payload, "transaction_id"),
        payment_type=_optional_str(payload, "payment_type"),
        fraud_status=_optional_str(payload, "fraud_status"),
        status_code=_optional_str(payload, "status_code"),
        gross_amount=_optional_str(payload, "gross_amount"),
        raw=payload,
    )


def parse_create_payment_payload(payload: Any) -> int:
    """Returns the order id from {"orderId": ...} (order_id accepted too)."""
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    raw = payload.get("orderId", payload.get("order_id"))
    if raw is None:
        raise ValidationError("orderId is required")

    order_id = coerce_int("orderId", raw)
    if order_id <= 0:
        raise ValidationError("orderId must be positive")
    return order_id


def parse_refund_payload(payload: Any) -> tuple[int | None, str | None]:
    """Returns (amount_cents or None for a full refund, reason)."""
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    amount_cents = None
    if payload.get("amount_cents") is not None:
        amount_cents = coerce_int("amount_cents", payload["amount_cents"])
        if amount_cents <= 0:
            raise ValidationError("amount_cents must be > 0")
        if amount_cents > MAX_AMOUNT_CENTS:
            raise ValidationError(f"amount_cents cannot exceed {MAX_AMOUNT_CENTS}")

    reason = _optional_str(payload, "reason")
    if reason and len(reason) > 255:
        raise ValidationError("reason exceeds max length 255")

    return amount_cents, reason
