# Overview: Service-layer operations for orders; checkout contract helper and read models.

from __future__ import annotations

from datetime import datetime, timedelta

from flask import current_app

from ..extensions import db
from ..models import Order, OrderItem, ProductVariant
from orderpay.time_utils import utcnow
from .concurrency import run_with_retry
from . import charge_service, order_state_machine, stock_ledger_service


def create_pending_order(
    lines: list[dict],
    *,
    expires_at: datetime | None = None,
) -> int:
    """
    Create an order the way checkout hands it over: pending/pending with
    expires_at populated and its lines persisted.

    Args:
        lines: [{"variant_id": 1, "quantity": 2, "unit_price_cents": 500}, ...]
        expires_at: Defaults to now + ORDER_PAYMENT_WINDOW_MINUTES

    Returns:
        The new order id
    """
    if not lines:
        raise ValueError("order needs at least one line")

    if expires_at is None:
        window = current_app.config.get("ORDER_PAYMENT_WINDOW_MINUTES", 60)
        expires_at = utcnow() + timedelta(minutes=window)

    def _op():
        total = 0
        for line in lines:
            if line["quantity"] <= 0:
                raise ValueError("quantity must be > 0")
            if db.session.query(ProductVariant).filter_by(id=line["variant_id"]).first() is None:
                raise ValueError(f"variant {line['variant_id']} not found")
            total += line["quantity"] * line["unit_price_cents"]

        order = Order(
            status=order_state_machine.STATUS_PENDING,
            payment_status=order_state_machine.PAYMENT_PENDING,
            grand_total_cents=total,
            expires_at=expires_at,
        )
        db.session.add(order)
        db.session.flush()

        for line in lines:
            db.session.add(OrderItem(
                order_id=order.id,
                variant_id=line["variant_id"],
                quantity=line["quantity"],
                unit_price_cents=line["unit_price_cents"],
            ))
        db.session.flush()
        return order.id

    return run_with_retry(_op)


def get_order_detail(order_id: int) -> dict | None:
    order = db.session.query(Order).filter_by(id=order_id).first()
    if order is None:
        return None

    items = db.session.query(OrderItem).filter_by(order_id=order_id).order_by(OrderItem.id).all()
    return {
        "order": order.to_dict(),
        "items": [i.to_dict() for i in items],
        "payments": [p.to_dict() for p in charge_service.get_order_payments(order_id)],
        "stock_movements": [m.to_dict() for m in stock_ledger_service.get_movements_for_order(order_id)],
        "history": [h.to_dict() for h in order_state_machine.get_status_history(order_id)],
    }
