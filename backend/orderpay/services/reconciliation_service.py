# Overview: Service-layer operations for reconciliation sweeps; turn time/status predicates into synthetic events.

"""
Reconciliation Sweeps

Each sweep selects candidate order ids with a plain read, then hands every
id to order_state_machine.transition() (one retried transaction per order).
Sweeps never write Order or Payment rows themselves.

RE-ENTRANCY: two overlapping runs may select the same ids. The per-order
row lock plus the precondition no-op means the second one to reach an order
does nothing, so no mutual exclusion between runs is needed.

FAILURE ISOLATION: an error on one order is logged and counted; the sweep
moves on to the next order.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta

from flask import current_app

from ..extensions import db
from ..models import Order
from orderpay.time_utils import utcnow
from . import maintenance_service, order_state_machine, refund_service
from .order_state_machine import (
    EVENT_DELIVERED_AND_PAID_SETTLE,
    EVENT_EXPIRY_TIMEOUT,
    EVENT_REFUND_APPROVED,
    PAYMENT_PAID,
    PAYMENT_PENDING,
    STATUS_DELIVERED,
    STATUS_PROCESSING,
)


@dataclass
class SweepResult:
    name: str
    candidates: int = 0
    applied: int = 0
    skipped: int = 0
    failed: int = 0
    order_ids: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "candidates": self.candidates,
            "applied": self.applied,
            "skipped": self.skipped,
            "failed": self.failed,
        }


def _drive(name: str, order_ids: list[int], event: str, now: datetime | None = None) -> SweepResult:
    result = SweepResult(name=name, candidates=len(order_ids))
    for order_id in order_ids:
        try:
            outcome = order_state_machine.transition(order_id, event, now=now)
        except Exception:
            current_app.logger.exception("%s: order %s failed", name, order_id)
            result.failed += 1
            continue

        if outcome.applied:
            result.applied += 1
            result.order_ids.append(order_id)
        else:
            result.skipped += 1

    current_app.logger.info(
        "%s: %d candidates, %d applied, %d skipped, %d failed",
        name, result.candidates, result.applied, result.skipped, result.failed,
    )
    return result


def _read(query_fn):
    # Candidate reads end their transaction right away
    try:
        return query_fn()
    finally:
        db.session.rollback()


def expire_overdue_orders(now: datetime | None = None) -> SweepResult:
    """Unpaid orders past expires_at -> expiry_timeout."""
    now = now or utcnow()
    order_ids = _read(lambda: [
        row[0] for row in db.session.query(Order.id).filter(
            Order.payment_status == PAYMENT_PENDING,
            Order.expires_at.isnot(None),
            Order.expires_at <= now,
        ).order_by(Order.id).all()
    ])
    return _drive("expiry_sweep", order_ids, EVENT_EXPIRY_TIMEOUT, now=now)


def settle_delivered_orders(now: datetime | None = None) -> SweepResult:
    """Delivered + paid orders without settled_at -> delivered_and_paid_settle."""
    order_ids = _read(lambda: [
        row[0] for row in db.session.query(Order.id).filter(
            Order.status == STATUS_DELIVERED,
            Order.payment_status == PAYMENT_PAID,
            Order.settled_at.is_(None),
        ).order_by(Order.id).all()
    ])
    return _drive("settlement_sweep", order_ids, EVENT_DELIVERED_AND_PAID_SETTLE, now=now)


def sync_approved_refunds(now: datetime | None = None) -> SweepResult:
    """Approved refunds not yet reflected on their order -> refund_approved."""
    order_ids = _read(refund_service.find_unapplied_refund_order_ids)
    return _drive("refund_sync", order_ids, EVENT_REFUND_APPROVED, now=now)


def cleanup_stale_attempts(now: datetime | None = None) -> SweepResult:
    """Housekeeping only; not a state machine event."""
    retention = current_app.config.get("PAYMENT_ATTEMPT_RETENTION_HOURS", 24)
    deleted = maintenance_service.cleanup_payment_attempts(retention_hours=retention)
    current_app.logger.info("attempt_cleanup: %d payment attempts deleted", deleted)
    return SweepResult(name="attempt_cleanup", candidates=deleted, applied=deleted)


def queue_shipping_reminders(now: datetime | None = None) -> SweepResult:
    """
    Paid orders still not shipped after SHIPPING_REMINDER_AGE_HOURS.

    Reminders are only logged for the notification service to pick up;
    no order state changes.
    """
    now = now or utcnow()
    age = timedelta(hours=current_app.config.get("SHIPPING_REMINDER_AGE_HOURS", 24))
    order_ids = _read(lambda: [
        row[0] for row in db.session.query(Order.id).filter(
            Order.status == STATUS_PROCESSING,
            Order.created_at < now - age,
        ).order_by(Order.id).all()
    ])
    for order_id in order_ids:
        current_app.logger.info("shipping_reminder: order %s awaiting shipment", order_id)
    return SweepResult(name="shipping_reminder", candidates=len(order_ids), order_ids=order_ids)
