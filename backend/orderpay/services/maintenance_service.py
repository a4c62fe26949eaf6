# Overview: Service-layer operations for maintenance; housekeeping deletes outside the audit trail.

from __future__ import annotations

from datetime import timedelta

from ..extensions import db
from ..models import PaymentAttempt
from orderpay.time_utils import utcnow
from .concurrency import run_with_retry


def cleanup_payment_attempts(*, retention_hours: int = 24) -> int:
    """
    Delete payment attempt rows older than retention_hours.

    Payments, notifications and order history are preserved for audit.
    """
    cutoff = utcnow() - timedelta(hours=retention_hours)

    def _op():
        return db.session.query(PaymentAttempt).filter(
            PaymentAttempt.created_at < cutoff
        ).delete(synchronize_session=False)

    return run_with_retry(_op)
