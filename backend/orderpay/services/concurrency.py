# Overview: Service-layer operations for concurrency; transaction scope, row locks and retry.

from __future__ import annotations

import time
from contextlib import contextmanager

from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..errors import StorageFailure
from ..models import Order, Payment


RETRYABLE_ERRORS = (OperationalError, StaleDataError)


@contextmanager
def transaction():
    """
    Scoped unit of work.

    Commits on normal exit, rolls back on any exception. Either way the
    session's connection goes back to the pool when the block ends, so no
    connection outlives one transaction.
    """
    session = db.session
    try:
        yield session
        session.commit()
    except BaseException:
        session.rollback()
        raise


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; the version_id columns on
    Order and Payment turn a lost race into StaleDataError instead.
    populate_existing() refreshes rows already in the identity map.
    """
    return query.with_for_update().populate_existing()


def load_order_for_update(order_id: int) -> Order | None:
    return lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()


def load_payment_for_update(payment_id: int) -> Payment | None:
    return lock_for_update(db.session.query(Payment).filter_by(id=payment_id)).first()


def load_payment_by_external_ref(external_order_id: str) -> Payment | None:
    return db.session.query(Payment).filter_by(external_order_id=external_order_id).first()


def run_with_retry(func, *, attempts: int = 5, backoff_base: float = 0.05):
    """
    Execute func inside transaction() with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts). The retried call re-reads everything, so
    a loser of a race observes the winner's committed state.

    Raises:
        StorageFailure: retries exhausted or any other database error
    """
    for attempt in range(attempts):
        try:
            with transaction():
                return func()
        except RETRYABLE_ERRORS as exc:
            if attempt >= attempts - 1:
                raise StorageFailure(f"Transaction failed after {attempts} attempts: {exc}") from exc
            time.sleep(backoff_base * (2 ** attempt))
        except SQLAlchemyError as exc:
            raise StorageFailure(f"Transaction failed: {exc}") from exc
