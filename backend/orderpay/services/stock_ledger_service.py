# Overview: Service-layer operations for the stock ledger; appends movements for order transitions.

from __future__ import annotations

from sqlalchemy import case, func

from ..extensions import db
from ..errors import InsufficientStock
from ..models import OrderItem, ProductVariant, StockMovement
from .concurrency import lock_for_update
"""
Stock Ledger Invariants (authoritative)

- Ledger is append-only: movements are never updated or deleted.
- Available stock is derived, never stored:
    base_stock + SUM(sign(type) * quantity)
- Booking happens inside the caller's transaction (the order transition),
  one movement per order line, exactly once per transition. The order
  state machine's precondition check is what guarantees "exactly once";
  this module does not dedupe.
- A 'sold' booking may not drive available stock below zero; it is rejected
  at booking time, never corrected retroactively.
- A 'refund' booking returns stock only for an order that booked 'sold'.
  Refunding an unpaid order still writes one row per line, with quantity 0.
"""

MOVEMENT_SOLD = "sold"
MOVEMENT_RELEASE = "release"
MOVEMENT_REFUND = "refund"

# release closes the checkout hold; holds never entered the ledger
MOVEMENT_SIGNS = {
    MOVEMENT_SOLD: -1,
    MOVEMENT_RELEASE: 0,
    MOVEMENT_REFUND: 1,
}


def _signed_quantity():
    return case(
        *[(StockMovement.type == t, StockMovement.quantity * sign) for t, sign in MOVEMENT_SIGNS.items()],
        else_=0,
    )


def get_available_stock(variant_id: int) -> int:
    """Base stock plus the signed sum of all movements for the variant."""
    variant = db.session.query(ProductVariant).filter_by(id=variant_id).first()
    if variant is None:
        raise ValueError(f"variant {variant_id} not found")

    delta = db.session.query(
        func.coalesce(func.sum(_signed_quantity()), 0)
    ).filter(StockMovement.variant_id == variant_id).scalar()

    return int(variant.base_stock) + int(delta or 0)


def book_movements(order_id: int, movement_type: str) -> list[StockMovement]:
    """
    Append one StockMovement per order line.

    Args:
        order_id: Order whose transition causes the movements
        movement_type: sold, release or refund

    Returns:
        The new (flushed, uncommitted) movements

    Raises:
        ValueError: unknown movement type
        InsufficientStock: a sold booking would make available stock negative
    """
    if movement_type not in MOVEMENT_SIGNS:
        raise ValueError(f"Invalid movement type: {movement_type}")

    lines = (
        db.session.query(OrderItem)
        .filter_by(order_id=order_id)
        .order_by(OrderItem.id)
        .all()
    )

    if movement_type == MOVEMENT_SOLD:
        _check_availability(lines)

    # Refund returns only what a sold batch took; without one the rows are audit-only
    returns_stock = movement_type != MOVEMENT_REFUND or _has_sold_batch(order_id)

    movements = []
    for line in lines:
        movement = StockMovement(
            variant_id=line.variant_id,
            type=movement_type,
            quantity=line.quantity if returns_stock else 0,
            reference_id=order_id,
        )
        db.session.add(movement)
        movements.append(movement)

    db.session.flush()
    return movements


def _has_sold_batch(order_id: int) -> bool:
    return db.session.query(StockMovement.id).filter_by(
        reference_id=order_id, type=MOVEMENT_SOLD
    ).first() is not None


def _check_availability(lines: list[OrderItem]) -> None:
    requested: dict[int, int] = {}
    for line in lines:
        requested[line.variant_id] = requested.get(line.variant_id, 0) + line.quantity

    # Lock variants in id order so concurrent settlements cannot oversell
    for variant_id in sorted(requested):
        lock_for_update(db.session.query(ProductVariant).filter_by(id=variant_id)).first()
        available = get_available_stock(variant_id)
        if available < requested[variant_id]:
            raise InsufficientStock(variant_id, available, requested[variant_id])


def get_movements_for_order(order_id: int) -> list[StockMovement]:
    return (
        db.session.query(StockMovement)
        .filter_by(reference_id=order_id)
        .order_by(StockMovement.id)
        .all()
    )
