from datetime import timedelta

import pytest

from orderpay.errors import OrderNotFound
from orderpay.models import Order, OrderStatusHistory, Refund, StockMovement
from orderpay.services import order_state_machine as sm
from orderpay.services import stock_ledger_service
from orderpay.time_utils import utcnow

from conftest import add_payment, make_order


def _order(db_session, order_id):
    return db_session.query(Order).filter_by(id=order_id).one()


def _movements(db_session, order_id, movement_type=None):
    q = db_session.query(StockMovement).filter_by(reference_id=order_id)
    if movement_type:
        q = q.filter_by(type=movement_type)
    return q.all()


def _history(db_session, order_id):
    return db_session.query(OrderStatusHistory).filter_by(order_id=order_id).order_by(OrderStatusHistory.id).all()


class TestGatewayVocabulary:
    @pytest.mark.parametrize("raw, expected", [
        ("settlement", sm.EVENT_SETTLEMENT),
        ("SETTLEMENT", sm.EVENT_SETTLEMENT),
        ("expire", sm.EVENT_EXPIRE),
        ("cancel", sm.EVENT_CANCEL),
        ("deny", sm.EVENT_DENY),
        ("refund", sm.EVENT_REFUND),
        ("pending", None),
        ("authorize", None),
        ("partial_refund", None),
        ("", None),
        (None, None),
    ])
    def test_mapping_table(self, raw, expected):
        assert sm.event_for_gateway_status(raw) == expected

    def test_capture_counts_as_settlement_only_when_fraud_accepted(self):
        assert sm.event_for_gateway_status("capture", "accept") == sm.EVENT_SETTLEMENT
        assert sm.event_for_gateway_status("capture", None) == sm.EVENT_SETTLEMENT
        assert sm.event_for_gateway_status("capture", "challenge") is None
        assert sm.event_for_gateway_status("capture", "deny") is None


class TestTransitions:
    def test_settlement_moves_to_processing_paid_and_books_sold(self, db_session, pending_order):
        result = sm.transition(pending_order, sm.EVENT_SETTLEMENT)

        assert result.applied is True
        order = _order(db_session, pending_order)
        assert (order.status, order.payment_status) == ("processing", "paid")
        sold = _movements(db_session, pending_order, "sold")
        assert len(sold) == 2
        assert sorted(m.quantity for m in sold) == [2, 2]

        history = _history(db_session, pending_order)
        assert len(history) == 1
        assert history[0].event == "settlement"
        assert history[0].status == "processing"
        assert history[0].payment_status == "paid"

    @pytest.mark.parametrize("event", [sm.EVENT_EXPIRE, sm.EVENT_CANCEL, sm.EVENT_DENY])
    def test_unpaid_terminal_events_cancel_and_release(self, db_session, pending_order, event):
        result = sm.transition(pending_order, event)

        assert result.applied is True
        order = _order(db_session, pending_order)
        assert (order.status, order.payment_status) == ("cancelled", "expired")
        assert len(_movements(db_session, pending_order, "release")) == 2
        assert _movements(db_session, pending_order, "sold") == []

    def test_refund_after_settlement_returns_stock(self, db_session, pending_order, variant):
        sm.transition(pending_order, sm.EVENT_SETTLEMENT)
        assert stock_ledger_service.get_available_stock(variant) == 8

        result = sm.transition(pending_order, sm.EVENT_REFUND)

        assert result.applied is True
        order = _order(db_session, pending_order)
        assert (order.status, order.payment_status) == ("refunded", "refunded")
        assert len(_movements(db_session, pending_order, "refund")) == 2
        assert stock_ledger_service.get_available_stock(variant) == 10

    def test_refund_of_unpaid_order_keeps_stock_at_base(self, db_session, pending_order, variant, second_variant):
        result = sm.transition(pending_order, sm.EVENT_REFUND)

        assert result.applied is True
        assert (result.status, result.payment_status) == ("refunded", "refunded")
        assert len(_movements(db_session, pending_order, "refund")) == 2
        assert stock_ledger_service.get_available_stock(variant) == 10
        assert stock_ledger_service.get_available_stock(second_variant) == 5

    def test_expiry_timeout_requires_window_to_be_over(self, db_session, pending_order):
        result = sm.transition(pending_order, sm.EVENT_EXPIRY_TIMEOUT)

        assert result.applied is False
        assert result.reason == "payment window still open"
        assert _order(db_session, pending_order).status == "pending"

        later = utcnow() + timedelta(hours=2)
        result = sm.transition(pending_order, sm.EVENT_EXPIRY_TIMEOUT, now=later)
        assert result.applied is True
        history = _history(db_session, pending_order)
        assert history[-1].note == "Order expired (auto worker)"

    def test_fulfillment_path_to_completed(self, db_session, pending_order):
        sm.transition(pending_order, sm.EVENT_SETTLEMENT)
        assert sm.transition(pending_order, sm.EVENT_SHIP).status == "shipped"
        assert sm.transition(pending_order, sm.EVENT_DELIVER).status == "delivered"

        result = sm.transition(pending_order, sm.EVENT_DELIVERED_AND_PAID_SETTLE)

        assert result.applied is True
        order = _order(db_session, pending_order)
        assert (order.status, order.payment_status) == ("completed", "paid")
        assert order.settled_at is not None
        # Fulfillment events do not touch the ledger
        assert len(_movements(db_session, pending_order)) == 2

    def test_refund_approved_marks_refund_applied(self, db_session, pending_order):
        payment_id, _ = add_payment(pending_order)
        sm.transition(pending_order, sm.EVENT_SETTLEMENT)
        refund = Refund(payment_id=payment_id, amount_cents=20000, status="approved", approved_at=utcnow())
        db_session.add(refund)
        db_session.commit()
        refund_id = refund.id

        result = sm.transition(pending_order, sm.EVENT_REFUND_APPROVED)

        assert result.applied is True
        assert _order(db_session, pending_order).payment_status == "refunded"
        assert db_session.query(Refund).filter_by(id=refund_id).one().applied_at is not None
        assert len(_movements(db_session, pending_order, "refund")) == 0

    def test_refund_approved_without_approved_refund_is_noop(self, db_session, pending_order):
        sm.transition(pending_order, sm.EVENT_SETTLEMENT)

        result = sm.transition(pending_order, sm.EVENT_REFUND_APPROVED)

        assert result.applied is False
        assert result.reason == "no approved refund"


class TestNoOpPrecondition:
    def test_second_terminal_event_changes_nothing(self, db_session, pending_order):
        sm.transition(pending_order, sm.EVENT_EXPIRE)
        before_history = len(_history(db_session, pending_order))
        before_moves = len(_movements(db_session, pending_order))

        result = sm.transition(pending_order, sm.EVENT_SETTLEMENT)

        assert result.applied is False
        assert result.status == "cancelled"
        assert result.movements == []
        assert len(_history(db_session, pending_order)) == before_history
        assert len(_movements(db_session, pending_order)) == before_moves

    def test_expire_after_settlement_is_noop(self, db_session, pending_order):
        sm.transition(pending_order, sm.EVENT_SETTLEMENT)

        result = sm.transition(pending_order, sm.EVENT_EXPIRE)

        assert result.applied is False
        order = _order(db_session, pending_order)
        assert (order.status, order.payment_status) == ("processing", "paid")
        assert _movements(db_session, pending_order, "release") == []

    def test_double_refund_is_noop(self, db_session, pending_order):
        sm.transition(pending_order, sm.EVENT_SETTLEMENT)
        sm.transition(pending_order, sm.EVENT_REFUND)

        result = sm.transition(pending_order, sm.EVENT_REFUND)

        assert result.applied is False
        assert len(_movements(db_session, pending_order, "refund")) == 2

    def test_ship_requires_paid_processing(self, db_session, pending_order):
        result = sm.transition(pending_order, sm.EVENT_SHIP)
        assert result.applied is False
        assert _order(db_session, pending_order).status == "pending"

    def test_settle_is_applied_once(self, db_session, pending_order):
        sm.transition(pending_order, sm.EVENT_SETTLEMENT)
        sm.transition(pending_order, sm.EVENT_SHIP)
        sm.transition(pending_order, sm.EVENT_DELIVER)
        sm.transition(pending_order, sm.EVENT_DELIVERED_AND_PAID_SETTLE)

        result = sm.transition(pending_order, sm.EVENT_DELIVERED_AND_PAID_SETTLE)

        assert result.applied is False


class TestErrors:
    def test_unknown_event_raises(self, db_session, pending_order):
        with pytest.raises(ValueError):
            sm.transition(pending_order, "teleport")

    def test_missing_order_raises(self, db_session):
        with pytest.raises(OrderNotFound):
            sm.transition(999999, sm.EVENT_SETTLEMENT)

    def test_order_without_expiry_never_times_out(self, db_session, variant):
        order_id = make_order([variant])
        db_session.query(Order).filter_by(id=order_id).update({"expires_at": None})
        db_session.commit()

        result = sm.transition(order_id, sm.EVENT_EXPIRY_TIMEOUT, now=utcnow() + timedelta(days=30))

        assert result.applied is False
        assert result.reason == "order has no expires_at"
