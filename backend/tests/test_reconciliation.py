from datetime import timedelta

from orderpay.models import Order, OrderStatusHistory, PaymentAttempt, Refund, StockMovement
from orderpay.services import order_state_machine as sm
from orderpay.services import reconciliation_service, refund_service
from orderpay.time_utils import utcnow

from conftest import add_payment, make_order


def _order(db_session, order_id):
    return db_session.query(Order).filter_by(id=order_id).one()


class TestExpirySweep:
    def test_overdue_order_is_cancelled_with_release(self, db_session, variant, second_variant):
        order_id = make_order([variant, second_variant], expires_at=utcnow() - timedelta(seconds=1))

        result = reconciliation_service.expire_overdue_orders()

        assert result.applied == 1
        assert result.order_ids == [order_id]
        order = _order(db_session, order_id)
        assert (order.status, order.payment_status) == ("cancelled", "expired")

        releases = db_session.query(StockMovement).filter_by(reference_id=order_id, type="release").all()
        assert len(releases) == 2

        history = db_session.query(OrderStatusHistory).filter_by(order_id=order_id).all()
        assert len(history) == 1
        assert history[0].event == "expiry_timeout"
        assert "expired (auto worker)" in history[0].note

    def test_open_window_is_left_alone(self, db_session, pending_order):
        result = reconciliation_service.expire_overdue_orders()

        assert result.candidates == 0
        assert _order(db_session, pending_order).status == "pending"

    def test_paid_order_past_expiry_is_left_alone(self, db_session, variant):
        order_id = make_order([variant], expires_at=utcnow() - timedelta(minutes=5))
        sm.transition(order_id, sm.EVENT_SETTLEMENT)

        result = reconciliation_service.expire_overdue_orders()

        assert result.candidates == 0
        assert _order(db_session, order_id).status == "processing"

    def test_overlapping_runs_apply_once(self, db_session, variant):
        order_id = make_order([variant], expires_at=utcnow() - timedelta(seconds=1))

        first = reconciliation_service.expire_overdue_orders()
        second = reconciliation_service.expire_overdue_orders()

        assert first.applied == 1
        assert second.candidates == 0
        assert db_session.query(StockMovement).filter_by(reference_id=order_id).count() == 1

    def test_stale_candidate_list_becomes_noop(self, db_session, variant):
        order_id = make_order([variant], expires_at=utcnow() - timedelta(seconds=1))
        # Webhook expire lands between the sweep's read and its transition
        sm.transition(order_id, sm.EVENT_EXPIRE)

        result = reconciliation_service._drive("expiry_sweep", [order_id], sm.EVENT_EXPIRY_TIMEOUT)

        assert result.applied == 0
        assert result.skipped == 1
        assert db_session.query(StockMovement).filter_by(reference_id=order_id).count() == 1

    def test_one_failing_order_does_not_stop_the_sweep(self, db_session, variant):
        ok_id = make_order([variant], expires_at=utcnow() - timedelta(seconds=1))

        result = reconciliation_service._drive("expiry_sweep", [987654, ok_id], sm.EVENT_EXPIRY_TIMEOUT)

        assert result.failed == 1
        assert result.applied == 1
        assert _order(db_session, ok_id).status == "cancelled"

    def test_unexpected_error_on_one_order_is_counted(self, db_session, variant, monkeypatch):
        broken_id = make_order([variant], expires_at=utcnow() - timedelta(seconds=1))
        ok_id = make_order([variant], expires_at=utcnow() - timedelta(seconds=1))
        real_transition = sm.transition

        def transition(order_id, event, **kwargs):
            if order_id == broken_id:
                raise ValueError("corrupt order row")
            return real_transition(order_id, event, **kwargs)

        monkeypatch.setattr(sm, "transition", transition)

        result = reconciliation_service.expire_overdue_orders()

        assert (result.candidates, result.applied, result.failed) == (2, 1, 1)
        assert _order(db_session, broken_id).status == "pending"
        assert _order(db_session, ok_id).status == "cancelled"


class TestSettlementSweep:
    def test_delivered_paid_order_is_completed(self, db_session, pending_order, variant):
        other = make_order([variant])
        for event in (sm.EVENT_SETTLEMENT, sm.EVENT_SHIP, sm.EVENT_DELIVER):
            sm.transition(pending_order, event)
        sm.transition(other, sm.EVENT_SETTLEMENT)

        result = reconciliation_service.settle_delivered_orders()

        assert result.order_ids == [pending_order]
        order = _order(db_session, pending_order)
        assert (order.status, order.payment_status) == ("completed", "paid")
        assert order.settled_at is not None
        assert _order(db_session, other).status == "processing"

        again = reconciliation_service.settle_delivered_orders()
        assert again.candidates == 0


class TestRefundSync:
    def test_approved_refund_moves_order_to_refunded(self, db_session, pending_order):
        payment_id, _ = add_payment(pending_order)
        sm.transition(pending_order, sm.EVENT_SETTLEMENT)
        refund = refund_service.request_refund(payment_id, reason="Damaged item")
        refund_service.approve_refund(refund["id"])

        result = reconciliation_service.sync_approved_refunds()

        assert result.applied == 1
        order = _order(db_session, pending_order)
        assert (order.status, order.payment_status) == ("refunded", "refunded")
        assert db_session.query(Refund).filter_by(id=refund["id"]).one().applied_at is not None

        again = reconciliation_service.sync_approved_refunds()
        assert again.candidates == 0

    def test_requested_and_rejected_refunds_are_ignored(self, db_session, pending_order):
        payment_id, _ = add_payment(pending_order)
        sm.transition(pending_order, sm.EVENT_SETTLEMENT)
        rejected = refund_service.request_refund(payment_id, amount_cents=5000)
        refund_service.reject_refund(rejected["id"])
        refund_service.request_refund(payment_id, amount_cents=5000)

        result = reconciliation_service.sync_approved_refunds()

        assert result.candidates == 0
        assert _order(db_session, pending_order).payment_status == "paid"


class TestHousekeeping:
    def test_old_payment_attempts_are_deleted(self, db_session, pending_order):
        db_session.add_all([
            PaymentAttempt(order_id=pending_order, external_order_id="ORDER-old", outcome="created",
                           created_at=utcnow() - timedelta(hours=48)),
            PaymentAttempt(order_id=pending_order, external_order_id="ORDER-new", outcome="created",
                           created_at=utcnow() - timedelta(hours=1)),
        ])
        db_session.commit()

        result = reconciliation_service.cleanup_stale_attempts()

        assert result.applied == 1
        remaining = db_session.query(PaymentAttempt).all()
        assert [a.external_order_id for a in remaining] == ["ORDER-new"]

    def test_shipping_reminders_only_log(self, db_session, pending_order):
        sm.transition(pending_order, sm.EVENT_SETTLEMENT)
        db_session.query(Order).filter_by(id=pending_order).update(
            {"created_at": utcnow() - timedelta(days=2)}
        )
        db_session.commit()

        result = reconciliation_service.queue_shipping_reminders()

        assert result.order_ids == [pending_order]
        assert _order(db_session, pending_order).status == "processing"
