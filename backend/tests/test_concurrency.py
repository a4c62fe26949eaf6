"""
Threaded race tests against a real SQLite file.

Each worker thread gets its own app context (and therefore its own session
and connection), so the races below go through the same locking and retry
paths production traffic does.
"""
import json
import os
import tempfile
import threading
import time
import unittest
from datetime import timedelta

import httpx

from orderpay import create_app
from orderpay.errors import InvalidOrderState
from orderpay.extensions import db, gateway
from orderpay.models import Order, OrderStatusHistory, Payment, ProductVariant, StockMovement
from orderpay.services import charge_service, order_service, reconciliation_service, webhook_service
from orderpay.services import order_state_machine as sm
from orderpay.time_utils import utcnow


SERVER_KEY = "concurrency-server-key"


def _slow_snap(request: httpx.Request) -> httpx.Response:
    # Keep both charge calls in flight at once
    time.sleep(0.2)
    body = json.loads(request.content)
    token = f"tok-{body['transaction_details']['order_id']}"
    return httpx.Response(201, json={"token": token, "redirect_url": f"https://snap.test/{token}"})


class ConcurrencyTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        db_path = os.path.join(self.tmpdir.name, "concurrency.db")
        self.app = create_app({
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{db_path}",
            "MIDTRANS_SERVER_KEY": SERVER_KEY,
        })
        gateway.init_app(self.app, transport=httpx.MockTransport(_slow_snap))

        with self.app.app_context():
            db.drop_all()
            db.create_all()

            variant = ProductVariant(name="Race Variant", base_stock=10)
            db.session.add(variant)
            db.session.commit()
            self.variant_id = variant.id

    def tearDown(self):
        with self.app.app_context():
            db.session.remove()
            db.engine.dispose()
        self.tmpdir.cleanup()

    def _new_order(self, expires_at):
        with self.app.app_context():
            return order_service.create_pending_order(
                [{"variant_id": self.variant_id, "quantity": 3, "unit_price_cents": 1000}],
                expires_at=expires_at,
            )

    def _run_parallel(self, *funcs):
        barrier = threading.Barrier(len(funcs))
        results = [None] * len(funcs)

        def runner(index, func):
            with self.app.app_context():
                barrier.wait()
                try:
                    results[index] = ("ok", func())
                except Exception as exc:
                    results[index] = ("error", exc)
                finally:
                    db.session.remove()

        threads = [threading.Thread(target=runner, args=(i, f)) for i, f in enumerate(funcs)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(30)
        return results

    def test_expiry_sweep_races_expire_webhook(self):
        order_id = self._new_order(utcnow() - timedelta(seconds=1))
        with self.app.app_context():
            payment = Payment(
                order_id=order_id,
                external_order_id=f"ORDER-{order_id}-1-race00",
                amount_cents=3000,
                transaction_status="pending",
            )
            db.session.add(payment)
            db.session.commit()
            external_order_id = payment.external_order_id

        body = {
            "order_id": external_order_id,
            "transaction_status": "expire",
            "transaction_id": "T-EXP",
            "status_code": "407",
            "gross_amount": "3000.00",
        }
        signature = webhook_service.compute_signature(external_order_id, "407", "3000.00", SERVER_KEY)

        results = self._run_parallel(
            reconciliation_service.expire_overdue_orders,
            lambda: webhook_service.ingest(body, signature),
        )

        for status, value in results:
            self.assertEqual(status, "ok", value)

        with self.app.app_context():
            order = db.session.get(Order, order_id)
            self.assertEqual((order.status, order.payment_status), ("cancelled", "expired"))
            releases = db.session.query(StockMovement).filter_by(reference_id=order_id, type="release").count()
            self.assertEqual(releases, 1)
            history = db.session.query(OrderStatusHistory).filter_by(order_id=order_id).count()
            self.assertEqual(history, 1)

    def test_parallel_settlements_do_not_oversell(self):
        first = self._new_order(utcnow() + timedelta(hours=1))
        second = self._new_order(utcnow() + timedelta(hours=1))
        third = self._new_order(utcnow() + timedelta(hours=1))
        fourth = self._new_order(utcnow() + timedelta(hours=1))

        results = self._run_parallel(*[
            (lambda oid: lambda: sm.transition(oid, sm.EVENT_SETTLEMENT))(oid)
            for oid in (first, second, third, fourth)
        ])

        applied = [v for s, v in results if s == "ok" and v.applied]
        # 10 units, 3 per order
        self.assertEqual(len(applied), 3)

        with self.app.app_context():
            sold = db.session.query(StockMovement).filter_by(type="sold").count()
            self.assertEqual(sold, 3)

    def test_concurrent_charge_creation_creates_one_payment(self):
        order_id = self._new_order(utcnow() + timedelta(hours=1))

        results = self._run_parallel(
            lambda: charge_service.create_charge(order_id),
            lambda: charge_service.create_charge(order_id),
        )

        outcomes = sorted(status for status, _ in results)
        self.assertEqual(outcomes, ["error", "ok"])
        error = next(value for status, value in results if status == "error")
        self.assertIsInstance(error, InvalidOrderState)

        with self.app.app_context():
            payments = db.session.query(Payment).filter_by(order_id=order_id).all()
            self.assertEqual(len(payments), 1)
            self.assertEqual(payments[0].transaction_status, "pending")


if __name__ == "__main__":
    unittest.main()
