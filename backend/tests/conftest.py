"""
Pytest fixtures for orderpay backend tests.

Provides an in-memory database, a fake Snap gateway, and helpers that build
orders the way checkout hands them over.
"""

import json
from datetime import timedelta

import httpx
import pytest

from orderpay import create_app
from orderpay.extensions import db, gateway
from orderpay.models import Payment, ProductVariant
from orderpay.services import order_service, webhook_service
from orderpay.time_utils import utcnow


SERVER_KEY = "test-server-key"


class FakeSnap:
    """
    Stand-in for the Midtrans Snap endpoint, served through httpx.MockTransport.

    mode: ok | timeout | server_error | reject | garbage
    """

    def __init__(self):
        self.reset()

    def reset(self):
        self.mode = "ok"
        self.requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        if self.mode == "timeout":
            raise httpx.ReadTimeout("timed out", request=request)
        if self.mode == "server_error":
            return httpx.Response(503, json={"error_messages": ["service unavailable"]})
        if self.mode == "reject":
            return httpx.Response(400, json={"error_messages": ["transaction_details.gross_amount is invalid"]})
        if self.mode == "garbage":
            return httpx.Response(200, text="<html>oops</html>")

        token = f"snap-token-{len(self.requests)}"
        return httpx.Response(201, json={
            "token": token,
            "redirect_url": f"https://app.sandbox.midtrans.com/snap/v2/vtweb/{token}",
        })


@pytest.fixture(scope='session')
def snap():
    return FakeSnap()


@pytest.fixture(scope='session')
def app(snap):
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'MIDTRANS_SERVER_KEY': SERVER_KEY,
        'PAYMENT_WEBHOOK_VERIFY_SIGNATURE': True,
    })
    gateway.init_app(app, transport=httpx.MockTransport(snap.handler))

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app, snap):
    """Create fresh database for each test."""
    snap.reset()
    app.config['PAYMENT_WEBHOOK_VERIFY_SIGNATURE'] = True

    # Clear all data but keep schema
    meta = db.metadata
    for table in reversed(meta.sorted_tables):
        db.session.execute(table.delete())
    db.session.commit()

    yield db.session

    # Cleanup after test
    db.session.rollback()


@pytest.fixture(scope='function')
def variant(db_session):
    """Variant with 10 units of base stock."""
    v = ProductVariant(name="Kaos Polos / M", base_stock=10)
    db_session.add(v)
    db_session.commit()
    return v.id


@pytest.fixture(scope='function')
def second_variant(db_session):
    v = ProductVariant(name="Kaos Polos / L", base_stock=5)
    db_session.add(v)
    db_session.commit()
    return v.id


def make_order(variant_ids, quantity=2, unit_price_cents=5000, expires_at=None):
    return order_service.create_pending_order(
        [{"variant_id": vid, "quantity": quantity, "unit_price_cents": unit_price_cents} for vid in variant_ids],
        expires_at=expires_at,
    )


@pytest.fixture(scope='function')
def pending_order(variant, second_variant):
    """Pending/pending order with two lines, payment window open."""
    return make_order([variant, second_variant], expires_at=utcnow() + timedelta(hours=1))


def add_payment(order_id, external_order_id=None, amount_cents=20000):
    """Payment row as the charge service leaves it (gateway status pending)."""
    payment = Payment(
        order_id=order_id,
        external_order_id=external_order_id or f"ORDER-{order_id}-1700000000000-abc123",
        amount_cents=amount_cents,
        transaction_status="pending",
        gateway_token="snap-token",
        redirect_url="https://app.sandbox.midtrans.com/snap/v2/vtweb/snap-token",
    )
    db.session.add(payment)
    db.session.commit()
    return payment.id, payment.external_order_id


def notification(external_order_id, transaction_status, transaction_id="T1", **extra):
    """Midtrans notification body signed with the test server key."""
    payload = {
        "order_id": external_order_id,
        "transaction_status": transaction_status,
        "transaction_id": transaction_id,
        "status_code": "200",
        "gross_amount": "20000.00",
        "payment_type": "bank_transfer",
    }
    payload.update(extra)
    payload["signature_key"] = webhook_service.compute_signature(
        payload["order_id"], payload["status_code"], payload["gross_amount"], SERVER_KEY
    )
    return payload
