# backend/orderpay/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/orderpay.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///orderpay.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Midtrans Snap gateway
    MIDTRANS_SERVER_KEY = os.environ.get("MIDTRANS_SERVER_KEY", "")
    MIDTRANS_SNAP_URL = os.environ.get(
        "MIDTRANS_SNAP_URL",
        "https://app.sandbox.midtrans.com/snap/v1/transactions",
    )
    GATEWAY_TIMEOUT_SECONDS = float(os.environ.get("GATEWAY_TIMEOUT_SECONDS", "10"))

    # A pending payment younger than this blocks a new charge for the order
    CHARGE_INFLIGHT_SECONDS = int(os.environ.get("CHARGE_INFLIGHT_SECONDS", "60"))

    # Inbound webhook signatures are checked unless explicitly disabled
    PAYMENT_WEBHOOK_VERIFY_SIGNATURE = _env_bool("PAYMENT_WEBHOOK_VERIFY_SIGNATURE", "true")

    # Default payment window applied by the checkout helper
    ORDER_PAYMENT_WINDOW_MINUTES = int(os.environ.get("ORDER_PAYMENT_WINDOW_MINUTES", "60"))

    # Reconciliation worker intervals (seconds)
    EXPIRY_SWEEP_INTERVAL_SECONDS = int(os.environ.get("EXPIRY_SWEEP_INTERVAL_SECONDS", "60"))
    SETTLEMENT_SWEEP_INTERVAL_SECONDS = int(os.environ.get("SETTLEMENT_SWEEP_INTERVAL_SECONDS", "600"))
    REFUND_SYNC_INTERVAL_SECONDS = int(os.environ.get("REFUND_SYNC_INTERVAL_SECONDS", "300"))
    ATTEMPT_CLEANUP_INTERVAL_SECONDS = int(os.environ.get("ATTEMPT_CLEANUP_INTERVAL_SECONDS", "86400"))
    SHIPPING_REMINDER_INTERVAL_SECONDS = int(os.environ.get("SHIPPING_REMINDER_INTERVAL_SECONDS", "21600"))

    PAYMENT_ATTEMPT_RETENTION_HOURS = int(os.environ.get("PAYMENT_ATTEMPT_RETENTION_HOURS", "24"))
    SHIPPING_REMINDER_AGE_HOURS = int(os.environ.get("SHIPPING_REMINDER_AGE_HOURS", "24"))

    # Start the ticker threads inside the web process (otherwise: flask workers serve)
    WORKERS_ENABLED = _env_bool("WORKERS_ENABLED", "false")
