# Overview: Independent fixed-interval tickers that run the reconciliation sweeps.

"""
Worker Scheduler

One daemon thread per worker, each with its own interval and its own app
context. There is no shared scheduler object and no coordination between
workers: correctness under overlap comes from the order row lock and the
state machine's precondition no-op, not from the scheduler.

A tick that raises is logged and the ticker keeps going.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable

from flask import Flask

from ..extensions import db
from . import reconciliation_service


@dataclass(frozen=True)
class WorkerSpec:
    name: str
    interval_config_key: str
    run: Callable
    description: str


WORKERS: dict[str, WorkerSpec] = {
    w.name: w
    for w in (
        WorkerSpec("expiry_sweep", "EXPIRY_SWEEP_INTERVAL_SECONDS",
                   reconciliation_service.expire_overdue_orders,
                   "Cancel unpaid orders past expires_at"),
        WorkerSpec("settlement_sweep", "SETTLEMENT_SWEEP_INTERVAL_SECONDS",
                   reconciliation_service.settle_delivered_orders,
                   "Complete delivered, paid orders"),
        WorkerSpec("refund_sync", "REFUND_SYNC_INTERVAL_SECONDS",
                   reconciliation_service.sync_approved_refunds,
                   "Apply approved refunds to their orders"),
        WorkerSpec("attempt_cleanup", "ATTEMPT_CLEANUP_INTERVAL_SECONDS",
                   reconciliation_service.cleanup_stale_attempts,
                   "Delete old payment attempt rows"),
        WorkerSpec("shipping_reminder", "SHIPPING_REMINDER_INTERVAL_SECONDS",
                   reconciliation_service.queue_shipping_reminders,
                   "Log paid orders waiting for shipment"),
    )
}


def run_worker_once(app: Flask, name: str):
    """Run a single tick of one worker in a fresh app context."""
    spec = WORKERS.get(name)
    if spec is None:
        raise ValueError(f"Unknown worker: {name}. Must be one of {sorted(WORKERS)}")

    with app.app_context():
        try:
            return spec.run()
        finally:
            db.session.remove()


class WorkerTicker(threading.Thread):
    """Runs one worker every `interval` seconds until stopped."""

    def __init__(self, app: Flask, spec: WorkerSpec, interval: float):
        super().__init__(name=f"worker-{spec.name}", daemon=True)
        self.app = app
        self.spec = spec
        self.interval = interval
        self.ticks = 0
        self._stop_event = threading.Event()

    def run(self) -> None:
        while not self._stop_event.wait(self.interval):
            try:
                run_worker_once(self.app, self.spec.name)
            except Exception:
                self.app.logger.exception("Worker %s tick failed", self.spec.name)
            self.ticks += 1

    def stop(self) -> None:
        self._stop_event.set()


class WorkerScheduler:
    """Owns the ticker threads for one app."""

    def __init__(self, app: Flask, names: list[str] | None = None):
        self.app = app
        self.names = names or list(WORKERS)
        self.tickers: list[WorkerTicker] = []

    def start(self) -> None:
        for name in self.names:
            spec = WORKERS[name]
            interval = float(self.app.config[spec.interval_config_key])
            ticker = WorkerTicker(self.app, spec, interval)
            ticker.start()
            self.tickers.append(ticker)
            self.app.logger.info("Started worker %s (every %ss)", name, interval)

    def stop(self, timeout: float | None = 5.0) -> None:
        for ticker in self.tickers:
            ticker.stop()
        for ticker in self.tickers:
            ticker.join(timeout)
        self.tickers = []
