# backend/orderpay/__init__.py
from flask import Flask

from .config import Config
from .extensions import db, migrate, gateway



def create_app(config_overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    app.logger.setLevel(app.config["LOG_LEVEL"])

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)
    gateway.init_app(app)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Register blueprints
    from .routes.system import system_bp
    from .routes.payments import payments_bp
    from .routes.orders import orders_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(orders_bp)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    # Reconciliation tickers inside the web process (otherwise: flask workers serve)
    if app.config["WORKERS_ENABLED"] and not app.config.get("TESTING"):
        from .services.scheduler import WorkerScheduler
        scheduler = WorkerScheduler(app)
        scheduler.start()
        app.extensions["worker_scheduler"] = scheduler

    return app
