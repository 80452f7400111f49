# backend/khatabook/__init__.py
import logging

from flask import Flask, request

from .config import Config
from .extensions import db, migrate, notifier


def create_app(test_config: dict | None = None, notification_transport=None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if test_config:
        app.config.update(test_config)

    app.logger.setLevel(app.config.get("LOG_LEVEL", "INFO"))
    logging.getLogger("khatabook").setLevel(app.config.get("LOG_LEVEL", "INFO"))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)
    notifier.init_app(app, notification_transport)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Register blueprints
    from .routes.system import system_bp
    from .routes.orders import orders_bp
    from .routes.delivery import delivery_bp
    from .routes.payment_changes import payment_changes_bp
    from .routes.khatabook import khatabook_bp
    from .routes.couriers import couriers_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(delivery_bp)
    app.register_blueprint(payment_changes_bp)
    app.register_blueprint(khatabook_bp)
    app.register_blueprint(couriers_bp)

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        allowed_origins = {
            "http://localhost:5173",
            "http://127.0.0.1:5173",
            "http://localhost:4173",
            "http://127.0.0.1:4173",
        }
        if origin in allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = "Authorization, Content-Type"
            response.headers["Access-Control-Allow-Methods"] = "GET,POST,PUT,DELETE,PATCH,OPTIONS"
        return response

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
