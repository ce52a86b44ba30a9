# backend/paycore/__init__.py
from __future__ import annotations

import logging

from flask import Flask, request

from .config import Config
from .extensions import db, migrate


def create_app(config_overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    # Overrides must land before db.init_app reads the database URI
    if config_overrides:
        app.config.update(config_overrides)

    app.logger.setLevel(getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Register blueprints
    from .routes.system import system_bp
    from .routes.checkout import checkout_bp
    from .routes.subscriptions import subscriptions_bp
    from .routes.gateway_settings import gateway_settings_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(checkout_bp)
    app.register_blueprint(subscriptions_bp)
    app.register_blueprint(gateway_settings_bp)

    # A completed checkout becomes a subscription create-or-renew
    from .services import events, subscription_service
    events.subscribe(events.CHECKOUT_COMPLETED, subscription_service.on_checkout_completed)

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        frontend = (app.config.get("FRONTEND_URL") or "").rstrip("/")
        if origin and origin == frontend:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = "Authorization, Content-Type"
            response.headers["Access-Control-Allow-Methods"] = "GET,POST,PUT,PATCH,OPTIONS"
        return response

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
