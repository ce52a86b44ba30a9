# backend/paycore/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/paycore.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///paycore.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Process-wide gateway credentials; per-scope overrides live in gateway_configs
    SSLCOMMERZ_STORE_ID = os.environ.get("SSLCOMMERZ_STORE_ID", "")
    SSLCOMMERZ_STORE_PASSWORD = os.environ.get("SSLCOMMERZ_STORE_PASSWORD", "")
    SSLCOMMERZ_IS_LIVE = _env_bool("SSLCOMMERZ_IS_LIVE")
    GATEWAY_TIMEOUT_SECONDS = float(os.environ.get("GATEWAY_TIMEOUT_SECONDS", "20"))

    # Where the gateway sends the browser and the IPN back to
    PUBLIC_BASE_URL = os.environ.get("PUBLIC_BASE_URL", "http://localhost:5000")
    # Where the browser lands after a return callback
    FRONTEND_URL = os.environ.get("FRONTEND_URL", "http://localhost:3000")

    CHECKOUT_CURRENCY = os.environ.get("CHECKOUT_CURRENCY", "BDT")
    # Verified amount may differ from the session price by at most this fraction
    CHECKOUT_AMOUNT_TOLERANCE = float(os.environ.get("CHECKOUT_AMOUNT_TOLERANCE", "0.01"))
    CHECKOUT_PENDING_TTL_HOURS = int(os.environ.get("CHECKOUT_PENDING_TTL_HOURS", "48"))

    SUBSCRIPTION_GRACE_DAYS = int(os.environ.get("SUBSCRIPTION_GRACE_DAYS", "7"))

    # Bearer key for the subscription and gateway settings admin endpoints
    ADMIN_API_KEY = os.environ.get("ADMIN_API_KEY", "")
