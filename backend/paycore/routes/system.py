# backend/paycore/routes/system.py
"""
System health and version endpoints.

Health covers the database and the gateway configuration; version is
non-sensitive deployment info for debugging.
"""

import sys
import time

from flask import Blueprint, current_app

from ..extensions import db
from ..models import CheckoutSession, Subscription
from ..models.checkout import CHECKOUT_PENDING
from ..services.gateway_settings_service import resolve_gateway_credentials
from paycore.time_utils import to_utc_z, utcnow

system_bp = Blueprint("system", __name__)

API_VERSION = "1.0.0"


def check_database_health() -> dict:
    """
    Check database connectivity and basic operations.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        pending_checkouts = db.session.query(CheckoutSession).filter_by(status=CHECKOUT_PENDING).count()
        subscription_count = db.session.query(Subscription).count()

        elapsed_ms = (time.time() - start_time) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "pending_checkouts": pending_checkouts,
                "subscriptions": subscription_count,
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        db.session.rollback()
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


def check_gateway_config_health() -> dict:
    """
    Gateway credentials present? Missing credentials are degraded, not
    unhealthy: checkouts still run, in demo mode.
    """
    credentials = resolve_gateway_credentials()
    if not credentials.enabled:
        return {
            "status": "degraded",
            "warning": "Payment gateway not configured; checkouts run in demo mode",
        }
    return {
        "status": "healthy",
        "details": {
            "is_live": credentials.is_live,
            "source": credentials.source,
        }
    }


@system_bp.get("/health")
def health():
    """
    Health check endpoint.

    Returns:
    - 200: Healthy or degraded (still operational)
    - 503: Database unreachable
    """
    start_time = time.time()

    database_health = check_database_health()
    gateway_health = check_gateway_config_health()

    all_checks = [database_health, gateway_health]
    if any(check["status"] == "unhealthy" for check in all_checks):
        overall_status = "unhealthy"
        http_status = 503
    elif any(check["status"] == "degraded" for check in all_checks):
        overall_status = "degraded"
        http_status = 200
    else:
        overall_status = "healthy"
        http_status = 200

    total_elapsed_ms = (time.time() - start_time) * 1000

    response = {
        "status": overall_status,
        "timestamp": to_utc_z(utcnow()),
        "total_latency_ms": round(total_elapsed_ms, 2),
        "checks": {
            "database": database_health,
            "gateway": gateway_health,
        }
    }

    return response, http_status


@system_bp.get("/version")
def version():
    """
    Version endpoint for deployment debugging.

    Does NOT expose secret keys, gateway credentials or database URLs.
    """
    env = "production" if not current_app.debug else "development"

    return {
        "api_version": API_VERSION,
        "environment": env,
        "python_version": sys.version.split()[0],
        "server_time": to_utc_z(utcnow()),
    }
