# Overview: Flask API routes for checkout; init, session lookup and gateway callbacks.

# backend/paycore/routes/checkout.py
"""
Checkout API Routes

WHY: Public surface of the checkout orchestrator. The frontend starts a
checkout here; the payment gateway sends the browser back here and posts
its IPN here.

DESIGN:
- init returns the hosted page URL (or completes free plans immediately)
- success/fail/cancel accept GET or POST (form or query string) and always
  answer with a redirect to the frontend result page
- ipn answers in plain text; the gateway only looks at the status code

SECURITY:
- No callback is trusted by itself: success and IPN are verified against
  the gateway's validator API before a session completes
- Payment details are never returned by the session lookup
"""

from urllib.parse import urlencode

from flask import Blueprint, current_app, jsonify, redirect, request

from ..models.checkout import CHECKOUT_CANCELLED, CHECKOUT_FAILED
from ..services import checkout_service
from ..services.checkout_service import CheckoutNotFoundError
from ..services.gateway_client import GatewayInitError, GatewayUnavailable
from ..validation import ValidationError


checkout_bp = Blueprint("checkout", __name__, url_prefix="/api/checkout")


def _callback_data() -> dict:
    """Gateway callbacks arrive as form posts or query strings."""
    data = request.args.to_dict()
    data.update(request.form.to_dict())
    return data


def _result_page(status: str) -> str:
    if status == CHECKOUT_FAILED:
        return "failed"
    if status == CHECKOUT_CANCELLED:
        return "cancelled"
    # completed, or pending while verification catches up (page polls)
    return "success"


def _redirect_to_frontend(session):
    base = current_app.config.get("FRONTEND_URL", "").rstrip("/")
    query = urlencode({"tran_id": session.transaction_id})
    return redirect(f"{base}/checkout/{_result_page(session.status)}?{query}", code=302)


# =============================================================================
# INIT / LOOKUP
# =============================================================================

@checkout_bp.post("/init")
def init_checkout_route():
    """
    Start a checkout.

    Request body:
    {
        "plan_id": "pro",
        "plan_name": "Pro",
        "plan_price": "500.00",
        "billing_cycle_months": 1,
        "merchant_name": "Acme", "merchant_email": "owner@acme.test",
        "custom_subdomain": "acme",            (new merchant)
        "tenant_id": "t_123",                  (renewal, optional)
        "customer_name": "...", "customer_email": "...", "customer_phone": "..."
    }

    Returns:
        201: {success, transaction_id, status, demo_mode, gateway_page_url, session_key, message}
        400: Validation error with field detail
        502: Gateway refused to open a payment page
        503: Gateway unreachable (retry later)
        500: Server error
    """
    try:
        payload = request.get_json(silent=True)
        result = checkout_service.init_checkout(payload)
        return jsonify(result), 201

    except ValidationError as e:
        return jsonify(e.to_dict()), 400
    except GatewayUnavailable:
        return jsonify({"error": "Payment gateway unavailable, please retry"}), 503
    except GatewayInitError as e:
        return jsonify({"error": "Payment initialization failed", "reason": e.reason}), 502
    except Exception:
        current_app.logger.exception("Failed to initialize checkout")
        return jsonify({"error": "Internal server error"}), 500


@checkout_bp.get("/session")
def get_session_route():
    """
    Look up a checkout session (the result page polls this).

    Query params:
    - transaction_id (or tran_id)

    Returns:
        200: Session with payment details redacted
        400: transaction_id missing
        404: Unknown transaction id
    """
    transaction_id = request.args.get("transaction_id") or request.args.get("tran_id")
    try:
        session = checkout_service.get_checkout_session(transaction_id)
        return jsonify({"session": session}), 200

    except ValidationError as e:
        return jsonify(e.to_dict()), 400
    except CheckoutNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Failed to load checkout session")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# BROWSER RETURNS
# =============================================================================

def _handle_return(handler, label: str):
    try:
        session = handler(_callback_data())
        return _redirect_to_frontend(session)

    except ValidationError as e:
        return jsonify(e.to_dict()), 400
    except CheckoutNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Failed to process %s return", label)
        return jsonify({"error": "Internal server error"}), 500


@checkout_bp.route("/success", methods=["GET", "POST"])
def success_return_route():
    """Browser return from the success URL. Triggers verification only."""
    return _handle_return(checkout_service.handle_success_return, "success")


@checkout_bp.route("/fail", methods=["GET", "POST"])
def fail_return_route():
    return _handle_return(checkout_service.handle_fail_return, "fail")


@checkout_bp.route("/cancel", methods=["GET", "POST"])
def cancel_return_route():
    return _handle_return(checkout_service.handle_cancel_return, "cancel")


# =============================================================================
# IPN
# =============================================================================

@checkout_bp.post("/ipn")
def ipn_route():
    """
    Server-to-server payment notification.

    Returns:
        200: "IPN received" (also for duplicates and unverifiable payments)
        400: tran_id or val_id missing
        404: Unknown transaction id
    """
    try:
        checkout_service.handle_ipn(_callback_data())
        return "IPN received", 200, {"Content-Type": "text/plain"}

    except ValidationError as e:
        return jsonify(e.to_dict()), 400
    except CheckoutNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Failed to process IPN")
        return jsonify({"error": "Internal server error"}), 500
