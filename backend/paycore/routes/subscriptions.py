# Overview: Flask API routes for subscriptions; admin operations on the subscription ledger.

# backend/paycore/routes/subscriptions.py
"""
Subscription Admin API Routes

WHY: Operators need to look up, extend, and fix tenant subscriptions
outside the checkout flow (manual payments, support cases, reminders).

SECURITY:
- Every route requires the admin API key (require_admin_key)
"""

from flask import Blueprint, current_app, jsonify, request

from ..decorators import require_admin_key
from ..services import subscription_service
from ..services.concurrency import ConcurrencyConflict
from ..services.subscription_service import SubscriptionError, SubscriptionNotFoundError
from ..validation import ValidationError, parse_money_to_cents


subscriptions_bp = Blueprint("subscriptions", __name__, url_prefix="/api/subscriptions")


def _paid_cents(data: dict):
    if data.get("paid_amount") in (None, ""):
        return None
    return parse_money_to_cents(data.get("paid_amount"), field="paid_amount")


# =============================================================================
# QUERIES
# =============================================================================

@subscriptions_bp.get("/tenant/<tenant_id>")
@require_admin_key
def get_tenant_subscription_route(tenant_id: str):
    """
    Current subscription for a tenant, with its dynamic status.

    Returns:
        200: {subscription: {..., dynamic_status, status_details}}
        404: Tenant has no subscription
    """
    try:
        sub = subscription_service.get_tenant_subscription(tenant_id)
        if not sub:
            return jsonify({"error": f"No subscription for tenant {tenant_id}"}), 404
        return jsonify({"subscription": subscription_service.subscription_with_status(sub)}), 200

    except Exception:
        current_app.logger.exception("Failed to load tenant subscription")
        return jsonify({"error": "Internal server error"}), 500


@subscriptions_bp.get("/expiring")
@require_admin_key
def list_expiring_route():
    """
    Active subscriptions whose period ends within ?days= (default 7).
    """
    try:
        days = request.args.get("days", default=subscription_service.EXPIRING_SOON_DAYS, type=int)
        subs = subscription_service.list_expiring(days)
        return jsonify({
            "days": days,
            "subscriptions": [subscription_service.subscription_with_status(s) for s in subs],
        }), 200

    except ValidationError as e:
        return jsonify(e.to_dict()), 400
    except Exception:
        current_app.logger.exception("Failed to list expiring subscriptions")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# MUTATIONS
# =============================================================================

@subscriptions_bp.post("/")
@require_admin_key
def create_or_renew_route():
    """
    Record a payment for a tenant: creates the subscription on first
    payment, renews it afterwards. With trial_days a trial is created.

    Request body:
    {
        "tenant_id": "acme",
        "plan_id": "pro",
        "billing_cycle_months": 12,
        "paid_amount": "5000.00",   (optional)
        "trial_days": 14            (optional, first subscription only)
    }

    Returns:
        201: {subscription}
        400: Invalid input
        409: Tenant already has an open subscription (trial create)
    """
    try:
        data = request.get_json(silent=True) or {}
        paid = _paid_cents(data)

        if data.get("trial_days") is not None:
            sub = subscription_service.create_subscription(
                data.get("tenant_id"),
                data.get("plan_id"),
                data.get("billing_cycle_months", 1),
                paid_amount_cents=paid or 0,
                trial_days=data.get("trial_days"),
            )
        else:
            sub = subscription_service.create_or_renew(
                data.get("tenant_id"),
                data.get("plan_id"),
                data.get("billing_cycle_months", 1),
                paid or 0,
            )
        return jsonify({"subscription": subscription_service.subscription_with_status(sub)}), 201

    except ValidationError as e:
        return jsonify(e.to_dict()), 400
    except (SubscriptionError, ConcurrencyConflict) as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to create subscription")
        return jsonify({"error": "Internal server error"}), 500


@subscriptions_bp.post("/<subscription_id>/renew")
@require_admin_key
def renew_route(subscription_id: str):
    """
    Extend by one billing cycle (optionally a different cycle length/plan).

    Request body (all optional):
    {"billing_cycle_months": 3, "paid_amount": "1500.00", "plan_id": "pro"}
    """
    try:
        data = request.get_json(silent=True) or {}
        sub = subscription_service.renew(
            subscription_id,
            data.get("billing_cycle_months"),
            _paid_cents(data),
            plan_id=data.get("plan_id"),
        )
        return jsonify({"subscription": subscription_service.subscription_with_status(sub)}), 200

    except ValidationError as e:
        return jsonify(e.to_dict()), 400
    except SubscriptionNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ConcurrencyConflict as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to renew subscription")
        return jsonify({"error": "Internal server error"}), 500


@subscriptions_bp.post("/<subscription_id>/cancel")
@require_admin_key
def cancel_route(subscription_id: str):
    """
    Cancel a subscription.

    Request body: {"at_period_end": true}  (default: keep access until period end)
    """
    try:
        data = request.get_json(silent=True) or {}
        at_period_end = data.get("at_period_end", True)
        if not isinstance(at_period_end, bool):
            return jsonify({"error": "at_period_end must be a boolean"}), 400
        sub = subscription_service.cancel_subscription(subscription_id, at_period_end=at_period_end)
        return jsonify({"subscription": subscription_service.subscription_with_status(sub)}), 200

    except SubscriptionNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ConcurrencyConflict as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to cancel subscription")
        return jsonify({"error": "Internal server error"}), 500


@subscriptions_bp.patch("/<subscription_id>/status")
@require_admin_key
def update_status_route(subscription_id: str):
    """
    Set the stored status (admin correction).

    Request body: {"status": "past_due"}
    """
    try:
        data = request.get_json(silent=True) or {}
        sub = subscription_service.update_status(subscription_id, data.get("status"))
        return jsonify({"subscription": subscription_service.subscription_with_status(sub)}), 200

    except ValidationError as e:
        return jsonify(e.to_dict()), 400
    except SubscriptionNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except (SubscriptionError, ConcurrencyConflict) as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to update subscription status")
        return jsonify({"error": "Internal server error"}), 500
