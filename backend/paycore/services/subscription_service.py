# Overview: Service-layer operations for subscriptions; billing-cycle state per tenant.

"""
Subscription Ledger

WHY: Keeps one tenant's paid time correct across first purchase, early and
late renewals, trials and administrative changes.

DESIGN PRINCIPLES:
- Stored status vs dynamic status: an "active" row may already be in its
  grace period or expired. That is computed on read by
  compute_dynamic_status and never written back, so nothing depends on a
  scheduler flipping rows.
- Renewal never shrinks paid time: the new period starts at
  max(now, current_period_end).
- One open (active/trial/past_due) subscription per tenant, enforced by a
  partial unique index and handled here by retrying a losing create as a
  renewal.
- Each paying checkout is applied at most once (last_transaction_id).
"""

from __future__ import annotations

import secrets
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Subscription
from ..models.subscription import (
    SUB_ACTIVE,
    SUB_CANCELLED,
    SUB_EXPIRED,
    SUB_PAST_DUE,
    SUB_TRIAL,
    SUBSCRIPTION_OPEN_STATUSES,
    SUBSCRIPTION_STATUSES,
)
from ..time_utils import add_months, as_naive_utc, days_until, to_utc_z, utcnow
from ..validation import ValidationError, parse_billing_cycle
from .concurrency import lock_for_update, run_with_retry


DYNAMIC_GRACE_PERIOD = "grace_period"
DEFAULT_GRACE_DAYS = 7
EXPIRING_SOON_DAYS = 7
URGENT_NOTICE_DAYS = 3


class SubscriptionError(Exception):
    """Business-rule conflict (e.g., tenant already has an open subscription)."""


class SubscriptionNotFoundError(SubscriptionError):
    pass


@dataclass(frozen=True)
class DynamicStatus:
    status: str
    is_expired: bool
    is_grace_period: bool
    days_remaining: int
    is_expiring_soon: bool
    requires_payment: bool
    is_trial: bool = False
    is_past_due: bool = False
    grace_days_remaining: int = 0
    show_renewal_notice: bool = False
    show_urgent_notice: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


# =============================================================================
# DYNAMIC STATUS
# =============================================================================

def compute_dynamic_status(subscription: Subscription, now: datetime | None = None) -> DynamicStatus:
    """
    Derive the effective status of a subscription at `now`.

    Pure: reads only the passed record, writes nothing.

    - stored status != active: mirrors the stored status
    - now <= current_period_end: active
    - current_period_end < now <= grace_period_ends_at: grace_period
    - now > grace_period_ends_at: expired
    """
    now = as_naive_utc(now) or utcnow()
    period_end = as_naive_utc(subscription.current_period_end)
    grace_end = as_naive_utc(subscription.grace_period_ends_at) or period_end
    stored = subscription.status

    if stored != SUB_ACTIVE:
        is_expired = stored == SUB_EXPIRED
        days_remaining = 0
        if stored in (SUB_TRIAL, SUB_PAST_DUE):
            days_remaining = max(0, days_until(period_end, now))
        return DynamicStatus(
            status=stored,
            is_expired=is_expired,
            is_grace_period=False,
            days_remaining=days_remaining,
            is_expiring_soon=0 < days_remaining <= EXPIRING_SOON_DAYS,
            requires_payment=is_expired,
            is_trial=stored == SUB_TRIAL,
            is_past_due=stored == SUB_PAST_DUE,
        )

    if now <= period_end:
        days_remaining = days_until(period_end, now)
        return DynamicStatus(
            status=SUB_ACTIVE,
            is_expired=False,
            is_grace_period=False,
            days_remaining=days_remaining,
            is_expiring_soon=0 < days_remaining <= EXPIRING_SOON_DAYS,
            requires_payment=False,
            grace_days_remaining=max(0, days_until(grace_end, now)),
            show_renewal_notice=URGENT_NOTICE_DAYS < days_remaining <= EXPIRING_SOON_DAYS,
            show_urgent_notice=0 < days_remaining <= URGENT_NOTICE_DAYS,
        )

    if now <= grace_end:
        days_remaining = days_until(grace_end, now)
        return DynamicStatus(
            status=DYNAMIC_GRACE_PERIOD,
            is_expired=False,
            is_grace_period=True,
            days_remaining=days_remaining,
            is_expiring_soon=0 < days_remaining <= EXPIRING_SOON_DAYS,
            requires_payment=True,
            is_past_due=True,
            grace_days_remaining=days_remaining,
        )

    return DynamicStatus(
        status=SUB_EXPIRED,
        is_expired=True,
        is_grace_period=False,
        days_remaining=0,
        is_expiring_soon=False,
        requires_payment=True,
    )


def subscription_with_status(subscription: Subscription, now: datetime | None = None) -> dict:
    data = subscription.to_dict()
    dynamic = compute_dynamic_status(subscription, now)
    data["dynamic_status"] = dynamic.status
    data["status_details"] = dynamic.to_dict()
    return data


# =============================================================================
# HELPERS
# =============================================================================

def _grace_days() -> int:
    return int(current_app.config.get("SUBSCRIPTION_GRACE_DAYS", DEFAULT_GRACE_DAYS))


def _new_subscription_id() -> str:
    return f"SUB{int(time.time() * 1000)}{secrets.token_hex(4).upper()}"


def _validate_paid_amount(paid_amount_cents) -> int:
    if paid_amount_cents is None:
        return 0
    if isinstance(paid_amount_cents, bool) or not isinstance(paid_amount_cents, int):
        raise ValidationError("paid_amount_cents must be an integer", {"paid_amount_cents": "must be an integer"})
    if paid_amount_cents < 0:
        raise ValidationError("paid_amount_cents must be >= 0", {"paid_amount_cents": "must be >= 0"})
    return paid_amount_cents


def _require_tenant(tenant_id) -> str:
    tenant_id = (str(tenant_id).strip() if tenant_id is not None else "")
    if not tenant_id:
        raise ValidationError("tenant_id is required", {"tenant_id": "is required"})
    return tenant_id


def _require_plan(plan_id) -> str:
    plan_id = (str(plan_id).strip() if plan_id is not None else "")
    if not plan_id:
        raise ValidationError("plan_id is required", {"plan_id": "is required"})
    return plan_id


def _open_subscription_query(tenant_id: str):
    return db.session.query(Subscription).filter(
        Subscription.tenant_id == tenant_id,
        Subscription.status.in_(SUBSCRIPTION_OPEN_STATUSES),
    )


# =============================================================================
# QUERIES
# =============================================================================

def get_subscription(subscription_id: str) -> Subscription:
    sub = db.session.query(Subscription).filter_by(subscription_id=subscription_id).first()
    if not sub:
        raise SubscriptionNotFoundError(f"Subscription {subscription_id} not found")
    return sub


def get_tenant_subscription(tenant_id: str) -> Subscription | None:
    """The tenant's open subscription, else its most recent one, else None."""
    sub = _open_subscription_query(tenant_id).order_by(Subscription.created_at.desc()).first()
    if sub:
        return sub
    return (
        db.session.query(Subscription)
        .filter_by(tenant_id=tenant_id)
        .order_by(Subscription.id.desc())
        .first()
    )


def list_expiring(days_ahead: int = EXPIRING_SOON_DAYS, now: datetime | None = None) -> list[Subscription]:
    """
    Stored-active subscriptions whose period ends within [now, now + days_ahead].

    Consumed by renewal reminder jobs outside this core.
    """
    if days_ahead < 0:
        raise ValidationError("days_ahead must be >= 0", {"days": "must be >= 0"})
    now = as_naive_utc(now) or utcnow()
    horizon = now + timedelta(days=days_ahead)
    return (
        db.session.query(Subscription)
        .filter(
            Subscription.status == SUB_ACTIVE,
            Subscription.current_period_end >= now,
            Subscription.current_period_end <= horizon,
        )
        .order_by(Subscription.current_period_end.asc())
        .all()
    )


# =============================================================================
# CREATE / RENEW
# =============================================================================

def create_subscription(
    tenant_id: str,
    plan_id: str,
    billing_cycle_months: int,
    *,
    amount_cents: int = 0,
    paid_amount_cents: int = 0,
    currency: str | None = None,
    trial_days: int | None = None,
    transaction_id: str | None = None,
    now: datetime | None = None,
) -> Subscription:
    """
    Create the first subscription for a tenant.

    Raises:
        SubscriptionError: Tenant already has an open subscription
    """
    tenant_id = _require_tenant(tenant_id)
    plan_id = _require_plan(plan_id)
    months = parse_billing_cycle(billing_cycle_months)
    paid = _validate_paid_amount(paid_amount_cents)
    if trial_days is not None and (isinstance(trial_days, bool) or not isinstance(trial_days, int) or trial_days < 1):
        raise ValidationError("trial_days must be a positive integer", {"trial_days": "must be a positive integer"})

    if _open_subscription_query(tenant_id).first():
        raise SubscriptionError(f"Tenant {tenant_id} already has an active subscription")

    now = as_naive_utc(now) or utcnow()
    period_end = add_months(now, months)
    sub = Subscription(
        subscription_id=_new_subscription_id(),
        tenant_id=tenant_id,
        plan_id=plan_id,
        billing_cycle_months=months,
        amount_cents=amount_cents or paid,
        currency=currency or current_app.config.get("CHECKOUT_CURRENCY", "BDT"),
        status=SUB_TRIAL if trial_days else SUB_ACTIVE,
        current_period_start=now,
        current_period_end=period_end,
        grace_period_ends_at=period_end + timedelta(days=_grace_days()),
        trial_ends_at=now + timedelta(days=trial_days) if trial_days else None,
        total_paid_cents=paid,
        renewal_count=0,
        last_payment_at=now if paid else None,
        last_transaction_id=transaction_id,
        auto_renew=True,
        cancel_at_period_end=False,
    )
    db.session.add(sub)
    db.session.commit()
    current_app.logger.info(
        "Subscription created %s tenant=%s plan=%s months=%s", sub.subscription_id, tenant_id, plan_id, months
    )
    return sub


def renew(
    subscription_id: str,
    billing_cycle_months: int | None = None,
    paid_amount_cents: int | None = None,
    *,
    plan_id: str | None = None,
    transaction_id: str | None = None,
    now: datetime | None = None,
) -> Subscription:
    """
    Extend a subscription by one billing cycle.

    start = max(now, current_period_end), so renewing early adds time on top
    of what is left instead of resetting it. Status returns to active.

    A transaction_id equal to the one last applied is ignored, so replaying
    the same completed checkout cannot extend twice.
    """
    months = parse_billing_cycle(billing_cycle_months) if billing_cycle_months is not None else None
    paid = _validate_paid_amount(paid_amount_cents)

    def _op():
        sub = lock_for_update(
            db.session.query(Subscription).filter_by(subscription_id=subscription_id)
        ).first()
        if not sub:
            raise SubscriptionNotFoundError(f"Subscription {subscription_id} not found")

        if transaction_id and sub.last_transaction_id == transaction_id:
            current_app.logger.info(
                "Renewal for %s already applied from %s; skipping", subscription_id, transaction_id
            )
            return sub

        current = as_naive_utc(now) or utcnow()
        cycle = months or sub.billing_cycle_months
        start = max(current, as_naive_utc(sub.current_period_end))
        end = add_months(start, cycle)

        sub.current_period_start = start
        sub.current_period_end = end
        sub.grace_period_ends_at = end + timedelta(days=_grace_days())
        sub.billing_cycle_months = cycle
        if plan_id:
            sub.plan_id = plan_id
        if paid:
            sub.amount_cents = paid
            sub.last_payment_at = current
        sub.total_paid_cents = (sub.total_paid_cents or 0) + paid
        sub.renewal_count = (sub.renewal_count or 0) + 1
        sub.status = SUB_ACTIVE
        sub.cancel_at_period_end = False
        sub.cancelled_at = None
        if transaction_id:
            sub.last_transaction_id = transaction_id

        db.session.commit()
        current_app.logger.info(
            "Subscription renewed %s until %s (renewal #%s)", subscription_id, to_utc_z(end), sub.renewal_count
        )
        return sub

    return run_with_retry(_op)


def create_or_renew(
    tenant_id: str,
    plan_id: str,
    billing_cycle_months: int,
    paid_amount_cents: int = 0,
    *,
    currency: str | None = None,
    transaction_id: str | None = None,
    now: datetime | None = None,
) -> Subscription:
    """
    First payment creates the subscription; later payments renew it.

    Two concurrent first payments for the same tenant collide on the
    open-subscription unique index; the loser retries as a renewal.
    """
    tenant_id = _require_tenant(tenant_id)
    plan_id = _require_plan(plan_id)

    for attempt in range(2):
        existing = _open_subscription_query(tenant_id).order_by(Subscription.id.desc()).first()
        if existing:
            return renew(
                existing.subscription_id,
                billing_cycle_months,
                paid_amount_cents,
                plan_id=plan_id,
                transaction_id=transaction_id,
                now=now,
            )
        try:
            return create_subscription(
                tenant_id,
                plan_id,
                billing_cycle_months,
                paid_amount_cents=paid_amount_cents,
                currency=currency,
                transaction_id=transaction_id,
                now=now,
            )
        except IntegrityError:
            db.session.rollback()
            if attempt:
                raise
            current_app.logger.info("Concurrent subscription create for tenant=%s; renewing instead", tenant_id)


# =============================================================================
# ADMINISTRATIVE CHANGES
# =============================================================================

def update_status(subscription_id: str, status: str, *, now: datetime | None = None) -> Subscription:
    if status not in SUBSCRIPTION_STATUSES:
        raise ValidationError(
            f"Invalid status: {status}. Must be one of {sorted(SUBSCRIPTION_STATUSES)}",
            {"status": "is invalid"},
        )

    def _op():
        sub = lock_for_update(
            db.session.query(Subscription).filter_by(subscription_id=subscription_id)
        ).first()
        if not sub:
            raise SubscriptionNotFoundError(f"Subscription {subscription_id} not found")

        if status in SUBSCRIPTION_OPEN_STATUSES and sub.status not in SUBSCRIPTION_OPEN_STATUSES:
            other = _open_subscription_query(sub.tenant_id).filter(Subscription.id != sub.id).first()
            if other:
                raise SubscriptionError(
                    f"Tenant {sub.tenant_id} already has an active subscription ({other.subscription_id})"
                )

        sub.status = status
        if status == SUB_CANCELLED:
            sub.cancelled_at = now or utcnow()
            sub.auto_renew = False
        db.session.commit()
        current_app.logger.info("Subscription %s status set to %s", subscription_id, status)
        return sub

    return run_with_retry(_op)


def cancel_subscription(subscription_id: str, *, at_period_end: bool = True, now: datetime | None = None) -> Subscription:
    """
    Cancel a subscription.

    at_period_end=True keeps access until the paid period ends and only
    stops auto-renewal; otherwise the subscription is cancelled now.
    """
    if not at_period_end:
        return update_status(subscription_id, SUB_CANCELLED, now=now)

    def _op():
        sub = lock_for_update(
            db.session.query(Subscription).filter_by(subscription_id=subscription_id)
        ).first()
        if not sub:
            raise SubscriptionNotFoundError(f"Subscription {subscription_id} not found")
        sub.cancel_at_period_end = True
        sub.auto_renew = False
        db.session.commit()
        return sub

    return run_with_retry(_op)


# =============================================================================
# CHECKOUT CONSUMER
# =============================================================================

def on_checkout_completed(session) -> Subscription | None:
    """
    Turn a completed checkout session into a subscription create-or-renew.

    Registered as the CHECKOUT_COMPLETED handler in create_app. The tenant
    is the session's tenant_id (renewals) or its requested subdomain (new
    merchants). Sessions with neither cannot be attributed and are skipped.
    """
    tenant_id = session.tenant_id or session.custom_subdomain
    if not tenant_id:
        current_app.logger.warning(
            "Completed checkout %s has no tenant_id or subdomain; no subscription recorded",
            session.transaction_id,
        )
        return None

    paid = session.verified_amount_cents
    if paid is None:
        paid = 0 if session.is_free else session.plan_price_cents

    return create_or_renew(
        tenant_id,
        session.plan_id,
        session.billing_cycle_months,
        paid,
        currency=session.currency,
        transaction_id=session.transaction_id,
    )
