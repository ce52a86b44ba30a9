# Overview: Pytest coverage for the subscription ledger; renewal math and dynamic status.

"""
Subscription Ledger Tests

Verifies:
- Dynamic status around the period end and grace period boundaries
- Renewal never shrinks remaining paid time
- Calendar month arithmetic clamps to month end
- create_or_renew creates once, then renews
- Completed checkouts feed the ledger exactly once
"""

from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest
from sqlalchemy.exc import IntegrityError

from paycore.extensions import db
from paycore.models import Subscription
from paycore.services import subscription_service
from paycore.services.subscription_service import (
    SubscriptionError,
    SubscriptionNotFoundError,
    compute_dynamic_status,
)
from paycore.time_utils import add_months
from paycore.validation import ValidationError


NOW = datetime(2026, 3, 15, 12, 0, 0)


def _sub(**overrides):
    """Unsaved subscription for pure status checks."""
    end = overrides.pop("end", NOW)
    fields = dict(
        subscription_id="SUB_T",
        tenant_id="acme",
        plan_id="pro",
        billing_cycle_months=1,
        status="active",
        current_period_start=end - timedelta(days=30),
        current_period_end=end,
        grace_period_ends_at=end + timedelta(days=7),
    )
    fields.update(overrides)
    return Subscription(**fields)


# =============================================================================
# DYNAMIC STATUS
# =============================================================================


class TestDynamicStatus:

    def test_one_hour_before_end_is_active(self):
        status = compute_dynamic_status(_sub(end=NOW), NOW - timedelta(hours=1))
        assert status.status == "active"
        assert status.days_remaining == 1
        assert status.is_expiring_soon is True
        assert status.requires_payment is False
        assert status.show_urgent_notice is True

    def test_one_hour_after_end_is_grace_period(self):
        status = compute_dynamic_status(_sub(end=NOW), NOW + timedelta(hours=1))
        assert status.status == "grace_period"
        assert status.is_grace_period is True
        assert status.requires_payment is True
        assert status.days_remaining == 7
        assert status.grace_days_remaining == 7

    def test_eight_days_after_end_is_expired(self):
        status = compute_dynamic_status(_sub(end=NOW), NOW + timedelta(days=8))
        assert status.status == "expired"
        assert status.is_expired is True
        assert status.days_remaining == 0
        assert status.requires_payment is True

    def test_renewal_notice_window(self):
        status = compute_dynamic_status(_sub(end=NOW + timedelta(days=5)), NOW)
        assert status.show_renewal_notice is True
        assert status.show_urgent_notice is False

    def test_far_from_end_is_quiet(self):
        status = compute_dynamic_status(_sub(end=NOW + timedelta(days=20)), NOW)
        assert status.days_remaining == 20
        assert status.is_expiring_soon is False
        assert status.show_renewal_notice is False

    @pytest.mark.parametrize("stored", ["cancelled", "trial", "past_due", "expired"])
    def test_non_active_stored_status_is_mirrored(self, stored):
        status = compute_dynamic_status(_sub(end=NOW + timedelta(days=3), status=stored), NOW)
        assert status.status == stored
        assert status.is_grace_period is False
        assert status.is_trial is (stored == "trial")
        assert status.is_past_due is (stored == "past_due")
        assert status.requires_payment is (stored == "expired")

    def test_pure_function(self):
        sub = _sub(end=NOW)
        compute_dynamic_status(sub, NOW + timedelta(days=30))
        assert sub.status == "active"


class TestAddMonths:

    @pytest.mark.parametrize("start,months,expected", [
        (datetime(2026, 1, 31), 1, datetime(2026, 2, 28)),
        (datetime(2028, 1, 31), 1, datetime(2028, 2, 29)),
        (datetime(2026, 3, 31), 1, datetime(2026, 4, 30)),
        (datetime(2026, 11, 15), 3, datetime(2027, 2, 15)),
        (datetime(2026, 5, 10), 12, datetime(2027, 5, 10)),
    ])
    def test_clamps_to_month_end(self, start, months, expected):
        assert add_months(start, months) == expected


# =============================================================================
# CREATE / RENEW
# =============================================================================


class TestCreateAndRenew:

    def test_first_payment_creates(self, db_session):
        sub = subscription_service.create_or_renew("acme", "pro", 1, 50000, now=NOW)

        assert sub.status == "active"
        assert sub.current_period_start == NOW
        assert sub.current_period_end == datetime(2026, 4, 15, 12, 0, 0)
        assert sub.grace_period_ends_at == datetime(2026, 4, 22, 12, 0, 0)
        assert sub.total_paid_cents == 50000
        assert sub.renewal_count == 0
        assert sub.subscription_id.startswith("SUB")

    def test_second_payment_renews(self, db_session):
        first = subscription_service.create_or_renew("acme", "pro", 1, 50000, now=NOW)
        second = subscription_service.create_or_renew("acme", "pro", 1, 50000, now=NOW + timedelta(days=10))

        assert second.subscription_id == first.subscription_id
        assert second.renewal_count == 1
        assert second.total_paid_cents == 100000
        assert db.session.query(Subscription).filter_by(tenant_id="acme").count() == 1

    def test_early_renewal_keeps_remaining_time(self, db_session):
        sub = subscription_service.create_or_renew("acme", "pro", 1, 50000, now=NOW)
        old_end = sub.current_period_end

        renewed = subscription_service.renew(sub.subscription_id, 1, 50000, now=old_end - timedelta(days=10))

        assert renewed.current_period_start == old_end
        assert renewed.current_period_end == add_months(old_end, 1)
        assert renewed.grace_period_ends_at == renewed.current_period_end + timedelta(days=7)

    def test_late_renewal_starts_now(self, db_session):
        sub = subscription_service.create_or_renew("acme", "pro", 1, 50000, now=NOW)
        late = sub.current_period_end + timedelta(days=3)

        renewed = subscription_service.renew(sub.subscription_id, 3, 150000, now=late)

        assert renewed.current_period_start == late
        assert renewed.current_period_end == add_months(late, 3)
        assert renewed.billing_cycle_months == 3
        assert renewed.status == "active"

    def test_renew_reactivates_cancelled_at_period_end(self, db_session):
        sub = subscription_service.create_or_renew("acme", "pro", 1, 50000, now=NOW)
        subscription_service.cancel_subscription(sub.subscription_id)
        assert sub.cancel_at_period_end is True

        renewed = subscription_service.renew(sub.subscription_id, now=NOW)
        assert renewed.cancel_at_period_end is False
        assert renewed.cancelled_at is None

    def test_same_transaction_applied_once(self, db_session):
        sub = subscription_service.create_or_renew("acme", "pro", 1, 50000, transaction_id="TXN_A", now=NOW)
        again = subscription_service.create_or_renew("acme", "pro", 1, 50000, transaction_id="TXN_A", now=NOW)

        assert again.renewal_count == 0
        assert again.total_paid_cents == 50000
        assert again.current_period_end == sub.current_period_end

    def test_create_refuses_second_open_subscription(self, db_session):
        subscription_service.create_subscription("acme", "pro", 1, now=NOW)
        with pytest.raises(SubscriptionError):
            subscription_service.create_subscription("acme", "pro", 1, now=NOW)

    def test_open_subscription_unique_per_tenant(self, db_session):
        subscription_service.create_subscription("acme", "pro", 1, now=NOW)
        db.session.add(Subscription(
            subscription_id="SUB_DUP",
            tenant_id="acme",
            plan_id="pro",
            status="active",
            current_period_start=NOW,
            current_period_end=NOW + timedelta(days=30),
            grace_period_ends_at=NOW + timedelta(days=37),
        ))
        with pytest.raises(IntegrityError):
            db.session.commit()
        db.session.rollback()

    def test_trial_subscription(self, db_session):
        sub = subscription_service.create_subscription("acme", "pro", 1, trial_days=14, now=NOW)
        assert sub.status == "trial"
        assert sub.trial_ends_at == NOW + timedelta(days=14)
        assert compute_dynamic_status(sub, NOW).is_trial is True

    @pytest.mark.parametrize("months", [0, 37, "x", None])
    def test_invalid_cycle_rejected(self, db_session, months):
        with pytest.raises(ValidationError):
            subscription_service.create_or_renew("acme", "pro", months, 0, now=NOW)

    def test_negative_payment_rejected(self, db_session):
        with pytest.raises(ValidationError):
            subscription_service.create_or_renew("acme", "pro", 1, -5, now=NOW)

    def test_renew_unknown(self, db_session):
        with pytest.raises(SubscriptionNotFoundError):
            subscription_service.renew("SUB_missing")


# =============================================================================
# QUERIES / ADMIN
# =============================================================================


class TestQueriesAndAdmin:

    def test_list_expiring(self, db_session):
        soon = subscription_service.create_or_renew("soon", "pro", 1, now=NOW - timedelta(days=27))
        subscription_service.create_or_renew("later", "pro", 1, now=NOW)
        gone = subscription_service.create_or_renew("gone", "pro", 1, now=NOW - timedelta(days=40))
        subscription_service.create_or_renew("off", "pro", 1, now=NOW - timedelta(days=27))
        subscription_service.update_status(
            subscription_service.get_tenant_subscription("off").subscription_id, "past_due"
        )

        expiring = subscription_service.list_expiring(7, now=NOW)

        assert [s.subscription_id for s in expiring] == [soon.subscription_id]
        assert gone.subscription_id not in [s.subscription_id for s in expiring]

    def test_list_expiring_rejects_negative(self, db_session):
        with pytest.raises(ValidationError):
            subscription_service.list_expiring(-1)

    def test_tenant_subscription_prefers_open(self, db_session):
        old = subscription_service.create_subscription("acme", "basic", 1, now=NOW - timedelta(days=90))
        subscription_service.update_status(old.subscription_id, "expired")
        current = subscription_service.create_subscription("acme", "pro", 1, now=NOW)

        assert subscription_service.get_tenant_subscription("acme").subscription_id == current.subscription_id
        assert subscription_service.get_tenant_subscription("nobody") is None

    def test_update_status_validates(self, db_session):
        sub = subscription_service.create_subscription("acme", "pro", 1, now=NOW)
        with pytest.raises(ValidationError):
            subscription_service.update_status(sub.subscription_id, "paused")

    def test_reopen_blocked_when_another_is_open(self, db_session):
        old = subscription_service.create_subscription("acme", "basic", 1, now=NOW)
        subscription_service.update_status(old.subscription_id, "cancelled")
        subscription_service.create_subscription("acme", "pro", 1, now=NOW)

        with pytest.raises(SubscriptionError):
            subscription_service.update_status(old.subscription_id, "active")

    def test_cancel_immediately(self, db_session):
        sub = subscription_service.create_subscription("acme", "pro", 1, now=NOW)
        cancelled = subscription_service.cancel_subscription(sub.subscription_id, at_period_end=False, now=NOW)
        assert cancelled.status == "cancelled"
        assert cancelled.cancelled_at == NOW
        assert compute_dynamic_status(cancelled, NOW).status == "cancelled"


# =============================================================================
# CHECKOUT CONSUMER
# =============================================================================


class TestCheckoutConsumer:

    def _session(self, **overrides):
        fields = dict(
            transaction_id="TXN_1",
            tenant_id=None,
            custom_subdomain="acme",
            plan_id="pro",
            plan_price_cents=50000,
            billing_cycle_months=1,
            currency="BDT",
            is_free=False,
            verified_amount_cents=49900,
        )
        fields.update(overrides)
        return SimpleNamespace(**fields)

    def test_new_merchant_uses_subdomain(self, db_session):
        sub = subscription_service.on_checkout_completed(self._session())
        assert sub.tenant_id == "acme"
        assert sub.total_paid_cents == 49900
        assert sub.last_transaction_id == "TXN_1"

    def test_existing_tenant_renews(self, db_session):
        first = subscription_service.on_checkout_completed(self._session(tenant_id="t_1"))
        second = subscription_service.on_checkout_completed(
            self._session(tenant_id="t_1", transaction_id="TXN_2", verified_amount_cents=None)
        )
        assert second.subscription_id == first.subscription_id
        assert second.renewal_count == 1
        assert second.total_paid_cents == 49900 + 50000

    def test_free_checkout_pays_nothing(self, db_session):
        sub = subscription_service.on_checkout_completed(
            self._session(is_free=True, plan_price_cents=0, verified_amount_cents=None)
        )
        assert sub.total_paid_cents == 0

    def test_unattributable_session_is_skipped(self, db_session):
        assert subscription_service.on_checkout_completed(self._session(custom_subdomain=None)) is None
        assert db.session.query(Subscription).count() == 0
