from __future__ import annotations

from ..extensions import db
from paycore.time_utils import to_utc_z


SUB_ACTIVE = "active"
SUB_TRIAL = "trial"
SUB_PAST_DUE = "past_due"
SUB_CANCELLED = "cancelled"
SUB_EXPIRED = "expired"

SUBSCRIPTION_STATUSES = {SUB_ACTIVE, SUB_TRIAL, SUB_PAST_DUE, SUB_CANCELLED, SUB_EXPIRED}
# At most one subscription per tenant may be in one of these
SUBSCRIPTION_OPEN_STATUSES = {SUB_ACTIVE, SUB_TRIAL, SUB_PAST_DUE}


class Subscription(db.Model):
    """
    One tenant's billing state.

    WHY: status here is the *stored* status. Whether an active subscription
    is actually in its grace period or expired is derived at read time by
    subscription_service.compute_dynamic_status and never written back.

    INVARIANTS:
    - current_period_start < current_period_end < grace_period_ends_at
    - total_paid_cents never decreases, renewal_count never decreases
    - rows are never deleted (invoicing history)
    """
    __tablename__ = "subscriptions"
    __table_args__ = (
        db.Index("ix_subscriptions_tenant_status", "tenant_id", "status"),
        db.Index("ix_subscriptions_status_period_end", "status", "current_period_end"),
        # One open subscription per tenant
        db.Index(
            "uq_subscriptions_tenant_open",
            "tenant_id",
            unique=True,
            sqlite_where=db.text("status IN ('active', 'trial', 'past_due')"),
            postgresql_where=db.text("status IN ('active', 'trial', 'past_due')"),
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    subscription_id = db.Column(db.String(64), nullable=False, unique=True, index=True)
    tenant_id = db.Column(db.String(64), nullable=False, index=True)

    plan_id = db.Column(db.String(64), nullable=False)
    billing_cycle_months = db.Column(db.Integer, nullable=False, default=1)
    amount_cents = db.Column(db.Integer, nullable=False, default=0)
    currency = db.Column(db.String(8), nullable=False, default="BDT")

    status = db.Column(db.String(16), nullable=False, default=SUB_ACTIVE, index=True)

    current_period_start = db.Column(db.DateTime(timezone=True), nullable=False)
    current_period_end = db.Column(db.DateTime(timezone=True), nullable=False)
    grace_period_ends_at = db.Column(db.DateTime(timezone=True), nullable=False)
    trial_ends_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    total_paid_cents = db.Column(db.Integer, nullable=False, default=0)
    renewal_count = db.Column(db.Integer, nullable=False, default=0)
    last_payment_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_transaction_id = db.Column(db.String(64), nullable=True)

    auto_renew = db.Column(db.Boolean, nullable=False, default=True)
    cancel_at_period_end = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Subscription {self.subscription_id} tenant={self.tenant_id!r} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "subscription_id": self.subscription_id,
            "tenant_id": self.tenant_id,
            "plan_id": self.plan_id,
            "billing_cycle_months": self.billing_cycle_months,
            "amount_cents": self.amount_cents,
            "currency": self.currency,
            "status": self.status,
            "current_period_start": to_utc_z(self.current_period_start),
            "current_period_end": to_utc_z(self.current_period_end),
            "grace_period_ends_at": to_utc_z(self.grace_period_ends_at),
            "trial_ends_at": to_utc_z(self.trial_ends_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "total_paid_cents": self.total_paid_cents,
            "renewal_count": self.renewal_count,
            "last_payment_at": to_utc_z(self.last_payment_at),
            "last_transaction_id": self.last_transaction_id,
            "auto_renew": bool(self.auto_renew),
            "cancel_at_period_end": bool(self.cancel_at_period_end),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }
