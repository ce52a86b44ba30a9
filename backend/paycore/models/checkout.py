from __future__ import annotations

from ..extensions import db
from paycore.time_utils import to_utc_z


CHECKOUT_PENDING = "pending"
CHECKOUT_COMPLETED = "completed"
CHECKOUT_FAILED = "failed"
CHECKOUT_CANCELLED = "cancelled"

CHECKOUT_STATUSES = {CHECKOUT_PENDING, CHECKOUT_COMPLETED, CHECKOUT_FAILED, CHECKOUT_CANCELLED}
CHECKOUT_TERMINAL_STATUSES = {CHECKOUT_COMPLETED, CHECKOUT_FAILED, CHECKOUT_CANCELLED}


class CheckoutSession(db.Model):
    """
    One purchase attempt, keyed by its transaction id.

    WHY: The session is the audit trail for a purchase. It is never deleted,
    and its status only ever moves once: pending -> completed/failed/cancelled.

    DESIGN:
    - transaction_id is the natural key shared with the gateway (tran_id)
    - Verified payment attributes are written only from the validator API,
      never from browser-supplied fields
    - version_id guards the read-modify-write against concurrent callbacks
    """
    __tablename__ = "checkout_sessions"
    __table_args__ = (
        db.Index("ix_checkout_sessions_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    transaction_id = db.Column(db.String(64), nullable=False, unique=True, index=True)

    # Pricing selection
    plan_id = db.Column(db.String(64), nullable=False)
    plan_name = db.Column(db.String(255), nullable=False)
    plan_price_cents = db.Column(db.Integer, nullable=False, default=0)
    billing_cycle_months = db.Column(db.Integer, nullable=False, default=1)
    currency = db.Column(db.String(8), nullable=False, default="BDT")

    # Buyer / tenant-to-be (opaque, not validated beyond length)
    tenant_id = db.Column(db.String(64), nullable=True, index=True)  # existing tenant (renewals)
    merchant_name = db.Column(db.String(255), nullable=True)
    merchant_email = db.Column(db.String(255), nullable=True)
    merchant_phone = db.Column(db.String(64), nullable=True)
    custom_subdomain = db.Column(db.String(128), nullable=True)
    customer_name = db.Column(db.String(255), nullable=True)
    customer_email = db.Column(db.String(255), nullable=True)
    customer_phone = db.Column(db.String(64), nullable=True)
    customer_address = db.Column(db.String(255), nullable=True)
    customer_city = db.Column(db.String(128), nullable=True)
    customer_state = db.Column(db.String(128), nullable=True)
    customer_postcode = db.Column(db.String(32), nullable=True)
    customer_country = db.Column(db.String(128), nullable=True)

    status = db.Column(db.String(16), nullable=False, default=CHECKOUT_PENDING, index=True)
    is_free = db.Column(db.Boolean, nullable=False, default=False)
    demo_mode = db.Column(db.Boolean, nullable=False, default=False)
    # Credentials scope used at init; callbacks verify with the same account
    gateway_scope = db.Column(db.String(64), nullable=False, default="system")

    # Set when gateway init succeeds
    gateway_session_key = db.Column(db.String(255), nullable=True)
    gateway_page_url = db.Column(db.String(1024), nullable=True)

    # Verified payment attributes (validator API only)
    validation_id = db.Column(db.String(128), nullable=True, index=True)
    card_type = db.Column(db.String(64), nullable=True)
    bank_transaction_id = db.Column(db.String(128), nullable=True)
    risk_level = db.Column(db.String(16), nullable=True)
    verified_amount_cents = db.Column(db.Integer, nullable=True)

    error = db.Column(db.String(255), nullable=True)  # set only on failed

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_terminal(self) -> bool:
        return self.status in CHECKOUT_TERMINAL_STATUSES

    @property
    def has_payment_details(self) -> bool:
        return bool(self.validation_id)

    def __repr__(self) -> str:
        return f"<CheckoutSession {self.transaction_id} status={self.status}>"

    def to_dict(self, include_payment_details: bool = False) -> dict:
        data = {
            "transaction_id": self.transaction_id,
            "plan_id": self.plan_id,
            "plan_name": self.plan_name,
            "plan_price_cents": self.plan_price_cents,
            "billing_cycle_months": self.billing_cycle_months,
            "currency": self.currency,
            "tenant_id": self.tenant_id,
            "merchant_name": self.merchant_name,
            "merchant_email": self.merchant_email,
            "merchant_phone": self.merchant_phone,
            "custom_subdomain": self.custom_subdomain,
            "customer_name": self.customer_name,
            "customer_email": self.customer_email,
            "status": self.status,
            "is_free": bool(self.is_free),
            "demo_mode": bool(self.demo_mode),
            "error": self.error,
            "has_payment_details": self.has_payment_details,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "completed_at": to_utc_z(self.completed_at),
        }
        if include_payment_details:
            data.update({
                "gateway_session_key": self.gateway_session_key,
                "validation_id": self.validation_id,
                "card_type": self.card_type,
                "bank_transaction_id": self.bank_transaction_id,
                "risk_level": self.risk_level,
                "verified_amount_cents": self.verified_amount_cents,
            })
        return data


class CheckoutEvent(db.Model):
    """
    Append-only audit row for everything that touched a checkout session.

    Written inside the same DB transaction as the change it records.
    Payloads never carry gateway credentials.
    """
    __tablename__ = "checkout_events"
    __table_args__ = (
        db.Index("ix_checkout_events_tran_occurred", "transaction_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    checkout_session_id = db.Column(db.Integer, db.ForeignKey("checkout_sessions.id"), nullable=False, index=True)
    transaction_id = db.Column(db.String(64), nullable=False)

    event_type = db.Column(db.String(32), nullable=False, index=True)  # e.g. IPN_RECEIVED, COMPLETED, DUPLICATE_IGNORED
    source = db.Column(db.String(16), nullable=False)  # api, browser, ipn, system

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    note = db.Column(db.String(255), nullable=True)
    payload = db.Column(db.Text, nullable=True)

    session = db.relationship("CheckoutSession", backref=db.backref("events", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "event_type": self.event_type,
            "source": self.source,
            "occurred_at": to_utc_z(self.occurred_at),
            "note": self.note,
            "payload": self.payload,
        }
