# Overview: Service-layer operations for checkout; session lifecycle and gateway callback reconciliation.

"""
Checkout Orchestrator

WHY: Turns a pricing selection into a paid checkout session without ever
trusting the browser. Browser redirects and the gateway's IPN are only
*claims*; a session completes only after the validator API confirms the
payment.

STATE MACHINE:
    pending -> completed | failed | cancelled   (terminal, never left)

DESIGN PRINCIPLES:
- Every touch is recorded as a CheckoutEvent in the same transaction
- Terminal state is checked before calling the gateway again
- Gateway HTTP happens outside the row lock; the lock + version_id only
  guard the final read-modify-write
- The pending -> completed transition emits CHECKOUT_COMPLETED exactly once,
  after commit; duplicates record DUPLICATE_IGNORED and emit nothing
- Verification outages leave the session pending so the other channel
  (browser return or IPN) can still decide
"""

from __future__ import annotations

import json
import secrets
import time
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from flask import current_app

from ..extensions import db
from ..models import CheckoutEvent, CheckoutSession
from ..models.settings import SCOPE_SYSTEM
from ..models.checkout import (
    CHECKOUT_CANCELLED,
    CHECKOUT_COMPLETED,
    CHECKOUT_FAILED,
    CHECKOUT_PENDING,
)
from ..time_utils import as_naive_utc, utcnow
from ..validation import (
    ModelValidationPolicy,
    ValidationError,
    cents_to_amount,
    parse_billing_cycle,
    parse_money_to_cents,
    summarize_errors,
    validate_payload,
)
from . import events, gateway_client
from .concurrency import ConcurrencyConflict, lock_for_update, run_with_retry
from .gateway_client import GatewayInitError, GatewayUnavailable, PaymentRejected
from .gateway_settings_service import resolve_gateway_credentials


class CheckoutNotFoundError(Exception):
    """Unknown transaction id."""


# =============================================================================
# AUDIT EVENT TYPES (CONSTANTS)
# =============================================================================

EVENT_INITIATED = "INITIATED"
EVENT_FREE_ACTIVATED = "FREE_ACTIVATED"
EVENT_DEMO_MODE = "DEMO_MODE"
EVENT_GATEWAY_INITIALIZED = "GATEWAY_INITIALIZED"
EVENT_RETURN_SUCCESS = "RETURN_SUCCESS"
EVENT_RETURN_FAIL = "RETURN_FAIL"
EVENT_RETURN_CANCEL = "RETURN_CANCEL"
EVENT_IPN_RECEIVED = "IPN_RECEIVED"
EVENT_VERIFIED = "VERIFIED"
EVENT_VERIFICATION_FAILED = "VERIFICATION_FAILED"
EVENT_COMPLETED = "COMPLETED"
EVENT_FAILED = "FAILED"
EVENT_CANCELLED = "CANCELLED"
EVENT_EXPIRED = "EXPIRED"
EVENT_DUPLICATE_IGNORED = "DUPLICATE_IGNORED"
EVENT_DETAILS_UPGRADED = "DETAILS_UPGRADED"

SOURCE_API = "api"
SOURCE_BROWSER = "browser"
SOURCE_IPN = "ipn"
SOURCE_SYSTEM = "system"

# Callback fields worth keeping in the audit payload
CLAIM_FIELDS = ("tran_id", "val_id", "status", "amount", "currency", "bank_tran_id", "card_type", "error")

INIT_POLICY = ModelValidationPolicy(
    writable_fields={
        "plan_id",
        "plan_name",
        "tenant_id",
        "merchant_name",
        "merchant_email",
        "merchant_phone",
        "custom_subdomain",
        "customer_name",
        "customer_email",
        "customer_phone",
        "customer_address",
        "customer_city",
        "customer_state",
        "customer_postcode",
        "customer_country",
    },
    required_on_create={
        "plan_id",
        "plan_name",
        "merchant_name",
        "merchant_email",
        "customer_name",
        "customer_email",
    },
)

PRODUCT_CATEGORY = "SaaS Subscription"
PRODUCT_PROFILE = "non-physical-goods"
DEFAULT_COUNTRY = "Bangladesh"
PLACEHOLDER = "N/A"


# =============================================================================
# HELPERS
# =============================================================================

def _new_transaction_id() -> str:
    return f"TXN_{int(time.time() * 1000)}_{secrets.token_hex(4).upper()}"


def _load(transaction_id: str) -> CheckoutSession:
    session = db.session.query(CheckoutSession).filter_by(transaction_id=transaction_id).first()
    if session is None:
        raise CheckoutNotFoundError(f"Checkout session {transaction_id} not found")
    return session


def _add_event(session: CheckoutSession, event_type: str, source: str, *, note: str | None = None, payload=None):
    event = CheckoutEvent(
        checkout_session_id=session.id,
        transaction_id=session.transaction_id,
        event_type=event_type,
        source=source,
        occurred_at=utcnow(),
        note=note[:255] if note else None,
        payload=json.dumps(payload, sort_keys=True) if payload is not None else None,
    )
    db.session.add(event)
    return event


def _claim_payload(data) -> dict:
    return {k: str(data.get(k)) for k in CLAIM_FIELDS if data.get(k) not in (None, "")}


def _require_field(data, name: str) -> str:
    value = str(data.get(name) or "").strip() if data is not None else ""
    if not value:
        raise ValidationError(f"{name} is required", {name: "is required"})
    return value


def _amount_to_cents(value) -> int | None:
    if value in (None, ""):
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite():
        return None
    return int((amount * 100).to_integral_value(rounding=ROUND_HALF_UP))


def _can_upgrade_details(session: CheckoutSession) -> bool:
    """Completed (not free) but never saw an authoritative verification."""
    return session.status == CHECKOUT_COMPLETED and not session.is_free and not session.validation_id


def _apply_verification(session: CheckoutSession, result) -> None:
    session.validation_id = result.val_id
    session.card_type = result.card_type
    session.bank_transaction_id = result.bank_transaction_id
    session.risk_level = result.risk_level
    session.verified_amount_cents = _amount_to_cents(result.amount)


def _check_verification(session: CheckoutSession, result) -> None:
    """
    Accept a validator reply only if it is VALID/VALIDATED, for this
    transaction, and for (close to) the price we asked for.

    Raises:
        PaymentRejected: any check fails
    """
    if not result.is_valid:
        raise PaymentRejected(f"Payment not valid (status={result.status or 'UNKNOWN'})")
    if result.tran_id != session.transaction_id:
        raise PaymentRejected("Verified transaction id does not match")

    paid = _amount_to_cents(result.amount)
    if paid is None:
        raise PaymentRejected("Verified amount missing")
    tolerance = Decimal(str(current_app.config.get("CHECKOUT_AMOUNT_TOLERANCE", 0.01)))
    if abs(Decimal(paid - session.plan_price_cents)) > Decimal(session.plan_price_cents) * tolerance:
        raise PaymentRejected(
            f"Amount mismatch: paid {cents_to_amount(paid)}, expected {cents_to_amount(session.plan_price_cents)}"
        )


# =============================================================================
# STATE TRANSITIONS
# =============================================================================

def _settle(
    transaction_id: str,
    status: str,
    *,
    source: str,
    audit: tuple[str, ...],
    error: str | None = None,
    verification=None,
    note: str | None = None,
) -> tuple[CheckoutSession, bool]:
    """
    Move a pending session to a terminal status.

    Returns (session, changed). A session that is already terminal is left
    alone (DUPLICATE_IGNORED), except that a verification may fill in missing
    payment details of a completed session (DETAILS_UPGRADED).
    """
    def _op():
        session = lock_for_update(
            db.session.query(CheckoutSession).filter_by(transaction_id=transaction_id)
        ).first()
        if session is None:
            raise CheckoutNotFoundError(f"Checkout session {transaction_id} not found")

        if session.is_terminal:
            if verification is not None and status == CHECKOUT_COMPLETED and _can_upgrade_details(session):
                _apply_verification(session, verification)
                _add_event(session, EVENT_DETAILS_UPGRADED, source, note=f"val_id={verification.val_id}")
            else:
                _add_event(
                    session, EVENT_DUPLICATE_IGNORED, source,
                    note=f"{status} ignored; session already {session.status}",
                )
            db.session.commit()
            return session, False

        session.status = status
        if status == CHECKOUT_FAILED:
            session.error = (error or "Payment failed")[:255]
        if status == CHECKOUT_COMPLETED:
            session.completed_at = utcnow()
        if verification is not None:
            _apply_verification(session, verification)
        for event_type in audit:
            _add_event(session, event_type, source, note=error or note)
        db.session.commit()
        return session, True

    try:
        session, changed = run_with_retry(_op)
    except ConcurrencyConflict:
        current_app.logger.info("Checkout %s changed concurrently; treating %s as duplicate", transaction_id, status)
        return _load(transaction_id), False

    if changed:
        current_app.logger.info("Checkout %s -> %s (source=%s)", transaction_id, status, source)
        if status == CHECKOUT_COMPLETED:
            events.emit(events.CHECKOUT_COMPLETED, session)
    else:
        current_app.logger.info(
            "Checkout %s already %s; %s from %s ignored", transaction_id, session.status, status, source
        )
    return session, changed


def _record_claim(transaction_id: str, event_type: str, source: str, data) -> CheckoutSession:
    session = _load(transaction_id)
    _add_event(session, event_type, source, payload=_claim_payload(data))
    db.session.commit()
    return session


def _verify_and_settle(transaction_id: str, validation_id: str, *, source: str) -> CheckoutSession:
    session = _load(transaction_id)
    if session.is_terminal and not _can_upgrade_details(session):
        return _settle(transaction_id, CHECKOUT_COMPLETED, source=source, audit=())[0]

    credentials = resolve_gateway_credentials(session.gateway_scope)
    if not credentials.enabled:
        current_app.logger.warning(
            "Cannot verify checkout %s: gateway not configured; leaving %s", transaction_id, session.status
        )
        return session

    try:
        result = gateway_client.verify_payment(credentials, validation_id)
    except GatewayUnavailable:
        current_app.logger.warning(
            "Verification unavailable for checkout %s (source=%s); leaving pending", transaction_id, source
        )
        return _load(transaction_id)

    try:
        _check_verification(session, result)
    except PaymentRejected as exc:
        current_app.logger.warning("Verification rejected for checkout %s: %s", transaction_id, exc)
        return _settle(
            transaction_id, CHECKOUT_FAILED, source=source,
            audit=(EVENT_VERIFICATION_FAILED, EVENT_FAILED), error=str(exc),
        )[0]

    return _settle(
        transaction_id, CHECKOUT_COMPLETED, source=source,
        audit=(EVENT_VERIFIED, EVENT_COMPLETED), verification=result,
        note=f"val_id={result.val_id}",
    )[0]


# =============================================================================
# INIT
# =============================================================================

def _parse_init_payload(payload) -> tuple[dict, int, int]:
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    errors: dict[str, str] = {}
    fields: dict = {}
    price_cents = months = 0

    try:
        fields = validate_payload(model=CheckoutSession, payload=payload, policy=INIT_POLICY, partial=False)
    except ValidationError as exc:
        errors.update(exc.fields)
    try:
        price_cents = parse_money_to_cents(payload.get("plan_price"), field="plan_price")
    except ValidationError as exc:
        errors.update(exc.fields)
    raw_cycle = payload.get("billing_cycle_months")
    try:
        months = parse_billing_cycle(1 if raw_cycle in (None, "") else raw_cycle)
    except ValidationError as exc:
        errors.update(exc.fields)

    if errors:
        raise ValidationError(summarize_errors(errors), errors)
    return fields, price_cents, months


def _payment_request(session: CheckoutSession) -> dict:
    base = current_app.config.get("PUBLIC_BASE_URL", "").rstrip("/")
    return {
        "tran_id": session.transaction_id,
        "total_amount": cents_to_amount(session.plan_price_cents),
        "currency": session.currency,
        "success_url": f"{base}/api/checkout/success",
        "fail_url": f"{base}/api/checkout/fail",
        "cancel_url": f"{base}/api/checkout/cancel",
        "ipn_url": f"{base}/api/checkout/ipn",
        "shipping_method": "NO",
        "num_of_item": 1,
        "product_name": session.plan_name,
        "product_category": PRODUCT_CATEGORY,
        "product_profile": PRODUCT_PROFILE,
        "cus_name": session.customer_name,
        "cus_email": session.customer_email,
        "cus_add1": session.customer_address or PLACEHOLDER,
        "cus_city": session.customer_city or PLACEHOLDER,
        "cus_state": session.customer_state or PLACEHOLDER,
        "cus_postcode": session.customer_postcode or PLACEHOLDER,
        "cus_country": session.customer_country or DEFAULT_COUNTRY,
        "cus_phone": session.customer_phone or session.merchant_phone or PLACEHOLDER,
        "value_a": session.tenant_id or session.custom_subdomain,
        "value_b": session.plan_id,
        "value_c": str(session.billing_cycle_months),
        "value_d": session.merchant_email,
    }


def init_checkout(payload: dict, *, gateway_scope: str | None = None) -> dict:
    """
    Start a checkout.

    Args:
        payload: Pricing selection + merchant/customer details (snake_case)
        gateway_scope: Credentials scope; defaults to the system scope

    Returns:
        {success, transaction_id, status, demo_mode, gateway_page_url,
         session_key, message}

    Raises:
        ValidationError: Missing/invalid fields (no session is created)
        GatewayUnavailable: Gateway unreachable; session stays pending
        GatewayInitError: Gateway refused; session stays pending
    """
    fields, price_cents, months = _parse_init_payload(payload)

    session = CheckoutSession(
        transaction_id=_new_transaction_id(),
        plan_price_cents=price_cents,
        billing_cycle_months=months,
        currency=current_app.config.get("CHECKOUT_CURRENCY", "BDT"),
        status=CHECKOUT_PENDING,
        is_free=price_cents == 0,
        demo_mode=False,
        gateway_scope=(gateway_scope or SCOPE_SYSTEM),
        **fields,
    )
    db.session.add(session)
    db.session.flush()
    _add_event(session, EVENT_INITIATED, SOURCE_API, note=f"{session.plan_id} {cents_to_amount(price_cents)} {session.currency}")
    db.session.commit()
    transaction_id = session.transaction_id

    response = {
        "success": True,
        "transaction_id": transaction_id,
        "demo_mode": False,
        "gateway_page_url": None,
        "session_key": None,
    }

    # Free plans never touch the gateway
    if price_cents == 0:
        session, _ = _settle(
            transaction_id, CHECKOUT_COMPLETED, source=SOURCE_SYSTEM,
            audit=(EVENT_FREE_ACTIVATED, EVENT_COMPLETED),
        )
        response.update(status=session.status, message="Free plan activated")
        return response

    credentials = resolve_gateway_credentials(session.gateway_scope)
    if not credentials.enabled:
        session.demo_mode = True
        _add_event(session, EVENT_DEMO_MODE, SOURCE_SYSTEM, note="gateway credentials not configured")
        db.session.commit()
        current_app.logger.warning("Checkout %s running in demo mode: gateway not configured", transaction_id)
        response.update(
            status=session.status,
            demo_mode=True,
            message="Payment gateway not configured; demo mode",
        )
        return response

    try:
        result = gateway_client.init_payment(credentials, _payment_request(session))
    except GatewayUnavailable:
        current_app.logger.warning("Gateway unavailable for checkout %s; left pending", transaction_id)
        raise
    except GatewayInitError as exc:
        current_app.logger.warning("Gateway refused checkout %s: %s", transaction_id, exc.reason or exc)
        raise

    def _store_gateway_session():
        s = lock_for_update(db.session.query(CheckoutSession).filter_by(transaction_id=transaction_id)).first()
        s.gateway_session_key = result.session_key
        s.gateway_page_url = result.gateway_page_url
        _add_event(s, EVENT_GATEWAY_INITIALIZED, SOURCE_API, note=f"live={credentials.is_live}")
        db.session.commit()
        return s

    session = run_with_retry(_store_gateway_session)
    response.update(
        status=session.status,
        gateway_page_url=result.gateway_page_url,
        session_key=result.session_key,
        message="Redirect to payment gateway",
    )
    return response


# =============================================================================
# GATEWAY CALLBACKS
# =============================================================================

def handle_success_return(data) -> CheckoutSession:
    """
    Browser came back from the success URL.

    Only a trigger: the val_id it carries is verified server-side. Without
    a val_id nothing can be verified and the session stays pending.
    """
    transaction_id = _require_field(data, "tran_id")
    session = _record_claim(transaction_id, EVENT_RETURN_SUCCESS, SOURCE_BROWSER, data)

    validation_id = str(data.get("val_id") or "").strip()
    if not validation_id:
        current_app.logger.info("Success return for %s carried no val_id; awaiting IPN", transaction_id)
        return session
    return _verify_and_settle(transaction_id, validation_id, source=SOURCE_BROWSER)


def handle_fail_return(data) -> CheckoutSession:
    transaction_id = _require_field(data, "tran_id")
    _record_claim(transaction_id, EVENT_RETURN_FAIL, SOURCE_BROWSER, data)
    reason = str(data.get("error") or data.get("failedreason") or "").strip() or "Payment failed"
    return _settle(transaction_id, CHECKOUT_FAILED, source=SOURCE_BROWSER, audit=(EVENT_FAILED,), error=reason)[0]


def handle_cancel_return(data) -> CheckoutSession:
    transaction_id = _require_field(data, "tran_id")
    _record_claim(transaction_id, EVENT_RETURN_CANCEL, SOURCE_BROWSER, data)
    return _settle(
        transaction_id, CHECKOUT_CANCELLED, source=SOURCE_BROWSER,
        audit=(EVENT_CANCELLED,), note="cancelled by customer",
    )[0]


def handle_ipn(data) -> CheckoutSession:
    """
    Server-to-server notification from the gateway.

    Raises:
        ValidationError: tran_id or val_id missing
        CheckoutNotFoundError: Unknown tran_id
    """
    transaction_id = _require_field(data, "tran_id")
    validation_id = _require_field(data, "val_id")
    _record_claim(transaction_id, EVENT_IPN_RECEIVED, SOURCE_IPN, data)
    return _verify_and_settle(transaction_id, validation_id, source=SOURCE_IPN)


# =============================================================================
# QUERIES / MAINTENANCE
# =============================================================================

def get_checkout_session(transaction_id: str) -> dict:
    """Session as JSON with payment details redacted to has_payment_details."""
    if not transaction_id:
        raise ValidationError("transaction_id is required", {"transaction_id": "is required"})
    return _load(transaction_id).to_dict()


def list_session_events(transaction_id: str) -> list[CheckoutEvent]:
    session = _load(transaction_id)
    return (
        db.session.query(CheckoutEvent)
        .filter_by(checkout_session_id=session.id)
        .order_by(CheckoutEvent.id.asc())
        .all()
    )


def expire_stale_sessions(older_than_hours: int | None = None, now: datetime | None = None) -> int:
    """
    Cancel pending sessions older than the TTL. Returns how many changed.

    A callback that lands after the sweep sees a terminal session and is
    ignored.
    """
    if older_than_hours is None:
        older_than_hours = int(current_app.config.get("CHECKOUT_PENDING_TTL_HOURS", 48))
    if older_than_hours < 0:
        raise ValidationError("older_than_hours must be >= 0", {"older_than_hours": "must be >= 0"})

    cutoff = (as_naive_utc(now) or utcnow()) - timedelta(hours=older_than_hours)
    stale = (
        db.session.query(CheckoutSession.transaction_id)
        .filter(CheckoutSession.status == CHECKOUT_PENDING, CheckoutSession.created_at < cutoff)
        .order_by(CheckoutSession.id.asc())
        .all()
    )

    expired = 0
    for (transaction_id,) in stale:
        _, changed = _settle(
            transaction_id, CHECKOUT_CANCELLED, source=SOURCE_SYSTEM,
            audit=(EVENT_EXPIRED,), note=f"pending longer than {older_than_hours}h",
        )
        expired += int(changed)

    if expired:
        current_app.logger.info("Expired %s stale checkout session(s)", expired)
    return expired
