# Overview: Outbound client for the SSLCommerz hosted payment gateway.

"""
Payment Gateway Client (SSLCommerz)

WHY: The only two calls this system makes to the gateway. Everything about
the wire format lives here so the orchestrator deals in plain results and
typed errors.

OPERATIONS:
- init_payment: form-encoded POST that opens a hosted payment page
- verify_payment: GET against the pull-based validator API; the ONLY
  trustworthy source that a payment happened

ERRORS:
- GatewayUnavailable: timeout, connection failure, 5xx, unparseable body
  (retryable; for verify it means "not verified yet")
- GatewayRejected: the gateway answered and said no
  - GatewayInitError: init returned status != SUCCESS or no page URL
  - PaymentRejected: validator did not return VALID/VALIDATED

Credentials are never logged.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import httpx
from flask import current_app

from ..validation import ValidationError


SANDBOX_BASE_URL = "https://sandbox.sslcommerz.com"
LIVE_BASE_URL = "https://securepay.sslcommerz.com"
INIT_PATH = "/gwprocess/v4/api.php"
VALIDATOR_PATH = "/validator/api/validationserverAPI.php"

VALID_PAYMENT_STATUSES = {"VALID", "VALIDATED"}

DEFAULT_TIMEOUT_SECONDS = 20.0

REQUIRED_INIT_FIELDS = (
    "tran_id",
    "total_amount",
    "currency",
    "success_url",
    "fail_url",
    "cancel_url",
    "product_name",
    "product_category",
    "product_profile",
    "cus_name",
    "cus_email",
    "cus_add1",
    "cus_city",
    "cus_state",
    "cus_postcode",
    "cus_country",
    "cus_phone",
)

OPTIONAL_INIT_FIELDS = (
    "ipn_url",
    "cus_add2",
    "cus_fax",
    "shipping_method",
    "num_of_item",
    "ship_name",
    "ship_add1",
    "ship_add2",
    "ship_city",
    "ship_state",
    "ship_postcode",
    "ship_country",
    "value_a",
    "value_b",
    "value_c",
    "value_d",
)


class GatewayError(Exception):
    """Base class for gateway failures."""


class GatewayUnavailable(GatewayError):
    """Network/timeout/5xx talking to the gateway. Retryable."""


class GatewayRejected(GatewayError):
    """The gateway explicitly refused the request. Not retryable."""


class GatewayInitError(GatewayRejected):
    """init_payment did not yield a payment page."""

    def __init__(self, message: str, reason: str | None = None):
        super().__init__(message)
        self.reason = reason


class PaymentRejected(GatewayRejected):
    """The validator did not confirm the payment."""


@dataclass(frozen=True)
class GatewayCredentials:
    store_id: str
    store_password: str
    is_live: bool = False
    enabled: bool = False
    source: str = "none"  # override, config, none

    def __repr__(self) -> str:
        return (
            f"GatewayCredentials(store_id={self.store_id!r}, is_live={self.is_live}, "
            f"enabled={self.enabled}, source={self.source!r})"
        )


@dataclass(frozen=True)
class InitResult:
    status: str
    gateway_page_url: str
    session_key: str | None
    raw: dict = field(default_factory=dict, repr=False)


@dataclass(frozen=True)
class VerificationResult:
    status: str
    tran_id: str | None = None
    val_id: str | None = None
    amount: str | None = None
    store_amount: str | None = None
    currency: str | None = None
    card_type: str | None = None
    bank_transaction_id: str | None = None
    risk_level: str | None = None
    risk_title: str | None = None
    raw: dict = field(default_factory=dict, repr=False)

    @property
    def is_valid(self) -> bool:
        return self.status in VALID_PAYMENT_STATUSES


def base_url(is_live: bool) -> str:
    return LIVE_BASE_URL if is_live else SANDBOX_BASE_URL


def _timeout() -> float:
    return float(current_app.config.get("GATEWAY_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS))


def build_init_form(credentials: GatewayCredentials, payment_request: dict) -> dict:
    """
    Assemble the form body for init_payment.

    Required fields must be present and non-blank; the gateway rejects the
    whole request otherwise, so we fail before spending a round-trip.
    """
    missing = [
        f for f in REQUIRED_INIT_FIELDS
        if payment_request.get(f) is None or str(payment_request.get(f)).strip() == ""
    ]
    if missing:
        raise ValidationError(
            f"Missing gateway fields: {', '.join(missing)}",
            {f: "is required" for f in missing},
        )

    form = {
        "store_id": credentials.store_id,
        "store_passwd": credentials.store_password,
    }
    for f in REQUIRED_INIT_FIELDS:
        form[f] = str(payment_request[f])
    # cus_add2 is sent even when empty
    form["cus_add2"] = str(payment_request.get("cus_add2") or "")
    for f in OPTIONAL_INIT_FIELDS:
        value = payment_request.get(f)
        if value not in (None, "") and f not in form:
            form[f] = str(value)
    return form


def _parse_json(response: httpx.Response, *, operation: str) -> dict:
    if response.status_code >= 500:
        raise GatewayUnavailable(f"Gateway {operation} returned HTTP {response.status_code}")
    try:
        data = response.json()
    except ValueError:
        raise GatewayUnavailable(f"Gateway {operation} returned a non-JSON body")
    if not isinstance(data, dict):
        raise GatewayUnavailable(f"Gateway {operation} returned an unexpected body")
    return data


def init_payment(credentials: GatewayCredentials, payment_request: dict) -> InitResult:
    """
    Open a hosted payment page.

    Args:
        credentials: Resolved store credentials (must be enabled)
        payment_request: Gateway field names -> values (tran_id, total_amount, cus_*, ...)

    Returns:
        InitResult with the page URL and gateway session key

    Raises:
        ValidationError: Required gateway field missing (no request sent)
        GatewayUnavailable: Network failure or timeout
        GatewayInitError: Gateway answered without a usable page URL
    """
    form = build_init_form(credentials, payment_request)
    url = base_url(credentials.is_live) + INIT_PATH
    tran_id = form["tran_id"]

    try:
        response = httpx.post(
            url,
            data=form,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            timeout=_timeout(),
        )
    except httpx.TimeoutException as exc:
        current_app.logger.warning("Gateway init timed out tran_id=%s live=%s", tran_id, credentials.is_live)
        raise GatewayUnavailable("Gateway init timed out") from exc
    except httpx.HTTPError as exc:
        current_app.logger.warning(
            "Gateway init failed tran_id=%s live=%s: %s", tran_id, credentials.is_live, type(exc).__name__
        )
        raise GatewayUnavailable("Gateway init request failed") from exc

    data = _parse_json(response, operation="init")
    status = str(data.get("status") or "").upper()
    page_url = data.get("GatewayPageURL")

    if status != "SUCCESS" or not page_url:
        reason = data.get("failedreason") or data.get("failedReason")
        current_app.logger.warning(
            "Gateway init rejected tran_id=%s status=%s reason=%s", tran_id, status or "<none>", reason
        )
        raise GatewayInitError("Payment initialization failed", reason=reason)

    return InitResult(
        status=status,
        gateway_page_url=page_url,
        session_key=data.get("sessionkey"),
        raw=data,
    )


def verify_payment(credentials: GatewayCredentials, validation_id: str) -> VerificationResult:
    """
    Ask the validator API whether validation_id is a real, settled payment.

    The caller decides what to do with a non-valid result; this function
    only raises for transport problems.

    Raises:
        ValidationError: validation_id missing
        GatewayUnavailable: Network failure, timeout or unusable response
    """
    if not validation_id:
        raise ValidationError("val_id is required", {"val_id": "is required"})

    url = base_url(credentials.is_live) + VALIDATOR_PATH
    params = {
        "val_id": validation_id,
        "store_id": credentials.store_id,
        "store_passwd": credentials.store_password,
        "v": "1",
        "format": "json",
    }

    try:
        response = httpx.get(url, params=params, timeout=_timeout())
    except httpx.TimeoutException as exc:
        current_app.logger.warning("Gateway validation timed out val_id=%s", validation_id)
        raise GatewayUnavailable("Gateway validation timed out") from exc
    except httpx.HTTPError as exc:
        current_app.logger.warning("Gateway validation failed val_id=%s: %s", validation_id, type(exc).__name__)
        raise GatewayUnavailable("Gateway validation request failed") from exc

    data = _parse_json(response, operation="validation")

    return VerificationResult(
        status=str(data.get("status") or ""),
        tran_id=data.get("tran_id"),
        val_id=data.get("val_id") or validation_id,
        amount=_str_or_none(data.get("amount")),
        store_amount=_str_or_none(data.get("store_amount")),
        currency=data.get("currency") or data.get("currency_type"),
        card_type=data.get("card_type"),
        bank_transaction_id=data.get("bank_tran_id"),
        risk_level=_str_or_none(data.get("risk_level")),
        risk_title=data.get("risk_title"),
        raw=data,
    )


def _str_or_none(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)
