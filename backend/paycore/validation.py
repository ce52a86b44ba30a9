from __future__ import annotations
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from dataclasses import dataclass
from typing import Any

from sqlalchemy import Boolean, String, Text
from sqlalchemy.orm import DeclarativeMeta


# Maximum price: 9,999,999.99 (999,999,999 cents)
# This prevents database overflow issues and nonsensical prices
MAX_PRICE_CENTS = 999_999_999

MAX_BILLING_CYCLE_MONTHS = 36


class ValidationError(ValueError):
    """400-level input problem. `fields` maps field name -> message."""

    def __init__(self, message: str, fields: dict[str, str] | None = None):
        super().__init__(message)
        self.fields = fields or {}

    def to_dict(self) -> dict:
        body = {"error": str(self)}
        if self.fields:
            body["fields"] = self.fields
        return body


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to set (security boundary)
    - required_on_create: fields required for POST
    """
    writable_fields: set[str]
    required_on_create: set[str] = None  # type: ignore


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    # Booleans
    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            s = value.strip().lower()
            if s in {"true", "1", "yes", "on"}:
                return True
            if s in {"false", "0", "no", "off"}:
                return False
        raise ValidationError(f"{col.key} must be a boolean", {col.key: "must be a boolean"})

    # Strings / Text
    if isinstance(coltype, (String, Text)):
        return str(value).strip()

    # Default: leave as-is
    return value


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
) -> dict:
    """
    Validates + normalizes incoming JSON against:
    - SQLAlchemy column metadata (nullable, type, String length)
    - a policy allowlist (writable_fields)
    - required_on_create (if partial=False)
    Returns a cleaned patch dict with only writable fields.

    Unknown keys are ignored rather than rejected: gateway callbacks and
    checkout forms carry extra fields we do not store.

    All problems are collected so the caller gets field-level detail in one
    response.
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    cols = _columns_by_key(model)
    errors: dict[str, str] = {}
    patch: dict = {}

    if not partial:
        for f in sorted(policy.required_on_create or set()):
            raw = payload.get(f)
            if raw is None or (isinstance(raw, str) and not raw.strip()):
                errors[f] = "is required"

    for k, raw in payload.items():
        if k not in policy.writable_fields or k in errors:
            continue
        col = cols[k]

        # NULL handling
        if raw is None:
            if not col.nullable:
                errors[k] = "cannot be null"
            else:
                patch[k] = None
            continue

        try:
            val = _coerce_value(col, raw)
        except ValidationError as exc:
            errors.update(exc.fields)
            continue

        # Max length check for String(n)
        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                errors[k] = f"exceeds max length {col.type.length}"
                continue

        patch[k] = val

    if errors:
        raise ValidationError(summarize_errors(errors), errors)
    return patch


def summarize_errors(errors: dict[str, str]) -> str:
    missing = [k for k, msg in errors.items() if msg == "is required"]
    if missing and len(missing) == len(errors):
        return f"Missing required fields: {', '.join(missing)}"
    return "Invalid fields: " + ", ".join(sorted(errors))


def parse_money_to_cents(value: Any, *, field: str) -> int:
    """
    Parse a major-unit amount ("500", 500, "500.00", 499.5) into integer cents.

    Rejects booleans, negatives, more than two decimals and values above
    MAX_PRICE_CENTS.
    """
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field} is required", {field: "is required"})
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number", {field: "must be a number"})
    if not amount.is_finite():
        raise ValidationError(f"{field} must be a number", {field: "must be a number"})
    if amount < 0:
        raise ValidationError(f"{field} must be >= 0", {field: "must be >= 0"})
    # Bound the magnitude first; quantize overflows the decimal context on huge exponents
    if amount > Decimal(MAX_PRICE_CENTS) / 100:
        raise ValidationError(f"{field} is too large", {field: f"cannot exceed {MAX_PRICE_CENTS / 100:,.2f}"})
    if amount != amount.quantize(Decimal("0.01")):
        raise ValidationError(f"{field} has more than two decimals", {field: "has more than two decimals"})
    return int((amount * 100).to_integral_value(rounding=ROUND_HALF_UP))


def cents_to_amount(cents: int) -> str:
    """Integer cents -> gateway amount string ("500.00")."""
    return f"{Decimal(cents) / 100:.2f}"


def parse_billing_cycle(value: Any, *, field: str = "billing_cycle_months") -> int:
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field} is required", {field: "is required"})
    try:
        months = int(str(value).strip())
    except ValueError:
        raise ValidationError(f"{field} must be an integer", {field: "must be an integer"})
    if months < 1 or months > MAX_BILLING_CYCLE_MONTHS:
        raise ValidationError(
            f"{field} must be between 1 and {MAX_BILLING_CYCLE_MONTHS}",
            {field: f"must be between 1 and {MAX_BILLING_CYCLE_MONTHS}"},
        )
    return months
