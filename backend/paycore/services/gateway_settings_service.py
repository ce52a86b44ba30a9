from __future__ import annotations

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import GatewayConfig
from ..models.settings import SCOPE_SYSTEM
from ..validation import ModelValidationPolicy, ValidationError, validate_payload
from . import gateway_client
from .gateway_client import GatewayCredentials


SOURCE_OVERRIDE = "override"
SOURCE_CONFIG = "config"
SOURCE_NONE = "none"

GATEWAY_CONFIG_POLICY = ModelValidationPolicy(
    writable_fields={"store_id", "store_password", "is_live", "enabled"},
    required_on_create=set(),
)

# Any validator reply proves the credentials reached the gateway
PROBE_VALIDATION_ID = "connection-test"

# Validator answers (status or APIConnect) meaning the store login was refused
CREDENTIAL_REJECTION_STATUSES = {"INVALID_REQUEST", "INACTIVE", "FAILED"}


class ConfigurationMissing(Exception):
    """No usable gateway credentials for the scope."""


def _normalize_scope(scope: str | None) -> str:
    scope = (scope or SCOPE_SYSTEM).strip()
    if not scope:
        return SCOPE_SYSTEM
    if len(scope) > 64:
        raise ValidationError("scope exceeds max length 64", {"scope": "exceeds max length 64"})
    return scope


def resolve_gateway_credentials(tenant_scope: str | None = None) -> GatewayCredentials:
    """
    Resolve the credentials to use for a payment.

    Precedence: enabled + complete override row for the scope, then the
    stored system override, then the process-wide SSLCOMMERZ_* configuration.
    When none has both a store id and a password the result has
    enabled=False and callers run in demo mode. Never raises for missing
    configuration.
    """
    scope = _normalize_scope(tenant_scope)
    scopes = [scope] if scope == SCOPE_SYSTEM else [scope, SCOPE_SYSTEM]

    try:
        rows = db.session.query(GatewayConfig).filter(GatewayConfig.scope.in_(scopes)).all()
    except SQLAlchemyError:
        current_app.logger.warning("Could not read gateway override for scope=%s; using process config", scope)
        db.session.rollback()
        rows = []

    by_scope = {row.scope: row for row in rows}
    for candidate in scopes:
        override = by_scope.get(candidate)
        if override is not None and override.enabled and override.is_complete:
            return GatewayCredentials(
                store_id=override.store_id,
                store_password=override.store_password,
                is_live=bool(override.is_live),
                enabled=True,
                source=SOURCE_OVERRIDE,
            )

    store_id = current_app.config.get("SSLCOMMERZ_STORE_ID") or ""
    store_password = current_app.config.get("SSLCOMMERZ_STORE_PASSWORD") or ""
    if store_id and store_password:
        return GatewayCredentials(
            store_id=store_id,
            store_password=store_password,
            is_live=bool(current_app.config.get("SSLCOMMERZ_IS_LIVE")),
            enabled=True,
            source=SOURCE_CONFIG,
        )

    return GatewayCredentials(store_id="", store_password="", is_live=False, enabled=False, source=SOURCE_NONE)


def get_gateway_config(scope: str | None = None) -> GatewayConfig:
    """Stored override for scope; a disabled row is created on first read."""
    scope = _normalize_scope(scope)
    config = db.session.query(GatewayConfig).filter_by(scope=scope).first()
    if config is None:
        config = GatewayConfig(scope=scope, enabled=False, is_live=False)
        db.session.add(config)
        db.session.commit()
    return config


def update_gateway_config(scope: str | None, payload: dict) -> GatewayConfig:
    """
    Upsert the override for scope.

    A blank store_password keeps the stored one, so the admin UI can save
    other fields without re-entering the secret.
    """
    scope = _normalize_scope(scope)
    patch = validate_payload(model=GatewayConfig, payload=payload, policy=GATEWAY_CONFIG_POLICY, partial=True)
    if "store_password" in patch and not patch["store_password"]:
        del patch["store_password"]

    config = db.session.query(GatewayConfig).filter_by(scope=scope).first()
    if config is None:
        config = GatewayConfig(scope=scope, enabled=False, is_live=False)
        db.session.add(config)

    for key, value in patch.items():
        setattr(config, key, value)

    if config.enabled and not config.is_complete:
        db.session.rollback()
        raise ValidationError(
            "store_id and store_password are required to enable the gateway",
            {"store_id": "is required", "store_password": "is required"},
        )

    db.session.commit()
    current_app.logger.info(
        "Gateway config updated scope=%s enabled=%s live=%s", scope, config.enabled, config.is_live
    )
    return config


def test_connection(scope: str | None = None) -> dict:
    """
    Check that the resolved credentials reach the gateway and are accepted.

    Unlike checkout init, missing credentials are a hard error here. A reply
    for the probe id (normally INVALID_TRANSACTION) proves both; a
    credential rejection comes back as success=False with the gateway's
    status so the admin can tell a bad store login from an outage.

    Raises:
        ConfigurationMissing: Nothing configured for the scope or globally
        GatewayUnavailable: Gateway unreachable
    """
    credentials = resolve_gateway_credentials(scope)
    if not credentials.enabled:
        raise ConfigurationMissing("Payment gateway credentials are not configured")

    result = gateway_client.verify_payment(credentials, PROBE_VALIDATION_ID)
    api_connect = str(result.raw.get("APIConnect") or "")
    rejected = result.status in CREDENTIAL_REJECTION_STATUSES or api_connect in CREDENTIAL_REJECTION_STATUSES
    if rejected:
        current_app.logger.warning(
            "Gateway rejected credentials scope=%s source=%s status=%s",
            scope, credentials.source, result.status or api_connect,
        )

    data = {
        "success": not rejected,
        "is_live": credentials.is_live,
        "source": credentials.source,
        "gateway_status": result.status or api_connect or None,
        "base_url": gateway_client.base_url(credentials.is_live),
    }
    if rejected:
        data["error"] = "Gateway rejected the store credentials"
    return data
