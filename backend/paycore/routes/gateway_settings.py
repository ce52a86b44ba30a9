from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from ..decorators import require_admin_key
from ..services import gateway_settings_service
from ..services.gateway_client import GatewayUnavailable
from ..services.gateway_settings_service import ConfigurationMissing
from ..validation import ValidationError


gateway_settings_bp = Blueprint("gateway_settings", __name__, url_prefix="/api/settings/gateway")


def _json_error(exc: Exception):
    if isinstance(exc, ValidationError):
        return jsonify(exc.to_dict()), 400
    if isinstance(exc, ConfigurationMissing):
        return jsonify({"error": str(exc)}), 400
    if isinstance(exc, GatewayUnavailable):
        return jsonify({"success": False, "error": str(exc)}), 503
    current_app.logger.exception("Gateway settings request failed")
    return jsonify({"error": "Internal server error"}), 500


@gateway_settings_bp.get("/<scope>")
@require_admin_key
def get_gateway_config_route(scope: str):
    try:
        config = gateway_settings_service.get_gateway_config(scope)
        credentials = gateway_settings_service.resolve_gateway_credentials(scope)
        return jsonify({
            "config": config.to_dict(),
            "effective": {
                "enabled": credentials.enabled,
                "is_live": credentials.is_live,
                "source": credentials.source,
            },
        }), 200
    except Exception as exc:
        return _json_error(exc)


@gateway_settings_bp.put("/<scope>")
@require_admin_key
def update_gateway_config_route(scope: str):
    try:
        payload = request.get_json(silent=True) or {}
        config = gateway_settings_service.update_gateway_config(scope, payload)
        return jsonify({"config": config.to_dict()}), 200
    except Exception as exc:
        return _json_error(exc)


@gateway_settings_bp.post("/<scope>/test")
@require_admin_key
def test_gateway_connection_route(scope: str):
    try:
        result = gateway_settings_service.test_connection(scope)
        return jsonify(result), (200 if result["success"] else 502)
    except Exception as exc:
        return _json_error(exc)
