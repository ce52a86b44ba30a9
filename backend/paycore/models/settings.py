from __future__ import annotations

from ..extensions import db
from paycore.time_utils import to_utc_z


SCOPE_SYSTEM = "system"


class GatewayConfig(db.Model):
    """
    Per-scope payment gateway credentials.

    scope is "system" for the platform account or a tenant id for a tenant
    override. When no usable row exists the process-wide configuration
    applies (see gateway_settings_service.resolve_gateway_credentials).
    """
    __tablename__ = "gateway_configs"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    scope = db.Column(db.String(64), nullable=False, unique=True, index=True)

    store_id = db.Column(db.String(128), nullable=True)
    store_password = db.Column(db.String(255), nullable=True)
    is_live = db.Column(db.Boolean, nullable=False, default=False)
    enabled = db.Column(db.Boolean, nullable=False, default=False)

    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    @property
    def is_complete(self) -> bool:
        return bool(self.store_id and self.store_password)

    def to_dict(self) -> dict:
        # store_password is write-only
        return {
            "scope": self.scope,
            "store_id": self.store_id,
            "has_store_password": bool(self.store_password),
            "is_live": bool(self.is_live),
            "enabled": bool(self.enabled),
            "updated_at": to_utc_z(self.updated_at),
        }
