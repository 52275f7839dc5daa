from __future__ import annotations

from ..extensions import db
from ..isolation.descriptors import ScopeDescriptor, LEVEL_TENANT
from ..time_utils import to_utc_z


class SecurityEvent(db.Model):
    """
    Security event audit log with tenant context.

    MULTI-TENANT: Events carry tenant_id, company_id and branch_id so they can be
    filtered per tenant. tenant_id is NULL for failures recorded before a scope
    existed; those rows are only visible to platform administrators.

    IMMUTABLE: Never update or delete. Append-only for audit integrity
    (enforced by the isolation write guard).
    """
    __tablename__ = "security_events"
    __table_args__ = (
        db.Index("ix_security_events_user_type", "user_id", "event_type"),
        db.Index("ix_security_events_tenant_occurred", "tenant_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )
    __scope__ = ScopeDescriptor(LEVEL_TENANT, "tenant_id", append_only=True)

    id = db.Column(db.Integer, primary_key=True)

    # Plain ids, not FKs: denied requests may reference ids that do not exist
    tenant_id = db.Column(db.Integer, nullable=True, index=True)
    company_id = db.Column(db.Integer, nullable=True)
    branch_id = db.Column(db.Integer, nullable=True)
    user_id = db.Column(db.String(64), nullable=True, index=True)

    # Event classification
    event_type = db.Column(db.String(64), nullable=False, index=True)  # SCOPE_RESOLUTION_DENIED, BRANCH_ACCESS_DENIED, etc.
    resource = db.Column(db.String(128), nullable=True)  # e.g., "/api/patients/12"
    action = db.Column(db.String(64), nullable=True)     # e.g., "GET", "TRANSFER"

    # Event details
    success = db.Column(db.Boolean, nullable=False, index=True)
    reason = db.Column(db.Text, nullable=True)

    # Client context
    ip_address = db.Column(db.String(45), nullable=True)
    user_agent = db.Column(db.String(512), nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "company_id": self.company_id,
            "branch_id": self.branch_id,
            "user_id": self.user_id,
            "event_type": self.event_type,
            "resource": self.resource,
            "action": self.action,
            "success": self.success,
            "reason": self.reason,
            "ip_address": self.ip_address,
            "occurred_at": to_utc_z(self.occurred_at),
        }
