# Overview: Service-layer operations for tenants; license limits and lifecycle.

"""
Multi-Tenant Service: Tenant Access, License Limits and Deactivation

WHY: Tenants are the isolation boundary. Besides the blanket query filter,
business code needs to ask "may this scope see tenant 7?", "does tenant 7
have room for another company?" and needs a single audited path to
deactivate a tenant.

SECURITY INVARIANTS:
1. A scope only ever sees its own tenant (super admins see all)
2. A deactivated tenant stays readable to an already resolved session of
   that tenant, flagged is_active=False; new requests are denied at
   resolution time
3. Deactivation revokes every session of the tenant and is audit-logged

USAGE:
    from clinicscope.services import tenant_service

    if not tenant_service.can_create_company(g.scope.tenant_id):
        return jsonify({"error": "Company limit reached"}), 409
"""

from flask import current_app

from ..extensions import db
from ..isolation.accessor import current_scope
from ..isolation.errors import TenantAccessError
from ..isolation.query_filters import internal_unfiltered
from ..models import Company, SessionToken, Tenant, User
from ..time_utils import utcnow
from . import audit_service


def has_access_to_tenant(tenant_id: int) -> bool:
    """True for super admins, or when `tenant_id` is the scope's own tenant."""
    scope = current_scope()
    if not scope.is_set:
        return False
    if scope.is_super_admin:
        return True
    return scope.tenant_id is not None and scope.tenant_id == tenant_id


def get_tenant(tenant_id: int) -> Tenant | None:
    """
    Fetch a tenant visible to the current scope.

    Inactive tenants are returned as-is (flagged) to their own resolved
    session; callers decide how to present them.
    """
    if not has_access_to_tenant(tenant_id):
        return None
    return db.session.query(Tenant).filter(Tenant.id == tenant_id).first()


def count_companies(tenant_id: int) -> int:
    with internal_unfiltered("tenant company count"):
        return db.session.query(Company).filter(Company.tenant_id == tenant_id).count()


def count_active_users(tenant_id: int) -> int:
    with internal_unfiltered("tenant user count"):
        return (
            db.session.query(User)
            .filter(User.tenant_id == tenant_id, User.is_active == True)  # noqa: E712
            .count()
        )


def _load_tenant(tenant_id: int) -> Tenant | None:
    with internal_unfiltered("tenant limit lookup"):
        return db.session.query(Tenant).filter(Tenant.id == tenant_id).first()


def can_create_company(tenant_id: int) -> bool:
    """
    True while the tenant has fewer companies than max_companies.

    Unknown or inactive tenants cannot grow.
    """
    tenant = _load_tenant(tenant_id)
    if not tenant or not tenant.is_active:
        return False
    return count_companies(tenant_id) < tenant.max_companies


def can_create_user(tenant_id: int) -> bool:
    """True while the tenant has fewer active users than max_users."""
    tenant = _load_tenant(tenant_id)
    if not tenant or not tenant.is_active:
        return False
    return count_active_users(tenant_id) < tenant.max_users


def get_tenant_limits(tenant_id: int) -> dict:
    tenant = _load_tenant(tenant_id)
    if not tenant:
        raise TenantAccessError("Tenant not found")
    return {
        "tenant_id": tenant.id,
        "is_active": tenant.is_active,
        "max_companies": tenant.max_companies,
        "companies": count_companies(tenant_id),
        "can_create_company": can_create_company(tenant_id),
        "max_users": tenant.max_users,
        "active_users": count_active_users(tenant_id),
        "can_create_user": can_create_user(tenant_id),
    }


def deactivate_tenant(tenant_id: int, reason: str) -> Tenant:
    """
    Deactivate a tenant and revoke all of its sessions.

    SECURITY: Super admin only. Subsequent requests from the tenant's users
    are denied during scope resolution.

    Raises:
        TenantAccessError if the caller is not a super admin or the tenant
        does not exist
    """
    scope = current_scope()
    if not scope.is_set or not scope.is_super_admin:
        current_app.logger.warning(
            "Tenant deactivation refused for user %s (tenant=%s)", scope.user_id, scope.tenant_id
        )
        raise TenantAccessError("Only platform administrators can deactivate tenants")

    tenant = db.session.query(Tenant).filter(Tenant.id == tenant_id).first()
    if not tenant:
        raise TenantAccessError("Tenant not found")

    now = utcnow()
    tenant.is_active = False

    sessions = db.session.query(SessionToken).filter(
        SessionToken.tenant_id == tenant_id,
        SessionToken.is_revoked == False,  # noqa: E712
    ).all()
    for session in sessions:
        session.is_revoked = True
        session.revoked_at = now
        session.revoked_reason = "Tenant deactivated"

    db.session.commit()

    current_app.logger.info(
        "Tenant %s deactivated by user %s (%s sessions revoked): %s",
        tenant_id, scope.user_id, len(sessions), reason,
    )
    audit_service.log_security_event(
        event_type=audit_service.TENANT_DEACTIVATED,
        success=True,
        reason=reason,
        tenant_id=tenant_id,
    )
    return tenant
