# Overview: Service-layer operations for the security audit trail.

"""
Security Event Logging with Multi-Tenant Context

WHY: Every denial, resolution failure and privileged bypass must be
attributable. Events carry tenant/company/branch/user ids so they can be
filtered per tenant; the HTTP response never echoes those ids back.

MULTI-TENANT: SecurityEvent rows are append-only. Inserts are accepted under
any scope (including "no scope yet", for resolution failures); the isolation
write guard rejects updates and deletes.
"""

from flask import has_request_context, request
from sqlalchemy import insert

from ..extensions import db
from ..isolation.accessor import current_scope
from ..isolation.scope import AccessScope
from ..models import SecurityEvent

# Event types
SCOPE_RESOLUTION_DENIED = "SCOPE_RESOLUTION_DENIED"
BRANCH_ACCESS_DENIED = "BRANCH_ACCESS_DENIED"
COMPANY_ACCESS_DENIED = "COMPANY_ACCESS_DENIED"
ENTITY_ACCESS_DENIED = "ENTITY_ACCESS_DENIED"
CROSS_TENANT_RELATIONSHIP_DENIED = "CROSS_TENANT_RELATIONSHIP_DENIED"
SCOPE_FILTER_BYPASS = "SCOPE_FILTER_BYPASS"
ISOLATION_WRITE_REJECTED = "ISOLATION_WRITE_REJECTED"
TENANT_DEACTIVATED = "TENANT_DEACTIVATED"
BRANCH_SWITCHED = "BRANCH_SWITCHED"


def _event_fields(
    event_type: str,
    success: bool,
    reason: str | None,
    scope: AccessScope | None,
    user_id: int | str | None,
    tenant_id: int | None,
    company_id: int | None,
    branch_id: int | None,
    resource: str | None,
    action: str | None,
    ip_address: str | None,
    user_agent: str | None,
) -> dict:
    scope = scope if scope is not None else current_scope()

    if has_request_context():
        resource = resource if resource is not None else request.path
        action = action if action is not None else request.method
        ip_address = ip_address if ip_address is not None else request.remote_addr
        user_agent = user_agent if user_agent is not None else request.headers.get("User-Agent")

    if user_id is None:
        user_id = scope.user_id

    return {
        "user_id": str(user_id) if user_id is not None else None,
        "tenant_id": tenant_id if tenant_id is not None else scope.tenant_id,
        "company_id": company_id if company_id is not None else scope.company_id,
        "branch_id": branch_id if branch_id is not None else scope.branch_id,
        "event_type": event_type,
        "resource": resource,
        "action": action,
        "success": success,
        "reason": reason,
        "ip_address": ip_address,
        "user_agent": user_agent,
    }


def log_security_event(
    event_type: str,
    success: bool,
    reason: str | None = None,
    scope: AccessScope | None = None,
    user_id: int | str | None = None,
    tenant_id: int | None = None,
    company_id: int | None = None,
    branch_id: int | None = None,
    resource: str | None = None,
    action: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    commit: bool = True,
) -> SecurityEvent:
    """
    Append a security event with tenant context.

    Ids not given explicitly are taken from `scope` (defaults to the current
    scope). Request path, method, IP and user agent are filled in when called
    inside a request.

    event_type examples:
    - SCOPE_RESOLUTION_DENIED
    - BRANCH_ACCESS_DENIED
    - CROSS_TENANT_RELATIONSHIP_DENIED
    - SCOPE_FILTER_BYPASS
    - ISOLATION_WRITE_REJECTED
    """
    event = SecurityEvent(**_event_fields(
        event_type, success, reason, scope, user_id, tenant_id, company_id,
        branch_id, resource, action, ip_address, user_agent,
    ))
    db.session.add(event)
    if commit:
        db.session.commit()
    return event


def log_denial(
    event_type: str,
    reason: str | None = None,
    scope: AccessScope | None = None,
    user_id: int | str | None = None,
    tenant_id: int | None = None,
    company_id: int | None = None,
    branch_id: int | None = None,
) -> None:
    """
    Record a denial raised in the middle of someone else's unit of work.

    The row is inserted on the session's connection without flushing or
    committing the session, so the caller's pending objects are left as they
    were. It becomes durable when the caller commits and is discarded with
    the caller's rollback.
    """
    fields = _event_fields(
        event_type, False, reason, scope, user_id, tenant_id, company_id,
        branch_id, None, None, None, None,
    )
    db.session.connection().execute(insert(SecurityEvent.__table__).values(**fields))
