"""
Per-request scope resolution.

State machine kept on flask.g.scope_state:

    UNRESOLVED -> RESOLVING -> RESOLVED -> (view runs) -> TORN_DOWN
                          +-> DENIED (view never runs)

Public endpoints stay UNRESOLVED and never hold a scope. Teardown runs for
every request, including ones that raised, and restores the scope that was
active before the request started.

The client only ever sees a generic denial; the cause goes to the log and
the security_events table.

Usage:
    scope_resolver = ScopeResolver()
    scope_resolver.init_app(app)

    # Custom identity source
    ScopeResolver(identity_resolver=resolve_from_gateway_headers).init_app(app)
"""

from __future__ import annotations

from typing import Callable

from flask import Flask, current_app, g, jsonify, request

from ..extensions import db
from .accessor import install, reset
from .errors import IsolationViolationError, ResolutionDenied, ScopeBypassDenied
from .query_filters import internal_unfiltered
from .scope import (
    AccessScope,
    NO_ACCESS,
    Principal,
    ROLE_COMPANY_ADMIN,
    ROLE_SUPER_ADMIN,
    VALID_ROLES,
    build_access_scope,
)

UNRESOLVED = "UNRESOLVED"
RESOLVING = "RESOLVING"
RESOLVED = "RESOLVED"
DENIED = "DENIED"
TORN_DOWN = "TORN_DOWN"

# Attribute set on view functions by @public_endpoint
PUBLIC_ENDPOINT_ATTR = "_tenancy_public"

# Optional request header selecting the active branch for this request
ACTIVE_BRANCH_HEADER = "X-Active-Branch"


def resolve_scope(principal: Principal) -> AccessScope:
    """
    Validate a principal against the stored hierarchy and build its scope.

    Raises ResolutionDenied when a claim is missing, unknown, inactive or
    points at another tenant.
    """
    from ..models import Branch, Company, Tenant
    from ..services.isolation_service import resolve_accessible_branch_ids

    if principal.role not in VALID_ROLES:
        raise ResolutionDenied(f"unknown role {principal.role!r}")

    if principal.role == ROLE_SUPER_ADMIN:
        return build_access_scope(principal, None)

    if principal.tenant_id is None:
        raise ResolutionDenied("missing tenant claim")

    with internal_unfiltered("scope resolution"):
        tenant = db.session.query(Tenant).filter(Tenant.id == principal.tenant_id).first()
        if tenant is None:
            raise ResolutionDenied(f"tenant {principal.tenant_id} does not exist")
        if not tenant.is_active:
            raise ResolutionDenied(f"tenant {principal.tenant_id} is inactive")

        if principal.company_id is not None:
            company = db.session.query(Company).filter(Company.id == principal.company_id).first()
            if company is None:
                raise ResolutionDenied(f"company {principal.company_id} does not exist")
            if company.tenant_id != principal.tenant_id:
                raise ResolutionDenied(
                    f"company {principal.company_id} belongs to tenant {company.tenant_id}"
                )
            if not company.is_active:
                raise ResolutionDenied(f"company {principal.company_id} is inactive")
        elif principal.role == ROLE_COMPANY_ADMIN:
            raise ResolutionDenied("company admin without company claim")

        claimed = set(principal.assigned_branch_ids)
        if principal.primary_branch_id is not None:
            claimed.add(principal.primary_branch_id)

        branches = {}
        if claimed:
            rows = (
                db.session.query(Branch, Company.tenant_id)
                .join(Company, Company.id == Branch.company_id)
                .filter(Branch.id.in_(sorted(claimed)))
                .all()
            )
            branches = {branch.id: (branch, tenant_id) for branch, tenant_id in rows}

        for branch_id in sorted(claimed):
            if branch_id not in branches:
                raise ResolutionDenied(f"branch {branch_id} does not exist")
            branch, tenant_id = branches[branch_id]
            if tenant_id != principal.tenant_id:
                raise ResolutionDenied(f"branch {branch_id} belongs to tenant {tenant_id}")

        primary = principal.primary_branch_id
        if primary is not None:
            branch = branches[primary][0]
            if not branch.is_active:
                raise ResolutionDenied(f"branch {primary} is inactive")
            if principal.company_id is not None and branch.company_id != principal.company_id:
                raise ResolutionDenied(f"branch {primary} outside company {principal.company_id}")

        inactive = {branch_id for branch_id, (branch, _) in branches.items() if not branch.is_active}

    accessible = resolve_accessible_branch_ids(principal) - inactive
    return build_access_scope(principal, accessible)


def _default_identity_resolver() -> Principal | None:
    from ..services.session_service import resolve_request_principal
    return resolve_request_principal()


class ScopeResolver:
    """Flask extension installing and tearing down the request AccessScope."""

    def __init__(self, app: Flask | None = None, identity_resolver: Callable[[], Principal | None] | None = None):
        self.identity_resolver = identity_resolver or _default_identity_resolver
        if app is not None:
            self.init_app(app)

    def init_app(self, app: Flask) -> None:
        app.config.setdefault("TENANCY_PUBLIC_ENDPOINTS", {"static"})
        app.config.setdefault("TENANCY_DENIAL_STATUS", 403)
        app.before_request(self._before_request)
        app.teardown_request(self._teardown_request)
        app.register_error_handler(IsolationViolationError, self._handle_isolation_violation)
        app.register_error_handler(ScopeBypassDenied, self._handle_bypass_denied)
        app.extensions["scope_resolver"] = self

    def _is_public(self) -> bool:
        endpoint = request.endpoint
        # Unrouted requests (404/405) never reach a view
        if endpoint is None:
            return True
        if endpoint in current_app.config["TENANCY_PUBLIC_ENDPOINTS"]:
            return True
        view = current_app.view_functions.get(endpoint)
        return bool(getattr(view, PUBLIC_ENDPOINT_ATTR, False))

    def _before_request(self):
        g.scope_state = UNRESOLVED
        if self._is_public():
            return None

        g.scope_state = RESOLVING
        principal = self.identity_resolver()
        if principal is None or not principal.is_authenticated:
            return self._deny(ResolutionDenied("missing or invalid credentials", status=401), None)

        try:
            scope = resolve_scope(principal)
        except ResolutionDenied as exc:
            return self._deny(exc, principal)

        g.principal = principal
        g.scope_token = install(scope)
        g.scope_state = RESOLVED

        requested_branch = request.headers.get(ACTIVE_BRANCH_HEADER)
        if requested_branch:
            from ..services.scope_service import switch_active_branch

            try:
                branch_id = int(requested_branch)
            except ValueError:
                return self._deny(ResolutionDenied(f"malformed {ACTIVE_BRANCH_HEADER} header"), principal)
            if switch_active_branch(branch_id) is None:
                return self._deny(ResolutionDenied(f"active branch {branch_id} not accessible"), principal)
        return None

    def _deny(self, exc: ResolutionDenied, principal: Principal | None):
        from ..services import audit_service

        g.scope_state = DENIED
        token = g.pop("scope_token", None)
        if token is not None:
            reset(token)

        user_id = principal.user_id if principal else None
        current_app.logger.warning(
            "Scope resolution denied for %s %s (user=%s tenant=%s): %s",
            request.method, request.path, user_id,
            principal.tenant_id if principal else None, exc.cause,
        )
        audit_service.log_security_event(
            event_type=audit_service.SCOPE_RESOLUTION_DENIED,
            success=False,
            reason=exc.cause,
            scope=NO_ACCESS,
            user_id=user_id,
            tenant_id=principal.tenant_id if principal else None,
            company_id=principal.company_id if principal else None,
            branch_id=principal.primary_branch_id if principal else None,
        )

        if exc.status == 401:
            return jsonify({"error": "Authentication required"}), 401
        status = exc.status or current_app.config["TENANCY_DENIAL_STATUS"]
        return jsonify({"error": "Access denied"}), status

    def _teardown_request(self, exc=None):
        token = g.pop("scope_token", None)
        if token is not None:
            reset(token)
        if getattr(g, "scope_state", UNRESOLVED) != UNRESOLVED:
            g.scope_state = TORN_DOWN

    def _handle_isolation_violation(self, exc: IsolationViolationError):
        from ..services import audit_service

        db.session.rollback()
        audit_service.log_security_event(
            event_type=audit_service.ISOLATION_WRITE_REJECTED,
            success=False,
            reason=f"{exc.entity}: {exc.cause}",
        )
        return jsonify({"error": "Access denied"}), 403

    def _handle_bypass_denied(self, exc: ScopeBypassDenied):
        from ..services import audit_service

        db.session.rollback()
        audit_service.log_security_event(
            event_type=audit_service.SCOPE_FILTER_BYPASS,
            success=False,
            reason=str(exc),
        )
        return jsonify({"error": "Access denied"}), 403


scope_resolver = ScopeResolver()
