# Overview: Service-layer operations for the active access scope.

"""
Explicit scope switches.

Switching the active branch replaces the held AccessScope synchronously.
The replacement lives until the surrounding request (or scope_override
block) is torn down, after which the ambient scope is restored.
"""

from dataclasses import replace

from flask import current_app

from ..isolation.accessor import current_scope, install
from ..isolation.scope import AccessScope
from . import audit_service, isolation_service


def switch_active_branch(branch_id: int) -> AccessScope | None:
    """
    Make `branch_id` the current branch of the held scope.

    Returns the new scope, or None if the branch is not accessible (the
    held scope is left untouched).
    """
    scope = current_scope()
    if not scope.is_set:
        return None

    if not isolation_service.validate_branch_access(branch_id):
        return None

    changes = {"branch_id": branch_id}
    if not (scope.is_super_admin or scope.is_company_admin):
        # Current branch and company must agree for non-admin scopes
        changes["company_id"] = isolation_service.get_company_id_for_branch(branch_id)

    switched = replace(scope, **changes)
    install(switched)

    current_app.logger.info(
        "User %s switched active branch %s -> %s", scope.user_id, scope.branch_id, branch_id
    )
    audit_service.log_security_event(
        event_type=audit_service.BRANCH_SWITCHED,
        success=True,
        reason=f"{scope.branch_id} -> {branch_id}",
        scope=switched,
    )
    return switched
