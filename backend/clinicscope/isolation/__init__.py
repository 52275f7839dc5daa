"""
Tenant isolation core.

- scope:         Principal / AccessScope value types and role rules
- accessor:      request-lifetime holder for the current scope (contextvars)
- descriptors:   per-model scoping descriptors and mixins
- query_filters: default-on query predicates, write guard, privileged bypass
- middleware:    per-request scope resolution and teardown

Only the modules without model imports are re-exported here so that models
can import descriptors without a cycle.
"""

from .scope import (
    AccessScope,
    Principal,
    NO_ACCESS,
    ROLE_SUPER_ADMIN,
    ROLE_TENANT_ADMIN,
    ROLE_COMPANY_ADMIN,
    ROLE_BRANCH_USER,
    VALID_ROLES,
    build_access_scope,
)
from .accessor import (
    current_scope,
    set_context,
    install,
    clear,
    reset,
    is_context_set,
    has_branch_access,
    scope_override,
)
from .errors import (
    TenantAccessError,
    ResolutionDenied,
    IsolationViolationError,
    ScopeBypassDenied,
    ScopingConfigurationError,
)

__all__ = [
    "AccessScope", "Principal", "NO_ACCESS",
    "ROLE_SUPER_ADMIN", "ROLE_TENANT_ADMIN", "ROLE_COMPANY_ADMIN", "ROLE_BRANCH_USER",
    "VALID_ROLES", "build_access_scope",
    "current_scope", "set_context", "install", "clear", "reset",
    "is_context_set", "has_branch_access", "scope_override",
    "TenantAccessError", "ResolutionDenied", "IsolationViolationError",
    "ScopeBypassDenied", "ScopingConfigurationError",
]
