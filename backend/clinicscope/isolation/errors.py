"""
Isolation error taxonomy.

Authorization denials are NOT exceptions: validation helpers return False or a
structured result so callers can branch on them. The classes below cover the
cases that must interrupt control flow:

- ResolutionDenied: the request could not be given a scope (missing claims,
  inactive or unknown tenant/company/branch, cross-tenant ids). Handled by the
  resolution middleware; the cause is logged, never returned to the client.
- IsolationViolationError: a write would cross the scope boundary or mutate an
  immutable ownership column. Raised before anything is flushed.
- ScopeBypassDenied: caller asked for the privileged filter bypass without
  platform rights.

Storage failures are left as SQLAlchemy errors and propagate unchanged.
"""


class TenantAccessError(Exception):
    """Raised when cross-tenant access is attempted."""
    pass


class ResolutionDenied(TenantAccessError):
    """Raised while resolving a request scope. `cause` is for logs only."""

    def __init__(self, cause: str, status: int | None = None):
        super().__init__("Access denied")
        self.cause = cause
        self.status = status


class IsolationViolationError(TenantAccessError):
    """Raised when a write would break tenant isolation invariants."""

    def __init__(self, cause: str, entity: str | None = None):
        super().__init__("Write rejected by tenant isolation")
        self.cause = cause
        self.entity = entity


class ScopeBypassDenied(TenantAccessError):
    """Raised when a non-platform caller requests an unfiltered query."""
    pass


class ScopingConfigurationError(Exception):
    """Raised at startup when a mapped model lacks a valid scoping descriptor."""
    pass
