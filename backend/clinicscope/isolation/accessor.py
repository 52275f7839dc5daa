"""
Request-lifetime holder for the current AccessScope.

Uses contextvars rather than Flask g or threading.local():
- Each worker thread and each asyncio task sees its own value
- Tasks created with asyncio keep the scope that was active when they were
  created, not whatever is active when they resume
- Token based reset restores the ambient scope after an override

Usage:
    # In middleware
    token = install(build_access_scope(principal, branch_ids))
    ...
    reset(token)

    # Background job running as a tenant
    with scope_override(AccessScope.create(tenant_id=7)):
        run_job()
"""

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar, Token
from typing import Iterable, Iterator

from .scope import AccessScope, NO_ACCESS

_current_scope: ContextVar[AccessScope] = ContextVar("access_scope", default=NO_ACCESS)


def current_scope() -> AccessScope:
    """Read-only view of the scope for the current unit of work."""
    return _current_scope.get()


def install(scope: AccessScope) -> Token:
    """Replace the held scope. Returns a token for reset()."""
    return _current_scope.set(scope)


def set_context(
    tenant_id: int | None = None,
    company_id: int | None = None,
    branch_id: int | None = None,
    accessible_branch_ids: Iterable[int] | None = None,
    is_super_admin: bool = False,
    is_company_admin: bool = False,
    user_id: int | str | None = None,
) -> Token:
    """Atomically replace every field of the held scope. Last write wins."""
    return install(AccessScope.create(
        tenant_id=tenant_id,
        company_id=company_id,
        branch_id=branch_id,
        accessible_branch_ids=accessible_branch_ids,
        is_super_admin=is_super_admin,
        is_company_admin=is_company_admin,
        user_id=user_id,
    ))


def clear() -> None:
    """Drop back to the no-access default."""
    _current_scope.set(NO_ACCESS)


def reset(token: Token) -> None:
    """Restore the scope that was active before the matching install()."""
    try:
        _current_scope.reset(token)
    except (ValueError, RuntimeError):
        # Token from another context or already used
        clear()


def is_context_set() -> bool:
    return _current_scope.get().is_set


def has_branch_access(branch_id: int | None) -> bool:
    return _current_scope.get().has_branch_access(branch_id)


@contextmanager
def scope_override(scope: AccessScope) -> Iterator[AccessScope]:
    """Run a block under an explicit scope; the previous scope is always restored."""
    token = install(scope)
    try:
        yield scope
    finally:
        reset(token)
