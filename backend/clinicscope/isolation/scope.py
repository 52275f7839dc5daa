"""
Principal and AccessScope value types.

WHY: Role checks used to be repeated ad hoc across services
("is super admin? is company admin? which branch?"). All of that now lives
on AccessScope so every component consults one authority.

SECURITY INVARIANTS:
1. An unset scope grants nothing (fail closed)
2. accessible_branch_ids=None means "not branch-restricted";
   an empty frozenset means "no branch at all"
3. Scopes are immutable; replacing one replaces every field
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

ROLE_SUPER_ADMIN = "SUPER_ADMIN"
ROLE_TENANT_ADMIN = "TENANT_ADMIN"
ROLE_COMPANY_ADMIN = "COMPANY_ADMIN"
ROLE_BRANCH_USER = "BRANCH_USER"

VALID_ROLES = frozenset({
    ROLE_SUPER_ADMIN,
    ROLE_TENANT_ADMIN,
    ROLE_COMPANY_ADMIN,
    ROLE_BRANCH_USER,
})


@dataclass(frozen=True)
class Principal:
    """
    Resolved identity for one request.

    Produced by an identity resolver; never persisted.
    tenant_id is None only for SUPER_ADMIN.
    """
    user_id: int | str | None
    role: str
    tenant_id: int | None = None
    company_id: int | None = None
    primary_branch_id: int | None = None
    assigned_branch_ids: frozenset[int] = field(default_factory=frozenset)

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None

    @property
    def is_super_admin(self) -> bool:
        return self.role == ROLE_SUPER_ADMIN


def _freeze(branch_ids: Iterable[int] | None) -> frozenset[int] | None:
    if branch_ids is None:
        return None
    return frozenset(int(b) for b in branch_ids if b is not None)


@dataclass(frozen=True)
class AccessScope:
    """
    Per-request statement of which tenant/company/branches may be touched.

    `is_set` distinguishes a scope installed by resolution from the default
    "no access" value held before resolution or after teardown.
    """
    tenant_id: int | None = None
    company_id: int | None = None
    branch_id: int | None = None
    accessible_branch_ids: frozenset[int] | None = None
    is_super_admin: bool = False
    is_company_admin: bool = False
    user_id: int | str | None = None
    is_set: bool = False

    @classmethod
    def create(
        cls,
        tenant_id: int | None = None,
        company_id: int | None = None,
        branch_id: int | None = None,
        accessible_branch_ids: Iterable[int] | None = None,
        is_super_admin: bool = False,
        is_company_admin: bool = False,
        user_id: int | str | None = None,
    ) -> "AccessScope":
        return cls(
            tenant_id=tenant_id,
            company_id=company_id,
            branch_id=branch_id,
            accessible_branch_ids=_freeze(accessible_branch_ids),
            is_super_admin=bool(is_super_admin),
            is_company_admin=bool(is_company_admin),
            user_id=user_id,
            is_set=True,
        )

    @property
    def should_filter_by_tenant(self) -> bool:
        if not self.is_set:
            return True
        return self.tenant_id is not None and not self.is_super_admin

    @property
    def should_filter_by_branch(self) -> bool:
        if not self.is_set:
            return True
        if self.is_super_admin or self.is_company_admin:
            return False
        return self.branch_id is not None or bool(self.accessible_branch_ids)

    @property
    def restricts_branches(self) -> bool:
        """should_filter_by_branch, or an explicitly empty accessible set (no branch at all)."""
        if self.should_filter_by_branch:
            return True
        if self.is_super_admin or self.is_company_admin:
            return False
        return self.accessible_branch_ids is not None

    @property
    def effective_branch_ids(self) -> frozenset[int]:
        """{branch_id} | accessible_branch_ids, without nulls."""
        ids = set(self.accessible_branch_ids or ())
        if self.branch_id is not None:
            ids.add(self.branch_id)
        return frozenset(ids)

    def has_branch_access(self, branch_id: int | None) -> bool:
        if not self.is_set or branch_id is None:
            return False
        if self.is_super_admin or self.is_company_admin:
            return True
        if self.branch_id is not None and branch_id == self.branch_id:
            return True
        if self.accessible_branch_ids is not None:
            return branch_id in self.accessible_branch_ids
        return False

    def to_dict(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "company_id": self.company_id,
            "branch_id": self.branch_id,
            "accessible_branch_ids": (
                sorted(self.accessible_branch_ids)
                if self.accessible_branch_ids is not None else None
            ),
            "is_super_admin": self.is_super_admin,
            "is_company_admin": self.is_company_admin,
        }


NO_ACCESS = AccessScope()


def build_access_scope(
    principal: Principal,
    accessible_branch_ids: Iterable[int] | None,
) -> AccessScope:
    """
    Derive the scope for a validated principal.

    - SUPER_ADMIN: no tenant, no branch restriction
    - TENANT_ADMIN: tenant filtering only (no current branch, not branch-restricted)
    - COMPANY_ADMIN: tenant + own company, exempt from branch filtering
    - BRANCH_USER: primary branch plus the accessible set
    """
    if principal.role == ROLE_SUPER_ADMIN:
        return AccessScope.create(is_super_admin=True, user_id=principal.user_id)

    if principal.role == ROLE_TENANT_ADMIN:
        return AccessScope.create(
            tenant_id=principal.tenant_id,
            company_id=principal.company_id,
            user_id=principal.user_id,
        )

    if principal.role == ROLE_COMPANY_ADMIN:
        return AccessScope.create(
            tenant_id=principal.tenant_id,
            company_id=principal.company_id,
            branch_id=principal.primary_branch_id,
            accessible_branch_ids=accessible_branch_ids,
            is_company_admin=True,
            user_id=principal.user_id,
        )

    # BRANCH_USER: an empty accessible set is kept as empty, never widened to None
    return AccessScope.create(
        tenant_id=principal.tenant_id,
        company_id=principal.company_id,
        branch_id=principal.primary_branch_id,
        accessible_branch_ids=accessible_branch_ids if accessible_branch_ids is not None else (),
        user_id=principal.user_id,
    )
