"""
Scoping descriptors: how each mapped model resolves its owning tenant.

Every model declares `__scope__`. The query scoping layer and the write guard
are generated from these descriptors instead of being hand-written per entity,
and verify_scoping_descriptors() refuses to start the app if a model is
missing one.

Levels:
- branch:   column holds a branch id; tenant = Branch -> Company -> Tenant
- company:  column holds a company id; tenant = Company -> Tenant
- tenant:   column holds the tenant id directly
- platform: not partitioned (hierarchy roots, session tokens)
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.orm import declared_attr

from ..extensions import db
from .errors import ScopingConfigurationError

LEVEL_BRANCH = "branch"
LEVEL_COMPANY = "company"
LEVEL_TENANT = "tenant"
LEVEL_PLATFORM = "platform"

_LEVELS = {LEVEL_BRANCH, LEVEL_COMPANY, LEVEL_TENANT, LEVEL_PLATFORM}


@dataclass(frozen=True)
class ScopeDescriptor:
    level: str
    column: str | None = None
    # Rows with a NULL tenant stay visible to every tenant (platform principals only)
    allow_null_tenant: bool = False
    # Inserts always accepted; updates and deletes always rejected
    append_only: bool = False

    @property
    def is_partitioned(self) -> bool:
        return self.level != LEVEL_PLATFORM


PLATFORM = ScopeDescriptor(LEVEL_PLATFORM)


class BranchScopedMixin:
    """Entity owned by a branch."""
    __scope__ = ScopeDescriptor(LEVEL_BRANCH, "branch_id")

    @declared_attr
    def branch_id(cls):
        return db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False, index=True)


class CompanyScopedMixin:
    """Entity owned by a company rather than a single branch."""
    __scope__ = ScopeDescriptor(LEVEL_COMPANY, "company_id")

    @declared_attr
    def company_id(cls):
        return db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=False, index=True)


class SoftDeleteMixin:
    """Rows flagged is_deleted are hidden unless a query opts in with include_deleted."""
    is_deleted = db.Column(db.Boolean, nullable=False, default=False, index=True)
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True)


def scope_descriptor(model) -> ScopeDescriptor | None:
    return getattr(model, "__scope__", None)


def is_soft_deletable(model) -> bool:
    return hasattr(model, "is_deleted")


def mapped_models() -> list[type]:
    return [mapper.class_ for mapper in db.Model.registry.mappers]


def scoped_models() -> list[type]:
    """Mapped models that carry a partitioning descriptor or soft-delete flag."""
    models = []
    for model in mapped_models():
        descriptor = scope_descriptor(model)
        if (descriptor is not None and descriptor.is_partitioned) or is_soft_deletable(model):
            models.append(model)
    return models


def verify_scoping_descriptors() -> None:
    """
    Check every mapped model declares a usable descriptor.

    Raises ScopingConfigurationError listing every problem found.
    """
    problems = []
    for model in mapped_models():
        descriptor = scope_descriptor(model)
        name = model.__name__
        if descriptor is None:
            problems.append(f"{name}: missing __scope__ descriptor")
            continue
        if descriptor.level not in _LEVELS:
            problems.append(f"{name}: unknown scope level {descriptor.level!r}")
            continue
        if descriptor.is_partitioned:
            if not descriptor.column or descriptor.column not in model.__table__.c:
                problems.append(f"{name}: scope column {descriptor.column!r} not mapped")
        if descriptor.allow_null_tenant and descriptor.level != LEVEL_TENANT:
            problems.append(f"{name}: allow_null_tenant only applies to tenant-level models")

    if problems:
        raise ScopingConfigurationError("; ".join(problems))
