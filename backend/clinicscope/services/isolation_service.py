# Overview: Service-layer isolation decisions that a blanket query filter cannot express.

"""
Tenant Isolation Service

WHY: The query scoping layer hides foreign rows, but some questions need an
explicit answer before a write: "may this scope touch branch 7?", "can a
record in branch 3 be linked to branch 9?", "which branches may this user
use?". Those answers live here.

SECURITY INVARIANTS:
1. Every validate_* returns a bool or a structured result; denial never raises
2. A nonexistent id is a denial, indistinguishable from a foreign one
3. Super admins pass every check for ids that exist
4. Denials are logged and audited with ids; callers only see False
5. Answering a question never flushes or commits the caller's pending work

USAGE:
    from clinicscope.services import isolation_service

    if not isolation_service.validate_branch_access(branch_id):
        return jsonify({"error": "Not found"}), 404

    result = isolation_service.validate_cross_entity_relationship(src, dst, "transfer patient")
    if not result.is_valid:
        ...
"""

from __future__ import annotations

from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass, field

from flask import current_app

from ..extensions import db
from ..isolation.accessor import current_scope
from ..isolation.descriptors import LEVEL_BRANCH, LEVEL_COMPANY, LEVEL_TENANT, scope_descriptor
from ..isolation.query_filters import internal_unfiltered
from ..isolation.scope import Principal, ROLE_SUPER_ADMIN
from ..models import Branch, Company, User, UserBranch
from . import audit_service


@dataclass
class RelationshipValidation:
    """Outcome of a cross-entity relationship check."""
    is_valid: bool
    source_tenant_id: int | None
    target_tenant_id: int | None
    violation_description: str | None = None

    def to_dict(self) -> dict:
        return {
            "is_valid": self.is_valid,
            "source_tenant_id": self.source_tenant_id,
            "target_tenant_id": self.target_tenant_id,
            "violation_description": self.violation_description,
        }


@dataclass
class IsolationAuditReport:
    """Per-tenant record distribution for one entity type."""
    entity_type: str
    has_branch_id: bool
    total_records: int = 0
    tenant_distribution: dict[int, int] = field(default_factory=dict)
    unresolved_records: int = 0
    notes: str = ""

    def to_dict(self) -> dict:
        return {
            "entity_type": self.entity_type,
            "has_branch_id": self.has_branch_id,
            "total_records": self.total_records,
            "tenant_distribution": {str(k): v for k, v in self.tenant_distribution.items()},
            "unresolved_records": self.unresolved_records,
            "notes": self.notes,
        }


# =============================================================================
# HIERARCHY LOOKUPS
# =============================================================================

@contextmanager
def _lookup(reason: str):
    # Lookups never flush the caller's pending objects
    with internal_unfiltered(reason), db.session.no_autoflush:
        yield


def get_tenant_id_for_branch(branch_id: int | None) -> int | None:
    """Follow Branch -> Company -> Tenant. None if the branch does not exist."""
    if branch_id is None:
        return None
    with _lookup("branch tenant lookup"):
        row = (
            db.session.query(Company.tenant_id)
            .join(Branch, Branch.company_id == Company.id)
            .filter(Branch.id == branch_id)
            .first()
        )
    return row[0] if row else None


def get_company_id_for_branch(branch_id: int | None) -> int | None:
    if branch_id is None:
        return None
    with _lookup("branch company lookup"):
        row = db.session.query(Branch.company_id).filter(Branch.id == branch_id).first()
    return row[0] if row else None


def get_tenant_id_for_company(company_id: int | None) -> int | None:
    if company_id is None:
        return None
    with _lookup("company tenant lookup"):
        row = db.session.query(Company.tenant_id).filter(Company.id == company_id).first()
    return row[0] if row else None


def get_tenant_branch_ids(tenant_id: int) -> set[int]:
    with _lookup("tenant branch listing"):
        rows = (
            db.session.query(Branch.id)
            .join(Company, Company.id == Branch.company_id)
            .filter(Company.tenant_id == tenant_id)
            .all()
        )
    return {row[0] for row in rows}


def get_all_branch_ids() -> set[int]:
    with _lookup("platform branch listing"):
        rows = db.session.query(Branch.id).all()
    return {row[0] for row in rows}


# =============================================================================
# ACCESS VALIDATION
# =============================================================================

def _deny(event_type: str, reason: str, **ids) -> bool:
    scope = current_scope()
    current_app.logger.warning(
        "%s for user %s (tenant=%s): %s", event_type, scope.user_id, scope.tenant_id, reason
    )
    audit_service.log_denial(event_type, reason=reason, **ids)
    return False


def validate_branch_access(branch_id: int) -> bool:
    """
    True if the current scope may touch `branch_id`.

    - Super admin: true for any existing branch
    - Otherwise: branch tenant == scope tenant, and the branch passes the
      scope's branch restriction when one applies
    - Nonexistent branch or missing tenant context: false
    """
    scope = current_scope()
    tenant_id = get_tenant_id_for_branch(branch_id)

    if tenant_id is None:
        return _deny(audit_service.BRANCH_ACCESS_DENIED, f"Branch {branch_id} not found")

    if scope.is_set and scope.is_super_admin:
        return True

    if not scope.is_set or scope.tenant_id is None:
        return _deny(audit_service.BRANCH_ACCESS_DENIED, "No tenant context", branch_id=branch_id)

    if tenant_id != scope.tenant_id:
        return _deny(
            audit_service.BRANCH_ACCESS_DENIED,
            f"Branch {branch_id} belongs to tenant {tenant_id}, not {scope.tenant_id}",
            branch_id=branch_id,
        )

    if scope.restricts_branches and not scope.has_branch_access(branch_id):
        return _deny(
            audit_service.BRANCH_ACCESS_DENIED,
            f"Branch {branch_id} not in accessible set",
            branch_id=branch_id,
        )

    if scope.is_company_admin and scope.company_id is not None:
        if get_company_id_for_branch(branch_id) != scope.company_id:
            return _deny(
                audit_service.BRANCH_ACCESS_DENIED,
                f"Branch {branch_id} outside company {scope.company_id}",
                branch_id=branch_id,
            )

    return True


def validate_company_access(company_id: int) -> bool:
    """
    True if the current scope may touch `company_id`.

    Same boundary the write guard applies to company-level rows: the tenant,
    a company admin's own company, and for branch-restricted scopes the
    companies of the accessible branches.
    """
    scope = current_scope()
    tenant_id = get_tenant_id_for_company(company_id)

    if tenant_id is None:
        return _deny(audit_service.COMPANY_ACCESS_DENIED, f"Company {company_id} not found")

    if scope.is_set and scope.is_super_admin:
        return True

    if not scope.is_set or scope.tenant_id is None:
        return _deny(audit_service.COMPANY_ACCESS_DENIED, "No tenant context", company_id=company_id)

    if tenant_id != scope.tenant_id:
        return _deny(
            audit_service.COMPANY_ACCESS_DENIED,
            f"Company {company_id} belongs to tenant {tenant_id}, not {scope.tenant_id}",
            company_id=company_id,
        )

    if scope.is_company_admin and scope.company_id is not None and company_id != scope.company_id:
        return _deny(
            audit_service.COMPANY_ACCESS_DENIED,
            f"Company {company_id} outside company {scope.company_id}",
            company_id=company_id,
        )

    if scope.restricts_branches:
        reachable = {get_company_id_for_branch(b) for b in scope.effective_branch_ids}
        if company_id not in reachable:
            return _deny(
                audit_service.COMPANY_ACCESS_DENIED,
                f"Company {company_id} has no accessible branch",
                company_id=company_id,
            )

    return True


def resolve_accessible_branch_ids(principal: Principal) -> set[int]:
    """
    Branches a principal may use.

    Super admin: every branch. Otherwise the primary branch plus explicit
    assignments, intersected with the principal's tenant.
    """
    if principal.role == ROLE_SUPER_ADMIN:
        return get_all_branch_ids()
    if principal.tenant_id is None:
        return set()

    candidates = set(principal.assigned_branch_ids)
    if principal.primary_branch_id is not None:
        candidates.add(principal.primary_branch_id)
    if not candidates:
        return set()
    return candidates & get_tenant_branch_ids(principal.tenant_id)


def get_accessible_branch_ids(user_id: int | str) -> set[int]:
    """
    Branches a stored user may use.

    When the current scope is a super admin every branch is returned.
    Unknown users get an empty set.
    """
    scope = current_scope()
    if scope.is_set and scope.is_super_admin:
        return get_all_branch_ids()

    with _lookup("accessible branch resolution"):
        user = db.session.query(User).filter(User.id == user_id).first()
        if not user:
            return set()
        assigned = {
            row[0]
            for row in db.session.query(UserBranch.branch_id).filter(UserBranch.user_id == user.id).all()
        }
        principal = Principal(
            user_id=user.id,
            role=user.role,
            tenant_id=user.tenant_id,
            company_id=user.company_id,
            primary_branch_id=user.primary_branch_id,
            assigned_branch_ids=frozenset(assigned),
        )
    return resolve_accessible_branch_ids(principal)


def validate_cross_entity_relationship(
    source_branch_id: int,
    target_branch_id: int,
    relationship_description: str,
) -> RelationshipValidation:
    """
    Check that two branch-scoped records may be related.

    Valid when both branches resolve to the same tenant. Apply before
    persisting any relationship spanning two branches (transfers, links).
    """
    source_tenant_id = get_tenant_id_for_branch(source_branch_id)
    target_tenant_id = (
        source_tenant_id if target_branch_id == source_branch_id
        else get_tenant_id_for_branch(target_branch_id)
    )

    if source_tenant_id is None or target_tenant_id is None:
        description = f"{relationship_description}: branch not found"
    elif source_tenant_id != target_tenant_id:
        description = f"{relationship_description}: source and target belong to different tenants"
    else:
        return RelationshipValidation(True, source_tenant_id, target_tenant_id)

    _deny(
        audit_service.CROSS_TENANT_RELATIONSHIP_DENIED,
        f"{description} (branch {source_branch_id} tenant {source_tenant_id}, "
        f"branch {target_branch_id} tenant {target_tenant_id})",
    )
    return RelationshipValidation(False, source_tenant_id, target_tenant_id, description)


def validate_branch_move(current_branch_id: int, new_branch_id: int) -> bool:
    """A record may change branch only within the same company and inside scope."""
    if current_branch_id == new_branch_id:
        return validate_branch_access(new_branch_id)
    current_company = get_company_id_for_branch(current_branch_id)
    new_company = get_company_id_for_branch(new_branch_id)
    if current_company is None or new_company is None or current_company != new_company:
        return _deny(
            audit_service.CROSS_TENANT_RELATIONSHIP_DENIED,
            f"Branch move {current_branch_id} -> {new_branch_id} crosses companies",
        )
    return validate_branch_access(current_branch_id) and validate_branch_access(new_branch_id)


def validate_entity_branch(model, entity_id: int) -> bool:
    """
    Load a branch-scoped entity's branch_id and validate access to it.

    Missing entity: False (never reveals existence).
    """
    descriptor = scope_descriptor(model)
    if descriptor is None or descriptor.level != LEVEL_BRANCH:
        raise TypeError(f"{model.__name__} is not branch-scoped")

    column = getattr(model, descriptor.column)
    with _lookup("entity branch lookup"):
        row = (
            db.session.query(column)
            .filter(model.id == entity_id)
            .execution_options(include_deleted=True)
            .first()
        )

    if row is None:
        return _deny(audit_service.ENTITY_ACCESS_DENIED, f"{model.__name__} {entity_id} not found")

    scope = current_scope()
    if scope.is_set and scope.is_super_admin:
        return True
    return validate_branch_access(row[0])


def audit_entity_isolation(model) -> IsolationAuditReport:
    """
    Count an entity type's records per resolved tenant.

    Entity types without a branch column are reported as such rather than
    silently counted as isolated.
    """
    name = model.__name__
    descriptor = scope_descriptor(model)
    has_branch_id = "branch_id" in model.__table__.c

    report = IsolationAuditReport(entity_type=name, has_branch_id=has_branch_id)

    with _lookup(f"isolation audit of {name}"):
        if has_branch_id:
            rows = (
                db.session.query(Company.tenant_id, db.func.count(model.id))
                .select_from(model)
                .outerjoin(Branch, Branch.id == model.branch_id)
                .outerjoin(Company, Company.id == Branch.company_id)
                .group_by(Company.tenant_id)
                .execution_options(include_deleted=True)
                .all()
            )
        elif descriptor is not None and descriptor.level == LEVEL_COMPANY:
            column = getattr(model, descriptor.column)
            rows = (
                db.session.query(Company.tenant_id, db.func.count(model.id))
                .select_from(model)
                .outerjoin(Company, Company.id == column)
                .group_by(Company.tenant_id)
                .execution_options(include_deleted=True)
                .all()
            )
        elif descriptor is not None and descriptor.level == LEVEL_TENANT and descriptor.column != "id":
            column = getattr(model, descriptor.column)
            rows = (
                db.session.query(column, db.func.count(model.id))
                .group_by(column)
                .execution_options(include_deleted=True)
                .all()
            )
        else:
            rows = None
            report.total_records = (
                db.session.query(db.func.count(model.id)).execution_options(include_deleted=True).scalar()
            )

    if rows is not None:
        distribution = Counter()
        for tenant_id, count in rows:
            if tenant_id is None:
                report.unresolved_records += count
            else:
                distribution[tenant_id] += count
        report.tenant_distribution = dict(distribution)
        report.total_records = sum(distribution.values()) + report.unresolved_records

    notes = []
    if not has_branch_id:
        notes.append(f"{name} does not have BranchId")
        if descriptor is None or not descriptor.is_partitioned:
            notes.append("not tenant-partitioned")
        else:
            notes.append(f"isolated at {descriptor.level} level via {descriptor.column}")
    if report.unresolved_records:
        notes.append(f"{report.unresolved_records} record(s) could not be resolved to a tenant")
    report.notes = "; ".join(notes)

    current_app.logger.info(
        "Isolation audit %s: %s records across %s tenants",
        name, report.total_records, len(report.tenant_distribution),
    )
    return report
