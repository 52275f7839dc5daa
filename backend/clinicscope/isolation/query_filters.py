"""
Query Scoping Layer: default-on tenant/branch filtering for every ORM statement.

WHY: Hand-written `filter_by(tenant_id=...)` calls get forgotten. Instead the
active AccessScope is turned into a predicate per partitioned model and added
to every ORM SELECT, UPDATE and DELETE through a session hook, so joins,
subqueries and aggregates carry it. Lazy loads inherit it from the statement
that loaded the parent.

SECURITY INVARIANTS:
1. No scope installed -> every partitioned query matches nothing
2. Soft-deleted rows are hidden unless the statement opts in with
   execution_options(include_deleted=True)
3. Removing the tenant predicate needs bypass_scope_filters(reason), which is
   limited to platform administrators and audit-logged
4. Writes are checked in before_flush, and ORM INSERT/UPDATE statements
   are checked before they run: rows must land inside the scope,
   tenant_id/company_id never change, branch moves stay within one company
5. Predicates are pure functions of (model, scope); applying them twice is
   the same as applying them once

USAGE:
    from clinicscope.isolation.query_filters import scoped_query, ScopedRepository

    patients = scoped_query(Patient).filter_by(national_id="784-1").all()

    with bypass_scope_filters("monthly cross-tenant utilisation report"):
        totals = db.session.query(Patient.branch_id, db.func.count()).group_by(Patient.branch_id).all()
"""

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from functools import lru_cache

from flask import current_app, has_app_context
from sqlalchemy import and_, event, false, or_, select, inspect as sa_inspect
from sqlalchemy.orm import Session, with_loader_criteria
from sqlalchemy.sql.elements import BindParameter, ClauseElement

from ..extensions import db
from ..models import Branch, Company
from ..time_utils import utcnow
from .accessor import current_scope
from .descriptors import (
    LEVEL_BRANCH,
    LEVEL_COMPANY,
    LEVEL_TENANT,
    is_soft_deletable,
    scope_descriptor,
    scoped_models,
)
from .errors import IsolationViolationError, ScopeBypassDenied
from .scope import AccessScope

# Columns that fix ownership at creation time
IMMUTABLE_OWNERSHIP_COLUMNS = ("tenant_id", "company_id")

_filters_ignored: ContextVar[str | None] = ContextVar("scope_filters_ignored", default=None)


def filters_ignored() -> bool:
    return _filters_ignored.get() is not None


# =============================================================================
# HIERARCHY SUBQUERIES (Core tables, so loader criteria never recurse into them)
# =============================================================================

def tenant_branch_ids(tenant_id: int):
    branches, companies = Branch.__table__, Company.__table__
    return (
        select(branches.c.id)
        .join(companies, companies.c.id == branches.c.company_id)
        .where(companies.c.tenant_id == tenant_id)
    )


def tenant_company_ids(tenant_id: int):
    companies = Company.__table__
    return select(companies.c.id).where(companies.c.tenant_id == tenant_id)


def company_branch_ids(company_id: int):
    branches = Branch.__table__
    return select(branches.c.id).where(branches.c.company_id == company_id)


def branch_company_ids(branch_ids):
    branches = Branch.__table__
    return select(branches.c.company_id).where(branches.c.id.in_(sorted(branch_ids)))


def branch_owner(connection, branch_id: int | None) -> tuple[int, int] | None:
    """(company_id, tenant_id) for a branch, or None if it does not exist."""
    if branch_id is None:
        return None
    branches, companies = Branch.__table__, Company.__table__
    row = connection.execute(
        select(companies.c.id, companies.c.tenant_id)
        .select_from(branches.join(companies, companies.c.id == branches.c.company_id))
        .where(branches.c.id == branch_id)
    ).first()
    return (row[0], row[1]) if row else None


def company_tenant(connection, company_id: int | None) -> int | None:
    if company_id is None:
        return None
    companies = Company.__table__
    return connection.execute(
        select(companies.c.tenant_id).where(companies.c.id == company_id)
    ).scalar()


# =============================================================================
# PREDICATES
# =============================================================================

def _narrow_to_company(scope: AccessScope) -> bool:
    # Company admins are exempt from branch filtering only inside their own company
    return scope.company_id is not None and scope.is_company_admin


def scope_predicate(model, scope: AccessScope | None = None):
    """
    Predicate restricting `model` to `scope`.

    Returns None when no restriction applies (platform model or super admin)
    and false() when the scope grants nothing.
    """
    descriptor = scope_descriptor(model)
    if descriptor is None or not descriptor.is_partitioned:
        return None

    scope = scope if scope is not None else current_scope()
    if not scope.is_set:
        return false()
    if scope.is_super_admin:
        return None
    if scope.tenant_id is None:
        return false()

    column = getattr(model, descriptor.column)

    if descriptor.level == LEVEL_TENANT:
        clause = column == scope.tenant_id
        if descriptor.allow_null_tenant:
            clause = or_(clause, column.is_(None))
        return clause

    if descriptor.level == LEVEL_COMPANY:
        clauses = [column.in_(tenant_company_ids(scope.tenant_id))]
        if _narrow_to_company(scope):
            clauses.append(column == scope.company_id)
        if scope.restricts_branches:
            clauses.append(column.in_(branch_company_ids(scope.effective_branch_ids)))
        return and_(*clauses)

    # LEVEL_BRANCH
    clauses = [column.in_(tenant_branch_ids(scope.tenant_id))]
    if _narrow_to_company(scope):
        clauses.append(column.in_(company_branch_ids(scope.company_id)))
    if scope.restricts_branches:
        clauses.append(column.in_(sorted(scope.effective_branch_ids)))
    return and_(*clauses)


def soft_delete_predicate(model):
    if not is_soft_deletable(model):
        return None
    return model.is_deleted == False  # noqa: E712


@lru_cache(maxsize=None)
def _guarded_models() -> tuple[type, ...]:
    return tuple(scoped_models())


def _apply_scope_criteria(execute_state) -> None:
    """do_orm_execute hook: attach scope criteria to ORM statements."""
    if not execute_state.is_orm_statement:
        return
    if execute_state.is_insert or execute_state.is_update or execute_state.is_delete:
        _guard_bulk_write(execute_state)
    if not (execute_state.is_select or execute_state.is_update or execute_state.is_delete):
        return
    # Refreshes and lazy loads inherit the criteria of the statement that loaded the parent
    if execute_state.is_column_load or execute_state.is_relationship_load:
        return

    include_deleted = execute_state.execution_options.get("include_deleted", False)
    ignored = filters_ignored()
    scope = current_scope()

    options = []
    for model in _guarded_models():
        criteria = []
        if not ignored:
            predicate = scope_predicate(model, scope)
            if predicate is not None:
                criteria.append(predicate)
        if not include_deleted:
            hidden = soft_delete_predicate(model)
            if hidden is not None:
                criteria.append(hidden)
        if criteria:
            options.append(with_loader_criteria(model, and_(*criteria), include_aliases=True))

    if options:
        execute_state.statement = execute_state.statement.options(*options)


# =============================================================================
# WRITE GUARD
# =============================================================================

def _row_in_scope(connection, descriptor, value, scope: AccessScope) -> bool:
    if not scope.is_set:
        return False
    if scope.is_super_admin:
        return True
    if scope.tenant_id is None or value is None:
        return False

    if descriptor.level == LEVEL_TENANT:
        return value == scope.tenant_id

    if descriptor.level == LEVEL_COMPANY:
        if company_tenant(connection, value) != scope.tenant_id:
            return False
        if _narrow_to_company(scope) and value != scope.company_id:
            return False
        if scope.restricts_branches:
            owners = [branch_owner(connection, b) for b in scope.effective_branch_ids]
            return any(owner is not None and owner[0] == value for owner in owners)
        return True

    owner = branch_owner(connection, value)
    if owner is None:
        return False
    company_id, tenant_id = owner
    if tenant_id != scope.tenant_id:
        return False
    if _narrow_to_company(scope) and company_id != scope.company_id:
        return False
    if scope.restricts_branches and not scope.has_branch_access(value):
        return False
    return True


def _persisted_value(connection, obj, column: str):
    state = sa_inspect(obj)
    history = state.attrs[column].history
    if history.deleted:
        return history.deleted[0]
    if not history.has_changes():
        return getattr(obj, column)
    table = type(obj).__table__
    return connection.execute(
        select(table.c[column]).where(table.c.id == state.identity[0])
    ).scalar()


def _reject(model, cause: str) -> None:
    entity = model.__name__
    if has_app_context():
        scope = current_scope()
        current_app.logger.warning(
            "Isolation write rejected on %s (tenant=%s user=%s): %s",
            entity, scope.tenant_id, scope.user_id, cause,
        )
    raise IsolationViolationError(cause, entity=entity)


def _check_insert(connection, obj, scope, ignored) -> None:
    descriptor = scope_descriptor(type(obj))
    if descriptor is None or not descriptor.is_partitioned or descriptor.append_only:
        return
    if ignored:
        return
    if not _row_in_scope(connection, descriptor, getattr(obj, descriptor.column), scope):
        _reject(type(obj), "insert outside the active scope")


def _check_update(connection, obj, scope, ignored) -> None:
    descriptor = scope_descriptor(type(obj))
    if descriptor is None or not descriptor.is_partitioned:
        return
    if descriptor.append_only:
        _reject(type(obj), "append-only record cannot be modified")

    state = sa_inspect(obj)
    for column in IMMUTABLE_OWNERSHIP_COLUMNS:
        if column not in state.mapper.column_attrs:
            continue
        if not state.attrs[column].history.has_changes():
            continue
        previous = _persisted_value(connection, obj, column)
        if previous is not None and previous != getattr(obj, column):
            _reject(type(obj), f"{column} cannot change after creation")

    current = getattr(obj, descriptor.column)
    if descriptor.level == LEVEL_BRANCH and state.attrs[descriptor.column].history.has_changes():
        previous = _persisted_value(connection, obj, descriptor.column)
        if previous != current:
            old_owner = branch_owner(connection, previous)
            new_owner = branch_owner(connection, current)
            if old_owner is None or new_owner is None or old_owner[0] != new_owner[0]:
                _reject(type(obj), "branch moves must stay within the same company")
            if not ignored and not _row_in_scope(connection, descriptor, previous, scope):
                _reject(type(obj), "source branch outside the active scope")

    if ignored:
        return
    if not _row_in_scope(connection, descriptor, current, scope):
        _reject(type(obj), "update outside the active scope")


def _check_delete(connection, obj, scope, ignored) -> None:
    descriptor = scope_descriptor(type(obj))
    if descriptor is None or not descriptor.is_partitioned:
        return
    if descriptor.append_only:
        _reject(type(obj), "append-only record cannot be deleted")
    if ignored:
        return
    if not _row_in_scope(connection, descriptor, getattr(obj, descriptor.column), scope):
        _reject(type(obj), "delete outside the active scope")


def _guard_flush(session, flush_context, instances) -> None:
    """before_flush hook: validate pending writes against the active scope."""
    scope = current_scope()
    ignored = filters_ignored()
    connection = session.connection()

    for obj in list(session.new):
        _check_insert(connection, obj, scope, ignored)
    for obj in list(session.dirty):
        if session.is_modified(obj, include_collections=False):
            _check_update(connection, obj, scope, ignored)
    for obj in list(session.deleted):
        _check_delete(connection, obj, scope, ignored)


# ORM INSERT/UPDATE statements write without a flush, so their values are checked here

_UNRESOLVED = object()


def _literal(value):
    if isinstance(value, BindParameter):
        return value.effective_value
    if isinstance(value, ClauseElement):
        return _UNRESOLVED
    return value


def _column_key(key) -> str:
    return key if isinstance(key, str) else getattr(key, "key", str(key))


def _statement_rows(execute_state) -> list[dict]:
    """Values an ORM INSERT/UPDATE assigns, one dict per target row."""
    statement = execute_state.statement

    shared = {}
    pairs = list((getattr(statement, "_values", None) or {}).items())
    pairs += list(getattr(statement, "_ordered_values", None) or ())
    for key, value in pairs:
        shared[_column_key(key)] = _literal(value)
    for name in getattr(statement, "_select_names", None) or ():
        shared[_column_key(name)] = _UNRESOLVED

    rows = []
    column_keys = [c.key for c in statement.table.c]
    for batch in getattr(statement, "_multi_values", None) or ():
        for entry in batch:
            if isinstance(entry, dict):
                items = entry.items()
            else:
                items = zip(column_keys, entry)
            rows.append(dict(shared, **{_column_key(k): _literal(v) for k, v in items}))
    if not rows:
        rows = [shared]

    params = execute_state.parameters
    if isinstance(params, dict) and params:
        params = [params]
    if params:
        rows = [
            dict(row, **{_column_key(k): _literal(v) for k, v in param.items()})
            for row in rows
            for param in params
        ]
    return rows


def _affected_owners(execute_state, model, descriptor, row, scope, ignored) -> set:
    """Current partition values of the rows an ORM UPDATE will touch."""
    column = getattr(model, descriptor.column)
    query = select(column).distinct()

    primary_keys = [c.key for c in sa_inspect(model).primary_key]
    if all(key in row for key in primary_keys):
        query = query.where(*(getattr(model, key) == row[key] for key in primary_keys))
    elif execute_state.statement.whereclause is not None:
        query = query.where(execute_state.statement.whereclause)

    if not ignored:
        predicate = scope_predicate(model, scope)
        if predicate is not None:
            query = query.where(predicate)
    if not execute_state.execution_options.get("include_deleted", False):
        hidden = soft_delete_predicate(model)
        if hidden is not None:
            query = query.where(hidden)

    return {value for (value,) in execute_state.session.connection().execute(query)}


def _guard_bulk_write(execute_state) -> None:
    mapper = execute_state.bind_mapper
    if mapper is None:
        return
    model = mapper.class_
    descriptor = scope_descriptor(model)
    if descriptor is None or not descriptor.is_partitioned:
        return
    if descriptor.append_only and not execute_state.is_insert:
        _reject(model, "append-only records cannot be modified")
    if execute_state.is_delete:
        return

    scope = current_scope()
    ignored = filters_ignored()
    connection = execute_state.session.connection()
    rows = _statement_rows(execute_state)

    if execute_state.is_insert:
        if ignored or descriptor.append_only:
            return
        for row in rows:
            value = row.get(descriptor.column)
            if value is _UNRESOLVED or not _row_in_scope(connection, descriptor, value, scope):
                _reject(model, "insert outside the active scope")
        return

    primary_keys = {c.key for c in mapper.primary_key}
    for row in rows:
        for column in IMMUTABLE_OWNERSHIP_COLUMNS:
            if column in row and column in mapper.column_attrs:
                _reject(model, f"{column} cannot change after creation")

        if descriptor.column not in row or descriptor.column in primary_keys:
            continue
        target = row[descriptor.column]
        if target is _UNRESOLVED:
            _reject(model, f"{descriptor.column} assignment cannot be verified")
        if not ignored and not _row_in_scope(connection, descriptor, target, scope):
            _reject(model, "update outside the active scope")

        if descriptor.level == LEVEL_BRANCH:
            new_owner = branch_owner(connection, target)
            for previous in _affected_owners(execute_state, model, descriptor, row, scope, ignored):
                old_owner = branch_owner(connection, previous)
                if old_owner is None or new_owner is None or old_owner[0] != new_owner[0]:
                    _reject(model, "branch moves must stay within the same company")


def install_scope_guards() -> None:
    """Register the read and write hooks once per process."""
    if not event.contains(Session, "do_orm_execute", _apply_scope_criteria):
        event.listen(Session, "do_orm_execute", _apply_scope_criteria)
    if not event.contains(Session, "before_flush", _guard_flush):
        event.listen(Session, "before_flush", _guard_flush)


# =============================================================================
# BYPASS
# =============================================================================

@contextmanager
def internal_unfiltered(reason: str = "isolation core"):
    """
    Lift tenant predicates for the isolation core's own lookups
    (identity resolution, hierarchy resolution, audits).

    Not for business code: use bypass_scope_filters().
    """
    token = _filters_ignored.set(reason)
    try:
        yield
    finally:
        _filters_ignored.reset(token)


@contextmanager
def bypass_scope_filters(reason: str):
    """
    Privileged cross-tenant access for platform administrators.

    SECURITY: Requires a super admin scope and a stated reason.
    Every use is recorded as SCOPE_FILTER_BYPASS. Soft-delete filtering
    still applies.

    Raises:
        ScopeBypassDenied if the current scope is not a platform administrator
    """
    from ..services.audit_service import log_denial, log_security_event

    scope = current_scope()
    if not reason or not reason.strip():
        raise ValueError("A reason is required to bypass scope filters")

    if not scope.is_set or not scope.is_super_admin:
        current_app.logger.warning(
            "Scope filter bypass refused for user %s (tenant=%s): %s",
            scope.user_id, scope.tenant_id, reason,
        )
        log_denial("SCOPE_FILTER_BYPASS", reason=reason, scope=scope)
        raise ScopeBypassDenied("Unfiltered access requires platform administrator scope")

    current_app.logger.warning("Scope filters bypassed by user %s: %s", scope.user_id, reason)
    log_security_event(
        event_type="SCOPE_FILTER_BYPASS",
        success=True,
        reason=reason,
        scope=scope,
    )
    with internal_unfiltered(reason):
        yield


# =============================================================================
# DATA ACCESS SURFACE
# =============================================================================

def scoped_query(model, include_deleted: bool = False):
    """
    Base query for `model` restricted to the current scope.

    The session hook applies the same predicate again; the result is identical.
    """
    query = db.session.query(model)
    predicate = scope_predicate(model)
    if predicate is not None:
        query = query.filter(predicate)
    if include_deleted:
        query = query.execution_options(include_deleted=True)
    return query


class ScopedRepository:
    """
    Repository for one partitioned model. Reads are scoped, writes go through
    the flush guard.
    """

    def __init__(self, model):
        if scope_descriptor(model) is None:
            raise TypeError(f"{model.__name__} has no scoping descriptor")
        self.model = model

    def query(self, include_deleted: bool = False):
        return scoped_query(self.model, include_deleted=include_deleted)

    def get(self, entity_id: int, include_deleted: bool = False):
        return self.query(include_deleted).filter(self.model.id == entity_id).first()

    def list(self, include_deleted: bool = False, **filters):
        return self.query(include_deleted).filter_by(**filters).order_by(self.model.id).all()

    def count(self, include_deleted: bool = False) -> int:
        return self.query(include_deleted).count()

    def add(self, entity, commit: bool = True):
        db.session.add(entity)
        if commit:
            db.session.commit()
        else:
            db.session.flush()
        return entity

    def soft_delete(self, entity, commit: bool = True):
        if not is_soft_deletable(self.model):
            raise TypeError(f"{self.model.__name__} does not support soft delete")
        entity.is_deleted = True
        entity.deleted_at = utcnow()
        if commit:
            db.session.commit()
        return entity
