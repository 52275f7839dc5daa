from __future__ import annotations

from ..extensions import db
from ..isolation.descriptors import ScopeDescriptor, LEVEL_TENANT, LEVEL_COMPANY
from ..time_utils import to_utc_z


class Tenant(db.Model):
    """
    Multi-tenant root: every customer organization is a Tenant.

    WHY: Shared-database multi-tenancy with strict isolation.
    Companies, branches, users and clinical data belong to exactly one tenant,
    reached through Branch -> Company -> Tenant.

    DESIGN:
    - Tenants are the isolation boundary
    - Companies belong to tenants (tenant_id FK)
    - Branches belong to companies (company_id FK)
    - The isolation core reads this hierarchy; it never creates or deletes it
    """
    __tablename__ = "tenants"
    __table_args__ = {"sqlite_autoincrement": True}
    __scope__ = ScopeDescriptor(LEVEL_TENANT, "id")

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    code = db.Column(db.String(32), nullable=True, unique=True, index=True)

    # License limits
    max_companies = db.Column(db.Integer, nullable=False, default=1)
    max_users = db.Column(db.Integer, nullable=False, default=10)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self) -> str:
        return f"<Tenant id={self.id} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "max_companies": self.max_companies,
            "max_users": self.max_users,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class Company(db.Model):
    """
    Business unit within a tenant (e.g. one clinic brand).

    MULTI-TENANT: tenant_id is fixed at creation and never changes.
    """
    __tablename__ = "companies"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "code", name="uq_companies_tenant_code"),
        {"sqlite_autoincrement": True},
    )
    __scope__ = ScopeDescriptor(LEVEL_TENANT, "tenant_id")

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    code = db.Column(db.String(32), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    tenant = db.relationship("Tenant", backref=db.backref("companies", lazy=True))

    def __repr__(self) -> str:
        return f"<Company id={self.id} name={self.name!r} tenant_id={self.tenant_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "code": self.code,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class Branch(db.Model):
    """
    Physical location within a company; the finest partition for clinical data.

    MULTI-TENANT: Branch codes are unique within a company, not globally.
    company_id is fixed at creation and never changes.
    """
    __tablename__ = "branches"
    __table_args__ = (
        db.UniqueConstraint("company_id", "code", name="uq_branches_company_code"),
        db.Index("ix_branches_company_id", "company_id"),
        {"sqlite_autoincrement": True},
    )
    __scope__ = ScopeDescriptor(LEVEL_COMPANY, "company_id")

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=False)
    name = db.Column(db.String(120), nullable=False)
    code = db.Column(db.String(32), nullable=True)
    timezone = db.Column(db.String(64), nullable=False, default="UTC")
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    company = db.relationship("Company", backref=db.backref("branches", lazy=True))

    def __repr__(self) -> str:
        return f"<Branch id={self.id} name={self.name!r} company_id={self.company_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "name": self.name,
            "code": self.code,
            "timezone": self.timezone,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }
