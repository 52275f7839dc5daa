from __future__ import annotations

from ..extensions import db
from ..isolation.descriptors import BranchScopedMixin, CompanyScopedMixin, SoftDeleteMixin
from ..time_utils import to_utc_z


class Patient(BranchScopedMixin, SoftDeleteMixin, db.Model):
    """
    Patient record, owned by one branch.

    MULTI-TENANT: tenant is resolved through the branch. Transfers between
    branches are allowed only inside the same company.
    """
    __tablename__ = "patients"
    __table_args__ = (
        db.UniqueConstraint("branch_id", "national_id", name="uq_patients_branch_national_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    national_id = db.Column(db.String(32), nullable=False)
    full_name = db.Column(db.String(255), nullable=False)
    date_of_birth = db.Column(db.Date, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    branch = db.relationship("Branch")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "branch_id": self.branch_id,
            "national_id": self.national_id,
            "full_name": self.full_name,
            "date_of_birth": self.date_of_birth.isoformat() if self.date_of_birth else None,
            "is_deleted": self.is_deleted,
            "created_at": to_utc_z(self.created_at),
        }


class Appointment(BranchScopedMixin, db.Model):
    """Appointment booked at a branch for a patient of the same tenant."""
    __tablename__ = "appointments"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    patient_id = db.Column(db.Integer, db.ForeignKey("patients.id"), nullable=False, index=True)
    scheduled_at = db.Column(db.DateTime(timezone=True), nullable=False)
    status = db.Column(db.String(16), nullable=False, default="BOOKED")

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    patient = db.relationship("Patient", backref=db.backref("appointments", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "branch_id": self.branch_id,
            "patient_id": self.patient_id,
            "scheduled_at": to_utc_z(self.scheduled_at),
            "status": self.status,
            "created_at": to_utc_z(self.created_at),
        }


class Department(CompanyScopedMixin, db.Model):
    """Clinical department shared by all branches of a company."""
    __tablename__ = "departments"
    __table_args__ = (
        db.UniqueConstraint("company_id", "name", name="uq_departments_company_name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "name": self.name,
        }
