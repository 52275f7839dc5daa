# Overview: Service-layer operations for patients and appointments.

"""
Patient and appointment operations on top of the scoped data-access surface.

Reads go through ScopedRepository, so a foreign patient is simply not
found. Relationship-spanning writes (transfers, bookings) are checked with
the isolation service first; the flush guard re-checks every write.
"""

from datetime import date, datetime

from ..extensions import db
from ..isolation.errors import TenantAccessError
from ..isolation.query_filters import ScopedRepository
from ..models import Appointment, Patient
from . import isolation_service

patients = ScopedRepository(Patient)
appointments = ScopedRepository(Appointment)


class PatientNotFound(TenantAccessError):
    """Raised for patients that do not exist or are outside the scope."""
    pass


def list_patients(branch_id: int | None = None, include_deleted: bool = False) -> list[Patient]:
    if branch_id is not None:
        return patients.list(include_deleted=include_deleted, branch_id=branch_id)
    return patients.list(include_deleted=include_deleted)


def get_patient(patient_id: int, include_deleted: bool = False) -> Patient:
    patient = patients.get(patient_id, include_deleted=include_deleted)
    if patient is None:
        raise PatientNotFound("Patient not found")
    return patient


def create_patient(
    branch_id: int,
    national_id: str,
    full_name: str,
    date_of_birth: date | None = None,
) -> Patient:
    """
    Register a patient at a branch.

    Raises:
        TenantAccessError if the branch is not reachable from the scope
        ValueError if the national id is already registered at the branch
    """
    if not isolation_service.validate_branch_access(branch_id):
        raise TenantAccessError("Branch not found")

    existing = patients.query(include_deleted=True).filter_by(
        branch_id=branch_id, national_id=national_id
    ).first()
    if existing:
        raise ValueError("Patient already registered at this branch")

    patient = Patient(
        branch_id=branch_id,
        national_id=national_id,
        full_name=full_name,
        date_of_birth=date_of_birth,
    )
    return patients.add(patient)


def transfer_patient(patient_id: int, target_branch_id: int) -> Patient:
    """
    Move a patient to another branch of the same company.

    Raises:
        PatientNotFound if the patient is not visible
        TenantAccessError if the move crosses a tenant or company boundary
    """
    patient = get_patient(patient_id)
    if patient.branch_id == target_branch_id:
        return patient

    relation = isolation_service.validate_cross_entity_relationship(
        patient.branch_id, target_branch_id, "transfer patient"
    )
    if not relation.is_valid:
        raise TenantAccessError("Branch not found")

    if not isolation_service.validate_branch_move(patient.branch_id, target_branch_id):
        raise TenantAccessError("Transfers must stay within the same company")

    patient.branch_id = target_branch_id
    db.session.commit()
    return patient


def remove_patient(patient_id: int) -> Patient:
    return patients.soft_delete(get_patient(patient_id))


def book_appointment(patient_id: int, branch_id: int, scheduled_at: datetime) -> Appointment:
    """
    Book an appointment for a patient at a branch.

    The patient and the branch must belong to the same tenant, and the
    branch must be reachable from the current scope.
    """
    patient = get_patient(patient_id)

    if not isolation_service.validate_branch_access(branch_id):
        raise TenantAccessError("Branch not found")

    relation = isolation_service.validate_cross_entity_relationship(
        patient.branch_id, branch_id, "book appointment"
    )
    if not relation.is_valid:
        raise TenantAccessError("Branch not found")

    appointment = Appointment(patient_id=patient.id, branch_id=branch_id, scheduled_at=scheduled_at)
    return appointments.add(appointment)


def list_appointments(patient_id: int) -> list[Appointment]:
    patient = get_patient(patient_id)
    return appointments.list(patient_id=patient.id)
