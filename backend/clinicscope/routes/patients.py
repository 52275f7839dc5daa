# Overview: Flask API routes for patients operations; parses input and returns JSON responses.

from datetime import date

from flask import Blueprint, jsonify, request

from ..extensions import db
from ..isolation.errors import TenantAccessError
from ..services import patient_service
from ..services.patient_service import PatientNotFound
from ..time_utils import parse_iso_datetime


patients_bp = Blueprint("patients", __name__, url_prefix="/api/patients")


def _denied(message: str, status: int):
    # Persist the denial audit recorded by the isolation checks
    db.session.commit()
    return jsonify({"error": message}), status


@patients_bp.get("")
def list_patients():
    branch_id = request.args.get("branch_id", type=int)
    include_deleted = request.args.get("include_deleted", "false").lower() == "true"
    patients = patient_service.list_patients(branch_id=branch_id, include_deleted=include_deleted)
    return jsonify({"patients": [p.to_dict() for p in patients], "count": len(patients)}), 200


@patients_bp.post("")
def create_patient():
    data = request.get_json(silent=True) or {}
    branch_id = data.get("branch_id")
    national_id = data.get("national_id")
    full_name = data.get("full_name")
    if not isinstance(branch_id, int) or not national_id or not full_name:
        return jsonify({"error": "branch_id, national_id and full_name required"}), 400

    try:
        dob = date.fromisoformat(data["date_of_birth"]) if data.get("date_of_birth") else None
    except ValueError:
        return jsonify({"error": "date_of_birth must be YYYY-MM-DD"}), 400

    try:
        patient = patient_service.create_patient(branch_id, national_id, full_name, dob)
    except TenantAccessError:
        return _denied("Branch not found", 404)
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 409
    return jsonify(patient.to_dict()), 201


@patients_bp.get("/<int:patient_id>")
def get_patient(patient_id: int):
    try:
        patient = patient_service.get_patient(patient_id)
    except PatientNotFound:
        return jsonify({"error": "Patient not found"}), 404
    return jsonify(patient.to_dict()), 200


@patients_bp.delete("/<int:patient_id>")
def delete_patient(patient_id: int):
    try:
        patient = patient_service.remove_patient(patient_id)
    except PatientNotFound:
        return jsonify({"error": "Patient not found"}), 404
    return jsonify(patient.to_dict()), 200


@patients_bp.post("/<int:patient_id>/transfer")
def transfer_patient(patient_id: int):
    data = request.get_json(silent=True) or {}
    target_branch_id = data.get("target_branch_id")
    if not isinstance(target_branch_id, int):
        return jsonify({"error": "target_branch_id (int) required"}), 400

    try:
        patient = patient_service.transfer_patient(patient_id, target_branch_id)
    except PatientNotFound:
        return jsonify({"error": "Patient not found"}), 404
    except TenantAccessError:
        return _denied("Transfer not allowed", 403)
    return jsonify(patient.to_dict()), 200


@patients_bp.get("/<int:patient_id>/appointments")
def list_appointments(patient_id: int):
    try:
        appointments = patient_service.list_appointments(patient_id)
    except PatientNotFound:
        return jsonify({"error": "Patient not found"}), 404
    return jsonify({"appointments": [a.to_dict() for a in appointments]}), 200


@patients_bp.post("/<int:patient_id>/appointments")
def book_appointment(patient_id: int):
    data = request.get_json(silent=True) or {}
    branch_id = data.get("branch_id")
    if not isinstance(branch_id, int) or not isinstance(data.get("scheduled_at"), str):
        return jsonify({"error": "branch_id and scheduled_at required"}), 400

    try:
        scheduled_at = parse_iso_datetime(data["scheduled_at"])
    except ValueError:
        return jsonify({"error": "scheduled_at must be ISO 8601"}), 400
    if scheduled_at is None:
        return jsonify({"error": "branch_id and scheduled_at required"}), 400

    try:
        appointment = patient_service.book_appointment(patient_id, branch_id, scheduled_at)
    except PatientNotFound:
        return jsonify({"error": "Patient not found"}), 404
    except TenantAccessError:
        return _denied("Branch not found", 404)
    return jsonify(appointment.to_dict()), 201
