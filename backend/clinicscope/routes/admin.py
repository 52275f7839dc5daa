# Overview: Flask API routes for admin operations; parses input and returns JSON responses.

"""
Platform and tenant administration routes.

- GET  /api/admin/isolation-audit/<entity>     per-tenant record distribution (super admin)
- GET  /api/admin/tenants/<id>/limits          license usage (own tenant, or super admin)
- POST /api/admin/tenants/<id>/deactivate      deactivate tenant (super admin)
"""

from flask import Blueprint, jsonify, request

from ..decorators import require_super_admin
from ..isolation.descriptors import mapped_models
from ..isolation.errors import TenantAccessError
from ..services import isolation_service, tenant_service

admin_bp = Blueprint("admin", __name__, url_prefix="/api/admin")


def _model_by_name(name: str):
    for model in mapped_models():
        if model.__name__.lower() == name.lower() or model.__tablename__ == name:
            return model
    return None


@admin_bp.get("/isolation-audit/<string:entity>")
@require_super_admin
def isolation_audit(entity: str):
    model = _model_by_name(entity)
    if model is None:
        return jsonify({"error": "Unknown entity type"}), 404
    report = isolation_service.audit_entity_isolation(model)
    return jsonify(report.to_dict()), 200


@admin_bp.get("/tenants/<int:tenant_id>/limits")
def tenant_limits(tenant_id: int):
    if not tenant_service.has_access_to_tenant(tenant_id):
        return jsonify({"error": "Tenant not found"}), 404
    try:
        limits = tenant_service.get_tenant_limits(tenant_id)
    except TenantAccessError:
        return jsonify({"error": "Tenant not found"}), 404
    return jsonify(limits), 200


@admin_bp.post("/tenants/<int:tenant_id>/deactivate")
@require_super_admin
def deactivate_tenant(tenant_id: int):
    data = request.get_json(silent=True) or {}
    reason = (data.get("reason") or "").strip()
    if not reason:
        return jsonify({"error": "reason required"}), 400
    try:
        tenant = tenant_service.deactivate_tenant(tenant_id, reason)
    except TenantAccessError:
        return jsonify({"error": "Tenant not found"}), 404
    return jsonify(tenant.to_dict()), 200
