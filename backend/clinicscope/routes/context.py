# Overview: Flask API routes for the caller's resolved access scope.

"""
Access context routes.

GET  /api/context         resolved scope, role and tenant (flagged if inactive)
POST /api/context/branch  switch the active branch for this request

Clients that want a non-primary branch on later requests send it in the
X-Active-Branch header; the switch is validated again every time.
"""

from flask import Blueprint, g, jsonify, request

from ..extensions import db
from ..isolation.accessor import current_scope
from ..services import tenant_service
from ..services.scope_service import switch_active_branch

context_bp = Blueprint("context", __name__, url_prefix="/api/context")


@context_bp.get("")
def get_context():
    scope = current_scope()
    principal = g.principal

    tenant = None
    if scope.tenant_id is not None:
        record = tenant_service.get_tenant(scope.tenant_id)
        if record is not None:
            tenant = record.to_dict()

    return jsonify({
        "user_id": principal.user_id,
        "role": principal.role,
        "scope": scope.to_dict(),
        "tenant": tenant,
    })


@context_bp.post("/branch")
def switch_branch():
    data = request.get_json(silent=True) or {}
    branch_id = data.get("branch_id")
    if not isinstance(branch_id, int):
        return jsonify({"error": "branch_id (int) required"}), 400

    switched = switch_active_branch(branch_id)
    if switched is None:
        db.session.commit()
        return jsonify({"error": "Access denied"}), 403

    return jsonify({
        "scope": switched.to_dict(),
        "header": {"X-Active-Branch": str(branch_id)},
    })
