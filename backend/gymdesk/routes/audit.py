# Overview: Flask API routes for the audit log; read-only.

from flask import Blueprint, request, jsonify

from ..decorators import require_auth, require_permission
from ..services import audit_service
from ..services.tenant_service import current_tenant_context


audit_bp = Blueprint("audit", __name__, url_prefix="/api/audit")


@audit_bp.get("")
@require_auth
@require_permission("VIEW_AUDIT")
def list_audit_events_route():
    limit = max(1, min(request.args.get("limit", 100, type=int), 500))
    events = audit_service.list_audit_events(
        current_tenant_context(),
        resource_type=request.args.get("resource_type"),
        resource_id=request.args.get("resource_id", type=int),
        action=request.args.get("action"),
        limit=limit,
    )
    return jsonify({"events": events}), 200
