# Overview: Flask API routes for member enrollment and member reads; parses input and returns JSON responses.

# backend/gymdesk/routes/members.py
"""
Member API Routes

DESIGN:
- POST /api/members/enroll runs the full enrollment unit of work
  (member, membership, paid invoice, coupon usage, benefit balances)
- Reads are scoped to the caller's tenant and branch
- Rejections come back as {"error", "error_kind", "retryable"}

SECURITY:
- CREATE_MEMBER permission required for enrollment
- VIEW_MEMBERS permission required for reads
"""

from flask import Blueprint, request, jsonify, current_app

from ..decorators import require_auth, require_permission
from ..services import enrollment_service, benefit_service
from ..services.errors import ServiceError, HTTP_STATUS_BY_KIND
from ..services.tenant_service import current_tenant_context
from ..validation import ValidationError


members_bp = Blueprint("members", __name__, url_prefix="/api/members")


@members_bp.post("/enroll")
@require_auth
@require_permission("CREATE_MEMBER")
def enroll_route():
    """
    Enroll a new member into a plan.

    Request body:
    {
        "member": {"first_name": "Asha", "last_name": "Rao", "phone": "9876543210",
                   "email": "asha@example.com"},
        "plan_id": 1,
        "start_date": "2024-01-15",
        "duration_days": 30,  (optional, defaults to the plan's duration)
        "coupon_code": "NEWYEAR10"  (optional)
    }

    Returns:
        201: Enrolled, with member, membership, invoice and benefit_balances
        400: Invalid input or coupon not usable for this purchase
        404: Plan or coupon not found
        409: Coupon usage limit exceeded
        503: Transaction aborted, safe to retry
    """
    try:
        data = request.get_json(silent=True) or {}
        member_details = data.get("member")
        if not isinstance(member_details, dict):
            return jsonify({"error": "member details are required"}), 400
        if data.get("plan_id") is None or not data.get("start_date"):
            return jsonify({"error": "plan_id and start_date required"}), 400

        result = enrollment_service.enroll(
            current_tenant_context(),
            member_details,
            data["plan_id"],
            data["start_date"],
            duration_days=data.get("duration_days"),
            coupon_code=data.get("coupon_code"),
        )
        if not result.ok:
            return jsonify(result.error_dict()), result.http_status
        return jsonify(result.value), 201

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to enroll member")
        return jsonify({"error": "Internal server error"}), 500


@members_bp.get("")
@require_auth
@require_permission("VIEW_MEMBERS")
def list_members_route():
    result = enrollment_service.list_members(
        current_tenant_context(),
        search=request.args.get("search"),
        status=request.args.get("status"),
        page=request.args.get("page", 1, type=int),
        limit=request.args.get("limit", 20, type=int),
    )
    return jsonify(result), 200


@members_bp.get("/<int:member_id>")
@require_auth
@require_permission("VIEW_MEMBERS")
def get_member_route(member_id: int):
    try:
        return jsonify({"member": enrollment_service.get_member(current_tenant_context(), member_id)}), 200
    except ServiceError as e:
        return jsonify({"error": e.message}), HTTP_STATUS_BY_KIND.get(e.kind, 400)


@members_bp.get("/<int:member_id>/benefits")
@require_auth
@require_permission("VIEW_MEMBERS")
def get_member_benefits_route(member_id: int):
    try:
        balances = benefit_service.list_member_balances(current_tenant_context(), member_id)
        return jsonify({"benefit_balances": balances}), 200
    except ServiceError as e:
        return jsonify({"error": e.message}), HTTP_STATUS_BY_KIND.get(e.kind, 400)
