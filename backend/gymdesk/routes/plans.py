# Overview: Flask API routes for membership plans; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify, current_app

from ..decorators import require_auth, require_permission
from ..services import plan_service
from ..services.errors import ServiceError, HTTP_STATUS_BY_KIND
from ..services.tenant_service import current_tenant_context
from ..validation import ValidationError


plans_bp = Blueprint("plans", __name__, url_prefix="/api/plans")


@plans_bp.get("")
@require_auth
@require_permission("VIEW_PLANS")
def list_plans_route():
    active_only = request.args.get("active_only", "false").lower() == "true"
    plans = plan_service.list_plans(current_tenant_context(), active_only=active_only)
    return jsonify({"plans": plans}), 200


@plans_bp.post("")
@require_auth
@require_permission("MANAGE_PLANS")
def create_plan_route():
    """
    Create a membership plan.

    Request body:
    {
        "name": "Gold Monthly",
        "price_cents": 250000,
        "setup_fee_cents": 50000,  (optional)
        "duration_days": 30,
        "benefits": [  (optional)
            {"benefit_type": "GUEST_PASS", "name": "Guest pass",
             "accrual_quantity": 2, "accrual_type": "MONTHLY", "max_balance": 6}
        ]
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        plan = plan_service.create_plan(current_tenant_context(), data)
        return jsonify({"plan": plan}), 201
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to create plan")
        return jsonify({"error": "Internal server error"}), 500


@plans_bp.get("/<int:plan_id>")
@require_auth
@require_permission("VIEW_PLANS")
def get_plan_route(plan_id: int):
    try:
        return jsonify({"plan": plan_service.get_plan(current_tenant_context(), plan_id)}), 200
    except ServiceError as e:
        return jsonify({"error": e.message}), HTTP_STATUS_BY_KIND.get(e.kind, 400)


@plans_bp.post("/<int:plan_id>/benefits")
@require_auth
@require_permission("MANAGE_PLANS")
def add_benefit_route(plan_id: int):
    try:
        data = request.get_json(silent=True) or {}
        benefit = plan_service.add_benefit(current_tenant_context(), plan_id, data)
        return jsonify({"benefit": benefit}), 201
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ServiceError as e:
        return jsonify({"error": e.message}), HTTP_STATUS_BY_KIND.get(e.kind, 400)
    except Exception:
        current_app.logger.exception("Failed to add benefit to plan %s", plan_id)
        return jsonify({"error": "Internal server error"}), 500
