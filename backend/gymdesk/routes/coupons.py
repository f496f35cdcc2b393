# Overview: Flask API routes for coupon codes; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify, current_app

from ..decorators import require_auth, require_permission
from ..services import coupon_service
from ..services.tenant_service import current_tenant_context
from ..validation import ValidationError, ConflictError


coupons_bp = Blueprint("coupons", __name__, url_prefix="/api/coupons")


@coupons_bp.get("")
@require_auth
@require_permission("VIEW_COUPONS")
def list_coupons_route():
    coupons = coupon_service.list_coupons(
        current_tenant_context(),
        status=request.args.get("status"),
        search=request.args.get("search"),
    )
    return jsonify({"coupons": coupons}), 200


@coupons_bp.post("")
@require_auth
@require_permission("MANAGE_COUPONS")
def create_coupon_route():
    """
    Create a coupon code.

    Request body:
    {
        "code": "NEWYEAR10",
        "name": "New year",
        "discount_type": "PERCENTAGE" | "FLAT_AMOUNT",
        "discount_value": 1000,  (basis points for PERCENTAGE, cents for FLAT_AMOUNT)
        "valid_from": "2024-01-01T00:00:00Z",
        "valid_until": "2024-01-31T23:59:59Z",
        "max_usage_count": 100,  (optional, null = unlimited)
        "min_purchase_cents": 100000,  (optional)
        "applicable_plan_ids": [1, 2]  (optional, empty = all plans)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        coupon = coupon_service.create_coupon(current_tenant_context(), data)
        return jsonify({"coupon": coupon}), 201
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to create coupon")
        return jsonify({"error": "Internal server error"}), 500


@coupons_bp.post("/validate")
@require_auth
@require_permission("VIEW_COUPONS")
def validate_coupon_route():
    """
    Preview a coupon against a plan without consuming it.

    Request body: {"code": "NEWYEAR10", "plan_id": 1, "purchase_cents": 250000}
    """
    data = request.get_json(silent=True) or {}
    code = data.get("code")
    if not code:
        return jsonify({"error": "code is required"}), 400

    try:
        plan_id = int(data["plan_id"]) if data.get("plan_id") is not None else None
        purchase_cents = int(data["purchase_cents"]) if data.get("purchase_cents") is not None else None
    except (TypeError, ValueError):
        return jsonify({"error": "plan_id and purchase_cents must be integers"}), 400

    result = coupon_service.validate_coupon(
        current_tenant_context(), code, plan_id=plan_id, purchase_cents=purchase_cents
    )
    if not result.ok:
        return jsonify({"valid": False, **result.error_dict()}), result.http_status
    return jsonify(result.value), 200
