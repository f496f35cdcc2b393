# Overview: Flask API routes for invoices, payments and refunds; parses input and returns JSON responses.

# backend/gymdesk/routes/invoices.py
"""
Invoice API Routes

WHY: Front desk records cash/card/UPI payments and managers issue refunds;
both must keep paid/balance/status consistent and leave an audit trail.

DESIGN:
- Ad-hoc invoices start as DRAFT and are finalized to SENT
- Payments may be partial; status is derived from paid vs total
- Refunds issue a credit note number; the invoice is REFUNDED once nothing paid remains
- Every state change runs as one retried unit of work

SECURITY:
- VIEW_INVOICES for reads
- CREATE_INVOICE / FINALIZE_INVOICE for the draft lifecycle
- RECORD_PAYMENT for payments, PROCESS_REFUND for refunds
"""

from flask import Blueprint, request, jsonify, current_app

from ..decorators import require_auth, require_permission
from ..services import invoice_service, reconciliation_service
from ..services.errors import ServiceError, HTTP_STATUS_BY_KIND
from ..services.tenant_service import current_tenant_context
from ..validation import ValidationError


invoices_bp = Blueprint("invoices", __name__, url_prefix="/api/invoices")


def _result_response(result, success_status: int = 200):
    if not result.ok:
        return jsonify(result.error_dict()), result.http_status
    return jsonify(result.value), success_status


# =============================================================================
# READS
# =============================================================================

@invoices_bp.get("")
@require_auth
@require_permission("VIEW_INVOICES")
def list_invoices_route():
    result = invoice_service.list_invoices(
        current_tenant_context(),
        status=request.args.get("status"),
        member_id=request.args.get("member_id", type=int),
        page=request.args.get("page", 1, type=int),
        limit=request.args.get("limit", 20, type=int),
    )
    return jsonify(result), 200


@invoices_bp.get("/<int:invoice_id>")
@require_auth
@require_permission("VIEW_INVOICES")
def get_invoice_route(invoice_id: int):
    try:
        return jsonify({"invoice": invoice_service.get_invoice(current_tenant_context(), invoice_id)}), 200
    except ServiceError as e:
        return jsonify({"error": e.message}), HTTP_STATUS_BY_KIND.get(e.kind, 400)


# =============================================================================
# DRAFT LIFECYCLE
# =============================================================================

@invoices_bp.post("")
@require_auth
@require_permission("CREATE_INVOICE")
def create_invoice_route():
    """
    Create an ad-hoc DRAFT invoice.

    Request body:
    {
        "member_id": 1,
        "items": [{"description": "Towel rental", "quantity": 2,
                   "unit_price_cents": 5000, "tax_rate_bps": 1800}],
        "due_date": "2024-02-15",  (optional)
        "notes": "..."  (optional)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        if data.get("member_id") is None:
            return jsonify({"error": "member_id is required"}), 400

        result = invoice_service.create_invoice(
            current_tenant_context(),
            data["member_id"],
            data.get("items"),
            due_date=data.get("due_date"),
            notes=data.get("notes"),
        )
        return _result_response(result, 201)

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to create invoice")
        return jsonify({"error": "Internal server error"}), 500


@invoices_bp.post("/<int:invoice_id>/finalize")
@require_auth
@require_permission("FINALIZE_INVOICE")
def finalize_invoice_route(invoice_id: int):
    try:
        result = invoice_service.finalize_invoice(current_tenant_context(), invoice_id)
        return _result_response(result)
    except Exception:
        current_app.logger.exception("Failed to finalize invoice %s", invoice_id)
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# PAYMENTS & REFUNDS
# =============================================================================

@invoices_bp.post("/<int:invoice_id>/payments")
@require_auth
@require_permission("RECORD_PAYMENT")
def record_payment_route(invoice_id: int):
    """
    Record a full or partial payment.

    Request body:
    {
        "amount_cents": 100000,
        "payment_method": "CASH" | "CARD" | "UPI" | "BANK_TRANSFER" | "CHEQUE" | "WALLET",
        "gateway_order_id": "...",  (optional)
        "gateway_payment_id": "...",  (optional)
        "transaction_ref": "...",  (optional)
        "notes": "..."  (optional)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        if data.get("amount_cents") is None or not data.get("payment_method"):
            return jsonify({"error": "amount_cents and payment_method required"}), 400

        result = reconciliation_service.record_payment(
            current_tenant_context(),
            invoice_id,
            data["amount_cents"],
            data["payment_method"],
            gateway_order_id=data.get("gateway_order_id"),
            gateway_payment_id=data.get("gateway_payment_id"),
            transaction_ref=data.get("transaction_ref"),
            notes=data.get("notes"),
        )
        return _result_response(result, 201)

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to record payment for invoice %s", invoice_id)
        return jsonify({"error": "Internal server error"}), 500


@invoices_bp.post("/<int:invoice_id>/refunds")
@require_auth
@require_permission("PROCESS_REFUND")
def record_refund_route(invoice_id: int):
    """
    Refund a paid or partially paid invoice and issue a credit note.

    Request body:
    {
        "refund_amount_cents": 50000,
        "refund_method": "CASH",
        "reason": "Relocated",
        "gateway_refund_id": "...",  (optional)
        "notes": "..."  (optional)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        if data.get("refund_amount_cents") is None or not data.get("refund_method"):
            return jsonify({"error": "refund_amount_cents and refund_method required"}), 400

        result = reconciliation_service.record_refund(
            current_tenant_context(),
            invoice_id,
            data["refund_amount_cents"],
            data["refund_method"],
            data.get("reason"),
            gateway_refund_id=data.get("gateway_refund_id"),
            notes=data.get("notes"),
        )
        return _result_response(result, 201)

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to refund invoice %s", invoice_id)
        return jsonify({"error": "Internal server error"}), 500
