# Overview: Flask API routes for payment-gateway callbacks; verifies signatures and applies payments idempotently.

# backend/gymdesk/routes/webhooks.py
"""
Payment Gateway Webhook Routes

WHY: Gateways deliver callbacks at-least-once and sometimes concurrently.
The handler must apply each successful payment and each gateway refund
exactly once.

SECURITY:
- No session auth; the gateway signs each delivery instead
- Header: X-Webhook-Signature: t=<unix seconds>,v1=<hex HMAC-SHA256>
- Signed message: "<t>.<raw request body>" keyed with PAYMENT_WEBHOOK_SECRET
- Signature checks are skipped when PAYMENT_WEBHOOK_SECRET is unset (local dev)
"""

import hashlib
import hmac
import time

from flask import Blueprint, request, jsonify, current_app

from ..services import reconciliation_service
from ..validation import ValidationError


webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/api/webhooks")

SIGNATURE_HEADER = "X-Webhook-Signature"
SIGNATURE_TOLERANCE_SECONDS = 300


def compute_signature(secret: str, timestamp: str, raw_body: bytes) -> str:
    message = timestamp.encode("utf-8") + b"." + raw_body
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_signature(secret: str, header: str | None, raw_body: bytes, now: float | None = None) -> bool:
    if not header:
        return False
    parts = dict(
        item.split("=", 1) for item in header.split(",") if "=" in item
    )
    timestamp = parts.get("t", "").strip()
    provided = parts.get("v1", "").strip()
    if not timestamp or not provided:
        return False
    try:
        ts = int(timestamp)
    except ValueError:
        return False
    now = time.time() if now is None else now
    if abs(now - ts) > SIGNATURE_TOLERANCE_SECONDS:
        return False
    return hmac.compare_digest(compute_signature(secret, timestamp, raw_body), provided)


EVENT_PAYMENT = "payment"
EVENT_REFUND = "refund"


def _missing(data: dict, required: tuple) -> list[str]:
    return [f for f in required if data.get(f) is None]


@webhooks_bp.post("/payments")
def payment_webhook_route():
    """
    Apply a payment-gateway callback.

    Payment event (default):
    {
        "event": "payment",  (optional)
        "invoice_id": 42,
        "payment_id": "pay_123",
        "status": "PAID" | "FAILED" | ...,
        "amount_cents": 250000,
        "method": "CARD",
        "gateway": "STRIPE"  (optional)
    }

    Refund event, issued when money is returned at the gateway:
    {
        "event": "refund",
        "payment_id": "pay_123",
        "refund_id": "re_456",
        "amount_cents": 50000,
        "invoice_id": 42  (optional)
    }

    Returns:
        200: {"processed": bool, "message": str, "invoice": {...}}
        400: Malformed payload or unknown event
        401: Bad or missing signature
        404: Invoice (or refunded payment) not found
        409: Refund not allowed in the invoice's state
        503: Transaction aborted, gateway should redeliver
    """
    secret = current_app.config.get("PAYMENT_WEBHOOK_SECRET")
    raw_body = request.get_data()
    if secret and not verify_signature(secret, request.headers.get(SIGNATURE_HEADER), raw_body):
        current_app.logger.warning("Rejected payment webhook with invalid signature from %s", request.remote_addr)
        return jsonify({"error": "Invalid signature"}), 401

    try:
        data = request.get_json(silent=True) or {}
        event = str(data.get("event") or EVENT_PAYMENT).strip().lower()
        gateway = (data.get("gateway") or reconciliation_service.GATEWAY_STRIPE).upper()

        if event == EVENT_PAYMENT:
            missing = _missing(data, ("invoice_id", "payment_id", "status", "amount_cents"))
            if missing:
                return jsonify({"error": f"Missing required fields: {', '.join(missing)}"}), 400
            result = reconciliation_service.handle_payment_webhook(
                data["invoice_id"],
                data["payment_id"],
                data["status"],
                data["amount_cents"],
                data.get("method"),
                gateway=gateway,
            )
        elif event == EVENT_REFUND:
            missing = _missing(data, ("payment_id", "refund_id", "amount_cents"))
            if missing:
                return jsonify({"error": f"Missing required fields: {', '.join(missing)}"}), 400
            result = reconciliation_service.handle_refund_webhook(
                data["payment_id"],
                data["refund_id"],
                data["amount_cents"],
                invoice_id=data.get("invoice_id"),
                gateway=gateway,
            )
        else:
            return jsonify({"error": f"Unsupported event: {event}"}), 400

        if not result.ok:
            return jsonify(result.error_dict()), result.http_status
        return jsonify(result.value), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to process payment webhook")
        return jsonify({"error": "Internal server error"}), 500
