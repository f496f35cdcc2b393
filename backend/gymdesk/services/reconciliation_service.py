# Overview: Service-layer operations for invoice payments, refunds and gateway webhooks.

"""
Invoice Payment/Refund Reconciler

WHY: paid_cents, balance_cents and status must always agree with the
payment and refund ledgers. Interactive payments, refunds and gateway
webhooks all funnel through this module, so there is exactly one place
where those three fields change.

STATE MACHINE:
    DRAFT -> SENT -> PARTIALLY_PAID <-> PARTIALLY_PAID -> PAID -> REFUNDED
    Payments are accepted on any non-REFUNDED invoice.
    Refunds require PAID or PARTIALLY_PAID; a refund re-derives the status
    while paid money remains and sets REFUNDED once it reaches zero.

DESIGN PRINCIPLES:
- Invoice row is locked (FOR UPDATE) and version-checked, so concurrent
  payments recompute against the latest committed state
- Payment/refund rows are append-only
- Webhooks are idempotent: an already-PAID invoice, an already-logged
  (invoice, gateway_payment_id, status) or an already-recorded
  gateway_refund_id is a no-op success
- Audit rows are written in the same transaction
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Invoice, InvoicePayment, InvoiceRefund, PaymentGatewayLog
from ..validation import ValidationError, coerce_int
from . import notification_service
from .audit_service import append_audit_event
from .concurrency import lock_for_update, run_transaction
from .document_service import next_document_number, DOCUMENT_TYPE_CREDIT_NOTE
from .errors import OperationResult, ReconciliationError, NOT_FOUND, INVALID_STATE
from .invoice_service import get_scoped_invoice
from .money import (
    clamp_non_negative,
    derive_invoice_status,
    INVOICE_STATUS_PAID,
    INVOICE_STATUS_PARTIALLY_PAID,
    INVOICE_STATUS_REFUNDED,
    PAYMENT_METHOD_CARD,
    PAYMENT_STATUS_COMPLETED,
    VALID_PAYMENT_METHODS,
)
from .tenant_service import TenantContext

logger = logging.getLogger(__name__)


GATEWAY_STRIPE = "STRIPE"

GATEWAY_LOG_SUCCESS = "SUCCESS"
GATEWAY_LOG_FAILED = "FAILED"

WEBHOOK_STATUS_PAID = "PAID"

PROCESSED_BY_WEBHOOK = "webhook"

REFUNDABLE_STATUSES = [INVOICE_STATUS_PAID, INVOICE_STATUS_PARTIALLY_PAID]


def _normalize_method(method: str | None) -> str:
    normalized = (method or "").strip().upper()
    if normalized not in VALID_PAYMENT_METHODS:
        raise ReconciliationError(
            INVALID_STATE, f"Invalid payment method: {method}. Must be one of {VALID_PAYMENT_METHODS}"
        )
    return normalized


def _apply_payment(
    ctx: TenantContext,
    invoice: Invoice,
    *,
    amount_cents: int,
    method: str,
    gateway_order_id: str | None = None,
    gateway_payment_id: str | None = None,
    transaction_ref: str | None = None,
    notes: str | None = None,
    processed_by: str | None = None,
    audit_action: str = "INVOICE_PAYMENT_RECORDED",
) -> InvoicePayment:
    """
    The single write path for paid_cents / balance_cents / status.

    invoice must already be locked by the caller's unit of work.
    """
    if amount_cents <= 0:
        raise ReconciliationError(INVALID_STATE, "Payment amount must be positive")
    if invoice.status == INVOICE_STATUS_REFUNDED:
        raise ReconciliationError(INVALID_STATE, "Cannot record payment for a refunded invoice")

    before = {
        "paid_cents": invoice.paid_cents,
        "balance_cents": invoice.balance_cents,
        "status": invoice.status,
    }

    payment = InvoicePayment(
        org_id=invoice.org_id,
        invoice_id=invoice.id,
        amount_cents=amount_cents,
        payment_method=method,
        status=PAYMENT_STATUS_COMPLETED,
        gateway_order_id=gateway_order_id,
        gateway_payment_id=gateway_payment_id,
        transaction_ref=transaction_ref,
        notes=notes,
        processed_by_user_id=ctx.user_id,
        processed_by=processed_by,
    )
    db.session.add(payment)

    new_paid = invoice.paid_cents + amount_cents
    invoice.paid_cents = new_paid
    invoice.balance_cents = clamp_non_negative(invoice.total_cents - new_paid)
    invoice.status = derive_invoice_status(new_paid, invoice.total_cents, invoice.status)
    db.session.flush()

    append_audit_event(
        ctx,
        action=audit_action,
        resource_type="invoice",
        resource_id=invoice.id,
        branch_id=invoice.branch_id,
        old_values=before,
        new_values={
            "paid_cents": invoice.paid_cents,
            "balance_cents": invoice.balance_cents,
            "status": invoice.status,
            "payment_id": payment.id,
            "amount_cents": amount_cents,
            "method": method,
        },
    )
    return payment


def _notify_payment(invoice_dict: dict, amount_cents: int) -> None:
    invoice = db.session.get(Invoice, invoice_dict["id"])
    membership = invoice.membership if invoice else None
    notification_service.dispatch(
        notification_service.NOTIFY_PAYMENT_RECEIVED,
        notification_service.build_payload(
            member_id=invoice_dict["member_id"],
            invoice_number=invoice_dict["invoice_number"],
            amount_cents=amount_cents,
            plan_name=membership.plan.name if membership and membership.plan else None,
            valid_until=membership.end_date.isoformat() if membership else None,
        ),
    )


# =============================================================================
# PAYMENTS
# =============================================================================

def record_payment(
    ctx: TenantContext,
    invoice_id: int,
    amount_cents,
    method: str,
    gateway_order_id: str | None = None,
    gateway_payment_id: str | None = None,
    transaction_ref: str | None = None,
    notes: str | None = None,
) -> OperationResult:
    """
    Record a full or partial payment against an invoice in the caller's scope.

    Returns OperationResult with {"payment", "invoice"}.
    Failure kinds: NOT_FOUND, INVALID_STATE (non-positive amount, unknown
    method, refunded invoice), TRANSACTION_ABORTED.
    """
    amount_cents = coerce_int("amount_cents", amount_cents)

    def _op() -> dict:
        normalized = _normalize_method(method)
        invoice = get_scoped_invoice(ctx, invoice_id, lock=True)
        payment = _apply_payment(
            ctx,
            invoice,
            amount_cents=amount_cents,
            method=normalized,
            gateway_order_id=gateway_order_id,
            gateway_payment_id=gateway_payment_id,
            transaction_ref=transaction_ref,
            notes=notes,
        )
        db.session.commit()
        return {"payment": payment.to_dict(), "invoice": invoice.to_dict()}

    result = run_transaction(_op)
    if result.ok:
        _notify_payment(result.value["invoice"], amount_cents)
    return result


# =============================================================================
# REFUNDS
# =============================================================================

def _refunded_status(invoice: Invoice) -> str:
    # paid_cents is net of refunds: REFUNDED only once nothing paid remains
    if invoice.paid_cents <= 0:
        return INVOICE_STATUS_REFUNDED
    return derive_invoice_status(invoice.paid_cents, invoice.total_cents, INVOICE_STATUS_PARTIALLY_PAID)


def _apply_refund(
    ctx: TenantContext,
    invoice: Invoice,
    *,
    refund_amount_cents: int,
    method: str,
    reason: str,
    gateway_refund_id: str | None = None,
    notes: str | None = None,
    audit_action: str = "INVOICE_REFUNDED",
) -> InvoiceRefund:
    """
    The single write path for refunds and credit notes.

    invoice must already be locked by the caller's unit of work.
    """
    if invoice.status not in REFUNDABLE_STATUSES:
        raise ReconciliationError(INVALID_STATE, f"Cannot refund invoice with status {invoice.status}")
    if refund_amount_cents <= 0:
        raise ReconciliationError(INVALID_STATE, "Refund amount must be positive")
    if refund_amount_cents > invoice.paid_cents:
        raise ReconciliationError(INVALID_STATE, "Refund amount exceeds total paid amount")

    before = {
        "paid_cents": invoice.paid_cents,
        "balance_cents": invoice.balance_cents,
        "status": invoice.status,
    }

    credit_note_number = next_document_number(org_id=invoice.org_id, document_type=DOCUMENT_TYPE_CREDIT_NOTE)
    refund = InvoiceRefund(
        org_id=invoice.org_id,
        invoice_id=invoice.id,
        credit_note_number=credit_note_number,
        refund_cents=refund_amount_cents,
        refund_method=method,
        reason=reason,
        gateway_refund_id=gateway_refund_id,
        notes=notes,
        processed_by_user_id=ctx.user_id,
    )
    db.session.add(refund)

    invoice.paid_cents = invoice.paid_cents - refund_amount_cents
    invoice.balance_cents = clamp_non_negative(invoice.total_cents - invoice.paid_cents)
    invoice.status = _refunded_status(invoice)
    db.session.flush()

    append_audit_event(
        ctx,
        action=audit_action,
        resource_type="invoice",
        resource_id=invoice.id,
        branch_id=invoice.branch_id,
        old_values=before,
        new_values={
            "paid_cents": invoice.paid_cents,
            "balance_cents": invoice.balance_cents,
            "status": invoice.status,
            "refund_cents": refund_amount_cents,
            "reason": reason,
            "credit_note_number": credit_note_number,
        },
    )
    return refund


def _gateway_refund_seen(gateway_refund_id: str | None) -> bool:
    if not gateway_refund_id:
        return False
    return db.session.query(InvoiceRefund.id).filter_by(gateway_refund_id=gateway_refund_id).first() is not None


def record_refund(
    ctx: TenantContext,
    invoice_id: int,
    refund_amount_cents,
    method: str,
    reason: str,
    gateway_refund_id: str | None = None,
    notes: str | None = None,
) -> OperationResult:
    """
    Refund money against a PAID or PARTIALLY_PAID invoice and issue a credit note.

    Effect: paid -= refund, balance = max(0, total - paid). Status becomes
    REFUNDED once paid reaches zero; while money remains it is derived from
    paid vs total, so the rest can still be refunded or paid later.
    Returns OperationResult with {"refund", "credit_note_number", "invoice"}.
    """
    refund_amount_cents = coerce_int("refund_amount_cents", refund_amount_cents)
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("reason is required")
    gateway_refund_id = (gateway_refund_id or "").strip() or None

    def _op() -> dict:
        normalized = _normalize_method(method)
        invoice = get_scoped_invoice(ctx, invoice_id, lock=True)
        if _gateway_refund_seen(gateway_refund_id):
            raise ReconciliationError(INVALID_STATE, f"Gateway refund {gateway_refund_id} already recorded")

        refund = _apply_refund(
            ctx,
            invoice,
            refund_amount_cents=refund_amount_cents,
            method=normalized,
            reason=reason,
            gateway_refund_id=gateway_refund_id,
            notes=notes,
        )
        db.session.commit()
        return {
            "refund": refund.to_dict(),
            "credit_note_number": refund.credit_note_number,
            "invoice": invoice.to_dict(),
        }

    return run_transaction(_op, retry_on=(IntegrityError,))


# =============================================================================
# GATEWAY WEBHOOK
# =============================================================================

def handle_payment_webhook(
    invoice_id,
    gateway_payment_id: str,
    status: str,
    amount_cents,
    method: str | None,
    gateway: str = GATEWAY_STRIPE,
) -> OperationResult:
    """
    Apply a payment-gateway callback. Safe to deliver any number of times.

    No caller context: the invoice's own tenant is used for the audit row.
    Returns OperationResult with {"processed": bool, "message", "invoice"}.
    processed=False marks an idempotent no-op or a non-PAID status.
    """
    invoice_id = coerce_int("invoice_id", invoice_id)
    amount_cents = coerce_int("amount_cents", amount_cents)
    gateway_payment_id = (gateway_payment_id or "").strip()
    if not gateway_payment_id:
        raise ValidationError("payment_id is required")
    incoming = (status or "").strip().upper()

    def _op() -> dict:
        invoice = lock_for_update(db.session.query(Invoice).filter(Invoice.id == invoice_id)).first()
        if not invoice:
            raise ReconciliationError(NOT_FOUND, "Invoice not found")

        ctx = TenantContext(org_id=invoice.org_id, branch_id=invoice.branch_id, user_id=None)
        log_status = GATEWAY_LOG_SUCCESS if incoming == WEBHOOK_STATUS_PAID else GATEWAY_LOG_FAILED

        seen = (
            db.session.query(PaymentGatewayLog.id)
            .filter_by(invoice_id=invoice.id, gateway_payment_id=gateway_payment_id, status=log_status)
            .first()
        )
        if seen or (incoming == WEBHOOK_STATUS_PAID and invoice.status == INVOICE_STATUS_PAID):
            data = invoice.to_dict()
            db.session.commit()  # releases the row lock, nothing was written
            return {"processed": False, "message": "Already processed (idempotent)", "invoice": data}

        if incoming == WEBHOOK_STATUS_PAID:
            _apply_payment(
                ctx,
                invoice,
                amount_cents=amount_cents,
                method=_normalize_method(method or PAYMENT_METHOD_CARD),
                gateway_payment_id=gateway_payment_id,
                processed_by=PROCESSED_BY_WEBHOOK,
                audit_action="INVOICE_WEBHOOK_PAYMENT",
            )

        db.session.add(PaymentGatewayLog(
            org_id=invoice.org_id,
            invoice_id=invoice.id,
            gateway=gateway,
            gateway_payment_id=gateway_payment_id,
            amount_cents=amount_cents,
            payment_method=(method or "").upper() or None,
            status=log_status,
            raw_status=incoming or None,
        ))
        db.session.commit()

        processed = incoming == WEBHOOK_STATUS_PAID
        return {
            "processed": processed,
            "message": "Webhook processed" if processed else f"Payment status {incoming or 'UNKNOWN'} logged",
            "invoice": invoice.to_dict(),
        }

    result = run_transaction(_op, retry_on=(IntegrityError,))
    if result.ok and result.value["processed"]:
        _notify_payment(result.value["invoice"], amount_cents)
    return result


def handle_refund_webhook(
    gateway_payment_id: str,
    gateway_refund_id: str,
    amount_cents,
    invoice_id=None,
    gateway: str = GATEWAY_STRIPE,
) -> OperationResult:
    """
    Apply a refund made at the gateway. Safe to deliver any number of times.

    The invoice is found through the payment the gateway refunded (narrowed
    by invoice_id when the gateway sends one). The refund goes through the
    same write path as interactive refunds, so it gets a credit note.
    Returns OperationResult with {"processed": bool, "message",
    "credit_note_number", "invoice"}; an already-recorded gateway_refund_id
    is a no-op.
    """
    amount_cents = coerce_int("amount_cents", amount_cents)
    invoice_id = coerce_int("invoice_id", invoice_id) if invoice_id is not None else None
    gateway_payment_id = (gateway_payment_id or "").strip()
    gateway_refund_id = (gateway_refund_id or "").strip()
    if not gateway_payment_id:
        raise ValidationError("payment_id is required")
    if not gateway_refund_id:
        raise ValidationError("refund_id is required")

    def _op() -> dict:
        q = db.session.query(InvoicePayment).filter(InvoicePayment.gateway_payment_id == gateway_payment_id)
        if invoice_id is not None:
            q = q.filter(InvoicePayment.invoice_id == invoice_id)
        payment = q.order_by(InvoicePayment.id).first()
        if not payment:
            raise ReconciliationError(NOT_FOUND, "No matching payment found for refund")

        invoice = lock_for_update(db.session.query(Invoice).filter(Invoice.id == payment.invoice_id)).first()
        ctx = TenantContext(org_id=invoice.org_id, branch_id=invoice.branch_id, user_id=None)

        if _gateway_refund_seen(gateway_refund_id):
            data = invoice.to_dict()
            db.session.commit()  # releases the row lock, nothing was written
            return {
                "processed": False,
                "message": "Already processed (idempotent)",
                "credit_note_number": None,
                "invoice": data,
            }

        refund = _apply_refund(
            ctx,
            invoice,
            refund_amount_cents=amount_cents,
            method=payment.payment_method,
            reason="Gateway refund",
            gateway_refund_id=gateway_refund_id,
            notes=f"{gateway} refund of payment {gateway_payment_id}",
            audit_action="INVOICE_WEBHOOK_REFUND",
        )
        db.session.commit()
        logger.info("Gateway refund %s applied to invoice %s", gateway_refund_id, invoice.invoice_number)
        return {
            "processed": True,
            "message": "Refund processed",
            "credit_note_number": refund.credit_note_number,
            "invoice": invoice.to_dict(),
        }

    return run_transaction(_op, retry_on=(IntegrityError,))
