# Overview: Service-layer operations for ad-hoc invoices; creation, finalization and reads.

from __future__ import annotations

from datetime import timedelta

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Invoice, InvoiceItem, Member
from ..validation import ValidationError, coerce_int, coerce_date, enforce_rules_invoice_item
from gymdesk.time_utils import utctoday
from .audit_service import append_audit_event
from .concurrency import lock_for_update, run_transaction
from .document_service import next_document_number, DOCUMENT_TYPE_INVOICE
from .errors import OperationResult, InvoiceError, NOT_FOUND, INVALID_STATE
from .money import (
    compute_line_tax,
    compute_line_total,
    INVOICE_STATUS_DRAFT,
    INVOICE_STATUS_SENT,
)
from .tenant_service import TenantContext, scope_branch_owned


DEFAULT_PAYMENT_TERMS_DAYS = 30


def _parse_items(items) -> list[dict]:
    if not isinstance(items, list) or not items:
        raise ValidationError("items must be a non-empty list")

    default_rate = current_app.config.get("DEFAULT_TAX_RATE_BPS", 0)
    parsed = []
    for raw in items:
        if not isinstance(raw, dict):
            raise ValidationError("Each item must be an object")
        description = str(raw.get("description") or "").strip()
        if not description:
            raise ValidationError("Item description is required")
        if len(description) > 255:
            raise ValidationError("Item description exceeds max length 255")
        if raw.get("unit_price_cents") is None:
            raise ValidationError("unit_price_cents is required")
        item = {
            "description": description,
            "quantity": coerce_int("quantity", raw.get("quantity", 1)),
            "unit_price_cents": coerce_int("unit_price_cents", raw["unit_price_cents"]),
            "tax_rate_bps": coerce_int("tax_rate_bps", raw["tax_rate_bps"])
            if raw.get("tax_rate_bps") is not None else default_rate,
        }
        enforce_rules_invoice_item(item)
        parsed.append(item)
    return parsed


def get_scoped_invoice(ctx: TenantContext, invoice_id: int, *, lock: bool = False) -> Invoice:
    q = scope_branch_owned(db.session.query(Invoice), Invoice, ctx).filter(Invoice.id == invoice_id)
    if lock:
        q = lock_for_update(q)
    invoice = q.first()
    if not invoice:
        raise InvoiceError(NOT_FOUND, "Invoice not found")
    return invoice


def create_invoice(ctx: TenantContext, member_id, items, due_date=None, notes: str | None = None) -> OperationResult:
    """
    Create an ad-hoc DRAFT invoice for a member.

    Each item: {description, quantity, unit_price_cents, tax_rate_bps?}; the
    tax rate defaults to DEFAULT_TAX_RATE_BPS. balance = total, paid = 0.
    """
    member_id = coerce_int("member_id", member_id)
    parsed = _parse_items(items)
    due = coerce_date("due_date", due_date) if due_date else None

    def _op() -> dict:
        member = scope_branch_owned(db.session.query(Member), Member, ctx).filter(Member.id == member_id).first()
        if not member:
            raise InvoiceError(NOT_FOUND, "Member not found")

        today = utctoday()
        subtotal = sum(i["quantity"] * i["unit_price_cents"] for i in parsed)
        tax = sum(compute_line_tax(i["quantity"], i["unit_price_cents"], i["tax_rate_bps"]) for i in parsed)
        total = subtotal + tax

        invoice = Invoice(
            org_id=ctx.org_id,
            branch_id=member.branch_id,
            invoice_number=next_document_number(
                org_id=ctx.org_id, document_type=DOCUMENT_TYPE_INVOICE, year=today.year
            ),
            member_id=member.id,
            customer_name=member.full_name,
            customer_email=member.email,
            customer_phone=member.phone,
            issue_date=today,
            due_date=due or today + timedelta(days=DEFAULT_PAYMENT_TERMS_DAYS),
            subtotal_cents=subtotal,
            discount_cents=0,
            tax_cents=tax,
            total_cents=total,
            paid_cents=0,
            balance_cents=total,
            status=INVOICE_STATUS_DRAFT,
            notes=notes,
            created_by_user_id=ctx.user_id,
        )
        db.session.add(invoice)
        db.session.flush()

        for i in parsed:
            db.session.add(InvoiceItem(
                invoice_id=invoice.id,
                description=i["description"],
                quantity=i["quantity"],
                unit_price_cents=i["unit_price_cents"],
                tax_rate_bps=i["tax_rate_bps"],
                tax_cents=compute_line_tax(i["quantity"], i["unit_price_cents"], i["tax_rate_bps"]),
                total_cents=compute_line_total(i["quantity"], i["unit_price_cents"], i["tax_rate_bps"]),
            ))
        db.session.flush()

        append_audit_event(
            ctx,
            action="INVOICE_CREATED",
            resource_type="invoice",
            resource_id=invoice.id,
            branch_id=invoice.branch_id,
            new_values={
                "invoice_number": invoice.invoice_number,
                "member_id": member.id,
                "total_cents": total,
                "status": INVOICE_STATUS_DRAFT,
            },
        )
        db.session.commit()
        return invoice.to_dict(include_children=True)

    return run_transaction(_op, retry_on=(IntegrityError,))


def finalize_invoice(ctx: TenantContext, invoice_id: int) -> OperationResult:
    """DRAFT -> SENT. Anything else is INVALID_STATE."""
    def _op() -> dict:
        invoice = get_scoped_invoice(ctx, invoice_id, lock=True)
        if invoice.status != INVOICE_STATUS_DRAFT:
            raise InvoiceError(INVALID_STATE, f"Cannot finalize invoice with status {invoice.status}")

        invoice.status = INVOICE_STATUS_SENT
        append_audit_event(
            ctx,
            action="INVOICE_FINALIZED",
            resource_type="invoice",
            resource_id=invoice.id,
            branch_id=invoice.branch_id,
            old_values={"status": INVOICE_STATUS_DRAFT},
            new_values={"status": INVOICE_STATUS_SENT},
        )
        db.session.commit()
        return invoice.to_dict()

    return run_transaction(_op)


def list_invoices(
    ctx: TenantContext,
    status: str | None = None,
    member_id: int | None = None,
    page: int = 1,
    limit: int = 20,
) -> dict:
    page = max(1, page)
    limit = max(1, min(limit, 100))

    q = scope_branch_owned(db.session.query(Invoice), Invoice, ctx)
    if status:
        q = q.filter(Invoice.status == status)
    if member_id is not None:
        q = q.filter(Invoice.member_id == member_id)

    total = q.count()
    rows = q.order_by(Invoice.issue_date.desc(), Invoice.id.desc()).offset((page - 1) * limit).limit(limit).all()
    return {
        "invoices": [i.to_dict() for i in rows],
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": (total + limit - 1) // limit,
    }


def get_invoice(ctx: TenantContext, invoice_id: int) -> dict:
    return get_scoped_invoice(ctx, invoice_id).to_dict(include_children=True)
