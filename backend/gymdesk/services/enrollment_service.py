# Overview: Service-layer operations for member enrollment; one atomic unit of work per enrollment.

"""
Enrollment Orchestrator

WHY: Signing up a member touches seven tables (member, membership, invoice,
invoice items, coupon, coupon usage, benefit balances) plus the audit log.
Either all of it is visible afterwards or none of it is.

FLOW (single transaction):
1. Resolve plan in scope (branch-specific or tenant-wide)
2. Pre-check coupon against plan price
3. subtotal = price + setup fee; total = max(0, subtotal - discount)
4. Member (ACTIVE, generated membership and referral codes)
5. Membership for [start_date, start_date + duration_days)
6. Invoice from the tenant sequence, born PAID
7. Atomic coupon claim + CouponUsage (lost race -> USAGE_LIMIT_EXCEEDED)
8. Benefit balances
9. Audit record
After commit: best-effort notification hand-off.

DESIGN PRINCIPLES:
- Invoice numbers and coupon slots are only consumed by a committed enrollment
- Callers get an OperationResult, never a stack trace, for business failures
- Sequence-row and code collisions (IntegrityError) retry the whole unit
"""

from __future__ import annotations

import logging
import secrets
from datetime import date, timedelta

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Member, MemberMembership, Invoice, InvoiceItem, MemberBenefitBalance
from ..validation import ModelValidationPolicy, ValidationError, validate_payload, coerce_int, coerce_date
from gymdesk.time_utils import utctoday
from . import coupon_service, notification_service
from .audit_service import append_audit_event
from .benefit_service import initialize_balances
from .concurrency import run_transaction
from .document_service import next_document_number, DOCUMENT_TYPE_INVOICE
from .errors import OperationResult, EnrollmentError, NOT_FOUND
from .money import clamp_non_negative, compute_line_total, INVOICE_STATUS_PAID
from .plan_service import resolve_plan_for_enrollment
from .tenant_service import TenantContext, scope_branch_owned

logger = logging.getLogger(__name__)


# =============================================================================
# MEMBER STATUS (CONSTANTS)
# =============================================================================

MEMBER_STATUS_ACTIVE = "ACTIVE"
MEMBER_STATUS_INACTIVE = "INACTIVE"
MEMBER_STATUS_SUSPENDED = "SUSPENDED"

VALID_MEMBER_STATUSES = [MEMBER_STATUS_ACTIVE, MEMBER_STATUS_INACTIVE, MEMBER_STATUS_SUSPENDED]

MEMBERSHIP_STATUS_ACTIVE = "ACTIVE"

VALID_GENDERS = ["MALE", "FEMALE", "OTHER"]

# No 0/O or 1/I so codes survive being read aloud at the front desk
REFERRAL_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"

MEMBER_POLICY = ModelValidationPolicy(
    writable_fields={
        "first_name", "last_name", "email", "phone", "date_of_birth", "gender",
        "emergency_contact_name", "emergency_contact_phone",
    },
    required_on_create={"first_name", "last_name", "phone"},
)


# =============================================================================
# CODE GENERATION
# =============================================================================

def generate_membership_code(today: date | None = None) -> str:
    """e.g., MEM-20240115-3F9A2C1B"""
    today = today or utctoday()
    return f"MEM-{today:%Y%m%d}-{secrets.token_hex(4).upper()}"


def generate_referral_code(seed: str) -> str:
    """MEM + last 4 characters of seed + 4 random characters."""
    short = "".join(ch for ch in (seed or "") if ch.isalnum())[-4:].upper()
    suffix = "".join(secrets.choice(REFERRAL_ALPHABET) for _ in range(4))
    return f"MEM{short}{suffix}"


def _validate_member_details(member_details: dict) -> dict:
    patch = validate_payload(model=Member, payload=member_details, policy=MEMBER_POLICY, partial=False)
    if patch.get("email"):
        patch["email"] = patch["email"].lower()
        if "@" not in patch["email"]:
            raise ValidationError("email must be a valid email address")
    if patch.get("gender"):
        patch["gender"] = patch["gender"].upper()
        if patch["gender"] not in VALID_GENDERS:
            raise ValidationError(f"Invalid gender. Must be one of {VALID_GENDERS}")
    return patch


# =============================================================================
# ENROLLMENT
# =============================================================================

def enroll(
    ctx: TenantContext,
    member_details: dict,
    plan_id: int,
    start_date,
    duration_days: int | None = None,
    coupon_code: str | None = None,
) -> OperationResult:
    """
    Enroll a new member into a plan.

    Returns OperationResult whose value is {"member", "membership", "invoice",
    "benefit_balances"} on success. Failure kinds: NOT_FOUND (plan or coupon),
    USAGE_LIMIT_EXCEEDED, PLAN_NOT_APPLICABLE, BELOW_MINIMUM_PURCHASE,
    TRANSACTION_ABORTED.

    Raises:
        ValidationError: malformed member details, start date or duration
    """
    details = _validate_member_details(member_details)
    plan_id = coerce_int("plan_id", plan_id)
    start_date = coerce_date("start_date", start_date)
    if duration_days is not None:
        duration_days = coerce_int("duration_days", duration_days)
        if duration_days <= 0:
            raise ValidationError("duration_days must be > 0")
    coupon_code = coupon_service.normalize_code(coupon_code) or None

    def _op() -> dict:
        today = utctoday()

        plan = resolve_plan_for_enrollment(ctx, plan_id)
        days = duration_days or plan.duration_days

        coupon = None
        discount = 0
        if coupon_code:
            coupon, discount = coupon_service.redeem(ctx, coupon_code, plan, plan.price_cents)

        setup_fee = plan.setup_fee_cents or 0
        subtotal = plan.price_cents + setup_fee
        total = clamp_non_negative(subtotal - discount)

        member = Member(
            org_id=ctx.org_id,
            branch_id=ctx.branch_id,
            membership_code=generate_membership_code(today),
            referral_code=generate_referral_code(details.get("email") or details["phone"]),
            status=MEMBER_STATUS_ACTIVE,
            join_date=today,
            created_by_user_id=ctx.user_id,
            **details,
        )
        db.session.add(member)
        db.session.flush()

        membership = MemberMembership(
            org_id=ctx.org_id,
            branch_id=ctx.branch_id,
            member_id=member.id,
            plan_id=plan.id,
            start_date=start_date,
            end_date=start_date + timedelta(days=days),
            status=MEMBERSHIP_STATUS_ACTIVE,
        )
        db.session.add(membership)
        db.session.flush()

        invoice = Invoice(
            org_id=ctx.org_id,
            branch_id=ctx.branch_id,
            invoice_number=next_document_number(
                org_id=ctx.org_id, document_type=DOCUMENT_TYPE_INVOICE, year=today.year
            ),
            member_id=member.id,
            membership_id=membership.id,
            customer_name=member.full_name,
            customer_email=member.email,
            customer_phone=member.phone,
            issue_date=today,
            due_date=start_date,
            subtotal_cents=subtotal,
            discount_cents=discount,
            tax_cents=0,
            total_cents=total,
            paid_cents=total,
            balance_cents=0,
            status=INVOICE_STATUS_PAID,
            created_by_user_id=ctx.user_id,
        )
        db.session.add(invoice)
        db.session.flush()

        db.session.add(InvoiceItem(
            invoice_id=invoice.id,
            description=f"{plan.name} - {days} days",
            quantity=1,
            unit_price_cents=plan.price_cents,
            tax_rate_bps=0,
            tax_cents=0,
            total_cents=compute_line_total(1, plan.price_cents),
        ))
        if setup_fee > 0:
            db.session.add(InvoiceItem(
                invoice_id=invoice.id,
                description="Setup Fee",
                quantity=1,
                unit_price_cents=setup_fee,
                tax_rate_bps=0,
                tax_cents=0,
                total_cents=compute_line_total(1, setup_fee),
            ))
        db.session.flush()

        if coupon is not None:
            coupon_service.claim_and_record_usage(
                ctx,
                coupon=coupon,
                member_id=member.id,
                invoice_id=invoice.id,
                discount_cents=discount,
                original_amount_cents=plan.price_cents,
            )

        balances = initialize_balances(member, start_date, plan.active_benefits())

        append_audit_event(
            ctx,
            action="MEMBER_ENROLLED",
            resource_type="member",
            resource_id=member.id,
            new_values={
                "member_name": member.full_name,
                "email": member.email,
                "plan": plan.name,
                "invoice_number": invoice.invoice_number,
                "total_cents": total,
                "coupon_code": coupon.code if coupon is not None else None,
            },
        )

        db.session.commit()
        return {
            "member": member.to_dict(),
            "membership": membership.to_dict(),
            "invoice": invoice.to_dict(include_children=True),
            "benefit_balances": [b.to_dict() for b in balances],
        }

    result = run_transaction(_op, retry_on=(IntegrityError,))

    if result.ok:
        logger.info(
            "Enrolled member %s (invoice %s)",
            result.value["member"]["membership_code"],
            result.value["invoice"]["invoice_number"],
        )
        # Listings are read straight from the database; nothing to invalidate.
        notification_service.dispatch(
            notification_service.NOTIFY_MEMBER_ENROLLED,
            notification_service.build_payload(
                member_id=result.value["member"]["id"],
                invoice_number=result.value["invoice"]["invoice_number"],
                amount_cents=result.value["invoice"]["total_cents"],
                plan_name=result.value["membership"]["plan_name"],
                valid_until=result.value["membership"]["end_date"],
            ),
        )
    return result


# =============================================================================
# READS
# =============================================================================

def list_members(
    ctx: TenantContext,
    search: str | None = None,
    status: str | None = None,
    page: int = 1,
    limit: int = 20,
) -> dict:
    page = max(1, page)
    limit = max(1, min(limit, 100))

    q = scope_branch_owned(db.session.query(Member), Member, ctx)
    if status:
        q = q.filter(Member.status == status)
    if search:
        pattern = f"%{search.strip()}%"
        q = q.filter(or_(
            Member.first_name.ilike(pattern),
            Member.last_name.ilike(pattern),
            Member.email.ilike(pattern),
            Member.phone.ilike(pattern),
            Member.membership_code.ilike(pattern),
        ))

    total = q.count()
    rows = q.order_by(Member.created_at.desc(), Member.id.desc()).offset((page - 1) * limit).limit(limit).all()
    return {
        "members": [m.to_dict() for m in rows],
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": (total + limit - 1) // limit,
    }


def get_member(ctx: TenantContext, member_id: int) -> dict:
    member = scope_branch_owned(db.session.query(Member), Member, ctx).filter(Member.id == member_id).first()
    if not member:
        raise EnrollmentError(NOT_FOUND, "Member not found")

    data = member.to_dict()
    data["memberships"] = [m.to_dict() for m in member.memberships]
    data["benefit_balances"] = [
        b.to_dict()
        for b in db.session.query(MemberBenefitBalance)
        .filter(MemberBenefitBalance.member_id == member.id)
        .order_by(MemberBenefitBalance.id)
        .all()
    ]
    data["invoices"] = [i.to_dict() for i in member.invoices]
    return data
