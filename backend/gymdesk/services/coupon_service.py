# Overview: Service-layer operations for coupons; validation, discount math and the atomic usage claim.

"""
Coupon Redemption Guard

WHY: A popular coupon is the one piece of shared mutable state many
enrollments fight over. The cap must hold even when the last slot is
claimed by two front desks at the same moment.

VALIDATION ORDER (first failing check wins):
1. Code resolves to an ACTIVE coupon, in window, in the caller's scope -> NOT_FOUND
2. Usage cap not yet reached                                           -> USAGE_LIMIT_EXCEEDED
3. Target plan is in applicable_plan_ids (when the list is non-empty)  -> PLAN_NOT_APPLICABLE
4. Purchase amount meets min_purchase_cents (when set)                 -> BELOW_MINIMUM_PURCHASE

DESIGN PRINCIPLES:
- Checks 1-4 are a pre-check only; the real guarantee is claim_coupon_usage,
  a conditional UPDATE that re-tests the cap at write time
- claim and CouponUsage insert happen inside the caller's transaction
- Flat discounts are taken at face value; the enrollment total is clamped at zero
"""

from __future__ import annotations

import logging
import re
from datetime import datetime

from sqlalchemy import update, or_

from ..extensions import db
from ..models import Coupon, CouponUsage, MembershipPlan
from ..validation import (
    ModelValidationPolicy,
    ConflictError,
    ValidationError,
    validate_payload,
    enforce_rules_coupon,
)
from gymdesk.time_utils import utcnow
from .concurrency import run_with_retry
from .errors import (
    OperationResult,
    CouponError,
    NOT_FOUND,
    USAGE_LIMIT_EXCEEDED,
    PLAN_NOT_APPLICABLE,
    BELOW_MINIMUM_PURCHASE,
)
from .money import percent_of
from .tenant_service import TenantContext, scope_catalog
from .audit_service import append_audit_event

logger = logging.getLogger(__name__)


# =============================================================================
# DISCOUNT TYPES AND STATUS (CONSTANTS)
# =============================================================================

DISCOUNT_PERCENTAGE = "PERCENTAGE"
DISCOUNT_FLAT_AMOUNT = "FLAT_AMOUNT"

VALID_DISCOUNT_TYPES = [DISCOUNT_PERCENTAGE, DISCOUNT_FLAT_AMOUNT]

COUPON_STATUS_ACTIVE = "ACTIVE"
COUPON_STATUS_INACTIVE = "INACTIVE"

COUPON_CODE_PATTERN = re.compile(r"^[A-Z0-9]{4,20}$")

COUPON_POLICY = ModelValidationPolicy(
    writable_fields={
        "code", "name", "description", "discount_type", "discount_value",
        "valid_from", "valid_until", "max_usage_count", "min_purchase_cents",
        "applicable_plan_ids", "is_referral_coupon",
    },
    required_on_create={"code", "name", "discount_type", "discount_value", "valid_from", "valid_until"},
)


def normalize_code(code: str | None) -> str:
    return (code or "").strip().upper()


# =============================================================================
# CATALOG
# =============================================================================

def create_coupon(ctx: TenantContext, data: dict) -> dict:
    """
    Create a coupon owned by the caller's branch (or tenant-wide for tenant-wide staff).

    Raises:
        ValidationError: bad code format, value, or window
        ConflictError: code already exists in this tenant
    """
    patch = validate_payload(model=Coupon, payload=data, policy=COUPON_POLICY, partial=False)
    patch["code"] = normalize_code(patch["code"])
    if not COUPON_CODE_PATTERN.match(patch["code"]):
        raise ValidationError("Coupon code must be 4-20 letters or digits")
    enforce_rules_coupon(patch, VALID_DISCOUNT_TYPES)

    plan_ids = patch.get("applicable_plan_ids") or []
    if plan_ids:
        found = (
            db.session.query(MembershipPlan.id)
            .filter(MembershipPlan.org_id == ctx.org_id, MembershipPlan.id.in_(plan_ids))
            .count()
        )
        if found != len(set(plan_ids)):
            raise ValidationError("applicable_plan_ids contains unknown plans")

    def _op() -> dict:
        existing = db.session.query(Coupon).filter_by(org_id=ctx.org_id, code=patch["code"]).first()
        if existing:
            raise ConflictError("Coupon code already exists")

        coupon = Coupon(
            org_id=ctx.org_id,
            branch_id=ctx.branch_id,
            current_usage_count=0,
            status=COUPON_STATUS_ACTIVE,
            created_by_user_id=ctx.user_id,
            applicable_plan_ids=sorted(set(plan_ids)),
            **{k: v for k, v in patch.items() if k != "applicable_plan_ids"},
        )
        db.session.add(coupon)
        db.session.flush()

        append_audit_event(
            ctx,
            action="COUPON_CREATED",
            resource_type="coupon",
            resource_id=coupon.id,
            new_values={"code": coupon.code, "discount_type": coupon.discount_type,
                        "discount_value": coupon.discount_value},
        )
        db.session.commit()
        return coupon.to_dict()

    return run_with_retry(_op)


def list_coupons(ctx: TenantContext, status: str | None = None, search: str | None = None) -> list[dict]:
    q = scope_catalog(db.session.query(Coupon), Coupon, ctx)
    if status:
        q = q.filter(Coupon.status == status)
    if search:
        pattern = f"%{search.strip()}%"
        q = q.filter(or_(Coupon.code.ilike(pattern), Coupon.name.ilike(pattern)))
    return [c.to_dict() for c in q.order_by(Coupon.created_at.desc(), Coupon.id.desc()).all()]


# =============================================================================
# GUARD
# =============================================================================

def find_redeemable_coupon(ctx: TenantContext, code: str, now: datetime | None = None) -> Coupon:
    """Check 1: ACTIVE, in window, scoped to tenant and (branch or tenant-wide)."""
    now = now or utcnow()
    q = scope_catalog(db.session.query(Coupon), Coupon, ctx).filter(
        Coupon.code == normalize_code(code),
        Coupon.status == COUPON_STATUS_ACTIVE,
        Coupon.valid_from <= now,
        Coupon.valid_until >= now,
    )
    coupon = q.first()
    if not coupon:
        raise CouponError(NOT_FOUND, "Invalid or expired coupon code")
    return coupon


def compute_discount(coupon: Coupon, purchase_cents: int) -> int:
    if coupon.discount_type == DISCOUNT_PERCENTAGE:
        return percent_of(purchase_cents, coupon.discount_value)
    # FLAT_AMOUNT: face value, may exceed the purchase; callers clamp the total
    return coupon.discount_value


def evaluate_coupon(coupon: Coupon, plan: MembershipPlan | None, purchase_cents: int | None) -> int:
    """
    Checks 2-4, then the discount in cents.

    plan / purchase_cents may be None for a preview without a selected plan;
    the corresponding checks are skipped and the discount is 0.
    """
    if coupon.max_usage_count is not None and coupon.current_usage_count >= coupon.max_usage_count:
        raise CouponError(USAGE_LIMIT_EXCEEDED, "Coupon usage limit exceeded")

    plan_ids = coupon.applicable_plan_ids or []
    if plan is not None and plan_ids and plan.id not in plan_ids:
        raise CouponError(PLAN_NOT_APPLICABLE, "Coupon not applicable to selected plan")

    if (
        purchase_cents is not None
        and coupon.min_purchase_cents is not None
        and purchase_cents < coupon.min_purchase_cents
    ):
        raise CouponError(
            BELOW_MINIMUM_PURCHASE,
            f"Minimum purchase amount of {coupon.min_purchase_cents} cents required",
        )

    if purchase_cents is None:
        return 0
    return compute_discount(coupon, purchase_cents)


def redeem(ctx: TenantContext, code: str, plan: MembershipPlan, purchase_cents: int,
           now: datetime | None = None) -> tuple[Coupon, int]:
    """Run checks 1-4 inside the caller's unit of work. Raises CouponError."""
    coupon = find_redeemable_coupon(ctx, code, now=now)
    discount = evaluate_coupon(coupon, plan, purchase_cents)
    return coupon, discount


def try_redeem(ctx: TenantContext, code: str, plan: MembershipPlan, purchase_cents: int,
               now: datetime | None = None) -> OperationResult:
    """Pre-check as a discriminated result: value is {"coupon", "discount_cents"}."""
    try:
        coupon, discount = redeem(ctx, code, plan, purchase_cents, now=now)
    except CouponError as exc:
        return OperationResult.failure(exc.kind, exc.message)
    return OperationResult.success({"coupon": coupon, "discount_cents": discount})


def validate_coupon(ctx: TenantContext, code: str, plan_id: int | None = None,
                    purchase_cents: int | None = None) -> OperationResult:
    """
    Read-only preview for the enrollment form.

    When plan_id is given and purchase_cents is not, the plan price is used.
    """
    plan = None
    if plan_id is not None:
        plan = scope_catalog(db.session.query(MembershipPlan), MembershipPlan, ctx).filter(
            MembershipPlan.id == plan_id
        ).first()
        if not plan:
            return OperationResult.failure(NOT_FOUND, "Invalid membership plan selected")
        if purchase_cents is None:
            purchase_cents = plan.price_cents

    try:
        coupon = find_redeemable_coupon(ctx, code)
        discount = evaluate_coupon(coupon, plan, purchase_cents)
    except CouponError as exc:
        return OperationResult.failure(exc.kind, exc.message)

    return OperationResult.success({
        "valid": True,
        "coupon": coupon.to_dict(),
        "discount_cents": discount,
    })


# =============================================================================
# ATOMIC CLAIM
# =============================================================================

def claim_coupon_usage(coupon_id: int) -> bool:
    """
    Atomically take one usage slot.

    Single conditional UPDATE; the cap predicate is evaluated by the database
    at write time, so concurrent claimers can never push the count past
    max_usage_count. Returns False when no slot was left.
    """
    stmt = (
        update(Coupon)
        .where(
            Coupon.id == coupon_id,
            or_(
                Coupon.max_usage_count.is_(None),
                Coupon.current_usage_count < Coupon.max_usage_count,
            ),
        )
        .values(current_usage_count=Coupon.current_usage_count + 1)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    claimed = result.rowcount == 1

    coupon = db.session.get(Coupon, coupon_id)
    if coupon is not None:
        db.session.refresh(coupon, attribute_names=["current_usage_count"])
    return claimed


def record_coupon_usage(
    ctx: TenantContext,
    *,
    coupon: Coupon,
    member_id: int,
    invoice_id: int | None,
    discount_cents: int,
    original_amount_cents: int,
    branch_id: int | None = None,
) -> CouponUsage:
    usage = CouponUsage(
        org_id=ctx.org_id,
        branch_id=branch_id if branch_id is not None else ctx.branch_id,
        coupon_id=coupon.id,
        coupon_code=coupon.code,
        member_id=member_id,
        invoice_id=invoice_id,
        discount_cents=discount_cents,
        original_amount_cents=original_amount_cents,
        applied_by_user_id=ctx.user_id,
    )
    db.session.add(usage)
    db.session.flush()
    return usage


def claim_and_record_usage(ctx: TenantContext, *, coupon: Coupon, member_id: int, invoice_id: int | None,
                           discount_cents: int, original_amount_cents: int) -> CouponUsage:
    """Claim a slot and append the usage row, or raise USAGE_LIMIT_EXCEEDED."""
    if not claim_coupon_usage(coupon.id):
        logger.info("Coupon %s lost the race for its last usage slot", coupon.code)
        raise CouponError(USAGE_LIMIT_EXCEEDED, "Coupon usage limit exceeded")
    return record_coupon_usage(
        ctx,
        coupon=coupon,
        member_id=member_id,
        invoice_id=invoice_id,
        discount_cents=discount_cents,
        original_amount_cents=original_amount_cents,
    )
