# Overview: Service-layer operations for membership plans and their benefit definitions.

from __future__ import annotations

from ..extensions import db
from ..models import MembershipPlan, BenefitDefinition
from ..validation import (
    ModelValidationPolicy,
    ValidationError,
    validate_payload,
    enforce_rules_plan,
    enforce_rules_benefit,
)
from .benefit_service import VALID_ACCRUAL_TYPES
from .concurrency import run_with_retry
from .errors import ServiceError, NOT_FOUND
from .tenant_service import TenantContext, scope_catalog
from .audit_service import append_audit_event


PLAN_STATUS_ACTIVE = "ACTIVE"
PLAN_STATUS_INACTIVE = "INACTIVE"

PLAN_POLICY = ModelValidationPolicy(
    writable_fields={
        "name", "description", "price_cents", "setup_fee_cents", "duration_days",
        "gym_access", "pool_access", "locker_access", "personal_trainer",
        "group_classes", "max_classes",
    },
    required_on_create={"name", "price_cents", "duration_days"},
)

BENEFIT_POLICY = ModelValidationPolicy(
    writable_fields={
        "benefit_type", "name", "accrual_quantity", "accrual_type",
        "max_balance", "rollover", "expiry_days",
    },
    required_on_create={"benefit_type", "name"},
)


class PlanError(ServiceError):
    """Raised when a plan cannot be resolved in the caller's scope."""
    pass


def _validate_benefit(data: dict) -> dict:
    patch = validate_payload(model=BenefitDefinition, payload=data, policy=BENEFIT_POLICY, partial=False)
    patch["benefit_type"] = patch["benefit_type"].upper()
    if patch.get("accrual_type"):
        patch["accrual_type"] = patch["accrual_type"].upper()
    enforce_rules_benefit(patch, VALID_ACCRUAL_TYPES)
    return patch


def _scoped_plan(ctx: TenantContext, plan_id: int) -> MembershipPlan:
    plan = scope_catalog(db.session.query(MembershipPlan), MembershipPlan, ctx).filter(
        MembershipPlan.id == plan_id
    ).first()
    if not plan:
        raise PlanError(NOT_FOUND, "Membership plan not found")
    return plan


def create_plan(ctx: TenantContext, data: dict) -> dict:
    """
    Create a plan with optional nested "benefits" list.

    Plans created by tenant-wide staff are tenant-wide (branch_id=NULL).
    """
    data = dict(data or {})
    benefits_data = data.pop("benefits", None) or []
    if not isinstance(benefits_data, list):
        raise ValidationError("benefits must be a list")

    patch = validate_payload(model=MembershipPlan, payload=data, policy=PLAN_POLICY, partial=False)
    enforce_rules_plan(patch)
    benefit_patches = [_validate_benefit(b) for b in benefits_data]

    def _op() -> dict:
        plan = MembershipPlan(
            org_id=ctx.org_id,
            branch_id=ctx.branch_id,
            status=PLAN_STATUS_ACTIVE,
            created_by_user_id=ctx.user_id,
            **patch,
        )
        db.session.add(plan)
        db.session.flush()

        for bp in benefit_patches:
            db.session.add(BenefitDefinition(org_id=ctx.org_id, plan_id=plan.id, **bp))
        db.session.flush()

        append_audit_event(
            ctx,
            action="PLAN_CREATED",
            resource_type="membership_plan",
            resource_id=plan.id,
            new_values={"name": plan.name, "price_cents": plan.price_cents,
                        "benefits": len(benefit_patches)},
        )
        db.session.commit()
        return plan.to_dict(include_benefits=True)

    return run_with_retry(_op)


def add_benefit(ctx: TenantContext, plan_id: int, data: dict) -> dict:
    patch = _validate_benefit(data)

    def _op() -> dict:
        plan = _scoped_plan(ctx, plan_id)
        benefit = BenefitDefinition(org_id=ctx.org_id, plan_id=plan.id, **patch)
        db.session.add(benefit)
        db.session.flush()
        append_audit_event(
            ctx,
            action="PLAN_BENEFIT_ADDED",
            resource_type="membership_plan",
            resource_id=plan.id,
            new_values=benefit.to_dict(),
        )
        db.session.commit()
        return benefit.to_dict()

    return run_with_retry(_op)


def list_plans(ctx: TenantContext, active_only: bool = False) -> list[dict]:
    q = scope_catalog(db.session.query(MembershipPlan), MembershipPlan, ctx)
    if active_only:
        q = q.filter(MembershipPlan.status == PLAN_STATUS_ACTIVE)
    return [p.to_dict() for p in q.order_by(MembershipPlan.name, MembershipPlan.id).all()]


def get_plan(ctx: TenantContext, plan_id: int) -> dict:
    return _scoped_plan(ctx, plan_id).to_dict(include_benefits=True)


def resolve_plan_for_enrollment(ctx: TenantContext, plan_id: int) -> MembershipPlan:
    """ACTIVE plan in scope, with benefits loaded."""
    plan = _scoped_plan(ctx, plan_id)
    if plan.status != PLAN_STATUS_ACTIVE:
        raise PlanError(NOT_FOUND, "Invalid membership plan selected")
    return plan
