# Overview: Service-layer operations for benefit balances; opening balances at enrollment.

"""
Benefit Balance Initializer

Pure derivation from a plan's benefit definitions: no validation failures,
no commits. Accrual and consumption jobs that later move these balances are
not part of this service.
"""

from __future__ import annotations

from datetime import date, timedelta

from dateutil.relativedelta import relativedelta

from ..extensions import db
from ..models import BenefitDefinition, Member, MemberBenefitBalance
from .errors import EnrollmentError, NOT_FOUND
from .tenant_service import TenantContext, scope_branch_owned


# =============================================================================
# ACCRUAL TYPES (CONSTANTS)
# =============================================================================

ACCRUAL_ONE_TIME = "ONE_TIME"
ACCRUAL_MONTHLY = "MONTHLY"
ACCRUAL_QUARTERLY = "QUARTERLY"
ACCRUAL_YEARLY = "YEARLY"
ACCRUAL_PER_BILLING_CYCLE = "PER_BILLING_CYCLE"

VALID_ACCRUAL_TYPES = [
    ACCRUAL_ONE_TIME,
    ACCRUAL_MONTHLY,
    ACCRUAL_QUARTERLY,
    ACCRUAL_YEARLY,
    ACCRUAL_PER_BILLING_CYCLE,
]

ACCRUAL_INTERVALS = {
    ACCRUAL_MONTHLY: relativedelta(months=1),
    ACCRUAL_PER_BILLING_CYCLE: relativedelta(months=1),
    ACCRUAL_QUARTERLY: relativedelta(months=3),
    ACCRUAL_YEARLY: relativedelta(years=1),
}


def next_accrual_date(start: date, accrual_type: str | None) -> date | None:
    """
    Calendar-month arithmetic: Jan 31 + 1 month = Feb 28 (or 29).

    ONE_TIME and missing cadences never re-accrue. Unknown cadences fall
    back to monthly.
    """
    if not accrual_type or accrual_type == ACCRUAL_ONE_TIME:
        return None
    return start + ACCRUAL_INTERVALS.get(accrual_type, relativedelta(months=1))


def opening_balance(definition: BenefitDefinition) -> int:
    quantity = definition.accrual_quantity or 0
    if definition.max_balance is not None:
        return min(quantity, definition.max_balance)
    return quantity


def initialize_balances(
    member: Member,
    start_date: date,
    definitions: list[BenefitDefinition],
) -> list[MemberBenefitBalance]:
    """
    One MemberBenefitBalance per definition; added to the session, not committed.
    """
    balances = []
    for definition in definitions:
        quantity = opening_balance(definition)
        expiry = start_date + timedelta(days=definition.expiry_days) if definition.expiry_days else None

        balance = MemberBenefitBalance(
            org_id=member.org_id,
            branch_id=member.branch_id,
            member_id=member.id,
            benefit_id=definition.id,
            current_balance=quantity,
            total_accrued=quantity,
            total_consumed=0,
            last_accrual_date=start_date,
            next_accrual_date=next_accrual_date(start_date, definition.accrual_type),
            expiry_date=expiry,
        )
        db.session.add(balance)
        balances.append(balance)

    db.session.flush()
    return balances


def list_member_balances(ctx: TenantContext, member_id: int) -> list[dict]:
    member = scope_branch_owned(db.session.query(Member), Member, ctx).filter(Member.id == member_id).first()
    if not member:
        raise EnrollmentError(NOT_FOUND, "Member not found")

    rows = (
        db.session.query(MemberBenefitBalance)
        .filter(MemberBenefitBalance.member_id == member.id)
        .order_by(MemberBenefitBalance.id)
        .all()
    )
    return [b.to_dict() for b in rows]
