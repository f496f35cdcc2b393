from __future__ import annotations

from ..extensions import db
from gymdesk.time_utils import to_utc_z, to_iso_date


class MembershipPlan(db.Model):
    """
    Catalog entry members enroll into.

    Can be tenant-wide (branch_id=NULL) or branch-specific.
    Amounts are integer cents; duration is the default length in days.
    """
    __tablename__ = "membership_plans"
    __table_args__ = (
        db.Index("ix_plans_org_status", "org_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=True, index=True)

    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)

    price_cents = db.Column(db.Integer, nullable=False)
    setup_fee_cents = db.Column(db.Integer, nullable=False, default=0)
    duration_days = db.Column(db.Integer, nullable=False)

    # Feature flags shown on the plan card and consumed by access control
    gym_access = db.Column(db.Boolean, nullable=False, default=True)
    pool_access = db.Column(db.Boolean, nullable=False, default=False)
    locker_access = db.Column(db.Boolean, nullable=False, default=False)
    personal_trainer = db.Column(db.Boolean, nullable=False, default=False)
    group_classes = db.Column(db.Boolean, nullable=False, default=False)
    max_classes = db.Column(db.Integer, nullable=True)

    status = db.Column(db.String(16), nullable=False, default="ACTIVE", index=True)  # ACTIVE, INACTIVE

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    benefits = db.relationship(
        "BenefitDefinition",
        backref=db.backref("plan", lazy=True),
        lazy=True,
        order_by="BenefitDefinition.id",
    )

    def active_benefits(self) -> list["BenefitDefinition"]:
        return [b for b in self.benefits if b.is_active]

    def to_dict(self, include_benefits: bool = False) -> dict:
        data = {
            "id": self.id,
            "org_id": self.org_id,
            "branch_id": self.branch_id,
            "name": self.name,
            "description": self.description,
            "price_cents": self.price_cents,
            "setup_fee_cents": self.setup_fee_cents,
            "duration_days": self.duration_days,
            "gym_access": self.gym_access,
            "pool_access": self.pool_access,
            "locker_access": self.locker_access,
            "personal_trainer": self.personal_trainer,
            "group_classes": self.group_classes,
            "max_classes": self.max_classes,
            "status": self.status,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_benefits:
            data["benefits"] = [b.to_dict() for b in self.benefits]
        return data


class BenefitDefinition(db.Model):
    """
    Entitlement attached to a plan (e.g., 4 PT sessions per month).

    ACCRUAL TYPES:
    - ONE_TIME: granted once at enrollment, never re-accrued
    - MONTHLY / PER_BILLING_CYCLE: +accrual_quantity every month
    - QUARTERLY: every 3 months
    - YEARLY: every 12 months
    """
    __tablename__ = "benefit_definitions"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    plan_id = db.Column(db.Integer, db.ForeignKey("membership_plans.id"), nullable=False, index=True)

    benefit_type = db.Column(db.String(64), nullable=False)  # PT_SESSION, GUEST_PASS, SAUNA, ...
    name = db.Column(db.String(255), nullable=False)

    accrual_quantity = db.Column(db.Integer, nullable=False, default=0)
    accrual_type = db.Column(db.String(32), nullable=True)
    max_balance = db.Column(db.Integer, nullable=True)
    rollover = db.Column(db.Boolean, nullable=False, default=False)
    expiry_days = db.Column(db.Integer, nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "plan_id": self.plan_id,
            "benefit_type": self.benefit_type,
            "name": self.name,
            "accrual_quantity": self.accrual_quantity,
            "accrual_type": self.accrual_type,
            "max_balance": self.max_balance,
            "rollover": self.rollover,
            "expiry_days": self.expiry_days,
            "is_active": self.is_active,
        }


class MemberBenefitBalance(db.Model):
    """
    Running entitlement balance, one row per (member, benefit definition).

    INVARIANTS:
    - current_balance = total_accrued - total_consumed
    - current_balance <= max_balance whenever the definition sets one
    - next_accrual_date is NULL for ONE_TIME benefits
    """
    __tablename__ = "member_benefit_balances"
    __table_args__ = (
        db.UniqueConstraint("member_id", "benefit_id", name="uq_benefit_balances_member_benefit"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=True, index=True)
    member_id = db.Column(db.Integer, db.ForeignKey("members.id"), nullable=False, index=True)
    benefit_id = db.Column(db.Integer, db.ForeignKey("benefit_definitions.id"), nullable=False, index=True)

    current_balance = db.Column(db.Integer, nullable=False, default=0)
    total_accrued = db.Column(db.Integer, nullable=False, default=0)
    total_consumed = db.Column(db.Integer, nullable=False, default=0)

    last_accrual_date = db.Column(db.Date, nullable=True)
    next_accrual_date = db.Column(db.Date, nullable=True)
    expiry_date = db.Column(db.Date, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    member = db.relationship("Member", backref=db.backref("benefit_balances", lazy=True))
    benefit = db.relationship("BenefitDefinition")
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "member_id": self.member_id,
            "benefit_id": self.benefit_id,
            "benefit_type": self.benefit.benefit_type if self.benefit else None,
            "benefit_name": self.benefit.name if self.benefit else None,
            "current_balance": self.current_balance,
            "total_accrued": self.total_accrued,
            "total_consumed": self.total_consumed,
            "last_accrual_date": to_iso_date(self.last_accrual_date),
            "next_accrual_date": to_iso_date(self.next_accrual_date),
            "expiry_date": to_iso_date(self.expiry_date),
        }
