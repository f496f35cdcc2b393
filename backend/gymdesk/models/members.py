from __future__ import annotations

from ..extensions import db
from gymdesk.time_utils import to_utc_z, to_iso_date


class Member(db.Model):
    """
    Gym member master data.

    MULTI-TENANT: Members are scoped to organizations via org_id and, for
    branch-pinned staff, to the enrolling branch. branch_id=NULL marks a member
    enrolled by tenant-wide staff.

    LIFECYCLE: ACTIVE -> INACTIVE / SUSPENDED. Members are never deleted,
    only deactivated, so invoices and coupon usages always resolve.
    """
    __tablename__ = "members"
    __table_args__ = (
        db.UniqueConstraint("org_id", "membership_code", name="uq_members_org_code"),
        db.Index("ix_members_org_status", "org_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=True, index=True)

    # Human-readable identifier printed on cards and receipts (e.g., "MEM-20240115-3F9A2C1B")
    membership_code = db.Column(db.String(64), nullable=False)
    referral_code = db.Column(db.String(32), nullable=True, index=True)

    first_name = db.Column(db.String(128), nullable=False)
    last_name = db.Column(db.String(128), nullable=False)
    email = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(32), nullable=False)
    date_of_birth = db.Column(db.Date, nullable=True)
    gender = db.Column(db.String(16), nullable=True)  # MALE, FEMALE, OTHER
    emergency_contact_name = db.Column(db.String(255), nullable=True)
    emergency_contact_phone = db.Column(db.String(32), nullable=True)

    status = db.Column(db.String(16), nullable=False, default="ACTIVE", index=True)  # ACTIVE, INACTIVE, SUSPENDED
    join_date = db.Column(db.Date, nullable=False)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "branch_id": self.branch_id,
            "membership_code": self.membership_code,
            "referral_code": self.referral_code,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email,
            "phone": self.phone,
            "date_of_birth": to_iso_date(self.date_of_birth),
            "gender": self.gender,
            "emergency_contact_name": self.emergency_contact_name,
            "emergency_contact_phone": self.emergency_contact_phone,
            "status": self.status,
            "join_date": to_iso_date(self.join_date),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class MemberMembership(db.Model):
    """
    Binding of one member to one plan for [start_date, end_date).

    Created ACTIVE at enrollment; expiry and renewal jobs move it along
    (ACTIVE -> EXPIRED / CANCELLED / FROZEN) outside the billing core.
    """
    __tablename__ = "member_memberships"
    __table_args__ = (
        db.Index("ix_memberships_member_status", "member_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=True, index=True)
    member_id = db.Column(db.Integer, db.ForeignKey("members.id"), nullable=False, index=True)
    plan_id = db.Column(db.Integer, db.ForeignKey("membership_plans.id"), nullable=False, index=True)

    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=False)  # exclusive
    status = db.Column(db.String(16), nullable=False, default="ACTIVE", index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    member = db.relationship("Member", backref=db.backref("memberships", lazy=True, order_by="MemberMembership.start_date.desc()"))
    plan = db.relationship("MembershipPlan")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "branch_id": self.branch_id,
            "member_id": self.member_id,
            "plan_id": self.plan_id,
            "plan_name": self.plan.name if self.plan else None,
            "start_date": to_iso_date(self.start_date),
            "end_date": to_iso_date(self.end_date),
            "status": self.status,
            "created_at": to_utc_z(self.created_at),
        }
