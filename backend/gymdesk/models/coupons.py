from __future__ import annotations

from ..extensions import db
from gymdesk.time_utils import to_utc_z


class Coupon(db.Model):
    """
    Promotional code redeemable at enrollment.

    Can be tenant-wide (branch_id=NULL) or branch-specific.
    discount_value is basis points for PERCENTAGE (1000 = 10%) and cents for FLAT_AMOUNT.

    CONCURRENCY: current_usage_count only ever moves through the conditional
    UPDATE in coupon_service.claim_coupon_usage, so it can never pass
    max_usage_count even when many enrollments race for the last slot.
    """
    __tablename__ = "coupons"
    __table_args__ = (
        db.UniqueConstraint("org_id", "code", name="uq_coupons_org_code"),
        db.Index("ix_coupons_org_status", "org_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=True, index=True)

    code = db.Column(db.String(32), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)

    discount_type = db.Column(db.String(32), nullable=False)  # PERCENTAGE, FLAT_AMOUNT
    discount_value = db.Column(db.Integer, nullable=False)

    valid_from = db.Column(db.DateTime(timezone=True), nullable=False)
    valid_until = db.Column(db.DateTime(timezone=True), nullable=False)

    max_usage_count = db.Column(db.Integer, nullable=True)
    current_usage_count = db.Column(db.Integer, nullable=False, default=0)

    min_purchase_cents = db.Column(db.Integer, nullable=True)
    applicable_plan_ids = db.Column(db.JSON, nullable=False, default=list)  # empty = all plans

    is_referral_coupon = db.Column(db.Boolean, nullable=False, default=False)
    status = db.Column(db.String(16), nullable=False, default="ACTIVE", index=True)  # ACTIVE, INACTIVE

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "branch_id": self.branch_id,
            "code": self.code,
            "name": self.name,
            "description": self.description,
            "discount_type": self.discount_type,
            "discount_value": self.discount_value,
            "valid_from": to_utc_z(self.valid_from),
            "valid_until": to_utc_z(self.valid_until),
            "max_usage_count": self.max_usage_count,
            "current_usage_count": self.current_usage_count,
            "min_purchase_cents": self.min_purchase_cents,
            "applicable_plan_ids": list(self.applicable_plan_ids or []),
            "is_referral_coupon": self.is_referral_coupon,
            "status": self.status,
            "created_at": to_utc_z(self.created_at),
        }


class CouponUsage(db.Model):
    """
    Append-only record of one successful redemption.

    Written in the same transaction as the usage-count claim, so the number
    of rows per coupon always equals current_usage_count.
    """
    __tablename__ = "coupon_usages"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=True, index=True)
    coupon_id = db.Column(db.Integer, db.ForeignKey("coupons.id"), nullable=False, index=True)
    member_id = db.Column(db.Integer, db.ForeignKey("members.id"), nullable=False, index=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=True, index=True)

    coupon_code = db.Column(db.String(32), nullable=False)
    discount_cents = db.Column(db.Integer, nullable=False)
    original_amount_cents = db.Column(db.Integer, nullable=False)

    applied_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    coupon = db.relationship("Coupon", backref=db.backref("usages", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "coupon_id": self.coupon_id,
            "coupon_code": self.coupon_code,
            "member_id": self.member_id,
            "invoice_id": self.invoice_id,
            "discount_cents": self.discount_cents,
            "original_amount_cents": self.original_amount_cents,
            "applied_by_user_id": self.applied_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }
