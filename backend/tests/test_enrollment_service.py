# Overview: Pytest coverage for member enrollment (pricing, atomicity, numbering, notifications).

"""
Enrollment Orchestrator Tests

Every failure path must leave zero rows behind: no member, membership,
invoice, coupon usage, benefit balance or audit entry from the failed attempt.
"""

import re

import pytest
from sqlalchemy.exc import SQLAlchemyError

from gymdesk.extensions import db
from gymdesk.models import (
    AuditLog,
    Coupon,
    CouponUsage,
    Invoice,
    InvoiceItem,
    Member,
    MemberBenefitBalance,
    MemberMembership,
)
from gymdesk.services import coupon_service, enrollment_service
from gymdesk.services.errors import (
    BELOW_MINIMUM_PURCHASE,
    NOT_FOUND,
    TRANSACTION_ABORTED,
    USAGE_LIMIT_EXCEEDED,
)
from gymdesk.services.tenant_service import TenantContext
from gymdesk.time_utils import utctoday
from gymdesk.validation import ValidationError

from conftest import make_coupon, make_plan, member_details, START_DATE


def _row_counts():
    return {
        model.__name__: db.session.query(model).count()
        for model in (Member, MemberMembership, Invoice, InvoiceItem, CouponUsage,
                      MemberBenefitBalance, AuditLog)
    }


def _assert_nothing_written():
    db.session.expire_all()
    assert _row_counts() == {
        "Member": 0,
        "MemberMembership": 0,
        "Invoice": 0,
        "InvoiceItem": 0,
        "CouponUsage": 0,
        "MemberBenefitBalance": 0,
        "AuditLog": 0,
    }


# =============================================================================
# PRICING
# =============================================================================


class TestEnrollmentPricing:
    def test_happy_path_without_coupon(self, db_session, org_a, ctx_a):
        plan = make_plan(db_session, org_a, price_cents=2999, setup_fee_cents=500)

        result = enrollment_service.enroll(ctx_a, member_details(), plan.id, START_DATE)

        assert result.ok, result.message
        invoice = result.value["invoice"]
        assert invoice["subtotal_cents"] == 3499
        assert invoice["discount_cents"] == 0
        assert invoice["total_cents"] == 3499
        assert invoice["paid_cents"] == 3499
        assert invoice["balance_cents"] == 0
        assert invoice["status"] == "PAID"

        items = invoice["items"]
        assert [i["total_cents"] for i in items] == [2999, 500]
        assert items[0]["description"] == "Gold Monthly - 30 days"
        assert items[1]["description"] == "Setup Fee"

    def test_no_setup_fee_line_when_zero(self, db_session, org_a, ctx_a):
        plan = make_plan(db_session, org_a, price_cents=2000)
        result = enrollment_service.enroll(ctx_a, member_details(), plan.id, START_DATE)
        assert len(result.value["invoice"]["items"]) == 1

    def test_percentage_coupon(self, db_session, org_a, ctx_a):
        plan = make_plan(db_session, org_a, price_cents=2000)
        coupon = make_coupon(db_session, org_a, discount_value=1000, max_usage_count=5)

        result = enrollment_service.enroll(
            ctx_a, member_details(), plan.id, START_DATE, coupon_code="newyear10"
        )

        assert result.ok, result.message
        invoice = result.value["invoice"]
        assert invoice["discount_cents"] == 200
        assert invoice["total_cents"] == 1800
        assert invoice["paid_cents"] == 1800

        usage = db.session.query(CouponUsage).one()
        assert usage.coupon_id == coupon.id
        assert usage.discount_cents == 200
        assert usage.original_amount_cents == 2000
        assert usage.invoice_id == invoice["id"]
        assert usage.member_id == result.value["member"]["id"]
        assert db.session.get(Coupon, coupon.id).current_usage_count == 1

    def test_discount_applies_to_plan_price_not_setup_fee(self, db_session, org_a, ctx_a):
        plan = make_plan(db_session, org_a, price_cents=2000, setup_fee_cents=1000)
        make_coupon(db_session, org_a, discount_value=1000)

        result = enrollment_service.enroll(
            ctx_a, member_details(), plan.id, START_DATE, coupon_code="NEWYEAR10"
        )

        assert result.value["invoice"]["discount_cents"] == 200
        assert result.value["invoice"]["total_cents"] == 2800

    def test_flat_coupon_larger_than_price_clamps_total_at_zero(self, db_session, org_a, ctx_a):
        plan = make_plan(db_session, org_a, price_cents=2000, setup_fee_cents=500)
        make_coupon(db_session, org_a, code="FLAT5000", discount_type="FLAT_AMOUNT", discount_value=5000)

        result = enrollment_service.enroll(
            ctx_a, member_details(), plan.id, START_DATE, coupon_code="FLAT5000"
        )

        assert result.ok, result.message
        invoice = result.value["invoice"]
        assert invoice["discount_cents"] == 5000
        assert invoice["total_cents"] == 0
        assert invoice["balance_cents"] == 0
        assert invoice["status"] == "PAID"


# =============================================================================
# MEMBER, MEMBERSHIP AND INVOICE NUMBERING
# =============================================================================


class TestEnrollmentRecords:
    def test_member_and_membership(self, db_session, org_a, branch_a, ctx_a, plan_a):
        result = enrollment_service.enroll(ctx_a, member_details(), plan_a.id, START_DATE, duration_days=90)

        member = result.value["member"]
        assert member["status"] == "ACTIVE"
        assert member["branch_id"] == branch_a.id
        assert member["email"] == "asha1@example.com"
        assert re.fullmatch(r"MEM-\d{8}-[0-9A-F]{8}", member["membership_code"])
        assert re.fullmatch(r"MEM[A-Z0-9]{4}[A-Z2-9]{4}", member["referral_code"])

        membership = result.value["membership"]
        assert membership["status"] == "ACTIVE"
        assert membership["start_date"] == "2024-01-15"
        assert membership["end_date"] == "2024-04-14"
        assert membership["plan_name"] == "Gold Monthly"

        assert result.value["invoice"]["items"][0]["description"] == "Gold Monthly - 90 days"

    def test_invoice_numbers_are_sequential_per_tenant(self, db_session, org_a, org_b, ctx_a, ctx_b, plan_a):
        org_b_plan = make_plan(db_session, org_b)
        year = utctoday().year

        first = enrollment_service.enroll(ctx_a, member_details("1"), plan_a.id, START_DATE)
        second = enrollment_service.enroll(ctx_a, member_details("2"), plan_a.id, START_DATE)
        other = enrollment_service.enroll(ctx_b, member_details("3"), org_b_plan.id, START_DATE)

        assert first.value["invoice"]["invoice_number"] == f"INV-{year}-000001"
        assert second.value["invoice"]["invoice_number"] == f"INV-{year}-000002"
        assert other.value["invoice"]["invoice_number"] == f"INV-{year}-000001"

    def test_audit_record_written(self, db_session, org_a, ctx_a, plan_a):
        result = enrollment_service.enroll(ctx_a, member_details(), plan_a.id, START_DATE)

        entry = db.session.query(AuditLog).filter_by(action="MEMBER_ENROLLED").one()
        assert entry.resource_id == result.value["member"]["id"]
        assert entry.user_id == ctx_a.user_id
        assert entry.new_values["plan"] == "Gold Monthly"
        assert entry.new_values["invoice_number"] == result.value["invoice"]["invoice_number"]
        assert entry.new_values["total_cents"] == 300000


# =============================================================================
# FAILURES AND ATOMICITY
# =============================================================================


class TestEnrollmentFailures:
    def test_below_minimum_purchase_creates_nothing(self, db_session, org_a, ctx_a):
        plan = make_plan(db_session, org_a, price_cents=500)
        make_coupon(db_session, org_a, min_purchase_cents=1000)

        result = enrollment_service.enroll(
            ctx_a, member_details(), plan.id, START_DATE, coupon_code="NEWYEAR10"
        )

        assert not result.ok
        assert result.error_kind == BELOW_MINIMUM_PURCHASE
        assert result.retryable is False
        _assert_nothing_written()

    def test_unknown_plan(self, db_session, org_a, ctx_a):
        result = enrollment_service.enroll(ctx_a, member_details(), 99999, START_DATE)
        assert result.error_kind == NOT_FOUND
        _assert_nothing_written()

    def test_plan_of_other_branch_not_found(self, db_session, org_a, branch_a2, ctx_a):
        plan = make_plan(db_session, org_a, branch=branch_a2)
        result = enrollment_service.enroll(ctx_a, member_details(), plan.id, START_DATE)
        assert result.error_kind == NOT_FOUND

    def test_inactive_plan_not_found(self, db_session, org_a, ctx_a):
        plan = make_plan(db_session, org_a)
        plan.status = "INACTIVE"
        db_session.commit()

        result = enrollment_service.enroll(ctx_a, member_details(), plan.id, START_DATE)
        assert result.error_kind == NOT_FOUND

    def test_unknown_coupon(self, db_session, org_a, ctx_a, plan_a):
        result = enrollment_service.enroll(
            ctx_a, member_details(), plan_a.id, START_DATE, coupon_code="NOPE1234"
        )
        assert result.error_kind == NOT_FOUND
        _assert_nothing_written()

    def test_exhausted_coupon(self, db_session, org_a, ctx_a, plan_a):
        make_coupon(db_session, org_a, max_usage_count=1, current_usage_count=1)
        result = enrollment_service.enroll(
            ctx_a, member_details(), plan_a.id, START_DATE, coupon_code="NEWYEAR10"
        )
        assert result.error_kind == USAGE_LIMIT_EXCEEDED
        assert result.http_status == 409

    def test_lost_claim_race_rolls_back(self, db_session, org_a, ctx_a, plan_a, monkeypatch):
        coupon = make_coupon(db_session, org_a, max_usage_count=1)
        monkeypatch.setattr(coupon_service, "claim_coupon_usage", lambda coupon_id: False)

        result = enrollment_service.enroll(
            ctx_a, member_details(), plan_a.id, START_DATE, coupon_code="NEWYEAR10"
        )

        assert result.error_kind == USAGE_LIMIT_EXCEEDED
        _assert_nothing_written()
        assert db.session.get(Coupon, coupon.id).current_usage_count == 0

    def test_storage_failure_mid_transaction(self, db_session, org_a, ctx_a, plan_a, monkeypatch):
        coupon = make_coupon(db_session, org_a, max_usage_count=3)

        def broken(*args, **kwargs):
            raise SQLAlchemyError("disk on fire")

        monkeypatch.setattr(enrollment_service, "initialize_balances", broken)

        result = enrollment_service.enroll(
            ctx_a, member_details(), plan_a.id, START_DATE, coupon_code="NEWYEAR10"
        )

        assert not result.ok
        assert result.error_kind == TRANSACTION_ABORTED
        assert result.retryable is True
        assert result.http_status == 503
        _assert_nothing_written()
        assert db.session.get(Coupon, coupon.id).current_usage_count == 0

    def test_unexpected_error_propagates_after_rollback(self, db_session, org_a, ctx_a, plan_a, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("bug")

        monkeypatch.setattr(enrollment_service, "initialize_balances", broken)

        with pytest.raises(RuntimeError):
            enrollment_service.enroll(ctx_a, member_details(), plan_a.id, START_DATE)
        _assert_nothing_written()

    def test_invoice_number_not_consumed_by_failed_enrollment(self, db_session, org_a, ctx_a, plan_a, monkeypatch):
        def broken(*args, **kwargs):
            raise SQLAlchemyError("disk on fire")

        with monkeypatch.context() as m:
            m.setattr(enrollment_service, "initialize_balances", broken)
            enrollment_service.enroll(ctx_a, member_details("1"), plan_a.id, START_DATE)

        result = enrollment_service.enroll(ctx_a, member_details("2"), plan_a.id, START_DATE)
        assert result.value["invoice"]["invoice_number"].endswith("-000001")

    @pytest.mark.parametrize(
        "details",
        [
            {"first_name": "Asha", "last_name": "Rao"},
            {"first_name": "Asha", "last_name": "Rao", "phone": "9876543210", "email": "not-an-email"},
            {"first_name": "Asha", "last_name": "Rao", "phone": "9876543210", "gender": "UNKNOWN"},
            {"first_name": "Asha", "last_name": "Rao", "phone": "9876543210", "is_admin": True},
        ],
    )
    def test_invalid_member_details_raise(self, db_session, org_a, ctx_a, plan_a, details):
        with pytest.raises(ValidationError):
            enrollment_service.enroll(ctx_a, details, plan_a.id, START_DATE)

    def test_non_positive_duration_rejected(self, db_session, org_a, ctx_a, plan_a):
        with pytest.raises(ValidationError):
            enrollment_service.enroll(ctx_a, member_details(), plan_a.id, START_DATE, duration_days=0)


# =============================================================================
# NOTIFICATIONS
# =============================================================================


class TestEnrollmentNotifications:
    def test_payload_handed_off_after_commit(self, app, db_session, org_a, ctx_a, plan_a, monkeypatch):
        sent = []
        monkeypatch.setitem(app.config, "NOTIFICATION_DISPATCHER", lambda kind, payload: sent.append((kind, payload)))

        result = enrollment_service.enroll(ctx_a, member_details(), plan_a.id, START_DATE)

        assert len(sent) == 1
        kind, payload = sent[0]
        assert kind == "MEMBER_ENROLLED"
        assert payload == {
            "member_id": result.value["member"]["id"],
            "invoice_number": result.value["invoice"]["invoice_number"],
            "amount_cents": 300000,
            "plan_name": "Gold Monthly",
            "valid_until": "2024-02-14",
        }

    def test_dispatcher_failure_does_not_undo_enrollment(self, app, db_session, org_a, ctx_a, plan_a, monkeypatch):
        def broken(kind, payload):
            raise ConnectionError("sms gateway down")

        monkeypatch.setitem(app.config, "NOTIFICATION_DISPATCHER", broken)

        result = enrollment_service.enroll(ctx_a, member_details(), plan_a.id, START_DATE)

        assert result.ok
        assert db.session.query(Member).count() == 1


# =============================================================================
# READS
# =============================================================================


class TestMemberReads:
    def test_list_members_scoped_to_branch(self, db_session, org_a, ctx_a, ctx_a2, plan_a):
        enrollment_service.enroll(ctx_a, member_details("1"), plan_a.id, START_DATE)
        enrollment_service.enroll(ctx_a2, member_details("2"), plan_a.id, START_DATE)

        assert enrollment_service.list_members(ctx_a)["total"] == 1
        assert enrollment_service.list_members(ctx_a2)["total"] == 1

        tenant_wide = TenantContext(org_id=org_a.id)
        assert enrollment_service.list_members(tenant_wide)["total"] == 2

    def test_list_members_search(self, db_session, org_a, ctx_a, plan_a):
        enrollment_service.enroll(ctx_a, member_details("1"), plan_a.id, START_DATE)
        enrollment_service.enroll(ctx_a, member_details("2"), plan_a.id, START_DATE)

        data = enrollment_service.list_members(ctx_a, search="Rao2")
        assert [m["last_name"] for m in data["members"]] == ["Rao2"]

    def test_get_member_includes_children(self, db_session, org_a, ctx_a, plan_a):
        result = enrollment_service.enroll(ctx_a, member_details(), plan_a.id, START_DATE)
        data = enrollment_service.get_member(ctx_a, result.value["member"]["id"])

        assert len(data["memberships"]) == 1
        assert len(data["benefit_balances"]) == 2
        assert [i["invoice_number"] for i in data["invoices"]] == [result.value["invoice"]["invoice_number"]]
