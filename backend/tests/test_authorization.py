"""
Authorization tests for gymdesk.

Verifies:
- Unauthenticated requests return 401
- Front desk role denied catalog management, refunds and the audit log (403)
- Admin and manager roles can perform privileged operations
- Login, logout and health endpoints
"""

import pytest

from conftest import auth_headers, get_auth_token, make_coupon, member_details, TEST_PASSWORD


# =============================================================================
# UNAUTHENTICATED ACCESS (401)
# =============================================================================


class TestUnauthenticatedAccess:
    """All protected endpoints return 401 without a token."""

    @pytest.mark.parametrize(
        "method,path",
        [
            ("GET", "/api/plans"),
            ("POST", "/api/plans"),
            ("GET", "/api/plans/1"),
            ("POST", "/api/plans/1/benefits"),
            ("GET", "/api/coupons"),
            ("POST", "/api/coupons"),
            ("POST", "/api/coupons/validate"),
            ("POST", "/api/members/enroll"),
            ("GET", "/api/members"),
            ("GET", "/api/members/1"),
            ("GET", "/api/members/1/benefits"),
            ("GET", "/api/invoices"),
            ("POST", "/api/invoices"),
            ("GET", "/api/invoices/1"),
            ("POST", "/api/invoices/1/finalize"),
            ("POST", "/api/invoices/1/payments"),
            ("POST", "/api/invoices/1/refunds"),
            ("GET", "/api/audit"),
            ("GET", "/api/auth/me"),
            ("POST", "/api/auth/logout"),
        ],
    )
    def test_requires_auth(self, client, db_session, method, path):
        resp = getattr(client, method.lower())(path)
        assert resp.status_code == 401, f"{method} {path} returned {resp.status_code}"

    def test_garbage_token_rejected(self, client, db_session):
        resp = client.get("/api/plans", headers=auth_headers("not-a-real-token"))
        assert resp.status_code == 401
        assert resp.json["error"] == "Invalid or expired token"


# =============================================================================
# FRONT DESK DENIED HIGH-RISK OPERATIONS (403)
# =============================================================================


class TestFrontDeskDenied:
    @pytest.mark.parametrize(
        "method,path,body",
        [
            ("POST", "/api/plans", {"name": "Gold", "price_cents": 1000, "duration_days": 30}),
            ("POST", "/api/plans/1/benefits", {"benefit_type": "GUEST_PASS", "name": "Guest"}),
            ("POST", "/api/coupons", {"code": "FREE1000"}),
            ("POST", "/api/invoices", {"member_id": 1, "items": []}),
            ("POST", "/api/invoices/1/finalize", {}),
            ("POST", "/api/invoices/1/refunds", {"refund_amount_cents": 1, "refund_method": "CASH"}),
            ("GET", "/api/audit", None),
        ],
    )
    def test_denied(self, client, front_desk_headers, method, path, body):
        kwargs = {"headers": front_desk_headers}
        if body is not None:
            kwargs["json"] = body
        resp = getattr(client, method.lower())(path, **kwargs)
        assert resp.status_code == 403, f"{method} {path} returned {resp.status_code}"
        assert resp.json["error"] == "Permission denied"
        assert resp.json["required_permission"]

    def test_front_desk_can_enroll_and_take_payment(self, client, db_session, front_desk_headers, plan_a):
        enrolled = client.post(
            "/api/members/enroll",
            json={"member": member_details(), "plan_id": plan_a.id, "start_date": "2024-01-15"},
            headers=front_desk_headers,
        )
        assert enrolled.status_code == 201
        assert enrolled.json["invoice"]["status"] == "PAID"

        # Extra payment on a PAID invoice is accepted; balance stays at zero
        pay = client.post(
            f"/api/invoices/{enrolled.json['invoice']['id']}/payments",
            json={"amount_cents": 100, "payment_method": "CASH"},
            headers=front_desk_headers,
        )
        assert pay.status_code == 201


# =============================================================================
# PRIVILEGED ROLES SUCCEED
# =============================================================================


class TestPrivilegedAccess:
    def test_manager_creates_plan_with_benefits(self, client, manager_headers, branch_a):
        resp = client.post(
            "/api/plans",
            json={
                "name": "Platinum Quarterly",
                "price_cents": 600000,
                "setup_fee_cents": 0,
                "duration_days": 90,
                "benefits": [
                    {"benefit_type": "guest_pass", "name": "Guest pass", "accrual_quantity": 3,
                     "accrual_type": "monthly", "max_balance": 9},
                ],
            },
            headers=manager_headers,
        )
        assert resp.status_code == 201
        plan = resp.json["plan"]
        assert plan["branch_id"] == branch_a.id
        assert plan["benefits"][0]["benefit_type"] == "GUEST_PASS"
        assert plan["benefits"][0]["accrual_type"] == "MONTHLY"

        listing = client.get("/api/plans", headers=manager_headers)
        assert [p["name"] for p in listing.json["plans"]] == ["Platinum Quarterly"]

    def test_plan_validation_errors(self, client, admin_headers):
        bad_price = client.post(
            "/api/plans", json={"name": "Bad", "price_cents": -1, "duration_days": 30}, headers=admin_headers
        )
        assert bad_price.status_code == 400

        bad_accrual = client.post(
            "/api/plans",
            json={"name": "Bad", "price_cents": 100, "duration_days": 30,
                  "benefits": [{"benefit_type": "X", "name": "X", "accrual_type": "HOURLY"}]},
            headers=admin_headers,
        )
        assert bad_accrual.status_code == 400

    def test_add_benefit(self, client, admin_headers, plan_a):
        resp = client.post(
            f"/api/plans/{plan_a.id}/benefits",
            json={"benefit_type": "LOCKER", "name": "Locker", "accrual_quantity": 1, "accrual_type": "ONE_TIME"},
            headers=admin_headers,
        )
        assert resp.status_code == 201
        detail = client.get(f"/api/plans/{plan_a.id}", headers=admin_headers)
        assert len(detail.json["plan"]["benefits"]) == 3

    def test_admin_creates_coupon(self, client, admin_headers):
        resp = client.post(
            "/api/coupons",
            json={
                "code": "welcome15",
                "name": "Welcome",
                "discount_type": "PERCENTAGE",
                "discount_value": 1500,
                "valid_from": "2024-01-01T00:00:00Z",
                "valid_until": "2099-01-01T00:00:00Z",
            },
            headers=admin_headers,
        )
        assert resp.status_code == 201
        assert resp.json["coupon"]["code"] == "WELCOME15"
        assert resp.json["coupon"]["branch_id"] is None

        dup = client.post(
            "/api/coupons",
            json={
                "code": "WELCOME15",
                "name": "Again",
                "discount_type": "PERCENTAGE",
                "discount_value": 1500,
                "valid_from": "2024-01-01T00:00:00Z",
                "valid_until": "2099-01-01T00:00:00Z",
            },
            headers=admin_headers,
        )
        assert dup.status_code == 409

    def test_coupon_validate_preview(self, client, db_session, org_a, front_desk_headers, plan_a):
        make_coupon(db_session, org_a, max_usage_count=1, current_usage_count=1)
        resp = client.post(
            "/api/coupons/validate",
            json={"code": "NEWYEAR10", "plan_id": plan_a.id},
            headers=front_desk_headers,
        )
        assert resp.status_code == 409
        assert resp.json["valid"] is False
        assert resp.json["error_kind"] == "USAGE_LIMIT_EXCEEDED"

    def test_manager_invoice_lifecycle(self, client, manager_headers, plan_a):
        enrolled = client.post(
            "/api/members/enroll",
            json={"member": member_details(), "plan_id": plan_a.id, "start_date": "2024-01-15"},
            headers=manager_headers,
        )
        member_id = enrolled.json["member"]["id"]

        created = client.post(
            "/api/invoices",
            json={"member_id": member_id,
                  "items": [{"description": "Towel rental", "quantity": 2, "unit_price_cents": 500,
                             "tax_rate_bps": 0}]},
            headers=manager_headers,
        )
        assert created.status_code == 201
        invoice_id = created.json["id"]
        assert created.json["status"] == "DRAFT"

        finalized = client.post(f"/api/invoices/{invoice_id}/finalize", headers=manager_headers)
        assert finalized.status_code == 200
        assert finalized.json["status"] == "SENT"

        paid = client.post(
            f"/api/invoices/{invoice_id}/payments",
            json={"amount_cents": 1000, "payment_method": "UPI"},
            headers=manager_headers,
        )
        assert paid.status_code == 201
        assert paid.json["invoice"]["status"] == "PAID"

        refunded = client.post(
            f"/api/invoices/{invoice_id}/refunds",
            json={"refund_amount_cents": 1000, "refund_method": "UPI", "reason": "Damaged towel"},
            headers=manager_headers,
        )
        assert refunded.status_code == 201
        assert refunded.json["invoice"]["status"] == "REFUNDED"
        assert refunded.json["credit_note_number"].startswith("CN-")

        listing = client.get(f"/api/invoices?member_id={member_id}", headers=manager_headers)
        assert listing.json["total"] == 2

        audit = client.get(f"/api/audit?resource_type=invoice&resource_id={invoice_id}", headers=manager_headers)
        actions = [e["action"] for e in audit.json["events"]]
        assert actions == ["INVOICE_REFUNDED", "INVOICE_PAYMENT_RECORDED", "INVOICE_FINALIZED", "INVOICE_CREATED"]

    def test_enroll_rejection_payload(self, client, db_session, org_a, manager_headers, plan_a):
        make_coupon(db_session, org_a, min_purchase_cents=10_000_000)
        resp = client.post(
            "/api/members/enroll",
            json={"member": member_details(), "plan_id": plan_a.id, "start_date": "2024-01-15",
                  "coupon_code": "NEWYEAR10"},
            headers=manager_headers,
        )
        assert resp.status_code == 400
        assert resp.json == {
            "error": "Minimum purchase amount of 10000000 cents required",
            "error_kind": "BELOW_MINIMUM_PURCHASE",
            "retryable": False,
        }

    def test_enroll_bad_input(self, client, manager_headers, plan_a):
        missing = client.post("/api/members/enroll", json={"plan_id": plan_a.id}, headers=manager_headers)
        assert missing.status_code == 400

        bad_date = client.post(
            "/api/members/enroll",
            json={"member": member_details(), "plan_id": plan_a.id, "start_date": "15/01/2024"},
            headers=manager_headers,
        )
        assert bad_date.status_code == 400


# =============================================================================
# AUTH AND HEALTH ENDPOINTS
# =============================================================================


class TestAuthEndpoints:
    def test_login_returns_token_and_permissions(self, client, front_desk_a, branch_a):
        resp = client.post("/api/auth/login", json={"username": "desk_a", "password": TEST_PASSWORD})
        assert resp.status_code == 200
        assert resp.json["token"]
        assert resp.json["branch_id"] == branch_a.id
        assert "RECORD_PAYMENT" in resp.json["permissions"]
        assert "PROCESS_REFUND" not in resp.json["permissions"]

    def test_login_by_email(self, client, admin_a):
        resp = client.post("/api/auth/login", json={"email": "admin_a@example.com", "password": TEST_PASSWORD})
        assert resp.status_code == 200
        assert resp.json["branch_id"] is None

    def test_wrong_password(self, client, admin_a):
        resp = client.post("/api/auth/login", json={"username": "admin_a", "password": "nope"})
        assert resp.status_code == 401

    def test_missing_fields(self, client, db_session):
        assert client.post("/api/auth/login", json={"username": "admin_a"}).status_code == 400

    def test_logout_revokes_token(self, client, admin_a):
        token = get_auth_token(client, "admin_a")
        headers = auth_headers(token)

        assert client.get("/api/auth/me", headers=headers).status_code == 200
        assert client.post("/api/auth/logout", headers=headers).status_code == 200
        assert client.get("/api/auth/me", headers=headers).status_code == 401

    def test_health(self, client, db_session):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json["status"] == "healthy"
        assert resp.json["checks"]["database"]["status"] == "healthy"
