# Overview: Pytest coverage for payment-gateway webhooks (idempotency and signatures).

"""
Payment Webhook Tests

Gateways redeliver. Whatever the number of deliveries, each gateway payment
and each gateway refund is applied once, and a PAID invoice never gets a
second payment row from a replayed "paid" event.
"""

import json
import time

import pytest

from gymdesk.extensions import db
from gymdesk.models import AuditLog, Invoice, InvoicePayment, InvoiceRefund, PaymentGatewayLog
from gymdesk.routes.webhooks import SIGNATURE_HEADER, compute_signature, verify_signature
from gymdesk.services import enrollment_service, invoice_service, reconciliation_service
from gymdesk.services.errors import INVALID_STATE, NOT_FOUND

from conftest import make_member, member_details, START_DATE


WEBHOOK_URL = "/api/webhooks/payments"
SECRET = "whsec_test_secret"


@pytest.fixture
def open_invoice(db_session, org_a, branch_a, ctx_a):
    """SENT invoice for 1000 cents."""
    member = make_member(db_session, org_a, branch=branch_a)
    created = invoice_service.create_invoice(
        ctx_a, member.id, [{"description": "PT package", "unit_price_cents": 1000, "tax_rate_bps": 0}]
    )
    return invoice_service.finalize_invoice(ctx_a, created.value["id"]).value


@pytest.fixture
def other_invoice(db_session, org_a, branch_a, ctx_a):
    """SENT invoice for 500 cents, for a second member."""
    member = make_member(db_session, org_a, branch=branch_a, suffix="2")
    created = invoice_service.create_invoice(
        ctx_a, member.id, [{"description": "Diet consult", "unit_price_cents": 500, "tax_rate_bps": 0}]
    )
    return invoice_service.finalize_invoice(ctx_a, created.value["id"]).value


# =============================================================================
# SERVICE
# =============================================================================


class TestHandlePaymentWebhook:
    def test_first_delivery_applies_payment(self, db_session, open_invoice):
        result = reconciliation_service.handle_payment_webhook(
            open_invoice["id"], "pay_001", "PAID", 1000, "CARD"
        )

        assert result.ok, result.message
        assert result.value["processed"] is True
        assert result.value["invoice"]["status"] == "PAID"
        assert result.value["invoice"]["balance_cents"] == 0

        payment = db.session.query(InvoicePayment).one()
        assert payment.gateway_payment_id == "pay_001"
        assert payment.processed_by == "webhook"
        assert payment.processed_by_user_id is None

        log = db.session.query(PaymentGatewayLog).one()
        assert log.status == "SUCCESS"
        assert log.gateway == "STRIPE"

    def test_replay_is_a_no_op(self, db_session, open_invoice):
        first = reconciliation_service.handle_payment_webhook(open_invoice["id"], "pay_001", "PAID", 1000, "CARD")
        second = reconciliation_service.handle_payment_webhook(open_invoice["id"], "pay_001", "PAID", 1000, "CARD")

        assert first.value["processed"] is True
        assert second.ok
        assert second.value["processed"] is False
        assert second.value["invoice"]["paid_cents"] == 1000
        assert db.session.query(InvoicePayment).count() == 1
        assert db.session.query(PaymentGatewayLog).count() == 1
        assert db.session.query(AuditLog).filter_by(action="INVOICE_WEBHOOK_PAYMENT").count() == 1

    def test_paid_event_for_already_paid_invoice(self, db_session, org_a, ctx_a, plan_a):
        enrolled = enrollment_service.enroll(ctx_a, member_details(), plan_a.id, START_DATE)
        invoice_id = enrolled.value["invoice"]["id"]

        result = reconciliation_service.handle_payment_webhook(invoice_id, "pay_999", "paid", 300000, "UPI")

        assert result.ok
        assert result.value["processed"] is False
        assert db.session.query(InvoicePayment).count() == 0
        assert db.session.get(Invoice, invoice_id).paid_cents == 300000

    def test_replayed_partial_payment_applied_once(self, db_session, open_invoice):
        reconciliation_service.handle_payment_webhook(open_invoice["id"], "pay_001", "PAID", 400, "CARD")
        replay = reconciliation_service.handle_payment_webhook(open_invoice["id"], "pay_001", "PAID", 400, "CARD")
        final = reconciliation_service.handle_payment_webhook(open_invoice["id"], "pay_002", "PAID", 600, "CARD")

        assert replay.value["processed"] is False
        assert final.value["processed"] is True
        invoice = db.session.get(Invoice, open_invoice["id"])
        assert invoice.paid_cents == 1000
        assert invoice.status == "PAID"
        assert db.session.query(InvoicePayment).count() == 2

    def test_failed_status_logged_without_touching_invoice(self, db_session, open_invoice):
        result = reconciliation_service.handle_payment_webhook(
            open_invoice["id"], "pay_001", "FAILED", 1000, "CARD"
        )

        assert result.ok
        assert result.value["processed"] is False
        assert result.value["invoice"]["status"] == "SENT"
        assert result.value["invoice"]["paid_cents"] == 0
        assert db.session.query(InvoicePayment).count() == 0

        log = db.session.query(PaymentGatewayLog).one()
        assert log.status == "FAILED"
        assert log.raw_status == "FAILED"

    def test_failure_then_success_for_same_payment(self, db_session, open_invoice):
        reconciliation_service.handle_payment_webhook(open_invoice["id"], "pay_001", "FAILED", 1000, "CARD")
        result = reconciliation_service.handle_payment_webhook(open_invoice["id"], "pay_001", "PAID", 1000, "CARD")

        assert result.value["processed"] is True
        assert db.session.query(PaymentGatewayLog).count() == 2

    def test_missing_method_defaults_to_card(self, db_session, open_invoice):
        result = reconciliation_service.handle_payment_webhook(open_invoice["id"], "pay_001", "PAID", 1000, None)
        assert result.ok, result.message
        assert db.session.query(InvoicePayment).one().payment_method == "CARD"

    def test_unknown_invoice(self, db_session, org_a):
        result = reconciliation_service.handle_payment_webhook(99999, "pay_001", "PAID", 1000, "CARD")
        assert result.error_kind == NOT_FOUND

    def test_audit_row_uses_invoice_tenant(self, db_session, org_a, branch_a, open_invoice):
        reconciliation_service.handle_payment_webhook(open_invoice["id"], "pay_001", "PAID", 1000, "CARD")

        entry = db.session.query(AuditLog).filter_by(action="INVOICE_WEBHOOK_PAYMENT").one()
        assert entry.org_id == org_a.id
        assert entry.branch_id == branch_a.id
        assert entry.user_id is None

    def test_same_gateway_id_on_another_invoice_still_applies(self, db_session, open_invoice, other_invoice):
        reconciliation_service.handle_payment_webhook(open_invoice["id"], "pay_001", "PAID", 1000, "CARD")
        result = reconciliation_service.handle_payment_webhook(other_invoice["id"], "pay_001", "PAID", 500, "CARD")

        assert result.ok, result.message
        assert result.value["processed"] is True
        assert result.value["invoice"]["status"] == "PAID"
        assert db.session.query(PaymentGatewayLog).count() == 2

        replay = reconciliation_service.handle_payment_webhook(other_invoice["id"], "pay_001", "PAID", 500, "CARD")
        assert replay.value["processed"] is False
        assert db.session.query(InvoicePayment).count() == 2


class TestHandleRefundWebhook:
    @pytest.fixture
    def paid_invoice(self, db_session, open_invoice):
        result = reconciliation_service.handle_payment_webhook(open_invoice["id"], "pay_001", "PAID", 1000, "UPI")
        assert result.ok, result.message
        return result.value["invoice"]

    def test_first_delivery_refunds_and_issues_credit_note(self, db_session, org_a, paid_invoice):
        result = reconciliation_service.handle_refund_webhook("pay_001", "re_001", 400)

        assert result.ok, result.message
        assert result.value["processed"] is True
        assert result.value["credit_note_number"].startswith("CN-")
        assert result.value["invoice"]["paid_cents"] == 600
        assert result.value["invoice"]["balance_cents"] == 400
        assert result.value["invoice"]["status"] == "PARTIALLY_PAID"

        refund = db.session.query(InvoiceRefund).one()
        assert refund.gateway_refund_id == "re_001"
        assert refund.refund_method == "UPI"
        assert refund.reason == "Gateway refund"
        assert refund.processed_by_user_id is None

        entry = db.session.query(AuditLog).filter_by(action="INVOICE_WEBHOOK_REFUND").one()
        assert entry.org_id == org_a.id
        assert entry.user_id is None

    def test_replay_is_a_no_op(self, db_session, paid_invoice):
        first = reconciliation_service.handle_refund_webhook("pay_001", "re_001", 1000)
        second = reconciliation_service.handle_refund_webhook("pay_001", "re_001", 1000)

        assert first.value["processed"] is True
        assert first.value["invoice"]["status"] == "REFUNDED"
        assert second.ok, second.message
        assert second.value["processed"] is False
        assert second.value["credit_note_number"] is None
        assert second.value["invoice"]["paid_cents"] == 0
        assert db.session.query(InvoiceRefund).count() == 1
        assert db.session.query(AuditLog).filter_by(action="INVOICE_WEBHOOK_REFUND").count() == 1

    def test_two_gateway_refunds_return_full_payment(self, db_session, paid_invoice):
        reconciliation_service.handle_refund_webhook("pay_001", "re_001", 300)
        result = reconciliation_service.handle_refund_webhook("pay_001", "re_002", 700)

        assert result.value["processed"] is True
        invoice = db.session.get(Invoice, paid_invoice["id"])
        assert invoice.paid_cents == 0
        assert invoice.status == "REFUNDED"
        assert db.session.query(InvoiceRefund).count() == 2

    def test_refund_exceeding_paid_rejected(self, db_session, paid_invoice):
        result = reconciliation_service.handle_refund_webhook("pay_001", "re_001", 1001)

        assert result.error_kind == INVALID_STATE
        assert db.session.query(InvoiceRefund).count() == 0
        assert db.session.get(Invoice, paid_invoice["id"]).paid_cents == 1000

    def test_unknown_payment(self, db_session, paid_invoice):
        result = reconciliation_service.handle_refund_webhook("pay_missing", "re_001", 100)
        assert result.error_kind == NOT_FOUND

    def test_invoice_id_narrows_shared_payment_id(self, db_session, open_invoice, other_invoice):
        reconciliation_service.handle_payment_webhook(open_invoice["id"], "pay_001", "PAID", 1000, "CARD")
        reconciliation_service.handle_payment_webhook(other_invoice["id"], "pay_001", "PAID", 500, "CARD")

        result = reconciliation_service.handle_refund_webhook("pay_001", "re_001", 500, invoice_id=other_invoice["id"])

        assert result.value["invoice"]["id"] == other_invoice["id"]
        assert result.value["invoice"]["status"] == "REFUNDED"
        assert db.session.get(Invoice, open_invoice["id"]).paid_cents == 1000


# =============================================================================
# ROUTE
# =============================================================================


def _payload(invoice_id, payment_id="pay_001", status="PAID", amount=1000):
    return {
        "invoice_id": invoice_id,
        "payment_id": payment_id,
        "status": status,
        "amount_cents": amount,
        "method": "CARD",
    }


class TestPaymentWebhookRoute:
    def test_delivery_and_redelivery(self, client, db_session, open_invoice):
        first = client.post(WEBHOOK_URL, json=_payload(open_invoice["id"]))
        second = client.post(WEBHOOK_URL, json=_payload(open_invoice["id"]))

        assert first.status_code == 200
        assert first.json["processed"] is True
        assert second.status_code == 200
        assert second.json["processed"] is False
        assert db.session.query(InvoicePayment).count() == 1

    def test_missing_fields(self, client, db_session, open_invoice):
        resp = client.post(WEBHOOK_URL, json={"invoice_id": open_invoice["id"], "status": "PAID"})
        assert resp.status_code == 400
        assert "payment_id" in resp.json["error"]

    def test_unknown_invoice(self, client, db_session):
        resp = client.post(WEBHOOK_URL, json=_payload(99999))
        assert resp.status_code == 404
        assert resp.json["error_kind"] == "NOT_FOUND"

    def test_refund_event_delivery_and_redelivery(self, client, db_session, open_invoice):
        client.post(WEBHOOK_URL, json=_payload(open_invoice["id"]))
        refund = {"event": "refund", "payment_id": "pay_001", "refund_id": "re_001", "amount_cents": 1000}

        first = client.post(WEBHOOK_URL, json=refund)
        second = client.post(WEBHOOK_URL, json=refund)

        assert first.status_code == 200
        assert first.json["processed"] is True
        assert first.json["invoice"]["status"] == "REFUNDED"
        assert second.status_code == 200
        assert second.json["processed"] is False
        assert db.session.query(InvoiceRefund).count() == 1

    def test_refund_event_missing_fields(self, client, db_session, open_invoice):
        resp = client.post(WEBHOOK_URL, json={"event": "refund", "payment_id": "pay_001", "amount_cents": 100})
        assert resp.status_code == 400
        assert "refund_id" in resp.json["error"]

    def test_refund_event_on_unpaid_invoice(self, client, db_session, open_invoice):
        client.post(WEBHOOK_URL, json=_payload(open_invoice["id"], status="FAILED"))
        resp = client.post(
            WEBHOOK_URL, json={"event": "refund", "payment_id": "pay_001", "refund_id": "re_001", "amount_cents": 100}
        )
        assert resp.status_code == 404

    def test_unsupported_event(self, client, db_session, open_invoice):
        resp = client.post(WEBHOOK_URL, json={"event": "dispute", "payment_id": "pay_001"})
        assert resp.status_code == 400

    def test_signature_required_when_secret_configured(self, app, client, db_session, open_invoice, monkeypatch):
        monkeypatch.setitem(app.config, "PAYMENT_WEBHOOK_SECRET", SECRET)
        body = json.dumps(_payload(open_invoice["id"])).encode("utf-8")

        unsigned = client.post(WEBHOOK_URL, data=body, content_type="application/json")
        assert unsigned.status_code == 401

        forged = client.post(
            WEBHOOK_URL, data=body, content_type="application/json",
            headers={SIGNATURE_HEADER: f"t={int(time.time())},v1={'0' * 64}"},
        )
        assert forged.status_code == 401
        assert db.session.query(InvoicePayment).count() == 0

        timestamp = str(int(time.time()))
        signed = client.post(
            WEBHOOK_URL, data=body, content_type="application/json",
            headers={SIGNATURE_HEADER: f"t={timestamp},v1={compute_signature(SECRET, timestamp, body)}"},
        )
        assert signed.status_code == 200
        assert signed.json["processed"] is True


class TestVerifySignature:
    def test_valid(self):
        body = b'{"invoice_id": 1}'
        sig = compute_signature(SECRET, "1700000000", body)
        assert verify_signature(SECRET, f"t=1700000000,v1={sig}", body, now=1700000100)

    def test_tampered_body(self):
        sig = compute_signature(SECRET, "1700000000", b'{"amount_cents": 100}')
        assert not verify_signature(SECRET, f"t=1700000000,v1={sig}", b'{"amount_cents": 100000}', now=1700000000)

    def test_stale_timestamp(self):
        body = b"{}"
        sig = compute_signature(SECRET, "1700000000", body)
        assert not verify_signature(SECRET, f"t=1700000000,v1={sig}", body, now=1700000301)

    def test_wrong_secret(self):
        body = b"{}"
        sig = compute_signature("other", "1700000000", body)
        assert not verify_signature(SECRET, f"t=1700000000,v1={sig}", body, now=1700000000)

    @pytest.mark.parametrize("header", [None, "", "v1=abc", "t=1700000000", "t=abc,v1=abc"])
    def test_malformed_header(self, header):
        assert not verify_signature(SECRET, header, b"{}", now=1700000000)
