from __future__ import annotations

from ..extensions import db
from gymdesk.time_utils import to_utc_z, to_iso_date


class Invoice(db.Model):
    """
    Member invoice.

    WHY: Single source of truth for what a member owes and has paid.

    INVARIANTS:
    - balance_cents = max(0, total_cents - paid_cents)
    - status follows paid vs total (see services.money.derive_invoice_status)
    - paid_cents, balance_cents and status only change through
      services.reconciliation_service

    LIFECYCLE: DRAFT -> SENT -> PARTIALLY_PAID / PAID -> REFUNDED (partial refunds go back to PARTIALLY_PAID)
    Enrollment invoices are born PAID.
    """
    __tablename__ = "invoices"
    __table_args__ = (
        db.UniqueConstraint("org_id", "invoice_number", name="uq_invoices_org_number"),
        db.Index("ix_invoices_org_status", "org_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=True, index=True)

    invoice_number = db.Column(db.String(32), nullable=False)

    member_id = db.Column(db.Integer, db.ForeignKey("members.id"), nullable=True, index=True)
    membership_id = db.Column(db.Integer, db.ForeignKey("member_memberships.id"), nullable=True, index=True)

    # Snapshot of the billed party at issue time
    customer_name = db.Column(db.String(255), nullable=False)
    customer_email = db.Column(db.String(255), nullable=True)
    customer_phone = db.Column(db.String(32), nullable=True)

    issue_date = db.Column(db.Date, nullable=False)
    due_date = db.Column(db.Date, nullable=False)

    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)
    paid_cents = db.Column(db.Integer, nullable=False, default=0)
    balance_cents = db.Column(db.Integer, nullable=False, default=0)

    status = db.Column(db.String(16), nullable=False, default="DRAFT", index=True)
    notes = db.Column(db.Text, nullable=True)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    member = db.relationship("Member", backref=db.backref("invoices", lazy=True, order_by="Invoice.id.desc()"))
    membership = db.relationship("MemberMembership")
    items = db.relationship("InvoiceItem", backref=db.backref("invoice", lazy=True), lazy=True, order_by="InvoiceItem.id")
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, include_children: bool = False) -> dict:
        data = {
            "id": self.id,
            "org_id": self.org_id,
            "branch_id": self.branch_id,
            "invoice_number": self.invoice_number,
            "member_id": self.member_id,
            "membership_id": self.membership_id,
            "customer_name": self.customer_name,
            "customer_email": self.customer_email,
            "customer_phone": self.customer_phone,
            "issue_date": to_iso_date(self.issue_date),
            "due_date": to_iso_date(self.due_date),
            "subtotal_cents": self.subtotal_cents,
            "discount_cents": self.discount_cents,
            "tax_cents": self.tax_cents,
            "total_cents": self.total_cents,
            "paid_cents": self.paid_cents,
            "balance_cents": self.balance_cents,
            "status": self.status,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_children:
            data["items"] = [i.to_dict() for i in self.items]
            data["payments"] = [p.to_dict() for p in self.payments]
            data["refunds"] = [r.to_dict() for r in self.refunds]
        return data


class InvoiceItem(db.Model):
    """Line item. total_cents = quantity * unit price, plus tax."""
    __tablename__ = "invoice_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=False, index=True)

    description = db.Column(db.String(255), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    tax_rate_bps = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "invoice_id": self.invoice_id,
            "description": self.description,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "tax_rate_bps": self.tax_rate_bps,
            "tax_cents": self.tax_cents,
            "total_cents": self.total_cents,
        }


class InvoicePayment(db.Model):
    """
    Money received against an invoice.

    Append-only. Written by the interactive payment endpoint, by enrollment
    (implicitly through paid_cents) and by the gateway webhook, always through
    the reconciler.

    PAYMENT METHODS: CASH, CARD, UPI, BANK_TRANSFER, CHEQUE, WALLET
    """
    __tablename__ = "invoice_payments"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=False, index=True)

    amount_cents = db.Column(db.Integer, nullable=False)
    payment_method = db.Column(db.String(32), nullable=False)
    status = db.Column(db.String(16), nullable=False, default="COMPLETED", index=True)  # COMPLETED, FAILED

    # Gateway references (opaque)
    gateway_order_id = db.Column(db.String(128), nullable=True)
    gateway_payment_id = db.Column(db.String(128), nullable=True, index=True)
    transaction_ref = db.Column(db.String(128), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    # Attribution: user id for staff, label for system paths ("webhook")
    processed_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    processed_by = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    invoice = db.relationship("Invoice", backref=db.backref("payments", lazy=True, order_by="InvoicePayment.id"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "invoice_id": self.invoice_id,
            "amount_cents": self.amount_cents,
            "payment_method": self.payment_method,
            "status": self.status,
            "gateway_order_id": self.gateway_order_id,
            "gateway_payment_id": self.gateway_payment_id,
            "transaction_ref": self.transaction_ref,
            "notes": self.notes,
            "processed_by_user_id": self.processed_by_user_id,
            "processed_by": self.processed_by,
            "created_at": to_utc_z(self.created_at),
        }


class InvoiceRefund(db.Model):
    """
    Money returned against an invoice; credit_note_number is the receipt.

    Append-only.
    """
    __tablename__ = "invoice_refunds"
    __table_args__ = (
        db.UniqueConstraint("org_id", "credit_note_number", name="uq_invoice_refunds_org_credit_note"),
        db.UniqueConstraint("gateway_refund_id", name="uq_invoice_refunds_gateway_refund_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=False, index=True)

    credit_note_number = db.Column(db.String(32), nullable=False)
    refund_cents = db.Column(db.Integer, nullable=False)
    refund_method = db.Column(db.String(32), nullable=False)
    reason = db.Column(db.String(255), nullable=False)
    gateway_refund_id = db.Column(db.String(128), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    processed_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    invoice = db.relationship("Invoice", backref=db.backref("refunds", lazy=True, order_by="InvoiceRefund.id"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "invoice_id": self.invoice_id,
            "credit_note_number": self.credit_note_number,
            "refund_cents": self.refund_cents,
            "refund_method": self.refund_method,
            "reason": self.reason,
            "gateway_refund_id": self.gateway_refund_id,
            "notes": self.notes,
            "processed_by_user_id": self.processed_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }


class PaymentGatewayLog(db.Model):
    """
    Raw record of every gateway webhook delivery that changed (or tried to change) state.

    (invoice_id, gateway_payment_id, status) is unique: a redelivered event can
    never be applied twice, even if the invoice moved on in between.
    """
    __tablename__ = "payment_gateway_logs"
    __table_args__ = (
        db.UniqueConstraint("invoice_id", "gateway_payment_id", "status", name="uq_gateway_logs_invoice_payment_status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=False, index=True)

    gateway = db.Column(db.String(32), nullable=False)
    gateway_payment_id = db.Column(db.String(128), nullable=False, index=True)
    amount_cents = db.Column(db.Integer, nullable=False)
    payment_method = db.Column(db.String(32), nullable=True)
    status = db.Column(db.String(16), nullable=False)  # SUCCESS, FAILED
    raw_status = db.Column(db.String(32), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "invoice_id": self.invoice_id,
            "gateway": self.gateway,
            "gateway_payment_id": self.gateway_payment_id,
            "amount_cents": self.amount_cents,
            "payment_method": self.payment_method,
            "status": self.status,
            "raw_status": self.raw_status,
            "created_at": to_utc_z(self.created_at),
        }
