from __future__ import annotations

from ..extensions import db
from gymdesk.time_utils import to_utc_z


class AuditLog(db.Model):
    """
    Append-only audit trail of state-changing operations.

    Rows are written inside the same transaction as the change they record,
    so a rolled-back operation never leaves an audit row behind.
    """
    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("ix_audit_logs_org_resource", "org_id", "resource_type", "resource_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=True, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)

    action = db.Column(db.String(64), nullable=False, index=True)  # e.g., MEMBER_ENROLLED, INVOICE_REFUNDED
    resource_type = db.Column(db.String(64), nullable=False)  # e.g., member, invoice
    resource_id = db.Column(db.Integer, nullable=False)

    old_values = db.Column(db.JSON, nullable=True)
    new_values = db.Column(db.JSON, nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "branch_id": self.branch_id,
            "user_id": self.user_id,
            "action": self.action,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "old_values": self.old_values,
            "new_values": self.new_values,
            "occurred_at": to_utc_z(self.occurred_at),
        }
