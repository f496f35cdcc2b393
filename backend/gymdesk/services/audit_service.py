# Overview: Service-layer operations for the audit log; append-only, transaction-bound.

"""
Audit Log Invariants

- Append-only: no updates or deletes of existing rows.
- Rows are added inside the same DB transaction as the change they record;
  append_audit_event flushes but never commits.
- old_values / new_values hold small JSON snapshots, not full entities.
"""

from __future__ import annotations

from ..extensions import db
from ..models import AuditLog
from .tenant_service import TenantContext


def append_audit_event(
    ctx: TenantContext,
    *,
    action: str,
    resource_type: str,
    resource_id: int,
    old_values: dict | None = None,
    new_values: dict | None = None,
    branch_id: int | None = None,
) -> AuditLog:
    entry = AuditLog(
        org_id=ctx.org_id,
        branch_id=branch_id if branch_id is not None else ctx.branch_id,
        user_id=ctx.user_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        old_values=old_values,
        new_values=new_values,
    )
    db.session.add(entry)
    db.session.flush()  # ensures entry.id is assigned without committing
    return entry


def list_audit_events(
    ctx: TenantContext,
    *,
    resource_type: str | None = None,
    resource_id: int | None = None,
    action: str | None = None,
    limit: int = 100,
) -> list[dict]:
    query = db.session.query(AuditLog).filter(AuditLog.org_id == ctx.org_id)
    if ctx.branch_id is not None:
        query = query.filter(AuditLog.branch_id == ctx.branch_id)
    if resource_type:
        query = query.filter(AuditLog.resource_type == resource_type)
    if resource_id is not None:
        query = query.filter(AuditLog.resource_id == resource_id)
    if action:
        query = query.filter(AuditLog.action == action)

    limit = max(1, min(limit, 500))
    return [e.to_dict() for e in query.order_by(AuditLog.id.desc()).limit(limit).all()]
