"""
Multi-Tenant Service: Tenant Context and Scoping Helpers

WHY: Centralize tenant validation logic for reuse across services and routes.
Every core operation receives a resolved TenantContext and every query that
touches tenant data must be narrowed by it.

SECURITY INVARIANTS:
1. Every authenticated request has g.org_id set
2. Branch IDs from client input must be validated against g.org_id
3. Branch-owned rows (members, invoices) filter by org and, for
   branch-pinned callers, by branch
4. Catalog rows (plans, coupons) filter by org and match the caller's
   branch or are tenant-wide (branch_id IS NULL)

USAGE:
    from gymdesk.services.tenant_service import current_tenant_context, scope_branch_owned

    ctx = current_tenant_context()
    q = scope_branch_owned(db.session.query(Member), Member, ctx)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from flask import g
from ..extensions import db
from ..models import Branch

logger = logging.getLogger(__name__)


class TenantAccessError(Exception):
    """Raised when cross-tenant access is attempted."""
    pass


@dataclass(frozen=True)
class TenantContext:
    """
    Resolved caller context handed to every core operation.

    branch_id=None means the caller is tenant-wide staff.
    user_id=None means a system caller (e.g., the payment webhook).
    """
    org_id: int
    branch_id: int | None = None
    user_id: int | None = None


def get_current_org_id() -> int:
    """
    Get current tenant's org_id from Flask g context.

    SECURITY: Raises TenantAccessError if org_id not set.
    This should never happen after @require_auth, but is a safety check.
    """
    if not hasattr(g, 'org_id') or g.org_id is None:
        raise TenantAccessError("Tenant context not established")
    return g.org_id


def get_current_branch_id() -> int | None:
    """None for tenant-wide users who aren't pinned to a branch."""
    return getattr(g, 'branch_id', None)


def current_tenant_context() -> TenantContext:
    user = getattr(g, 'current_user', None)
    return TenantContext(
        org_id=get_current_org_id(),
        branch_id=get_current_branch_id(),
        user_id=user.id if user else None,
    )


def scope_branch_owned(query, model, ctx: TenantContext):
    """Narrow a query over branch-owned rows to the caller's scope."""
    query = query.filter(model.org_id == ctx.org_id)
    if ctx.branch_id is not None:
        query = query.filter(model.branch_id == ctx.branch_id)
    return query


def scope_catalog(query, model, ctx: TenantContext):
    """Narrow a query over catalog rows to branch-specific or tenant-wide entries."""
    query = query.filter(model.org_id == ctx.org_id)
    if ctx.branch_id is not None:
        query = query.filter((model.branch_id == ctx.branch_id) | (model.branch_id.is_(None)))
    return query


def require_branch_in_org(branch_id: int, org_id: int) -> Branch:
    """
    Validate that a branch belongs to the specified organization.

    SECURITY: Core tenant isolation check. Call this before any operation
    that uses a branch_id from client input.

    Raises:
        TenantAccessError if branch doesn't exist or belongs to different org
    """
    branch = db.session.get(Branch, branch_id)

    if not branch:
        logger.warning("Branch %s not found (org %s)", branch_id, org_id)
        raise TenantAccessError("Branch not found")

    if branch.org_id != org_id:
        # CRITICAL: Cross-tenant access attempt
        logger.warning(
            "Cross-tenant access attempt: branch %s belongs to org %s, not %s",
            branch_id, branch.org_id, org_id,
        )
        raise TenantAccessError("Branch not found")  # Don't reveal it exists in another org

    return branch


def get_org_branches(org_id: int, active_only: bool = True) -> list[Branch]:
    query = db.session.query(Branch).filter_by(org_id=org_id)
    if active_only:
        query = query.filter_by(is_active=True)
    return query.order_by(Branch.name).all()
