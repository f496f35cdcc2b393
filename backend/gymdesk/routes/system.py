# Overview: Unauthenticated health endpoint for load balancers and deployment checks.

# backend/gymdesk/routes/system.py
"""
System health endpoint.

Each check runs one cheap query and reports its own latency, so a slow
table shows up before it times out the whole probe.
"""

import time
from flask import Blueprint, current_app
from sqlalchemy import func

from ..extensions import db
from ..models import Organization, Member, Invoice, SessionToken
from gymdesk.services.money import INVOICE_STATUS_PAID, INVOICE_STATUS_REFUNDED
from gymdesk.time_utils import utcnow

system_bp = Blueprint("system", __name__, url_prefix="/api")


def _timed_check(name: str, probe) -> dict:
    started = time.perf_counter()
    try:
        details = probe()
        status = {"status": "healthy", "details": details}
    except Exception:
        current_app.logger.exception("Health check %s failed", name)
        status = {"status": "unhealthy", "error": f"{name} check failed"}
    status["latency_ms"] = round((time.perf_counter() - started) * 1000, 2)
    return status


def _database_probe() -> dict:
    return {
        "organizations": db.session.query(func.count(Organization.id)).scalar(),
        "members": db.session.query(func.count(Member.id)).scalar(),
    }


def _billing_probe() -> dict:
    open_invoices = db.session.query(func.count(Invoice.id)).filter(
        Invoice.status.notin_([INVOICE_STATUS_PAID, INVOICE_STATUS_REFUNDED])
    ).scalar()
    return {"open_invoices": open_invoices}


def _session_probe() -> dict:
    now = utcnow()
    live = db.session.query(func.count(SessionToken.id)).filter(
        SessionToken.is_revoked.is_(False),
        SessionToken.expires_at >= now,
    ).scalar()
    return {"active_sessions": live}


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: all checks healthy
    - 503: at least one check unhealthy
    """
    checks = {
        "database": _timed_check("database", _database_probe),
        "billing": _timed_check("billing", _billing_probe),
        "session_service": _timed_check("session_service", _session_probe),
    }
    healthy = all(c["status"] == "healthy" for c in checks.values())

    return {
        "status": "healthy" if healthy else "unhealthy",
        "timestamp": utcnow().isoformat() + "Z",
        "checks": checks,
    }, (200 if healthy else 503)
