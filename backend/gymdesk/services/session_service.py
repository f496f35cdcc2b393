# Overview: Service-layer operations for session; bearer tokens carrying tenant context.

"""
Staff Sessions

Every API call after login carries a bearer token. The token row pins the
caller's org_id and branch_id at login time, so request handling never has
to re-derive tenant scope from the user record.

SECURITY FEATURES:
- 32 random bytes per token, only the SHA-256 digest is persisted
- Absolute lifetime and idle timeout, both configurable
  (SESSION_ABSOLUTE_TIMEOUT_HOURS, SESSION_IDLE_TIMEOUT_MINUTES)
- Deactivating a user or an organization kills its live sessions on next use
"""

import secrets
import hashlib
from dataclasses import dataclass
from datetime import timedelta

from flask import current_app

from ..extensions import db
from ..models import SessionToken, User
from gymdesk.time_utils import utcnow


DEFAULT_ABSOLUTE_TIMEOUT_HOURS = 24
DEFAULT_IDLE_TIMEOUT_MINUTES = 120


@dataclass
class SessionContext:
    """What the auth decorator stores on flask.g."""
    user: User
    session: SessionToken
    org_id: int
    branch_id: int | None


def _absolute_timeout() -> timedelta:
    return timedelta(hours=current_app.config.get("SESSION_ABSOLUTE_TIMEOUT_HOURS", DEFAULT_ABSOLUTE_TIMEOUT_HOURS))


def _idle_timeout() -> timedelta:
    return timedelta(minutes=current_app.config.get("SESSION_IDLE_TIMEOUT_MINUTES", DEFAULT_IDLE_TIMEOUT_MINUTES))


def hash_token(token: str) -> str:
    # Tokens are high-entropy; a fast digest is enough
    return hashlib.sha256(token.encode('utf-8')).hexdigest()


def _find_live(token: str) -> SessionToken | None:
    return db.session.query(SessionToken).filter_by(
        token_hash=hash_token(token),
        is_revoked=False,
    ).first()


def create_session(
    user_id: int,
    user_agent: str | None = None,
    ip_address: str | None = None
) -> tuple[SessionToken, str]:
    """
    Open a session for an authenticated user.

    Returns (session_record, plaintext_token). The plaintext is handed to the
    client once and never stored.
    """
    user = db.session.get(User, user_id)
    if not user:
        raise ValueError("User not found")
    if not user.organization or not user.organization.is_active:
        raise ValueError("Organization is not active")

    token = secrets.token_hex(32)
    now = utcnow()

    session = SessionToken(
        user_id=user.id,
        org_id=user.org_id,
        branch_id=user.branch_id,
        token_hash=hash_token(token),
        created_at=now,
        last_used_at=now,
        expires_at=now + _absolute_timeout(),
        user_agent=(user_agent or "")[:512] or None,
        ip_address=ip_address,
        is_revoked=False,
    )
    db.session.add(session)
    db.session.commit()

    return session, token


def _revoke(session: SessionToken, reason: str) -> None:
    session.is_revoked = True
    session.revoked_at = utcnow()
    session.revoked_reason = reason
    db.session.commit()


def validate_session(token: str) -> SessionContext | None:
    """
    Resolve a bearer token to its SessionContext, or None.

    Expired tokens are left alone; idle tokens and tokens whose user or
    organization was deactivated are revoked with a reason.
    """
    session = _find_live(token)
    if not session:
        return None

    now = utcnow()
    if session.expires_at < now:
        return None
    if now - session.last_used_at > _idle_timeout():
        _revoke(session, "Idle timeout")
        return None

    user = session.user
    if not user or not user.is_active:
        _revoke(session, "User account deactivated")
        return None
    if not user.organization or not user.organization.is_active:
        _revoke(session, "Organization deactivated")
        return None

    session.last_used_at = now
    db.session.commit()

    return SessionContext(user=user, session=session, org_id=session.org_id, branch_id=session.branch_id)


def revoke_session(token: str, reason: str = "User logout") -> bool:
    """Returns True if session was revoked, False if not found."""
    session = _find_live(token)
    if not session:
        return False
    _revoke(session, reason)
    return True
