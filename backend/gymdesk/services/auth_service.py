# Overview: Service-layer operations for auth; staff accounts and password verification.

"""
Authentication Service with Multi-Tenant Support

WHY: Every payment, refund and enrollment must be attributable to a staff
member. Uses bcrypt for password hashing and validates password strength.

MULTI-TENANT: Users belong to exactly one organization (org_id) and
optionally one branch. Username/email uniqueness is tenant-scoped.

SECURITY NOTES:
- Passwords hashed with bcrypt (cost factor from BCRYPT_ROUNDS, default 12)
- Minimum 8 characters, upper, lower, digit and special character
- Session tokens managed separately (see session_service.py)
"""

import bcrypt
import re

from flask import current_app

from ..extensions import db
from ..models import User, Organization
from .tenant_service import require_branch_in_org, TenantAccessError
from gymdesk.time_utils import utcnow


VALID_ROLES = ["admin", "manager", "front_desk"]


class PasswordValidationError(Exception):
    """Raised when password doesn't meet strength requirements."""
    pass


def validate_password_strength(password: str) -> None:
    """
    Validate password meets strength requirements.

    Raises PasswordValidationError if requirements not met.
    """
    if len(password) < 8:
        raise PasswordValidationError("Password must be at least 8 characters long")

    if not re.search(r'[A-Z]', password):
        raise PasswordValidationError("Password must contain at least one uppercase letter")

    if not re.search(r'[a-z]', password):
        raise PasswordValidationError("Password must contain at least one lowercase letter")

    if not re.search(r'\d', password):
        raise PasswordValidationError("Password must contain at least one digit")

    if not re.search(r"[!@#$%^&*(),.'\":{}|<>]", password):
        raise PasswordValidationError("Password must contain at least one special character")


def hash_password(password: str) -> str:
    """Validate strength, then bcrypt-hash the password."""
    validate_password_strength(password)
    salt = bcrypt.gensalt(rounds=current_app.config.get("BCRYPT_ROUNDS", 12))
    hashed = bcrypt.hashpw(password.encode('utf-8'), salt)
    return hashed.decode('utf-8')  # Store as string in database


def verify_password(password: str, password_hash: str) -> bool:
    """
    Verify password against bcrypt hash.

    bcrypt.checkpw() is timing-safe. A malformed stored hash counts as a mismatch.
    """
    try:
        return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))
    except ValueError:
        return False


def create_user(
    username: str,
    email: str,
    password: str,
    org_id: int,
    branch_id: int | None = None,
    role: str = "front_desk",
) -> User:
    """
    Create new user with bcrypt password hashing.

    Raises:
        ValueError: If org doesn't exist, user exists, role is unknown, or
            branch doesn't belong to org
        PasswordValidationError: If password doesn't meet requirements
    """
    org = db.session.get(Organization, org_id)
    if not org:
        raise ValueError("Organization not found")
    if not org.is_active:
        raise ValueError("Organization is not active")

    if role not in VALID_ROLES:
        raise ValueError(f"Invalid role: {role}. Must be one of {VALID_ROLES}")

    # MULTI-TENANT: Check uniqueness within organization
    existing = db.session.query(User).filter(
        User.org_id == org_id,
        db.or_(User.username == username, User.email == email)
    ).first()

    if existing:
        raise ValueError("Username or email already exists in this organization")

    if branch_id is not None:
        try:
            require_branch_in_org(branch_id, org_id)
        except TenantAccessError as e:
            raise ValueError(str(e)) from e

    user = User(
        org_id=org_id,
        branch_id=branch_id,
        username=username,
        email=email,
        password_hash=hash_password(password),
        role=role,
    )

    db.session.add(user)
    db.session.commit()
    return user


def authenticate(username: str, password: str, org_id: int | None = None) -> User | None:
    """
    Authenticate user with username (or email) and password.

    Returns the User and stamps last_login_at when credentials are valid
    and the organization is active; None otherwise.
    """
    query = db.session.query(User).filter(
        db.or_(User.username == username, User.email == username),
        User.is_active.is_(True),
    )

    # MULTI-TENANT: Scope to organization if provided
    if org_id is not None:
        query = query.filter(User.org_id == org_id)

    user = query.first()

    if not user:
        return None

    org = db.session.get(Organization, user.org_id)
    if not org or not org.is_active:
        return None

    if verify_password(password, user.password_hash):
        user.last_login_at = utcnow()
        db.session.commit()
        return user

    return None
