# Overview: Request and permission decorators for API routes.

import logging
from functools import wraps
from flask import request, jsonify, g

from .permissions import user_has_permission
from .services import session_service

logger = logging.getLogger(__name__)


def _is_authenticated() -> bool:
    return hasattr(g, 'current_user') and hasattr(g, 'org_id')


def require_auth(f):
    """
    Require authentication and establish tenant context.

    MULTI-TENANT: Sets the following Flask g attributes:
    - g.current_user: The authenticated User object
    - g.org_id: The organization ID (tenant context) - REQUIRED
    - g.branch_id: The user's branch ID (None for tenant-wide users)
    - g.session_context: The full SessionContext object

    SECURITY: Returns 401 if:
    - No Authorization header
    - Invalid or expired token
    - User account deactivated
    - Organization deactivated
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get("Authorization")

        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify({"error": "Authentication required"}), 401

        token = auth_header.split(" ", 1)[1]

        context = session_service.validate_session(token)

        if not context:
            return jsonify({"error": "Invalid or expired token"}), 401

        if not context.org_id:
            logger.warning("Session for user %s missing org_id", context.user.id)
            return jsonify({"error": "Invalid session: missing tenant context"}), 401

        g.current_user = context.user
        g.org_id = context.org_id
        g.branch_id = context.branch_id
        g.session_context = context

        return f(*args, **kwargs)

    return decorated_function


def require_permission(permission_code: str):
    """
    Require a specific permission, resolved from the user's role.

    Denials are logged with tenant context.
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            # Ensure @require_auth was called first
            if not _is_authenticated():
                return jsonify({"error": "Authentication required"}), 401

            user = g.current_user
            if not user_has_permission(user, permission_code):
                logger.info(
                    "Permission denied: user=%s org=%s branch=%s permission=%s resource=%s",
                    user.id, g.org_id, g.branch_id, permission_code, request.path,
                )
                return jsonify({
                    "error": "Permission denied",
                    "required_permission": permission_code,
                    "message": f"Missing permission: {permission_code}",
                }), 403

            return f(*args, **kwargs)

        return decorated_function
    return decorator
