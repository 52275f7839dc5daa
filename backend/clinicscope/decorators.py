# Overview: Request decorators for API routes.

from functools import wraps

from flask import current_app, jsonify

from .isolation.accessor import current_scope
from .isolation.middleware import PUBLIC_ENDPOINT_ATTR
from .services import audit_service


def public_endpoint(f):
    """
    Mark a view as public: scope resolution is skipped and no scope is held.

    Use for health checks, login and similar anonymous endpoints.
    """
    setattr(f, PUBLIC_ENDPOINT_ATTR, True)
    return f


def require_super_admin(f):
    """
    Require a platform administrator scope.

    Non-admins get the same generic denial as a failed resolution; the
    attempt is audit-logged.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        scope = current_scope()
        if not scope.is_set or not scope.is_super_admin:
            current_app.logger.warning(
                "Platform endpoint refused for user %s (tenant=%s)", scope.user_id, scope.tenant_id
            )
            audit_service.log_security_event(
                event_type=audit_service.SCOPE_RESOLUTION_DENIED,
                success=False,
                reason="platform administrator scope required",
            )
            return jsonify({"error": "Access denied"}), 403
        return f(*args, **kwargs)

    return decorated_function
