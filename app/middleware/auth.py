"""
Request Authentication Middleware.

The engine sits behind the surrounding application's gateway, which
authenticates end users and forwards their id in X-User-ID. Admin endpoints
(fraud review, earnings approval) require the shared X-Admin-Key.
"""
import hmac
from functools import wraps
from flask import request, g, current_app

from ..utils.errors import unauthorized, forbidden


def get_user_from_request() -> str | None:
    """
    Get the acting user id from the request.

    Returns:
        User id or None
    """
    user_id = request.headers.get('X-User-ID', '').strip()
    return user_id or None


def require_user(f):
    """
    Decorator to require an authenticated user.

    Sets g.user_id.

    Usage:
        @require_user
        def my_endpoint():
            user_id = g.user_id
            ...
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        user_id = get_user_from_request()
        if not user_id:
            return unauthorized('Missing X-User-ID header')

        g.user_id = user_id
        return f(*args, **kwargs)

    return decorated_function


def require_admin(f):
    """
    Decorator for admin-only endpoints.

    Sets g.admin_actor from X-Admin-User (defaults to 'admin') for audit
    trails.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        expected = current_app.config.get('ADMIN_API_KEY') or ''
        provided = request.headers.get('X-Admin-Key', '')

        if not expected:
            return forbidden('Admin API is disabled')
        if not provided:
            return unauthorized('Missing X-Admin-Key header')
        if not hmac.compare_digest(provided.encode(), expected.encode()):
            return forbidden('Invalid admin key')

        g.admin_actor = request.headers.get('X-Admin-User', '').strip() or 'admin'
        return f(*args, **kwargs)

    return decorated_function
