"""
Middleware package for the referral engine.
"""
from .auth import require_user, require_admin, get_user_from_request
