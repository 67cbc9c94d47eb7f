"""
Middleware package for SipGrounds.
"""
from .auth import require_user, require_staff, get_user_from_request

__all__ = ['require_user', 'require_staff', 'get_user_from_request']
