"""
Authentication and authorization.
"""

from dnc_engine.auth.middleware import CurrentUser, get_current_user
from dnc_engine.auth.rbac import Role, is_elevated

__all__ = ["CurrentUser", "Role", "get_current_user", "is_elevated"]
