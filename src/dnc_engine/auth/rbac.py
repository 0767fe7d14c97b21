"""
Role-based access control.

Role hierarchy: admin > manager > agent > viewer. Removing numbers from the
DNC list, overriding a block and rebuilding the filter are admin-only.
"""

from enum import Enum

from fastapi import Depends, HTTPException, Request, status

from dnc_engine.auth.middleware import CurrentUser, get_current_user
from dnc_engine.shared.logging import get_logger

logger = get_logger(__name__)


class Role(str, Enum):
    """User roles with hierarchical ordering."""

    ADMIN = "admin"
    MANAGER = "manager"
    AGENT = "agent"
    VIEWER = "viewer"

    @classmethod
    def from_string(cls, role_str: str) -> "Role":
        """Convert string to Role enum.

        Raises:
            ValueError: If role string is invalid.
        """
        try:
            return cls(role_str)
        except ValueError:
            raise ValueError(f"Invalid role: {role_str}")

    def has_permission(self, required_role: "Role") -> bool:
        """Check if this role meets or exceeds ``required_role``."""
        hierarchy = {
            Role.ADMIN: 4,
            Role.MANAGER: 3,
            Role.AGENT: 2,
            Role.VIEWER: 1,
        }
        return hierarchy.get(self, 0) >= hierarchy.get(required_role, 0)


ELEVATED_ROLE = Role.ADMIN


def check_role_permission(user_role: str, required_role: Role) -> bool:
    """Check if a user role string has permission for ``required_role``."""
    try:
        return Role.from_string(user_role).has_permission(required_role)
    except ValueError:
        return False


def is_elevated(user_role: str) -> bool:
    return check_role_permission(user_role, ELEVATED_ROLE)


class RBACChecker:
    """Dependency class for role-based access control checks."""

    def __init__(self, minimum_role: Role) -> None:
        self.minimum_role = minimum_role

    async def __call__(
        self,
        request: Request,
        current_user: CurrentUser = Depends(get_current_user),
    ) -> CurrentUser:
        """Return the current user if their role is sufficient.

        Raises:
            HTTPException: 403 if the user lacks the required role.
        """
        if not check_role_permission(current_user.role, self.minimum_role):
            logger.warning(
                "Access denied",
                extra={
                    "user_id": str(current_user.id),
                    "user_role": current_user.role,
                    "required_role": self.minimum_role.value,
                    "endpoint": str(request.url.path),
                    "method": request.method,
                    "client_ip": request.client.host if request.client else "unknown",
                },
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={
                    "code": "INSUFFICIENT_PERMISSIONS",
                    "message": f"Role '{self.minimum_role.value}' or higher required",
                    "required_role": self.minimum_role.value,
                    "current_role": current_user.role,
                },
            )
        return current_user


require_admin = RBACChecker(Role.ADMIN)
require_manager = RBACChecker(Role.MANAGER)
require_agent = RBACChecker(Role.AGENT)
