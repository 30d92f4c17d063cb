"""Role checks for API endpoints.

Two roles exist: ``service`` for backend callers reporting usage, and
``admin`` for operators, which also covers everything ``service`` may do.
"""
from enum import Enum
from functools import wraps
from typing import Callable, List

import structlog
from fastapi import HTTPException, status

logger = structlog.get_logger(__name__)


class Role(str, Enum):
    """Caller roles."""

    ADMIN = "admin"
    SERVICE = "service"


ROLE_HIERARCHY = {
    Role.ADMIN: [Role.ADMIN, Role.SERVICE],
    Role.SERVICE: [Role.SERVICE],
}


def check_role_hierarchy(user_role: str, required_roles: List[Role]) -> bool:
    """Whether ``user_role`` satisfies any of the required roles, including inherited ones."""
    try:
        user_role_enum = Role(user_role)
    except ValueError:
        return False

    allowed = ROLE_HIERARCHY.get(user_role_enum, [])
    return any(role in allowed for role in required_roles)


def require_roles(*required_roles: Role):
    """
    Decorator to require specific roles for endpoint access.

    The endpoint must take ``current_user`` from ``get_current_user``.

    Usage:
        @require_roles(Role.ADMIN)
        async def maintain_pool(...):
            ...

    Raises:
        HTTPException: 401 without a caller, 403 for an insufficient role
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            current_user = kwargs.get("current_user")

            if not current_user:
                logger.error("rbac_missing_current_user", endpoint=func.__name__)
                raise HTTPException(
                    status_code=status.HTTP_401_UNAUTHORIZED,
                    detail="Authentication required",
                )

            user_role = current_user.get("role")

            if not check_role_hierarchy(user_role, list(required_roles)):
                logger.warning(
                    "rbac_permission_denied",
                    caller=current_user.get("sub"),
                    user_role=user_role,
                    required_roles=[r.value for r in required_roles],
                    endpoint=func.__name__,
                )
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail=f"Insufficient permissions. Required roles: {', '.join(r.value for r in required_roles)}",
                )

            return await func(*args, **kwargs)

        return wrapper
    return decorator
