"""Role-Based Access Control (RBAC) enforcement.

Permission codes travel in the access token; the scheduler only asks an
``Authorizer`` whether a caller may act on an organization.

Usage:
    @router.get("/schedules", dependencies=[Depends(require_permission("schedules.read"))])
    async def list_schedules(...): ...
"""

import logging
from typing import Protocol

from fastapi import Depends, HTTPException, status

from app.dependencies import ServiceContainer, get_container
from core.security import TokenPayload, get_current_user

logger = logging.getLogger(__name__)


def _check_permission(user_perms: set[str], required: str) -> bool:
    """Check if user permissions satisfy the required permission.

    Supports wildcard: "schedules.*" matches "schedules.read", "schedules.delete", etc.
    """
    if required in user_perms:
        return True

    # Check wildcards in user permissions
    for perm in user_perms:
        if perm == "*":
            return True
        if perm.endswith(".*"):
            prefix = perm[:-2]
            if required.startswith(prefix + "."):
                return True

    return False


class Authorizer(Protocol):
    """Decides whether a user may perform an action within an organization."""

    def authorize(self, user: TokenPayload, organization_id: str, permission: str) -> bool:
        ...


class TokenAuthorizer:
    """Authorizes from the organization and permission claims of the token."""

    def authorize(self, user: TokenPayload, organization_id: str, permission: str) -> bool:
        if user.org_id != organization_id:
            return False
        return _check_permission(set(user.permissions), permission)


def require_permission(permission: str):
    """FastAPI dependency that enforces a single permission on the caller's organization.

    Returns 403 if the user lacks the required permission.
    """

    async def _check(
        current_user: TokenPayload = Depends(get_current_user),
        container: ServiceContainer = Depends(get_container),
    ) -> TokenPayload:
        if not container.authorizer.authorize(current_user, current_user.org_id, permission):
            logger.warning(
                f"RBAC denied: user={current_user.email} permission={permission} "
                f"available={current_user.permissions}"
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing required permission: {permission}",
            )
        return current_user

    return _check
