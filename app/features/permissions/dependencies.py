"""
FastAPI dependencies for permission checks.

Implements:
- Access to the process-wide PermissionService
- Route protection by permission key
- Audit context extraction from the request
"""
from typing import Optional
from fastapi import Depends, HTTPException, status, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.permissions.audit import AuditContext
from app.features.permissions.service import PermissionService
from app.features.users.dependencies import get_current_user
from app.features.users.models import User
from app.utils import get_logger


log = get_logger(__name__)

SYSTEM_ADMIN_PERMISSION = "system:admin"


def get_permission_service(request: Request) -> PermissionService:
    """The service built once at startup and stored on ``app.state``."""
    return request.app.state.permission_service


def get_audit_context(
    request: Request,
    current_user: User = Depends(get_current_user)
) -> AuditContext:
    return AuditContext(
        actor_id=current_user.id,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


def require_permission(permission: str, retreat_param: Optional[str] = None):
    """
    FastAPI dependency to require a specific permission.

    Usage:
        @router.post("/retreats/{retreat_id}/payments")
        async def create_payment(
            user: User = Depends(require_permission("payment:create", retreat_param="retreat_id"))
        ):
            pass

    Args:
        permission: Permission key, e.g. "payment:create"
        retreat_param: Name of the path parameter holding the retreat id; the
            check is global (roles and memberships only) when omitted

    Returns:
        Dependency function that returns the current user if they have permission

    Raises:
        HTTPException: 403 if user doesn't have permission
    """
    async def permission_dependency(
        request: Request,
        db: AsyncSession = Depends(get_db),
        current_user: User = Depends(get_current_user),
        service: PermissionService = Depends(get_permission_service),
    ) -> User:
        retreat_id = request.path_params.get(retreat_param) if retreat_param else None
        if not await service.has_permission(db, current_user.id, permission, retreat_id):
            log.info("Denied %s to user %s (retreat=%s)", permission, current_user.id, retreat_id)
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Permission denied: {permission}"
            )
        return current_user

    return permission_dependency


require_system_admin = require_permission(SYSTEM_ADMIN_PERMISSION)
