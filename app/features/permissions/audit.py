"""
Audit logging for permission-affecting mutations.

The audit row is added to the caller's session, so it commits (or rolls
back) together with the mutation it describes.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.features.permissions.models import AuditLog
from app.utils import get_logger


log = get_logger(__name__)


@dataclass(frozen=True)
class AuditContext:
    """Who triggered a mutation and from where."""
    actor_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


def record_audit(
    db: AsyncSession,
    context: Optional[AuditContext],
    action: str,
    resource_type: str,
    resource_id: Optional[str] = None,
    retreat_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    """
    Add an audit log entry to the session.

    Args:
        db: Database session
        context: Actor and request metadata (may be None for system jobs)
        action: Action performed (e.g., "assign_role", "set_override", "revoke")
        resource_type: Type of resource (e.g., "membership", "delegation")
        resource_id: ID of the resource
        retreat_id: Retreat context
        details: Additional details

    Returns:
        The pending AuditLog object
    """
    context = context or AuditContext()
    audit_log = AuditLog(
        user_id=context.actor_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        retreat_id=retreat_id,
        details=details,
        ip_address=context.ip_address,
        user_agent=context.user_agent,
    )
    db.add(audit_log)

    log.info(
        "Audit: user=%s action=%s resource=%s:%s retreat=%s",
        context.actor_id, action, resource_type, resource_id, retreat_id,
    )

    return audit_log
