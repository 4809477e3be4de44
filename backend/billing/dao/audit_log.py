"""
Audit Log Data Access Object (DAO).

WHAT: Data access layer for billing audit entries.

WHY: Finance must be able to reconstruct every money movement and every
one-way invoice action. Entries are append-only, so this DAO only offers
create and query methods.

HOW: Plain class over the async session rather than BaseDAO, so no
generic update or delete exists for audit rows.
"""

from typing import Any, Dict, List, Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing.models.audit_log import AuditLog, AuditAction


class AuditLogDAO:
    """
    Data Access Object for audit log operations.

    HOW: Uses SQLAlchemy async session for all operations.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        action: AuditAction,
        resource_type: str,
        actor_user_id: Optional[int] = None,
        resource_id: Optional[int] = None,
        org_id: Optional[int] = None,
        changes: Optional[Dict[str, Any]] = None,
        extra_data: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuditLog:
        """
        Create a new audit log entry.

        Args:
            action: Type of event (from AuditAction enum)
            resource_type: "invoice", "transaction", ...
            actor_user_id: User who performed the action (None for jobs and webhooks)
            resource_id: Specific resource ID
            org_id: Organization context
            changes: Before/after values for mutations
            extra_data: Event context such as amounts and references
            ip_address: Client IP address
            user_agent: Client user agent

        Returns:
            The created AuditLog entry
        """
        log = AuditLog(
            actor_user_id=actor_user_id,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            org_id=org_id,
            changes=changes,
            extra_data=extra_data,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.session.add(log)
        await self.session.flush()
        await self.session.refresh(log)
        return log

    async def get_for_resource(
        self,
        resource_type: str,
        resource_id: int,
        limit: int = 100,
    ) -> List[AuditLog]:
        """History of one resource, newest first."""
        result = await self.session.execute(
            select(AuditLog)
            .where(
                AuditLog.resource_type == resource_type,
                AuditLog.resource_id == resource_id,
            )
            .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
