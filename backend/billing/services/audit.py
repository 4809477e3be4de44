"""
Audit logging service.

WHAT: Service layer for creating billing audit log entries with request
context.

WHY: Money movements and one-way invoice actions must be traceable to a
person and a request long after the invoice status has moved on. This
service provides:
- A simple interface for the billing events worth recording
- Automatic context extraction from request middleware
- Logging that won't break a payment if the audit write fails

HOW: Uses the AuditLogDAO for persistence and RequestContext middleware
for automatic IP/user-agent capture. Entries are added to the caller's
session and committed with the caller's unit of work.
"""

import logging
from decimal import Decimal
from typing import Optional, Dict, Any

from sqlalchemy.ext.asyncio import AsyncSession

from billing.dao.audit_log import AuditLogDAO
from billing.models.audit_log import AuditLog, AuditAction
from billing.models.invoice import Invoice
from billing.models.transaction import Transaction
from billing.middleware.request_context import get_request_context


# Logger for audit service errors (not audit events themselves)
logger = logging.getLogger(__name__)


def _money(value: Any) -> Optional[str]:
    return None if value is None else str(Decimal(str(value)))


class AuditService:
    """
    Service for creating audit log entries.

    Example:
        audit = AuditService(db)
        await audit.log_payment(transaction, actor_user_id=user.id)
        await db.commit()
    """

    def __init__(self, session: AsyncSession):
        self.dao = AuditLogDAO(session)
        self._session = session

    def _get_context(self) -> tuple[Optional[str], Optional[str]]:
        """
        Get IP address and user agent from request context.

        Returns:
            Tuple of (ip_address, user_agent), both None outside a request
            (scheduler jobs)
        """
        ctx = get_request_context()
        if ctx:
            return ctx.ip_address, ctx.user_agent
        return None, None

    async def log_event(
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
    ) -> Optional[AuditLog]:
        """
        Log a generic audit event.

        Args:
            action: Type of event (from AuditAction enum)
            resource_type: "invoice" or "transaction"
            actor_user_id: User who performed the action
            resource_id: Specific resource ID
            org_id: Organization context
            changes: Before/after values for mutations
            extra_data: Additional context
            ip_address: Override auto-detected IP
            user_agent: Override auto-detected user agent

        Returns:
            Created AuditLog or None if logging failed

        Note:
            This method never raises. Errors are logged to the
            application logger instead.
        """
        try:
            if ip_address is None or user_agent is None:
                ctx_ip, ctx_ua = self._get_context()
                ip_address = ip_address or ctx_ip
                user_agent = user_agent or ctx_ua

            return await self.dao.create(
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

        except Exception as e:
            logger.error(f"Failed to create audit log: {e}", exc_info=True)
            return None

    # =========================================================================
    # Money movements
    # =========================================================================

    async def _log_transaction(
        self,
        action: AuditAction,
        transaction: Transaction,
        actor_user_id: Optional[int],
        extra_data: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditLog]:
        data = {
            "transaction_ref": transaction.transaction_ref,
            "transaction_type": transaction.transaction_type.value,
            "payment_method": transaction.payment_method.value,
            "status": transaction.status.value,
            "amount": _money(transaction.amount),
            "currency": transaction.currency,
            "invoice_id": transaction.invoice_id,
        }
        if extra_data:
            data.update(extra_data)
        return await self.log_event(
            action=action,
            resource_type="transaction",
            actor_user_id=actor_user_id,
            resource_id=transaction.id,
            org_id=transaction.org_id,
            extra_data=data,
        )

    async def log_payment(
        self, transaction: Transaction, actor_user_id: Optional[int] = None
    ) -> Optional[AuditLog]:
        """Record a payment attempt and the status it reached."""
        return await self._log_transaction(AuditAction.PAYMENT_PROCESSED, transaction, actor_user_id)

    async def log_payment_failed(
        self, transaction: Transaction, actor_user_id: Optional[int] = None
    ) -> Optional[AuditLog]:
        return await self._log_transaction(
            AuditAction.PAYMENT_FAILED,
            transaction,
            actor_user_id,
            {"error": transaction.error},
        )

    async def log_refund(
        self,
        refund: Transaction,
        original: Transaction,
        actor_user_id: Optional[int] = None,
    ) -> Optional[AuditLog]:
        return await self._log_transaction(
            AuditAction.REFUND_PROCESSED,
            refund,
            actor_user_id,
            {
                "original_transaction_ref": original.transaction_ref,
                "reason": refund.refund_reason.value if refund.refund_reason else None,
                "error": refund.error,
            },
        )

    async def log_payout(
        self, payout: Transaction, actor_user_id: Optional[int] = None
    ) -> Optional[AuditLog]:
        return await self._log_transaction(
            AuditAction.PAYOUT_PROCESSED,
            payout,
            actor_user_id,
            {"consultant_id": payout.consultant_id},
        )

    async def log_webhook(
        self, event_id: str, event_type: str, transaction: Optional[Transaction] = None
    ) -> Optional[AuditLog]:
        """Record a gateway event that changed a transaction."""
        return await self.log_event(
            action=AuditAction.WEBHOOK_RECEIVED,
            resource_type="transaction",
            resource_id=transaction.id if transaction else None,
            org_id=transaction.org_id if transaction else None,
            extra_data={"event_id": event_id, "event_type": event_type},
        )

    # =========================================================================
    # Invoice events
    # =========================================================================

    async def log_invoice_event(
        self,
        action: AuditAction,
        invoice: Invoice,
        actor_user_id: Optional[int] = None,
        extra_data: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditLog]:
        """
        Record an invoice lifecycle action (created, sent, cancelled,
        refunded, recurring generated).
        """
        data = {
            "invoice_number": invoice.invoice_number,
            "status": invoice.current_status.value,
            "total": _money(invoice.total),
            "amount_due": _money(invoice.amount_due),
        }
        if extra_data:
            data.update(extra_data)
        return await self.log_event(
            action=action,
            resource_type="invoice",
            actor_user_id=actor_user_id,
            resource_id=invoice.id,
            org_id=invoice.org_id,
            extra_data=data,
        )

    async def log_update(
        self,
        resource_type: str,
        resource_id: int,
        actor_user_id: int,
        org_id: int,
        changes: Dict[str, Any],
    ) -> Optional[AuditLog]:
        """
        Log resource update.

        Args:
            changes: {field: {"before": x, "after": y}}
        """
        return await self.log_event(
            action=AuditAction.UPDATE,
            resource_type=resource_type,
            actor_user_id=actor_user_id,
            resource_id=resource_id,
            org_id=org_id,
            changes=changes,
        )
