"""
Transaction Data Access Object (DAO).

WHAT: Database operations for the Transaction ledger.

WHY: The payment service looks transactions up by every reference the
gateway hands back (our ref, payment intent, checkout session) and needs
role-scoped listings and revenue totals. Keeping those queries here keeps
the service focused on orchestration.

HOW: Extends BaseDAO. Rows are only ever added or moved forward through
the model's transition methods, never deleted here.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple
from sqlalchemy import select, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from billing.dao.base import BaseDAO
from billing.models.invoice_calculator import quantize_money
from billing.models.transaction import (
    Transaction,
    TransactionStatus,
    TransactionType,
)

# Refund rows that hold money back from a payment
REFUND_COMMITTED_STATUSES = (
    TransactionStatus.PENDING,
    TransactionStatus.PROCESSING,
    TransactionStatus.COMPLETED,
)


class TransactionDAO(BaseDAO[Transaction]):
    """Data Access Object for Transaction model."""

    def __init__(self, session: AsyncSession):
        super().__init__(Transaction, session)

    async def get_by_ref(self, transaction_ref: str) -> Optional[Transaction]:
        """Get a transaction by its public reference."""
        result = await self.session.execute(
            select(Transaction).where(Transaction.transaction_ref == transaction_ref)
        )
        return result.scalar_one_or_none()

    async def get_by_payment_intent(self, payment_intent_id: str) -> Optional[Transaction]:
        """
        Get the payment transaction created for a gateway payment intent.

        Refund rows copy the payment intent id of the payment they refund,
        so only payment rows are considered.
        """
        result = await self.session.execute(
            select(Transaction)
            .where(
                Transaction.payment_intent_id == payment_intent_id,
                Transaction.transaction_type == TransactionType.PAYMENT,
            )
            .order_by(Transaction.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_by_checkout_session(self, checkout_session_id: str) -> Optional[Transaction]:
        result = await self.session.execute(
            select(Transaction).where(Transaction.checkout_session_id == checkout_session_id)
        )
        return result.scalar_one_or_none()

    async def get_by_charge(self, charge_id: str) -> Optional[Transaction]:
        """Get the payment transaction for a gateway charge (used for disputes)."""
        result = await self.session.execute(
            select(Transaction)
            .where(
                Transaction.charge_id == charge_id,
                Transaction.transaction_type == TransactionType.PAYMENT,
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_transactions(
        self,
        org_id: Optional[int] = None,
        party_id: Optional[int] = None,
        transaction_type: Optional[TransactionType] = None,
        status: Optional[TransactionStatus] = None,
        invoice_id: Optional[int] = None,
        project_id: Optional[int] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        skip: int = 0,
        limit: int = 20,
    ) -> Tuple[List[Transaction], int]:
        """
        List transactions newest first with filters and pagination.

        WHAT: Filters on type, status, invoice, project and a created_at
        range.

        WHY: Clients and consultants only see movements they are a party
        to; the caller passes party_id for them and leaves it None for
        admins.

        Returns:
            (page of transactions, total matching count)
        """
        conditions = []
        if org_id is not None:
            conditions.append(Transaction.org_id == org_id)
        if party_id is not None:
            conditions.append(
                or_(Transaction.client_id == party_id, Transaction.consultant_id == party_id)
            )
        if transaction_type is not None:
            conditions.append(Transaction.transaction_type == transaction_type)
        if status is not None:
            conditions.append(Transaction.status == status)
        if invoice_id is not None:
            conditions.append(Transaction.invoice_id == invoice_id)
        if project_id is not None:
            conditions.append(Transaction.project_id == project_id)
        if start_date is not None:
            conditions.append(Transaction.created_at >= start_date)
        if end_date is not None:
            conditions.append(Transaction.created_at <= end_date)

        total_result = await self.session.execute(
            select(func.count(Transaction.id)).where(*conditions)
        )
        total = total_result.scalar_one()

        result = await self.session.execute(
            select(Transaction)
            .where(*conditions)
            .order_by(Transaction.created_at.desc(), Transaction.id.desc())
            .offset(skip)
            .limit(limit)
        )
        return list(result.scalars().all()), total

    async def list_for_invoice(self, invoice_id: int) -> List[Transaction]:
        """All ledger rows linked to an invoice, oldest first."""
        result = await self.session.execute(
            select(Transaction)
            .where(Transaction.invoice_id == invoice_id)
            .order_by(Transaction.created_at.asc(), Transaction.id.asc())
        )
        return list(result.scalars().all())

    async def count_refunds_for(self, original_transaction_id: int) -> int:
        """Number of refund rows (any status) pointing at a payment."""
        result = await self.session.execute(
            select(func.count(Transaction.id)).where(
                Transaction.original_transaction_id == original_transaction_id,
                Transaction.transaction_type == TransactionType.REFUND,
            )
        )
        return result.scalar_one()

    async def _sum_refunds(self, *conditions) -> Decimal:
        result = await self.session.execute(
            select(func.coalesce(func.sum(Transaction.amount), 0)).where(
                Transaction.transaction_type == TransactionType.REFUND,
                Transaction.status.in_(REFUND_COMMITTED_STATUSES),
                *conditions,
            )
        )
        return quantize_money(-Decimal(str(result.scalar_one())))

    async def sum_refunded_for(self, original_transaction_id: int) -> Decimal:
        """
        Total already returned (or promised back) on a payment, as a
        positive amount.

        Pending bank transfer refunds count: the money is owed even though
        finance has not sent it yet. Failed attempts returned nothing.
        """
        return await self._sum_refunds(
            Transaction.original_transaction_id == original_transaction_id
        )

    async def sum_refunded_for_invoice(self, invoice_id: int) -> Decimal:
        """Total refunded across every payment of an invoice."""
        return await self._sum_refunds(Transaction.invoice_id == invoice_id)

    async def _sum_net(self, *conditions) -> Decimal:
        result = await self.session.execute(
            select(func.coalesce(func.sum(Transaction.net), 0)).where(
                Transaction.status == TransactionStatus.COMPLETED,
                *conditions,
            )
        )
        return quantize_money(Decimal(str(result.scalar_one())))

    async def get_client_revenue(self, client_id: int) -> Decimal:
        """
        Net amount a client has paid: payments minus refunds.

        Refund rows carry negative amounts, so summing both types gives
        the net.
        """
        return await self._sum_net(
            Transaction.client_id == client_id,
            Transaction.transaction_type.in_([TransactionType.PAYMENT, TransactionType.REFUND]),
        )

    async def get_consultant_earnings(self, consultant_id: int) -> Decimal:
        """Net amount paid out to a consultant."""
        return await self._sum_net(
            Transaction.consultant_id == consultant_id,
            Transaction.transaction_type == TransactionType.PAYOUT,
        )

    async def get_platform_revenue(self, org_id: int) -> Decimal:
        """Net of completed payments and refunds across an organization."""
        return await self._sum_net(
            Transaction.org_id == org_id,
            Transaction.transaction_type.in_([TransactionType.PAYMENT, TransactionType.REFUND]),
        )

    async def sum_pending_payouts(self, org_id: int) -> Decimal:
        """Payouts recorded but not yet sent (manual bank payouts)."""
        result = await self.session.execute(
            select(func.coalesce(func.sum(Transaction.amount), 0)).where(
                Transaction.org_id == org_id,
                Transaction.transaction_type == TransactionType.PAYOUT,
                Transaction.status.in_([TransactionStatus.PENDING, TransactionStatus.PROCESSING]),
            )
        )
        return quantize_money(Decimal(str(result.scalar_one())))
