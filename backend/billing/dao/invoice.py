"""
Invoice Data Access Object (DAO).

WHAT: Database operations for the Invoice model.

WHY: The DAO pattern:
1. Separates data access from the billing rules in the model
2. Provides a consistent API for invoice queries
3. Enforces org-scoping for multi-tenancy
4. Owns the row lock used when a payment is applied

HOW: Extends BaseDAO with invoice-specific queries:
- Numbering ({PREFIX}-{YYMM}-{NNNN})
- Filtered, paginated listing
- Overdue and recurring candidates for the background jobs
- Receivable totals for the financial summary
"""

from datetime import datetime, date, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
from sqlalchemy import select, func, or_, exists
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from billing.core.config import settings
from billing.dao.base import BaseDAO
from billing.models.invoice import Invoice, InvoiceType
from billing.models.invoice_calculator import quantize_money
from billing.models.invoice_state import (
    InvoiceStatus,
    PAYABLE_STATUSES,
    apply_due_date,
)


# Statuses the overdue job may move to OVERDUE
OVERDUE_CANDIDATE_STATUSES = (
    InvoiceStatus.SENT,
    InvoiceStatus.PENDING,
    InvoiceStatus.PARTIAL,
)


class InvoiceDAO(BaseDAO[Invoice]):
    """
    Data Access Object for Invoice model.

    WHAT: Provides CRUD and query operations for invoices.

    WHY: Centralizes all invoice database operations:
    - Enforces org_id scoping for security
    - Generates invoice numbers
    - Serialises concurrent payments with SELECT ... FOR UPDATE
    - Feeds the overdue and recurring jobs

    HOW: Extends BaseDAO with invoice-specific methods. Derived amounts
    and status are recomputed by the model's flush listeners, so every
    write here goes through the ORM.
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize InvoiceDAO.

        Args:
            session: Async database session
        """
        super().__init__(Invoice, session)

    # ------------------------------------------------------------------
    # Numbering and creation
    # ------------------------------------------------------------------

    async def get_next_invoice_number(
        self,
        prefix: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> str:
        """
        Get the next free invoice number for the current month.

        WHAT: Counts invoices carrying this month's {PREFIX}-{YYMM}- prefix
        and formats count + 1.

        WHY: Numbers are sequential per month and globally unique. If a
        number was freed by a delete the count undershoots, so we step
        forward until the number is unused.

        Args:
            prefix: Number prefix (defaults to settings.INVOICE_NUMBER_PREFIX)
            now: Clock used for the YYMM part

        Returns:
            Invoice number, e.g. INV-2410-0007
        """
        prefix = prefix or settings.INVOICE_NUMBER_PREFIX
        now = now or datetime.utcnow()
        month_prefix = f"{prefix}-{now:%y%m}-"

        result = await self.session.execute(
            select(func.count(Invoice.id)).where(
                Invoice.invoice_number.like(f"{month_prefix}%")
            )
        )
        sequence = result.scalar_one() + 1

        invoice_number = Invoice.generate_invoice_number(prefix, sequence, now)
        while await self.exists(invoice_number=invoice_number):
            sequence += 1
            invoice_number = Invoice.generate_invoice_number(prefix, sequence, now)
        return invoice_number

    async def create_invoice(self, **kwargs: Any) -> Invoice:
        """
        Create an invoice, numbering it when no number is given.

        The before_insert listener validates the parties and computes
        every derived amount.

        Returns:
            Persisted invoice
        """
        if not kwargs.get("invoice_number"):
            kwargs["invoice_number"] = await self.get_next_invoice_number()
        return await self.create(**kwargs)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get_by_invoice_number(
        self,
        invoice_number: str,
        org_id: Optional[int] = None,
    ) -> Optional[Invoice]:
        """
        Get invoice by its unique invoice number.

        Args:
            invoice_number: Invoice number (e.g., "INV-2410-0001")
            org_id: Optional organization scope

        Returns:
            Invoice if found, None otherwise
        """
        query = select(Invoice).where(Invoice.invoice_number == invoice_number)
        if org_id is not None:
            query = query.where(Invoice.org_id == org_id)
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def get_for_update(self, invoice_id: int) -> Optional[Invoice]:
        """
        Load an invoice and lock its row until the transaction ends.

        WHAT: SELECT ... FOR UPDATE on the invoice row.

        WHY: Two payments applied to the same invoice at once would both
        read the old paid_amount. With the lock the second waits for the
        first to commit and then sees its result. SQLite ignores FOR
        UPDATE, which is fine for the single-connection test database.

        Args:
            invoice_id: Invoice ID

        Returns:
            Locked invoice, or None
        """
        result = await self.session.execute(
            select(Invoice)
            .where(Invoice.id == invoice_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_stripe_checkout_session(
        self,
        checkout_session_id: str,
    ) -> Optional[Invoice]:
        """
        Get invoice by Stripe Checkout session ID.

        WHY: The checkout.session.completed webhook only carries the
        session id (plus our metadata) to find the invoice it paid.
        """
        result = await self.session.execute(
            select(Invoice).where(Invoice.stripe_checkout_session_id == checkout_session_id)
        )
        return result.scalar_one_or_none()

    async def list_invoices(
        self,
        org_id: int,
        status: Optional[InvoiceStatus] = None,
        client_id: Optional[int] = None,
        consultant_id: Optional[int] = None,
        project_id: Optional[int] = None,
        invoice_type: Optional[InvoiceType] = None,
        search: Optional[str] = None,
        party_id: Optional[int] = None,
        skip: int = 0,
        limit: int = 20,
    ) -> Tuple[List[Invoice], int]:
        """
        List invoices with filters and pagination.

        WHAT: Newest first, filtered by any combination of status, parties,
        project, type and a search term over number and notes.

        Args:
            org_id: Organization scope
            party_id: Restrict to invoices where this user is client or
                consultant (used for non-admin callers)
            skip: Pagination offset
            limit: Page size

        Returns:
            (page of invoices, total matching count)
        """
        conditions = [Invoice.org_id == org_id]
        if status is not None:
            conditions.append(Invoice.status == status)
        if client_id is not None:
            conditions.append(Invoice.client_id == client_id)
        if consultant_id is not None:
            conditions.append(Invoice.consultant_id == consultant_id)
        if project_id is not None:
            conditions.append(Invoice.project_id == project_id)
        if invoice_type is not None:
            conditions.append(Invoice.invoice_type == invoice_type)
        if party_id is not None:
            conditions.append(
                or_(Invoice.client_id == party_id, Invoice.consultant_id == party_id)
            )
        if search:
            pattern = f"%{search}%"
            conditions.append(
                or_(Invoice.invoice_number.ilike(pattern), Invoice.notes.ilike(pattern))
            )

        total_result = await self.session.execute(
            select(func.count(Invoice.id)).where(*conditions)
        )
        total = total_result.scalar_one()

        result = await self.session.execute(
            select(Invoice)
            .where(*conditions)
            .order_by(Invoice.created_at.desc(), Invoice.id.desc())
            .offset(skip)
            .limit(limit)
        )
        return list(result.scalars().all()), total

    # ------------------------------------------------------------------
    # Background job queries
    # ------------------------------------------------------------------

    async def get_overdue_candidates(self, today: Optional[date] = None) -> List[Invoice]:
        """
        Get issued, unsettled invoices whose due date has passed.

        Drafts, paid, cancelled and refunded invoices are never candidates,
        and neither is an invoice with nothing left to pay.
        """
        today = today or date.today()
        result = await self.session.execute(
            select(Invoice)
            .where(
                Invoice.due_date < today,
                Invoice.status.in_(OVERDUE_CANDIDATE_STATUSES),
                Invoice.amount_due > 0,
            )
            .order_by(Invoice.due_date.asc())
        )
        return list(result.scalars().all())

    async def refresh_overdue_statuses(self, today: Optional[date] = None) -> List[Invoice]:
        """
        Batch move past-due invoices to OVERDUE.

        WHAT: Applies the due date rule of the state machine to every
        candidate and flushes.

        WHY: Status is also derived on every save, but an invoice nobody
        touches would never show as overdue without this job.

        Returns:
            The invoices that changed status
        """
        today = today or date.today()
        changed = []
        for invoice in await self.get_overdue_candidates(today):
            new_status = apply_due_date(
                invoice.current_status, invoice.due_date, today, amount_due=invoice.amount_due
            )
            if new_status != invoice.current_status:
                invoice.status = new_status
                changed.append(invoice)

        if changed:
            await self.session.flush()
        return changed

    async def find_upcoming(
        self,
        days: int = 7,
        today: Optional[date] = None,
        org_id: Optional[int] = None,
    ) -> List[Invoice]:
        """
        Get payable invoices due within the next N days.

        WHY: Proactive payment reminders before the invoice goes overdue.
        """
        today = today or date.today()
        query = select(Invoice).where(
            Invoice.due_date >= today,
            Invoice.due_date <= today + timedelta(days=days),
            Invoice.status.in_(PAYABLE_STATUSES),
        )
        if org_id is not None:
            query = query.where(Invoice.org_id == org_id)
        result = await self.session.execute(query.order_by(Invoice.due_date.asc()))
        return list(result.scalars().all())

    async def get_due_recurring(self, today: Optional[date] = None) -> List[Invoice]:
        """
        Get recurring series heads that are due to generate their next invoice.

        WHAT: Recurring invoices with next_invoice_date <= today, cycles
        left (or unlimited), end date not passed, not cancelled, and no
        invoice generated from them yet.

        WHY: Each generated invoice becomes the new head of its series.
        Only heads are picked so one slot never produces two invoices.
        """
        today = today or date.today()
        child = aliased(Invoice)
        has_successor = exists().where(child.parent_invoice_id == Invoice.id)

        result = await self.session.execute(
            select(Invoice)
            .where(
                Invoice.is_recurring.is_(True),
                Invoice.recurring_frequency.isnot(None),
                Invoice.next_invoice_date.isnot(None),
                Invoice.next_invoice_date <= today,
                Invoice.status != InvoiceStatus.CANCELLED,
                or_(Invoice.remaining_cycles.is_(None), Invoice.remaining_cycles > 0),
                or_(Invoice.recurring_end_date.is_(None), Invoice.recurring_end_date >= today),
                ~has_successor,
            )
            .order_by(Invoice.next_invoice_date.asc())
        )
        return list(result.scalars().all())

    async def generate_recurring_invoice(
        self,
        source: Invoice,
        now: Optional[datetime] = None,
    ) -> Invoice:
        """
        Create the next invoice of a recurring series.

        WHAT: Numbers and builds the successor from the source, persists
        it, then appends its id to source.related_invoice_ids.

        Args:
            source: Current head of the series
            now: Generation time

        Returns:
            The persisted successor (draft)

        Raises:
            RecurringConfigError: If the source is not recurring
        """
        now = now or datetime.utcnow()
        invoice_number = await self.get_next_invoice_number(now=now)
        successor = source.build_recurring_successor(invoice_number, now=now)
        await self.add(successor)

        source.link_successor(successor.id)
        await self.session.flush()
        return successor

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    async def _sum_amount_due(self, *conditions) -> Decimal:
        result = await self.session.execute(
            select(func.coalesce(func.sum(Invoice.amount_due), 0)).where(
                Invoice.status.in_(PAYABLE_STATUSES),
                *conditions,
            )
        )
        return quantize_money(Decimal(str(result.scalar_one())))

    async def get_client_total_owed(self, client_id: int) -> Decimal:
        """Outstanding amount_due across a client's payable invoices."""
        return await self._sum_amount_due(Invoice.client_id == client_id)

    async def get_consultant_total_due(self, consultant_id: int) -> Decimal:
        """Outstanding amount_due on invoices the consultant issued to the platform."""
        return await self._sum_amount_due(
            Invoice.consultant_id == consultant_id,
            Invoice.invoice_type == InvoiceType.CONSULTANT,
        )

    async def calculate_total_outstanding(self, org_id: int) -> Decimal:
        """Accounts receivable for an organization."""
        return await self._sum_amount_due(Invoice.org_id == org_id)

    async def calculate_total_paid(
        self,
        org_id: int,
        party_id: Optional[int] = None,
    ) -> Decimal:
        """
        Sum of paid_amount across an organization's invoices.

        Args:
            org_id: Organization ID
            party_id: Restrict to invoices where this user is a party
        """
        query = select(func.coalesce(func.sum(Invoice.paid_amount), 0)).where(
            Invoice.org_id == org_id,
        )
        if party_id is not None:
            query = query.where(
                or_(Invoice.client_id == party_id, Invoice.consultant_id == party_id)
            )
        result = await self.session.execute(query)
        return quantize_money(Decimal(str(result.scalar_one())))

    async def count_by_status(
        self,
        org_id: int,
        party_id: Optional[int] = None,
    ) -> Dict[str, int]:
        """
        Get count of invoices by status for an organization.

        WHY: Dashboard statistics (invoice pipeline, receivables summary).

        Returns:
            Dict mapping status value to count
        """
        query = (
            select(Invoice.status, func.count(Invoice.id))
            .where(Invoice.org_id == org_id)
            .group_by(Invoice.status)
        )
        if party_id is not None:
            query = query.where(
                or_(Invoice.client_id == party_id, Invoice.consultant_id == party_id)
            )
        result = await self.session.execute(query)
        return {InvoiceStatus(row[0]).value: row[1] for row in result.all()}
