"""
Invoice service.

WHAT: Invoice lifecycle operations: create, update drafts, send, record
views, remind, cancel and generate the next invoice of a recurring
series.

WHY: The Invoice model owns the money rules and the state machine. This
layer adds what needs the database or the outside world: checking the
parties exist in the organization, numbering, access control, audit
entries and the emails that go with sending and reminding.

HOW: One InvoiceService per request over the request's AsyncSession.
Every mutating operation commits once, after its audit entry is added.
"""

import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from billing.core.config import settings
from billing.core.exceptions import (
    EmailServiceError,
    InvalidStateTransitionError,
    InvoiceNotFoundError,
    OwnershipError,
    ProjectNotFoundError,
    ProposalNotFoundError,
    RecurringConfigError,
    UserNotFoundError,
    ValidationError,
)
from billing.dao.invoice import InvoiceDAO
from billing.dao.project import ProjectDAO, ProposalDAO
from billing.dao.transaction import TransactionDAO
from billing.dao.user import UserDAO
from billing.models.audit_log import AuditAction
from billing.models.invoice import Invoice, InvoiceType
from billing.models.invoice_calculator import (
    RecurringFrequency,
    build_installment,
    calculate_platform_fee,
    due_date_for_terms,
    next_due_date,
    recompute_totals,
    to_decimal,
)
from billing.models.transaction import Transaction
from billing.models.user import User, UserRole
from billing.services.audit import AuditService
from billing.services.email import EmailService

logger = logging.getLogger(__name__)

# Fields a draft may change through update_invoice
EDITABLE_FIELDS = (
    "items",
    "tax_rate",
    "discount_rate",
    "platform_fee_percentage",
    "platform_fee_description",
    "currency",
    "payment_terms",
    "payment_method",
    "payment_instructions",
    "issue_date",
    "due_date",
    "notes",
    "terms",
    "tags",
    "billing_details",
    "recipient_details",
)


async def invoice_recipient(users: UserDAO, invoice: Invoice) -> Optional[Tuple[str, str]]:
    """(email, name) the invoice is addressed to: its client, else recipient_details."""
    if invoice.client_id:
        client = await users.get_by_id(invoice.client_id)
        if client is not None:
            return client.email, client.name
    details = invoice.recipient_details or {}
    if details.get("email"):
        return details["email"], details.get("name") or details["email"]
    return None


def _jsonable(value: Any) -> Any:
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


class InvoiceService:
    """
    Invoice lifecycle operations with access control and audit.

    Access rules:
    - Admins manage every invoice of their organization
    - Consultants create invoices they are the consultant on and manage
      the invoices they created
    - Clients see the invoices addressed to them and record views
    """

    def __init__(self, session: AsyncSession, email_service: EmailService):
        self.session = session
        self.email = email_service
        self.invoices = InvoiceDAO(session)
        self.transactions = TransactionDAO(session)
        self.users = UserDAO(session)
        self.projects = ProjectDAO(session)
        self.proposals = ProposalDAO(session)
        self.audit = AuditService(session)

    # ========================================================================
    # Access
    # ========================================================================

    async def get_invoice(self, user: User, invoice_id: int) -> Invoice:
        """
        Get an invoice the user may see.

        Raises:
            InvoiceNotFoundError: Not in the user's organization
            OwnershipError: Non-admin who is not a party to the invoice
        """
        invoice = await self.invoices.get_by_id_and_org(invoice_id, user.org_id)
        if invoice is None:
            raise InvoiceNotFoundError(invoice_id=invoice_id)
        if user.role != UserRole.ADMIN and not (
            invoice.has_party(user.id) or invoice.created_by_id == user.id
        ):
            raise OwnershipError(
                message="You do not have access to this invoice",
                invoice_id=invoice_id,
                user_id=user.id,
            )
        return invoice

    async def _get_managed_invoice(self, user: User, invoice_id: int) -> Invoice:
        invoice = await self.get_invoice(user, invoice_id)
        if user.role == UserRole.ADMIN:
            return invoice
        if user.role == UserRole.CONSULTANT and user.id in (
            invoice.created_by_id,
            invoice.consultant_id,
        ):
            return invoice
        raise OwnershipError(
            message="You do not have permission to manage this invoice",
            invoice_id=invoice_id,
            user_id=user.id,
        )

    # ========================================================================
    # Create / update
    # ========================================================================

    async def create_invoice(self, user: User, data: Dict[str, Any]) -> Invoice:
        """
        Create a draft invoice.

        WHAT: Checks the parties and context belong to the organization,
        fills in the due date from the payment terms, the platform fee from
        its percentage and the next invoice date of a recurring series,
        builds the payment schedule, then numbers and saves the invoice.

        Args:
            user: Admin, or consultant billing as themselves
            data: Validated InvoiceCreate dump

        Returns:
            The persisted draft with every derived amount computed

        Raises:
            ValidationError: Missing party, schedule not matching the total,
                or a consultant invoicing as someone else
            UserNotFoundError / ProjectNotFoundError / ProposalNotFoundError
            RecurringConfigError: Recurring without a supported frequency
        """
        data = dict(data)
        invoice_type = InvoiceType(data.get("invoice_type") or InvoiceType.CLIENT)

        if user.role == UserRole.CONSULTANT:
            if data.get("consultant_id") not in (None, user.id):
                raise ValidationError(
                    message="Consultants can only create invoices as themselves",
                    field="consultant_id",
                )
            data["consultant_id"] = user.id
        elif user.role != UserRole.ADMIN:
            raise OwnershipError(
                message="Clients cannot create invoices",
                user_id=user.id,
            )

        await self._check_context(user.org_id, data)

        issue_date = data.get("issue_date") or date.today()
        payment_terms = data.get("payment_terms") or "net_30"
        due_date = data.get("due_date") or due_date_for_terms(
            payment_terms, issue_date, settings.DEFAULT_PAYMENT_TERM_DAYS
        )

        items = data.get("items") or []
        fee_percentage = data.get("platform_fee_percentage")
        if fee_percentage is None and invoice_type == InvoiceType.CLIENT:
            fee_percentage = settings.PLATFORM_FEE_PERCENTAGE or None
        fee_amount = to_decimal(data.get("platform_fee_amount"), "platform_fee_amount")
        if fee_percentage:
            subtotal = recompute_totals(items).subtotal
            fee_amount = calculate_platform_fee(subtotal, fee_percentage)

        totals = recompute_totals(
            items,
            tax_rate=data.get("tax_rate") or 0,
            discount_rate=data.get("discount_rate") or 0,
            platform_fee=fee_amount,
        )
        schedule = self._build_schedule(data.get("payment_schedule"), totals.total)

        recurring = self._recurring_fields(data, issue_date)

        invoice = await self.invoices.create_invoice(
            invoice_type=invoice_type,
            org_id=user.org_id,
            client_id=data.get("client_id"),
            consultant_id=data.get("consultant_id"),
            project_id=data.get("project_id"),
            proposal_id=data.get("proposal_id"),
            created_by_id=user.id,
            items=items,
            currency=(data.get("currency") or settings.DEFAULT_CURRENCY).upper(),
            tax_rate=data.get("tax_rate") or 0,
            discount_rate=data.get("discount_rate") or 0,
            platform_fee_amount=fee_amount,
            platform_fee_percentage=fee_percentage,
            platform_fee_description=data.get("platform_fee_description")
            or ("Platform Fee" if fee_amount else None),
            payment_terms=payment_terms,
            payment_method=data.get("payment_method"),
            payment_instructions=data.get("payment_instructions"),
            payment_schedule=schedule,
            issue_date=issue_date,
            due_date=due_date,
            notes=data.get("notes"),
            terms=data.get("terms"),
            tags=data.get("tags") or [],
            billing_details=data.get("billing_details"),
            recipient_details=data.get("recipient_details"),
            **recurring,
        )

        await self.audit.log_invoice_event(AuditAction.CREATE, invoice, actor_user_id=user.id)
        await self.session.commit()

        logger.info(
            f"Invoice {invoice.invoice_number} created",
            extra={"invoice_id": invoice.id, "total": str(invoice.total), "user_id": user.id},
        )
        return invoice

    async def update_invoice(self, user: User, invoice_id: int, changes: Dict[str, Any]) -> Invoice:
        """
        Edit a draft invoice.

        Derived amounts are recomputed on save. When the platform fee is a
        percentage it follows the new subtotal.

        Raises:
            InvalidStateTransitionError: Invoice is no longer a draft
        """
        invoice = await self._get_managed_invoice(user, invoice_id)
        if not invoice.is_editable:
            raise InvalidStateTransitionError(
                message="Only draft invoices can be edited",
                invoice_id=invoice_id,
                current_status=invoice.current_status.value,
            )

        diff: Dict[str, Any] = {}
        for name in EDITABLE_FIELDS:
            if name not in changes:
                continue
            value = changes[name]
            if name == "currency" and value:
                value = value.upper()
            before = getattr(invoice, name)
            if before != value:
                diff[name] = {"before": _jsonable(before), "after": _jsonable(value)}
                setattr(invoice, name, value)

        if "payment_terms" in diff and "due_date" not in changes:
            invoice.due_date = due_date_for_terms(
                invoice.payment_terms, invoice.issue_date, settings.DEFAULT_PAYMENT_TERM_DAYS
            )
        if invoice.platform_fee_percentage and ("items" in diff or "platform_fee_percentage" in diff):
            subtotal = recompute_totals(invoice.items or []).subtotal
            invoice.platform_fee_amount = calculate_platform_fee(subtotal, invoice.platform_fee_percentage)

        reschedule = "payment_schedule" in changes
        if not diff and not reschedule:
            return invoice

        previous_total = invoice.total
        invoice.recalculate()

        # Installments always have to divide the current total
        if reschedule:
            schedule = self._build_schedule(changes["payment_schedule"], invoice.total)
            diff["payment_schedule"] = {
                "before": _jsonable(invoice.payment_schedule),
                "after": _jsonable(schedule),
            }
            invoice.payment_schedule = schedule
        elif invoice.payment_schedule and invoice.total != previous_total:
            self._check_schedule_total(invoice.payment_schedule, invoice.total)

        await self.audit.log_update(
            resource_type="invoice",
            resource_id=invoice.id,
            actor_user_id=user.id,
            org_id=invoice.org_id,
            changes=diff,
        )
        await self.session.commit()
        return invoice

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def send_invoice(self, user: User, invoice_id: int) -> Invoice:
        """
        Issue a draft and email it to its recipient.

        The email is best effort: the invoice is sent once the status has
        been committed, whatever the email provider answers.
        """
        invoice = await self._get_managed_invoice(user, invoice_id)
        invoice.mark_sent()
        await self.audit.log_invoice_event(AuditAction.INVOICE_SENT, invoice, actor_user_id=user.id)
        await self.session.commit()

        recipient = await self._recipient(invoice)
        if recipient is None:
            logger.warning(f"Invoice {invoice.invoice_number} has no recipient email")
            return invoice

        email, name = recipient
        try:
            result = await self.email.send_invoice_sent(
                to_email=email,
                user_name=name,
                invoice_id=invoice.id,
                invoice_number=invoice.invoice_number,
                total=invoice.total,
                amount_due=invoice.amount_due,
                currency=invoice.currency,
                due_date=invoice.due_date.isoformat() if invoice.due_date else None,
                items=invoice.items,
            )
            if not result.success:
                logger.error(f"Failed to email invoice {invoice.invoice_number}: {result.error}")
        except Exception as e:
            logger.error(f"Failed to email invoice {invoice.invoice_number}: {e}", exc_info=True)
        return invoice

    async def mark_viewed(self, user: User, invoice_id: int) -> Invoice:
        """Stamp viewed_at the first time the invoice's client opens it."""
        invoice = await self.get_invoice(user, invoice_id)
        if user.id == invoice.client_id and invoice.mark_viewed():
            await self.session.commit()
        return invoice

    async def send_reminder(
        self,
        user: User,
        invoice_id: int,
        reminder_type: str = "manual",
    ) -> Invoice:
        """
        Email a payment reminder and record it on the invoice.

        Raises:
            InvalidStateTransitionError: Nothing is payable on the invoice
            ValidationError: The invoice has no recipient email
            EmailServiceError: The reminder could not be delivered
        """
        invoice = await self._get_managed_invoice(user, invoice_id)
        if not invoice.is_payable:
            raise InvalidStateTransitionError(
                message=f"Cannot send a reminder for a {invoice.current_status.value} invoice",
                invoice_id=invoice_id,
                current_status=invoice.current_status.value,
            )

        recipient = await self._recipient(invoice)
        if recipient is None:
            raise ValidationError(message="Invoice has no recipient email", invoice_id=invoice_id)

        email, name = recipient
        result = await self.email.send_invoice_reminder(
            to_email=email,
            user_name=name,
            invoice_id=invoice.id,
            invoice_number=invoice.invoice_number,
            amount_due=invoice.amount_due,
            currency=invoice.currency,
            due_date=invoice.due_date.isoformat() if invoice.due_date else None,
            is_overdue=invoice.is_overdue,
        )
        if not result.success:
            raise EmailServiceError(
                message="Failed to send payment reminder",
                invoice_id=invoice_id,
                error=result.error,
            )

        invoice.add_reminder(reminder_type, sent_to=email)
        await self.session.commit()
        return invoice

    async def cancel_invoice(self, user: User, invoice_id: int, reason: Optional[str] = None) -> Invoice:
        """
        Void an invoice.

        Raises:
            InvalidStateTransitionError: Invoice is paid or refunded
        """
        invoice = await self._get_managed_invoice(user, invoice_id)
        previous = invoice.current_status
        invoice.cancel(reason)
        await self.audit.log_invoice_event(
            AuditAction.INVOICE_CANCELLED,
            invoice,
            actor_user_id=user.id,
            extra_data={"previous_status": previous.value, "reason": reason},
        )
        await self.session.commit()

        logger.info(
            f"Invoice {invoice.invoice_number} cancelled",
            extra={"invoice_id": invoice.id, "reason": reason},
        )
        return invoice

    async def generate_recurring(self, user: User, invoice_id: int) -> Invoice:
        """
        Generate the next invoice of a recurring series now.

        Raises:
            RecurringConfigError: Not recurring, not the latest invoice of its
                series, or the series has ended
        """
        source = await self._get_managed_invoice(user, invoice_id)
        if source.related_invoice_ids:
            raise RecurringConfigError(
                message="Only the latest invoice of a series can generate the next one",
                invoice_id=invoice_id,
                successor_ids=source.related_invoice_ids,
            )
        if source.remaining_cycles is not None and source.remaining_cycles <= 0:
            raise RecurringConfigError(
                message="Recurring series has no cycles left",
                invoice_id=invoice_id,
            )
        if source.recurring_end_date and source.recurring_end_date < date.today():
            raise RecurringConfigError(
                message="Recurring series has ended",
                invoice_id=invoice_id,
            )

        successor = await self.invoices.generate_recurring_invoice(source)
        await self.audit.log_invoice_event(
            AuditAction.RECURRING_GENERATED,
            successor,
            actor_user_id=user.id,
            extra_data={"parent_invoice_id": source.id},
        )
        await self.session.commit()

        logger.info(
            f"Recurring invoice {successor.invoice_number} generated from {source.invoice_number}",
            extra={"invoice_id": successor.id, "parent_invoice_id": source.id},
        )
        return successor

    # ========================================================================
    # Queries
    # ========================================================================

    async def list_invoices(
        self,
        user: User,
        skip: int = 0,
        limit: int = 20,
        **filters: Any,
    ) -> Tuple[List[Invoice], int]:
        """List invoices: admins see the organization, others their own."""
        return await self.invoices.list_invoices(
            org_id=user.org_id,
            party_id=None if user.role == UserRole.ADMIN else user.id,
            skip=skip,
            limit=limit,
            **filters,
        )

    async def get_stats(self, user: User) -> Dict[str, Any]:
        party_id = None if user.role == UserRole.ADMIN else user.id
        by_status = await self.invoices.count_by_status(user.org_id, party_id=party_id)
        if user.role == UserRole.ADMIN:
            outstanding = await self.invoices.calculate_total_outstanding(user.org_id)
        elif user.role == UserRole.CLIENT:
            outstanding = await self.invoices.get_client_total_owed(user.id)
        else:
            outstanding = await self.invoices.get_consultant_total_due(user.id)
        return {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "total_outstanding": outstanding,
            "total_paid": await self.invoices.calculate_total_paid(user.org_id, party_id=party_id),
        }

    async def list_invoice_transactions(self, user: User, invoice_id: int) -> List[Transaction]:
        invoice = await self.get_invoice(user, invoice_id)
        return await self.transactions.list_for_invoice(invoice.id)

    # ========================================================================
    # Helpers
    # ========================================================================

    async def _check_context(self, org_id: int, data: Dict[str, Any]) -> None:
        """Parties, project and proposal must exist in the organization."""
        client_id = data.get("client_id")
        if client_id is not None:
            client = await self.users.get_with_role(client_id, UserRole.CLIENT)
            if client is None or client.org_id != org_id:
                raise UserNotFoundError(message="Client not found", client_id=client_id)

        consultant_id = data.get("consultant_id")
        if consultant_id is not None:
            consultant = await self.users.get_with_role(consultant_id, UserRole.CONSULTANT)
            if consultant is None or consultant.org_id != org_id:
                raise UserNotFoundError(message="Consultant not found", consultant_id=consultant_id)

        project_id = data.get("project_id")
        if project_id is not None and await self.projects.get_by_id_and_org(project_id, org_id) is None:
            raise ProjectNotFoundError(project_id=project_id)

        proposal_id = data.get("proposal_id")
        if proposal_id is not None and await self.proposals.get_by_id_and_org(proposal_id, org_id) is None:
            raise ProposalNotFoundError(proposal_id=proposal_id)

    @staticmethod
    def _build_schedule(
        installments: Optional[List[Dict[str, Any]]],
        total: Any,
    ) -> Optional[List[Dict[str, Any]]]:
        """Installments must add up to the invoice total."""
        if not installments:
            return None
        schedule = [
            build_installment(entry["amount"], entry["due_date"], entry.get("description"))
            for entry in installments
        ]
        InvoiceService._check_schedule_total(schedule, total)
        return schedule

    @staticmethod
    def _check_schedule_total(schedule: List[Dict[str, Any]], total: Any) -> None:
        scheduled = sum(to_decimal(entry["amount"]) for entry in schedule)
        if scheduled != to_decimal(total):
            raise ValidationError(
                message=f"Payment schedule adds up to {scheduled}, invoice total is {total}",
                field="payment_schedule",
                scheduled=str(scheduled),
                total=str(total),
            )

    @staticmethod
    def _recurring_fields(data: Dict[str, Any], issue_date: date) -> Dict[str, Any]:
        if not data.get("is_recurring"):
            return {"is_recurring": False}

        frequency = data.get("recurring_frequency")
        if frequency not in RecurringFrequency.ALL:
            raise RecurringConfigError(
                message=f"Recurring frequency must be one of {', '.join(RecurringFrequency.ALL)}",
                frequency=frequency,
            )
        return {
            "is_recurring": True,
            "recurring_frequency": frequency,
            "next_invoice_date": data.get("next_invoice_date") or next_due_date(frequency, issue_date),
            "recurring_end_date": data.get("recurring_end_date"),
            "remaining_cycles": data.get("remaining_cycles"),
        }

    async def _recipient(self, invoice: Invoice) -> Optional[Tuple[str, str]]:
        return await invoice_recipient(self.users, invoice)
