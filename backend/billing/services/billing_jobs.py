"""
Billing background jobs.

WHAT: The periodic invoice jobs: persisting the overdue status of past-due
invoices, generating the next invoice of due recurring series and
reminding clients of invoices that fall due soon.

WHY: Status is derived on every save, but an invoice nobody touches would
never show as overdue, and recurring series only advance when something
generates their next invoice. The jobs are plain coroutines so they can
be run by the scheduler, from a shell or from tests.

HOW: Each job opens its own session from a session factory (the
application's AsyncSessionLocal by default). Recurring invoices are
generated and committed one series at a time so a broken series does not
hold back the others.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from billing.core.config import settings
from billing.dao.invoice import InvoiceDAO
from billing.dao.user import UserDAO
from billing.db.session import AsyncSessionLocal
from billing.models.audit_log import AuditAction
from billing.services.audit import AuditService
from billing.services.email import EmailService, get_email_service
from billing.services.invoice_service import invoice_recipient


logger = logging.getLogger(__name__)

UPCOMING_REMINDER = "upcoming"


class BillingJobs:
    """
    Periodic invoice maintenance.

    Example:
        jobs = BillingJobs()
        await jobs.refresh_overdue_invoices()
    """

    def __init__(
        self,
        session_factory: Optional[Callable[[], AsyncSession]] = None,
        email_service: Optional[EmailService] = None,
    ):
        """
        Args:
            session_factory: Callable returning a new AsyncSession
                (defaults to the application's AsyncSessionLocal)
            email_service: Reminder delivery (defaults to the shared service)
        """
        self._session_factory = session_factory or AsyncSessionLocal
        self._email_service = email_service

    @property
    def email(self) -> EmailService:
        if self._email_service is None:
            self._email_service = get_email_service()
        return self._email_service

    async def refresh_overdue_invoices(self, now: Optional[datetime] = None) -> dict:
        """
        Persist OVERDUE on every issued, unsettled invoice past its due date.

        Returns:
            {"checked_at": ISO timestamp, "updated": count}
        """
        now = now or datetime.utcnow()
        logger.info("Starting overdue invoice check")

        async with self._session_factory() as session:
            try:
                changed = await InvoiceDAO(session).refresh_overdue_statuses(now.date())
                await session.commit()
            except Exception as e:
                logger.error(f"Error in overdue invoice check: {e}", exc_info=True)
                await session.rollback()
                raise

        if changed:
            logger.info(
                f"Marked {len(changed)} invoices overdue",
                extra={"invoice_ids": [invoice.id for invoice in changed]},
            )
        return {"checked_at": now.isoformat(), "updated": len(changed)}

    async def generate_due_recurring_invoices(self, now: Optional[datetime] = None) -> dict:
        """
        Generate the next invoice for every recurring series that is due.

        Returns:
            {"generated": [new invoice numbers], "errors": count}
        """
        now = now or datetime.utcnow()
        logger.info("Starting recurring invoice generation")
        generated = []
        errors = 0

        async with self._session_factory() as session:
            dao = InvoiceDAO(session)
            audit = AuditService(session)
            source_ids = [invoice.id for invoice in await dao.get_due_recurring(now.date())]

            for source_id in source_ids:
                try:
                    source = await dao.get_for_update(source_id)
                    successor = await dao.generate_recurring_invoice(source, now=now)
                    await audit.log_invoice_event(
                        AuditAction.RECURRING_GENERATED,
                        successor,
                        extra_data={"parent_invoice_id": source.id, "source": "scheduler"},
                    )
                    await session.commit()
                    generated.append(successor.invoice_number)
                except Exception as e:
                    await session.rollback()
                    errors += 1
                    logger.error(
                        f"Error generating recurring invoice from {source_id}: {e}",
                        exc_info=True,
                    )

        logger.info(
            f"Recurring generation completed. Generated: {len(generated)}, Errors: {errors}"
        )
        return {"generated": generated, "errors": errors}


    async def send_upcoming_reminders(self, now: Optional[datetime] = None) -> dict:
        """
        Email one reminder for each payable invoice that falls due soon.

        WHAT: Invoices due within settings.UPCOMING_REMINDER_DAYS get a
        reminder email, recorded on the invoice as an "upcoming" reminder.
        Invoices that already have one are not emailed again.

        Returns:
            {"sent": [invoice numbers], "skipped": no recipient, "errors": count}
        """
        now = now or datetime.utcnow()
        logger.info("Starting upcoming invoice reminders")
        sent = []
        skipped = 0
        errors = 0

        async with self._session_factory() as session:
            dao = InvoiceDAO(session)
            users = UserDAO(session)
            upcoming = await dao.find_upcoming(days=settings.UPCOMING_REMINDER_DAYS, today=now.date())

            for invoice in upcoming:
                if any(
                    entry.get("reminder_type") == UPCOMING_REMINDER
                    for entry in invoice.reminders_sent or []
                ):
                    continue

                recipient = await invoice_recipient(users, invoice)
                if recipient is None:
                    skipped += 1
                    logger.warning(f"Invoice {invoice.invoice_number} has no recipient email")
                    continue

                email, name = recipient
                try:
                    result = await self.email.send_invoice_reminder(
                        to_email=email,
                        user_name=name,
                        invoice_id=invoice.id,
                        invoice_number=invoice.invoice_number,
                        amount_due=invoice.amount_due,
                        currency=invoice.currency,
                        due_date=invoice.due_date.isoformat(),
                    )
                except Exception as e:
                    result = None
                    logger.error(
                        f"Error sending reminder for invoice {invoice.invoice_number}: {e}",
                        exc_info=True,
                    )
                if result is None or not result.success:
                    errors += 1
                    continue

                invoice.add_reminder(UPCOMING_REMINDER, sent_to=email, now=now)
                await session.commit()
                sent.append(invoice.invoice_number)

        logger.info(f"Upcoming reminders completed. Sent: {len(sent)}, Errors: {errors}")
        return {"sent": sent, "skipped": skipped, "errors": errors}


# Singleton instance for the scheduler
_billing_jobs: Optional[BillingJobs] = None


def get_billing_jobs() -> BillingJobs:
    """Get or create the billing jobs instance."""
    global _billing_jobs
    if _billing_jobs is None:
        _billing_jobs = BillingJobs()
    return _billing_jobs
