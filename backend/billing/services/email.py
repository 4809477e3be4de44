"""
Email service for sending billing notifications.

WHAT: This service provides a unified interface for sending the emails a
payment flow produces: receipts, refund notices, bank transfer
instructions, payout notices and invoice delivery/reminders.

WHY: Email is how every party learns that money moved:
1. Clients get receipts and bank transfer instructions
2. Consultants learn when a payout was initiated or sent
3. Finance learns when a manual bank payout must be made
4. Admins learn about every refund

HOW: Uses the Resend API when configured, otherwise a mock provider that
records messages. Templates are rendered by EmailTemplateService.

Design decisions:
- Provider abstraction: Easy to switch providers
- Fail-safe: send methods return an EmailResult instead of raising, so the
  payment service can treat notification failures as non-fatal
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional, Dict, Any, List
from datetime import datetime

import httpx

from billing.core.config import settings
from billing.services.email_template_service import get_email_template_service, EmailTemplateService

logger = logging.getLogger(__name__)


# ============================================================================
# Email Types
# ============================================================================


class EmailType(str, Enum):
    """
    Types of billing emails.

    WHY: Categorizing emails enables per-type logging and lets tests
    assert on what was sent without parsing subjects.
    """

    PAYMENT = "payment"
    """Payment receipt or bank transfer instructions."""

    REFUND = "refund"
    """Refund confirmation to the client."""

    PAYOUT = "payout"
    """Payout initiated/completed notices and finance payout requests."""

    INVOICE = "invoice"
    """Invoice delivery and reminders."""

    ADMIN = "admin"
    """Operational notices to platform admins."""


@dataclass
class EmailMessage:
    """
    Represents an email to be sent.

    WHAT: Data container for email content and metadata.
    """

    to_email: str
    """Recipient email address."""

    subject: str
    """Email subject line."""

    html_content: str
    """HTML email body."""

    text_content: Optional[str] = None
    """Plain text fallback."""

    from_email: Optional[str] = None
    """Sender email (defaults to configured sender)."""

    reply_to: Optional[str] = None
    """Reply-to address."""

    email_type: EmailType = EmailType.PAYMENT
    """Type of email for tracking/logging."""

    metadata: Optional[Dict[str, Any]] = None
    """Additional metadata for tracking."""


@dataclass
class EmailResult:
    """
    Result of an email send operation.

    WHY: Lets callers log delivery failures without a try/except around
    every notification.
    """

    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    provider: Optional[str] = None


# ============================================================================
# Email Provider Interface
# ============================================================================


class EmailProvider(ABC):
    """Abstract base class for email providers."""

    @abstractmethod
    async def send(self, message: EmailMessage) -> EmailResult:
        """
        Send an email message.

        Returns:
            EmailResult with success status and provider details
        """
        pass

    @abstractmethod
    def is_configured(self) -> bool:
        """Check if API keys/credentials are present."""
        pass


class ResendProvider(EmailProvider):
    """
    Resend email provider implementation.

    HOW: Posts to the Resend REST API with httpx.
    """

    API_URL = "https://api.resend.com/emails"

    def __init__(self, api_key: Optional[str] = None):
        self._api_key = api_key or settings.RESEND_API_KEY
        self._default_from = f"{settings.EMAIL_FROM_NAME} <{settings.EMAIL_FROM_ADDRESS}>"

    def is_configured(self) -> bool:
        return bool(self._api_key)

    async def send(self, message: EmailMessage) -> EmailResult:
        """
        Send email via Resend API.

        Network and API errors are returned as a failed EmailResult.
        """
        if not self.is_configured():
            return EmailResult(
                success=False,
                error="Resend API key not configured",
                provider="resend",
            )

        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    self.API_URL,
                    headers={
                        "Authorization": f"Bearer {self._api_key}",
                        "Content-Type": "application/json",
                    },
                    json={
                        "from": message.from_email or self._default_from,
                        "to": [message.to_email],
                        "subject": message.subject,
                        "html": message.html_content,
                        "text": message.text_content,
                        "reply_to": message.reply_to,
                    },
                    timeout=30.0,
                )

            if response.status_code in (200, 201):
                return EmailResult(
                    success=True,
                    message_id=response.json().get("id"),
                    provider="resend",
                )
            return EmailResult(
                success=False,
                error=f"Resend API error: {response.status_code} - {response.text}",
                provider="resend",
            )

        except httpx.HTTPError as e:
            logger.error(f"Resend send error: {e}")
            return EmailResult(success=False, error=str(e), provider="resend")


class MockEmailProvider(EmailProvider):
    """
    Mock email provider for testing and development.

    WHY: Allows testing payment flows without sending real emails.
    Logs emails instead of sending them.
    """

    sent_emails: List[EmailMessage] = []
    """Class-level list to track sent emails for testing."""

    def is_configured(self) -> bool:
        return True

    async def send(self, message: EmailMessage) -> EmailResult:
        logger.info(
            f"[MOCK EMAIL] To: {message.to_email}, "
            f"Subject: {message.subject}, "
            f"Type: {message.email_type.value}"
        )

        MockEmailProvider.sent_emails.append(message)

        return EmailResult(
            success=True,
            message_id=f"mock-{datetime.utcnow().timestamp()}",
            provider="mock",
        )

    @classmethod
    def clear_sent_emails(cls):
        """Clear sent emails list (for test cleanup)."""
        cls.sent_emails = []


# ============================================================================
# Email Service
# ============================================================================


def bank_transfer_details() -> Dict[str, str]:
    """Platform bank account clients transfer to."""
    return {
        "account_name": settings.BANK_TRANSFER_ACCOUNT_NAME,
        "account_number": settings.BANK_TRANSFER_ACCOUNT_NUMBER,
        "routing_number": settings.BANK_TRANSFER_ROUTING_NUMBER,
        "bank_name": settings.BANK_TRANSFER_BANK_NAME,
    }


class EmailService:
    """
    High-level email service for billing notifications.

    WHAT: One method per notification the payment flows send. Each renders
    its template and hands an EmailMessage to the provider.

    HOW: Provider is Resend when RESEND_API_KEY is set, otherwise the mock
    provider. Every method returns an EmailResult.
    """

    def __init__(
        self,
        provider: Optional[EmailProvider] = None,
        template_service: Optional[EmailTemplateService] = None,
    ):
        if provider:
            self._provider = provider
        elif settings.RESEND_API_KEY:
            self._provider = ResendProvider()
        else:
            logger.warning("No email provider configured, using mock provider")
            self._provider = MockEmailProvider()

        self._template_service = template_service or get_email_template_service()

    @property
    def provider(self) -> EmailProvider:
        return self._provider

    async def send_email(self, message: EmailMessage) -> EmailResult:
        """
        Send an email message.

        WHY: Central entry point for all email sending ensures consistent
        logging of every email and its outcome.
        """
        logger.info(
            f"Sending {message.email_type.value} email to {message.to_email}",
            extra={
                "email_type": message.email_type.value,
                "to": message.to_email,
            },
        )

        result = await self._provider.send(message)

        if result.success:
            logger.info(
                f"Email sent successfully: {result.message_id}",
                extra={
                    "message_id": result.message_id,
                    "provider": result.provider,
                },
            )
        else:
            logger.error(
                f"Email send failed: {result.error}",
                extra={
                    "email_type": message.email_type.value,
                    "to": message.to_email,
                    "error": result.error,
                },
            )

        return result

    async def _send_rendered(
        self,
        to_email: str,
        rendered,
        email_type: EmailType,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> EmailResult:
        subject, html_content, text_content = rendered
        return await self.send_email(
            EmailMessage(
                to_email=to_email,
                subject=subject,
                html_content=html_content,
                text_content=text_content,
                email_type=email_type,
                metadata=metadata,
            )
        )

    # ------------------------------------------------------------------
    # Client payment emails
    # ------------------------------------------------------------------

    async def send_payment_confirmation(
        self,
        to_email: str,
        user_name: str,
        amount: Decimal,
        currency: str,
        transaction_ref: str,
        description: Optional[str] = None,
        invoice_number: Optional[str] = None,
        receipt_url: Optional[str] = None,
    ) -> EmailResult:
        """
        Send a payment receipt to the payer.

        WHEN: A card payment completes, synchronously or through a webhook.
        """
        rendered = self._template_service.render_payment_confirmation(
            user_name=user_name,
            amount=amount,
            currency=currency,
            transaction_ref=transaction_ref,
            description=description,
            invoice_number=invoice_number,
            receipt_url=receipt_url,
        )
        return await self._send_rendered(
            to_email,
            rendered,
            EmailType.PAYMENT,
            {"transaction_ref": transaction_ref, "action": "payment_confirmed"},
        )

    async def send_refund_confirmation(
        self,
        to_email: str,
        user_name: str,
        amount: Decimal,
        currency: str,
        transaction_ref: str,
        original_transaction_ref: str,
        description: Optional[str] = None,
    ) -> EmailResult:
        rendered = self._template_service.render_refund_confirmation(
            user_name=user_name,
            amount=amount,
            currency=currency,
            transaction_ref=transaction_ref,
            original_transaction_ref=original_transaction_ref,
            description=description,
        )
        return await self._send_rendered(
            to_email,
            rendered,
            EmailType.REFUND,
            {"transaction_ref": transaction_ref, "original": original_transaction_ref},
        )

    async def send_bank_transfer_instructions(
        self,
        to_email: str,
        user_name: str,
        amount: Decimal,
        currency: str,
        transaction_ref: str,
        description: Optional[str] = None,
    ) -> EmailResult:
        """
        Send the platform bank details and the reference to quote.

        WHY: A bank transfer payment stays pending until finance reconciles
        it, and the reference is the only link between the two.
        """
        rendered = self._template_service.render_bank_transfer_instructions(
            user_name=user_name,
            amount=amount,
            currency=currency,
            transaction_ref=transaction_ref,
            bank_details=bank_transfer_details(),
            description=description,
        )
        return await self._send_rendered(
            to_email,
            rendered,
            EmailType.PAYMENT,
            {"transaction_ref": transaction_ref, "action": "bank_transfer_instructions"},
        )

    # ------------------------------------------------------------------
    # Payout and admin emails
    # ------------------------------------------------------------------

    async def send_payout_notification(
        self,
        consultant_name: str,
        consultant_email: str,
        amount: Decimal,
        currency: str,
        transaction_ref: str,
        bank_details: Optional[Dict[str, Any]] = None,
    ) -> EmailResult:
        """Ask the finance team to make a manual bank payout."""
        rendered = self._template_service.render_payout_notification(
            consultant_name=consultant_name,
            consultant_email=consultant_email,
            amount=amount,
            currency=currency,
            transaction_ref=transaction_ref,
            bank_details=bank_details,
        )
        return await self._send_rendered(
            settings.FINANCE_EMAIL,
            rendered,
            EmailType.PAYOUT,
            {"transaction_ref": transaction_ref, "action": "payout_requested"},
        )

    async def send_payout_initiated(
        self,
        to_email: str,
        user_name: str,
        amount: Decimal,
        currency: str,
        transaction_ref: str,
        method: str = "bank_transfer",
    ) -> EmailResult:
        rendered = self._template_service.render_payout_status(
            user_name=user_name,
            amount=amount,
            currency=currency,
            transaction_ref=transaction_ref,
            completed=False,
            method=method,
        )
        return await self._send_rendered(
            to_email,
            rendered,
            EmailType.PAYOUT,
            {"transaction_ref": transaction_ref, "action": "payout_initiated"},
        )

    async def send_payout_completed(
        self,
        to_email: str,
        user_name: str,
        amount: Decimal,
        currency: str,
        transaction_ref: str,
        method: str = "stripe",
    ) -> EmailResult:
        rendered = self._template_service.render_payout_status(
            user_name=user_name,
            amount=amount,
            currency=currency,
            transaction_ref=transaction_ref,
            completed=True,
            method=method,
        )
        return await self._send_rendered(
            to_email,
            rendered,
            EmailType.PAYOUT,
            {"transaction_ref": transaction_ref, "action": "payout_completed"},
        )

    async def send_admin_refund_notification(
        self,
        amount: Decimal,
        currency: str,
        transaction_ref: str,
        original_transaction_ref: str,
        client: str,
        reason: Optional[str] = None,
        requires_manual_processing: bool = False,
        to_email: Optional[str] = None,
    ) -> EmailResult:
        """
        Tell the admin inbox about a refund.

        requires_manual_processing is set for bank transfer refunds, which
        nobody can send back through the gateway.
        """
        rendered = self._template_service.render_admin_refund_notification(
            amount=amount,
            currency=currency,
            transaction_ref=transaction_ref,
            original_transaction_ref=original_transaction_ref,
            client=client,
            reason=reason,
            requires_manual_processing=requires_manual_processing,
        )
        return await self._send_rendered(
            to_email or settings.ADMIN_EMAIL,
            rendered,
            EmailType.ADMIN,
            {"transaction_ref": transaction_ref, "manual": requires_manual_processing},
        )

    # ------------------------------------------------------------------
    # Invoice emails
    # ------------------------------------------------------------------

    async def send_invoice_sent(
        self,
        to_email: str,
        user_name: str,
        invoice_id: int,
        invoice_number: str,
        total: Decimal,
        amount_due: Decimal,
        currency: str,
        due_date: Optional[str] = None,
        items: Optional[List[Dict[str, Any]]] = None,
    ) -> EmailResult:
        """Deliver an invoice with a payment link to its recipient."""
        rendered = self._template_service.render_invoice_sent(
            user_name=user_name,
            invoice_id=invoice_id,
            invoice_number=invoice_number,
            total=total,
            amount_due=amount_due,
            currency=currency,
            due_date=due_date,
            items=items,
        )
        return await self._send_rendered(
            to_email,
            rendered,
            EmailType.INVOICE,
            {"invoice_id": invoice_id, "invoice_number": invoice_number, "action": "sent"},
        )

    async def send_invoice_reminder(
        self,
        to_email: str,
        user_name: str,
        invoice_id: int,
        invoice_number: str,
        amount_due: Decimal,
        currency: str,
        due_date: Optional[str] = None,
        is_overdue: bool = False,
    ) -> EmailResult:
        rendered = self._template_service.render_invoice_reminder(
            user_name=user_name,
            invoice_id=invoice_id,
            invoice_number=invoice_number,
            amount_due=amount_due,
            currency=currency,
            due_date=due_date,
            is_overdue=is_overdue,
        )
        return await self._send_rendered(
            to_email,
            rendered,
            EmailType.INVOICE,
            {"invoice_id": invoice_id, "invoice_number": invoice_number, "action": "reminder"},
        )


# ============================================================================
# Module-level convenience functions
# ============================================================================


_email_service: Optional[EmailService] = None


def get_email_service() -> EmailService:
    """
    Get or create the global email service instance.

    Returns:
        EmailService instance
    """
    global _email_service

    if _email_service is None:
        _email_service = EmailService()

    return _email_service
