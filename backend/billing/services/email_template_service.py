"""
Email Template Service for rendering Jinja2 billing email templates.

WHAT: Loads and renders the billing notification templates: payment and
refund confirmations, bank transfer instructions, payout notices and
invoice sent/reminder emails.

WHY: Template-based emails provide:
- Consistent branding across all billing emails
- Content updates without touching the payment code
- Template inheritance (every email extends base.html)

HOW: Jinja2 environment with FileSystemLoader over the package's
templates/email directory. Each render_* method returns
(subject, html, text).
"""

import logging
from decimal import Decimal
from pathlib import Path
from typing import Dict, Any, Optional, Tuple
from datetime import datetime

from jinja2 import Environment, FileSystemLoader, select_autoescape, TemplateNotFound

from billing.core.config import settings
from billing.core.exceptions import EmailServiceError


logger = logging.getLogger(__name__)

Rendered = Tuple[str, str, str]


def format_money(amount: Any, currency: str = "USD") -> str:
    """Format an amount as "1,234.50 USD"."""
    value = Decimal(str(amount if amount is not None else 0)).quantize(Decimal("0.01"))
    return f"{value:,} {currency.upper()}"


class EmailTemplateService:
    """
    Service for rendering billing email templates.

    Example:
        template_service = EmailTemplateService()
        subject, html, text = template_service.render_payment_confirmation(
            user_name="Ada",
            amount=Decimal("150.00"),
            currency="USD",
            transaction_ref="txn_1a2b",
        )
    """

    def __init__(self, template_dir: Optional[Path] = None):
        """
        Initialize template service.

        Args:
            template_dir: Path to templates directory (defaults to billing/templates/email)
        """
        if template_dir is None:
            template_dir = Path(__file__).parent.parent / "templates" / "email"

        self._template_dir = template_dir
        self._env = self._create_environment()

    def _create_environment(self) -> Environment:
        """
        Create Jinja2 environment.

        WHY: Auto-escaping prevents XSS through invoice notes or names.
        """
        env = Environment(
            loader=FileSystemLoader(str(self._template_dir)),
            autoescape=select_autoescape(["html", "xml"]),
            trim_blocks=True,
            lstrip_blocks=True,
        )
        env.filters["money"] = format_money
        return env

    def _get_base_context(self) -> Dict[str, Any]:
        return {
            "year": datetime.utcnow().year,
            "frontend_url": settings.FRONTEND_URL,
            "platform_name": settings.EMAIL_FROM_NAME,
        }

    def render_template(self, template_name: str, context: Dict[str, Any]) -> str:
        """
        Render a template with given context.

        Raises:
            EmailServiceError: If template not found or render fails
        """
        try:
            template = self._env.get_template(template_name)
            full_context = {**self._get_base_context(), **context}
            return template.render(**full_context)
        except TemplateNotFound:
            logger.error(f"Email template not found: {template_name}")
            raise EmailServiceError(
                message=f"Email template not found: {template_name}",
                template=template_name,
            )
        except Exception as e:
            logger.error(f"Error rendering template {template_name}: {e}")
            raise EmailServiceError(
                message="Failed to render email template",
                template=template_name,
                error=str(e),
            )

    # ------------------------------------------------------------------
    # Client payment emails
    # ------------------------------------------------------------------

    def render_payment_confirmation(
        self,
        user_name: str,
        amount: Decimal,
        currency: str,
        transaction_ref: str,
        description: Optional[str] = None,
        invoice_number: Optional[str] = None,
        receipt_url: Optional[str] = None,
        paid_at: Optional[datetime] = None,
    ) -> Rendered:
        """Render the receipt sent when a payment completes."""
        paid_at = paid_at or datetime.utcnow()
        context = {
            "user_name": user_name,
            "amount": amount,
            "currency": currency,
            "transaction_ref": transaction_ref,
            "description": description,
            "invoice_number": invoice_number,
            "receipt_url": receipt_url,
            "paid_at": paid_at.strftime("%Y-%m-%d %H:%M UTC"),
        }
        html = self.render_template("payment_confirmation.html", context)
        text = self._generate_text_version(
            f"Hi {user_name},\n\n"
            f"We received your payment of {format_money(amount, currency)}.\n\n"
            f"Reference: {transaction_ref}\n"
            + (f"Invoice: {invoice_number}\n" if invoice_number else "")
            + (f"Receipt: {receipt_url}\n" if receipt_url else "")
        )
        return f"Payment received: {format_money(amount, currency)}", html, text

    def render_refund_confirmation(
        self,
        user_name: str,
        amount: Decimal,
        currency: str,
        transaction_ref: str,
        original_transaction_ref: str,
        description: Optional[str] = None,
    ) -> Rendered:
        """Render the notice sent to a client when money is returned."""
        context = {
            "user_name": user_name,
            "amount": amount,
            "currency": currency,
            "transaction_ref": transaction_ref,
            "original_transaction_ref": original_transaction_ref,
            "description": description,
        }
        html = self.render_template("refund_confirmation.html", context)
        text = self._generate_text_version(
            f"Hi {user_name},\n\n"
            f"A refund of {format_money(amount, currency)} has been issued.\n\n"
            f"Refund reference: {transaction_ref}\n"
            f"Original payment: {original_transaction_ref}"
        )
        return f"Refund issued: {format_money(amount, currency)}", html, text

    def render_bank_transfer_instructions(
        self,
        user_name: str,
        amount: Decimal,
        currency: str,
        transaction_ref: str,
        bank_details: Dict[str, str],
        description: Optional[str] = None,
    ) -> Rendered:
        """
        Render bank transfer instructions.

        The transaction reference doubles as the payment reference the
        client must quote so finance can reconcile the transfer.
        """
        context = {
            "user_name": user_name,
            "amount": amount,
            "currency": currency,
            "transaction_ref": transaction_ref,
            "bank_details": bank_details,
            "description": description,
        }
        html = self.render_template("bank_transfer_instructions.html", context)
        lines = "\n".join(f"{key.replace('_', ' ').title()}: {value}" for key, value in bank_details.items())
        text = self._generate_text_version(
            f"Hi {user_name},\n\n"
            f"Please transfer {format_money(amount, currency)} to:\n\n"
            f"{lines}\n\n"
            f"Quote this reference with your transfer: {transaction_ref}"
        )
        return "Bank transfer instructions", html, text

    # ------------------------------------------------------------------
    # Payout emails
    # ------------------------------------------------------------------

    def render_payout_notification(
        self,
        consultant_name: str,
        consultant_email: str,
        amount: Decimal,
        currency: str,
        transaction_ref: str,
        bank_details: Optional[Dict[str, Any]] = None,
    ) -> Rendered:
        """Render the finance team notice for a manual bank payout."""
        context = {
            "consultant_name": consultant_name,
            "consultant_email": consultant_email,
            "amount": amount,
            "currency": currency,
            "transaction_ref": transaction_ref,
            "bank_details": bank_details,
        }
        html = self.render_template("payout_notification.html", context)
        text = self._generate_text_version(
            f"Payout requested: {format_money(amount, currency)}\n\n"
            f"Consultant: {consultant_name} ({consultant_email})\n"
            f"Reference: {transaction_ref}\n"
            f"Bank details: {bank_details or 'No bank details on file'}"
        )
        return f"Payout to process: {transaction_ref}", html, text

    def render_payout_status(
        self,
        user_name: str,
        amount: Decimal,
        currency: str,
        transaction_ref: str,
        completed: bool,
        method: str,
    ) -> Rendered:
        """Render the consultant notice for an initiated or completed payout."""
        context = {
            "user_name": user_name,
            "amount": amount,
            "currency": currency,
            "transaction_ref": transaction_ref,
            "completed": completed,
            "method": method,
        }
        html = self.render_template("payout_status.html", context)
        if completed:
            subject = f"Payout sent: {format_money(amount, currency)}"
            body = f"Your payout of {format_money(amount, currency)} has been sent via {method}."
        else:
            subject = f"Payout initiated: {format_money(amount, currency)}"
            body = (
                f"Your payout of {format_money(amount, currency)} has been initiated "
                f"and should arrive within 3-5 business days."
            )
        text = self._generate_text_version(
            f"Hi {user_name},\n\n{body}\n\nReference: {transaction_ref}"
        )
        return subject, html, text

    def render_admin_refund_notification(
        self,
        amount: Decimal,
        currency: str,
        transaction_ref: str,
        original_transaction_ref: str,
        client: str,
        reason: Optional[str],
        requires_manual_processing: bool,
    ) -> Rendered:
        """Render the admin notice sent for every refund."""
        context = {
            "amount": amount,
            "currency": currency,
            "transaction_ref": transaction_ref,
            "original_transaction_ref": original_transaction_ref,
            "client": client,
            "reason": reason,
            "requires_manual_processing": requires_manual_processing,
        }
        html = self.render_template("admin_refund_notification.html", context)
        text = self._generate_text_version(
            f"Refund {transaction_ref} of {format_money(amount, currency)}\n\n"
            f"Original payment: {original_transaction_ref}\n"
            f"Client: {client}\n"
            f"Reason: {reason or 'not given'}\n"
            + ("This refund must be processed manually.\n" if requires_manual_processing else "")
        )
        return f"Refund {transaction_ref}", html, text

    # ------------------------------------------------------------------
    # Invoice emails
    # ------------------------------------------------------------------

    def render_invoice_sent(
        self,
        user_name: str,
        invoice_id: int,
        invoice_number: str,
        total: Decimal,
        amount_due: Decimal,
        currency: str,
        due_date: Optional[str] = None,
        items: Optional[list] = None,
    ) -> Rendered:
        """Render the email that delivers an invoice to its recipient."""
        invoice_url = f"{settings.FRONTEND_URL}/invoices/{invoice_id}"
        payment_url = f"{settings.FRONTEND_URL}/invoices/{invoice_id}/pay"
        context = {
            "user_name": user_name,
            "invoice_number": invoice_number,
            "invoice_url": invoice_url,
            "payment_url": payment_url,
            "total": total,
            "amount_due": amount_due,
            "currency": currency,
            "due_date": due_date,
            "items": items or [],
        }
        html = self.render_template("invoice_sent.html", context)
        text = self._generate_text_version(
            f"Hi {user_name},\n\n"
            f"Invoice {invoice_number} for {format_money(total, currency)} is ready.\n"
            + (f"Due: {due_date}\n" if due_date else "")
            + f"\nPay now: {payment_url}\nView invoice: {invoice_url}"
        )
        return f"Invoice {invoice_number}", html, text

    def render_invoice_reminder(
        self,
        user_name: str,
        invoice_id: int,
        invoice_number: str,
        amount_due: Decimal,
        currency: str,
        due_date: Optional[str] = None,
        is_overdue: bool = False,
    ) -> Rendered:
        """Render a payment reminder, worded for overdue invoices when needed."""
        payment_url = f"{settings.FRONTEND_URL}/invoices/{invoice_id}/pay"
        context = {
            "user_name": user_name,
            "invoice_number": invoice_number,
            "payment_url": payment_url,
            "amount_due": amount_due,
            "currency": currency,
            "due_date": due_date,
            "is_overdue": is_overdue,
        }
        html = self.render_template("invoice_reminder.html", context)
        status = "is overdue" if is_overdue else "is due soon"
        text = self._generate_text_version(
            f"Hi {user_name},\n\n"
            f"Invoice {invoice_number} {status}. "
            f"Amount due: {format_money(amount_due, currency)}.\n\n"
            f"Pay now: {payment_url}"
        )
        prefix = "Overdue" if is_overdue else "Reminder"
        return f"{prefix}: invoice {invoice_number}", html, text

    @staticmethod
    def _generate_text_version(content: str) -> str:
        """Append the standard footer to a plain text body."""
        footer = (
            "\n\n---\n"
            f"{settings.EMAIL_FROM_NAME}\n"
            "Questions about this email? Reply to reach our billing team."
        )
        return content.strip() + footer


# Module-level singleton
_template_service: Optional[EmailTemplateService] = None


def get_email_template_service() -> EmailTemplateService:
    """Get or create the global template service instance."""
    global _template_service

    if _template_service is None:
        _template_service = EmailTemplateService()

    return _template_service
