"""
Payment service: orchestrates money movements between the ledger, the
invoices and the payment gateway.

WHAT: Processes client payments (card through Stripe, or bank transfer),
confirms payment intents, refunds payments, pays consultants out, creates
hosted checkout sessions for invoices and reconciles gateway webhooks.
Also manages clients' saved cards and consultants' Connect onboarding.

WHY: A payment touches three systems that can each fail independently:
our Transaction ledger, the Invoice it settles and the gateway that moves
the money. This service fixes the order in which they are touched:

1. A pending Transaction is committed before the gateway is called, so a
   record of the attempt exists whatever happens next.
2. The gateway is called. A gateway error marks the Transaction failed and
   surfaces as PaymentGatewayError; nothing is applied to the invoice.
3. The Transaction outcome and the invoice change are committed together,
   with the invoice row locked (SELECT ... FOR UPDATE), so concurrent
   payments on one invoice cannot lose an update.

Notifications and audit entries are side effects: their failures are
logged and never fail the payment.

HOW: One PaymentService per request, built over the request's
AsyncSession with the Stripe and email services injected.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from billing.core.config import settings
from billing.core.exceptions import (
    AuthorizationError,
    InvalidAmountError,
    InvalidStateTransitionError,
    InvoiceNotFoundError,
    OverpaymentError,
    OwnershipError,
    PaymentGatewayError,
    PaymentMethodNotFoundError,
    ProjectNotFoundError,
    ProposalNotFoundError,
    TransactionNotFoundError,
    UnsupportedPaymentMethodError,
    UserNotFoundError,
    ValidationError,
)
from billing.dao.invoice import InvoiceDAO
from billing.dao.profile import ClientProfileDAO, ConsultantProfileDAO
from billing.dao.project import ProjectDAO, ProposalDAO
from billing.dao.transaction import TransactionDAO
from billing.dao.user import UserDAO
from billing.models.invoice import Invoice, OverpaymentPolicy
from billing.models.invoice_calculator import quantize_money, to_decimal
from billing.models.invoice_state import InvoiceStatus
from billing.models.profile import ClientProfile
from billing.models.transaction import (
    PaymentMethod,
    RefundReason,
    Transaction,
    TransactionStatus,
    TransactionType,
    map_gateway_status,
)
from billing.models.user import User, UserRole
from billing.services.audit import AuditService
from billing.services.email import EmailService
from billing.services.stripe_service import (
    PaymentIntent,
    SavedPaymentMethod,
    StripeService,
    WebhookEvent,
    from_cents,
    payment_intent_from_stripe,
    to_cents,
)

logger = logging.getLogger(__name__)

GATEWAY_METHODS = (PaymentMethod.CREDIT_CARD, PaymentMethod.STRIPE)
PAYOUT_METHODS = (PaymentMethod.BANK_TRANSFER, PaymentMethod.STRIPE)
CHECKOUT_SESSION_TTL = timedelta(hours=24)


def generate_transaction_ref() -> str:
    """New public transaction reference, e.g. txn_3f9c0e6a1b2d4c5e8f7a9b0c."""
    return f"txn_{uuid.uuid4().hex[:24]}"


def refund_ref(original_ref: str, existing_refunds: int) -> str:
    """
    Reference for the next refund of a payment.

    The first refund is refund_{original_ref}; later partial refunds of
    the same payment get a counter suffix starting at 2.
    """
    if existing_refunds == 0:
        return f"refund_{original_ref}"
    return f"refund_{original_ref}_{existing_refunds + 1}"


@dataclass
class PaymentResult:
    """Outcome of process_payment / confirm_payment."""

    transaction: Transaction
    payment_intent_id: Optional[str] = None
    client_secret: Optional[str] = None
    requires_action: bool = False
    next_action: Optional[Dict[str, Any]] = None
    receipt_url: Optional[str] = None
    message: Optional[str] = None

    @property
    def status(self) -> TransactionStatus:
        return self.transaction.status

    @property
    def success(self) -> bool:
        return self.transaction.status not in (
            TransactionStatus.CANCELLED,
            TransactionStatus.FAILED,
        )


@dataclass
class CheckoutResult:
    """Hosted checkout session created for an invoice."""

    session_id: str
    session_url: str
    expires_at: datetime


@dataclass
class ConnectOnboarding:
    """Onboarding link for a consultant's Connect account."""

    account_id: str
    onboarding_url: str
    expires_at: datetime
    created: bool = False


@dataclass
class WebhookResult:
    """What handle_gateway_event did with an event."""

    event_type: str
    handled: bool
    transaction_ref: Optional[str] = None
    detail: Optional[str] = None


@dataclass
class PaymentContext:
    """The invoice, project or proposal a payment is made against."""

    invoice: Optional[Invoice] = None
    project_id: Optional[int] = None
    proposal_id: Optional[int] = None
    consultant_id: Optional[int] = None
    currency: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)


class PaymentService:
    """
    Orchestrates payments, refunds and payouts.

    Example:
        service = PaymentService(db, get_stripe_service(), get_email_service())
        result = await service.process_payment(
            user, amount=Decimal("150.00"), method="credit_card", invoice_id=7,
            payment_method_id="pm_card_visa",
        )
    """

    def __init__(
        self,
        session: AsyncSession,
        stripe_service: StripeService,
        email_service: EmailService,
    ):
        self.session = session
        self.stripe = stripe_service
        self.email = email_service
        self.transactions = TransactionDAO(session)
        self.invoices = InvoiceDAO(session)
        self.users = UserDAO(session)
        self.client_profiles = ClientProfileDAO(session)
        self.consultant_profiles = ConsultantProfileDAO(session)
        self.projects = ProjectDAO(session)
        self.proposals = ProposalDAO(session)
        self.audit = AuditService(session)

    # ========================================================================
    # Payments
    # ========================================================================

    async def process_payment(
        self,
        user: User,
        amount: Any,
        method: Any = PaymentMethod.CREDIT_CARD,
        currency: Optional[str] = None,
        invoice_id: Optional[int] = None,
        project_id: Optional[int] = None,
        proposal_id: Optional[int] = None,
        payment_method_id: Optional[str] = None,
        description: Optional[str] = None,
        billing_details: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> PaymentResult:
        """
        Take a payment from a client.

        WHAT: Validates the amount and the payment context, commits a
        pending Transaction, then runs the branch for the payment method.

        Branches:
        - credit_card / stripe: payment intent through the gateway. A
          succeeded intent completes the Transaction and is applied to the
          invoice in the same commit.
        - bank_transfer: Transaction stays pending until finance reconciles
          it; a sent invoice moves to pending and the client is emailed
          the bank details.
        - anything else: Transaction is cancelled and the method rejected.

        Args:
            user: Paying client
            amount: Positive amount in major units
            method: PaymentMethod value
            currency: ISO code (invoice currency wins for invoice payments)
            invoice_id / project_id / proposal_id: Exactly one context
            payment_method_id: Gateway payment method, confirms immediately

        Raises:
            InvalidAmountError: amount is not positive
            ValidationError: not exactly one payment context
            InvoiceNotFoundError / ProjectNotFoundError / ProposalNotFoundError
            OwnershipError: the context belongs to another client
            InvalidStateTransitionError: the invoice is not payable
            OverpaymentError: amount exceeds amount due under the reject policy
            UnsupportedPaymentMethodError: no branch for the method
            PaymentGatewayError: the gateway call failed
        """
        amount = quantize_money(to_decimal(amount, "amount"))
        if amount <= 0:
            raise InvalidAmountError(
                message="Payment amount must be greater than zero",
                amount=str(amount),
            )
        method = self._parse_method(method)

        context = await self._resolve_context(user, invoice_id, project_id, proposal_id)
        if context.invoice is not None:
            amount = self._check_overpayment(context.invoice, amount)

        transaction = Transaction(
            transaction_ref=generate_transaction_ref(),
            transaction_type=TransactionType.PAYMENT,
            payment_method=method,
            status=TransactionStatus.PENDING,
            amount=amount,
            currency=(context.currency or currency or settings.DEFAULT_CURRENCY).upper(),
            fee=Decimal("0"),
            org_id=user.org_id,
            invoice_id=context.invoice.id if context.invoice else None,
            project_id=context.project_id,
            proposal_id=context.proposal_id,
            client_id=user.id,
            consultant_id=context.consultant_id,
            created_by_id=user.id,
            billing_details=billing_details or {"name": user.name, "email": user.email},
            description=description or self._describe(context),
            extra_data={str(k): str(v) for k, v in (metadata or {}).items()} or None,
        )
        await self.transactions.add(transaction)
        await self.session.commit()

        logger.info(
            f"Payment {transaction.transaction_ref} started via {method.value}",
            extra={
                "transaction_ref": transaction.transaction_ref,
                "amount": str(amount),
                "invoice_id": transaction.invoice_id,
                "user_id": user.id,
            },
        )

        if method in GATEWAY_METHODS:
            return await self._process_gateway_payment(user, transaction, context, payment_method_id)
        if method == PaymentMethod.BANK_TRANSFER:
            return await self._process_bank_transfer(user, transaction, context)

        transaction.mark_cancelled()
        transaction.notes = f"{method.value} payments are not supported"
        await self.audit.log_payment(transaction, actor_user_id=user.id)
        await self.session.commit()
        raise UnsupportedPaymentMethodError(
            message=f"{method.value} payments are not supported",
            method=method.value,
            transaction_ref=transaction.transaction_ref,
        )

    async def _process_gateway_payment(
        self,
        user: User,
        transaction: Transaction,
        context: PaymentContext,
        payment_method_id: Optional[str],
    ) -> PaymentResult:
        intent_metadata = {
            "transaction_ref": transaction.transaction_ref,
            "user_id": str(user.id),
            **context.metadata,
        }
        try:
            customer_id = await self._ensure_customer(user)
            intent = await self.stripe.create_payment_intent(
                amount=transaction.amount,
                currency=transaction.currency,
                customer_id=customer_id,
                description=transaction.description,
                metadata=intent_metadata,
                payment_method_id=payment_method_id,
                receipt_email=user.email,
            )
        except PaymentGatewayError as e:
            await self._fail_transaction(transaction, e, actor_user_id=user.id)
            raise

        transaction.gateway_provider = "stripe"
        self._record_intent(transaction, intent)
        return await self._apply_intent_status(transaction, intent, actor_user_id=user.id)

    async def _process_bank_transfer(
        self,
        user: User,
        transaction: Transaction,
        context: PaymentContext,
    ) -> PaymentResult:
        if context.invoice is not None:
            invoice = await self.invoices.get_for_update(context.invoice.id)
            if invoice.current_status == InvoiceStatus.SENT:
                invoice.mark_awaiting_transfer()

        await self.audit.log_payment(transaction, actor_user_id=user.id)
        await self.session.commit()

        await self._send_safe(
            "bank transfer instructions",
            self.email.send_bank_transfer_instructions(
                to_email=user.email,
                user_name=user.name,
                amount=transaction.amount,
                currency=transaction.currency,
                transaction_ref=transaction.transaction_ref,
                description=transaction.description,
            ),
        )
        return PaymentResult(
            transaction=transaction,
            message="Bank transfer initiated. Please follow the instructions sent to your email.",
        )

    async def confirm_payment(
        self,
        user: User,
        payment_intent_id: str,
        payment_method_id: Optional[str] = None,
    ) -> PaymentResult:
        """
        Confirm a payment intent that needed a payment method or 3-D Secure.

        Raises:
            TransactionNotFoundError: No payment for the intent
            OwnershipError: The payment belongs to another client
            PaymentGatewayError: The gateway call failed
        """
        transaction = await self.transactions.get_by_payment_intent(payment_intent_id)
        if transaction is None:
            raise TransactionNotFoundError(
                message="No payment found for this payment intent",
                payment_intent_id=payment_intent_id,
            )
        self._check_visible(user, transaction, client_only=True)

        if transaction.status == TransactionStatus.COMPLETED:
            return PaymentResult(
                transaction=transaction,
                payment_intent_id=payment_intent_id,
                receipt_url=transaction.receipt_url,
                message="Payment already completed",
            )

        try:
            intent = await self.stripe.confirm_payment_intent(payment_intent_id, payment_method_id)
        except PaymentGatewayError as e:
            await self._fail_transaction(transaction, e, actor_user_id=user.id)
            raise

        self._record_intent(transaction, intent)
        return await self._apply_intent_status(transaction, intent, actor_user_id=user.id)

    # ========================================================================
    # Refunds
    # ========================================================================

    async def process_refund(
        self,
        user: User,
        transaction_ref: str,
        amount: Any = None,
        reason: Any = None,
        description: Optional[str] = None,
    ) -> Transaction:
        """
        Refund a completed payment, fully or partially.

        WHAT: Validates the refund against what is left of the payment and
        commits a pending refund Transaction. Then it asks the gateway to
        return the money. On success, the completed refund row and the
        invoice's refund status are committed in one unit of work. On a
        gateway refusal the row is marked failed and kept.

        WHY: Invoice.refund only changes presentation state and the refund
        row is the ledger effect. Every gateway attempt leaves a row, and
        the invoice only changes together with a completed refund.

        Bank transfer payments cannot be returned through the gateway. Their
        refund row stays pending and an admin is told to send it manually.

        Args:
            user: The payment's client or consultant, or an admin
            transaction_ref: Reference of the original payment
            amount: Amount to return (defaults to everything not yet refunded)
            reason: RefundReason value

        Returns:
            The refund Transaction (negative amount)

        Raises:
            TransactionNotFoundError: Unknown reference
            OwnershipError: Requester is not a party or an admin
            InvalidStateTransitionError: Not a completed payment, already
                fully refunded, or the invoice is not paid/partial
            InvalidAmountError: Amount not positive or above the remainder
            PaymentGatewayError: The gateway refused the refund
        """
        original = await self.transactions.get_by_ref(transaction_ref)
        if original is None:
            raise TransactionNotFoundError(transaction_ref=transaction_ref)
        self._check_visible(user, original)

        if not original.is_refundable:
            raise InvalidStateTransitionError(
                message="Only completed payments can be refunded",
                transaction_ref=transaction_ref,
                transaction_type=original.transaction_type.value,
                current_status=original.status.value,
            )

        already_refunded = await self.transactions.sum_refunded_for(original.id)
        remaining = quantize_money(to_decimal(original.amount) - already_refunded)
        if remaining <= 0:
            raise InvalidStateTransitionError(
                message="This payment has already been fully refunded",
                transaction_ref=transaction_ref,
            )

        refund_amount = remaining if amount is None else quantize_money(to_decimal(amount, "amount"))
        if refund_amount <= 0:
            raise InvalidAmountError(
                message="Refund amount must be greater than zero",
                amount=str(refund_amount),
            )
        if refund_amount > remaining:
            raise InvalidAmountError(
                message=f"Refund amount exceeds the refundable remainder of {remaining}",
                amount=str(refund_amount),
                refundable=str(remaining),
            )

        refund_reason = RefundReason(reason) if reason else RefundReason.REQUESTED_BY_CUSTOMER

        invoice = None
        if original.invoice_id:
            invoice = await self.invoices.get_for_update(original.invoice_id)
            if invoice is not None and invoice.current_status not in (
                InvoiceStatus.PAID,
                InvoiceStatus.PARTIAL,
            ):
                raise InvalidStateTransitionError(
                    message="Cannot refund an unpaid invoice",
                    invoice_id=invoice.id,
                    current_status=invoice.current_status.value,
                )

        existing = await self.transactions.count_refunds_for(original.id)
        refund = original.build_refund(
            refund_amount,
            transaction_ref=refund_ref(original.transaction_ref, existing),
            reason=refund_reason,
            created_by_id=user.id,
        )
        if description:
            refund.description = description

        manual = original.payment_method == PaymentMethod.BANK_TRANSFER
        if manual:
            refund.notes = "Bank transfer refund, to be sent manually by finance"

        # The pending row exists before any money moves, and holds its share
        # of the refundable remainder against concurrent refunds
        await self.transactions.add(refund)
        await self.session.commit()

        if not manual:
            try:
                gateway_refund = await self.stripe.create_refund(
                    payment_intent_id=original.payment_intent_id,
                    charge_id=original.charge_id,
                    amount=refund_amount,
                    reason=refund_reason.value,
                    metadata={
                        "transaction_ref": refund.transaction_ref,
                        "original_transaction_ref": original.transaction_ref,
                    },
                )
            except PaymentGatewayError as e:
                refund.mark_failed(e.context.get("gateway_error") or {"message": e.message})
                await self.audit.log_refund(refund, original, actor_user_id=user.id)
                await self.session.commit()
                logger.warning(
                    f"Refund {refund.transaction_ref} refused by the gateway",
                    extra={"transaction_ref": refund.transaction_ref, "error": refund.error},
                )
                raise

            refund.refund_id = gateway_refund.id
            refund.gateway_response = {"id": gateway_refund.id, "status": gateway_refund.status}
            refund.mark_completed()

        if original.invoice_id:
            invoice = await self.invoices.get_for_update(original.invoice_id)
        if invoice is not None:
            # Includes this refund, committed above
            refunded_on_invoice = await self.transactions.sum_refunded_for_invoice(invoice.id)
            full = refunded_on_invoice >= to_decimal(invoice.paid_amount)
            invoice.refund(None if full else refund_amount)

        await self.audit.log_refund(refund, original, actor_user_id=user.id)
        await self.session.commit()

        logger.info(
            f"Refund {refund.transaction_ref} of {refund_amount} recorded",
            extra={
                "transaction_ref": refund.transaction_ref,
                "original_transaction_ref": original.transaction_ref,
                "amount": str(refund_amount),
                "manual": manual,
            },
        )

        client = await self.users.get_by_id(original.client_id) if original.client_id else None
        if client is not None and not manual:
            await self._send_safe(
                "refund confirmation",
                self.email.send_refund_confirmation(
                    to_email=client.email,
                    user_name=client.name,
                    amount=refund_amount,
                    currency=refund.currency,
                    transaction_ref=refund.transaction_ref,
                    original_transaction_ref=original.transaction_ref,
                    description=refund.description,
                ),
            )
        await self._send_safe(
            "admin refund notification",
            self.email.send_admin_refund_notification(
                amount=refund_amount,
                currency=refund.currency,
                transaction_ref=refund.transaction_ref,
                original_transaction_ref=original.transaction_ref,
                client=client.email if client else "unknown",
                reason=refund_reason.value,
                requires_manual_processing=manual,
            ),
        )
        return refund

    # ========================================================================
    # Payouts
    # ========================================================================

    async def process_payout(
        self,
        admin: User,
        consultant_id: int,
        amount: Any,
        method: Any = None,
        currency: Optional[str] = None,
        project_id: Optional[int] = None,
        description: Optional[str] = None,
    ) -> Transaction:
        """
        Pay a consultant.

        WHAT: bank_transfer records a pending payout and asks finance to
        send it; stripe transfers to the consultant's Connect account and
        completes immediately. The method defaults to the consultant's
        preferred payout method.

        Raises:
            AuthorizationError: Caller is not an admin
            InvalidAmountError: amount is not positive
            UserNotFoundError: No such consultant
            ProjectNotFoundError: project_id does not resolve
            UnsupportedPaymentMethodError: Method is not bank_transfer/stripe
            ValidationError: stripe payout without a Connect account
            PaymentGatewayError: The transfer failed
        """
        if admin.role != UserRole.ADMIN:
            raise AuthorizationError(
                message="Admin access required",
                user_id=admin.id,
                user_role=admin.role.value,
            )

        amount = quantize_money(to_decimal(amount, "amount"))
        if amount <= 0:
            raise InvalidAmountError(
                message="Payout amount must be greater than zero",
                amount=str(amount),
            )

        consultant = await self.users.get_with_role(consultant_id, UserRole.CONSULTANT)
        if consultant is None or consultant.org_id != admin.org_id:
            raise UserNotFoundError(message="Consultant not found", consultant_id=consultant_id)

        if project_id is not None:
            project = await self.projects.get_by_id(project_id)
            if project is None or project.org_id != admin.org_id:
                raise ProjectNotFoundError(project_id=project_id)

        profile = await self.consultant_profiles.get_by_user_id(consultant.id)
        method = self._parse_method(
            method or (profile.preferred_payout_method if profile else None) or PaymentMethod.BANK_TRANSFER
        )
        if method not in PAYOUT_METHODS:
            raise UnsupportedPaymentMethodError(
                message=f"{method.value} payouts are not supported",
                method=method.value,
            )
        if method == PaymentMethod.STRIPE and not (profile and profile.stripe_connect_id):
            raise ValidationError(
                message="Consultant has no connected payout account",
                consultant_id=consultant.id,
            )

        payout = Transaction(
            transaction_ref=generate_transaction_ref(),
            transaction_type=TransactionType.PAYOUT,
            payment_method=method,
            status=TransactionStatus.PENDING,
            amount=amount,
            currency=(currency or settings.DEFAULT_CURRENCY).upper(),
            fee=Decimal("0"),
            org_id=admin.org_id,
            project_id=project_id,
            consultant_id=consultant.id,
            created_by_id=admin.id,
            description=description or "Consultant payout",
        )
        await self.transactions.add(payout)
        await self.session.commit()

        if method == PaymentMethod.BANK_TRANSFER:
            await self.audit.log_payout(payout, actor_user_id=admin.id)
            await self.session.commit()
            await self._send_safe(
                "finance payout notification",
                self.email.send_payout_notification(
                    consultant_name=consultant.name,
                    consultant_email=consultant.email,
                    amount=amount,
                    currency=payout.currency,
                    transaction_ref=payout.transaction_ref,
                    bank_details=profile.bank_details if profile else None,
                ),
            )
            await self._send_safe(
                "payout initiated",
                self.email.send_payout_initiated(
                    to_email=consultant.email,
                    user_name=consultant.name,
                    amount=amount,
                    currency=payout.currency,
                    transaction_ref=payout.transaction_ref,
                ),
            )
            return payout

        try:
            transfer = await self.stripe.create_transfer(
                amount=amount,
                destination=profile.stripe_connect_id,
                currency=payout.currency,
                description=payout.description,
                metadata={
                    "transaction_ref": payout.transaction_ref,
                    "consultant_id": str(consultant.id),
                },
            )
        except PaymentGatewayError as e:
            await self._fail_transaction(payout, e, actor_user_id=admin.id)
            raise

        payout.gateway_provider = "stripe"
        payout.transfer_id = transfer.id
        payout.gateway_response = {"id": transfer.id, "destination": transfer.destination}
        payout.mark_completed()
        profile.last_payout_at = payout.completed_at
        await self.audit.log_payout(payout, actor_user_id=admin.id)
        await self.session.commit()

        await self._send_safe(
            "payout completed",
            self.email.send_payout_completed(
                to_email=consultant.email,
                user_name=consultant.name,
                amount=amount,
                currency=payout.currency,
                transaction_ref=payout.transaction_ref,
            ),
        )
        return payout

    # ========================================================================
    # Queries
    # ========================================================================

    async def get_transaction(self, user: User, transaction_ref: str) -> Transaction:
        """
        Get a transaction the user may see.

        Raises:
            TransactionNotFoundError: Unknown reference
            OwnershipError: User is neither a party nor an admin
        """
        transaction = await self.transactions.get_by_ref(transaction_ref)
        if transaction is None:
            raise TransactionNotFoundError(transaction_ref=transaction_ref)
        self._check_visible(user, transaction)
        return transaction

    async def list_transactions(
        self,
        user: User,
        skip: int = 0,
        limit: int = 20,
        **filters: Any,
    ) -> Tuple[List[Transaction], int]:
        """List transactions scoped by role: admins see the org, others their own."""
        return await self.transactions.list_transactions(
            org_id=user.org_id,
            party_id=None if user.role == UserRole.ADMIN else user.id,
            skip=skip,
            limit=limit,
            **filters,
        )

    async def get_financial_summary(self, user: User) -> Dict[str, Any]:
        """
        Dashboard totals for the caller's role.

        - client: total spent, outstanding balance, active projects
        - consultant: total earnings, pending earnings, active projects, clients
        - admin: revenue, pending payouts, receivables, user counts
        """
        summary: Dict[str, Any] = {"role": user.role.value}

        if user.role == UserRole.CLIENT:
            summary.update(
                total_spent=await self.transactions.get_client_revenue(user.id),
                outstanding_balance=await self.invoices.get_client_total_owed(user.id),
                active_projects=await self.projects.count_active(client_id=user.id),
                invoice_counts=await self.invoices.count_by_status(user.org_id, party_id=user.id),
            )
        elif user.role == UserRole.CONSULTANT:
            summary.update(
                total_earnings=await self.transactions.get_consultant_earnings(user.id),
                pending_earnings=await self.invoices.get_consultant_total_due(user.id),
                active_projects=await self.projects.count_active(consultant_id=user.id),
                total_clients=await self.projects.count_clients_for_consultant(user.id),
            )
        else:
            summary.update(
                total_revenue=await self.transactions.get_platform_revenue(user.org_id),
                pending_payouts=await self.transactions.sum_pending_payouts(user.org_id),
                total_outstanding=await self.invoices.calculate_total_outstanding(user.org_id),
                total_clients=await self.users.count_by_role(user.org_id, UserRole.CLIENT),
                total_consultants=await self.users.count_by_role(user.org_id, UserRole.CONSULTANT),
                invoice_counts=await self.invoices.count_by_status(user.org_id),
            )

        recent, _ = await self.list_transactions(user, skip=0, limit=5)
        summary["recent_transactions"] = recent
        return summary

    # ========================================================================
    # Saved payment methods
    # ========================================================================

    async def get_client_payment_methods(self, user: User) -> List[SavedPaymentMethod]:
        """
        Cards saved on the client's gateway customer, default flagged.

        A client who never paid by card has no customer yet and therefore
        no saved methods.
        """
        profile = await self.client_profiles.get_by_user_id(user.id)
        if profile is None or not profile.stripe_customer_id:
            return []
        methods = await self.stripe.list_payment_methods(profile.stripe_customer_id)
        for method in methods:
            method.is_default = method.id == profile.default_payment_method_id
        return methods

    async def add_client_payment_method(
        self,
        user: User,
        payment_method_id: str,
        set_as_default: bool = False,
    ) -> SavedPaymentMethod:
        """
        Save a payment method collected by Stripe.js on the client's customer.

        WHAT: Creates the gateway customer on first use, attaches the
        method and makes it the default when asked to or when the client
        has no default yet. Card details are only ever collected by Stripe;
        we receive and store the pm_ id.

        Raises:
            PaymentGatewayError: The gateway refused the method
        """
        customer_id = await self._ensure_customer(user)
        method = await self.stripe.attach_payment_method(payment_method_id, customer_id)

        profile = await self.client_profiles.get_or_create(user.id)
        if set_as_default or not profile.default_payment_method_id:
            await self.stripe.set_default_payment_method(customer_id, method.id)
            await self.client_profiles.set_default_payment_method(profile, method.id)
        await self._log_profile_change(
            user, "client_profile", profile.id, {"payment_method": {"before": None, "after": method.id}}
        )
        await self.session.commit()

        method.is_default = method.id == profile.default_payment_method_id
        logger.info(
            f"Saved payment method {method.id} for client {user.id}",
            extra={"user_id": user.id, "payment_method_id": method.id},
        )
        return method

    async def remove_client_payment_method(self, user: User, payment_method_id: str) -> Optional[str]:
        """
        Detach a saved payment method from the client's customer.

        When the removed method was the default, the next remaining method
        becomes the default (or none when it was the last one).

        Returns:
            The client's default payment method id afterwards

        Raises:
            PaymentMethodNotFoundError: The method is not one of the client's
            PaymentGatewayError: The gateway call failed
        """
        profile, methods = await self._owned_payment_methods(user, payment_method_id)

        await self.stripe.detach_payment_method(payment_method_id)

        if profile.default_payment_method_id == payment_method_id:
            remaining = [m.id for m in methods if m.id != payment_method_id]
            new_default = remaining[0] if remaining else None
            if new_default:
                await self.stripe.set_default_payment_method(profile.stripe_customer_id, new_default)
            await self.client_profiles.set_default_payment_method(profile, new_default)
        await self._log_profile_change(
            user, "client_profile", profile.id, {"payment_method": {"before": payment_method_id, "after": None}}
        )
        await self.session.commit()
        return profile.default_payment_method_id

    async def set_default_payment_method(self, user: User, payment_method_id: str) -> SavedPaymentMethod:
        """
        Make a saved method the client's default, here and on the gateway.

        Raises:
            PaymentMethodNotFoundError: The method is not one of the client's
        """
        profile, methods = await self._owned_payment_methods(user, payment_method_id)
        method = next(m for m in methods if m.id == payment_method_id)

        await self.stripe.set_default_payment_method(profile.stripe_customer_id, payment_method_id)
        changes = {
            "default_payment_method_id": {
                "before": profile.default_payment_method_id,
                "after": payment_method_id,
            }
        }
        await self.client_profiles.set_default_payment_method(profile, payment_method_id)
        await self._log_profile_change(user, "client_profile", profile.id, changes)
        await self.session.commit()

        method.is_default = True
        return method

    async def _owned_payment_methods(
        self, user: User, payment_method_id: str
    ) -> Tuple[ClientProfile, List[SavedPaymentMethod]]:
        """
        The client's profile and saved methods, checking payment_method_id
        is among them.

        WHY: Detaching or defaulting by bare pm_ id would let one client
        act on another client's card.
        """
        profile = await self.client_profiles.get_by_user_id(user.id)
        if profile is None or not profile.stripe_customer_id:
            raise PaymentMethodNotFoundError(payment_method_id=payment_method_id)
        methods = await self.stripe.list_payment_methods(profile.stripe_customer_id)
        if not any(m.id == payment_method_id for m in methods):
            raise PaymentMethodNotFoundError(payment_method_id=payment_method_id)
        return profile, methods

    # ========================================================================
    # Connect onboarding
    # ========================================================================

    async def setup_consultant_connect_account(self, user: User) -> ConnectOnboarding:
        """
        Start (or resume) Stripe Connect onboarding for a consultant.

        WHAT: Creates an Express account on first call and stores its id
        on ConsultantProfile, then returns a hosted onboarding link. A
        consultant who already has an account gets a fresh link for it,
        since links are single use and expire within minutes.

        WHY: Stripe payouts transfer to this account; process_payout
        refuses Stripe payouts until it exists.

        The account id is committed before the link is requested, so a
        failed link request never orphans a created account.

        Raises:
            PaymentGatewayError: Account or link creation failed
        """
        profile = await self.consultant_profiles.get_or_create(user.id)
        created = False
        if not profile.stripe_connect_id:
            account = await self.stripe.create_connect_account(
                email=user.email,
                country=settings.STRIPE_CONNECT_COUNTRY,
                name=user.name,
                metadata={"user_id": str(user.id)},
            )
            profile.stripe_connect_id = account.id
            if not profile.preferred_payout_method:
                profile.preferred_payout_method = PaymentMethod.STRIPE.value
            await self._log_profile_change(
                user,
                "consultant_profile",
                profile.id,
                {"stripe_connect_id": {"before": None, "after": account.id}},
            )
            await self.session.commit()
            created = True
            logger.info(
                f"Created Connect account {account.id} for consultant {user.id}",
                extra={"user_id": user.id, "stripe_account_id": account.id},
            )

        settings_url = f"{settings.FRONTEND_URL}/dashboard/payment-settings"
        link = await self.stripe.create_account_link(
            profile.stripe_connect_id,
            refresh_url=f"{settings_url}?refresh=true",
            return_url=f"{settings_url}?success=true",
        )
        return ConnectOnboarding(
            account_id=profile.stripe_connect_id,
            onboarding_url=link.url,
            expires_at=datetime.utcfromtimestamp(link.expires_at),
            created=created,
        )

    async def _log_profile_change(
        self, user: User, resource_type: str, resource_id: int, changes: Dict[str, Any]
    ) -> None:
        await self.audit.log_update(
            resource_type=resource_type,
            resource_id=resource_id,
            actor_user_id=user.id,
            org_id=user.org_id,
            changes=changes,
        )

    # ========================================================================
    # Hosted checkout
    # ========================================================================

    async def create_invoice_checkout_session(self, user: User, invoice_id: int) -> CheckoutResult:
        """
        Create a Stripe Checkout session for what is left to pay on an invoice.

        WHAT: One line for the amount due (less the platform fee) and a
        separate platform fee line when the invoice carries one, so the
        session total always equals amount_due. The session id is stored on
        the invoice; checkout.session.completed settles it.

        Raises:
            InvoiceNotFoundError / OwnershipError
            InvalidStateTransitionError: Invoice not payable or nothing due
            PaymentGatewayError: Session creation failed
        """
        invoice = await self._get_payable_invoice(user, invoice_id)
        amount_due = quantize_money(to_decimal(invoice.amount_due))
        if amount_due <= 0:
            raise InvalidStateTransitionError(
                message="Invoice has no amount due",
                invoice_id=invoice.id,
            )

        currency = invoice.currency.lower()
        fee = quantize_money(to_decimal(invoice.platform_fee_amount))
        if fee <= 0 or fee >= amount_due:
            fee = Decimal("0")

        line_items = [
            {
                "price_data": {
                    "currency": currency,
                    "product_data": {
                        "name": f"Invoice {invoice.invoice_number}",
                        "metadata": {"invoice_id": str(invoice.id)},
                    },
                    "unit_amount": to_cents(amount_due - fee),
                },
                "quantity": 1,
            }
        ]
        if fee > 0:
            line_items.append(
                {
                    "price_data": {
                        "currency": currency,
                        "product_data": {
                            "name": invoice.platform_fee_description or "Platform Fee",
                            "metadata": {"invoice_id": str(invoice.id), "type": "platform_fee"},
                        },
                        "unit_amount": to_cents(fee),
                    },
                    "quantity": 1,
                }
            )

        profile = await self.client_profiles.get_by_user_id(user.id)
        metadata = {
            "invoice_id": str(invoice.id),
            "invoice_number": invoice.invoice_number,
            "client_id": str(user.id),
        }
        if invoice.consultant_id:
            metadata["consultant_id"] = str(invoice.consultant_id)
        if invoice.project_id:
            metadata["project_id"] = str(invoice.project_id)

        base_url = f"{settings.FRONTEND_URL}/dashboard/invoices/{invoice.id}"
        session = await self.stripe.create_checkout_session(
            line_items=line_items,
            success_url=f"{base_url}/success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{base_url}?canceled=true",
            customer_id=profile.stripe_customer_id if profile else None,
            metadata=metadata,
        )

        invoice.stripe_checkout_session_id = session.id
        await self.session.commit()

        return CheckoutResult(
            session_id=session.id,
            session_url=session.url,
            expires_at=datetime.utcnow() + CHECKOUT_SESSION_TTL,
        )

    # ========================================================================
    # Webhooks
    # ========================================================================

    async def handle_gateway_event(self, event: WebhookEvent) -> WebhookResult:
        """
        Reconcile the ledger with a verified gateway event.

        Handled events:
        - payment_intent.succeeded: complete the pending payment and apply it
        - payment_intent.payment_failed: mark the payment failed
        - checkout.session.completed: record and apply the checkout payment
        - charge.dispute.created: flag the payment disputed

        Replays are harmless: a payment that already reached the event's
        outcome is left alone. Unknown events are acknowledged and ignored.
        """
        handlers = {
            "payment_intent.succeeded": self._on_payment_intent_succeeded,
            "payment_intent.payment_failed": self._on_payment_intent_failed,
            "checkout.session.completed": self._on_checkout_completed,
            "charge.dispute.created": self._on_dispute_created,
        }
        handler = handlers.get(event.type)
        if handler is None:
            logger.info(f"Ignoring unhandled webhook event type {event.type}")
            return WebhookResult(event_type=event.type, handled=False, detail="ignored")

        result = await handler(event)
        logger.info(
            f"Webhook {event.id} ({event.type}) processed: {result.detail}",
            extra={"event_id": event.id, "transaction_ref": result.transaction_ref},
        )
        return result

    async def _on_payment_intent_succeeded(self, event: WebhookEvent) -> WebhookResult:
        intent = payment_intent_from_stripe(event.data)
        transaction = await self.transactions.get_by_payment_intent(intent.id)
        if transaction is None:
            return WebhookResult(event.type, False, detail="no matching transaction")
        if transaction.status != TransactionStatus.PENDING and transaction.status != TransactionStatus.PROCESSING:
            return WebhookResult(
                event.type, False, transaction.transaction_ref, f"already {transaction.status.value}"
            )

        self._record_intent(transaction, intent)
        invoice = await self._complete_payment(transaction, actor_user_id=None)
        await self.audit.log_webhook(event.id, event.type, transaction)
        await self.session.commit()
        await self._send_payment_confirmation(transaction, invoice)
        return WebhookResult(event.type, True, transaction.transaction_ref, "payment completed")

    async def _on_payment_intent_failed(self, event: WebhookEvent) -> WebhookResult:
        intent_id = event.data.get("id")
        transaction = await self.transactions.get_by_payment_intent(intent_id)
        if transaction is None:
            return WebhookResult(event.type, False, detail="no matching transaction")
        if transaction.status not in (TransactionStatus.PENDING, TransactionStatus.PROCESSING):
            return WebhookResult(
                event.type, False, transaction.transaction_ref, f"already {transaction.status.value}"
            )

        error = event.data.get("last_payment_error") or {}
        transaction.mark_failed(
            {
                "code": error.get("code"),
                "message": error.get("message"),
                "type": error.get("type"),
                "param": error.get("param"),
            }
        )
        await self.audit.log_payment_failed(transaction)
        await self.session.commit()
        return WebhookResult(event.type, True, transaction.transaction_ref, "payment failed")

    async def _on_checkout_completed(self, event: WebhookEvent) -> WebhookResult:
        data = event.data
        session_id = data.get("id")
        if data.get("payment_status") not in (None, "paid"):
            return WebhookResult(event.type, False, detail="checkout not paid")
        if await self.transactions.get_by_checkout_session(session_id) is not None:
            return WebhookResult(event.type, False, detail="already recorded")

        invoice = await self.invoices.get_by_stripe_checkout_session(session_id)
        if invoice is None:
            invoice_id = (data.get("metadata") or {}).get("invoice_id")
            invoice = await self.invoices.get_by_id(int(invoice_id)) if invoice_id else None
        if invoice is None:
            return WebhookResult(event.type, False, detail="no matching invoice")

        transaction = Transaction(
            transaction_ref=generate_transaction_ref(),
            transaction_type=TransactionType.PAYMENT,
            payment_method=PaymentMethod.STRIPE,
            status=TransactionStatus.PENDING,
            amount=from_cents(data.get("amount_total")),
            currency=(data.get("currency") or invoice.currency).upper(),
            fee=Decimal("0"),
            org_id=invoice.org_id,
            invoice_id=invoice.id,
            project_id=invoice.project_id,
            proposal_id=invoice.proposal_id,
            client_id=invoice.client_id,
            consultant_id=invoice.consultant_id,
            created_by_id=invoice.client_id,
            gateway_provider="stripe",
            checkout_session_id=session_id,
            payment_intent_id=data.get("payment_intent"),
            description=f"Checkout payment for invoice {invoice.invoice_number}",
        )
        await self.transactions.add(transaction)
        invoice = await self._complete_payment(transaction, actor_user_id=None)
        await self.audit.log_webhook(event.id, event.type, transaction)
        await self.session.commit()
        await self._send_payment_confirmation(transaction, invoice)
        return WebhookResult(event.type, True, transaction.transaction_ref, "checkout payment recorded")

    async def _on_dispute_created(self, event: WebhookEvent) -> WebhookResult:
        charge_id = event.data.get("charge")
        transaction = await self.transactions.get_by_charge(charge_id) if charge_id else None
        if transaction is None:
            return WebhookResult(event.type, False, detail="no matching transaction")
        if transaction.status != TransactionStatus.COMPLETED:
            return WebhookResult(
                event.type, False, transaction.transaction_ref, f"already {transaction.status.value}"
            )

        transaction.mark_disputed()
        await self.audit.log_webhook(event.id, event.type, transaction)
        await self.session.commit()
        logger.warning(
            f"Payment {transaction.transaction_ref} disputed",
            extra={"transaction_ref": transaction.transaction_ref, "charge_id": charge_id},
        )
        return WebhookResult(event.type, True, transaction.transaction_ref, "payment disputed")

    # ========================================================================
    # Helpers
    # ========================================================================

    @staticmethod
    def _parse_method(method: Any) -> PaymentMethod:
        try:
            return PaymentMethod(method)
        except ValueError:
            raise ValidationError(
                message=f"Unknown payment method: {method}",
                field="method",
            )

    @staticmethod
    def _describe(context: PaymentContext) -> str:
        if context.invoice is not None:
            return f"Payment for invoice {context.invoice.invoice_number}"
        if context.proposal_id is not None:
            return f"Payment for proposal {context.proposal_id}"
        if context.project_id is not None:
            return f"Payment for project {context.project_id}"
        return "Payment"

    @staticmethod
    def _check_visible(user: User, transaction: Transaction, client_only: bool = False) -> None:
        """
        Raise unless the user may act on the transaction.

        Admins see their organization; clients and consultants only
        transactions they are a party to (only the client with client_only).
        """
        if user.role == UserRole.ADMIN:
            if transaction.org_id != user.org_id:
                raise TransactionNotFoundError(transaction_ref=transaction.transaction_ref)
            return
        allowed = transaction.client_id == user.id if client_only else transaction.involves(user.id)
        if not allowed:
            raise OwnershipError(
                message="You do not have access to this transaction",
                transaction_ref=transaction.transaction_ref,
                user_id=user.id,
            )

    async def _get_payable_invoice(self, user: User, invoice_id: int) -> Invoice:
        invoice = await self.invoices.get_by_id(invoice_id)
        if invoice is None or invoice.org_id != user.org_id:
            raise InvoiceNotFoundError(invoice_id=invoice_id)
        if invoice.client_id != user.id:
            raise OwnershipError(
                message="You do not have permission to pay this invoice",
                invoice_id=invoice_id,
                user_id=user.id,
            )
        if not invoice.is_payable:
            raise InvalidStateTransitionError(
                message=f"Cannot pay a {invoice.current_status.value} invoice",
                invoice_id=invoice_id,
                current_status=invoice.current_status.value,
            )
        return invoice

    async def _resolve_context(
        self,
        user: User,
        invoice_id: Optional[int],
        project_id: Optional[int],
        proposal_id: Optional[int],
    ) -> PaymentContext:
        """
        Load the single invoice, project or proposal a payment is for and
        check the user is its client.
        """
        provided = [ref for ref in (invoice_id, project_id, proposal_id) if ref is not None]
        if len(provided) != 1:
            raise ValidationError(
                message="Exactly one of invoice_id, project_id or proposal_id is required",
                field="context",
            )

        if invoice_id is not None:
            invoice = await self._get_payable_invoice(user, invoice_id)
            return PaymentContext(
                invoice=invoice,
                project_id=invoice.project_id,
                proposal_id=invoice.proposal_id,
                consultant_id=invoice.consultant_id,
                currency=invoice.currency,
                metadata={"invoice_id": str(invoice.id)},
            )

        if project_id is not None:
            project = await self.projects.get_by_id(project_id)
            if project is None or project.org_id != user.org_id:
                raise ProjectNotFoundError(project_id=project_id)
            if project.client_id != user.id:
                raise OwnershipError(
                    message="You do not have permission to make a payment for this project",
                    project_id=project_id,
                    user_id=user.id,
                )
            return PaymentContext(
                project_id=project.id,
                consultant_id=project.consultant_id,
                metadata={"project_id": str(project.id)},
            )

        proposal = await self.proposals.get_by_id(proposal_id)
        if proposal is None or proposal.org_id != user.org_id:
            raise ProposalNotFoundError(proposal_id=proposal_id)
        if proposal.client_id != user.id:
            raise OwnershipError(
                message="You do not have permission to make a payment for this proposal",
                proposal_id=proposal_id,
                user_id=user.id,
            )
        return PaymentContext(
            project_id=proposal.project_id,
            proposal_id=proposal.id,
            consultant_id=proposal.consultant_id,
            currency=proposal.currency,
            metadata={"proposal_id": str(proposal.id)},
        )

    @staticmethod
    def _check_overpayment(invoice: Invoice, amount: Decimal) -> Decimal:
        """
        Apply the overpayment policy before any money moves.

        Returns:
            The amount to charge (reduced to the amount due under clamp)
        """
        policy = OverpaymentPolicy(settings.OVERPAYMENT_POLICY)
        amount_due = quantize_money(to_decimal(invoice.amount_due))
        if amount <= amount_due or policy == OverpaymentPolicy.ALLOW:
            return amount
        if policy == OverpaymentPolicy.REJECT or amount_due <= 0:
            raise OverpaymentError(
                message=f"Payment of {amount} exceeds the amount due of {amount_due}",
                invoice_id=invoice.id,
                amount=str(amount),
                amount_due=str(amount_due),
            )
        return amount_due

    async def _ensure_customer(self, user: User) -> str:
        """Gateway customer id for a client, created and cached on first use."""
        profile = await self.client_profiles.get_or_create(user.id)
        if profile.stripe_customer_id:
            return profile.stripe_customer_id

        customer = await self.stripe.create_customer(
            email=user.email,
            name=user.name,
            metadata={"user_id": str(user.id)},
        )
        await self.client_profiles.set_stripe_customer(profile, customer.id)
        return customer.id

    @staticmethod
    def _record_intent(transaction: Transaction, intent: PaymentIntent) -> None:
        transaction.payment_intent_id = intent.id
        transaction.charge_id = intent.charge_id or transaction.charge_id
        transaction.receipt_url = intent.receipt_url or transaction.receipt_url
        if intent.payment_method_details:
            transaction.payment_method_details = intent.payment_method_details
        transaction.gateway_response = {
            "payment_intent_id": intent.id,
            "status": intent.status,
            "amount": intent.amount,
            "currency": intent.currency,
        }

    async def _apply_intent_status(
        self,
        transaction: Transaction,
        intent: PaymentIntent,
        actor_user_id: Optional[int],
    ) -> PaymentResult:
        """
        Move the transaction to the status the gateway reported.

        A completed payment is applied to its invoice in the same commit.
        """
        status = map_gateway_status(intent.status)
        invoice = None
        if status == TransactionStatus.COMPLETED:
            invoice = await self._complete_payment(transaction, actor_user_id)
        else:
            if status == TransactionStatus.CANCELLED:
                transaction.mark_cancelled()
            elif status == TransactionStatus.PROCESSING:
                transaction.mark_processing()
            else:
                transaction.transition_to(status)
            await self.audit.log_payment(transaction, actor_user_id=actor_user_id)
        await self.session.commit()

        if status == TransactionStatus.COMPLETED:
            await self._send_payment_confirmation(transaction, invoice)

        return PaymentResult(
            transaction=transaction,
            payment_intent_id=intent.id,
            client_secret=intent.client_secret,
            requires_action=intent.requires_action,
            next_action=intent.next_action,
            receipt_url=transaction.receipt_url,
        )

    async def _complete_payment(
        self,
        transaction: Transaction,
        actor_user_id: Optional[int],
    ) -> Optional[Invoice]:
        """
        Complete a payment and fold it into its invoice. Does not commit.

        The overpayment policy was enforced before the charge; once the
        gateway has taken the money the invoice records all of it.
        """
        transaction.mark_completed()
        invoice = None
        if transaction.invoice_id:
            invoice = await self.invoices.get_for_update(transaction.invoice_id)
            if invoice is None:
                logger.error(
                    f"Invoice {transaction.invoice_id} for payment {transaction.transaction_ref} not found",
                    extra={"transaction_ref": transaction.transaction_ref},
                )
            else:
                try:
                    invoice.add_payment(
                        transaction.amount,
                        transaction_id=transaction.transaction_ref,
                        policy=OverpaymentPolicy.ALLOW,
                        now=transaction.completed_at,
                    )
                except InvalidStateTransitionError as e:
                    # Money arrived for an invoice cancelled or refunded meanwhile
                    logger.error(
                        f"Payment {transaction.transaction_ref} not applied: {e.message}",
                        extra={"transaction_ref": transaction.transaction_ref, "invoice_id": invoice.id},
                    )
                    transaction.notes = f"Not applied to invoice: {e.message}"
        await self.audit.log_payment(transaction, actor_user_id=actor_user_id)
        return invoice

    async def _fail_transaction(
        self,
        transaction: Transaction,
        error: PaymentGatewayError,
        actor_user_id: Optional[int],
    ) -> None:
        """Record a gateway failure on the attempt and commit it."""
        transaction.mark_failed(error.context.get("gateway_error") or {"message": error.message})
        await self.audit.log_payment_failed(transaction, actor_user_id=actor_user_id)
        await self.session.commit()
        logger.warning(
            f"Payment {transaction.transaction_ref} failed at the gateway",
            extra={"transaction_ref": transaction.transaction_ref, "error": transaction.error},
        )

    async def _send_payment_confirmation(
        self, transaction: Transaction, invoice: Optional[Invoice]
    ) -> None:
        client = await self.users.get_by_id(transaction.client_id) if transaction.client_id else None
        if client is None:
            return
        await self._send_safe(
            "payment confirmation",
            self.email.send_payment_confirmation(
                to_email=client.email,
                user_name=client.name,
                amount=transaction.amount,
                currency=transaction.currency,
                transaction_ref=transaction.transaction_ref,
                description=transaction.description,
                invoice_number=invoice.invoice_number if invoice else None,
                receipt_url=transaction.receipt_url,
            ),
        )

    @staticmethod
    async def _send_safe(label: str, send) -> None:
        """Await an email send, logging any failure instead of raising."""
        try:
            result = await send
        except Exception as e:
            logger.error(f"Failed to send {label} email: {e}", exc_info=True)
            return
        if not result.success:
            logger.error(f"Failed to send {label} email: {result.error}")
