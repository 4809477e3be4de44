"""
Unit tests for PaymentService.

WHAT: Payments by card and bank transfer, confirmation, refunds, payouts,
hosted checkout, webhook reconciliation, the financial summary, saved
cards and Connect onboarding.

WHY: Every path here moves money. The tests pin down the order in which
the ledger, the invoice and the gateway are touched, and what is left
behind when the gateway says no.

HOW: Real SQLite session, mock_stripe returning gateway dataclasses and
the mock email provider collecting what would have been sent.
"""

from datetime import datetime
from decimal import Decimal

import pytest
import pytest_asyncio

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
    TransactionNotFoundError,
    UnsupportedPaymentMethodError,
    UserNotFoundError,
    ValidationError,
)
from billing.dao.audit_log import AuditLogDAO
from billing.dao.profile import ClientProfileDAO, ConsultantProfileDAO
from billing.dao.transaction import TransactionDAO
from billing.models.audit_log import AuditAction
from billing.models.invoice_state import InvoiceStatus
from billing.models.transaction import (
    PaymentMethod,
    RefundReason,
    TransactionStatus,
    TransactionType,
)
from billing.services.email import MockEmailProvider
from billing.services.payment_service import PaymentService, refund_ref
from billing.services.stripe_service import (
    AccountLink,
    CheckoutSession,
    CheckoutSessionStatus,
    ConnectAccount,
    PaymentIntent,
    RefundResult,
    SavedPaymentMethod,
    StripeCustomer,
    TransferResult,
    WebhookEvent,
)
from tests.factories import (
    InvoiceFactory,
    ProfileFactory,
    ProjectFactory,
    ProposalFactory,
    TransactionFactory,
    UserFactory,
)


CARD = {"brand": "visa", "last4": "4242", "exp_month": 12, "exp_year": 2030}


def intent(status="succeeded", intent_id="pi_123", amount=100000, **kwargs) -> PaymentIntent:
    values = {
        "client_secret": f"{intent_id}_secret_abc",
        "charge_id": "ch_123" if status == "succeeded" else None,
        "receipt_url": "https://pay.stripe.com/receipts/rcpt_123" if status == "succeeded" else None,
        "payment_method_details": CARD if status == "succeeded" else None,
    }
    values.update(kwargs)
    return PaymentIntent(id=intent_id, amount=amount, currency="usd", status=status, **values)


def subjects():
    return [message.subject for message in MockEmailProvider.sent_emails]


def sent_to(address):
    return [message for message in MockEmailProvider.sent_emails if message.to_email == address]


@pytest.fixture
def service(db_session, mock_stripe, email_service):
    mock_stripe.create_customer.return_value = StripeCustomer(id="cus_new", email="client@example.com")
    return PaymentService(db_session, mock_stripe, email_service)


@pytest_asyncio.fixture
async def invoice(db_session, test_org, client_user, consultant_user):
    return await InvoiceFactory.create(
        db_session,
        org_id=test_org.id,
        client=client_user,
        consultant=consultant_user,
        invoice_number="INV-2406-0001",
    )


async def _actions(session, transaction):
    history = await AuditLogDAO(session).get_for_resource("transaction", transaction.id)
    return [entry.action for entry in history]


class TestCardPayments:
    """Tests for card payments through the gateway."""

    @pytest.mark.asyncio
    async def test_succeeded_payment_settles_invoice(
        self, db_session, service, mock_stripe, invoice, client_user
    ):
        mock_stripe.create_payment_intent.return_value = intent()

        result = await service.process_payment(
            client_user,
            amount="1000.00",
            method="credit_card",
            invoice_id=invoice.id,
            payment_method_id="pm_card_visa",
        )
        await db_session.refresh(invoice)

        txn = result.transaction
        assert result.success
        assert result.status == TransactionStatus.COMPLETED
        assert result.payment_intent_id == "pi_123"
        assert result.receipt_url == "https://pay.stripe.com/receipts/rcpt_123"
        assert txn.transaction_ref.startswith("txn_")
        assert txn.charge_id == "ch_123"
        assert txn.payment_method_details == CARD
        assert txn.consultant_id == invoice.consultant_id
        assert txn.billing_details == {"name": "Casey Client", "email": "client@example.com"}
        assert txn.description == "Payment for invoice INV-2406-0001"
        assert invoice.status == InvoiceStatus.PAID
        assert invoice.paid_amount == Decimal("1000.00")
        assert invoice.amount_due == Decimal("0.00")
        assert invoice.paid_at is not None
        assert subjects() == ["Payment received: 1,000.00 USD"]
        assert AuditAction.PAYMENT_PROCESSED in await _actions(db_session, txn)

    @pytest.mark.asyncio
    async def test_gateway_call_arguments(self, service, mock_stripe, invoice, client_user):
        mock_stripe.create_payment_intent.return_value = intent()

        result = await service.process_payment(
            client_user, amount="1000", invoice_id=invoice.id, payment_method_id="pm_card_visa"
        )

        mock_stripe.create_customer.assert_awaited_once_with(
            email="client@example.com",
            name="Casey Client",
            metadata={"user_id": str(client_user.id)},
        )
        kwargs = mock_stripe.create_payment_intent.call_args.kwargs
        assert kwargs["amount"] == Decimal("1000.00")
        assert kwargs["currency"] == "USD"
        assert kwargs["customer_id"] == "cus_new"
        assert kwargs["payment_method_id"] == "pm_card_visa"
        assert kwargs["receipt_email"] == "client@example.com"
        assert kwargs["metadata"] == {
            "transaction_ref": result.transaction.transaction_ref,
            "user_id": str(client_user.id),
            "invoice_id": str(invoice.id),
        }

    @pytest.mark.asyncio
    async def test_customer_is_created_once_and_cached(
        self, db_session, service, mock_stripe, invoice, client_user
    ):
        mock_stripe.create_payment_intent.return_value = intent(status="requires_payment_method")

        await service.process_payment(client_user, amount="100", invoice_id=invoice.id)
        await service.process_payment(client_user, amount="100", invoice_id=invoice.id)

        assert mock_stripe.create_customer.await_count == 1
        profile = await ClientProfileDAO(db_session).get_by_user_id(client_user.id)
        assert profile.stripe_customer_id == "cus_new"

    @pytest.mark.asyncio
    async def test_existing_customer_is_reused(
        self, db_session, service, mock_stripe, invoice, client_user
    ):
        await ProfileFactory.create_client_profile(db_session, client_user, "cus_existing")
        mock_stripe.create_payment_intent.return_value = intent()

        await service.process_payment(client_user, amount="1000", invoice_id=invoice.id)

        mock_stripe.create_customer.assert_not_awaited()
        assert mock_stripe.create_payment_intent.call_args.kwargs["customer_id"] == "cus_existing"

    @pytest.mark.asyncio
    async def test_partial_payment(self, db_session, service, mock_stripe, invoice, client_user):
        mock_stripe.create_payment_intent.return_value = intent(amount=40000)

        await service.process_payment(client_user, amount="400", invoice_id=invoice.id)
        await db_session.refresh(invoice)

        assert invoice.status == InvoiceStatus.PARTIAL
        assert invoice.amount_due == Decimal("600.00")

    @pytest.mark.asyncio
    async def test_requires_action_leaves_invoice_alone(
        self, db_session, service, mock_stripe, invoice, client_user
    ):
        mock_stripe.create_payment_intent.return_value = intent(
            status="requires_action",
            next_action={"type": "use_stripe_sdk"},
        )

        result = await service.process_payment(
            client_user, amount="1000", invoice_id=invoice.id, payment_method_id="pm_3ds"
        )
        await db_session.refresh(invoice)

        assert result.status == TransactionStatus.PENDING
        assert result.requires_action
        assert result.next_action == {"type": "use_stripe_sdk"}
        assert result.client_secret == "pi_123_secret_abc"
        assert invoice.status == InvoiceStatus.SENT
        assert invoice.paid_amount == Decimal("0.00")
        assert subjects() == []

    @pytest.mark.asyncio
    async def test_processing_intent(self, service, mock_stripe, invoice, client_user):
        mock_stripe.create_payment_intent.return_value = intent(status="processing")

        result = await service.process_payment(client_user, amount="1000", invoice_id=invoice.id)

        assert result.status == TransactionStatus.PROCESSING
        assert result.success

    @pytest.mark.asyncio
    async def test_gateway_error_marks_attempt_failed(
        self, db_session, service, mock_stripe, invoice, client_user
    ):
        declined = {
            "code": "card_declined",
            "message": "Your card was declined.",
            "type": "card_error",
            "param": None,
        }
        mock_stripe.create_payment_intent.side_effect = PaymentGatewayError(
            message="Payment gateway error: Your card was declined.",
            gateway_error=declined,
        )

        with pytest.raises(PaymentGatewayError):
            await service.process_payment(client_user, amount="1000", invoice_id=invoice.id)

        rows, total = await TransactionDAO(db_session).list_transactions(org_id=invoice.org_id)
        await db_session.refresh(invoice)
        assert total == 1
        assert rows[0].status == TransactionStatus.FAILED
        assert rows[0].error == declined
        assert rows[0].failed_at is not None
        assert invoice.status == InvoiceStatus.SENT
        assert AuditAction.PAYMENT_FAILED in await _actions(db_session, rows[0])

    @pytest.mark.asyncio
    async def test_project_payment(
        self, service, mock_stripe, db_session, client_user, consultant_user
    ):
        project = await ProjectFactory.create(db_session, client_user, consultant_user)
        mock_stripe.create_payment_intent.return_value = intent(amount=25000)

        result = await service.process_payment(client_user, amount="250", project_id=project.id)

        assert result.transaction.project_id == project.id
        assert result.transaction.consultant_id == consultant_user.id
        assert result.transaction.invoice_id is None
        assert result.transaction.description == f"Payment for project {project.id}"
        assert mock_stripe.create_payment_intent.call_args.kwargs["metadata"]["project_id"] == str(project.id)

    @pytest.mark.asyncio
    async def test_proposal_payment_uses_proposal_currency(
        self, service, mock_stripe, db_session, client_user, consultant_user
    ):
        project = await ProjectFactory.create(db_session, client_user, consultant_user)
        proposal = await ProposalFactory.create(db_session, project, consultant_user, currency="EUR")
        mock_stripe.create_payment_intent.return_value = intent(amount=50000)

        result = await service.process_payment(
            client_user, amount="500", currency="usd", proposal_id=proposal.id
        )

        assert result.transaction.currency == "EUR"
        assert result.transaction.proposal_id == proposal.id
        assert result.transaction.project_id == project.id


class TestPaymentValidation:
    """Tests for what is rejected before a transaction exists."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["0", "-5"])
    async def test_amount_must_be_positive(self, service, invoice, client_user, amount):
        with pytest.raises(InvalidAmountError):
            await service.process_payment(client_user, amount=amount, invoice_id=invoice.id)

    @pytest.mark.asyncio
    async def test_unknown_method(self, service, invoice, client_user):
        with pytest.raises(ValidationError) as exc_info:
            await service.process_payment(client_user, amount="10", method="bitcoin", invoice_id=invoice.id)

        assert exc_info.value.message == "Unknown payment method: bitcoin"

    @pytest.mark.asyncio
    async def test_exactly_one_context(self, service, invoice, client_user):
        with pytest.raises(ValidationError):
            await service.process_payment(client_user, amount="10")
        with pytest.raises(ValidationError):
            await service.process_payment(
                client_user, amount="10", invoice_id=invoice.id, project_id=1
            )

    @pytest.mark.asyncio
    async def test_other_clients_invoice(self, service, db_session, test_org, invoice):
        stranger = await UserFactory.create_client(db_session, org_id=test_org.id)

        with pytest.raises(OwnershipError):
            await service.process_payment(stranger, amount="10", invoice_id=invoice.id)

    @pytest.mark.asyncio
    async def test_invoice_in_another_org(self, service, db_session, other_org, invoice):
        outsider = await UserFactory.create_client(db_session, org_id=other_org.id)

        with pytest.raises(InvoiceNotFoundError):
            await service.process_payment(outsider, amount="10", invoice_id=invoice.id)

    @pytest.mark.asyncio
    async def test_unknown_project(self, service, client_user):
        with pytest.raises(ProjectNotFoundError):
            await service.process_payment(client_user, amount="10", project_id=9999)

    @pytest.mark.asyncio
    async def test_draft_invoice_is_not_payable(self, service, db_session, test_org, client_user):
        draft = await InvoiceFactory.create(
            db_session, org_id=test_org.id, client=client_user, status=InvoiceStatus.DRAFT
        )

        with pytest.raises(InvalidStateTransitionError) as exc_info:
            await service.process_payment(client_user, amount="10", invoice_id=draft.id)

        assert exc_info.value.message == "Cannot pay a draft invoice"


class TestOverpayment:
    """Tests for the overpayment policy."""

    @pytest.mark.asyncio
    async def test_reject_happens_before_any_money_moves(
        self, db_session, service, mock_stripe, invoice, client_user, monkeypatch
    ):
        monkeypatch.setattr(settings, "OVERPAYMENT_POLICY", "reject")

        with pytest.raises(OverpaymentError):
            await service.process_payment(client_user, amount="1500", invoice_id=invoice.id)

        _, total = await TransactionDAO(db_session).list_transactions(org_id=invoice.org_id)
        assert total == 0
        mock_stripe.create_payment_intent.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_clamp_charges_the_amount_due(
        self, service, mock_stripe, invoice, client_user, monkeypatch
    ):
        monkeypatch.setattr(settings, "OVERPAYMENT_POLICY", "clamp")
        mock_stripe.create_payment_intent.return_value = intent()

        result = await service.process_payment(client_user, amount="1500", invoice_id=invoice.id)

        assert result.transaction.amount == Decimal("1000.00")
        assert mock_stripe.create_payment_intent.call_args.kwargs["amount"] == Decimal("1000.00")

    @pytest.mark.asyncio
    async def test_allow_records_the_whole_payment(
        self, db_session, service, mock_stripe, invoice, client_user
    ):
        mock_stripe.create_payment_intent.return_value = intent(amount=150000)

        await service.process_payment(client_user, amount="1500", invoice_id=invoice.id)
        await db_session.refresh(invoice)

        assert invoice.status == InvoiceStatus.PAID
        assert invoice.paid_amount == Decimal("1500.00")


class TestOtherMethods:
    """Tests for bank transfers and unsupported methods."""

    @pytest.mark.asyncio
    async def test_bank_transfer(self, db_session, service, mock_stripe, invoice, client_user):
        result = await service.process_payment(
            client_user, amount="1000", method="bank_transfer", invoice_id=invoice.id
        )
        await db_session.refresh(invoice)

        assert result.status == TransactionStatus.PENDING
        assert result.transaction.payment_method == PaymentMethod.BANK_TRANSFER
        assert "Bank transfer initiated" in result.message
        assert invoice.status == InvoiceStatus.PENDING
        assert invoice.paid_amount == Decimal("0.00")
        assert subjects() == ["Bank transfer instructions"]
        assert sent_to("client@example.com")
        mock_stripe.create_payment_intent.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_bank_transfer_on_partial_invoice_keeps_status(
        self, db_session, service, test_org, client_user
    ):
        partial = await InvoiceFactory.create(
            db_session, org_id=test_org.id, client=client_user, paid_amount=Decimal("200")
        )

        await service.process_payment(
            client_user, amount="800", method="bank_transfer", invoice_id=partial.id
        )
        await db_session.refresh(partial)

        assert partial.status == InvoiceStatus.PARTIAL

    @pytest.mark.asyncio
    async def test_unsupported_method_cancels_attempt(
        self, db_session, service, invoice, client_user
    ):
        with pytest.raises(UnsupportedPaymentMethodError) as exc_info:
            await service.process_payment(
                client_user, amount="1000", method="paypal", invoice_id=invoice.id
            )

        txn = await TransactionDAO(db_session).get_by_ref(exc_info.value.context["transaction_ref"])
        assert txn.status == TransactionStatus.CANCELLED
        assert txn.notes == "paypal payments are not supported"


class TestConfirmPayment:
    """Tests for confirm_payment()."""

    @pytest_asyncio.fixture
    async def pending(self, db_session, test_org, client_user, invoice):
        return await TransactionFactory.create(
            db_session,
            org_id=test_org.id,
            client=client_user,
            invoice=invoice,
            status=TransactionStatus.PENDING,
            payment_intent_id="pi_9",
        )

    @pytest.mark.asyncio
    async def test_confirm_completes_payment(
        self, db_session, service, mock_stripe, pending, invoice, client_user
    ):
        mock_stripe.confirm_payment_intent.return_value = intent(intent_id="pi_9")

        result = await service.confirm_payment(client_user, "pi_9", "pm_card_visa")
        await db_session.refresh(invoice)

        mock_stripe.confirm_payment_intent.assert_awaited_once_with("pi_9", "pm_card_visa")
        assert result.status == TransactionStatus.COMPLETED
        assert invoice.status == InvoiceStatus.PAID

    @pytest.mark.asyncio
    async def test_already_completed(self, service, mock_stripe, pending, client_user, db_session):
        pending.mark_completed()
        await db_session.commit()

        result = await service.confirm_payment(client_user, "pi_9")

        assert result.message == "Payment already completed"
        mock_stripe.confirm_payment_intent.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_only_the_client_may_confirm(self, service, pending, consultant_user):
        with pytest.raises(OwnershipError):
            await service.confirm_payment(consultant_user, "pi_9")

    @pytest.mark.asyncio
    async def test_unknown_intent(self, service, client_user):
        with pytest.raises(TransactionNotFoundError):
            await service.confirm_payment(client_user, "pi_missing")

    @pytest.mark.asyncio
    async def test_decline_on_confirm(self, db_session, service, mock_stripe, pending, client_user):
        mock_stripe.confirm_payment_intent.side_effect = PaymentGatewayError(
            message="Payment gateway error: Your card was declined."
        )

        with pytest.raises(PaymentGatewayError):
            await service.confirm_payment(client_user, "pi_9")

        assert pending.status == TransactionStatus.FAILED
        assert pending.error["message"] == "Payment gateway error: Your card was declined."


class TestRefunds:
    """Tests for process_refund()."""

    @pytest_asyncio.fixture
    async def paid_invoice(self, db_session, test_org, client_user):
        return await InvoiceFactory.create(
            db_session, org_id=test_org.id, client=client_user, paid_amount=Decimal("1000")
        )

    @pytest_asyncio.fixture
    async def payment(self, db_session, test_org, client_user, paid_invoice):
        return await TransactionFactory.create(
            db_session,
            org_id=test_org.id,
            client=client_user,
            invoice=paid_invoice,
            transaction_ref="txn_paid",
            payment_intent_id="pi_paid",
            charge_id="ch_paid",
        )

    @pytest.fixture(autouse=True)
    def gateway_refund(self, mock_stripe):
        mock_stripe.create_refund.return_value = RefundResult(
            id="re_1", amount=100000, status="succeeded", payment_intent_id="pi_paid"
        )

    @pytest.mark.asyncio
    async def test_full_refund(
        self, db_session, service, mock_stripe, payment, paid_invoice, admin_user
    ):
        refund = await service.process_refund(admin_user, "txn_paid", reason="duplicate")
        await db_session.refresh(paid_invoice)

        assert refund.transaction_ref == "refund_txn_paid"
        assert refund.transaction_type == TransactionType.REFUND
        assert refund.status == TransactionStatus.COMPLETED
        assert refund.amount == Decimal("-1000.00")
        assert refund.refund_id == "re_1"
        assert refund.refund_reason == RefundReason.DUPLICATE
        assert refund.original_transaction_id == payment.id
        assert payment.status == TransactionStatus.COMPLETED
        assert payment.amount == Decimal("1000.00")
        assert paid_invoice.status == InvoiceStatus.REFUNDED
        assert paid_invoice.paid_amount == Decimal("1000.00")
        mock_stripe.create_refund.assert_awaited_once_with(
            payment_intent_id="pi_paid",
            charge_id="ch_paid",
            amount=Decimal("1000.00"),
            reason="duplicate",
            metadata={
                "transaction_ref": "refund_txn_paid",
                "original_transaction_ref": "txn_paid",
            },
        )
        assert "Refund issued: 1,000.00 USD" in subjects()
        assert [m.subject for m in sent_to(settings.ADMIN_EMAIL)] == ["Refund refund_txn_paid"]
        assert AuditAction.REFUND_PROCESSED in await _actions(db_session, refund)

    @pytest.mark.asyncio
    async def test_partial_refunds_up_to_the_remainder(
        self, db_session, service, payment, paid_invoice, client_user
    ):
        first = await service.process_refund(client_user, "txn_paid", amount="300")
        await db_session.refresh(paid_invoice)
        assert first.transaction_ref == "refund_txn_paid"
        assert paid_invoice.status == InvoiceStatus.PARTIAL
        assert "Partial refund: 300.00 USD" in paid_invoice.notes

        second = await service.process_refund(client_user, "txn_paid", amount="200")
        assert second.transaction_ref == "refund_txn_paid_2"

        with pytest.raises(InvalidAmountError) as exc_info:
            await service.process_refund(client_user, "txn_paid", amount="600")
        assert exc_info.value.context["refundable"] == "500.00"

        last = await service.process_refund(client_user, "txn_paid")
        await db_session.refresh(paid_invoice)
        assert last.amount == Decimal("-500.00")
        assert last.transaction_ref == "refund_txn_paid_3"
        assert paid_invoice.status == InvoiceStatus.REFUNDED

        with pytest.raises(InvalidStateTransitionError) as exc_info:
            await service.process_refund(client_user, "txn_paid")
        assert exc_info.value.message == "This payment has already been fully refunded"

    @pytest.mark.asyncio
    async def test_bank_transfer_refund_is_manual(
        self, db_session, service, mock_stripe, test_org, client_user, paid_invoice, admin_user
    ):
        await TransactionFactory.create(
            db_session,
            org_id=test_org.id,
            client=client_user,
            invoice=paid_invoice,
            transaction_ref="txn_wire",
            payment_method=PaymentMethod.BANK_TRANSFER,
        )

        refund = await service.process_refund(admin_user, "txn_wire", amount="250")

        assert refund.status == TransactionStatus.PENDING
        assert refund.notes == "Bank transfer refund, to be sent manually by finance"
        mock_stripe.create_refund.assert_not_awaited()
        assert sent_to("client@example.com") == []
        assert len(sent_to(settings.ADMIN_EMAIL)) == 1

    @pytest.mark.asyncio
    async def test_pending_payment_is_not_refundable(
        self, db_session, service, test_org, client_user, admin_user
    ):
        await TransactionFactory.create(
            db_session,
            org_id=test_org.id,
            client=client_user,
            transaction_ref="txn_pending",
            status=TransactionStatus.PENDING,
        )

        with pytest.raises(InvalidStateTransitionError) as exc_info:
            await service.process_refund(admin_user, "txn_pending")

        assert exc_info.value.message == "Only completed payments can be refunded"

    @pytest.mark.asyncio
    async def test_unpaid_invoice_blocks_refund(
        self, db_session, service, test_org, client_user, admin_user
    ):
        cancelled = await InvoiceFactory.create(
            db_session, org_id=test_org.id, client=client_user, status=InvoiceStatus.CANCELLED
        )
        await TransactionFactory.create(
            db_session,
            org_id=test_org.id,
            client=client_user,
            invoice=cancelled,
            transaction_ref="txn_orphan",
        )

        with pytest.raises(InvalidStateTransitionError) as exc_info:
            await service.process_refund(admin_user, "txn_orphan")

        assert exc_info.value.message == "Cannot refund an unpaid invoice"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["0", "-10"])
    async def test_amount_must_be_positive(self, service, payment, admin_user, amount):
        with pytest.raises(InvalidAmountError):
            await service.process_refund(admin_user, "txn_paid", amount=amount)

    @pytest.mark.asyncio
    async def test_access(self, db_session, service, payment, test_org, other_org):
        stranger = await UserFactory.create_client(db_session, org_id=test_org.id)
        foreign_admin = await UserFactory.create_admin(db_session, org_id=other_org.id)

        with pytest.raises(OwnershipError):
            await service.process_refund(stranger, "txn_paid")
        with pytest.raises(TransactionNotFoundError):
            await service.process_refund(foreign_admin, "txn_paid")
        with pytest.raises(TransactionNotFoundError):
            await service.process_refund(stranger, "txn_missing")

    @pytest.mark.asyncio
    async def test_gateway_refusal_keeps_a_failed_refund(
        self, db_session, service, mock_stripe, payment, paid_invoice, admin_user
    ):
        mock_stripe.create_refund.side_effect = PaymentGatewayError(
            message="Payment gateway error: charge_already_refunded",
            gateway_error={"code": "charge_already_refunded", "message": "Already refunded"},
        )

        with pytest.raises(PaymentGatewayError):
            await service.process_refund(admin_user, "txn_paid")

        dao = TransactionDAO(db_session)
        failed = await dao.get_by_ref("refund_txn_paid")
        await db_session.refresh(paid_invoice)
        assert await dao.count_refunds_for(payment.id) == 1
        assert failed.status == TransactionStatus.FAILED
        assert failed.error["code"] == "charge_already_refunded"
        assert failed.amount == Decimal("-1000.00")
        assert await dao.sum_refunded_for(payment.id) == Decimal("0.00")
        assert paid_invoice.status == InvoiceStatus.PAID
        assert AuditAction.REFUND_PROCESSED in await _actions(db_session, failed)
        assert subjects() == []

    @pytest.mark.asyncio
    async def test_retry_after_refusal(
        self, db_session, service, mock_stripe, payment, paid_invoice, admin_user
    ):
        succeeded = mock_stripe.create_refund.return_value
        mock_stripe.create_refund.side_effect = [PaymentGatewayError(message="timeout"), succeeded]

        with pytest.raises(PaymentGatewayError):
            await service.process_refund(admin_user, "txn_paid")
        refund = await service.process_refund(admin_user, "txn_paid")
        await db_session.refresh(paid_invoice)

        assert refund.transaction_ref == "refund_txn_paid_2"
        assert refund.status == TransactionStatus.COMPLETED
        assert refund.amount == Decimal("-1000.00")
        assert paid_invoice.status == InvoiceStatus.REFUNDED

    @pytest.mark.asyncio
    async def test_pending_refund_row_exists_before_the_gateway_call(
        self, db_session, service, mock_stripe, payment, admin_user
    ):
        seen = {}

        async def check_ledger(**kwargs):
            row = await TransactionDAO(db_session).get_by_ref(kwargs["metadata"]["transaction_ref"])
            seen["status"] = row.status
            return RefundResult(id="re_2", amount=100000, status="succeeded", payment_intent_id="pi_paid")

        mock_stripe.create_refund.side_effect = check_ledger

        refund = await service.process_refund(admin_user, "txn_paid")

        assert seen["status"] == TransactionStatus.PENDING
        assert refund.status == TransactionStatus.COMPLETED

    def test_refund_ref(self):
        assert refund_ref("txn_abc", 0) == "refund_txn_abc"
        assert refund_ref("txn_abc", 1) == "refund_txn_abc_2"
        assert refund_ref("txn_abc", 4) == "refund_txn_abc_5"


class TestPayouts:
    """Tests for process_payout()."""

    @pytest.mark.asyncio
    async def test_admin_only(self, service, client_user, consultant_user):
        with pytest.raises(AuthorizationError):
            await service.process_payout(client_user, consultant_user.id, "500")

    @pytest.mark.asyncio
    async def test_bank_transfer_payout_by_default(
        self, db_session, service, mock_stripe, admin_user, consultant_user
    ):
        await ProfileFactory.create_consultant_profile(
            db_session, consultant_user, bank_details={"iban": "DE89370400440532013000"}
        )

        payout = await service.process_payout(admin_user, consultant_user.id, "500")

        assert payout.transaction_type == TransactionType.PAYOUT
        assert payout.payment_method == PaymentMethod.BANK_TRANSFER
        assert payout.status == TransactionStatus.PENDING
        assert payout.consultant_id == consultant_user.id
        assert payout.created_by_id == admin_user.id
        mock_stripe.create_transfer.assert_not_awaited()
        finance = sent_to(settings.FINANCE_EMAIL)
        assert [m.subject for m in finance] == [f"Payout to process: {payout.transaction_ref}"]
        assert "DE89370400440532013000" in finance[0].html_content
        assert [m.subject for m in sent_to("consultant@example.com")] == [
            "Payout initiated: 500.00 USD"
        ]
        assert AuditAction.PAYOUT_PROCESSED in await _actions(db_session, payout)

    @pytest.mark.asyncio
    async def test_stripe_payout(self, db_session, service, mock_stripe, admin_user, consultant_user):
        await ProfileFactory.create_consultant_profile(
            db_session, consultant_user, stripe_connect_id="acct_1", preferred_payout_method="stripe"
        )
        mock_stripe.create_transfer.return_value = TransferResult(
            id="tr_1", amount=50000, currency="usd", destination="acct_1"
        )

        payout = await service.process_payout(admin_user, consultant_user.id, "500", currency="usd")

        kwargs = mock_stripe.create_transfer.call_args.kwargs
        assert kwargs["amount"] == Decimal("500.00")
        assert kwargs["destination"] == "acct_1"
        assert kwargs["currency"] == "USD"
        assert payout.status == TransactionStatus.COMPLETED
        assert payout.transfer_id == "tr_1"
        profile = await ConsultantProfileDAO(db_session).get_by_user_id(consultant_user.id)
        assert profile.last_payout_at == payout.completed_at
        assert subjects() == ["Payout sent: 500.00 USD"]

    @pytest.mark.asyncio
    async def test_stripe_payout_needs_connected_account(self, service, admin_user, consultant_user):
        with pytest.raises(ValidationError):
            await service.process_payout(admin_user, consultant_user.id, "500", method="stripe")

    @pytest.mark.asyncio
    async def test_transfer_failure(self, db_session, service, mock_stripe, admin_user, consultant_user):
        await ProfileFactory.create_consultant_profile(db_session, consultant_user, stripe_connect_id="acct_1")
        mock_stripe.create_transfer.side_effect = PaymentGatewayError(message="Payment gateway error: insufficient funds")

        with pytest.raises(PaymentGatewayError):
            await service.process_payout(admin_user, consultant_user.id, "500", method="stripe")

        rows, _ = await TransactionDAO(db_session).list_transactions(
            org_id=admin_user.org_id, transaction_type=TransactionType.PAYOUT
        )
        assert rows[0].status == TransactionStatus.FAILED

    @pytest.mark.asyncio
    async def test_unsupported_payout_method(self, service, admin_user, consultant_user):
        with pytest.raises(UnsupportedPaymentMethodError):
            await service.process_payout(admin_user, consultant_user.id, "500", method="credit_card")

    @pytest.mark.asyncio
    async def test_payee_must_be_a_consultant(self, service, admin_user, client_user):
        with pytest.raises(UserNotFoundError):
            await service.process_payout(admin_user, client_user.id, "500")

    @pytest.mark.asyncio
    async def test_amount_must_be_positive(self, service, admin_user, consultant_user):
        with pytest.raises(InvalidAmountError):
            await service.process_payout(admin_user, consultant_user.id, "0")


def saved(method_id, customer="cus_1"):
    return SavedPaymentMethod(
        id=method_id, brand="visa", last4="4242", exp_month=12, exp_year=2030, customer_id=customer
    )


class TestSavedPaymentMethods:
    """Tests for the client's saved cards."""

    @pytest.mark.asyncio
    async def test_no_customer_means_no_methods(self, service, mock_stripe, client_user):
        assert await service.get_client_payment_methods(client_user) == []
        mock_stripe.list_payment_methods.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_list_flags_the_default(self, db_session, service, mock_stripe, client_user):
        await ProfileFactory.create_client_profile(db_session, client_user, "cus_1", "pm_2")
        mock_stripe.list_payment_methods.return_value = [saved("pm_1"), saved("pm_2")]

        methods = await service.get_client_payment_methods(client_user)

        mock_stripe.list_payment_methods.assert_awaited_once_with("cus_1")
        assert [(m.id, m.is_default) for m in methods] == [("pm_1", False), ("pm_2", True)]

    @pytest.mark.asyncio
    async def test_first_method_creates_customer_and_becomes_default(
        self, db_session, service, mock_stripe, client_user
    ):
        mock_stripe.attach_payment_method.return_value = saved("pm_1", "cus_new")

        method = await service.add_client_payment_method(client_user, "pm_1")

        mock_stripe.create_customer.assert_awaited_once()
        mock_stripe.attach_payment_method.assert_awaited_once_with("pm_1", "cus_new")
        mock_stripe.set_default_payment_method.assert_awaited_once_with("cus_new", "pm_1")
        assert method.is_default is True
        profile = await ClientProfileDAO(db_session).get_by_user_id(client_user.id)
        assert profile.stripe_customer_id == "cus_new"
        assert profile.default_payment_method_id == "pm_1"
        history = await AuditLogDAO(db_session).get_for_resource("client_profile", profile.id)
        assert history[0].changes == {"payment_method": {"before": None, "after": "pm_1"}}

    @pytest.mark.asyncio
    async def test_later_method_keeps_existing_default(
        self, db_session, service, mock_stripe, client_user
    ):
        await ProfileFactory.create_client_profile(db_session, client_user, "cus_1", "pm_1")
        mock_stripe.attach_payment_method.return_value = saved("pm_2")

        method = await service.add_client_payment_method(client_user, "pm_2")

        mock_stripe.create_customer.assert_not_awaited()
        mock_stripe.set_default_payment_method.assert_not_awaited()
        assert method.is_default is False
        profile = await ClientProfileDAO(db_session).get_by_user_id(client_user.id)
        assert profile.default_payment_method_id == "pm_1"

    @pytest.mark.asyncio
    async def test_add_as_default(self, db_session, service, mock_stripe, client_user):
        await ProfileFactory.create_client_profile(db_session, client_user, "cus_1", "pm_1")
        mock_stripe.attach_payment_method.return_value = saved("pm_2")

        method = await service.add_client_payment_method(client_user, "pm_2", set_as_default=True)

        mock_stripe.set_default_payment_method.assert_awaited_once_with("cus_1", "pm_2")
        assert method.is_default is True

    @pytest.mark.asyncio
    async def test_refused_method_changes_nothing(
        self, db_session, service, mock_stripe, client_user
    ):
        await ProfileFactory.create_client_profile(db_session, client_user, "cus_1")
        mock_stripe.attach_payment_method.side_effect = PaymentGatewayError(
            message="Payment gateway error: No such PaymentMethod"
        )

        with pytest.raises(PaymentGatewayError):
            await service.add_client_payment_method(client_user, "pm_bad")

        profile = await ClientProfileDAO(db_session).get_by_user_id(client_user.id)
        assert profile.default_payment_method_id is None

    @pytest.mark.asyncio
    async def test_removing_default_promotes_next_method(
        self, db_session, service, mock_stripe, client_user
    ):
        await ProfileFactory.create_client_profile(db_session, client_user, "cus_1", "pm_1")
        mock_stripe.list_payment_methods.return_value = [saved("pm_1"), saved("pm_2")]

        default_id = await service.remove_client_payment_method(client_user, "pm_1")

        mock_stripe.detach_payment_method.assert_awaited_once_with("pm_1")
        mock_stripe.set_default_payment_method.assert_awaited_once_with("cus_1", "pm_2")
        assert default_id == "pm_2"
        profile = await ClientProfileDAO(db_session).get_by_user_id(client_user.id)
        assert profile.default_payment_method_id == "pm_2"

    @pytest.mark.asyncio
    async def test_removing_last_method_clears_default(
        self, db_session, service, mock_stripe, client_user
    ):
        await ProfileFactory.create_client_profile(db_session, client_user, "cus_1", "pm_1")
        mock_stripe.list_payment_methods.return_value = [saved("pm_1")]

        assert await service.remove_client_payment_method(client_user, "pm_1") is None

        mock_stripe.set_default_payment_method.assert_not_awaited()
        profile = await ClientProfileDAO(db_session).get_by_user_id(client_user.id)
        assert profile.default_payment_method_id is None

    @pytest.mark.asyncio
    async def test_removing_other_method_keeps_default(
        self, db_session, service, mock_stripe, client_user
    ):
        await ProfileFactory.create_client_profile(db_session, client_user, "cus_1", "pm_1")
        mock_stripe.list_payment_methods.return_value = [saved("pm_1"), saved("pm_2")]

        assert await service.remove_client_payment_method(client_user, "pm_2") == "pm_1"

        mock_stripe.set_default_payment_method.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cannot_touch_another_customers_method(
        self, db_session, service, mock_stripe, client_user
    ):
        await ProfileFactory.create_client_profile(db_session, client_user, "cus_1", "pm_1")
        mock_stripe.list_payment_methods.return_value = [saved("pm_1")]

        with pytest.raises(PaymentMethodNotFoundError):
            await service.remove_client_payment_method(client_user, "pm_someone_else")
        with pytest.raises(PaymentMethodNotFoundError):
            await service.set_default_payment_method(client_user, "pm_someone_else")

        mock_stripe.detach_payment_method.assert_not_awaited()
        mock_stripe.set_default_payment_method.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_remove_without_customer(self, service, client_user):
        with pytest.raises(PaymentMethodNotFoundError):
            await service.remove_client_payment_method(client_user, "pm_1")

    @pytest.mark.asyncio
    async def test_set_default(self, db_session, service, mock_stripe, client_user):
        profile = await ProfileFactory.create_client_profile(db_session, client_user, "cus_1", "pm_1")
        mock_stripe.list_payment_methods.return_value = [saved("pm_1"), saved("pm_2")]

        method = await service.set_default_payment_method(client_user, "pm_2")

        mock_stripe.set_default_payment_method.assert_awaited_once_with("cus_1", "pm_2")
        assert method.id == "pm_2"
        assert method.is_default is True
        await db_session.refresh(profile)
        assert profile.default_payment_method_id == "pm_2"
        history = await AuditLogDAO(db_session).get_for_resource("client_profile", profile.id)
        assert history[0].changes == {
            "default_payment_method_id": {"before": "pm_1", "after": "pm_2"}
        }


class TestConnectOnboarding:
    """Tests for consultant Stripe Connect onboarding."""

    LINK = AccountLink(url="https://connect.stripe.com/setup/e/acct_new/abc", expires_at=1718000300)

    @pytest.mark.asyncio
    async def test_first_call_creates_and_stores_account(
        self, db_session, service, mock_stripe, consultant_user
    ):
        mock_stripe.create_connect_account.return_value = ConnectAccount(id="acct_new")
        mock_stripe.create_account_link.return_value = self.LINK

        onboarding = await service.setup_consultant_connect_account(consultant_user)

        kwargs = mock_stripe.create_connect_account.call_args.kwargs
        assert kwargs["email"] == consultant_user.email
        assert kwargs["country"] == settings.STRIPE_CONNECT_COUNTRY
        assert kwargs["metadata"] == {"user_id": str(consultant_user.id)}
        link_args = mock_stripe.create_account_link.call_args
        assert link_args.args == ("acct_new",)
        assert link_args.kwargs["return_url"].startswith(settings.FRONTEND_URL)
        assert onboarding.created is True
        assert onboarding.account_id == "acct_new"
        assert onboarding.onboarding_url == self.LINK.url
        assert onboarding.expires_at == datetime.utcfromtimestamp(1718000300)

        profile = await ConsultantProfileDAO(db_session).get_by_user_id(consultant_user.id)
        assert profile.stripe_connect_id == "acct_new"
        assert profile.preferred_payout_method == "stripe"

    @pytest.mark.asyncio
    async def test_existing_account_gets_a_fresh_link(
        self, db_session, service, mock_stripe, consultant_user
    ):
        await ProfileFactory.create_consultant_profile(
            db_session, consultant_user, stripe_connect_id="acct_1", preferred_payout_method="bank_transfer"
        )
        mock_stripe.create_account_link.return_value = self.LINK

        onboarding = await service.setup_consultant_connect_account(consultant_user)

        mock_stripe.create_connect_account.assert_not_awaited()
        assert onboarding.created is False
        assert onboarding.account_id == "acct_1"
        profile = await ConsultantProfileDAO(db_session).get_by_user_id(consultant_user.id)
        assert profile.preferred_payout_method == "bank_transfer"

    @pytest.mark.asyncio
    async def test_account_survives_a_failed_link(
        self, db_session, service, mock_stripe, consultant_user
    ):
        mock_stripe.create_connect_account.return_value = ConnectAccount(id="acct_new")
        mock_stripe.create_account_link.side_effect = PaymentGatewayError(message="Payment gateway error: down")

        with pytest.raises(PaymentGatewayError):
            await service.setup_consultant_connect_account(consultant_user)
        await db_session.rollback()

        profile = await ConsultantProfileDAO(db_session).get_by_user_id(consultant_user.id)
        assert profile.stripe_connect_id == "acct_new"

    @pytest.mark.asyncio
    async def test_connected_consultant_can_be_paid_by_stripe(
        self, db_session, service, mock_stripe, admin_user, consultant_user
    ):
        mock_stripe.create_connect_account.return_value = ConnectAccount(id="acct_new")
        mock_stripe.create_account_link.return_value = self.LINK
        mock_stripe.create_transfer.return_value = TransferResult(
            id="tr_1", amount=50000, currency="usd", destination="acct_new"
        )

        await service.setup_consultant_connect_account(consultant_user)
        payout = await service.process_payout(admin_user, consultant_user.id, "500")

        assert payout.payment_method == PaymentMethod.STRIPE
        assert mock_stripe.create_transfer.call_args.kwargs["destination"] == "acct_new"


class TestQueries:
    """Tests for transaction lookup, listing and the financial summary."""

    @pytest.mark.asyncio
    async def test_get_transaction_visibility(
        self, db_session, service, test_org, client_user, consultant_user, admin_user
    ):
        txn = await TransactionFactory.create(
            db_session, org_id=test_org.id, client=client_user, consultant=consultant_user
        )
        stranger = await UserFactory.create_client(db_session, org_id=test_org.id)

        assert (await service.get_transaction(client_user, txn.transaction_ref)).id == txn.id
        assert (await service.get_transaction(consultant_user, txn.transaction_ref)).id == txn.id
        assert (await service.get_transaction(admin_user, txn.transaction_ref)).id == txn.id
        with pytest.raises(OwnershipError):
            await service.get_transaction(stranger, txn.transaction_ref)

    @pytest.mark.asyncio
    async def test_list_is_scoped_by_role(self, db_session, service, test_org, client_user, admin_user):
        mine = await TransactionFactory.create(db_session, org_id=test_org.id, client=client_user)
        other = await UserFactory.create_client(db_session, org_id=test_org.id)
        await TransactionFactory.create(db_session, org_id=test_org.id, client=other)

        rows, total = await service.list_transactions(client_user)
        assert total == 1
        assert rows[0].id == mine.id

        _, total = await service.list_transactions(admin_user)
        assert total == 2

    @pytest.mark.asyncio
    async def test_client_summary(self, db_session, service, test_org, client_user, invoice):
        await TransactionFactory.create(
            db_session, org_id=test_org.id, client=client_user, amount=Decimal("250.00")
        )

        summary = await service.get_financial_summary(client_user)

        assert summary["role"] == "client"
        assert summary["total_spent"] == Decimal("250.00")
        assert summary["outstanding_balance"] == Decimal("1000.00")
        assert summary["invoice_counts"] == {"sent": 1}
        assert len(summary["recent_transactions"]) == 1

    @pytest.mark.asyncio
    async def test_admin_summary(self, db_session, service, admin_user, client_user, consultant_user, invoice):
        summary = await service.get_financial_summary(admin_user)

        assert summary["role"] == "admin"
        assert summary["total_revenue"] == Decimal("0")
        assert summary["total_outstanding"] == Decimal("1000.00")
        assert summary["total_clients"] == 1
        assert summary["total_consultants"] == 1

    @pytest.mark.asyncio
    async def test_consultant_summary(self, service, consultant_user, invoice):
        summary = await service.get_financial_summary(consultant_user)

        assert summary["role"] == "consultant"
        assert set(summary) >= {"total_earnings", "pending_earnings", "active_projects", "total_clients"}


class TestCheckout:
    """Tests for create_invoice_checkout_session()."""

    @pytest.fixture(autouse=True)
    def gateway_session(self, mock_stripe):
        mock_stripe.create_checkout_session.return_value = CheckoutSession(
            id="cs_1",
            url="https://checkout.stripe.com/c/pay/cs_1",
            status=CheckoutSessionStatus.OPEN,
        )

    @pytest.mark.asyncio
    async def test_session_with_platform_fee_line(
        self, db_session, service, mock_stripe, test_org, client_user
    ):
        invoice = await InvoiceFactory.create(
            db_session,
            org_id=test_org.id,
            client=client_user,
            invoice_number="INV-2406-0007",
            platform_fee_amount=Decimal("50.00"),
        )

        result = await service.create_invoice_checkout_session(client_user, invoice.id)

        kwargs = mock_stripe.create_checkout_session.call_args.kwargs
        lines = kwargs["line_items"]
        assert [line["price_data"]["unit_amount"] for line in lines] == [100000, 5000]
        assert lines[0]["price_data"]["product_data"]["name"] == "Invoice INV-2406-0007"
        assert lines[1]["price_data"]["product_data"]["name"] == "Platform Fee"
        assert lines[0]["price_data"]["currency"] == "usd"
        assert kwargs["success_url"] == (
            f"{settings.FRONTEND_URL}/dashboard/invoices/{invoice.id}/success"
            "?session_id={CHECKOUT_SESSION_ID}"
        )
        assert kwargs["cancel_url"].endswith(f"/dashboard/invoices/{invoice.id}?canceled=true")
        assert kwargs["metadata"]["invoice_id"] == str(invoice.id)
        assert result.session_id == "cs_1"
        assert result.session_url == "https://checkout.stripe.com/c/pay/cs_1"
        assert invoice.stripe_checkout_session_id == "cs_1"

    @pytest.mark.asyncio
    async def test_partially_paid_invoice_charges_what_is_left(
        self, db_session, service, mock_stripe, test_org, client_user
    ):
        invoice = await InvoiceFactory.create(
            db_session, org_id=test_org.id, client=client_user, paid_amount=Decimal("400")
        )

        await service.create_invoice_checkout_session(client_user, invoice.id)

        lines = mock_stripe.create_checkout_session.call_args.kwargs["line_items"]
        assert [line["price_data"]["unit_amount"] for line in lines] == [60000]

    @pytest.mark.asyncio
    async def test_nothing_due(self, db_session, service, test_org, client_user):
        empty = await InvoiceFactory.create(db_session, org_id=test_org.id, client=client_user, items=[])

        with pytest.raises(InvalidStateTransitionError) as exc_info:
            await service.create_invoice_checkout_session(client_user, empty.id)

        assert exc_info.value.message == "Invoice has no amount due"

    @pytest.mark.asyncio
    async def test_paid_invoice(self, db_session, service, test_org, client_user):
        paid = await InvoiceFactory.create(
            db_session, org_id=test_org.id, client=client_user, paid_amount=Decimal("1000")
        )

        with pytest.raises(InvalidStateTransitionError):
            await service.create_invoice_checkout_session(client_user, paid.id)


class TestWebhooks:
    """Tests for handle_gateway_event()."""

    @pytest_asyncio.fixture
    async def pending(self, db_session, test_org, client_user, invoice):
        return await TransactionFactory.create(
            db_session,
            org_id=test_org.id,
            client=client_user,
            invoice=invoice,
            status=TransactionStatus.PENDING,
            payment_intent_id="pi_w",
            transaction_ref="txn_webhook",
        )

    def _succeeded(self, event_id="evt_1"):
        return WebhookEvent(
            id=event_id,
            type="payment_intent.succeeded",
            data={
                "id": "pi_w",
                "amount": 100000,
                "currency": "usd",
                "status": "succeeded",
                "latest_charge": {
                    "id": "ch_w",
                    "receipt_url": "https://pay.stripe.com/receipts/rcpt_w",
                    "payment_method_details": {"card": CARD},
                },
            },
        )

    @pytest.mark.asyncio
    async def test_payment_succeeded_is_idempotent(
        self, db_session, service, pending, invoice
    ):
        first = await service.handle_gateway_event(self._succeeded())
        replay = await service.handle_gateway_event(self._succeeded("evt_2"))
        await db_session.refresh(invoice)

        assert first.handled
        assert first.transaction_ref == "txn_webhook"
        assert pending.status == TransactionStatus.COMPLETED
        assert pending.charge_id == "ch_w"
        assert pending.payment_method_details == CARD
        assert not replay.handled
        assert replay.detail == "already completed"
        assert invoice.status == InvoiceStatus.PAID
        assert invoice.paid_amount == Decimal("1000.00")
        assert subjects() == ["Payment received: 1,000.00 USD"]
        assert AuditAction.WEBHOOK_RECEIVED in await _actions(db_session, pending)

    @pytest.mark.asyncio
    async def test_payment_on_cancelled_invoice_is_noted(
        self, db_session, service, pending, invoice
    ):
        invoice.cancel("client went away")
        await db_session.commit()

        result = await service.handle_gateway_event(self._succeeded())
        await db_session.refresh(invoice)

        assert result.handled
        assert pending.status == TransactionStatus.COMPLETED
        assert pending.notes.startswith("Not applied to invoice:")
        assert invoice.status == InvoiceStatus.CANCELLED
        assert invoice.paid_amount == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_unknown_intent(self, service):
        result = await service.handle_gateway_event(self._succeeded())

        assert not result.handled
        assert result.detail == "no matching transaction"

    @pytest.mark.asyncio
    async def test_payment_failed(self, service, pending):
        event = WebhookEvent(
            id="evt_f",
            type="payment_intent.payment_failed",
            data={
                "id": "pi_w",
                "last_payment_error": {
                    "code": "expired_card",
                    "message": "Your card has expired.",
                    "type": "card_error",
                },
            },
        )

        result = await service.handle_gateway_event(event)

        assert result.handled
        assert pending.status == TransactionStatus.FAILED
        assert pending.error == {
            "code": "expired_card",
            "message": "Your card has expired.",
            "type": "card_error",
            "param": None,
        }

    @pytest.mark.asyncio
    async def test_checkout_completed(self, db_session, service, invoice, client_user):
        invoice.stripe_checkout_session_id = "cs_1"
        await db_session.commit()
        event = WebhookEvent(
            id="evt_c",
            type="checkout.session.completed",
            data={
                "id": "cs_1",
                "payment_status": "paid",
                "amount_total": 100000,
                "currency": "usd",
                "payment_intent": "pi_checkout",
                "metadata": {"invoice_id": str(invoice.id)},
            },
        )

        result = await service.handle_gateway_event(event)
        replay = await service.handle_gateway_event(event)
        await db_session.refresh(invoice)

        txn = await TransactionDAO(db_session).get_by_ref(result.transaction_ref)
        assert result.handled
        assert txn.status == TransactionStatus.COMPLETED
        assert txn.payment_method == PaymentMethod.STRIPE
        assert txn.amount == Decimal("1000.00")
        assert txn.client_id == client_user.id
        assert txn.checkout_session_id == "cs_1"
        assert txn.payment_intent_id == "pi_checkout"
        assert invoice.status == InvoiceStatus.PAID
        assert replay.detail == "already recorded"

    @pytest.mark.asyncio
    async def test_checkout_falls_back_to_metadata(self, db_session, service, invoice):
        event = WebhookEvent(
            id="evt_m",
            type="checkout.session.completed",
            data={
                "id": "cs_unknown",
                "payment_status": "paid",
                "amount_total": 40000,
                "currency": "usd",
                "metadata": {"invoice_id": str(invoice.id)},
            },
        )

        result = await service.handle_gateway_event(event)
        await db_session.refresh(invoice)

        assert result.handled
        assert invoice.status == InvoiceStatus.PARTIAL

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "data,detail",
        [
            ({"id": "cs_2", "payment_status": "unpaid"}, "checkout not paid"),
            ({"id": "cs_3", "payment_status": "paid", "amount_total": 100}, "no matching invoice"),
        ],
    )
    async def test_checkout_not_recorded(self, service, data, detail):
        result = await service.handle_gateway_event(
            WebhookEvent(id="evt_x", type="checkout.session.completed", data=data)
        )

        assert not result.handled
        assert result.detail == detail

    @pytest.mark.asyncio
    async def test_dispute(self, db_session, service, test_org, client_user):
        txn = await TransactionFactory.create(
            db_session, org_id=test_org.id, client=client_user, charge_id="ch_d"
        )
        event = WebhookEvent(id="evt_d", type="charge.dispute.created", data={"charge": "ch_d"})

        result = await service.handle_gateway_event(event)
        replay = await service.handle_gateway_event(event)

        assert result.handled
        assert txn.status == TransactionStatus.DISPUTED
        assert replay.detail == "already disputed"

    @pytest.mark.asyncio
    async def test_unhandled_event_type(self, service):
        result = await service.handle_gateway_event(
            WebhookEvent(id="evt_u", type="customer.created", data={"id": "cus_1"})
        )

        assert not result.handled
        assert result.detail == "ignored"
