"""
Unit tests for TransactionDAO.

WHAT: Gateway reference lookups, role-scoped listing, refund caps and the
revenue totals behind the financial summary.

WHY: The refund cap must count money already promised back, and payment
intent lookups must never match the refund rows that copy the intent id.
"""

from decimal import Decimal

import pytest
import pytest_asyncio

from billing.dao.transaction import TransactionDAO
from billing.models.transaction import (
    PaymentMethod,
    TransactionStatus,
    TransactionType,
)
from tests.factories import InvoiceFactory, TransactionFactory


@pytest_asyncio.fixture
async def invoice(db_session, test_org, client_user):
    return await InvoiceFactory.create(
        db_session, org_id=test_org.id, client=client_user, paid_amount=Decimal("500")
    )


@pytest_asyncio.fixture
async def payment(db_session, test_org, client_user, invoice):
    return await TransactionFactory.create(
        db_session,
        org_id=test_org.id,
        client=client_user,
        invoice=invoice,
        amount=Decimal("500.00"),
        payment_intent_id="pi_123",
        charge_id="ch_123",
        checkout_session_id="cs_123",
    )


async def _refund(session, payment, amount, status):
    return await TransactionFactory.create(
        session,
        org_id=payment.org_id,
        amount=-Decimal(amount),
        transaction_type=TransactionType.REFUND,
        status=status,
        client_id=payment.client_id,
        invoice_id=payment.invoice_id,
        original_transaction_id=payment.id,
        payment_intent_id=payment.payment_intent_id,
        charge_id=payment.charge_id,
    )


class TestLookups:
    """Tests for lookups by gateway reference."""

    @pytest.mark.asyncio
    async def test_by_ref(self, db_session, payment):
        dao = TransactionDAO(db_session)

        assert (await dao.get_by_ref(payment.transaction_ref)).id == payment.id
        assert await dao.get_by_ref("txn_missing") is None

    @pytest.mark.asyncio
    async def test_payment_intent_ignores_refund_rows(self, db_session, payment):
        await _refund(db_session, payment, "100", TransactionStatus.COMPLETED)
        dao = TransactionDAO(db_session)

        found = await dao.get_by_payment_intent("pi_123")

        assert found.id == payment.id

    @pytest.mark.asyncio
    async def test_charge_ignores_refund_rows(self, db_session, payment):
        await _refund(db_session, payment, "100", TransactionStatus.COMPLETED)
        dao = TransactionDAO(db_session)

        assert (await dao.get_by_charge("ch_123")).id == payment.id

    @pytest.mark.asyncio
    async def test_checkout_session(self, db_session, payment):
        dao = TransactionDAO(db_session)

        assert (await dao.get_by_checkout_session("cs_123")).id == payment.id
        assert await dao.get_by_checkout_session("cs_other") is None


class TestRefundSums:
    """Tests for the refund cap inputs."""

    @pytest.mark.asyncio
    async def test_counts_committed_refunds_only(self, db_session, payment):
        await _refund(db_session, payment, "100", TransactionStatus.COMPLETED)
        await _refund(db_session, payment, "50", TransactionStatus.PENDING)
        await _refund(db_session, payment, "25", TransactionStatus.FAILED)
        dao = TransactionDAO(db_session)

        assert await dao.sum_refunded_for(payment.id) == Decimal("150.00")
        assert await dao.sum_refunded_for_invoice(payment.invoice_id) == Decimal("150.00")
        assert await dao.count_refunds_for(payment.id) == 3

    @pytest.mark.asyncio
    async def test_no_refunds(self, db_session, payment):
        dao = TransactionDAO(db_session)

        assert await dao.sum_refunded_for(payment.id) == Decimal("0.00")
        assert await dao.count_refunds_for(payment.id) == 0

    @pytest.mark.asyncio
    async def test_list_for_invoice_oldest_first(self, db_session, payment, invoice):
        refund = await _refund(db_session, payment, "100", TransactionStatus.COMPLETED)
        dao = TransactionDAO(db_session)

        rows = await dao.list_for_invoice(invoice.id)

        assert [row.id for row in rows] == [payment.id, refund.id]


class TestListing:
    """Tests for filtered, role-scoped listing."""

    @pytest.mark.asyncio
    async def test_party_scope_and_filters(
        self, db_session, test_org, other_org, payment, client_user, consultant_user
    ):
        payout = await TransactionFactory.create(
            db_session,
            org_id=test_org.id,
            consultant=consultant_user,
            amount=Decimal("300.00"),
            transaction_type=TransactionType.PAYOUT,
            payment_method=PaymentMethod.BANK_TRANSFER,
            status=TransactionStatus.PENDING,
        )
        await TransactionFactory.create(db_session, org_id=other_org.id)
        dao = TransactionDAO(db_session)

        everything, total = await dao.list_transactions(org_id=test_org.id)
        assert total == 2
        assert {row.id for row in everything} == {payment.id, payout.id}

        client_rows, _ = await dao.list_transactions(org_id=test_org.id, party_id=client_user.id)
        assert [row.id for row in client_rows] == [payment.id]

        payouts, total = await dao.list_transactions(
            org_id=test_org.id, transaction_type=TransactionType.PAYOUT
        )
        assert total == 1
        assert payouts[0].id == payout.id

        pending, total = await dao.list_transactions(
            org_id=test_org.id, status=TransactionStatus.PENDING
        )
        assert [row.id for row in pending] == [payout.id]


class TestRevenue:
    """Tests for the financial summary totals."""

    @pytest.mark.asyncio
    async def test_client_and_platform_revenue_net_of_refunds(
        self, db_session, test_org, payment, client_user
    ):
        await _refund(db_session, payment, "100", TransactionStatus.COMPLETED)
        await _refund(db_session, payment, "50", TransactionStatus.PENDING)
        dao = TransactionDAO(db_session)

        assert await dao.get_client_revenue(client_user.id) == Decimal("400.00")
        assert await dao.get_platform_revenue(test_org.id) == Decimal("400.00")

    @pytest.mark.asyncio
    async def test_consultant_earnings_and_pending_payouts(
        self, db_session, test_org, consultant_user
    ):
        for amount, status in (
            ("300.00", TransactionStatus.COMPLETED),
            ("200.00", TransactionStatus.PENDING),
            ("75.00", TransactionStatus.FAILED),
        ):
            await TransactionFactory.create(
                db_session,
                org_id=test_org.id,
                consultant=consultant_user,
                amount=Decimal(amount),
                transaction_type=TransactionType.PAYOUT,
                payment_method=PaymentMethod.BANK_TRANSFER,
                status=status,
            )
        dao = TransactionDAO(db_session)

        assert await dao.get_consultant_earnings(consultant_user.id) == Decimal("300.00")
        assert await dao.sum_pending_payouts(test_org.id) == Decimal("200.00")
