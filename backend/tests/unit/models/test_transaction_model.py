"""
Unit tests for the Transaction model.

WHAT: Status transitions, gateway status mapping, failure snapshots, refund
rows and the completed-row money lock.

WHY: Transactions are the append-only record of money movement. Reversing
a completed payment in place, or editing its amount, would make the ledger
disagree with the gateway.
"""

from datetime import datetime
from decimal import Decimal

import pytest

from billing.core.exceptions import InvalidStateTransitionError
from billing.models.transaction import (
    PaymentMethod,
    RefundReason,
    Transaction,
    TransactionStatus,
    TransactionType,
    map_gateway_status,
)
from tests.factories import TransactionFactory


def make_transaction(**overrides) -> Transaction:
    values = {
        "transaction_ref": "txn_abc",
        "transaction_type": TransactionType.PAYMENT,
        "payment_method": PaymentMethod.CREDIT_CARD,
        "status": TransactionStatus.PENDING,
        "amount": Decimal("250.00"),
        "currency": "USD",
        "fee": Decimal("7.55"),
        "org_id": 1,
        "client_id": 10,
        "consultant_id": 20,
        "invoice_id": 3,
    }
    values.update(overrides)
    return Transaction(**values)


class TestGatewayStatus:
    @pytest.mark.parametrize(
        "gateway_status,expected",
        [
            ("succeeded", TransactionStatus.COMPLETED),
            ("requires_payment_method", TransactionStatus.PENDING),
            ("requires_confirmation", TransactionStatus.PENDING),
            ("requires_action", TransactionStatus.PENDING),
            ("canceled", TransactionStatus.CANCELLED),
            ("processing", TransactionStatus.PROCESSING),
            ("something_new", TransactionStatus.PROCESSING),
            (None, TransactionStatus.PROCESSING),
        ],
    )
    def test_mapping(self, gateway_status, expected):
        assert map_gateway_status(gateway_status) == expected


class TestTransitions:
    """Tests for the transaction status machine."""

    def test_pending_to_completed(self):
        txn = make_transaction()
        when = datetime(2024, 6, 1, 12)

        txn.mark_completed(when)

        assert txn.status == TransactionStatus.COMPLETED
        assert txn.processed_at == when
        assert txn.completed_at == when

    def test_processing_back_to_pending(self):
        txn = make_transaction(status=TransactionStatus.PROCESSING)

        txn.transition_to(TransactionStatus.PENDING)

        assert txn.status == TransactionStatus.PENDING

    def test_same_status_is_a_no_op(self):
        txn = make_transaction(status=TransactionStatus.FAILED)

        txn.transition_to(TransactionStatus.FAILED)

        assert txn.status == TransactionStatus.FAILED

    def test_completed_can_only_be_disputed(self):
        txn = make_transaction(status=TransactionStatus.COMPLETED)

        with pytest.raises(InvalidStateTransitionError) as exc_info:
            txn.mark_failed()

        assert exc_info.value.message == "Cannot move transaction from completed to failed"

        txn.mark_disputed()
        assert txn.status == TransactionStatus.DISPUTED

    @pytest.mark.parametrize(
        "terminal",
        [TransactionStatus.FAILED, TransactionStatus.CANCELLED, TransactionStatus.DISPUTED],
    )
    def test_terminal_statuses(self, terminal):
        with pytest.raises(InvalidStateTransitionError):
            make_transaction(status=terminal).transition_to(TransactionStatus.COMPLETED)

    def test_mark_failed_keeps_error_snapshot(self):
        txn = make_transaction()

        txn.mark_failed(
            {
                "code": "card_declined",
                "message": "Your card was declined.",
                "type": "card_error",
                "param": None,
                "decline_code": "insufficient_funds",
            }
        )

        assert txn.status == TransactionStatus.FAILED
        assert txn.failed_at is not None
        assert txn.error == {
            "code": "card_declined",
            "message": "Your card was declined.",
            "type": "card_error",
            "param": None,
        }


class TestRefundRow:
    """Tests for build_refund()."""

    def test_refund_is_a_new_negative_row(self):
        payment = make_transaction(status=TransactionStatus.COMPLETED, payment_intent_id="pi_1")
        payment.id = 42

        refund = payment.build_refund(Decimal("100"), "refund_txn_abc", created_by_id=99)

        assert refund.transaction_type == TransactionType.REFUND
        assert refund.status == TransactionStatus.PENDING
        assert refund.amount == Decimal("-100")
        assert refund.original_transaction_id == 42
        assert refund.payment_intent_id == "pi_1"
        assert refund.refund_reason == RefundReason.REQUESTED_BY_CUSTOMER
        assert refund.description == "Refund for txn_abc"
        assert refund.created_by_id == 99
        assert payment.amount == Decimal("250.00")

    def test_is_refundable(self):
        assert make_transaction(status=TransactionStatus.COMPLETED).is_refundable
        assert not make_transaction(status=TransactionStatus.PENDING).is_refundable
        assert not make_transaction(
            status=TransactionStatus.COMPLETED, transaction_type=TransactionType.PAYOUT
        ).is_refundable

    def test_involves(self):
        txn = make_transaction()

        assert txn.involves(10)
        assert txn.involves(20)
        assert not txn.involves(30)


class TestPersistence:
    """Tests that depend on the mapper listeners."""

    @pytest.mark.asyncio
    async def test_net_is_derived_on_insert(self, db_session, test_org):
        txn = await TransactionFactory.create(
            db_session,
            org_id=test_org.id,
            amount=Decimal("250.00"),
            fee=Decimal("7.55"),
            status=TransactionStatus.PENDING,
        )

        assert txn.net == Decimal("242.45")

    @pytest.mark.asyncio
    async def test_net_follows_fee_update(self, db_session, test_org):
        txn = await TransactionFactory.create(
            db_session,
            org_id=test_org.id,
            amount=Decimal("100.00"),
            status=TransactionStatus.PROCESSING,
        )

        txn.fee = Decimal("3.20")
        await db_session.flush()

        assert txn.net == Decimal("96.80")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "amount, fee, net",
        [
            ("5.00", "0", "5.00"),
            ("5.00", "7.50", "-2.50"),
        ],
    )
    async def test_net_for_any_fee(self, db_session, test_org, amount, fee, net):
        txn = await TransactionFactory.create(
            db_session,
            org_id=test_org.id,
            amount=Decimal(amount),
            fee=Decimal(fee),
            status=TransactionStatus.PENDING,
        )

        assert txn.net == Decimal(net)

    @pytest.mark.asyncio
    async def test_fee_above_amount_after_update(self, db_session, test_org):
        txn = await TransactionFactory.create(
            db_session,
            org_id=test_org.id,
            amount=Decimal("10.00"),
            status=TransactionStatus.PROCESSING,
        )
        assert txn.net == Decimal("10.00")

        txn.fee = Decimal("12.25")
        await db_session.flush()

        assert txn.net == Decimal("-2.25")

    @pytest.mark.asyncio
    async def test_completed_amount_is_locked(self, db_session, test_org):
        txn = await TransactionFactory.create(db_session, org_id=test_org.id)

        with pytest.raises(InvalidStateTransitionError) as exc_info:
            txn.amount = Decimal("1.00")

        assert exc_info.value.message == "Cannot change amount of a completed transaction"
