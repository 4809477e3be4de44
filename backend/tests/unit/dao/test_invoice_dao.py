"""
Unit tests for InvoiceDAO.

WHAT: Numbering, filtered listing, the overdue and recurring job queries and
the receivable totals.

WHY: These queries decide which invoices a user can see, which ones the
scheduler touches and what the financial summary reports.

HOW: Real SQLite database through the db_session fixture; invoices are
created with InvoiceFactory so the model listeners run.
"""

from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest
import pytest_asyncio

from billing.dao.invoice import InvoiceDAO
from billing.models.invoice import InvoiceType
from billing.models.invoice_state import InvoiceStatus
from tests.factories import InvoiceFactory, line_item


class TestInvoiceNumbering:
    """Tests for {PREFIX}-{YYMM}-{NNNN} numbering."""

    @pytest.mark.asyncio
    async def test_first_number_of_month(self, db_session):
        dao = InvoiceDAO(db_session)

        number = await dao.get_next_invoice_number("INV", datetime(2024, 10, 3))

        assert number == "INV-2410-0001"

    @pytest.mark.asyncio
    async def test_skips_numbers_in_use(self, db_session, test_org, client_user):
        """A gap left by a deleted invoice must not produce a duplicate."""
        for number in ("INV-2410-0001", "INV-2410-0003"):
            await InvoiceFactory.create(
                db_session, org_id=test_org.id, client=client_user, invoice_number=number
            )
        dao = InvoiceDAO(db_session)

        number = await dao.get_next_invoice_number("INV", datetime(2024, 10, 20))

        assert number == "INV-2410-0004"

    @pytest.mark.asyncio
    async def test_months_are_numbered_separately(self, db_session, test_org, client_user):
        await InvoiceFactory.create(
            db_session, org_id=test_org.id, client=client_user, invoice_number="INV-2410-0001"
        )
        dao = InvoiceDAO(db_session)

        number = await dao.get_next_invoice_number("INV", datetime(2024, 11, 1))

        assert number == "INV-2411-0001"

    @pytest.mark.asyncio
    async def test_create_invoice_assigns_number_and_totals(self, db_session, test_org, client_user):
        dao = InvoiceDAO(db_session)

        invoice = await dao.create_invoice(
            org_id=test_org.id,
            client_id=client_user.id,
            status=InvoiceStatus.DRAFT,
            items=[line_item(quantity="3", unit_price="40.00")],
            due_date=date.today() + timedelta(days=30),
        )

        assert invoice.invoice_number.startswith("INV-")
        assert invoice.total == Decimal("120.00")
        assert await dao.get_by_invoice_number(invoice.invoice_number, test_org.id) is not None
        assert await dao.get_by_invoice_number(invoice.invoice_number, test_org.id + 1) is None


class TestListInvoices:
    """Tests for filtered, paginated listing."""

    @pytest.mark.asyncio
    async def test_filters_and_pagination(
        self, db_session, test_org, other_org, client_user, consultant_user
    ):
        await InvoiceFactory.create(db_session, org_id=test_org.id, client=client_user)
        await InvoiceFactory.create(
            db_session, org_id=test_org.id, client=client_user, status=InvoiceStatus.DRAFT
        )
        consultant_invoice = await InvoiceFactory.create(
            db_session,
            org_id=test_org.id,
            consultant=consultant_user,
            invoice_type=InvoiceType.CONSULTANT,
        )
        await InvoiceFactory.create(db_session, org_id=other_org.id, client=client_user)
        dao = InvoiceDAO(db_session)

        invoices, total = await dao.list_invoices(test_org.id)
        assert total == 3
        assert len(invoices) == 3

        drafts, total = await dao.list_invoices(test_org.id, status=InvoiceStatus.DRAFT)
        assert total == 1
        assert drafts[0].status == InvoiceStatus.DRAFT

        mine, total = await dao.list_invoices(test_org.id, party_id=consultant_user.id)
        assert [invoice.id for invoice in mine] == [consultant_invoice.id]

        page, total = await dao.list_invoices(test_org.id, skip=1, limit=1)
        assert total == 3
        assert len(page) == 1

    @pytest.mark.asyncio
    async def test_search_by_number(self, db_session, test_org, client_user):
        await InvoiceFactory.create(
            db_session, org_id=test_org.id, client=client_user, invoice_number="INV-2401-0042"
        )
        await InvoiceFactory.create(db_session, org_id=test_org.id, client=client_user)
        dao = InvoiceDAO(db_session)

        found, total = await dao.list_invoices(test_org.id, search="2401-0042")

        assert total == 1
        assert found[0].invoice_number == "INV-2401-0042"


class TestOverdueQueries:
    """Tests for the overdue job queries."""

    @pytest.mark.asyncio
    async def test_refresh_moves_past_due_invoices(self, db_session, test_org, client_user):
        due = date.today() + timedelta(days=5)
        sent = await InvoiceFactory.create(
            db_session, org_id=test_org.id, client=client_user, due_date=due
        )
        draft = await InvoiceFactory.create(
            db_session,
            org_id=test_org.id,
            client=client_user,
            due_date=due,
            status=InvoiceStatus.DRAFT,
        )
        paid = await InvoiceFactory.create(
            db_session,
            org_id=test_org.id,
            client=client_user,
            due_date=due,
            paid_amount=Decimal("1000"),
        )
        dao = InvoiceDAO(db_session)

        changed = await dao.refresh_overdue_statuses(today=due + timedelta(days=5))

        assert [invoice.id for invoice in changed] == [sent.id]
        assert sent.status == InvoiceStatus.OVERDUE
        assert draft.status == InvoiceStatus.DRAFT
        assert paid.status == InvoiceStatus.PAID

    @pytest.mark.asyncio
    async def test_partly_refunded_paid_invoice_stays_partial(self, db_session, test_org, client_user):
        due = date.today() + timedelta(days=5)
        invoice = await InvoiceFactory.create(
            db_session,
            org_id=test_org.id,
            client=client_user,
            due_date=due,
            paid_amount=Decimal("1000"),
        )
        invoice.refund(Decimal("300"))
        await db_session.commit()
        dao = InvoiceDAO(db_session)

        changed = await dao.refresh_overdue_statuses(today=due + timedelta(days=5))

        assert changed == []
        assert invoice.status == InvoiceStatus.PARTIAL
        assert invoice.amount_due == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_nothing_due_yet(self, db_session, test_org, client_user):
        await InvoiceFactory.create(db_session, org_id=test_org.id, client=client_user)
        dao = InvoiceDAO(db_session)

        assert await dao.refresh_overdue_statuses() == []

    @pytest.mark.asyncio
    async def test_find_upcoming(self, db_session, test_org, client_user):
        soon = await InvoiceFactory.create(
            db_session,
            org_id=test_org.id,
            client=client_user,
            due_date=date.today() + timedelta(days=3),
        )
        await InvoiceFactory.create(
            db_session,
            org_id=test_org.id,
            client=client_user,
            due_date=date.today() + timedelta(days=20),
        )
        dao = InvoiceDAO(db_session)

        upcoming = await dao.find_upcoming(days=7, org_id=test_org.id)

        assert [invoice.id for invoice in upcoming] == [soon.id]


class TestRecurringQueries:
    """Tests for recurring series selection and generation."""

    async def _recurring(self, session, org_id, client, **kwargs):
        values = {
            "is_recurring": True,
            "recurring_frequency": "monthly",
            "next_invoice_date": date.today() - timedelta(days=1),
        }
        values.update(kwargs)
        return await InvoiceFactory.create(session, org_id=org_id, client=client, **values)

    @pytest.mark.asyncio
    async def test_selects_due_series_heads_only(self, db_session, test_org, client_user):
        due = await self._recurring(db_session, test_org.id, client_user, remaining_cycles=2)
        await self._recurring(db_session, test_org.id, client_user, remaining_cycles=0)
        await self._recurring(
            db_session,
            test_org.id,
            client_user,
            recurring_end_date=date.today() - timedelta(days=2),
        )
        await self._recurring(
            db_session, test_org.id, client_user, status=InvoiceStatus.CANCELLED
        )
        await self._recurring(
            db_session,
            test_org.id,
            client_user,
            next_invoice_date=date.today() + timedelta(days=10),
        )
        head = await self._recurring(db_session, test_org.id, client_user)
        await self._recurring(
            db_session,
            test_org.id,
            client_user,
            parent_invoice_id=head.id,
            next_invoice_date=date.today() + timedelta(days=29),
        )
        dao = InvoiceDAO(db_session)

        heads = await dao.get_due_recurring()

        assert [invoice.id for invoice in heads] == [due.id]

    @pytest.mark.asyncio
    async def test_generate_links_successor(self, db_session, test_org, client_user):
        source = await self._recurring(db_session, test_org.id, client_user, remaining_cycles=3)
        dao = InvoiceDAO(db_session)

        successor = await dao.generate_recurring_invoice(source)

        assert successor.id is not None
        assert successor.parent_invoice_id == source.id
        assert successor.status == InvoiceStatus.DRAFT
        assert successor.remaining_cycles == 2
        assert source.related_invoice_ids == [successor.id]
        assert await dao.get_due_recurring() == []


class TestTotals:
    """Tests for receivable and paid totals."""

    @pytest_asyncio.fixture
    async def ledger(self, db_session, test_org, client_user, consultant_user):
        await InvoiceFactory.create(db_session, org_id=test_org.id, client=client_user)
        await InvoiceFactory.create(
            db_session, org_id=test_org.id, client=client_user, paid_amount=Decimal("400")
        )
        await InvoiceFactory.create(
            db_session, org_id=test_org.id, client=client_user, paid_amount=Decimal("1000")
        )
        await InvoiceFactory.create(
            db_session, org_id=test_org.id, client=client_user, status=InvoiceStatus.DRAFT
        )
        await InvoiceFactory.create(
            db_session,
            org_id=test_org.id,
            consultant=consultant_user,
            invoice_type=InvoiceType.CONSULTANT,
        )

    @pytest.mark.asyncio
    async def test_client_total_owed(self, db_session, ledger, client_user):
        assert await InvoiceDAO(db_session).get_client_total_owed(client_user.id) == Decimal("1600.00")

    @pytest.mark.asyncio
    async def test_consultant_total_due(self, db_session, ledger, consultant_user):
        dao = InvoiceDAO(db_session)

        assert await dao.get_consultant_total_due(consultant_user.id) == Decimal("1000.00")

    @pytest.mark.asyncio
    async def test_org_totals(self, db_session, ledger, test_org, client_user):
        dao = InvoiceDAO(db_session)

        assert await dao.calculate_total_outstanding(test_org.id) == Decimal("2600.00")
        assert await dao.calculate_total_paid(test_org.id) == Decimal("1400.00")
        assert await dao.calculate_total_paid(test_org.id, party_id=client_user.id) == Decimal("1400.00")

    @pytest.mark.asyncio
    async def test_count_by_status(self, db_session, ledger, test_org, consultant_user):
        dao = InvoiceDAO(db_session)

        assert await dao.count_by_status(test_org.id) == {
            "sent": 2,
            "partial": 1,
            "paid": 1,
            "draft": 1,
        }
        assert await dao.count_by_status(test_org.id, party_id=consultant_user.id) == {"sent": 1}
