"""Tests for QuickBooksPublisher over InMemoryEntityStore and an AsyncMock client.

Covers:
    - Invoice push: customer lookup/create, create vs update (SyncToken),
      qb_invoice_id stored, one sync log entry per attempt
    - Invoice preconditions skip without a log entry
    - Bill push: stored vendor id, name lookup links the agent, vendor
      create with contact details, qb_bill_id stored
    - Bill update falls back to create when the old bill cannot be read
    - void_bill: sparse Balance=0 update, skip without a bill id
    - Batch selection, ordering and limit; per-record errors keep going
    - AuthError marks the entry FAILED and propagates
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.synchub.core.errors import AuthError, PermanentUpstreamError, TransientUpstreamError
from src.synchub.sync.quickbooks_push import QuickBooksPublisher, address_line, split_name
from src.synchub.sync.schemas import EntityKind, OutcomeAction, SyncStatus


def _qb_client() -> MagicMock:
    """QuickBooksClient double that saves everything with fresh ids."""
    client = MagicMock()
    client.find_customers = AsyncMock(return_value=[])
    client.create_customer = AsyncMock(return_value={"Id": "cust-1"})
    client.get_vendor = AsyncMock(return_value=None)
    client.find_vendors = AsyncMock(return_value=[])
    client.create_vendor = AsyncMock(return_value={"Id": "vend-1"})
    client.get_invoice = AsyncMock(return_value={"Id": "inv-old", "SyncToken": "3"})
    client.get_bill = AsyncMock(return_value={"Id": "bill-old", "SyncToken": "5"})
    client.save_invoice = AsyncMock(
        side_effect=lambda body: {"Id": body.get("Id", "inv-1"), "DocNumber": "1001"}
    )
    client.save_bill = AsyncMock(side_effect=lambda body: {"Id": body.get("Id", "bill-1")})
    return client


@pytest.fixture
def qb() -> MagicMock:
    return _qb_client()


@pytest.fixture
def publisher(qb, store, sync_log) -> QuickBooksPublisher:
    return QuickBooksPublisher(qb, store, sync_log, invoice_item=("7", "Commission"))


def _closed_transaction(store, **fields):
    values = {
        "name": "123 Main St",
        "stage": "CLOSED",
        "actual_closing_date": date(2024, 5, 1),
        "gross_commission_amount": Decimal("15000.00"),
        "street": "123 Main St",
        "city": "Austin",
        "state": "TX",
        "zip_code": "78701",
    }
    values.update(fields)
    return store.seed(EntityKind.TRANSACTION, **values)


# ── Helpers ──────────────────────────────────────────────────────────────────


def test_split_name() -> None:
    assert split_name("Jane  Q Doe") == ("Jane", "Q Doe")
    assert split_name("Cher") == ("Cher", "")
    assert split_name("  ") == ("", "")


def test_address_line_drops_empty_parts() -> None:
    assert address_line({"street": "1 Elm", "state": "TX", "zip_code": "78701"}) == "1 Elm, TX 78701"
    assert address_line({}) == ""


# ── Invoices ─────────────────────────────────────────────────────────────────


class TestPushTransaction:
    async def test_creates_invoice_and_customer(self, publisher, qb, store, sync_log) -> None:
        agent = store.seed(EntityKind.AGENT, name="Jane Doe")
        transaction = _closed_transaction(store, agent_id=agent["id"], rezen_id="rz-1")

        outcome = await publisher.push_transaction(transaction["id"])

        assert outcome.action == OutcomeAction.CREATED
        assert outcome.external_id == "inv-1"
        qb.find_customers.assert_awaited_once_with("Jane Doe")
        qb.create_customer.assert_awaited_once_with(
            {"DisplayName": "Jane Doe", "GivenName": "Jane", "FamilyName": "Doe"}
        )
        invoice = qb.save_invoice.await_args.args[0]
        assert "Id" not in invoice
        assert invoice["CustomerRef"] == {"value": "cust-1"}
        assert invoice["TxnDate"] == "2024-05-01"
        line = invoice["Line"][0]
        assert line["Amount"] == 15000.0
        assert line["SalesItemLineDetail"]["ItemRef"] == {"value": "7", "name": "Commission"}
        assert line["Description"] == (
            "Commission for transaction: 123 Main St - 123 Main St, Austin, TX 78701"
        )
        assert invoice["PrivateNote"] == f"Transaction ID: {transaction['id']}\nREZEN ID: rz-1"
        assert store.get(EntityKind.TRANSACTION, transaction["id"])["qb_invoice_id"] == "inv-1"

        entry = sync_log.only()
        assert entry.source == "quickbooks"
        assert entry.entity_type == "transaction"
        assert entry.action == "CREATE"
        assert entry.status == SyncStatus.SUCCESS
        assert entry.payload["invoice_id"] == "inv-1"
        assert entry.payload["doc_number"] == "1001"
        assert entry.payload["amount"] == 15000.0

    async def test_existing_customer_is_reused(self, publisher, qb, store) -> None:
        qb.find_customers.return_value = [{"Id": "cust-9"}]
        transaction = _closed_transaction(store)

        await publisher.push_transaction(transaction["id"])

        qb.find_customers.assert_awaited_once_with("123 Main St")
        qb.create_customer.assert_not_awaited()
        assert qb.save_invoice.await_args.args[0]["CustomerRef"] == {"value": "cust-9"}

    async def test_updates_existing_invoice_with_sync_token(self, publisher, qb, store, sync_log) -> None:
        transaction = _closed_transaction(store, qb_invoice_id="inv-old")

        outcome = await publisher.push_transaction(transaction["id"])

        assert outcome.action == OutcomeAction.UPDATED
        qb.get_invoice.assert_awaited_once_with("inv-old")
        invoice = qb.save_invoice.await_args.args[0]
        assert invoice["Id"] == "inv-old"
        assert invoice["SyncToken"] == "3"
        assert sync_log.only().action == "UPDATE"

    async def test_missing_invoice_is_a_failed_entry(self, publisher, qb, store, sync_log) -> None:
        qb.get_invoice.return_value = None
        transaction = _closed_transaction(store, qb_invoice_id="inv-gone")

        outcome = await publisher.push_transaction(transaction["id"])

        assert outcome.action == OutcomeAction.SKIPPED
        assert outcome.error == "QuickBooks invoice inv-gone not found"
        qb.save_invoice.assert_not_awaited()
        entry = sync_log.only()
        assert entry.status == SyncStatus.FAILED
        assert entry.error_message == "QuickBooks invoice inv-gone not found"

    @pytest.mark.parametrize(
        "fields",
        [{"actual_closing_date": None}, {"gross_commission_amount": None}, {"gross_commission_amount": 0}],
    )
    async def test_incomplete_transaction_is_skipped(self, publisher, qb, store, sync_log, fields) -> None:
        transaction = _closed_transaction(store, **fields)

        outcome = await publisher.push_transaction(transaction["id"])

        assert outcome.action == OutcomeAction.SKIPPED
        assert outcome.reason == "Transaction missing closing date or commission amount"
        assert sync_log.entries == {}
        qb.save_invoice.assert_not_awaited()

    async def test_unknown_transaction_is_skipped(self, publisher, sync_log) -> None:
        outcome = await publisher.push_transaction("nope")

        assert outcome.reason == "Transaction not found"
        assert sync_log.entries == {}


class TestPushTransactions:
    async def test_selects_ready_transactions_newest_first(self, publisher, qb, store) -> None:
        old = _closed_transaction(store, name="Old", actual_closing_date=date(2024, 1, 1))
        new = _closed_transaction(store, name="New", actual_closing_date=date(2024, 6, 1))
        _closed_transaction(store, name="No amount", gross_commission_amount=None)
        _closed_transaction(store, name="Pending", stage="PENDING")

        result = await publisher.push_transactions(limit=1)

        assert result.total == 1
        assert result.created == 1
        assert store.get(EntityKind.TRANSACTION, new["id"])["qb_invoice_id"] == "inv-1"
        assert store.get(EntityKind.TRANSACTION, old["id"]).get("qb_invoice_id") is None

    async def test_record_error_does_not_stop_the_batch(self, publisher, qb, store, sync_log) -> None:
        _closed_transaction(store, name="A", actual_closing_date=date(2024, 2, 1))
        _closed_transaction(store, name="B", actual_closing_date=date(2024, 1, 1))
        qb.save_invoice.side_effect = [
            PermanentUpstreamError("QuickBooks API error (400): bad line", 400),
            {"Id": "inv-2"},
        ]

        result = await publisher.push_transactions()

        assert result.total == 2
        assert result.created == 1
        assert result.skipped == 1
        assert result.errors[0].error == "QuickBooks API error (400): bad line"
        statuses = sorted(e.status.value for e in sync_log.entries.values())
        assert statuses == ["FAILED", "SUCCESS"]

    async def test_auth_error_fails_entry_and_propagates(self, publisher, qb, store, sync_log) -> None:
        _closed_transaction(store)
        qb.find_customers.side_effect = AuthError("QuickBooks rejected a freshly refreshed token")

        with pytest.raises(AuthError):
            await publisher.push_transactions()

        entry = sync_log.only()
        assert entry.status == SyncStatus.FAILED
        assert "rejected" in entry.error_message


# ── Bills ────────────────────────────────────────────────────────────────────


def _payment(store, agent_id, **fields):
    values = {"agent_id": agent_id, "amount": Decimal("2500.00"), "status": "PENDING"}
    values.update(fields)
    return store.seed(EntityKind.COMMISSION_PAYMENT, **values)


class TestPushCommissionPayment:
    async def test_creates_vendor_and_bill(self, publisher, qb, store, sync_log) -> None:
        agent = store.seed(
            EntityKind.AGENT,
            name="Jane Doe",
            email="jane@example.com",
            phone="555-0100",
            street="1 Elm",
            city="Austin",
            state="TX",
            zipcode="78701",
        )
        transaction = _closed_transaction(store)
        payment = _payment(
            store, agent["id"], transaction_id=transaction["id"], date_paid=date(2024, 5, 3)
        )

        outcome = await publisher.push_commission_payment(payment["id"])

        assert outcome.action == OutcomeAction.CREATED
        assert outcome.external_id == "bill-1"
        vendor = qb.create_vendor.await_args.args[0]
        assert vendor["DisplayName"] == "Jane Doe"
        assert vendor["GivenName"] == "Jane"
        assert vendor["FamilyName"] == "Doe"
        assert vendor["PrimaryEmailAddr"] == {"Address": "jane@example.com"}
        assert vendor["PrimaryPhone"] == {"FreeFormNumber": "555-0100"}
        assert vendor["BillAddr"]["PostalCode"] == "78701"
        bill = qb.save_bill.await_args.args[0]
        assert bill["VendorRef"] == {"value": "vend-1"}
        assert bill["TxnDate"] == "2024-05-03"
        line = bill["Line"][0]
        assert line["Amount"] == 2500.0
        assert line["Description"] == "Commission payment for transaction: 123 Main St"
        assert line["AccountBasedExpenseLineDetail"]["AccountRef"] == {
            "value": "1",
            "name": "Commission Expense",
        }
        assert store.get(EntityKind.AGENT, agent["id"])["qb_vendor_id"] == "vend-1"
        assert store.get(EntityKind.COMMISSION_PAYMENT, payment["id"])["qb_bill_id"] == "bill-1"

        entry = sync_log.only()
        assert entry.entity_type == "commission_payment"
        assert entry.action == "CREATE"
        assert entry.payload["vendor_id"] == "vend-1"

    async def test_stored_vendor_id_is_used(self, publisher, qb, store) -> None:
        qb.get_vendor.return_value = {"Id": "vend-7"}
        agent = store.seed(EntityKind.AGENT, name="Jane Doe", qb_vendor_id="vend-7")
        payment = _payment(store, agent["id"])

        await publisher.push_commission_payment(payment["id"])

        qb.find_vendors.assert_not_awaited()
        qb.create_vendor.assert_not_awaited()
        assert qb.save_bill.await_args.args[0]["VendorRef"] == {"value": "vend-7"}

    async def test_stale_vendor_id_falls_back_to_name_lookup(self, publisher, qb, store) -> None:
        qb.get_vendor.side_effect = PermanentUpstreamError("QuickBooks API error (400)", 400)
        qb.find_vendors.return_value = [{"Id": "vend-8", "DisplayName": "Jane Doe"}]
        agent = store.seed(EntityKind.AGENT, name="Jane Doe", qb_vendor_id="vend-gone")
        payment = _payment(store, agent["id"])

        outcome = await publisher.push_commission_payment(payment["id"])

        assert outcome.action == OutcomeAction.CREATED
        qb.create_vendor.assert_not_awaited()
        assert store.get(EntityKind.AGENT, agent["id"])["qb_vendor_id"] == "vend-8"

    async def test_updates_existing_bill(self, publisher, qb, store, sync_log) -> None:
        agent = store.seed(EntityKind.AGENT, name="Jane Doe")
        payment = _payment(store, agent["id"], qb_bill_id="bill-old")

        outcome = await publisher.push_commission_payment(payment["id"])

        assert outcome.action == OutcomeAction.UPDATED
        bill = qb.save_bill.await_args.args[0]
        assert bill["Id"] == "bill-old"
        assert bill["SyncToken"] == "5"
        assert sync_log.only().action == "UPDATE"

    async def test_unreadable_bill_is_recreated(self, publisher, qb, store) -> None:
        qb.get_bill.side_effect = TransientUpstreamError("QuickBooks API error (503)", 503)
        agent = store.seed(EntityKind.AGENT, name="Jane Doe")
        payment = _payment(store, agent["id"], qb_bill_id="bill-old")

        outcome = await publisher.push_commission_payment(payment["id"])

        assert outcome.action == OutcomeAction.CREATED
        assert "Id" not in qb.save_bill.await_args.args[0]
        assert store.get(EntityKind.COMMISSION_PAYMENT, payment["id"])["qb_bill_id"] == "bill-1"

    async def test_preconditions(self, publisher, store, sync_log) -> None:
        agent = store.seed(EntityKind.AGENT, name="Jane Doe")
        no_agent = store.seed(EntityKind.COMMISSION_PAYMENT, amount=Decimal("10"))
        zero = _payment(store, agent["id"], amount=Decimal("0"))

        assert (await publisher.push_commission_payment("nope")).reason == "Commission payment not found"
        assert (await publisher.push_commission_payment(no_agent["id"])).reason == (
            "Commission payment has no associated agent"
        )
        assert (await publisher.push_commission_payment(zero["id"])).reason == (
            "Commission payment amount is zero or missing"
        )
        assert sync_log.entries == {}


class TestPushCommissionPayments:
    async def test_selects_pending_payments_with_agent_newest_first(self, publisher, qb, store) -> None:
        agent = store.seed(EntityKind.AGENT, name="Jane Doe")
        older = _payment(store, agent["id"], created_at=datetime(2024, 1, 1, tzinfo=timezone.utc))
        newer = _payment(store, agent["id"], created_at=datetime(2024, 3, 1, tzinfo=timezone.utc))
        _payment(store, agent["id"], status="PAID")
        _payment(store, None)
        _payment(store, agent["id"], amount=Decimal("0"))
        qb.save_bill.side_effect = [{"Id": "bill-a"}, {"Id": "bill-b"}]

        result = await publisher.push_commission_payments()

        assert result.total == 2
        assert result.created == 2
        assert store.get(EntityKind.COMMISSION_PAYMENT, newer["id"])["qb_bill_id"] == "bill-a"
        assert store.get(EntityKind.COMMISSION_PAYMENT, older["id"])["qb_bill_id"] == "bill-b"


# ── Void ─────────────────────────────────────────────────────────────────────


class TestVoidBill:
    async def test_sparse_update_zeroes_balance(self, publisher, qb, store, sync_log) -> None:
        payment = store.seed(EntityKind.COMMISSION_PAYMENT, qb_bill_id="bill-old")

        outcome = await publisher.void_bill(payment["id"])

        assert outcome.action == OutcomeAction.UPDATED
        assert outcome.external_id == "bill-old"
        qb.save_bill.assert_awaited_once_with(
            {"Id": "bill-old", "SyncToken": "5", "Balance": 0, "sparse": True}
        )
        entry = sync_log.only()
        assert entry.action == "UPDATE"
        assert entry.payload["action"] == "voided"

    async def test_payment_without_bill_is_skipped(self, publisher, qb, store, sync_log) -> None:
        payment = store.seed(EntityKind.COMMISSION_PAYMENT, amount=Decimal("10"))

        outcome = await publisher.void_bill(payment["id"])

        assert outcome.action == OutcomeAction.SKIPPED
        assert outcome.reason == "Payment not found or has no QuickBooks bill ID"
        qb.get_bill.assert_not_awaited()
        assert sync_log.entries == {}
