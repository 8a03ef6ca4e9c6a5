"""Outbound QuickBooks push: invoices for closed transactions, bills for
commission payments.

QuickBooksPublisher reads local entities through the EntityStore, writes
them through QuickBooksClient and stores the ids QuickBooks returns
(``qb_invoice_id``, ``qb_bill_id`` and the agent's ``qb_vendor_id``), so a
second push updates the same document instead of creating another one.

Each attempted push writes one sync log entry that ends SUCCESS or FAILED.
Records that fail a precondition (no amount, no agent) are skipped without
a log entry. An AuthError marks its entry FAILED and propagates; other
sync hub errors are reported on the record outcome and the batch goes on.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

import structlog

from src.synchub.connectors.quickbooks import QuickBooksClient
from src.synchub.core.errors import AuthError, PermanentUpstreamError, SyncHubError, UpstreamError
from src.synchub.sync.schemas import (
    BatchResult,
    EntityKind,
    OutcomeAction,
    PaymentStatus,
    RecordOutcome,
    SyncSource,
    SyncStatus,
    TransactionStage,
)
from src.synchub.sync.store import Criterion, EntityStore
from src.synchub.sync.sync_log import SyncLogRepository

logger = structlog.get_logger(__name__)

QB_PUSH_LIMIT = 100

PushResult = tuple[OutcomeAction, str, dict[str, Any]]


# ── Helpers ─────────────────────────────────────────────────────────────────


def _amount(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        number = Decimal(str(value))
    except InvalidOperation:
        return None
    return number if number.is_finite() else None


def _iso_date(value: Any) -> str | None:
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, str) and value:
        return value[:10]
    return None


def _newest_first(rows: list[dict[str, Any]], field: str) -> list[dict[str, Any]]:
    # Rows without a value sort last
    return sorted(rows, key=lambda r: (r.get(field) is not None, r.get(field)), reverse=True)


def _skip(key: str, reason: str) -> RecordOutcome:
    return RecordOutcome(action=OutcomeAction.SKIPPED, key=key, reason=reason)


def split_name(name: str) -> tuple[str, str]:
    """Split a display name into QuickBooks ``GivenName`` and ``FamilyName``."""
    parts = name.split()
    if not parts:
        return "", ""
    return parts[0], " ".join(parts[1:])


def address_line(entity: dict[str, Any], zip_field: str = "zip_code") -> str:
    """One-line address from street, city and ``state zip``; empty parts dropped."""
    state_zip = " ".join(p for p in (entity.get("state"), entity.get(zip_field)) if p)
    return ", ".join(p for p in (entity.get("street"), entity.get("city"), state_zip) if p)


# ── Publisher ───────────────────────────────────────────────────────────────


class QuickBooksPublisher:
    """Pushes local transactions and commission payments to QuickBooks.

    Args:
        client: QuickBooks connector used for every read and write.
        store: Entity store holding transactions, payments and agents.
        sync_log: Audit log, one entry per attempted push.
        invoice_item: ``(id, name)`` of the QuickBooks item invoices bill for.
        expense_account: ``(id, name)`` of the account bills are charged to.
    """

    def __init__(
        self,
        client: QuickBooksClient,
        store: EntityStore,
        sync_log: SyncLogRepository,
        invoice_item: tuple[str, str] = ("1", "Services"),
        expense_account: tuple[str, str] = ("1", "Commission Expense"),
    ) -> None:
        self._client = client
        self._store = store
        self._sync_log = sync_log
        self._invoice_item = invoice_item
        self._expense_account = expense_account

    # ── Invoices ────────────────────────────────────────────────────────────

    async def push_transaction(self, transaction_id: str) -> RecordOutcome:
        """Create or update the QuickBooks invoice for one transaction."""
        transaction = await self._store.find_first(
            EntityKind.TRANSACTION, [Criterion("id", transaction_id)]
        )
        if transaction is None:
            return _skip(transaction_id, "Transaction not found")
        return await self._push_invoice(transaction)

    async def push_transactions(
        self,
        stage: TransactionStage = TransactionStage.CLOSED,
        limit: int = QB_PUSH_LIMIT,
    ) -> BatchResult:
        """Push invoices for transactions in ``stage``, most recent closings first.

        Transactions without a closing date or commission amount are not
        selected.
        """
        rows = await self._store.find_many(EntityKind.TRANSACTION, [Criterion("stage", stage.value)])
        ready = [
            r
            for r in rows
            if r.get("actual_closing_date") and (_amount(r.get("gross_commission_amount")) or 0) > 0
        ]
        result = BatchResult()
        for transaction in _newest_first(ready, "actual_closing_date")[:limit]:
            result.record(await self._push_invoice(transaction))
        logger.info(
            "quickbooks_push.invoices_done",
            stage=stage.value,
            total=result.total,
            created=result.created,
            updated=result.updated,
            errors=len(result.errors),
        )
        return result

    async def _push_invoice(self, transaction: dict[str, Any]) -> RecordOutcome:
        key = str(transaction["id"])
        amount = _amount(transaction.get("gross_commission_amount"))
        txn_date = _iso_date(transaction.get("actual_closing_date"))
        if not txn_date or amount is None or amount <= 0:
            return _skip(key, "Transaction missing closing date or commission amount")

        agent = await self._agent(transaction.get("agent_id"))
        customer_name = ((agent or {}).get("name") or transaction.get("name") or "").strip()
        if not customer_name:
            return _skip(key, "Transaction has no agent or name to invoice")

        existing_id = transaction.get("qb_invoice_id")
        name = transaction.get("name") or key
        address = address_line(transaction)
        description = f"Commission for transaction: {name}" + (f" - {address}" if address else "")

        async def push() -> PushResult:
            customer_id = await self._customer_id(customer_name)
            invoice: dict[str, Any] = {
                "CustomerRef": {"value": customer_id},
                "TxnDate": txn_date,
                "Line": [
                    {
                        "DetailType": "SalesItemLineDetail",
                        "Amount": float(amount),
                        "Description": description,
                        "SalesItemLineDetail": {
                            "ItemRef": {"value": self._invoice_item[0], "name": self._invoice_item[1]},
                            "UnitPrice": float(amount),
                            "Qty": 1,
                        },
                    }
                ],
                "PrivateNote": f"Transaction ID: {key}\nREZEN ID: {transaction.get('rezen_id') or 'N/A'}",
            }
            action = OutcomeAction.CREATED
            if existing_id:
                current = await self._client.get_invoice(str(existing_id))
                if current is None:
                    raise PermanentUpstreamError(f"QuickBooks invoice {existing_id} not found")
                invoice.update(Id=str(existing_id), SyncToken=str(current.get("SyncToken", "0")))
                action = OutcomeAction.UPDATED

            saved = await self._client.save_invoice(invoice)
            invoice_id = str(saved["Id"])
            await self._store.update(EntityKind.TRANSACTION, key, {"qb_invoice_id": invoice_id})
            return action, invoice_id, {
                "transaction_id": key,
                "invoice_id": invoice_id,
                "doc_number": saved.get("DocNumber"),
                "amount": float(amount),
                "customer_id": customer_id,
            }

        return await self._logged(
            EntityKind.TRANSACTION, key, "UPDATE" if existing_id else "CREATE", push
        )

    async def _customer_id(self, display_name: str) -> str:
        customers = [c for c in await self._client.find_customers(display_name) if c.get("Id")]
        if customers:
            return str(customers[0]["Id"])
        given, family = split_name(display_name)
        customer = await self._client.create_customer(
            {"DisplayName": display_name, "GivenName": given, "FamilyName": family}
        )
        logger.info("quickbooks_push.customer_created", customer_id=customer["Id"])
        return str(customer["Id"])

    # ── Bills ───────────────────────────────────────────────────────────────

    async def push_commission_payment(self, payment_id: str) -> RecordOutcome:
        """Create or update the QuickBooks bill for one commission payment."""
        payment = await self._store.find_first(
            EntityKind.COMMISSION_PAYMENT, [Criterion("id", payment_id)]
        )
        if payment is None:
            return _skip(payment_id, "Commission payment not found")
        return await self._push_bill(payment)

    async def push_commission_payments(
        self,
        status: PaymentStatus = PaymentStatus.PENDING,
        limit: int = QB_PUSH_LIMIT,
    ) -> BatchResult:
        """Push bills for payments in ``status``, newest first.

        Payments without an agent or a positive amount are not selected.
        """
        rows = await self._store.find_many(
            EntityKind.COMMISSION_PAYMENT, [Criterion("status", status.value)]
        )
        ready = [r for r in rows if r.get("agent_id") and (_amount(r.get("amount")) or 0) > 0]
        result = BatchResult()
        for payment in _newest_first(ready, "created_at")[:limit]:
            result.record(await self._push_bill(payment))
        logger.info(
            "quickbooks_push.bills_done",
            status=status.value,
            total=result.total,
            created=result.created,
            updated=result.updated,
            errors=len(result.errors),
        )
        return result

    async def _push_bill(self, payment: dict[str, Any]) -> RecordOutcome:
        key = str(payment["id"])
        agent = await self._agent(payment.get("agent_id"))
        if agent is None:
            return _skip(key, "Commission payment has no associated agent")
        amount = _amount(payment.get("amount"))
        if amount is None or amount <= 0:
            return _skip(key, "Commission payment amount is zero or missing")
        vendor_name = (agent.get("name") or "").strip()
        if not vendor_name:
            return _skip(key, "Agent has no name to use as a QuickBooks vendor")

        transaction = None
        if payment.get("transaction_id"):
            transaction = await self._store.find_first(
                EntityKind.TRANSACTION, [Criterion("id", payment["transaction_id"])]
            )
        description = "Commission payment"
        private_note = f"Commission Payment ID: {key}"
        if transaction is not None:
            description += f" for transaction: {transaction.get('name') or transaction['id']}"
            private_note += f"\nTransaction ID: {transaction['id']}"
        bill_date = _iso_date(payment.get("date_paid")) or datetime.now(timezone.utc).date().isoformat()
        existing_id = payment.get("qb_bill_id")

        async def push() -> PushResult:
            vendor_id = await self._vendor_id(agent, vendor_name)
            bill: dict[str, Any] = {
                "VendorRef": {"value": vendor_id},
                "TxnDate": bill_date,
                "Line": [
                    {
                        "DetailType": "AccountBasedExpenseLineDetail",
                        "Amount": float(amount),
                        "Description": description,
                        "AccountBasedExpenseLineDetail": {
                            "AccountRef": {
                                "value": self._expense_account[0],
                                "name": self._expense_account[1],
                            },
                        },
                    }
                ],
                "PrivateNote": private_note,
            }
            action = OutcomeAction.CREATED
            if existing_id:
                current = await self._existing_bill(str(existing_id))
                if current is not None:
                    bill.update(Id=str(existing_id), SyncToken=str(current.get("SyncToken", "0")))
                    action = OutcomeAction.UPDATED

            saved = await self._client.save_bill(bill)
            bill_id = str(saved["Id"])
            await self._store.update(EntityKind.COMMISSION_PAYMENT, key, {"qb_bill_id": bill_id})
            return action, bill_id, {
                "payment_id": key,
                "bill_id": bill_id,
                "doc_number": saved.get("DocNumber"),
                "amount": float(amount),
                "vendor_id": vendor_id,
            }

        return await self._logged(
            EntityKind.COMMISSION_PAYMENT, key, "UPDATE" if existing_id else "CREATE", push
        )

    async def _existing_bill(self, bill_id: str) -> dict[str, Any] | None:
        """The bill to update, or None to create a fresh one."""
        try:
            return await self._client.get_bill(bill_id)
        except UpstreamError as exc:
            logger.warning("quickbooks_push.bill_lookup_failed", bill_id=bill_id, error=str(exc))
            return None

    async def _vendor_id(self, agent: dict[str, Any], display_name: str) -> str:
        """Resolve the agent's vendor: stored id, then name lookup, then create.

        The resolved id is written back to the agent when it changed.
        """
        stored_id = agent.get("qb_vendor_id")
        if stored_id:
            try:
                vendor = await self._client.get_vendor(str(stored_id))
            except UpstreamError as exc:
                logger.warning("quickbooks_push.vendor_lookup_failed", vendor_id=stored_id, error=str(exc))
                vendor = None
            if vendor and vendor.get("Id"):
                return str(vendor["Id"])

        vendors = [v for v in await self._client.find_vendors(display_name) if v.get("Id")]
        if vendors:
            vendor_id = str(vendors[0]["Id"])
        else:
            created = await self._client.create_vendor(self._vendor_body(agent, display_name))
            vendor_id = str(created["Id"])
            logger.info("quickbooks_push.vendor_created", vendor_id=vendor_id, agent_id=agent["id"])

        if vendor_id != stored_id:
            await self._store.update(EntityKind.AGENT, str(agent["id"]), {"qb_vendor_id": vendor_id})
        return vendor_id

    @staticmethod
    def _vendor_body(agent: dict[str, Any], display_name: str) -> dict[str, Any]:
        given, family = split_name(display_name)
        vendor: dict[str, Any] = {
            "DisplayName": display_name,
            "CompanyName": display_name,
            "GivenName": given,
            "FamilyName": family,
        }
        if agent.get("email"):
            vendor["PrimaryEmailAddr"] = {"Address": agent["email"]}
        if agent.get("phone"):
            vendor["PrimaryPhone"] = {"FreeFormNumber": agent["phone"]}
        if agent.get("street"):
            vendor["BillAddr"] = {
                "Line1": agent["street"],
                "City": agent.get("city") or "",
                "CountrySubDivisionCode": agent.get("state") or "",
                "PostalCode": agent.get("zipcode") or "",
            }
        return vendor

    async def void_bill(self, payment_id: str) -> RecordOutcome:
        """Zero the balance of the payment's QuickBooks bill (sparse update)."""
        payment = await self._store.find_first(
            EntityKind.COMMISSION_PAYMENT, [Criterion("id", payment_id)]
        )
        bill_id = (payment or {}).get("qb_bill_id")
        if not bill_id:
            return _skip(payment_id, "Payment not found or has no QuickBooks bill ID")
        bill_id = str(bill_id)

        async def push() -> PushResult:
            current = await self._client.get_bill(bill_id)
            if current is None:
                raise PermanentUpstreamError(f"QuickBooks bill {bill_id} not found")
            await self._client.save_bill(
                {
                    "Id": bill_id,
                    "SyncToken": str(current.get("SyncToken", "0")),
                    "Balance": 0,
                    "sparse": True,
                }
            )
            return OutcomeAction.UPDATED, bill_id, {
                "payment_id": payment_id,
                "bill_id": bill_id,
                "action": "voided",
            }

        return await self._logged(EntityKind.COMMISSION_PAYMENT, payment_id, "UPDATE", push)

    # ── Shared ──────────────────────────────────────────────────────────────

    async def _agent(self, agent_id: Any) -> dict[str, Any] | None:
        if not agent_id:
            return None
        return await self._store.find_first(EntityKind.AGENT, [Criterion("id", agent_id)])

    async def _logged(
        self,
        kind: EntityKind,
        key: str,
        action: str,
        push: Callable[[], Awaitable[PushResult]],
    ) -> RecordOutcome:
        """Run one push under its own sync log entry."""
        log_id = await self._sync_log.create_pending(
            SyncSource.QUICKBOOKS.value, kind.value, action, {"entity_id": key}
        )
        try:
            outcome_action, external_id, payload = await push()
        except AuthError as exc:
            await self._sync_log.complete(log_id, SyncStatus.FAILED, error_message=str(exc))
            raise
        except SyncHubError as exc:
            await self._sync_log.complete(log_id, SyncStatus.FAILED, error_message=str(exc))
            logger.warning(
                "quickbooks_push.failed", log_id=log_id, entity_kind=kind.value, key=key, error=str(exc)
            )
            return RecordOutcome(action=OutcomeAction.SKIPPED, key=key, entity_id=key, error=str(exc))
        except Exception as exc:
            await self._sync_log.complete(log_id, SyncStatus.FAILED, error_message=str(exc))
            logger.exception("quickbooks_push.crashed", log_id=log_id, entity_kind=kind.value, key=key)
            raise

        await self._sync_log.complete(log_id, SyncStatus.SUCCESS, payload=payload)
        logger.info(
            "quickbooks_push.pushed",
            log_id=log_id,
            entity_kind=kind.value,
            key=key,
            outcome=outcome_action.value,
            external_id=external_id,
        )
        return RecordOutcome(
            action=outcome_action, key=key, entity_id=key, affected=1, external_id=external_id
        )
