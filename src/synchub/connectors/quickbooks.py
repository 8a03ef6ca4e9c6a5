"""QuickBooks Online connector for commission bills.

QuickBooksClient reads Bills (the accounting side of a commission payment)
through the QBO v3 API: a paged ``select * from Bill`` query for full syncs
and ``/bill/{id}`` for single records. It also writes the outbound side:
invoices for closed transactions, bills for commission payments, and the
customers and vendors they reference. Webhook helpers verify the
``intuit-signature`` header and flatten ``eventNotifications`` into
``(action, bill_id)`` pairs: Create/Update/Merge refresh the bill, Delete
and Void deactivate the local payment.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
from typing import Any

import httpx
import structlog

from src.synchub.auth.token_cache import TokenCache
from src.synchub.connectors.base import Page, RecordSource, raise_for_upstream, send_authorized
from src.synchub.core.errors import PermanentUpstreamError
from src.synchub.sync.schemas import EntityKind, InboundAction, SyncSource

logger = structlog.get_logger(__name__)

QB_PAGE_SIZE = 100
QB_MINOR_VERSION = "70"

WEBHOOK_OPERATIONS: dict[str, InboundAction] = {
    "create": InboundAction.UPDATE,
    "update": InboundAction.UPDATE,
    "merge": InboundAction.UPDATE,
    "emailed": InboundAction.UPDATE,
    "delete": InboundAction.DELETE,
    "void": InboundAction.DELETE,
}


class QuickBooksClient(RecordSource):
    """Async QuickBooks Online client scoped to one company (realm).

    Args:
        http_client: Shared httpx.AsyncClient.
        token_cache: QuickBooks access-token cache.
        realm_id: Company id.
        base_url: API host (production or sandbox).
    """

    source = SyncSource.QUICKBOOKS

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        token_cache: TokenCache,
        realm_id: str,
        base_url: str = "https://quickbooks.api.intuit.com",
    ) -> None:
        self._http = http_client
        self._tokens = token_cache
        self._realm_id = realm_id
        self._company_url = f"{base_url.rstrip('/')}/v3/company/{realm_id}"

    def supports(self, kind: EntityKind) -> bool:
        return kind == EntityKind.COMMISSION_PAYMENT

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        response = await send_authorized(
            self._http,
            "GET",
            f"{self._company_url}{path}",
            "QuickBooks",
            self._tokens,
            params={"minorversion": QB_MINOR_VERSION, **(params or {})},
        )
        raise_for_upstream(response, "QuickBooks")
        data = response.json()
        return data if isinstance(data, dict) else {}

    async def list_page(
        self,
        kind: EntityKind,
        filters: dict[str, Any],
        page_token: str | None = None,
    ) -> Page:
        if kind != EntityKind.COMMISSION_PAYMENT:
            raise ValueError(f"QuickBooks does not provide {kind.value} records")
        start = int(page_token or 1)
        page_size = int(filters.get("page_size", QB_PAGE_SIZE))
        query = "select * from Bill"
        if filters.get("updated_since"):
            query += f" where MetaData.LastUpdatedTime >= '{filters['updated_since']}'"
        query += f" STARTPOSITION {start} MAXRESULTS {page_size}"

        data = await self._get("/query", {"query": query})
        bills = (data.get("QueryResponse") or {}).get("Bill") or []
        records = [b for b in bills if isinstance(b, dict)]
        logger.debug("quickbooks.bills_page", start=start, count=len(records))
        next_token = str(start + page_size) if len(records) == page_size else None
        return Page(records=records, next_page_token=next_token)

    async def fetch_detail(self, kind: EntityKind, record: dict[str, Any]) -> dict[str, Any] | None:
        bill_id = record.get("Id")
        if kind != EntityKind.COMMISSION_PAYMENT or not bill_id:
            return None
        return await self.get_bill(str(bill_id))

    async def get_bill(self, bill_id: str) -> dict[str, Any] | None:
        data = await self._get(f"/bill/{bill_id}")
        bill = data.get("Bill")
        return bill if isinstance(bill, dict) else None

    # ── Writes ──────────────────────────────────────────────────────────────

    async def _post(self, path: str, entity: str, body: dict[str, Any]) -> dict[str, Any]:
        response = await send_authorized(
            self._http,
            "POST",
            f"{self._company_url}{path}",
            "QuickBooks",
            self._tokens,
            params={"minorversion": QB_MINOR_VERSION},
            json=body,
        )
        raise_for_upstream(response, "QuickBooks")
        data = response.json()
        saved = data.get(entity) if isinstance(data, dict) else None
        if not isinstance(saved, dict) or not saved.get("Id"):
            raise PermanentUpstreamError(
                f"QuickBooks returned no {entity} for {path}", status_code=response.status_code
            )
        return saved

    async def _find_by_display_name(self, entity: str, display_name: str) -> list[dict[str, Any]]:
        query = f"select * from {entity} where DisplayName = '{quote_query_value(display_name)}'"
        data = await self._get("/query", {"query": query})
        rows = (data.get("QueryResponse") or {}).get(entity) or []
        return [r for r in rows if isinstance(r, dict)]

    async def find_customers(self, display_name: str) -> list[dict[str, Any]]:
        return await self._find_by_display_name("Customer", display_name)

    async def create_customer(self, customer: dict[str, Any]) -> dict[str, Any]:
        return await self._post("/customer", "Customer", customer)

    async def get_vendor(self, vendor_id: str) -> dict[str, Any] | None:
        data = await self._get(f"/vendor/{vendor_id}")
        vendor = data.get("Vendor")
        return vendor if isinstance(vendor, dict) else None

    async def find_vendors(self, display_name: str) -> list[dict[str, Any]]:
        return await self._find_by_display_name("Vendor", display_name)

    async def create_vendor(self, vendor: dict[str, Any]) -> dict[str, Any]:
        return await self._post("/vendor", "Vendor", vendor)

    async def get_invoice(self, invoice_id: str) -> dict[str, Any] | None:
        data = await self._get(f"/invoice/{invoice_id}")
        invoice = data.get("Invoice")
        return invoice if isinstance(invoice, dict) else None

    async def save_invoice(self, invoice: dict[str, Any]) -> dict[str, Any]:
        """Create an invoice, or update one when ``Id`` and ``SyncToken`` are set."""
        return await self._post("/invoice", "Invoice", invoice)

    async def save_bill(self, bill: dict[str, Any]) -> dict[str, Any]:
        """Create a bill, or update one when ``Id`` and ``SyncToken`` are set."""
        return await self._post("/bill", "Bill", bill)


def quote_query_value(value: str) -> str:
    """Escape a literal for a QuickBooks query ``'...'`` string."""
    return value.replace("\\", "\\\\").replace("'", "\\'")


# ── Webhooks ───────────────────────────────────────────────────────────────


def verify_webhook_signature(body: bytes, signature: str | None, verifier_token: str) -> bool:
    """Check ``intuit-signature`` (base64 HMAC-SHA256 of the raw body)."""
    if not signature or not verifier_token:
        return False
    digest = hmac.new(verifier_token.encode(), body, hashlib.sha256).digest()
    expected = base64.b64encode(digest).decode()
    return hmac.compare_digest(expected, signature)


def parse_webhook_events(payload: dict[str, Any]) -> list[tuple[InboundAction, str]]:
    """Flatten Intuit event notifications into ``(action, bill_id)`` pairs.

    Entities other than Bill and unknown operations are ignored.
    """
    events: list[tuple[InboundAction, str]] = []
    for notification in payload.get("eventNotifications") or []:
        entities = ((notification or {}).get("dataChangeEvent") or {}).get("entities") or []
        for entity in entities:
            if not isinstance(entity, dict) or entity.get("name") != "Bill":
                continue
            action = WEBHOOK_OPERATIONS.get(str(entity.get("operation", "")).lower())
            if action is None or not entity.get("id"):
                logger.debug("quickbooks.webhook_ignored", operation=entity.get("operation"))
                continue
            events.append((action, str(entity["id"])))
    return events
