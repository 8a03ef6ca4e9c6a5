"""Zoho CRM connector.

ZohoClient lists module records through ``/crm/v8/{Module}`` (200 per page,
following ``info.more_records``), fetches single records by id, and reads
field metadata for formula-field import. Every call authenticates with
``Zoho-oauthtoken`` from the injected TokenCache; a 401 clears the cache
and retries once with a fresh token.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from src.synchub.auth.token_cache import TokenCache
from src.synchub.connectors.base import Page, RecordSource, raise_for_upstream, send_authorized
from src.synchub.sync.schemas import EntityKind, SyncSource

logger = structlog.get_logger(__name__)

ZOHO_PAGE_SIZE = 200

ZOHO_MODULES: dict[EntityKind, str] = {
    EntityKind.AGENT: "Members",
    EntityKind.LISTING: "Listings",
    EntityKind.TRANSACTION: "Deals",
    EntityKind.COMMISSION_PAYMENT: "Payments",
}


class ZohoClient(RecordSource):
    """Async Zoho CRM client.

    Args:
        http_client: Shared httpx.AsyncClient.
        token_cache: Zoho access-token cache.
        base_url: Zoho API host (``https://www.zohoapis.com``).
    """

    source = SyncSource.ZOHO

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        token_cache: TokenCache,
        base_url: str = "https://www.zohoapis.com",
    ) -> None:
        self._http = http_client
        self._tokens = token_cache
        self._base_url = f"{base_url.rstrip('/')}/crm/v8"

    def supports(self, kind: EntityKind) -> bool:
        return kind in ZOHO_MODULES

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        response = await send_authorized(
            self._http,
            "GET",
            f"{self._base_url}{path}",
            "Zoho",
            self._tokens,
            scheme="Zoho-oauthtoken",
            params=params,
        )
        if response.status_code == 204:
            return {}
        raise_for_upstream(response, "Zoho")
        data = response.json()
        return data if isinstance(data, dict) else {}

    async def list_page(
        self,
        kind: EntityKind,
        filters: dict[str, Any],
        page_token: str | None = None,
    ) -> Page:
        module = ZOHO_MODULES[kind]
        page = int(page_token or 1)
        params: dict[str, Any] = {
            "page": page,
            "per_page": int(filters.get("per_page", ZOHO_PAGE_SIZE)),
            "sort_order": "desc",
            "sort_by": "Modified_Time",
        }
        if filters.get("fields"):
            params["fields"] = ",".join(filters["fields"])

        data = await self._get(f"/{module}", params)
        records = [r for r in data.get("data") or [] if isinstance(r, dict)]
        more = bool((data.get("info") or {}).get("more_records"))
        logger.debug("zoho.page", module=module, page=page, count=len(records), more=more)
        return Page(records=records, next_page_token=str(page + 1) if more else None)

    async def fetch_detail(self, kind: EntityKind, record: dict[str, Any]) -> dict[str, Any] | None:
        record_id = record.get("id")
        if not record_id:
            return None
        data = await self._get(f"/{ZOHO_MODULES[kind]}/{record_id}")
        rows = data.get("data") or []
        return rows[0] if rows and isinstance(rows[0], dict) else None

    async def get_field_metadata(self, module: str) -> list[dict[str, Any]]:
        """Field definitions of a module (``/settings/fields?module=``)."""
        data = await self._get("/settings/fields", {"module": module})
        return [f for f in data.get("fields") or [] if isinstance(f, dict)]
