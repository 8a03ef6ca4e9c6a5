"""REZEN (Real Brokerage) API connector.

Provides RezenClient, a RecordSource over the REZEN arrakis API and the
Yenta team API. Authentication is a static ``X-API-KEY`` header.

Record sources per entity kind:
- transaction: ``/transactions/participant/{pid}/transactions/{lifecycle}``,
  paged by pageNumber/pageSize (100); detail ``/transactions/{id}``
- listing: ``/transactions/participant/{pid}/listing-transactions/{group}``
  for each lifecycle group (open, closed, terminated), page size 250; each
  record is annotated with ``lifecycleGroup``
- agent: Yenta ``/teams/{team_id}`` roster (single page); detail merges
  ``/agent/{id}/cap-info`` under ``capInfo``

Paging continues while a page comes back full. List calls retry transient
failures with tenacity (3 attempts, 1-10s backoff); detail calls are retried
by the orchestrator's per-item policy instead.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.synchub.connectors.base import Page, RecordSource, raise_for_upstream, send
from src.synchub.core.errors import AuthError, TransientUpstreamError
from src.synchub.sync.field_mapping import get_path
from src.synchub.sync.schemas import EntityKind, SyncSource

logger = structlog.get_logger(__name__)

TRANSACTION_PAGE_SIZE = 100
LISTING_PAGE_SIZE = 250
LISTING_LIFECYCLE_GROUPS = ("open", "closed", "terminated")

_rezen_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type(TransientUpstreamError),
    reraise=True,
)


class RezenClient(RecordSource):
    """Async REZEN API client.

    Args:
        http_client: Shared httpx.AsyncClient (owned by the app lifespan).
        api_key: REZEN API key.
        participant_id: REZEN participant (yenta) id whose transactions are synced.
        team_id: Team id for the agent roster.
        base_url: Arrakis API base URL.
        yenta_base_url: Yenta API base URL.
    """

    source = SyncSource.REZEN

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        api_key: str,
        participant_id: str,
        team_id: str = "",
        base_url: str = "https://arrakis.therealbrokerage.com/api/v1",
        yenta_base_url: str = "https://yenta.therealbrokerage.com/api/v1",
    ) -> None:
        self._http = http_client
        self._api_key = api_key
        self._participant_id = participant_id
        self._team_id = team_id
        self._base_url = base_url.rstrip("/")
        self._yenta_base_url = yenta_base_url.rstrip("/")

    def supports(self, kind: EntityKind) -> bool:
        return kind in (EntityKind.TRANSACTION, EntityKind.LISTING, EntityKind.AGENT)

    def _check_credentials(self) -> None:
        if not self._api_key:
            raise AuthError("REZEN API key is not configured")

    async def _get(self, url: str, params: dict[str, Any] | None = None) -> Any:
        self._check_credentials()
        response = await send(
            self._http,
            "GET",
            url,
            "REZEN",
            params=params,
            headers={"X-API-KEY": self._api_key, "Content-Type": "application/json"},
        )
        if response.status_code in (401, 403):
            raise AuthError(f"REZEN rejected the API key ({response.status_code})")
        raise_for_upstream(response, "REZEN")
        return response.json()

    # ── Listing ─────────────────────────────────────────────────────────────

    @_rezen_retry
    async def list_page(
        self,
        kind: EntityKind,
        filters: dict[str, Any],
        page_token: str | None = None,
    ) -> Page:
        if kind == EntityKind.TRANSACTION:
            return await self._transactions_page(filters, page_token)
        if kind == EntityKind.LISTING:
            return await self._listings_page(filters, page_token)
        if kind == EntityKind.AGENT:
            return await self._team_members()
        raise ValueError(f"REZEN does not provide {kind.value} records")

    async def _transactions_page(self, filters: dict[str, Any], page_token: str | None) -> Page:
        if not self._participant_id:
            raise AuthError("REZEN participant id is not configured")
        page_number = int(page_token or 0)
        page_size = int(filters.get("page_size", TRANSACTION_PAGE_SIZE))
        lifecycle = str(filters.get("lifecycle", "OPEN")).upper()
        params: dict[str, Any] = {
            "pageNumber": page_number,
            "pageSize": page_size,
            "sortDirection": "DESC",
            "sortBy": "CREATED_AT",
        }
        for name in ("updatedAtFrom", "updatedAtTo"):
            if filters.get(name):
                params[name] = filters[name]

        data = await self._get(
            f"{self._base_url}/transactions/participant/{self._participant_id}/transactions/{lifecycle}",
            params,
        )
        records = data if isinstance(data, list) else []
        logger.debug("rezen.transactions_page", page=page_number, count=len(records))
        next_token = str(page_number + 1) if len(records) == page_size else None
        return Page(records=records, next_page_token=next_token)

    async def _listings_page(self, filters: dict[str, Any], page_token: str | None) -> Page:
        if not self._participant_id:
            raise AuthError("REZEN participant id is not configured")
        groups = tuple(filters.get("lifecycle_groups") or LISTING_LIFECYCLE_GROUPS)
        page_size = int(filters.get("page_size", LISTING_PAGE_SIZE))
        group_index, page_number = 0, 0
        if page_token:
            group_part, _, page_part = page_token.partition(":")
            group_index, page_number = int(group_part), int(page_part)
        group = groups[group_index]

        data = await self._get(
            f"{self._base_url}/transactions/participant/{self._participant_id}"
            f"/listing-transactions/{group}",
            {
                "lifeCycleGroup": group.upper(),
                "pageNumber": page_number,
                "pageSize": page_size,
                "sortBy": "CREATED_AT",
                "sortDirection": "DESC",
            },
        )
        records = [
            {**item, "lifecycleGroup": group}
            for item in (data if isinstance(data, list) else [])
            if isinstance(item, dict)
        ]
        logger.debug("rezen.listings_page", group=group, page=page_number, count=len(records))

        if len(records) == page_size:
            next_token: str | None = f"{group_index}:{page_number + 1}"
        elif group_index + 1 < len(groups):
            next_token = f"{group_index + 1}:0"
        else:
            next_token = None
        return Page(records=records, next_page_token=next_token)

    async def _team_members(self) -> Page:
        if not self._team_id:
            raise AuthError("REZEN team id is not configured")
        data = await self._get(f"{self._yenta_base_url}/teams/{self._team_id}")
        if isinstance(data, dict):
            members = data.get("members") or []
        else:
            members = data if isinstance(data, list) else []
        return Page(records=[m for m in members if isinstance(m, dict)])

    # ── Detail ──────────────────────────────────────────────────────────────

    async def fetch_detail(self, kind: EntityKind, record: dict[str, Any]) -> dict[str, Any] | None:
        if kind == EntityKind.TRANSACTION:
            transaction_id = record.get("id")
            if not transaction_id:
                return None
            detail = await self._get(f"{self._base_url}/transactions/{transaction_id}")
            return detail if isinstance(detail, dict) else None

        if kind == EntityKind.AGENT:
            agent_id = get_path(record, "agent.id") or record.get("id")
            if not agent_id:
                return None
            cap_info = await self._get(f"{self._base_url}/agent/{agent_id}/cap-info")
            return {**record, "capInfo": cap_info if isinstance(cap_info, dict) else {}}

        return None
