"""Fetch boundary shared by every external system connector.

RecordSource is what the SyncOrchestrator consumes: a paginated list fetch
plus an optional per-record detail fetch. Both raise UpstreamError subclasses
carrying the HTTP status code so the orchestrator's retry policy can
classify failures.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx
import structlog

from src.synchub.auth.token_cache import TokenCache
from src.synchub.core.errors import AuthError, TransientUpstreamError, upstream_error_for_status
from src.synchub.sync.schemas import EntityKind, SyncSource

logger = structlog.get_logger(__name__)


@dataclass
class Page:
    """One page of external records."""

    records: list[dict[str, Any]] = field(default_factory=list)
    next_page_token: str | None = None


class RecordSource(ABC):
    """Paginated external record source for one system."""

    source: SyncSource

    @abstractmethod
    def supports(self, kind: EntityKind) -> bool:
        """Return True if this source can list records of ``kind``."""
        ...

    @abstractmethod
    async def list_page(
        self,
        kind: EntityKind,
        filters: dict[str, Any],
        page_token: str | None = None,
    ) -> Page:
        """Fetch one page of records."""
        ...

    async def fetch_detail(self, kind: EntityKind, record: dict[str, Any]) -> dict[str, Any] | None:
        """Fetch the full record for a list entry; None when the kind has no detail call."""
        return None


def raise_for_upstream(response: httpx.Response, system: str) -> None:
    """Raise the classified UpstreamError for a non-2xx response."""
    if response.status_code < 400:
        return
    message = f"{system} API error ({response.status_code}): {response.text[:500]}"
    raise upstream_error_for_status(response.status_code, message)


async def send(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    system: str,
    **kwargs: Any,
) -> httpx.Response:
    """Send a request, mapping transport failures to TransientUpstreamError."""
    try:
        return await client.request(method, url, **kwargs)
    except httpx.TimeoutException as exc:
        raise TransientUpstreamError(f"{system} request timed out: {exc}") from exc
    except httpx.HTTPError as exc:
        raise TransientUpstreamError(f"{system} network error: {exc}") from exc


async def send_authorized(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    system: str,
    token_cache: TokenCache,
    *,
    scheme: str = "Bearer",
    **kwargs: Any,
) -> httpx.Response:
    """Send with a cached OAuth token; on 401 clear the cache and retry once.

    Raises:
        AuthError: If the retried call is still unauthorized.
    """
    extra_headers = kwargs.pop("headers", None) or {}
    for attempt in range(2):
        token = await token_cache.get_token()
        headers = {"Authorization": f"{scheme} {token}", "Accept": "application/json", **extra_headers}
        response = await send(client, method, url, system, headers=headers, **kwargs)
        if response.status_code != 401:
            return response
        logger.warning("connector.unauthorized", system=system, attempt=attempt + 1)
        token_cache.clear()
    raise AuthError(f"{system} rejected a freshly refreshed token")
