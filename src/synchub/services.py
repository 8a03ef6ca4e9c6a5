"""Service graph construction shared by the API lifespan and the CLI.

build_services() wires token caches, connectors, the entity store,
reconcilers, the sync log, the orchestrator, the QuickBooks publisher and
the formula service from Settings. External systems without credentials
are left out; a sync against a missing source fails with a clear
ValueError instead of an AuthError deep inside a run.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import httpx
import structlog

from src.synchub.auth.token_cache import OAuthRefreshExchange, TokenCache
from src.synchub.config import Settings
from src.synchub.connectors.base import RecordSource
from src.synchub.connectors.quickbooks import QuickBooksClient
from src.synchub.connectors.rezen import RezenClient
from src.synchub.connectors.zoho import ZohoClient
from src.synchub.core.database import get_session
from src.synchub.formulas.service import FormulaFieldRepository, FormulaFieldService
from src.synchub.sync.orchestrator import SyncOrchestrator
from src.synchub.sync.quickbooks_push import QuickBooksPublisher
from src.synchub.sync.reconciler import EntityReconciler
from src.synchub.sync.schemas import EntityKind, SyncSource
from src.synchub.sync.store import SqlAlchemyEntityStore
from src.synchub.sync.sync_log import SyncLogRepository

logger = structlog.get_logger(__name__)


@dataclass
class SyncHubServices:
    http_client: httpx.AsyncClient
    orchestrator: SyncOrchestrator
    sync_log: SyncLogRepository
    formula_service: FormulaFieldService
    sources: dict[SyncSource, RecordSource] = field(default_factory=dict)
    token_caches: dict[str, TokenCache] = field(default_factory=dict)
    quickbooks_publisher: QuickBooksPublisher | None = None
    owns_http_client: bool = True

    @property
    def quickbooks_client(self) -> QuickBooksClient | None:
        client = self.sources.get(SyncSource.QUICKBOOKS)
        return client if isinstance(client, QuickBooksClient) else None

    @property
    def zoho_client(self) -> ZohoClient | None:
        client = self.sources.get(SyncSource.ZOHO)
        return client if isinstance(client, ZohoClient) else None

    async def aclose(self) -> None:
        """Close the HTTP client if build_services created it."""
        if self.owns_http_client:
            await self.http_client.aclose()


def _zoho_token_cache(settings: Settings, http_client: httpx.AsyncClient) -> TokenCache | None:
    exchange = None
    if settings.zoho_refresh_configured():
        exchange = OAuthRefreshExchange(
            settings.ZOHO_TOKEN_URL,
            settings.ZOHO_CLIENT_ID,
            settings.ZOHO_CLIENT_SECRET,
            settings.ZOHO_REFRESH_TOKEN,
            http_client=http_client,
        )
    if exchange is None and not settings.ZOHO_ACCESS_TOKEN:
        return None
    return TokenCache(
        "zoho",
        exchange,
        static_token=settings.ZOHO_ACCESS_TOKEN,
        buffer_seconds=settings.TOKEN_EXPIRY_BUFFER_SECONDS,
    )


def _quickbooks_token_cache(settings: Settings, http_client: httpx.AsyncClient) -> TokenCache | None:
    exchange = None
    if settings.quickbooks_refresh_configured():
        exchange = OAuthRefreshExchange(
            settings.QB_TOKEN_URL,
            settings.QB_CLIENT_ID,
            settings.QB_CLIENT_SECRET,
            settings.QB_REFRESH_TOKEN,
            client_auth="basic",
            http_client=http_client,
        )
    if exchange is None and not settings.QB_ACCESS_TOKEN:
        return None
    return TokenCache(
        "quickbooks",
        exchange,
        static_token=settings.QB_ACCESS_TOKEN,
        buffer_seconds=settings.TOKEN_EXPIRY_BUFFER_SECONDS,
    )


def build_services(
    settings: Settings,
    http_client: httpx.AsyncClient | None = None,
) -> SyncHubServices:
    """Build the full service graph from settings."""
    http = http_client or httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS)

    sources: dict[SyncSource, RecordSource] = {}
    token_caches: dict[str, TokenCache] = {}

    if settings.REZEN_API_KEY and settings.REZEN_PARTICIPANT_ID:
        sources[SyncSource.REZEN] = RezenClient(
            http,
            settings.REZEN_API_KEY,
            settings.REZEN_PARTICIPANT_ID,
            team_id=settings.REZEN_TEAM_ID,
            base_url=settings.REZEN_API_BASE_URL,
            yenta_base_url=settings.REZEN_YENTA_BASE_URL,
        )

    zoho_tokens = _zoho_token_cache(settings, http)
    if zoho_tokens is not None:
        token_caches["zoho"] = zoho_tokens
        sources[SyncSource.ZOHO] = ZohoClient(http, zoho_tokens, settings.ZOHO_API_BASE_URL)

    qb_tokens = _quickbooks_token_cache(settings, http)
    if qb_tokens is not None and settings.QB_REALM_ID:
        token_caches["quickbooks"] = qb_tokens
        sources[SyncSource.QUICKBOOKS] = QuickBooksClient(
            http, qb_tokens, settings.QB_REALM_ID, settings.QB_API_BASE_URL
        )

    store = SqlAlchemyEntityStore(get_session)
    reconcilers = {kind: EntityReconciler(kind, store) for kind in EntityKind}
    sync_log = SyncLogRepository(get_session)

    orchestrator = SyncOrchestrator(
        reconcilers,
        sources,
        sync_log,
        batch_size=settings.REZEN_BATCH_SIZE,
        batch_delay=settings.REZEN_BATCH_DELAY_MS / 1000,
        max_retries=settings.SYNC_MAX_RETRIES,
        base_retry_delay=settings.SYNC_RETRY_BASE_DELAY_MS / 1000,
    )

    quickbooks_client = sources.get(SyncSource.QUICKBOOKS)
    quickbooks_publisher = None
    if isinstance(quickbooks_client, QuickBooksClient):
        quickbooks_publisher = QuickBooksPublisher(
            quickbooks_client,
            store,
            sync_log,
            invoice_item=(settings.QB_INVOICE_ITEM_ID, settings.QB_INVOICE_ITEM_NAME),
            expense_account=(settings.QB_EXPENSE_ACCOUNT_ID, settings.QB_EXPENSE_ACCOUNT_NAME),
        )

    zoho_client = sources.get(SyncSource.ZOHO)
    formula_service = FormulaFieldService(
        FormulaFieldRepository(get_session),
        zoho_client if isinstance(zoho_client, ZohoClient) else None,
    )

    logger.info(
        "services.built",
        sources=sorted(s.value for s in sources),
        batch_size=settings.REZEN_BATCH_SIZE,
    )
    return SyncHubServices(
        http_client=http,
        orchestrator=orchestrator,
        sync_log=sync_log,
        formula_service=formula_service,
        sources=sources,
        token_caches=token_caches,
        quickbooks_publisher=quickbooks_publisher,
        owns_http_client=http_client is None,
    )
