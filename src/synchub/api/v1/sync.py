"""Sync trigger and webhook endpoints.

Provides:
- POST /sync/{source}/{entity_kind}: cron-triggered full sync (Bearer CRON_SECRET)
- POST /webhooks/quickbooks: Intuit bill event notifications (intuit-signature)
- POST /webhooks/{source}/{entity_kind}: single-record push (X-Webhook-Secret)

Run results are always structured; a FAILED run is still a 200 response
whose body carries the errors.
"""

from __future__ import annotations

import json
from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field

from src.synchub.api.deps import verify_cron_secret, verify_webhook_secret
from src.synchub.config import Settings, get_settings
from src.synchub.connectors.quickbooks import parse_webhook_events, verify_webhook_signature
from src.synchub.core.errors import AuthError, SyncRunError, UpstreamError
from src.synchub.sync.schemas import (
    EntityKind,
    InboundAction,
    OutcomeAction,
    RecordOutcome,
    SyncRunParams,
    SyncRunResult,
    SyncSource,
)

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["sync"])


# ── Request / Response Schemas ───────────────────────────────────────────────


class SyncTriggerRequest(BaseModel):
    """Optional overrides for a cron-triggered run."""

    filters: dict[str, Any] = Field(default_factory=dict)
    fetch_details: bool = True
    batch_size: int | None = Field(default=None, ge=1)
    batch_delay_seconds: float | None = Field(default=None, ge=0)
    deadline_seconds: float | None = Field(default=None, gt=0)
    max_pages: int | None = Field(default=None, ge=1)


class WebhookRequest(BaseModel):
    action: InboundAction
    data: dict[str, Any]


class QuickBooksWebhookResponse(BaseModel):
    processed: int = 0
    outcomes: list[RecordOutcome] = Field(default_factory=list)


# ── Dependency Injection Helpers ─────────────────────────────────────────────


def _get_orchestrator(request: Request) -> Any:
    """Retrieve SyncOrchestrator from app.state, 503 if not available."""
    orchestrator = getattr(request.app.state, "sync_orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync orchestrator not initialized",
        )
    return orchestrator


def _get_quickbooks_client(request: Request) -> Any:
    """Retrieve QuickBooksClient from app.state, 503 if not configured."""
    client = getattr(request.app.state, "quickbooks_client", None)
    if client is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="QuickBooks not configured",
        )
    return client


# ── Sync Trigger ─────────────────────────────────────────────────────────────


@router.post(
    "/sync/{source}/{entity_kind}",
    response_model=SyncRunResult,
    dependencies=[Depends(verify_cron_secret)],
)
async def trigger_sync(
    source: SyncSource,
    entity_kind: EntityKind,
    request: Request,
    body: SyncTriggerRequest | None = None,
) -> SyncRunResult:
    """Run one full sync of ``entity_kind`` from ``source``."""
    orchestrator = _get_orchestrator(request)
    overrides = body or SyncTriggerRequest()
    params = SyncRunParams(source=source, **overrides.model_dump())

    try:
        return await orchestrator.run_sync(entity_kind, params)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except AuthError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Authentication with {source.value} failed: {exc}",
        ) from exc
    except SyncRunError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)
        ) from exc


# ── Webhooks ─────────────────────────────────────────────────────────────────


@router.post("/webhooks/quickbooks", response_model=QuickBooksWebhookResponse)
async def quickbooks_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> QuickBooksWebhookResponse:
    """Apply Intuit Bill notifications to commission payments.

    Create/Update events re-read the bill from QuickBooks; Delete/Void
    deactivate the matching payment.
    """
    body = await request.body()
    if not verify_webhook_signature(
        body, request.headers.get("intuit-signature"), settings.QB_WEBHOOK_VERIFIER_TOKEN
    ):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")

    try:
        payload = json.loads(body or b"{}")
    except json.JSONDecodeError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON") from exc

    orchestrator = _get_orchestrator(request)
    events = parse_webhook_events(payload if isinstance(payload, dict) else {})
    client = _get_quickbooks_client(request) if any(
        action != InboundAction.DELETE for action, _ in events
    ) else None

    response = QuickBooksWebhookResponse()
    for action, bill_id in events:
        record: dict[str, Any] | None = {"Id": bill_id}
        if action != InboundAction.DELETE:
            try:
                record = await client.get_bill(bill_id)
            except (UpstreamError, AuthError) as exc:
                logger.warning("quickbooks_webhook.bill_fetch_failed", bill_id=bill_id, error=str(exc))
                response.outcomes.append(
                    RecordOutcome(action=OutcomeAction.SKIPPED, key=bill_id, error=str(exc))
                )
                continue
            if record is None:
                response.outcomes.append(
                    RecordOutcome(action=OutcomeAction.SKIPPED, key=bill_id, reason="bill not found")
                )
                continue

        outcome = await orchestrator.ingest(
            EntityKind.COMMISSION_PAYMENT, SyncSource.QUICKBOOKS, action, record
        )
        response.outcomes.append(outcome)
        response.processed += 1

    return response


@router.post(
    "/webhooks/{source}/{entity_kind}",
    response_model=RecordOutcome,
    dependencies=[Depends(verify_webhook_secret)],
)
async def ingest_webhook(
    source: SyncSource,
    entity_kind: EntityKind,
    body: WebhookRequest,
    request: Request,
) -> RecordOutcome:
    """Reconcile one pushed record under its own audit log entry."""
    orchestrator = _get_orchestrator(request)
    try:
        return await orchestrator.ingest(entity_kind, source, body.action, body.data)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
