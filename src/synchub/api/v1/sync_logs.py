"""Sync log read endpoints for the operations dashboard.

Provides:
- GET /sync-logs: entries filtered by source, entity_type and status, newest first
- GET /sync-logs/{log_id}: one entry
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Query, Request, status

from src.synchub.sync.schemas import SyncLogRead, SyncStatus

router = APIRouter(prefix="/sync-logs", tags=["sync-logs"])


def _get_sync_log(request: Request) -> Any:
    """Retrieve SyncLogRepository from app.state, 503 if not available."""
    repo = getattr(request.app.state, "sync_log", None)
    if repo is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync log not initialized",
        )
    return repo


@router.get("", response_model=list[SyncLogRead])
async def list_sync_logs(
    request: Request,
    source: str | None = None,
    entity_type: str | None = None,
    status_filter: SyncStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=20, ge=1, le=200),
) -> list[SyncLogRead]:
    """List sync log entries, newest first."""
    repo = _get_sync_log(request)
    return await repo.list(source=source, entity_type=entity_type, status=status_filter, limit=limit)


@router.get("/{log_id}", response_model=SyncLogRead)
async def get_sync_log(log_id: str, request: Request) -> SyncLogRead:
    """Get a single sync log entry by ID."""
    repo = _get_sync_log(request)
    entry = await repo.get(log_id)
    if entry is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Sync log not found: {log_id}",
        )
    return entry
