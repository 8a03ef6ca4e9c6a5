"""Sync audit log repository.

SyncLogRepository follows the session_factory callable pattern. Entries are
created PENDING and moved exactly once to SUCCESS or FAILED; a second
transition raises SyncLogStateError and leaves the entry untouched. Write
failures propagate -- losing the audit trail is a run-level failure.
"""

from __future__ import annotations

import json
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.synchub.core.errors import SyncLogStateError
from src.synchub.sync.models import SyncLogModel
from src.synchub.sync.schemas import SyncLogRead, SyncStatus

logger = structlog.get_logger(__name__)

DEFAULT_LIST_LIMIT = 20


def _jsonable(payload: dict[str, Any] | None) -> dict[str, Any]:
    """Round-trip through JSON so Decimals, dates and enums persist cleanly."""
    if not payload:
        return {}
    return json.loads(json.dumps(payload, default=str))


def _model_to_read(model: SyncLogModel) -> SyncLogRead:
    return SyncLogRead(
        id=model.id,
        source=model.source,
        entity_type=model.entity_type,
        action=model.action,
        status=SyncStatus(model.status),
        payload=model.payload or {},
        error_message=model.error_message,
        created_at=model.created_at,
        completed_at=model.completed_at,
    )


class SyncLogRepository:
    """Append-only store for SyncLogEntry records.

    Args:
        session_factory: Async generator callable yielding AsyncSession.
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncGenerator[AsyncSession, None]],
    ) -> None:
        self._session_factory = session_factory

    async def create_pending(
        self,
        source: str,
        entity_type: str,
        action: str,
        payload: dict[str, Any] | None = None,
    ) -> str:
        """Insert a PENDING entry and return its id."""
        async for session in self._session_factory():
            model = SyncLogModel(
                source=source,
                entity_type=entity_type,
                action=action,
                status=SyncStatus.PENDING.value,
                payload=_jsonable(payload),
            )
            session.add(model)
            await session.commit()
            logger.debug("sync_log.created", log_id=model.id, source=source, entity_type=entity_type)
            return model.id
        raise RuntimeError("Session factory yielded no session")

    async def complete(
        self,
        entry_id: str,
        status: SyncStatus,
        payload: dict[str, Any] | None = None,
        error_message: str | None = None,
    ) -> None:
        """Transition a PENDING entry to a terminal status.

        The UPDATE is conditional on ``status = 'PENDING'`` so the transition
        happens at most once even with concurrent completers.

        Raises:
            ValueError: If ``status`` is PENDING.
            SyncLogStateError: If the entry is missing or already terminal.
        """
        if status == SyncStatus.PENDING:
            raise ValueError("complete() requires a terminal status")

        values: dict[str, Any] = {
            "status": status.value,
            "error_message": error_message,
            "completed_at": datetime.now(timezone.utc),
        }
        if payload is not None:
            values["payload"] = _jsonable(payload)

        async for session in self._session_factory():
            result = await session.execute(
                update(SyncLogModel)
                .where(
                    SyncLogModel.id == entry_id,
                    SyncLogModel.status == SyncStatus.PENDING.value,
                )
                .values(**values)
            )
            await session.commit()
            if result.rowcount != 1:
                raise SyncLogStateError(f"Sync log {entry_id} is not PENDING")
            logger.debug("sync_log.completed", log_id=entry_id, status=status.value)

    async def get(self, entry_id: str) -> SyncLogRead | None:
        async for session in self._session_factory():
            model = await session.get(SyncLogModel, entry_id)
            return _model_to_read(model) if model is not None else None
        return None

    async def list(
        self,
        source: str | None = None,
        entity_type: str | None = None,
        status: SyncStatus | None = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> list[SyncLogRead]:
        """Filtered entries, newest first."""
        stmt = select(SyncLogModel)
        if source:
            stmt = stmt.where(SyncLogModel.source == source)
        if entity_type:
            stmt = stmt.where(SyncLogModel.entity_type == entity_type)
        if status:
            stmt = stmt.where(SyncLogModel.status == status.value)
        stmt = stmt.order_by(SyncLogModel.created_at.desc()).limit(limit)

        async for session in self._session_factory():
            result = await session.execute(stmt)
            return [_model_to_read(m) for m in result.scalars().all()]
        return []
