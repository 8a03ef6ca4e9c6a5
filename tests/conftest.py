"""Shared fixtures and test doubles for synchub tests.

Provides:
- InMemoryEntityStore: EntityStore double enforcing unique external ids
- InMemorySyncLogRepository: SyncLogRepository double with the single
  PENDING -> terminal transition
- sqlite_session_factory: session_factory over an in-memory aiosqlite engine
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Sequence
from datetime import datetime, timezone
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

from src.synchub.core.database import Base
from src.synchub.core.errors import DuplicateKeyError, SyncLogStateError
from src.synchub.formulas import models as _formula_models  # noqa: F401
from src.synchub.sync.models import MODEL_BY_KIND
from src.synchub.sync.schemas import EntityKind, SyncLogRead, SyncStatus
from src.synchub.sync.store import Criterion, EntityStore


# ── In-Memory Test Doubles ───────────────────────────────────────────────────


class InMemoryEntityStore(EntityStore):
    """In-memory EntityStore for testing without database.

    Mirrors the SQL store: criteria are ORed, unique external id columns
    reject a second claimant, unknown fields are rejected.
    """

    def __init__(self) -> None:
        self._rows: dict[EntityKind, list[dict[str, Any]]] = {kind: [] for kind in EntityKind}

    @staticmethod
    def _columns(kind: EntityKind) -> set[str]:
        return set(MODEL_BY_KIND[kind].__table__.columns.keys())

    @staticmethod
    def _unique_fields(kind: EntityKind) -> list[str]:
        return [c.name for c in MODEL_BY_KIND[kind].__table__.columns if c.unique]

    @staticmethod
    def _matches(row: dict[str, Any], criterion: Criterion) -> bool:
        value = row.get(criterion.field)
        if value is None:
            return False
        if criterion.op == "ieq":
            return str(value).lower() == str(criterion.value).lower()
        if criterion.op == "icontains":
            return str(criterion.value).lower() in str(value).lower()
        return value == criterion.value

    def _select(self, kind: EntityKind, criteria: Sequence[Criterion]) -> list[dict[str, Any]]:
        if not criteria:
            raise ValueError("At least one criterion is required")
        return [r for r in self._rows[kind] if any(self._matches(r, c) for c in criteria)]

    def _clean(self, kind: EntityKind, data: dict[str, Any]) -> dict[str, Any]:
        unknown = set(data) - self._columns(kind)
        if unknown:
            raise ValueError(f"Unknown {kind.value} fields: {sorted(unknown)}")
        return {k: v for k, v in data.items() if k != "id"}

    def _check_unique(self, kind: EntityKind, data: dict[str, Any], exclude_id: str | None = None) -> None:
        for field in self._unique_fields(kind):
            value = data.get(field)
            if value is None:
                continue
            for row in self._rows[kind]:
                if row["id"] != exclude_id and row.get(field) == value:
                    raise DuplicateKeyError(f"{field}={value} already claimed by {row['id']}")

    def seed(self, kind: EntityKind, **fields: Any) -> dict[str, Any]:
        """Insert a row directly (test setup)."""
        row = {"id": str(uuid.uuid4()), **self._clean(kind, fields)}
        self._check_unique(kind, row)
        self._rows[kind].append(row)
        return dict(row)

    def rows(self, kind: EntityKind) -> list[dict[str, Any]]:
        return [dict(r) for r in self._rows[kind]]

    def get(self, kind: EntityKind, entity_id: str) -> dict[str, Any] | None:
        for row in self._rows[kind]:
            if row["id"] == entity_id:
                return dict(row)
        return None

    async def find_many(
        self,
        kind: EntityKind,
        criteria: Sequence[Criterion],
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        rows = self._select(kind, criteria)
        if limit is not None:
            rows = rows[:limit]
        return [dict(r) for r in rows]

    async def create(self, kind: EntityKind, data: dict[str, Any]) -> dict[str, Any]:
        values = self._clean(kind, data)
        self._check_unique(kind, values)
        row = {"id": str(uuid.uuid4()), **values}
        self._rows[kind].append(row)
        return dict(row)

    async def update(
        self, kind: EntityKind, entity_id: str, data: dict[str, Any]
    ) -> dict[str, Any]:
        values = self._clean(kind, data)
        for row in self._rows[kind]:
            if row["id"] == entity_id:
                self._check_unique(kind, values, exclude_id=entity_id)
                row.update(values)
                return dict(row)
        raise LookupError(f"{kind.value} {entity_id} not found")

    async def update_many(
        self, kind: EntityKind, criteria: Sequence[Criterion], data: dict[str, Any]
    ) -> int:
        values = self._clean(kind, data)
        rows = self._select(kind, criteria)
        for row in rows:
            row.update(values)
        return len(rows)

    async def count(self, kind: EntityKind, criteria: Sequence[Criterion]) -> int:
        return len(self._select(kind, criteria))


class InMemorySyncLogRepository:
    """In-memory SyncLogRepository for testing without database."""

    def __init__(self) -> None:
        self.entries: dict[str, SyncLogRead] = {}

    async def create_pending(
        self,
        source: str,
        entity_type: str,
        action: str,
        payload: dict[str, Any] | None = None,
    ) -> str:
        entry_id = str(uuid.uuid4())
        self.entries[entry_id] = SyncLogRead(
            id=entry_id,
            source=source,
            entity_type=entity_type,
            action=action,
            status=SyncStatus.PENDING,
            payload=payload or {},
            created_at=datetime.now(timezone.utc),
        )
        return entry_id

    async def complete(
        self,
        entry_id: str,
        status: SyncStatus,
        payload: dict[str, Any] | None = None,
        error_message: str | None = None,
    ) -> None:
        if status == SyncStatus.PENDING:
            raise ValueError("complete() requires a terminal status")
        entry = self.entries.get(entry_id)
        if entry is None or entry.status != SyncStatus.PENDING:
            raise SyncLogStateError(f"Sync log {entry_id} is not PENDING")
        update: dict[str, Any] = {
            "status": status,
            "error_message": error_message,
            "completed_at": datetime.now(timezone.utc),
        }
        if payload is not None:
            update["payload"] = payload
        self.entries[entry_id] = entry.model_copy(update=update)

    async def get(self, entry_id: str) -> SyncLogRead | None:
        return self.entries.get(entry_id)

    async def list(
        self,
        source: str | None = None,
        entity_type: str | None = None,
        status: SyncStatus | None = None,
        limit: int = 20,
    ) -> list[SyncLogRead]:
        entries = [
            e
            for e in self.entries.values()
            if (not source or e.source == source)
            and (not entity_type or e.entity_type == entity_type)
            and (not status or e.status == status)
        ]
        entries.sort(key=lambda e: e.created_at, reverse=True)
        return entries[:limit]

    def only(self) -> SyncLogRead:
        """The single entry written by a test."""
        assert len(self.entries) == 1, f"expected one log entry, got {len(self.entries)}"
        return next(iter(self.entries.values()))


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def store() -> InMemoryEntityStore:
    return InMemoryEntityStore()


@pytest.fixture
def sync_log() -> InMemorySyncLogRepository:
    return InMemorySyncLogRepository()


@pytest_asyncio.fixture
async def sqlite_session_factory():
    """session_factory callable over a fresh in-memory SQLite database."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async def factory() -> AsyncGenerator[AsyncSession, None]:
        async with AsyncSession(engine, expire_on_commit=False) as session:
            yield session

    yield factory
    await engine.dispose()
