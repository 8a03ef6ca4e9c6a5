"""Persistent store boundary used by the reconciler.

Provides:
- Criterion: ``(field, value, op)`` with op in eq / ieq / icontains
- EntityStore: ABC the reconciler and orchestrator depend on
- SqlAlchemyEntityStore: Implementation over the SQLAlchemy models

Criteria lists are combined with OR. Entities travel as plain dicts keyed by
column name so the reconciler stays independent of the ORM.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator, Callable, Sequence
from dataclasses import dataclass
from typing import Any, Literal

import structlog
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.synchub.core.errors import DuplicateKeyError
from src.synchub.sync.models import MODEL_BY_KIND
from src.synchub.sync.schemas import EntityKind

logger = structlog.get_logger(__name__)

MatchOp = Literal["eq", "ieq", "icontains"]


@dataclass(frozen=True)
class Criterion:
    """Single field predicate."""

    field: str
    value: Any
    op: MatchOp = "eq"


# ── Store Interface ─────────────────────────────────────────────────────────


class EntityStore(ABC):
    """Abstract persistent store for reconciled entities."""

    @abstractmethod
    async def find_many(
        self,
        kind: EntityKind,
        criteria: Sequence[Criterion],
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Return entities matching ANY criterion."""
        ...

    async def find_first(
        self, kind: EntityKind, criteria: Sequence[Criterion]
    ) -> dict[str, Any] | None:
        """Return the first entity matching ANY criterion, or None."""
        rows = await self.find_many(kind, criteria, limit=1)
        return rows[0] if rows else None

    @abstractmethod
    async def create(self, kind: EntityKind, data: dict[str, Any]) -> dict[str, Any]:
        """Insert an entity.

        Raises:
            DuplicateKeyError: If a unique external id is already claimed.
        """
        ...

    @abstractmethod
    async def update(
        self, kind: EntityKind, entity_id: str, data: dict[str, Any]
    ) -> dict[str, Any]:
        """Apply a patch to one entity by internal id."""
        ...

    @abstractmethod
    async def update_many(
        self, kind: EntityKind, criteria: Sequence[Criterion], data: dict[str, Any]
    ) -> int:
        """Apply a patch to every entity matching ANY criterion; return the count."""
        ...

    @abstractmethod
    async def count(self, kind: EntityKind, criteria: Sequence[Criterion]) -> int:
        """Count entities matching ANY criterion."""
        ...


# ── SQLAlchemy Implementation ───────────────────────────────────────────────


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _row_to_dict(row: Any) -> dict[str, Any]:
    return {column.key: getattr(row, column.key) for column in row.__table__.columns}


class SqlAlchemyEntityStore(EntityStore):
    """EntityStore over the synchub SQLAlchemy models.

    Every write is a single committed transaction. ``ieq`` compares
    ``lower(column)``; ``icontains`` uses ILIKE with escaped wildcards.

    Args:
        session_factory: Async generator callable yielding AsyncSession
            (e.g. ``get_session``).
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncGenerator[AsyncSession, None]],
    ) -> None:
        self._session_factory = session_factory

    def _model(self, kind: EntityKind) -> Any:
        return MODEL_BY_KIND[kind]

    def _clause(self, model: Any, criterion: Criterion) -> Any:
        column = getattr(model, criterion.field)
        if criterion.op == "ieq":
            return func.lower(column) == str(criterion.value).lower()
        if criterion.op == "icontains":
            pattern = f"%{_escape_like(str(criterion.value))}%"
            return column.ilike(pattern, escape="\\")
        return column == criterion.value

    def _where(self, model: Any, criteria: Sequence[Criterion]) -> Any:
        if not criteria:
            raise ValueError("At least one criterion is required")
        return or_(*(self._clause(model, c) for c in criteria))

    def _clean(self, model: Any, data: dict[str, Any]) -> dict[str, Any]:
        columns = set(model.__table__.columns.keys())
        unknown = set(data) - columns
        if unknown:
            raise ValueError(f"Unknown {model.__tablename__} fields: {sorted(unknown)}")
        return {k: v for k, v in data.items() if k != "id"}

    async def find_many(
        self,
        kind: EntityKind,
        criteria: Sequence[Criterion],
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        model = self._model(kind)
        stmt = select(model).where(self._where(model, criteria)).order_by(model.created_at)
        if limit is not None:
            stmt = stmt.limit(limit)
        async for session in self._session_factory():
            result = await session.execute(stmt)
            return [_row_to_dict(row) for row in result.scalars().all()]
        return []

    async def create(self, kind: EntityKind, data: dict[str, Any]) -> dict[str, Any]:
        model = self._model(kind)
        row = model(**self._clean(model, data))
        async for session in self._session_factory():
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise DuplicateKeyError(
                    f"{model.__tablename__} external id already claimed: {exc.orig}"
                ) from exc
            await session.refresh(row)
            return _row_to_dict(row)
        raise RuntimeError("Session factory yielded no session")

    async def update(
        self, kind: EntityKind, entity_id: str, data: dict[str, Any]
    ) -> dict[str, Any]:
        model = self._model(kind)
        values = self._clean(model, data)
        async for session in self._session_factory():
            row = await session.get(model, entity_id)
            if row is None:
                raise LookupError(f"{model.__tablename__} {entity_id} not found")
            for field, value in values.items():
                setattr(row, field, value)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise DuplicateKeyError(
                    f"{model.__tablename__} external id already claimed: {exc.orig}"
                ) from exc
            await session.refresh(row)
            return _row_to_dict(row)
        raise RuntimeError("Session factory yielded no session")

    async def update_many(
        self, kind: EntityKind, criteria: Sequence[Criterion], data: dict[str, Any]
    ) -> int:
        model = self._model(kind)
        stmt = (
            update(model)
            .where(self._where(model, criteria))
            .values(**self._clean(model, data))
            .execution_options(synchronize_session=False)
        )
        async for session in self._session_factory():
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount or 0
        return 0

    async def count(self, kind: EntityKind, criteria: Sequence[Criterion]) -> int:
        model = self._model(kind)
        stmt = select(func.count()).select_from(model).where(self._where(model, criteria))
        async for session in self._session_factory():
            result = await session.execute(stmt)
            return int(result.scalar_one())
        return 0
