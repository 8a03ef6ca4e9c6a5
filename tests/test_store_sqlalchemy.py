"""Tests for SqlAlchemyEntityStore over an in-memory SQLite database.

Covers:
    - eq / ieq / icontains criteria, ORed together; LIKE wildcards are escaped
    - Unique external id collisions raise DuplicateKeyError
    - update of a missing row raises LookupError; unknown fields are rejected
    - update_many and count
    - EntityReconciler end to end against the SQL store
"""

from __future__ import annotations

from decimal import Decimal

import pytest

from src.synchub.core.errors import DuplicateKeyError
from src.synchub.sync.reconciler import EntityReconciler
from src.synchub.sync.schemas import (
    EntityKind,
    InboundAction,
    OutcomeAction,
    ReconcileContext,
    SyncSource,
)
from src.synchub.sync.store import Criterion, SqlAlchemyEntityStore

AGENT = EntityKind.AGENT


@pytest.fixture
def sql_store(sqlite_session_factory) -> SqlAlchemyEntityStore:
    return SqlAlchemyEntityStore(sqlite_session_factory)


# ── Queries ──────────────────────────────────────────────────────────────────


class TestCriteria:
    async def test_eq_matches_exact_value(self, sql_store) -> None:
        created = await sql_store.create(AGENT, {"rezen_id": "r-1", "name": "Jane Doe"})

        found = await sql_store.find_first(AGENT, [Criterion("rezen_id", "r-1")])

        assert found is not None
        assert found["id"] == created["id"]
        assert await sql_store.find_first(AGENT, [Criterion("rezen_id", "R-1")]) is None

    async def test_ieq_ignores_case(self, sql_store) -> None:
        await sql_store.create(AGENT, {"email": "Jane@Example.com"})

        rows = await sql_store.find_many(AGENT, [Criterion("email", "JANE@example.COM", "ieq")])

        assert len(rows) == 1

    async def test_icontains_escapes_wildcards(self, sql_store) -> None:
        await sql_store.create(AGENT, {"name": "Smith & Co"})
        await sql_store.create(AGENT, {"name": "100% Realty"})

        assert len(await sql_store.find_many(AGENT, [Criterion("name", "smith", "icontains")])) == 1
        assert len(await sql_store.find_many(AGENT, [Criterion("name", "0%", "icontains")])) == 1
        assert await sql_store.find_many(AGENT, [Criterion("name", "%", "icontains")]) != []
        assert await sql_store.find_many(AGENT, [Criterion("name", "_", "icontains")]) == []

    async def test_criteria_are_ored(self, sql_store) -> None:
        await sql_store.create(AGENT, {"rezen_id": "r-1"})
        await sql_store.create(AGENT, {"email": "b@example.com"})
        await sql_store.create(AGENT, {"name": "Unrelated"})

        criteria = [Criterion("rezen_id", "r-1"), Criterion("email", "b@example.com", "ieq")]

        assert len(await sql_store.find_many(AGENT, criteria)) == 2
        assert await sql_store.count(AGENT, criteria) == 2
        assert len(await sql_store.find_many(AGENT, criteria, limit=1)) == 1

    async def test_empty_criteria_rejected(self, sql_store) -> None:
        with pytest.raises(ValueError, match="At least one criterion"):
            await sql_store.find_many(AGENT, [])


# ── Writes ───────────────────────────────────────────────────────────────────


class TestWrites:
    async def test_create_applies_column_defaults(self, sql_store) -> None:
        row = await sql_store.create(AGENT, {"name": "Jane Doe", "team_cap_amount": Decimal("12000.50")})

        assert row["id"]
        assert row["status"] == "ACTIVE"
        assert row["director_type"] == "NONE"
        assert row["team_cap_amount"] == Decimal("12000.50")

    async def test_duplicate_external_id_raises(self, sql_store) -> None:
        await sql_store.create(AGENT, {"rezen_id": "r-1"})

        with pytest.raises(DuplicateKeyError):
            await sql_store.create(AGENT, {"rezen_id": "r-1", "name": "Second"})

        assert await sql_store.count(AGENT, [Criterion("rezen_id", "r-1")]) == 1

    async def test_update_patches_only_given_fields(self, sql_store) -> None:
        row = await sql_store.create(AGENT, {"rezen_id": "r-1", "name": "Jane", "email": "j@x.com"})

        updated = await sql_store.update(AGENT, row["id"], {"name": "Jane Doe"})

        assert updated["name"] == "Jane Doe"
        assert updated["email"] == "j@x.com"

    async def test_update_missing_row_raises_lookup_error(self, sql_store) -> None:
        with pytest.raises(LookupError, match="not found"):
            await sql_store.update(AGENT, "missing-id", {"name": "x"})

    async def test_unknown_field_rejected(self, sql_store) -> None:
        with pytest.raises(ValueError, match="Unknown agents fields"):
            await sql_store.create(AGENT, {"name": "Jane", "favourite_color": "blue"})

    async def test_update_many(self, sql_store) -> None:
        await sql_store.create(AGENT, {"rezen_id": "r-1", "status": "ACTIVE"})
        await sql_store.create(AGENT, {"rezen_id": "r-2", "status": "ACTIVE"})
        await sql_store.create(AGENT, {"rezen_id": "r-3", "status": "ACTIVE"})

        affected = await sql_store.update_many(
            AGENT,
            [Criterion("rezen_id", "r-1"), Criterion("rezen_id", "r-2")],
            {"status": "INACTIVE"},
        )

        assert affected == 2
        assert await sql_store.count(AGENT, [Criterion("status", "INACTIVE")]) == 2


# ── Reconciler Against SQL ───────────────────────────────────────────────────


class TestReconcilerOnSql:
    async def test_create_update_and_deactivate(self, sql_store) -> None:
        reconciler = EntityReconciler(AGENT, sql_store)
        rezen = ReconcileContext(source=SyncSource.REZEN)
        record = {"id": "r-1", "name": "Jane Doe", "email": "jane@example.com"}

        created = await reconciler.reconcile_record(record, rezen)
        updated = await reconciler.reconcile_record({**record, "name": "Jane Q. Doe"}, rezen)
        deleted = await reconciler.reconcile_record(
            {"rezenId": "r-1"},
            ReconcileContext(source=SyncSource.WEBHOOK, action=InboundAction.DELETE),
        )

        assert created.action == OutcomeAction.CREATED
        assert updated.action == OutcomeAction.UPDATED
        assert deleted.action == OutcomeAction.DEACTIVATED

        row = await sql_store.find_first(AGENT, [Criterion("rezen_id", "r-1")])
        assert row["id"] == created.entity_id
        assert row["name"] == "Jane Q. Doe"
        assert row["status"] == "INACTIVE"
        assert await sql_store.count(AGENT, [Criterion("rezen_id", "r-1")]) == 1
