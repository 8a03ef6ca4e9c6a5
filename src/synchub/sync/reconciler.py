"""Entity reconciler: decide create / update / deactivate / skip per external record.

One EntityReconciler exists per entity kind. For each record it:
1. Maps the record through the (kind, source) field table.
2. Resolves ``ref:`` lookups into agent_id / transaction_id (unresolved
   references leave the foreign key unset; they never fail the record).
3. Walks the MatchKey chain. A unique hit is updated, no hit is created,
   an ambiguous result is skipped with a MappingError.
4. For ``delete`` actions, deactivates every entity claiming the record's
   external ids instead (zero matches is a no-op skip, not an error).

Inserts that collide on a unique external id (a concurrent writer claimed
it between lookup and insert) are turned into an update of the claiming
entity, so one external id never maps to two local entities.

reconcile_batch() isolates records: an exception on one record is counted
as skipped with its key and message in ``errors`` and the batch continues.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

import structlog

from src.synchub.core.errors import DuplicateKeyError, MappingError
from src.synchub.sync.field_mapping import REF_PREFIX, apply_mapping, key_fields, mappings_for
from src.synchub.sync.matching import (
    MATCH_KEYS,
    MatchStatus,
    MatchStrategy,
    resolve_match,
)
from src.synchub.sync.schemas import (
    AgentStatus,
    BatchResult,
    EntityKind,
    InboundAction,
    ListingStage,
    OutcomeAction,
    PaymentStatus,
    ReconcileContext,
    RecordOutcome,
    SyncSource,
    TransactionStage,
)
from src.synchub.sync.store import Criterion, EntityStore

logger = structlog.get_logger(__name__)

DEACTIVATION_PATCHES: dict[EntityKind, dict[str, Any]] = {
    EntityKind.AGENT: {"status": AgentStatus.INACTIVE.value},
    EntityKind.LISTING: {"stage": ListingStage.CANCELED.value},
    EntityKind.TRANSACTION: {"stage": TransactionStage.CANCELED_APP.value},
    EntityKind.COMMISSION_PAYMENT: {"status": PaymentStatus.CANCELLED.value},
}


class EntityReconciler:
    """Reconciles external records of one entity kind into the local store.

    Args:
        kind: Entity kind this reconciler owns.
        store: Persistent store boundary.
        match_key: Override MatchKey chain (defaults to MATCH_KEYS[kind]).
    """

    def __init__(
        self,
        kind: EntityKind,
        store: EntityStore,
        match_key: tuple[MatchStrategy, ...] | None = None,
    ) -> None:
        self._kind = kind
        self._store = store
        self._match_key = match_key if match_key is not None else MATCH_KEYS[kind]

    @property
    def kind(self) -> EntityKind:
        return self._kind

    def _mappings(self, source: SyncSource) -> tuple:
        try:
            return mappings_for(self._kind, source)
        except KeyError as exc:
            raise MappingError(str(exc.args[0])) from exc

    def external_key(self, record: dict[str, Any], source: SyncSource) -> str | None:
        """First external id found in the record, used to label outcomes and errors."""
        try:
            keys = apply_mapping(record, self._mappings(source), keys_only=True)
        except MappingError:
            return None
        return next((str(v) for v in keys.values()), None)

    # ── Record Level ────────────────────────────────────────────────────────

    async def reconcile_record(
        self, record: dict[str, Any], context: ReconcileContext
    ) -> RecordOutcome:
        """Reconcile one record.

        Raises:
            MappingError: Record unmappable, lacks identifying data, or its
                match is ambiguous.
            DuplicateKeyError: Insert collided and the claimant could not
                be resolved.
        """
        if context.action == InboundAction.DELETE:
            return await self._deactivate(record, context)

        mappings = self._mappings(context.source)
        patch = apply_mapping(record, mappings)
        refs = {k: patch.pop(k) for k in list(patch) if k.startswith(REF_PREFIX)}
        key = next((str(patch[f]) for f in key_fields(mappings) if patch.get(f)), None)

        if not any(patch.get(s.field) for s in self._match_key):
            raise MappingError("missing identifying data (no external id, name or email)")

        patch.update(await self._resolve_references(refs))

        match = await resolve_match(self._store, self._kind, patch, self._match_key)
        label = key or self._label(patch)

        if match.status == MatchStatus.AMBIGUOUS:
            raise MappingError(
                f"ambiguous match on {', '.join(match.ambiguous)}; not found uniquely"
            )

        if match.matched and match.entity is not None:
            entity = await self._store.update(self._kind, match.entity["id"], patch)
            logger.debug(
                "reconciler.updated",
                kind=self._kind.value,
                key=label,
                entity_id=entity["id"],
                strategy=match.strategy,
            )
            return RecordOutcome(action=OutcomeAction.UPDATED, key=label, entity_id=entity["id"])

        try:
            entity = await self._store.create(self._kind, patch)
        except DuplicateKeyError:
            entity = await self._update_claimant(patch, mappings)
            return RecordOutcome(action=OutcomeAction.UPDATED, key=label, entity_id=entity["id"])

        logger.debug("reconciler.created", kind=self._kind.value, key=label, entity_id=entity["id"])
        return RecordOutcome(action=OutcomeAction.CREATED, key=label, entity_id=entity["id"])

    async def _deactivate(
        self, record: dict[str, Any], context: ReconcileContext
    ) -> RecordOutcome:
        keys = apply_mapping(record, self._mappings(context.source), keys_only=True)
        if not keys:
            raise MappingError("delete event carries no external id")

        criteria = [Criterion(field, value) for field, value in keys.items()]
        label = str(next(iter(keys.values())))
        affected = await self._store.update_many(
            self._kind, criteria, DEACTIVATION_PATCHES[self._kind]
        )
        if affected == 0:
            return RecordOutcome(
                action=OutcomeAction.SKIPPED, key=label, reason="no matching entity to deactivate"
            )

        logger.info(
            "reconciler.deactivated",
            kind=self._kind.value,
            key=label,
            affected=affected,
        )
        return RecordOutcome(action=OutcomeAction.DEACTIVATED, key=label, affected=affected)

    async def _update_claimant(
        self, patch: dict[str, Any], mappings: tuple
    ) -> dict[str, Any]:
        """Update the entity that already claims one of the patch's external ids."""
        key_chain = tuple(MatchStrategy(f) for f in key_fields(mappings))
        match = await resolve_match(self._store, self._kind, patch, key_chain)
        if not match.matched or match.entity is None:
            raise DuplicateKeyError("insert collided on an external id but no unique claimant found")
        logger.info(
            "reconciler.duplicate_key_converted_to_update",
            kind=self._kind.value,
            entity_id=match.entity["id"],
        )
        return await self._store.update(self._kind, match.entity["id"], patch)

    async def _resolve_references(self, refs: dict[str, Any]) -> dict[str, Any]:
        """Turn ``ref:<kind>.<field>`` values into ``<kind>_id`` foreign keys."""
        grouped: dict[str, dict[str, Any]] = {}
        for target, value in refs.items():
            ref_kind, _, field = target[len(REF_PREFIX):].partition(".")
            grouped.setdefault(ref_kind, {})[field] = value

        resolved: dict[str, Any] = {}
        for ref_kind, values in grouped.items():
            kind = EntityKind(ref_kind)
            match = await resolve_match(self._store, kind, values)
            if match.matched and match.entity is not None:
                resolved[f"{ref_kind}_id"] = match.entity["id"]
            else:
                logger.debug(
                    "reconciler.reference_unresolved",
                    kind=self._kind.value,
                    ref_kind=ref_kind,
                    status=match.status.value,
                )
        return resolved

    @staticmethod
    def _label(patch: dict[str, Any]) -> str | None:
        for field in ("email", "name", "listing_name", "code"):
            if patch.get(field):
                return str(patch[field])
        return None

    # ── Batch Level ─────────────────────────────────────────────────────────

    async def reconcile_isolated(
        self, record: dict[str, Any], context: ReconcileContext
    ) -> RecordOutcome:
        """reconcile_record() with every failure downgraded to a skipped outcome."""
        try:
            return await self.reconcile_record(record, context)
        except Exception as exc:
            key = self.external_key(record, context.source) or "unknown"
            logger.error(
                "reconciler.record_failed",
                kind=self._kind.value,
                source=context.source.value,
                action=context.action.value,
                key=key,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return RecordOutcome(action=OutcomeAction.SKIPPED, key=key, error=str(exc))

    async def reconcile_batch(
        self, records: Iterable[dict[str, Any]], context: ReconcileContext
    ) -> BatchResult:
        """Reconcile records in order and return aggregate counts.

        Records are applied sequentially so later records in the batch see
        entities created by earlier ones.
        """
        result = BatchResult()
        for record in records:
            result.record(await self.reconcile_isolated(record, context))

        logger.info(
            "reconciler.batch_complete",
            kind=self._kind.value,
            source=context.source.value,
            run_id=context.run_id,
            total=result.total,
            created=result.created,
            updated=result.updated,
            skipped=result.skipped,
            errors=len(result.errors),
        )
        return result
