"""MatchKey resolution: find the local entity an external record refers to.

A MatchKey is an ordered chain of strategies, from most to least specific
(external id exact, then email, then name exact, then name substring). The
first strategy with exactly one candidate wins. A strategy with several
candidates is noted and the chain moves on; if nothing resolves uniquely the
result is AMBIGUOUS (some strategy had several hits) or NOT_FOUND. The
resolver never picks arbitrarily between candidates.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from src.synchub.sync.schemas import EntityKind
from src.synchub.sync.store import Criterion, EntityStore, MatchOp


class MatchStatus(str, Enum):
    MATCHED = "matched"
    NOT_FOUND = "not_found"
    AMBIGUOUS = "ambiguous"


@dataclass(frozen=True)
class MatchStrategy:
    """One lookup step: compare ``field`` of the patch against the store."""

    field: str
    op: MatchOp = "eq"

    @property
    def name(self) -> str:
        return f"{self.field}:{self.op}"


@dataclass
class MatchResult:
    status: MatchStatus
    entity: dict[str, Any] | None = None
    strategy: str | None = None
    ambiguous: list[str] = field(default_factory=list)

    @property
    def matched(self) -> bool:
        return self.status == MatchStatus.MATCHED


# ── Strategy Chains ────────────────────────────────────────────────────────

AGENT_MATCH_KEY: tuple[MatchStrategy, ...] = (
    MatchStrategy("rezen_id"),
    MatchStrategy("zoho_id"),
    MatchStrategy("qb_vendor_id"),
    MatchStrategy("email", "ieq"),
    MatchStrategy("name", "ieq"),
    MatchStrategy("name", "icontains"),
)

LISTING_MATCH_KEY: tuple[MatchStrategy, ...] = (
    MatchStrategy("rezen_listing_id"),
    MatchStrategy("rezen_code"),
    MatchStrategy("mls_number"),
    MatchStrategy("zoho_id"),
    MatchStrategy("listing_name", "ieq"),
)

TRANSACTION_MATCH_KEY: tuple[MatchStrategy, ...] = (
    MatchStrategy("rezen_id"),
    MatchStrategy("zoho_id"),
    MatchStrategy("qb_invoice_id"),
    MatchStrategy("code"),
)

PAYMENT_MATCH_KEY: tuple[MatchStrategy, ...] = (
    MatchStrategy("zoho_id"),
    MatchStrategy("qb_bill_id"),
)

MATCH_KEYS: dict[EntityKind, tuple[MatchStrategy, ...]] = {
    EntityKind.AGENT: AGENT_MATCH_KEY,
    EntityKind.LISTING: LISTING_MATCH_KEY,
    EntityKind.TRANSACTION: TRANSACTION_MATCH_KEY,
    EntityKind.COMMISSION_PAYMENT: PAYMENT_MATCH_KEY,
}


# ── Resolution ─────────────────────────────────────────────────────────────


async def resolve_match(
    store: EntityStore,
    kind: EntityKind,
    values: Mapping[str, Any],
    strategies: Sequence[MatchStrategy] | None = None,
) -> MatchResult:
    """Walk the strategy chain for ``kind`` against ``values``.

    Args:
        store: Entity store to query.
        kind: Entity kind being resolved.
        values: Local-field values (a mapped patch, or reference values).
        strategies: Override chain; defaults to MATCH_KEYS[kind].

    Returns:
        MatchResult with the unique entity, or NOT_FOUND / AMBIGUOUS.
    """
    chain = strategies if strategies is not None else MATCH_KEYS[kind]
    ambiguous: list[str] = []

    for strategy in chain:
        value = values.get(strategy.field)
        if value is None or value == "":
            continue
        candidates = await store.find_many(
            kind, [Criterion(strategy.field, value, strategy.op)], limit=2
        )
        if len(candidates) == 1:
            return MatchResult(
                status=MatchStatus.MATCHED,
                entity=candidates[0],
                strategy=strategy.name,
                ambiguous=ambiguous,
            )
        if len(candidates) > 1:
            ambiguous.append(strategy.name)

    if ambiguous:
        return MatchResult(status=MatchStatus.AMBIGUOUS, ambiguous=ambiguous)
    return MatchResult(status=MatchStatus.NOT_FOUND)
