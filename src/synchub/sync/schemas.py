"""Pydantic schemas and enums for reconciliation and sync runs.

Defines:
- Enums: EntityKind, SyncSource, InboundAction, SyncStatus, OutcomeAction,
  plus the local stage/status vocabularies (AgentStatus, MemberLevel,
  DirectorType, TransactionType, BrokerDealType, TransactionStage,
  ListingStage, PaymentStatus)
- ReconcileContext, RecordOutcome, RecordError, BatchResult
- SyncRunParams, SyncRunResult, SyncLogRead
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


# ── Sync Enums ──────────────────────────────────────────────────────────────


class EntityKind(str, Enum):
    """Local entity kinds the reconciler knows how to upsert."""

    AGENT = "agent"
    LISTING = "listing"
    TRANSACTION = "transaction"
    COMMISSION_PAYMENT = "commission_payment"


class SyncSource(str, Enum):
    """External system an inbound record came from."""

    REZEN = "rezen"
    ZOHO = "zoho"
    QUICKBOOKS = "quickbooks"
    WEBHOOK = "webhook"


class InboundAction(str, Enum):
    """What the external system says happened to the record."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class SyncStatus(str, Enum):
    """Sync log lifecycle: PENDING transitions exactly once to a terminal state."""

    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class OutcomeAction(str, Enum):
    """Per-record reconciliation result."""

    CREATED = "created"
    UPDATED = "updated"
    DEACTIVATED = "deactivated"
    SKIPPED = "skipped"


# ── Local Vocabularies ──────────────────────────────────────────────────────


class AgentStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    ONBOARDING = "ONBOARDING"
    OFFBOARDED = "OFFBOARDED"


class MemberLevel(str, Enum):
    ASSOCIATE = "ASSOCIATE"
    PARTNER = "PARTNER"
    SR_PARTNER = "SR_PARTNER"
    STAFF = "STAFF"


class DirectorType(str, Enum):
    NONE = "NONE"
    REGIONAL = "REGIONAL"
    BUSINESS_DEVELOPMENT = "BUSINESS_DEVELOPMENT"


class TransactionType(str, Enum):
    LISTING = "LISTING"
    PURCHASE = "PURCHASE"
    BOTH_PURCHASE_LISTING = "BOTH_PURCHASE_LISTING"
    LEASE_TENANT = "LEASE_TENANT"
    LEASE_LANDLORD = "LEASE_LANDLORD"
    BOTH_LEASE = "BOTH_LEASE"
    REFERRAL = "REFERRAL"
    BPO = "BPO"
    OTHER = "OTHER"


class BrokerDealType(str, Enum):
    SALE = "SALE"
    LEASE = "LEASE"


class TransactionStage(str, Enum):
    ACTIVE_LISTING = "ACTIVE_LISTING"
    NEW_ENTRY = "NEW_ENTRY"
    INCOMPLETE = "INCOMPLETE"
    PENDING = "PENDING"
    CLOSED = "CLOSED"
    CLOSED_ARCHIVED = "CLOSED_ARCHIVED"
    EXPIRED = "EXPIRED"
    CANCELED_PEND = "CANCELED_PEND"
    CANCELED_APP = "CANCELED_APP"


class ListingStage(str, Enum):
    ACTIVE_LISTING = "ACTIVE_LISTING"
    PENDING = "PENDING"
    CLOSED = "CLOSED"
    EXPIRED = "EXPIRED"
    CANCELED = "CANCELED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    CANCELLED = "CANCELLED"


# ── Reconciliation Payloads ─────────────────────────────────────────────────


class ReconcileContext(BaseModel):
    """Where a batch of records came from and what happened to them upstream."""

    source: SyncSource
    action: InboundAction = InboundAction.UPDATE
    run_id: str | None = None


class RecordOutcome(BaseModel):
    """Result of reconciling one external record.

    ``external_id`` is set by outbound pushes to the id the target system
    returned.
    """

    action: OutcomeAction
    key: str | None = None
    entity_id: str | None = None
    affected: int = 0
    reason: str | None = None
    error: str | None = None
    external_id: str | None = None


class RecordError(BaseModel):
    """Identifying key of a failed record plus the error message."""

    key: str
    error: str


class BatchResult(BaseModel):
    """Aggregate counts for a reconciled batch.

    ``total/created/updated/skipped/errors`` is the contract route handlers
    and scripts depend on. Deactivations count as updates. ``skips`` lists
    skipped records that are not errors (e.g. a delete with no match).
    """

    total: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: list[RecordError] = Field(default_factory=list)
    skips: list[RecordError] = Field(default_factory=list)

    def record(self, outcome: RecordOutcome) -> None:
        """Fold one record outcome into the counters."""
        self.total += 1
        if outcome.action == OutcomeAction.CREATED:
            self.created += 1
        elif outcome.action in (OutcomeAction.UPDATED, OutcomeAction.DEACTIVATED):
            self.updated += 1
        else:
            self.skipped += 1
            key = outcome.key or "unknown"
            if outcome.error:
                self.errors.append(RecordError(key=key, error=outcome.error))
            elif outcome.reason:
                self.skips.append(RecordError(key=key, error=outcome.reason))

    def merge(self, other: BatchResult) -> None:
        """Add another batch's counters into this one."""
        self.total += other.total
        self.created += other.created
        self.updated += other.updated
        self.skipped += other.skipped
        self.errors.extend(other.errors)
        self.skips.extend(other.skips)


# ── Sync Runs ───────────────────────────────────────────────────────────────


class SyncRunParams(BaseModel):
    """Run-time parameters for one sync run.

    ``batch_size`` and ``batch_delay_seconds`` override the orchestrator
    defaults; they are the backpressure knobs against rate-limited upstreams.
    """

    source: SyncSource
    filters: dict[str, Any] = Field(default_factory=dict)
    fetch_details: bool = True
    batch_size: int | None = Field(default=None, ge=1)
    batch_delay_seconds: float | None = Field(default=None, ge=0)
    deadline_seconds: float | None = Field(default=None, gt=0)
    max_pages: int | None = Field(default=None, ge=1)


class SyncRunResult(BaseModel):
    """Structured outcome of a sync run (also persisted in the log payload)."""

    log_id: str
    status: SyncStatus
    total: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: list[RecordError] = Field(default_factory=list)
    interrupted: bool = False
    duration_ms: int = 0
    error: str | None = None


class SyncLogRead(BaseModel):
    """Read model for a sync log entry."""

    id: str
    source: str
    entity_type: str
    action: str
    status: SyncStatus
    payload: dict[str, Any] = Field(default_factory=dict)
    error_message: str | None = None
    created_at: datetime
    completed_at: datetime | None = None
