"""Enum decoding tables for external status/stage vocabularies.

Every decoder maps free-form upstream text onto a local enum member and has
one documented default for anything it does not recognize -- unknown values
are never errors. Input is trimmed and case-folded before lookup.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Generic, TypeVar

from src.synchub.sync.schemas import (
    AgentStatus,
    BrokerDealType,
    DirectorType,
    ListingStage,
    MemberLevel,
    PaymentStatus,
    TransactionStage,
    TransactionType,
)

T = TypeVar("T")


def _normalize(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip().casefold()


@dataclass(frozen=True)
class EnumLookup(Generic[T]):
    """Explicit lookup table with a default branch.

    Args:
        table: Normalized (lowercase, trimmed) source value -> enum member.
        default: Returned for empty or unrecognized input.
    """

    table: dict[str, T]
    default: T | None

    def __call__(self, value: Any) -> T | None:
        if isinstance(value, Enum):
            value = value.value
        return self.table.get(_normalize(value), self.default)


# ── Agents ──────────────────────────────────────────────────────────────────

AGENT_STATUS = EnumLookup(
    {
        "active": AgentStatus.ACTIVE,
        "inactive": AgentStatus.INACTIVE,
        "onboarding": AgentStatus.ONBOARDING,
        "offboarded": AgentStatus.OFFBOARDED,
    },
    default=AgentStatus.ACTIVE,
)

MEMBER_LEVEL = EnumLookup(
    {
        "associate": MemberLevel.ASSOCIATE,
        "partner": MemberLevel.PARTNER,
        "sr. partner": MemberLevel.SR_PARTNER,
        "sr partner": MemberLevel.SR_PARTNER,
        "senior partner": MemberLevel.SR_PARTNER,
        "staff": MemberLevel.STAFF,
    },
    default=MemberLevel.ASSOCIATE,
)

DIRECTOR_TYPE = EnumLookup(
    {
        "regional director": DirectorType.REGIONAL,
        "regional": DirectorType.REGIONAL,
        "business development director": DirectorType.BUSINESS_DEVELOPMENT,
        "business dev director": DirectorType.BUSINESS_DEVELOPMENT,
        "bdd": DirectorType.BUSINESS_DEVELOPMENT,
        "none": DirectorType.NONE,
        "-none-": DirectorType.NONE,
    },
    default=DirectorType.NONE,
)


# ── Transactions ────────────────────────────────────────────────────────────

TRANSACTION_TYPE = EnumLookup(
    {
        "listing": TransactionType.LISTING,
        "purchase": TransactionType.PURCHASE,
        "both purchase & listing": TransactionType.BOTH_PURCHASE_LISTING,
        "lease tenant": TransactionType.LEASE_TENANT,
        "lease landlord": TransactionType.LEASE_LANDLORD,
        "both lease tenant & landlord": TransactionType.BOTH_LEASE,
        "referral": TransactionType.REFERRAL,
        "bpo": TransactionType.BPO,
    },
    default=TransactionType.OTHER,
)


def broker_deal_type(transaction_type: Any) -> BrokerDealType:
    """LEASE for any lease-flavoured transaction type, otherwise SALE."""
    return BrokerDealType.LEASE if "lease" in _normalize(transaction_type) else BrokerDealType.SALE


TRANSACTION_STAGE_LABEL = EnumLookup(
    {
        "active listing": TransactionStage.ACTIVE_LISTING,
        "new entry": TransactionStage.NEW_ENTRY,
        "incomplete": TransactionStage.INCOMPLETE,
        "pending": TransactionStage.PENDING,
        "closed": TransactionStage.CLOSED,
        "closed (archived)": TransactionStage.CLOSED_ARCHIVED,
        "expired": TransactionStage.EXPIRED,
        "canceled/pend": TransactionStage.CANCELED_PEND,
        "canceled/app": TransactionStage.CANCELED_APP,
    },
    default=TransactionStage.NEW_ENTRY,
)

# REZEN lifecycle states, keyed upper-case as REZEN sends them. Order matters:
# partial matches take the first key that fits.
REZEN_STATE_MAP: dict[str, TransactionStage] = {
    "NEW": TransactionStage.NEW_ENTRY,
    "CALCULATE_LEDGER": TransactionStage.PENDING,
    "NEEDS_COMMISSION_VALIDATION": TransactionStage.PENDING,
    "COMMISSION_VALIDATED": TransactionStage.PENDING,
    "READY_FOR_COMMISSION_DOCUMENT_GENERATION": TransactionStage.PENDING,
    "COMMISSION_DOCUMENT_GENERATED": TransactionStage.PENDING,
    "COMMISSION_DOCUMENT_APPROVED": TransactionStage.PENDING,
    "COMMISSION_DOCUMENT_SENT": TransactionStage.PENDING,
    "APPROVED_FOR_CLOSING": TransactionStage.PENDING,
    "CLOSED, WAITING_ON_PAYMENT": TransactionStage.PENDING,
    "PAYMENT_ACCEPTED": TransactionStage.PENDING,
    "PAYMENT_SCHEDULED": TransactionStage.PENDING,
    "SETTLED": TransactionStage.CLOSED,
    "TERMINATION_REQUESTED": TransactionStage.CANCELED_PEND,
    "TERMINATED": TransactionStage.CANCELED_APP,
    "LISTING_ACTIVE": TransactionStage.ACTIVE_LISTING,
    "LISTING_IN_CONTRACT": TransactionStage.PENDING,
    "LISTING_CLOSED": TransactionStage.CLOSED,
}


def rezen_state_to_stage(state: Any) -> TransactionStage:
    """Map a REZEN lifecycle state to a local transaction stage.

    Exact match first, then the first table key contained in (or containing)
    the state, then NEW_ENTRY.
    """
    if not state:
        return TransactionStage.NEW_ENTRY
    normalized = str(state).strip().upper()
    if normalized in REZEN_STATE_MAP:
        return REZEN_STATE_MAP[normalized]
    for key, stage in REZEN_STATE_MAP.items():
        if key in normalized or normalized in key:
            return stage
    return TransactionStage.NEW_ENTRY


# ── Listings ────────────────────────────────────────────────────────────────

LISTING_STAGE_LABEL = EnumLookup(
    {
        "active listing": ListingStage.ACTIVE_LISTING,
        "active": ListingStage.ACTIVE_LISTING,
        "pending": ListingStage.PENDING,
        "closed": ListingStage.CLOSED,
        "expired": ListingStage.EXPIRED,
        "canceled": ListingStage.CANCELED,
        "canceled/app": ListingStage.CANCELED,
    },
    default=ListingStage.ACTIVE_LISTING,
)

LISTING_LIFECYCLE_GROUP = EnumLookup(
    {
        "open": ListingStage.ACTIVE_LISTING,
        "closed": ListingStage.CLOSED,
        "terminated": ListingStage.CANCELED,
    },
    default=ListingStage.ACTIVE_LISTING,
)

DIRECTION = EnumLookup(
    {d: d.upper() for d in ("n", "s", "e", "w", "ne", "nw", "se", "sw")},
    default=None,
)


# ── Commission Payments ─────────────────────────────────────────────────────

ZOHO_PAYMENT_STATUS = EnumLookup(
    {
        "paid": PaymentStatus.PAID,
        "unpaid": PaymentStatus.PENDING,
        "void": PaymentStatus.CANCELLED,
        "-none-": PaymentStatus.PENDING,
    },
    default=PaymentStatus.PENDING,
)


def quickbooks_bill_status(bill: Any) -> PaymentStatus:
    """Derive payment status from a QuickBooks Bill.

    Voided bills are CANCELLED; a bill whose Balance is zero or less is PAID;
    anything else (including an unparseable balance) is PENDING.
    """
    if not isinstance(bill, dict):
        return PaymentStatus.PENDING
    if _normalize(bill.get("TxnStatus")) in ("voided", "void"):
        return PaymentStatus.CANCELLED
    try:
        balance = Decimal(str(bill.get("Balance")))
    except (InvalidOperation, ValueError):
        return PaymentStatus.PENDING
    return PaymentStatus.PAID if balance <= 0 else PaymentStatus.PENDING
