"""Field translation tables from external records to local entity patches.

Defines:
- FieldMapping: ``(source_field, target_field, transform, key)`` tuple
- Value transforms (to_text, to_decimal, to_date, ...)
- One mapping table per (entity kind, source), built once at import
- mappings_for(): table lookup
- apply_mapping(): ExternalRecord -> patch dict

Conventions:
- ``source_field`` is a dotted path into the record (``address.oneLine``,
  ``participants.0.id``); ``"$"`` passes the whole record to the transform.
- Several mappings may feed the same target; the first non-empty value in
  table order wins.
- ``key=True`` marks external-id mappings. A delete maps only these.
- Targets prefixed ``ref:`` name a related entity lookup
  (``ref:agent.email``) resolved by the reconciler, never stored verbatim.
- Unknown source fields are ignored; unparseable numbers and dates map to None.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

from src.synchub.sync.lookups import (
    AGENT_STATUS,
    DIRECTION,
    DIRECTOR_TYPE,
    LISTING_LIFECYCLE_GROUP,
    LISTING_STAGE_LABEL,
    MEMBER_LEVEL,
    TRANSACTION_STAGE_LABEL,
    TRANSACTION_TYPE,
    ZOHO_PAYMENT_STATUS,
    broker_deal_type,
    quickbooks_bill_status,
    rezen_state_to_stage,
)
from src.synchub.sync.schemas import EntityKind, SyncSource

WHOLE_RECORD = "$"
REF_PREFIX = "ref:"

REZEN_LISTING_LINK = "https://bolt.therealbrokerage.com/listings/{}/detail"
REZEN_TRANSACTION_LINK = "https://bolt.therealbrokerage.com/transactions/{}/detail"


@dataclass(frozen=True)
class FieldMapping:
    """One source-path -> target-field translation."""

    source_field: str
    target_field: str
    transform: Callable[[Any], Any] | None = None
    key: bool = False


# ── Transforms ─────────────────────────────────────────────────────────────


def to_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, dict):
        value = value.get("name") or value.get("id")
        if value is None:
            return None
    text = str(value).strip()
    return text or None


def to_id(value: Any) -> str | None:
    """Stringify an external id (Zoho lookups arrive as ``{"id", "name"}``)."""
    if isinstance(value, dict):
        value = value.get("id")
    return to_text(value)


def to_email(value: Any) -> str | None:
    text = to_text(value)
    return text.lower() if text else None


def to_decimal(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, dict):
        value = value.get("amount")
        if value is None:
            return None
    try:
        result = Decimal(str(value).replace(",", "").replace("$", "").strip())
    except (InvalidOperation, ValueError):
        return None
    return result if result.is_finite() else None


def to_date(value: Any) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, (int, float)):
        # Epoch milliseconds (REZEN)
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc).date()
    text = str(value).strip()
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        return None


def to_participants(value: Any) -> list[dict[str, Any]] | None:
    """Snapshot of transaction participants, replaced wholesale on every sync."""
    if not isinstance(value, list):
        return None
    participants = []
    for item in value:
        if not isinstance(item, dict):
            continue
        participants.append({
            "rezen_id": to_id(item.get("id") or item.get("yentaId")),
            "name": to_text(item.get("name") or item.get("fullName")) or "Unknown",
            "email": to_email(item.get("email") or item.get("emailAddress")),
            "role": to_text(item.get("role") or item.get("participantRole")),
        })
    return participants


def _enum_value(lookup: Callable[[Any], Any]) -> Callable[[Any], Any]:
    def transform(value: Any) -> Any:
        member = lookup(value)
        return getattr(member, "value", member)

    return transform


def _link(template: str) -> Callable[[Any], str | None]:
    def transform(value: Any) -> str | None:
        ident = to_id(value)
        return template.format(ident) if ident else None

    return transform


# ── Agent Tables ───────────────────────────────────────────────────────────

AGENT_REZEN: tuple[FieldMapping, ...] = (
    FieldMapping("agent.id", "rezen_id", to_id, key=True),
    FieldMapping("id", "rezen_id", to_id, key=True),
    FieldMapping("agent.fullName", "name", to_text),
    FieldMapping("agent.displayName", "name", to_text),
    FieldMapping("name", "name", to_text),
    FieldMapping("agent.emailAddress", "email", to_email),
    FieldMapping("agent.email", "email", to_email),
    FieldMapping("email", "email", to_email),
    FieldMapping("agent.phoneNumber", "phone", to_text),
    FieldMapping("capInfo.teamCapAmount", "team_cap_amount", to_decimal),
    FieldMapping("capInfo.teamCapAmountPaid", "team_cap_amount_paid", to_decimal),
    FieldMapping("capInfo.brokerageCapAmount", "brokerage_cap_amount", to_decimal),
    FieldMapping("capInfo.brokerageCapAmountPaid", "brokerage_cap_amount_paid", to_decimal),
)

AGENT_ZOHO: tuple[FieldMapping, ...] = (
    FieldMapping("id", "zoho_id", to_id, key=True),
    FieldMapping("Name", "name", to_text),
    FieldMapping("Email", "email", to_email),
    FieldMapping("Phone", "phone", to_text),
    FieldMapping("Firm_Status", "status", _enum_value(AGENT_STATUS)),
    FieldMapping("Member_Level", "member_level", _enum_value(MEMBER_LEVEL)),
    FieldMapping("Director_Type", "director_type", _enum_value(DIRECTOR_TYPE)),
    FieldMapping("QB_Vendor_Number", "qb_vendor_id", to_id),
    FieldMapping("Rezen_ID", "rezen_id", to_id),
)

AGENT_WEBHOOK: tuple[FieldMapping, ...] = (
    FieldMapping("rezenId", "rezen_id", to_id, key=True),
    FieldMapping("yentaId", "rezen_id", to_id, key=True),
    FieldMapping("participantId", "rezen_id", to_id, key=True),
    FieldMapping("quickbooksId", "qb_vendor_id", to_id, key=True),
    FieldMapping("qbVendorNumber", "qb_vendor_id", to_id, key=True),
    FieldMapping("name", "name", to_text),
    FieldMapping("legalName", "name", to_text),
    FieldMapping("email", "email", to_email),
    FieldMapping("workEmail", "email", to_email),
    FieldMapping("phone", "phone", to_text),
    FieldMapping("cellPhone", "phone", to_text),
    FieldMapping("firmStatus", "status", _enum_value(AGENT_STATUS)),
    FieldMapping("status", "status", _enum_value(AGENT_STATUS)),
    FieldMapping("memberLevel", "member_level", _enum_value(MEMBER_LEVEL)),
    FieldMapping("licenseNumber", "license_number", to_text),
    FieldMapping("street", "street", to_text),
    FieldMapping("city", "city", to_text),
    FieldMapping("state", "state", to_text),
    FieldMapping("zipcode", "zipcode", to_text),
    FieldMapping("zip", "zipcode", to_text),
    FieldMapping("hireDate", "hire_date", to_date),
    FieldMapping("teamCapAmount", "team_cap_amount", to_decimal),
    FieldMapping("teamCapAmountPaid", "team_cap_amount_paid", to_decimal),
    FieldMapping("brokerageCapAmount", "brokerage_cap_amount", to_decimal),
    FieldMapping("brokerageCapAmountPaid", "brokerage_cap_amount_paid", to_decimal),
)


# ── Listing Tables ─────────────────────────────────────────────────────────

LISTING_REZEN: tuple[FieldMapping, ...] = (
    FieldMapping("id", "rezen_listing_id", to_id, key=True),
    FieldMapping("code", "rezen_code", to_id, key=True),
    FieldMapping("address.oneLine", "listing_name", to_text),
    FieldMapping("code", "listing_name", to_text),
    FieldMapping("listingPrice.amount", "listing_price", to_decimal),
    FieldMapping("price.amount", "listing_price", to_decimal),
    FieldMapping("lifecycleGroup", "stage", _enum_value(LISTING_LIFECYCLE_GROUP)),
    FieldMapping("address.street", "street_name", to_text),
    FieldMapping("address.city", "city", to_text),
    FieldMapping("address.state", "state", to_text),
    FieldMapping("address.zip", "zip_code", to_text),
    FieldMapping("address.zipCode", "zip_code", to_text),
    FieldMapping("address.county", "county", to_text),
    FieldMapping("listingDate", "listing_date", to_date),
    FieldMapping("listingExpirationDate", "expiration_date", to_date),
    FieldMapping("id", "rezen_listing_link", _link(REZEN_LISTING_LINK)),
    FieldMapping("participants.0.yentaId", "ref:agent.rezen_id", to_id),
    FieldMapping("participants.0.id", "ref:agent.rezen_id", to_id),
    FieldMapping("participants.0.emailAddress", "ref:agent.email", to_email),
    FieldMapping("participants.0.email", "ref:agent.email", to_email),
)

LISTING_ZOHO: tuple[FieldMapping, ...] = (
    FieldMapping("id", "zoho_id", to_id, key=True),
    FieldMapping("Name", "listing_name", to_text),
    FieldMapping("Listing_Price", "listing_price", to_decimal),
    FieldMapping("Stage", "stage", _enum_value(LISTING_STAGE_LABEL)),
    FieldMapping("MLS_Number", "mls_number", to_id),
    FieldMapping("Rezen_Listing_ID", "rezen_listing_id", to_id),
    FieldMapping("City", "city", to_text),
    FieldMapping("State", "state", to_text),
    FieldMapping("Zip_Code", "zip_code", to_text),
    FieldMapping("Listing_Date", "listing_date", to_date),
    FieldMapping("Expiration_Date", "expiration_date", to_date),
    FieldMapping("Agent.id", "ref:agent.zoho_id", to_id),
    FieldMapping("Agent.name", "ref:agent.name", to_text),
)

LISTING_WEBHOOK: tuple[FieldMapping, ...] = (
    FieldMapping("rezenListingId", "rezen_listing_id", to_id, key=True),
    FieldMapping("ssListingId", "rezen_listing_id", to_id, key=True),
    FieldMapping("rezenCode", "rezen_code", to_id, key=True),
    FieldMapping("ssListingGuid", "rezen_code", to_id, key=True),
    FieldMapping("mlsNumber", "mls_number", to_id, key=True),
    FieldMapping("listingName", "listing_name", to_text),
    FieldMapping("listingPrice", "listing_price", to_decimal),
    FieldMapping("stage", "stage", _enum_value(LISTING_STAGE_LABEL)),
    FieldMapping("status", "stage", _enum_value(LISTING_STAGE_LABEL)),
    FieldMapping("streetNo", "street_no", to_text),
    FieldMapping("streetName", "street_name", to_text),
    FieldMapping("direction", "direction", DIRECTION),
    FieldMapping("city", "city", to_text),
    FieldMapping("state", "state", to_text),
    FieldMapping("zipCode", "zip_code", to_text),
    FieldMapping("county", "county", to_text),
    FieldMapping("listingDate", "listing_date", to_date),
    FieldMapping("expirationDate", "expiration_date", to_date),
    FieldMapping("ssListingLink", "rezen_listing_link", to_text),
    FieldMapping("agentRezenId", "ref:agent.rezen_id", to_id),
    FieldMapping("agentEmail", "ref:agent.email", to_email),
)


# ── Transaction Tables ─────────────────────────────────────────────────────

TRANSACTION_REZEN: tuple[FieldMapping, ...] = (
    FieldMapping("id", "rezen_id", to_id, key=True),
    FieldMapping("code", "code", to_text),
    FieldMapping("address.oneLine", "name", to_text),
    FieldMapping("code", "name", to_text),
    FieldMapping("price.amount", "amount", to_decimal),
    FieldMapping("transactionType", "type", _enum_value(TRANSACTION_TYPE)),
    FieldMapping("transactionType", "broker_deal_type", _enum_value(broker_deal_type)),
    FieldMapping("lifecycleState.state", "stage", _enum_value(rezen_state_to_stage)),
    FieldMapping("lifecycleState.state", "lifecycle_state", to_text),
    FieldMapping("grossCommission.amount", "gross_commission_amount", to_decimal),
    FieldMapping("grossCommissionPercentage", "gross_commission_percentage", to_decimal),
    FieldMapping("contractAcceptanceDate", "contract_acceptance_date", to_date),
    FieldMapping("closingDateEstimated", "estimated_closing_date", to_date),
    FieldMapping("closingDateActual", "actual_closing_date", to_date),
    FieldMapping("address.street", "street", to_text),
    FieldMapping("address.city", "city", to_text),
    FieldMapping("address.state", "state", to_text),
    FieldMapping("address.zip", "zip_code", to_text),
    FieldMapping("address.zipCode", "zip_code", to_text),
    FieldMapping("address.county", "county", to_text),
    FieldMapping("office.name", "office_name", to_text),
    FieldMapping("cdPayer.fullName", "cd_payer_name", to_text),
    FieldMapping("cdPayerBusinessEntity.name", "cd_payer_business_entity", to_text),
    FieldMapping("id", "broker_transaction_link", _link(REZEN_TRANSACTION_LINK)),
    FieldMapping("participants", "participants", to_participants),
    FieldMapping("participants.0.yentaId", "ref:agent.rezen_id", to_id),
    FieldMapping("participants.0.id", "ref:agent.rezen_id", to_id),
    FieldMapping("participants.0.emailAddress", "ref:agent.email", to_email),
    FieldMapping("participants.0.email", "ref:agent.email", to_email),
)

TRANSACTION_ZOHO: tuple[FieldMapping, ...] = (
    FieldMapping("id", "zoho_id", to_id, key=True),
    FieldMapping("Deal_Name", "name", to_text),
    FieldMapping("Amount", "amount", to_decimal),
    FieldMapping("Stage", "stage", _enum_value(TRANSACTION_STAGE_LABEL)),
    FieldMapping("Type", "type", _enum_value(TRANSACTION_TYPE)),
    FieldMapping("Type", "broker_deal_type", _enum_value(broker_deal_type)),
    FieldMapping("Rezen_Transaction_ID", "rezen_id", to_id),
    FieldMapping("Closing_Date", "actual_closing_date", to_date),
    FieldMapping("Account_Name.id", "ref:agent.zoho_id", to_id),
    FieldMapping("Account_Name.name", "ref:agent.name", to_text),
)

TRANSACTION_WEBHOOK: tuple[FieldMapping, ...] = (
    FieldMapping("brokerTransactionId", "rezen_id", to_id, key=True),
    FieldMapping("id", "rezen_id", to_id, key=True),
    FieldMapping("brokerTransactionCode", "code", to_text),
    FieldMapping("code", "code", to_text),
    FieldMapping("transactionName", "name", to_text),
    FieldMapping("name", "name", to_text),
    FieldMapping("address", "name", to_text),
    FieldMapping("amount", "amount", to_decimal),
    FieldMapping("salePrice", "amount", to_decimal),
    FieldMapping("type", "type", _enum_value(TRANSACTION_TYPE)),
    FieldMapping("type", "broker_deal_type", _enum_value(broker_deal_type)),
    FieldMapping("stage", "stage", _enum_value(TRANSACTION_STAGE_LABEL)),
    FieldMapping("status", "stage", _enum_value(TRANSACTION_STAGE_LABEL)),
    FieldMapping("gci", "gross_commission_amount", to_decimal),
    FieldMapping("grossCommissionGCI", "gross_commission_amount", to_decimal),
    FieldMapping("commissionPct", "gross_commission_percentage", to_decimal),
    FieldMapping("contractAcceptanceDate", "contract_acceptance_date", to_date),
    FieldMapping("estimatedClosingDate", "estimated_closing_date", to_date),
    FieldMapping("actualClosingDate", "actual_closing_date", to_date),
    FieldMapping("office", "office_name", to_text),
    FieldMapping("payerName", "cd_payer_name", to_text),
    FieldMapping("payerCompany", "cd_payer_business_entity", to_text),
    FieldMapping("brokerTransactionLink", "broker_transaction_link", to_text),
    FieldMapping("participants", "participants", to_participants),
    FieldMapping("agentRezenId", "ref:agent.rezen_id", to_id),
    FieldMapping("agentEmail", "ref:agent.email", to_email),
)


# ── Commission Payment Tables ──────────────────────────────────────────────

PAYMENT_ZOHO: tuple[FieldMapping, ...] = (
    FieldMapping("id", "zoho_id", to_id, key=True),
    FieldMapping("Payment_Amount", "amount", to_decimal),
    FieldMapping("Payment_Status", "status", _enum_value(ZOHO_PAYMENT_STATUS)),
    FieldMapping("NLB_Payment_Type", "payment_type", to_text),
    FieldMapping("Payment_Date", "date_paid", to_date),
    FieldMapping("QB_Bill_ID", "qb_bill_id", to_id),
    FieldMapping("Notes", "notes", to_text),
    FieldMapping("Agent.id", "ref:agent.zoho_id", to_id),
    FieldMapping("Agent.name", "ref:agent.name", to_text),
    FieldMapping("Transaction.id", "ref:transaction.zoho_id", to_id),
)

PAYMENT_QUICKBOOKS: tuple[FieldMapping, ...] = (
    FieldMapping("Id", "qb_bill_id", to_id, key=True),
    FieldMapping("TotalAmt", "amount", to_decimal),
    FieldMapping(WHOLE_RECORD, "status", _enum_value(quickbooks_bill_status)),
    FieldMapping("PrivateNote", "notes", to_text),
    FieldMapping("VendorRef.value", "ref:agent.qb_vendor_id", to_id),
)


MAPPING_TABLES: dict[tuple[EntityKind, SyncSource], tuple[FieldMapping, ...]] = {
    (EntityKind.AGENT, SyncSource.REZEN): AGENT_REZEN,
    (EntityKind.AGENT, SyncSource.ZOHO): AGENT_ZOHO,
    (EntityKind.AGENT, SyncSource.WEBHOOK): AGENT_WEBHOOK,
    (EntityKind.LISTING, SyncSource.REZEN): LISTING_REZEN,
    (EntityKind.LISTING, SyncSource.ZOHO): LISTING_ZOHO,
    (EntityKind.LISTING, SyncSource.WEBHOOK): LISTING_WEBHOOK,
    (EntityKind.TRANSACTION, SyncSource.REZEN): TRANSACTION_REZEN,
    (EntityKind.TRANSACTION, SyncSource.ZOHO): TRANSACTION_ZOHO,
    (EntityKind.TRANSACTION, SyncSource.WEBHOOK): TRANSACTION_WEBHOOK,
    (EntityKind.COMMISSION_PAYMENT, SyncSource.ZOHO): PAYMENT_ZOHO,
    (EntityKind.COMMISSION_PAYMENT, SyncSource.QUICKBOOKS): PAYMENT_QUICKBOOKS,
}


# ── Mapping Functions ──────────────────────────────────────────────────────


def mappings_for(kind: EntityKind, source: SyncSource) -> tuple[FieldMapping, ...]:
    """Return the mapping table for an entity kind and source.

    Raises:
        KeyError: If the source does not feed this entity kind.
    """
    try:
        return MAPPING_TABLES[(kind, source)]
    except KeyError:
        raise KeyError(f"No field mapping for {kind.value} from {source.value}") from None


def get_path(record: Any, path: str) -> Any:
    """Resolve a dotted path (numeric segments index lists); None if absent."""
    if path == WHOLE_RECORD:
        return record
    current = record
    for segment in path.split("."):
        if isinstance(current, dict):
            current = current.get(segment)
        elif isinstance(current, list) and segment.isdigit():
            index = int(segment)
            current = current[index] if index < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == []


def apply_mapping(
    record: dict[str, Any],
    mappings: tuple[FieldMapping, ...],
    *,
    keys_only: bool = False,
) -> dict[str, Any]:
    """Translate an external record into a local patch.

    Args:
        record: ExternalRecord as fetched.
        mappings: Table from mappings_for().
        keys_only: Map only ``key=True`` entries (used for deletes).

    Returns:
        Dict of target field -> value, containing only non-empty values.
        ``ref:`` targets are included for the reconciler to resolve.
    """
    patch: dict[str, Any] = {}
    for mapping in mappings:
        if keys_only and not mapping.key:
            continue
        if not _is_empty(patch.get(mapping.target_field)):
            continue
        raw = get_path(record, mapping.source_field)
        if _is_empty(raw) and mapping.source_field != WHOLE_RECORD:
            continue
        value = mapping.transform(raw) if mapping.transform else raw
        if not _is_empty(value):
            patch[mapping.target_field] = value
    return patch


def key_fields(mappings: tuple[FieldMapping, ...]) -> tuple[str, ...]:
    """Distinct external-id target fields of a table, in table order."""
    seen: dict[str, None] = {}
    for mapping in mappings:
        if mapping.key:
            seen.setdefault(mapping.target_field, None)
    return tuple(seen)
