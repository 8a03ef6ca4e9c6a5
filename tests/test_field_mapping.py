"""Tests for field mapping tables, value transforms and enum lookups.

Pure functions, no doubles needed.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from src.synchub.sync.field_mapping import (
    AGENT_REZEN,
    AGENT_WEBHOOK,
    PAYMENT_QUICKBOOKS,
    TRANSACTION_REZEN,
    apply_mapping,
    get_path,
    key_fields,
    mappings_for,
    to_date,
    to_decimal,
    to_email,
    to_id,
)
from src.synchub.sync.lookups import (
    AGENT_STATUS,
    DIRECTOR_TYPE,
    LISTING_STAGE_LABEL,
    MEMBER_LEVEL,
    TRANSACTION_TYPE,
    broker_deal_type,
    quickbooks_bill_status,
    rezen_state_to_stage,
)
from src.synchub.sync.schemas import (
    AgentStatus,
    BrokerDealType,
    DirectorType,
    EntityKind,
    ListingStage,
    MemberLevel,
    PaymentStatus,
    SyncSource,
    TransactionStage,
    TransactionType,
)


# ── Enum Lookups ─────────────────────────────────────────────────────────────


class TestEnumLookups:
    def test_director_type_known_labels(self) -> None:
        assert DIRECTOR_TYPE("Regional Director") == DirectorType.REGIONAL
        assert DIRECTOR_TYPE("  regional DIRECTOR ") == DirectorType.REGIONAL
        assert DIRECTOR_TYPE("BDD") == DirectorType.BUSINESS_DEVELOPMENT

    def test_director_type_defaults_to_none_member(self) -> None:
        assert DIRECTOR_TYPE("Vice President") == DirectorType.NONE
        assert DIRECTOR_TYPE(None) == DirectorType.NONE
        assert DIRECTOR_TYPE("") == DirectorType.NONE

    def test_member_level(self) -> None:
        assert MEMBER_LEVEL("Sr. Partner") == MemberLevel.SR_PARTNER
        assert MEMBER_LEVEL("Partner") == MemberLevel.PARTNER
        assert MEMBER_LEVEL("Intern") == MemberLevel.ASSOCIATE

    def test_agent_status_default_is_active(self) -> None:
        assert AGENT_STATUS("Inactive") == AgentStatus.INACTIVE
        assert AGENT_STATUS("something new") == AgentStatus.ACTIVE

    def test_transaction_type_and_deal_type(self) -> None:
        assert TRANSACTION_TYPE("Lease Tenant") == TransactionType.LEASE_TENANT
        assert TRANSACTION_TYPE("Auction") == TransactionType.OTHER
        assert broker_deal_type("Lease Landlord") == BrokerDealType.LEASE
        assert broker_deal_type("Purchase") == BrokerDealType.SALE
        assert broker_deal_type(None) == BrokerDealType.SALE

    def test_listing_stage_label(self) -> None:
        assert LISTING_STAGE_LABEL("Canceled/App") == ListingStage.CANCELED
        assert LISTING_STAGE_LABEL("Coming soon") == ListingStage.ACTIVE_LISTING

    @pytest.mark.parametrize(
        ("state", "stage"),
        [
            ("SETTLED", TransactionStage.CLOSED),
            ("terminated", TransactionStage.CANCELED_APP),
            ("TERMINATION_REQUESTED", TransactionStage.CANCELED_PEND),
            ("COMMISSION_DOCUMENT_SENT", TransactionStage.PENDING),
            ("LISTING_ACTIVE", TransactionStage.ACTIVE_LISTING),
            ("LISTING_IN_CONTRACT", TransactionStage.PENDING),
            # Partial match takes the first fitting key in table order
            ("LISTING", TransactionStage.ACTIVE_LISTING),
            ("MYSTERY_STATE", TransactionStage.NEW_ENTRY),
            (None, TransactionStage.NEW_ENTRY),
        ],
    )
    def test_rezen_state_to_stage(self, state, stage) -> None:
        assert rezen_state_to_stage(state) == stage

    def test_quickbooks_bill_status(self) -> None:
        assert quickbooks_bill_status({"Balance": 0}) == PaymentStatus.PAID
        assert quickbooks_bill_status({"Balance": "125.00"}) == PaymentStatus.PENDING
        assert quickbooks_bill_status({"Balance": 100, "TxnStatus": "Voided"}) == PaymentStatus.CANCELLED
        assert quickbooks_bill_status({}) == PaymentStatus.PENDING
        assert quickbooks_bill_status("not a bill") == PaymentStatus.PENDING


# ── Transforms ───────────────────────────────────────────────────────────────


class TestTransforms:
    def test_to_decimal(self) -> None:
        assert to_decimal("$12,500.50") == Decimal("12500.50")
        assert to_decimal({"amount": 99.5, "currency": "USD"}) == Decimal("99.5")
        assert to_decimal("n/a") is None
        assert to_decimal(True) is None
        assert to_decimal("NaN") is None

    def test_to_date(self) -> None:
        assert to_date(1_700_000_000_000) == date(2023, 11, 14)
        assert to_date("2024-05-01T10:30:00Z") == date(2024, 5, 1)
        assert to_date("someday") is None
        assert to_date("") is None

    def test_to_id_and_email(self) -> None:
        assert to_id({"id": 12345, "name": "Jane"}) == "12345"
        assert to_id(987) == "987"
        assert to_email("  Jane@Example.COM ") == "jane@example.com"
        assert to_email("   ") is None


# ── Paths And Mapping ────────────────────────────────────────────────────────


class TestApplyMapping:
    def test_get_path(self) -> None:
        record = {"agent": {"id": "a-1"}, "participants": [{"id": "p-1"}]}
        assert get_path(record, "agent.id") == "a-1"
        assert get_path(record, "participants.0.id") == "p-1"
        assert get_path(record, "participants.3.id") is None
        assert get_path(record, "agent.missing.deeper") is None
        assert get_path(record, "$") is record

    def test_agent_from_rezen(self) -> None:
        record = {
            "agent": {"id": 42, "fullName": " Jane Doe ", "emailAddress": "Jane@Example.COM"},
            "capInfo": {"teamCapAmount": "12,000", "teamCapAmountPaid": 4000},
            "unrelated": "ignored",
        }
        patch = apply_mapping(record, AGENT_REZEN)

        assert patch == {
            "rezen_id": "42",
            "name": "Jane Doe",
            "email": "jane@example.com",
            "team_cap_amount": Decimal("12000"),
            "team_cap_amount_paid": Decimal("4000"),
        }

    def test_first_non_empty_source_wins(self) -> None:
        patch = apply_mapping({"agent": {"fullName": ""}, "name": "Fallback Name"}, AGENT_REZEN)
        assert patch["name"] == "Fallback Name"

    def test_keys_only_maps_external_ids(self) -> None:
        record = {"rezenId": "r-1", "qbVendorNumber": 77, "name": "Jane", "email": "j@x.com"}
        assert apply_mapping(record, AGENT_WEBHOOK, keys_only=True) == {
            "rezen_id": "r-1",
            "qb_vendor_id": "77",
        }

    def test_transaction_from_rezen(self) -> None:
        record = {
            "id": "t-1",
            "code": "ABC-123",
            "price": {"amount": 500000, "currency": "USD"},
            "transactionType": "Purchase",
            "lifecycleState": {"state": "SETTLED"},
            "participants": [
                {"yentaId": "a-1", "fullName": "Jane Doe", "emailAddress": "Jane@X.com", "role": "BUYERS_AGENT"},
            ],
        }
        patch = apply_mapping(record, TRANSACTION_REZEN)

        assert patch["rezen_id"] == "t-1"
        assert patch["code"] == "ABC-123"
        assert patch["name"] == "ABC-123"
        assert patch["amount"] == Decimal("500000")
        assert patch["type"] == TransactionType.PURCHASE.value
        assert patch["broker_deal_type"] == BrokerDealType.SALE.value
        assert patch["stage"] == TransactionStage.CLOSED.value
        assert patch["lifecycle_state"] == "SETTLED"
        assert patch["broker_transaction_link"].endswith("/transactions/t-1/detail")
        assert patch["participants"] == [
            {"rezen_id": "a-1", "name": "Jane Doe", "email": "jane@x.com", "role": "BUYERS_AGENT"}
        ]
        assert patch["ref:agent.rezen_id"] == "a-1"
        assert patch["ref:agent.email"] == "jane@x.com"

    def test_quickbooks_bill_uses_whole_record_for_status(self) -> None:
        bill = {"Id": "b-9", "TotalAmt": 250.5, "Balance": 0, "VendorRef": {"value": "56"}}
        patch = apply_mapping(bill, PAYMENT_QUICKBOOKS)

        assert patch == {
            "qb_bill_id": "b-9",
            "amount": Decimal("250.5"),
            "status": PaymentStatus.PAID.value,
            "ref:agent.qb_vendor_id": "56",
        }

    def test_key_fields(self) -> None:
        assert key_fields(mappings_for(EntityKind.LISTING, SyncSource.REZEN)) == (
            "rezen_listing_id",
            "rezen_code",
        )

    def test_unmapped_pair_raises_key_error(self) -> None:
        with pytest.raises(KeyError, match="No field mapping for commission_payment from rezen"):
            mappings_for(EntityKind.COMMISSION_PAYMENT, SyncSource.REZEN)
