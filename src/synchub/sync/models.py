"""Persistence models for reconciled entities and the sync audit log.

Five SQLAlchemy models on the shared declarative Base:
- AgentModel: Brokerage agents (REZEN / Zoho member / QuickBooks vendor)
- ListingModel: Listings (REZEN listing transactions, Zoho listings, MLS)
- TransactionModel: Transactions with a replace-on-sync participants JSON list
- CommissionPaymentModel: Agent commission payments (Zoho payments, QuickBooks bills)
- SyncLogModel: Append-only audit record of sync runs and webhook events

Every external id column is unique so at most one local entity can claim a
given external id per system. Related entities are linked by id at the
application level (agent_id, transaction_id) without FK constraints, since
records can arrive before the entity they reference.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import JSON, Date, DateTime, Index, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from src.synchub.core.database import Base
from src.synchub.sync.schemas import EntityKind


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AgentModel(Base):
    """Brokerage agent, correlated to REZEN, Zoho and QuickBooks ids."""

    __tablename__ = "agents"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    rezen_id: Mapped[str | None] = mapped_column(String(100), unique=True, nullable=True)
    zoho_id: Mapped[str | None] = mapped_column(String(100), unique=True, nullable=True)
    qb_vendor_id: Mapped[str | None] = mapped_column(String(100), unique=True, nullable=True)
    name: Mapped[str | None] = mapped_column(String(300), nullable=True)
    email: Mapped[str | None] = mapped_column(String(300), nullable=True, index=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="ACTIVE")
    member_level: Mapped[str] = mapped_column(String(20), default="ASSOCIATE")
    director_type: Mapped[str] = mapped_column(String(30), default="NONE")
    license_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    street: Mapped[str | None] = mapped_column(String(300), nullable=True)
    city: Mapped[str | None] = mapped_column(String(100), nullable=True)
    state: Mapped[str | None] = mapped_column(String(50), nullable=True)
    zipcode: Mapped[str | None] = mapped_column(String(20), nullable=True)
    hire_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    team_cap_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    team_cap_amount_paid: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    brokerage_cap_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    brokerage_cap_amount_paid: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=True
    )


class ListingModel(Base):
    """Property listing; stage is soft-deactivated to CANCELED, never deleted."""

    __tablename__ = "listings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    rezen_listing_id: Mapped[str | None] = mapped_column(String(100), unique=True, nullable=True)
    rezen_code: Mapped[str | None] = mapped_column(String(100), unique=True, nullable=True)
    mls_number: Mapped[str | None] = mapped_column(String(100), unique=True, nullable=True)
    zoho_id: Mapped[str | None] = mapped_column(String(100), unique=True, nullable=True)
    listing_name: Mapped[str | None] = mapped_column(String(500), nullable=True)
    listing_price: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    stage: Mapped[str] = mapped_column(String(30), default="ACTIVE_LISTING")
    street_no: Mapped[str | None] = mapped_column(String(50), nullable=True)
    street_name: Mapped[str | None] = mapped_column(String(300), nullable=True)
    direction: Mapped[str | None] = mapped_column(String(5), nullable=True)
    city: Mapped[str | None] = mapped_column(String(100), nullable=True)
    state: Mapped[str | None] = mapped_column(String(50), nullable=True)
    zip_code: Mapped[str | None] = mapped_column(String(20), nullable=True)
    county: Mapped[str | None] = mapped_column(String(100), nullable=True)
    listing_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    expiration_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    rezen_listing_link: Mapped[str | None] = mapped_column(String(500), nullable=True)
    agent_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=True
    )


class TransactionModel(Base):
    """Real-estate transaction with its REZEN lifecycle mapped to a local stage."""

    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    rezen_id: Mapped[str | None] = mapped_column(String(100), unique=True, nullable=True)
    zoho_id: Mapped[str | None] = mapped_column(String(100), unique=True, nullable=True)
    qb_invoice_id: Mapped[str | None] = mapped_column(String(100), unique=True, nullable=True)
    code: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    name: Mapped[str | None] = mapped_column(String(500), nullable=True)
    type: Mapped[str] = mapped_column(String(30), default="OTHER")
    broker_deal_type: Mapped[str | None] = mapped_column(String(10), nullable=True)
    stage: Mapped[str] = mapped_column(String(30), default="NEW_ENTRY")
    lifecycle_state: Mapped[str | None] = mapped_column(String(100), nullable=True)
    amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    gross_commission_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    gross_commission_percentage: Mapped[Decimal | None] = mapped_column(Numeric(7, 4), nullable=True)
    contract_acceptance_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    estimated_closing_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    actual_closing_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    street: Mapped[str | None] = mapped_column(String(300), nullable=True)
    city: Mapped[str | None] = mapped_column(String(100), nullable=True)
    state: Mapped[str | None] = mapped_column(String(50), nullable=True)
    zip_code: Mapped[str | None] = mapped_column(String(20), nullable=True)
    county: Mapped[str | None] = mapped_column(String(100), nullable=True)
    office_name: Mapped[str | None] = mapped_column(String(300), nullable=True)
    cd_payer_name: Mapped[str | None] = mapped_column(String(300), nullable=True)
    cd_payer_business_entity: Mapped[str | None] = mapped_column(String(300), nullable=True)
    broker_transaction_link: Mapped[str | None] = mapped_column(String(500), nullable=True)
    participants: Mapped[list | None] = mapped_column(JSON, nullable=True)
    agent_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=True
    )


class CommissionPaymentModel(Base):
    """Commission payment owed to an agent for a transaction."""

    __tablename__ = "commission_payments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    zoho_id: Mapped[str | None] = mapped_column(String(100), unique=True, nullable=True)
    qb_bill_id: Mapped[str | None] = mapped_column(String(100), unique=True, nullable=True)
    agent_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    transaction_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="PENDING")
    payment_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    date_paid: Mapped[date | None] = mapped_column(Date, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=True
    )


class SyncLogModel(Base):
    """Audit record: PENDING on creation, then exactly one terminal status."""

    __tablename__ = "sync_logs"
    __table_args__ = (
        Index("ix_sync_logs_source_entity_created", "source", "entity_type", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    source: Mapped[str] = mapped_column(String(30), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(30), nullable=False)
    action: Mapped[str] = mapped_column(String(30), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="PENDING")
    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


MODEL_BY_KIND: dict[EntityKind, type[Base]] = {
    EntityKind.AGENT: AgentModel,
    EntityKind.LISTING: ListingModel,
    EntityKind.TRANSACTION: TransactionModel,
    EntityKind.COMMISSION_PAYMENT: CommissionPaymentModel,
}
