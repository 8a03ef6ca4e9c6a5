"""Initial schema: entities, sync log and formula fields.

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-19

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _external_id(name: str) -> sa.Column:
    return sa.Column(name, sa.String(100), unique=True, nullable=True)


def _money(name: str) -> sa.Column:
    return sa.Column(name, sa.Numeric(14, 2), nullable=True)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade() -> None:
    op.create_table(
        "agents",
        sa.Column("id", sa.String(36), primary_key=True),
        _external_id("rezen_id"),
        _external_id("zoho_id"),
        _external_id("qb_vendor_id"),
        sa.Column("name", sa.String(300), nullable=True),
        sa.Column("email", sa.String(300), nullable=True),
        sa.Column("phone", sa.String(50), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="ACTIVE"),
        sa.Column("member_level", sa.String(20), nullable=False, server_default="ASSOCIATE"),
        sa.Column("director_type", sa.String(30), nullable=False, server_default="NONE"),
        sa.Column("license_number", sa.String(100), nullable=True),
        sa.Column("street", sa.String(300), nullable=True),
        sa.Column("city", sa.String(100), nullable=True),
        sa.Column("state", sa.String(50), nullable=True),
        sa.Column("zipcode", sa.String(20), nullable=True),
        sa.Column("hire_date", sa.Date(), nullable=True),
        _money("team_cap_amount"),
        _money("team_cap_amount_paid"),
        _money("brokerage_cap_amount"),
        _money("brokerage_cap_amount_paid"),
        *_timestamps(),
    )
    op.create_index("ix_agents_email", "agents", ["email"])

    op.create_table(
        "listings",
        sa.Column("id", sa.String(36), primary_key=True),
        _external_id("rezen_listing_id"),
        _external_id("rezen_code"),
        _external_id("mls_number"),
        _external_id("zoho_id"),
        sa.Column("listing_name", sa.String(500), nullable=True),
        _money("listing_price"),
        sa.Column("stage", sa.String(30), nullable=False, server_default="ACTIVE_LISTING"),
        sa.Column("street_no", sa.String(50), nullable=True),
        sa.Column("street_name", sa.String(300), nullable=True),
        sa.Column("direction", sa.String(5), nullable=True),
        sa.Column("city", sa.String(100), nullable=True),
        sa.Column("state", sa.String(50), nullable=True),
        sa.Column("zip_code", sa.String(20), nullable=True),
        sa.Column("county", sa.String(100), nullable=True),
        sa.Column("listing_date", sa.Date(), nullable=True),
        sa.Column("expiration_date", sa.Date(), nullable=True),
        sa.Column("rezen_listing_link", sa.String(500), nullable=True),
        sa.Column("agent_id", sa.String(36), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_listings_agent_id", "listings", ["agent_id"])

    op.create_table(
        "transactions",
        sa.Column("id", sa.String(36), primary_key=True),
        _external_id("rezen_id"),
        _external_id("zoho_id"),
        _external_id("qb_invoice_id"),
        sa.Column("code", sa.String(100), nullable=True),
        sa.Column("name", sa.String(500), nullable=True),
        sa.Column("type", sa.String(30), nullable=False, server_default="OTHER"),
        sa.Column("broker_deal_type", sa.String(10), nullable=True),
        sa.Column("stage", sa.String(30), nullable=False, server_default="NEW_ENTRY"),
        sa.Column("lifecycle_state", sa.String(100), nullable=True),
        _money("amount"),
        _money("gross_commission_amount"),
        sa.Column("gross_commission_percentage", sa.Numeric(7, 4), nullable=True),
        sa.Column("contract_acceptance_date", sa.Date(), nullable=True),
        sa.Column("estimated_closing_date", sa.Date(), nullable=True),
        sa.Column("actual_closing_date", sa.Date(), nullable=True),
        sa.Column("street", sa.String(300), nullable=True),
        sa.Column("city", sa.String(100), nullable=True),
        sa.Column("state", sa.String(50), nullable=True),
        sa.Column("zip_code", sa.String(20), nullable=True),
        sa.Column("county", sa.String(100), nullable=True),
        sa.Column("office_name", sa.String(300), nullable=True),
        sa.Column("cd_payer_name", sa.String(300), nullable=True),
        sa.Column("cd_payer_business_entity", sa.String(300), nullable=True),
        sa.Column("broker_transaction_link", sa.String(500), nullable=True),
        sa.Column("participants", sa.JSON(), nullable=True),
        sa.Column("agent_id", sa.String(36), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_transactions_code", "transactions", ["code"])
    op.create_index("ix_transactions_agent_id", "transactions", ["agent_id"])

    op.create_table(
        "commission_payments",
        sa.Column("id", sa.String(36), primary_key=True),
        _external_id("zoho_id"),
        _external_id("qb_bill_id"),
        sa.Column("agent_id", sa.String(36), nullable=True),
        sa.Column("transaction_id", sa.String(36), nullable=True),
        _money("amount"),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("payment_type", sa.String(100), nullable=True),
        sa.Column("date_paid", sa.Date(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_commission_payments_agent_id", "commission_payments", ["agent_id"])
    op.create_index(
        "ix_commission_payments_transaction_id", "commission_payments", ["transaction_id"]
    )

    op.create_table(
        "sync_logs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("source", sa.String(30), nullable=False),
        sa.Column("entity_type", sa.String(30), nullable=False),
        sa.Column("action", sa.String(30), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_sync_logs_source_entity_created", "sync_logs", ["source", "entity_type", "created_at"]
    )

    op.create_table(
        "formula_fields",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("field_name", sa.String(100), nullable=False),
        sa.Column("display_name", sa.String(200), nullable=False),
        sa.Column("formula_expression", sa.Text(), nullable=False),
        sa.Column("return_type", sa.String(20), nullable=False, server_default="number"),
        sa.Column("decimal_places", sa.Integer(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("entity_type", "field_name", name="uq_formula_fields_entity_field"),
    )
    op.create_index("ix_formula_fields_entity_type", "formula_fields", ["entity_type"])


def downgrade() -> None:
    op.drop_table("formula_fields")
    op.drop_table("sync_logs")
    op.drop_table("commission_payments")
    op.drop_table("transactions")
    op.drop_table("listings")
    op.drop_table("agents")
