"""Persistence model for formula field definitions.

FormulaFieldModel: one row per (entity_type, field_name). Rows are
deactivated, never deleted, so past computations keep their provenance.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from src.synchub.core.database import Base


class FormulaFieldModel(Base):
    """Named, versioned calculated-field definition."""

    __tablename__ = "formula_fields"
    __table_args__ = (
        UniqueConstraint("entity_type", "field_name", name="uq_formula_fields_entity_field"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    field_name: Mapped[str] = mapped_column(String(100), nullable=False)
    display_name: Mapped[str] = mapped_column(String(200), nullable=False)
    formula_expression: Mapped[str] = mapped_column(Text, nullable=False)
    return_type: Mapped[str] = mapped_column(String(20), nullable=False, default="number")
    decimal_places: Mapped[int | None] = mapped_column(Integer, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
