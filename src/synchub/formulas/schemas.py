"""Pydantic schemas for formula fields and formula evaluation.

Defines:
- FormulaReturnType: currency | number | text | boolean | date
- ValidationResult, FormulaEvaluationResult: engine results
- FormulaFieldCreate / FormulaFieldUpdate / FormulaFieldRead: CRUD payloads
- FormulaTestRequest, FormulaValidateRequest, ZohoImportRequest, ZohoImportResult
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class FormulaReturnType(str, Enum):
    """Declared type a formula result is coerced to."""

    CURRENCY = "currency"
    NUMBER = "number"
    TEXT = "text"
    BOOLEAN = "boolean"
    DATE = "date"


# ── Engine Results ──────────────────────────────────────────────────────────


class ValidationResult(BaseModel):
    valid: bool
    error: str | None = None


class FormulaEvaluationResult(BaseModel):
    """Outcome of a non-raising evaluation.

    ``error`` is set instead of raising. ``warnings`` lists the data-dependent
    failures (division by zero, non-numeric operands) that evaluated to None.
    """

    value: Any = None
    error: str | None = None
    warnings: list[str] = Field(default_factory=list)
    return_type: FormulaReturnType


# ── Formula Field CRUD ──────────────────────────────────────────────────────


class FormulaFieldCreate(BaseModel):
    entity_type: str = Field(min_length=1, max_length=50)
    field_name: str = Field(min_length=1, max_length=100)
    display_name: str = Field(min_length=1, max_length=200)
    formula_expression: str = Field(min_length=1)
    return_type: FormulaReturnType = FormulaReturnType.NUMBER
    decimal_places: int | None = Field(default=None, ge=0, le=10)
    description: str | None = None


class FormulaFieldUpdate(BaseModel):
    """Partial update; only supplied fields change."""

    display_name: str | None = Field(default=None, min_length=1, max_length=200)
    formula_expression: str | None = Field(default=None, min_length=1)
    return_type: FormulaReturnType | None = None
    decimal_places: int | None = Field(default=None, ge=0, le=10)
    description: str | None = None
    is_active: bool | None = None


class FormulaFieldRead(BaseModel):
    model_config = {"from_attributes": True}

    id: str
    entity_type: str
    field_name: str
    display_name: str
    formula_expression: str
    return_type: FormulaReturnType
    decimal_places: int | None = None
    description: str | None = None
    is_active: bool = True
    version: int = 1
    created_at: datetime
    updated_at: datetime


# ── Request / Response Bodies ───────────────────────────────────────────────


class FormulaValidateRequest(BaseModel):
    formula_expression: str


class FormulaValidateResponse(BaseModel):
    valid: bool
    error: str | None = None
    field_references: list[str] = Field(default_factory=list)


class FormulaTestRequest(BaseModel):
    formula_expression: str
    field_values: dict[str, Any] = Field(default_factory=dict)
    return_type: FormulaReturnType = FormulaReturnType.NUMBER
    decimal_places: int | None = Field(default=None, ge=0, le=10)


class ZohoImportRequest(BaseModel):
    """Import formula fields from a Zoho module.

    When ``fields`` is omitted the metadata is fetched from Zoho directly.
    """

    module: str
    fields: list[dict[str, Any]] | None = None


class ZohoImportResult(BaseModel):
    imported: int = 0
    skipped: int = 0
    errors: list[str] = Field(default_factory=list)
