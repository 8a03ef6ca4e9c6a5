"""Formula field management endpoints.

Provides CRUD for formula field definitions plus stateless helpers:
- POST /formula-fields/validate: syntax check and field references
- POST /formula-fields/test: evaluate an ad-hoc expression
- POST /formula-fields/{id}/test: evaluate a stored field against sample data
- POST /formula-fields/compute/{entity_type}: evaluate every active field for a record
- POST /formula-fields/import/zoho: copy formula fields from a Zoho module
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel, Field

from src.synchub.core.errors import AuthError, UpstreamError, ValidationError
from src.synchub.formulas.engine import extract_field_references, test_formula, validate
from src.synchub.formulas.schemas import (
    FormulaEvaluationResult,
    FormulaFieldCreate,
    FormulaFieldRead,
    FormulaFieldUpdate,
    FormulaTestRequest,
    FormulaValidateRequest,
    FormulaValidateResponse,
    ZohoImportRequest,
    ZohoImportResult,
)
from src.synchub.formulas.service import DuplicateFormulaFieldError, FormulaFieldNotFoundError

router = APIRouter(prefix="/formula-fields", tags=["formula-fields"])


class FieldValuesRequest(BaseModel):
    field_values: dict[str, Any] = Field(default_factory=dict)


# ── Dependency Injection Helper ──────────────────────────────────────────────


def _get_formula_service(request: Request) -> Any:
    """Retrieve FormulaFieldService from app.state, 503 if not available."""
    service = getattr(request.app.state, "formula_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Formula fields not initialized",
        )
    return service


def _not_found(exc: FormulaFieldNotFoundError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


# ── Stateless Helpers ────────────────────────────────────────────────────────


@router.post("/validate", response_model=FormulaValidateResponse)
async def validate_formula(body: FormulaValidateRequest) -> FormulaValidateResponse:
    """Syntax-check an expression and list the fields it references."""
    result = validate(body.formula_expression)
    return FormulaValidateResponse(
        valid=result.valid,
        error=result.error,
        field_references=extract_field_references(body.formula_expression),
    )


@router.post("/test", response_model=FormulaEvaluationResult)
async def test_expression(body: FormulaTestRequest) -> FormulaEvaluationResult:
    """Evaluate an ad-hoc expression; failures are reported in ``error``."""
    return test_formula(
        body.formula_expression, body.field_values, body.return_type, body.decimal_places
    )


# ── CRUD Endpoints ───────────────────────────────────────────────────────────


@router.get("", response_model=list[FormulaFieldRead])
async def list_formula_fields(
    request: Request,
    entity_type: str | None = None,
    include_inactive: bool = False,
) -> list[FormulaFieldRead]:
    """List formula fields, active only unless ``include_inactive``."""
    service = _get_formula_service(request)
    return await service.list(entity_type, include_inactive)


@router.post("", response_model=FormulaFieldRead, status_code=201)
async def create_formula_field(body: FormulaFieldCreate, request: Request) -> FormulaFieldRead:
    """Create a formula field after validating its expression."""
    service = _get_formula_service(request)
    try:
        return await service.create(body)
    except (ValidationError, ValueError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except DuplicateFormulaFieldError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc


@router.get("/{field_id}", response_model=FormulaFieldRead)
async def get_formula_field(field_id: str, request: Request) -> FormulaFieldRead:
    service = _get_formula_service(request)
    try:
        return await service.get(field_id)
    except FormulaFieldNotFoundError as exc:
        raise _not_found(exc) from exc


@router.patch("/{field_id}", response_model=FormulaFieldRead)
async def update_formula_field(
    field_id: str, body: FormulaFieldUpdate, request: Request
) -> FormulaFieldRead:
    """Partially update a formula field; expression changes bump the version."""
    service = _get_formula_service(request)
    try:
        return await service.update(field_id, body)
    except FormulaFieldNotFoundError as exc:
        raise _not_found(exc) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


@router.delete("/{field_id}", response_model=FormulaFieldRead)
async def deactivate_formula_field(field_id: str, request: Request) -> FormulaFieldRead:
    """Deactivate (never delete) a formula field."""
    service = _get_formula_service(request)
    try:
        return await service.deactivate(field_id)
    except FormulaFieldNotFoundError as exc:
        raise _not_found(exc) from exc


@router.post("/{field_id}/test", response_model=FormulaEvaluationResult)
async def test_formula_field(
    field_id: str, body: FieldValuesRequest, request: Request
) -> FormulaEvaluationResult:
    """Evaluate a stored formula field against sample field values."""
    service = _get_formula_service(request)
    try:
        field = await service.get(field_id)
    except FormulaFieldNotFoundError as exc:
        raise _not_found(exc) from exc
    return test_formula(
        field.formula_expression, body.field_values, field.return_type, field.decimal_places
    )


@router.post("/compute/{entity_type}", response_model=dict[str, FormulaEvaluationResult])
async def compute_formula_fields(
    entity_type: str, body: FieldValuesRequest, request: Request
) -> dict[str, FormulaEvaluationResult]:
    """Evaluate every active formula field of ``entity_type`` for one record."""
    service = _get_formula_service(request)
    return await service.compute(entity_type, body.field_values)


# ── Zoho Import ──────────────────────────────────────────────────────────────


@router.post("/import/zoho", response_model=ZohoImportResult)
async def import_zoho_formula_fields(
    body: ZohoImportRequest, request: Request
) -> ZohoImportResult:
    """Import formula fields from a Zoho module's field metadata."""
    service = _get_formula_service(request)
    try:
        return await service.import_zoho_fields(body.module, body.fields)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except (AuthError, UpstreamError) as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Failed to fetch Zoho fields: {exc}",
        ) from exc
