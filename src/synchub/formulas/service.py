"""Formula field management: repository, service rules and Zoho import.

FormulaFieldRepository follows the session_factory callable pattern.
FormulaFieldService owns the rules:
- Expressions are validated before anything is stored.
- (entity_type, field_name) is unique; duplicates raise DuplicateFormulaFieldError.
- Currency fields default to 2 decimal places.
- Changing the expression or return type bumps ``version``.
- Fields are deactivated, never deleted.
- import_zoho_fields() copies Zoho formula fields, skipping existing and
  invalid ones.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.synchub.connectors.zoho import ZohoClient
from src.synchub.core.errors import SyncHubError, ValidationError
from src.synchub.formulas.engine import test_formula, validate
from src.synchub.formulas.models import FormulaFieldModel
from src.synchub.formulas.schemas import (
    FormulaEvaluationResult,
    FormulaFieldCreate,
    FormulaFieldRead,
    FormulaFieldUpdate,
    FormulaReturnType,
    ZohoImportResult,
)
from src.synchub.sync.schemas import EntityKind

logger = structlog.get_logger(__name__)

ZOHO_MODULE_ENTITY_TYPES: dict[str, str] = {
    "Members": EntityKind.AGENT.value,
    "Listings": EntityKind.LISTING.value,
    "Deals": EntityKind.TRANSACTION.value,
    "Commission_Payments": EntityKind.COMMISSION_PAYMENT.value,
    "Payments": EntityKind.COMMISSION_PAYMENT.value,
}

ZOHO_RETURN_TYPES: dict[str, FormulaReturnType] = {
    "currency": FormulaReturnType.CURRENCY,
    "double": FormulaReturnType.NUMBER,
    "integer": FormulaReturnType.NUMBER,
    "text": FormulaReturnType.TEXT,
    "boolean": FormulaReturnType.BOOLEAN,
    "date": FormulaReturnType.DATE,
    "datetime": FormulaReturnType.DATE,
}


class DuplicateFormulaFieldError(SyncHubError):
    """A formula field with the same (entity_type, field_name) already exists."""


class FormulaFieldNotFoundError(SyncHubError):
    """No formula field with the requested id."""


def zoho_api_name_to_field_name(api_name: str) -> str:
    """``Gross_Commission_Income`` / ``total_payments`` -> camelCase."""
    parts = [p for p in api_name.split("_") if p]
    if not parts:
        return api_name
    head, *rest = parts
    return head.lower() + "".join(p[:1].upper() + p[1:].lower() for p in rest)


# ── Repository ──────────────────────────────────────────────────────────────


class FormulaFieldRepository:
    """CRUD access to the formula_fields table.

    Args:
        session_factory: Async generator callable yielding AsyncSession.
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncGenerator[AsyncSession, None]],
    ) -> None:
        self._session_factory = session_factory

    async def get(self, field_id: str) -> FormulaFieldRead | None:
        async for session in self._session_factory():
            model = await session.get(FormulaFieldModel, field_id)
            return FormulaFieldRead.model_validate(model) if model is not None else None
        return None

    async def get_by_key(self, entity_type: str, field_name: str) -> FormulaFieldRead | None:
        stmt = select(FormulaFieldModel).where(
            FormulaFieldModel.entity_type == entity_type,
            FormulaFieldModel.field_name == field_name,
        )
        async for session in self._session_factory():
            model = (await session.execute(stmt)).scalar_one_or_none()
            return FormulaFieldRead.model_validate(model) if model is not None else None
        return None

    async def list(
        self, entity_type: str | None = None, include_inactive: bool = False
    ) -> list[FormulaFieldRead]:
        stmt = select(FormulaFieldModel)
        if entity_type:
            stmt = stmt.where(FormulaFieldModel.entity_type == entity_type)
        if not include_inactive:
            stmt = stmt.where(FormulaFieldModel.is_active.is_(True))
        stmt = stmt.order_by(FormulaFieldModel.entity_type, FormulaFieldModel.field_name)

        async for session in self._session_factory():
            result = await session.execute(stmt)
            return [FormulaFieldRead.model_validate(m) for m in result.scalars().all()]
        return []

    async def create(self, values: dict[str, Any]) -> FormulaFieldRead:
        """Insert a row.

        Raises:
            DuplicateFormulaFieldError: On the (entity_type, field_name) constraint.
        """
        async for session in self._session_factory():
            model = FormulaFieldModel(**values)
            session.add(model)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise DuplicateFormulaFieldError(
                    f"Formula field '{values.get('field_name')}' already exists "
                    f"for {values.get('entity_type')}"
                ) from exc
            await session.refresh(model)
            return FormulaFieldRead.model_validate(model)
        raise RuntimeError("Session factory yielded no session")

    async def update(self, field_id: str, values: dict[str, Any]) -> FormulaFieldRead | None:
        async for session in self._session_factory():
            model = await session.get(FormulaFieldModel, field_id)
            if model is None:
                return None
            for key, value in values.items():
                setattr(model, key, value)
            await session.commit()
            await session.refresh(model)
            return FormulaFieldRead.model_validate(model)
        return None


# ── Service ─────────────────────────────────────────────────────────────────


class FormulaFieldService:
    """Business rules for formula fields.

    Args:
        repository: Formula field persistence.
        zoho_client: Optional Zoho connector, used to fetch field metadata
            when an import is requested without it.
    """

    def __init__(
        self,
        repository: FormulaFieldRepository,
        zoho_client: ZohoClient | None = None,
    ) -> None:
        self._repo = repository
        self._zoho = zoho_client

    @staticmethod
    def _check_expression(expression: str) -> None:
        result = validate(expression)
        if not result.valid:
            raise ValidationError(result.error or "Invalid formula syntax")

    async def create(self, data: FormulaFieldCreate) -> FormulaFieldRead:
        """Validate and store a new formula field.

        Raises:
            ValueError: If a required field is blank.
            ValidationError: If the expression does not parse (nothing stored).
            DuplicateFormulaFieldError: If (entity_type, field_name) exists.
        """
        for name in ("entity_type", "field_name", "display_name", "formula_expression"):
            if not str(getattr(data, name)).strip():
                raise ValueError(f"{name} is required")

        self._check_expression(data.formula_expression)

        if await self._repo.get_by_key(data.entity_type, data.field_name) is not None:
            raise DuplicateFormulaFieldError(
                f"Formula field '{data.field_name}' already exists for {data.entity_type}"
            )

        values = data.model_dump()
        values["return_type"] = data.return_type.value
        if data.return_type == FormulaReturnType.CURRENCY and data.decimal_places is None:
            values["decimal_places"] = 2

        field = await self._repo.create(values)
        logger.info(
            "formula_field.created",
            field_id=field.id,
            entity_type=field.entity_type,
            field_name=field.field_name,
        )
        return field

    async def update(self, field_id: str, data: FormulaFieldUpdate) -> FormulaFieldRead:
        """Apply a partial update; bumps ``version`` on expression/type change.

        Raises:
            FormulaFieldNotFoundError: Unknown id.
            ValidationError: New expression does not parse.
        """
        current = await self.get(field_id)
        changes = data.model_dump(exclude_unset=True)

        if "formula_expression" in changes:
            self._check_expression(changes["formula_expression"])
        if changes.get("return_type") is not None:
            changes["return_type"] = FormulaReturnType(changes["return_type"]).value

        expression_changed = (
            "formula_expression" in changes
            and changes["formula_expression"] != current.formula_expression
        )
        type_changed = (
            changes.get("return_type") is not None
            and changes["return_type"] != current.return_type.value
        )
        if expression_changed or type_changed:
            changes["version"] = current.version + 1

        updated = await self._repo.update(field_id, changes)
        if updated is None:
            raise FormulaFieldNotFoundError(f"Formula field {field_id} not found")
        logger.info("formula_field.updated", field_id=field_id, version=updated.version)
        return updated

    async def deactivate(self, field_id: str) -> FormulaFieldRead:
        updated = await self._repo.update(field_id, {"is_active": False})
        if updated is None:
            raise FormulaFieldNotFoundError(f"Formula field {field_id} not found")
        logger.info("formula_field.deactivated", field_id=field_id)
        return updated

    async def get(self, field_id: str) -> FormulaFieldRead:
        field = await self._repo.get(field_id)
        if field is None:
            raise FormulaFieldNotFoundError(f"Formula field {field_id} not found")
        return field

    async def list(
        self, entity_type: str | None = None, include_inactive: bool = False
    ) -> list[FormulaFieldRead]:
        return await self._repo.list(entity_type, include_inactive)

    async def compute(
        self, entity_type: str, record: dict[str, Any]
    ) -> dict[str, FormulaEvaluationResult]:
        """Evaluate every active formula field of ``entity_type`` against a record."""
        fields = await self._repo.list(entity_type)
        return {
            f.field_name: test_formula(
                f.formula_expression, record, f.return_type, f.decimal_places
            )
            for f in fields
        }

    # ── Zoho Import ─────────────────────────────────────────────────────────

    async def import_zoho_fields(
        self,
        module: str,
        fields_metadata: list[dict[str, Any]] | None = None,
    ) -> ZohoImportResult:
        """Create local formula fields from a Zoho module's field metadata.

        Args:
            module: Zoho module API name (Members, Listings, Deals, Payments).
            fields_metadata: ``fields`` array from ``/settings/fields``; fetched
                through the Zoho connector when omitted.

        Raises:
            ValueError: Unknown module, or no metadata and no Zoho connector.
        """
        entity_type = ZOHO_MODULE_ENTITY_TYPES.get(module)
        if entity_type is None:
            raise ValueError(f"Unsupported Zoho module: {module}")

        if fields_metadata is None:
            if self._zoho is None:
                raise ValueError("Zoho is not configured; supply the field metadata")
            fields_metadata = await self._zoho.get_field_metadata(module)

        result = ZohoImportResult()
        for zoho_field in fields_metadata:
            if zoho_field.get("data_type") != "formula":
                continue

            api_name = str(zoho_field.get("api_name") or "")
            formula = zoho_field.get("formula") or {}
            expression = str(formula.get("expression") or "").strip()
            field_name = zoho_api_name_to_field_name(api_name)

            if not api_name or not expression:
                result.skipped += 1
                continue

            if await self._repo.get_by_key(entity_type, field_name) is not None:
                result.skipped += 1
                continue

            return_type = ZOHO_RETURN_TYPES.get(
                str(formula.get("return_type") or "").lower(), FormulaReturnType.NUMBER
            )
            data = FormulaFieldCreate(
                entity_type=entity_type,
                field_name=field_name,
                display_name=str(zoho_field.get("display_label") or api_name),
                formula_expression=expression,
                return_type=return_type,
                description=f"Imported from Zoho {module}.{api_name}",
            )
            try:
                await self.create(data)
            except (ValidationError, DuplicateFormulaFieldError) as exc:
                result.skipped += 1
                result.errors.append(f"{api_name}: {exc}")
                continue
            result.imported += 1

        logger.info(
            "formula_field.zoho_import_complete",
            module=module,
            entity_type=entity_type,
            imported=result.imported,
            skipped=result.skipped,
            errors=len(result.errors),
        )
        return result
