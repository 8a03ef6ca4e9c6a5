"""Formula engine and formula field management.

The engine (validate, evaluate, extract_field_references, test_formula) is
usable on its own; FormulaFieldService adds persistence and the Zoho import.
"""

from src.synchub.formulas.engine import (
    evaluate,
    extract_field_references,
    test_formula,
    validate,
)
from src.synchub.formulas.schemas import (
    FormulaEvaluationResult,
    FormulaReturnType,
    ValidationResult,
)

__all__ = [
    "FormulaEvaluationResult",
    "FormulaReturnType",
    "ValidationResult",
    "evaluate",
    "extract_field_references",
    "test_formula",
    "validate",
]
