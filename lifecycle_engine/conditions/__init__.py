"""
Grouped-condition engine.

Shared by the rules engine and the FSM driver.

Main components:
- Condition / ConditionGroup / ConditionSet: OR of AND-groups
- UserContextSnapshot: the read-only input of every evaluation
- ContextPayload: pydantic schema for context supplied from outside
- FieldRegistry: symbolic field names -> context accessors
- evaluate(): pure, never-raising condition evaluation
- EvaluationTrace / TraceCollector: why a candidate matched or not
- parse_formula() / format_formula(): the editor's formula language
"""

from lifecycle_engine.conditions.base import (
    Operator,
    NUMERIC_OPERATORS,
    Condition,
    ConditionGroup,
    ConditionSet,
    ConditionLike,
)
from lifecycle_engine.conditions.payload import ContextPayload
from lifecycle_engine.conditions.context import (
    UserContextSnapshot,
    build_context,
)
from lifecycle_engine.conditions.fields import (
    FieldRegistry,
    FieldMetadata,
    FieldAlreadyRegisteredError,
    field_registry,
    user_field,
)
from lifecycle_engine.conditions.evaluator import (
    coerce_value,
    loose_equals,
    evaluate,
)
from lifecycle_engine.conditions.trace import (
    EvaluationTrace,
    TraceCollector,
    TraceSummary,
    ConditionEntry,
    Resolution,
)
from lifecycle_engine.conditions.formula import (
    FormulaSyntaxError,
    FormulaValidation,
    parse_formula,
    format_formula,
    validate_formula,
)


__all__ = [
    # Model
    "Operator",
    "NUMERIC_OPERATORS",
    "Condition",
    "ConditionGroup",
    "ConditionSet",
    "ConditionLike",
    # Context
    "ContextPayload",
    "UserContextSnapshot",
    "build_context",
    # Fields
    "FieldRegistry",
    "FieldMetadata",
    "FieldAlreadyRegisteredError",
    "field_registry",
    "user_field",
    # Evaluation
    "coerce_value",
    "loose_equals",
    "evaluate",
    # Trace
    "EvaluationTrace",
    "TraceCollector",
    "TraceSummary",
    "ConditionEntry",
    "Resolution",
    # Formula
    "FormulaSyntaxError",
    "FormulaValidation",
    "parse_formula",
    "format_formula",
    "validate_formula",
]
