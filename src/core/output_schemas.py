"""
Structured Output Schemas for LLM Responses

Pydantic models that validate the model service's JSON answers before anything
downstream sees them. Validation produces a tagged result, ``Parsed`` or
``Invalid``; callers only ever act on ``Parsed``.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Generic, List, Optional, Sequence, Type, TypeVar, Union

from pydantic import BaseModel, Field, ValidationError, field_validator

from src.core.filter_spec import FIELDS, GROUPABLE_FIELDS, METRICS, OPERATORS

logger = logging.getLogger(__name__)

T = TypeVar("T")


class FilterItemSchema(BaseModel):
    """One candidate predicate proposed by the model."""
    field: str
    operator: str = "eq"
    value: Any

    @field_validator("field")
    @classmethod
    def validate_field(cls, v):
        if v not in FIELDS:
            raise ValueError(f"Unknown field: {v}")
        return v

    @field_validator("operator")
    @classmethod
    def validate_operator(cls, v):
        if v not in OPERATORS:
            raise ValueError(f"Unknown operator: {v}")
        return v


class AggregationSchema(BaseModel):
    """Aggregation directive proposed by the model."""
    groupBy: List[str] = Field(..., min_length=1, max_length=2)
    metric: str = "count"
    metricField: Optional[str] = None

    @field_validator("groupBy")
    @classmethod
    def validate_group_by(cls, v):
        bad = [g for g in v if g not in GROUPABLE_FIELDS]
        if bad:
            raise ValueError(f"Cannot group by: {bad}")
        return v

    @field_validator("metric")
    @classmethod
    def validate_metric(cls, v):
        if v not in METRICS:
            raise ValueError(f"Unknown metric: {v}")
        return v


class IntentSchema(BaseModel):
    """Schema for the intent extraction answer."""
    userIntent: str = ""
    filters: List[FilterItemSchema] = Field(default_factory=list)
    categoryTokens: List[str] = Field(default_factory=list)
    aggregation: Optional[AggregationSchema] = None
    continuity: str = Field("none", pattern="^(refinement|new_topic|none)$")


class CategoryMatchSchema(BaseModel):
    """Schema for the category classifier answer."""
    category: Optional[str] = None
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    reasoning: str = ""


@dataclass(frozen=True)
class Parsed(Generic[T]):
    """A validated model answer."""
    value: T


@dataclass(frozen=True)
class Invalid:
    """A model answer that failed validation, with the reasons."""
    reason: str
    errors: List[str] = field(default_factory=list)


ValidationResult = Union[Parsed, Invalid]


def _strip_code_fences(raw_output: str) -> str:
    cleaned = raw_output.strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned[7:]
    if cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


def validate_llm_output(raw_output: Optional[str], schema: Type[BaseModel]) -> ValidationResult:
    """
    Validate LLM output against a Pydantic schema.

    Returns:
        ``Parsed(model_instance)`` or ``Invalid(reason, errors)``
    """
    if not raw_output or not raw_output.strip():
        return Invalid("empty response")

    cleaned = _strip_code_fences(raw_output)

    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        logger.warning(f"Failed to parse LLM output as JSON: {e}")
        return Invalid("invalid JSON", [str(e)])

    if not isinstance(data, dict):
        return Invalid("expected a JSON object", [f"got {type(data).__name__}"])

    try:
        return Parsed(schema.model_validate(data))
    except ValidationError as e:
        errors = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
        logger.warning(f"Schema validation failed for {schema.__name__}: {errors}")
        return Invalid("schema validation failed", errors)


def validate_category_match(raw_output: Optional[str], known_labels: Sequence[str]) -> ValidationResult:
    """
    Validate a category answer and check it against the known label list.

    A label outside the list is rejected rather than trusted.
    """
    result = validate_llm_output(raw_output, CategoryMatchSchema)
    if isinstance(result, Invalid):
        return result
    match: CategoryMatchSchema = result.value
    if match.category is None:
        return result
    by_lower = {label.lower(): label for label in known_labels}
    canonical = by_lower.get(match.category.strip().lower())
    if canonical is None:
        logger.warning(f"Classifier answered unknown category '{match.category}', rejecting")
        return Invalid("category not in known list", [match.category])
    return Parsed(match.model_copy(update={"category": canonical}))
