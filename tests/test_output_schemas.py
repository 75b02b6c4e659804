"""
Unit tests for LLM output validation.
"""
import pytest

from src.core.output_schemas import (
    CategoryMatchSchema,
    IntentSchema,
    Invalid,
    Parsed,
    validate_category_match,
    validate_llm_output,
)

LABELS = ["IT", "HR", "Finance"]


class TestValidateLLMOutput:
    def test_valid_intent(self):
        result = validate_llm_output(
            '{"filters": [{"field": "year", "operator": "in", "value": [2023, 2024]}], "continuity": "refinement"}',
            IntentSchema,
        )
        assert isinstance(result, Parsed)
        assert result.value.filters[0].value == [2023, 2024]

    def test_code_fences_are_stripped(self):
        assert isinstance(validate_llm_output('```json\n{"continuity": "none"}\n```', IntentSchema), Parsed)

    @pytest.mark.parametrize("raw, reason", [
        ("", "empty response"),
        (None, "empty response"),
        ("{not json", "invalid JSON"),
        ("[1, 2]", "expected a JSON object"),
        ('{"continuity": "sideways"}', "schema validation failed"),
        ('{"filters": [{"field": "year", "operator": "between", "value": 1}]}', "schema validation failed"),
        ('{"aggregation": {"groupBy": ["description"]}}', "schema validation failed"),
    ])
    def test_invalid(self, raw, reason):
        result = validate_llm_output(raw, IntentSchema)
        assert isinstance(result, Invalid)
        assert result.reason == reason


class TestValidateCategoryMatch:
    def test_label_is_canonicalised(self):
        result = validate_category_match('{"category": "finance", "confidence": 0.8}', LABELS)
        assert isinstance(result, Parsed)
        assert result.value.category == "Finance"

    def test_unknown_label_is_rejected(self):
        result = validate_category_match('{"category": "Astrology", "confidence": 0.99}', LABELS)
        assert isinstance(result, Invalid)
        assert result.errors == ["Astrology"]

    def test_null_category_is_valid(self):
        result = validate_category_match('{"category": null, "confidence": 0.0}', LABELS)
        assert isinstance(result, Parsed)
        assert result.value.category is None

    def test_confidence_out_of_range(self):
        result = validate_llm_output('{"category": "IT", "confidence": 1.5}', CategoryMatchSchema)
        assert isinstance(result, Invalid)
