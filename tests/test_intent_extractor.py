"""
Unit tests for the Intent Extractor.

Tests cover:
- Deterministic extraction of years, codes, scores, projects and category tokens
- Continuity cues (refinement, new topic)
- Aggregation directives
- LLM path with schema validation
- Fallback when the model errors, times out or answers with an invalid shape
"""
import asyncio
import json
import time
from datetime import date
from unittest.mock import Mock

import pytest

from config.settings import PROJECT_ROOT, ModelProvider
from src.core.filter_spec import AggregationDirective, FilterSpec, Predicate, SymbolicValue
from src.core.intent_extractor import ContinuityCue, IntentExtractor
from src.core.model_router import LLMResponse
from src.core.prompt_manager import PromptManager

TODAY = date(2025, 6, 1)


def llm_response(content):
    return LLMResponse(content=content, model="test-model", provider=ModelProvider.GEMINI, usage={})


class TestDeterministicExtraction:
    """Keyword/regex path, used whenever no model is configured."""

    @pytest.fixture
    def extractor(self, catalog):
        return IntentExtractor(catalog, clock=lambda: TODAY)

    def test_category_token_and_year(self, extractor):
        draft = extractor.extract_deterministic("show all IT findings 2024")
        assert draft.predicates == (Predicate("year", "eq", 2024),)
        assert draft.category_tokens == ("IT",)
        assert draft.continuity == ContinuityCue.NONE
        assert draft.aggregation is None
        assert not draft.used_llm

    def test_lowercase_it_is_not_a_category(self, extractor):
        draft = extractor.extract_deterministic("is it true that findings exist")
        assert draft.category_tokens == ()
        assert "no filters recognized" in draft.parsing_notes
        assert draft.confidence < 0.5

    def test_abbreviation_token(self, extractor):
        assert extractor.extract_deterministic("findings for HC").category_tokens == ("HC",)

    def test_narrowing_phrase_becomes_project_filter(self, extractor):
        draft = extractor.extract_deterministic("khusus mall ciputra cibubur")
        assert draft.continuity == ContinuityCue.REFINEMENT
        assert draft.predicates == (Predicate("project_name", "contains", "mall ciputra cibubur"),)
        assert draft.category_tokens == ()

    def test_narrowing_phrase_naming_a_category(self, extractor):
        draft = extractor.extract_deterministic("only keuangan")
        assert draft.continuity == ContinuityCue.REFINEMENT
        assert draft.category_tokens == ("keuangan",)
        assert draft.predicates == ()

    def test_department_phrase(self, extractor):
        draft = extractor.extract_deterministic("department keuangan 2024")
        assert draft.category_tokens == ("keuangan",)
        assert Predicate("year", "eq", 2024) in draft.predicates

    def test_quoted_project_name(self, extractor):
        draft = extractor.extract_deterministic('findings for "Ciputra World Surabaya"')
        assert draft.predicates == (Predicate("project_name", "eq", "Ciputra World Surabaya"),)

    def test_new_topic_cue(self, extractor):
        draft = extractor.extract_deterministic("start over, show HR findings")
        assert draft.continuity == ContinuityCue.NEW_TOPIC
        assert draft.category_tokens == ("HR",)

    @pytest.mark.parametrize("text, expected", [
        ("findings 2022-2024", (Predicate("year", "gte", 2022), Predicate("year", "lte", 2024))),
        ("findings between 2024 and 2022", (Predicate("year", "gte", 2022), Predicate("year", "lte", 2024))),
        ("findings 2022 and 2024", (Predicate("year", "in", {2022, 2024}),)),
        ("findings this year", (Predicate("year", "eq", SymbolicValue(SymbolicValue.THIS_YEAR)),)),
        ("temuan tahun lalu", (Predicate("year", "eq", SymbolicValue(SymbolicValue.LAST_YEAR)),)),
    ])
    def test_years(self, extractor, text, expected):
        assert extractor.extract_deterministic(text).predicates == expected

    @pytest.mark.parametrize("text, expected", [
        ("nilai >= 10", Predicate("nilai", "gte", 10.0)),
        ("bobot di atas 5", Predicate("bobot", "gte", 5.0)),
        ("severity less than 2", Predicate("kadar", "lt", 2.0)),
        ("code NF", Predicate("code", "eq", "NF")),
        ("kode f", Predicate("code", "eq", "F")),
        ("non-finding items", Predicate("code_type", "eq", "non_finding")),
    ])
    def test_scores_and_codes(self, extractor, text, expected):
        assert expected in extractor.extract_deterministic(text).predicates

    @pytest.mark.parametrize("text, expected", [
        ("count by year", AggregationDirective(("year",))),
        ("average nilai per project", AggregationDirective(("project_name",), "avg", "nilai")),
        ("findings by department and year", AggregationDirective(("department", "year"))),
        ("IT trend", AggregationDirective(("year",))),
        ("total bobot per category", AggregationDirective(("category",), "sum", "bobot")),
    ])
    def test_aggregation(self, extractor, text, expected):
        assert extractor.extract_deterministic(text).aggregation == expected

    def test_empty_input(self, extractor):
        draft = asyncio.run(extractor.extract("   "))
        assert draft.is_empty
        assert draft.confidence == 0.0


class TestLLMExtraction:
    """Model path and its fallbacks."""

    @pytest.fixture
    def prompt_manager(self):
        return PromptManager(PROJECT_ROOT / "config" / "prompts")

    @pytest.fixture
    def router(self):
        return Mock()

    @pytest.fixture
    def extractor(self, catalog, router, prompt_manager):
        return IntentExtractor(catalog, router, prompt_manager, timeout_seconds=0.5, clock=lambda: TODAY)

    def test_valid_answer(self, extractor, router):
        router.generate_with_system.return_value = llm_response(json.dumps({
            "userIntent": "IT findings in 2024",
            "filters": [
                {"field": "year", "operator": "eq", "value": "2024"},
                {"field": "department", "operator": "eq", "value": "IT"},
            ],
            "categoryTokens": [],
            "aggregation": {"groupBy": ["project_name"], "metric": "count"},
            "continuity": "none",
        }))

        draft = asyncio.run(extractor.extract("IT findings 2024 per project"))

        assert draft.used_llm
        assert draft.predicates == (Predicate("year", "eq", 2024),)
        assert draft.category_tokens == ("IT",)
        assert draft.aggregation == AggregationDirective(("project_name",))
        assert draft.user_intent == "IT findings in 2024"

    def test_previous_filters_are_sent_to_the_model(self, extractor, router):
        router.generate_with_system.return_value = llm_response('{"continuity": "refinement"}')
        previous = FilterSpec((Predicate("year", "eq", 2024),))

        draft = asyncio.run(extractor.extract("only the HR ones", previous))

        _, user_message = router.generate_with_system.call_args[0]
        assert "year = 2024" in user_message
        assert "2025-06-01" in user_message
        assert draft.continuity == ContinuityCue.REFINEMENT

    def test_symbolic_year_from_model(self, extractor, router):
        router.generate_with_system.return_value = llm_response(
            '```json\n{"filters": [{"field": "year", "value": "this_year"}]}\n```'
        )
        draft = asyncio.run(extractor.extract("this year's findings"))
        assert draft.predicates == (Predicate("year", "eq", SymbolicValue(SymbolicValue.THIS_YEAR)),)

    def test_uncoercible_filter_is_noted(self, extractor, router):
        router.generate_with_system.return_value = llm_response(
            '{"filters": [{"field": "nilai", "operator": "gte", "value": "high"}]}'
        )
        draft = asyncio.run(extractor.extract("high nilai"))
        assert draft.predicates == ()
        assert any("ignored filter" in note for note in draft.parsing_notes)

    def test_model_error_falls_back(self, extractor, router):
        router.generate_with_system.side_effect = RuntimeError("connection reset")

        draft = asyncio.run(extractor.extract("show all IT findings 2024"))

        assert not draft.used_llm
        assert draft.category_tokens == ("IT",)
        assert draft.parsing_notes[0] == "model unavailable; used keyword extraction"

    def test_invalid_answer_falls_back(self, extractor, router):
        router.generate_with_system.return_value = llm_response(
            '{"filters": [{"field": "colour", "value": "red"}]}'
        )

        draft = asyncio.run(extractor.extract("findings 2023"))

        assert not draft.used_llm
        assert draft.predicates == (Predicate("year", "eq", 2023),)
        assert draft.parsing_notes[0] == "model answer invalid; used keyword extraction"

    def test_slow_model_falls_back(self, extractor, router):
        def slow(*args, **kwargs):
            time.sleep(1.5)
            return llm_response("{}")

        router.generate_with_system.side_effect = slow

        draft = asyncio.run(extractor.extract("findings 2023"))

        assert not draft.used_llm
        assert draft.parsing_notes[0] == "model timed out; used keyword extraction"
