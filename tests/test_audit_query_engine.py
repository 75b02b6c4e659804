"""
End-to-end tests for the Audit Query Engine.

Every test runs the full pipeline (keyword extraction, category resolution,
continuity, compilation, execution, aggregation, formatting) against the
in-memory store from conftest.

Tests cover:
- First turns, refinements, overrides and new topics
- Aggregation answers
- Exports that return every row behind a capped answer
- Failures reported in the response, never raised
- Session isolation and transcript continuation
"""
import asyncio
import json
from datetime import date
from unittest.mock import patch

import pytest

from src.agents.audit_query_engine import create_audit_query_engine
from src.core.error_taxonomy import ConfigurationError, StoreQueryError
from src.core.filter_spec import Predicate
from src.core.memory import InMemoryTranscriptSink
from src.data.records import coerce_year
from src.tools.result_formatter import ExportRequest
from src.tools.sample_data import build_sample_store

TODAY = date(2025, 6, 1)
FINDINGS = "audit-results"
IT_NAMES = {"IT", "Departemen IT", "Information Technology"}


def build(config, store):
    return create_audit_query_engine(config, store=store, sink=InMemoryTranscriptSink(), clock=lambda: TODAY)


def row_ids(response):
    return {row["id"] for row in response.rows}


class TestSingleTurn:
    def test_category_and_year(self, engine):
        response = engine.answer_sync("show all IT findings 2024", session_id="s-1")

        assert response.succeeded
        assert response.total_count == 3
        assert response.turn_type == "new_topic"
        assert {row["department"] for row in response.rows} == IT_NAMES
        assert {row["year"] for row in response.rows} == {2024}
        assert not response.truncated
        assert response.export_request is not None

    def test_abbreviation_covers_every_spelling(self, engine):
        response = engine.answer_sync("findings for HC")

        assert response.total_count == 3
        assert {row["department"] for row in response.rows} == {"HC", "Human Capital", "HRD"}
        assert {row["category"] for row in response.rows} == {"HR"}

    def test_relative_year_is_resolved(self, engine):
        response = engine.answer_sync("IT findings last year")

        assert response.total_count == 3
        assert Predicate("year", "eq", 2024) in response.resolved_filters.predicates

    def test_aggregation_with_rows(self, engine):
        response = engine.answer_sync("count IT findings by year")

        assert response.total_count == 4
        assert len(response.rows) == 4
        assert response.aggregation["rows"] == [{"group": 2023, "count": 1}, {"group": 2024, "count": 3}]
        assert response.series == {"categories": [2023, 2024], "series": [{"name": "count", "values": [1, 3]}]}

    def test_unresolved_token_lowers_confidence(self, engine):
        response = engine.answer_sync("findings for department astrology")

        assert response.succeeded
        assert response.total_count == 0
        assert response.low_confidence
        assert response.confidence <= 0.4
        assert any("astrology" in note for note in response.notes)

    def test_unnarrowed_scan_is_truncated(self, app_config, store):
        app_config.engine.max_scan_rows = 5
        engine = build(app_config, store)

        response = engine.answer_sync("show all findings")

        assert response.truncated
        assert response.total_count == 5
        assert "only part of the collection was scanned" in response.answer_text


class TestFollowUps:
    def test_refinement_narrows_previous_result(self, engine):
        first = engine.answer_sync("show all IT findings 2024", session_id="s-1")
        second = engine.answer_sync("khusus mall ciputra cibubur", session_id="s-1")

        assert second.turn_type == "refinement"
        assert second.total_count == 2
        assert row_ids(second) <= row_ids(first)
        assert {row["projectName"] for row in second.rows} == {"Mall Ciputra Cibubur"}

    def test_override_replaces_year_only(self, engine):
        engine.answer_sync("show all IT findings 2024", session_id="s-1")
        response = engine.answer_sync("what about 2023", session_id="s-1")

        assert response.turn_type == "override"
        assert response.total_count == 1
        assert response.rows[0]["department"] == "IT"
        assert response.rows[0]["year"] == 2023

    def test_new_topic_drops_previous_filters(self, engine):
        engine.answer_sync("show all IT findings 2024", session_id="s-1")
        response = engine.answer_sync("start over, show HR findings", session_id="s-1")

        assert response.turn_type == "new_topic"
        assert response.total_count == 3
        assert response.resolved_filters.for_field("year") == []

    def test_aggregation_only_follow_up_omits_rows(self, engine):
        engine.answer_sync("show all IT findings 2024", session_id="s-1")
        response = engine.answer_sync("by project", session_id="s-1")

        assert response.turn_type == "refinement"
        assert response.rows is None
        assert response.total_count == 3
        assert response.aggregation["rows"] == [
            {"group": "CitraLand Surabaya", "count": 1},
            {"group": "Mall Ciputra Cibubur", "count": 2},
        ]

    def test_sessions_are_isolated(self, engine):
        engine.answer_sync("show all IT findings 2024", session_id="a")
        response = engine.answer_sync("khusus mall ciputra cibubur", session_id="b")

        assert response.turn_type == "new_topic"
        assert {row["department"] for row in response.rows} >= {"HC"}

    def test_turns_of_one_session_run_in_order(self, engine):
        async def converse():
            responses = await asyncio.gather(
                engine.answer("show all IT findings 2024", session_id="s-1"),
                engine.answer("khusus mall ciputra cibubur", session_id="s-1"),
                engine.answer("findings for HC", session_id="s-2"),
            )
            return responses, engine.sessions.active_locks()

        (first, second, other), remaining_locks = asyncio.run(converse())

        assert first.total_count == 3
        assert second.total_count == 2
        assert other.total_count == 3
        assert remaining_locks == 0

    def test_transcript_continues_across_engines(self, app_config, store, tmp_path):
        app_config.engine.transcript_path = str(tmp_path / "transcript.jsonl")
        create_audit_query_engine(app_config, store=store, clock=lambda: TODAY).answer_sync(
            "show all IT findings 2024", session_id="s-1"
        )

        restarted = create_audit_query_engine(app_config, store=store, clock=lambda: TODAY)
        response = restarted.answer_sync("khusus mall ciputra cibubur", session_id="s-1")

        assert response.turn_type == "refinement"
        assert response.total_count == 2


class TestExport:
    def test_export_returns_every_row(self, app_config, store):
        app_config.engine.display_row_limit = 2
        engine = build(app_config, store)

        response = engine.answer_sync("show all IT findings 2024")
        exported = engine.export_all(response.export_request)

        assert exported.succeeded
        assert len(response.rows) == 2
        assert response.truncated
        assert exported.total_count == response.total_count == 3
        assert row_ids(response) <= {row["id"] for row in exported.rows}

    def test_export_request_survives_serialisation(self, engine):
        response = engine.answer_sync("show all IT findings 2024")

        request = ExportRequest.from_dict(json.loads(json.dumps(response.export_request.to_dict())))

        assert engine.export_all(request).total_count == 3

    def test_export_failure_is_reported(self, engine, store):
        response = engine.answer_sync("show all IT findings 2024")
        with patch.object(store, "query", side_effect=RuntimeError("boom")):
            exported = engine.export_all(response.export_request)

        assert not exported.succeeded
        assert exported.rows == []
        assert exported.error["category"] == "QUERY_EXECUTION_FAILED"
        assert exported.error["context"]["predicate"].startswith("department in")

    def test_unexpected_export_error_is_reported(self, engine):
        response = engine.answer_sync("show all IT findings 2024")
        with patch.object(engine.compiler, "compile", side_effect=RuntimeError("bug")):
            exported = engine.export_all(response.export_request)

        assert exported.error["category"] == "INTERNAL_ERROR"


class TestDepartmentSpellings:
    """Every stored department spelling is reachable through its category."""

    def test_padded_spelling_is_matched(self, app_config, store):
        padded_id = store.add(FINDINGS, {
            "year": 2024, "projectName": "Mall Ciputra Cibubur", "department": "IT ", "code": "F",
            "riskArea": "Access Control", "description": "Firewall rules not reviewed", "bobot": 2, "kadar": 2,
        })
        engine = build(app_config, store)

        response = engine.answer_sync("show all IT findings 2024")

        assert "IT " in engine.resolver.directory.names_for_category("IT")
        assert response.total_count == 4
        assert padded_id in row_ids(response)

    def test_spelling_missing_from_departments_collection(self, app_config, store):
        store.add("departments", {"name": "IT", "category": "IT", "originalNames": ["IT"]}, doc_id="IT")
        engine = build(app_config, store)
        directory = engine.resolver.directory

        response = engine.answer_sync("show all IT findings 2024")

        assert response.total_count == 3
        assert directory.category_of("Departemen IT") == "IT"
        assert "Departemen IT" in directory.names_for_category("IT")

    def test_grouping_by_category_agrees_with_filtering(self, app_config, store):
        store.add(FINDINGS, {
            "year": 2024, "projectName": "Mall Ciputra Cibubur", "department": " HC", "code": "F",
            "riskArea": "Payroll", "description": "Leave balance not reconciled", "bobot": 1, "kadar": 2,
        })
        store.add("departments", {"name": "Human Capital", "category": "HR", "originalNames": ["HC"]}, doc_id="HC")
        engine = build(app_config, store)

        grouped = engine.answer_sync("count findings by category")
        filtered = engine.answer_sync("findings for HC")

        hr = [row["count"] for row in grouped.aggregation["rows"] if row["group"] == "HR"]
        assert hr == [filtered.total_count] == [4]


class TestFailures:
    def test_store_failure_is_reported(self, engine, store):
        with patch.object(store, "query", side_effect=StoreQueryError("backend unavailable", status_code=503)):
            response = engine.answer_sync("show all IT findings 2024")

        assert not response.succeeded
        assert response.total_count == 0
        assert response.error["category"] == "QUERY_EXECUTION_FAILED"
        assert response.error["context"]["predicate"].startswith("department in")

    def test_failed_turn_is_not_a_basis_for_follow_ups(self, engine, store):
        engine.answer_sync("show all IT findings 2024", session_id="s-1")
        with patch.object(store, "query", side_effect=StoreQueryError("backend unavailable")):
            failed = engine.answer_sync("what about 2023", session_id="s-1")
        response = engine.answer_sync("khusus mall ciputra cibubur", session_id="s-1")

        assert not failed.succeeded
        assert response.total_count == 2
        assert Predicate("year", "eq", 2024) in response.resolved_filters.predicates

    def test_unexpected_error_is_reported(self, engine):
        with patch.object(engine.compiler, "compile", side_effect=RuntimeError("bug")):
            response = engine.answer_sync("show all IT findings 2024")

        assert response.error["category"] == "INTERNAL_ERROR"
        assert response.error["message"] == "bug"

    def test_missing_catalogue_is_a_configuration_error(self, app_config, store, tmp_path):
        app_config.categories_path = tmp_path / "missing.yaml"
        with pytest.raises(ConfigurationError):
            build(app_config, store)


class TestSampleData:
    """Counts through the engine match a brute-force count over the raw documents."""

    @pytest.fixture
    def sample_store(self):
        return build_sample_store(count=300, seed=7, cardinality_limit=2)

    @pytest.fixture
    def sample_engine(self, app_config, sample_store):
        app_config.engine.cardinality_limit = 2
        return build(app_config, sample_store)

    @pytest.mark.parametrize("question, category, year", [
        ("show all IT findings 2024", "IT", 2024),
        ("HC findings 2022", "HR", 2022),
        ("keuangan 2021", "Finance", 2021),
    ])
    def test_counts_match(self, sample_engine, sample_store, question, category, year):
        directory = sample_engine.resolver.directory
        expected = sum(
            1 for _, doc in sample_store.stream("audit-results")
            if directory.category_of(doc["department"]) == category and coerce_year(doc["year"]) == year
        )

        response = sample_engine.answer_sync(question)

        assert response.succeeded
        assert response.total_count == expected
        assert sample_engine.export_all(response.export_request).total_count == expected
