"""
Unit tests for the Aggregation Engine.
"""
import random

import pytest

from src.core.filter_spec import AggregationDirective
from src.data.records import FindingRecord
from src.tools.aggregator import MISSING_LABEL, Aggregator, sort_keys


def record(doc_id, **fields):
    data = {
        "year": fields.get("year"),
        "projectName": fields.get("project", "P"),
        "department": fields.get("department", "IT"),
        "code": fields.get("code", "F"),
        "nilai": fields.get("nilai"),
    }
    return FindingRecord.from_document(doc_id, data)


@pytest.fixture
def records():
    return [
        record("a", year=2024, department="IT", nilai=6),
        record("b", year="2024", department="HC", nilai=4),
        record("c", year=2023, department="IT", nilai=8),
        record("d", year=2022, department="IT"),
        record("e", year=None, department="HC", nilai=2),
    ]


class TestSortKeys:
    def test_numeric_keys_sort_numerically(self):
        assert sort_keys([10, 9, 2024, 100]) == [9, 10, 100, 2024]

    def test_text_keys_sort_case_insensitively(self):
        assert sort_keys(["beta", "Alpha", "gamma"]) == ["Alpha", "beta", "gamma"]

    def test_missing_sorts_last(self):
        assert sort_keys([MISSING_LABEL, 2023, 2022]) == [2022, 2023, MISSING_LABEL]


class TestAggregate:
    @pytest.fixture
    def aggregator(self):
        return Aggregator()

    def test_empty_input(self, aggregator):
        result = aggregator.aggregate([], AggregationDirective(("year",)))
        assert result.is_empty
        assert result.series.is_empty
        assert result.to_dict()["rows"] == []

    def test_count_by_year(self, aggregator, records):
        result = aggregator.aggregate(records, AggregationDirective(("year",)))

        assert [row.group_value for row in result.rows] == [2022, 2023, 2024, MISSING_LABEL]
        assert [row.count for row in result.rows] == [1, 1, 2, 1]
        assert result.series.categories == [2022, 2023, 2024, MISSING_LABEL]
        assert result.series.series == [{"name": "count", "values": [1, 1, 2, 1]}]

    def test_metric_ignores_missing_values(self, aggregator, records):
        result = aggregator.aggregate(records, AggregationDirective(("department",), "avg", "nilai"))

        by_department = {row.group_value: row for row in result.rows}
        assert by_department["IT"].count == 3
        assert by_department["IT"].avg == pytest.approx(7.0)
        assert by_department["IT"].sum == 14.0
        assert by_department["HC"].min == 2.0
        assert result.series.series[0]["name"] == "avg nilai"

    def test_two_dimensional_fills_missing_combinations(self, aggregator, records):
        result = aggregator.aggregate(records, AggregationDirective(("department", "year")))

        assert result.series.categories == [2022, 2023, 2024, MISSING_LABEL]
        assert result.series.series == [
            {"name": "HC", "values": [0, 0, 1, 1]},
            {"name": "IT", "values": [1, 1, 1, 0]},
        ]
        assert len(result.rows) == 5

    def test_result_does_not_depend_on_record_order(self, aggregator, records):
        directive = AggregationDirective(("department", "year"), "sum", "nilai")
        expected = aggregator.aggregate(records, directive).to_dict()

        shuffled = list(records)
        random.Random(7).shuffle(shuffled)

        assert aggregator.aggregate(shuffled, directive).to_dict() == expected

    def test_row_to_dict_rounds_metrics(self, aggregator, records):
        result = aggregator.aggregate(records, AggregationDirective(("code",), "avg", "nilai"))
        row = result.to_dict()["rows"][0]
        assert row == {"group": "F", "count": 5, "sum": 20.0, "avg": 5.0, "min": 2.0, "max": 8.0}
