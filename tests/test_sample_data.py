"""
Unit tests for the sample finding generator.
"""
from src.data.records import FindingRecord
from src.tools.sample_data import (
    SAMPLE_DEPARTMENTS,
    STRING_YEAR_BEFORE,
    build_sample_store,
    generate_sample_findings,
)


class TestGenerateSampleFindings:
    def test_same_seed_same_data(self):
        assert generate_sample_findings(count=50, seed=3) == generate_sample_findings(count=50, seed=3)

    def test_different_seed_different_data(self):
        assert generate_sample_findings(count=50, seed=3) != generate_sample_findings(count=50, seed=4)

    def test_ids_are_unique(self):
        documents = generate_sample_findings(count=200)
        ids = [d["auditResultId"] for d in documents]
        assert len(ids) == len(set(ids)) == 200

    def test_old_years_are_strings(self):
        for document in generate_sample_findings(count=200):
            if int(document["year"]) < STRING_YEAR_BEFORE:
                assert isinstance(document["year"], str)
            else:
                assert isinstance(document["year"], int)

    def test_restricted_choices(self):
        documents = generate_sample_findings(count=20, years=[2024], projects=["Mall Ciputra Cibubur"],
                                             departments=["IT"])
        assert {d["year"] for d in documents} == {2024}
        assert {d["projectName"] for d in documents} == {"Mall Ciputra Cibubur"}
        assert {d["department"] for d in documents} == {"IT"}

    def test_documents_normalise(self):
        for document in generate_sample_findings(count=50):
            record = FindingRecord.from_document(document["auditResultId"], document)
            assert record.department in SAMPLE_DEPARTMENTS
            assert record.bobot is not None


class TestBuildSampleStore:
    def test_store_holds_findings(self):
        store = build_sample_store(count=30, findings_collection="findings")
        assert store.count("findings") == 30
        assert store.count("departments") == 0
