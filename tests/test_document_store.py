"""
Unit tests for the document store adapters.

Tests cover:
- Strict value typing (2024 vs "2024")
- Pagination and limits
- Membership constraints
- Firestore runQuery body construction, decoding and retries
"""
from unittest.mock import Mock, patch

import pytest
import requests

from config.settings import StoreConfig
from src.core.error_taxonomy import StoreConstraintError, StoreQueryError
from src.tools.document_store import (
    OP_EQUAL,
    OP_IN,
    FirestoreRESTStore,
    InMemoryDocumentStore,
    StoreFilter,
    decode_value,
    encode_value,
)

FINDINGS = "audit-results"


class TestInMemoryDocumentStore:
    def test_strict_typing(self, store):
        as_int = list(store.stream(FINDINGS, [StoreFilter("year", OP_EQUAL, 2024)]))
        as_str = list(store.stream(FINDINGS, [StoreFilter("year", OP_EQUAL, "2024")]))
        both = list(store.stream(FINDINGS, [StoreFilter("year", OP_IN, (2024, "2024"))]))

        assert all(data["year"] == 2024 for _, data in as_int)
        assert all(data["year"] == "2024" for _, data in as_str)
        assert len(both) == len(as_int) + len(as_str)

    def test_pages_follow_id_order(self, store):
        first = store.query(FINDINGS, [], page_size=4)
        second = store.query(FINDINGS, [], page_size=4, start_after=first.next_cursor)

        ids = [doc_id for doc_id, _ in first.documents + second.documents]
        assert ids == sorted(ids)
        assert len(set(ids)) == 8
        assert first.next_cursor == first.documents[-1][0]

    def test_last_page_has_no_cursor(self, store):
        page = store.query(FINDINGS, [], page_size=100)
        assert len(page.documents) == store.count(FINDINGS)
        assert page.next_cursor is None

    def test_stream_respects_limit(self, store):
        assert len(list(store.stream(FINDINGS, page_size=3, limit=5))) == 5

    def test_membership_over_limit_is_rejected(self, store):
        with pytest.raises(StoreConstraintError) as exc:
            store.query(FINDINGS, [StoreFilter("department", OP_IN, tuple(str(i) for i in range(11)))], 10)
        assert exc.value.limit == 10
        assert exc.value.size == 11

    def test_two_memberships_are_rejected(self, store):
        filters = [StoreFilter("department", OP_IN, ("IT",)), StoreFilter("code", OP_IN, ("F",))]
        with pytest.raises(StoreQueryError):
            store.query(FINDINGS, filters, 10)

    def test_add_uses_audit_result_id(self):
        store = InMemoryDocumentStore()
        assert store.add(FINDINGS, {"auditResultId": "AR-1", "year": 2024}) == "AR-1"

    def test_unknown_operator(self):
        with pytest.raises(ValueError):
            StoreFilter("year", ">", 2024)


class TestValueCodec:
    @pytest.mark.parametrize("value, encoded", [
        (2024, {"integerValue": "2024"}),
        ("2024", {"stringValue": "2024"}),
        (2.5, {"doubleValue": 2.5}),
        (True, {"booleanValue": True}),
        (None, {"nullValue": None}),
    ])
    def test_scalars(self, value, encoded):
        assert encode_value(value) == encoded
        assert decode_value(encoded) == value

    def test_array_and_map(self):
        assert decode_value(encode_value([2024, "2024"])) == [2024, "2024"]
        assert decode_value({"mapValue": {"fields": {"a": {"integerValue": "1"}}}}) == {"a": 1}


class TestFirestoreRESTStore:
    @pytest.fixture
    def config(self):
        return StoreConfig(project_id="audit-prod", database="(default)", api_token="token",
                           findings_collection=FINDINGS, request_timeout_seconds=5)

    @pytest.fixture
    def firestore(self, config):
        return FirestoreRESTStore(config, cardinality_limit=10)

    @staticmethod
    def response(status_code=200, payload=None, text=""):
        response = Mock()
        response.status_code = status_code
        response.json.return_value = payload if payload is not None else []
        response.text = text
        return response

    def test_structured_query_with_membership_and_cursor(self, firestore):
        body = firestore.build_structured_query(
            FINDINGS,
            [StoreFilter("code", OP_EQUAL, "F"), StoreFilter("year", OP_IN, (2024, "2024"))],
            page_size=300,
            start_after="AR-1",
        )

        query = body["structuredQuery"]
        assert query["from"] == [{"collectionId": FINDINGS}]
        assert query["limit"] == 300
        filters = query["where"]["compositeFilter"]["filters"]
        assert filters[0]["fieldFilter"] == {
            "field": {"fieldPath": "code"}, "op": "EQUAL", "value": {"stringValue": "F"},
        }
        assert filters[1]["fieldFilter"]["op"] == "IN"
        assert filters[1]["fieldFilter"]["value"] == {
            "arrayValue": {"values": [{"integerValue": "2024"}, {"stringValue": "2024"}]}
        }
        assert query["startAt"]["values"][0]["referenceValue"] == (
            "projects/audit-prod/databases/(default)/documents/audit-results/AR-1"
        )

    def test_single_filter_is_not_composite(self, firestore):
        body = firestore.build_structured_query(FINDINGS, [StoreFilter("code", OP_EQUAL, "F")], 10)
        assert "fieldFilter" in body["structuredQuery"]["where"]

    def test_query_decodes_documents(self, firestore):
        payload = [
            {"document": {
                "name": "projects/audit-prod/databases/(default)/documents/audit-results/AR-1",
                "fields": {"year": {"stringValue": "2024"}, "bobot": {"integerValue": "3"}},
            }},
            {"readTime": "2025-01-01T00:00:00Z"},
        ]
        session = Mock()
        session.post.return_value = self.response(payload=payload)

        with patch.object(firestore, "_get_session", return_value=session):
            page = firestore.query(FINDINGS, [], page_size=1)

        assert page.documents == [("AR-1", {"year": "2024", "bobot": 3})]
        assert page.next_cursor == "AR-1"
        url = session.post.call_args[0][0]
        assert url.endswith("/projects/audit-prod/databases/(default)/documents:runQuery")

    def test_retries_transient_errors(self, firestore):
        session = Mock()
        session.post.side_effect = [self.response(503, text="unavailable"), self.response(payload=[])]

        with patch.object(firestore, "_get_session", return_value=session), patch("time.sleep"):
            page = firestore.query(FINDINGS, [], page_size=10)

        assert page.documents == []
        assert session.post.call_count == 2

    def test_client_error_is_not_retried(self, firestore):
        session = Mock()
        session.post.return_value = self.response(403, text="PERMISSION_DENIED")

        with patch.object(firestore, "_get_session", return_value=session):
            with pytest.raises(StoreQueryError) as exc:
                firestore.query(FINDINGS, [], page_size=10)

        assert exc.value.status_code == 403
        assert session.post.call_count == 1

    def test_repeated_timeouts_fail(self, firestore):
        session = Mock()
        session.post.side_effect = requests.Timeout("slow")

        with patch.object(firestore, "_get_session", return_value=session), patch("time.sleep"):
            with pytest.raises(StoreQueryError):
                firestore.query(FINDINGS, [], page_size=10)

        assert session.post.call_count == FirestoreRESTStore.MAX_RETRIES

    def test_membership_limit_checked_before_request(self, firestore):
        session = Mock()
        with patch.object(firestore, "_get_session", return_value=session):
            with pytest.raises(StoreConstraintError):
                firestore.query(FINDINGS, [StoreFilter("department", OP_IN, tuple("abcdefghijk"))], 10)
        session.post.assert_not_called()
