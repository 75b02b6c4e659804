"""
Document Store Access

The engine only needs three capabilities from the store holding findings and
departments: exact-match filters, a bounded membership filter, and paginated
scans. ``DocumentStore`` captures that contract; two implementations:

1. InMemoryDocumentStore - tests and local sample data
2. FirestoreRESTStore - Firestore ``runQuery`` over REST (requests)

Both compare stored values strictly by type, like Firestore does: a filter on
``2024`` does not match a document storing ``"2024"``.
"""
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

import requests

from config.settings import StoreConfig
from src.core.error_taxonomy import StoreConstraintError, StoreQueryError
from src.data.records import derive_finding_id

logger = logging.getLogger(__name__)

OP_EQUAL = "=="
OP_IN = "in"


@dataclass(frozen=True)
class StoreFilter:
    """A natively evaluated filter: ``field == value`` or ``field in values``."""
    field: str
    op: str
    value: Any

    def __post_init__(self):
        if self.op not in (OP_EQUAL, OP_IN):
            raise ValueError(f"Unsupported store operator: {self.op}")
        if self.op == OP_IN and not isinstance(self.value, tuple):
            object.__setattr__(self, "value", tuple(self.value))

    def describe(self) -> str:
        if self.op == OP_IN:
            shown = ", ".join(repr(v) for v in self.value[:6])
            more = f", +{len(self.value) - 6} more" if len(self.value) > 6 else ""
            return f"{self.field} in [{shown}{more}]"
        return f"{self.field} == {self.value!r}"


@dataclass
class StorePage:
    """One page of documents as (id, data) pairs, plus a cursor when more may follow."""
    documents: List[Tuple[str, Dict[str, Any]]] = field(default_factory=list)
    next_cursor: Optional[str] = None


class DocumentStore(ABC):
    """Read interface the engine depends on."""

    def __init__(self, cardinality_limit: int = 10):
        self.cardinality_limit = cardinality_limit

    @abstractmethod
    def query(
        self,
        collection: str,
        filters: Sequence[StoreFilter],
        page_size: int,
        start_after: Optional[str] = None,
    ) -> StorePage:
        """Fetch one page of documents matching all filters, ordered by id."""
        pass

    def _check_filters(self, filters: Sequence[StoreFilter]) -> None:
        memberships = [f for f in filters if f.op == OP_IN]
        if len(memberships) > 1:
            raise StoreQueryError(
                "Only one membership filter is allowed per query",
                context={"filters": [f.describe() for f in filters]},
            )
        for f in memberships:
            if len(f.value) > self.cardinality_limit:
                raise StoreConstraintError(
                    f"Membership filter on {f.field} has {len(f.value)} values "
                    f"(limit {self.cardinality_limit})",
                    limit=self.cardinality_limit,
                    size=len(f.value),
                )

    def stream(
        self,
        collection: str,
        filters: Sequence[StoreFilter] = (),
        page_size: int = 300,
        limit: Optional[int] = None,
    ) -> Iterator[Tuple[str, Dict[str, Any]]]:
        """Iterate over all matching documents page by page, stopping at ``limit``."""
        cursor = None
        yielded = 0
        while True:
            size = page_size if limit is None else min(page_size, limit - yielded)
            if size <= 0:
                return
            page = self.query(collection, filters, size, start_after=cursor)
            for doc in page.documents:
                yield doc
                yielded += 1
            if page.next_cursor is None or not page.documents:
                return
            cursor = page.next_cursor


class InMemoryDocumentStore(DocumentStore):
    """Dict-backed store with Firestore-like filter semantics."""

    def __init__(self, cardinality_limit: int = 10):
        super().__init__(cardinality_limit)
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.query_log: List[Tuple[str, Tuple[StoreFilter, ...]]] = []

    def add(self, collection: str, document: Mapping[str, Any], doc_id: Optional[str] = None) -> str:
        """Store a document; the id defaults to a content hash of the finding."""
        doc_id = doc_id or document.get("auditResultId") or derive_finding_id(document)
        docs = self._collections.setdefault(collection, {})
        if doc_id in docs:
            logger.debug(f"Overwriting {collection}/{doc_id}")
        docs[doc_id] = dict(document)
        return doc_id

    def add_many(self, collection: str, documents: Sequence[Mapping[str, Any]]) -> List[str]:
        return [self.add(collection, doc) for doc in documents]

    def count(self, collection: str) -> int:
        return len(self._collections.get(collection, {}))

    @staticmethod
    def _matches(data: Mapping[str, Any], flt: StoreFilter) -> bool:
        if flt.field not in data:
            return False
        stored = data[flt.field]
        candidates = flt.value if flt.op == OP_IN else (flt.value,)
        # Strict typing: "2024" and 2024 are different values
        return any(type(stored) is type(c) and stored == c for c in candidates)

    def query(
        self,
        collection: str,
        filters: Sequence[StoreFilter],
        page_size: int,
        start_after: Optional[str] = None,
    ) -> StorePage:
        self._check_filters(filters)
        self.query_log.append((collection, tuple(filters)))

        docs = self._collections.get(collection, {})
        matched = []
        for doc_id in sorted(docs):
            if start_after is not None and doc_id <= start_after:
                continue
            data = docs[doc_id]
            if all(self._matches(data, f) for f in filters):
                matched.append((doc_id, dict(data)))
                if len(matched) > page_size:
                    break

        page = matched[:page_size]
        next_cursor = page[-1][0] if len(matched) > page_size else None
        return StorePage(documents=page, next_cursor=next_cursor)


# =============================================================================
# FIRESTORE REST
# =============================================================================

def encode_value(value: Any) -> Dict[str, Any]:
    """Python value -> Firestore REST ``Value``."""
    if value is None:
        return {"nullValue": None}
    if isinstance(value, bool):
        return {"booleanValue": value}
    if isinstance(value, int):
        return {"integerValue": str(value)}
    if isinstance(value, float):
        return {"doubleValue": value}
    if isinstance(value, (list, tuple)):
        return {"arrayValue": {"values": [encode_value(v) for v in value]}}
    if isinstance(value, dict):
        return {"mapValue": {"fields": {k: encode_value(v) for k, v in value.items()}}}
    return {"stringValue": str(value)}


def decode_value(value: Mapping[str, Any]) -> Any:
    """Firestore REST ``Value`` -> Python value."""
    if "stringValue" in value:
        return value["stringValue"]
    if "integerValue" in value:
        return int(value["integerValue"])
    if "doubleValue" in value:
        return float(value["doubleValue"])
    if "booleanValue" in value:
        return value["booleanValue"]
    if "nullValue" in value:
        return None
    if "timestampValue" in value:
        return value["timestampValue"]
    if "referenceValue" in value:
        return value["referenceValue"]
    if "arrayValue" in value:
        return [decode_value(v) for v in value["arrayValue"].get("values", [])]
    if "mapValue" in value:
        return {k: decode_value(v) for k, v in value["mapValue"].get("fields", {}).items()}
    logger.warning(f"Unknown Firestore value type: {list(value.keys())}")
    return None


class FirestoreRESTStore(DocumentStore):
    """
    Firestore access through the REST ``runQuery`` endpoint.

    Pagination orders by document name and resumes after the last name seen.
    """

    BASE_URL = "https://firestore.googleapis.com/v1"
    MAX_RETRIES = 3

    def __init__(self, config: StoreConfig, cardinality_limit: int = 10):
        super().__init__(cardinality_limit)
        self.config = config
        self._session: Optional[requests.Session] = None

    @property
    def documents_path(self) -> str:
        return f"projects/{self.config.project_id}/databases/{self.config.database}/documents"

    def _get_session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
            self._session.headers.update({
                "Authorization": f"Bearer {self.config.api_token}",
                "Content-Type": "application/json",
            })
        return self._session

    def build_structured_query(
        self,
        collection: str,
        filters: Sequence[StoreFilter],
        page_size: int,
        start_after: Optional[str] = None,
    ) -> Dict[str, Any]:
        query: Dict[str, Any] = {
            "from": [{"collectionId": collection}],
            "orderBy": [{"field": {"fieldPath": "__name__"}, "direction": "ASCENDING"}],
            "limit": page_size,
        }
        field_filters = [
            {
                "fieldFilter": {
                    "field": {"fieldPath": f.field},
                    "op": "IN" if f.op == OP_IN else "EQUAL",
                    "value": encode_value(list(f.value) if f.op == OP_IN else f.value),
                }
            }
            for f in filters
        ]
        if len(field_filters) == 1:
            query["where"] = field_filters[0]
        elif field_filters:
            query["where"] = {"compositeFilter": {"op": "AND", "filters": field_filters}}
        if start_after:
            query["startAt"] = {
                "values": [{"referenceValue": f"{self.documents_path}/{collection}/{start_after}"}],
                "before": False,
            }
        return {"structuredQuery": query}

    def query(
        self,
        collection: str,
        filters: Sequence[StoreFilter],
        page_size: int,
        start_after: Optional[str] = None,
    ) -> StorePage:
        self._check_filters(filters)
        url = f"{self.BASE_URL}/{self.documents_path}:runQuery"
        body = self.build_structured_query(collection, filters, page_size, start_after)
        payload = self._post_with_retry(url, body)

        documents = []
        for item in payload:
            document = item.get("document")
            if not document:
                continue
            doc_id = document["name"].rsplit("/", 1)[-1]
            data = {k: decode_value(v) for k, v in document.get("fields", {}).items()}
            documents.append((doc_id, data))

        next_cursor = documents[-1][0] if len(documents) == page_size else None
        logger.debug(f"Firestore {collection}: {len(documents)} docs ({', '.join(f.describe() for f in filters) or 'scan'})")
        return StorePage(documents=documents, next_cursor=next_cursor)

    def _post_with_retry(self, url: str, body: Dict[str, Any]) -> List[Dict[str, Any]]:
        last_error: Optional[Exception] = None
        for attempt in range(1, self.MAX_RETRIES + 1):
            try:
                response = self._get_session().post(url, json=body, timeout=self.config.request_timeout_seconds)
            except requests.Timeout as e:
                last_error = e
                logger.warning(f"Firestore request timed out (attempt {attempt}/{self.MAX_RETRIES})")
            except requests.RequestException as e:
                raise StoreQueryError(f"Firestore request failed: {e}")
            else:
                if response.status_code in (429, 500, 503) and attempt < self.MAX_RETRIES:
                    logger.warning(f"Firestore returned {response.status_code}, retrying (attempt {attempt})")
                    last_error = StoreQueryError(response.text[:200], status_code=response.status_code)
                elif response.status_code >= 400:
                    raise StoreQueryError(
                        f"Firestore query failed: {response.status_code} {response.text[:200]}",
                        status_code=response.status_code,
                    )
                else:
                    return response.json()
            if attempt < self.MAX_RETRIES:
                time.sleep(0.5 * 2 ** (attempt - 1))
        raise StoreQueryError(f"Firestore query failed after {self.MAX_RETRIES} attempts: {last_error}")
