"""
Query Executor

Runs a CompiledQuery against a DocumentStore:
1. Each store query (one per membership chunk) is paginated in a worker thread
2. Chunks run concurrently and are merged by record id (first occurrence wins)
3. Documents are normalised into FindingRecords and tagged with their category
4. Post-filters are applied client-side

A failing chunk fails the whole query; the caller gets a QueryOutcome with a
typed error instead of an exception.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from src.core.error_taxonomy import AuditQueryError, QueryExecutionError, StoreConstraintError
from src.core.query_compiler import CompiledQuery, StoreQuery, chunk, matches_all
from src.data.department_directory import DepartmentDirectory
from src.data.records import FindingRecord
from src.tools.document_store import OP_IN, DocumentStore, StoreFilter

logger = logging.getLogger(__name__)


@dataclass
class QueryOutcome:
    """Result of executing a compiled query."""
    success: bool
    records: List[FindingRecord] = field(default_factory=list)
    truncated: bool = False
    error: Optional[QueryExecutionError] = None
    store_queries_run: int = 0
    elapsed_ms: float = 0.0

    @property
    def total_count(self) -> int:
        return len(self.records)

    @classmethod
    def ok(cls, records: List[FindingRecord], truncated: bool = False, **kwargs) -> "QueryOutcome":
        return cls(success=True, records=records, truncated=truncated, **kwargs)

    @classmethod
    def failure(cls, error: QueryExecutionError, **kwargs) -> "QueryOutcome":
        return cls(success=False, error=error, **kwargs)


class QueryExecutor:
    """Executes compiled queries with pagination and transparent splitting."""

    def __init__(
        self,
        store: DocumentStore,
        directory: Optional[DepartmentDirectory] = None,
        page_size: int = 300,
    ):
        self.store = store
        self.directory = directory
        self.page_size = page_size

    async def execute(self, compiled: CompiledQuery, fetch_all: bool = False) -> QueryOutcome:
        """Run every store query of ``compiled``. Never raises."""
        start = time.time()

        if compiled.unsatisfiable:
            logger.info(f"Skipping store: filters cannot match ({'; '.join(compiled.notes)})")
            return QueryOutcome.ok([], elapsed_ms=0.0)

        limit = None if fetch_all or compiled.scan_cap is None else compiled.scan_cap + 1
        tasks = [
            asyncio.to_thread(self._run_store_query, compiled.collection, query, limit)
            for query in compiled.store_queries
        ]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        merged: Dict[str, FindingRecord] = {}
        for query, result in zip(compiled.store_queries, results):
            if isinstance(result, BaseException):
                return QueryOutcome.failure(
                    self._to_execution_error(result, query),
                    store_queries_run=len(results),
                    elapsed_ms=(time.time() - start) * 1000,
                )
            for doc_id, data in result:
                if doc_id in merged:
                    continue
                merged[doc_id] = self._to_record(doc_id, data)

        truncated = False
        records = list(merged.values())
        if limit is not None and len(records) > compiled.scan_cap:
            truncated = True
            records = records[:compiled.scan_cap]
            logger.warning(
                f"Full scan without narrowing stopped at {compiled.scan_cap} rows; result is truncated"
            )

        before = len(records)
        try:
            records = [r for r in records if matches_all(r, compiled.post_filters)]
        except Exception as e:
            return QueryOutcome.failure(
                QueryExecutionError(
                    f"Post-filter failed: {e}",
                    predicate=", ".join(p.describe() for p in compiled.post_filters),
                    cause=e,
                ),
                store_queries_run=len(results),
            )

        elapsed = (time.time() - start) * 1000
        logger.info(
            f"Executed {len(compiled.store_queries)} store queries: {before} fetched, "
            f"{len(records)} after post-filters ({elapsed:.0f}ms)"
        )
        return QueryOutcome.ok(
            records,
            truncated=truncated,
            store_queries_run=len(results),
            elapsed_ms=elapsed,
        )

    def _run_store_query(
        self,
        collection: str,
        query: StoreQuery,
        limit: Optional[int],
    ) -> List[Tuple[str, dict]]:
        """Paginate one store query; a rejected membership list is split and retried."""
        try:
            return list(self.store.stream(collection, query.filters, self.page_size, limit))
        except StoreConstraintError as e:
            return self._run_split(collection, query, e.limit, limit)

    def _run_split(
        self,
        collection: str,
        query: StoreQuery,
        store_limit: int,
        limit: Optional[int],
    ) -> List[Tuple[str, dict]]:
        membership = next((f for f in query.filters if f.op == OP_IN), None)
        if membership is None or store_limit < 1 or len(membership.value) <= store_limit:
            raise QueryExecutionError(
                "Store rejected the query and it cannot be split further",
                predicate=query.describe(),
            )
        others = tuple(f for f in query.filters if f is not membership)
        parts = chunk(list(membership.value), store_limit)
        logger.info(f"Store limit is {store_limit}; splitting {membership.field} into {len(parts)} queries")

        documents: List[Tuple[str, dict]] = []
        for i, values in enumerate(parts):
            sub = StoreQuery(
                filters=others + (StoreFilter(membership.field, OP_IN, tuple(values)),),
                chunk_index=i,
                chunk_count=len(parts),
            )
            documents.extend(self._run_store_query(collection, sub, limit))
        return documents

    def _to_record(self, doc_id: str, data: dict) -> FindingRecord:
        record = FindingRecord.from_document(doc_id, data)
        if self.directory is not None:
            record = record.with_category(self.directory.category_of(record.department))
        return record

    @staticmethod
    def _to_execution_error(error: BaseException, query: StoreQuery) -> QueryExecutionError:
        if isinstance(error, QueryExecutionError):
            return error
        logger.error(f"Store query failed ({query.describe()}): {type(error).__name__}: {error}")
        message = str(error) if isinstance(error, AuditQueryError) else f"{type(error).__name__}: {error}"
        return QueryExecutionError(
            f"Store query failed: {message}",
            predicate=query.describe(),
            cause=error if isinstance(error, Exception) else None,
        )
