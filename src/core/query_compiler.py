"""
Query Compiler

Converts a resolved FilterSpec into document-store queries plus client-side
post-filters. This is where the store's constraints are respected:

- at most one membership ("in") filter per store query, holding at most
  ``cardinality_limit`` values; larger value sets are split into disjoint
  chunks, one store query per chunk
- year is stored as both ``2024`` and ``"2024"``, so a pushed-down year filter
  lists both variants; when another membership filter is pushed instead, the
  year is checked client-side on the normalised value
- exact ``code``/``project_name`` equality is pushed down; substring, prefix,
  numeric range, ``ne`` and case-insensitive comparisons run client-side

Without any pushed-down filter the query is a capped full scan and the result
is flagged as truncated when more rows exist.
"""
import logging
import math
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, FrozenSet, List, Optional, Sequence, Tuple

from src.core.filter_spec import FilterSpec, Predicate
from src.data.department_directory import DepartmentDirectory
from src.data.records import STORE_FIELD_NAMES, FindingRecord, classify_code, coerce_number, coerce_year
from src.tools.document_store import OP_EQUAL, OP_IN, StoreFilter

logger = logging.getLogger(__name__)

# Bounded year ranges up to this span are expanded into a membership list
MAX_YEAR_SPAN = 30


@dataclass(frozen=True)
class StoreQuery:
    """One native query: exact filters plus at most one membership chunk."""
    filters: Tuple[StoreFilter, ...] = ()
    chunk_index: int = 0
    chunk_count: int = 1

    def describe(self) -> str:
        if not self.filters:
            return "full scan"
        text = " AND ".join(f.describe() for f in self.filters)
        if self.chunk_count > 1:
            text += f" (batch {self.chunk_index + 1}/{self.chunk_count})"
        return text


@dataclass(frozen=True)
class CompiledQuery:
    """Store queries to run, post-filters to apply, and scan limits."""
    spec: FilterSpec
    collection: str
    store_queries: Tuple[StoreQuery, ...]
    post_filters: Tuple[Predicate, ...] = ()
    pushed_down: Tuple[Predicate, ...] = ()
    has_narrowing: bool = False
    scan_cap: Optional[int] = None
    unsatisfiable: bool = False
    notes: Tuple[str, ...] = ()

    def describe(self) -> str:
        queries = "; ".join(q.describe() for q in self.store_queries) or "none"
        post = ", ".join(p.describe() for p in self.post_filters) or "none"
        return f"{len(self.store_queries)} store quer{'y' if len(self.store_queries) == 1 else 'ies'} [{queries}], post-filters [{post}]"


@dataclass
class _Membership:
    """A candidate membership filter before chunking."""
    field: str
    values: List[Any]
    sources: List[Predicate] = field(default_factory=list)


def _values(predicate: Predicate) -> FrozenSet:
    if predicate.operator == "in":
        return predicate.value
    return frozenset([predicate.value])


def _sort_key(value: Any):
    return (str(type(value).__name__), str(value).lower())


def chunk(values: Sequence[Any], size: int) -> List[List[Any]]:
    """Split values into consecutive disjoint chunks of at most ``size``."""
    if size < 1:
        raise ValueError("chunk size must be positive")
    return [list(values[i:i + size]) for i in range(0, len(values), size)]


class QueryCompiler:
    """Compiles filter specifications for one findings collection."""

    def __init__(
        self,
        collection: str = "audit-results",
        cardinality_limit: int = 10,
        max_scan_rows: int = 2000,
        directory: Optional[DepartmentDirectory] = None,
        clock: Callable[[], date] = date.today,
    ):
        if cardinality_limit < 1:
            raise ValueError("cardinality_limit must be at least 1")
        self.collection = collection
        self.cardinality_limit = cardinality_limit
        self.max_scan_rows = max_scan_rows
        self.directory = directory
        self.clock = clock

    def compile(self, spec: FilterSpec, today: Optional[date] = None) -> CompiledQuery:
        resolved = spec.resolve(today or self.clock())
        notes: List[str] = []

        exact: List[StoreFilter] = []
        pushed: List[Predicate] = []
        post: List[Predicate] = []
        department_sets: List[FrozenSet[str]] = []
        department_sources: List[Predicate] = []
        other_memberships: List[_Membership] = []
        year_predicates: List[Predicate] = []

        for predicate in resolved.predicates:
            field_name = predicate.field
            op = predicate.operator

            if field_name == "category" and op in ("eq", "in") and self.directory is not None:
                names = set()
                for category in _values(predicate):
                    label = self.directory.catalog.canonical_label(str(category)) or str(category)
                    names |= self.directory.names_for_category(label)
                if names:
                    department_sets.append(frozenset(names))
                    department_sources.append(predicate)
                else:
                    post.append(predicate)
                continue

            if field_name == "department" and op in ("eq", "in"):
                department_sets.append(frozenset(str(v) for v in _values(predicate)))
                department_sources.append(predicate)
                continue

            if field_name == "year":
                year_predicates.append(predicate)
                continue

            if field_name in ("code", "project_name") and op == "eq" and isinstance(predicate.value, str):
                exact.append(StoreFilter(STORE_FIELD_NAMES[field_name], OP_EQUAL, predicate.value))
                pushed.append(predicate)
                continue

            if field_name in ("code", "project_name") and op == "in":
                other_memberships.append(_Membership(
                    STORE_FIELD_NAMES[field_name],
                    sorted(_values(predicate), key=_sort_key),
                    [predicate],
                ))
                continue

            post.append(predicate)

        unsatisfiable = False
        membership: Optional[_Membership] = None

        if department_sets:
            names = frozenset.intersection(*department_sets)
            if not names:
                unsatisfiable = True
                notes.append("department filters have no name in common")
            membership = _Membership(STORE_FIELD_NAMES["department"], sorted(names, key=_sort_key), department_sources)

        if membership is None and other_memberships:
            membership = other_memberships.pop(0)
        post.extend(p for m in other_memberships for p in m.sources)

        if year_predicates:
            years = self._year_values(year_predicates)
            if years is not None and not years:
                unsatisfiable = True
                notes.append("year filters exclude every year")
            if membership is None and years:
                # Both storage variants of each year
                variants = []
                for year in years:
                    variants.extend([year, str(year)])
                membership = _Membership(STORE_FIELD_NAMES["year"], variants, year_predicates)
            else:
                post.extend(year_predicates)

        store_queries: List[StoreQuery] = []
        if membership is not None and membership.values:
            pushed.extend(membership.sources)
            chunks = chunk(membership.values, self.cardinality_limit)
            for i, values in enumerate(chunks):
                filters = tuple(exact) + (StoreFilter(membership.field, OP_IN, tuple(values)),)
                store_queries.append(StoreQuery(filters=filters, chunk_index=i, chunk_count=len(chunks)))
            if len(chunks) > 1:
                notes.append(
                    f"{membership.field} has {len(membership.values)} values; "
                    f"split into {len(chunks)} queries of at most {self.cardinality_limit}"
                )
        elif not unsatisfiable:
            store_queries.append(StoreQuery(filters=tuple(exact)))

        has_narrowing = bool(pushed)
        scan_cap = None if has_narrowing else self.max_scan_rows
        if unsatisfiable:
            store_queries = []

        compiled = CompiledQuery(
            spec=resolved,
            collection=self.collection,
            store_queries=tuple(store_queries),
            post_filters=tuple(post),
            pushed_down=tuple(pushed),
            has_narrowing=has_narrowing,
            scan_cap=scan_cap,
            unsatisfiable=unsatisfiable,
            notes=tuple(notes),
        )
        logger.info(f"Compiled {resolved.describe()} -> {compiled.describe()}")
        return compiled

    @staticmethod
    def _year_values(predicates: List[Predicate]) -> Optional[List[int]]:
        """Finite list of years allowed by the predicates, or None when unbounded."""
        allowed = None
        low, high = None, None
        excluded = set()
        for p in predicates:
            if p.operator in ("eq", "in"):
                years = {coerce_year(v) for v in _values(p)} - {None}
                allowed = years if allowed is None else allowed & years
                continue
            if p.operator == "ne":
                excluded.add(coerce_year(p.value))
                continue
            bound = coerce_number(p.value)
            if bound is None or p.operator not in ("gt", "gte", "lt", "lte"):
                # contains / prefix on a year: not a bounded set
                return None
            if p.operator == "gte":
                candidate = int(math.ceil(bound))
                low = candidate if low is None else max(low, candidate)
            elif p.operator == "gt":
                candidate = int(math.floor(bound)) + 1
                low = candidate if low is None else max(low, candidate)
            elif p.operator == "lte":
                candidate = int(math.floor(bound))
                high = candidate if high is None else min(high, candidate)
            else:
                candidate = int(math.ceil(bound)) - 1
                high = candidate if high is None else min(high, candidate)

        if allowed is None:
            if low is None or high is None or high - low > MAX_YEAR_SPAN:
                return None
            allowed = set(range(low, high + 1)) if low <= high else set()
        allowed = {
            y for y in allowed
            if (low is None or y >= low) and (high is None or y <= high) and y not in excluded
        }
        return sorted(allowed)


# =============================================================================
# CLIENT-SIDE EVALUATION
# =============================================================================

def _text(value: Any) -> str:
    return "" if value is None else str(value).strip().lower()


def matches(record: FindingRecord, predicate: Predicate) -> bool:
    """Evaluate one predicate against a normalised record."""
    field_name = predicate.field
    op = predicate.operator
    value = predicate.value
    actual = record.get(field_name)

    if field_name in ("year", "bobot", "kadar", "nilai"):
        if actual is None:
            return op == "ne"
        if field_name == "year":
            targets = [coerce_year(v) for v in _values(predicate)] if op in ("eq", "in", "ne") else None
        else:
            targets = [coerce_number(v) for v in _values(predicate)] if op in ("eq", "in", "ne") else None

        if op in ("eq", "in"):
            return actual in targets
        if op == "ne":
            return actual not in targets
        if op in ("contains", "prefix"):
            text = str(actual)
            return value_in(text, str(value), op)
        bound = coerce_number(value)
        if bound is None:
            return False
        if op == "gt":
            return actual > bound
        if op == "gte":
            return actual >= bound
        if op == "lt":
            return actual < bound
        if op == "lte":
            return actual <= bound
        return False

    if field_name == "code_type":
        actual = classify_code(record.code)

    text = _text(actual)
    if op in ("eq", "in"):
        return text in {_text(v) for v in _values(predicate)}
    if op == "ne":
        return text != _text(value)
    if op in ("contains", "prefix"):
        return value_in(text, _text(value), op)
    # Ordering comparisons on text fields compare case-insensitively
    if op == "gt":
        return text > _text(value)
    if op == "gte":
        return text >= _text(value)
    if op == "lt":
        return text < _text(value)
    if op == "lte":
        return text <= _text(value)
    return False


def value_in(text: str, needle: str, op: str) -> bool:
    text, needle = text.lower(), needle.lower()
    if op == "prefix":
        return text.startswith(needle)
    # Whitespace-insensitive substring so "ciputra  cibubur" still matches
    return " ".join(needle.split()) in " ".join(text.split())


def matches_all(record: FindingRecord, predicates: Sequence[Predicate]) -> bool:
    return all(matches(record, p) for p in predicates)
