"""
Aggregation Engine

Groups finding records by one or two dimensions and computes count plus the
requested numeric metric. Deterministic: bucket order depends only on the
bucket keys, never on record order.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from src.core.filter_spec import FIELD_LABELS, AggregationDirective
from src.data.records import FindingRecord

logger = logging.getLogger(__name__)

MISSING_LABEL = "(none)"


@dataclass
class AggregationRow:
    """One bucket. ``group_value`` is a scalar for 1D and a (series, category) tuple for 2D."""
    group_value: Any
    count: int
    sum: Optional[float] = None
    avg: Optional[float] = None
    min: Optional[float] = None
    max: Optional[float] = None

    def metric_value(self, metric: str) -> Optional[float]:
        if metric == "count":
            return self.count
        return getattr(self, metric)

    def to_dict(self) -> Dict[str, Any]:
        value = list(self.group_value) if isinstance(self.group_value, tuple) else self.group_value
        row = {"group": value, "count": self.count}
        for name in ("sum", "avg", "min", "max"):
            if getattr(self, name) is not None:
                row[name] = round(getattr(self, name), 4)
        return row


@dataclass
class AggregationSeries:
    """Chart payload: shared category axis plus one value list per series."""
    categories: List[Any] = field(default_factory=list)
    series: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.categories

    def to_dict(self) -> Dict[str, Any]:
        return {"categories": list(self.categories), "series": [dict(s) for s in self.series]}


@dataclass
class AggregationResult:
    directive: AggregationDirective
    rows: List[AggregationRow]
    series: AggregationSeries

    @property
    def is_empty(self) -> bool:
        return not self.rows

    def to_dict(self) -> Dict[str, Any]:
        return {
            "groupBy": list(self.directive.group_by),
            "metric": self.directive.metric,
            "metricField": self.directive.metric_field,
            "rows": [r.to_dict() for r in self.rows],
        }


def _bucket_value(record: FindingRecord, field_name: str) -> Any:
    value = record.get(field_name)
    if value is None or value == "":
        return MISSING_LABEL
    return value


def sort_keys(keys: Sequence[Any]) -> List[Any]:
    """Numeric keys ascending when every key is numeric-like, otherwise case-insensitive text."""
    def as_number(key):
        if isinstance(key, bool):
            return None
        if isinstance(key, (int, float)):
            return key
        try:
            return float(str(key))
        except ValueError:
            return None

    present = [k for k in keys if k != MISSING_LABEL]
    missing = [k for k in keys if k == MISSING_LABEL]
    numbers = [as_number(k) for k in present]
    if present and all(n is not None for n in numbers):
        ordered = [k for _, k in sorted(zip(numbers, present), key=lambda pair: pair[0])]
    else:
        ordered = sorted(present, key=lambda k: (str(k).lower(), str(k)))
    # Missing values always last
    return ordered + missing


class Aggregator:
    """Computes AggregationResults from normalised records."""

    def aggregate(self, records: Sequence[FindingRecord], directive: AggregationDirective) -> AggregationResult:
        if not records:
            logger.info(f"Aggregation {directive.describe()} over empty result")
            return AggregationResult(directive=directive, rows=[], series=AggregationSeries())

        buckets: Dict[Tuple[Any, ...], List[FindingRecord]] = defaultdict(list)
        for record in records:
            key = tuple(_bucket_value(record, g) for g in directive.group_by)
            buckets[key].append(record)

        if directive.is_two_dimensional:
            result = self._aggregate_2d(buckets, directive)
        else:
            result = self._aggregate_1d(buckets, directive)
        logger.info(
            f"Aggregated {len(records)} records into {len(result.rows)} buckets ({directive.describe()})"
        )
        return result

    def _aggregate_1d(self, buckets, directive: AggregationDirective) -> AggregationResult:
        keys = sort_keys([key[0] for key in buckets])
        rows = [self._row(key, buckets[(key,)], directive.metric_field) for key in keys]
        name = self._series_name(directive)
        series = AggregationSeries(
            categories=list(keys),
            series=[{"name": name, "values": [r.metric_value(directive.metric) for r in rows]}],
        )
        return AggregationResult(directive=directive, rows=rows, series=series)

    def _aggregate_2d(self, buckets, directive: AggregationDirective) -> AggregationResult:
        series_keys = sort_keys(list({key[0] for key in buckets}))
        category_keys = sort_keys(list({key[1] for key in buckets}))

        rows = []
        series = []
        for series_key in series_keys:
            values = []
            for category_key in category_keys:
                members = buckets.get((series_key, category_key))
                if members:
                    row = self._row((series_key, category_key), members, directive.metric_field)
                    rows.append(row)
                    values.append(row.metric_value(directive.metric))
                else:
                    # Missing combination
                    values.append(0)
            series.append({"name": series_key, "values": values})

        return AggregationResult(
            directive=directive,
            rows=rows,
            series=AggregationSeries(categories=list(category_keys), series=series),
        )

    @staticmethod
    def _row(group_value: Any, members: List[FindingRecord], metric_field: Optional[str]) -> AggregationRow:
        row = AggregationRow(group_value=group_value, count=len(members))
        if metric_field is None:
            return row
        values = [r.get(metric_field) for r in members if r.get(metric_field) is not None]
        if values:
            row.sum = float(sum(values))
            row.avg = row.sum / len(values)
            row.min = float(min(values))
            row.max = float(max(values))
        return row

    @staticmethod
    def _series_name(directive: AggregationDirective) -> str:
        if directive.metric == "count":
            return "count"
        return f"{directive.metric} {FIELD_LABELS.get(directive.metric_field, directive.metric_field)}"
