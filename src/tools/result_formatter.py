"""
Result Formatter

Turns a query outcome (and optional aggregation) into the EngineResponse the
caller renders. The row table is capped for display; ``total_count`` always
reports the true number of matching findings, and the attached ExportRequest
re-runs the same resolved filters without any cap.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from src.core.error_taxonomy import ClassifiedError
from src.core.filter_spec import FIELD_LABELS, FilterSpec
from src.tools.aggregator import AggregationResult
from src.tools.query_executor import QueryOutcome

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExportRequest:
    """Serialisable handle for fetching every row of a resolved query."""
    spec: FilterSpec
    session_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"filters": self.spec.to_dict(), "sessionId": self.session_id, "signature": self.spec.signature()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExportRequest":
        return cls(spec=FilterSpec.from_dict(data["filters"]), session_id=data.get("sessionId"))

    def filename(self, extension: str = "json") -> str:
        """File name derived from the filters, e.g. ``findings_it_2024.json``."""
        parts = ["findings"]
        for predicate in self.spec.predicates:
            if predicate.operator == "in":
                values = sorted(str(v) for v in predicate.value)
                value = "-".join(values[:3]) + ("-etc" if len(values) > 3 else "")
            else:
                value = str(predicate.value)
            parts.append(value)
        slug = "_".join(parts).lower()
        slug = re.sub(r"[^a-z0-9_-]+", "-", slug).strip("-_")
        slug = re.sub(r"-{2,}", "-", slug)[:80].rstrip("-_")
        return f"{slug or 'findings'}_{self.spec.signature()[:6]}.{extension}"


@dataclass
class ExportResult:
    """Every row of an exported query, or the error that stopped the export."""
    request: ExportRequest
    rows: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[Dict[str, Any]] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    @property
    def total_count(self) -> int:
        return len(self.rows)

    def to_dict(self) -> Dict[str, Any]:
        return {"filters": self.request.to_dict(), "rows": self.rows, "error": self.error}


@dataclass
class EngineResponse:
    """What one turn returns to the caller."""
    answer_text: str
    total_count: int = 0
    rows: Optional[List[Dict[str, Any]]] = None
    aggregation: Optional[Dict[str, Any]] = None
    truncated: bool = False
    series: Optional[Dict[str, Any]] = None
    export_request: Optional[ExportRequest] = None
    resolved_filters: Optional[FilterSpec] = None
    turn_type: Optional[str] = None
    confidence: float = 1.0
    low_confidence: bool = False
    error: Optional[Dict[str, Any]] = None
    notes: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "answerText": self.answer_text,
            "rows": self.rows,
            "totalCount": self.total_count,
            "aggregation": self.aggregation,
            "truncated": self.truncated,
            "series": self.series,
            "exportRequest": self.export_request.to_dict() if self.export_request else None,
            "resolvedFilters": self.resolved_filters.to_dict() if self.resolved_filters else None,
            "turnType": self.turn_type,
            "confidence": self.confidence,
            "lowConfidence": self.low_confidence,
            "error": self.error,
            "notes": list(self.notes),
        }


class ResultFormatter:
    """Builds EngineResponses; rows, aggregation, or both."""

    def __init__(self, display_row_limit: int = 10):
        self.display_row_limit = display_row_limit

    def format(
        self,
        outcome: QueryOutcome,
        spec: FilterSpec,
        aggregation: Optional[AggregationResult] = None,
        session_id: Optional[str] = None,
        turn_type: Optional[str] = None,
        confidence: float = 1.0,
        low_confidence: bool = False,
        user_intent: str = "",
        notes: Optional[List[str]] = None,
        include_rows: bool = True,
    ) -> EngineResponse:
        total = outcome.total_count
        rows = None
        capped = False
        if include_rows:
            rows = [r.to_row() for r in outcome.records[:self.display_row_limit]]
            capped = total > self.display_row_limit

        text = self._answer_text(spec, total, len(rows) if rows is not None else 0, aggregation, outcome.truncated, user_intent)
        notes = list(notes or [])
        if low_confidence:
            text += "\nI was not sure whether you meant to continue the previous question; tell me if you wanted a new one."

        return EngineResponse(
            answer_text=text,
            total_count=total,
            rows=rows,
            aggregation=aggregation.to_dict() if aggregation is not None else None,
            truncated=capped or outcome.truncated,
            series=aggregation.series.to_dict() if aggregation is not None else None,
            export_request=ExportRequest(spec=spec, session_id=session_id),
            resolved_filters=spec,
            turn_type=turn_type,
            confidence=confidence,
            low_confidence=low_confidence,
            notes=notes,
        )

    def format_error(
        self,
        classified: ClassifiedError,
        spec: Optional[FilterSpec] = None,
        turn_type: Optional[str] = None,
    ) -> EngineResponse:
        text = classified.user_message or "Something went wrong while answering."
        if spec is not None:
            text += f"\nFilters: {spec.describe()}"
        return EngineResponse(
            answer_text=text,
            resolved_filters=spec,
            turn_type=turn_type,
            confidence=0.0,
            error=classified.to_dict(),
        )

    def _answer_text(
        self,
        spec: FilterSpec,
        total: int,
        shown: int,
        aggregation: Optional[AggregationResult],
        scan_truncated: bool,
        user_intent: str,
    ) -> str:
        lines = []
        if user_intent:
            lines.append(user_intent)

        noun = "finding" if total == 1 else "findings"
        lines.append(f"Found {total} {noun} for {spec.describe()}.")

        if scan_truncated:
            lines.append(
                "No narrowing filter was given, so only part of the collection was scanned; "
                "add a year, department or project to see everything."
            )
        if shown and total > shown:
            lines.append(f"Showing the first {shown}; export to get all {total}.")

        if aggregation is not None:
            if aggregation.is_empty:
                lines.append("Nothing to aggregate.")
            else:
                lines.append(self._describe_aggregation(aggregation))
        return "\n".join(lines)

    @staticmethod
    def _describe_aggregation(aggregation: AggregationResult) -> str:
        directive = aggregation.directive
        dims = " and ".join(FIELD_LABELS.get(g, g) for g in directive.group_by)
        if directive.is_two_dimensional:
            return (
                f"{directive.describe().capitalize()}: {len(aggregation.series.series)} series "
                f"across {len(aggregation.series.categories)} {FIELD_LABELS.get(directive.group_by[1])} values."
            )
        parts = []
        for row in aggregation.rows[:12]:
            value = row.metric_value(directive.metric)
            shown = f"{value:g}" if isinstance(value, float) else str(value)
            parts.append(f"{row.group_value}: {shown}")
        more = f" (+{len(aggregation.rows) - 12} more)" if len(aggregation.rows) > 12 else ""
        return f"By {dims}: " + ", ".join(parts) + more
