"""
Filter Continuity Manager

Combines a turn's draft filters with the previous turn's resolved filters.
``merge`` is a pure function of (draft, previous, cue); the conversation log
supplies ``previous`` and records the result once the query has run.

Rules, in order:
- explicit new-topic cue: previous filters are discarded
- draft sets a field the previous turn already set: that field is replaced,
  everything else is inherited (override)
- refinement cue, an empty draft (e.g. "by year"), or a single new field:
  draft predicates are ANDed onto the previous ones (refinement)
- two or more new fields, nothing shared, no cue: new topic, low confidence

Inherited predicates that would make the combined spec unsatisfiable are
dropped and logged; the current turn's values always win.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple

from src.core.filter_spec import FilterSpec, Predicate
from src.core.intent_extractor import ContinuityCue
from src.data.records import classify_code

logger = logging.getLogger(__name__)

# Fields that describe the same dimension are overridden together
FIELD_GROUPS: Dict[str, str] = {
    "department": "department",
    "category": "department",
    "code": "code",
    "code_type": "code",
}

LOW_CONFIDENCE = 0.5


class TurnType(Enum):
    NEW_TOPIC = "new_topic"
    REFINEMENT = "refinement"
    OVERRIDE = "override"


@dataclass(frozen=True)
class MergeResult:
    """The merged filters and how they were arrived at."""
    filters: FilterSpec
    turn_type: TurnType
    inherited: Tuple[Predicate, ...] = ()
    dropped: Tuple[Predicate, ...] = ()
    confidence: float = 1.0
    notes: Tuple[str, ...] = ()

    @property
    def low_confidence(self) -> bool:
        return self.confidence < 0.6

    def to_dict(self):
        return {
            "filters": self.filters.to_dict(),
            "turn_type": self.turn_type.value,
            "inherited": [p.to_dict() for p in self.inherited],
            "dropped": [p.to_dict() for p in self.dropped],
            "confidence": self.confidence,
            "notes": list(self.notes),
        }


def field_group(field_name: str) -> str:
    return FIELD_GROUPS.get(field_name, field_name)


def _groups(spec: FilterSpec) -> FrozenSet[str]:
    return frozenset(field_group(p.field) for p in spec.predicates)


def merge(
    draft: FilterSpec,
    previous: Optional[FilterSpec],
    cue: ContinuityCue = ContinuityCue.NONE,
) -> MergeResult:
    """Merge the draft filters of this turn with the previous turn's filters."""
    if previous is None or (previous.is_empty and previous.aggregation is None):
        return MergeResult(filters=draft, turn_type=TurnType.NEW_TOPIC, notes=("no previous filters",))

    if cue == ContinuityCue.NEW_TOPIC:
        return MergeResult(
            filters=draft,
            turn_type=TurnType.NEW_TOPIC,
            notes=("explicit new-topic cue; previous filters discarded",),
        )

    draft_groups = _groups(draft)
    previous_groups = _groups(previous)
    shared = draft_groups & previous_groups
    new = draft_groups - previous_groups

    if shared:
        turn_type = TurnType.OVERRIDE
        kept = [p for p in previous.predicates if field_group(p.field) not in shared]
        notes = [f"replaced {', '.join(sorted(shared))} from the previous turn"]
        confidence = 0.9
    elif cue == ContinuityCue.REFINEMENT or not draft.predicates or len(new) == 1:
        turn_type = TurnType.REFINEMENT
        kept = list(previous.predicates)
        notes = ["narrowed the previous result"]
        confidence = 1.0 if cue == ContinuityCue.REFINEMENT or not draft.predicates else 0.8
    else:
        logger.info(f"Treating turn as new topic: {len(new)} new fields, none shared, no cue")
        return MergeResult(
            filters=draft,
            turn_type=TurnType.NEW_TOPIC,
            confidence=LOW_CONFIDENCE,
            notes=("several new filters and none shared with the previous turn; started a new query",),
        )

    inherited, dropped = _drop_unsatisfiable(kept, list(draft.predicates))
    if dropped:
        notes.append(f"dropped {len(dropped)} inherited filter(s) that conflicted with this turn")
        for predicate in dropped:
            logger.info(f"Dropped inherited predicate {predicate.describe()} (conflicts with current turn)")

    aggregation = draft.aggregation if draft.aggregation is not None else previous.aggregation
    merged = FilterSpec(tuple(inherited), aggregation).with_predicates(draft.predicates)

    return MergeResult(
        filters=merged,
        turn_type=turn_type,
        inherited=tuple(inherited),
        dropped=tuple(dropped),
        confidence=confidence,
        notes=tuple(notes),
    )


# =============================================================================
# SATISFIABILITY
# =============================================================================

def _drop_unsatisfiable(inherited: List[Predicate], current: List[Predicate]) -> Tuple[List[Predicate], List[Predicate]]:
    """Drop inherited predicates that contradict the current ones or each other."""
    kept: List[Predicate] = []
    dropped: List[Predicate] = []
    for predicate in inherited:
        if any(conflicts(predicate, other) for other in current):
            dropped.append(predicate)
            continue
        kept.append(predicate)
    if not is_satisfiable(kept + current):
        # Conflict only shows up in combination; drop the first inherited predicate that resolves it
        for predicate in list(kept):
            if not is_satisfiable([p for p in kept if p is not predicate] + current):
                continue
            kept.remove(predicate)
            dropped.append(predicate)
            if is_satisfiable(kept + current):
                break
    return kept, dropped


def _norm(value):
    if isinstance(value, str):
        return value.strip().lower()
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def _value_set(predicate: Predicate) -> Optional[FrozenSet]:
    if predicate.is_symbolic:
        return None
    if predicate.operator == "eq":
        return frozenset([_norm(predicate.value)])
    if predicate.operator == "in":
        return frozenset(_norm(v) for v in predicate.value)
    return None


def conflicts(a: Predicate, b: Predicate) -> bool:
    """True when no record can satisfy both predicates."""
    if {a.field, b.field} == {"code", "code_type"}:
        code, code_type = (a, b) if a.field == "code" else (b, a)
        codes = _value_set(code)
        types = _value_set(code_type)
        if codes is None or types is None:
            return False
        return not any(classify_code(str(c)) in types for c in codes)

    if a.field != b.field:
        return False
    return not is_satisfiable([a, b])


def is_satisfiable(predicates: List[Predicate]) -> bool:
    """Per-field check over membership sets, exclusions and numeric bounds."""
    by_field: Dict[str, List[Predicate]] = {}
    for predicate in predicates:
        by_field.setdefault(predicate.field, []).append(predicate)

    for items in by_field.values():
        allowed: Optional[FrozenSet] = None
        excluded = set()
        low, low_inclusive = None, True
        high, high_inclusive = None, True

        for p in items:
            if p.is_symbolic:
                continue
            values = _value_set(p)
            if values is not None:
                allowed = values if allowed is None else allowed & values
            elif p.operator == "ne":
                excluded.add(_norm(p.value))
            elif p.operator in ("gt", "gte") and isinstance(p.value, (int, float)):
                if low is None or p.value > low or (p.value == low and p.operator == "gt"):
                    low, low_inclusive = p.value, p.operator == "gte"
            elif p.operator in ("lt", "lte") and isinstance(p.value, (int, float)):
                if high is None or p.value < high or (p.value == high and p.operator == "lt"):
                    high, high_inclusive = p.value, p.operator == "lte"

        if low is not None and high is not None:
            if low > high or (low == high and not (low_inclusive and high_inclusive)):
                return False

        if allowed is not None:
            candidates = allowed - excluded
            numeric = [v for v in candidates if isinstance(v, (int, float))]
            if low is not None or high is not None:
                candidates = {
                    v for v in numeric
                    if (low is None or v > low or (v == low and low_inclusive))
                    and (high is None or v < high or (v == high and high_inclusive))
                }
            if not candidates:
                return False
    return True
