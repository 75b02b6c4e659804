"""
Intent Extractor

Turns one free-text turn into a draft intent: candidate predicates (possibly
symbolic, e.g. "this year"), an optional aggregation directive, category tokens
that still need resolution ("HC", "IT") and a continuity cue.

Hybrid approach, as in the rest of the engine:
1. LLM extraction with a versioned prompt, validated against ``IntentSchema``
2. Deterministic keyword/regex fallback when the model is not configured,
   times out, errors, or answers with an invalid shape

The extractor only signals continuity ("only X" reads as a refinement); merging
with the previous turn is the continuity manager's job.
"""
import asyncio
import logging
import re
from dataclasses import dataclass, replace
from datetime import date
from enum import Enum
from typing import Any, Callable, List, Optional, Tuple

from src.core.filter_spec import (
    AggregationDirective,
    FilterSpec,
    Predicate,
    SymbolicValue,
)
from src.core.output_schemas import IntentSchema, Invalid, validate_llm_output
from src.core.prompt_manager import PromptManager
from src.data.category_catalog import CategoryCatalog
from src.data.records import CODE_TYPE_NON_FINDING, coerce_number, coerce_year

logger = logging.getLogger(__name__)


class ContinuityCue(Enum):
    """How the turn relates to the previous one, as far as the wording says."""
    REFINEMENT = "refinement"
    NEW_TOPIC = "new_topic"
    NONE = "none"


@dataclass(frozen=True)
class DraftIntent:
    """Extractor output; category tokens are still unresolved."""
    raw_text: str
    predicates: Tuple[Predicate, ...] = ()
    aggregation: Optional[AggregationDirective] = None
    category_tokens: Tuple[str, ...] = ()
    continuity: ContinuityCue = ContinuityCue.NONE
    user_intent: str = ""
    confidence: float = 1.0
    used_llm: bool = False
    parsing_notes: Tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.predicates and not self.category_tokens and self.aggregation is None

    def to_filter_spec(self) -> FilterSpec:
        return FilterSpec(self.predicates, self.aggregation)

    def to_dict(self):
        return {
            "raw_text": self.raw_text,
            "filters": self.to_filter_spec().to_dict(),
            "category_tokens": list(self.category_tokens),
            "continuity": self.continuity.value,
            "user_intent": self.user_intent,
            "confidence": self.confidence,
            "used_llm": self.used_llm,
            "parsing_notes": list(self.parsing_notes),
        }


# =============================================================================
# VOCABULARY
# =============================================================================

NEW_TOPIC_PATTERN = re.compile(
    r"\b(new question|new topic|start over|start again|reset|forget (?:that|previous|the previous)"
    r"|lupakan|pertanyaan baru|mulai (?:lagi|ulang)|topik baru)\b"
)
REFINEMENT_PATTERN = re.compile(
    r"\b(only|just|khusus(?:nya)?|hanya|saja|aja|narrow(?: (?:it|down|to))?"
    r"|among (?:them|those|these)|dari (?:itu|tersebut|hasil tadi)|yang tadi)\b"
)

YEAR_TOKEN = r"(19\d{2}|20\d{2})"
YEAR_RANGE_PATTERNS = [
    re.compile(rf"\b(?:between|antara)\s+{YEAR_TOKEN}\s+(?:and|dan|&)\s+{YEAR_TOKEN}\b"),
    re.compile(rf"\b(?:from|dari)\s+{YEAR_TOKEN}\s+(?:to|until|till|sampai|hingga|ke)\s+{YEAR_TOKEN}\b"),
    re.compile(rf"\b{YEAR_TOKEN}\s*(?:-|–|to|until|sampai|hingga|s/d|sd)\s*{YEAR_TOKEN}\b"),
]
YEAR_PATTERN = re.compile(rf"(?<![\d.,]){YEAR_TOKEN}(?!\d|[.,]\d)")
THIS_YEAR_PATTERN = re.compile(r"\b(this year|current year|tahun ini)\b")
LAST_YEAR_PATTERN = re.compile(r"\b(last year|previous year|tahun lalu|tahun kemarin)\b")

SCORE_FIELDS = {
    "nilai": "nilai",
    "score": "nilai",
    "skor": "nilai",
    "bobot": "bobot",
    "weight": "bobot",
    "kadar": "kadar",
    "severity": "kadar",
}
SCORE_FIELD_TOKEN = r"(nilai|score|skor|bobot|weight|kadar|severity)"
NUMBER_TOKEN = r"(\d+(?:[.,]\d+)?)"
SYMBOL_OPERATORS = {
    ">=": "gte", "≥": "gte", "=>": "gte",
    "<=": "lte", "≤": "lte", "=<": "lte",
    ">": "gt", "<": "lt",
    "=": "eq", "==": "eq",
    "!=": "ne", "<>": "ne",
}
WORD_OPERATORS = {
    "above": "gte", "over": "gte", "more than": "gte", "at least": "gte",
    "di atas": "gte", "diatas": "gte", "minimal": "gte", "paling sedikit": "gte",
    "greater than": "gt", "lebih dari": "gt", "lebih besar dari": "gt",
    "below": "lte", "under": "lte", "at most": "lte",
    "di bawah": "lte", "dibawah": "lte", "maksimal": "lte", "paling banyak": "lte",
    "less than": "lt", "kurang dari": "lt", "lebih kecil dari": "lt",
    "equal to": "eq", "equals": "eq", "sama dengan": "eq",
}
SCORE_SYMBOL_PATTERN = re.compile(
    rf"\b{SCORE_FIELD_TOKEN}\s*(>=|<=|!=|<>|==|=>|=<|≥|≤|>|<|=)\s*{NUMBER_TOKEN}"
)
SCORE_WORD_PATTERN = re.compile(
    rf"\b{SCORE_FIELD_TOKEN}\s+(?:is\s+|of\s+|nya\s+)?("
    + "|".join(sorted((re.escape(w) for w in WORD_OPERATORS), key=len, reverse=True))
    + rf")\s+{NUMBER_TOKEN}"
)

CODE_PATTERN = re.compile(r"\b(?:code|kode)\s*(?:=|==|:|is)?\s*['\"]?(nf|f|o|r)\b['\"]?")
NON_FINDING_PATTERN = re.compile(r"\b(non[\s-]?findings?|non[\s-]?temuan|bukan temuan)\b")

DIMENSIONS = {
    "year": "year", "years": "year", "yearly": "year", "tahun": "year", "tahunan": "year",
    "department": "department", "departments": "department", "departemen": "department",
    "dept": "department", "divisi": "department",
    "category": "category", "categories": "category", "kategori": "category",
    "project": "project_name", "projects": "project_name", "proyek": "project_name",
    "projek": "project_name",
    "code type": "code_type", "jenis kode": "code_type", "finding type": "code_type",
    "code": "code", "codes": "code", "kode": "code",
    "risk area": "risk_area", "risk areas": "risk_area", "area risiko": "risk_area",
}
DIMENSION_TOKEN = "(" + "|".join(sorted((re.escape(d) for d in DIMENSIONS), key=len, reverse=True)) + ")"
GROUP_BY_PATTERN = re.compile(
    rf"\b(?:by|per|grouped by|group by|broken down by|breakdown by|berdasarkan|menurut|for each|setiap|tiap)\s+"
    rf"{DIMENSION_TOKEN}(?:\s*(?:and|dan|&|,|then|lalu)\s*(?:by\s+|per\s+)?{DIMENSION_TOKEN})?\b"
)
TREND_PATTERN = re.compile(r"\b(trend|trends|tren|over time|dari tahun ke tahun|year over year)\b")
METRIC_PATTERNS = [
    ("avg", re.compile(rf"\b(?:average|avg|mean|rata-rata|rata rata|rerata)\s+(?:of\s+)?{SCORE_FIELD_TOKEN}?")),
    ("sum", re.compile(rf"\b(?:sum|total|jumlah)\s+(?:of\s+)?{SCORE_FIELD_TOKEN}\b")),
    ("max", re.compile(rf"\b(?:max|maximum|highest|tertinggi|terbesar)\s+(?:of\s+)?{SCORE_FIELD_TOKEN}?")),
    ("min", re.compile(rf"\b(?:min|minimum|lowest|terendah|terkecil)\s+(?:of\s+)?{SCORE_FIELD_TOKEN}?")),
]

NARROWING_PATTERN = re.compile(
    r"\b(?:khusus(?:nya)?|only|just|hanya)\s+(?:for\s+|untuk\s+|di\s+|the\s+|in\s+)?(.+)$"
)
PROJECT_PATTERN = re.compile(
    r"\b(?:project|proyek|projek)\s+(?:name\s+)?(?:is\s+|=\s*|:\s*)?(.+?)"
    r"(?=\s+(?:year|tahun|code|kode|department|departemen|dept|with|dengan|and|dan|by|per)\b|[,;?!]|$)"
)
DEPARTMENT_PATTERN = re.compile(
    r"\b(?:department|departemen|dept|dep|divisi|bagian|kategori|category)\b\s*(?:=|:|is)?\s*"
    r"(.+?)(?=\s+(?:year|tahun|code|kode|project|proyek|with|dengan|and|dan|by|per|findings?|temuan)\b|[,;?!]|$)"
)
QUOTED_PATTERN = re.compile(r"[\"“”]([^\"“”]{2,})[\"“”]|(?<!\w)'([^']{2,})'(?!\w)")
DEPARTMENT_WORDS = {"department", "departemen", "dept", "divisi", "bagian"}

FILLER_WORDS = {
    "show", "list", "display", "give", "me", "all", "the", "a", "an", "of", "for", "in", "on",
    "findings", "finding", "temuan", "data", "results", "result", "hasil", "please", "tolong",
    "tampilkan", "semua", "lihat", "yang", "ya", "dong", "nya", "with", "dengan", "and", "dan",
    "what", "are", "is", "how", "many", "berapa", "ada", "audit", "records", "rows", "saja", "aja",
    "only", "just", "khusus", "hanya", "di", "untuk", "year", "tahun", "count", "jumlah", "total",
    "number", "to", "from", "dari", "by", "per", "code", "kode", "project", "proyek", "trend",
} | DEPARTMENT_WORDS
# Short words that are also everyday words; matched as categories only when written in capitals
CASE_SENSITIVE_TERMS = {"it", "ga"}
# Never picked up by free scanning; still usable after "department"/"khusus"
SCAN_EXCLUDED_TERMS = {"other", "lainnya", "misc", "risk", "development", "people", "board", "land", "club"}
MAX_TERM_WORDS = 4


class _Scanner:
    """Lowercased working copy of the text; matched spans are blanked out."""

    def __init__(self, text: str):
        self.original = text
        self.lower = text.lower()

    def consume(self, match: re.Match) -> None:
        start, end = match.span()
        blank = " " * (end - start)
        self.original = self.original[:start] + blank + self.original[end:]
        self.lower = self.lower[:start] + blank + self.lower[end:]

    def consume_group(self, match: re.Match, group: int) -> None:
        start, end = match.span(group)
        blank = " " * (end - start)
        self.original = self.original[:start] + blank + self.original[end:]
        self.lower = self.lower[:start] + blank + self.lower[end:]

    def words(self) -> List[Tuple[str, str]]:
        """(original, lowercase) word pairs left in the text."""
        pairs = []
        for m in re.finditer(r"[\w&]+", self.lower):
            pairs.append((self.original[m.start():m.end()], m.group(0)))
        return pairs


def _clean_phrase(phrase: str) -> str:
    words = re.findall(r"[\w&.'-]+", phrase)
    while words and words[0].lower() in FILLER_WORDS:
        words.pop(0)
    while words and words[-1].lower() in FILLER_WORDS:
        words.pop()
    return " ".join(words).strip(" .'-")


class IntentExtractor:
    """
    Extracts a ``DraftIntent`` from free text.

    ``router`` and ``prompt_manager`` are optional; without them every turn
    uses the deterministic extractor.
    """

    def __init__(
        self,
        catalog: CategoryCatalog,
        router=None,
        prompt_manager: Optional[PromptManager] = None,
        timeout_seconds: float = 15.0,
        clock: Callable[[], date] = date.today,
    ):
        self.catalog = catalog
        self.router = router
        self.prompt_manager = prompt_manager
        self.timeout_seconds = timeout_seconds
        self.clock = clock

    @property
    def llm_enabled(self) -> bool:
        return self.router is not None and self.prompt_manager is not None

    async def extract(self, text: str, previous: Optional[FilterSpec] = None) -> DraftIntent:
        """Extract the draft intent for one turn. Never raises."""
        text = (text or "").strip()
        if not text:
            return DraftIntent(raw_text="", confidence=0.0, parsing_notes=("empty input",))

        notes: List[str] = []
        if self.llm_enabled:
            try:
                draft = await asyncio.wait_for(
                    asyncio.to_thread(self._extract_with_llm, text, previous),
                    timeout=self.timeout_seconds,
                )
                if draft is not None:
                    return draft
                notes.append("model answer invalid; used keyword extraction")
            except asyncio.TimeoutError:
                logger.warning(f"Intent extraction timed out after {self.timeout_seconds}s, using fallback")
                notes.append("model timed out; used keyword extraction")
            except Exception as e:
                logger.warning(f"Intent extraction failed ({type(e).__name__}: {e}), using fallback")
                notes.append("model unavailable; used keyword extraction")

        draft = self.extract_deterministic(text)
        if notes:
            draft = replace(draft, parsing_notes=tuple(notes) + draft.parsing_notes)
        return draft

    # =========================================================================
    # LLM PATH
    # =========================================================================

    def _extract_with_llm(self, text: str, previous: Optional[FilterSpec]) -> Optional[DraftIntent]:
        prompt = self.prompt_manager.get_prompt("intent_extraction")
        user_message = prompt.format(
            question=text.replace('"', "'"),
            previous_filters=previous.describe() if previous is not None and not previous.is_empty else "none",
            today=self.clock().isoformat(),
        )
        logger.info(f"Intent extraction via LLM (prompt {prompt.name} v{prompt.version}, hash {prompt.hash})")
        response = self.router.generate_with_system(prompt.system_prompt, user_message)

        result = validate_llm_output(response.content, IntentSchema)
        if isinstance(result, Invalid):
            logger.warning(f"Intent answer rejected: {result.reason} {result.errors}")
            return None
        return self._draft_from_schema(text, result.value)

    def _draft_from_schema(self, text: str, parsed: IntentSchema) -> DraftIntent:
        notes: List[str] = []
        predicates: List[Predicate] = []
        tokens: List[str] = list(parsed.categoryTokens)

        for item in parsed.filters:
            # Department words go through the category resolver, not a literal match
            if item.field in ("department", "category") and item.operator in ("eq", "in", "contains"):
                values = item.value if isinstance(item.value, list) else [item.value]
                tokens.extend(str(v) for v in values if str(v).strip())
                continue
            predicate = self._coerce_predicate(item.field, item.operator, item.value)
            if predicate is None:
                notes.append(f"ignored filter {item.field} {item.operator} {item.value!r}")
                continue
            predicates.append(predicate)

        aggregation = None
        if parsed.aggregation is not None:
            try:
                aggregation = AggregationDirective(
                    group_by=tuple(parsed.aggregation.groupBy),
                    metric=parsed.aggregation.metric,
                    metric_field=parsed.aggregation.metricField,
                )
            except ValueError as e:
                notes.append(f"ignored aggregation: {e}")

        deduped_tokens = tuple(dict.fromkeys(t.strip() for t in tokens if t.strip()))
        return DraftIntent(
            raw_text=text,
            predicates=tuple(predicates),
            aggregation=aggregation,
            category_tokens=deduped_tokens,
            continuity=ContinuityCue(parsed.continuity),
            user_intent=parsed.userIntent,
            confidence=0.9,
            used_llm=True,
            parsing_notes=tuple(notes),
        )

    @staticmethod
    def _coerce_predicate(field_name: str, operator: str, value: Any) -> Optional[Predicate]:
        """Bring a model-supplied value to the field's canonical type."""

        def coerce(v):
            if field_name == "year":
                if isinstance(v, str) and v.strip().lower() in (SymbolicValue.THIS_YEAR, SymbolicValue.LAST_YEAR):
                    return SymbolicValue(v.strip().lower())
                return coerce_year(v)
            if field_name in ("bobot", "kadar", "nilai"):
                return coerce_number(v)
            if field_name == "code":
                return str(v).strip().upper() or None
            return str(v).strip() or None

        if operator == "in":
            values = value if isinstance(value, list) else [value]
            coerced = [coerce(v) for v in values]
            if any(v is None for v in coerced) or not coerced:
                return None
            return Predicate(field_name, "in", frozenset(coerced))
        if isinstance(value, list):
            return None
        coerced = coerce(value)
        if coerced is None:
            return None
        return Predicate(field_name, operator, coerced)

    # =========================================================================
    # DETERMINISTIC PATH
    # =========================================================================

    def extract_deterministic(self, text: str) -> DraftIntent:
        """Keyword/regex extraction covering the common vocabulary."""
        scanner = _Scanner(text)
        predicates: List[Predicate] = []
        tokens: List[str] = []
        notes: List[str] = []

        continuity = self._detect_continuity(scanner.lower)

        # Quoted phrases first, so their content is not re-read as keywords
        quoted = self._extract_quoted(scanner, tokens)
        predicates.extend(quoted)

        predicates.extend(self._extract_score_comparisons(scanner))
        aggregation = self._extract_aggregation(scanner)
        predicates.extend(self._extract_years(scanner))
        predicates.extend(self._extract_codes(scanner))
        predicates.extend(self._extract_project(scanner))
        tokens.extend(self._extract_department_phrases(scanner))
        narrowed = self._extract_narrowing(scanner, tokens, notes)
        predicates.extend(narrowed)
        tokens.extend(self._scan_category_terms(scanner))

        tokens = list(dict.fromkeys(tokens))
        recognized = bool(predicates or tokens or aggregation)
        if not recognized:
            notes.append("no filters recognized")

        return DraftIntent(
            raw_text=text,
            predicates=tuple(dict.fromkeys(predicates)),
            aggregation=aggregation,
            category_tokens=tuple(tokens),
            continuity=continuity,
            user_intent="",
            confidence=0.6 if recognized else 0.3,
            used_llm=False,
            parsing_notes=tuple(notes),
        )

    @staticmethod
    def _detect_continuity(lowered: str) -> ContinuityCue:
        if NEW_TOPIC_PATTERN.search(lowered):
            return ContinuityCue.NEW_TOPIC
        if REFINEMENT_PATTERN.search(lowered):
            return ContinuityCue.REFINEMENT
        return ContinuityCue.NONE

    def _extract_quoted(self, scanner: _Scanner, tokens: List[str]) -> List[Predicate]:
        predicates = []
        for match in list(QUOTED_PATTERN.finditer(scanner.original)):
            phrase = (match.group(1) or match.group(2)).strip()
            before = scanner.lower[max(0, match.start() - 25):match.start()]
            scanner.consume(match)
            if re.search(r"(department|departemen|dept|divisi|kategori|category)\s*(=|:|is)?\s*$", before):
                tokens.append(phrase)
                continue
            category, _ = self.catalog.match_term(phrase)
            if category and not re.search(r"(project|proyek|projek)\s*(=|:|is)?\s*$", before):
                tokens.append(phrase)
                continue
            predicates.append(Predicate("project_name", "eq", phrase))
        return predicates

    @staticmethod
    def _extract_score_comparisons(scanner: _Scanner) -> List[Predicate]:
        predicates = []
        for pattern, operators in ((SCORE_SYMBOL_PATTERN, SYMBOL_OPERATORS), (SCORE_WORD_PATTERN, WORD_OPERATORS)):
            for match in list(pattern.finditer(scanner.lower)):
                number = coerce_number(match.group(3))
                if number is None:
                    continue
                predicates.append(Predicate(SCORE_FIELDS[match.group(1)], operators[match.group(2)], number))
                scanner.consume(match)
        return predicates

    @staticmethod
    def _extract_years(scanner: _Scanner) -> List[Predicate]:
        for pattern in YEAR_RANGE_PATTERNS:
            match = pattern.search(scanner.lower)
            if match:
                low, high = sorted((int(match.group(1)), int(match.group(2))))
                scanner.consume(match)
                return [Predicate("year", "gte", low), Predicate("year", "lte", high)]

        match = THIS_YEAR_PATTERN.search(scanner.lower)
        if match:
            scanner.consume(match)
            return [Predicate("year", "eq", SymbolicValue(SymbolicValue.THIS_YEAR))]
        match = LAST_YEAR_PATTERN.search(scanner.lower)
        if match:
            scanner.consume(match)
            return [Predicate("year", "eq", SymbolicValue(SymbolicValue.LAST_YEAR))]

        years = []
        for match in list(YEAR_PATTERN.finditer(scanner.lower)):
            year = coerce_year(match.group(1))
            if year is not None:
                years.append(year)
                scanner.consume(match)
        years = sorted(set(years))
        if len(years) == 1:
            return [Predicate("year", "eq", years[0])]
        if len(years) > 1:
            return [Predicate("year", "in", frozenset(years))]
        return []

    @staticmethod
    def _extract_codes(scanner: _Scanner) -> List[Predicate]:
        predicates = []
        match = NON_FINDING_PATTERN.search(scanner.lower)
        if match:
            scanner.consume(match)
            predicates.append(Predicate("code_type", "eq", CODE_TYPE_NON_FINDING))
        codes = []
        for match in list(CODE_PATTERN.finditer(scanner.lower)):
            codes.append(match.group(1).upper())
            scanner.consume(match)
        codes = sorted(set(codes))
        if len(codes) == 1:
            predicates.append(Predicate("code", "eq", codes[0]))
        elif codes:
            predicates.append(Predicate("code", "in", frozenset(codes)))
        return predicates

    @staticmethod
    def _extract_aggregation(scanner: _Scanner) -> Optional[AggregationDirective]:
        dims: List[str] = []
        match = GROUP_BY_PATTERN.search(scanner.lower)
        if match:
            for group in (1, 2):
                if match.group(group):
                    dim = DIMENSIONS[match.group(group)]
                    if dim not in dims:
                        dims.append(dim)
            scanner.consume(match)

        trend = TREND_PATTERN.search(scanner.lower)
        if trend:
            scanner.consume(trend)
            if not dims:
                dims = ["year"]
            elif "year" not in dims and len(dims) == 1:
                dims = [dims[0], "year"]

        if not dims:
            return None

        metric, metric_field = "count", None
        for name, pattern in METRIC_PATTERNS:
            metric_match = pattern.search(scanner.lower)
            if metric_match:
                metric = name
                if metric_match.group(1):
                    metric_field = SCORE_FIELDS[metric_match.group(1)]
                scanner.consume(metric_match)
                break
        return AggregationDirective(group_by=tuple(dims[:2]), metric=metric, metric_field=metric_field)

    @staticmethod
    def _extract_project(scanner: _Scanner) -> List[Predicate]:
        match = PROJECT_PATTERN.search(scanner.lower)
        if not match:
            return []
        phrase = _clean_phrase(match.group(1))
        if not phrase:
            return []
        scanner.consume(match)
        return [Predicate("project_name", "contains", phrase)]

    @staticmethod
    def _extract_department_phrases(scanner: _Scanner) -> List[str]:
        tokens = []
        for match in list(DEPARTMENT_PATTERN.finditer(scanner.lower)):
            start, end = match.span(1)
            phrase = _clean_phrase(scanner.original[start:end])
            if phrase:
                tokens.append(phrase)
                scanner.consume(match)
        return tokens

    def _extract_narrowing(self, scanner: _Scanner, tokens: List[str], notes: List[str]) -> List[Predicate]:
        match = NARROWING_PATTERN.search(scanner.lower)
        if not match:
            return []
        start, end = match.span(1)
        phrase = _clean_phrase(scanner.original[start:end])
        if not phrase:
            return []
        scanner.consume_group(match, 1)
        category, _ = self.catalog.match_term(phrase)
        if category:
            tokens.append(phrase)
            return []

        # "just the HR ones", "khusus IT department": pick out the category term
        mentions_department = any(w.lower() in DEPARTMENT_WORDS for w in phrase.split())
        inner = [
            t for t in self._scan_category_terms(_Scanner(phrase))
            if mentions_department or t.isupper()
        ]
        if inner:
            tokens.extend(inner)
            return []

        notes.append(f"'{phrase}' read as a project name")
        return [Predicate("project_name", "contains", phrase.lower())]

    def _scan_category_terms(self, scanner: _Scanner) -> List[str]:
        """Longest-first n-gram scan of the remaining words against the catalogue."""
        words = scanner.words()
        tokens = []
        i = 0
        while i < len(words):
            matched = False
            for size in range(min(MAX_TERM_WORDS, len(words) - i), 0, -1):
                original = " ".join(w[0] for w in words[i:i + size])
                lowered = " ".join(w[1] for w in words[i:i + size])
                if size == 1 and lowered in FILLER_WORDS:
                    break
                if lowered in SCAN_EXCLUDED_TERMS:
                    continue
                if lowered in CASE_SENSITIVE_TERMS and original != original.upper():
                    continue
                category, _ = self.catalog.match_term(lowered)
                if category:
                    tokens.append(original)
                    i += size
                    matched = True
                    break
            if not matched:
                i += 1
        return tokens
