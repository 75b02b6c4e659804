"""
Finding records and read-boundary normalisation.

Historical imports stored the same logical field with different primitive
types (``year`` as ``"2024"`` in one era and ``2024`` in the next, scores as
numeric strings). Everything that leaves the document store goes through
``FindingRecord.from_document`` so the rest of the engine only ever sees one
canonical representation.
"""
import hashlib
import logging
import re
from dataclasses import dataclass, replace
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger(__name__)

MIN_YEAR = 1990
MAX_YEAR = 2099

# Engine field name -> document field name
STORE_FIELD_NAMES: Dict[str, str] = {
    "year": "year",
    "project_name": "projectName",
    "department": "department",
    "risk_area": "riskArea",
    "description": "description",
    "code": "code",
    "bobot": "bobot",
    "kadar": "kadar",
    "nilai": "nilai",
    "sh": "sh",
}

NUMERIC_FIELDS = ("year", "bobot", "kadar", "nilai")
TEXT_FIELDS = ("project_name", "department", "category", "risk_area", "description", "code", "code_type", "sh")

CODE_TYPE_FINDING = "finding"
CODE_TYPE_NON_FINDING = "non_finding"
CODE_TYPE_UNCLASSIFIED = "unclassified"


def coerce_year(value: Any) -> Optional[int]:
    """Canonicalise a stored year (int, float, or string) to ``int``."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        year = value
    elif isinstance(value, float):
        if not value.is_integer():
            return None
        year = int(value)
    elif isinstance(value, str):
        match = re.fullmatch(r"\s*(\d{4})(?:\.0+)?\s*", value)
        if not match:
            return None
        year = int(match.group(1))
    else:
        return None
    if MIN_YEAR <= year <= MAX_YEAR:
        return year
    return None


def coerce_number(value: Any) -> Optional[float]:
    """Canonicalise a stored score to ``float``; ``None`` when not numeric."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        cleaned = value.strip().replace(" ", "")
        if not cleaned:
            return None
        # "2,5" (Indonesian decimal comma) but not "1,234.5"
        if "," in cleaned and "." not in cleaned:
            cleaned = cleaned.replace(",", ".")
        else:
            cleaned = cleaned.replace(",", "")
        try:
            return float(cleaned)
        except ValueError:
            return None
    return None


def classify_code(code: Optional[str]) -> str:
    """F-prefixed codes are findings, NF-prefixed are non-findings."""
    if not code:
        return CODE_TYPE_UNCLASSIFIED
    normalized = code.strip().upper()
    if normalized.startswith("NF"):
        return CODE_TYPE_NON_FINDING
    if normalized.startswith("F"):
        return CODE_TYPE_FINDING
    return CODE_TYPE_UNCLASSIFIED


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def derive_finding_id(document: Mapping[str, Any]) -> str:
    """
    Derive a stable id from the finding's content.

    Re-importing the same spreadsheet row yields the same id regardless of the
    row's position, so partial re-imports do not create duplicates.
    """
    year = coerce_year(document.get("year"))
    parts = [
        str(year) if year is not None else _text(document.get("year")),
        _text(document.get("projectName")).lower(),
        _text(document.get("department")).lower(),
        _text(document.get("code")).upper(),
        _text(document.get("riskArea")).lower(),
        _text(document.get("description") or document.get("descriptions")).lower(),
    ]
    digest = hashlib.sha256("\x1f".join(parts).encode("utf-8")).hexdigest()
    return f"AR-{digest[:20]}"


@dataclass(frozen=True)
class FindingRecord:
    """One audit observation in canonical in-memory form."""
    id: str
    year: Optional[int]
    project_name: str
    department: str
    risk_area: str = ""
    description: str = ""
    code: str = ""
    bobot: Optional[float] = None
    kadar: Optional[float] = None
    nilai: Optional[float] = None
    sh: str = ""
    category: Optional[str] = None

    @property
    def code_type(self) -> str:
        return classify_code(self.code)

    def get(self, field_name: str) -> Any:
        """Read a field by its engine name (includes derived ``code_type``)."""
        if field_name == "code_type":
            return self.code_type
        return getattr(self, field_name, None)

    def with_category(self, category: Optional[str]) -> "FindingRecord":
        return replace(self, category=category)

    @classmethod
    def from_document(cls, doc_id: Optional[str], data: Mapping[str, Any]) -> "FindingRecord":
        """Normalise a raw stored document into a ``FindingRecord``."""
        raw_year = data.get("year")
        year = coerce_year(raw_year)
        if year is None and raw_year not in (None, ""):
            logger.warning(f"Finding {doc_id}: unparseable year {raw_year!r}, treating as missing")

        bobot = coerce_number(data.get("bobot"))
        kadar = coerce_number(data.get("kadar"))
        nilai = coerce_number(data.get("nilai"))
        if nilai is None and bobot is not None and kadar is not None:
            nilai = bobot * kadar

        record_id = doc_id or _text(data.get("auditResultId")) or derive_finding_id(data)

        return cls(
            id=record_id,
            year=year,
            project_name=_text(data.get("projectName")),
            department=_text(data.get("department")),
            risk_area=_text(data.get("riskArea")),
            description=_text(data.get("description") or data.get("descriptions")),
            code=_text(data.get("code")),
            bobot=bobot,
            kadar=kadar,
            nilai=nilai,
            sh=_text(data.get("sh")),
        )

    def to_row(self) -> Dict[str, Any]:
        """Display row using the store's camelCase field names."""
        return {
            "id": self.id,
            "year": self.year,
            "projectName": self.project_name,
            "department": self.department,
            "category": self.category,
            "riskArea": self.risk_area,
            "description": self.description,
            "code": self.code,
            "codeType": self.code_type,
            "bobot": self.bobot,
            "kadar": self.kadar,
            "nilai": self.nilai,
        }
