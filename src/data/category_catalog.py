"""
Department category catalogue.

Loads the versioned category list from ``config/categories.yaml`` and provides
the two deterministic lookups built on it:

- ``categorize_department``: raw department string -> category (rule order
  matters, unmapped strings fall back to "Other")
- ``match_term``: user-facing term ("HC", "keuangan") -> category label
"""
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Pattern, Tuple

import yaml

from config.settings import PROJECT_ROOT

logger = logging.getLogger(__name__)

DEFAULT_CATALOG_PATH = PROJECT_ROOT / "config" / "categories.yaml"

DEPARTMENT_PREFIX = re.compile(r"^(departemen|department|departement|dept\.?)\s+", re.IGNORECASE)


def normalize_term(term: str) -> str:
    """Lowercase, drop punctuation except '&', collapse whitespace."""
    lowered = term.lower().strip()
    lowered = re.sub(r"[^\w&\s-]", " ", lowered)
    lowered = lowered.replace("-", " ")
    return re.sub(r"\s+", " ", lowered).strip()


def normalize_department_name(raw_name: str) -> str:
    """Normalise a raw department name ("Departemen  HCM / GA" -> "HCM GA")."""
    cleaned = raw_name.strip()
    cleaned = re.sub(r"[/\-,()&]", " ", cleaned)
    cleaned = re.sub(r"\s+", " ", cleaned).strip()
    return DEPARTMENT_PREFIX.sub("", cleaned).strip()


@dataclass(frozen=True)
class CategoryDefinition:
    """One category label with its user synonyms and raw-name keywords."""
    name: str
    synonyms: Tuple[str, ...] = ()
    keywords: Tuple[Pattern, ...] = ()

    def matches_department(self, raw_name: str) -> bool:
        lowered = raw_name.lower()
        return any(pattern.search(lowered) for pattern in self.keywords)


@dataclass
class CategoryCatalog:
    """The fixed, versioned list of categories."""
    version: str
    categories: List[CategoryDefinition]
    fallback: str = "Other"
    _synonym_index: Dict[str, str] = field(default_factory=dict, repr=False)

    def __post_init__(self):
        index: Dict[str, str] = {}
        for category in self.categories:
            for term in (category.name, *category.synonyms):
                key = normalize_term(term)
                if key in index and index[key] != category.name:
                    # A term may not point at two categories
                    logger.warning(
                        f"Catalogue {self.version}: term '{term}' claimed by both "
                        f"'{index[key]}' and '{category.name}', keeping '{index[key]}'"
                    )
                    continue
                index[key] = category.name
        self._synonym_index = index

    @property
    def labels(self) -> List[str]:
        return [c.name for c in self.categories]

    def has_label(self, label: str) -> bool:
        return label in self.labels

    def canonical_label(self, label: str) -> Optional[str]:
        """Case-insensitive label lookup; ``None`` when not in the list."""
        wanted = label.strip().lower()
        for name in self.labels:
            if name.lower() == wanted:
                return name
        return None

    def match_term(self, term: str) -> Tuple[Optional[str], str]:
        """
        Match a user term against labels and synonyms.

        Returns:
            (category or None, how it matched: "label" | "synonym" | "none")
        """
        key = normalize_term(term)
        if not key:
            return None, "none"
        label = self.canonical_label(key)
        if label:
            return label, "label"
        if key in self._synonym_index:
            return self._synonym_index[key], "synonym"
        # "departemen keuangan" -> "keuangan"
        stripped = normalize_term(normalize_department_name(term))
        if stripped and stripped in self._synonym_index:
            return self._synonym_index[stripped], "synonym"
        return None, "none"

    def categorize_department(self, raw_name: str) -> str:
        """Bucket a raw department string; first matching rule wins."""
        if not raw_name or not raw_name.strip():
            return self.fallback
        for category in self.categories:
            if category.matches_department(raw_name):
                return category.name
        return self.fallback

    def describe_for_prompt(self) -> str:
        lines = []
        for category in self.categories:
            hints = ", ".join(category.synonyms[:8])
            lines.append(f"- {category.name}: {hints}" if hints else f"- {category.name}")
        return "\n".join(lines)

    @classmethod
    def from_dict(cls, data: Dict) -> "CategoryCatalog":
        categories = []
        for entry in data.get("categories", []):
            categories.append(CategoryDefinition(
                name=entry["name"],
                synonyms=tuple(entry.get("synonyms") or ()),
                keywords=tuple(re.compile(k) for k in entry.get("keywords") or ()),
            ))
        return cls(
            version=str(data.get("version", "unversioned")),
            categories=categories,
            fallback=data.get("fallback", "Other"),
        )

    @classmethod
    def from_yaml(cls, path: Path) -> "CategoryCatalog":
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
        catalog = cls.from_dict(data)
        logger.debug(f"Loaded category catalogue {catalog.version} ({len(catalog.categories)} categories)")
        return catalog


def load_category_catalog(path: Optional[Path] = None) -> CategoryCatalog:
    """Load the catalogue from YAML (default: config/categories.yaml)."""
    return CategoryCatalog.from_yaml(path or DEFAULT_CATALOG_PATH)
