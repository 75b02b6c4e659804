"""
Department directory.

Maps every raw department string observed in findings to exactly one canonical
department and category. Built from the store's departments collection when it
has entries, otherwise derived from the distinct raw names in findings using
the catalogue's keyword rules.
"""
import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional

from src.data.category_catalog import CategoryCatalog, normalize_department_name

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Department:
    """A canonical department and the raw spellings that map to it."""
    name: str
    category: str
    original_names: FrozenSet[str] = frozenset()

    @property
    def all_names(self) -> FrozenSet[str]:
        return self.original_names | {self.name}


class DepartmentDirectory:
    """
    Raw department string -> Department lookup.

    A raw string can be claimed by one department only; later claims are
    logged and ignored.
    """

    def __init__(self, catalog: CategoryCatalog, departments: Iterable[Department] = ()):
        self.catalog = catalog
        self._departments: Dict[str, Department] = {}
        self._by_raw: Dict[str, Department] = {}
        for department in departments:
            self.add(department)

    def add(self, department: Department) -> None:
        category = department.category
        if not self.catalog.has_label(category):
            logger.warning(
                f"Department '{department.name}' has unknown category '{category}', using "
                f"'{self.catalog.fallback}'"
            )
            department = Department(department.name, self.catalog.fallback, department.original_names)

        claimed = set()
        for raw in department.all_names:
            key = raw.strip().lower()
            owner = self._by_raw.get(key)
            if owner is not None and owner.name != department.name:
                logger.warning(
                    f"Raw department '{raw}' already mapped to '{owner.name}' "
                    f"({owner.category}); ignoring claim from '{department.name}'"
                )
                continue
            claimed.add(raw)

        existing = self._departments.get(department.name)
        if existing is not None:
            merged = Department(existing.name, existing.category, existing.original_names | frozenset(claimed))
        else:
            merged = Department(department.name, department.category, frozenset(claimed))
        self._departments[merged.name] = merged
        for raw in merged.all_names:
            key = raw.strip().lower()
            owner = self._by_raw.get(key)
            if owner is None or owner.name == merged.name:
                self._by_raw[key] = merged

    @property
    def departments(self) -> List[Department]:
        return sorted(self._departments.values(), key=lambda d: d.name.lower())

    def lookup(self, raw_name: str) -> Optional[Department]:
        if not raw_name:
            return None
        return self._by_raw.get(raw_name.strip().lower())

    def category_of(self, raw_name: str) -> str:
        """
        Category for a raw department string.

        Strings the directory does not know get the fallback category, so
        grouping by category agrees with ``names_for_category`` filtering.
        """
        department = self.lookup(raw_name)
        if department is not None:
            return department.category
        logger.debug(f"Unmapped department '{raw_name}' categorised as '{self.catalog.fallback}'")
        return self.catalog.fallback

    def names_for_category(self, category: str) -> FrozenSet[str]:
        """All raw and canonical names of departments under ``category``."""
        names = set()
        for department in self._departments.values():
            if department.category == category:
                names.update(department.all_names)
        return frozenset(names)

    def __len__(self) -> int:
        return len(self._departments)

    @classmethod
    def from_documents(cls, catalog: CategoryCatalog, documents: Iterable[Mapping]) -> "DepartmentDirectory":
        """Build from departments collection documents ``{name, category, originalNames}``."""
        directory = cls(catalog)
        for doc in documents:
            name = str(doc.get("name") or "").strip()
            if not name:
                logger.warning(f"Skipping department document without a name: {doc!r}")
                continue
            originals = frozenset(str(n) for n in (doc.get("originalNames") or []) if str(n).strip())
            category = doc.get("category") or catalog.categorize_department(name)
            directory.add(Department(name=name, category=str(category), original_names=originals))
        return directory

    def absorb_raw_names(self, raw_names: Iterable[str]) -> int:
        """
        Add departments for raw strings the directory does not know yet.

        Spellings are kept exactly as stored (surrounding whitespace included)
        because the store compares membership values literally; they are
        grouped by their normalised name and categorised by keyword rules.

        Returns:
            Number of raw strings added
        """
        groups: Dict[str, set] = {}
        for raw in raw_names:
            if not raw or not raw.strip():
                continue
            known = self.lookup(raw)
            if known is not None:
                if raw not in known.all_names:
                    self.add(Department(known.name, known.category, frozenset({raw})))
                continue
            canonical = normalize_department_name(raw)
            groups.setdefault(canonical.lower(), set()).add(raw)

        for _, originals in sorted(groups.items()):
            first = sorted(originals, key=lambda r: (r.strip(), r))[0].strip()
            name = normalize_department_name(first)
            # Keywords are written against raw spellings ("F&B"), so try those first
            category = self.catalog.categorize_department(first)
            if category == self.catalog.fallback:
                category = self.catalog.categorize_department(name)
            self.add(Department(name=name, category=category, original_names=frozenset(originals)))
        return sum(len(g) for g in groups.values())

    @classmethod
    def from_raw_names(cls, catalog: CategoryCatalog, raw_names: Iterable[str]) -> "DepartmentDirectory":
        """Derive departments from the distinct raw strings found in findings."""
        directory = cls(catalog)
        added = directory.absorb_raw_names(raw_names)
        logger.info(f"Derived {len(directory)} departments from {added} raw names")
        return directory
