"""
Data layer module for finding records, the category catalogue and the department directory.
"""
from src.data.records import (
    FindingRecord,
    classify_code,
    coerce_number,
    coerce_year,
    derive_finding_id,
)
from src.data.category_catalog import (
    CategoryCatalog,
    CategoryDefinition,
    load_category_catalog,
    normalize_department_name,
    normalize_term,
)
from src.data.department_directory import (
    Department,
    DepartmentDirectory,
)

__all__ = [
    # Records
    "FindingRecord",
    "classify_code",
    "coerce_number",
    "coerce_year",
    "derive_finding_id",
    # Category catalogue
    "CategoryCatalog",
    "CategoryDefinition",
    "load_category_catalog",
    "normalize_department_name",
    "normalize_term",
    # Departments
    "Department",
    "DepartmentDirectory",
]
