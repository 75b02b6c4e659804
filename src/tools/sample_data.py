"""
Sample Audit Findings Generator

Generates fake findings shaped like the production ``audit-results``
collection, so the engine can run locally without touching real audit data.

The generated data reproduces the quirks the engine has to cope with:
- ``year`` stored as a string for older imports and as an int for newer ones
- several raw spellings of the same department ("HC", "Human Capital", "HRD")
- scores stored as numbers or numeric strings, ``nilai`` sometimes absent

Usage:
    Set USE_SAMPLE_DATA=true in .env to enable sample data mode.
"""
import logging
import random
from typing import Any, Dict, List, Optional

from src.data.records import derive_finding_id
from src.tools.document_store import InMemoryDocumentStore

logger = logging.getLogger(__name__)

# Raw department spellings as they appear in imported spreadsheets
SAMPLE_DEPARTMENTS = [
    "IT",
    "Departemen IT",
    "Information Technology",
    "HC",
    "Human Capital",
    "HRD",
    "Finance & Accounting",
    "Keuangan",
    "Marketing",
    "Sales & Marketing",
    "F&B",
    "Golf Operation",
    "Estate Management",
    "Engineering",
    "Legal",
    "Purchasing",
    "General Affairs",
    "Security",
]

SAMPLE_PROJECTS = [
    "Mall Ciputra Cibubur",
    "Mall Ciputra Jakarta",
    "Ciputra World Surabaya",
    "CitraLand Surabaya",
    "CitraGarden City Jakarta",
    "Ciputra Hospital Tangerang",
    "Universitas Ciputra",
    "Ciputra Golf Club",
]

SAMPLE_RISK_AREAS = [
    "Cash Management",
    "Procurement",
    "Payroll",
    "Access Control",
    "Revenue Recognition",
    "Asset Management",
    "Contract Management",
    "Inventory",
]

SAMPLE_DESCRIPTIONS = [
    "Reconciliation not performed on a monthly basis",
    "Approval matrix not followed for purchases above threshold",
    "User access not revoked after resignation",
    "Supporting documents incomplete",
    "Stock opname differences not followed up",
    "Contract expired without renewal",
    "Segregation of duties not enforced",
    "Petty cash exceeds approved limit",
]

# Code -> relative weight
SAMPLE_CODES = {"F": 5, "NF": 3, "O": 1, "R": 1}

# Years before this are stored as strings, like the first imports
STRING_YEAR_BEFORE = 2023


def generate_sample_finding(
    year: int,
    project_name: str,
    department: str,
    rng: random.Random,
) -> Dict[str, Any]:
    """
    Generate a single finding document.

    Args:
        year: Audit year
        project_name: Project the audit belongs to
        department: Raw department string
        rng: Random source (seeded for reproducibility)

    Returns:
        Dict using the collection's camelCase field names
    """
    code = rng.choices(list(SAMPLE_CODES), weights=list(SAMPLE_CODES.values()))[0]
    bobot = rng.randint(1, 5)
    kadar = rng.randint(1, 5) if code == "F" else rng.randint(0, 2)

    document: Dict[str, Any] = {
        "year": str(year) if year < STRING_YEAR_BEFORE else year,
        "projectName": project_name,
        "department": department,
        "riskArea": rng.choice(SAMPLE_RISK_AREAS),
        "description": rng.choice(SAMPLE_DESCRIPTIONS),
        "code": code,
        "bobot": bobot if rng.random() < 0.8 else str(bobot),
        "kadar": kadar,
    }
    # Some imports computed nilai, others left it for the reader
    if rng.random() < 0.7:
        document["nilai"] = bobot * kadar
    if rng.random() < 0.2:
        document["sh"] = f"SH-{rng.randint(1, 40):02d}"
    return document


def generate_sample_findings(
    count: int = 400,
    years: Optional[List[int]] = None,
    projects: Optional[List[str]] = None,
    departments: Optional[List[str]] = None,
    seed: int = 42,
) -> List[Dict[str, Any]]:
    """
    Generate sample finding documents.

    Args:
        count: Number of findings to generate
        years: Audit years to spread findings over (defaults to 2021-2025)
        projects: Project names (defaults to SAMPLE_PROJECTS)
        departments: Raw department strings (defaults to SAMPLE_DEPARTMENTS)
        seed: Seed for the random source; the same seed yields the same data

    Returns:
        List of documents, each with a content-derived ``auditResultId``
    """
    rng = random.Random(seed)
    years = years or [2021, 2022, 2023, 2024, 2025]
    projects = projects or SAMPLE_PROJECTS
    departments = departments or SAMPLE_DEPARTMENTS

    documents: Dict[str, Dict[str, Any]] = {}
    attempts = 0
    while len(documents) < count and attempts < count * 5:
        attempts += 1
        document = generate_sample_finding(
            year=rng.choice(years),
            project_name=rng.choice(projects),
            department=rng.choice(departments),
            rng=rng,
        )
        doc_id = derive_finding_id(document)
        # Identical content means the same finding; keep the first
        if doc_id in documents:
            continue
        document["auditResultId"] = doc_id
        documents[doc_id] = document

    logger.info(f"Generated {len(documents)} sample findings")
    return list(documents.values())


def build_sample_store(
    count: int = 400,
    seed: int = 42,
    cardinality_limit: int = 10,
    findings_collection: str = "audit-results",
) -> InMemoryDocumentStore:
    """In-memory store holding generated findings; the departments collection stays empty."""
    store = InMemoryDocumentStore(cardinality_limit=cardinality_limit)
    store.add_many(findings_collection, generate_sample_findings(count=count, seed=seed))
    return store
