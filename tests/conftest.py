"""
Shared fixtures: category catalogue, department directory, an in-memory store
holding a small set of findings, and a wired engine without an LLM.
"""
from datetime import date

import pytest

from config.settings import AppConfig
from src.agents.audit_query_engine import create_audit_query_engine
from src.core.memory import InMemoryTranscriptSink
from src.data.category_catalog import load_category_catalog
from src.data.department_directory import DepartmentDirectory
from src.tools.document_store import InMemoryDocumentStore

FINDINGS = "audit-results"
TODAY = date(2025, 6, 1)

# Years deliberately stored as both int and str
SAMPLE_FINDINGS = [
    {"year": 2024, "projectName": "Mall Ciputra Cibubur", "department": "IT", "code": "F",
     "riskArea": "Access Control", "description": "User access not revoked", "bobot": 3, "kadar": 2, "nilai": 6},
    {"year": "2024", "projectName": "Mall Ciputra Cibubur", "department": "Departemen IT", "code": "NF",
     "riskArea": "Access Control", "description": "Backup log incomplete", "bobot": 1, "kadar": 1, "nilai": 1},
    {"year": "2024", "projectName": "CitraLand Surabaya", "department": "Information Technology", "code": "F",
     "riskArea": "Asset Management", "description": "Laptop register outdated", "bobot": 2, "kadar": 3},
    {"year": 2023, "projectName": "Mall Ciputra Cibubur", "department": "IT", "code": "F",
     "riskArea": "Access Control", "description": "Shared admin password", "bobot": 4, "kadar": 2, "nilai": 8},
    {"year": 2024, "projectName": "Mall Ciputra Cibubur", "department": "HC", "code": "F",
     "riskArea": "Payroll", "description": "Overtime not approved", "bobot": 2, "kadar": 2, "nilai": 4},
    {"year": "2024", "projectName": "Ciputra World Surabaya", "department": "Human Capital", "code": "F",
     "riskArea": "Payroll", "description": "Payroll changes without approval", "bobot": 5, "kadar": 2, "nilai": 10},
    {"year": 2023, "projectName": "CitraLand Surabaya", "department": "HRD", "code": "NF",
     "riskArea": "Payroll", "description": "Training record missing", "bobot": 1, "kadar": 1, "nilai": 1},
    {"year": 2024, "projectName": "CitraLand Surabaya", "department": "Keuangan", "code": "F",
     "riskArea": "Cash Management", "description": "Bank reconciliation late", "bobot": 4, "kadar": 3, "nilai": 12},
    {"year": "2022", "projectName": "Mall Ciputra Jakarta", "department": "Finance & Accounting", "code": "F",
     "riskArea": "Cash Management", "description": "Petty cash over limit", "bobot": 2, "kadar": 1, "nilai": 2},
    {"year": 2024, "projectName": "Mall Ciputra Jakarta", "department": "F&B", "code": "F",
     "riskArea": "Inventory", "description": "Stock opname differences", "bobot": 3, "kadar": 3, "nilai": 9},
]


@pytest.fixture
def catalog():
    return load_category_catalog()


@pytest.fixture
def store():
    store = InMemoryDocumentStore(cardinality_limit=10)
    store.add_many(FINDINGS, SAMPLE_FINDINGS)
    return store


@pytest.fixture
def directory(catalog):
    return DepartmentDirectory.from_raw_names(catalog, [d["department"] for d in SAMPLE_FINDINGS])


@pytest.fixture
def app_config(tmp_path):
    config = AppConfig()
    config.llm_enabled = False
    config.store.use_sample_data = False
    config.store.findings_collection = FINDINGS
    config.store.departments_collection = "departments"
    config.engine.cardinality_limit = 10
    config.engine.page_size = 3
    config.engine.max_scan_rows = 2000
    config.engine.display_row_limit = 10
    config.engine.transcript_path = None
    return config


@pytest.fixture
def engine(app_config, store):
    return create_audit_query_engine(
        app_config,
        store=store,
        sink=InMemoryTranscriptSink(),
        clock=lambda: TODAY,
    )


@pytest.fixture
def sample_findings():
    return [dict(doc) for doc in SAMPLE_FINDINGS]
