"""
Configuration settings for the Audit Findings Query Engine.

All model, store and engine limits are selected via environment variables,
never hardcoded at the call sites.
"""
import os
from dataclasses import dataclass, field
from typing import Dict, Optional
from enum import Enum
from pathlib import Path

PROJECT_ROOT = Path(__file__).parent.parent

class ModelProvider(Enum):
    GEMINI = "gemini"
    CLAUDE = "claude"
    OPENAI = "openai"

def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")

@dataclass
class ModelConfig:
    """Configuration for a specific LLM provider."""
    provider: ModelProvider
    model_name: str
    api_key_env: str
    temperature: float = 0.0  # Extraction must be repeatable
    max_tokens: int = 1024
    timeout_seconds: float = 15.0

    @property
    def api_key(self) -> str:
        key = os.getenv(self.api_key_env)
        if not key:
            raise ValueError(f"Missing API key: {self.api_key_env}")
        return key

    @property
    def has_api_key(self) -> bool:
        return bool(os.getenv(self.api_key_env))

# Model Registry - Add new models here
MODEL_REGISTRY: Dict[str, ModelConfig] = {
    "gemini-2.0-flash": ModelConfig(
        provider=ModelProvider.GEMINI,
        model_name="gemini-2.0-flash",
        api_key_env="GEMINI_API_KEY",
    ),
    "gemini-1.5-pro": ModelConfig(
        provider=ModelProvider.GEMINI,
        model_name="gemini-1.5-pro",
        api_key_env="GEMINI_API_KEY",
    ),
    "claude-sonnet-4": ModelConfig(
        provider=ModelProvider.CLAUDE,
        model_name="claude-sonnet-4-20250514",
        api_key_env="ANTHROPIC_API_KEY",
    ),
    "gpt-4o": ModelConfig(
        provider=ModelProvider.OPENAI,
        model_name="gpt-4o",
        api_key_env="OPENAI_API_KEY",
    ),
}

@dataclass
class StoreConfig:
    """Document store (Firestore) configuration."""
    project_id: str = field(default_factory=lambda: os.getenv("FIRESTORE_PROJECT_ID", ""))
    database: str = field(default_factory=lambda: os.getenv("FIRESTORE_DATABASE", "(default)"))
    api_token: str = field(default_factory=lambda: os.getenv("FIRESTORE_API_TOKEN", ""))
    findings_collection: str = field(
        default_factory=lambda: os.getenv("FINDINGS_COLLECTION", "audit-results")
    )
    departments_collection: str = field(
        default_factory=lambda: os.getenv("DEPARTMENTS_COLLECTION", "departments")
    )
    request_timeout_seconds: float = field(
        default_factory=lambda: float(os.getenv("STORE_REQUEST_TIMEOUT_SECONDS", "30"))
    )
    use_sample_data: bool = field(default_factory=lambda: _env_bool("USE_SAMPLE_DATA", False))

    @property
    def is_configured(self) -> bool:
        return bool(self.project_id and self.api_token)

@dataclass
class EngineConfig:
    """Limits that shape query compilation and result display."""
    # Max discrete values a single membership ("in") query may carry
    cardinality_limit: int = field(
        default_factory=lambda: int(os.getenv("STORE_CARDINALITY_LIMIT", "10"))
    )
    page_size: int = field(default_factory=lambda: int(os.getenv("STORE_PAGE_SIZE", "300")))
    # Safety cap for scans without any narrowing predicate
    max_scan_rows: int = field(default_factory=lambda: int(os.getenv("MAX_SCAN_ROWS", "2000")))
    display_row_limit: int = field(
        default_factory=lambda: int(os.getenv("DISPLAY_ROW_LIMIT", "10"))
    )
    llm_timeout_seconds: float = field(
        default_factory=lambda: float(os.getenv("LLM_TIMEOUT_SECONDS", "15"))
    )
    transcript_path: Optional[str] = field(
        default_factory=lambda: os.getenv("TRANSCRIPT_PATH") or None
    )

@dataclass
class AppConfig:
    """Main application configuration."""
    # Model selection - THE SINGLE POINT OF CONTROL
    active_model: str = field(
        default_factory=lambda: os.getenv("ACTIVE_MODEL", "gemini-2.0-flash")
    )
    llm_enabled: Optional[bool] = field(
        default_factory=lambda: _env_bool("LLM_ENABLED", True)
    )

    # Sub-configurations
    store: StoreConfig = field(default_factory=StoreConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)

    prompts_dir: Path = field(default_factory=lambda: PROJECT_ROOT / "config" / "prompts")
    categories_path: Path = field(
        default_factory=lambda: PROJECT_ROOT / "config" / "categories.yaml"
    )

    # Logging
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))

    @property
    def model_config(self) -> ModelConfig:
        """Get the active model configuration, with the engine's LLM timeout applied."""
        if self.active_model not in MODEL_REGISTRY:
            raise ValueError(f"Unknown model: {self.active_model}. Available: {list(MODEL_REGISTRY.keys())}")
        base = MODEL_REGISTRY[self.active_model]
        return ModelConfig(
            provider=base.provider,
            model_name=base.model_name,
            api_key_env=base.api_key_env,
            temperature=base.temperature,
            max_tokens=base.max_tokens,
            timeout_seconds=self.engine.llm_timeout_seconds,
        )

    @property
    def llm_available(self) -> bool:
        """LLM extraction is used only when enabled and a key is present."""
        if not self.llm_enabled:
            return False
        try:
            return self.model_config.has_api_key
        except ValueError:
            return False

def get_config() -> AppConfig:
    """Factory function to get application configuration."""
    return AppConfig()
