"""
Prompt Management

Versioned, externalized prompts loaded from YAML:

    config/prompts/
        intent_extraction/
            v1.0.yaml
        category_matching/
            v1.0.yaml
        active_versions.yaml   (optional pin: {intent_extraction: "1.0"})

Usage:
    pm = PromptManager(config.prompts_dir)
    prompt = pm.get_prompt("intent_extraction")
    user_message = prompt.format(question=text, previous_filters="none")
"""
import hashlib
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)


@dataclass
class PromptTemplate:
    """A versioned prompt template."""
    name: str
    version: str
    description: str

    system_prompt: str
    user_prompt_template: str

    changelog: Optional[str] = None
    required_variables: List[str] = field(default_factory=list)
    optional_variables: Dict[str, Any] = field(default_factory=dict)

    @property
    def hash(self) -> str:
        """Hash of prompt content, logged with each call."""
        content = f"{self.system_prompt}{self.user_prompt_template}"
        return hashlib.md5(content.encode()).hexdigest()[:12]

    def format(self, **kwargs) -> str:
        """Format the user prompt template with provided variables."""
        missing = [v for v in self.required_variables if v not in kwargs]
        if missing:
            raise ValueError(f"Missing required variables: {missing}")
        all_vars = {**self.optional_variables, **kwargs}
        return self.user_prompt_template.format(**all_vars)

    @classmethod
    def from_yaml(cls, path: Path) -> "PromptTemplate":
        """Load prompt template from YAML file."""
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)

        return cls(
            name=data["name"],
            version=str(data["version"]),
            description=data.get("description", ""),
            system_prompt=data["system_prompt"],
            user_prompt_template=data["user_prompt_template"],
            changelog=data.get("changelog"),
            required_variables=data.get("required_variables", []),
            optional_variables=data.get("optional_variables", {}),
        )


class PromptManager:
    """Loads prompts by name, selecting the pinned or latest version."""

    def __init__(self, prompts_dir: Path):
        self.prompts_dir = Path(prompts_dir)
        self._cache: Dict[str, PromptTemplate] = {}
        self._active_versions: Dict[str, str] = {}
        self._load_active_versions()

    def _load_active_versions(self):
        config_path = self.prompts_dir / "active_versions.yaml"
        if config_path.exists():
            with open(config_path, encoding="utf-8") as f:
                self._active_versions = {k: str(v) for k, v in (yaml.safe_load(f) or {}).items()}

    def _find_latest_version(self, prompt_name: str) -> Optional[str]:
        prompt_dir = self.prompts_dir / prompt_name
        if not prompt_dir.exists():
            return None

        versions = []
        for f in prompt_dir.glob("v*.yaml"):
            version_str = f.stem[1:]
            try:
                # Parse as tuple for proper sorting (1.10 > 1.9)
                parts = tuple(int(p) for p in version_str.split('.'))
                versions.append((parts, version_str))
            except ValueError:
                continue

        if not versions:
            return None

        versions.sort(reverse=True)
        return versions[0][1]

    def get_prompt(self, name: str, version: str = None) -> PromptTemplate:
        """
        Get a prompt template by name and optional version.

        Args:
            name: Prompt name (e.g., "intent_extraction")
            version: Specific version (e.g., "1.0") or None for active/latest
        """
        if version is None:
            version = self._active_versions.get(name) or self._find_latest_version(name)

        if version is None:
            raise FileNotFoundError(f"No prompt versions found for '{name}'")

        cache_key = f"{name}/v{version}"
        if cache_key in self._cache:
            return self._cache[cache_key]

        path = self.prompts_dir / name / f"v{version}.yaml"
        if not path.exists():
            raise FileNotFoundError(f"Prompt file not found: {path}")

        template = PromptTemplate.from_yaml(path)
        self._cache[cache_key] = template

        logger.debug(f"Loaded prompt {name} v{version} (hash: {template.hash})")
        return template
