"""
Category Resolver

Maps a free-form category token ("HC", "keuangan", "IT dept") to a category
label and the set of raw department names filed under it.

Resolution order:
1. Exact label match ("HR")
2. Synonym / abbreviation match from the catalogue ("HC" -> HR)
3. LLM classifier, validated against the known label list
4. No match: empty set with a reason

Results are cached per normalised token for the resolver's lifetime, so the
same token always yields the same frozenset within one deployment.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional, Tuple

from src.core.output_schemas import Invalid, validate_category_match
from src.core.prompt_manager import PromptManager
from src.data.category_catalog import CategoryCatalog, normalize_term
from src.data.department_directory import DepartmentDirectory

logger = logging.getLogger(__name__)

SOURCE_LABEL = "label"
SOURCE_SYNONYM = "synonym"
SOURCE_LLM = "llm"
SOURCE_NONE = "none"

# Below this the classifier's pick is treated as no match
MIN_LLM_CONFIDENCE = 0.5


@dataclass(frozen=True)
class CategoryResolution:
    """Outcome of resolving one token."""
    token: str
    category: Optional[str]
    department_names: FrozenSet[str]
    reasoning: str
    confidence: float
    source: str

    @property
    def resolved(self) -> bool:
        return self.category is not None

    def to_dict(self):
        return {
            "token": self.token,
            "category": self.category,
            "department_names": sorted(self.department_names),
            "reasoning": self.reasoning,
            "confidence": self.confidence,
            "source": self.source,
        }


class CategoryResolver:
    """
    Resolves category tokens against the catalogue and the department directory.

    The directory is read on each fresh resolution; cached answers are never
    recomputed, so swap in a new resolver when the directory changes.
    """

    def __init__(
        self,
        catalog: CategoryCatalog,
        directory: DepartmentDirectory,
        router=None,
        prompt_manager: Optional[PromptManager] = None,
        timeout_seconds: float = 15.0,
    ):
        self.catalog = catalog
        self.directory = directory
        self.router = router
        self.prompt_manager = prompt_manager
        self.timeout_seconds = timeout_seconds
        self._cache: Dict[str, CategoryResolution] = {}

    @property
    def llm_enabled(self) -> bool:
        return self.router is not None and self.prompt_manager is not None

    async def resolve(self, token: str) -> CategoryResolution:
        """Resolve one token. Never raises."""
        key = normalize_term(token or "")
        if not key:
            return self._no_match(token, "empty token")

        if key in self._cache:
            return self._cache[key]
        resolution, cacheable = await self._resolve_uncached(token)
        if cacheable:
            # Concurrent first lookups of one token: the first stored answer wins
            resolution = self._cache.setdefault(key, resolution)

        logger.info(
            f"Resolved '{token}' -> {resolution.category or 'no match'} "
            f"({resolution.source}, {len(resolution.department_names)} names)"
        )
        return resolution

    async def _resolve_uncached(self, token: str) -> Tuple[CategoryResolution, bool]:
        """Returns the resolution and whether it may be cached (transient LLM failures may not)."""
        category, how = self.catalog.match_term(token)
        if category is not None:
            source = SOURCE_LABEL if how == "label" else SOURCE_SYNONYM
            reasoning = (
                f"'{token}' is the category label" if source == SOURCE_LABEL
                else f"'{token}' is a known synonym of {category}"
            )
            return self._resolution(token, category, reasoning, 1.0, source), True

        # A token spelled like a raw department string maps through the directory
        department = self.directory.lookup(token)
        if department is not None:
            return self._resolution(
                token,
                department.category,
                f"'{token}' is a known department under {department.category}",
                0.95,
                SOURCE_SYNONYM,
            ), True

        if self.llm_enabled:
            try:
                resolution = await asyncio.wait_for(
                    asyncio.to_thread(self._classify_with_llm, token),
                    timeout=self.timeout_seconds,
                )
                return resolution, True
            except asyncio.TimeoutError:
                logger.warning(f"Category classifier timed out for '{token}'")
                return self._no_match(token, "category classifier timed out"), False
            except Exception as e:
                logger.warning(f"Category classifier failed for '{token}': {type(e).__name__}: {e}")
                return self._no_match(token, "category classifier unavailable"), False

        return self._no_match(token, f"'{token}' does not match any known category"), True

    def _classify_with_llm(self, token: str) -> CategoryResolution:
        prompt = self.prompt_manager.get_prompt("category_matching")
        user_message = prompt.format(token=token.replace('"', "'"), categories=self.catalog.describe_for_prompt())
        logger.info(f"Category classification via LLM (prompt {prompt.name} v{prompt.version}, hash {prompt.hash})")
        response = self.router.generate_with_system(prompt.system_prompt, user_message)

        result = validate_category_match(response.content, self.catalog.labels)
        if isinstance(result, Invalid):
            logger.warning(f"Category answer for '{token}' rejected: {result.reason} {result.errors}")
            return self._no_match(token, f"classifier answer rejected ({result.reason})")

        match = result.value
        if match.category is None or match.confidence < MIN_LLM_CONFIDENCE:
            reason = match.reasoning or "classifier found no confident match"
            return self._no_match(token, reason)
        return self._resolution(token, match.category, match.reasoning or "classifier match", match.confidence, SOURCE_LLM)

    def _resolution(self, token: str, category: str, reasoning: str, confidence: float, source: str) -> CategoryResolution:
        names = self.directory.names_for_category(category)
        if not names:
            reasoning += f"; no departments are filed under {category}"
        return CategoryResolution(
            token=token,
            category=category,
            department_names=names,
            reasoning=reasoning,
            confidence=confidence,
            source=source,
        )

    @staticmethod
    def _no_match(token: str, reasoning: str) -> CategoryResolution:
        return CategoryResolution(
            token=token,
            category=None,
            department_names=frozenset(),
            reasoning=reasoning,
            confidence=0.0,
            source=SOURCE_NONE,
        )
