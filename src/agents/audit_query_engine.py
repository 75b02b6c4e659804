"""
Audit Query Engine

Answers one conversational turn about audit findings:
1. Intent extraction: LLM with keyword fallback
2. Category resolution: category tokens -> raw department-name sets
3. Filter continuity: merge with the session's previous filters
4. Query compilation and execution against the document store
5. Aggregation (when requested) and response formatting

Turns of one session run one at a time; different sessions run independently.
Every failure ends up as an EngineResponse with ``error`` set.
"""
import asyncio
import logging
from datetime import date
from typing import Callable, List, Optional, Tuple

import yaml

from config.settings import AppConfig, get_config
from src.core.category_resolver import CategoryResolution, CategoryResolver
from src.core.continuity import merge
from src.core.error_taxonomy import ConfigurationError, classify_error
from src.core.filter_spec import FilterSpec, Predicate
from src.core.intent_extractor import DraftIntent, IntentExtractor
from src.core.memory import (
    ROLE_USER,
    ConversationTurn,
    InMemoryTranscriptSink,
    JsonlTranscriptSink,
    SessionManager,
    TranscriptSink,
)
from src.core.model_router import ModelRouter, create_router
from src.core.prompt_manager import PromptManager
from src.core.query_compiler import QueryCompiler
from src.data.category_catalog import CategoryCatalog, load_category_catalog
from src.data.department_directory import DepartmentDirectory
from src.tools.aggregator import Aggregator
from src.tools.document_store import DocumentStore, FirestoreRESTStore
from src.tools.query_executor import QueryExecutor
from src.tools.result_formatter import EngineResponse, ExportRequest, ExportResult, ResultFormatter
from src.tools.sample_data import build_sample_store

logger = logging.getLogger(__name__)

# Confidence given to a turn whose category token matched nothing
UNRESOLVED_TOKEN_CONFIDENCE = 0.4


class AuditQueryEngine:
    """
    Conversational query engine over audit findings.

    All collaborators are injected; use ``create_audit_query_engine`` to build
    a wired instance from configuration.
    """

    def __init__(
        self,
        config: AppConfig,
        store: DocumentStore,
        extractor: IntentExtractor,
        resolver: CategoryResolver,
        compiler: QueryCompiler,
        executor: QueryExecutor,
        aggregator: Optional[Aggregator] = None,
        formatter: Optional[ResultFormatter] = None,
        sessions: Optional[SessionManager] = None,
        clock: Callable[[], date] = date.today,
    ):
        self.config = config
        self.store = store
        self.extractor = extractor
        self.resolver = resolver
        self.compiler = compiler
        self.executor = executor
        self.aggregator = aggregator or Aggregator()
        self.formatter = formatter or ResultFormatter(config.engine.display_row_limit)
        self.sessions = sessions or SessionManager(InMemoryTranscriptSink())
        self.clock = clock

    async def answer(self, text: str, session_id: Optional[str] = None) -> EngineResponse:
        """
        Answer one turn.

        Args:
            text: The user's question or follow-up
            session_id: Conversation id; a new session is started when None

        Returns:
            EngineResponse; never raises
        """
        session_id = session_id or self.sessions.new_session_id()
        logger.info(f"[{session_id[:8]}] Turn: {text[:100]}")

        async with self.sessions.turn(session_id):
            try:
                response = await self._answer(text, session_id)
            except Exception as e:
                classified = classify_error(e, pipeline_phase="engine", context={"session_id": session_id})
                logger.error(f"[{session_id[:8]}] Turn failed: {classified.category.name}: {e}", exc_info=True)
                response = self.formatter.format_error(classified)
        response.notes.append(f"session {session_id}")
        return response

    def answer_sync(self, text: str, session_id: Optional[str] = None) -> EngineResponse:
        """Synchronous version of answer for non-async contexts."""
        return asyncio.run(self.answer(text, session_id))

    async def _answer(self, text: str, session_id: str) -> EngineResponse:
        log = self.sessions.get_log(session_id)
        previous = log.last_resolved_filters()

        # Phase 1: intent
        draft = await self.extractor.extract(text, previous)
        logger.info(
            f"Draft: {draft.to_filter_spec().describe()} tokens={list(draft.category_tokens)} "
            f"cue={draft.continuity.value} llm={draft.used_llm}"
        )

        # Phase 2: category tokens -> department sets
        category_predicates, resolutions = await self._resolve_categories(draft)
        draft_spec = FilterSpec(draft.predicates + tuple(category_predicates), draft.aggregation)

        # Phase 3: continuity
        merged = merge(draft_spec, previous, draft.continuity)
        logger.info(f"Merged ({merged.turn_type.value}, {merged.confidence:.2f}): {merged.filters.describe()}")

        # Phase 4: compile and execute
        compiled = self.compiler.compile(merged.filters, today=self.clock())
        outcome = await self.executor.execute(compiled)
        if not outcome.success:
            classified = classify_error(outcome.error, pipeline_phase="execute", context={"session_id": session_id})
            logger.error(f"Query failed: {outcome.error} ({outcome.error.predicate})")
            # Failed turns do not become the basis for follow-ups
            self.sessions.record(session_id, ConversationTurn(ROLE_USER, text))
            return self.formatter.format_error(classified, spec=compiled.spec, turn_type=merged.turn_type.value)

        # Phase 5: aggregate and format
        aggregation = None
        if compiled.spec.aggregation is not None:
            aggregation = self.aggregator.aggregate(outcome.records, compiled.spec.aggregation)

        unresolved = [r for r in resolutions if not r.resolved]
        confidence = min(merged.confidence, draft.confidence)
        if unresolved:
            confidence = min(confidence, UNRESOLVED_TOKEN_CONFIDENCE)
        notes = list(draft.parsing_notes) + list(merged.notes) + list(compiled.notes)
        notes += [self._describe_resolution(r) for r in resolutions]

        # An aggregation-only follow-up ("by year") shows the breakdown without rows
        include_rows = aggregation is None or bool(draft.predicates or draft.category_tokens)

        response = self.formatter.format(
            outcome,
            compiled.spec,
            aggregation=aggregation,
            session_id=session_id,
            turn_type=merged.turn_type.value,
            confidence=round(confidence, 2),
            low_confidence=merged.low_confidence or bool(unresolved),
            user_intent=draft.user_intent,
            notes=notes,
            include_rows=include_rows,
        )

        self.sessions.record(
            session_id,
            ConversationTurn(ROLE_USER, text, resolved_filters=compiled.spec, result_count=outcome.total_count),
        )
        return response

    async def _resolve_categories(self, draft: DraftIntent) -> Tuple[List[Predicate], List[CategoryResolution]]:
        """
        Resolve the draft's category tokens.

        Resolved tokens become one ``department in {...}`` predicate holding the
        union of their department names. A token that matches nothing becomes a
        ``department contains`` filter so the turn still narrows.
        """
        if not draft.category_tokens:
            return [], []

        resolutions = list(await asyncio.gather(*(self.resolver.resolve(t) for t in draft.category_tokens)))
        predicates: List[Predicate] = []
        names = set()
        categories_without_departments = []
        for resolution in resolutions:
            if resolution.resolved and resolution.department_names:
                names |= resolution.department_names
            elif resolution.resolved:
                categories_without_departments.append(resolution.category)
            else:
                logger.info(f"Unresolved category token '{resolution.token}': {resolution.reasoning}")
                predicates.append(Predicate("department", "contains", resolution.token.strip().lower()))

        if names:
            predicates.insert(0, Predicate("department", "in", frozenset(names)))
        elif categories_without_departments:
            predicates.insert(0, Predicate("category", "in", frozenset(categories_without_departments)))
        return predicates, resolutions

    @staticmethod
    def _describe_resolution(resolution: CategoryResolution) -> str:
        if not resolution.resolved:
            return f"'{resolution.token}': no matching category ({resolution.reasoning})"
        return (
            f"'{resolution.token}' -> {resolution.category} "
            f"({len(resolution.department_names)} department names, {resolution.source})"
        )

    async def export(self, request: ExportRequest) -> ExportResult:
        """
        Re-run an answered query without the display or scan caps.

        Returns:
            ExportResult with every matching row, or with ``error`` set when
            the query fails; never raises
        """
        try:
            compiled = self.compiler.compile(request.spec, today=self.clock())
            outcome = await self.executor.execute(compiled, fetch_all=True)
        except Exception as e:
            classified = classify_error(e, pipeline_phase="engine", context={"session_id": request.session_id})
            logger.error(f"Export failed: {classified.category.name}: {e}", exc_info=True)
            return ExportResult(request=request, error=classified.to_dict())

        if not outcome.success:
            classified = classify_error(outcome.error, pipeline_phase="execute", context={"session_id": request.session_id})
            logger.error(f"Export failed: {outcome.error} ({outcome.error.predicate})")
            return ExportResult(request=request, error=classified.to_dict())

        logger.info(f"Exported {outcome.total_count} rows for {request.spec.describe()}")
        return ExportResult(request=request, rows=[r.to_row() for r in outcome.records])

    def export_all(self, request: ExportRequest) -> ExportResult:
        """Synchronous version of export."""
        return asyncio.run(self.export(request))


# =============================================================================
# FACTORY
# =============================================================================

def load_department_directory(
    store: DocumentStore,
    catalog: CategoryCatalog,
    config: AppConfig,
) -> DepartmentDirectory:
    """
    Departments collection when it has entries, otherwise derived from the
    distinct raw department strings in findings.

    Raw strings in findings that the collection does not list are added under
    their keyword category, so every stored spelling can be filtered on.
    """
    page_size = config.engine.page_size
    documents = [data for _, data in store.stream(config.store.departments_collection, page_size=page_size)]
    raw_names = {
        str(data.get("department") or "")
        for _, data in store.stream(config.store.findings_collection, page_size=page_size)
    }
    if not documents:
        logger.info("Departments collection is empty; deriving departments from findings")
        return DepartmentDirectory.from_raw_names(catalog, raw_names)

    directory = DepartmentDirectory.from_documents(catalog, documents)
    logger.info(f"Loaded {len(directory)} departments from '{config.store.departments_collection}'")
    added = directory.absorb_raw_names(raw_names)
    if added:
        logger.warning(f"{added} raw department names in findings are not in the departments collection")
    return directory


def create_store(config: AppConfig) -> DocumentStore:
    """Firestore when configured, otherwise the generated sample data."""
    limit = config.engine.cardinality_limit
    if config.store.use_sample_data or not config.store.is_configured:
        if not config.store.use_sample_data:
            logger.warning("Firestore is not configured; using sample data")
        return build_sample_store(cardinality_limit=limit, findings_collection=config.store.findings_collection)
    return FirestoreRESTStore(config.store, cardinality_limit=limit)


def create_audit_query_engine(
    config: Optional[AppConfig] = None,
    store: Optional[DocumentStore] = None,
    router: Optional[ModelRouter] = None,
    sink: Optional[TranscriptSink] = None,
    clock: Callable[[], date] = date.today,
) -> AuditQueryEngine:
    """
    Build a fully wired engine.

    Args:
        config: Application config (defaults to environment)
        store: Document store (defaults to Firestore or sample data)
        router: LLM router; created from config when the LLM is available
        sink: Transcript sink (defaults to JSONL when TRANSCRIPT_PATH is set)
        clock: Source of "today" for relative years
    """
    config = config or get_config()
    try:
        catalog = load_category_catalog(config.categories_path)
    except (OSError, ValueError, KeyError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Cannot load category catalogue {config.categories_path}: {e}")

    store = store or create_store(config)
    directory = load_department_directory(store, catalog, config)

    if router is None and config.llm_available:
        router = create_router(config.active_model, timeout_seconds=config.engine.llm_timeout_seconds)
    if router is None:
        logger.info("LLM disabled or no API key; using keyword extraction only")
    prompt_manager = PromptManager(config.prompts_dir) if router is not None else None

    if sink is None:
        if config.engine.transcript_path:
            sink = JsonlTranscriptSink(config.engine.transcript_path)
        else:
            sink = InMemoryTranscriptSink()

    timeout = config.engine.llm_timeout_seconds
    return AuditQueryEngine(
        config=config,
        store=store,
        extractor=IntentExtractor(catalog, router, prompt_manager, timeout_seconds=timeout, clock=clock),
        resolver=CategoryResolver(catalog, directory, router, prompt_manager, timeout_seconds=timeout),
        compiler=QueryCompiler(
            collection=config.store.findings_collection,
            cardinality_limit=config.engine.cardinality_limit,
            max_scan_rows=config.engine.max_scan_rows,
            directory=directory,
            clock=clock,
        ),
        executor=QueryExecutor(store, directory, page_size=config.engine.page_size),
        aggregator=Aggregator(),
        formatter=ResultFormatter(config.engine.display_row_limit),
        sessions=SessionManager(sink),
        clock=clock,
    )
