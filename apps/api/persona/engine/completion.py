"""Completion entry point: one request, one or more models, one event stream.

``create_completion`` resolves every requested model up front, so an unknown
model fails the request before anything is streamed. Each model then runs as
its own task:

1. persona proactive retrieval (``is_me`` personas with an owner) emits the
   preloaded references and feeds the knowledge-base block of the prompt;
2. the system prompt gets the conversation's earlier web searches appended;
3. the tool loop runs with the mode's step budget;
4. the result is persisted best-effort, and a brand-new conversation gets a
   generated title.

Tasks share only the conversation cache and the per-conversation guard; a
failing task never takes its siblings down. ``[DONE]`` is written last.
"""

import asyncio
import uuid

import structlog
from cachetools import LRUCache

from persona.core.config import Settings, settings
from persona.core.error_reporter import ErrorReporter, StructlogErrorReporter
from persona.core.errors import PersistenceError
from persona.core.metrics import completion_requests_total, persistence_failures_total
from persona.engine.builtin_tools import UrlFetcher, build_tool_registry
from persona.engine.llm import LanguageModelProvider, ProviderRegistry
from persona.engine.loop import STREAM_ERROR_MESSAGE, LoopOutcome, LoopState, ToolOrchestrationLoop
from persona.engine.progress import DeepThinkNotifier
from persona.engine.prompts import (
    build_system_prompt,
    format_memory_context,
    title_prompt,
    with_search_history,
)
from persona.engine.references import ReferenceTracker, to_memory_source
from persona.engine.stream_writer import ModelStreamWriter, StreamWriter
from persona.engine.tools import ToolContext
from persona.models.events import ConversationTitleEvent, ErrorEvent, MemorySourcesEvent
from persona.models.schemas import (
    SOURCE_CONTENT,
    SOURCE_MEMORY,
    CompletionRequest,
    RetrievalRequest,
    RetrievalResult,
)
from persona.repositories.conversations import Conversation, PersistenceStore, StoredMessage
from persona.retrieval.orchestrator import RetrievalOrchestrator
from persona.retrieval.web_search import WebSearchService

logger = structlog.get_logger(__name__)

PROACTIVE_TOOL_NAME = "personaMemory"
DEFAULT_TITLE = "New Conversation"
_TITLE_MAX_LENGTH = 80
_GUARD_CAPACITY = 10000


class CompletionEngine:
    def __init__(
        self,
        providers: ProviderRegistry,
        orchestrator: RetrievalOrchestrator,
        web_search: WebSearchService,
        store: PersistenceStore,
        *,
        title_provider: LanguageModelProvider | None = None,
        error_reporter: ErrorReporter | None = None,
        config: Settings | None = None,
        fetcher: UrlFetcher | None = None,
    ):
        self._providers = providers
        self._orchestrator = orchestrator
        self._web_search = web_search
        self._store = store
        self._title_provider = title_provider
        self._error_reporter = error_reporter or StructlogErrorReporter()
        self._config = config or settings
        self._fetcher = fetcher
        # Serialises persistence per conversation; "titled" marks conversations
        # whose title has been claimed.
        self._locks: LRUCache[str, asyncio.Lock] = LRUCache(maxsize=_GUARD_CAPACITY)
        self._titled: LRUCache[str, bool] = LRUCache(maxsize=_GUARD_CAPACITY)

    def resolve_models(self, request: CompletionRequest) -> dict[str, LanguageModelProvider]:
        """Map requested model names to providers; raises ModelUnavailableError."""
        models = request.models or [self._config.DEFAULT_MODEL]
        return {model: self._providers.resolve(model) for model in dict.fromkeys(models)}

    async def create_completion(
        self, request: CompletionRequest, writer: StreamWriter
    ) -> list[LoopOutcome]:
        providers = self.resolve_models(request)
        conversation_id = (
            request.conversation_id or request.new_conversation_id or str(uuid.uuid4())
        )
        writer.conversation_id = conversation_id
        user_message_id = request.message_id or str(uuid.uuid4())
        is_new = await self._is_new_conversation(conversation_id)

        log = logger.bind(conversation_id=conversation_id, deep_mode=request.deep_mode)
        log.info(
            "completion.start",
            models=list(providers),
            is_new_conversation=is_new,
            persona=request.persona.name if request.persona else None,
            query_preview=request.last_user_message[:80],
        )

        try:
            outcomes = await asyncio.gather(
                *(
                    self._run_model(
                        request,
                        model,
                        provider,
                        writer.for_model(model),
                        conversation_id=conversation_id,
                        user_message_id=user_message_id,
                        is_new=is_new,
                    )
                    for model, provider in providers.items()
                )
            )
        finally:
            await writer.done()

        for outcome in outcomes:
            completion_requests_total.labels(status=outcome.state.value).inc()
        log.info("completion.done", states=[o.state.value for o in outcomes])
        return list(outcomes)

    async def _is_new_conversation(self, conversation_id: str) -> bool:
        try:
            return await self._store.get_conversation(conversation_id) is None
        except Exception as exc:
            persistence_failures_total.labels(operation="get_conversation").inc()
            logger.warning(
                "completion.conversation_lookup_failed",
                conversation_id=conversation_id,
                error=str(exc),
            )
            return False

    async def _run_model(
        self,
        request: CompletionRequest,
        model: str,
        provider: LanguageModelProvider,
        writer: ModelStreamWriter,
        *,
        conversation_id: str,
        user_message_id: str,
        is_new: bool,
    ) -> LoopOutcome:
        try:
            return await self._generate(
                request,
                model,
                provider,
                writer,
                conversation_id=conversation_id,
                user_message_id=user_message_id,
                is_new=is_new,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("completion.model_task_failed", model=model)
            self._error_reporter.report(
                exc, {"component": "completion", "model": model, "conversation_id": conversation_id}
            )
            await writer.emit(ErrorEvent(error=STREAM_ERROR_MESSAGE, code="completion_error"))
            return LoopOutcome(state=LoopState.ERRORED, error=exc, finish_reason="error")

    async def _generate(
        self,
        request: CompletionRequest,
        model: str,
        provider: LanguageModelProvider,
        writer: ModelStreamWriter,
        *,
        conversation_id: str,
        user_message_id: str,
        is_new: bool,
    ) -> LoopOutcome:
        persona = request.persona
        memory_owner_id = persona.owner_user_id if persona and persona.is_me else None
        app_id = persona.app_id if persona else None
        progress = DeepThinkNotifier(writer, enabled=request.deep_mode)
        tracker = ReferenceTracker()

        await progress.emit("note", "Deep Think initiated", label="Deep Think")

        proactive: list[RetrievalResult] = []
        if memory_owner_id:
            proactive = await self._proactive_retrieval(
                request, writer, tracker, memory_owner_id, app_id, conversation_id
            )

        system_prompt = build_system_prompt(
            persona,
            deep_mode=request.deep_mode,
            memory_context=format_memory_context(request.last_user_message, proactive),
            has_memory_search=memory_owner_id is not None,
        )
        recent = await self._web_search.cache.recent_queries(conversation_id)
        system_prompt = with_search_history(system_prompt, recent)

        registry = build_tool_registry(
            deep_mode=request.deep_mode,
            web_search=self._web_search,
            orchestrator=self._orchestrator,
            has_memory_owner=memory_owner_id is not None,
            fetcher=self._fetcher,
        )
        context = ToolContext(
            conversation_id=conversation_id,
            user_id=request.user_id,
            app_id=app_id,
            model=model,
            writer=writer,
            progress=progress,
            memory_owner_id=memory_owner_id,
        )
        loop = ToolOrchestrationLoop(
            provider,
            registry,
            writer,
            context,
            max_steps=self._config.max_steps_for(request.deep_mode),
            tracker=tracker,
            error_reporter=self._error_reporter,
        )
        history = [
            {"role": m.role, "content": m.content} for m in request.messages if m.role != "system"
        ]
        outcome = await loop.run(system_prompt, history)

        if outcome.state == LoopState.FINISHED:
            await progress.emit(
                "synthesis",
                "Deep Think response ready",
                metadata={"steps": outcome.steps, "references": len(outcome.references)},
            )

        if outcome.state == LoopState.FINISHED or outcome.text:
            await self._persist(
                request,
                model,
                outcome,
                writer,
                conversation_id=conversation_id,
                user_message_id=user_message_id,
                is_new=is_new,
            )
        return outcome

    async def _proactive_retrieval(
        self,
        request: CompletionRequest,
        writer: ModelStreamWriter,
        tracker: ReferenceTracker,
        owner_id: str,
        app_id: str | None,
        conversation_id: str,
    ) -> list[RetrievalResult]:
        response = await self._orchestrator.retrieve(
            RetrievalRequest(
                query=request.last_user_message,
                user_id=owner_id,
                app_id=app_id,
                conversation_id=conversation_id,
                max_results=self._config.RETRIEVAL_MAX_RESULTS,
                sources=[SOURCE_MEMORY, SOURCE_CONTENT],
            )
        )
        new, record = tracker.register(response.results, tool_name=PROACTIVE_TOOL_NAME, iteration=0)
        if new:
            await writer.emit(
                MemorySourcesEvent(
                    memory_sources=[to_memory_source(ref, PROACTIVE_TOOL_NAME) for ref in new],
                    reference_summary=tracker.summary(record),
                )
            )
        logger.info(
            "completion.proactive_retrieval",
            model=writer.models[0],
            results=len(new),
            confidence=response.confidence_level,
        )
        return new

    def _lock_for(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        return lock

    async def _persist(
        self,
        request: CompletionRequest,
        model: str,
        outcome: LoopOutcome,
        writer: ModelStreamWriter,
        *,
        conversation_id: str,
        user_message_id: str,
        is_new: bool,
    ) -> None:
        claim_title = False
        async with self._lock_for(conversation_id):
            try:
                conversation = await self._save_turn(
                    request,
                    model,
                    outcome,
                    conversation_id=conversation_id,
                    user_message_id=user_message_id,
                )
            except PersistenceError as exc:
                persistence_failures_total.labels(operation=exc.operation).inc()
                logger.error(
                    "completion.persist_failed",
                    conversation_id=conversation_id,
                    model=model,
                    error=str(exc.__cause__ or exc),
                )
                self._error_reporter.report(
                    exc, {"component": "persistence", "conversation_id": conversation_id}
                )
                return

            if is_new and conversation_id not in self._titled:
                self._titled[conversation_id] = True
                claim_title = True

        if claim_title:
            await self._generate_title(request, conversation, outcome.text, writer)

    async def _save_turn(
        self,
        request: CompletionRequest,
        model: str,
        outcome: LoopOutcome,
        *,
        conversation_id: str,
        user_message_id: str,
    ) -> Conversation:
        """Create the conversation if needed, then store the user and assistant messages.

        Store failures surface as PersistenceError.
        """
        try:
            conversation = await self._store.get_conversation(conversation_id)
            if conversation is None:
                conversation = await self._store.save_conversation(
                    Conversation(
                        id=conversation_id,
                        user_id=request.user_id,
                        app_id=request.persona.app_id if request.persona else None,
                        title=DEFAULT_TITLE,
                    )
                )

            if await self._store.get_message(user_message_id) is None:
                await self._store.save_message(
                    StoredMessage(
                        id=user_message_id,
                        conversation_id=conversation_id,
                        role="user",
                        content=request.last_user_message,
                    )
                )

            await self._store.save_message(
                StoredMessage(
                    id=str(uuid.uuid4()),
                    conversation_id=conversation_id,
                    role="assistant",
                    content=outcome.text,
                    model=model,
                    tool_results=outcome.tool_results,
                    memory_sources=[
                        ref.model_dump(by_alias=True, mode="json") for ref in outcome.references
                    ],
                )
            )
        except Exception as exc:
            raise PersistenceError("save_messages", conversation_id, str(exc)) from exc
        return conversation

    async def _generate_title(
        self,
        request: CompletionRequest,
        conversation: Conversation,
        assistant_text: str,
        writer: ModelStreamWriter,
    ) -> None:
        title = await self._title_for(request.last_user_message, assistant_text)
        try:
            await self._store.save_conversation(conversation.model_copy(update={"title": title}))
        except Exception as exc:
            persistence_failures_total.labels(operation="save_title").inc()
            logger.error(
                "completion.title_save_failed", conversation_id=conversation.id, error=str(exc)
            )
            self._error_reporter.report(
                exc, {"component": "persistence", "conversation_id": conversation.id}
            )
        await writer.emit(ConversationTitleEvent(title=title))
        logger.info("completion.title_generated", conversation_id=conversation.id, title=title)

    async def _title_for(self, user_text: str, assistant_text: str) -> str:
        stripped = user_text.strip()
        fallback = stripped.splitlines()[0][:_TITLE_MAX_LENGTH] if stripped else DEFAULT_TITLE
        if self._title_provider is None:
            return fallback
        try:
            title = await self._title_provider.complete(
                title_prompt(user_text, assistant_text), max_tokens=24
            )
        except Exception as exc:
            logger.warning("completion.title_generation_failed", error=str(exc))
            return fallback
        title = title.strip().strip('"').strip("'").rstrip(".").strip()
        return title[:_TITLE_MAX_LENGTH] or fallback
