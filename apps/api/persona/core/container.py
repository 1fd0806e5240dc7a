"""Service wiring.

Builds the process-wide object graph from ``Settings`` once, on first use:

    ExaSearchClient -> WebSearchService (conversation cache) --+
    Mem0MemoryStore -> MemoryRetriever                         +-> RetrievalOrchestrator
    StaticContentStore -> ContentRetriever                     |
    WebSearchService -> WebSearchRetriever --------------------+
    ProviderRegistry + orchestrator + web search + store -> CompletionEngine

Route handlers receive the pieces through the FastAPI dependencies at the
bottom of this module, which tests replace via ``app.dependency_overrides``.
"""

import asyncio
from dataclasses import dataclass

import structlog

from persona.cache.conversation_cache import build_conversation_cache
from persona.core.config import Settings, settings
from persona.core.error_reporter import StructlogErrorReporter
from persona.engine.completion import CompletionEngine
from persona.engine.llm import OpenAIProvider, ProviderRegistry
from persona.repositories.conversations import InMemoryPersistenceStore
from persona.retrieval.orchestrator import RetrievalOrchestrator
from persona.retrieval.retrievers import ContentRetriever, MemoryRetriever, WebSearchRetriever
from persona.retrieval.web_search import WebSearchService
from persona.tools.content_store import StaticContentStore
from persona.tools.memory_mem0 import Mem0MemoryStore
from persona.tools.search_exa import ExaSearchClient

logger = structlog.get_logger(__name__)


@dataclass
class Container:
    orchestrator: RetrievalOrchestrator
    web_search: WebSearchService
    completion_engine: CompletionEngine


_container: Container | None = None
_container_lock = asyncio.Lock()


async def build_container(config: Settings) -> Container:
    reporter = StructlogErrorReporter()
    cache = await build_conversation_cache(config)
    web_search = WebSearchService(
        ExaSearchClient(api_key=config.EXA_API_KEY),
        cache,
        timeout=config.WEB_SEARCH_TIMEOUT,
    )
    orchestrator = RetrievalOrchestrator(
        [
            MemoryRetriever(
                Mem0MemoryStore(api_key=config.MEM0_API_KEY, base_url=config.MEM0_BASE_URL),
                min_score=config.MEMORY_MIN_SCORE,
                timeout=config.SOURCE_TIMEOUT,
            ),
            ContentRetriever(StaticContentStore(), timeout=config.SOURCE_TIMEOUT),
            WebSearchRetriever(web_search, timeout=config.WEB_SEARCH_TIMEOUT),
        ],
        error_reporter=reporter,
        result_cap=config.RETRIEVAL_RESULT_CAP,
    )
    engine = CompletionEngine(
        ProviderRegistry.for_openai(config.AVAILABLE_MODELS),
        orchestrator,
        web_search,
        InMemoryPersistenceStore(),
        title_provider=OpenAIProvider(config.TITLE_MODEL),
        error_reporter=reporter,
        config=config,
    )
    logger.info(
        "container.built",
        models=config.AVAILABLE_MODELS,
        cache_backend=config.CONVERSATION_CACHE_BACKEND,
        sources=orchestrator.source_names,
    )
    return Container(orchestrator=orchestrator, web_search=web_search, completion_engine=engine)


async def get_container() -> Container:
    global _container
    if _container is None:
        async with _container_lock:
            if _container is None:
                _container = await build_container(settings)
    return _container


def reset_container() -> None:
    global _container
    _container = None


async def get_completion_engine() -> CompletionEngine:
    return (await get_container()).completion_engine


async def get_retrieval_orchestrator() -> RetrievalOrchestrator:
    return (await get_container()).orchestrator
