from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from persona.core.config import settings
from persona.core.container import get_container, reset_container
from persona.core.logging_setup import configure_logging
from persona.core.middleware import RequestIDMiddleware
from persona.core.redis import close_redis

configure_logging(settings.LOG_LEVEL, settings.ENVIRONMENT)

logger = structlog.get_logger(__name__)

_KEY_EFFECTS = {
    "OPENAI_API_KEY": "completions fail",
    "EXA_API_KEY": "webSearch returns no results",
    "MEM0_API_KEY": "personaMemory returns no memories",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("app.starting", environment=settings.ENVIRONMENT)
    for name, effect in _KEY_EFFECTS.items():
        if not getattr(settings, name):
            logger.warning("app.key_missing", setting=name, effect=effect)

    try:
        await get_container()
    except Exception as e:
        logger.warning("app.container_init_failed", error=str(e))

    yield

    logger.info("app.stopping")
    reset_container()
    await close_redis()


def create_app() -> FastAPI:
    app = FastAPI(
        title="Persona Engine API",
        description="Persona retrieval and generation orchestration",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
        max_age=3600,
    )

    app.add_middleware(RequestIDMiddleware)

    from persona.api.v1 import completions, retrieval

    app.include_router(completions.router, prefix="/api/v1/completions", tags=["completions"])
    app.include_router(retrieval.router, prefix="/api/v1/retrieval", tags=["retrieval"])

    @app.get("/health")
    async def health_check():
        return {"status": "ok", "environment": settings.ENVIRONMENT}

    @app.get("/metrics")
    async def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()
