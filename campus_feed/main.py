import logging
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI

from campus_feed.config import Settings
from campus_feed.diagnostics.router import router as diagnostics_router
from campus_feed.feed.service import FeedOrchestrator, build_orchestrator
from campus_feed.feed.sinks import LoggingMetricsSink, RedisMetricsSink

_OPENAPI_TAGS = [
    {
        "name": "Diagnostics",
        "description": (
            "Cache and fetch statistics, manual cleanup, and one-shot ranked feed pages "
            "for debugging the ranking without a live subscription."
        ),
    },
    {
        "name": "Health",
        "description": "Liveness probe.",
    },
]


def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(levelname)s:%(name)s: %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    if getattr(app.state, "orchestrator", None) is not None:
        # Injected by the caller (tests, embedding apps); they own its lifecycle.
        yield
        return

    from campus_feed.feed.firestore import (
        FirestoreCollectionReader,
        FirestoreCollectionSource,
        FirestoreMetricsSink,
        FirestorePointReader,
        init_firestore,
    )

    settings = get_settings()
    db, async_db = init_firestore(
        settings.firebase_project_id or None,
        settings.firebase_credentials_path or None,
    )
    redis_client = None
    if settings.metrics_sink == "redis":
        redis_client = aioredis.from_url(
            settings.redis_url, encoding="utf-8", decode_responses=True
        )
        sink = RedisMetricsSink(redis_client)
    elif settings.metrics_sink == "firestore":
        sink = FirestoreMetricsSink(async_db, settings.analytics_collection)
    else:
        sink = LoggingMetricsSink()

    orchestrator = build_orchestrator(
        settings,
        source=FirestoreCollectionSource(db),
        point_reader=FirestorePointReader(async_db),
        collection_reader=FirestoreCollectionReader(async_db),
        sink=sink,
    )
    orchestrator.start()
    app.state.orchestrator = orchestrator

    yield

    await orchestrator.aclose()
    app.state.orchestrator = None
    if redis_client is not None:
        await redis_client.aclose()


def create_app(orchestrator: FeedOrchestrator | None = None) -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level)
    app = FastAPI(
        title="Campus Feed",
        description=(
            "Ranked, live-updating post feed for a campus social app: scoring, "
            "ordering modes, profile caching and sampled ranking analytics."
        ),
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_tags=_OPENAPI_TAGS,
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator

    app.include_router(diagnostics_router)

    @app.get("/health", tags=["Health"])
    async def health() -> dict:
        """Lightweight liveness probe. Does not hit the backing store."""
        return {"status": "ok", "service": "campus-feed", "env": settings.env_name}

    return app


app = create_app()
