# apps/discovery/main.py
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from ab_testing import ABTestingService
from cache import redis_client
from catalog_store import SqlCatalogStore
from config import settings
from context_filter import ContextAwareFilter
from db import SessionLocal, dispose
from experiment_repository import SqlExperimentRepository
from graph_recommender import GraphRecommender
from health import collect_health_status
from locks import RedisAssignmentLock

log = logging.getLogger("discovery.main")


def build_components(app: FastAPI) -> None:
    store = SqlCatalogStore(SessionLocal)
    app.state.graph_recommender = GraphRecommender(
        store,
        history_depth=settings.graph_history_depth,
        content_weight=settings.graph_content_weight,
        collaborative_weight=settings.graph_collaborative_weight,
        collaborative_decay=settings.graph_collaborative_decay,
        similar_users_limit=settings.graph_similar_users,
        min_user_overlap=settings.graph_min_overlap,
        neighbor_items_limit=settings.graph_neighbor_items,
        max_concurrency=settings.graph_max_concurrency,
    )
    app.state.context_filter = ContextAwareFilter(
        store,
        min_popularity=settings.context_min_popularity,
        mood_capability_ttl_seconds=settings.mood_capability_ttl_seconds,
    )
    lock = RedisAssignmentLock(
        redis_client,
        ttl_ms=settings.assignment_lock_ttl_ms,
        wait_ms=settings.assignment_lock_wait_ms,
    )
    app.state.ab_testing = ABTestingService(SqlExperimentRepository(SessionLocal), lock=lock)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(level=settings.log_level)
    build_components(app)
    log.info("discovery_started env=%s", settings.env)
    try:
        yield
    finally:
        await redis_client.aclose()
        await dispose()
        log.info("discovery_stopped")


app = FastAPI(title="Discovery Core", lifespan=lifespan)


@app.get("/healthz")
async def healthz():
    status = await collect_health_status()
    return JSONResponse(status, status_code=200 if status["ok"] else 503)
