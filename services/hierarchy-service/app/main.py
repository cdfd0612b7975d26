"""FastAPI application wiring for the account hierarchy service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from psycopg_pool import ConnectionPool

from .api.routes import router as v1_router
from .config import Settings, get_settings
from .coordination.locks import ParentLockRegistry
from .coordination.redis_locks import RedisParentLockRegistry
from .coordination.redis_sessions import RedisContextStore
from .coordination.sessions import InMemoryContextStore
from .domain.context import AccountContextManager
from .domain.contracts import ContextStore, ParentLocks
from .domain.hierarchy import HierarchyResolver
from .domain.permissions import PermissionResolver
from .domain.service import AccountHierarchyService
from .domain.usage import UsageAggregator
from .logging_config import configure_logging
from .repository import AccountRepository, GrantRepository

logger = logging.getLogger(__name__)

settings = get_settings()


def _redis_client(settings: Settings):
    import redis

    client = redis.from_url(settings.redis_url)
    client.ping()
    return client


def _build_locks(settings: Settings) -> ParentLocks:
    """Per-parent locks; Redis is required once more than one process serves writes."""
    if settings.lock_backend == "redis" and settings.redis_url:
        try:
            client = _redis_client(settings)
            logger.info("parent locks configured for redis backend at %s", settings.redis_url)
            return RedisParentLockRegistry(
                client,
                ttl_seconds=settings.lock_ttl_seconds,
                default_timeout=settings.lock_timeout_seconds,
            )
        except Exception as exc:  # pragma: no cover - depends on redis availability
            logger.warning("redis lock backend unavailable, falling back to in-process locks: %s", exc)
    logger.info("parent locks using in-process backend")
    return ParentLockRegistry(default_timeout=settings.lock_timeout_seconds)


def _build_context_store(settings: Settings) -> ContextStore:
    if settings.context_backend == "redis" and settings.redis_url:
        try:
            client = _redis_client(settings)
            logger.info("account contexts stored in redis at %s", settings.redis_url)
            return RedisContextStore(client, ttl_seconds=settings.context_ttl_seconds)
        except Exception as exc:  # pragma: no cover - depends on redis availability
            logger.warning("redis context store unavailable, falling back to in-memory: %s", exc)
    logger.info("account contexts stored in memory")
    return InMemoryContextStore(ttl_seconds=settings.context_ttl_seconds)


def build_service(pool: ConnectionPool, settings: Settings) -> AccountHierarchyService:
    """Assemble the resolvers around Postgres-backed stores."""
    store = AccountRepository(pool, statement_timeout_ms=settings.statement_timeout_ms)
    grants = GrantRepository(pool)
    hierarchy = HierarchyResolver(
        store,
        _build_locks(settings),
        max_depth=settings.max_hierarchy_depth,
        default_max_sub_accounts=settings.default_max_sub_accounts,
        lock_timeout=settings.lock_timeout_seconds,
    )
    permissions = PermissionResolver(hierarchy, grants)
    usage = UsageAggregator(hierarchy)
    contexts = AccountContextManager(hierarchy, permissions, usage, _build_context_store(settings))
    return AccountHierarchyService(store, grants, hierarchy, permissions, usage, contexts)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialise shared resources (Postgres pool, coordination backends) for the app lifecycle."""
    configure_logging(settings.log_level, settings.log_format)
    pool = ConnectionPool(settings.database_url, open=False)
    pool.open()
    app.state.pool = pool
    app.state.hierarchy_service = build_service(pool, settings)
    logger.info("%s %s started", settings.app_name, settings.version)
    try:
        yield
    finally:
        pool.close()
        pool.wait_close()


app = FastAPI(title=settings.app_name, version=settings.version, lifespan=lifespan)

# CORS for local frontend dev
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    max_age=600,
)


@app.get("/healthz", tags=["health"])
def healthz() -> dict[str, str]:
    """Return a minimal readiness indicator used by orchestration systems."""
    return {"status": "ok"}


@app.get("/metrics", include_in_schema=False)
def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


app.include_router(v1_router)
