# inbox/transport/http_app.py
"""
HTTP application: multi-tenant webhook ingestion.

Public:
    GET/POST /t/{tenant_slug}/webhooks/{channel}   (signature-verified)
    GET      /health, /ready
Protected:
    GET      /metrics                              (METRICS_TOKEN bearer)

Run with:
    uvicorn inbox.transport.http_app:app
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from inbox.config import settings
from inbox.core.ingestion.pipeline import IngestionPipeline
from inbox.infra.db_async import close_pool, get_pool, init_pool
from inbox.infra.http_client import close_all_sessions
from inbox.infra.job_worker import JobWorker, build_send_worker
from inbox.infra.logging_config import get_logger, setup_logging
from inbox.infra.metrics import get_metrics_collector
from inbox.transport.middleware import (
    ErrorHandlingMiddleware,
    RequestIDMiddleware,
    RequestLoggingMiddleware,
)
from inbox.transport.profiles import HttpProfileFetcher
from inbox.transport.security import check_configured_tokens, require_metrics_auth
from inbox.transport.senders import OutboundSender
from inbox.transport.webhooks import webhook_handler, webhook_verify

# Initialize logging first
setup_logging(
    level=settings.log_level,
    use_json=settings.is_production
)

logger = get_logger(__name__)


# ============================================================================
# STORES
# ============================================================================

@dataclass
class Stores:
    tenants: Any
    leads: Any
    conversations: Any
    messages: Any
    jobs: Any


def build_stores(backend: str) -> Stores:
    """Instantiate the store implementations for STORE_BACKEND."""
    if backend == "memory":
        from inbox.infra.memory_store import (
            MemoryConversationStore,
            MemoryJobQueue,
            MemoryLeadStore,
            MemoryMessageStore,
            MemoryTenantRegistry,
        )
        conversations = MemoryConversationStore()
        return Stores(
            tenants=MemoryTenantRegistry(),
            leads=MemoryLeadStore(),
            conversations=conversations,
            messages=MemoryMessageStore(conversations),
            jobs=MemoryJobQueue(),
        )

    from inbox.infra.pg_conversation_repo_async import AsyncPostgresConversationRepository
    from inbox.infra.pg_job_repo_async import AsyncPostgresJobRepository
    from inbox.infra.pg_lead_repo_async import AsyncPostgresLeadRepository
    from inbox.infra.pg_message_repo_async import AsyncPostgresMessageRepository
    from inbox.infra.pg_tenant_resolver_async import AsyncPostgresTenantResolver

    return Stores(
        tenants=AsyncPostgresTenantResolver(),
        leads=AsyncPostgresLeadRepository(),
        conversations=AsyncPostgresConversationRepository(),
        messages=AsyncPostgresMessageRepository(),
        jobs=AsyncPostgresJobRepository(),
    )


def build_pipeline(stores: Stores) -> IngestionPipeline:
    return IngestionPipeline(
        stores.tenants,
        stores.leads,
        stores.conversations,
        stores.messages,
        stores.jobs,
        profiles=HttpProfileFetcher(),
        job_priority=settings.job_priority,
        job_max_attempts=settings.job_max_attempts,
    )


# ============================================================================
# LIFESPAN
# ============================================================================

@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    """Application lifecycle: startup and shutdown"""

    # STARTUP
    logger.info(
        f"Starting application: env={settings.app_env}, run_mode={settings.run_mode}, "
        f"store_backend={settings.store_backend}"
    )

    if settings.is_production:
        missing = settings.validate_required_for_production()
        if missing:
            logger.critical(f"Missing required production settings: {missing}")
            raise RuntimeError(f"Missing production config: {missing}")

        if not settings.require_webhook_validation:
            logger.critical("REQUIRE_WEBHOOK_VALIDATION must be true in production")
            raise RuntimeError("Webhook validation disabled in production")

        if settings.store_backend == "memory":
            logger.critical("STORE_BACKEND=memory is not allowed in production")
            raise RuntimeError("Memory store backend in production")

    check_configured_tokens()

    use_postgres = settings.store_backend == "postgres"
    if use_postgres:
        await init_pool()
        logger.info("Database pool initialized")
    else:
        logger.warning("STORE_BACKEND=memory: data is lost on restart, single instance only")

    stores = build_stores(settings.store_backend)
    fastapi_app.state.stores = stores
    fastapi_app.state.pipeline = build_pipeline(stores)

    job_worker: JobWorker | None = None
    if use_postgres and settings.run_mode in ("all", "worker") and settings.job_worker_enabled:
        job_worker = build_send_worker(
            stores.jobs,
            OutboundSender(),
            stores.tenants,
            stores.messages,
            poll_interval=settings.job_worker_poll_interval,
            batch_size=settings.job_worker_batch_size,
            base_retry_delay=settings.job_worker_base_retry_delay,
            stale_timeout=settings.job_worker_stale_timeout,
        )
        await job_worker.start()
    elif settings.run_mode not in ("all", "worker"):
        logger.info(f"Job worker skipped (run_mode={settings.run_mode})")
    elif not settings.job_worker_enabled:
        logger.info("Job worker skipped (job_worker_enabled=false)")

    logger.info("Application startup complete")

    yield

    # SHUTDOWN
    logger.info("Shutting down application")

    if job_worker is not None:
        await job_worker.stop()

    await close_all_sessions()

    if use_postgres:
        await close_pool()
    logger.info("Application shutdown complete")


# ============================================================================
# CREATE APP
# ============================================================================

app = FastAPI(
    title="Inbox Ingestion",
    description="Multi-tenant inbound messaging ingestion for WhatsApp, Instagram, Facebook and TikTok",
    version="1.0.0",
    lifespan=lifespan,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    openapi_url=None if settings.is_production else "/openapi.json",
)

if settings.is_production or settings.is_staging:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins if settings.allowed_origins != ["*"] else [],
        allow_credentials=False,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "Authorization"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.add_middleware(ErrorHandlingMiddleware)
app.add_middleware(RequestLoggingMiddleware, enabled=settings.enable_request_logging)
app.add_middleware(RequestIDMiddleware)


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions with appropriate logging"""
    if exc.status_code >= 500:
        logger.error(f"Server error: {exc.detail}", extra={"status_code": exc.status_code})

    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=exc.headers,
    )


# ============================================================================
# PUBLIC ENDPOINTS
# ============================================================================

@app.get("/health")
def health():
    """Liveness probe. Returns minimal information."""
    return {"status": "healthy"}


@app.get("/ready")
async def readiness():
    """Readiness probe: database reachable (postgres backend)."""
    if settings.store_backend == "memory":
        return {"status": "healthy"}
    try:
        pool = await get_pool()
        async with pool.acquire() as conn:
            await conn.fetchval("SELECT 1")
    except Exception as exc:
        logger.warning(f"Readiness check failed: {exc.__class__.__name__}")
        return JSONResponse(status_code=503, content={"status": "unhealthy"})
    return {"status": "healthy"}


@app.get("/t/{tenant_slug}/webhooks/{channel}")
async def webhook_verify_tenant(tenant_slug: str, channel: str, request: Request):
    return await webhook_verify(request, tenant_slug, channel)


@app.post("/t/{tenant_slug}/webhooks/{channel}")
async def webhook_tenant(tenant_slug: str, channel: str, request: Request):
    return await webhook_handler(request, tenant_slug, channel)


# ============================================================================
# PROTECTED ENDPOINTS
# ============================================================================

@app.get("/metrics", dependencies=[Depends(require_metrics_auth)])
def metrics():
    """Operational counters and histograms. Access: METRICS_TOKEN bearer."""
    return get_metrics_collector().get_metrics()
