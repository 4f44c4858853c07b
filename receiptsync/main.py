"""Main FastAPI application entry point."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import redis.asyncio as aioredis
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded

from receiptsync.api.middleware import (
    api_key_middleware,
    limiter,
    rate_limit_error_handler,
    request_logging_middleware,
)
from receiptsync.api.routes import providers_router, sync_router
from receiptsync.config.settings import settings
from receiptsync.services.ingestion import IngestionService
from receiptsync.services.provider_service import ProviderService
from receiptsync.services.providers import AdapterRegistry
from receiptsync.services.receipt_extractor import ReceiptExtractor, build_extractor
from receiptsync.services.receipt_store import ReceiptStore
from receiptsync.services.sync_orchestrator import SyncOrchestrator
from receiptsync.services.sync_service import SyncService
from receiptsync.services.sync_store import SyncStore
from receiptsync.services.token_manager import TokenLifecycleManager
from receiptsync.utils.logging import configure_logging, get_logger
from receiptsync.workers.sync_worker import SyncWorker

# Configure logging
configure_logging()
logger = get_logger(__name__)

VERSION = "1.0.0"


async def init_services(
    app: FastAPI,
    redis_client: Optional[aioredis.Redis] = None,
    adapters: Optional[AdapterRegistry] = None,
    extractor: Optional[ReceiptExtractor] = None,
    recover: bool = True,
) -> None:
    """Wire stores, services and the sync worker onto ``app.state``."""
    store = SyncStore(settings.redis, client=redis_client)
    await store.connect()
    receipts = ReceiptStore(settings.redis, client=store.redis)

    adapters = adapters or AdapterRegistry(settings)
    tokens = TokenLifecycleManager(store, adapters)
    extractor = extractor or build_extractor(settings.extraction)
    orchestrator = SyncOrchestrator(store, adapters, tokens, extractor, IngestionService(receipts), settings.sync)
    worker = SyncWorker(orchestrator, store, settings.sync)

    if recover:
        await worker.recover_interrupted_jobs()

    app.state.store = store
    app.state.receipts = receipts
    app.state.worker = worker
    app.state.extractor = extractor
    app.state.sync_service = SyncService(store, receipts, worker, adapters, tokens, extractor, settings.sync)
    app.state.provider_service = ProviderService(store, adapters, settings)


async def shutdown_services(app: FastAPI) -> None:
    """Interrupt running jobs (they end ``failed``) and close Redis."""
    await app.state.worker.shutdown()
    await app.state.store.disconnect()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """Application lifespan manager."""
    logger.info("Starting email receipt sync", env=settings.app.env)
    await init_services(app)
    logger.info("Sync worker ready", extraction_backend=settings.extraction.backend)
    yield
    logger.info("Shutting down...")
    await shutdown_services(app)
    logger.info("Application shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Email Receipt Sync",
    description="Imports purchase receipts from connected mailboxes",
    version=VERSION,
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_error_handler)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.admin.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Add custom middleware
app.middleware("http")(request_logging_middleware)
app.middleware("http")(api_key_middleware)

# Include API routers
app.include_router(providers_router, prefix="/api/v1")
app.include_router(sync_router, prefix="/api/v1")


# Health endpoints
@app.get("/health")
async def health_check():
    """Basic health check."""
    return {"status": "healthy", "version": VERSION}


@app.get("/health/detailed")
async def detailed_health():
    """Component health: Redis connectivity, OAuth configuration and worker load."""
    components_status = {}
    overall_status = "healthy"

    try:
        await app.state.store.ping()
        components_status["redis"] = "connected"
    except Exception as e:
        components_status["redis"] = f"error: {str(e)}"
        overall_status = "degraded"

    oauth_status = app.state.provider_service.config_status()
    for provider_type, configured in oauth_status.items():
        components_status[f"oauth_{provider_type}"] = "configured" if configured else "not_configured"
    if not any(oauth_status.values()):
        overall_status = "degraded"

    components_status["extraction_backend"] = app.state.extractor.backend.name

    return {
        "status": overall_status,
        "version": VERSION,
        "components": components_status,
        "workers": {"sync": {"running_jobs": len(app.state.worker.running_jobs)}},
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "receiptsync.main:app",
        host="0.0.0.0",
        port=settings.admin.port,
        reload=settings.app.debug,
        log_level=settings.app.log_level.lower(),
    )
