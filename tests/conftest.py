"""Pytest configuration and fixtures for all tests."""

import os

# Set test environment variables before importing settings
os.environ["APP_ENV"] = "testing"
os.environ["LOG_FORMAT"] = "console"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["APP_URL"] = "https://receipts.example.com"
os.environ["FRONTEND_URL"] = "https://app.example.com"
os.environ["GOOGLE_CLIENT_ID"] = "test-client-id.apps.googleusercontent.com"
os.environ["GOOGLE_CLIENT_SECRET"] = "test-client-secret"
os.environ["REDIS_URL"] = "redis://localhost:6379/1"
os.environ["ADMIN_API_KEY"] = "test-admin-key"
os.environ["EXTRACTION_BACKEND"] = "heuristic"
os.environ["SYNC_RETRY_BACKOFF_BASE"] = "0"
os.environ["SYNC_RETRY_BACKOFF_MAX"] = "0"
os.environ["SYNC_DISCONNECT_WAIT"] = "1"

from dataclasses import dataclass  # noqa: E402
from datetime import timedelta  # noqa: E402

import fakeredis  # noqa: E402
import pytest  # noqa: E402

from receiptsync.api.middleware.rate_limit import limiter  # noqa: E402
from receiptsync.config.settings import settings  # noqa: E402
from receiptsync.models.provider import EmailProvider, TokenBundle  # noqa: E402
from receiptsync.services.ingestion import IngestionService  # noqa: E402
from receiptsync.services.providers import AdapterRegistry  # noqa: E402
from receiptsync.services.receipt_extractor import HeuristicExtractionBackend, ReceiptExtractor  # noqa: E402
from receiptsync.services.receipt_store import ReceiptStore  # noqa: E402
from receiptsync.services.sync_orchestrator import SyncOrchestrator  # noqa: E402
from receiptsync.services.sync_service import SyncService  # noqa: E402
from receiptsync.services.sync_store import SyncStore  # noqa: E402
from receiptsync.services.token_manager import TokenLifecycleManager  # noqa: E402
from receiptsync.utils.dates import utcnow  # noqa: E402
from receiptsync.workers.sync_worker import SyncWorker  # noqa: E402
from tests.fixtures.mailbox import FakeMailboxAdapter  # noqa: E402


@dataclass
class Engine:
    """Sync engine wired against fakeredis and the fake mailbox."""

    store: SyncStore
    receipts: ReceiptStore
    mailbox: FakeMailboxAdapter
    adapters: AdapterRegistry
    tokens: TokenLifecycleManager
    extractor: ReceiptExtractor
    orchestrator: SyncOrchestrator
    worker: SyncWorker
    service: SyncService


@pytest.fixture
async def redis_client():
    """Fake asyncio Redis client, flushed after each test."""
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def mailbox() -> FakeMailboxAdapter:
    return FakeMailboxAdapter()


@pytest.fixture
def adapters(mailbox) -> AdapterRegistry:
    return AdapterRegistry(settings, factories={"gmail": lambda _: mailbox})


@pytest.fixture
async def sync_store(redis_client) -> SyncStore:
    return SyncStore(settings.redis, client=redis_client)


@pytest.fixture
async def receipt_store(redis_client) -> ReceiptStore:
    return ReceiptStore(settings.redis, client=redis_client)


@pytest.fixture
def extractor() -> ReceiptExtractor:
    return ReceiptExtractor(HeuristicExtractionBackend(), settings.extraction)


@pytest.fixture
async def engine(sync_store, receipt_store, mailbox, adapters, extractor) -> Engine:
    tokens = TokenLifecycleManager(sync_store, adapters)
    orchestrator = SyncOrchestrator(
        sync_store, adapters, tokens, extractor, IngestionService(receipt_store), settings.sync
    )
    worker = SyncWorker(orchestrator, sync_store, settings.sync)
    service = SyncService(sync_store, receipt_store, worker, adapters, tokens, extractor, settings.sync)
    yield Engine(
        store=sync_store,
        receipts=receipt_store,
        mailbox=mailbox,
        adapters=adapters,
        tokens=tokens,
        extractor=extractor,
        orchestrator=orchestrator,
        worker=worker,
        service=service,
    )
    await worker.shutdown()


@pytest.fixture
async def provider(sync_store) -> EmailProvider:
    """Connected Gmail provider for user 1 with a valid access token."""
    provider = EmailProvider(
        user_id=1,
        provider_type="gmail",
        email="user@example.com",
        tokens=TokenBundle(
            access_token="access-token",
            refresh_token="refresh-token",
            expires_at=utcnow() + timedelta(hours=1),
        ),
    )
    await sync_store.save_provider(provider)
    return provider


@pytest.fixture(autouse=True)
def reset_rate_limits():
    """Rate limit counters are process-global; start every test from zero."""
    limiter.reset()
    yield
