"""Unit tests for sync request validation and job access rules."""

from datetime import date

import pytest

from receiptsync.models.sync_job import SyncJobStatus
from receiptsync.services.errors import (
    AuthExpired,
    ProviderNotFound,
    SyncJobNotFound,
    SyncValidationError,
    UnsupportedProvider,
)
from receiptsync.services.sync_service import validate_sync_request
from tests.fixtures.mailbox import demo_emails


@pytest.mark.unit
class TestValidateSyncRequest:
    """Test parameter validation done before any job exists."""

    def test_valid_range(self):
        validate_sync_request(date(2023, 4, 1), date(2023, 4, 30), 10, 1000)

    def test_single_day_range(self):
        validate_sync_request(date(2023, 4, 1), date(2023, 4, 1), None, 1000)

    def test_inverted_range(self):
        with pytest.raises(SyncValidationError, match="precedes"):
            validate_sync_request(date(2023, 4, 30), date(2023, 4, 1), None, 1000)

    def test_negative_limit(self):
        with pytest.raises(SyncValidationError):
            validate_sync_request(None, None, -1, 1000)

    def test_limit_above_maximum(self):
        with pytest.raises(SyncValidationError):
            validate_sync_request(None, None, 1001, 1000)

    def test_zero_limit_allowed(self):
        validate_sync_request(None, None, 0, 1000)


@pytest.mark.unit
class TestSyncServiceAccess:
    """Test ownership and precondition checks of the sync service."""

    async def test_inverted_range_creates_no_job(self, engine, provider):
        with pytest.raises(SyncValidationError):
            await engine.service.start_sync(1, provider.id, date(2023, 5, 1), date(2023, 4, 1))

        assert await engine.store.list_jobs(provider.id) == []
        assert await engine.store.get_active_job_id(provider.id) is None

    async def test_other_users_provider(self, engine, provider):
        with pytest.raises(ProviderNotFound):
            await engine.service.start_sync(2, provider.id)

    async def test_provider_needing_reauth(self, engine, provider):
        await engine.store.flag_reauth(provider.id, "revoked")

        with pytest.raises(AuthExpired):
            await engine.service.start_sync(1, provider.id)

        assert await engine.store.list_jobs(provider.id) == []

    async def test_unsupported_provider_type(self, engine, sync_store, provider):
        provider.provider_type = "yahoo"
        await sync_store.save_provider(provider)

        with pytest.raises(UnsupportedProvider):
            await engine.service.start_sync(1, provider.id)

    async def test_get_job_hidden_from_other_users(self, engine, provider):
        job = await engine.service.start_sync(1, provider.id)
        await engine.worker.wait_for(job.id, timeout=5)

        assert (await engine.service.get_job(1, job.id)).id == job.id
        with pytest.raises(SyncJobNotFound):
            await engine.service.get_job(2, job.id)
        with pytest.raises(SyncJobNotFound):
            await engine.service.get_job(1, "sync_missing")

    async def test_cancel_finished_job_is_noop(self, engine, provider):
        job = await engine.service.start_sync(1, provider.id)
        await engine.worker.wait_for(job.id, timeout=5)

        cancelled = await engine.service.cancel_job(1, job.id)

        assert cancelled.status == SyncJobStatus.COMPLETED
        assert cancelled.cancel_requested is False
        assert await engine.store.is_cancel_requested(job.id) is False

    async def test_preview_message(self, engine, provider, mailbox):
        mailbox.add(*demo_emails())

        preview = await engine.service.preview_message(1, provider.id, "msg-amazon")

        assert preview.screen.likely_receipt is True
        assert preview.classification.is_receipt is True
        assert preview.classification.candidate.total == 176.02
        assert await engine.receipts.count_sources(provider.id) == 0
