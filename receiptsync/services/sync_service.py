"""Sync job operations exposed to the API layer."""

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel

from receiptsync.config.settings import SyncConfig, settings
from receiptsync.models.provider import EmailProvider
from receiptsync.models.receipt import ClassificationResult
from receiptsync.models.sync_job import SyncJob
from receiptsync.services.errors import (
    AuthExpired,
    ExtractionFailure,
    SyncJobNotFound,
    SyncValidationError,
)
from receiptsync.services.providers import AdapterRegistry
from receiptsync.services.receipt_extractor import ReceiptExtractor, ScreenResult
from receiptsync.services.receipt_store import ReceiptStore
from receiptsync.services.sync_store import SyncStore
from receiptsync.services.token_manager import TokenLifecycleManager
from receiptsync.utils.logging import get_logger
from receiptsync.workers.sync_worker import SyncWorker

logger = get_logger(__name__)


def validate_sync_request(
    date_range_start: Optional[date],
    date_range_end: Optional[date],
    limit: Optional[int],
    max_limit: int,
) -> None:
    """
    Reject bad sync parameters before any job row exists.

    Raises:
        SyncValidationError: On an inverted date range or an out-of-range limit
    """
    if date_range_start and date_range_end and date_range_end < date_range_start:
        raise SyncValidationError(
            f"dateRangeEnd {date_range_end.isoformat()} precedes dateRangeStart {date_range_start.isoformat()}"
        )
    if limit is not None and limit < 0:
        raise SyncValidationError("limit must not be negative")
    if limit is not None and limit > max_limit:
        raise SyncValidationError(f"limit must not exceed {max_limit}")


class MessagePreview(BaseModel):
    """Classification of a single message without ingestion."""

    message_id: str
    subject: str
    sender: str
    date: Optional[datetime] = None
    attachments: list[str]
    screen: ScreenResult
    classification: Optional[ClassificationResult] = None
    error: Optional[str] = None


class SyncService:
    """Starts, inspects and cancels sync jobs and disconnects providers."""

    def __init__(
        self,
        store: SyncStore,
        receipts: ReceiptStore,
        worker: SyncWorker,
        adapters: AdapterRegistry,
        tokens: TokenLifecycleManager,
        extractor: ReceiptExtractor,
        config: Optional[SyncConfig] = None,
    ) -> None:
        self.store = store
        self.receipts = receipts
        self.worker = worker
        self.adapters = adapters
        self.tokens = tokens
        self.extractor = extractor
        self.config = config or settings.sync

    async def start_sync(
        self,
        user_id: int,
        provider_id: str,
        date_range_start: Optional[date] = None,
        date_range_end: Optional[date] = None,
        limit: Optional[int] = None,
    ) -> SyncJob:
        """
        Create a pending job and hand it to the worker.

        Returns without waiting for the job to make progress.

        Raises:
            SyncValidationError: Bad parameters; no job is created
            ProviderNotFound: Unknown provider or owned by another user
            AuthExpired: Provider must be re-authorized first
            SyncAlreadyRunning: Provider already has a non-terminal job
        """
        validate_sync_request(date_range_start, date_range_end, limit, self.config.max_limit)

        provider = await self.store.require_provider(provider_id, user_id)
        if provider.needs_reauth:
            raise AuthExpired(f"Email provider {provider_id} must be reconnected before syncing")
        self.adapters.get(provider.provider_type)

        job = SyncJob(
            provider_id=provider.id,
            date_range_start=date_range_start,
            date_range_end=date_range_end,
            requested_limit=limit,
        )
        await self.store.create_job(job)
        self.worker.submit(job.id)

        logger.info("Sync requested", sync_job_id=job.id, provider_id=provider.id, user_id=user_id)
        return job

    async def get_job(self, user_id: int, job_id: str) -> SyncJob:
        """
        Raises:
            SyncJobNotFound: If missing or owned by another user
        """
        job = await self.store.get_job(job_id)
        if job is None:
            raise SyncJobNotFound(f"Sync job {job_id} not found")
        provider = await self.store.get_provider(job.provider_id)
        if provider is None or provider.user_id != user_id:
            raise SyncJobNotFound(f"Sync job {job_id} not found")
        return job

    async def cancel_job(self, user_id: int, job_id: str) -> SyncJob:
        """
        Request cooperative cancellation.

        The job stops at its next message boundary; cancelling a terminal
        job changes nothing.
        """
        job = await self.get_job(user_id, job_id)
        if job.status.is_terminal:
            logger.info("Cancel ignored for finished job", sync_job_id=job_id, status=job.status.value)
            return job

        await self.store.request_cancel(job_id)
        job.cancel_requested = True
        return job

    async def list_jobs(self, user_id: int, provider_id: Optional[str] = None, limit: Optional[int] = None) -> list[SyncJob]:
        """Jobs most recent first, for one provider or all of the user's providers."""
        if provider_id:
            await self.store.require_provider(provider_id, user_id)
            return await self.store.list_jobs(provider_id, limit)
        return await self.store.list_jobs_for_user(user_id, limit)

    async def disconnect_provider(self, user_id: int, provider_id: str) -> int:
        """
        Disconnect a provider.

        A running job is asked to cancel and given a grace period, then
        hard-cancelled. The provider and all its jobs are deleted; receipts
        already ingested stay.

        Returns:
            Number of job rows deleted
        """
        provider = await self.store.require_provider(provider_id, user_id)

        active_job_id = await self.store.get_active_job_id(provider.id)
        if active_job_id:
            await self.store.request_cancel(active_job_id)
            finished = await self.worker.wait_for(active_job_id, timeout=self.config.disconnect_wait_seconds)
            if not finished:
                await self.worker.cancel(active_job_id)

        deleted_jobs = await self.store.delete_provider(provider.id)
        await self.receipts.forget_provider(provider.id)
        logger.info("Provider disconnected", provider_id=provider.id, user_id=user_id, jobs_deleted=deleted_jobs)
        return deleted_jobs

    async def preview_message(self, user_id: int, provider_id: str, message_id: str) -> MessagePreview:
        """Fetch and classify one message without ingesting anything."""
        provider: EmailProvider = await self.store.require_provider(provider_id, user_id)
        adapter = self.adapters.get(provider.provider_type)

        tokens = await self.tokens.ensure_valid(provider)
        email = await adapter.fetch_message(tokens, message_id)
        body_text = self.extractor.body_text(email)
        screen = self.extractor.screen(email, body_text)

        preview = MessagePreview(
            message_id=message_id,
            subject=email.subject,
            sender=email.sender,
            date=email.date,
            attachments=[attachment.filename for attachment in email.attachments],
            screen=screen,
        )
        try:
            preview.classification = await self.extractor.classify(self.extractor.build_request(email, body_text))
        except ExtractionFailure as e:
            preview.error = str(e)
        return preview
