"""Sync job orchestrator: drives one job from pending to a terminal state."""

import asyncio
from typing import Any, Awaitable, Callable, Optional, TypeVar

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from receiptsync.config.settings import SyncConfig, settings
from receiptsync.models.email import MessageRef, SearchOptions
from receiptsync.models.provider import EmailProvider, TokenBundle
from receiptsync.models.receipt import IngestStatus
from receiptsync.models.sync_job import SyncJob, SyncJobStatus
from receiptsync.services.errors import (
    AuthExpired,
    ExtractionFailure,
    MessageNotFound,
    ProviderNotFound,
    ProviderUnavailable,
)
from receiptsync.services.ingestion import IngestionService
from receiptsync.services.providers import AdapterRegistry, ProviderAdapter
from receiptsync.services.receipt_extractor import ReceiptExtractor
from receiptsync.services.sync_store import SyncStore
from receiptsync.services.token_manager import TokenLifecycleManager
from receiptsync.utils.logging import bind_job_context, clear_job_context, get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def is_retryable(error: BaseException) -> bool:
    """Only transient provider faults are retried."""
    return isinstance(error, ProviderUnavailable) and error.retryable


class SyncOrchestrator:
    """
    Runs sync jobs.

    Per job: pick up (pending -> processing), make sure tokens are fresh,
    search the mailbox once, then evaluate messages in search order. The
    cancel flag is checked before every message and once after the last;
    counters are saved after every message so status polling always sees
    progress. Any exit path leaves the job in a terminal state.
    """

    def __init__(
        self,
        store: SyncStore,
        adapters: AdapterRegistry,
        tokens: TokenLifecycleManager,
        extractor: ReceiptExtractor,
        ingestion: IngestionService,
        config: Optional[SyncConfig] = None,
    ) -> None:
        self.store = store
        self.adapters = adapters
        self.tokens = tokens
        self.extractor = extractor
        self.ingestion = ingestion
        self.config = config or settings.sync

    async def run(self, job_id: str) -> Optional[SyncJob]:
        """
        Execute a pending job to completion.

        Returns:
            The job in its final state, or None if the job does not exist
        """
        job = await self.store.get_job(job_id)
        if job is None:
            logger.warning("Sync job not found", sync_job_id=job_id)
            return None
        if job.status != SyncJobStatus.PENDING:
            logger.warning("Sync job already picked up", sync_job_id=job_id, status=job.status.value)
            return job

        job.transition(SyncJobStatus.PROCESSING)
        await self.store.save_job(job)
        bind_job_context(sync_job_id=job.id, provider_id=job.provider_id)
        logger.info("Sync job started", limit=job.requested_limit)

        try:
            provider = await self.store.get_provider(job.provider_id)
            if provider is None:
                raise ProviderNotFound(f"Email provider {job.provider_id} no longer exists")
            await self._execute(job, provider)
        except AuthExpired as e:
            await self.store.flag_reauth(job.provider_id, str(e))
            await self._finish(job, SyncJobStatus.FAILED, f"Mailbox authorization expired, please reconnect: {e}")
        except ProviderUnavailable as e:
            await self._finish(job, SyncJobStatus.FAILED, f"Mail provider unavailable: {e}")
        except ProviderNotFound as e:
            await self._finish(job, SyncJobStatus.FAILED, str(e))
        except asyncio.CancelledError:
            await self._finish(job, SyncJobStatus.FAILED, "Sync interrupted before completion")
            raise
        except Exception as e:
            logger.exception("Sync job crashed", error=str(e))
            await self._finish(job, SyncJobStatus.FAILED, f"Unexpected error: {e}")
        finally:
            await self.store.release_active_job(job.provider_id, job.id)
            clear_job_context("sync_job_id", "provider_id")

        return job

    async def fail_job(self, job_id: str, reason: str) -> Optional[SyncJob]:
        """
        Force a job that will never run (again) into ``failed``.

        A pending job passes through ``processing`` so the state machine is
        respected. Terminal jobs are left untouched.
        """
        job = await self.store.get_job(job_id)
        if job is None:
            return None
        if not job.status.is_terminal:
            if job.status == SyncJobStatus.PENDING:
                job.transition(SyncJobStatus.PROCESSING)
            job.transition(SyncJobStatus.FAILED, reason)
            await self.store.save_job(job)
            logger.warning("Sync job marked failed", sync_job_id=job_id, reason=reason)
        await self.store.release_active_job(job.provider_id, job_id)
        return job

    async def _execute(self, job: SyncJob, provider: EmailProvider) -> None:
        adapter = self.adapters.get(provider.provider_type)

        if await self.store.is_cancel_requested(job.id):
            await self._finish(job, SyncJobStatus.CANCELLED)
            return

        query = adapter.build_search_query(
            SearchOptions(date_range_start=job.date_range_start, date_range_end=job.date_range_end)
        )
        limit = job.requested_limit if job.requested_limit and job.requested_limit > 0 else adapter.default_page_size

        refs = await self._retrying(
            "search",
            self.config.search_max_attempts,
            lambda: self._collect_refs(adapter, provider, query, limit),
        )
        job.messages_found = len(refs)
        if not await self.store.save_job(job):
            return
        logger.info("Mailbox searched", query=query, limit=limit, messages_found=len(refs))

        for ref in refs:
            if await self.store.is_cancel_requested(job.id):
                await self._finish(job, SyncJobStatus.CANCELLED)
                return

            await self._process_message(job, provider, adapter, ref)
            job.messages_processed += 1
            if not await self.store.save_job(job):
                logger.warning("Sync job removed while running; stopping")
                return

        if await self.store.is_cancel_requested(job.id):
            await self._finish(job, SyncJobStatus.CANCELLED)
            return

        await self._finish(job, SyncJobStatus.COMPLETED)
        await self.store.mark_synced(provider.id, job.completed_at)

    async def _with_tokens(self, provider: EmailProvider, call: Callable[[TokenBundle], Awaitable[T]]) -> T:
        """
        Call the provider with fresh tokens.

        An access token rejected before its recorded expiry gets one forced
        refresh; a second rejection propagates as AuthExpired.
        """
        tokens = await self.tokens.ensure_valid(provider)
        try:
            return await call(tokens)
        except AuthExpired:
            logger.info("Access token rejected early; refreshing")
            tokens = await self.tokens.refresh_rejected(provider, tokens)
            return await call(tokens)

    async def _collect_refs(
        self, adapter: ProviderAdapter, provider: EmailProvider, query: str, limit: int
    ) -> list[MessageRef]:
        async def search(tokens: TokenBundle) -> list[MessageRef]:
            refs = []
            async for ref in adapter.search(tokens, query, limit):
                refs.append(ref)
                if len(refs) >= limit:
                    break
            return refs

        return await self._with_tokens(provider, search)

    async def _process_message(
        self, job: SyncJob, provider: EmailProvider, adapter: ProviderAdapter, ref: MessageRef
    ) -> None:
        """Evaluate one message. Only job-level faults (auth, exhausted retries) escape."""

        async def fetch_message():
            return await self._with_tokens(provider, lambda tokens: adapter.fetch_message(tokens, ref.id))

        try:
            email = await self._retrying("fetch_message", self.config.fetch_max_attempts, fetch_message)
        except MessageNotFound:
            logger.info("Message vanished before fetch; skipping", message_id=ref.id)
            return

        body_text = self.extractor.body_text(email)
        screen = self.extractor.screen(email, body_text)
        if not screen.likely_receipt:
            logger.debug("Message screened out", message_id=ref.id, reason=screen.reason)
            return

        try:
            result = await self.extractor.classify(self.extractor.build_request(email, body_text))

            attachment = self.extractor.escalation_attachment(email, result)
            if attachment is not None:

                async def fetch_attachment():
                    return await self._with_tokens(
                        provider, lambda tokens: adapter.fetch_attachment(tokens, ref.id, attachment.attachment_id)
                    )

                try:
                    content = await self._retrying(
                        "fetch_attachment", self.config.fetch_max_attempts, fetch_attachment
                    )
                except MessageNotFound:
                    logger.info("Attachment vanished; using body result", message_id=ref.id)
                else:
                    request = await self.extractor.attachment_request(email, body_text, attachment, content)
                    result = await self.extractor.classify(request)
        except ExtractionFailure as e:
            job.extraction_failures += 1
            logger.warning("Extraction failed; skipping message", message_id=ref.id, error=str(e))
            return

        if not result.is_receipt or result.candidate is None:
            logger.debug("Not a receipt", message_id=ref.id, reason=result.reason, confidence=result.confidence)
            return

        outcome = await self.ingestion.ingest(
            result.candidate,
            source_message_id=ref.id,
            provider_id=provider.id,
            user_id=provider.user_id,
            sync_job_id=job.id,
            confidence=result.confidence,
        )
        if outcome.status == IngestStatus.INSERTED:
            job.receipts_found += 1
        elif outcome.status == IngestStatus.DUPLICATE:
            job.duplicates_skipped += 1
        else:
            job.receipts_rejected += 1

    async def _retrying(self, operation: str, attempts: int, call: Callable[[], Awaitable[T]]) -> T:
        """Run ``call`` with bounded exponential-backoff retries on transient provider faults."""

        def log_retry(retry_state: RetryCallState) -> None:
            logger.warning(
                "Retrying provider call",
                operation=operation,
                attempt=retry_state.attempt_number,
                error=str(retry_state.outcome.exception()) if retry_state.outcome else None,
            )

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=self.config.retry_backoff_base, max=self.config.retry_backoff_max),
            retry=retry_if_exception(is_retryable),
            before_sleep=log_retry,
            reraise=True,
        ):
            with attempt:
                return await call()
        raise AssertionError("unreachable")

    async def _finish(self, job: SyncJob, status: SyncJobStatus, error_message: Optional[str] = None) -> None:
        if job.status.is_terminal:
            return
        job.transition(status, error_message)
        await self.store.save_job(job)

        log: Any = logger.warning if status == SyncJobStatus.FAILED else logger.info
        log(
            "Sync job finished",
            status=status.value,
            messages_found=job.messages_found,
            messages_processed=job.messages_processed,
            receipts_found=job.receipts_found,
            duplicates_skipped=job.duplicates_skipped,
            extraction_failures=job.extraction_failures,
            error_message=error_message,
        )
