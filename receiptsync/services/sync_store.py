"""Redis persistence for connected providers, sync jobs and OAuth state."""

import json
from datetime import datetime
from typing import AsyncIterator, Optional

import redis.asyncio as aioredis
from redis.exceptions import WatchError

from receiptsync.config.settings import RedisConfig, settings
from receiptsync.models.provider import EmailProvider, TokenBundle
from receiptsync.models.sync_job import SyncJob
from receiptsync.services.errors import ProviderNotFound, SyncAlreadyRunning
from receiptsync.utils.dates import utcnow
from receiptsync.utils.logging import get_logger

logger = get_logger(__name__)


class RedisStore:
    """Owns (or borrows) an asyncio Redis client and namespaces keys under a prefix."""

    def __init__(self, config: Optional[RedisConfig] = None, client: Optional[aioredis.Redis] = None) -> None:
        self.config = config or settings.redis
        self.redis: Optional[aioredis.Redis] = client
        self._owns_client = client is None

    async def connect(self) -> None:
        """Connect to Redis."""
        if self.redis is None:
            self.redis = aioredis.from_url(self.config.url, decode_responses=True)
            self._owns_client = True
            logger.info("Connected to Redis", store=type(self).__name__)

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self.redis is not None and self._owns_client:
            await self.redis.aclose()
            self.redis = None
            logger.info("Disconnected from Redis", store=type(self).__name__)

    async def ping(self) -> bool:
        if self.redis is None:
            await self.connect()
        return bool(await self.redis.ping())

    def _key(self, *parts: object) -> str:
        return ":".join([self.config.key_prefix, *(str(part) for part in parts)])

    async def _client(self) -> aioredis.Redis:
        if self.redis is None:
            await self.connect()
        return self.redis


class SyncStore(RedisStore):
    """
    Storage for EmailProvider and SyncJob rows.

    Key layout (under the configured prefix):
        provider:{id}               provider row (JSON)
        user:{user_id}:providers    set of provider ids
        job:{id}                    sync job row (JSON)
        job:{id}:cancel             cancel-request flag
        provider:{id}:jobs          sorted set of job ids by creation time
        provider:{id}:active_job    id of the provider's non-terminal job
        oauth_state:{state}         pending OAuth authorization (JSON, TTL)
    """

    # Providers

    async def save_provider(self, provider: EmailProvider) -> None:
        redis = await self._client()
        provider.updated_at = utcnow()
        async with redis.pipeline(transaction=True) as pipe:
            pipe.set(self._key("provider", provider.id), provider.model_dump_json())
            pipe.sadd(self._key("user", provider.user_id, "providers"), provider.id)
            await pipe.execute()
        logger.debug("Provider saved", provider_id=provider.id, user_id=provider.user_id)

    async def get_provider(self, provider_id: str) -> Optional[EmailProvider]:
        redis = await self._client()
        data = await redis.get(self._key("provider", provider_id))
        if data:
            return EmailProvider.model_validate_json(data)
        return None

    async def require_provider(self, provider_id: str, user_id: Optional[int] = None) -> EmailProvider:
        """
        Load a provider, optionally checking it belongs to ``user_id``.

        Raises:
            ProviderNotFound: If it does not exist or belongs to another user
        """
        provider = await self.get_provider(provider_id)
        if provider is None or (user_id is not None and provider.user_id != user_id):
            raise ProviderNotFound(f"Email provider {provider_id} not found")
        return provider

    async def list_providers(self, user_id: int) -> list[EmailProvider]:
        redis = await self._client()
        provider_ids = await redis.smembers(self._key("user", user_id, "providers"))

        providers = []
        for provider_id in provider_ids:
            provider = await self.get_provider(provider_id)
            if provider:
                providers.append(provider)
        return sorted(providers, key=lambda p: p.created_at)

    async def find_provider(self, user_id: int, provider_type: str, email: str) -> Optional[EmailProvider]:
        """Find the user's connection for a vendor mailbox address."""
        for provider in await self.list_providers(user_id):
            if provider.provider_type == provider_type and provider.email.lower() == email.lower():
                return provider
        return None

    async def update_provider_tokens(self, provider_id: str, tokens: TokenBundle) -> EmailProvider:
        """Persist a refreshed token bundle onto its provider."""
        provider = await self.require_provider(provider_id)
        provider.tokens = tokens
        await self.save_provider(provider)
        logger.info("Provider tokens updated", provider_id=provider_id, expires_at=tokens.expires_at)
        return provider

    async def flag_reauth(self, provider_id: str, reason: str) -> None:
        """Mark a provider as needing re-authorization by its user."""
        provider = await self.get_provider(provider_id)
        if provider is None:
            return
        provider.needs_reauth = True
        provider.reauth_reason = reason
        await self.save_provider(provider)
        logger.warning("Provider flagged for re-authorization", provider_id=provider_id, reason=reason)

    async def mark_synced(self, provider_id: str, synced_at: Optional[datetime] = None) -> None:
        provider = await self.get_provider(provider_id)
        if provider is None:
            return
        provider.last_sync_at = synced_at or utcnow()
        await self.save_provider(provider)

    async def delete_provider(self, provider_id: str) -> int:
        """
        Delete a provider and cascade its sync jobs.

        Returns:
            Number of job rows deleted
        """
        redis = await self._client()
        provider = await self.get_provider(provider_id)
        jobs_key = self._key("provider", provider_id, "jobs")
        job_ids = await redis.zrange(jobs_key, 0, -1)

        async with redis.pipeline(transaction=True) as pipe:
            for job_id in job_ids:
                pipe.delete(self._key("job", job_id), self._key("job", job_id, "cancel"))
            pipe.delete(
                jobs_key,
                self._key("provider", provider_id, "active_job"),
                self._key("provider", provider_id),
            )
            if provider is not None:
                pipe.srem(self._key("user", provider.user_id, "providers"), provider_id)
            await pipe.execute()

        logger.info("Provider deleted", provider_id=provider_id, jobs_deleted=len(job_ids))
        return len(job_ids)

    # Sync jobs

    async def create_job(self, job: SyncJob) -> SyncJob:
        """
        Persist a new pending job and make it the provider's active job.

        A stale marker left by a terminal or vanished job is replaced.

        Raises:
            SyncAlreadyRunning: If the provider already has a non-terminal job
        """
        redis = await self._client()
        active_key = self._key("provider", job.provider_id, "active_job")

        if not await redis.set(active_key, job.id, nx=True):
            existing_id = await redis.get(active_key)
            existing = await self.get_job(existing_id) if existing_id else None
            if existing is not None and not existing.status.is_terminal:
                raise SyncAlreadyRunning(job.provider_id, existing.id)
            if existing_id:
                await self.release_active_job(job.provider_id, existing_id)
            if not await redis.set(active_key, job.id, nx=True):
                raise SyncAlreadyRunning(job.provider_id, await redis.get(active_key) or "unknown")

        async with redis.pipeline(transaction=True) as pipe:
            pipe.set(self._key("job", job.id), job.model_dump_json(exclude={"cancel_requested"}))
            pipe.zadd(self._key("provider", job.provider_id, "jobs"), {job.id: job.created_at.timestamp()})
            await pipe.execute()

        logger.info("Sync job created", sync_job_id=job.id, provider_id=job.provider_id)
        return job

    async def save_job(self, job: SyncJob) -> bool:
        """
        Overwrite an existing job row.

        Returns:
            False when the row no longer exists (e.g. deleted by disconnect)
        """
        redis = await self._client()
        saved = await redis.set(
            self._key("job", job.id),
            job.model_dump_json(exclude={"cancel_requested"}),
            xx=True,
        )
        if not saved:
            logger.warning("Sync job row missing on save", sync_job_id=job.id)
        return bool(saved)

    async def get_job(self, job_id: str) -> Optional[SyncJob]:
        redis = await self._client()
        data, cancel_flag = await redis.mget(self._key("job", job_id), self._key("job", job_id, "cancel"))
        if not data:
            return None
        job = SyncJob.model_validate_json(data)
        job.cancel_requested = bool(cancel_flag)
        return job

    async def list_jobs(self, provider_id: str, limit: Optional[int] = None) -> list[SyncJob]:
        """Jobs for a provider, most recent first."""
        redis = await self._client()
        end = -1 if not limit else limit - 1
        job_ids = await redis.zrevrange(self._key("provider", provider_id, "jobs"), 0, end)

        jobs = []
        for job_id in job_ids:
            job = await self.get_job(job_id)
            if job:
                jobs.append(job)
        return jobs

    async def list_jobs_for_user(self, user_id: int, limit: Optional[int] = None) -> list[SyncJob]:
        """Jobs across all of a user's providers, most recent first."""
        jobs: list[SyncJob] = []
        for provider in await self.list_providers(user_id):
            jobs.extend(await self.list_jobs(provider.id))
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return jobs[:limit] if limit else jobs

    # Cancellation flag: written only by request_cancel, read only by the orchestrator

    async def request_cancel(self, job_id: str) -> None:
        redis = await self._client()
        await redis.set(self._key("job", job_id, "cancel"), "1", ex=self.config.cancel_flag_ttl_seconds)
        logger.info("Sync job cancellation requested", sync_job_id=job_id)

    async def is_cancel_requested(self, job_id: str) -> bool:
        redis = await self._client()
        return bool(await redis.exists(self._key("job", job_id, "cancel")))

    # Active job marker

    async def get_active_job_id(self, provider_id: str) -> Optional[str]:
        redis = await self._client()
        return await redis.get(self._key("provider", provider_id, "active_job"))

    async def release_active_job(self, provider_id: str, job_id: str) -> bool:
        """Clear the provider's active marker if it still points at ``job_id``."""
        redis = await self._client()
        key = self._key("provider", provider_id, "active_job")
        async with redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                if await pipe.get(key) != job_id:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.delete(key)
                await pipe.execute()
            except WatchError:
                logger.debug("Active job marker changed concurrently", provider_id=provider_id)
                return False
        return True

    async def iter_active_jobs(self) -> AsyncIterator[tuple[str, str]]:
        """Yield ``(provider_id, job_id)`` for every active marker."""
        redis = await self._client()
        prefix_len = len(self._key("provider", ""))
        async for key in redis.scan_iter(match=self._key("provider", "*", "active_job"), count=100):
            job_id = await redis.get(key)
            if job_id:
                provider_id = key[prefix_len : -len(":active_job")]
                yield provider_id, job_id

    # OAuth state

    async def save_oauth_state(self, state: str, payload: dict) -> None:
        redis = await self._client()
        await redis.set(
            self._key("oauth_state", state),
            json.dumps(payload),
            ex=self.config.oauth_state_ttl_seconds,
        )

    async def pop_oauth_state(self, state: str) -> Optional[dict]:
        """Consume a pending OAuth state; each state is valid once."""
        redis = await self._client()
        key = self._key("oauth_state", state)
        async with redis.pipeline(transaction=True) as pipe:
            pipe.get(key)
            pipe.delete(key)
            data, _ = await pipe.execute()
        return json.loads(data) if data else None
