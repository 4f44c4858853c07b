"""Access token lifecycle: expiry detection, refresh and persistence."""

import asyncio

from receiptsync.models.provider import EmailProvider, TokenBundle
from receiptsync.services.errors import AuthExpired
from receiptsync.services.providers import AdapterRegistry
from receiptsync.services.sync_store import SyncStore
from receiptsync.utils.dates import utcnow
from receiptsync.utils.logging import get_logger

logger = get_logger(__name__)


class TokenLifecycleManager:
    """
    Single call site for token refresh.

    A refreshed bundle is persisted onto the provider before it is handed
    back, so the caller never uses tokens that could be lost on a crash.
    Refreshes for one provider are serialized by a per-provider lock.
    """

    def __init__(self, store: SyncStore, adapters: AdapterRegistry) -> None:
        self.store = store
        self.adapters = adapters
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, provider_id: str) -> asyncio.Lock:
        lock = self._locks.get(provider_id)
        if lock is None:
            lock = self._locks[provider_id] = asyncio.Lock()
        return lock

    async def ensure_valid(self, provider: EmailProvider) -> TokenBundle:
        """
        Return usable tokens for ``provider``, refreshing them when expired.

        Updates ``provider.tokens`` in place after a refresh.

        Raises:
            AuthExpired: If the refresh token is missing or rejected; the
                provider is flagged for re-authorization and no retry happens
            ProviderUnavailable: If the vendor token endpoint is unreachable
        """
        if not provider.tokens.is_expired(utcnow()):
            return provider.tokens

        async with self._lock_for(provider.id):
            # Another job may have rotated the tokens while we waited
            current = await self.store.get_provider(provider.id)
            if current is not None and not current.tokens.is_expired(utcnow()):
                provider.tokens = current.tokens
                return provider.tokens

            return await self._refresh(provider, current.tokens if current is not None else provider.tokens)

    async def refresh_rejected(self, provider: EmailProvider, rejected: TokenBundle) -> TokenBundle:
        """
        Refresh after the vendor rejected an access token it should have accepted.

        If another job already replaced the rejected token, the stored one is
        returned instead of refreshing again.
        """
        async with self._lock_for(provider.id):
            current = await self.store.get_provider(provider.id)
            if (
                current is not None
                and current.tokens.access_token != rejected.access_token
                and not current.tokens.is_expired(utcnow())
            ):
                provider.tokens = current.tokens
                return provider.tokens
            return await self._refresh(provider, current.tokens if current is not None else rejected)

    async def _refresh(self, provider: EmailProvider, tokens: TokenBundle) -> TokenBundle:
        adapter = self.adapters.get(provider.provider_type)
        try:
            refreshed = await adapter.refresh_tokens(tokens)
        except AuthExpired as e:
            await self.store.flag_reauth(provider.id, str(e))
            raise

        # Persist before handing the new tokens to any caller
        await self.store.update_provider_tokens(provider.id, refreshed)
        provider.tokens = refreshed
        logger.info("Access token refreshed", provider_id=provider.id, expires_at=refreshed.expires_at)
        return refreshed
