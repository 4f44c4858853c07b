"""OAuth connect flow and provider listing."""

import secrets
from typing import Callable, Optional

from receiptsync.config.settings import Settings, settings
from receiptsync.models.provider import EmailProvider
from receiptsync.services.errors import AuthorizationError
from receiptsync.services.providers import GMAIL, AdapterRegistry
from receiptsync.services.sync_store import SyncStore
from receiptsync.utils.logging import get_logger

logger = get_logger(__name__)

# Provider type -> whether its OAuth client is configured
OAUTH_CONFIGURED: dict[str, Callable[[Settings], bool]] = {
    GMAIL: lambda s: s.google.is_configured,
}


class ProviderService:
    """Connects mailboxes through OAuth and reads connected providers."""

    def __init__(self, store: SyncStore, adapters: AdapterRegistry, app_settings: Optional[Settings] = None) -> None:
        self.store = store
        self.adapters = adapters
        self.settings = app_settings or settings

    def config_status(self) -> dict[str, bool]:
        """Whether OAuth credentials are configured, per supported provider type."""
        return {
            provider_type: OAUTH_CONFIGURED.get(provider_type, lambda _: True)(self.settings)
            for provider_type in self.adapters.supported_types()
        }

    async def get_authorization_url(self, user_id: int, provider_type: str) -> str:
        """
        Start the OAuth flow for ``user_id``.

        Raises:
            UnsupportedProvider: Unknown provider type
            AuthorizationError: OAuth client not configured
        """
        adapter = self.adapters.get(provider_type)
        if not self.config_status().get(provider_type, False):
            raise AuthorizationError(f"OAuth client for {provider_type} is not configured")

        state = secrets.token_urlsafe(32)
        await self.store.save_oauth_state(state, {"user_id": user_id, "provider_type": provider_type})
        logger.info("Authorization started", user_id=user_id, provider_type=provider_type)
        return adapter.authorization_url(state)

    async def complete_authorization(self, provider_type: str, code: str, state: str) -> EmailProvider:
        """
        Finish the OAuth flow from the vendor callback.

        Reconnecting an existing (user, type, address) replaces its tokens
        and clears the re-authorization flag instead of creating a duplicate.

        Raises:
            AuthorizationError: Unknown/expired state or rejected code
        """
        pending = await self.store.pop_oauth_state(state) if state else None
        if pending is None or pending.get("provider_type") != provider_type:
            raise AuthorizationError("Invalid or expired authorization state")
        if not code:
            raise AuthorizationError("Authorization code missing")

        adapter = self.adapters.get(provider_type)
        account = await adapter.exchange_code(code)
        user_id = int(pending["user_id"])

        provider = await self.store.find_provider(user_id, provider_type, account.email)
        if provider is None:
            provider = EmailProvider(
                user_id=user_id,
                provider_type=provider_type,
                email=account.email,
                tokens=account.tokens,
            )
            logger.info("Provider connected", provider_id=provider.id, user_id=user_id, provider_type=provider_type)
        else:
            tokens = account.tokens
            if not tokens.refresh_token:
                tokens = tokens.model_copy(update={"refresh_token": provider.tokens.refresh_token})
            provider.tokens = tokens
            provider.needs_reauth = False
            provider.reauth_reason = None
            logger.info("Provider reconnected", provider_id=provider.id, user_id=user_id)

        await self.store.save_provider(provider)
        return provider

    async def list_providers(self, user_id: int) -> list[EmailProvider]:
        return await self.store.list_providers(user_id)
