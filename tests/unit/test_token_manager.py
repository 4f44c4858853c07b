"""Unit tests for the token lifecycle manager."""

import asyncio
from datetime import timedelta

import pytest

from receiptsync.models.provider import TokenBundle
from receiptsync.services.errors import AuthExpired, ProviderUnavailable
from receiptsync.services.token_manager import TokenLifecycleManager
from receiptsync.utils.dates import utcnow


@pytest.fixture
def manager(sync_store, adapters):
    return TokenLifecycleManager(sync_store, adapters)


async def expire(store, provider):
    provider.tokens = TokenBundle(
        access_token="stale-token",
        refresh_token="refresh-token",
        expires_at=utcnow() - timedelta(minutes=1),
    )
    await store.save_provider(provider)


@pytest.mark.unit
class TestTokenLifecycleManager:
    """Test expiry detection, refresh and persistence."""

    async def test_valid_tokens_returned_without_refresh(self, manager, provider, mailbox):
        tokens = await manager.ensure_valid(provider)

        assert tokens.access_token == "access-token"
        assert mailbox.refresh_calls == 0

    async def test_expired_tokens_refreshed_and_persisted(self, manager, provider, mailbox, sync_store):
        """
        Test refresh of an expired access token

        Given: A provider whose access token expired
        When: ensure_valid() is called
        Then: The adapter refreshes it and the new bundle is stored before return
        """
        # Arrange
        await expire(sync_store, provider)

        # Act
        tokens = await manager.ensure_valid(provider)

        # Assert
        assert tokens.access_token == "refreshed-1"
        assert provider.tokens.access_token == "refreshed-1"
        stored = await sync_store.get_provider(provider.id)
        assert stored.tokens.access_token == "refreshed-1"
        assert stored.tokens.refresh_token == "refresh-token"

    async def test_concurrent_refresh_happens_once(self, manager, provider, mailbox, sync_store):
        await expire(sync_store, provider)
        copies = [(await sync_store.get_provider(provider.id)) for _ in range(3)]

        results = await asyncio.gather(*(manager.ensure_valid(copy) for copy in copies))

        assert mailbox.refresh_calls == 1
        assert {tokens.access_token for tokens in results} == {"refreshed-1"}

    async def test_rejected_refresh_flags_reauth(self, manager, provider, mailbox, sync_store):
        await expire(sync_store, provider)
        mailbox.refresh_error = AuthExpired("invalid_grant")

        with pytest.raises(AuthExpired):
            await manager.ensure_valid(provider)

        stored = await sync_store.get_provider(provider.id)
        assert stored.needs_reauth is True
        assert "invalid_grant" in stored.reauth_reason

    async def test_unavailable_token_endpoint_does_not_flag(self, manager, provider, mailbox, sync_store):
        await expire(sync_store, provider)
        mailbox.refresh_error = ProviderUnavailable("token endpoint down")

        with pytest.raises(ProviderUnavailable):
            await manager.ensure_valid(provider)

        stored = await sync_store.get_provider(provider.id)
        assert stored.needs_reauth is False
        assert stored.tokens.access_token == "stale-token"

    async def test_refresh_rejected_forces_refresh(self, manager, provider, mailbox):
        rejected = provider.tokens

        tokens = await manager.refresh_rejected(provider, rejected)

        assert mailbox.refresh_calls == 1
        assert tokens.access_token == "refreshed-1"

    async def test_refresh_rejected_reuses_token_rotated_elsewhere(self, manager, provider, mailbox, sync_store):
        """
        Test a rejected token already replaced by another job is not refreshed again

        Given: The stored token differs from the one the vendor rejected
        When: refresh_rejected() is called
        Then: The stored token is returned without a refresh
        """
        rejected = provider.tokens
        await sync_store.update_provider_tokens(
            provider.id,
            TokenBundle(access_token="rotated", refresh_token="refresh-token", expires_at=utcnow() + timedelta(hours=1)),
        )

        tokens = await manager.refresh_rejected(provider, rejected)

        assert mailbox.refresh_calls == 0
        assert tokens.access_token == "rotated"
