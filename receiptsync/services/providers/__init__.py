"""Mailbox provider adapters and the lookup table that selects them."""

from typing import Callable

from receiptsync.config.settings import Settings
from receiptsync.services.errors import UnsupportedProvider
from receiptsync.services.providers.base import ProviderAdapter
from receiptsync.services.providers.gmail import GMAIL, GmailAdapter
from receiptsync.utils.logging import get_logger

logger = get_logger(__name__)

AdapterFactory = Callable[[Settings], ProviderAdapter]

# Provider type -> factory building the adapter from settings
DEFAULT_ADAPTERS: dict[str, AdapterFactory] = {
    GMAIL: GmailAdapter.from_settings,
}


class AdapterRegistry:
    """Resolves a provider type string to a configured adapter instance."""

    def __init__(self, settings: Settings, factories: dict[str, AdapterFactory] | None = None) -> None:
        self._settings = settings
        self._factories: dict[str, AdapterFactory] = dict(DEFAULT_ADAPTERS if factories is None else factories)
        self._instances: dict[str, ProviderAdapter] = {}

    def register(self, provider_type: str, factory: AdapterFactory) -> None:
        """Register (or replace) the adapter factory for a provider type."""
        self._factories[provider_type] = factory
        self._instances.pop(provider_type, None)
        logger.info("Provider adapter registered", provider_type=provider_type)

    def get(self, provider_type: str) -> ProviderAdapter:
        """
        Get the adapter for a provider type, building it on first use.

        Raises:
            UnsupportedProvider: If no adapter is registered for the type
        """
        adapter = self._instances.get(provider_type)
        if adapter is not None:
            return adapter

        factory = self._factories.get(provider_type)
        if factory is None:
            raise UnsupportedProvider(f"Unsupported email provider: {provider_type}")

        adapter = factory(self._settings)
        self._instances[provider_type] = adapter
        return adapter

    def supported_types(self) -> list[str]:
        return sorted(self._factories)


__all__ = ["AdapterFactory", "AdapterRegistry", "DEFAULT_ADAPTERS", "GMAIL", "GmailAdapter", "ProviderAdapter"]
