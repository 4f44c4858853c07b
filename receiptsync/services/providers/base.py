"""Interface every mailbox provider adapter implements."""

from typing import AsyncIterator, Protocol, runtime_checkable

from receiptsync.models.email import EmailContent, MessageRef, SearchOptions
from receiptsync.models.provider import AuthorizedAccount, TokenBundle


@runtime_checkable
class ProviderAdapter(Protocol):
    """
    Capability set of a mailbox vendor.

    Implementations translate vendor failures into ``AuthExpired``,
    ``ProviderUnavailable`` or ``MessageNotFound``.
    """

    provider_type: str
    default_page_size: int

    def authorization_url(self, state: str) -> str:
        """URL the user visits to grant mailbox access."""
        ...

    async def exchange_code(self, code: str) -> AuthorizedAccount:
        """Trade an authorization code for tokens and the mailbox address."""
        ...

    async def refresh_tokens(self, tokens: TokenBundle) -> TokenBundle:
        """Obtain a fresh access token using the refresh token."""
        ...

    def build_search_query(self, options: SearchOptions) -> str:
        """Vendor query string for the given search options."""
        ...

    def search(self, tokens: TokenBundle, query: str, max_results: int) -> AsyncIterator[MessageRef]:
        """Yield at most ``max_results`` message references, newest first."""
        ...

    async def fetch_message(self, tokens: TokenBundle, message_id: str) -> EmailContent:
        """Fetch subject, sender, date, body and attachment references."""
        ...

    async def fetch_attachment(self, tokens: TokenBundle, message_id: str, attachment_id: str) -> bytes:
        """Download one attachment's raw bytes."""
        ...
