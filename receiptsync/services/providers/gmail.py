"""Gmail API adapter for mailbox search and message retrieval."""

import asyncio
import base64
from datetime import date, datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable, Iterator, Optional

import httplib2
from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from oauthlib.oauth2.rfc6749.errors import OAuth2Error

from receiptsync.config.settings import GoogleOAuthConfig, Settings
from receiptsync.models.email import AttachmentRef, EmailContent, MessageRef, SearchOptions
from receiptsync.models.provider import AuthorizedAccount, TokenBundle
from receiptsync.services.errors import (
    AuthExpired,
    AuthorizationError,
    MessageNotFound,
    ProviderUnavailable,
    ReceiptSyncError,
)
from receiptsync.utils.dates import ensure_utc, parse_header_date
from receiptsync.utils.logging import get_logger

logger = get_logger(__name__)

GMAIL = "gmail"

# Subject keywords OR well-known merchant senders
DEFAULT_RECEIPT_QUERY = (
    "subject:(receipt OR order OR purchase OR invoice OR confirmation) "
    "OR from:(amazon OR walmart OR target OR bestbuy OR ebay OR doordash OR uber)"
)

RATE_LIMIT_REASONS = ("rateLimitExceeded", "userRateLimitExceeded", "quotaExceeded")


def decode_base64url(data: str) -> bytes:
    """Decode Gmail's URL-safe base64, tolerating stripped padding."""
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


def format_query_date(value: date) -> str:
    """Format a date for Gmail ``after:``/``before:`` operators."""
    return value.strftime("%Y/%m/%d")


def _walk_parts(part: dict[str, Any]) -> Iterator[dict[str, Any]]:
    yield part
    for sub_part in part.get("parts") or []:
        yield from _walk_parts(sub_part)


def extract_body(payload: dict[str, Any]) -> tuple[str, str]:
    """
    Pick the message body from a Gmail payload tree.

    Walks nested multipart structures and prefers the first ``text/html``
    part, falling back to the first ``text/plain`` part. Multipart wrappers
    and attachments are never returned as the body.

    Returns:
        (body text, mime type)
    """
    html_body: Optional[str] = None
    plain_body: Optional[str] = None

    for part in _walk_parts(payload):
        mime_type = (part.get("mimeType") or "").lower()
        data = (part.get("body") or {}).get("data")
        if not data or part.get("filename"):
            continue
        if mime_type == "text/html" and html_body is None:
            html_body = decode_base64url(data).decode("utf-8", errors="replace")
        elif mime_type == "text/plain" and plain_body is None:
            plain_body = decode_base64url(data).decode("utf-8", errors="replace")

    if html_body:
        return html_body, "text/html"
    if plain_body:
        return plain_body, "text/plain"
    return "", "text/plain"


def collect_attachments(payload: dict[str, Any]) -> list[AttachmentRef]:
    """List attachment references found anywhere in the payload tree."""
    attachments = []
    for part in _walk_parts(payload):
        body = part.get("body") or {}
        attachment_id = body.get("attachmentId")
        if not attachment_id:
            continue
        attachments.append(
            AttachmentRef(
                attachment_id=attachment_id,
                filename=part.get("filename") or "",
                mime_type=part.get("mimeType") or "application/octet-stream",
                size_bytes=int(body.get("size") or 0),
            )
        )
    return attachments


class GmailAdapter:
    """Gmail implementation of the provider adapter interface."""

    provider_type = GMAIL

    def __init__(
        self,
        oauth_config: GoogleOAuthConfig,
        default_page_size: int = 50,
        max_page_size: int = 500,
    ) -> None:
        """Initialize adapter with an already resolved OAuth client configuration."""
        self.config = oauth_config
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size

    @classmethod
    def from_settings(cls, settings: Settings) -> "GmailAdapter":
        return cls(
            settings.google,
            default_page_size=settings.sync.default_page_size,
            max_page_size=settings.sync.max_page_size,
        )

    # OAuth

    def _client_config(self) -> dict[str, Any]:
        return {
            "web": {
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret.get_secret_value(),
                "auth_uri": self.config.auth_uri,
                "token_uri": self.config.token_uri,
                "redirect_uris": [self.config.redirect_uri],
            }
        }

    def _flow(self) -> Flow:
        return Flow.from_client_config(
            self._client_config(),
            scopes=self.config.scopes,
            redirect_uri=self.config.redirect_uri,
            autogenerate_code_verifier=False,
        )

    def authorization_url(self, state: str) -> str:
        """
        Build the Google consent URL.

        Offline access with a forced consent screen so Google always issues
        a refresh token.
        """
        url, _ = self._flow().authorization_url(
            access_type="offline",
            prompt="consent",
            include_granted_scopes="true",
            state=state,
        )
        return url

    async def exchange_code(self, code: str) -> AuthorizedAccount:
        """Exchange an authorization code and look up the mailbox address."""

        def _exchange() -> tuple[Credentials, str]:
            flow = self._flow()
            flow.fetch_token(code=code)
            creds = flow.credentials
            service = build("gmail", "v1", credentials=creds, cache_discovery=False)
            profile = service.users().getProfile(userId="me").execute()
            return creds, profile.get("emailAddress", "")

        try:
            creds, email = await asyncio.to_thread(_exchange)
        except HttpError as e:
            raise self._translate_http_error(e, "exchange_code") from e
        except (OAuth2Error, ValueError) as e:
            logger.warning("Gmail authorization code rejected", error=str(e))
            raise AuthorizationError(f"Authorization code rejected: {e}") from e
        except (TransportError, httplib2.HttpLib2Error, OSError) as e:
            raise ProviderUnavailable(f"Gmail authorization unavailable: {e}") from e

        if not email:
            raise AuthorizationError("Gmail profile did not return a mailbox address")

        logger.info("Gmail authorization completed", email=email)
        return AuthorizedAccount(email=email, tokens=self._bundle_from_credentials(creds))

    async def refresh_tokens(self, tokens: TokenBundle) -> TokenBundle:
        """
        Refresh the access token.

        Raises:
            AuthExpired: If the refresh token is missing or rejected by Google
            ProviderUnavailable: If the token endpoint cannot be reached
        """
        if not tokens.refresh_token:
            raise AuthExpired("No refresh token stored for this mailbox")

        creds = Credentials(
            token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_uri=self.config.token_uri,
            client_id=self.config.client_id,
            client_secret=self.config.client_secret.get_secret_value(),
            scopes=self.config.scopes,
        )

        try:
            await asyncio.to_thread(creds.refresh, Request())
        except RefreshError as e:
            if getattr(e, "retryable", False):
                raise ProviderUnavailable(f"Gmail token endpoint error: {e}") from e
            logger.warning("Gmail refresh token rejected", error=str(e))
            raise AuthExpired(f"Gmail refresh token rejected: {e}") from e
        except (TransportError, OSError) as e:
            raise ProviderUnavailable(f"Gmail token endpoint unreachable: {e}") from e

        logger.info("Gmail token refreshed")
        return self._bundle_from_credentials(creds, fallback_refresh_token=tokens.refresh_token)

    @staticmethod
    def _bundle_from_credentials(
        creds: Credentials, fallback_refresh_token: Optional[str] = None
    ) -> TokenBundle:
        # google-auth reports expiry as naive UTC
        expires_at = ensure_utc(creds.expiry) if creds.expiry else None
        return TokenBundle(
            access_token=creds.token,
            refresh_token=creds.refresh_token or fallback_refresh_token,
            expires_at=expires_at,
        )

    # Mailbox access

    def build_search_query(self, options: SearchOptions) -> str:
        """
        Build a Gmail search query.

        Date bounds are inclusive and are appended to the base query (the
        caller's query, or the receipt-biased default), never substituted
        for it. Gmail's ``before:`` is exclusive, so the end bound is
        shifted by one day.
        """
        base = (options.query or "").strip() or DEFAULT_RECEIPT_QUERY

        date_terms = []
        if options.date_range_start:
            date_terms.append(f"after:{format_query_date(options.date_range_start)}")
        if options.date_range_end:
            date_terms.append(f"before:{format_query_date(options.date_range_end + timedelta(days=1))}")

        if not date_terms:
            return base
        return f"({base}) {' '.join(date_terms)}"

    async def search(self, tokens: TokenBundle, query: str, max_results: int) -> AsyncIterator[MessageRef]:
        """
        Yield message references matching ``query``, newest first.

        Pages through results until ``max_results`` references were yielded
        or Gmail has no further page.
        """
        remaining = max_results
        page_token: Optional[str] = None
        pages = 0

        while remaining > 0:
            page_size = min(remaining, self.max_page_size)
            response = await self._call(
                tokens,
                "search",
                lambda service: service.users().messages().list(
                    userId="me",
                    q=query,
                    maxResults=page_size,
                    pageToken=page_token,
                    fields="messages(id,threadId),nextPageToken",
                ),
            )
            pages += 1
            messages = response.get("messages", [])
            logger.debug("Mailbox search page fetched", page=pages, found=len(messages))

            for message in messages[:remaining]:
                yield MessageRef(id=message["id"], thread_id=message.get("threadId"))
            remaining -= min(len(messages), remaining)

            page_token = response.get("nextPageToken")
            if not page_token or not messages:
                break

    async def fetch_message(self, tokens: TokenBundle, message_id: str) -> EmailContent:
        """Fetch a message and split it into headers, preferred body and attachment references."""
        message = await self._call(
            tokens,
            "fetch_message",
            lambda service: service.users().messages().get(userId="me", id=message_id, format="full"),
        )

        payload = message.get("payload") or {}
        headers = {h["name"].lower(): h["value"] for h in payload.get("headers", [])}
        body, body_mime_type = extract_body(payload)

        sent_at = parse_header_date(headers.get("date", ""))
        if sent_at is None and message.get("internalDate"):
            sent_at = datetime.fromtimestamp(int(message["internalDate"]) / 1000, tz=timezone.utc)

        return EmailContent(
            message_id=message_id,
            thread_id=message.get("threadId"),
            subject=headers.get("subject", ""),
            sender=headers.get("from", ""),
            date=sent_at,
            body=body,
            body_mime_type=body_mime_type,
            attachments=collect_attachments(payload),
        )

    async def fetch_attachment(self, tokens: TokenBundle, message_id: str, attachment_id: str) -> bytes:
        """Download and decode one attachment."""
        attachment = await self._call(
            tokens,
            "fetch_attachment",
            lambda service: service.users()
            .messages()
            .attachments()
            .get(userId="me", messageId=message_id, id=attachment_id),
        )
        data = attachment.get("data")
        if not data:
            raise MessageNotFound(f"Attachment {attachment_id} of message {message_id} has no data")

        content = decode_base64url(data)
        logger.info(
            "Attachment downloaded",
            message_id=message_id,
            attachment_id=attachment_id,
            size_bytes=len(content),
        )
        return content

    # Plumbing

    def _service(self, tokens: TokenBundle):
        # Access-token-only credentials: the client library must never refresh
        # (and so rotate) tokens behind the token lifecycle manager's back.
        creds = Credentials(token=tokens.access_token)
        return build("gmail", "v1", credentials=creds, cache_discovery=False)

    async def _call(self, tokens: TokenBundle, operation: str, make_request: Callable[[Any], Any]) -> dict:
        """Run one Gmail request in a worker thread and translate its failures."""
        try:
            return await asyncio.to_thread(lambda: make_request(self._service(tokens)).execute())
        except HttpError as e:
            raise self._translate_http_error(e, operation) from e
        except RefreshError as e:
            raise AuthExpired(f"Gmail credentials rejected during {operation}: {e}") from e
        except (TransportError, httplib2.HttpLib2Error, OSError) as e:
            logger.warning("Gmail transport error", operation=operation, error=str(e))
            raise ProviderUnavailable(f"Gmail {operation} failed: {e}") from e

    @staticmethod
    def _translate_http_error(error: HttpError, operation: str) -> ReceiptSyncError:
        status = int(error.resp.status)
        detail = str(error)

        if status == 401:
            logger.warning("Gmail rejected access token", operation=operation)
            return AuthExpired(f"Gmail rejected credentials during {operation}")
        if status == 404:
            return MessageNotFound(f"Gmail resource not found during {operation}")
        if status == 429 or status >= 500:
            logger.warning("Gmail temporarily unavailable", operation=operation, status=status)
            return ProviderUnavailable(f"Gmail {operation} failed with HTTP {status}", status_code=status)
        if status == 403:
            if any(reason in detail for reason in RATE_LIMIT_REASONS):
                logger.warning("Gmail rate limit hit", operation=operation)
                return ProviderUnavailable(f"Gmail rate limit hit during {operation}", status_code=status)
            return AuthExpired(f"Gmail access forbidden during {operation}; re-authorization required")

        logger.error("Gmail request rejected", operation=operation, status=status, error=detail[:200])
        return ProviderUnavailable(
            f"Gmail {operation} failed with HTTP {status}", retryable=False, status_code=status
        )
