"""Exception taxonomy for the receipt sync engine."""

from typing import Optional


class ReceiptSyncError(Exception):
    """Base class for engine errors."""

    pass


class AuthExpired(ReceiptSyncError):
    """Mailbox credentials were rejected; the user must re-authorize the provider."""

    pass


class ProviderUnavailable(ReceiptSyncError):
    """Transient vendor or network fault."""

    def __init__(self, message: str, retryable: bool = True, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code


class MessageNotFound(ReceiptSyncError):
    """A message listed by search no longer exists when fetched."""

    pass


class ExtractionFailure(ReceiptSyncError):
    """Extraction of a single message failed or exceeded its time budget."""

    pass


class SyncValidationError(ReceiptSyncError):
    """Sync request parameters are invalid; no job is created."""

    pass


class ProviderNotFound(ReceiptSyncError):
    """No provider with the given id exists for the caller."""

    pass


class SyncJobNotFound(ReceiptSyncError):
    """No sync job with the given id exists for the caller."""

    pass


class SyncAlreadyRunning(ReceiptSyncError):
    """The provider already has a non-terminal sync job."""

    def __init__(self, provider_id: str, job_id: str) -> None:
        super().__init__(f"Provider {provider_id} already has an active sync job {job_id}")
        self.provider_id = provider_id
        self.job_id = job_id


class UnsupportedProvider(ReceiptSyncError):
    """No adapter is registered for the provider type."""

    pass


class AuthorizationError(ReceiptSyncError):
    """The OAuth callback could not be completed."""

    pass
