"""Request dependencies: caller identity, services and error mapping."""

from typing import Optional

from fastapi import Header, HTTPException, Request, status

from receiptsync.services.errors import (
    AuthExpired,
    AuthorizationError,
    ProviderNotFound,
    ProviderUnavailable,
    ReceiptSyncError,
    SyncAlreadyRunning,
    SyncJobNotFound,
    SyncValidationError,
    UnsupportedProvider,
)
from receiptsync.services.provider_service import ProviderService
from receiptsync.services.sync_service import SyncService

ERROR_STATUS: list[tuple[type[ReceiptSyncError], int]] = [
    (SyncValidationError, status.HTTP_400_BAD_REQUEST),
    (UnsupportedProvider, status.HTTP_400_BAD_REQUEST),
    (AuthorizationError, status.HTTP_400_BAD_REQUEST),
    (ProviderNotFound, status.HTTP_404_NOT_FOUND),
    (SyncJobNotFound, status.HTTP_404_NOT_FOUND),
    (SyncAlreadyRunning, status.HTTP_409_CONFLICT),
    (AuthExpired, status.HTTP_409_CONFLICT),
    (ProviderUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def http_error(error: ReceiptSyncError) -> HTTPException:
    """Map an engine error to the HTTP status the API reports for it."""
    for error_type, status_code in ERROR_STATUS:
        if isinstance(error, error_type):
            return HTTPException(status_code=status_code, detail=str(error))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(error))


async def get_user_id(x_user_id: Optional[str] = Header(default=None, alias="X-User-Id")) -> int:
    """Caller identity asserted by the upstream application."""
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-Id header")
    try:
        return int(x_user_id)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="X-User-Id must be an integer")


def get_sync_service(request: Request) -> SyncService:
    return request.app.state.sync_service


def get_provider_service(request: Request) -> ProviderService:
    return request.app.state.provider_service
