"""Email provider connection endpoints."""

from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import RedirectResponse

from receiptsync.api.dependencies import get_provider_service, get_sync_service, get_user_id, http_error
from receiptsync.api.middleware.rate_limit import RATE_LIMITS, limiter
from receiptsync.api.models import (
    AuthUrlResponse,
    ConfigStatusResponse,
    DisconnectResponse,
    ProviderListResponse,
    ProviderResponse,
)
from receiptsync.config.settings import settings
from receiptsync.services.errors import ReceiptSyncError
from receiptsync.services.provider_service import ProviderService
from receiptsync.services.sync_service import SyncService
from receiptsync.utils.logging import get_logger

logger = get_logger(__name__)
router = APIRouter(prefix="/email", tags=["Email Providers"])


@router.get("/config-status", response_model=ConfigStatusResponse)
async def config_status(service: ProviderService = Depends(get_provider_service)) -> ConfigStatusResponse:
    """Report whether OAuth credentials are configured for each provider type."""
    return ConfigStatusResponse(providers=service.config_status())


@router.get("/providers", response_model=ProviderListResponse)
async def list_providers(
    user_id: int = Depends(get_user_id),
    service: ProviderService = Depends(get_provider_service),
) -> ProviderListResponse:
    """List the caller's connected mailboxes."""
    try:
        providers = await service.list_providers(user_id)
        return ProviderListResponse(items=[ProviderResponse.from_provider(p) for p in providers])
    except Exception as e:
        logger.error("Failed to list providers", user_id=user_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to list providers: {str(e)}",
        )


@router.get("/auth/{provider_type}", response_model=AuthUrlResponse)
@limiter.limit(RATE_LIMITS["auth_url"])
async def get_auth_url(
    request: Request,
    provider_type: str,
    user_id: int = Depends(get_user_id),
    service: ProviderService = Depends(get_provider_service),
) -> AuthUrlResponse:
    """
    Start connecting a mailbox.

    Returns the vendor consent URL the browser should be sent to.
    """
    try:
        url = await service.get_authorization_url(user_id, provider_type)
        return AuthUrlResponse(provider_type=provider_type, auth_url=url)
    except ReceiptSyncError as e:
        raise http_error(e)
    except Exception as e:
        logger.error("Failed to build authorization URL", provider_type=provider_type, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to build authorization URL: {str(e)}",
        )


@router.get("/callback/{provider_type}")
async def oauth_callback(
    provider_type: str,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    service: ProviderService = Depends(get_provider_service),
) -> RedirectResponse:
    """
    OAuth redirect target.

    Always redirects the browser to the frontend with either
    ``success=true`` or an ``error`` parameter.
    """
    base = f"{settings.app.frontend_url.rstrip('/')}/oauth-callback/{quote(provider_type)}"

    if error:
        logger.warning("Authorization denied by user", provider_type=provider_type, error=error)
        return RedirectResponse(f"{base}?error={quote(error)}", status_code=status.HTTP_302_FOUND)
    if not code or not state:
        return RedirectResponse(f"{base}?error=missing_parameters", status_code=status.HTTP_302_FOUND)

    try:
        provider = await service.complete_authorization(provider_type, code, state)
    except ReceiptSyncError as e:
        logger.warning("Authorization callback failed", provider_type=provider_type, error=str(e))
        return RedirectResponse(f"{base}?error={quote(str(e))}", status_code=status.HTTP_302_FOUND)
    except Exception as e:
        logger.error("Authorization callback crashed", provider_type=provider_type, error=str(e))
        return RedirectResponse(f"{base}?error=unknown_error", status_code=status.HTTP_302_FOUND)

    return RedirectResponse(
        f"{base}?success=true&providerId={quote(provider.id)}",
        status_code=status.HTTP_302_FOUND,
    )


@router.delete("/providers/{provider_id}", response_model=DisconnectResponse)
async def disconnect_provider(
    provider_id: str,
    user_id: int = Depends(get_user_id),
    service: SyncService = Depends(get_sync_service),
) -> DisconnectResponse:
    """
    Disconnect a mailbox.

    A running sync is cancelled first; the provider's sync jobs are deleted
    with it. Receipts already imported are kept.
    """
    try:
        jobs_deleted = await service.disconnect_provider(user_id, provider_id)
        return DisconnectResponse(success=True, provider_id=provider_id, jobs_deleted=jobs_deleted)
    except ReceiptSyncError as e:
        raise http_error(e)
    except Exception as e:
        logger.error("Failed to disconnect provider", provider_id=provider_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to disconnect provider: {str(e)}",
        )
