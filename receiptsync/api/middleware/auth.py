"""API key validation middleware."""

from typing import Callable

from fastapi import Request, status
from fastapi.responses import JSONResponse

from receiptsync.config.settings import settings
from receiptsync.utils.logging import get_logger

logger = get_logger(__name__)

# The OAuth callback is reached by the user's browser, which holds no API key
PUBLIC_PREFIXES = ("/api/v1/email/callback/",)


async def api_key_middleware(request: Request, call_next: Callable):
    """
    Require a valid ``X-API-Key`` header on ``/api/*`` endpoints.

    Health checks, docs and the OAuth callback are exempt.
    """
    path = request.url.path
    if not path.startswith("/api/") or path.startswith(PUBLIC_PREFIXES):
        return await call_next(request)

    api_key = request.headers.get("X-API-Key")
    client_ip = request.client.host if request.client else None

    if not api_key:
        logger.warning("Missing API key", path=path, client_ip=client_ip)
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"detail": "Missing API key. Provide X-API-Key header."},
        )

    expected_key = settings.admin.api_key.get_secret_value()
    if not expected_key or api_key != expected_key:
        logger.warning("Invalid API key", path=path, client_ip=client_ip)
        return JSONResponse(
            status_code=status.HTTP_403_FORBIDDEN,
            content={"detail": "Invalid API key"},
        )

    return await call_next(request)
