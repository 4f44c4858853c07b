"""Request logging middleware."""

import time
from typing import Callable

from fastapi import Request

from receiptsync.utils.logging import get_logger

logger = get_logger(__name__)


async def request_logging_middleware(request: Request, call_next: Callable):
    """Log method, path, status and duration of every request."""
    start_time = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - start_time) * 1000

    log_data = {
        "method": request.method,
        "path": request.url.path,
        "status_code": response.status_code,
        "duration_ms": round(duration_ms, 2),
    }
    if request.client:
        log_data["client_ip"] = request.client.host

    if response.status_code >= 500:
        logger.error("Request failed", **log_data)
    elif response.status_code >= 400:
        logger.warning("Request error", **log_data)
    else:
        logger.info("Request completed", **log_data)

    return response
