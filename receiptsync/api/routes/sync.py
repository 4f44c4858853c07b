"""Sync job endpoints."""

from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, status

from receiptsync.api.dependencies import get_sync_service, get_user_id, http_error
from receiptsync.api.middleware.rate_limit import RATE_LIMITS, limiter
from receiptsync.api.models import (
    CancelResponse,
    SyncJobListResponse,
    SyncJobResponse,
    SyncRequest,
    SyncStartResponse,
)
from receiptsync.services.errors import ReceiptSyncError
from receiptsync.services.sync_service import MessagePreview, SyncService
from receiptsync.utils.logging import get_logger

logger = get_logger(__name__)
router = APIRouter(prefix="/email", tags=["Sync Jobs"])


@router.post(
    "/providers/{provider_id}/sync",
    response_model=SyncStartResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
@limiter.limit(RATE_LIMITS["sync_start"])
async def start_sync(
    request: Request,
    provider_id: str,
    body: Optional[SyncRequest] = Body(default=None),
    user_id: int = Depends(get_user_id),
    service: SyncService = Depends(get_sync_service),
) -> SyncStartResponse:
    """
    Start a background sync for a provider.

    **Body (all optional):**
    - `dateRangeStart` / `dateRangeEnd`: inclusive dates; an end before the start is rejected with 400
    - `limit`: messages to evaluate; 0 or absent uses the provider's default page size

    Returns immediately with the pending job id; poll the job for progress.
    """
    body = body or SyncRequest()
    try:
        job = await service.start_sync(
            user_id,
            provider_id,
            date_range_start=body.date_range_start,
            date_range_end=body.date_range_end,
            limit=body.limit,
        )
        return SyncStartResponse(job_id=job.id, status=job.status, message="Sync started")
    except ReceiptSyncError as e:
        raise http_error(e)
    except Exception as e:
        logger.error("Failed to start sync", provider_id=provider_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to start sync: {str(e)}",
        )


@router.get("/providers/{provider_id}/sync-jobs", response_model=SyncJobListResponse)
@limiter.limit(RATE_LIMITS["job_list"])
async def list_provider_jobs(
    request: Request,
    provider_id: str,
    limit: Optional[int] = Query(None, ge=1, le=100, description="Maximum jobs to return"),
    user_id: int = Depends(get_user_id),
    service: SyncService = Depends(get_sync_service),
) -> SyncJobListResponse:
    """List a provider's sync jobs, most recent first."""
    try:
        jobs = await service.list_jobs(user_id, provider_id=provider_id, limit=limit)
        return SyncJobListResponse(total=len(jobs), items=[SyncJobResponse.from_job(j) for j in jobs])
    except ReceiptSyncError as e:
        raise http_error(e)
    except Exception as e:
        logger.error("Failed to list sync jobs", provider_id=provider_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to list sync jobs: {str(e)}",
        )


@router.post("/providers/{provider_id}/messages/{message_id}/preview", response_model=MessagePreview)
@limiter.limit(RATE_LIMITS["message_preview"])
async def preview_message(
    request: Request,
    provider_id: str,
    message_id: str,
    user_id: int = Depends(get_user_id),
    service: SyncService = Depends(get_sync_service),
) -> MessagePreview:
    """Classify one message without importing it."""
    try:
        return await service.preview_message(user_id, provider_id, message_id)
    except ReceiptSyncError as e:
        raise http_error(e)
    except Exception as e:
        logger.error("Failed to preview message", provider_id=provider_id, message_id=message_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to preview message: {str(e)}",
        )


@router.get("/sync-jobs", response_model=SyncJobListResponse)
@limiter.limit(RATE_LIMITS["job_list"])
async def list_jobs(
    request: Request,
    limit: Optional[int] = Query(None, ge=1, le=100, description="Maximum jobs to return"),
    user_id: int = Depends(get_user_id),
    service: SyncService = Depends(get_sync_service),
) -> SyncJobListResponse:
    """List the caller's sync jobs across all providers, most recent first."""
    try:
        jobs = await service.list_jobs(user_id, limit=limit)
        return SyncJobListResponse(total=len(jobs), items=[SyncJobResponse.from_job(j) for j in jobs])
    except Exception as e:
        logger.error("Failed to list sync jobs", user_id=user_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to list sync jobs: {str(e)}",
        )


@router.get("/sync-jobs/{job_id}", response_model=SyncJobResponse)
@limiter.limit(RATE_LIMITS["job_get"])
async def get_job(
    request: Request,
    job_id: str,
    user_id: int = Depends(get_user_id),
    service: SyncService = Depends(get_sync_service),
) -> SyncJobResponse:
    """Current status and counters of a sync job."""
    try:
        return SyncJobResponse.from_job(await service.get_job(user_id, job_id))
    except ReceiptSyncError as e:
        raise http_error(e)
    except Exception as e:
        logger.error("Failed to get sync job", job_id=job_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to get sync job: {str(e)}",
        )


@router.post("/sync-jobs/{job_id}/cancel", response_model=CancelResponse)
async def cancel_job(
    job_id: str,
    user_id: int = Depends(get_user_id),
    service: SyncService = Depends(get_sync_service),
) -> CancelResponse:
    """
    Request cancellation.

    The job stops at its next message boundary, so it may still report
    `processing` for a short while.
    """
    try:
        job = await service.cancel_job(user_id, job_id)
        message = "Job already finished" if job.status.is_terminal else "Cancellation requested"
        return CancelResponse(job_id=job.id, status=job.status, cancel_requested=job.cancel_requested, message=message)
    except ReceiptSyncError as e:
        raise http_error(e)
    except Exception as e:
        logger.error("Failed to cancel sync job", job_id=job_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to cancel sync job: {str(e)}",
        )
