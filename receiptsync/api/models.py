"""API request/response models."""

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from receiptsync.models.provider import EmailProvider
from receiptsync.models.sync_job import SyncJob, SyncJobStatus


class ApiModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Provider API models
class ConfigStatusResponse(ApiModel):
    """OAuth configuration status per provider type."""

    providers: dict[str, bool]


class ProviderResponse(ApiModel):
    """Connected mailbox, without its tokens."""

    id: str
    provider_type: str
    email: str
    needs_reauth: bool
    reauth_reason: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_provider(cls, provider: EmailProvider) -> "ProviderResponse":
        return cls(
            id=provider.id,
            provider_type=provider.provider_type,
            email=provider.email,
            needs_reauth=provider.needs_reauth,
            reauth_reason=provider.reauth_reason,
            last_sync_at=provider.last_sync_at,
            created_at=provider.created_at,
        )


class ProviderListResponse(ApiModel):
    items: list[ProviderResponse]


class AuthUrlResponse(ApiModel):
    provider_type: str
    auth_url: str


class DisconnectResponse(ApiModel):
    success: bool
    provider_id: str
    jobs_deleted: int


# Sync API models
class SyncRequest(ApiModel):
    """Sync parameters; validated by the sync service so bad ranges map to 400."""

    date_range_start: Optional[date] = Field(default=None, description="Inclusive start date")
    date_range_end: Optional[date] = Field(default=None, description="Inclusive end date")
    limit: Optional[int] = Field(default=None, description="Messages to evaluate; 0 or absent uses the default page size")


class SyncJobResponse(ApiModel):
    """Sync job status and counters."""

    id: str
    provider_id: str
    status: SyncJobStatus
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    messages_found: int
    messages_processed: int
    receipts_found: int
    duplicates_skipped: int
    receipts_rejected: int
    extraction_failures: int
    error_message: Optional[str] = None
    cancel_requested: bool
    date_range_start: Optional[date] = None
    date_range_end: Optional[date] = None
    requested_limit: Optional[int] = None

    @classmethod
    def from_job(cls, job: SyncJob) -> "SyncJobResponse":
        return cls(**job.model_dump())


class SyncStartResponse(ApiModel):
    job_id: str
    status: SyncJobStatus
    message: str


class SyncJobListResponse(ApiModel):
    total: int
    items: list[SyncJobResponse]


class CancelResponse(ApiModel):
    job_id: str
    status: SyncJobStatus
    cancel_requested: bool
    message: str
