"""Sync job model and its state machine."""

import uuid
from datetime import date, datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from receiptsync.utils.dates import utcnow


class SyncJobStatus(str, Enum):
    """Sync job lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {SyncJobStatus.COMPLETED, SyncJobStatus.FAILED, SyncJobStatus.CANCELLED}
)

ALLOWED_TRANSITIONS: dict[SyncJobStatus, frozenset[SyncJobStatus]] = {
    SyncJobStatus.PENDING: frozenset({SyncJobStatus.PROCESSING}),
    SyncJobStatus.PROCESSING: TERMINAL_STATUSES,
    SyncJobStatus.COMPLETED: frozenset(),
    SyncJobStatus.FAILED: frozenset(),
    SyncJobStatus.CANCELLED: frozenset(),
}


class InvalidTransition(Exception):
    """Raised when a job is moved along an edge the state machine does not have."""

    pass


class SyncJob(BaseModel):
    """One execution of mailbox synchronization for a provider."""

    id: str = Field(default_factory=lambda: f"sync_{uuid.uuid4().hex[:16]}")
    provider_id: str
    status: SyncJobStatus = SyncJobStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    messages_found: int = 0
    messages_processed: int = 0
    receipts_found: int = 0
    duplicates_skipped: int = 0
    receipts_rejected: int = 0
    extraction_failures: int = 0

    error_message: Optional[str] = None
    # Mirrors the separately stored cancel flag; never persisted by the orchestrator
    cancel_requested: bool = False

    date_range_start: Optional[date] = None
    date_range_end: Optional[date] = None
    requested_limit: Optional[int] = None

    def transition(self, new_status: SyncJobStatus, error_message: Optional[str] = None) -> None:
        """
        Move the job to ``new_status``.

        Records started-at on pickup and completed-at on any terminal state.

        Raises:
            InvalidTransition: If the edge is not part of the state machine
        """
        if new_status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"Cannot move sync job {self.id} from {self.status.value} to {new_status.value}"
            )

        self.status = new_status
        now = utcnow()
        if new_status == SyncJobStatus.PROCESSING:
            self.started_at = now
        elif new_status.is_terminal:
            self.completed_at = now
        if error_message is not None:
            self.error_message = error_message
