"""Receipt candidate, classification and stored receipt models."""

import uuid
from datetime import date as date_type
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from receiptsync.utils.dates import utcnow


class ReceiptItem(BaseModel):
    """One purchased line item."""

    name: str
    price: float
    quantity: Optional[int] = None
    category: Optional[str] = None


class ReceiptCandidate(BaseModel):
    """Structured data extracted from one message, not yet persisted."""

    source_message_id: str
    merchant_name: str = "Unknown Merchant"
    date: Optional[date_type] = None
    total: Optional[float] = None
    currency: str = "USD"
    items: list[ReceiptItem] = Field(default_factory=list)
    category: Optional[str] = None


class ClassificationResult(BaseModel):
    """
    Outcome of classifying one message.

    A receipt carries a candidate; a non-receipt carries only a reason.
    Both carry a confidence score.
    """

    is_receipt: bool
    confidence: float = Field(ge=0.0, le=1.0, default=0.0)
    reason: str = ""
    candidate: Optional[ReceiptCandidate] = None
    backend: str = ""

    @classmethod
    def not_a_receipt(cls, reason: str, confidence: float = 0.0, backend: str = "") -> "ClassificationResult":
        return cls(is_receipt=False, confidence=confidence, reason=reason, backend=backend)


class Receipt(BaseModel):
    """Receipt row written to the receipt store."""

    id: str = Field(default_factory=lambda: f"rcpt_{uuid.uuid4().hex[:16]}")
    user_id: int
    merchant_name: str
    date: date_type
    total: float
    currency: str = "USD"
    items: list[ReceiptItem] = Field(default_factory=list)
    category: str = "Others"
    source: str = "email"
    source_message_id: str
    source_provider_id: str
    sync_job_id: Optional[str] = None
    confidence_score: Optional[float] = None
    created_at: datetime = Field(default_factory=utcnow)


class IngestStatus(str, Enum):
    """Ingestion outcomes."""

    INSERTED = "inserted"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"


class IngestResult(BaseModel):
    """Outcome of ingesting one candidate."""

    status: IngestStatus
    receipt_id: Optional[str] = None
    reason: Optional[str] = None
