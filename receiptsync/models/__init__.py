"""Data models for the email receipt sync engine."""

from .email import AttachmentRef, EmailContent, MessageRef, SearchOptions
from .provider import AuthorizedAccount, EmailProvider, TokenBundle
from .receipt import (
    ClassificationResult,
    IngestResult,
    IngestStatus,
    Receipt,
    ReceiptCandidate,
    ReceiptItem,
)
from .sync_job import InvalidTransition, SyncJob, SyncJobStatus

__all__ = [
    "AttachmentRef",
    "EmailContent",
    "MessageRef",
    "SearchOptions",
    "AuthorizedAccount",
    "EmailProvider",
    "TokenBundle",
    "ClassificationResult",
    "IngestResult",
    "IngestStatus",
    "Receipt",
    "ReceiptCandidate",
    "ReceiptItem",
    "InvalidTransition",
    "SyncJob",
    "SyncJobStatus",
]
