"""Mailbox message models."""

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, Field


class MessageRef(BaseModel):
    """Reference to a message returned by a mailbox search."""

    id: str
    thread_id: Optional[str] = None


class AttachmentRef(BaseModel):
    """Attachment identified on a message but not yet downloaded."""

    attachment_id: str
    filename: str = ""
    mime_type: str = "application/octet-stream"
    size_bytes: int = 0

    @property
    def is_pdf(self) -> bool:
        return self.mime_type.lower() == "application/pdf" or self.filename.lower().endswith(".pdf")

    @property
    def is_image(self) -> bool:
        return self.mime_type.lower().startswith("image/")

    @property
    def may_contain_receipt(self) -> bool:
        """PDF and image attachments are the only ones worth extracting."""
        return self.is_pdf or self.is_image


class EmailContent(BaseModel):
    """Full content of one message as needed by the extractor."""

    message_id: str
    thread_id: Optional[str] = None
    subject: str = ""
    sender: str = ""
    date: Optional[datetime] = None
    body: str = ""
    body_mime_type: str = "text/plain"
    attachments: list[AttachmentRef] = Field(default_factory=list)

    @property
    def receipt_attachments(self) -> list[AttachmentRef]:
        return [attachment for attachment in self.attachments if attachment.may_contain_receipt]


class SearchOptions(BaseModel):
    """Inputs for building a vendor search query."""

    query: Optional[str] = None
    date_range_start: Optional[date] = None
    date_range_end: Optional[date] = None
