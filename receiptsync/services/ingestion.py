"""Validation and deduplicated insertion of receipt candidates."""

from typing import Optional

from receiptsync.models.receipt import IngestResult, IngestStatus, Receipt, ReceiptCandidate
from receiptsync.services.receipt_store import ReceiptStore
from receiptsync.utils.dates import utcnow
from receiptsync.utils.logging import get_logger

logger = get_logger(__name__)


class IngestionService:
    """
    Turns candidates into stored receipts.

    The dedup key is (provider id, source message id): the same message is
    never stored twice, however many times a date range is re-synced.
    """

    def __init__(self, store: ReceiptStore) -> None:
        self.store = store

    @staticmethod
    def validate(candidate: ReceiptCandidate) -> Optional[str]:
        """Return a rejection reason, or None when the candidate is acceptable."""
        if candidate.total is None and not candidate.items:
            return "Candidate has neither a total nor any line items"
        if candidate.total is not None and candidate.total < 0:
            return f"Negative total {candidate.total}"
        return None

    async def ingest(
        self,
        candidate: ReceiptCandidate,
        source_message_id: str,
        provider_id: str,
        user_id: int,
        sync_job_id: Optional[str] = None,
        confidence: Optional[float] = None,
    ) -> IngestResult:
        """
        Validate, dedup and insert one candidate.

        A missing total is filled with the sum of item prices; a missing date
        with today's date.
        """
        reason = self.validate(candidate)
        if reason:
            logger.info("Receipt candidate rejected", source_message_id=source_message_id, reason=reason)
            return IngestResult(status=IngestStatus.REJECTED, reason=reason)

        total = candidate.total
        if total is None:
            total = round(sum(item.price * (item.quantity or 1) for item in candidate.items), 2)

        receipt = Receipt(
            user_id=user_id,
            merchant_name=candidate.merchant_name or "Unknown Merchant",
            date=candidate.date or utcnow().date(),
            total=total,
            currency=candidate.currency,
            items=candidate.items,
            category=candidate.category or "Others",
            source_message_id=source_message_id,
            source_provider_id=provider_id,
            sync_job_id=sync_job_id,
            confidence_score=confidence,
        )

        # Claim first so concurrent ingestion of one message cannot double-insert
        existing_id = await self.store.claim_source(provider_id, source_message_id, receipt.id)
        if existing_id is not None:
            logger.info(
                "Duplicate receipt skipped",
                source_message_id=source_message_id,
                existing_receipt_id=existing_id,
            )
            return IngestResult(status=IngestStatus.DUPLICATE, receipt_id=existing_id)

        try:
            await self.store.insert(receipt)
        except Exception:
            await self.store.release_source(provider_id, source_message_id)
            raise

        return IngestResult(status=IngestStatus.INSERTED, receipt_id=receipt.id)
