"""Redis-backed receipt store with per-provider source message dedup."""

from typing import Optional

from receiptsync.models.receipt import Receipt
from receiptsync.services.sync_store import RedisStore
from receiptsync.utils.logging import get_logger

logger = get_logger(__name__)


class ReceiptStore(RedisStore):
    """
    Receipt rows plus the ``provider:{id}:sources`` dedup map.

    The map goes from source message id to receipt id and is claimed with
    HSETNX, so two writers can never both insert the same message.
    """

    async def claim_source(self, provider_id: str, message_id: str, receipt_id: str) -> Optional[str]:
        """
        Claim a source message for a new receipt.

        Returns:
            None when the claim succeeded, otherwise the receipt id that
            already owns the message
        """
        redis = await self._client()
        sources_key = self._key("provider", provider_id, "sources")
        if await redis.hsetnx(sources_key, message_id, receipt_id):
            return None
        return await redis.hget(sources_key, message_id)

    async def release_source(self, provider_id: str, message_id: str) -> None:
        redis = await self._client()
        await redis.hdel(self._key("provider", provider_id, "sources"), message_id)

    async def insert(self, receipt: Receipt) -> None:
        redis = await self._client()
        async with redis.pipeline(transaction=True) as pipe:
            pipe.set(self._key("receipt", receipt.id), receipt.model_dump_json())
            pipe.zadd(self._key("user", receipt.user_id, "receipts"), {receipt.id: receipt.created_at.timestamp()})
            await pipe.execute()
        logger.info(
            "Receipt stored",
            receipt_id=receipt.id,
            merchant=receipt.merchant_name,
            total=receipt.total,
            source_message_id=receipt.source_message_id,
        )

    async def get_receipt(self, receipt_id: str) -> Optional[Receipt]:
        redis = await self._client()
        data = await redis.get(self._key("receipt", receipt_id))
        if data:
            return Receipt.model_validate_json(data)
        return None

    async def list_receipts(self, user_id: int) -> list[Receipt]:
        """Receipts for a user, most recently created first."""
        redis = await self._client()
        receipt_ids = await redis.zrevrange(self._key("user", user_id, "receipts"), 0, -1)

        receipts = []
        for receipt_id in receipt_ids:
            receipt = await self.get_receipt(receipt_id)
            if receipt:
                receipts.append(receipt)
        return receipts

    async def count_sources(self, provider_id: str) -> int:
        redis = await self._client()
        return await redis.hlen(self._key("provider", provider_id, "sources"))

    async def forget_provider(self, provider_id: str) -> None:
        """Drop the dedup map of a disconnected provider; receipts stay."""
        redis = await self._client()
        await redis.delete(self._key("provider", provider_id, "sources"))
