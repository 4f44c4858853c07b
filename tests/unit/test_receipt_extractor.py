"""
Unit tests for the receipt extractor

Tests the keyword screen, the heuristic and Anthropic backends, the
extraction time budget and attachment escalation.
"""

import asyncio
from datetime import date, datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import anthropic
import httpx
import pytest

from receiptsync.config.settings import settings
from receiptsync.models.email import AttachmentRef
from receiptsync.models.receipt import ClassificationResult, ReceiptCandidate
from receiptsync.services.errors import ExtractionFailure
from receiptsync.services.receipt_extractor import (
    AnthropicExtractionBackend,
    ExtractionRequest,
    HeuristicExtractionBackend,
    ReceiptExtractor,
    build_backend,
    find_date,
    find_items,
    find_total,
    guess_category,
    merchant_from_sender,
)
from tests.fixtures.mailbox import AMAZON_BODY, GROCERY_BODY, NEWSLETTER_BODY, demo_emails, make_email


def anthropic_response(text: str):
    """Shape of an anthropic Messages API response as far as the backend reads it."""
    return SimpleNamespace(
        content=[SimpleNamespace(type="text", text=text)],
        usage=SimpleNamespace(input_tokens=120, output_tokens=80),
    )


class SlowBackend:
    name = "slow"
    accepts_images = False

    async def classify(self, request):
        await asyncio.sleep(5)


class CrashingBackend:
    name = "crashing"
    accepts_images = False

    async def classify(self, request):
        raise KeyError("items")


class FixedBackend:
    name = "fixed"
    accepts_images = False

    def __init__(self, result: ClassificationResult) -> None:
        self.result = result
        self.requests = []

    async def classify(self, request):
        self.requests.append(request)
        return self.result


@pytest.mark.unit
class TestTextHeuristics:
    """Test the regex helpers behind the heuristic backend."""

    def test_find_total_ignores_subtotal(self):
        assert find_total(AMAZON_BODY) == 176.02

    def test_find_total_prefers_order_total(self):
        text = "Total items: 3\nOrder Total: $54.10\nTotal savings: $2.00"

        assert find_total(text) == 54.10

    def test_find_total_none_without_total(self):
        assert find_total(NEWSLETTER_BODY) is None

    def test_find_items_parses_quantity_and_price(self):
        items = find_items(AMAZON_BODY)

        assert [(item.name, item.price, item.quantity) for item in items] == [
            ("Smart Home Speaker", 149.99, 1),
            ("HDMI Cable", 12.99, 1),
        ]

    def test_find_items_skips_summary_lines(self):
        items = find_items(GROCERY_BODY)

        names = [item.name for item in items]
        assert len(items) == 6
        assert "Organic Bananas" in names
        assert not any("Tax" in name or "Subtotal" in name for name in names)

    def test_find_date_from_labelled_line(self):
        assert find_date(AMAZON_BODY) == date(2023, 4, 15)

    def test_find_date_falls_back_to_sent_at(self):
        sent_at = datetime(2023, 5, 1, 9, 0, tzinfo=timezone.utc)

        assert find_date("No dates here", sent_at) == date(2023, 5, 1)

    @pytest.mark.parametrize(
        "sender,expected",
        [
            ("orders@amazon.com", "Amazon"),
            ("no-reply@grocery-store.com", "Grocery Store"),
            ('"Corner Cafe" <receipts@square.example.com>', "Corner Cafe"),
            ("receipts@shop.example.co.uk", "Example"),
        ],
    )
    def test_merchant_from_sender(self, sender, expected):
        assert merchant_from_sender(sender) == expected

    def test_guess_category(self):
        assert guess_category("Grocery Store") == "Groceries"
        assert guess_category("Amazon", AMAZON_BODY) == "Shopping"
        assert guess_category("Acme") == "Others"


@pytest.mark.unit
class TestScreen:
    """Test the keyword screen run before any backend call."""

    @pytest.fixture
    def extractor(self):
        return ReceiptExtractor(HeuristicExtractionBackend(), settings.extraction)

    def test_subject_keyword(self, extractor):
        email = make_email("m1", subject="Your order confirmation", sender="x@example.com", body="hello")

        result = extractor.screen(email, "hello")

        assert result.likely_receipt is True
        assert result.confidence == 0.8

    def test_merchant_sender(self, extractor):
        email = make_email("m1", subject="Hi there", sender="updates@walmart.com", body="hello")

        result = extractor.screen(email, "hello")

        assert result.likely_receipt is True
        assert result.confidence == 0.7

    def test_body_keywords(self, extractor):
        body = "Subtotal 10.00\nTax 1.00\nTotal 11.00\nPaid by card"
        email = make_email("m1", subject="Hi there", sender="x@example.com", body=body)

        result = extractor.screen(email, body.lower())

        assert result.likely_receipt is True
        assert result.confidence >= 0.75

    def test_receipt_named_attachment(self, extractor):
        email = make_email(
            "m1",
            subject="Documents",
            sender="x@example.com",
            body="See attached",
            attachments=[AttachmentRef(attachment_id="a1", filename="Receipt-0042.pdf", mime_type="application/pdf")],
        )

        assert extractor.screen(email, "See attached").likely_receipt is True

    def test_newsletter_is_screened_out(self, extractor):
        newsletter = demo_emails()[1]

        result = extractor.screen(newsletter, extractor.body_text(newsletter))

        assert result.likely_receipt is False


@pytest.mark.unit
class TestHeuristicBackend:
    """Test heuristic extraction on the demo receipts."""

    @pytest.fixture
    def extractor(self):
        return ReceiptExtractor(HeuristicExtractionBackend(), settings.extraction)

    async def test_amazon_order(self, extractor):
        """
        Test extraction of an order confirmation

        Given: The Amazon order email
        When: classify() is called
        Then: Merchant, date, total, items and category are extracted
        """
        email = demo_emails()[0]

        result = await extractor.classify(extractor.build_request(email, extractor.body_text(email)))

        assert result.is_receipt is True
        assert result.confidence == 0.9
        candidate = result.candidate
        assert candidate.merchant_name == "Amazon"
        assert candidate.date == date(2023, 4, 15)
        assert candidate.total == 176.02
        assert candidate.currency == "USD"
        assert len(candidate.items) == 2
        assert candidate.category == "Shopping"

    async def test_grocery_receipt(self, extractor):
        email = demo_emails()[2]

        result = await extractor.classify(extractor.build_request(email, extractor.body_text(email)))

        assert result.is_receipt is True
        assert result.candidate.merchant_name == "Grocery Store"
        assert result.candidate.total == 35.02
        assert result.candidate.category == "Groceries"
        assert result.candidate.date == date(2023, 4, 20)

    async def test_no_amounts_is_not_a_receipt(self, extractor):
        request = ExtractionRequest(message_id="m1", subject="Order shipped", text="Your parcel is on its way")

        result = await extractor.classify(request)

        assert result.is_receipt is False
        assert result.candidate is None

    async def test_total_only_confidence(self):
        backend = HeuristicExtractionBackend()

        result = await backend.classify(ExtractionRequest(message_id="m1", text="Amount paid: $42.00"))

        assert result.is_receipt is True
        assert result.confidence == 0.75
        assert result.candidate.total == 42.00


@pytest.mark.unit
class TestAnthropicBackend:
    """Test the Claude-backed extraction with a mocked client."""

    @pytest.fixture
    def client(self):
        client = MagicMock()
        client.messages.create = AsyncMock()
        return client

    @pytest.fixture
    def backend(self, client):
        return AnthropicExtractionBackend(api_key="sk-test", model="claude-test", client=client)

    async def test_parses_receipt_json(self, backend, client):
        client.messages.create.return_value = anthropic_response(
            '```json\n{"is_receipt": true, "confidence": 0.92, "merchant": "Corner Cafe", '
            '"date": "2023-04-18", "total": "12.40", "currency": "eur", "category": "Dining", '
            '"items": [{"name": "Latte", "price": 4.2, "quantity": 2}, {"name": "", "price": 1}], '
            '"reason": "Itemized cafe receipt"}\n```'
        )

        result = await backend.classify(ExtractionRequest(message_id="m1", text="..."))

        assert result.is_receipt is True
        assert result.confidence == 0.92
        assert result.backend == "anthropic"
        assert result.candidate.merchant_name == "Corner Cafe"
        assert result.candidate.date == date(2023, 4, 18)
        assert result.candidate.total == 12.40
        assert result.candidate.currency == "EUR"
        assert result.candidate.category == "Dining"
        assert [(i.name, i.quantity) for i in result.candidate.items] == [("Latte", 2)]
        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["model"] == "claude-test"

    async def test_json_embedded_in_prose(self, backend, client):
        client.messages.create.return_value = anthropic_response(
            'Here is the result: {"is_receipt": false, "confidence": 0.8, "reason": "Newsletter"} Hope it helps.'
        )

        result = await backend.classify(ExtractionRequest(message_id="m1", text="..."))

        assert result.is_receipt is False
        assert result.reason == "Newsletter"

    async def test_unknown_category_dropped(self, backend, client):
        client.messages.create.return_value = anthropic_response(
            '{"is_receipt": true, "confidence": 0.9, "merchant": "X", "total": 5, "category": "Gadgets"}'
        )

        result = await backend.classify(ExtractionRequest(message_id="m1", text="..."))

        assert result.candidate.category is None

    async def test_odd_item_fields_are_coerced(self, backend, client):
        client.messages.create.return_value = anthropic_response(
            '{"is_receipt": true, "confidence": 0.9, "merchant": "X", "total": 3, '
            '"items": [{"name": "A", "price": 1, "category": 5}, '
            '{"name": "B", "price": 2, "quantity": 1e999}, {"name": "C", "price": 3, "quantity": true}]}'
        )

        result = await backend.classify(ExtractionRequest(message_id="m1", text="..."))

        assert [(i.name, i.quantity, i.category) for i in result.candidate.items] == [
            ("A", None, "5"),
            ("B", None, None),
            ("C", None, None),
        ]

    async def test_first_text_block_is_read(self, backend, client):
        client.messages.create.return_value = SimpleNamespace(
            content=[
                SimpleNamespace(type="thinking", thinking="Looks like a receipt"),
                SimpleNamespace(type="text", text='{"is_receipt": true, "confidence": 0.9, "total": 7}'),
            ],
            usage=SimpleNamespace(input_tokens=10, output_tokens=5),
        )

        result = await backend.classify(ExtractionRequest(message_id="m1", text="..."))

        assert result.candidate.total == 7.00

    async def test_response_without_text_block_raises(self, backend, client):
        client.messages.create.return_value = SimpleNamespace(
            content=[SimpleNamespace(type="tool_use", name="noop", input={})],
            usage=SimpleNamespace(input_tokens=10, output_tokens=5),
        )

        with pytest.raises(ExtractionFailure):
            await backend.classify(ExtractionRequest(message_id="m1", text="..."))

    async def test_garbage_response_raises(self, backend, client):
        client.messages.create.return_value = anthropic_response("I cannot help with that")

        with pytest.raises(ExtractionFailure):
            await backend.classify(ExtractionRequest(message_id="m1", text="..."))

    async def test_api_error_raises_extraction_failure(self, backend, client):
        client.messages.create.side_effect = anthropic.APIConnectionError(
            request=httpx.Request("POST", "https://api.anthropic.com/v1/messages")
        )

        with pytest.raises(ExtractionFailure):
            await backend.classify(ExtractionRequest(message_id="m1", text="..."))

    async def test_images_sent_as_base64_blocks(self, backend, client):
        from receiptsync.services.receipt_extractor import AttachmentPayload

        client.messages.create.return_value = anthropic_response('{"is_receipt": false, "confidence": 0.1}')
        request = ExtractionRequest(
            message_id="m1",
            text="see image",
            images=[AttachmentPayload(filename="r.png", mime_type="image/png", content=b"\x89PNG")],
        )

        await backend.classify(request)

        content = client.messages.create.call_args.kwargs["messages"][0]["content"]
        assert content[0]["type"] == "image"
        assert content[0]["source"]["media_type"] == "image/png"
        assert content[-1]["type"] == "text"

    def test_build_backend_selects_configured_backend(self):
        config = settings.extraction.model_copy(update={"backend": "heuristic"})

        assert isinstance(build_backend(config), HeuristicExtractionBackend)


@pytest.mark.unit
class TestReceiptExtractor:
    """Test time budget, confidence threshold and attachment escalation."""

    async def test_timeout_raises_extraction_failure(self):
        """
        Test the per-message extraction budget

        Given: A backend slower than the configured timeout
        When: classify() is called
        Then: ExtractionFailure is raised
        """
        config = settings.extraction.model_copy(update={"timeout_seconds": 0.05})
        extractor = ReceiptExtractor(SlowBackend(), config)

        with pytest.raises(ExtractionFailure):
            await extractor.classify(ExtractionRequest(message_id="m1", text="Total: $1.00"))

    async def test_unexpected_backend_error_raises_extraction_failure(self):
        extractor = ReceiptExtractor(CrashingBackend(), settings.extraction)

        with pytest.raises(ExtractionFailure, match="crashing") as exc_info:
            await extractor.classify(ExtractionRequest(message_id="m1", text="Total: $1.00"))

        assert isinstance(exc_info.value.__cause__, KeyError)

    async def test_low_confidence_becomes_non_receipt(self):
        candidate = ReceiptCandidate(source_message_id="m1", total=5.0)
        backend = FixedBackend(ClassificationResult(is_receipt=True, confidence=0.3, candidate=candidate))
        config = settings.extraction.model_copy(update={"min_confidence": 0.5})
        extractor = ReceiptExtractor(backend, config)

        result = await extractor.classify(ExtractionRequest(message_id="m1"))

        assert result.is_receipt is False
        assert result.confidence == 0.3

    def test_escalation_picks_pdf_when_body_has_no_total(self):
        extractor = ReceiptExtractor(HeuristicExtractionBackend(), settings.extraction)
        email = make_email(
            "m1",
            attachments=[
                AttachmentRef(attachment_id="a0", filename="logo.png", mime_type="image/png", size_bytes=100),
                AttachmentRef(attachment_id="a1", filename="invoice.pdf", mime_type="application/pdf", size_bytes=100),
            ],
        )

        attachment = extractor.escalation_attachment(email, ClassificationResult.not_a_receipt("no total"))

        assert attachment.attachment_id == "a1"

    def test_no_escalation_when_total_found(self):
        extractor = ReceiptExtractor(HeuristicExtractionBackend(), settings.extraction)
        email = make_email(
            "m1",
            attachments=[AttachmentRef(attachment_id="a1", filename="invoice.pdf", mime_type="application/pdf")],
        )
        result = ClassificationResult(
            is_receipt=True, confidence=0.9, candidate=ReceiptCandidate(source_message_id="m1", total=10.0)
        )

        assert extractor.escalation_attachment(email, result) is None

    def test_oversized_attachment_skipped(self):
        config = settings.extraction.model_copy(update={"max_attachment_size_mb": 1})
        extractor = ReceiptExtractor(HeuristicExtractionBackend(), config)
        email = make_email(
            "m1",
            attachments=[
                AttachmentRef(
                    attachment_id="a1", filename="invoice.pdf", mime_type="application/pdf", size_bytes=5 * 1024 * 1024
                )
            ],
        )

        assert extractor.escalation_attachment(email, None) is None

    def test_images_only_escalate_for_image_backends(self):
        extractor = ReceiptExtractor(HeuristicExtractionBackend(), settings.extraction)
        email = make_email(
            "m1", attachments=[AttachmentRef(attachment_id="a1", filename="receipt.jpg", mime_type="image/jpeg")]
        )

        assert extractor.escalation_attachment(email, None) is None

    async def test_attachment_request_merges_pdf_text(self):
        extractor = ReceiptExtractor(HeuristicExtractionBackend(), settings.extraction)
        attachment = AttachmentRef(attachment_id="a1", filename="invoice.pdf", mime_type="application/pdf")
        email = make_email("m1", body="Your invoice is attached", attachments=[attachment])

        with patch(
            "receiptsync.services.receipt_extractor.extract_pdf_text",
            return_value="Widget - $20.00\nTotal: $20.00",
        ):
            request = await extractor.attachment_request(email, "Your invoice is attached", attachment, b"%PDF")

        result = await extractor.classify(request)
        assert "--- Attachment invoice.pdf ---" in request.text
        assert result.is_receipt is True
        assert result.candidate.total == 20.00

    async def test_unreadable_pdf_raises_extraction_failure(self):
        extractor = ReceiptExtractor(HeuristicExtractionBackend(), settings.extraction)
        attachment = AttachmentRef(attachment_id="a1", filename="broken.pdf", mime_type="application/pdf")
        email = make_email("m1", attachments=[attachment])

        with patch(
            "receiptsync.services.receipt_extractor.extract_pdf_text",
            side_effect=ValueError("not a PDF"),
        ):
            with pytest.raises(ExtractionFailure):
                await extractor.attachment_request(email, "", attachment, b"garbage")
