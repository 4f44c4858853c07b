"""
Message classification and receipt extraction.

A cheap keyword screen discards obvious non-receipts; surviving messages go
to a pluggable extraction backend (regex heuristics or Claude) which turns
the text into a ReceiptCandidate. Extraction is treated as slow and
failable: every call runs under a time budget and any backend fault is
reported as ExtractionFailure for the single message concerned.
"""

import asyncio
import base64
import io
import json
import math
import re
from datetime import date, datetime
from email.utils import parseaddr
from typing import Any, Optional, Protocol

import anthropic
import pdfplumber
from pydantic import BaseModel, Field

from receiptsync.config.settings import ExtractionConfig, settings
from receiptsync.models.email import AttachmentRef, EmailContent
from receiptsync.models.receipt import ClassificationResult, ReceiptCandidate, ReceiptItem
from receiptsync.services.errors import ExtractionFailure
from receiptsync.utils.currency import detect_currency, normalize_currency, parse_amount
from receiptsync.utils.dates import parse_loose_date
from receiptsync.utils.email_text_extractor import EmailTextExtractor
from receiptsync.utils.logging import get_logger

logger = get_logger(__name__)

RECEIPT_CATEGORIES = [
    "Groceries",
    "Dining",
    "Utilities",
    "Transportation",
    "Entertainment",
    "Shopping",
    "Health",
    "Travel",
    "Personal Care",
    "Others",
]

SUBJECT_KEYWORDS = ("receipt", "purchase", "order", "confirmation", "invoice", "payment", "transaction")
MERCHANT_SENDERS = (
    "amazon", "walmart", "target", "bestbuy", "ebay", "doordash", "uber", "ubereats",
    "grubhub", "postmates", "instacart", "shopping", "store", "shop", "market", "pay", "invoice",
)
BODY_KEYWORDS = (
    "total", "subtotal", "tax", "receipt", "order", "payment", "paid", "amount",
    "purchase", "invoice", "qty", "quantity", "price", "shipping",
)

# Merchant or body keyword -> category
CATEGORY_HINTS: list[tuple[tuple[str, ...], str]] = [
    (("grocery", "supermarket", "instacart", "whole foods", "trader joe", "kroger"), "Groceries"),
    (("doordash", "grubhub", "ubereats", "uber eats", "postmates", "restaurant", "coffee", "cafe", "pizza"), "Dining"),
    (("electric", "water bill", "internet", "utility", "comcast", "verizon"), "Utilities"),
    (("lyft", "uber", "transit", "parking", "fuel", "gas station"), "Transportation"),
    (("netflix", "spotify", "cinema", "movie", "ticketmaster", "steam"), "Entertainment"),
    (("pharmacy", "cvs", "walgreens", "clinic", "medical"), "Health"),
    (("airline", "airbnb", "hotel", "booking.com", "expedia", "flight"), "Travel"),
    (("salon", "spa", "barber", "sephora"), "Personal Care"),
    (("amazon", "walmart", "target", "bestbuy", "best buy", "ebay", "electronics", "store", "shop"), "Shopping"),
]

TOTAL_PATTERNS = [
    re.compile(r"(?:grand|order)\s+total[^\n]{0,30}?[$€£₹]?\s*(\d[\d,]*\.\d{2})", re.IGNORECASE),
    re.compile(r"amount\s+(?:paid|charged|due)[^\n]{0,30}?[$€£₹]?\s*(\d[\d,]*\.\d{2})", re.IGNORECASE),
    re.compile(r"(?<!sub)(?<!sub[\s-])\btotal\b[^\n]{0,30}?[$€£₹]?\s*(\d[\d,]*\.\d{2})", re.IGNORECASE),
]
ITEM_LINE_PATTERN = re.compile(r"^(?:(\d+)\s*x\s+)?(.+?)\s*[-–:]?\s*[$€£₹]?\s*(\d[\d,]*\.\d{2})$", re.IGNORECASE)
SUMMARY_WORDS = re.compile(
    r"\b(?:sub-?total|total|tax|vat|gst|shipping|handling|delivery|discount|payment|paid|tip|"
    r"fee|balance|savings|credit|refund|amount|change|coupon)\b",
    re.IGNORECASE,
)
DATE_LINE_PATTERN = re.compile(
    r"^\s*(?:order\s+|purchase\s+|transaction\s+|receipt\s+)?date(?:\s+placed)?\s*:\s*(.+)$",
    re.IGNORECASE | re.MULTILINE,
)
GENERIC_SENDER_NAMES = frozenset({"", "noreply", "no-reply", "orders", "order", "receipts", "receipt", "notifications"})


class ScreenResult(BaseModel):
    """Outcome of the keyword screen."""

    likely_receipt: bool
    confidence: float
    reason: str


class AttachmentPayload(BaseModel):
    """Downloaded attachment handed to a backend."""

    filename: str = ""
    mime_type: str
    content: bytes = Field(repr=False)


class ExtractionRequest(BaseModel):
    """Everything a backend may use to classify one message."""

    message_id: str
    subject: str = ""
    sender: str = ""
    sent_at: Optional[datetime] = None
    text: str = ""
    images: list[AttachmentPayload] = Field(default_factory=list)


class ExtractionBackend(Protocol):
    """A classifier that turns message text into a receipt candidate."""

    name: str
    accepts_images: bool

    async def classify(self, request: ExtractionRequest) -> ClassificationResult:
        ...


def merchant_from_sender(sender: str) -> Optional[str]:
    """
    Derive a merchant name from a From header.

    Uses the display name unless it is generic, otherwise the sender's
    registrable domain label (``no-reply@grocery-store.com`` -> ``Grocery Store``).
    """
    display_name, address = parseaddr(sender)
    display_name = display_name.strip().strip('"')
    if display_name.lower() not in GENERIC_SENDER_NAMES:
        return display_name

    if "@" not in address:
        return None
    labels = address.rsplit("@", 1)[1].lower().split(".")
    if len(labels) < 2:
        return None
    label = labels[-2]
    if label in ("co", "com") and len(labels) >= 3:
        label = labels[-3]
    return label.replace("-", " ").replace("_", " ").title()


def guess_category(merchant: str, text: str = "") -> str:
    haystack = f"{merchant} {text[:2000]}".lower()
    for keywords, category in CATEGORY_HINTS:
        if any(keyword in haystack for keyword in keywords):
            return category
    return "Others"


def find_total(text: str) -> Optional[float]:
    """Find the receipt total, preferring grand/order totals over amounts paid over plain totals."""
    for pattern in TOTAL_PATTERNS:
        matches = pattern.findall(text)
        if matches:
            return parse_amount(matches[-1])
    return None


def find_items(text: str) -> list[ReceiptItem]:
    """Parse ``[qty x] name - $price`` lines, skipping subtotal/tax/shipping style lines."""
    items = []
    for line in text.splitlines():
        line = line.strip()
        if not line or SUMMARY_WORDS.search(line):
            continue
        match = ITEM_LINE_PATTERN.match(line)
        if not match:
            continue
        quantity, name, price = match.groups()
        name = name.strip(" -–:\t")
        if not re.search(r"[A-Za-z]", name) or len(name) > 80:
            continue
        items.append(
            ReceiptItem(
                name=name,
                price=parse_amount(price),
                quantity=int(quantity) if quantity else None,
            )
        )
    return items


def find_date(text: str, fallback: Optional[datetime] = None) -> Optional[date]:
    for match in DATE_LINE_PATTERN.finditer(text):
        parsed = parse_loose_date(match.group(1))
        if parsed:
            return parsed
    return fallback.date() if fallback else None


def extract_pdf_text(content: bytes) -> str:
    """Text of every page of a PDF, tables flattened to ``a | b`` rows."""
    text_parts = []
    with pdfplumber.open(io.BytesIO(content)) as pdf:
        for page in pdf.pages:
            page_text = page.extract_text()
            if page_text:
                text_parts.append(page_text)
            for table in page.extract_tables():
                rows = [" | ".join(str(cell).strip() if cell else "" for cell in row) for row in table if row]
                if rows:
                    text_parts.append("\n".join(rows))
    return "\n\n".join(text_parts)


class HeuristicExtractionBackend:
    """Regex extraction of totals, line items, merchant and date."""

    name = "heuristic"
    accepts_images = False

    def __init__(self, default_currency: str = "USD") -> None:
        self.default_currency = default_currency

    async def classify(self, request: ExtractionRequest) -> ClassificationResult:
        text = request.text
        total = find_total(text)
        items = find_items(text)

        if total is None and not items:
            return ClassificationResult.not_a_receipt(
                "No total or priced line items found", confidence=0.3, backend=self.name
            )

        merchant = merchant_from_sender(request.sender) or "Unknown Merchant"
        candidate = ReceiptCandidate(
            source_message_id=request.message_id,
            merchant_name=merchant,
            date=find_date(text, request.sent_at),
            total=total,
            currency=detect_currency(text, self.default_currency),
            items=items,
            category=guess_category(merchant, text),
        )

        if total is not None and items:
            confidence = 0.9
        elif total is not None:
            confidence = 0.75
        else:
            confidence = 0.6

        return ClassificationResult(
            is_receipt=True,
            confidence=confidence,
            reason=f"Found total={total} and {len(items)} items",
            candidate=candidate,
            backend=self.name,
        )


EXTRACTION_PROMPT = """Decide whether this email is a purchase receipt or order confirmation and, if it is, extract the transaction.

FROM: {sender}
SUBJECT: {subject}
DATE: {sent_at}

CONTENT:
{text}

---

Respond with JSON only, in exactly this format:
{{
  "is_receipt": true,
  "confidence": 0.9,
  "merchant": "Store Name",
  "date": "YYYY-MM-DD",
  "total": 29.99,
  "currency": "USD",
  "category": "Shopping",
  "items": [{{"name": "Item", "price": 9.99, "quantity": 1, "category": "Shopping"}}],
  "reason": "One sentence explaining the decision"
}}

Rules:
- "confidence" is a number between 0 and 1
- "total" and item prices are plain numbers without currency symbols, or null when absent
- "currency" is an ISO 4217 code
- "category" values must be one of: {categories}
- Newsletters, shipping updates without prices and marketing emails are not receipts
"""


class AnthropicExtractionBackend:
    """Receipt extraction with the Anthropic Messages API."""

    name = "anthropic"
    accepts_images = True

    def __init__(
        self,
        api_key: str,
        model: str,
        max_tokens: int = 1024,
        default_currency: str = "USD",
        client: Optional[anthropic.AsyncAnthropic] = None,
    ) -> None:
        self.model = model
        self.max_tokens = max_tokens
        self.default_currency = default_currency
        self.client = client or anthropic.AsyncAnthropic(api_key=api_key)

    def _content(self, request: ExtractionRequest) -> list[dict[str, Any]]:
        content: list[dict[str, Any]] = [
            {
                "type": "image",
                "source": {
                    "type": "base64",
                    "media_type": image.mime_type,
                    "data": base64.b64encode(image.content).decode("ascii"),
                },
            }
            for image in request.images
        ]
        content.append(
            {
                "type": "text",
                "text": EXTRACTION_PROMPT.format(
                    sender=request.sender,
                    subject=request.subject,
                    sent_at=request.sent_at.isoformat() if request.sent_at else "unknown",
                    text=request.text,
                    categories=", ".join(RECEIPT_CATEGORIES),
                ),
            }
        )
        return content

    async def classify(self, request: ExtractionRequest) -> ClassificationResult:
        try:
            response = await self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                messages=[{"role": "user", "content": self._content(request)}],
            )
        except anthropic.APIError as e:
            raise ExtractionFailure(f"Anthropic request failed: {e}") from e

        raw_text = next((block.text for block in response.content or [] if getattr(block, "type", None) == "text"), "")
        data = self._parse_json(raw_text)
        logger.debug(
            "Anthropic extraction finished",
            message_id=request.message_id,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )
        return self._to_result(data, request)

    @staticmethod
    def _parse_json(raw_text: str) -> dict[str, Any]:
        json_text = raw_text.strip()
        if json_text.startswith("```"):
            json_text = "\n".join(line for line in json_text.split("\n") if not line.strip().startswith("```"))
        try:
            data = json.loads(json_text)
        except json.JSONDecodeError:
            match = re.search(r"\{[\s\S]*\}", json_text)
            if not match:
                raise ExtractionFailure("Extraction response contained no JSON object")
            try:
                data = json.loads(match.group())
            except json.JSONDecodeError as e:
                raise ExtractionFailure(f"Extraction response was not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ExtractionFailure("Extraction response was not a JSON object")
        return data

    def _to_result(self, data: dict[str, Any], request: ExtractionRequest) -> ClassificationResult:
        try:
            confidence = min(1.0, max(0.0, float(data.get("confidence") or 0.0)))
        except (TypeError, ValueError):
            confidence = 0.0
        reason = str(data.get("reason") or "")

        if not data.get("is_receipt"):
            return ClassificationResult.not_a_receipt(reason or "Not a receipt", confidence, backend=self.name)

        items = []
        for raw_item in data.get("items") or []:
            if not isinstance(raw_item, dict):
                continue
            price = parse_amount(raw_item.get("price"))
            name = str(raw_item.get("name") or "").strip()
            if not name or price is None:
                continue
            quantity = raw_item.get("quantity")
            if not isinstance(quantity, (int, float)) or isinstance(quantity, bool) or not math.isfinite(quantity):
                quantity = None
            category = raw_item.get("category")
            items.append(
                ReceiptItem(
                    name=name,
                    price=price,
                    quantity=int(quantity) if quantity is not None else None,
                    category=str(category) if category is not None else None,
                )
            )

        candidate = ReceiptCandidate(
            source_message_id=request.message_id,
            merchant_name=str(data.get("merchant") or "").strip() or "Unknown Merchant",
            date=parse_loose_date(str(data.get("date") or "")),
            total=parse_amount(data.get("total")),
            currency=normalize_currency(data.get("currency"), self.default_currency),
            items=items,
            category=data.get("category") if data.get("category") in RECEIPT_CATEGORIES else None,
        )
        return ClassificationResult(
            is_receipt=True, confidence=confidence, reason=reason, candidate=candidate, backend=self.name
        )


class ReceiptExtractor:
    """Screens messages and runs the configured backend under a time budget."""

    def __init__(
        self,
        backend: ExtractionBackend,
        config: Optional[ExtractionConfig] = None,
        text_extractor: Optional[EmailTextExtractor] = None,
    ) -> None:
        self.backend = backend
        self.config = config or settings.extraction
        self.text_extractor = text_extractor or EmailTextExtractor(max_chars=self.config.max_body_chars)

    def body_text(self, email: EmailContent) -> str:
        return self.text_extractor.extract_text(email.body, email.body_mime_type)

    def screen(self, email: EmailContent, body_text: str) -> ScreenResult:
        """
        Keyword screen run before any backend call.

        Subject keywords score 0.8, known merchant senders 0.7, and three or
        more receipt words in the body 0.6 plus 0.05 per extra word. A PDF
        or image attachment named like a receipt also passes.
        """
        subject = email.subject.lower()
        if any(keyword in subject for keyword in SUBJECT_KEYWORDS):
            return ScreenResult(likely_receipt=True, confidence=0.8, reason="Receipt keyword in subject")

        sender = email.sender.lower()
        if any(merchant in sender for merchant in MERCHANT_SENDERS):
            return ScreenResult(likely_receipt=True, confidence=0.7, reason="Known merchant sender")

        body = body_text.lower()
        hits = sum(1 for keyword in BODY_KEYWORDS if keyword in body)
        if hits >= 3:
            return ScreenResult(
                likely_receipt=True,
                confidence=min(0.95, 0.6 + 0.05 * hits),
                reason=f"{hits} receipt keywords in body",
            )

        for attachment in email.receipt_attachments:
            name = attachment.filename.lower()
            if "receipt" in name or "invoice" in name:
                return ScreenResult(likely_receipt=True, confidence=0.6, reason="Receipt attachment")

        return ScreenResult(likely_receipt=False, confidence=0.2, reason="No receipt signals")

    def escalation_attachment(self, email: EmailContent, result: Optional[ClassificationResult]) -> Optional[AttachmentRef]:
        """
        Attachment worth downloading when the body alone was not enough.

        Returns the first PDF (or, for image-capable backends, image)
        attachment within the size limit when the body produced no
        candidate or a candidate without a total.
        """
        if result is not None and result.candidate is not None and result.candidate.total is not None:
            return None

        max_bytes = self.config.max_attachment_size_mb * 1024 * 1024
        for attachment in email.receipt_attachments:
            if attachment.size_bytes and attachment.size_bytes > max_bytes:
                continue
            if attachment.is_pdf or (attachment.is_image and self.backend.accepts_images):
                return attachment
        return None

    async def attachment_request(
        self, email: EmailContent, body_text: str, attachment: AttachmentRef, content: bytes
    ) -> ExtractionRequest:
        """Build a request combining body text with an attachment's text or image."""
        request = self.build_request(email, body_text)
        if attachment.is_pdf:
            try:
                pdf_text = await asyncio.to_thread(extract_pdf_text, content)
            except Exception as e:
                raise ExtractionFailure(f"Could not read PDF {attachment.filename}: {e}") from e
            request.text = self.text_extractor.combine(body_text, pdf_text, attachment.filename)
        else:
            request.images = [
                AttachmentPayload(filename=attachment.filename, mime_type=attachment.mime_type, content=content)
            ]
        return request

    def build_request(self, email: EmailContent, body_text: str) -> ExtractionRequest:
        return ExtractionRequest(
            message_id=email.message_id,
            subject=email.subject,
            sender=email.sender,
            sent_at=email.date,
            text=body_text,
        )

    async def classify(self, request: ExtractionRequest) -> ClassificationResult:
        """
        Classify one message within the configured time budget.

        Raises:
            ExtractionFailure: If the backend fails or exceeds the budget
        """
        try:
            result = await asyncio.wait_for(self.backend.classify(request), timeout=self.config.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise ExtractionFailure(
                f"Extraction exceeded {self.config.timeout_seconds}s for message {request.message_id}"
            ) from e
        except ExtractionFailure:
            raise
        except Exception as e:
            raise ExtractionFailure(f"Extraction backend {self.backend.name} failed: {e}") from e

        if result.is_receipt and result.confidence < self.config.min_confidence:
            return ClassificationResult.not_a_receipt(
                f"Confidence {result.confidence:.2f} below threshold", result.confidence, backend=result.backend
            )
        return result


def build_backend(config: Optional[ExtractionConfig] = None) -> ExtractionBackend:
    config = config or settings.extraction
    if config.backend == "anthropic":
        return AnthropicExtractionBackend(
            api_key=config.anthropic_api_key.get_secret_value(),
            model=config.anthropic_model,
            max_tokens=config.max_tokens,
            default_currency=config.default_currency,
        )
    return HeuristicExtractionBackend(default_currency=config.default_currency)


def build_extractor(config: Optional[ExtractionConfig] = None) -> ReceiptExtractor:
    """Extractor wired to the backend selected by configuration."""
    config = config or settings.extraction
    logger.info("Receipt extractor configured", backend=config.backend, timeout_seconds=config.timeout_seconds)
    return ReceiptExtractor(build_backend(config), config)
