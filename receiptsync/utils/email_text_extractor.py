"""
Email body text extraction.

Turns HTML or plain-text message bodies into normalized plain text for
receipt extraction. Table rows stay on one line so that an item name and
its price remain adjacent.
"""

import re
import unicodedata
from html.parser import HTMLParser
from typing import Optional

from receiptsync.utils.logging import get_logger

logger = get_logger(__name__)


class HTMLTextExtractor(HTMLParser):
    """
    Extract plain text from HTML email bodies.

    Block-level tags become line breaks, table cells are separated by a
    space and script/style content is dropped.

    Example:
        >>> extractor = HTMLTextExtractor()
        >>> extractor.feed('<p>Order <strong>#123</strong></p>')
        >>> extractor.get_text()
        'Order #123'
    """

    BLOCK_TAGS = frozenset(
        {
            "p", "div", "br", "tr", "h1", "h2", "h3", "h4", "h5", "h6",
            "li", "blockquote", "pre", "hr", "table", "tbody", "thead", "tfoot",
        }
    )
    CELL_TAGS = frozenset({"td", "th"})
    SKIP_TAGS = frozenset({"script", "style", "head", "title"})

    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.text_parts: list[str] = []
        self._skip_depth = 0

    def _newline(self) -> None:
        if self.text_parts and self.text_parts[-1] != "\n":
            self.text_parts.append("\n")

    def handle_starttag(self, tag: str, attrs: list) -> None:
        tag = tag.lower()
        if tag in self.SKIP_TAGS:
            self._skip_depth += 1
        elif tag in self.BLOCK_TAGS:
            self._newline()
        elif tag in self.CELL_TAGS:
            self.text_parts.append(" ")

    def handle_endtag(self, tag: str) -> None:
        tag = tag.lower()
        if tag in self.SKIP_TAGS:
            self._skip_depth = max(0, self._skip_depth - 1)
        elif tag in self.BLOCK_TAGS:
            self._newline()

    def handle_data(self, data: str) -> None:
        if self._skip_depth:
            return
        stripped = data.strip()
        if stripped:
            if self.text_parts and self.text_parts[-1] not in ("\n", " "):
                self.text_parts.append(" ")
            self.text_parts.append(stripped)

    def get_text(self) -> str:
        text = "".join(self.text_parts)
        text = re.sub(r"[ \t]+", " ", text)
        text = re.sub(r" *\n *", "\n", text)
        text = re.sub(r"\n{3,}", "\n\n", text)
        return text.strip()


class TextNormalizer:
    """
    Normalize email text for extraction.

    Applies NFKC normalization, strips trailing signatures and mobile
    footers, and collapses whitespace. Closing phrases such as "Thanks" are
    kept because receipts commonly open with them.
    """

    SIGNATURE_PATTERNS = [
        r"\n\s*--\s*\n.*$",
        r"\nSent from (my )?(iPhone|Android|iPad).*$",
    ]

    def __init__(self) -> None:
        self.signature_regex = re.compile("|".join(self.SIGNATURE_PATTERNS), re.IGNORECASE | re.DOTALL)

    def normalize(self, text: str) -> str:
        """
        Example:
            >>> TextNormalizer().normalize('  Total:\\t$5.00\\n\\n\\n\\nThanks  ')
            'Total: $5.00\\n\\nThanks'
        """
        if not text:
            return ""

        # NBSP and friends become plain spaces under NFKC
        text = unicodedata.normalize("NFKC", text)
        text = text.replace("\r\n", "\n").replace("\r", "\n")
        text = self.signature_regex.sub("", text)
        text = text.replace("\t", " ")
        text = re.sub(r" +", " ", text)
        text = "\n".join(line.strip() for line in text.split("\n"))
        text = re.sub(r"\n{3,}", "\n\n", text)
        return text.strip()


class EmailTextExtractor:
    """Extract and normalize text from email bodies."""

    def __init__(self, max_chars: Optional[int] = None) -> None:
        self.normalizer = TextNormalizer()
        self.max_chars = max_chars

    def extract_text(self, email_body: str, mime_type: str = "text/plain") -> str:
        """
        Extract text from an email body.

        ``text/html`` bodies are parsed; anything else is treated as plain
        text. The result is truncated to ``max_chars`` when configured.
        """
        if not email_body:
            return ""

        if "html" in mime_type.lower():
            parser = HTMLTextExtractor()
            parser.feed(email_body)
            parser.close()
            text = parser.get_text()
        else:
            text = email_body

        normalized = self.normalizer.normalize(text)
        if self.max_chars and len(normalized) > self.max_chars:
            normalized = normalized[: self.max_chars]

        logger.debug(
            "Email text extracted",
            mime_type=mime_type,
            original_length=len(email_body),
            extracted_length=len(normalized),
        )
        return normalized

    def combine(self, body_text: str, attachment_text: Optional[str] = None, attachment_name: str = "") -> str:
        """Join body text with text pulled from an attachment."""
        if not attachment_text:
            return body_text
        header = f"--- Attachment {attachment_name} ---".replace("  ", " ")
        attachment = self.normalizer.normalize(attachment_text)
        return f"{body_text}\n\n{header}\n{attachment}".strip()


def extract_email_text(email_body: str, mime_type: str = "text/plain") -> str:
    """Extract text from an email body with default settings."""
    return EmailTextExtractor().extract_text(email_body, mime_type)
