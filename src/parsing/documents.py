"""Binary and HTML document parsing to plain text.

Supported kinds:
- "pdf": text layer via PyPDF2 (scanned PDFs yield little or no text)
- "docx": paragraphs from word/document.xml
- "html": main content via trafilatura, falling back to BeautifulSoup text

Anything else raises ``ParserError``; callers treat that as a content error.
"""

from __future__ import annotations

import logging
import mimetypes
import zipfile
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from io import BytesIO
from typing import Any

import trafilatura
from bs4 import BeautifulSoup
from PyPDF2 import PdfReader
from PyPDF2.errors import PdfReadError

from .urls import file_extension

logger = logging.getLogger(__name__)

# Below this many extracted characters per page a PDF is treated as scanned
SCANNED_PDF_CHARS_PER_PAGE = 50

_WORD_NS = "{http://schemas.openxmlformats.org/wordprocessingml/2006/main}"

_EXTENSION_KINDS = {
    ".pdf": "pdf",
    ".docx": "docx",
    ".doc": "doc",
    ".xlsx": "xlsx",
    ".xls": "xls",
    ".html": "html",
    ".htm": "html",
    ".json": "json",
    ".xml": "xml",
}

_CONTENT_TYPE_KINDS = (
    ("application/pdf", "pdf"),
    ("wordprocessingml", "docx"),
    ("application/msword", "doc"),
    ("spreadsheetml", "xlsx"),
    ("application/vnd.ms-excel", "xls"),
    ("text/html", "html"),
    ("application/xhtml", "html"),
    ("application/json", "json"),
    ("xml", "xml"),
)


class ParserError(Exception):
    """Raised when a document cannot be parsed to text."""


@dataclass(frozen=True)
class ParsedContent:
    text: str
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def chars_per_page(self) -> float:
        pages = self.metadata.get("pages") or 1
        return len(self.text.strip()) / pages


def detect_document_kind(url: str, content_type: str | None) -> str:
    """Classify content by URL extension first, then by response content type.

    Returns:
        One of "pdf", "docx", "doc", "xlsx", "xls", "html", "json", "xml",
        or "unknown".
    """
    kind = _EXTENSION_KINDS.get(file_extension(url))
    if kind:
        return kind

    if content_type:
        lowered = content_type.lower()
        for marker, mapped in _CONTENT_TYPE_KINDS:
            if marker in lowered:
                return mapped
        guessed = mimetypes.guess_extension(lowered.split(";")[0].strip())
        if guessed and guessed in _EXTENSION_KINDS:
            return _EXTENSION_KINDS[guessed]

    # Extension-less pages without a content type are almost always HTML
    return "html" if not file_extension(url) else "unknown"


def is_scanned_pdf(parsed: ParsedContent) -> bool:
    return parsed.chars_per_page < SCANNED_PDF_CHARS_PER_PAGE


def parse_binary(data: bytes, kind: str) -> ParsedContent:
    """Parse ``data`` of the given kind to text.

    Raises:
        ParserError: For unsupported kinds or corrupt documents.
    """
    if kind == "pdf":
        return _parse_pdf(data)
    if kind == "docx":
        return _parse_docx(data)
    if kind == "html":
        return parse_html(data.decode("utf-8", errors="replace"))
    raise ParserError(f"Unsupported document kind: {kind}")


def _parse_pdf(data: bytes) -> ParsedContent:
    try:
        reader = PdfReader(BytesIO(data))
        page_texts = [page.extract_text() or "" for page in reader.pages]
    except (PdfReadError, ValueError) as exc:
        raise ParserError(f"Unreadable PDF: {exc}") from exc

    text = "\n\n".join(t for t in page_texts if t.strip())
    metadata: dict[str, Any] = {"pages": len(page_texts)}
    if reader.metadata and reader.metadata.title:
        metadata["title"] = str(reader.metadata.title)
    logger.debug("Extracted %d chars from %d PDF pages", len(text), len(page_texts))
    return ParsedContent(text=text, metadata=metadata)


def _parse_docx(data: bytes) -> ParsedContent:
    try:
        with zipfile.ZipFile(BytesIO(data)) as archive:
            document_xml = archive.read("word/document.xml")
        root = ET.fromstring(document_xml)
    except (zipfile.BadZipFile, KeyError, ET.ParseError) as exc:
        raise ParserError(f"Unreadable DOCX: {exc}") from exc

    paragraphs = []
    for paragraph in root.iter(f"{_WORD_NS}p"):
        text = "".join(node.text or "" for node in paragraph.iter(f"{_WORD_NS}t"))
        if text.strip():
            paragraphs.append(text)
    return ParsedContent(text="\n".join(paragraphs), metadata={"paragraphs": len(paragraphs)})


def parse_html(html: str) -> ParsedContent:
    """Extract main text content from an HTML page."""
    extracted = trafilatura.extract(html, include_tables=True, include_comments=False)
    if extracted:
        return ParsedContent(text=extracted, metadata={"extractor": "trafilatura"})

    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    text = " ".join(soup.get_text(" ", strip=True).split())
    return ParsedContent(text=text, metadata={"extractor": "bs4"})
