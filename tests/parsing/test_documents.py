"""Tests for src/parsing/documents.py."""

from __future__ import annotations

import zipfile
from io import BytesIO
from unittest.mock import patch

import pytest

from src.parsing.documents import (
    ParsedContent,
    ParserError,
    detect_document_kind,
    is_scanned_pdf,
    parse_binary,
    parse_html,
)


def _docx_bytes(*paragraphs: str) -> bytes:
    ns = "http://schemas.openxmlformats.org/wordprocessingml/2006/main"
    body = "".join(f"<w:p><w:r><w:t>{text}</w:t></w:r></w:p>" for text in paragraphs)
    document = f'<?xml version="1.0"?><w:document xmlns:w="{ns}"><w:body>{body}</w:body></w:document>'
    buffer = BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        archive.writestr("word/document.xml", document)
    return buffer.getvalue()


class TestDetectDocumentKind:
    """Tests for detect_document_kind."""

    @pytest.mark.parametrize(
        "url, content_type, expected",
        [
            ("https://a.hr/x.pdf", None, "pdf"),
            ("https://a.hr/x.DOCX", None, "docx"),
            ("https://a.hr/download?id=1", "application/pdf", "pdf"),
            ("https://a.hr/api/rates", "application/json; charset=utf-8", "json"),
            ("https://a.hr/feed", "application/rss+xml", "xml"),
            ("https://a.hr/vijesti", "text/html; charset=utf-8", "html"),
            ("https://a.hr/vijesti", None, "html"),
            ("https://a.hr/archive.bin", None, "unknown"),
        ],
    )
    def test_kinds(self, url, content_type, expected) -> None:
        """Test kinds."""
        assert detect_document_kind(url, content_type) == expected

    def test_extension_wins_over_content_type(self) -> None:
        """Test extension wins over content type."""
        assert detect_document_kind("https://a.hr/x.pdf", "text/html") == "pdf"


class TestParseBinary:
    """Tests for parse_binary."""

    def test_docx_paragraphs(self) -> None:
        """Test docx paragraphs."""
        parsed = parse_binary(_docx_bytes("Članak 38.", "Stopa PDV-a iznosi 25 %."), "docx")

        assert parsed.text == "Članak 38.\nStopa PDV-a iznosi 25 %."
        assert parsed.metadata["paragraphs"] == 2

    def test_corrupt_docx(self) -> None:
        """Test corrupt docx."""
        with pytest.raises(ParserError, match="DOCX"):
            parse_binary(b"not a zip", "docx")

    def test_corrupt_pdf(self) -> None:
        """Test corrupt pdf."""
        with pytest.raises(ParserError, match="PDF"):
            parse_binary(b"not a pdf", "pdf")

    def test_unsupported_kind(self) -> None:
        """Test unsupported kind."""
        with pytest.raises(ParserError, match="Unsupported"):
            parse_binary(b"data", "xlsx")

    def test_html_bytes(self) -> None:
        """Test html bytes."""
        with patch("src.parsing.documents.trafilatura.extract", return_value="Main text"):
            parsed = parse_binary(b"<html><body><p>x</p></body></html>", "html")

        assert parsed.text == "Main text"


class TestParseHtml:
    """Tests for parse_html."""

    def test_trafilatura_result_used(self) -> None:
        """Test trafilatura result used."""
        with patch("src.parsing.documents.trafilatura.extract", return_value="Extracted") as extract:
            parsed = parse_html("<html></html>")

        extract.assert_called_once()
        assert parsed.metadata["extractor"] == "trafilatura"

    def test_falls_back_to_soup_text(self) -> None:
        """Test falls back to soup text."""
        html = "<html><body><script>var x;</script><p>Rok za  prijavu</p></body></html>"
        with patch("src.parsing.documents.trafilatura.extract", return_value=None):
            parsed = parse_html(html)

        assert parsed.text == "Rok za prijavu"
        assert parsed.metadata["extractor"] == "bs4"


class TestScannedPdf:
    """Tests for the scanned-PDF heuristic."""

    def test_sparse_text_is_scanned(self) -> None:
        """Test sparse text is scanned."""
        assert is_scanned_pdf(ParsedContent(text="x" * 40, metadata={"pages": 1}))
        assert is_scanned_pdf(ParsedContent(text="x" * 90, metadata={"pages": 2}))

    def test_dense_text_is_not_scanned(self) -> None:
        """Test dense text is not scanned."""
        assert not is_scanned_pdf(ParsedContent(text="x" * 200, metadata={"pages": 2}))
