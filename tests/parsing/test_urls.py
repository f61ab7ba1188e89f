"""Tests for src/parsing/urls.py."""

from __future__ import annotations

import pytest

from src.parsing.urls import (
    extract_domain,
    file_extension,
    is_document_url,
    is_same_domain,
    is_valid_http_url,
    normalize_url,
    parse_url,
    resolve_url,
    should_skip_url,
)


class TestNormalizeUrl:
    """Tests for normalize_url."""

    def test_lowercases_host_and_drops_fragment(self) -> None:
        """Test lowercases host and drops fragment."""
        assert normalize_url("https://Example.COM/Path#section") == "https://example.com/Path"

    def test_strips_tracking_params(self) -> None:
        """Test strips tracking params."""
        url = "https://example.com/news/?utm_source=x&page=2&fbclid=abc#top"
        assert normalize_url(url) == "https://example.com/news?page=2"

    def test_drops_default_port(self) -> None:
        """Test drops default port."""
        assert normalize_url("https://example.com:443/a") == "https://example.com/a"
        assert normalize_url("http://example.com:80/a") == "http://example.com/a"
        assert normalize_url("http://example.com:8080/a") == "http://example.com:8080/a"

    def test_root_slash_kept(self) -> None:
        """Test root slash kept."""
        assert normalize_url("https://example.com/") == "https://example.com/"

    def test_trailing_slash_variants_equal(self) -> None:
        """Test trailing slash variants equal."""
        assert normalize_url("https://example.com/a/b/") == normalize_url("https://example.com/a/b")

    def test_keeps_blank_values(self) -> None:
        """Test keeps blank values."""
        assert normalize_url("https://example.com/s?q=&page=1") == "https://example.com/s?q=&page=1"


class TestDomains:
    """Tests for domain helpers."""

    @pytest.mark.parametrize(
        "url, expected",
        [
            ("https://www.porezna-uprava.hr:443/vijesti", "porezna-uprava.hr"),
            ("https://narodne-novine.nn.hr/sitemap.xml", "narodne-novine.nn.hr"),
            ("https://user@fina.hr/x", "fina.hr"),
        ],
    )
    def test_extract_domain(self, url, expected) -> None:
        """Test extract domain."""
        assert extract_domain(url) == expected

    def test_same_domain_ignores_www(self) -> None:
        """Test same domain ignores www."""
        assert is_same_domain("https://www.hzzo.hr/a", "https://hzzo.hr/b")
        assert not is_same_domain("https://hzzo.hr/a", "https://hzmo.hr/b")

    def test_parse_url_defaults_path(self) -> None:
        """Test parse url defaults path."""
        assert parse_url("https://a.hr").path == "/"


class TestClassificationHelpers:
    """Tests for extension and skip helpers."""

    def test_document_urls(self) -> None:
        """Test document urls."""
        assert is_document_url("https://a.hr/files/Pravilnik.PDF")
        assert is_document_url("https://a.hr/obrazac.docx?v=2")
        assert not is_document_url("https://a.hr/vijesti/clanak")

    def test_file_extension(self) -> None:
        """Test file extension."""
        assert file_extension("https://a.hr/x/report.xlsx") == ".xlsx"
        assert file_extension("https://a.hr/x/") == ""

    @pytest.mark.parametrize(
        "url",
        ["", "#top", "mailto:info@a.hr", "javascript:void(0)", "https://a.hr/logo.png"],
    )
    def test_skipped(self, url) -> None:
        """Test skipped."""
        skip, reason = should_skip_url(url)
        assert skip is True
        assert reason

    def test_not_skipped(self) -> None:
        """Test not skipped."""
        assert should_skip_url("https://a.hr/propisi") == (False, "")

    def test_valid_http(self) -> None:
        """Test valid http."""
        assert is_valid_http_url("https://a.hr/")
        assert not is_valid_http_url("ftp://a.hr/")

    def test_resolve_url(self) -> None:
        """Test resolve url."""
        assert resolve_url("https://a.hr/a/b", "../c") == "https://a.hr/c"
