"""Tests for src/parsing/links.py."""

from __future__ import annotations

from datetime import date

from src.parsing.links import extract_links, extract_listing_links, parse_listing_date

LISTING = """
<html><body>
  <nav><a href="/kontakt">Kontakt</a></nav>
  <main>
    <ul class="news">
      <li><span>15.01.2025.</span> <a href="/vijesti/pdv-stope?utm_source=rss">Nove stope  PDV-a</a></li>
      <li><span>3. 2. 2025.</span> <a class="item" href="vijesti/rokovi">Rokovi</a></li>
      <li><a href="/vijesti/pdv-stope">Duplicate</a></li>
      <li><a href="mailto:info@porezna-uprava.hr">Mail</a></li>
      <li><a href="/files/upute.pdf" rel="nofollow">Upute (PDF)</a></li>
    </ul>
  </main>
</body></html>
"""


class TestParseListingDate:
    """Tests for parse_listing_date."""

    def test_croatian_formats(self) -> None:
        """Test croatian formats."""
        assert parse_listing_date("Objavljeno 15.01.2025.") == date(2025, 1, 15)
        assert parse_listing_date("3. 2. 2025.") == date(2025, 2, 3)

    def test_invalid_or_missing(self) -> None:
        """Test invalid or missing."""
        assert parse_listing_date("31.02.2025.") is None
        assert parse_listing_date("no date") is None


class TestExtractListingLinks:
    """Tests for extract_listing_links."""

    def test_main_scope_dedup_and_dates(self) -> None:
        """Test main scope dedup and dates."""
        links = extract_listing_links(LISTING, "https://www.porezna-uprava.hr/")

        urls = [link.url for link in links]
        assert urls == [
            "https://www.porezna-uprava.hr/vijesti/pdv-stope",
            "https://www.porezna-uprava.hr/vijesti/rokovi",
            "https://www.porezna-uprava.hr/files/upute.pdf",
        ]
        assert links[0].title == "Nove stope PDV-a"
        assert links[0].published == date(2025, 1, 15)
        assert links[1].published == date(2025, 2, 3)
        assert links[2].is_nofollow

    def test_item_selector(self) -> None:
        """Test item selector."""
        links = extract_listing_links(LISTING, "https://www.porezna-uprava.hr/", item_selector="a.item")

        assert [link.title for link in links] == ["Rokovi"]

    def test_container_selector_falls_back_to_nested_anchors(self) -> None:
        """Test container selector falls back to nested anchors."""
        links = extract_listing_links(LISTING, "https://www.porezna-uprava.hr/", item_selector="nav")

        assert [link.title for link in links] == ["Kontakt"]

    def test_base_href_respected(self) -> None:
        """Test base href respected."""
        html = '<html><head><base href="https://a.hr/docs/"></head><body><a href="x.html">X</a></body></html>'

        assert extract_listing_links(html, "https://a.hr/")[0].url == "https://a.hr/docs/x.html"


class TestExtractLinks:
    """Tests for extract_links."""

    def test_all_anchors_without_dates(self) -> None:
        """Test all anchors without dates."""
        links = extract_links(LISTING, "https://www.porezna-uprava.hr/")

        assert links[0].url == "https://www.porezna-uprava.hr/kontakt"
        assert all(link.published is None for link in links)
