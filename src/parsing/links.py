"""Link extraction from HTML listing and content pages.

Links are resolved against the page URL (honouring <base href>), filtered
to http(s), normalized and deduplicated in document order.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date

from bs4 import BeautifulSoup

from .urls import is_valid_http_url, normalize_url, resolve_url, should_skip_url

# Croatian listings print dates as "15.01.2025." or "15. 1. 2025."
_DATE_RE = re.compile(r"\b(\d{1,2})\.\s?(\d{1,2})\.\s?(\d{4})\.?")


@dataclass(frozen=True)
class ExtractedLink:
    """A link found in a page.

    Attributes:
        url: Absolute, normalized URL.
        title: Anchor text, whitespace-collapsed.
        published: Date printed next to the link in a listing, if any.
        rel: The rel attribute value.
    """

    url: str
    title: str = ""
    published: date | None = None
    rel: str = ""

    @property
    def is_nofollow(self) -> bool:
        return "nofollow" in self.rel.lower()


def parse_listing_date(text: str) -> date | None:
    """Find the first dd.mm.yyyy date in ``text``."""
    match = _DATE_RE.search(text)
    if not match:
        return None
    day, month, year = (int(g) for g in match.groups())
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _base_url(soup: BeautifulSoup, page_url: str) -> str:
    base = soup.find("base", href=True)
    if base is not None:
        return resolve_url(page_url, base["href"])
    return page_url


def _collect(anchors, base_url: str, with_dates: bool) -> list[ExtractedLink]:
    links: list[ExtractedLink] = []
    seen: set[str] = set()
    for anchor in anchors:
        href = (anchor.get("href") or "").strip()
        skip, _ = should_skip_url(href)
        if skip:
            continue
        absolute = resolve_url(base_url, href)
        if not is_valid_http_url(absolute):
            continue
        url = normalize_url(absolute)
        if url in seen:
            continue
        seen.add(url)

        published = None
        if with_dates:
            container = anchor.find_parent(["li", "tr", "article", "div"]) or anchor
            published = parse_listing_date(container.get_text(" ", strip=True))

        rel = anchor.get("rel") or ""
        if isinstance(rel, list):
            rel = " ".join(rel)
        links.append(
            ExtractedLink(
                url=url,
                title=" ".join(anchor.get_text(" ", strip=True).split()),
                published=published,
                rel=rel,
            )
        )
    return links


def extract_links(html: str, page_url: str) -> list[ExtractedLink]:
    """Extract every <a href> link from a page."""
    soup = BeautifulSoup(html, "html.parser")
    return _collect(soup.find_all("a", href=True), _base_url(soup, page_url), with_dates=False)


def extract_listing_links(
    html: str,
    page_url: str,
    item_selector: str | None = None,
) -> list[ExtractedLink]:
    """Extract the entries of a news/document listing page.

    Args:
        html: Listing page HTML.
        page_url: URL the page was fetched from.
        item_selector: CSS selector for listing anchors. Without one, all
            anchors inside <main> (or the whole body) are used.

    Returns:
        Links with titles and, where printed, publication dates.
    """
    soup = BeautifulSoup(html, "html.parser")
    base_url = _base_url(soup, page_url)
    if item_selector:
        anchors = [a for a in soup.select(item_selector) if a.name == "a" and a.get("href")]
        if not anchors:
            anchors = [a for el in soup.select(item_selector) for a in el.find_all("a", href=True)]
    else:
        scope = soup.find("main") or soup.body or soup
        anchors = scope.find_all("a", href=True)
    return _collect(anchors, base_url, with_dates=True)
