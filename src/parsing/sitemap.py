"""Sitemap and sitemap-index parsing.

Parsing is namespace-agnostic and tolerant: malformed XML yields an empty
result rather than an exception, since a broken sitemap should not abort a
discovery run.
"""

from __future__ import annotations

import logging
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Iterable, Sequence, TypeVar

logger = logging.getLogger(__name__)

_NN_SITEMAP_RE = re.compile(r"sitemap_(\d+)_(\d{4})_(\d+)\.xml$")


@dataclass(frozen=True)
class SitemapEntry:
    """One <url> (or <sitemap>) element."""

    url: str
    lastmod: str | None = None
    priority: float | None = None
    changefreq: str | None = None


@dataclass(frozen=True)
class NNSitemapMeta:
    """Metadata encoded in a Narodne novine sitemap filename.

    Types: 1 = Službeni (official), 2 = Međunarodni (international),
    3 = Oglasni (announcements).
    """

    type: int
    year: int
    issue: int


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _parse_root(xml: str) -> ET.Element | None:
    try:
        return ET.fromstring(xml.strip())
    except ET.ParseError as exc:
        logger.debug("Invalid sitemap XML: %s", exc)
        return None


def _child_text(element: ET.Element, name: str) -> str | None:
    for child in element:
        if _local_name(child.tag) == name and child.text:
            return child.text.strip()
    return None


def _entries(root: ET.Element, element_name: str) -> list[SitemapEntry]:
    entries: list[SitemapEntry] = []
    for element in root:
        if _local_name(element.tag) != element_name:
            continue
        loc = _child_text(element, "loc")
        if not loc:
            continue
        priority_text = _child_text(element, "priority")
        try:
            priority = float(priority_text) if priority_text else None
        except ValueError:
            priority = None
        entries.append(
            SitemapEntry(
                url=loc,
                lastmod=_child_text(element, "lastmod"),
                priority=priority,
                changefreq=_child_text(element, "changefreq"),
            )
        )
    return entries


def is_sitemap_index(xml: str) -> bool:
    root = _parse_root(xml)
    return root is not None and _local_name(root.tag) == "sitemapindex"


def parse_sitemap(xml: str) -> list[SitemapEntry]:
    """Parse a <urlset> sitemap. Returns [] for anything else."""
    root = _parse_root(xml)
    if root is None or _local_name(root.tag) != "urlset":
        return []
    return _entries(root, "url")


def parse_sitemap_index_entries(xml: str) -> list[SitemapEntry]:
    root = _parse_root(xml)
    if root is None or _local_name(root.tag) != "sitemapindex":
        return []
    return _entries(root, "sitemap")


def parse_sitemap_index(xml: str) -> list[str]:
    """Child sitemap URLs of a <sitemapindex>. Returns [] for a plain sitemap."""
    return [entry.url for entry in parse_sitemap_index_entries(xml)]


def parse_nn_sitemap_filename(filename: str) -> NNSitemapMeta | None:
    """Parse ``sitemap_{type}_{year}_{issue}.xml``; None for other names."""
    match = _NN_SITEMAP_RE.search(filename)
    if not match:
        return None
    return NNSitemapMeta(
        type=int(match.group(1)),
        year=int(match.group(2)),
        issue=int(match.group(3)),
    )


E = TypeVar("E", SitemapEntry, str)


def filter_nn_sitemaps(entries: Iterable[E], allowed_types: Sequence[int]) -> list[E]:
    """Keep Narodne novine sitemaps whose type is allowed.

    Entries whose URL is not an NN sitemap filename are kept unchanged.
    """
    allowed = set(allowed_types)
    result: list[E] = []
    for entry in entries:
        url = entry if isinstance(entry, str) else entry.url
        meta = parse_nn_sitemap_filename(url)
        if meta is None or meta.type in allowed:
            result.append(entry)
    return result
