"""Endpoint discovery: turn configured endpoints into discovered items.

Each listing strategy resolves candidate URLs with an explicit work queue
bounded by the budgets in ``DiscoveryLimits``:

- SITEMAP_XML: sitemap-index expansion up to ``max_sitemap_depth``
- PAGINATION: numbered listing pages up to ``max_pages``
- HTML_LIST: a single listing page
- CRAWL: same-domain breadth-first crawl bounded by ``max_crawl_depth``,
  ``max_crawl_urls`` and robots.txt

Resolved URLs are normalized and deduplicated, then matched against the
store: new URLs become PENDING items, previously ingested ones are re-queued
to check for content drift.
"""

from __future__ import annotations

import hashlib
import logging
import re
from collections import deque
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Callable, Iterable

from src.parsing.links import extract_links, extract_listing_links
from src.parsing.robots import RobotsChecker
from src.parsing.sitemap import (
    filter_nn_sitemaps,
    is_sitemap_index,
    parse_sitemap,
    parse_sitemap_index_entries,
)
from src.parsing.urls import is_document_url, is_same_domain, normalize_url
from src.regulatory.errors import CircuitBreakerOpenError, RegulatoryPipelineError
from src.regulatory.store import RegulatoryStore
from src.regulatory.types import (
    DiscoveredItem,
    DiscoveryEndpoint,
    EndpointPriority,
    ItemStatus,
    ListingStrategy,
    new_id,
    utc_now,
)

from .classification import classify_url
from .config import DiscoveryLimits
from .scheduler import is_endpoint_due, requeue_for_scan

logger = logging.getLogger(__name__)

# Returns the body of a URL or raises a RegulatoryPipelineError
TextFetcher = Callable[[str], str]

_PRIORITY_ORDER = {p: i for i, p in enumerate(EndpointPriority)}


@dataclass(frozen=True)
class ResolvedUrl:
    """A candidate URL produced by a listing strategy."""

    url: str
    title: str | None = None
    published: date | None = None


@dataclass
class EndpointDiscovery:
    """Outcome of discovering one endpoint."""

    endpoint_id: str
    urls_found: int = 0
    created: list[str] = field(default_factory=list)
    requeued: list[str] = field(default_factory=list)
    unchanged: int = 0
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "endpoint_id": self.endpoint_id,
            "urls_found": self.urls_found,
            "created": len(self.created),
            "requeued": len(self.requeued),
            "unchanged": self.unchanged,
            "error": self.error,
        }


@dataclass
class DiscoveryResult:
    """Result of a discovery pass over all due endpoints."""

    endpoints: list[EndpointDiscovery] = field(default_factory=list)
    endpoints_skipped: int = 0

    @property
    def endpoints_checked(self) -> int:
        return len(self.endpoints)

    @property
    def items_created(self) -> int:
        return sum(len(e.created) for e in self.endpoints)

    @property
    def items_requeued(self) -> int:
        return sum(len(e.requeued) for e in self.endpoints)

    @property
    def errors(self) -> list[tuple[str, str]]:
        return [(e.endpoint_id, e.error) for e in self.endpoints if e.error]

    def to_dict(self) -> dict:
        return {
            "endpoints_checked": self.endpoints_checked,
            "endpoints_skipped": self.endpoints_skipped,
            "items_created": self.items_created,
            "items_requeued": self.items_requeued,
            "errors": [{"endpoint_id": eid, "error": err} for eid, err in self.errors],
        }


def _parse_lastmod(value: str | None) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


def _compile_patterns(patterns: Iterable[str] | None) -> list[re.Pattern[str]]:
    return [re.compile(p) for p in patterns or ()]


def resolve_sitemap(
    endpoint: DiscoveryEndpoint,
    fetch_text: TextFetcher,
    limits: DiscoveryLimits,
) -> list[ResolvedUrl]:
    """Expand a sitemap (or sitemap index) into page URLs.

    Child sitemaps of an index are filtered by ``endpoint.url_pattern`` and,
    for Narodne novine, by the allowed gazette types in
    ``endpoint.metadata["types"]``. A failing child sitemap is skipped; a
    failing root sitemap fails the endpoint.
    """
    child_pattern = re.compile(endpoint.url_pattern) if endpoint.url_pattern else None
    allowed_types = endpoint.metadata.get("types")

    queue: deque[tuple[str, int]] = deque([(endpoint.url, 0)])
    visited: set[str] = set()
    resolved: list[ResolvedUrl] = []

    while queue:
        sitemap_url, depth = queue.popleft()
        if sitemap_url in visited:
            continue
        visited.add(sitemap_url)

        try:
            xml = fetch_text(sitemap_url)
        except RegulatoryPipelineError as exc:
            if depth == 0:
                raise
            logger.warning("Skipping child sitemap %s: %s", sitemap_url, exc)
            continue

        if is_sitemap_index(xml):
            children = parse_sitemap_index_entries(xml)
            if allowed_types:
                children = filter_nn_sitemaps(children, allowed_types)
            if child_pattern is not None:
                children = [c for c in children if child_pattern.search(c.url)]
            if depth >= limits.max_sitemap_depth:
                logger.info(
                    "Sitemap depth budget reached at %s; %d child sitemaps not expanded",
                    sitemap_url,
                    len(children),
                )
                continue
            for child in children:
                queue.append((child.url, depth + 1))
            continue

        for entry in parse_sitemap(xml):
            resolved.append(ResolvedUrl(url=entry.url, published=_parse_lastmod(entry.lastmod)))

    return resolved


def resolve_html_list(
    endpoint: DiscoveryEndpoint,
    fetch_text: TextFetcher,
    page_url: str | None = None,
) -> list[ResolvedUrl]:
    url = page_url or endpoint.url
    html = fetch_text(url)
    links = extract_listing_links(html, url, endpoint.metadata.get("item_selector"))
    return [
        ResolvedUrl(url=link.url, title=link.title or None, published=link.published)
        for link in links
        if is_same_domain(link.url, endpoint.url) or is_document_url(link.url)
    ]


def resolve_pagination(
    endpoint: DiscoveryEndpoint,
    fetch_text: TextFetcher,
    limits: DiscoveryLimits,
) -> list[ResolvedUrl]:
    """Follow numbered listing pages until one yields nothing new."""
    pattern = endpoint.pagination_pattern or "?page={N}"
    resolved: list[ResolvedUrl] = []
    seen: set[str] = set()

    for page in range(1, limits.max_pages + 1):
        page_url = endpoint.url if page == 1 else endpoint.url + pattern.replace("{N}", str(page))
        try:
            entries = resolve_html_list(endpoint, fetch_text, page_url)
        except RegulatoryPipelineError as exc:
            if page == 1:
                raise
            logger.warning("Stopping pagination at %s: %s", page_url, exc)
            break

        fresh = [e for e in entries if e.url not in seen]
        if not fresh:
            break
        for entry in fresh:
            seen.add(entry.url)
            resolved.append(entry)

    return resolved


def crawl_site(
    start_url: str,
    fetch_text: TextFetcher,
    limits: DiscoveryLimits,
    robots: RobotsChecker | None = None,
    include_patterns: Iterable[str] | None = None,
    exclude_patterns: Iterable[str] | None = None,
) -> list[ResolvedUrl]:
    """Breadth-first same-domain crawl from ``start_url``.

    Document links are collected but never expanded. The crawl stops when
    the queue is empty, the depth budget is exhausted for every queued
    page, or ``max_crawl_urls`` URLs have been collected.
    """
    includes = _compile_patterns(include_patterns)
    excludes = _compile_patterns(exclude_patterns)

    root = normalize_url(start_url)
    queue: deque[tuple[str, int]] = deque([(root, 0)])
    visited: set[str] = {root}
    collected: list[ResolvedUrl] = []

    while queue and len(collected) < limits.max_crawl_urls:
        page_url, depth = queue.popleft()

        if robots is not None and limits.respect_robots and not robots.is_allowed(page_url):
            logger.debug("Disallowed by robots.txt: %s", page_url)
            continue

        try:
            html = fetch_text(page_url)
        except CircuitBreakerOpenError:
            raise
        except RegulatoryPipelineError as exc:
            if depth == 0:
                raise
            logger.warning("Crawl could not fetch %s: %s", page_url, exc)
            continue

        for link in extract_links(html, page_url):
            if link.url in visited or not is_same_domain(link.url, root):
                continue
            if any(p.search(link.url) for p in excludes):
                continue
            visited.add(link.url)

            if robots is not None and limits.respect_robots and not robots.is_allowed(link.url):
                continue

            if not includes or any(p.search(link.url) for p in includes):
                collected.append(ResolvedUrl(url=link.url, title=link.title or None))
                if len(collected) >= limits.max_crawl_urls:
                    logger.info("Crawl URL budget reached (%d) for %s", limits.max_crawl_urls, root)
                    break

            if not is_document_url(link.url) and depth + 1 < limits.max_crawl_depth:
                queue.append((link.url, depth + 1))

    return collected


def resolve_endpoint_urls(
    endpoint: DiscoveryEndpoint,
    fetch_text: TextFetcher,
    limits: DiscoveryLimits,
    robots: RobotsChecker | None = None,
) -> list[ResolvedUrl]:
    """Dispatch to the endpoint's listing strategy."""
    strategy = endpoint.listing_strategy
    if strategy == ListingStrategy.SITEMAP_XML:
        return resolve_sitemap(endpoint, fetch_text, limits)
    if strategy == ListingStrategy.PAGINATION:
        resolved = resolve_pagination(endpoint, fetch_text, limits)
    elif strategy == ListingStrategy.HTML_LIST:
        resolved = resolve_html_list(endpoint, fetch_text)
    elif strategy == ListingStrategy.CRAWL:
        resolved = crawl_site(
            endpoint.url,
            fetch_text,
            limits,
            robots=robots,
            include_patterns=endpoint.metadata.get("include_patterns"),
            exclude_patterns=endpoint.metadata.get("exclude_patterns"),
        )
    else:
        raise ValueError(f"Unknown listing strategy: {strategy}")

    if endpoint.url_pattern:
        pattern = re.compile(endpoint.url_pattern)
        resolved = [r for r in resolved if pattern.search(r.url)]
    return resolved


def dedupe_urls(resolved: Iterable[ResolvedUrl]) -> list[ResolvedUrl]:
    """Normalize URLs and keep the first occurrence of each."""
    unique: dict[str, ResolvedUrl] = {}
    for entry in resolved:
        url = normalize_url(entry.url)
        if url not in unique:
            unique[url] = ResolvedUrl(url=url, title=entry.title, published=entry.published)
    return list(unique.values())


def register_urls(
    store: RegulatoryStore,
    endpoint: DiscoveryEndpoint,
    resolved: Iterable[ResolvedUrl],
    now: datetime | None = None,
) -> EndpointDiscovery:
    """Create or re-queue discovered items for a deduplicated URL batch."""
    now = now or utc_now()
    outcome = EndpointDiscovery(endpoint_id=endpoint.id)

    for entry in resolved:
        outcome.urls_found += 1
        existing = store.find_item_by_url(entry.url)

        if existing is None:
            classification = classify_url(entry.url)
            item = DiscoveredItem(
                id=new_id("item"),
                endpoint_id=endpoint.id,
                url=entry.url,
                title=entry.title,
                publication_date=entry.published,
                node_type=classification.node_type,
                node_role=classification.node_role,
                freshness_risk=classification.freshness_risk,
                next_scan_due=now,
            )
            store.add_item(item)
            outcome.created.append(item.id)
        elif existing.status in (ItemStatus.FETCHED, ItemStatus.PROCESSED):
            requeue_for_scan(store, existing, now)
            outcome.requeued.append(existing.id)
        else:
            outcome.unchanged += 1

    return outcome


def _listing_hash(resolved: Iterable[ResolvedUrl]) -> str:
    joined = "\n".join(sorted(r.url for r in resolved))
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()


def discover_endpoint(
    store: RegulatoryStore,
    endpoint: DiscoveryEndpoint,
    fetch_text: TextFetcher,
    limits: DiscoveryLimits | None = None,
    robots: RobotsChecker | None = None,
    now: datetime | None = None,
) -> EndpointDiscovery:
    """Resolve, deduplicate and register the URLs of one endpoint.

    Failures are recorded on the endpoint; after
    ``endpoint_error_threshold`` consecutive failures it is deactivated.
    An open circuit breaker skips the endpoint without counting an error.
    """
    limits = limits or DiscoveryLimits()
    now = now or utc_now()

    try:
        resolved = dedupe_urls(resolve_endpoint_urls(endpoint, fetch_text, limits, robots))
    except CircuitBreakerOpenError as exc:
        logger.info("Skipping endpoint %s: %s", endpoint.name, exc)
        return EndpointDiscovery(endpoint_id=endpoint.id, error=str(exc))
    except RegulatoryPipelineError as exc:
        errors = endpoint.consecutive_errors + 1
        deactivate = errors >= limits.endpoint_error_threshold
        store.update_endpoint(
            endpoint.id,
            consecutive_errors=errors,
            last_error=str(exc),
            is_active=not deactivate,
        )
        if deactivate:
            logger.error(
                "Deactivated endpoint %s after %d consecutive errors: %s",
                endpoint.name,
                errors,
                exc,
            )
        else:
            logger.warning("Discovery failed for %s (%d in a row): %s", endpoint.name, errors, exc)
        return EndpointDiscovery(endpoint_id=endpoint.id, error=str(exc))

    outcome = register_urls(store, endpoint, resolved, now)
    store.update_endpoint(
        endpoint.id,
        consecutive_errors=0,
        last_error=None,
        last_scraped_at=now,
        last_content_hash=_listing_hash(resolved),
    )
    logger.info(
        "Discovered %d URLs for %s (%d new, %d re-queued)",
        outcome.urls_found,
        endpoint.name,
        len(outcome.created),
        len(outcome.requeued),
    )
    return outcome


def run_discovery(
    store: RegulatoryStore,
    fetch_text: TextFetcher,
    limits: DiscoveryLimits | None = None,
    robots: RobotsChecker | None = None,
    now: datetime | None = None,
) -> DiscoveryResult:
    """Discover every active endpoint that is due, most important first."""
    now = now or utc_now()
    result = DiscoveryResult()

    endpoints = sorted(store.list_endpoints(active_only=True), key=lambda e: _PRIORITY_ORDER[e.priority])
    for endpoint in endpoints:
        if not is_endpoint_due(endpoint, now):
            result.endpoints_skipped += 1
            continue
        result.endpoints.append(discover_endpoint(store, endpoint, fetch_text, limits, robots, now))

    return result
