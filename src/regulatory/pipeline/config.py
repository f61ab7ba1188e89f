"""Configuration for the regulatory discovery and fetch pipeline.

This module defines configuration dataclasses for pipeline execution,
including politeness settings that bound how hard any source is hit per run
and the limits that make long-running batches self-terminate.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING

from src.regulatory.types import FreshnessRisk, ScrapeFrequency

if TYPE_CHECKING:
    from pathlib import Path


@dataclass(frozen=True)
class PipelinePoliteness:
    """Per-run politeness and backpressure limits.

    Attributes:
        max_items_per_run: Maximum discovered items fetched in one run.
            Items not processed are picked up in the next run.
        max_domain_requests_per_run: Maximum items fetched from one domain
            in a single run. Spreads load across domains.
        max_conflicts_per_run: Maximum OPEN conflicts arbitrated per run.
        max_extractions_per_run: Maximum queued evidence records sent to
            the extractor in one run.
        scan_jitter_fraction: Random +/- fraction applied to re-scan
            intervals so items with equal settings do not align.
        scan_error_cooldown: Fixed delay before an item whose scan failed
            is due again.
        max_fetch_attempts: Fetch attempts before an item is terminally FAILED.
    """

    max_items_per_run: int = 50
    max_domain_requests_per_run: int = 20
    max_conflicts_per_run: int = 10
    max_extractions_per_run: int = 20
    scan_jitter_fraction: float = 0.1
    scan_error_cooldown: timedelta = field(default_factory=lambda: timedelta(hours=1))
    max_fetch_attempts: int = 3


@dataclass(frozen=True)
class DiscoveryLimits:
    """Budgets that bound each listing strategy's work queue.

    Attributes:
        max_sitemap_depth: Nesting levels of sitemap indexes followed.
        max_pages: Pages followed for PAGINATION endpoints.
        max_crawl_depth: Link depth from the endpoint URL for CRAWL.
        max_crawl_urls: URLs collected by one CRAWL before it stops.
        respect_robots: Skip URLs disallowed by robots.txt while crawling.
        endpoint_error_threshold: Consecutive discovery errors that
            deactivate an endpoint.
    """

    max_sitemap_depth: int = 3
    max_pages: int = 5
    max_crawl_depth: int = 4
    max_crawl_urls: int = 2000
    respect_robots: bool = True
    endpoint_error_threshold: int = 5


@dataclass
class PipelineConfig:
    """Configuration for a pipeline run.

    Attributes:
        politeness: Rate limiting and backpressure settings.
        limits: Discovery work-queue budgets.
        store_path: JSON snapshot to load and save. Uses default if None.
        dry_run: If True, run without saving the store snapshot.
        mode: Execution mode - "full", "discover", "fetch", "extract" or "arbitrate".
            - "full": Discover, fetch, extract, then arbitrate
            - "discover": Endpoint discovery only
            - "fetch": Fetch pending and due items only
            - "extract": Extract rules from queued evidence only
            - "arbitrate": Arbitrate open conflicts only
    """

    politeness: PipelinePoliteness = field(default_factory=PipelinePoliteness)
    limits: DiscoveryLimits = field(default_factory=DiscoveryLimits)
    store_path: "Path | None" = None
    dry_run: bool = False
    mode: str = "full"  # "full" | "discover" | "fetch" | "extract" | "arbitrate"

    def __post_init__(self) -> None:
        """Validate configuration."""
        valid_modes = ("full", "discover", "fetch", "extract", "arbitrate")
        if self.mode not in valid_modes:
            raise ValueError(f"Invalid mode: {self.mode}. Must be one of {valid_modes}")


# How often an endpoint listing is scraped
SCRAPE_INTERVALS: dict[ScrapeFrequency, timedelta] = {
    ScrapeFrequency.EVERY_RUN: timedelta(0),
    ScrapeFrequency.DAILY: timedelta(hours=24),
    ScrapeFrequency.TWICE_WEEKLY: timedelta(hours=84),
    ScrapeFrequency.WEEKLY: timedelta(days=7),
    ScrapeFrequency.MONTHLY: timedelta(days=30),
}

# Re-scan interval for an item with neutral velocity, by risk tier
RISK_BASE_INTERVALS: dict[FreshnessRisk, timedelta] = {
    FreshnessRisk.CRITICAL: timedelta(hours=4),
    FreshnessRisk.HIGH: timedelta(hours=12),
    FreshnessRisk.MEDIUM: timedelta(hours=24),
    FreshnessRisk.LOW: timedelta(hours=72),
}

MIN_SCAN_INTERVAL = timedelta(hours=1)
MAX_SCAN_INTERVAL = timedelta(days=30)


def get_scrape_interval(frequency: ScrapeFrequency) -> timedelta:
    """Get the listing scrape interval for an endpoint frequency."""
    return SCRAPE_INTERVALS[frequency]
