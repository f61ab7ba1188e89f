"""Pipeline runner for regulatory discovery, fetch, extraction and arbitration.

This module provides the main entry point for running the pipeline. It
orchestrates:
1. Discovery: Resolve endpoint listings into discovered items
2. Fetch: Acquire pending and due items as evidence
3. Extraction: Turn queued evidence into draft rules and conflicts
4. Arbitration: Resolve or escalate open conflicts

Each phase isolates per-item failures; one bad URL or conflict never aborts
the run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from src.config import load_environment
from src.integrations.models import ModelsClient, ModelsClientError
from src.parsing.robots import RobotsChecker
from src.parsing.urls import extract_domain
from src.regulatory.agents.arbiter import ArbiterBatchResult, run_arbiter_batch
from src.regulatory.agents.extractor import ExtractionResult, process_extraction_queue
from src.regulatory.agents.runner import AgentContext
from src.regulatory.errors import CircuitBreakerOpenError, ContentError, TransientFetchError
from src.regulatory.fetching.http import HttpFetcher, fetch_with_retry
from src.regulatory.fetching.rate_limiter import DomainRateLimiter
from src.regulatory.store import RegulatoryStore

from .config import PipelineConfig
from .discovery import DiscoveryResult, TextFetcher, run_discovery
from .fetcher import FetchResult, fetch_pending_items

logger = logging.getLogger(__name__)

_AGENT_MODES = ("full", "extract", "arbitrate")


@dataclass
class PipelineResult:
    """Result of one pipeline run.

    Attributes:
        started_at: When the pipeline started.
        completed_at: When the pipeline finished.
        mode: Execution mode that was used.
        discovery: Results from the discovery phase (if run).
        fetch: Results from the fetch phase (if run).
        extraction: Results from the extraction phase (if run).
        arbiter: Results from the arbitration phase (if run).
        dry_run: Whether this was a dry run.
    """

    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: datetime | None = None
    mode: str = "full"
    discovery: DiscoveryResult | None = None
    fetch: FetchResult | None = None
    extraction: ExtractionResult | None = None
    arbiter: ArbiterBatchResult | None = None
    dry_run: bool = False

    @property
    def duration_seconds(self) -> float:
        """Duration of the pipeline run in seconds."""
        if self.completed_at is None:
            return 0.0
        return (self.completed_at - self.started_at).total_seconds()

    def to_dict(self) -> dict:
        """Serialize to dictionary for logging/reporting."""
        return {
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "mode": self.mode,
            "dry_run": self.dry_run,
            "discovery": self.discovery.to_dict() if self.discovery else None,
            "fetch": self.fetch.to_dict() if self.fetch else None,
            "extraction": self.extraction.to_dict() if self.extraction else None,
            "arbiter": self.arbiter.to_dict() if self.arbiter else None,
        }

    def summary(self) -> str:
        """Generate a human-readable summary."""
        lines = [
            f"Pipeline completed in {self.duration_seconds:.1f}s",
            f"  Mode: {self.mode}" + (" (dry run)" if self.dry_run else ""),
        ]

        if self.discovery:
            lines.extend([
                f"  Discovery: {self.discovery.endpoints_checked} endpoints checked",
                f"    - Skipped: {self.discovery.endpoints_skipped}",
                f"    - Items created: {self.discovery.items_created}",
                f"    - Items re-queued: {self.discovery.items_requeued}",
                f"    - Errors: {len(self.discovery.errors)}",
            ])

        if self.fetch:
            lines.extend([
                f"  Fetch: {len(self.fetch.items)} items",
                f"    - Fetched: {self.fetch.fetched}",
                f"    - Changed: {self.fetch.changed}",
                f"    - Unchanged: {self.fetch.unchanged}",
                f"    - Retrying: {self.fetch.retrying}",
                f"    - Failed: {self.fetch.failed}",
                f"    - Deferred: {self.fetch.deferred}",
            ])

        if self.extraction:
            lines.extend([
                f"  Extraction: {self.extraction.processed} evidence records",
                f"    - Rules created: {self.extraction.rules_created}",
                f"    - Conflicts created: {self.extraction.conflicts_created}",
                f"    - Failed: {self.extraction.failed}",
                f"    - Requeued: {self.extraction.requeued}",
            ])

        if self.arbiter:
            lines.extend([
                f"  Arbiter: {self.arbiter.processed} conflicts",
                f"    - Resolved: {self.arbiter.resolved}",
                f"    - Escalated: {self.arbiter.escalated}",
                f"    - Failed: {self.arbiter.failed}",
            ])

        return "\n".join(lines)


def make_text_fetcher(fetcher: HttpFetcher, limiter: DomainRateLimiter) -> TextFetcher:
    """Adapt the rate-limited fetcher to the text callable discovery expects.

    The returned callable raises ``CircuitBreakerOpenError`` for a refused
    domain, ``TransientFetchError`` for retryable failures and
    ``ContentError`` for everything else.
    """

    def fetch_text(url: str) -> str:
        outcome = fetch_with_retry(fetcher, limiter, url)
        if outcome.circuit_open:
            raise CircuitBreakerOpenError(extract_domain(url), outcome.error)
        if not outcome.ok:
            status = outcome.response.status if outcome.response is not None else None
            message = outcome.error or f"HTTP {status}"
            if outcome.retryable:
                raise TransientFetchError(f"{url}: {message}", status=status)
            raise ContentError(f"{url}: {message}")
        return outcome.response.text

    return fetch_text


def make_robots_checker(fetcher: HttpFetcher, limiter: DomainRateLimiter) -> RobotsChecker:
    """robots.txt checker that treats an unreachable file as allow-all."""

    def fetch_robots(url: str) -> str | None:
        outcome = fetch_with_retry(fetcher, limiter, url, max_retries=0)
        if not outcome.ok:
            logger.debug("No robots.txt at %s: %s", url, outcome.error)
            return None
        return outcome.response.text

    return RobotsChecker(fetch_robots, user_agent=fetcher.user_agent)


def _build_agent_context(store: RegulatoryStore, mode: str) -> AgentContext | None:
    load_environment()
    try:
        client = ModelsClient()
    except ModelsClientError as exc:
        if mode == "full":
            logger.warning("Skipping extraction and arbitration: %s", exc)
            return None
        raise
    return AgentContext(store=store, client=client)


def run_pipeline(
    config: PipelineConfig | None = None,
    store: RegulatoryStore | None = None,
    fetcher: HttpFetcher | None = None,
    limiter: DomainRateLimiter | None = None,
    agent_ctx: AgentContext | None = None,
) -> PipelineResult:
    """Run the regulatory pipeline.

    This is the main entry point for programmatic pipeline execution.
    It runs the phases selected by the configured mode.

    Args:
        config: Pipeline configuration. Uses defaults if None.
        store: Store to operate on. Loaded from ``config.store_path`` if None.
        fetcher: HTTP fetcher. A default ``HttpFetcher`` if None.
        limiter: Shared per-domain rate limiter for the whole run.
        agent_ctx: Collaborators for the LLM stages. Built from the
            environment if None.

    Returns:
        PipelineResult with outcomes from all phases.

    Raises:
        ModelsClientError: If an agent-only mode runs without model credentials.
    """
    if config is None:
        config = PipelineConfig()

    result = PipelineResult(mode=config.mode, dry_run=config.dry_run)

    logger.info(
        "Starting regulatory pipeline (mode=%s, dry_run=%s)",
        config.mode,
        config.dry_run,
    )

    owns_store = store is None
    if store is None:
        store = RegulatoryStore.load(config.store_path)
    fetcher = fetcher or HttpFetcher()
    limiter = limiter or DomainRateLimiter()
    robots = make_robots_checker(fetcher, limiter) if config.limits.respect_robots else None

    if config.mode in ("full", "discover"):
        logger.info("Running discovery phase...")
        result.discovery = run_discovery(
            store,
            make_text_fetcher(fetcher, limiter),
            limits=config.limits,
            robots=robots,
        )

    if config.mode in ("full", "fetch"):
        logger.info("Running fetch phase...")
        result.fetch = fetch_pending_items(
            store,
            fetcher,
            limiter,
            politeness=config.politeness,
            robots=robots,
        )

    if config.mode in _AGENT_MODES:
        if agent_ctx is None:
            agent_ctx = _build_agent_context(store, config.mode)
        elif agent_ctx.store is not store:
            raise ValueError("agent_ctx must operate on the pipeline's store")

    if agent_ctx is not None and config.mode in ("full", "extract"):
        logger.info("Running extraction phase...")
        result.extraction = process_extraction_queue(
            agent_ctx,
            limit=config.politeness.max_extractions_per_run,
        )

    if agent_ctx is not None and config.mode in ("full", "arbitrate"):
        logger.info("Running arbitration phase...")
        result.arbiter = run_arbiter_batch(agent_ctx, limit=config.politeness.max_conflicts_per_run)

    if config.dry_run:
        logger.info("Dry run: store snapshot not saved")
    elif owns_store or config.store_path is not None:
        store.save(config.store_path)

    result.completed_at = datetime.now(timezone.utc)

    logger.info("Pipeline complete:\n%s", result.summary())

    return result
