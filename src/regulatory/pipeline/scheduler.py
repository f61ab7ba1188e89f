"""Adaptive re-scan scheduling and domain-fair ordering of fetch work.

This module owns every write to ``DiscoveredItem.status`` and implements:

1. Velocity: an EWMA estimate of how often an item's content changes
2. Adaptive intervals: re-scan sooner for volatile or high-risk items
3. Domain fairness: round-robin across domains with per-domain caps
4. Error cooldown: a fixed push-back of the next scan after a failure
"""

from __future__ import annotations

import logging
import random
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable, Iterator, Sequence

from src.parsing.urls import extract_domain
from src.regulatory.errors import InvariantViolationError
from src.regulatory.store import RegulatoryStore
from src.regulatory.types import (
    FRESHNESS_RISK_ORDER,
    DiscoveredItem,
    DiscoveryEndpoint,
    FreshnessRisk,
    ItemStatus,
    utc_now,
)

from .config import (
    MAX_SCAN_INTERVAL,
    MIN_SCAN_INTERVAL,
    RISK_BASE_INTERVALS,
    PipelinePoliteness,
    get_scrape_interval,
)

logger = logging.getLogger(__name__)

# Floor on the weight of a new observation once an item is well observed
MIN_VELOCITY_ALPHA = 0.1

ITEM_TRANSITIONS: dict[ItemStatus, frozenset[ItemStatus]] = {
    ItemStatus.PENDING: frozenset(
        {ItemStatus.FETCHED, ItemStatus.PROCESSED, ItemStatus.FAILED, ItemStatus.SKIPPED}
    ),
    ItemStatus.FETCHED: frozenset({ItemStatus.PROCESSED, ItemStatus.PENDING}),
    ItemStatus.PROCESSED: frozenset({ItemStatus.PENDING}),
    ItemStatus.FAILED: frozenset({ItemStatus.PENDING}),
    ItemStatus.SKIPPED: frozenset(),
}


def transition_item(
    store: RegulatoryStore,
    item: DiscoveredItem,
    to_status: ItemStatus,
    **changes: Any,
) -> DiscoveredItem:
    """Move an item to ``to_status``, applying ``changes`` atomically.

    Same-state updates are always allowed. The write is a compare-and-set
    against ``item.status``, so a stale item is refused.

    Raises:
        InvariantViolationError: If the transition is not permitted or the
            stored status no longer matches ``item.status``.
    """
    if to_status != item.status and to_status not in ITEM_TRANSITIONS[item.status]:
        raise InvariantViolationError(
            f"Illegal item status transition for {item.id}: "
            f"{item.status.value} → {to_status.value}"
        )
    return store.compare_and_set_item_status(item.id, item.status, to_status, **changes)


def update_velocity(old_frequency: float, scan_count: int, changed: bool) -> float:
    """New change-frequency estimate after one scan.

    The estimate moves toward 1.0 when the content changed and toward 0.0
    when it did not. The weight of the new observation is 1/(scan_count+1),
    floored at MIN_VELOCITY_ALPHA, so well-observed items move slowly.
    """
    alpha = max(MIN_VELOCITY_ALPHA, 1.0 / (max(scan_count, 0) + 1))
    target = 1.0 if changed else 0.0
    updated = old_frequency + alpha * (target - old_frequency)
    return min(1.0, max(0.0, updated))


def calculate_next_scan(
    frequency: float,
    freshness_risk: FreshnessRisk,
    now: datetime | None = None,
    jitter_fraction: float = 0.1,
) -> datetime:
    """When an item should next be scanned.

    The risk tier sets a base interval which the velocity scales by
    ``2.0 - 1.5 * frequency`` (x2 for static items, x0.5 for items that
    change on every scan), clamped to [MIN_SCAN_INTERVAL, MAX_SCAN_INTERVAL].
    The result is decreasing in frequency and in risk.

    Args:
        frequency: Change-frequency estimate in [0, 1].
        freshness_risk: Item risk tier.
        now: Reference time. Defaults to the current UTC time.
        jitter_fraction: Random +/- fraction of the interval; 0 disables.

    Returns:
        datetime: The next-scan-due timestamp.
    """
    now = now or utc_now()
    frequency = min(1.0, max(0.0, frequency))
    base = RISK_BASE_INTERVALS[freshness_risk]
    interval = base * (2.0 - 1.5 * frequency)

    if jitter_fraction > 0:
        interval = interval * (1.0 + random.uniform(-jitter_fraction, jitter_fraction))

    interval = min(max(interval, MIN_SCAN_INTERVAL), MAX_SCAN_INTERVAL)
    return now + interval


def fetch_due_items(
    store: RegulatoryStore,
    limit: int = 50,
    now: datetime | None = None,
) -> list[DiscoveredItem]:
    """Items that completed first ingestion and are due for a re-scan.

    PENDING items are excluded. Results are ordered most critical first,
    then by how long they have been due.
    """
    now = now or utc_now()
    due = [
        item
        for item in store.list_items(statuses=(ItemStatus.FETCHED, ItemStatus.PROCESSED))
        if item.next_scan_due is not None and item.next_scan_due <= now
    ]
    due.sort(key=lambda item: (FRESHNESS_RISK_ORDER[item.freshness_risk], item.next_scan_due))
    return due[:limit]


def requeue_for_scan(
    store: RegulatoryStore,
    item: DiscoveredItem,
    now: datetime | None = None,
) -> DiscoveredItem:
    """Put a previously ingested item back in PENDING to check for drift."""
    return transition_item(
        store,
        item,
        ItemStatus.PENDING,
        retry_count=0,
        error_message=None,
        next_scan_due=now or utc_now(),
    )


def in_error_cooldown(item: DiscoveredItem, now: datetime | None = None) -> bool:
    """Whether a PENDING item is waiting out a scan-error cooldown."""
    now = now or utc_now()
    return (
        item.status == ItemStatus.PENDING
        and item.next_scan_due is not None
        and item.next_scan_due > now
    )


def list_fetchable_items(store: RegulatoryStore, now: datetime | None = None) -> list[DiscoveredItem]:
    """PENDING items that may be fetched now."""
    now = now or utc_now()
    return [
        item
        for item in store.list_items(statuses=(ItemStatus.PENDING,))
        if not in_error_cooldown(item, now)
    ]


def record_scan_result(
    store: RegulatoryStore,
    item: DiscoveredItem,
    new_hash: str,
    evidence_id: str | None = None,
    now: datetime | None = None,
    jitter_fraction: float = 0.1,
    extracted: bool = False,
) -> DiscoveredItem:
    """Record a successful fetch: velocity, scan count and next due time.

    The item becomes FETCHED, or PROCESSED when the content is unchanged and
    ``extracted`` says it was already extracted.
    """
    now = now or utc_now()
    changed = item.content_hash is not None and item.content_hash != new_hash
    frequency = item.change_frequency
    if item.scan_count > 0 or item.content_hash is not None:
        frequency = update_velocity(item.change_frequency, item.scan_count, changed)

    changes: dict[str, Any] = {
        "content_hash": new_hash,
        "change_frequency": frequency,
        "scan_count": item.scan_count + 1,
        "next_scan_due": calculate_next_scan(frequency, item.freshness_risk, now, jitter_fraction),
        "retry_count": 0,
        "error_message": None,
    }
    if changed or item.content_hash is None:
        changes["last_changed_at"] = now
    if evidence_id is not None:
        changes["evidence_id"] = evidence_id

    logger.debug(
        "Scanned %s (changed=%s, velocity %.2f → %.2f)",
        item.url,
        changed,
        item.change_frequency,
        frequency,
    )
    to_status = ItemStatus.FETCHED
    if extracted and not changed and item.content_hash is not None:
        to_status = ItemStatus.PROCESSED
    return transition_item(store, item, to_status, **changes)


def record_scan_error(
    store: RegulatoryStore,
    item: DiscoveredItem,
    error: str,
    cooldown: timedelta = timedelta(hours=1),
    now: datetime | None = None,
) -> DiscoveredItem:
    """Record a failed scan and push the next due time back by ``cooldown``.

    The item's status is left unchanged. A PENDING item is held back by
    ``list_fetchable_items`` until the cooldown has passed.
    """
    now = now or utc_now()
    logger.info("Scan error for %s: %s (next attempt after %s)", item.url, error, cooldown)
    return store.update_item(item.id, error_message=error, next_scan_due=now + cooldown)


def record_fetch_failure(
    store: RegulatoryStore,
    item: DiscoveredItem,
    error: str,
    retryable: bool,
    max_attempts: int = 3,
) -> DiscoveredItem:
    """Count a failed fetch of a PENDING item.

    Retryable failures keep the item PENDING until ``max_attempts`` is
    reached; content errors and exhausted retries make it FAILED.
    """
    retry_count = item.retry_count + 1
    if retryable and retry_count < max_attempts:
        return transition_item(
            store, item, ItemStatus.PENDING, retry_count=retry_count, error_message=error
        )
    logger.warning("Item %s failed permanently after %d attempt(s): %s", item.url, retry_count, error)
    return transition_item(store, item, ItemStatus.FAILED, retry_count=retry_count, error_message=error)


def is_endpoint_due(endpoint: DiscoveryEndpoint, now: datetime | None = None) -> bool:
    """Whether an active endpoint's listing should be scraped this run."""
    if not endpoint.is_active:
        return False
    if endpoint.last_scraped_at is None:
        return True
    now = now or utc_now()
    return now - endpoint.last_scraped_at >= get_scrape_interval(endpoint.scrape_frequency)


@dataclass
class ScheduledItem:
    """A discovered item scheduled for fetching with domain metadata.

    Attributes:
        item: The item to fetch.
        domain: Extracted domain for rate limiting.
        action: "initial" for PENDING first fetches, "rescan" otherwise.
        priority: Priority score (lower = higher priority).
    """

    item: DiscoveredItem
    domain: str
    action: str  # "initial" | "rescan"
    priority: float = 0.0

    @classmethod
    def from_item(cls, item: DiscoveredItem, now: datetime | None = None) -> "ScheduledItem":
        now = now or utc_now()
        action = "initial" if item.scan_count == 0 else "rescan"

        priority = FRESHNESS_RISK_ORDER[item.freshness_risk] * 100.0
        if action == "initial":
            priority -= 50
        if item.next_scan_due is not None:
            overdue = now - item.next_scan_due
            priority -= overdue.total_seconds() / 3600  # Hours overdue

        return cls(item=item, domain=extract_domain(item.url), action=action, priority=priority)


def group_by_domain(items: Iterable[DiscoveredItem]) -> dict[str, list[DiscoveredItem]]:
    grouped: dict[str, list[DiscoveredItem]] = defaultdict(list)
    for item in items:
        grouped[extract_domain(item.url)].append(item)
    return dict(grouped)


@dataclass
class DomainScheduler:
    """Orders fetch work fairly across domains.

    The scheduler ensures:
    1. No more than max_domain_requests_per_run items from one domain
    2. Round-robin ordering across domains
    3. Total items limited to max_items_per_run

    Usage:
        scheduler = DomainScheduler(politeness)
        scheduler.add_items(items)

        for scheduled in scheduler.get_schedule():
            process(scheduled.item)
    """

    politeness: PipelinePoliteness
    _items_by_domain: dict[str, list[ScheduledItem]] = field(
        default_factory=lambda: defaultdict(list)
    )
    _seen_ids: set[str] = field(default_factory=set)
    _total_scheduled: int = 0

    def add_items(self, items: Sequence[DiscoveredItem], now: datetime | None = None) -> int:
        """Add items, ignoring ones already scheduled. Returns the number added."""
        fresh: list[DiscoveredItem] = []
        for item in items:
            if item.id in self._seen_ids:
                continue
            self._seen_ids.add(item.id)
            fresh.append(item)

        for domain, domain_items in group_by_domain(fresh).items():
            self._items_by_domain[domain].extend(
                ScheduledItem.from_item(item, now) for item in domain_items
            )

        for domain_items in self._items_by_domain.values():
            domain_items.sort(key=lambda s: s.priority)

        return len(fresh)

    def get_schedule(self) -> Iterator[ScheduledItem]:
        """Yield items round-robin across domains within the per-run caps."""
        max_items = self.politeness.max_items_per_run
        max_per_domain = self.politeness.max_domain_requests_per_run

        yielded = 0
        domain_yielded: dict[str, int] = defaultdict(int)
        domains = list(self._items_by_domain.keys())
        if not domains:
            return

        domain_index = 0
        empty_rounds = 0

        while yielded < max_items and empty_rounds < len(domains):
            domain = domains[domain_index]
            domain_items = self._items_by_domain[domain]

            if domain_items and domain_yielded[domain] < max_per_domain:
                scheduled = domain_items.pop(0)
                domain_yielded[domain] += 1
                yielded += 1
                empty_rounds = 0
                yield scheduled
            else:
                empty_rounds += 1

            domain_index = (domain_index + 1) % len(domains)

        self._total_scheduled = yielded

    @property
    def total_scheduled(self) -> int:
        return self._total_scheduled

    @property
    def domains_with_pending(self) -> list[str]:
        return [domain for domain, items in self._items_by_domain.items() if items]
