"""Fetch stage: turn PENDING items into immutable evidence.

For each scheduled item the fetcher:

1. Fetches the URL through the domain rate limiter (``fetch_with_retry``)
2. Classifies the content by extension, then by response content type
3. Parses binary documents to text; PDFs with too little text per page
   are classified as scanned
4. Upserts evidence keyed by (url, content_hash) and records a diff summary
   when the content changed since the previous fetch
5. Routes new evidence to the OCR queue (scanned PDFs) or the extraction
   queue (everything with derived text)

Item status is only ever written through the scheduler helpers.
"""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass, field
from datetime import datetime

from src.parsing.content_hash import hash_content, summarize_diff
from src.parsing.documents import (
    ParserError,
    detect_document_kind,
    is_scanned_pdf,
    parse_binary,
    parse_html,
)
from src.parsing.robots import RobotsChecker
from src.regulatory.errors import ContentError, EntityNotFoundError, RegulatoryPipelineError
from src.regulatory.fetching.http import FetchResponse, HttpFetcher, fetch_with_retry
from src.regulatory.fetching.rate_limiter import DomainRateLimiter
from src.regulatory.store import EXTRACT_QUEUE, OCR_QUEUE, RegulatoryStore
from src.regulatory.types import (
    ContentClass,
    DiscoveredItem,
    Evidence,
    ItemStatus,
    new_id,
    utc_now,
)

from .config import PipelinePoliteness
from .scheduler import (
    DomainScheduler,
    fetch_due_items,
    list_fetchable_items,
    record_fetch_failure,
    record_scan_error,
    record_scan_result,
    requeue_for_scan,
    transition_item,
)

logger = logging.getLogger(__name__)

_KIND_CLASSES = {
    "html": ContentClass.HTML,
    "pdf": ContentClass.PDF_TEXT,
    "docx": ContentClass.DOCX,
    "doc": ContentClass.DOC,
    "xlsx": ContentClass.XLSX,
    "xls": ContentClass.XLS,
    "json": ContentClass.JSON,
    "xml": ContentClass.XML,
    "unknown": ContentClass.UNKNOWN,
}

# Kinds stored as text rather than base64
_TEXT_KINDS = frozenset({"html", "json", "xml"})

# Kinds with a text parser
_PARSEABLE_KINDS = frozenset({"html", "pdf", "docx", "json", "xml"})


@dataclass(frozen=True)
class ClassifiedContent:
    kind: str
    content_class: ContentClass
    derived_text: str | None = None


@dataclass
class ItemFetchResult:
    """Outcome of fetching one item.

    ``outcome`` is one of:
    - "fetched": new evidence was stored
    - "unchanged": content matches existing evidence
    - "retry": transient failure, the item stays PENDING
    - "failed": the item is now FAILED
    - "deferred": the domain's circuit breaker is open
    - "skipped": disallowed by robots.txt
    """

    item_id: str
    url: str
    outcome: str
    evidence_id: str | None = None
    content_class: ContentClass | None = None
    has_changed: bool = False
    queued_to: str | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "url": self.url,
            "outcome": self.outcome,
            "evidence_id": self.evidence_id,
            "content_class": self.content_class.value if self.content_class else None,
            "has_changed": self.has_changed,
            "queued_to": self.queued_to,
            "error": self.error,
        }


@dataclass
class FetchResult:
    """Result of one fetch pass."""

    items: list[ItemFetchResult] = field(default_factory=list)
    requeued_due: int = 0

    def _count(self, outcome: str) -> int:
        return sum(1 for r in self.items if r.outcome == outcome)

    @property
    def items_processed(self) -> int:
        return len(self.items)

    @property
    def fetched(self) -> int:
        return self._count("fetched")

    @property
    def unchanged(self) -> int:
        return self._count("unchanged")

    @property
    def failed(self) -> int:
        return self._count("failed")

    @property
    def retrying(self) -> int:
        return self._count("retry")

    @property
    def deferred(self) -> int:
        return self._count("deferred")

    @property
    def changed(self) -> int:
        return sum(1 for r in self.items if r.has_changed)

    @property
    def queued_for_ocr(self) -> int:
        return sum(1 for r in self.items if r.queued_to == OCR_QUEUE)

    @property
    def queued_for_extraction(self) -> int:
        return sum(1 for r in self.items if r.queued_to == EXTRACT_QUEUE)

    def to_dict(self) -> dict:
        return {
            "items_processed": self.items_processed,
            "requeued_due": self.requeued_due,
            "fetched": self.fetched,
            "unchanged": self.unchanged,
            "changed": self.changed,
            "retrying": self.retrying,
            "failed": self.failed,
            "deferred": self.deferred,
            "queued_for_ocr": self.queued_for_ocr,
            "queued_for_extraction": self.queued_for_extraction,
        }


def classify_content(url: str, response: FetchResponse) -> ClassifiedContent:
    """Classify a response and derive its text.

    Raises:
        ContentError: If a supported document cannot be parsed.
    """
    kind = detect_document_kind(url, response.content_type)
    content_class = _KIND_CLASSES[kind]

    if kind not in _PARSEABLE_KINDS:
        logger.info("No text parser for %s content at %s", kind, url)
        return ClassifiedContent(kind=kind, content_class=content_class)

    try:
        if kind == "html":
            parsed = parse_html(response.text)
        elif kind in ("json", "xml"):
            return ClassifiedContent(kind=kind, content_class=content_class, derived_text=response.text)
        else:
            parsed = parse_binary(response.body, kind)
    except ParserError as exc:
        raise ContentError(f"Could not parse {kind} at {url}: {exc}") from exc

    if kind == "pdf" and is_scanned_pdf(parsed):
        logger.info(
            "Scanned PDF detected at %s (%.1f chars/page)", url, parsed.chars_per_page
        )
        return ClassifiedContent(kind=kind, content_class=ContentClass.PDF_SCANNED)

    return ClassifiedContent(kind=kind, content_class=content_class, derived_text=parsed.text)


def _previous_text(store: RegulatoryStore, item: DiscoveredItem) -> str | None:
    if item.evidence_id is None:
        return None
    try:
        previous = store.get_evidence(item.evidence_id)
    except EntityNotFoundError:
        return None
    if previous.derived_text is not None:
        return previous.derived_text
    if previous.raw_encoding == "utf-8":
        return previous.raw_content
    return None


def _build_evidence(
    item: DiscoveredItem,
    response: FetchResponse,
    classified: ClassifiedContent,
    now: datetime,
) -> Evidence:
    if classified.kind in _TEXT_KINDS:
        raw_content = response.text
        raw_encoding = "utf-8"
        content_hash = hash_content(raw_content, response.content_type)
    else:
        raw_content = base64.b64encode(response.body).decode("ascii")
        raw_encoding = "base64"
        content_hash = hash_content(response.body)

    return Evidence(
        id=new_id("evidence"),
        url=item.url,
        content_hash=content_hash,
        raw_content=raw_content,
        raw_encoding=raw_encoding,
        content_class=classified.content_class,
        content_type=response.content_type,
        fetched_at=now,
    )


def _record_failure(
    store: RegulatoryStore,
    item: DiscoveredItem,
    error: str,
    retryable: bool,
    politeness: PipelinePoliteness,
    now: datetime,
) -> ItemFetchResult:
    updated = record_fetch_failure(store, item, error, retryable, politeness.max_fetch_attempts)
    if item.scan_count > 0:
        record_scan_error(store, updated, error, politeness.scan_error_cooldown, now)
    outcome = "retry" if updated.status == ItemStatus.PENDING else "failed"
    return ItemFetchResult(item_id=item.id, url=item.url, outcome=outcome, error=error)


def process_item(
    store: RegulatoryStore,
    item: DiscoveredItem,
    fetcher: HttpFetcher,
    limiter: DomainRateLimiter,
    politeness: PipelinePoliteness | None = None,
    robots: RobotsChecker | None = None,
    now: datetime | None = None,
) -> ItemFetchResult:
    """Fetch one PENDING item and store its evidence."""
    politeness = politeness or PipelinePoliteness()
    now = now or utc_now()

    if item.status != ItemStatus.PENDING:
        raise ValueError(f"Only PENDING items can be fetched, {item.id} is {item.status.value}")

    if robots is not None and not robots.is_allowed(item.url):
        transition_item(store, item, ItemStatus.SKIPPED, error_message="Disallowed by robots.txt")
        return ItemFetchResult(item_id=item.id, url=item.url, outcome="skipped")

    outcome = fetch_with_retry(fetcher, limiter, item.url)
    if outcome.circuit_open:
        return ItemFetchResult(item_id=item.id, url=item.url, outcome="deferred", error=outcome.error)
    if not outcome.ok or outcome.response is None:
        return _record_failure(
            store, item, outcome.error or "Empty response", outcome.retryable, politeness, now
        )

    response = outcome.response
    try:
        classified = classify_content(item.url, response)
    except ContentError as exc:
        return _record_failure(store, item, str(exc), False, politeness, now)

    candidate = _build_evidence(item, response, classified, now)
    has_changed = item.content_hash is not None and item.content_hash != candidate.content_hash
    if has_changed:
        previous_text = _previous_text(store, item)
        new_text = classified.derived_text or (
            candidate.raw_content if candidate.raw_encoding == "utf-8" else ""
        )
        if previous_text is not None:
            candidate.change_summary = summarize_diff(previous_text, new_text)
        else:
            candidate.change_summary = "Content hash changed"
        candidate.has_changed = True

    evidence, created = store.upsert_evidence(candidate)
    result = ItemFetchResult(
        item_id=item.id,
        url=item.url,
        outcome="fetched" if created else "unchanged",
        evidence_id=evidence.id,
        content_class=evidence.content_class,
        has_changed=has_changed,
    )

    extracted = item.processed_hash == evidence.content_hash
    payload = {"evidence_id": evidence.id, "item_id": item.id}
    if created:
        if evidence.content_class == ContentClass.PDF_SCANNED:
            store.enqueue(OCR_QUEUE, payload)
            result.queued_to = OCR_QUEUE
        elif classified.derived_text is not None:
            store.attach_derived_text(evidence.id, classified.derived_text)
            store.enqueue(EXTRACT_QUEUE, payload)
            result.queued_to = EXTRACT_QUEUE
    elif (
        not extracted
        and evidence.derived_text
        and not store.queue_contains(EXTRACT_QUEUE, evidence_id=evidence.id)
    ):
        store.enqueue(EXTRACT_QUEUE, payload)
        result.queued_to = EXTRACT_QUEUE
        logger.info("Re-queued unextracted evidence %s for %s", evidence.id, item.url)

    record_scan_result(
        store,
        item,
        evidence.content_hash,
        evidence_id=evidence.id,
        now=now,
        jitter_fraction=politeness.scan_jitter_fraction,
        extracted=extracted,
    )
    logger.info(
        "Fetched %s as %s (%s%s)",
        item.url,
        evidence.content_class.value,
        result.outcome,
        ", changed" if has_changed else "",
    )
    return result


def fetch_pending_items(
    store: RegulatoryStore,
    fetcher: HttpFetcher,
    limiter: DomainRateLimiter,
    politeness: PipelinePoliteness | None = None,
    robots: RobotsChecker | None = None,
    now: datetime | None = None,
) -> FetchResult:
    """Fetch PENDING items in domain-fair order.

    Items due for a re-scan are re-queued first so that every fetch starts
    from PENDING. PENDING items still inside a scan-error cooldown wait for
    a later run. Per-item failures are isolated.
    """
    politeness = politeness or PipelinePoliteness()
    now = now or utc_now()
    result = FetchResult()

    for item in fetch_due_items(store, limit=politeness.max_items_per_run, now=now):
        requeue_for_scan(store, item, now)
        result.requeued_due += 1

    scheduler = DomainScheduler(politeness=politeness)
    scheduler.add_items(list_fetchable_items(store, now), now)

    for scheduled in scheduler.get_schedule():
        item = scheduled.item
        try:
            result.items.append(
                process_item(store, item, fetcher, limiter, politeness, robots, now)
            )
        except RegulatoryPipelineError as exc:
            logger.exception("Failed to process item %s (%s)", item.id, item.url)
            result.items.append(
                ItemFetchResult(item_id=item.id, url=item.url, outcome="failed", error=str(exc))
            )

    if scheduler.domains_with_pending:
        logger.info(
            "Per-run caps reached; items left for domains: %s",
            ", ".join(scheduler.domains_with_pending),
        )
    return result
