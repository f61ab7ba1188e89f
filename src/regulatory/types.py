"""Data model for the regulatory truth pipeline.

Entities are plain dataclasses with ``to_dict``/``from_dict`` for JSON
persistence. Every "kind" field is a closed ``str`` enum so dispatch over it
can be exhaustive.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any


class ListingStrategy(str, Enum):
    SITEMAP_XML = "SITEMAP_XML"
    CRAWL = "CRAWL"
    PAGINATION = "PAGINATION"
    HTML_LIST = "HTML_LIST"


class EndpointPriority(str, Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class ScrapeFrequency(str, Enum):
    EVERY_RUN = "EVERY_RUN"
    DAILY = "DAILY"
    TWICE_WEEKLY = "TWICE_WEEKLY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"


class ItemStatus(str, Enum):
    PENDING = "PENDING"
    FETCHED = "FETCHED"
    PROCESSED = "PROCESSED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class FreshnessRisk(str, Enum):
    """How aggressively a discovered item is re-scanned."""

    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


# Lower sorts first
FRESHNESS_RISK_ORDER: dict[FreshnessRisk, int] = {
    FreshnessRisk.CRITICAL: 0,
    FreshnessRisk.HIGH: 1,
    FreshnessRisk.MEDIUM: 2,
    FreshnessRisk.LOW: 3,
}


class NodeType(str, Enum):
    HUB = "HUB"
    LEAF = "LEAF"
    ASSET = "ASSET"


class NodeRole(str, Enum):
    REGULATION = "REGULATION"
    NEWS_FEED = "NEWS_FEED"
    GUIDANCE = "GUIDANCE"
    FORM = "FORM"


class ContentClass(str, Enum):
    HTML = "HTML"
    PDF_TEXT = "PDF_TEXT"
    PDF_SCANNED = "PDF_SCANNED"
    DOCX = "DOCX"
    DOC = "DOC"
    XLSX = "XLSX"
    XLS = "XLS"
    JSON = "JSON"
    XML = "XML"
    UNKNOWN = "UNKNOWN"


class AuthorityLevel(str, Enum):
    """Hierarchy of regulatory sources, strongest first."""

    LAW = "LAW"
    GUIDANCE = "GUIDANCE"
    PROCEDURE = "PROCEDURE"
    PRACTICE = "PRACTICE"


# Lower rank = higher authority
AUTHORITY_RANK: dict[AuthorityLevel, int] = {
    AuthorityLevel.LAW: 1,
    AuthorityLevel.GUIDANCE: 2,
    AuthorityLevel.PROCEDURE: 3,
    AuthorityLevel.PRACTICE: 4,
}
UNKNOWN_AUTHORITY_RANK = 999


def authority_rank(level: AuthorityLevel | str | None) -> int:
    """Numeric rank of an authority level (1 is strongest, unknown is 999)."""
    if level is None:
        return UNKNOWN_AUTHORITY_RANK
    try:
        return AUTHORITY_RANK[AuthorityLevel(level)]
    except ValueError:
        return UNKNOWN_AUTHORITY_RANK


class RiskTier(str, Enum):
    """Business criticality of a rule; T0 is the most critical."""

    T0 = "T0"
    T1 = "T1"
    T2 = "T2"
    T3 = "T3"


class RuleStatus(str, Enum):
    DRAFT = "DRAFT"
    PENDING_REVIEW = "PENDING_REVIEW"
    APPROVED = "APPROVED"
    PUBLISHED = "PUBLISHED"
    REJECTED = "REJECTED"
    DEPRECATED = "DEPRECATED"


class ConflictType(str, Enum):
    VALUE_MISMATCH = "VALUE_MISMATCH"
    AUTHORITY_SUPERSEDE = "AUTHORITY_SUPERSEDE"
    TEMPORAL_CONFLICT = "TEMPORAL_CONFLICT"
    SOURCE_CONFLICT = "SOURCE_CONFLICT"


class ConflictStatus(str, Enum):
    OPEN = "OPEN"
    RESOLVED = "RESOLVED"
    ESCALATED = "ESCALATED"


class AgentType(str, Enum):
    EXTRACTOR = "EXTRACTOR"
    ARBITER = "ARBITER"


class AgentRunStatus(str, Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


def new_id(prefix: str) -> str:
    """Generate a unique entity id such as ``rule_3f2a...``."""
    return f"{prefix}_{uuid.uuid4().hex[:20]}"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _dt_to_str(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _dt_from_str(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _date_to_str(value: date | None) -> str | None:
    return value.isoformat() if value else None


def _date_from_str(value: str | None) -> date | None:
    return date.fromisoformat(value) if value else None


@dataclass
class DiscoveryEndpoint:
    """A configured regulatory source to discover documents from.

    Attributes:
        id: Endpoint identifier.
        domain: Host name, e.g. "narodne-novine.nn.hr".
        path: Listing path on the domain, e.g. "/sitemap.xml".
        name: Human-readable label.
        listing_strategy: How candidate URLs are resolved.
        priority: Endpoint priority, inherited by item risk where URL
            heuristics are silent.
        scrape_frequency: How often the endpoint itself is scraped.
        endpoint_type: Free-form type from configuration (SITEMAP_INDEX, ...).
        url_pattern: Optional regex that discovered URLs must match.
        pagination_pattern: Query template for PAGINATION, e.g. "?page={N}".
        metadata: Strategy-specific settings (allowed NN sitemap types, ...).
        is_active: Inactive endpoints are never scraped.
        consecutive_errors: Discovery failures since the last success.
        last_error: Message of the most recent discovery failure.
        last_scraped_at: When the listing was last scraped successfully.
        last_content_hash: Hash of the discovered URL set at the last scrape.
    """

    id: str
    domain: str
    path: str
    name: str
    listing_strategy: ListingStrategy
    priority: EndpointPriority = EndpointPriority.MEDIUM
    scrape_frequency: ScrapeFrequency = ScrapeFrequency.DAILY
    endpoint_type: str = ""
    url_pattern: str | None = None
    pagination_pattern: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    is_active: bool = True
    consecutive_errors: int = 0
    last_error: str | None = None
    last_scraped_at: datetime | None = None
    last_content_hash: str | None = None

    @property
    def url(self) -> str:
        return f"https://{self.domain}{self.path}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "domain": self.domain,
            "path": self.path,
            "name": self.name,
            "listing_strategy": self.listing_strategy.value,
            "priority": self.priority.value,
            "scrape_frequency": self.scrape_frequency.value,
            "endpoint_type": self.endpoint_type,
            "url_pattern": self.url_pattern,
            "pagination_pattern": self.pagination_pattern,
            "metadata": self.metadata,
            "is_active": self.is_active,
            "consecutive_errors": self.consecutive_errors,
            "last_error": self.last_error,
            "last_scraped_at": _dt_to_str(self.last_scraped_at),
            "last_content_hash": self.last_content_hash,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DiscoveryEndpoint":
        return cls(
            id=data["id"],
            domain=data["domain"],
            path=data["path"],
            name=data.get("name", data["domain"]),
            listing_strategy=ListingStrategy(data["listing_strategy"]),
            priority=EndpointPriority(data.get("priority", "MEDIUM")),
            scrape_frequency=ScrapeFrequency(data.get("scrape_frequency", "DAILY")),
            endpoint_type=data.get("endpoint_type", ""),
            url_pattern=data.get("url_pattern"),
            pagination_pattern=data.get("pagination_pattern"),
            metadata=data.get("metadata", {}),
            is_active=data.get("is_active", True),
            consecutive_errors=data.get("consecutive_errors", 0),
            last_error=data.get("last_error"),
            last_scraped_at=_dt_from_str(data.get("last_scraped_at")),
            last_content_hash=data.get("last_content_hash"),
        )


@dataclass
class DiscoveredItem:
    """One candidate URL found under an endpoint.

    ``status`` only moves forward (PENDING → FETCHED → PROCESSED) except for
    PENDING ↔ FAILED retries, which are bounded by ``retry_count``.
    """

    id: str
    endpoint_id: str
    url: str
    title: str | None = None
    publication_date: date | None = None
    status: ItemStatus = ItemStatus.PENDING
    content_hash: str | None = None
    change_frequency: float = 0.5
    scan_count: int = 0
    freshness_risk: FreshnessRisk = FreshnessRisk.MEDIUM
    next_scan_due: datetime | None = None
    last_changed_at: datetime | None = None
    node_type: NodeType = NodeType.LEAF
    node_role: NodeRole | None = None
    retry_count: int = 0
    error_message: str | None = None
    evidence_id: str | None = None
    processed_hash: str | None = None  # content hash of the last successful extraction
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "endpoint_id": self.endpoint_id,
            "url": self.url,
            "title": self.title,
            "publication_date": _date_to_str(self.publication_date),
            "status": self.status.value,
            "content_hash": self.content_hash,
            "change_frequency": self.change_frequency,
            "scan_count": self.scan_count,
            "freshness_risk": self.freshness_risk.value,
            "next_scan_due": _dt_to_str(self.next_scan_due),
            "last_changed_at": _dt_to_str(self.last_changed_at),
            "node_type": self.node_type.value,
            "node_role": self.node_role.value if self.node_role else None,
            "retry_count": self.retry_count,
            "error_message": self.error_message,
            "evidence_id": self.evidence_id,
            "processed_hash": self.processed_hash,
            "created_at": _dt_to_str(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DiscoveredItem":
        return cls(
            id=data["id"],
            endpoint_id=data["endpoint_id"],
            url=data["url"],
            title=data.get("title"),
            publication_date=_date_from_str(data.get("publication_date")),
            status=ItemStatus(data.get("status", "PENDING")),
            content_hash=data.get("content_hash"),
            change_frequency=data.get("change_frequency", 0.5),
            scan_count=data.get("scan_count", 0),
            freshness_risk=FreshnessRisk(data.get("freshness_risk", "MEDIUM")),
            next_scan_due=_dt_from_str(data.get("next_scan_due")),
            last_changed_at=_dt_from_str(data.get("last_changed_at")),
            node_type=NodeType(data.get("node_type", "LEAF")),
            node_role=NodeRole(data["node_role"]) if data.get("node_role") else None,
            retry_count=data.get("retry_count", 0),
            error_message=data.get("error_message"),
            evidence_id=data.get("evidence_id"),
            processed_hash=data.get("processed_hash"),
            created_at=_dt_from_str(data.get("created_at")) or utc_now(),
        )


@dataclass
class Evidence:
    """Immutable snapshot of fetched content.

    ``raw_content`` holds text for textual formats and base64 for binary
    ones (see ``raw_encoding``). Only ``derived_text`` may be attached after
    creation.
    """

    id: str
    url: str
    content_hash: str
    raw_content: str
    content_class: ContentClass
    raw_encoding: str = "utf-8"  # "utf-8" | "base64"
    content_type: str | None = None
    fetched_at: datetime = field(default_factory=utc_now)
    has_changed: bool = False
    change_summary: str | None = None
    derived_text: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "url": self.url,
            "content_hash": self.content_hash,
            "raw_content": self.raw_content,
            "content_class": self.content_class.value,
            "raw_encoding": self.raw_encoding,
            "content_type": self.content_type,
            "fetched_at": _dt_to_str(self.fetched_at),
            "has_changed": self.has_changed,
            "change_summary": self.change_summary,
            "derived_text": self.derived_text,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Evidence":
        return cls(
            id=data["id"],
            url=data["url"],
            content_hash=data["content_hash"],
            raw_content=data["raw_content"],
            content_class=ContentClass(data["content_class"]),
            raw_encoding=data.get("raw_encoding", "utf-8"),
            content_type=data.get("content_type"),
            fetched_at=_dt_from_str(data.get("fetched_at")) or utc_now(),
            has_changed=data.get("has_changed", False),
            change_summary=data.get("change_summary"),
            derived_text=data.get("derived_text"),
        )


@dataclass
class SourcePointer:
    """A quoted claim inside a piece of evidence."""

    id: str
    evidence_id: str
    exact_quote: str
    extracted_value: str | None = None
    confidence: float = 1.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "evidence_id": self.evidence_id,
            "exact_quote": self.exact_quote,
            "extracted_value": self.extracted_value,
            "confidence": self.confidence,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SourcePointer":
        return cls(
            id=data["id"],
            evidence_id=data["evidence_id"],
            exact_quote=data["exact_quote"],
            extracted_value=data.get("extracted_value"),
            confidence=data.get("confidence", 1.0),
        )


@dataclass
class RegulatoryRule:
    """A versioned, concept-scoped regulatory assertion.

    Several rules may share ``concept_slug`` across time and authority.
    ``overrides`` lists ids of rules this one overrides (lex specialis).
    ``status`` is only ever changed through the status gate.
    """

    id: str
    concept_slug: str
    value: str
    value_type: str = "text"
    authority_level: AuthorityLevel = AuthorityLevel.GUIDANCE
    risk_tier: RiskTier = RiskTier.T2
    effective_from: date | None = None
    effective_until: date | None = None
    confidence: float = 1.0
    status: RuleStatus = RuleStatus.DRAFT
    title: str = ""
    source_pointer_ids: list[str] = field(default_factory=list)
    overrides: list[str] = field(default_factory=list)
    review_notes: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "concept_slug": self.concept_slug,
            "value": self.value,
            "value_type": self.value_type,
            "authority_level": self.authority_level.value,
            "risk_tier": self.risk_tier.value,
            "effective_from": _date_to_str(self.effective_from),
            "effective_until": _date_to_str(self.effective_until),
            "confidence": self.confidence,
            "status": self.status.value,
            "title": self.title,
            "source_pointer_ids": list(self.source_pointer_ids),
            "overrides": list(self.overrides),
            "review_notes": self.review_notes,
            "created_at": _dt_to_str(self.created_at),
            "updated_at": _dt_to_str(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RegulatoryRule":
        return cls(
            id=data["id"],
            concept_slug=data["concept_slug"],
            value=data["value"],
            value_type=data.get("value_type", "text"),
            authority_level=AuthorityLevel(data.get("authority_level", "GUIDANCE")),
            risk_tier=RiskTier(data.get("risk_tier", "T2")),
            effective_from=_date_from_str(data.get("effective_from")),
            effective_until=_date_from_str(data.get("effective_until")),
            confidence=data.get("confidence", 1.0),
            status=RuleStatus(data.get("status", "DRAFT")),
            title=data.get("title", ""),
            source_pointer_ids=list(data.get("source_pointer_ids", [])),
            overrides=list(data.get("overrides", [])),
            review_notes=data.get("review_notes"),
            created_at=_dt_from_str(data.get("created_at")) or utc_now(),
            updated_at=_dt_from_str(data.get("updated_at")) or utc_now(),
        )


@dataclass
class RegulatoryConflict:
    """A disagreement between two rules, or among a set of source pointers.

    For rule-vs-rule conflicts ``item_a_id`` is the existing rule and
    ``item_b_id`` the newly extracted one.
    """

    id: str
    conflict_type: ConflictType
    item_a_id: str | None = None
    item_b_id: str | None = None
    source_pointer_ids: list[str] = field(default_factory=list)
    status: ConflictStatus = ConflictStatus.OPEN
    description: str = ""
    resolution: dict[str, Any] | None = None
    confidence: float | None = None
    requires_human_review: bool = False
    human_review_reason: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    resolved_at: datetime | None = None

    def involves_pair(self, first_id: str, second_id: str) -> bool:
        """True if this conflict is between the two ids, in either order."""
        return {self.item_a_id, self.item_b_id} == {first_id, second_id}

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "conflict_type": self.conflict_type.value,
            "item_a_id": self.item_a_id,
            "item_b_id": self.item_b_id,
            "source_pointer_ids": list(self.source_pointer_ids),
            "status": self.status.value,
            "description": self.description,
            "resolution": self.resolution,
            "confidence": self.confidence,
            "requires_human_review": self.requires_human_review,
            "human_review_reason": self.human_review_reason,
            "created_at": _dt_to_str(self.created_at),
            "resolved_at": _dt_to_str(self.resolved_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RegulatoryConflict":
        return cls(
            id=data["id"],
            conflict_type=ConflictType(data["conflict_type"]),
            item_a_id=data.get("item_a_id"),
            item_b_id=data.get("item_b_id"),
            source_pointer_ids=list(data.get("source_pointer_ids", [])),
            status=ConflictStatus(data.get("status", "OPEN")),
            description=data.get("description", ""),
            resolution=data.get("resolution"),
            confidence=data.get("confidence"),
            requires_human_review=data.get("requires_human_review", False),
            human_review_reason=data.get("human_review_reason"),
            created_at=_dt_from_str(data.get("created_at")) or utc_now(),
            resolved_at=_dt_from_str(data.get("resolved_at")),
        )


@dataclass
class AgentRun:
    """Append-only audit record of one agent invocation."""

    id: str
    agent_type: AgentType
    status: AgentRunStatus = AgentRunStatus.RUNNING
    input: dict[str, Any] = field(default_factory=dict)
    output: dict[str, Any] | None = None
    error: str | None = None
    attempts: int = 0
    started_at: datetime = field(default_factory=utc_now)
    completed_at: datetime | None = None
    evidence_id: str | None = None
    rule_id: str | None = None
    conflict_id: str | None = None

    @property
    def duration_ms(self) -> int | None:
        if self.completed_at is None:
            return None
        return int((self.completed_at - self.started_at).total_seconds() * 1000)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "agent_type": self.agent_type.value,
            "status": self.status.value,
            "input": self.input,
            "output": self.output,
            "error": self.error,
            "attempts": self.attempts,
            "started_at": _dt_to_str(self.started_at),
            "completed_at": _dt_to_str(self.completed_at),
            "duration_ms": self.duration_ms,
            "evidence_id": self.evidence_id,
            "rule_id": self.rule_id,
            "conflict_id": self.conflict_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AgentRun":
        return cls(
            id=data["id"],
            agent_type=AgentType(data["agent_type"]),
            status=AgentRunStatus(data.get("status", "RUNNING")),
            input=data.get("input", {}),
            output=data.get("output"),
            error=data.get("error"),
            attempts=data.get("attempts", 0),
            started_at=_dt_from_str(data.get("started_at")) or utc_now(),
            completed_at=_dt_from_str(data.get("completed_at")),
            evidence_id=data.get("evidence_id"),
            rule_id=data.get("rule_id"),
            conflict_id=data.get("conflict_id"),
        )
