"""Human review queue.

Requests are fire-and-forget from the pipeline's point of view: a failure to
create or deliver a review request is logged and never undoes the state
change that triggered it.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable

from .types import ConflictType, new_id, utc_now

logger = logging.getLogger(__name__)


class ReviewReason(str, Enum):
    LOW_OCR_CONFIDENCE = "LOW_OCR_CONFIDENCE"
    OCR_FAILED = "OCR_FAILED"
    LOW_EXTRACTION_CONFIDENCE = "LOW_EXTRACTION_CONFIDENCE"
    INVALID_DOMAIN = "INVALID_DOMAIN"
    EVIDENCE_QUALITY = "EVIDENCE_QUALITY"
    T0_RULE_APPROVAL = "T0_RULE_APPROVAL"
    T1_RULE_APPROVAL = "T1_RULE_APPROVAL"
    LOW_RULE_CONFIDENCE = "LOW_RULE_CONFIDENCE"
    CONFLICT_UNRESOLVABLE = "CONFLICT_UNRESOLVABLE"
    CONFLICT_BOTH_T0 = "CONFLICT_BOTH_T0"
    CONFLICT_EQUAL_AUTHORITY = "CONFLICT_EQUAL_AUTHORITY"
    ARBITER_LOW_CONFIDENCE = "ARBITER_LOW_CONFIDENCE"
    SOURCE_CONFLICT = "SOURCE_CONFLICT"


class ReviewPriority(str, Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    NORMAL = "NORMAL"
    LOW = "LOW"


# reason -> (default priority, SLA in hours)
REVIEW_DEFAULTS: dict[ReviewReason, tuple[ReviewPriority, int]] = {
    ReviewReason.LOW_OCR_CONFIDENCE: (ReviewPriority.NORMAL, 72),
    ReviewReason.OCR_FAILED: (ReviewPriority.HIGH, 48),
    ReviewReason.LOW_EXTRACTION_CONFIDENCE: (ReviewPriority.NORMAL, 48),
    ReviewReason.INVALID_DOMAIN: (ReviewPriority.LOW, 168),
    ReviewReason.EVIDENCE_QUALITY: (ReviewPriority.NORMAL, 72),
    ReviewReason.T0_RULE_APPROVAL: (ReviewPriority.CRITICAL, 4),
    ReviewReason.T1_RULE_APPROVAL: (ReviewPriority.HIGH, 24),
    ReviewReason.LOW_RULE_CONFIDENCE: (ReviewPriority.NORMAL, 48),
    ReviewReason.CONFLICT_UNRESOLVABLE: (ReviewPriority.HIGH, 24),
    ReviewReason.CONFLICT_BOTH_T0: (ReviewPriority.CRITICAL, 4),
    ReviewReason.CONFLICT_EQUAL_AUTHORITY: (ReviewPriority.HIGH, 24),
    ReviewReason.ARBITER_LOW_CONFIDENCE: (ReviewPriority.HIGH, 24),
    ReviewReason.SOURCE_CONFLICT: (ReviewPriority.HIGH, 24),
}


@dataclass
class ReviewRequest:
    """A pending item in the human review queue."""

    id: str
    entity_type: str
    entity_id: str
    reason: ReviewReason
    priority: ReviewPriority
    sla_deadline: datetime
    context: dict[str, Any] = field(default_factory=dict)
    requested_by: str = "system"
    status: str = "PENDING"  # "PENDING" | "COMPLETED"
    requested_at: datetime = field(default_factory=utc_now)


class HumanReviewService:
    """Queue of review requests with per-reason SLA defaults.

    Args:
        notifier: Optional callable invoked with each new request, e.g. to
            post to a chat channel. Its failures are logged, not raised.
    """

    def __init__(self, notifier: Callable[[ReviewRequest], None] | None = None) -> None:
        self._notifier = notifier
        self._requests: dict[str, ReviewRequest] = {}
        self._lock = threading.Lock()

    def request_review(
        self,
        entity_type: str,
        entity_id: str,
        reason: ReviewReason,
        context: dict[str, Any] | None = None,
        priority: ReviewPriority | None = None,
        requested_by: str = "system",
    ) -> ReviewRequest:
        """Queue a review, reusing an existing pending request for the entity."""
        default_priority, sla_hours = REVIEW_DEFAULTS[reason]
        with self._lock:
            for existing in self._requests.values():
                if (
                    existing.entity_type == entity_type
                    and existing.entity_id == entity_id
                    and existing.status == "PENDING"
                ):
                    return existing
            request = ReviewRequest(
                id=new_id("review"),
                entity_type=entity_type,
                entity_id=entity_id,
                reason=reason,
                priority=priority or default_priority,
                sla_deadline=utc_now() + timedelta(hours=sla_hours),
                context=dict(context or {}),
                requested_by=requested_by,
            )
            self._requests[request.id] = request

        logger.info(
            "Review requested for %s %s (reason: %s, priority: %s, SLA: %dh)",
            entity_type,
            entity_id,
            reason.value,
            request.priority.value,
            sla_hours,
        )
        if self._notifier is not None:
            try:
                self._notifier(request)
            except Exception:
                logger.exception("Review notifier failed for %s", request.id)
        return request

    def complete_review(self, review_id: str) -> None:
        with self._lock:
            request = self._requests.get(review_id)
            if request is not None:
                request.status = "COMPLETED"

    def pending_reviews(self, priority: ReviewPriority | None = None) -> list[ReviewRequest]:
        """Pending requests, most urgent first."""
        order = {p: i for i, p in enumerate(ReviewPriority)}
        with self._lock:
            pending = [r for r in self._requests.values() if r.status == "PENDING"]
        if priority is not None:
            pending = [r for r in pending if r.priority == priority]
        return sorted(pending, key=lambda r: (order[r.priority], r.sla_deadline))

    def overdue_reviews(self, now: datetime | None = None) -> list[ReviewRequest]:
        now = now or utc_now()
        return [r for r in self.pending_reviews() if r.sla_deadline < now]


def select_conflict_review_reason(
    conflict_type: ConflictType,
    rule_a_tier: str | None = None,
    rule_b_tier: str | None = None,
    confidence: float | None = None,
    escalation_reason: str | None = None,
) -> ReviewReason:
    """Pick the review category for an escalated conflict."""
    if rule_a_tier == "T0" and rule_b_tier == "T0":
        return ReviewReason.CONFLICT_BOTH_T0
    if escalation_reason == "equal_authority":
        return ReviewReason.CONFLICT_EQUAL_AUTHORITY
    if conflict_type == ConflictType.SOURCE_CONFLICT:
        return ReviewReason.SOURCE_CONFLICT
    if confidence is not None and confidence < 0.8:
        return ReviewReason.ARBITER_LOW_CONFIDENCE
    return ReviewReason.CONFLICT_UNRESOLVABLE


def request_conflict_review(
    service: HumanReviewService,
    conflict_id: str,
    conflict_type: ConflictType,
    rule_a_tier: str | None = None,
    rule_b_tier: str | None = None,
    confidence: float | None = None,
    escalation_reason: str | None = None,
) -> ReviewRequest | None:
    """Raise a review for an escalated conflict.

    Returns None if the review could not be queued; the caller's own state
    change stands regardless.
    """
    reason = select_conflict_review_reason(
        conflict_type,
        rule_a_tier=rule_a_tier,
        rule_b_tier=rule_b_tier,
        confidence=confidence,
        escalation_reason=escalation_reason,
    )
    try:
        return service.request_review(
            entity_type="CONFLICT",
            entity_id=conflict_id,
            reason=reason,
            context={
                "conflict_type": conflict_type.value,
                "rule_a_tier": rule_a_tier,
                "rule_b_tier": rule_b_tier,
                "confidence": confidence,
                "escalation_reason": escalation_reason,
            },
            requested_by="arbiter",
        )
    except Exception:
        logger.exception("Failed to request review for conflict %s", conflict_id)
        return None
