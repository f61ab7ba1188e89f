"""Error taxonomy for the regulatory truth pipeline.

Every error raised by pipeline code derives from ``RegulatoryPipelineError``
so callers can separate pipeline failures from programming errors.

Categories:
- Transient network/IO errors: retried with backoff, then the item is FAILED.
- Content errors: surfaced immediately, never retried.
- Agent output errors: retried by the agent runner, then surfaced.
- Invariant violations: rejected synchronously, never coerced.
- Circuit-open errors: fail fast, no retry at that layer.
"""

from __future__ import annotations

from typing import Sequence


class RegulatoryPipelineError(Exception):
    """Base class for all pipeline errors."""


class TransientFetchError(RegulatoryPipelineError):
    """Network or server error that may succeed on retry."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class ContentError(RegulatoryPipelineError):
    """Fetched content could not be parsed or yielded no usable text."""


class AgentOutputError(RegulatoryPipelineError):
    """Model output was missing, malformed, or failed schema validation."""


class CircuitBreakerOpenError(RegulatoryPipelineError):
    """The circuit breaker for a domain is open; callers must not retry now."""

    def __init__(self, domain: str, last_error: str | None = None):
        message = f"Circuit breaker open for {domain}"
        if last_error:
            message = f"{message} (last error: {last_error})"
        super().__init__(message)
        self.domain = domain
        self.last_error = last_error


class InvariantViolationError(RegulatoryPipelineError):
    """An operation would break a data-model invariant."""


class StatusTransitionError(InvariantViolationError):
    """A rule status change is not permitted by the status gate."""

    def __init__(
        self,
        message: str,
        from_status: str,
        to_status: str,
        allowed: Sequence[str] = (),
    ):
        super().__init__(message)
        self.from_status = from_status
        self.to_status = to_status
        self.allowed = tuple(allowed)


class BulkStatusUpdateNotAllowedError(InvariantViolationError):
    """Bulk updates may not change rule status."""

    def __init__(self) -> None:
        super().__init__(
            "Bulk rule updates cannot change status. "
            "Use set_rule_status() for each rule so the status gate is applied."
        )


class DuplicateConflictError(InvariantViolationError):
    """An OPEN conflict for the same pair of items already exists."""

    def __init__(self, item_a_id: str, item_b_id: str, existing_id: str):
        super().__init__(
            f"Open conflict {existing_id} already exists for pair ({item_a_id}, {item_b_id})"
        )
        self.item_a_id = item_a_id
        self.item_b_id = item_b_id
        self.existing_id = existing_id


class EntityNotFoundError(RegulatoryPipelineError):
    """A referenced entity does not exist in the store."""

    def __init__(self, entity_type: str, entity_id: str):
        super().__init__(f"{entity_type} not found: {entity_id}")
        self.entity_type = entity_type
        self.entity_id = entity_id
