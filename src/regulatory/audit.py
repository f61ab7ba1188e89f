"""Append-only audit log for pipeline state changes.

Audit logging is best-effort: a failure to persist an event is logged and
never propagated to the pipeline step that produced it.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from .types import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditEvent:
    """One audit record.

    Attributes:
        action: Event name, e.g. "RULE_STATUS_CHANGED" or "CONFLICT_RESOLVED".
        entity_type: Kind of entity affected ("RULE", "CONFLICT", ...).
        entity_id: Id of the affected entity.
        metadata: Free-form context needed to replay the change manually.
        performed_by: Actor name; "system" for automated steps.
        at: When the event was recorded.
    """

    action: str
    entity_type: str
    entity_id: str
    metadata: dict[str, Any] = field(default_factory=dict)
    performed_by: str = "system"
    at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "metadata": self.metadata,
            "performed_by": self.performed_by,
            "at": self.at.isoformat(),
        }


class AuditLog:
    """In-memory audit trail with an optional JSONL file sink."""

    def __init__(self, path: Path | None = None) -> None:
        self.path = path
        self._events: list[AuditEvent] = []
        self._lock = threading.Lock()

    def log_event(
        self,
        action: str,
        entity_type: str,
        entity_id: str,
        metadata: dict[str, Any] | None = None,
        performed_by: str = "system",
    ) -> AuditEvent:
        """Record an event. Never raises on sink failure."""
        event = AuditEvent(
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            metadata=dict(metadata or {}),
            performed_by=performed_by,
        )
        with self._lock:
            self._events.append(event)
            if self.path is not None:
                try:
                    with open(self.path, "a", encoding="utf-8") as f:
                        f.write(json.dumps(event.to_dict(), default=str) + "\n")
                except OSError as exc:
                    logger.warning(
                        "Failed to write audit event %s for %s %s: %s",
                        action,
                        entity_type,
                        entity_id,
                        exc,
                    )
        return event

    def events(
        self,
        action: str | None = None,
        entity_id: str | None = None,
    ) -> list[AuditEvent]:
        """Return recorded events, optionally filtered."""
        with self._lock:
            result = list(self._events)
        if action is not None:
            result = [e for e in result if e.action == action]
        if entity_id is not None:
            result = [e for e in result if e.entity_id == entity_id]
        return result
