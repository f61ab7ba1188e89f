"""Content hashing and change detection for fetched pages.

HTML is normalized before hashing so cosmetic differences (comments,
whitespace) do not register as changes. JSON and binary payloads are hashed
byte-for-byte.
"""

from __future__ import annotations

import difflib
import hashlib
import re
from dataclasses import dataclass

_COMMENT_RE = re.compile(r"<!--.*?-->", re.DOTALL)
_WHITESPACE_RE = re.compile(r"\s+")

_EXACT_CONTENT_TYPES = ("application/json", "application/pdf", "application/octet-stream")


def normalize_html(content: str) -> str:
    """Strip comments and collapse whitespace runs to single spaces."""
    without_comments = _COMMENT_RE.sub("", content)
    return _WHITESPACE_RE.sub(" ", without_comments).strip()


def hash_content(content: str | bytes, content_type: str | None = None) -> str:
    """SHA-256 hex digest of ``content``.

    Text content is normalized as HTML unless ``content_type`` names a format
    that must be compared exactly.
    """
    if isinstance(content, bytes):
        return hashlib.sha256(content).hexdigest()

    exact = content_type is not None and any(t in content_type.lower() for t in _EXACT_CONTENT_TYPES)
    payload = content if exact else normalize_html(content)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class ContentChange:
    has_changed: bool
    new_hash: str
    previous_hash: str | None

    @property
    def is_first_fetch(self) -> bool:
        return self.previous_hash is None


def detect_content_change(
    content: str | bytes,
    previous_hash: str | None,
    content_type: str | None = None,
) -> ContentChange:
    """Compare content against a previous hash. A first fetch counts as a change."""
    new_hash = hash_content(content, content_type)
    return ContentChange(
        has_changed=previous_hash is None or new_hash != previous_hash,
        new_hash=new_hash,
        previous_hash=previous_hash,
    )


def summarize_diff(old_text: str, new_text: str, max_lines: int = 40) -> str:
    """Human-readable summary of what changed between two text versions."""
    old_lines = old_text.splitlines()
    new_lines = new_text.splitlines()
    diff = list(
        difflib.unified_diff(old_lines, new_lines, "previous", "current", lineterm="", n=1)
    )
    added = sum(1 for line in diff if line.startswith("+") and not line.startswith("+++"))
    removed = sum(1 for line in diff if line.startswith("-") and not line.startswith("---"))

    header = f"{added} line(s) added, {removed} line(s) removed"
    if not diff:
        return "No textual differences"
    body = diff[2 : 2 + max_lines]
    if len(diff) - 2 > max_lines:
        body.append(f"... ({len(diff) - 2 - max_lines} more diff lines)")
    return "\n".join([header, *body])
