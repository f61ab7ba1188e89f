"""GitHub Models API integration."""

from __future__ import annotations


from .client import (
    ChatCompletion,
    ModelsClient,
    ModelsClientError,
    RateLimitError,
    Usage,
    parse_json_content,
)


__all__ = [
    "ChatCompletion",
    "ModelsClient",
    "ModelsClientError",
    "RateLimitError",
    "Usage",
    "parse_json_content",
]
