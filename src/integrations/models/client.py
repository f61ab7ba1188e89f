"""GitHub Models chat-completions client used by the extraction and arbiter agents."""

from __future__ import annotations

import json
import logging
import os
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Sequence

import requests

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Usage:
    """Token usage reported by the API."""

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


@dataclass(frozen=True)
class ChatCompletion:
    """The first choice of a chat completion response."""

    id: str
    model: str
    content: str
    finish_reason: str | None = None
    usage: Usage | None = None


class ModelsClientError(Exception):
    """Error communicating with the Models API."""


class RateLimitError(ModelsClientError):
    """Rate limit exceeded and retries exhausted."""

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class ModelsClient:
    """Client for the OpenAI-compatible GitHub Models endpoint.

    Only 429 responses are retried, with exponential backoff honouring
    ``Retry-After``. Every other failure raises ``ModelsClientError`` at once;
    the agent runner decides whether to try again.
    """

    DEFAULT_API_URL = "https://models.inference.ai.azure.com"
    DEFAULT_MODEL = "gpt-4o-mini"
    DEFAULT_MAX_OUTPUT_TOKENS = 4000
    DEFAULT_TEMPERATURE = 0.2

    DEFAULT_MAX_RETRIES = 5
    DEFAULT_INITIAL_BACKOFF = 2.0  # seconds
    DEFAULT_MAX_BACKOFF = 120.0
    BACKOFF_MULTIPLIER = 2.0

    def __init__(
        self,
        *,
        api_key: str | None = None,
        api_url: str | None = None,
        model: str | None = None,
        max_tokens: int | None = None,
        timeout: float = 60,
        max_retries: int | None = None,
        initial_backoff: float | None = None,
        max_backoff: float | None = None,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize the client.

        Args:
            api_key: Token with Models API access. Defaults to GH_TOKEN or
                GITHUB_TOKEN from the environment.
            api_url: Base URL of the API.
            model: Default model name.
            max_tokens: Default completion token limit.
            timeout: Request timeout in seconds.
            max_retries: Retries for rate-limited requests.
            initial_backoff: First backoff delay in seconds.
            max_backoff: Upper bound on any single wait.
            session: Optional requests session (tests inject a mock).
            sleep: Sleep function used between retries.

        Raises:
            ModelsClientError: If no token is available.
        """
        self.api_key = api_key or os.environ.get("GH_TOKEN") or os.environ.get("GITHUB_TOKEN")
        if not self.api_key:
            raise ModelsClientError(
                "GitHub token required. Set GH_TOKEN or GITHUB_TOKEN environment variable "
                "or pass api_key parameter."
            )

        self.api_url = (api_url or self.DEFAULT_API_URL).rstrip("/")
        self.model = model or self.DEFAULT_MODEL
        self.max_tokens = max_tokens or self.DEFAULT_MAX_OUTPUT_TOKENS
        self.timeout = timeout
        self.max_retries = max_retries if max_retries is not None else self.DEFAULT_MAX_RETRIES
        self.initial_backoff = initial_backoff or self.DEFAULT_INITIAL_BACKOFF
        self.max_backoff = max_backoff or self.DEFAULT_MAX_BACKOFF
        self._session = session or requests.Session()
        self._sleep = sleep

    def chat_completion(
        self,
        messages: Sequence[Mapping[str, Any]],
        *,
        model: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
        json_mode: bool = False,
    ) -> ChatCompletion:
        """Create a chat completion.

        Args:
            messages: Message dicts with 'role' and 'content'.
            model: Model override.
            max_tokens: Token limit override.
            temperature: Sampling temperature; 0.0 is honoured.
            json_mode: Ask the model for a single JSON object.

        Raises:
            RateLimitError: If rate limited after all retries.
            ModelsClientError: For any other API failure.
        """
        payload: dict[str, Any] = {
            "model": model or self.model,
            "messages": list(messages),
            "max_tokens": max_tokens or self.max_tokens,
            "temperature": self.DEFAULT_TEMPERATURE if temperature is None else temperature,
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        return self._request_with_retry(f"{self.api_url}/chat/completions", payload, headers)

    def _request_with_retry(
        self,
        url: str,
        payload: dict[str, Any],
        headers: dict[str, str],
    ) -> ChatCompletion:
        backoff = self.initial_backoff

        for attempt in range(self.max_retries + 1):
            try:
                response = self._session.post(url, json=payload, headers=headers, timeout=self.timeout)
                response.raise_for_status()
            except requests.RequestException as exc:
                error_response = getattr(exc, "response", None)
                if error_response is None or error_response.status_code != 429:
                    raise ModelsClientError(self._build_error_message(exc)) from exc

                retry_after = self._parse_retry_after(error_response)
                if attempt >= self.max_retries:
                    raise RateLimitError(
                        f"Rate limit exceeded after {self.max_retries + 1} attempts: "
                        f"{self._build_error_message(exc)}",
                        retry_after=retry_after,
                    ) from exc

                wait_time = min(retry_after or backoff, self.max_backoff)
                logger.warning(
                    "Rate limit hit (attempt %d/%d). Waiting %.1f seconds before retry.",
                    attempt + 1,
                    self.max_retries + 1,
                    wait_time,
                )
                self._sleep(wait_time)
                backoff = min(backoff * self.BACKOFF_MULTIPLIER, self.max_backoff)
                continue

            try:
                data = response.json()
            except ValueError as exc:
                raise ModelsClientError(f"Invalid JSON response: {exc}") from exc
            return self._parse_response(data)

        raise ModelsClientError("Request failed unexpectedly")

    def _parse_retry_after(self, response: requests.Response) -> float | None:
        """Seconds to wait from the Retry-After header or the error body."""
        retry_after = response.headers.get("Retry-After")
        if retry_after:
            try:
                return float(retry_after)
            except ValueError:
                return None

        try:
            data = response.json()
        except ValueError:
            return None
        if not isinstance(data, dict):
            return None
        message = str(data.get("message") or data.get("details") or "")
        match = re.search(r"wait\s+(\d+)\s*second", message, re.IGNORECASE)
        return float(match.group(1)) if match else None

    def _build_error_message(self, exc: requests.RequestException) -> str:
        error_msg = f"Models API request failed: {exc}"
        response = getattr(exc, "response", None)
        if response is None:
            return error_msg
        try:
            error_data = response.json()
        except ValueError:
            return error_msg
        if isinstance(error_data, dict) and "error" in error_data:
            return f"{error_msg} - {error_data['error']}"
        return error_msg

    def _parse_response(self, data: dict[str, Any]) -> ChatCompletion:
        choices = data.get("choices") or []
        if not choices:
            raise ModelsClientError("Response contained no choices")
        first = choices[0]
        message = first.get("message") or {}

        usage = None
        if "usage" in data:
            usage = Usage(
                prompt_tokens=data["usage"].get("prompt_tokens", 0),
                completion_tokens=data["usage"].get("completion_tokens", 0),
                total_tokens=data["usage"].get("total_tokens", 0),
            )

        return ChatCompletion(
            id=data.get("id", ""),
            model=data.get("model", ""),
            content=message.get("content") or "",
            finish_reason=first.get("finish_reason"),
            usage=usage,
        )


def parse_json_content(content: str) -> Any:
    """Decode a model reply as JSON, tolerating a fenced code block.

    Raises:
        json.JSONDecodeError: If no JSON document can be decoded.
    """
    text = content.strip()
    fenced = re.match(r"^```(?:json)?\s*(.*?)\s*```$", text, re.DOTALL)
    if fenced:
        text = fenced.group(1)
    return json.loads(text)
