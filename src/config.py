"""Project configuration management."""

from __future__ import annotations

import json
import logging
from functools import lru_cache
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from src import paths

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "FiskAI/1.0 (regulatory-monitoring; +https://fiskai.hr)"


def load_environment(env_file: Path | None = None) -> bool:
    """Load environment variables from a .env file if it exists.

    Returns:
        True if a file was found and loaded.
    """
    env_path = env_file or paths.get_project_root() / ".env"
    if not env_path.exists():
        return False
    return load_dotenv(env_path)


class ProjectConfig:
    """Access to project configuration values."""

    def __init__(self, config_path: Path | None = None) -> None:
        self._config_path = config_path
        self._data: dict[str, Any] = {}
        self._loaded = False

    def _ensure_loaded(self) -> None:
        if self._loaded:
            return

        config_path = self._config_path or paths.get_config_file()
        if config_path.exists():
            try:
                with open(config_path, "r", encoding="utf-8") as f:
                    self._data = json.load(f)
            except (OSError, json.JSONDecodeError) as exc:
                logger.warning("Ignoring unreadable config %s: %s", config_path, exc)
                self._data = {}

        self._loaded = True

    @property
    def model(self) -> str:
        """Get the configured LLM model, defaulting to gpt-4o-mini."""
        self._ensure_loaded()
        return self._data.get("model", "gpt-4o-mini")

    @property
    def user_agent(self) -> str:
        """User agent sent with every outbound fetch."""
        self._ensure_loaded()
        return self._data.get("user_agent", DEFAULT_USER_AGENT)

    @property
    def request_timeout(self) -> float:
        """Hard timeout in seconds for a single outbound fetch."""
        self._ensure_loaded()
        return float(self._data.get("request_timeout", 30.0))

    @property
    def arbiter_confidence_threshold(self) -> float:
        self._ensure_loaded()
        return float(self._data.get("arbiter_confidence_threshold", 0.8))

    @property
    def rule_confidence_threshold(self) -> float:
        self._ensure_loaded()
        return float(self._data.get("rule_confidence_threshold", 0.85))

    def get(self, key: str, default: Any = None) -> Any:
        """Get a raw configuration value."""
        self._ensure_loaded()
        return self._data.get(key, default)


@lru_cache(maxsize=1)
def get_config() -> ProjectConfig:
    """Get the singleton configuration instance."""
    return ProjectConfig()
