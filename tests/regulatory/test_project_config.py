"""Tests for src/config.py."""

from __future__ import annotations

import json
import os

from src.config import DEFAULT_USER_AGENT, ProjectConfig, load_environment


class TestProjectConfig:
    """Tests for ProjectConfig."""

    def test_defaults_without_file(self, tmp_path) -> None:
        """Test defaults without file."""
        config = ProjectConfig(tmp_path / "missing.json")

        assert config.model == "gpt-4o-mini"
        assert config.user_agent == DEFAULT_USER_AGENT
        assert config.request_timeout == 30.0
        assert config.arbiter_confidence_threshold == 0.8
        assert config.rule_confidence_threshold == 0.85

    def test_values_from_file(self, tmp_path) -> None:
        """Test values from file."""
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"request_timeout": 10, "arbiter_confidence_threshold": 0.9, "extra": 1}))
        config = ProjectConfig(path)

        assert config.request_timeout == 10.0
        assert config.arbiter_confidence_threshold == 0.9
        assert config.get("extra") == 1
        assert config.get("missing", "x") == "x"

    def test_unreadable_file_falls_back(self, tmp_path) -> None:
        """Test unreadable file falls back."""
        path = tmp_path / "config.json"
        path.write_text("{not json")

        assert ProjectConfig(path).model == "gpt-4o-mini"


class TestLoadEnvironment:
    """Tests for load_environment."""

    def test_missing_file(self, tmp_path) -> None:
        """Test missing file."""
        assert load_environment(tmp_path / ".env") is False

    def test_loads_file(self, tmp_path, monkeypatch) -> None:
        """Test loads file."""
        monkeypatch.delenv("REGULATORY_TEST_VALUE", raising=False)
        env_file = tmp_path / ".env"
        env_file.write_text("REGULATORY_TEST_VALUE=abc\n")

        assert load_environment(env_file) is True
        assert os.environ["REGULATORY_TEST_VALUE"] == "abc"
        monkeypatch.delenv("REGULATORY_TEST_VALUE")
