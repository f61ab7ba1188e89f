"""Tests for src/regulatory/pipeline/runner.py."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

from src.integrations.models import ChatCompletion, ModelsClientError
from src.regulatory.agents.arbiter import ArbiterBatchResult
from src.regulatory.agents.extractor import ExtractionResult
from src.regulatory.agents.runner import AgentContext
from src.regulatory.errors import CircuitBreakerOpenError, ContentError, TransientFetchError
from src.regulatory.fetching.http import FetchOutcome, FetchResponse
from src.regulatory.fetching.rate_limiter import DomainRateLimiter, RateLimitConfig
from src.regulatory.pipeline.config import DiscoveryLimits, PipelineConfig
from src.regulatory.pipeline.discovery import DiscoveryResult
from src.regulatory.pipeline.runner import (
    PipelineResult,
    make_robots_checker,
    make_text_fetcher,
    run_pipeline,
)
from src.regulatory.store import RegulatoryStore
from src.regulatory.types import DiscoveryEndpoint, ItemStatus, ListingStrategy, RuleStatus

LISTING = '<html><body><main><a href="/vijesti/pdv.json">Stope PDV-a</a></main></body></html>'
RATES = '{"pdv": "Opća stopa PDV-a iznosi 25%"}'


def _limiter() -> DomainRateLimiter:
    return DomainRateLimiter(
        RateLimitConfig(request_delay=0.0, max_retries=0),
        clock=lambda: 0.0,
        sleep=lambda _: None,
    )


def _site_fetcher() -> MagicMock:
    pages = {
        "https://a.hr/vijesti": ("text/html", LISTING),
        "https://a.hr/vijesti/pdv.json": ("application/json", RATES),
    }

    def fetch(url):
        if url not in pages:
            return FetchResponse(url=url, status=404)
        content_type, body = pages[url]
        return FetchResponse(url=url, status=200, headers={"Content-Type": content_type}, body=body.encode())

    fetcher = MagicMock()
    fetcher.user_agent = "TestAgent/1.0"
    fetcher.fetch.side_effect = fetch
    return fetcher


def _store() -> RegulatoryStore:
    store = RegulatoryStore()
    store.add_endpoint(DiscoveryEndpoint(
        id="ep", domain="a.hr", path="/vijesti", name="Vijesti", listing_strategy=ListingStrategy.HTML_LIST
    ))
    return store


def _no_robots(mode: str, **kwargs) -> PipelineConfig:
    return PipelineConfig(mode=mode, limits=DiscoveryLimits(respect_robots=False), **kwargs)


class TestPipelineResult:
    """Tests for PipelineResult dataclass."""

    def test_default_values(self) -> None:
        """Test default values."""
        result = PipelineResult()

        assert result.mode == "full"
        assert result.dry_run is False
        assert result.discovery is None
        assert result.arbiter is None
        assert result.duration_seconds == 0.0

    def test_to_dict(self) -> None:
        """Test to dict."""
        start = datetime(2025, 1, 15, 10, 0, 0, tzinfo=timezone.utc)
        result = PipelineResult(started_at=start, completed_at=start + timedelta(seconds=90), mode="arbitrate")
        result.arbiter = ArbiterBatchResult(processed=3, resolved=2, escalated=1)

        d = result.to_dict()

        assert d["started_at"] == "2025-01-15T10:00:00+00:00"
        assert d["duration_seconds"] == 90.0
        assert d["arbiter"]["resolved"] == 2
        assert d["fetch"] is None

    def test_summary(self) -> None:
        """Test summary."""
        start = datetime.now(timezone.utc)
        result = PipelineResult(started_at=start, completed_at=start + timedelta(seconds=12.5), dry_run=True)
        result.discovery = DiscoveryResult()
        result.extraction = ExtractionResult(processed=4, rules_created=3)

        summary = result.summary()

        assert "12.5s" in summary
        assert "Mode: full (dry run)" in summary
        assert "Discovery: 0 endpoints checked" in summary
        assert "Extraction: 4 evidence records" in summary
        assert "Rules created: 3" in summary
        assert "Arbiter" not in summary


class TestMakeTextFetcher:
    """Tests for the discovery fetch adapter."""

    def test_returns_text(self) -> None:
        """Test returns text."""
        fetch_text = make_text_fetcher(_site_fetcher(), _limiter())

        assert "Stope PDV-a" in fetch_text("https://a.hr/vijesti")

    def test_not_found_is_content_error(self) -> None:
        """Test not found is content error."""
        fetch_text = make_text_fetcher(_site_fetcher(), _limiter())

        with pytest.raises(ContentError, match="HTTP 404"):
            fetch_text("https://a.hr/missing")

    def test_server_error_is_transient(self) -> None:
        """Test server error is transient."""
        fetcher = MagicMock()
        fetcher.fetch.return_value = FetchResponse(url="https://a.hr/x", status=503)

        with pytest.raises(TransientFetchError) as exc_info:
            make_text_fetcher(fetcher, _limiter())("https://a.hr/x")

        assert exc_info.value.status == 503

    def test_open_circuit(self) -> None:
        """Test open circuit."""
        outcome = FetchOutcome(url="https://a.hr/x", error="open", circuit_open=True)

        with patch("src.regulatory.pipeline.runner.fetch_with_retry", return_value=outcome):
            with pytest.raises(CircuitBreakerOpenError):
                make_text_fetcher(MagicMock(), _limiter())("https://a.hr/x")


class TestMakeRobotsChecker:
    """Tests for the robots.txt adapter."""

    def test_missing_robots_allows_all(self) -> None:
        """Test missing robots allows all."""
        checker = make_robots_checker(_site_fetcher(), _limiter())

        assert checker.is_allowed("https://a.hr/private")


class TestRunPipeline:
    """Tests for run_pipeline."""

    def test_discover_mode(self) -> None:
        """Test discover mode."""
        store = _store()

        result = run_pipeline(_no_robots("discover"), store=store, fetcher=_site_fetcher(), limiter=_limiter())

        assert result.discovery.items_created == 1
        assert result.fetch is None
        assert result.extraction is None
        assert store.find_item_by_url("https://a.hr/vijesti/pdv.json").status == ItemStatus.PENDING

    def test_full_run_end_to_end(self) -> None:
        """Test full run end to end."""
        store = _store()
        client = MagicMock()
        client.chat_completion.return_value = ChatCompletion(
            id="cmpl",
            model="gpt-4o-mini",
            content=json.dumps({"extractions": [{
                "concept_slug": "pdv-standardna-stopa",
                "value_type": "percentage",
                "extracted_value": "25%",
                "exact_quote": "Opća stopa PDV-a iznosi 25%",
                "confidence": 0.95,
            }]}),
        )
        ctx = AgentContext(store=store, client=client, sleep=lambda _: None)

        result = run_pipeline(
            _no_robots("full"), store=store, fetcher=_site_fetcher(), limiter=_limiter(), agent_ctx=ctx
        )

        assert result.fetch.fetched == 1
        assert result.extraction.rules_created == 1
        assert result.arbiter.processed == 0
        assert store.find_item_by_url("https://a.hr/vijesti/pdv.json").status == ItemStatus.PROCESSED
        assert store.list_rules()[0].status == RuleStatus.DRAFT
        assert result.completed_at is not None

    def test_full_mode_without_token_skips_agents(self, monkeypatch) -> None:
        """Test full mode without token skips agents."""
        monkeypatch.delenv("GH_TOKEN", raising=False)
        monkeypatch.delenv("GITHUB_TOKEN", raising=False)
        monkeypatch.setattr("src.regulatory.pipeline.runner.load_environment", lambda: False)

        result = run_pipeline(_no_robots("full"), store=_store(), fetcher=_site_fetcher(), limiter=_limiter())

        assert result.fetch is not None
        assert result.extraction is None
        assert result.arbiter is None

    def test_arbitrate_mode_requires_token(self, monkeypatch) -> None:
        """Test arbitrate mode requires token."""
        monkeypatch.delenv("GH_TOKEN", raising=False)
        monkeypatch.delenv("GITHUB_TOKEN", raising=False)
        monkeypatch.setattr("src.regulatory.pipeline.runner.load_environment", lambda: False)

        with pytest.raises(ModelsClientError):
            run_pipeline(_no_robots("arbitrate"), store=_store(), fetcher=_site_fetcher(), limiter=_limiter())

    def test_agent_context_must_share_store(self) -> None:
        """Test agent context must share store."""
        ctx = AgentContext(store=RegulatoryStore(), client=MagicMock())

        with pytest.raises(ValueError):
            run_pipeline(_no_robots("extract"), store=_store(), fetcher=_site_fetcher(), agent_ctx=ctx)

    def test_saves_to_store_path(self, tmp_path) -> None:
        """Test saves to store path."""
        path = tmp_path / "store.json"
        config = _no_robots("discover", store_path=path)

        run_pipeline(config, store=_store(), fetcher=_site_fetcher(), limiter=_limiter())

        assert RegulatoryStore.load(path).find_item_by_url("https://a.hr/vijesti/pdv.json") is not None

    def test_dry_run_does_not_save(self, tmp_path) -> None:
        """Test dry run does not save."""
        path = tmp_path / "store.json"
        config = _no_robots("discover", store_path=path, dry_run=True)

        run_pipeline(config, store=_store(), fetcher=_site_fetcher(), limiter=_limiter())

        assert not path.exists()
