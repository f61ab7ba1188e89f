"""Regulatory discovery and fetch pipeline.

The pipeline combines:
1. Endpoint discovery (sitemaps, listings, pagination, crawling)
2. Adaptive fetching with per-domain rate limiting
3. Rule extraction and conflict arbitration through LLM agents

The runner depends on the agent stages, which in turn use the scheduler's
item transitions, so it is imported from its own module.

Usage:
    from src.regulatory.pipeline import PipelineConfig
    from src.regulatory.pipeline.runner import run_pipeline

    config = PipelineConfig(mode="fetch")
    result = run_pipeline(config)
"""

from .config import DiscoveryLimits, PipelineConfig, PipelinePoliteness
from .scheduler import DomainScheduler, ScheduledItem

__all__ = [
    # Config
    "DiscoveryLimits",
    "PipelineConfig",
    "PipelinePoliteness",
    # Scheduler
    "DomainScheduler",
    "ScheduledItem",
]
