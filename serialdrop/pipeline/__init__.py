"""Ingestion and delivery pipeline.

This package combines:
1. Polling (rate-limited fetching and exactly-once ingestion)
2. Delivery (grouping, conversion and per-channel delivery)

Usage:
    from serialdrop.pipeline import build_pipeline, run_poll_cycle

    async with await build_pipeline() as pipeline:
        result = await run_poll_cycle(pipeline)
"""

from .batcher import Batcher, DeliveryOutcome, Group
from .config import PipelineConfig, PipelinePoliteness, RateBudget, calculate_backoff_interval
from .ingestor import ChapterIngestor, IngestResult
from .rate_limit import DomainPermit, DomainRateLimiter
from .runner import (
    DeliveryCycleResult,
    Pipeline,
    StatusReport,
    build_pipeline,
    collect_status,
    run_delivery_cycle,
    run_poll_cycle,
    serve,
)
from .scheduler import BookPollOutcome, PollCycleResult, PollScheduler

__all__ = [
    # Config
    "PipelineConfig",
    "PipelinePoliteness",
    "RateBudget",
    "calculate_backoff_interval",
    # Polling
    "DomainPermit",
    "DomainRateLimiter",
    "ChapterIngestor",
    "IngestResult",
    "BookPollOutcome",
    "PollCycleResult",
    "PollScheduler",
    # Delivery
    "Batcher",
    "DeliveryOutcome",
    "Group",
    # Runner
    "DeliveryCycleResult",
    "Pipeline",
    "StatusReport",
    "build_pipeline",
    "collect_status",
    "run_delivery_cycle",
    "run_poll_cycle",
    "serve",
]
