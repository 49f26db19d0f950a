"""Pipeline runner: wiring, one-shot cycles and the long-running service.

The runner orchestrates:
1. Poll cycle: list due books, fetch and ingest new chapters
2. Delivery cycle: group, convert and deliver queued chapters
3. Service: both cycles on their own intervals until stopped

Usage:
    async with await build_pipeline() as pipeline:
        poll = await run_poll_cycle(pipeline)
        delivery = await run_delivery_cycle(pipeline)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from serialdrop.config import ProjectConfig, get_config
from serialdrop.conversion import CalibreConverter, ConversionGateway
from serialdrop.db import SessionFactory, create_engine, create_session_factory, init_schema
from serialdrop.delivery.channels import build_channels
from serialdrop.delivery.transports import MailgunTransport, PushoverTransport
from serialdrop.errors import ConfigurationError, SerialDropError, StorageFailure
from serialdrop.models import Book, BookPollState, Chapter, Subscription, SubscriptionClaim, UnsentChapter
from serialdrop.sources.fetcher import SourceFetcher
from serialdrop.storage import FilesystemObjectStore, ObjectStore

from .batcher import STATUS_FAILED, Batcher, DeliveryOutcome
from .config import PipelineConfig, default_worker_id
from .ingestor import ChapterIngestor
from .rate_limit import DomainRateLimiter
from .scheduler import PollCycleResult, PollScheduler

logger = logging.getLogger(__name__)


@dataclass
class DeliveryCycleResult:
    """Result of one delivery cycle."""

    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: datetime | None = None
    outcomes: List[DeliveryOutcome] = field(default_factory=list)

    def count(self, status: str) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == status)

    @property
    def chapters_delivered(self) -> int:
        return sum(outcome.chapters for outcome in self.outcomes if outcome.delivered)

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "subscriptions": len(self.outcomes),
            "chapters_delivered": self.chapters_delivered,
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
        }

    def summary(self) -> str:
        statuses = ("delivered", "waiting", "failed", "misconfigured", "claimed_elsewhere")
        lines = [f"Delivery cycle: {len(self.outcomes)} subscriptions with queued chapters"]
        lines.extend(f"  - {status.replace('_', ' ').capitalize()}: {self.count(status)}" for status in statuses)
        lines.append(f"  - Chapters delivered: {self.chapters_delivered}")
        return "\n".join(lines)


@dataclass
class StatusReport:
    """Snapshot of the stores for operators."""

    books: int = 0
    chapters: int = 0
    subscriptions: int = 0
    queued_entries: int = 0
    books_backing_off: int = 0
    failing_subscriptions: int = 0

    def to_dict(self) -> dict:
        return {
            "books": self.books,
            "chapters": self.chapters,
            "subscriptions": self.subscriptions,
            "queued_entries": self.queued_entries,
            "books_backing_off": self.books_backing_off,
            "failing_subscriptions": self.failing_subscriptions,
        }

    def summary(self) -> str:
        return "\n".join(
            [
                "Pipeline status",
                f"  Books: {self.books} ({self.books_backing_off} backing off)",
                f"  Chapters: {self.chapters}",
                f"  Subscriptions: {self.subscriptions} ({self.failing_subscriptions} failing)",
                f"  Queued deliveries: {self.queued_entries}",
            ]
        )


class Pipeline:
    """The wired components of one worker process."""

    def __init__(
        self,
        session_factory: SessionFactory,
        store: ObjectStore,
        fetcher: SourceFetcher,
        scheduler: PollScheduler,
        batcher: Batcher,
        config: PipelineConfig,
        *,
        engine: AsyncEngine | None = None,
        closers: list | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.store = store
        self.fetcher = fetcher
        self.scheduler = scheduler
        self.batcher = batcher
        self.config = config
        self.engine = engine
        self._closers = closers or []

    async def __aenter__(self) -> "Pipeline":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.scheduler.drain()
        await self.fetcher.aclose()
        for closer in self._closers:
            await closer.aclose()
        if self.engine is not None:
            await self.engine.dispose()


def assemble_pipeline(
    session_factory: SessionFactory,
    store: ObjectStore,
    converter: ConversionGateway,
    channels,
    config: PipelineConfig | None = None,
    *,
    fetcher: SourceFetcher | None = None,
    worker_id: str | None = None,
    engine: AsyncEngine | None = None,
    closers: list | None = None,
) -> Pipeline:
    """Wire components that have already been built."""
    config = config or PipelineConfig()
    worker_id = worker_id or default_worker_id()
    fetcher = fetcher or SourceFetcher(DomainRateLimiter(config.politeness))
    ingestor = ChapterIngestor(session_factory, fetcher, store, config, worker_id=worker_id)
    scheduler = PollScheduler(session_factory, fetcher, ingestor, config)
    batcher = Batcher(session_factory, store, converter, channels, config, worker_id=worker_id)
    return Pipeline(
        session_factory,
        store,
        fetcher,
        scheduler,
        batcher,
        config,
        engine=engine,
        closers=closers,
    )


async def build_pipeline(
    project: ProjectConfig | None = None,
    config: PipelineConfig | None = None,
    *,
    create_schema: bool = False,
) -> Pipeline:
    """Build a pipeline from project configuration.

    Channels whose transport is not configured are left out with a warning.
    """
    project = project or get_config()
    config = config or PipelineConfig.from_project_config(project)

    engine = create_engine(project.database_url)
    if create_schema:
        await init_schema(engine)
    session_factory = create_session_factory(engine)
    store = FilesystemObjectStore(project.storage_root)
    converter = CalibreConverter(timeout_seconds=config.conversion_timeout_seconds)

    closers = []
    email_transport = None
    push_transport = None
    try:
        email_transport = MailgunTransport(
            project.mailgun_api_key,
            project.mailgun_endpoint,
            project.from_email,
            timeout_seconds=config.transport_timeout_seconds,
        )
        closers.append(email_transport)
    except ConfigurationError as exc:
        logger.warning("Kindle e-mail delivery disabled: %s", exc)
    try:
        push_transport = PushoverTransport(project.pushover_token, timeout_seconds=config.transport_timeout_seconds)
        closers.append(push_transport)
    except ConfigurationError as exc:
        logger.warning("Pushover delivery disabled: %s", exc)

    channels = build_channels(email_transport, push_transport, verification_window=config.verification_window)
    return assemble_pipeline(
        session_factory,
        store,
        converter,
        channels,
        config,
        engine=engine,
        closers=closers,
    )


async def run_poll_cycle(pipeline: Pipeline, *, wait: bool = True) -> PollCycleResult:
    """Poll every due book once."""
    result = await pipeline.scheduler.run_cycle(wait=wait)
    logger.info(
        "Poll cycle finished: %d due, %d started, %d new chapters",
        result.books_due,
        result.started,
        result.new_chapters,
    )
    return result


async def run_delivery_cycle(pipeline: Pipeline) -> DeliveryCycleResult:
    """Process every subscription with queued chapters, bounded by ``max_concurrent_deliveries``."""
    result = DeliveryCycleResult()
    subscriptions = await pipeline.batcher.pending_subscriptions()
    semaphore = asyncio.Semaphore(pipeline.config.max_concurrent_deliveries)

    async def process(subscription: Subscription) -> DeliveryOutcome:
        async with semaphore:
            try:
                return await pipeline.batcher.process(subscription)
            except SerialDropError as exc:
                logger.error("Processing subscription %s failed: %s", subscription.id, exc)
                return DeliveryOutcome(subscription.id, STATUS_FAILED, error=str(exc))

    result.outcomes = list(await asyncio.gather(*(process(subscription) for subscription in subscriptions)))
    result.completed_at = datetime.now(timezone.utc)
    if result.outcomes:
        logger.info(
            "Delivery cycle finished: %d subscriptions, %d chapters delivered",
            len(result.outcomes),
            result.chapters_delivered,
        )
    return result


async def serve(pipeline: Pipeline, stop: asyncio.Event | None = None) -> None:
    """Run the poll and delivery loops until ``stop`` is set."""
    stop = stop or asyncio.Event()
    logger.info(
        "Serving: polling every %ss, delivering every %ss",
        pipeline.config.poll_interval.total_seconds(),
        pipeline.config.delivery_interval.total_seconds(),
    )

    async def poll_loop() -> None:
        while not stop.is_set():
            try:
                await run_poll_cycle(pipeline, wait=False)
            except SerialDropError as exc:
                logger.error("Poll cycle failed: %s", exc)
            await _sleep_until(stop, pipeline.config.poll_interval.total_seconds())

    async def delivery_loop() -> None:
        while not stop.is_set():
            try:
                await run_delivery_cycle(pipeline)
            except SerialDropError as exc:
                logger.error("Delivery cycle failed: %s", exc)
            await _sleep_until(stop, pipeline.config.delivery_interval.total_seconds())

    await asyncio.gather(poll_loop(), delivery_loop())
    await pipeline.scheduler.drain()
    logger.info("Service stopped")


async def _sleep_until(stop: asyncio.Event, seconds: float) -> None:
    try:
        await asyncio.wait_for(stop.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        pass


async def collect_status(pipeline: Pipeline) -> StatusReport:
    """Count books, chapters, subscriptions and queued entries."""
    now = datetime.now(timezone.utc)
    try:
        async with pipeline.session_factory() as session:
            return StatusReport(
                books=await session.scalar(select(func.count()).select_from(Book)) or 0,
                chapters=await session.scalar(select(func.count()).select_from(Chapter)) or 0,
                subscriptions=await session.scalar(
                    select(func.count()).select_from(Subscription).where(Subscription.active.is_(True))
                ) or 0,
                queued_entries=await session.scalar(select(func.count()).select_from(UnsentChapter)) or 0,
                books_backing_off=await session.scalar(
                    select(func.count()).select_from(BookPollState).where(BookPollState.next_poll_after > now)
                ) or 0,
                failing_subscriptions=await session.scalar(
                    select(func.count())
                    .select_from(SubscriptionClaim)
                    .where(SubscriptionClaim.consecutive_failures > 0)
                ) or 0,
            )
    except SQLAlchemyError as exc:
        raise StorageFailure(f"Failed to collect status: {exc}") from exc


__all__ = [
    "DeliveryCycleResult",
    "Pipeline",
    "StatusReport",
    "assemble_pipeline",
    "build_pipeline",
    "collect_status",
    "run_delivery_cycle",
    "run_poll_cycle",
    "serve",
]
