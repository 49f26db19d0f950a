"""Periodic polling of subscribed books.

Each cycle starts one task per due book. A book whose previous task is still
running is skipped, so a slow source never has two polls in flight in this
process; the ingestion lease covers other processes. Failed polls push the
book's next poll out with exponential backoff.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List

from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError

from serialdrop.db import SessionFactory
from serialdrop.errors import SerialDropError, StorageFailure
from serialdrop.models import Book, BookPollState, Subscription, utcnow
from serialdrop.sources.fetcher import SourceFetcher

from .config import PipelineConfig, calculate_backoff_interval
from .ingestor import ChapterIngestor, ensure_poll_state

logger = logging.getLogger(__name__)


@dataclass
class BookPollOutcome:
    """Result of polling one book.

    Attributes:
        book_id: The book polled.
        book_name: Its name, for reporting.
        candidates: Chapters listed by the source.
        new_chapters: Chapters committed by this poll.
        lease_skipped: Another worker held the ingestion lease.
        error: Failure message if the poll failed.
        next_poll_after: Backoff deadline set after a failure.
    """

    book_id: uuid.UUID
    book_name: str
    candidates: int = 0
    new_chapters: int = 0
    lease_skipped: bool = False
    error: str | None = None
    next_poll_after: datetime | None = None

    @property
    def success(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict:
        return {
            "book_id": str(self.book_id),
            "book_name": self.book_name,
            "candidates": self.candidates,
            "new_chapters": self.new_chapters,
            "lease_skipped": self.lease_skipped,
            "error": self.error,
            "next_poll_after": self.next_poll_after.isoformat() if self.next_poll_after else None,
        }


@dataclass
class PollCycleResult:
    """Result of one poll cycle."""

    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: datetime | None = None
    books_due: int = 0
    started: int = 0
    skipped_in_flight: List[uuid.UUID] = field(default_factory=list)
    outcomes: List[BookPollOutcome] = field(default_factory=list)

    @property
    def new_chapters(self) -> int:
        return sum(outcome.new_chapters for outcome in self.outcomes)

    @property
    def failures(self) -> List[BookPollOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.success]

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "books_due": self.books_due,
            "started": self.started,
            "skipped_in_flight": [str(book_id) for book_id in self.skipped_in_flight],
            "new_chapters": self.new_chapters,
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
        }

    def summary(self) -> str:
        lines = [
            f"Poll cycle: {self.books_due} books due, {self.started} polled",
            f"  - New chapters: {self.new_chapters}",
            f"  - Failed: {len(self.failures)}",
        ]
        if self.skipped_in_flight:
            lines.append(f"  - Skipped (still polling): {len(self.skipped_in_flight)}")
        for outcome in self.failures:
            lines.append(f"    ! {outcome.book_name}: {outcome.error}")
        return "\n".join(lines)


class PollScheduler:
    """Starts polls for due books and applies backoff to failing ones."""

    def __init__(
        self,
        session_factory: SessionFactory,
        fetcher: SourceFetcher,
        ingestor: ChapterIngestor,
        config: PipelineConfig | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.fetcher = fetcher
        self.ingestor = ingestor
        self.config = config or PipelineConfig()
        self._clock = clock
        self._in_flight: Dict[uuid.UUID, asyncio.Task] = {}

    @property
    def in_flight(self) -> List[uuid.UUID]:
        return [book_id for book_id, task in self._in_flight.items() if not task.done()]

    async def due_books(self) -> List[Book]:
        """Books with an active subscriber whose backoff, if any, has passed."""
        now = self._clock()
        subscribed = select(Subscription.id).where(
            Subscription.book_id == Book.id,
            Subscription.active.is_(True),
        ).exists()
        stmt = (
            select(Book)
            .outerjoin(BookPollState, BookPollState.book_id == Book.id)
            .where(
                subscribed,
                or_(BookPollState.next_poll_after.is_(None), BookPollState.next_poll_after <= now),
            )
            .order_by(Book.created_at, Book.id)
        )
        try:
            async with self.session_factory() as session:
                return list((await session.execute(stmt)).scalars().all())
        except SQLAlchemyError as exc:
            raise StorageFailure(f"Failed to list due books: {exc}") from exc

    async def run_cycle(self, *, wait: bool = True) -> PollCycleResult:
        """Start a poll for every due book not already being polled.

        With ``wait=False`` the polls keep running in the background and the
        result only reports what was started.
        """
        result = PollCycleResult()
        books = await self.due_books()
        result.books_due = len(books)

        started: list[asyncio.Task] = []
        for book in books:
            task = self._in_flight.get(book.id)
            if task is not None and not task.done():
                logger.info("Previous poll of %s still running; skipping", book.name)
                result.skipped_in_flight.append(book.id)
                continue
            task = asyncio.create_task(self.poll_book(book), name=f"poll-{book.id}")
            self._in_flight[book.id] = task
            task.add_done_callback(self._on_poll_done)
            started.append(task)
        result.started = len(started)

        if wait and started:
            for outcome in await asyncio.gather(*started, return_exceptions=True):
                if isinstance(outcome, BaseException):
                    logger.error("Poll task crashed: %r", outcome)
                    continue
                result.outcomes.append(outcome)

        result.completed_at = datetime.now(timezone.utc)
        return result

    def _on_poll_done(self, task: asyncio.Task) -> None:
        for book_id, current in list(self._in_flight.items()):
            if current is task:
                del self._in_flight[book_id]
        if not task.cancelled() and task.exception() is not None:
            logger.error("Poll task %s crashed", task.get_name(), exc_info=task.exception())

    async def poll_book(self, book: Book) -> BookPollOutcome:
        """List, ingest and record the outcome for one book. Pipeline errors do not propagate."""
        outcome = BookPollOutcome(book_id=book.id, book_name=book.name)
        try:
            candidates = await self.fetcher.list_chapters(book)
            outcome.candidates = len(candidates)
            ingest = await self.ingestor.ingest_detailed(book, candidates)
        except SerialDropError as exc:
            outcome.error = str(exc)
            level = logging.ERROR if isinstance(exc, StorageFailure) else logging.WARNING
            logger.log(level, "Polling %s failed: %s", book.name, exc)
        else:
            outcome.lease_skipped = not ingest.lease_acquired
            outcome.new_chapters = len(ingest.chapters)
            if ingest.fetch_error and not ingest.chapters:
                outcome.error = ingest.fetch_error

        outcome.next_poll_after = await self._record_poll(book.id, outcome.error)
        return outcome

    async def _record_poll(self, book_id: uuid.UUID, error: str | None) -> datetime | None:
        now = self._clock()
        await ensure_poll_state(self.session_factory, book_id)
        try:
            async with self.session_factory() as session:
                state = await session.get(BookPollState, book_id)
                state.last_polled_at = now
                if error is None:
                    state.consecutive_failures = 0
                    state.last_error = None
                    state.next_poll_after = None
                else:
                    state.consecutive_failures = (state.consecutive_failures or 0) + 1
                    state.last_error = error
                    state.next_poll_after = now + calculate_backoff_interval(
                        state.consecutive_failures,
                        self.config.backoff_base,
                        self.config.backoff_max,
                    )
                next_poll_after = state.next_poll_after
                await session.commit()
        except SQLAlchemyError as exc:
            logger.error("Failed to record poll of book %s: %s", book_id, exc)
            return None
        return next_poll_after

    async def drain(self) -> None:
        """Wait for every poll still in flight."""
        tasks = [task for task in self._in_flight.values() if not task.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


__all__ = ["BookPollOutcome", "PollCycleResult", "PollScheduler"]
