"""Exactly-once ingestion of newly discovered chapters.

Ingestion of one book is serialized by a time-bounded lease stored on the
book's ``book_poll_states`` row. Taking the lease is a conditional UPDATE, so
it also excludes workers in other processes.

Bodies are written to the object store under a key derived from the chapter
URL before any chapter row exists. A crash between the two steps leaves an
orphaned body that the next attempt overwrites.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable, List, Sequence

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from serialdrop.db import SessionFactory
from serialdrop.errors import MalformedContent, StorageFailure, Unreachable
from serialdrop.models import (
    Book,
    BookPollState,
    Chapter,
    ChapterBody,
    Subscription,
    UnsentChapter,
    utcnow,
)
from serialdrop.parsing.extraction import Candidate
from serialdrop.parsing.urls import normalize_url
from serialdrop.sources.fetcher import SourceFetcher
from serialdrop.storage import ObjectLocation, ObjectStore, chapter_body_key

from .config import PipelineConfig, default_worker_id

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    """Outcome of one ingestion attempt for a book.

    Attributes:
        book_id: The book that was ingested.
        lease_acquired: False when another worker held the book's lease.
        chapters: Chapters committed, in discovery order.
        duplicates: Candidates dropped as already known or repeated.
        fetch_error: Body fetch error that cut the batch short, if any.
    """

    book_id: uuid.UUID
    lease_acquired: bool = True
    chapters: List[Chapter] = field(default_factory=list)
    duplicates: int = 0
    fetch_error: str | None = None

    def to_dict(self) -> dict:
        return {
            "book_id": str(self.book_id),
            "lease_acquired": self.lease_acquired,
            "chapters": [str(chapter.id) for chapter in self.chapters],
            "duplicates": self.duplicates,
            "fetch_error": self.fetch_error,
        }


async def ensure_poll_state(session_factory: SessionFactory, book_id: uuid.UUID) -> None:
    """Create the book's poll state row if it does not exist yet."""
    async with session_factory() as session:
        if await session.get(BookPollState, book_id) is not None:
            return
        session.add(BookPollState(book_id=book_id, consecutive_failures=0))
        try:
            await session.commit()
        except IntegrityError:
            # Created concurrently by another worker
            await session.rollback()
        except SQLAlchemyError as exc:
            raise StorageFailure(f"Failed to create poll state for book {book_id}: {exc}") from exc


class ChapterIngestor:
    """Turns candidates from a source listing into stored, queued chapters."""

    def __init__(
        self,
        session_factory: SessionFactory,
        fetcher: SourceFetcher,
        store: ObjectStore,
        config: PipelineConfig | None = None,
        *,
        worker_id: str | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.fetcher = fetcher
        self.store = store
        self.config = config or PipelineConfig()
        self.worker_id = worker_id or default_worker_id()
        self._clock = clock

    async def claim_lease(self, book_id: uuid.UUID) -> bool:
        """Take the book's ingestion lease if it is free or expired."""
        await ensure_poll_state(self.session_factory, book_id)
        now = self._clock()
        stmt = (
            update(BookPollState)
            .where(
                BookPollState.book_id == book_id,
                or_(
                    BookPollState.lease_owner.is_(None),
                    BookPollState.lease_expires_at.is_(None),
                    BookPollState.lease_expires_at <= now,
                ),
            )
            .values(lease_owner=self.worker_id, lease_expires_at=now + self.config.lease_ttl)
            .execution_options(synchronize_session=False)
        )
        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as exc:
            raise StorageFailure(f"Failed to claim ingestion lease for book {book_id}: {exc}") from exc
        return result.rowcount == 1

    async def release_lease(self, book_id: uuid.UUID) -> None:
        stmt = (
            update(BookPollState)
            .where(BookPollState.book_id == book_id, BookPollState.lease_owner == self.worker_id)
            .values(lease_owner=None, lease_expires_at=None)
            .execution_options(synchronize_session=False)
        )
        try:
            async with self.session_factory() as session:
                await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as exc:
            raise StorageFailure(f"Failed to release ingestion lease for book {book_id}: {exc}") from exc

    async def ingest(self, book: Book, candidates: Sequence[Candidate]) -> List[Chapter]:
        """Store and queue the candidates not seen before.

        Returns the committed chapters in discovery order, or an empty list
        when nothing was new or another worker is ingesting the book.

        Raises:
            StorageFailure: The object store or database rejected a write.
                No chapter of this attempt is committed.
        """
        result = await self.ingest_detailed(book, candidates)
        return result.chapters

    async def ingest_detailed(self, book: Book, candidates: Sequence[Candidate]) -> IngestResult:
        """Same as :meth:`ingest` but reports duplicates, lease and fetch outcome."""
        if not await self.claim_lease(book.id):
            logger.info("Book %s is being ingested by another worker; skipping", book.id)
            return IngestResult(book_id=book.id, lease_acquired=False)
        try:
            return await self._ingest_locked(book, candidates)
        finally:
            await self.release_lease(book.id)

    async def _ingest_locked(self, book: Book, candidates: Sequence[Candidate]) -> IngestResult:
        result = IngestResult(book_id=book.id)

        known_urls, max_position = await self._load_history(book.id)
        new_candidates: list[Candidate] = []
        seen = set(known_urls)
        for candidate in candidates:
            url = normalize_url(candidate.url)
            if url in seen:
                result.duplicates += 1
                continue
            seen.add(url)
            new_candidates.append(replace(candidate, url=url))

        if not new_candidates:
            logger.debug("No new chapters for %s", book.name)
            return result

        fetched: list[tuple[Candidate, ObjectLocation]] = []
        for candidate in new_candidates:
            try:
                body = await self.fetcher.fetch_body(candidate.url, book.body_selector)
            except (Unreachable, MalformedContent) as exc:
                result.fetch_error = str(exc)
                logger.warning(
                    "Stopped ingesting %s at %s (%s); keeping %d of %d new chapters",
                    book.name,
                    candidate.url,
                    exc,
                    len(fetched),
                    len(new_candidates),
                )
                break
            location = await self.store.put(
                self.config.bucket,
                chapter_body_key(book.id, candidate.url),
                body.encode("utf-8"),
            )
            fetched.append((candidate, location))

        if not fetched:
            return result

        result.chapters = await self._commit(book, fetched, max_position)
        logger.info("Ingested %d new chapters for %s", len(result.chapters), book.name)
        return result

    async def _load_history(self, book_id: uuid.UUID) -> tuple[set[str], int]:
        try:
            async with self.session_factory() as session:
                urls = (await session.execute(select(Chapter.url).where(Chapter.book_id == book_id))).scalars()
                known = set(urls)
                max_position = await session.scalar(
                    select(func.max(Chapter.position)).where(Chapter.book_id == book_id)
                )
        except SQLAlchemyError as exc:
            raise StorageFailure(f"Failed to load chapter history for book {book_id}: {exc}") from exc
        return known, max_position or 0

    async def _commit(
        self,
        book: Book,
        fetched: Sequence[tuple[Candidate, ObjectLocation]],
        max_position: int,
    ) -> List[Chapter]:
        now = self._clock()
        chapters: list[Chapter] = []
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    subscribers = (
                        await session.execute(
                            select(Subscription.user_id).where(
                                Subscription.book_id == book.id,
                                Subscription.active.is_(True),
                            )
                        )
                    ).scalars().all()

                    for offset, (candidate, _) in enumerate(fetched, start=1):
                        chapter = Chapter(
                            id=uuid.uuid4(),
                            book_id=book.id,
                            name=candidate.title,
                            author=candidate.author,
                            url=candidate.url,
                            kind=candidate.kind.value,
                            position=max_position + offset,
                            discovered_at=now,
                            published_at=candidate.published_at,
                        )
                        session.add(chapter)
                        chapters.append(chapter)
                    await session.flush()

                    for chapter, (_, location) in zip(chapters, fetched):
                        session.add(ChapterBody(chapter_id=chapter.id, bucket=location.bucket, key=location.key))
                    for user_id in subscribers:
                        for chapter in chapters:
                            session.add(UnsentChapter(user_id=user_id, chapter_id=chapter.id, created_at=now))
        except IntegrityError as exc:
            raise StorageFailure(f"Conflicting chapters for book {book.id}: {exc}") from exc
        except SQLAlchemyError as exc:
            raise StorageFailure(f"Failed to commit chapters for book {book.id}: {exc}") from exc
        return chapters


__all__ = ["ChapterIngestor", "IngestResult", "ensure_poll_state"]
