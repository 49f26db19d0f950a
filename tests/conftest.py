"""Shared fixtures: a temporary SQLite store, an object store and fake collaborators."""

from __future__ import annotations

import asyncio
import uuid
from datetime import timedelta
from typing import Callable, Dict, List, Optional, Sequence

import pytest
from sqlalchemy import select
from sqlalchemy.pool import NullPool

from serialdrop.conversion import BookMetadata, ChapterContent
from serialdrop.db import create_engine, create_session_factory, init_schema
from serialdrop.models import (
    Book,
    Chapter,
    ChapterBody,
    ChapterKind,
    DeliveryMethod,
    SourceKind,
    Subscription,
    UnsentChapter,
    utcnow,
)
from serialdrop.parsing.extraction import Candidate
from serialdrop.pipeline.config import PipelineConfig
from serialdrop.storage import FilesystemObjectStore, chapter_body_key


# =============================================================================
# Fakes
# =============================================================================


class FakeEmailTransport:
    """Records messages; raises ``fail`` instead when set."""

    def __init__(self) -> None:
        self.sent: list = []
        self.fail: Optional[Exception] = None
        self.delay = 0.0

    async def send(self, message) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail is not None:
            raise self.fail
        self.sent.append(message)


class FakePushTransport:
    def __init__(self) -> None:
        self.sent: list = []
        self.fail: Optional[Exception] = None

    async def send(self, user_key: str, message: str) -> None:
        if self.fail is not None:
            raise self.fail
        self.sent.append((user_key, message))


class FakeConverter:
    """Produces a fake e-book naming its chapters."""

    def __init__(self) -> None:
        self.calls: List[tuple[list[ChapterContent], BookMetadata]] = []
        self.fail: Optional[Exception] = None

    async def convert(self, chapters: Sequence[ChapterContent], metadata: BookMetadata) -> bytes:
        if self.fail is not None:
            raise self.fail
        self.calls.append((list(chapters), metadata))
        return ("EPUB:" + "|".join(chapter.title for chapter in chapters)).encode("utf-8")


class FakeFetcher:
    """Serves configured listings and bodies without network access.

    ``bodies`` maps a chapter URL to its HTML or to an exception to raise.
    URLs missing from ``bodies`` get a generated body.
    """

    def __init__(self) -> None:
        self.listing: List[Candidate] | Exception = []
        self.bodies: Dict[str, str | Exception] = {}
        self.body_calls: List[str] = []
        self.list_calls = 0
        self.gate: Optional[asyncio.Event] = None

    async def list_chapters(self, book) -> List[Candidate]:
        self.list_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if isinstance(self.listing, Exception):
            raise self.listing
        return list(self.listing)

    async def fetch_body(self, chapter_url: str, selector=None) -> str:
        self.body_calls.append(chapter_url)
        body = self.bodies.get(chapter_url, f"<p>Body of {chapter_url}</p>")
        if isinstance(body, Exception):
            raise body
        return body

    async def aclose(self) -> None:
        pass


def _candidate(url: str, title: str | None = None, author: str = "Author") -> Candidate:
    return Candidate(url=url, title=title or url.rsplit("/", 1)[-1], author=author, kind=ChapterKind.FEED_ENTRY)


# =============================================================================
# Seeding helpers
# =============================================================================


class Seeder:
    """Creates rows directly in the test database."""

    def __init__(self, session_factory, store: FilesystemObjectStore, bucket: str) -> None:
        self.session_factory = session_factory
        self.store = store
        self.bucket = bucket

    async def book(self, name: str = "Test Book", **fields) -> Book:
        book = Book(
            id=uuid.uuid4(),
            name=name,
            author=fields.pop("author", "Author"),
            source_kind=fields.pop("source_kind", SourceKind.FEED.value),
            source_url=fields.pop("source_url", "https://www.example.com/feed"),
            **fields,
        )
        async with self.session_factory() as session:
            session.add(book)
            await session.commit()
        return book

    async def subscription(self, book: Book, user_id: str = "user-1", grouping_quantity: int = 1, active: bool = True) -> Subscription:
        subscription = Subscription(
            id=uuid.uuid4(),
            user_id=user_id,
            book_id=book.id,
            grouping_quantity=grouping_quantity,
            active=active,
        )
        async with self.session_factory() as session:
            session.add(subscription)
            await session.commit()
        return subscription

    async def delivery_method(
        self,
        user_id: str = "user-1",
        *,
        kindle: bool = True,
        pushover: bool = False,
        **fields,
    ) -> DeliveryMethod:
        method = DeliveryMethod(user_id=user_id)
        if kindle:
            method.kindle_email = f"{user_id}@kindle.com"
            method.kindle_email_verified = True
            method.kindle_email_enabled = True
        if pushover:
            method.pushover_key = f"push-{user_id}"
            method.pushover_key_verified = True
            method.pushover_enabled = True
        for name, value in fields.items():
            setattr(method, name, value)
        async with self.session_factory() as session:
            session.add(method)
            await session.commit()
        return method

    async def chapter(self, book: Book, position: int, name: str | None = None, queue_for: Sequence[str] = ()) -> Chapter:
        name = name or f"Chapter {position}"
        url = f"https://www.example.com/chapter/{position}"
        key = chapter_body_key(book.id, url)
        await self.store.put(self.bucket, key, f"<p>{name} text</p>".encode("utf-8"))
        chapter = Chapter(
            id=uuid.uuid4(),
            book_id=book.id,
            name=name,
            author=book.author,
            url=url,
            kind=ChapterKind.FEED_ENTRY.value,
            position=position,
            discovered_at=utcnow(),
        )
        async with self.session_factory() as session:
            session.add(chapter)
            await session.flush()
            session.add(ChapterBody(chapter_id=chapter.id, bucket=self.bucket, key=key))
            for user_id in queue_for:
                session.add(UnsentChapter(user_id=user_id, chapter_id=chapter.id))
            await session.commit()
        return chapter

    async def chapters(self, book: Book) -> List[Chapter]:
        async with self.session_factory() as session:
            stmt = select(Chapter).where(Chapter.book_id == book.id).order_by(Chapter.position)
            return list((await session.execute(stmt)).scalars())

    async def queued_names(self, user_id: str = "user-1") -> List[str]:
        """Names of the user's queued chapters in discovery order."""
        async with self.session_factory() as session:
            stmt = (
                select(Chapter.name)
                .join(UnsentChapter, UnsentChapter.chapter_id == Chapter.id)
                .where(UnsentChapter.user_id == user_id)
                .order_by(Chapter.position)
            )
            return list((await session.execute(stmt)).scalars())

    async def reload(self, model, key):
        async with self.session_factory() as session:
            return await session.get(model, key)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def engine(tmp_path):
    """A SQLite database file with the full schema.

    NullPool keeps connections from leaking between the event loops that
    separate ``asyncio.run`` calls create.
    """
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", poolclass=NullPool)
    asyncio.run(init_schema(engine))
    yield engine
    asyncio.run(engine.dispose())


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def store(tmp_path) -> FilesystemObjectStore:
    return FilesystemObjectStore(tmp_path / "objects")


@pytest.fixture
def config() -> PipelineConfig:
    return PipelineConfig(claim_ttl=timedelta(minutes=10), lease_ttl=timedelta(minutes=10))


@pytest.fixture
def seed(session_factory, store, config) -> Seeder:
    return Seeder(session_factory, store, config.bucket)


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def email_transport() -> FakeEmailTransport:
    return FakeEmailTransport()


@pytest.fixture
def push_transport() -> FakePushTransport:
    return FakePushTransport()


@pytest.fixture
def converter() -> FakeConverter:
    return FakeConverter()


@pytest.fixture
def run() -> Callable:
    """Run a coroutine to completion."""
    return asyncio.run


@pytest.fixture
def make_candidate() -> Callable[..., Candidate]:
    """Build a feed candidate; the title defaults to the last URL segment."""
    return _candidate
