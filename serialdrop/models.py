"""Relational model for books, chapters, subscriptions and the delivery queue.

Cascade rules:
- deleting a book removes its chapters, subscriptions and poll state
- deleting a chapter removes its body pointer and any queued deliveries
- deleting the chapter a subscription points at nulls the cursor
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend.

    SQLite drops tzinfo, so values are stored as naive UTC and re-tagged on load.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetime passed to a UTC column")
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    pass


class SourceKind(str, enum.Enum):
    """How a book's chapter listing is obtained."""

    FEED = "feed"
    PAGE = "page"

    def __str__(self) -> str:
        return self.value


class ChapterKind(str, enum.Enum):
    """How a chapter was discovered."""

    FEED_ENTRY = "feed_entry"
    SCRAPED_PAGE = "scraped_page"

    def __str__(self) -> str:
        return self.value


class Book(Base):
    __tablename__ = "books"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(Text)
    author: Mapped[str] = mapped_column(Text)
    source_kind: Mapped[str] = mapped_column(String(16), default=SourceKind.FEED.value)
    source_url: Mapped[str] = mapped_column(Text)
    # CSS selector for chapter links on a table-of-contents page
    chapter_selector: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # CSS selector for the chapter text on a chapter page
    body_selector: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    title_prefix: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<Book(id={self.id}, name='{self.name}', source={self.source_kind}:{self.source_url})>"


class Chapter(Base):
    __tablename__ = "chapters"
    __table_args__ = (
        UniqueConstraint("book_id", "url", name="uq_chapter_book_url"),
        UniqueConstraint("book_id", "position", name="uq_chapter_book_position"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    book_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("books.id", ondelete="CASCADE"), index=True
    )
    name: Mapped[str] = mapped_column(Text)
    author: Mapped[str] = mapped_column(Text)
    url: Mapped[str] = mapped_column(Text)
    kind: Mapped[str] = mapped_column(String(16))
    # Discovery order within the book; the delivery order
    position: Mapped[int] = mapped_column(Integer)
    discovered_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    published_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<Chapter(id={self.id}, book_id={self.book_id}, position={self.position}, name='{self.name}')>"


class ChapterBody(Base):
    __tablename__ = "chapter_bodies"

    chapter_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("chapters.id", ondelete="CASCADE"), primary_key=True
    )
    bucket: Mapped[str] = mapped_column(Text)
    key: Mapped[str] = mapped_column(Text)


class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        UniqueConstraint("user_id", "book_id", name="uq_subscription_user_book"),
        CheckConstraint("grouping_quantity > 0", name="ck_subscription_grouping_quantity"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(Text, index=True)
    book_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("books.id", ondelete="CASCADE"), index=True
    )
    grouping_quantity: Mapped[int] = mapped_column(Integer, default=1)
    last_chapter_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("chapters.id", ondelete="SET NULL"), nullable=True
    )
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, user_id='{self.user_id}', book_id={self.book_id}, "
            f"grouping_quantity={self.grouping_quantity})>"
        )


class DeliveryMethod(Base):
    __tablename__ = "delivery_methods"

    user_id: Mapped[str] = mapped_column(Text, primary_key=True)

    kindle_email: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    kindle_email_verified: Mapped[bool] = mapped_column(Boolean, default=False)
    kindle_email_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    kindle_email_verification_code: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    kindle_email_verification_code_time: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True
    )

    pushover_key: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    pushover_key_verified: Mapped[bool] = mapped_column(Boolean, default=False)
    pushover_enabled: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)


class UnsentChapter(Base):
    __tablename__ = "unsent_chapters"
    __table_args__ = (UniqueConstraint("user_id", "chapter_id", name="uq_unsent_user_chapter"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(Text, index=True)
    chapter_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("chapters.id", ondelete="CASCADE"), index=True
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)


class BookPollState(Base):
    """Ingestion lease and polling bookkeeping for one book."""

    __tablename__ = "book_poll_states"

    book_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("books.id", ondelete="CASCADE"), primary_key=True
    )
    lease_owner: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    lease_expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    consecutive_failures: Mapped[int] = mapped_column(Integer, default=0)
    next_poll_after: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    last_polled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class SubscriptionClaim(Base):
    """Batch claim and failure bookkeeping for one subscription."""

    __tablename__ = "subscription_claims"

    subscription_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("subscriptions.id", ondelete="CASCADE"), primary_key=True
    )
    claimed_by: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    claim_expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    consecutive_failures: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class GroupDelivery(Base):
    """A channel that already accepted a group which is not yet committed."""

    __tablename__ = "group_deliveries"

    subscription_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("subscriptions.id", ondelete="CASCADE"), primary_key=True
    )
    group_key: Mapped[str] = mapped_column(String(64), primary_key=True)
    channel: Mapped[str] = mapped_column(String(32), primary_key=True)
    delivered_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)


__all__ = [
    "Base",
    "Book",
    "BookPollState",
    "Chapter",
    "ChapterBody",
    "ChapterKind",
    "DeliveryMethod",
    "GroupDelivery",
    "SourceKind",
    "Subscription",
    "SubscriptionClaim",
    "UnsentChapter",
    "UTCDateTime",
    "utcnow",
]
