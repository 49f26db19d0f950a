"""Grouping of queued chapters and exactly-once delivery per subscription.

A subscription's queue is its user's ``unsent_chapters`` rows for the
subscription's book. Processing a subscription follows these steps:

1. claim the subscription (conditional UPDATE on ``subscription_claims``)
2. take the earliest ``grouping_quantity`` queued chapters as a group
3. convert the group (or reuse the artifact stored by an earlier attempt)
4. deliver on every eligible channel that has not accepted this group yet,
   recording each acceptance in ``group_deliveries``
5. commit: delete the entries, advance the cursor, clear markers, in one
   transaction
6. release the claim

Any failure before step 5 leaves the entries queued and the same group is
retried whole on the next cycle.
"""

from __future__ import annotations

import hashlib
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Mapping, Sequence, Tuple

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from serialdrop.conversion import BookMetadata, ChapterContent, ConversionGateway, group_title
from serialdrop.db import SessionFactory
from serialdrop.delivery.channels import Channel, ChannelKind, Delivery, eligible_channels
from serialdrop.errors import ConfigurationError, ConversionFailure, DeliveryFailure, StorageFailure
from serialdrop.models import (
    Book,
    Chapter,
    ChapterBody,
    DeliveryMethod,
    GroupDelivery,
    Subscription,
    SubscriptionClaim,
    UnsentChapter,
    utcnow,
)
from serialdrop.storage import ObjectStore, artifact_key

from .config import PipelineConfig, default_worker_id

logger = logging.getLogger(__name__)

STATUS_DELIVERED = "delivered"
STATUS_WAITING = "waiting"
STATUS_CLAIMED = "claimed_elsewhere"
STATUS_FAILED = "failed"
STATUS_MISCONFIGURED = "misconfigured"


@dataclass(frozen=True)
class Group:
    """The earliest ``grouping_quantity`` queued chapters of one subscription.

    ``chapter_ids`` and ``entry_ids`` are aligned and ordered by discovery.
    """

    subscription_id: uuid.UUID
    user_id: str
    book_id: uuid.UUID
    entry_ids: Tuple[uuid.UUID, ...]
    chapter_ids: Tuple[uuid.UUID, ...]
    last_position: int

    @property
    def key(self) -> str:
        """Stable identifier of this exact set of chapters."""
        joined = ",".join(str(chapter_id) for chapter_id in self.chapter_ids)
        return hashlib.sha256(joined.encode("ascii")).hexdigest()

    @property
    def last_chapter_id(self) -> uuid.UUID:
        return self.chapter_ids[-1]

    def __len__(self) -> int:
        return len(self.chapter_ids)


@dataclass
class DeliveryOutcome:
    """Result of processing one subscription.

    Attributes:
        subscription_id: The subscription processed.
        status: One of delivered, waiting, claimed_elsewhere, failed, misconfigured.
        group_key: Key of the group attempted, if any.
        chapters: Number of chapters in the group.
        channels: Channels that accepted the group during this attempt.
        error: Failure message for failed and misconfigured outcomes.
    """

    subscription_id: uuid.UUID
    status: str
    group_key: str | None = None
    chapters: int = 0
    channels: List[str] = field(default_factory=list)
    error: str | None = None

    @property
    def delivered(self) -> bool:
        return self.status == STATUS_DELIVERED

    def to_dict(self) -> dict:
        return {
            "subscription_id": str(self.subscription_id),
            "status": self.status,
            "group_key": self.group_key,
            "chapters": self.chapters,
            "channels": list(self.channels),
            "error": self.error,
        }


class Batcher:
    """Turns each subscription's queue into delivered groups."""

    def __init__(
        self,
        session_factory: SessionFactory,
        store: ObjectStore,
        converter: ConversionGateway,
        channels: Mapping[ChannelKind, Channel],
        config: PipelineConfig | None = None,
        *,
        worker_id: str | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.store = store
        self.converter = converter
        self.channels: Dict[ChannelKind, Channel] = dict(channels)
        self.config = config or PipelineConfig()
        self.worker_id = worker_id or default_worker_id()
        self._clock = clock

    # Claims

    async def claim(self, subscription: Subscription) -> bool:
        """Take the exclusive batching right for a subscription if it is free or expired."""
        await self._ensure_claim_row(subscription.id)
        now = self._clock()
        stmt = (
            update(SubscriptionClaim)
            .where(
                SubscriptionClaim.subscription_id == subscription.id,
                or_(
                    SubscriptionClaim.claimed_by.is_(None),
                    SubscriptionClaim.claim_expires_at.is_(None),
                    SubscriptionClaim.claim_expires_at <= now,
                ),
            )
            .values(claimed_by=self.worker_id, claim_expires_at=now + self.config.claim_ttl)
            .execution_options(synchronize_session=False)
        )
        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as exc:
            raise StorageFailure(f"Failed to claim subscription {subscription.id}: {exc}") from exc
        return result.rowcount == 1

    async def release(self, subscription: Subscription) -> None:
        stmt = (
            update(SubscriptionClaim)
            .where(
                SubscriptionClaim.subscription_id == subscription.id,
                SubscriptionClaim.claimed_by == self.worker_id,
            )
            .values(claimed_by=None, claim_expires_at=None)
            .execution_options(synchronize_session=False)
        )
        try:
            async with self.session_factory() as session:
                await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as exc:
            raise StorageFailure(f"Failed to release subscription {subscription.id}: {exc}") from exc

    async def _ensure_claim_row(self, subscription_id: uuid.UUID) -> None:
        async with self.session_factory() as session:
            if await session.get(SubscriptionClaim, subscription_id) is not None:
                return
            session.add(SubscriptionClaim(subscription_id=subscription_id, consecutive_failures=0))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()

    # Queue

    async def pending_subscriptions(self) -> List[Subscription]:
        """Active subscriptions with at least one queued chapter."""
        queued = (
            select(UnsentChapter.id)
            .join(Chapter, UnsentChapter.chapter_id == Chapter.id)
            .where(
                UnsentChapter.user_id == Subscription.user_id,
                Chapter.book_id == Subscription.book_id,
            )
            .exists()
        )
        stmt = (
            select(Subscription)
            .where(Subscription.active.is_(True), queued)
            .order_by(Subscription.created_at, Subscription.id)
        )
        try:
            async with self.session_factory() as session:
                return list((await session.execute(stmt)).scalars().all())
        except SQLAlchemyError as exc:
            raise StorageFailure(f"Failed to list pending subscriptions: {exc}") from exc

    async def tick(self, subscription: Subscription) -> Group | None:
        """Return the next group if the queue holds at least ``grouping_quantity`` chapters.

        The caller must hold the subscription's claim.

        Raises:
            ConfigurationError: ``grouping_quantity`` is below 1.
        """
        quantity = subscription.grouping_quantity
        if quantity is None or quantity < 1:
            raise ConfigurationError(
                f"Subscription {subscription.id} has invalid grouping_quantity {quantity!r}"
            )

        stmt = (
            select(UnsentChapter.id, Chapter.id, Chapter.position)
            .join(Chapter, UnsentChapter.chapter_id == Chapter.id)
            .where(
                UnsentChapter.user_id == subscription.user_id,
                Chapter.book_id == subscription.book_id,
            )
            .order_by(Chapter.position)
            .limit(quantity)
        )
        try:
            async with self.session_factory() as session:
                rows = (await session.execute(stmt)).all()
        except SQLAlchemyError as exc:
            raise StorageFailure(f"Failed to load queue of subscription {subscription.id}: {exc}") from exc

        if len(rows) < quantity:
            return None
        return Group(
            subscription_id=subscription.id,
            user_id=subscription.user_id,
            book_id=subscription.book_id,
            entry_ids=tuple(row[0] for row in rows),
            chapter_ids=tuple(row[1] for row in rows),
            last_position=rows[-1][2],
        )

    # Processing

    async def process(self, subscription: Subscription) -> DeliveryOutcome:
        """Claim, group, convert, deliver and commit one subscription's next group."""
        if not await self.claim(subscription):
            logger.debug("Subscription %s is claimed by another worker", subscription.id)
            return DeliveryOutcome(subscription.id, STATUS_CLAIMED)

        try:
            try:
                group = await self.tick(subscription)
            except ConfigurationError as exc:
                logger.warning("Skipping subscription %s: %s", subscription.id, exc)
                return DeliveryOutcome(subscription.id, STATUS_MISCONFIGURED, error=str(exc))
            if group is None:
                return DeliveryOutcome(subscription.id, STATUS_WAITING)

            outcome = DeliveryOutcome(subscription.id, STATUS_DELIVERED, group_key=group.key, chapters=len(group))
            try:
                outcome.channels = await self._deliver_group(group)
                await self.commit_group(group)
            except ConfigurationError as exc:
                logger.warning("Skipping subscription %s: %s", subscription.id, exc)
                outcome.status, outcome.error = STATUS_MISCONFIGURED, str(exc)
                return outcome
            except (ConversionFailure, DeliveryFailure, StorageFailure) as exc:
                await self._record_failure(subscription, exc)
                outcome.status, outcome.error = STATUS_FAILED, str(exc)
                return outcome

            logger.info(
                "Delivered %d chapters of book %s to %s via %s",
                len(group),
                group.book_id,
                group.user_id,
                ", ".join(outcome.channels) or "previously accepted channels",
            )
            return outcome
        finally:
            await self.release(subscription)

    async def _deliver_group(self, group: Group) -> List[str]:
        book, method, chapters = await self._load_group(group)
        now = self._clock()

        kinds = [
            kind
            for kind in eligible_channels(method, now, self.config.verification_window)
            if kind in self.channels
        ]
        if not kinds:
            raise ConfigurationError(f"User {group.user_id} has no eligible delivery channel")

        already = await self._delivered_channels(group)
        pending = [kind for kind in kinds if kind.value not in already]

        artifact = None
        if any(self.channels[kind].needs_artifact for kind in pending):
            artifact = await self._artifact(group, book, chapters)

        delivery = Delivery(
            method=method,
            book_name=book.name,
            book_author=book.author,
            chapter_titles=[chapter.name for chapter in chapters],
            artifact=artifact,
        )
        accepted: list[str] = []
        for kind in pending:
            await self.channels[kind].deliver(delivery)
            await self._mark_delivered(group, kind)
            accepted.append(kind.value)
        return accepted

    async def _load_group(self, group: Group) -> tuple[Book, DeliveryMethod | None, List[Chapter]]:
        try:
            async with self.session_factory() as session:
                book = await session.get(Book, group.book_id)
                method = await session.get(DeliveryMethod, group.user_id)
                rows = (
                    await session.execute(select(Chapter).where(Chapter.id.in_(group.chapter_ids)))
                ).scalars().all()
        except SQLAlchemyError as exc:
            raise StorageFailure(f"Failed to load group {group.key}: {exc}") from exc
        if book is None:
            raise StorageFailure(f"Book {group.book_id} disappeared while delivering")
        by_id = {chapter.id: chapter for chapter in rows}
        chapters = [by_id[chapter_id] for chapter_id in group.chapter_ids if chapter_id in by_id]
        if len(chapters) != len(group):
            raise StorageFailure(f"Chapters of group {group.key} disappeared while delivering")
        return book, method, chapters

    async def _artifact(self, group: Group, book: Book, chapters: Sequence[Chapter]) -> bytes:
        bucket = self.config.bucket
        key = artifact_key(group.subscription_id, group.key)
        if await self.store.exists(bucket, key):
            logger.debug("Reusing stored artifact %s/%s", bucket, key)
            return await self.store.get(bucket, key)

        contents = await self._chapter_contents(chapters)
        metadata = BookMetadata(title=group_title(book.name, contents), author=book.author, series=book.name)
        data = await self.converter.convert(contents, metadata)
        await self.store.put(bucket, key, data)
        return data

    async def _chapter_contents(self, chapters: Sequence[Chapter]) -> List[ChapterContent]:
        ids = [chapter.id for chapter in chapters]
        try:
            async with self.session_factory() as session:
                bodies = {
                    body.chapter_id: body
                    for body in (
                        await session.execute(select(ChapterBody).where(ChapterBody.chapter_id.in_(ids)))
                    ).scalars()
                }
        except SQLAlchemyError as exc:
            raise StorageFailure(f"Failed to load chapter bodies: {exc}") from exc

        contents = []
        for chapter in chapters:
            body = bodies.get(chapter.id)
            if body is None:
                raise StorageFailure(f"Chapter {chapter.id} has no stored body")
            data = await self.store.get(body.bucket, body.key)
            contents.append(ChapterContent(title=chapter.name, html=data.decode("utf-8")))
        return contents

    async def _delivered_channels(self, group: Group) -> set[str]:
        stmt = select(GroupDelivery.channel).where(
            GroupDelivery.subscription_id == group.subscription_id,
            GroupDelivery.group_key == group.key,
        )
        try:
            async with self.session_factory() as session:
                return set((await session.execute(stmt)).scalars())
        except SQLAlchemyError as exc:
            raise StorageFailure(f"Failed to load delivery markers: {exc}") from exc

    async def _mark_delivered(self, group: Group, kind: ChannelKind) -> None:
        try:
            async with self.session_factory() as session:
                session.add(
                    GroupDelivery(
                        subscription_id=group.subscription_id,
                        group_key=group.key,
                        channel=kind.value,
                        delivered_at=self._clock(),
                    )
                )
                await session.commit()
        except IntegrityError:
            logger.debug("Group %s already marked delivered on %s", group.key, kind)
        except SQLAlchemyError as exc:
            raise StorageFailure(f"Failed to record delivery of group {group.key}: {exc}") from exc

    async def commit_group(self, group: Group) -> None:
        """Atomically dequeue a delivered group and advance the subscription cursor.

        Raises:
            StorageFailure: The transaction failed, or the group's entries were
                already dequeued. Nothing is changed in either case.
        """
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        delete(UnsentChapter)
                        .where(UnsentChapter.id.in_(group.entry_ids))
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != len(group.entry_ids):
                        raise StorageFailure(f"Group {group.key} was already committed")

                    subscription = await session.get(Subscription, group.subscription_id)
                    if subscription is not None:
                        current = None
                        if subscription.last_chapter_id is not None:
                            current = await session.scalar(
                                select(Chapter.position).where(Chapter.id == subscription.last_chapter_id)
                            )
                        if current is None or group.last_position > current:
                            subscription.last_chapter_id = group.last_chapter_id

                    await session.execute(
                        delete(GroupDelivery).where(
                            GroupDelivery.subscription_id == group.subscription_id,
                            GroupDelivery.group_key == group.key,
                        )
                    )
                    await session.execute(
                        update(SubscriptionClaim)
                        .where(SubscriptionClaim.subscription_id == group.subscription_id)
                        .values(consecutive_failures=0, last_error=None)
                        .execution_options(synchronize_session=False)
                    )
        except SQLAlchemyError as exc:
            raise StorageFailure(f"Failed to commit group {group.key}: {exc}") from exc

    async def _record_failure(self, subscription: Subscription, exc: Exception) -> int:
        try:
            async with self.session_factory() as session:
                claim = await session.get(SubscriptionClaim, subscription.id)
                if claim is None:
                    claim = SubscriptionClaim(subscription_id=subscription.id, consecutive_failures=0)
                    session.add(claim)
                claim.consecutive_failures = (claim.consecutive_failures or 0) + 1
                claim.last_error = str(exc)
                failures = claim.consecutive_failures
                await session.commit()
        except SQLAlchemyError as db_exc:
            logger.error("Failed to record delivery failure for %s: %s", subscription.id, db_exc)
            failures = 0

        level = logging.ERROR if failures >= self.config.failure_alert_threshold else logging.WARNING
        logger.log(
            level,
            "Delivery for subscription %s failed (%d consecutive): %s",
            subscription.id,
            failures,
            exc,
        )
        return failures


__all__ = ["Batcher", "DeliveryOutcome", "Group"]
