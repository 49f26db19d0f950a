"""Tests for grouping and exactly-once delivery."""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import timedelta

import pytest
from sqlalchemy import select

from serialdrop.delivery.channels import ChannelKind, build_channels
from serialdrop.errors import ConfigurationError, ConversionFailure, DeliveryFailure, StorageFailure
from serialdrop.models import GroupDelivery, Subscription, SubscriptionClaim, utcnow
from serialdrop.pipeline.batcher import (
    STATUS_CLAIMED,
    STATUS_DELIVERED,
    STATUS_FAILED,
    STATUS_MISCONFIGURED,
    STATUS_WAITING,
    Batcher,
)
from serialdrop.storage import artifact_key


@pytest.fixture
def batcher(session_factory, store, converter, email_transport, push_transport, config) -> Batcher:
    channels = build_channels(email_transport, push_transport)
    return Batcher(session_factory, store, converter, channels, config, worker_id="worker-a")


async def _markers(session_factory, subscription_id) -> list[str]:
    async with session_factory() as session:
        stmt = select(GroupDelivery.channel).where(GroupDelivery.subscription_id == subscription_id)
        return sorted((await session.execute(stmt)).scalars())


class TestTick:
    """Grouping of queued chapters."""

    def test_waits_until_quantity_reached(self, batcher, seed, run) -> None:
        async def scenario():
            book = await seed.book()
            subscription = await seed.subscription(book, grouping_quantity=3)
            await seed.chapter(book, 1, queue_for=["user-1"])
            await seed.chapter(book, 2, queue_for=["user-1"])
            return await batcher.tick(subscription)

        assert run(scenario()) is None

    def test_group_is_earliest_chapters_in_order(self, batcher, seed, run) -> None:
        async def scenario():
            book = await seed.book()
            subscription = await seed.subscription(book, grouping_quantity=2)
            third = await seed.chapter(book, 3, queue_for=["user-1"])
            first = await seed.chapter(book, 1, queue_for=["user-1"])
            second = await seed.chapter(book, 2, queue_for=["user-1"])
            return (first, second, third), await batcher.tick(subscription)

        (first, second, _), group = run(scenario())

        assert group.chapter_ids == (first.id, second.id)
        assert group.last_chapter_id == second.id
        assert group.last_position == 2
        assert len(group) == 2

    def test_queue_is_per_book(self, batcher, seed, run) -> None:
        async def scenario():
            book = await seed.book()
            other = await seed.book("Other")
            subscription = await seed.subscription(book)
            await seed.chapter(other, 1, queue_for=["user-1"])
            return await batcher.tick(subscription)

        assert run(scenario()) is None

    @pytest.mark.parametrize("quantity", [0, -2])
    def test_invalid_quantity(self, batcher, run, quantity) -> None:
        subscription = Subscription(id=uuid.uuid4(), user_id="user-1", book_id=uuid.uuid4(), grouping_quantity=quantity)

        with pytest.raises(ConfigurationError):
            run(batcher.tick(subscription))

    def test_group_key_depends_on_chapters(self, batcher, seed, run) -> None:
        async def scenario():
            book = await seed.book()
            subscription = await seed.subscription(book)
            await seed.chapter(book, 1, queue_for=["user-1"])
            first = await batcher.tick(subscription)
            again = await batcher.tick(subscription)
            return first, again

        first, again = run(scenario())

        assert first.key == again.key
        assert len(first.key) == 64


class TestGroupedDelivery:
    """A subscription with grouping_quantity 2 receives chapters in pairs."""

    def test_pairs_are_delivered_together(self, batcher, seed, session_factory, email_transport, converter, run) -> None:
        async def scenario():
            book = await seed.book("Mother of Learning", author="nobody103")
            subscription = await seed.subscription(book, grouping_quantity=2)
            await seed.delivery_method()

            await seed.chapter(book, 1, "C1", queue_for=["user-1"])
            waiting = await batcher.process(subscription)

            c2 = await seed.chapter(book, 2, "C2", queue_for=["user-1"])
            delivered = await batcher.process(subscription)

            await seed.chapter(book, 3, "C3", queue_for=["user-1"])
            after = await batcher.process(subscription)

            return waiting, delivered, after, c2, await seed.reload(Subscription, subscription.id)

        waiting, delivered, after, c2, subscription = run(scenario())

        assert waiting.status == STATUS_WAITING
        assert delivered.status == STATUS_DELIVERED
        assert delivered.chapters == 2
        assert delivered.channels == ["kindle_email"]
        assert after.status == STATUS_WAITING

        assert len(email_transport.sent) == 1
        message = email_transport.sent[0]
        assert message.to == "user-1@kindle.com"
        assert message.attachment.data == b"EPUB:C1|C2"
        assert [c.title for c in converter.calls[0][0]] == ["C1", "C2"]
        assert converter.calls[0][1].author == "nobody103"
        assert subscription.last_chapter_id == c2.id
        assert run(seed.queued_names()) == ["C3"]

    def test_all_enabled_channels_receive_the_group(self, batcher, seed, email_transport, push_transport, run) -> None:
        async def scenario():
            book = await seed.book("Worm", author="Wildbow")
            subscription = await seed.subscription(book)
            await seed.delivery_method(pushover=True)
            await seed.chapter(book, 1, "Gestation 1.1", queue_for=["user-1"])
            return await batcher.process(subscription)

        outcome = run(scenario())

        assert outcome.channels == ["kindle_email", "pushover"]
        assert len(email_transport.sent) == 1
        assert push_transport.sent == [
            ("push-user-1", "A new chapter of Worm by Wildbow has been released: Gestation 1.1")
        ]

    def test_push_only_user_needs_no_conversion(self, batcher, seed, converter, push_transport, run) -> None:
        async def scenario():
            book = await seed.book()
            subscription = await seed.subscription(book)
            await seed.delivery_method(kindle=False, pushover=True)
            await seed.chapter(book, 1, queue_for=["user-1"])
            return await batcher.process(subscription)

        outcome = run(scenario())

        assert outcome.delivered
        assert converter.calls == []
        assert len(push_transport.sent) == 1

    def test_markers_cleared_and_claim_released(self, batcher, seed, session_factory, run) -> None:
        async def scenario():
            book = await seed.book()
            subscription = await seed.subscription(book)
            await seed.delivery_method()
            await seed.chapter(book, 1, queue_for=["user-1"])
            await batcher.process(subscription)
            return (
                await _markers(session_factory, subscription.id),
                await seed.reload(SubscriptionClaim, subscription.id),
            )

        markers, claim = run(scenario())

        assert markers == []
        assert claim.claimed_by is None
        assert claim.consecutive_failures == 0


class TestFailures:
    """Failed groups stay queued and are retried whole."""

    def test_conversion_failure_keeps_entries(self, batcher, seed, converter, email_transport, run) -> None:
        converter.fail = ConversionFailure("ebook-convert exited with status 1")

        async def scenario():
            book = await seed.book()
            subscription = await seed.subscription(book)
            await seed.delivery_method()
            await seed.chapter(book, 1, "C1", queue_for=["user-1"])
            first = await batcher.process(subscription)
            second = await batcher.process(subscription)
            return subscription, first, second

        subscription, first, second = run(scenario())

        assert first.status == second.status == STATUS_FAILED
        assert "status 1" in first.error
        assert email_transport.sent == []
        assert run(seed.queued_names()) == ["C1"]
        claim = run(seed.reload(SubscriptionClaim, subscription.id))
        assert claim.consecutive_failures == 2
        assert claim.last_error == "ebook-convert exited with status 1"

    def test_repeated_failures_escalate_to_error(self, batcher, seed, converter, run, caplog) -> None:
        converter.fail = ConversionFailure("broken")

        async def scenario():
            book = await seed.book()
            subscription = await seed.subscription(book)
            await seed.delivery_method()
            await seed.chapter(book, 1, queue_for=["user-1"])
            for _ in range(3):
                await batcher.process(subscription)

        with caplog.at_level(logging.WARNING, logger="serialdrop.pipeline.batcher"):
            run(scenario())

        levels = [record.levelno for record in caplog.records if "consecutive" in record.getMessage()]
        assert levels == [logging.WARNING, logging.WARNING, logging.ERROR]

    def test_success_resets_failure_count(self, batcher, seed, converter, run) -> None:
        async def scenario():
            book = await seed.book()
            subscription = await seed.subscription(book)
            await seed.delivery_method()
            await seed.chapter(book, 1, queue_for=["user-1"])
            converter.fail = ConversionFailure("broken")
            await batcher.process(subscription)
            converter.fail = None
            outcome = await batcher.process(subscription)
            return outcome, await seed.reload(SubscriptionClaim, subscription.id)

        outcome, claim = run(scenario())

        assert outcome.delivered
        assert claim.consecutive_failures == 0
        assert claim.last_error is None

    def test_accepted_channel_is_not_resent_on_retry(
        self, batcher, seed, session_factory, email_transport, push_transport, converter, run
    ) -> None:
        push_transport.fail = DeliveryFailure("Pushover rejected the message")

        async def scenario():
            book = await seed.book()
            subscription = await seed.subscription(book)
            await seed.delivery_method(pushover=True)
            await seed.chapter(book, 1, "C1", queue_for=["user-1"])

            failed = await batcher.process(subscription)
            markers = await _markers(session_factory, subscription.id)

            push_transport.fail = None
            retried = await batcher.process(subscription)
            return failed, markers, retried

        failed, markers, retried = run(scenario())

        assert failed.status == STATUS_FAILED
        assert failed.channels == []
        assert markers == ["kindle_email"]
        assert retried.delivered
        assert retried.channels == ["pushover"]
        assert len(email_transport.sent) == 1
        assert len(push_transport.sent) == 1
        assert len(converter.calls) == 1
        assert run(seed.queued_names()) == []

    def test_artifact_is_reused_after_failed_send(self, batcher, seed, store, config, converter, email_transport, run) -> None:
        email_transport.fail = DeliveryFailure("Mailgun returned 500")

        async def scenario():
            book = await seed.book()
            subscription = await seed.subscription(book)
            await seed.delivery_method()
            await seed.chapter(book, 1, "C1", queue_for=["user-1"])
            first = await batcher.process(subscription)
            email_transport.fail = None
            second = await batcher.process(subscription)
            stored = await store.exists(config.bucket, artifact_key(subscription.id, first.group_key))
            return first, second, stored

        first, second, stored = run(scenario())

        assert first.status == STATUS_FAILED
        assert second.delivered
        assert first.group_key == second.group_key
        assert stored
        assert len(converter.calls) == 1
        assert email_transport.sent[0].attachment.data == b"EPUB:C1"


class TestExactlyOnce:
    """A committed group is never delivered again."""

    def test_commit_twice_fails_without_changes(self, batcher, seed, run) -> None:
        async def scenario():
            book = await seed.book()
            subscription = await seed.subscription(book)
            await seed.chapter(book, 1, queue_for=["user-1"])
            group = await batcher.tick(subscription)
            await batcher.commit_group(group)
            with pytest.raises(StorageFailure, match="already committed"):
                await batcher.commit_group(group)
            return await seed.reload(Subscription, subscription.id), group

        subscription, group = run(scenario())

        assert subscription.last_chapter_id == group.last_chapter_id

    def test_cursor_never_moves_backwards(self, batcher, seed, run) -> None:
        async def scenario():
            book = await seed.book()
            subscription = await seed.subscription(book)
            await seed.chapter(book, 1, queue_for=["user-1"])
            later = await seed.chapter(book, 5)
            async with seed.session_factory() as session:
                row = await session.get(Subscription, subscription.id)
                row.last_chapter_id = later.id
                await session.commit()
            group = await batcher.tick(subscription)
            await batcher.commit_group(group)
            return later, await seed.reload(Subscription, subscription.id)

        later, subscription = run(scenario())

        assert subscription.last_chapter_id == later.id
        assert run(seed.queued_names()) == []

    def test_delivered_group_is_not_resent(self, batcher, seed, email_transport, run) -> None:
        async def scenario():
            book = await seed.book()
            subscription = await seed.subscription(book)
            await seed.delivery_method()
            await seed.chapter(book, 1, queue_for=["user-1"])
            first = await batcher.process(subscription)
            second = await batcher.process(subscription)
            return first, second

        first, second = run(scenario())

        assert first.delivered
        assert second.status == STATUS_WAITING
        assert len(email_transport.sent) == 1


class TestClaims:
    def test_claimed_elsewhere_is_skipped(self, batcher, seed, session_factory, email_transport, run) -> None:
        async def scenario():
            book = await seed.book()
            subscription = await seed.subscription(book)
            await seed.delivery_method()
            await seed.chapter(book, 1, queue_for=["user-1"])
            async with session_factory() as session:
                session.add(
                    SubscriptionClaim(
                        subscription_id=subscription.id,
                        claimed_by="worker-b",
                        claim_expires_at=utcnow() + timedelta(minutes=5),
                        consecutive_failures=0,
                    )
                )
                await session.commit()
            return await batcher.process(subscription), await seed.reload(SubscriptionClaim, subscription.id)

        outcome, claim = run(scenario())

        assert outcome.status == STATUS_CLAIMED
        assert claim.claimed_by == "worker-b"
        assert email_transport.sent == []

    def test_expired_claim_is_taken_over(self, batcher, seed, session_factory, run) -> None:
        async def scenario():
            book = await seed.book()
            subscription = await seed.subscription(book)
            async with session_factory() as session:
                session.add(
                    SubscriptionClaim(
                        subscription_id=subscription.id,
                        claimed_by="crashed",
                        claim_expires_at=utcnow() - timedelta(seconds=1),
                        consecutive_failures=0,
                    )
                )
                await session.commit()
            return await batcher.claim(subscription)

        assert run(scenario()) is True

    def test_overlapping_ticks_deliver_once(self, batcher, seed, email_transport, run) -> None:
        email_transport.delay = 0.2

        async def scenario():
            book = await seed.book()
            subscription = await seed.subscription(book)
            await seed.delivery_method()
            await seed.chapter(book, 1, queue_for=["user-1"])
            return await asyncio.gather(batcher.process(subscription), batcher.process(subscription))

        outcomes = run(scenario())

        assert sorted(outcome.status for outcome in outcomes) == sorted([STATUS_CLAIMED, STATUS_DELIVERED])
        assert len(email_transport.sent) == 1
        assert run(seed.queued_names()) == []

    def test_claim_held_by_same_worker_is_not_retaken(self, batcher, seed, run) -> None:
        async def scenario():
            book = await seed.book()
            subscription = await seed.subscription(book)
            return await batcher.claim(subscription), await batcher.claim(subscription)

        assert run(scenario()) == (True, False)


class TestMisconfiguration:
    def test_no_delivery_method(self, batcher, seed, run) -> None:
        async def scenario():
            book = await seed.book()
            subscription = await seed.subscription(book)
            await seed.chapter(book, 1, "C1", queue_for=["user-1"])
            return await batcher.process(subscription)

        outcome = run(scenario())

        assert outcome.status == STATUS_MISCONFIGURED
        assert "no eligible delivery channel" in outcome.error
        assert run(seed.queued_names()) == ["C1"]

    def test_expired_verification_code_blocks_email(self, batcher, seed, email_transport, converter, run) -> None:
        async def scenario():
            book = await seed.book()
            subscription = await seed.subscription(book)
            await seed.delivery_method(
                kindle=False,
                kindle_email="reader@kindle.com",
                kindle_email_verified=False,
                kindle_email_verification_code="ABCDE12345",
                kindle_email_verification_code_time=utcnow() - timedelta(minutes=6),
            )
            await seed.chapter(book, 1, "C1", queue_for=["user-1"])
            return await batcher.process(subscription)

        outcome = run(scenario())

        assert outcome.status == STATUS_MISCONFIGURED
        assert email_transport.sent == []
        assert converter.calls == []
        assert run(seed.queued_names()) == ["C1"]

    def test_disabled_channel_is_skipped(self, batcher, seed, email_transport, push_transport, run) -> None:
        async def scenario():
            book = await seed.book()
            subscription = await seed.subscription(book)
            await seed.delivery_method(pushover=True, kindle_email_enabled=False)
            await seed.chapter(book, 1, queue_for=["user-1"])
            return await batcher.process(subscription)

        outcome = run(scenario())

        assert outcome.channels == ["pushover"]
        assert email_transport.sent == []

    def test_channel_without_transport_is_ignored(self, session_factory, store, converter, push_transport, config, seed, run) -> None:
        batcher = Batcher(
            session_factory, store, converter, build_channels(None, push_transport), config, worker_id="w"
        )

        async def scenario():
            book = await seed.book()
            subscription = await seed.subscription(book)
            await seed.delivery_method()
            await seed.chapter(book, 1, queue_for=["user-1"])
            return await batcher.process(subscription)

        outcome = run(scenario())

        assert outcome.status == STATUS_MISCONFIGURED
        assert ChannelKind.KINDLE_EMAIL not in batcher.channels


class TestPendingSubscriptions:
    def test_only_active_with_queue(self, batcher, seed, run) -> None:
        async def scenario():
            book = await seed.book()
            with_queue = await seed.subscription(book, "alice")
            await seed.subscription(book, "bob")
            inactive = await seed.subscription(book, "carol", active=False)
            await seed.chapter(book, 1, queue_for=["alice", "carol"])
            pending = await batcher.pending_subscriptions()
            return with_queue, inactive, pending

        with_queue, inactive, pending = run(scenario())

        assert [s.id for s in pending] == [with_queue.id]
