"""Mentions, assignments and the notification feed."""
import pytest
from sqlalchemy import func, select

from clusterhub.exceptions import ForbiddenError, NotAMemberError, NotFoundError
from clusterhub.models import EntityType, Notification, NotificationType, TaskAssignment
from clusterhub.services.messaging import MessagingService
from clusterhub.services.notification import NotificationService, parse_mentions
from clusterhub.services.store import EntityStore

pytestmark = pytest.mark.asyncio


async def notifications_for(session_factory, user_id: int) -> list[Notification]:
    async with session_factory() as session:
        result = await session.execute(
            select(Notification).where(Notification.user_id == user_id).order_by(Notification.id)
        )
        return list(result.scalars().unique().all())


async def test_parse_mentions_dedups_and_strips_punctuation():
    text = "Hi @Bob and @carol@example.com. Also @bob, again @BOB."
    assert parse_mentions(text) == ["bob", "carol@example.com"]
    assert parse_mentions(None) == []


class TestMentions:
    async def test_mentions_notify_participants(self, seed, db, session_factory):
        message = await MessagingService(db).send_message(
            seed.project_chat, seed.alice, text="@BOB please sync with @carol@example.com"
        )

        bob_feed = await notifications_for(session_factory, seed.bob)
        carol_feed = await notifications_for(session_factory, seed.carol)
        assert len(bob_feed) == 1
        assert len(carol_feed) == 1
        assert bob_feed[0].notification_type == NotificationType.MENTION
        assert bob_feed[0].entity_type == EntityType.MESSAGE
        assert bob_feed[0].entity_id == message.id
        assert bob_feed[0].source_user_id == seed.alice

    async def test_non_members_and_self_are_skipped(self, seed, db, session_factory):
        await MessagingService(db).send_message(
            seed.project_chat, seed.alice, text="@dave @alice @ghost hello"
        )

        assert await notifications_for(session_factory, seed.dave) == []
        assert await notifications_for(session_factory, seed.alice) == []

    async def test_user_mentioned_twice_is_notified_once(self, seed, db, session_factory):
        await MessagingService(db).send_message(
            seed.project_chat, seed.alice, text="@bob @bob@example.com @Bob"
        )

        assert len(await notifications_for(session_factory, seed.bob)) == 1


class TestAssignments:
    async def test_assign_notifies_each_new_assignee(self, seed, db, session_factory):
        service = NotificationService(db)

        assignments = await service.assign_task(seed.task, [seed.bob, seed.carol], assigned_by_id=seed.alice)
        assert {a.user_id for a in assignments} == {seed.bob, seed.carol}

        again = await service.assign_task(seed.task, [seed.bob], assigned_by_id=seed.alice)
        assert again == []

        bob_feed = await notifications_for(session_factory, seed.bob)
        assert len(bob_feed) == 1
        assert bob_feed[0].notification_type == NotificationType.ASSIGNMENT
        assert bob_feed[0].entity_type == EntityType.TASK
        assert bob_feed[0].entity_id == seed.task

    async def test_self_assignment_is_not_notified(self, seed, db, session_factory):
        await NotificationService(db).assign_task(seed.task, [seed.alice], assigned_by_id=seed.alice)

        assert await notifications_for(session_factory, seed.alice) == []

    async def test_non_member_assignment_is_atomic(self, seed, db, session_factory):
        with pytest.raises(NotAMemberError):
            await NotificationService(db).assign_task(seed.task, [seed.bob, seed.dave])

        async with session_factory() as session:
            assert await session.scalar(select(func.count()).select_from(TaskAssignment)) == 0
        assert await notifications_for(session_factory, seed.bob) == []

    async def test_unknown_task(self, seed, db):
        with pytest.raises(NotFoundError):
            await NotificationService(db).assign_task(9999, [seed.bob])


class TestFeed:
    async def test_notify_does_not_deduplicate(self, seed, db):
        service = NotificationService(db)
        for _ in range(2):
            await service.notify(seed.bob, NotificationType.MENTION, "ping", source_user_id=seed.alice)

        assert await service.unread_notification_count(seed.bob) == 2

    async def test_notify_skips_self(self, seed, db):
        service = NotificationService(db)
        assert await service.notify(seed.bob, NotificationType.MENTION, "me", source_user_id=seed.bob) is None

    async def test_long_messages_are_truncated(self, seed, db):
        notification = await NotificationService(db).notify(seed.bob, NotificationType.MENTION, "x" * 400)
        assert len(notification.message) == 255

    async def test_only_recipient_marks_read(self, seed, db):
        service = NotificationService(db)
        notification = await service.notify(seed.bob, NotificationType.MENTION, "ping")
        notification_id = notification.id

        with pytest.raises(ForbiddenError):
            await service.mark_read(notification_id, seed.carol)
        with pytest.raises(NotFoundError):
            await service.mark_read(9999, seed.bob)

        marked = await service.mark_read(notification_id, seed.bob)
        assert marked.is_read is True
        again = await service.mark_read(notification_id, seed.bob)
        assert again.is_read is True

    async def test_mark_all_read_and_list(self, seed, db):
        service = NotificationService(db)
        for text in ("first", "second", "third"):
            await service.notify(seed.bob, NotificationType.MENTION, text)

        feed = await service.list_notifications(seed.bob)
        assert [n.message for n in feed] == ["third", "second", "first"]

        assert await service.mark_all_read(seed.bob) == 3
        assert await service.unread_notification_count(seed.bob) == 0
        assert await service.list_notifications(seed.bob, unread_only=True) == []


class TestWeakReferences:
    async def test_resolve_entity(self, seed, db):
        service = NotificationService(db)
        await service.assign_task(seed.task, [seed.bob])
        [notification] = await service.list_notifications(seed.bob)

        task = await service.resolve_entity(notification)
        assert task is not None
        assert task.id == seed.task

    async def test_notification_outlives_deleted_entity(self, seed, db, session_factory):
        service = NotificationService(db)
        await service.assign_task(seed.task, [seed.bob])

        await EntityStore(db).delete_cluster(seed.cluster)

        async with session_factory() as session:
            feed = await NotificationService(session).list_notifications(seed.bob)
            assert len(feed) == 1
            assert await NotificationService(session).resolve_entity(feed[0]) is None
