"""Notification service for mention and assignment notifications."""

import re
from typing import Iterable, Sequence

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from clusterhub.db.session import transaction
from clusterhub.exceptions import ForbiddenError, NotAMemberError
from clusterhub.models.chat import Message
from clusterhub.models.enums import EntityType, NotificationType
from clusterhub.models.notification import NOTIFICATION_MESSAGE_MAX_LENGTH, Notification
from clusterhub.models.project import ProjectMember, Task, TaskAssignment
from clusterhub.models.user import User
from clusterhub.services.store import EntityStore

logger = structlog.get_logger()

# @ followed by word chars, dots, @, plus and hyphens (covers emails)
MENTION_PATTERN = re.compile(r"@([\w.@+-]+)")


def parse_mentions(content: str | None) -> list[str]:
    """Extract @mention tokens from message text, lowercased and deduplicated."""
    if not content:
        return []
    seen = set()
    mentions = []
    for match in MENTION_PATTERN.findall(content):
        # Sentence punctuation is not part of the handle
        token = match.rstrip(".").lower()
        if token and token not in seen:
            seen.add(token)
            mentions.append(token)
    return mentions


def _truncate(text: str) -> str:
    if len(text) <= NOTIFICATION_MESSAGE_MAX_LENGTH:
        return text
    return text[: NOTIFICATION_MESSAGE_MAX_LENGTH - 3] + "..."


class NotificationService:
    """Service for creating and managing user notifications."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.store = EntityStore(db)

    async def notify(
        self,
        user_id: int,
        notification_type: NotificationType,
        message: str,
        source_user_id: int | None = None,
        entity_type: EntityType | None = None,
        entity_id: int | None = None,
    ) -> Notification | None:
        """
        Create a notification for a user.

        Args:
            user_id: The recipient user's ID
            notification_type: mention or assignment
            message: Notification text, truncated to fit the column
            source_user_id: Optional actor user ID
            entity_type: Optional kind of the originating entity
            entity_id: Optional ID of the originating entity

        Returns:
            Created Notification, or None for a self-notification
        """
        async with transaction(self.db):
            await self.store.get_user(user_id)
            notification = await self._add(
                user_id=user_id,
                notification_type=notification_type,
                message=message,
                source_user_id=source_user_id,
                entity_type=entity_type,
                entity_id=entity_id,
            )
        return notification

    async def _add(
        self,
        user_id: int,
        notification_type: NotificationType,
        message: str,
        source_user_id: int | None = None,
        entity_type: EntityType | None = None,
        entity_id: int | None = None,
    ) -> Notification | None:
        """Stage a notification in the caller's transaction."""
        # Don't notify users about their own actions
        if source_user_id is not None and source_user_id == user_id:
            logger.debug(
                "skipping_self_notification",
                user_id=user_id,
                notification_type=notification_type,
            )
            return None

        notification = Notification(
            user_id=user_id,
            notification_type=notification_type,
            message=_truncate(message),
            source_user_id=source_user_id,
            entity_type=entity_type,
            entity_id=entity_id,
            is_read=False,
        )
        self.db.add(notification)
        await self.db.flush()

        logger.info(
            "notification_created",
            notification_id=notification.id,
            user_id=user_id,
            notification_type=notification_type,
        )
        return notification

    # =========================================================================
    # Triggers
    # =========================================================================

    async def dispatch_mentions(
        self,
        message: Message,
        participants: Iterable[User],
    ) -> list[Notification]:
        """
        Notify every participant mentioned in a message.

        A mention is ``@email`` or ``@display_name``, matched without regard
        to case. Mentions of users outside ``participants`` are ignored and
        each user is notified at most once per message. Runs inside the
        caller's transaction.
        """
        tokens = parse_mentions(message.text)
        if not tokens:
            return []

        by_handle: dict[str, User] = {}
        for user in participants:
            by_handle.setdefault(user.email.lower(), user)
            by_handle.setdefault(user.display_name.lower(), user)

        author = await self.store.get_user(message.author_id)
        notified = set()
        notifications = []
        for token in tokens:
            user = by_handle.get(token)
            if user is None or user.id in notified:
                continue
            notified.add(user.id)

            notification = await self._add(
                user_id=user.id,
                notification_type=NotificationType.MENTION,
                message=f"{author.display_name} mentioned you: {message.text}",
                source_user_id=message.author_id,
                entity_type=EntityType.MESSAGE,
                entity_id=message.id,
            )
            if notification:
                notifications.append(notification)

        logger.info(
            "mentions_dispatched",
            message_id=message.id,
            mention_count=len(tokens),
            notified_count=len(notifications),
        )
        return notifications

    async def assign_task(
        self,
        task_id: int,
        user_ids: Sequence[int],
        assigned_by_id: int | None = None,
    ) -> list[TaskAssignment]:
        """
        Assign project members to a task and notify each new assignee.

        Users already assigned are skipped. Assignment rows and notifications
        commit together.

        Raises:
            NotFoundError if the task does not exist
            NotAMemberError if a user is not a member of the task's project
        """
        async with transaction(self.db):
            task = await self.store.get_task(task_id)

            result = await self.db.execute(
                select(ProjectMember.user_id).where(ProjectMember.project_id == task.project_id)
            )
            project_members = set(result.scalars().all())

            result = await self.db.execute(
                select(TaskAssignment.user_id).where(TaskAssignment.task_id == task_id)
            )
            already_assigned = set(result.scalars().all())

            assignments = []
            for user_id in dict.fromkeys(user_ids):
                if user_id not in project_members:
                    raise NotAMemberError("project", task.project_id, user_id)
                if user_id in already_assigned:
                    logger.debug("assignment_already_exists", task_id=task_id, user_id=user_id)
                    continue

                assignment = TaskAssignment(task_id=task_id, user_id=user_id)
                self.db.add(assignment)
                assignments.append(assignment)
            await self.db.flush()

            for assignment in assignments:
                await self._add(
                    user_id=assignment.user_id,
                    notification_type=NotificationType.ASSIGNMENT,
                    message=f"You were assigned to task: {task.name}",
                    source_user_id=assigned_by_id,
                    entity_type=EntityType.TASK,
                    entity_id=task_id,
                )

        logger.info(
            "users_assigned_to_task",
            task_id=task_id,
            assigned_count=len(assignments),
            assigned_by=assigned_by_id,
        )
        return assignments

    # =========================================================================
    # Feed
    # =========================================================================

    async def mark_read(self, notification_id: int, user_id: int) -> Notification:
        """
        Mark a notification as read. Only its recipient may do so.

        Raises:
            NotFoundError if the notification does not exist
            ForbiddenError if the user is not the recipient
        """
        async with transaction(self.db):
            notification = await self.store.get_notification(notification_id)
            if notification.user_id != user_id:
                raise ForbiddenError(
                    f"Notification {notification_id} belongs to another user"
                )
            notification.is_read = True

        return notification

    async def mark_all_read(self, user_id: int) -> int:
        """Mark all of a user's notifications as read. Returns how many changed."""
        async with transaction(self.db):
            result = await self.db.execute(
                update(Notification)
                .where(Notification.user_id == user_id, Notification.is_read.is_(False))
                .values(is_read=True)
            )

        logger.info("notifications_marked_read", user_id=user_id, count=result.rowcount)
        return result.rowcount

    async def list_notifications(
        self,
        user_id: int,
        unread_only: bool = False,
        limit: int = 50,
    ) -> list[Notification]:
        """Get a user's notifications, newest first."""
        query = select(Notification).where(Notification.user_id == user_id)
        if unread_only:
            query = query.where(Notification.is_read.is_(False))
        query = query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit)

        result = await self.db.execute(query)
        return list(result.scalars().unique().all())

    async def unread_notification_count(self, user_id: int) -> int:
        result = await self.db.execute(
            select(func.count())
            .select_from(Notification)
            .where(Notification.user_id == user_id, Notification.is_read.is_(False))
        )
        return result.scalar_one()

    async def resolve_entity(self, notification: Notification) -> Task | Message | None:
        """Load the entity a notification points at, or None if it is gone."""
        if notification.entity_id is None:
            return None
        if notification.entity_type == EntityType.TASK:
            return await self.db.get(Task, notification.entity_id)
        if notification.entity_type == EntityType.MESSAGE:
            return await self.db.get(Message, notification.entity_id)
        return None
