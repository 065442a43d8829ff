"""Message delivery and read receipt tracking.

Sending a message creates one pending receipt per recipient up front, so
unread counts and delivery status are plain lookups. Receipt timestamps are
write-once: every transition is a conditional UPDATE guarded by
``... IS NULL``, which makes concurrent and repeated calls converge on the
first writer's timestamp.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, TypeVar

import structlog
from sqlalchemy import and_, case, distinct, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from clusterhub.config import Settings, get_settings
from clusterhub.db.base import utcnow
from clusterhub.db.session import transaction
from clusterhub.exceptions import ForbiddenError, InvalidStateError, UnavailableError
from clusterhub.models.chat import Message, ReadReceipt
from clusterhub.models.enums import MessageType
from clusterhub.models.user import User
from clusterhub.services.access_control import ChatAccessResolver
from clusterhub.services.notification import NotificationService
from clusterhub.services.store import EntityStore

logger = structlog.get_logger()

T = TypeVar("T")

# Receipt operations are retried this many times on a store failure
RECEIPT_RETRIES = 1


@dataclass(frozen=True)
class RecipientStatus:
    """Delivery state of a message for one recipient."""

    user_id: int
    display_name: str
    delivered_at: datetime | None
    read_at: datetime | None


class MessagingService:
    """Service for sending messages and tracking their receipts."""

    def __init__(self, db: AsyncSession, settings: Settings | None = None):
        self.db = db
        self.settings = settings or get_settings()
        self.store = EntityStore(db)
        self.access = ChatAccessResolver(db, self.settings)
        self.notifications = NotificationService(db)

    # =========================================================================
    # Sending
    # =========================================================================

    async def send_message(
        self,
        chat_id: int,
        author_id: int,
        text: str | None = None,
        message_type: MessageType = MessageType.TEXT,
        file_url: str | None = None,
    ) -> Message:
        """
        Post a message to a chat.

        The message, a pending receipt for every other participant and any
        mention notifications commit together. Not retried: a store failure
        surfaces as UnavailableError so the caller decides whether to resend.

        Raises:
            NotFoundError if the chat does not exist
            ForbiddenError if the author cannot access the chat
            InvalidStateError for empty content or an oversized audience
            UnavailableError on a store failure
        """
        _validate_content(message_type, text, file_url)

        try:
            async with transaction(self.db):
                await self.access.require_access(author_id, chat_id)

                participants = await self.access.participants(chat_id)
                recipient_ids = [user.id for user in participants if user.id != author_id]
                if len(recipient_ids) > self.settings.max_fanout_recipients:
                    raise InvalidStateError(
                        f"Chat {chat_id} has {len(recipient_ids)} recipients; "
                        f"the limit is {self.settings.max_fanout_recipients}",
                        code="FANOUT_LIMIT",
                    )

                message = Message(
                    chat_id=chat_id,
                    author_id=author_id,
                    text=text,
                    file_url=file_url,
                    message_type=message_type,
                )
                self.db.add(message)
                await self.db.flush()

                chunk_size = self.settings.fanout_chunk_size
                for start in range(0, len(recipient_ids), chunk_size):
                    chunk = recipient_ids[start : start + chunk_size]
                    await self.db.execute(
                        ReadReceipt.__table__.insert(),
                        [{"message_id": message.id, "user_id": user_id} for user_id in chunk],
                    )

                await self.notifications.dispatch_mentions(message, participants)
        except DBAPIError as err:
            logger.error(
                "message_send_failed",
                chat_id=chat_id,
                author_id=author_id,
                error=str(err.orig),
            )
            raise UnavailableError("send_message", str(err.orig)) from err

        logger.info(
            "message_sent",
            message_id=message.id,
            chat_id=chat_id,
            author_id=author_id,
            recipient_count=len(recipient_ids),
        )
        return message

    async def delete_message(self, message_id: int, user_id: int) -> Message:
        """Soft-delete a message. Only its author may do so; idempotent."""
        async with transaction(self.db):
            message = await self.store.get_message(message_id)
            if message.author_id != user_id:
                raise ForbiddenError(f"Only the author can delete message {message_id}")
            if not message.is_deleted:
                message.is_deleted = True
                message.updated_at = utcnow()

        logger.info("message_deleted", message_id=message_id, user_id=user_id)
        return message

    async def list_messages(
        self,
        chat_id: int,
        user_id: int,
        before_id: int | None = None,
        limit: int = 50,
    ) -> list[Message]:
        """
        Get chat history in (created_at, id) order, oldest first.

        With ``before_id`` only messages strictly before that message are
        returned. Soft-deleted messages are included with their flag set.
        """
        await self.access.require_access(user_id, chat_id)

        query = select(Message).where(Message.chat_id == chat_id)
        if before_id is not None:
            anchor = await self.store.get_message(before_id)
            query = query.where(
                or_(
                    Message.created_at < anchor.created_at,
                    and_(Message.created_at == anchor.created_at, Message.id < anchor.id),
                )
            )
        query = query.order_by(Message.created_at.desc(), Message.id.desc()).limit(limit)

        result = await self.db.execute(query)
        messages = list(result.scalars().unique().all())
        messages.reverse()
        return messages

    # =========================================================================
    # Receipts
    # =========================================================================

    async def mark_delivered(self, message_id: int, user_id: int) -> ReadReceipt:
        """
        Record delivery of a message to a recipient.

        Idempotent: the first delivery timestamp is kept. A missing receipt
        (the user joined after the message was sent) is created.
        """
        async def stamp() -> ReadReceipt:
            await self._require_recipient(message_id, user_id)
            await self._ensure_receipts([message_id], user_id)
            await self.db.execute(
                update(ReadReceipt)
                .where(
                    ReadReceipt.message_id == message_id,
                    ReadReceipt.user_id == user_id,
                    ReadReceipt.delivered_at.is_(None),
                )
                .values(delivered_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            return await self._receipt(message_id, user_id)

        receipt = await self._with_retry("mark_delivered", stamp)
        logger.debug("message_delivered", message_id=message_id, user_id=user_id)
        return receipt

    async def mark_read(self, message_id: int, user_id: int) -> ReadReceipt:
        """
        Record that a recipient read a message.

        The first read wins and read_at never moves afterwards. The message
        must have been delivered first unless ``implicit_delivery_on_read``
        is enabled, in which case delivery is stamped together with the read.

        Raises:
            InvalidStateError if the message was not delivered yet
        """
        implicit = self.settings.implicit_delivery_on_read

        async def stamp() -> ReadReceipt:
            await self._require_recipient(message_id, user_id)
            if implicit:
                await self._ensure_receipts([message_id], user_id)

            receipt = await self._receipt(message_id, user_id)
            if receipt is None or receipt.delivered_at is None:
                if not implicit:
                    raise InvalidStateError(
                        f"Message {message_id} has not been delivered to user {user_id}",
                        code="NOT_DELIVERED",
                    )

            await self.db.execute(
                update(ReadReceipt)
                .where(
                    ReadReceipt.message_id == message_id,
                    ReadReceipt.user_id == user_id,
                    ReadReceipt.read_at.is_(None),
                )
                .values(**_read_values(utcnow()))
                .execution_options(synchronize_session=False)
            )
            return await self._receipt(message_id, user_id)

        receipt = await self._with_retry("mark_read", stamp)
        logger.debug("message_read", message_id=message_id, user_id=user_id)
        return receipt

    async def mark_chat_read(self, chat_id: int, user_id: int) -> int:
        """
        Mark every message from others in a chat as read.

        Messages not yet delivered are delivered in the same statement.
        Returns the number of receipts that became read.
        """
        async def stamp() -> int:
            await self.access.require_access(user_id, chat_id)

            result = await self.db.execute(
                select(Message.id).where(
                    Message.chat_id == chat_id,
                    Message.author_id != user_id,
                    Message.is_deleted.is_(False),
                )
            )
            message_ids = list(result.scalars().all())
            if not message_ids:
                return 0

            await self._ensure_receipts(message_ids, user_id)
            result = await self.db.execute(
                update(ReadReceipt)
                .where(
                    ReadReceipt.user_id == user_id,
                    ReadReceipt.message_id.in_(message_ids),
                    ReadReceipt.read_at.is_(None),
                )
                .values(**_read_values(utcnow()))
                .execution_options(synchronize_session=False)
            )
            return result.rowcount

        count = await self._with_retry("mark_chat_read", stamp)
        logger.info("chat_marked_read", chat_id=chat_id, user_id=user_id, count=count)
        return count

    # =========================================================================
    # Queries
    # =========================================================================

    async def unread_count(self, chat_id: int, user_id: int) -> int:
        """
        Count messages from others in a chat the user has not read.

        Every non-deleted message by another author counts unless the user
        holds a receipt with read_at set for it.
        """
        await self.access.require_access(user_id, chat_id)

        result = await self.db.execute(
            select(func.count(distinct(Message.id))).where(
                Message.chat_id == chat_id,
                Message.author_id != user_id,
                Message.is_deleted.is_(False),
                Message.id.not_in(self._read_message_ids(user_id)),
            )
        )
        return result.scalar_one()

    async def unread_summary(self, user_id: int) -> dict[int, int]:
        """Unread counts for every accessible chat with unread messages."""
        result = await self.db.execute(
            select(Message.chat_id, func.count(distinct(Message.id)))
            .where(
                Message.chat_id.in_(self.access.accessible_chats(user_id)),
                Message.author_id != user_id,
                Message.is_deleted.is_(False),
                Message.id.not_in(self._read_message_ids(user_id)),
            )
            .group_by(Message.chat_id)
            .order_by(Message.chat_id)
        )
        return {chat_id: unread for chat_id, unread in result.all()}

    async def delivery_status(
        self,
        message_id: int,
        requester_id: int | None = None,
    ) -> list[RecipientStatus]:
        """
        Per-recipient delivery state of a message.

        Unread recipients come first, then readers by read time, most recent
        first. Ties are broken by user id.
        """
        message = await self.store.get_message(message_id)
        if requester_id is not None:
            await self.access.require_access(requester_id, message.chat_id)

        result = await self.db.execute(
            select(
                ReadReceipt.user_id,
                User.display_name,
                ReadReceipt.delivered_at,
                ReadReceipt.read_at,
            )
            .join(User, User.id == ReadReceipt.user_id)
            .where(ReadReceipt.message_id == message_id)
            .order_by(
                case((ReadReceipt.read_at.is_(None), 0), else_=1),
                ReadReceipt.read_at.desc(),
                ReadReceipt.user_id,
            )
        )
        return [
            RecipientStatus(
                user_id=row.user_id,
                display_name=row.display_name,
                delivered_at=row.delivered_at,
                read_at=row.read_at,
            )
            for row in result.all()
        ]

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _with_retry(self, operation: str, unit_of_work: Callable[[], Awaitable[T]]) -> T:
        """Run an idempotent unit of work, retrying once on a store failure."""
        attempt = 0
        while True:
            try:
                async with transaction(self.db):
                    return await unit_of_work()
            except DBAPIError as err:
                if attempt >= RECEIPT_RETRIES:
                    logger.error("receipt_update_failed", operation=operation, error=str(err.orig))
                    raise UnavailableError(operation, str(err.orig)) from err
                attempt += 1
                logger.warning("receipt_retry", operation=operation, attempt=attempt)

    async def _require_recipient(self, message_id: int, user_id: int) -> Message:
        message = await self.store.get_message(message_id)
        await self.access.require_access(user_id, message.chat_id)
        if message.author_id == user_id:
            raise InvalidStateError(
                f"User {user_id} is the author of message {message_id}",
                code="AUTHOR_RECEIPT",
            )
        return message

    async def _receipt(self, message_id: int, user_id: int) -> ReadReceipt | None:
        return await self.db.get(ReadReceipt, (message_id, user_id), populate_existing=True)

    async def _ensure_receipts(self, message_ids: list[int], user_id: int) -> None:
        """Create pending receipts that do not exist yet."""
        if self.db.get_bind().dialect.name == "postgresql":
            insert = pg_insert
        else:
            insert = sqlite_insert

        stmt = (
            insert(ReadReceipt.__table__)
            .values([{"message_id": message_id, "user_id": user_id} for message_id in message_ids])
            .on_conflict_do_nothing(index_elements=["message_id", "user_id"])
        )
        await self.db.execute(stmt)

    @staticmethod
    def _read_message_ids(user_id: int):
        return select(ReadReceipt.message_id).where(
            ReadReceipt.user_id == user_id,
            ReadReceipt.read_at.is_not(None),
        )


def _read_values(now: datetime) -> dict:
    """SET clause for a read transition, delivering first where needed.

    read_at is clamped to delivered_at so it never precedes delivery.
    """
    return {
        "delivered_at": func.coalesce(ReadReceipt.delivered_at, now),
        "read_at": case(
            (ReadReceipt.delivered_at > now, ReadReceipt.delivered_at),
            else_=now,
        ),
    }


def _validate_content(message_type: MessageType, text: str | None, file_url: str | None) -> None:
    if message_type == MessageType.TEXT and not (text and text.strip()):
        raise InvalidStateError("Text messages need non-empty text", code="EMPTY_MESSAGE")
    if message_type in (MessageType.IMAGE, MessageType.FILE) and not file_url:
        raise InvalidStateError(
            f"{message_type.capitalize()} messages need a file_url",
            code="MISSING_FILE",
        )
