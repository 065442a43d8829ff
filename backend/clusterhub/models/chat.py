"""Chat, message and read receipt models."""

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from clusterhub.db.base import Base, BaseModel, SoftDeleteMixin, utcnow
from clusterhub.models.enums import ChatType, MemberRole, MessageType, enum_type

if TYPE_CHECKING:
    from clusterhub.models.user import User


class Chat(BaseModel):
    """A conversation surface.

    Project and company chats are owned by a project or cluster row that
    points at them; direct chats carry explicit ChatMember rows.
    """

    __tablename__ = "chats"

    chat_type: Mapped[ChatType] = mapped_column(
        enum_type(ChatType, "chat_type"),
        nullable=False,
    )

    # Relationships
    members: Mapped[list["ChatMember"]] = relationship(
        "ChatMember",
        back_populates="chat",
        passive_deletes=True,
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<Chat id={self.id} type={self.chat_type}>"


class ChatMember(Base):
    """Explicit membership of a user in a chat."""

    __tablename__ = "chat_members"

    chat_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("chats.id", ondelete="CASCADE"),
        primary_key=True,
        index=True,
    )
    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id"),
        primary_key=True,
        index=True,
    )
    role: Mapped[MemberRole] = mapped_column(
        enum_type(MemberRole, "member_role"),
        nullable=False,
        default=MemberRole.MEMBER,
    )
    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    # Relationships
    chat: Mapped["Chat"] = relationship("Chat", back_populates="members")

    def __repr__(self) -> str:
        return f"<ChatMember chat={self.chat_id} user={self.user_id}>"


class Message(BaseModel, SoftDeleteMixin):
    """A message posted to a chat.

    Immutable after creation apart from ``is_deleted`` and ``updated_at``.
    """

    __tablename__ = "messages"
    __table_args__ = (
        # History is read in (created_at, id) order per chat
        Index("ix_messages_chat_created", "chat_id", "created_at", "id"),
    )

    chat_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("chats.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    author_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id"),
        nullable=False,
        index=True,
    )
    text: Mapped[str | None] = mapped_column(Text, nullable=True)
    file_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    message_type: Mapped[MessageType] = mapped_column(
        enum_type(MessageType, "message_type"),
        nullable=False,
        default=MessageType.TEXT,
    )

    # Relationships
    author: Mapped["User"] = relationship("User", lazy="joined")

    def __repr__(self) -> str:
        return f"<Message id={self.id} chat={self.chat_id}>"


class ReadReceipt(Base):
    """Delivery and read state of one message for one recipient.

    Both timestamps are write-once: delivered_at is stamped on first
    delivery, read_at on first read. The author never has a receipt.
    """

    __tablename__ = "message_read_receipts"
    __table_args__ = (
        CheckConstraint(
            "read_at IS NULL OR delivered_at IS NOT NULL",
            name="ck_receipt_read_after_delivery",
        ),
    )

    message_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("messages.id", ondelete="CASCADE"),
        primary_key=True,
        index=True,
    )
    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id"),
        primary_key=True,
        index=True,
    )
    delivered_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    read_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<ReadReceipt message={self.message_id} user={self.user_id}>"
