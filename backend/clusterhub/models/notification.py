"""Notification model."""

from typing import TYPE_CHECKING

from sqlalchemy import Boolean, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from clusterhub.db.base import BaseModel
from clusterhub.models.enums import EntityType, NotificationType, enum_type

if TYPE_CHECKING:
    from clusterhub.models.user import User

NOTIFICATION_MESSAGE_MAX_LENGTH = 255


class Notification(BaseModel):
    """
    Entry in a user's notification feed.

    The originating task or message is referenced by (entity_type, entity_id)
    without a foreign key: the referent may be deleted while the
    notification stays in the feed.
    """

    __tablename__ = "notifications"

    # Recipient
    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id"),
        nullable=False,
        index=True,
    )

    # Actor, if any
    source_user_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("users.id"),
        nullable=True,
    )

    # Weak reference to the originating entity
    entity_type: Mapped[EntityType | None] = mapped_column(
        enum_type(EntityType, "notification_entity_type"),
        nullable=True,
    )
    entity_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    notification_type: Mapped[NotificationType] = mapped_column(
        enum_type(NotificationType, "notification_type"),
        nullable=False,
        index=True,
    )
    message: Mapped[str] = mapped_column(
        String(NOTIFICATION_MESSAGE_MAX_LENGTH),
        nullable=False,
    )

    # Status
    is_read: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        index=True,
    )

    # Relationships
    user: Mapped["User"] = relationship(
        "User",
        foreign_keys=[user_id],
        lazy="joined",
    )
    source_user: Mapped["User | None"] = relationship(
        "User",
        foreign_keys=[source_user_id],
        lazy="joined",
    )

    def __repr__(self) -> str:
        return f"<Notification id={self.id} user={self.user_id} type={self.notification_type}>"
