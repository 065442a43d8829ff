"""Closed enumerations stored in the database.

Adding a member to any of these requires a migration: PostgreSQL stores
them as native enum types.
"""

from enum import StrEnum

from sqlalchemy import Enum as SAEnum


class ChatType(StrEnum):
    PROJECT = "project"
    COMPANY = "company"
    DIRECT = "direct"


class TaskPriority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TaskStatus(StrEnum):
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    DONE = "done"


class MessageType(StrEnum):
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"


class NotificationType(StrEnum):
    MENTION = "mention"
    ASSIGNMENT = "assignment"


class EntityType(StrEnum):
    """Kinds of entity a notification may point at."""

    TASK = "task"
    MESSAGE = "message"


class MemberRole(StrEnum):
    """Role within a cluster or a chat."""

    ADMIN = "admin"
    MEMBER = "member"


class ProjectRole(StrEnum):
    LEAD = "lead"
    MEMBER = "member"


def enum_type(enum_cls: type[StrEnum], name: str) -> SAEnum:
    """Column type persisting an enum by value rather than by member name."""
    return SAEnum(
        enum_cls,
        name=name,
        values_callable=lambda cls: [member.value for member in cls],
    )
