"""SQLAlchemy models package."""

from clusterhub.models.enums import (
    ChatType,
    EntityType,
    MemberRole,
    MessageType,
    NotificationType,
    ProjectRole,
    TaskPriority,
    TaskStatus,
)
from clusterhub.models.user import User
from clusterhub.models.chat import Chat, ChatMember, Message, ReadReceipt
from clusterhub.models.cluster import Cluster, ClusterMember
from clusterhub.models.project import Project, ProjectMember, Task, TaskAssignment
from clusterhub.models.notification import Notification

__all__ = [
    # Enumerations
    "ChatType",
    "EntityType",
    "MemberRole",
    "MessageType",
    "NotificationType",
    "ProjectRole",
    "TaskPriority",
    "TaskStatus",
    # Users
    "User",
    # Chats & Messages
    "Chat",
    "ChatMember",
    "Message",
    "ReadReceipt",
    # Clusters & Projects
    "Cluster",
    "ClusterMember",
    "Project",
    "ProjectMember",
    "Task",
    "TaskAssignment",
    # Notifications
    "Notification",
]
