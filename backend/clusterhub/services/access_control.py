"""Chat access resolution.

Decides whether a user may read from or post to a chat:
- DIRECT: explicit chat members only
- PROJECT: project members, plus cluster admins or all cluster members
  depending on ``project_chat_visibility``
- COMPANY: members of the owning cluster

Resolution fails closed: a missing chat, an unowned project/company chat or
an inactive user never grants access.
"""

import structlog
from sqlalchemy import Select, false, select, union
from sqlalchemy.ext.asyncio import AsyncSession

from clusterhub.config import Settings, get_settings
from clusterhub.exceptions import ForbiddenError, NotFoundError
from clusterhub.models.chat import Chat, ChatMember
from clusterhub.models.cluster import Cluster, ClusterMember
from clusterhub.models.enums import ChatType, MemberRole
from clusterhub.models.project import Project, ProjectMember
from clusterhub.models.user import User

logger = structlog.get_logger()


class ChatAccessResolver:
    """Resolve chat visibility from the membership tables."""

    def __init__(self, db: AsyncSession, settings: Settings | None = None):
        self.db = db
        self.settings = settings or get_settings()

    async def can_access(self, user_id: int, chat_id: int) -> bool:
        """Check whether an active user can access a chat."""
        user = await self.db.get(User, user_id)
        if user is None or not user.is_active:
            return False

        chat = await self.db.get(Chat, chat_id)
        if chat is None:
            return False

        result = await self.db.execute(
            select(self._participant_ids(chat).where(User.id == user_id).exists())
        )
        return bool(result.scalar())

    async def require_access(self, user_id: int, chat_id: int) -> Chat:
        """
        Return the chat if the user may access it.

        Raises:
            NotFoundError if the chat does not exist
            ForbiddenError if the user has no access
        """
        chat = await self.db.get(Chat, chat_id)
        if chat is None:
            raise NotFoundError("chat", chat_id)

        if not await self.can_access(user_id, chat_id):
            logger.warning("chat_access_denied", chat_id=chat_id, user_id=user_id)
            raise ForbiddenError(f"User {user_id} cannot access chat {chat_id}")

        return chat

    async def participants(self, chat_id: int) -> list[User]:
        """Active users with access to a chat, ordered by id."""
        chat = await self.db.get(Chat, chat_id)
        if chat is None:
            return []

        ids = self._participant_ids(chat).subquery()
        result = await self.db.execute(
            select(User).where(User.id.in_(select(ids.c.id))).order_by(User.id)
        )
        return list(result.scalars().all())

    async def participant_ids(self, chat_id: int) -> set[int]:
        """Ids of active users with access to a chat."""
        return {user.id for user in await self.participants(chat_id)}

    async def accessible_chat_ids(self, user_id: int) -> set[int]:
        """Ids of every chat an active user can access."""
        result = await self.db.execute(self.accessible_chats(user_id))
        return set(result.scalars().all())

    # =========================================================================
    # Query builders
    # =========================================================================

    def accessible_chats(self, user_id: int) -> Select:
        """Build a SELECT of the chat ids ``user_id`` can access.

        Mirrors ``_participant_ids`` from the user's side, so callers can
        restrict a query to the user's chats without resolving each one.
        """
        direct = (
            select(ChatMember.chat_id.label("chat_id"))
            .join(Chat, Chat.id == ChatMember.chat_id)
            .where(ChatMember.user_id == user_id, Chat.chat_type == ChatType.DIRECT)
        )
        company = (
            select(Cluster.company_chat_id.label("chat_id"))
            .join(ClusterMember, ClusterMember.cluster_id == Cluster.id)
            .where(ClusterMember.user_id == user_id, Cluster.company_chat_id.is_not(None))
        )
        project = (
            select(Project.chat_id.label("chat_id"))
            .join(ProjectMember, ProjectMember.project_id == Project.id)
            .where(ProjectMember.user_id == user_id)
        )
        branches = [direct, company, project]

        visibility = self.settings.project_chat_visibility
        if visibility != "project_members":
            via_cluster = (
                select(Project.chat_id.label("chat_id"))
                .join(ClusterMember, ClusterMember.cluster_id == Project.cluster_id)
                .where(ClusterMember.user_id == user_id)
            )
            if visibility == "cluster_admins":
                via_cluster = via_cluster.where(ClusterMember.role == MemberRole.ADMIN)
            branches.append(via_cluster)

        chats = union(*branches).subquery()
        active = select(User.id).where(User.id == user_id, User.is_active.is_(True)).exists()
        return select(chats.c.chat_id).where(active)

    def _participant_ids(self, chat: Chat) -> Select:
        """Build a SELECT of the active user ids that can access ``chat``.

        The result has a single ``id`` column and may contain duplicates.
        """
        if chat.chat_type == ChatType.DIRECT:
            members = select(ChatMember.user_id.label("user_id")).where(
                ChatMember.chat_id == chat.id
            )
        elif chat.chat_type == ChatType.PROJECT:
            members = self._project_chat_members(chat.id)
        elif chat.chat_type == ChatType.COMPANY:
            members = (
                select(ClusterMember.user_id.label("user_id"))
                .join(Cluster, Cluster.id == ClusterMember.cluster_id)
                .where(Cluster.company_chat_id == chat.id)
            )
        else:
            members = None

        query = select(User.id).where(User.is_active.is_(True))
        if members is None:
            return query.where(false())

        member_ids = members.subquery()
        return query.where(User.id.in_(select(member_ids.c.user_id)))

    def _project_chat_members(self, chat_id: int):
        project_members = (
            select(ProjectMember.user_id.label("user_id"))
            .join(Project, Project.id == ProjectMember.project_id)
            .where(Project.chat_id == chat_id)
        )

        visibility = self.settings.project_chat_visibility
        if visibility == "project_members":
            return project_members

        cluster_members = (
            select(ClusterMember.user_id.label("user_id"))
            .join(Project, Project.cluster_id == ClusterMember.cluster_id)
            .where(Project.chat_id == chat_id)
        )
        if visibility == "cluster_admins":
            cluster_members = cluster_members.where(ClusterMember.role == MemberRole.ADMIN)

        return union(project_members, cluster_members)
