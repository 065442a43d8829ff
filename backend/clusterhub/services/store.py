"""Entity store: lookups, minimal provisioning and cascade deletion.

Cluster, project and task CRUD belongs to an outer layer; this module only
provides what the messaging and membership core needs to read rows, create
the chats those rows own, and remove a subtree without leaving orphans.
"""

from datetime import date
from typing import Sequence, TypeVar

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from clusterhub.db.base import Base
from clusterhub.db.session import transaction
from clusterhub.exceptions import InvalidStateError, NotFoundError
from clusterhub.models.chat import Chat, ChatMember, Message, ReadReceipt
from clusterhub.models.cluster import Cluster, ClusterMember
from clusterhub.models.enums import ChatType, MemberRole, TaskPriority, TaskStatus
from clusterhub.models.notification import Notification
from clusterhub.models.project import Project, ProjectMember, Task, TaskAssignment
from clusterhub.models.user import User

logger = structlog.get_logger()

ModelT = TypeVar("ModelT", bound=Base)


class EntityStore:
    """Transactional read/write primitives shared by all services."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # =========================================================================
    # Lookups
    # =========================================================================

    async def _get(self, model: type[ModelT], entity: str, entity_id: int) -> ModelT:
        instance = await self.db.get(model, entity_id)
        if instance is None:
            raise NotFoundError(entity, entity_id)
        return instance

    async def get_user(self, user_id: int) -> User:
        return await self._get(User, "user", user_id)

    async def get_chat(self, chat_id: int) -> Chat:
        return await self._get(Chat, "chat", chat_id)

    async def get_cluster(self, cluster_id: int) -> Cluster:
        return await self._get(Cluster, "cluster", cluster_id)

    async def get_project(self, project_id: int) -> Project:
        return await self._get(Project, "project", project_id)

    async def get_task(self, task_id: int) -> Task:
        return await self._get(Task, "task", task_id)

    async def get_message(self, message_id: int) -> Message:
        return await self._get(Message, "message", message_id)

    async def get_notification(self, notification_id: int) -> Notification:
        return await self._get(Notification, "notification", notification_id)

    async def get_project_by_chat(self, chat_id: int) -> Project | None:
        result = await self.db.execute(select(Project).where(Project.chat_id == chat_id))
        return result.scalar_one_or_none()

    async def get_cluster_by_chat(self, chat_id: int) -> Cluster | None:
        result = await self.db.execute(
            select(Cluster).where(Cluster.company_chat_id == chat_id)
        )
        return result.scalar_one_or_none()

    # =========================================================================
    # Provisioning
    # =========================================================================

    async def create_user(
        self,
        display_name: str,
        email: str,
        password_hash: str,
        is_active: bool = True,
    ) -> User:
        """Register a user. The hash comes from the identity provider."""
        async with transaction(self.db):
            user = User(
                display_name=display_name,
                email=email,
                password_hash=password_hash,
                is_active=is_active,
            )
            self.db.add(user)
            await self.db.flush()

        logger.info("user_created", user_id=user.id)
        return user

    async def deactivate_user(self, user_id: int) -> User:
        """Soft-deactivate a user; their rows stay referenced."""
        async with transaction(self.db):
            user = await self.get_user(user_id)
            user.is_active = False

        logger.info("user_deactivated", user_id=user_id)
        return user

    async def create_cluster(
        self,
        name: str,
        code: str,
        with_company_chat: bool = False,
    ) -> Cluster:
        """Create a cluster, optionally with its company chat up front."""
        async with transaction(self.db):
            cluster = Cluster(name=name, code=code)
            if with_company_chat:
                chat = Chat(chat_type=ChatType.COMPANY)
                self.db.add(chat)
                await self.db.flush()
                cluster.company_chat_id = chat.id
            self.db.add(cluster)
            await self.db.flush()

        logger.info(
            "cluster_created",
            cluster_id=cluster.id,
            company_chat_id=cluster.company_chat_id,
        )
        return cluster

    async def ensure_company_chat(self, cluster_id: int) -> Chat:
        """Return the cluster's company chat, creating it on first use."""
        async with transaction(self.db):
            result = await self.db.execute(
                select(Cluster.id).where(Cluster.id == cluster_id).with_for_update()
            )
            if result.scalar_one_or_none() is None:
                raise NotFoundError("cluster", cluster_id)

            cluster = await self.db.get(Cluster, cluster_id, populate_existing=True)
            if cluster.company_chat_id is not None:
                return await self.get_chat(cluster.company_chat_id)

            chat = Chat(chat_type=ChatType.COMPANY)
            self.db.add(chat)
            await self.db.flush()
            cluster.company_chat_id = chat.id

        logger.info("company_chat_created", cluster_id=cluster_id, chat_id=chat.id)
        return chat

    async def create_project(
        self,
        cluster_id: int,
        name: str,
        description: str | None = None,
    ) -> Project:
        """Create a project together with its mandatory project chat."""
        async with transaction(self.db):
            await self.get_cluster(cluster_id)

            chat = Chat(chat_type=ChatType.PROJECT)
            self.db.add(chat)
            await self.db.flush()

            project = Project(
                cluster_id=cluster_id,
                name=name,
                description=description,
                chat_id=chat.id,
            )
            self.db.add(project)
            await self.db.flush()

        logger.info(
            "project_created",
            project_id=project.id,
            cluster_id=cluster_id,
            chat_id=chat.id,
        )
        return project

    async def create_direct_chat(self, user_ids: Sequence[int]) -> Chat:
        """Create a direct chat whose members are exactly ``user_ids``."""
        member_ids = list(dict.fromkeys(user_ids))
        if len(member_ids) < 2:
            raise InvalidStateError("A direct chat needs at least two distinct users")

        async with transaction(self.db):
            for user_id in member_ids:
                await self.get_user(user_id)

            chat = Chat(chat_type=ChatType.DIRECT)
            self.db.add(chat)
            await self.db.flush()

            for user_id in member_ids:
                self.db.add(
                    ChatMember(chat_id=chat.id, user_id=user_id, role=MemberRole.MEMBER)
                )
            await self.db.flush()

        logger.info("direct_chat_created", chat_id=chat.id, member_count=len(member_ids))
        return chat

    async def create_task(
        self,
        project_id: int,
        name: str,
        description: str | None = None,
        deadline: date | None = None,
        priority: TaskPriority = TaskPriority.MEDIUM,
        status: TaskStatus = TaskStatus.TODO,
        progress: int = 0,
    ) -> Task:
        """Create a task in a project."""
        if not 0 <= progress <= 100:
            raise InvalidStateError(f"Task progress must be within 0..100, got {progress}")

        async with transaction(self.db):
            await self.get_project(project_id)
            task = Task(
                project_id=project_id,
                name=name,
                description=description,
                deadline=deadline,
                priority=priority,
                status=status,
                progress=progress,
            )
            self.db.add(task)
            await self.db.flush()

        logger.info("task_created", task_id=task.id, project_id=project_id)
        return task

    # =========================================================================
    # Cascade deletion
    # =========================================================================

    async def _delete_chats(self, chat_ids: list[int]) -> None:
        """Delete chats with their members, messages and receipts."""
        if not chat_ids:
            return
        message_ids = select(Message.id).where(Message.chat_id.in_(chat_ids))
        await self.db.execute(
            delete(ReadReceipt).where(ReadReceipt.message_id.in_(message_ids))
        )
        await self.db.execute(delete(Message).where(Message.chat_id.in_(chat_ids)))
        await self.db.execute(delete(ChatMember).where(ChatMember.chat_id.in_(chat_ids)))
        await self.db.execute(delete(Chat).where(Chat.id.in_(chat_ids)))

    async def _delete_projects(self, project_ids: list[int]) -> None:
        """Delete projects with their tasks and memberships (chats excluded)."""
        if not project_ids:
            return
        task_ids = select(Task.id).where(Task.project_id.in_(project_ids))
        await self.db.execute(
            delete(TaskAssignment).where(TaskAssignment.task_id.in_(task_ids))
        )
        await self.db.execute(delete(Task).where(Task.project_id.in_(project_ids)))
        await self.db.execute(
            delete(ProjectMember).where(ProjectMember.project_id.in_(project_ids))
        )
        await self.db.execute(delete(Project).where(Project.id.in_(project_ids)))

    async def delete_project(self, project_id: int) -> None:
        """Delete a project, its tasks and its chat in one transaction."""
        async with transaction(self.db):
            project = await self.get_project(project_id)
            chat_id = project.chat_id

            await self._delete_projects([project_id])
            await self._delete_chats([chat_id])

        logger.info("project_deleted", project_id=project_id, chat_id=chat_id)

    async def delete_cluster(self, cluster_id: int) -> None:
        """Delete a cluster and everything beneath it in one transaction.

        Projects, tasks, memberships, the project chats and the company chat
        go with it. Notifications pointing at deleted tasks or messages stay:
        they hold weak references only.
        """
        async with transaction(self.db):
            cluster = await self.get_cluster(cluster_id)

            result = await self.db.execute(
                select(Project.id, Project.chat_id).where(Project.cluster_id == cluster_id)
            )
            rows = result.all()
            project_ids = [row.id for row in rows]
            chat_ids = [row.chat_id for row in rows]
            if cluster.company_chat_id is not None:
                chat_ids.append(cluster.company_chat_id)

            await self._delete_projects(project_ids)
            await self.db.execute(
                delete(ClusterMember).where(ClusterMember.cluster_id == cluster_id)
            )
            await self.db.execute(delete(Cluster).where(Cluster.id == cluster_id))
            # Chats last: projects and the cluster reference them
            await self._delete_chats(chat_ids)

        logger.info(
            "cluster_deleted",
            cluster_id=cluster_id,
            project_count=len(project_ids),
            chat_count=len(chat_ids),
        )
