"""Membership service enforcing the single-admin and single-lead rules.

Every role change runs as one transaction holding the group's exclusive
lock (row lock on the cluster/project on PostgreSQL, the database write lock
on SQLite). The current holder is always demoted before the new one is
promoted, so the partial unique indexes never see two holders.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from clusterhub.config import Settings, get_settings
from clusterhub.db.session import transaction
from clusterhub.exceptions import (
    ConcurrentModificationError,
    ConflictError,
    InvalidStateError,
    NotAMemberError,
    NotFoundError,
    UnavailableError,
)
from clusterhub.models.chat import Chat, ChatMember
from clusterhub.models.cluster import Cluster, ClusterMember
from clusterhub.models.enums import ChatType, MemberRole, ProjectRole
from clusterhub.models.project import Project, ProjectMember
from clusterhub.services.store import EntityStore

logger = structlog.get_logger()


@asynccontextmanager
async def membership_transaction(
    db: AsyncSession, operation: str
) -> AsyncGenerator[AsyncSession, None]:
    """Run a membership change as one unit of work.

    A uniqueness violation means another writer got there first and is
    reported as a conflict; any other store failure as unavailability.
    """
    try:
        async with transaction(db):
            yield db
    except IntegrityError as err:
        logger.warning("membership_conflict", operation=operation, error=str(err.orig))
        raise ConflictError(f"Concurrent membership change during {operation}") from err
    except DBAPIError as err:
        logger.error("membership_store_failure", operation=operation, error=str(err.orig))
        raise UnavailableError(operation, str(err.orig)) from err


class MembershipService:
    """Service for cluster, project and chat membership changes."""

    def __init__(self, db: AsyncSession, settings: Settings | None = None):
        self.db = db
        self.settings = settings or get_settings()
        self.store = EntityStore(db)

    # =========================================================================
    # Cluster admin
    # =========================================================================

    async def get_cluster_admin(self, cluster_id: int) -> ClusterMember | None:
        """Get the admin membership of a cluster, if any."""
        await self.store.get_cluster(cluster_id)
        result = await self.db.execute(
            select(ClusterMember)
            .where(
                ClusterMember.cluster_id == cluster_id,
                ClusterMember.role == MemberRole.ADMIN,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def set_admin(
        self,
        cluster_id: int,
        user_id: int,
        expected_admin_id: int | None = None,
    ) -> ClusterMember:
        """
        Make ``user_id`` the sole admin of a cluster.

        The previous admin (if any) is demoted to member in the same
        transaction. With ``admin_conflict_policy="reject"`` the change is
        refused when the admin found under the lock is not the one observed
        beforehand. Passing ``expected_admin_id`` turns the call into a
        compare-and-set under either policy.

        Raises:
            NotFoundError if the cluster or user does not exist
            NotAMemberError if the user is not a cluster member
            ConcurrentModificationError if the admin changed concurrently
            ConflictError on a store-level uniqueness violation
        """
        reject = self.settings.admin_conflict_policy == "reject"

        async with self._unit_of_work("set_admin"):
            observed = expected_admin_id
            check = expected_admin_id is not None
            if reject and not check:
                observed = await self._admin_id(cluster_id)
                check = True

            await self._lock_cluster(cluster_id)
            await self.store.get_user(user_id)
            await self._require_cluster_member(cluster_id, user_id)

            current = await self._admin_id(cluster_id)
            if check and current != observed:
                logger.warning(
                    "admin_promotion_rejected",
                    cluster_id=cluster_id,
                    user_id=user_id,
                    expected_admin_id=observed,
                    actual_admin_id=current,
                )
                raise ConcurrentModificationError("cluster", cluster_id, observed, current)

            if current != user_id:
                await self._hand_over_admin(cluster_id, user_id)

            member = await self._cluster_member(cluster_id, user_id)

        logger.info(
            "admin_promoted",
            cluster_id=cluster_id,
            user_id=user_id,
            previous_admin_id=current,
        )
        return member

    # =========================================================================
    # Cluster membership
    # =========================================================================

    async def add_cluster_member(
        self,
        cluster_id: int,
        user_id: int,
        role: MemberRole = MemberRole.MEMBER,
    ) -> ClusterMember:
        """
        Add a user to a cluster.

        The first member of a cluster becomes its admin regardless of
        ``role``. Adding with ``role=ADMIN`` hands the admin role over.
        Re-adding an existing member leaves their role as it is unless an
        admin hand-over was requested.
        """
        async with self._unit_of_work("add_cluster_member"):
            await self._lock_cluster(cluster_id)
            await self.store.get_user(user_id)

            current_admin = await self._admin_id(cluster_id)
            existing = await self._cluster_member(cluster_id, user_id)

            if existing is None:
                initial_role = MemberRole.ADMIN if current_admin is None else MemberRole.MEMBER
                self.db.add(ClusterMember(cluster_id=cluster_id, user_id=user_id, role=initial_role))
                await self.db.flush()

            if role == MemberRole.ADMIN and current_admin not in (None, user_id):
                await self._hand_over_admin(cluster_id, user_id)

            member = await self._cluster_member(cluster_id, user_id)

        logger.info(
            "cluster_member_added",
            cluster_id=cluster_id,
            user_id=user_id,
            role=member.role,
            already_member=existing is not None,
        )
        return member

    async def remove_cluster_member(self, cluster_id: int, user_id: int) -> None:
        """
        Remove a user from a cluster and from the cluster's projects.

        Raises:
            NotAMemberError if the user is not a member
            InvalidStateError when removing the admin while others remain
        """
        async with self._unit_of_work("remove_cluster_member"):
            await self._lock_cluster(cluster_id)
            member = await self._require_cluster_member(cluster_id, user_id)

            if member.role == MemberRole.ADMIN:
                result = await self.db.execute(
                    select(func.count())
                    .select_from(ClusterMember)
                    .where(ClusterMember.cluster_id == cluster_id)
                )
                if result.scalar_one() > 1:
                    raise InvalidStateError(
                        f"User {user_id} is the admin of cluster {cluster_id}; "
                        "hand the admin role over before leaving",
                        code="LAST_ADMIN",
                    )

            project_ids = select(Project.id).where(Project.cluster_id == cluster_id)
            await self.db.execute(
                delete(ProjectMember).where(
                    ProjectMember.project_id.in_(project_ids),
                    ProjectMember.user_id == user_id,
                )
            )
            await self.db.execute(
                delete(ClusterMember).where(
                    ClusterMember.cluster_id == cluster_id,
                    ClusterMember.user_id == user_id,
                )
            )

        logger.info("cluster_member_removed", cluster_id=cluster_id, user_id=user_id)

    # =========================================================================
    # Project lead and membership
    # =========================================================================

    async def get_project_lead(self, project_id: int) -> ProjectMember | None:
        """Get the lead membership of a project, if any."""
        await self.store.get_project(project_id)
        result = await self.db.execute(
            select(ProjectMember)
            .where(
                ProjectMember.project_id == project_id,
                ProjectMember.role == ProjectRole.LEAD,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def promote_lead(self, project_id: int, user_id: int | None) -> ProjectMember | None:
        """
        Make ``user_id`` the lead of a project, or clear the lead with None.

        Raises:
            NotFoundError if the project does not exist
            NotAMemberError if the user is not a project member
        """
        async with self._unit_of_work("promote_lead"):
            await self._lock_project(project_id)
            if user_id is not None:
                await self._require_project_member(project_id, user_id)

            previous = await self._lead_id(project_id)
            if previous is not None and previous != user_id:
                await self.db.execute(
                    update(ProjectMember)
                    .where(
                        ProjectMember.project_id == project_id,
                        ProjectMember.role == ProjectRole.LEAD,
                    )
                    .values(role=ProjectRole.MEMBER)
                )

            lead = None
            if user_id is not None:
                if previous != user_id:
                    await self.db.execute(
                        update(ProjectMember)
                        .where(
                            ProjectMember.project_id == project_id,
                            ProjectMember.user_id == user_id,
                        )
                        .values(role=ProjectRole.LEAD)
                    )
                lead = await self._project_member(project_id, user_id)

        logger.info(
            "project_lead_changed",
            project_id=project_id,
            lead_id=user_id,
            previous_lead_id=previous,
        )
        return lead

    async def clear_lead(self, project_id: int) -> None:
        """Leave a project without a lead."""
        await self.promote_lead(project_id, None)

    async def add_project_member(
        self,
        project_id: int,
        user_id: int,
        role: ProjectRole = ProjectRole.MEMBER,
    ) -> ProjectMember:
        """
        Add a cluster member to a project. Idempotent.

        Adding with ``role=LEAD`` replaces the current lead.
        """
        async with self._unit_of_work("add_project_member"):
            cluster_id = await self._lock_project(project_id)
            await self.store.get_user(user_id)
            await self._require_cluster_member(cluster_id, user_id)

            existing = await self._project_member(project_id, user_id)
            if existing is None:
                self.db.add(
                    ProjectMember(project_id=project_id, user_id=user_id, role=ProjectRole.MEMBER)
                )
                await self.db.flush()

            member = await self._project_member(project_id, user_id)

        logger.info(
            "project_member_added",
            project_id=project_id,
            user_id=user_id,
            already_member=existing is not None,
        )
        if role == ProjectRole.LEAD:
            return await self.promote_lead(project_id, user_id)
        return member

    async def remove_project_member(self, project_id: int, user_id: int) -> None:
        """Remove a user from a project. Removing the lead leaves it lead-less."""
        async with self._unit_of_work("remove_project_member"):
            await self._lock_project(project_id)
            await self._require_project_member(project_id, user_id)
            await self.db.execute(
                delete(ProjectMember).where(
                    ProjectMember.project_id == project_id,
                    ProjectMember.user_id == user_id,
                )
            )

        logger.info("project_member_removed", project_id=project_id, user_id=user_id)

    # =========================================================================
    # Direct chat membership
    # =========================================================================

    async def add_chat_member(self, chat_id: int, user_id: int) -> ChatMember:
        """Add a user to a direct chat. Idempotent."""
        async with self._unit_of_work("add_chat_member"):
            chat = await self._require_direct_chat(chat_id)
            await self.store.get_user(user_id)

            member = await self.db.get(ChatMember, (chat.id, user_id))
            if member is None:
                member = ChatMember(chat_id=chat.id, user_id=user_id, role=MemberRole.MEMBER)
                self.db.add(member)
                await self.db.flush()

        logger.info("chat_member_added", chat_id=chat_id, user_id=user_id)
        return member

    async def remove_chat_member(self, chat_id: int, user_id: int) -> None:
        """Remove a user from a direct chat."""
        async with self._unit_of_work("remove_chat_member"):
            await self._require_direct_chat(chat_id)
            member = await self.db.get(ChatMember, (chat_id, user_id))
            if member is None:
                raise NotAMemberError("chat", chat_id, user_id)
            await self.db.delete(member)

        logger.info("chat_member_removed", chat_id=chat_id, user_id=user_id)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _unit_of_work(self, operation: str):
        return membership_transaction(self.db, operation)

    async def _lock_cluster(self, cluster_id: int) -> None:
        # Lock the bare row; eager-loaded outer joins cannot be locked on PostgreSQL
        result = await self.db.execute(
            select(Cluster.id).where(Cluster.id == cluster_id).with_for_update()
        )
        if result.scalar_one_or_none() is None:
            raise NotFoundError("cluster", cluster_id)

    async def _lock_project(self, project_id: int) -> int:
        """Lock a project row and return its cluster id."""
        result = await self.db.execute(
            select(Project.cluster_id).where(Project.id == project_id).with_for_update()
        )
        cluster_id = result.scalar_one_or_none()
        if cluster_id is None:
            raise NotFoundError("project", project_id)
        return cluster_id

    async def _admin_id(self, cluster_id: int) -> int | None:
        result = await self.db.execute(
            select(ClusterMember.user_id).where(
                ClusterMember.cluster_id == cluster_id,
                ClusterMember.role == MemberRole.ADMIN,
            )
        )
        return result.scalar_one_or_none()

    async def _lead_id(self, project_id: int) -> int | None:
        result = await self.db.execute(
            select(ProjectMember.user_id).where(
                ProjectMember.project_id == project_id,
                ProjectMember.role == ProjectRole.LEAD,
            )
        )
        return result.scalar_one_or_none()

    async def _cluster_member(self, cluster_id: int, user_id: int) -> ClusterMember | None:
        return await self.db.get(ClusterMember, (cluster_id, user_id), populate_existing=True)

    async def _project_member(self, project_id: int, user_id: int) -> ProjectMember | None:
        return await self.db.get(ProjectMember, (project_id, user_id), populate_existing=True)

    async def _require_cluster_member(self, cluster_id: int, user_id: int) -> ClusterMember:
        member = await self._cluster_member(cluster_id, user_id)
        if member is None:
            raise NotAMemberError("cluster", cluster_id, user_id)
        return member

    async def _require_project_member(self, project_id: int, user_id: int) -> ProjectMember:
        member = await self._project_member(project_id, user_id)
        if member is None:
            raise NotAMemberError("project", project_id, user_id)
        return member

    async def _require_direct_chat(self, chat_id: int) -> Chat:
        chat = await self.store.get_chat(chat_id)
        if chat.chat_type != ChatType.DIRECT:
            raise InvalidStateError(
                f"Chat {chat_id} is a {chat.chat_type} chat; its members follow the "
                "owning project or cluster"
            )
        return chat

    async def _hand_over_admin(self, cluster_id: int, user_id: int) -> None:
        # Demote first: the partial unique index allows one admin at a time
        await self.db.execute(
            update(ClusterMember)
            .where(
                ClusterMember.cluster_id == cluster_id,
                ClusterMember.role == MemberRole.ADMIN,
            )
            .values(role=MemberRole.MEMBER)
        )
        await self.db.execute(
            update(ClusterMember)
            .where(
                ClusterMember.cluster_id == cluster_id,
                ClusterMember.user_id == user_id,
            )
            .values(role=MemberRole.ADMIN)
        )
