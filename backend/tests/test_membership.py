"""Admin/lead invariants and membership changes."""
import asyncio

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, OperationalError

from clusterhub.config import Settings
from clusterhub.exceptions import (
    ConcurrentModificationError,
    ConflictError,
    InvalidStateError,
    NotAMemberError,
    NotFoundError,
    UnavailableError,
)
from clusterhub.models import ClusterMember, MemberRole, ProjectMember, ProjectRole
from clusterhub.services.membership import MembershipService

pytestmark = pytest.mark.asyncio


async def admin_ids(session_factory, cluster_id: int) -> list[int]:
    async with session_factory() as session:
        result = await session.execute(
            select(ClusterMember.user_id).where(
                ClusterMember.cluster_id == cluster_id,
                ClusterMember.role == MemberRole.ADMIN,
            )
        )
        return list(result.scalars().all())


async def lead_ids(session_factory, project_id: int) -> list[int]:
    async with session_factory() as session:
        result = await session.execute(
            select(ProjectMember.user_id).where(
                ProjectMember.project_id == project_id,
                ProjectMember.role == ProjectRole.LEAD,
            )
        )
        return list(result.scalars().all())


class TestClusterAdmin:
    async def test_first_member_becomes_admin(self, seed, session_factory):
        assert await admin_ids(session_factory, seed.cluster) == [seed.alice]

    async def test_set_admin_demotes_previous_admin(self, seed, db, session_factory):
        service = MembershipService(db)

        member = await service.set_admin(seed.cluster, seed.bob)

        assert member.user_id == seed.bob
        assert member.role == MemberRole.ADMIN
        assert await admin_ids(session_factory, seed.cluster) == [seed.bob]
        async with session_factory() as session:
            alice = await session.get(ClusterMember, (seed.cluster, seed.alice))
            assert alice.role == MemberRole.MEMBER

    async def test_set_admin_to_current_admin_is_noop(self, seed, db, session_factory):
        member = await MembershipService(db).set_admin(seed.cluster, seed.alice)

        assert member.role == MemberRole.ADMIN
        assert await admin_ids(session_factory, seed.cluster) == [seed.alice]

    async def test_set_admin_requires_membership(self, seed, db, session_factory):
        with pytest.raises(NotAMemberError) as exc_info:
            await MembershipService(db).set_admin(seed.cluster, seed.dave)

        assert exc_info.value.code == "NOT_A_MEMBER"
        assert await admin_ids(session_factory, seed.cluster) == [seed.alice]

    async def test_set_admin_unknown_cluster(self, seed, db):
        with pytest.raises(NotFoundError):
            await MembershipService(db).set_admin(9999, seed.alice)

    async def test_set_admin_unknown_user(self, seed, db):
        with pytest.raises(NotFoundError):
            await MembershipService(db).set_admin(seed.cluster, 9999)

    async def test_expected_admin_mismatch_is_rejected(self, seed, db, session_factory):
        with pytest.raises(ConcurrentModificationError) as exc_info:
            await MembershipService(db).set_admin(seed.cluster, seed.bob, expected_admin_id=seed.carol)

        assert exc_info.value.actual == seed.alice
        assert await admin_ids(session_factory, seed.cluster) == [seed.alice]

    async def test_concurrent_promotions_leave_exactly_one_admin(self, seed, session_factory):
        settings = Settings(admin_conflict_policy="last_committed_wins")

        async def promote(user_id: int):
            async with session_factory() as session:
                return await MembershipService(session, settings).set_admin(seed.cluster, user_id)

        results = await asyncio.gather(
            promote(seed.alice), promote(seed.bob), promote(seed.carol)
        )

        assert all(r.role == MemberRole.ADMIN for r in results)
        admins = await admin_ids(session_factory, seed.cluster)
        assert len(admins) == 1
        assert admins[0] in {seed.alice, seed.bob, seed.carol}

    async def test_concurrent_promotions_reject_the_loser(self, seed, session_factory):
        settings = Settings(admin_conflict_policy="reject")

        async def promote(user_id: int):
            async with session_factory() as session:
                return await MembershipService(session, settings).set_admin(
                    seed.cluster, user_id, expected_admin_id=seed.alice
                )

        results = await asyncio.gather(
            promote(seed.bob), promote(seed.carol), return_exceptions=True
        )

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, ConcurrentModificationError)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert await admin_ids(session_factory, seed.cluster) == [winners[0].user_id]


class TestClusterMembership:
    async def test_add_member_is_idempotent(self, seed, db):
        service = MembershipService(db)

        member = await service.add_cluster_member(seed.cluster, seed.bob)

        assert member.role == MemberRole.MEMBER
        result = await db.execute(
            select(func.count()).select_from(ClusterMember).where(ClusterMember.cluster_id == seed.cluster)
        )
        assert result.scalar_one() == 3

    async def test_add_member_as_admin_hands_over(self, seed, db, session_factory):
        member = await MembershipService(db).add_cluster_member(
            seed.cluster, seed.dave, role=MemberRole.ADMIN
        )

        assert member.role == MemberRole.ADMIN
        assert await admin_ids(session_factory, seed.cluster) == [seed.dave]

    async def test_cannot_remove_admin_while_others_remain(self, seed, db, session_factory):
        with pytest.raises(InvalidStateError) as exc_info:
            await MembershipService(db).remove_cluster_member(seed.cluster, seed.alice)

        assert exc_info.value.code == "LAST_ADMIN"
        assert await admin_ids(session_factory, seed.cluster) == [seed.alice]

    async def test_removing_member_drops_project_membership(self, seed, db, session_factory):
        await MembershipService(db).remove_cluster_member(seed.cluster, seed.carol)

        async with session_factory() as session:
            assert await session.get(ClusterMember, (seed.cluster, seed.carol)) is None
            assert await session.get(ProjectMember, (seed.project, seed.carol)) is None

    async def test_last_member_may_leave(self, seed, db, session_factory):
        service = MembershipService(db)
        await service.remove_cluster_member(seed.cluster, seed.bob)
        await service.remove_cluster_member(seed.cluster, seed.carol)
        await service.remove_cluster_member(seed.cluster, seed.alice)

        assert await admin_ids(session_factory, seed.cluster) == []

    async def test_remove_non_member(self, seed, db):
        with pytest.raises(NotAMemberError):
            await MembershipService(db).remove_cluster_member(seed.cluster, seed.dave)


class TestProjectLead:
    async def test_promote_and_replace_lead(self, seed, db, session_factory):
        service = MembershipService(db)

        await service.promote_lead(seed.project, seed.bob)
        assert await lead_ids(session_factory, seed.project) == [seed.bob]

        lead = await service.promote_lead(seed.project, seed.carol)
        assert lead.user_id == seed.carol
        assert lead.role == ProjectRole.LEAD
        assert await lead_ids(session_factory, seed.project) == [seed.carol]

    async def test_clear_lead(self, seed, db, session_factory):
        service = MembershipService(db)
        await service.promote_lead(seed.project, seed.bob)

        await service.clear_lead(seed.project)

        assert await lead_ids(session_factory, seed.project) == []
        assert await service.get_project_lead(seed.project) is None

    async def test_lead_must_be_project_member(self, seed, db, session_factory):
        with pytest.raises(NotAMemberError):
            await MembershipService(db).promote_lead(seed.project, seed.dave)

        assert await lead_ids(session_factory, seed.project) == []

    async def test_unknown_project(self, seed, db):
        with pytest.raises(NotFoundError):
            await MembershipService(db).promote_lead(9999, seed.bob)

    async def test_concurrent_lead_promotions_leave_one_lead(self, seed, session_factory):
        async def promote(user_id: int):
            async with session_factory() as session:
                await MembershipService(session).promote_lead(seed.project, user_id)

        await asyncio.gather(promote(seed.alice), promote(seed.bob), promote(seed.carol))

        assert len(await lead_ids(session_factory, seed.project)) == 1

    async def test_project_member_must_belong_to_cluster(self, seed, db):
        with pytest.raises(NotAMemberError) as exc_info:
            await MembershipService(db).add_project_member(seed.project, seed.dave)

        assert exc_info.value.group == "cluster"

    async def test_add_member_as_lead(self, seed, db, session_factory):
        service = MembershipService(db)
        await service.promote_lead(seed.project, seed.alice)

        lead = await service.add_project_member(seed.project, seed.bob, role=ProjectRole.LEAD)

        assert lead.user_id == seed.bob
        assert await lead_ids(session_factory, seed.project) == [seed.bob]

    async def test_removing_lead_leaves_project_leadless(self, seed, db, session_factory):
        service = MembershipService(db)
        await service.promote_lead(seed.project, seed.bob)

        await service.remove_project_member(seed.project, seed.bob)

        assert await lead_ids(session_factory, seed.project) == []


class TestStoreFailures:
    async def test_uniqueness_violation_is_a_conflict(self, seed, db, session_factory, monkeypatch):
        service = MembershipService(db)

        async def racing_hand_over(cluster_id, user_id):
            raise IntegrityError("UPDATE", {}, Exception("UNIQUE constraint failed: one_admin_per_cluster"))

        monkeypatch.setattr(service, "_hand_over_admin", racing_hand_over)
        with pytest.raises(ConflictError) as exc_info:
            await service.set_admin(seed.cluster, seed.bob)

        assert exc_info.value.code == "CONFLICT"
        assert await admin_ids(session_factory, seed.cluster) == [seed.alice]

    async def test_store_failure_is_unavailable(self, seed, db, session_factory, monkeypatch):
        service = MembershipService(db)

        async def locked(cluster_id, user_id):
            raise OperationalError("UPDATE", {}, Exception("database is locked"))

        monkeypatch.setattr(service, "_hand_over_admin", locked)
        with pytest.raises(UnavailableError):
            await service.set_admin(seed.cluster, seed.bob)

        assert await admin_ids(session_factory, seed.cluster) == [seed.alice]
