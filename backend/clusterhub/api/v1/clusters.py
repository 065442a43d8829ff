"""Cluster membership endpoints."""

from datetime import datetime

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from clusterhub.api.deps import CurrentUser
from clusterhub.db.session import get_db_session
from clusterhub.exceptions import ForbiddenError
from clusterhub.models.enums import MemberRole
from clusterhub.services.membership import MembershipService

router = APIRouter()


class SetAdminRequest(BaseModel):
    """Hand the admin role to a member."""

    user_id: int
    expected_admin_id: int | None = None


class ClusterMemberCreate(BaseModel):
    user_id: int
    role: MemberRole = MemberRole.MEMBER


class ClusterMemberResponse(BaseModel):
    cluster_id: int
    user_id: int
    role: MemberRole
    joined_at: datetime

    class Config:
        from_attributes = True


async def require_cluster_admin(service: MembershipService, cluster_id: int, user_id: int) -> None:
    """Allow the call only for the cluster's current admin."""
    admin = await service.get_cluster_admin(cluster_id)
    if admin is None or admin.user_id != user_id:
        raise ForbiddenError(f"Only the admin of cluster {cluster_id} can do this")


@router.put("/{cluster_id}/admin", response_model=ClusterMemberResponse)
async def set_cluster_admin(
    cluster_id: int,
    body: SetAdminRequest,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db_session),
) -> ClusterMemberResponse:
    """Make a member the cluster admin, demoting the current one."""
    service = MembershipService(db)
    await require_cluster_admin(service, cluster_id, current_user.id)
    member = await service.set_admin(cluster_id, body.user_id, expected_admin_id=body.expected_admin_id)
    return ClusterMemberResponse.model_validate(member)


@router.post(
    "/{cluster_id}/members",
    response_model=ClusterMemberResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_cluster_member(
    cluster_id: int,
    body: ClusterMemberCreate,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db_session),
) -> ClusterMemberResponse:
    """Add a member. The first member of a cluster becomes its admin."""
    service = MembershipService(db)
    if await service.get_cluster_admin(cluster_id) is not None:
        await require_cluster_admin(service, cluster_id, current_user.id)
    member = await service.add_cluster_member(cluster_id, body.user_id, role=body.role)
    return ClusterMemberResponse.model_validate(member)


@router.delete("/{cluster_id}/members/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_cluster_member(
    cluster_id: int,
    user_id: int,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db_session),
) -> None:
    """Remove a member. Members may leave; the admin may remove anyone."""
    service = MembershipService(db)
    if user_id != current_user.id:
        await require_cluster_admin(service, cluster_id, current_user.id)
    await service.remove_cluster_member(cluster_id, user_id)
