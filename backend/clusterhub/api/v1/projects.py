"""Project membership and lead endpoints."""

from datetime import datetime

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from clusterhub.api.deps import CurrentUser
from clusterhub.api.v1.clusters import require_cluster_admin
from clusterhub.db.session import get_db_session
from clusterhub.models.enums import ProjectRole
from clusterhub.services.membership import MembershipService
from clusterhub.services.store import EntityStore

router = APIRouter()


class SetLeadRequest(BaseModel):
    user_id: int


class ProjectMemberCreate(BaseModel):
    user_id: int
    role: ProjectRole = ProjectRole.MEMBER


class ProjectMemberResponse(BaseModel):
    project_id: int
    user_id: int
    role: ProjectRole
    joined_at: datetime

    class Config:
        from_attributes = True


async def _require_owning_cluster_admin(
    db: AsyncSession,
    service: MembershipService,
    project_id: int,
    user_id: int,
) -> None:
    project = await EntityStore(db).get_project(project_id)
    await require_cluster_admin(service, project.cluster_id, user_id)


@router.put("/{project_id}/lead", response_model=ProjectMemberResponse)
async def set_project_lead(
    project_id: int,
    body: SetLeadRequest,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db_session),
) -> ProjectMemberResponse:
    """Make a project member the lead, demoting the current one."""
    service = MembershipService(db)
    await _require_owning_cluster_admin(db, service, project_id, current_user.id)
    lead = await service.promote_lead(project_id, body.user_id)
    return ProjectMemberResponse.model_validate(lead)


@router.delete("/{project_id}/lead", status_code=status.HTTP_204_NO_CONTENT)
async def clear_project_lead(
    project_id: int,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db_session),
) -> None:
    service = MembershipService(db)
    await _require_owning_cluster_admin(db, service, project_id, current_user.id)
    await service.clear_lead(project_id)


@router.post(
    "/{project_id}/members",
    response_model=ProjectMemberResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_project_member(
    project_id: int,
    body: ProjectMemberCreate,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db_session),
) -> ProjectMemberResponse:
    """Add a cluster member to the project."""
    service = MembershipService(db)
    await _require_owning_cluster_admin(db, service, project_id, current_user.id)
    member = await service.add_project_member(project_id, body.user_id, role=body.role)
    return ProjectMemberResponse.model_validate(member)
