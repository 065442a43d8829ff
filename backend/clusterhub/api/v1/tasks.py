"""Task assignment endpoints."""

from datetime import datetime

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from clusterhub.api.deps import CurrentUser
from clusterhub.db.session import get_db_session
from clusterhub.exceptions import ForbiddenError
from clusterhub.models.project import ProjectMember
from clusterhub.services.notification import NotificationService
from clusterhub.services.store import EntityStore

router = APIRouter()


class AssignmentCreate(BaseModel):
    user_ids: list[int] = Field(..., min_length=1, max_length=100)


class AssignmentResponse(BaseModel):
    task_id: int
    user_id: int
    assigned_at: datetime

    class Config:
        from_attributes = True


@router.post(
    "/{task_id}/assignments",
    response_model=list[AssignmentResponse],
    status_code=status.HTTP_201_CREATED,
)
async def assign_task(
    task_id: int,
    body: AssignmentCreate,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db_session),
) -> list[AssignmentResponse]:
    """Assign project members to a task. Each new assignee is notified."""
    task = await EntityStore(db).get_task(task_id)
    if await db.get(ProjectMember, (task.project_id, current_user.id)) is None:
        raise ForbiddenError(f"Only members of project {task.project_id} can assign its tasks")

    service = NotificationService(db)
    assignments = await service.assign_task(task_id, body.user_ids, assigned_by_id=current_user.id)
    return [AssignmentResponse.model_validate(a) for a in assignments]
