"""Notification feed endpoints."""

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from clusterhub.api.deps import CurrentUser
from clusterhub.db.session import get_db_session
from clusterhub.models.enums import EntityType, NotificationType
from clusterhub.services.notification import NotificationService

router = APIRouter()


class NotificationResponse(BaseModel):
    """Notification response model."""

    id: int
    notification_type: NotificationType
    message: str
    source_user_id: int | None
    entity_type: EntityType | None
    entity_id: int | None
    is_read: bool
    created_at: datetime

    class Config:
        from_attributes = True


class NotificationListResponse(BaseModel):
    items: list[NotificationResponse]
    unread_count: int


class MarkAllReadResponse(BaseModel):
    marked_count: int


@router.get("", response_model=NotificationListResponse)
async def list_notifications(
    current_user: CurrentUser,
    unread_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db_session),
) -> NotificationListResponse:
    """The caller's notifications, newest first."""
    service = NotificationService(db)
    notifications = await service.list_notifications(current_user.id, unread_only=unread_only, limit=limit)
    unread_count = await service.unread_notification_count(current_user.id)
    return NotificationListResponse(
        items=[NotificationResponse.model_validate(n) for n in notifications],
        unread_count=unread_count,
    )


@router.post("/read-all", response_model=MarkAllReadResponse)
async def mark_all_read(
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db_session),
) -> MarkAllReadResponse:
    service = NotificationService(db)
    count = await service.mark_all_read(current_user.id)
    return MarkAllReadResponse(marked_count=count)


@router.post("/{notification_id}/read", response_model=NotificationResponse)
async def mark_notification_read(
    notification_id: int,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db_session),
) -> NotificationResponse:
    """Mark one of the caller's notifications as read."""
    service = NotificationService(db)
    notification = await service.mark_read(notification_id, current_user.id)
    return NotificationResponse.model_validate(notification)
