"""Chat endpoints: posting, history and unread tracking."""

from datetime import datetime

import structlog
from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from clusterhub.api.deps import CurrentUser
from clusterhub.db.session import get_db_session
from clusterhub.models.enums import MessageType
from clusterhub.services.messaging import MessagingService

router = APIRouter()
logger = structlog.get_logger()


# Request/Response Models
class MessageCreate(BaseModel):
    """Post a message to a chat."""

    text: str | None = Field(None, max_length=10000)
    message_type: MessageType = MessageType.TEXT
    file_url: str | None = Field(None, max_length=2048)


class MessageResponse(BaseModel):
    """Message response model."""

    id: int
    chat_id: int
    author_id: int
    text: str | None
    file_url: str | None
    message_type: MessageType
    is_deleted: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class UnreadCountResponse(BaseModel):
    chat_id: int
    unread_count: int


class MarkChatReadResponse(BaseModel):
    chat_id: int
    marked_count: int


class UnreadChat(BaseModel):
    chat_id: int
    unread_count: int


@router.get("/unread", response_model=list[UnreadChat])
async def get_unread_summary(
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db_session),
) -> list[UnreadChat]:
    """Unread counts for every chat with unread messages."""
    service = MessagingService(db)
    summary = await service.unread_summary(current_user.id)
    return [UnreadChat(chat_id=chat_id, unread_count=count) for chat_id, count in summary.items()]


@router.post(
    "/{chat_id}/messages",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
)
async def send_message(
    chat_id: int,
    body: MessageCreate,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db_session),
) -> MessageResponse:
    """Post a message; recipients get pending receipts, mentions are notified."""
    service = MessagingService(db)
    message = await service.send_message(
        chat_id=chat_id,
        author_id=current_user.id,
        text=body.text,
        message_type=body.message_type,
        file_url=body.file_url,
    )
    return MessageResponse.model_validate(message)


@router.get("/{chat_id}/messages", response_model=list[MessageResponse])
async def list_messages(
    chat_id: int,
    current_user: CurrentUser,
    before_id: int | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db_session),
) -> list[MessageResponse]:
    """Chat history, oldest first. Page backwards with ``before_id``."""
    service = MessagingService(db)
    messages = await service.list_messages(chat_id, current_user.id, before_id=before_id, limit=limit)
    return [MessageResponse.model_validate(m) for m in messages]


@router.get("/{chat_id}/unread-count", response_model=UnreadCountResponse)
async def get_unread_count(
    chat_id: int,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db_session),
) -> UnreadCountResponse:
    service = MessagingService(db)
    count = await service.unread_count(chat_id, current_user.id)
    return UnreadCountResponse(chat_id=chat_id, unread_count=count)


@router.post("/{chat_id}/read", response_model=MarkChatReadResponse)
async def mark_chat_read(
    chat_id: int,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db_session),
) -> MarkChatReadResponse:
    """Mark everything in a chat as read for the caller."""
    service = MessagingService(db)
    count = await service.mark_chat_read(chat_id, current_user.id)
    return MarkChatReadResponse(chat_id=chat_id, marked_count=count)
