"""Message endpoints: receipts, delivery status and deletion."""

from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from clusterhub.api.deps import CurrentUser
from clusterhub.api.v1.chats import MessageResponse
from clusterhub.db.session import get_db_session
from clusterhub.services.messaging import MessagingService

router = APIRouter()


class ReceiptResponse(BaseModel):
    """Receipt state for the caller."""

    message_id: int
    user_id: int
    delivered_at: datetime | None
    read_at: datetime | None

    class Config:
        from_attributes = True


class RecipientStatusResponse(BaseModel):
    user_id: int
    display_name: str
    delivered_at: datetime | None
    read_at: datetime | None

    class Config:
        from_attributes = True


@router.post("/{message_id}/delivered", response_model=ReceiptResponse)
async def mark_delivered(
    message_id: int,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db_session),
) -> ReceiptResponse:
    """Acknowledge delivery. Repeated calls keep the first timestamp."""
    service = MessagingService(db)
    receipt = await service.mark_delivered(message_id, current_user.id)
    return ReceiptResponse.model_validate(receipt)


@router.post("/{message_id}/read", response_model=ReceiptResponse)
async def mark_read(
    message_id: int,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db_session),
) -> ReceiptResponse:
    """Mark a delivered message as read. Repeated calls keep the first timestamp."""
    service = MessagingService(db)
    receipt = await service.mark_read(message_id, current_user.id)
    return ReceiptResponse.model_validate(receipt)


@router.get("/{message_id}/status", response_model=list[RecipientStatusResponse])
async def get_delivery_status(
    message_id: int,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db_session),
) -> list[RecipientStatusResponse]:
    """Per-recipient delivery state, unread recipients first."""
    service = MessagingService(db)
    statuses = await service.delivery_status(message_id, requester_id=current_user.id)
    return [RecipientStatusResponse.model_validate(s) for s in statuses]


@router.delete("/{message_id}", response_model=MessageResponse)
async def delete_message(
    message_id: int,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db_session),
) -> MessageResponse:
    """Soft-delete one of the caller's own messages."""
    service = MessagingService(db)
    message = await service.delete_message(message_id, current_user.id)
    return MessageResponse.model_validate(message)
