from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from rekber.core.auth import CurrentUser, get_current_user
from rekber.database import get_db
from rekber.models.chat import ROOM_TRANSACTION
from rekber.schemas.chat import ChatHistoryResponse, ChatMessageResponse
from rekber.services import chat_service

router = APIRouter(prefix="/chat", tags=["chat"])


@router.get("/{invoice}/messages", response_model=ChatHistoryResponse)
async def list_chat_messages(
    invoice: str,
    room_type: str = Query(ROOM_TRANSACTION),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    """Archival read of a room's full history, oldest first."""
    await chat_service.authorize_read(db, current_user, invoice, room_type)
    messages, total = await chat_service.list_messages(db, invoice, room_type, page, page_size)
    return ChatHistoryResponse(
        room_id=invoice,
        room_type=room_type,
        total=total,
        page=page,
        page_size=page_size,
        messages=[ChatMessageResponse(**m) for m in messages],
    )
