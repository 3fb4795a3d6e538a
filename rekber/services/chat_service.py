"""Chat room persistence and the room access policy.

Rooms are keyed by ``(invoice, room_type)``. A ``chat_rooms`` row marks that a
room exists; ``chat_messages`` is its append-only history. Live membership is
not stored here (see ``rekber.realtime.connection_manager``): every check in
this module reads the caller's role and the transaction status from the store.
"""

from __future__ import annotations

import logging

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from rekber.config import settings
from rekber.core.auth import CurrentUser, is_arbiter
from rekber.core.exceptions import (
    ForbiddenError,
    InvalidTransactionStateError,
    UnauthorizedError,
    ValidationError,
)
from rekber.database import unit_of_work
from rekber.models.chat import ROOM_ARBITRASE, ROOM_TRANSACTION, ROOM_TYPES, ChatMessage, ChatRoom
from rekber.models.transaction import TERMINAL_STATUSES, Transaction, TransactionStatus
from rekber.models.user import User
from rekber.services import identity_service, transaction_service

logger = logging.getLogger(__name__)

MESSAGE_TEXT = "text"
MESSAGE_IMAGE = "image"
MESSAGE_SYSTEM = "system"


def validate_room_type(room_type: str | None) -> str:
    if room_type not in ROOM_TYPES:
        raise ValidationError(f"room_type must be one of: {', '.join(ROOM_TYPES)}")
    return room_type


# ---------------------------------------------------------------------------
# Rooms
# ---------------------------------------------------------------------------

async def room_exists(db: AsyncSession, invoice: str, room_type: str) -> bool:
    result = await db.execute(
        select(ChatRoom.id).where(ChatRoom.room_id == invoice, ChatRoom.room_type == room_type)
    )
    return result.scalar_one_or_none() is not None


async def ensure_room(db: AsyncSession, tx: Transaction, room_type: str) -> bool:
    """Create the room for *tx* if absent. Returns True when this call created it.

    Does not commit. Two racing creators collide on ``uq_chat_room`` and the
    loser's unit of work fails with ``IntegrityError``.
    """
    if await room_exists(db, tx.invoice_number, room_type):
        return False
    db.add(ChatRoom(room_id=tx.invoice_number, room_type=room_type, transaction_id=tx.id))
    await db.flush()
    logger.info("Chat room %s/%s opened", room_type, tx.invoice_number)
    return True


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

async def append_message(
    db: AsyncSession,
    invoice: str,
    room_type: str,
    *,
    sender_id: int | None,
    message: str = "",
    message_type: str = MESSAGE_TEXT,
    attachment_url: str | None = None,
) -> ChatMessage:
    """Append one message to the room history. Does not commit."""
    msg = ChatMessage(
        room_id=invoice,
        room_type=room_type,
        sender_id=sender_id,
        message=message or "",
        message_type=message_type,
        attachment_url=attachment_url,
    )
    db.add(msg)
    await db.flush()
    return msg


async def add_system_message(db: AsyncSession, invoice: str, room_type: str, text: str) -> ChatMessage:
    return await append_message(
        db, invoice, room_type, sender_id=None, message=text, message_type=MESSAGE_SYSTEM
    )


def serialize_message(msg: ChatMessage, sender: User | None = None) -> dict:
    return {
        "id": msg.id,
        "room_id": msg.room_id,
        "room_type": msg.room_type,
        "sender_id": msg.sender_id,
        "sender_username": sender.username if sender is not None else None,
        "sender_role": sender.role if sender is not None else None,
        "message": msg.message,
        "message_type": msg.message_type,
        "attachment_url": msg.attachment_url,
        "created_at": msg.created_at.isoformat() if msg.created_at else None,
    }


async def _with_senders(db: AsyncSession, messages: list[ChatMessage]) -> list[dict]:
    sender_ids = {m.sender_id for m in messages if m.sender_id is not None}
    senders: dict[int, User] = {}
    if sender_ids:
        result = await db.execute(select(User).where(User.id.in_(sender_ids)))
        senders = {u.id: u for u in result.scalars().all()}
    return [serialize_message(m, senders.get(m.sender_id)) for m in messages]


async def get_history(db: AsyncSession, invoice: str, room_type: str, limit: int = 50) -> list[dict]:
    """The last *limit* messages of a room, oldest first. System messages included."""
    result = await db.execute(
        select(ChatMessage)
        .where(ChatMessage.room_id == invoice, ChatMessage.room_type == room_type)
        .order_by(ChatMessage.id.desc())
        .limit(limit)
    )
    messages = list(result.scalars().all())
    messages.reverse()
    return await _with_senders(db, messages)


async def list_messages(
    db: AsyncSession,
    invoice: str,
    room_type: str,
    page: int = 1,
    page_size: int = 50,
) -> tuple[list[dict], int]:
    """Full archival history, oldest first, paginated."""
    cond = (ChatMessage.room_id == invoice, ChatMessage.room_type == room_type)
    total = (await db.execute(select(func.count(ChatMessage.id)).where(*cond))).scalar() or 0
    result = await db.execute(
        select(ChatMessage)
        .where(*cond)
        .order_by(ChatMessage.id.asc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return await _with_senders(db, list(result.scalars().all())), total


# ---------------------------------------------------------------------------
# Access policy
# ---------------------------------------------------------------------------

async def _stored_role(db: AsyncSession, user: CurrentUser) -> str:
    role = await identity_service.get_user_role(db, user.id)
    if role is None:
        raise UnauthorizedError("Account is not active")
    return role


async def _authorize(
    db: AsyncSession, user: CurrentUser, invoice: str, room_type: str
) -> tuple[Transaction, str]:
    validate_room_type(room_type)
    tx = await transaction_service.get_transaction(db, invoice)
    role = await _stored_role(db, user)
    if not is_arbiter(role) and not await transaction_service.is_party(db, tx, user.id):
        raise ForbiddenError("Not authorized to access this chat")
    if room_type == ROOM_ARBITRASE and not await room_exists(db, invoice, ROOM_ARBITRASE):
        raise InvalidTransactionStateError(tx.status, TransactionStatus.DISPUTE.value)
    return tx, role


async def authorize_read(
    db: AsyncSession, user: CurrentUser, invoice: str, room_type: str
) -> Transaction:
    """Buyer, merchant owner and arbiters may read either room of a transaction.

    The arbitrase room must already exist; it is only opened by a dispute.
    """
    tx, _ = await _authorize(db, user, invoice, room_type)
    return tx


async def join_room(db: AsyncSession, user: CurrentUser, invoice: str, room_type: str) -> list[dict]:
    """Authorize a join and return the replay window of history.

    The transaction room is created on first join.
    """
    tx = await authorize_read(db, user, invoice, room_type)
    if room_type == ROOM_TRANSACTION:
        try:
            async with unit_of_work(db):
                await ensure_room(db, tx, ROOM_TRANSACTION)
        except IntegrityError:
            logger.debug("Chat room transaction/%s created concurrently", invoice)
    return await get_history(db, invoice, room_type, limit=settings.chat_history_limit)


async def authorize_post(db: AsyncSession, user: CurrentUser, invoice: str, room_type: str) -> str:
    """Re-check, from the store, that *user* may post in the room. Returns the stored role."""
    tx, role = await _authorize(db, user, invoice, room_type)
    if is_arbiter(role):
        return role
    if room_type == ROOM_ARBITRASE:
        raise ForbiddenError("Only arbiters can post in the arbitration room")
    if TransactionStatus(tx.status) in TERMINAL_STATUSES:
        raise ForbiddenError(f"Chat is closed for {tx.status.lower()} transactions")
    return role


async def post_message(
    db: AsyncSession,
    user: CurrentUser,
    invoice: str,
    room_type: str,
    message: str | None = None,
    attachment_url: str | None = None,
) -> dict:
    """Persist one user message and return its serialized form for broadcast."""
    text = (message or "").strip()
    attachment = (attachment_url or "").strip() or None
    if not text and not attachment:
        raise ValidationError("Message text or attachment is required")

    await authorize_post(db, user, invoice, room_type)
    message_type = MESSAGE_IMAGE if attachment and not text else MESSAGE_TEXT
    async with unit_of_work(db):
        msg = await append_message(
            db,
            invoice,
            room_type,
            sender_id=user.id,
            message=text,
            message_type=message_type,
            attachment_url=attachment,
        )
    sender = await identity_service.find_user(db, user.id)
    return serialize_message(msg, sender)
