from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint

from rekber.database import Base


def utcnow():
    return datetime.now(timezone.utc)


ROOM_TRANSACTION = "transaction"  # buyer <-> merchant, arbiters may join
ROOM_ARBITRASE = "arbitrase"  # sealed arbitration, only arbiters post
ROOM_TYPES = (ROOM_TRANSACTION, ROOM_ARBITRASE)


class ChatRoom(Base):
    """Existence marker for a room. Created once, never deleted or recreated."""

    __tablename__ = "chat_rooms"

    id = Column(Integer, primary_key=True, autoincrement=True)
    room_id = Column(String(64), nullable=False)  # Transaction invoice number
    room_type = Column(String(20), nullable=False)
    transaction_id = Column(Integer, ForeignKey("transactions.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("room_id", "room_type", name="uq_chat_room"),
    )


class ChatMessage(Base):
    """Append-only room history. ``sender_id`` is NULL for system messages."""

    __tablename__ = "chat_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    room_id = Column(String(64), nullable=False)
    room_type = Column(String(20), nullable=False)
    sender_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    message = Column(Text, nullable=False, default="")
    message_type = Column(String(20), nullable=False, default="text")  # text | image | system
    attachment_url = Column(String(500), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_chat_room", "room_id", "room_type", "id"),
    )
