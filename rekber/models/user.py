from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import relationship

from rekber.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class User(Base):
    """Buyer, merchant owner or arbiter. Identity data is owned elsewhere; the
    escrow core only reads the role and mutates the buyer ledger fields."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(100), nullable=False, unique=True)
    email = Column(String(255), nullable=True)
    role = Column(String(20), nullable=False, default="buyer")  # buyer | merchant | admin
    is_active = Column(Boolean, nullable=False, default=True)

    # Buyer ledger + classification
    buyer_tier = Column(String(20), nullable=False, default="bronze")
    total_success_trx = Column(Integer, nullable=False, default=0)
    credit_balance = Column(Numeric(18, 6), nullable=False, default=0)

    telegram_chat_id = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    merchant = relationship("Merchant", back_populates="owner", uselist=False, lazy="selectin")

    __table_args__ = (
        CheckConstraint("credit_balance >= 0", name="ck_user_credit_nonneg"),
        Index("idx_user_role", "role"),
    )


class Merchant(Base):
    """A shop owned by exactly one user. ``balance`` is the withdrawable ledger."""

    __tablename__ = "merchants"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, unique=True)
    shop_name = Column(String(150), nullable=False)
    balance = Column(Numeric(18, 6), nullable=False, default=0)
    tier_level = Column(String(20), nullable=False, default="bronze")
    total_success_trx = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    owner = relationship("User", back_populates="merchant", lazy="selectin")

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_merchant_balance_nonneg"),
        Index("idx_merchant_user", "user_id"),
    )
