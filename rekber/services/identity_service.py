"""Read-only view of users and merchants consumed by the escrow core."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rekber.core.auth import ARBITER_ROLES
from rekber.core.exceptions import UserNotFoundError
from rekber.models.user import Merchant, User


async def find_user(db: AsyncSession, user_id: int) -> User | None:
    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def get_user(db: AsyncSession, user_id: int) -> User:
    user = await find_user(db, user_id)
    if user is None:
        raise UserNotFoundError(user_id)
    return user


async def get_buyer_tier(db: AsyncSession, user_id: int) -> str:
    result = await db.execute(select(User.buyer_tier).where(User.id == user_id))
    row = result.one_or_none()
    if row is None:
        raise UserNotFoundError(user_id)
    return row.buyer_tier or "bronze"


async def get_user_role(db: AsyncSession, user_id: int) -> str | None:
    """Current role straight from the store; ``None`` for unknown or deactivated users."""
    result = await db.execute(
        select(User.role, User.is_active).where(User.id == user_id)
    )
    row = result.one_or_none()
    if row is None:
        return None
    if not row.is_active and row.role != "buyer":
        return None
    return row.role


async def get_merchant_owner_id(db: AsyncSession, merchant_id: int) -> int | None:
    result = await db.execute(select(Merchant.user_id).where(Merchant.id == merchant_id))
    return result.scalar_one_or_none()


async def get_merchant_for_user(db: AsyncSession, user_id: int) -> Merchant | None:
    result = await db.execute(select(Merchant).where(Merchant.user_id == user_id))
    return result.scalar_one_or_none()


async def list_arbiter_ids(db: AsyncSession) -> list[int]:
    result = await db.execute(
        select(User.id).where(User.role.in_(ARBITER_ROLES), User.is_active.is_(True))
    )
    return list(result.scalars().all())
