"""Buyer credit and merchant balance mutations.

Only two movements exist: a merchant is credited ``amount_net`` when a
transaction completes, and a buyer is credited ``total_amount`` when a
dispute is refunded. Every function here issues an in-store increment
(``SET balance = balance + :amount``) and does NOT commit; callers invoke
them only after winning the status compare-and-swap inside their unit of
work, which is what makes each movement happen at most once per invoice.
"""

from __future__ import annotations

import logging
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from rekber.models.user import Merchant, User
from rekber.services.fee_service import tier_for_success_count, to_decimal

logger = logging.getLogger(__name__)


async def credit_merchant(db: AsyncSession, merchant_id: int, amount: Decimal) -> None:
    amount_d = to_decimal(amount)
    if amount_d < 0:
        raise ValueError("Ledger credit must not be negative")
    result = await db.execute(
        update(Merchant)
        .where(Merchant.id == merchant_id)
        .values(balance=Merchant.balance + amount_d)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ValueError(f"Merchant {merchant_id} not found")
    logger.info("Merchant %s credited %s", merchant_id, amount_d)


async def credit_buyer(db: AsyncSession, user_id: int, amount: Decimal) -> None:
    amount_d = to_decimal(amount)
    if amount_d < 0:
        raise ValueError("Ledger credit must not be negative")
    result = await db.execute(
        update(User)
        .where(User.id == user_id)
        .values(credit_balance=User.credit_balance + amount_d)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ValueError(f"User {user_id} not found")
    logger.info("Buyer %s credited %s", user_id, amount_d)


async def record_buyer_success(db: AsyncSession, user_id: int) -> str:
    """Bump the buyer's success counter and recompute the tier. Returns the tier."""
    await db.execute(
        update(User)
        .where(User.id == user_id)
        .values(total_success_trx=User.total_success_trx + 1)
        .execution_options(synchronize_session=False)
    )
    row = (
        await db.execute(
            select(User.total_success_trx, User.buyer_tier).where(User.id == user_id)
        )
    ).one()
    new_tier = tier_for_success_count(row.total_success_trx)
    if row.buyer_tier != new_tier:
        await db.execute(
            update(User)
            .where(User.id == user_id, User.buyer_tier != new_tier)
            .values(buyer_tier=new_tier)
            .execution_options(synchronize_session=False)
        )
        logger.info(
            "Tier change for buyer %s: %s -> %s (success_trx=%s)",
            user_id,
            row.buyer_tier,
            new_tier,
            row.total_success_trx,
        )
    return new_tier


async def record_merchant_success(db: AsyncSession, merchant_id: int) -> str:
    """Bump the merchant's success counter and recompute ``tier_level``. Returns the tier."""
    await db.execute(
        update(Merchant)
        .where(Merchant.id == merchant_id)
        .values(total_success_trx=Merchant.total_success_trx + 1)
        .execution_options(synchronize_session=False)
    )
    row = (
        await db.execute(
            select(Merchant.total_success_trx, Merchant.tier_level).where(
                Merchant.id == merchant_id
            )
        )
    ).one()
    new_tier = tier_for_success_count(row.total_success_trx)
    if row.tier_level != new_tier:
        await db.execute(
            update(Merchant)
            .where(Merchant.id == merchant_id, Merchant.tier_level != new_tier)
            .values(tier_level=new_tier)
            .execution_options(synchronize_session=False)
        )
        logger.info(
            "Tier change for merchant %s: %s -> %s (success_trx=%s)",
            merchant_id,
            row.tier_level,
            new_tier,
            row.total_success_trx,
        )
    return new_tier


async def get_balances(db: AsyncSession, *, buyer_id: int, merchant_id: int) -> dict:
    """Current buyer credit and merchant balance, for responses and tests."""
    buyer_credit = (
        await db.execute(select(User.credit_balance).where(User.id == buyer_id))
    ).scalar_one()
    merchant_balance = (
        await db.execute(select(Merchant.balance).where(Merchant.id == merchant_id))
    ).scalar_one()
    return {
        "buyer_credit": Decimal(str(buyer_credit)),
        "merchant_balance": Decimal(str(merchant_balance)),
    }
