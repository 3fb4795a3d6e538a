"""Narrow catalog read used when opening a transaction."""

from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rekber.core.exceptions import ProductNotFoundError
from rekber.models.product import Product
from rekber.models.user import Merchant


@dataclass(frozen=True)
class ProductSnapshot:
    id: int
    name: str
    price: Decimal
    stock: int
    merchant_id: int
    owner_user_id: int
    shop_name: str


async def get_active_product(db: AsyncSession, product_id: int) -> ProductSnapshot:
    """Fetch price, stock and owner of an active product sold by an active merchant."""
    result = await db.execute(
        select(Product, Merchant)
        .join(Merchant, Product.merchant_id == Merchant.id)
        .where(
            Product.id == product_id,
            Product.status == "active",
            Merchant.is_active.is_(True),
        )
    )
    row = result.one_or_none()
    if row is None:
        raise ProductNotFoundError(product_id)
    product, merchant = row
    return ProductSnapshot(
        id=product.id,
        name=product.name,
        price=Decimal(str(product.price)),
        stock=product.stock,
        merchant_id=merchant.id,
        owner_user_id=merchant.user_id,
        shop_name=merchant.shop_name,
    )


async def get_product_name(db: AsyncSession, product_id: int) -> str:
    result = await db.execute(select(Product.name).where(Product.id == product_id))
    return result.scalar_one_or_none() or "Unknown"
