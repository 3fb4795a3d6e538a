"""Per-product available quantity.

Both operations are single conditional ``UPDATE`` statements, so the check and
the write happen atomically in the store regardless of how many service
instances are running. Neither commits: they join the caller's unit of work.
"""

import logging

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from rekber.core.exceptions import OutOfStockError, ValidationError
from rekber.models.product import Product

logger = logging.getLogger(__name__)


async def reserve(db: AsyncSession, product_id: int, quantity: int) -> None:
    """Decrement stock by *quantity* if at least that much is available."""
    if quantity <= 0:
        raise ValidationError("Quantity must be greater than 0")
    result = await db.execute(
        update(Product)
        .where(Product.id == product_id, Product.stock >= quantity)
        .values(stock=Product.stock - quantity)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise OutOfStockError(product_id, quantity)
    logger.debug("Reserved %d unit(s) of product %s", quantity, product_id)


async def restore(db: AsyncSession, product_id: int, quantity: int) -> None:
    """Return *quantity* units to the product. Callers guarantee this runs once per reservation."""
    await db.execute(
        update(Product)
        .where(Product.id == product_id)
        .values(stock=Product.stock + quantity)
        .execution_options(synchronize_session=False)
    )
    logger.debug("Restored %d unit(s) of product %s", quantity, product_id)
