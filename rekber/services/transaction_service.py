"""Escrow transaction state machine.

States::

    UNPAID  -> PAID | FAILED | EXPIRED
    PAID    -> SHIPPED | DISPUTE | COMPLETED
    SHIPPED -> DISPUTE | COMPLETED
    DISPUTE -> CANCELLED | COMPLETED            (arbiter only, see dispute_service)

FAILED, EXPIRED, CANCELLED and COMPLETED are terminal.

Every transition is a compare-and-swap on ``status`` executed inside one
``unit_of_work``: ``UPDATE transactions SET status = :new WHERE id = :id AND
status IN (:allowed)``. Only the caller whose UPDATE matched a row applies the
dependent ledger, stock and tier mutations, so two racing callers can never
both move money. On PostgreSQL the row is additionally locked with
``SELECT ... FOR UPDATE`` while the transition is validated.
"""

from __future__ import annotations

import logging
import secrets
import time
from datetime import datetime, timedelta, timezone
from typing import Iterable

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from rekber.config import settings
from rekber.core.auth import ROLE_MERCHANT, CurrentUser, is_arbiter
from rekber.core.exceptions import (
    ForbiddenError,
    InvalidTransactionStateError,
    TransactionNotFoundError,
    ValidationError,
)
from rekber.database import _is_sqlite, unit_of_work
from rekber.models.transaction import TERMINAL_STATUSES, Transaction, TransactionStatus
from rekber.services import (
    catalog_service,
    fee_service,
    identity_service,
    ledger_service,
    notification_service,
    stock_service,
)
from rekber.services.duitku_service import get_duitku_service

logger = logging.getLogger(__name__)

COMPLETABLE_STATUSES = (TransactionStatus.PAID, TransactionStatus.SHIPPED)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_invoice() -> str:
    """TRX-<epoch millis>-<8 random hex chars>."""
    return f"TRX-{int(time.time() * 1000)}-{secrets.token_hex(4).upper()}"


# ---------------------------------------------------------------------------
# Store primitives shared with the dispute engine
# ---------------------------------------------------------------------------

async def find_transaction(
    db: AsyncSession, invoice: str, *, lock: bool = False
) -> Transaction | None:
    stmt = (
        select(Transaction)
        .where(Transaction.invoice_number == invoice)
        .execution_options(populate_existing=True)
    )
    if lock and not _is_sqlite:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def get_transaction(db: AsyncSession, invoice: str, *, lock: bool = False) -> Transaction:
    tx = await find_transaction(db, invoice, lock=lock)
    if tx is None:
        raise TransactionNotFoundError(invoice)
    return tx


async def current_status(db: AsyncSession, tx_id: int) -> TransactionStatus:
    result = await db.execute(select(Transaction.status).where(Transaction.id == tx_id))
    return TransactionStatus(result.scalar_one())


async def compare_and_set_status(
    db: AsyncSession,
    tx: Transaction,
    allowed_from: Iterable[TransactionStatus],
    new_status: TransactionStatus,
    **values,
) -> bool:
    """Move *tx* to *new_status* only if its stored status is still in *allowed_from*.

    Returns True when this caller won the transition. Does not commit.
    """
    allowed = [s.value for s in allowed_from]
    result = await db.execute(
        update(Transaction)
        .where(Transaction.id == tx.id, Transaction.status.in_(allowed))
        .values(status=new_status.value, updated_at=_utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    won = result.rowcount == 1
    if won:
        logger.info("Transaction %s: %s -> %s", tx.invoice_number, tx.status, new_status.value)
    return won


async def is_party(db: AsyncSession, tx: Transaction, user_id: int) -> bool:
    if user_id == tx.buyer_id:
        return True
    owner_id = await identity_service.get_merchant_owner_id(db, tx.merchant_id)
    return owner_id is not None and user_id == owner_id


async def notify_status_change(db: AsyncSession, tx: Transaction) -> None:
    """Order update to buyer and merchant owner. Runs after commit; never raises."""
    try:
        owner_id = await identity_service.get_merchant_owner_id(db, tx.merchant_id)
        product_name = await catalog_service.get_product_name(db, tx.product_id)
        text = notification_service.format_event_message("order_update", {
            "invoice": tx.invoice_number,
            "status": tx.status,
            "product_name": product_name,
            "quantity": tx.quantity,
            "total_amount": tx.total_amount,
        })
        await notification_service.notify_users(db, [tx.buyer_id, owner_id], text)
    except Exception:
        logger.exception("Status notification failed for %s", tx.invoice_number)


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------

async def create_transaction(
    db: AsyncSession,
    buyer_id: int,
    product_id: int,
    quantity: int,
    payment_method: str,
) -> dict:
    """Open an UNPAID escrow transaction. Returns the transaction, fees and payment handle.

    Product lookup, stock reservation, fee computation and the insert run in a
    single unit of work: any failure leaves stock untouched.
    """
    if quantity is None or quantity <= 0:
        raise ValidationError("Quantity must be greater than 0")
    if payment_method not in settings.payment_methods:
        raise ValidationError("Invalid payment method")

    async with unit_of_work(db):
        product = await catalog_service.get_active_product(db, product_id)
        if product.owner_user_id == buyer_id:
            raise ValidationError("You cannot buy your own product")
        if product.price <= 0:
            raise ValidationError("Product has no valid price")

        buyer_tier = await identity_service.get_buyer_tier(db, buyer_id)
        await stock_service.reserve(db, product.id, quantity)

        fees = fee_service.compute_fees(product.price, quantity, buyer_tier)
        due_date = _utcnow() + timedelta(hours=settings.payment_expiry_hours)
        tx = Transaction(
            invoice_number=generate_invoice(),
            buyer_id=buyer_id,
            merchant_id=product.merchant_id,
            product_id=product.id,
            quantity=quantity,
            price_per_item=product.price,
            subtotal=fees.subtotal,
            app_fee=fees.platform_fee,
            tier_discount=fees.tier_discount,
            gateway_fee=fees.gateway_fee,
            total_amount=fees.total,
            amount_net=fees.net_to_merchant,
            payment_method=payment_method,
            status=TransactionStatus.UNPAID.value,
            due_date=due_date,
        )
        db.add(tx)
        await db.flush()

    await db.refresh(tx)
    logger.info(
        "Transaction %s created: buyer=%s product=%s qty=%s total=%s",
        tx.invoice_number, buyer_id, product.id, quantity, fees.total,
    )

    payment = get_duitku_service().build_payment_handle(
        tx.invoice_number, fees.total, payment_method, due_date
    )
    return {
        "transaction": tx,
        "product": product,
        "buyer_tier": buyer_tier,
        "fees": fees,
        "payment": payment,
        "expires_at": due_date,
    }


# ---------------------------------------------------------------------------
# Payment outcome transitions (UNPAID -> PAID | FAILED | EXPIRED)
# ---------------------------------------------------------------------------

async def _leave_unpaid(
    db: AsyncSession,
    invoice: str,
    target: TransactionStatus,
    *,
    restore_stock: bool,
    **values,
) -> tuple[Transaction, bool]:
    """Shared body of mark_paid / mark_failed / mark_expired.

    Returns ``(transaction, changed)``. Already in *target* or in any terminal
    status is an idempotent no-op; any other non-UNPAID status is illegal.
    """
    changed = False
    async with unit_of_work(db):
        tx = await get_transaction(db, invoice, lock=True)
        status = TransactionStatus(tx.status)
        if status == TransactionStatus.UNPAID:
            changed = await compare_and_set_status(
                db, tx, [TransactionStatus.UNPAID], target, **values
            )
            if changed and restore_stock:
                await stock_service.restore(db, tx.product_id, tx.quantity)
            if not changed:
                status = await current_status(db, tx.id)
        if not changed and status != target and status not in TERMINAL_STATUSES:
            raise InvalidTransactionStateError(status.value, TransactionStatus.UNPAID.value)

    await db.refresh(tx)
    if not changed:
        logger.info("Transaction %s already %s; %s is a no-op", invoice, tx.status, target.value)
    return tx, changed


async def mark_paid(
    db: AsyncSession,
    invoice: str,
    payment_reference: str | None = None,
    gateway_payment_code: str | None = None,
) -> tuple[Transaction, bool]:
    return await _leave_unpaid(
        db,
        invoice,
        TransactionStatus.PAID,
        restore_stock=False,
        paid_at=_utcnow(),
        payment_reference=payment_reference,
        gateway_payment_code=gateway_payment_code,
    )


async def mark_failed(
    db: AsyncSession,
    invoice: str,
    payment_reference: str | None = None,
    gateway_payment_code: str | None = None,
) -> tuple[Transaction, bool]:
    return await _leave_unpaid(
        db,
        invoice,
        TransactionStatus.FAILED,
        restore_stock=True,
        payment_reference=payment_reference,
        gateway_payment_code=gateway_payment_code,
    )


async def mark_expired(
    db: AsyncSession,
    invoice: str,
    payment_reference: str | None = None,
    gateway_payment_code: str | None = None,
) -> tuple[Transaction, bool]:
    return await _leave_unpaid(
        db,
        invoice,
        TransactionStatus.EXPIRED,
        restore_stock=True,
        payment_reference=payment_reference,
        gateway_payment_code=gateway_payment_code,
    )


# ---------------------------------------------------------------------------
# Normal completion (PAID | SHIPPED -> COMPLETED)
# ---------------------------------------------------------------------------

async def complete_transaction(
    db: AsyncSession, invoice: str, caller_id: int, caller_role: str
) -> dict:
    """Release escrow to the merchant.

    Callable by the buyer, the merchant's owning user, or an arbiter. In one
    unit of work: status -> COMPLETED, merchant balance += amount_net, buyer
    success counter + tier, merchant success counter + tier.
    """
    async with unit_of_work(db):
        tx = await get_transaction(db, invoice, lock=True)
        if not is_arbiter(caller_role) and not await is_party(db, tx, caller_id):
            raise ForbiddenError("Not authorized to complete this transaction")
        if TransactionStatus(tx.status) not in COMPLETABLE_STATUSES:
            raise InvalidTransactionStateError(tx.status, "PAID or SHIPPED")

        won = await compare_and_set_status(
            db, tx, COMPLETABLE_STATUSES, TransactionStatus.COMPLETED, completed_at=_utcnow()
        )
        if not won:
            raise InvalidTransactionStateError(
                (await current_status(db, tx.id)).value, "PAID or SHIPPED"
            )

        await ledger_service.credit_merchant(db, tx.merchant_id, tx.amount_net)
        buyer_tier = await ledger_service.record_buyer_success(db, tx.buyer_id)
        merchant_tier = await ledger_service.record_merchant_success(db, tx.merchant_id)

    await db.refresh(tx)
    await notify_status_change(db, tx)
    return {
        "transaction": tx,
        "merchant_earnings": tx.amount_net,
        "buyer_tier": buyer_tier,
        "merchant_tier": merchant_tier,
    }


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

async def get_transaction_detail(db: AsyncSession, invoice: str, caller: CurrentUser) -> Transaction:
    """Transaction visible to its buyer, its merchant's owner, and arbiters."""
    tx = await get_transaction(db, invoice)
    if not caller.is_arbiter and not await is_party(db, tx, caller.id):
        raise ForbiddenError("Not authorized to view this transaction")
    return tx


async def list_transactions(
    db: AsyncSession,
    caller: CurrentUser,
    status_filter: str | None = None,
    page: int = 1,
    page_size: int = 20,
) -> tuple[list[Transaction], int]:
    """Merchants list their shop's sales; everyone else lists their purchases."""
    if caller.role == ROLE_MERCHANT:
        merchant = await identity_service.get_merchant_for_user(db, caller.id)
        if merchant is None:
            return [], 0
        cond = Transaction.merchant_id == merchant.id
    else:
        cond = Transaction.buyer_id == caller.id

    query = select(Transaction).where(cond)
    count_query = select(func.count(Transaction.id)).where(cond)

    if status_filter:
        try:
            status_value = TransactionStatus(status_filter).value
        except ValueError:
            raise ValidationError("Invalid status value")
        query = query.where(Transaction.status == status_value)
        count_query = count_query.where(Transaction.status == status_value)

    total = (await db.execute(count_query)).scalar() or 0

    query = query.order_by(Transaction.created_at.desc(), Transaction.id.desc())
    query = query.offset((page - 1) * page_size).limit(page_size)
    result = await db.execute(query)
    return list(result.scalars().all()), total


# ---------------------------------------------------------------------------
# Background expiry
# ---------------------------------------------------------------------------

async def expire_overdue(db: AsyncSession, now: datetime | None = None) -> list[str]:
    """Expire every UNPAID transaction past its due date, restoring stock.

    Each invoice is its own unit of work; a webhook that pays an invoice
    concurrently simply wins the compare-and-swap and the sweep skips it.
    """
    now = now or _utcnow()
    result = await db.execute(
        select(Transaction.invoice_number).where(
            Transaction.status == TransactionStatus.UNPAID.value,
            Transaction.due_date < now,
        )
    )
    invoices = list(result.scalars().all())
    expired: list[str] = []
    for invoice in invoices:
        try:
            tx, changed = await mark_expired(db, invoice)
        except InvalidTransactionStateError:
            continue
        if changed:
            expired.append(invoice)
            await notify_status_change(db, tx)
    if expired:
        logger.info("Expired %d overdue transaction(s)", len(expired))
    return expired
