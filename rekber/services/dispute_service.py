"""Dispute opening and arbiter resolution.

Opening a dispute flips the transaction to DISPUTE and opens the arbitrase
room in the same unit of work, so the room exists exactly when a dispute has
been raised. Resolution moves money once: ``refund`` credits the buyer with
``total_amount`` and cancels, ``release`` credits the merchant with
``amount_net`` and completes.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from rekber.core.async_tasks import fire_and_forget
from rekber.core.auth import is_arbiter
from rekber.core.exceptions import ForbiddenError, InvalidTransactionStateError, ValidationError
from rekber.database import unit_of_work
from rekber.models.chat import ROOM_ARBITRASE
from rekber.models.transaction import Transaction, TransactionStatus
from rekber.realtime.connection_manager import broadcast_room_message
from rekber.services import (
    chat_service,
    identity_service,
    ledger_service,
    notification_service,
    transaction_service,
)

logger = logging.getLogger(__name__)

DECISION_REFUND = "refund"
DECISION_RELEASE = "release"
DECISIONS = (DECISION_REFUND, DECISION_RELEASE)

DISPUTABLE_STATUSES = (TransactionStatus.PAID, TransactionStatus.SHIPPED)

DISPUTE_OPENED_MESSAGE = "Dispute opened. Admin, seller and buyer are connected."
_DECISION_LABELS = {
    DECISION_REFUND: "Refund to buyer",
    DECISION_RELEASE: "Release funds to seller",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _resolution_message(decision: str, note: str | None) -> str:
    text = f"Dispute resolved by arbiter: {_DECISION_LABELS[decision]}."
    if note:
        text += f" Note: {note}"
    return text


def _schedule_broadcast(tx: Transaction, message: dict) -> None:
    fire_and_forget(
        broadcast_room_message(tx.invoice_number, ROOM_ARBITRASE, message),
        task_name="chat_broadcast",
    )


async def request_dispute(
    db: AsyncSession,
    invoice: str,
    buyer_id: int,
    reason: str,
    evidence_url: str | None = None,
) -> dict:
    """Buyer opens a dispute on a PAID or SHIPPED transaction."""
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("Reason is required")

    async with unit_of_work(db):
        tx = await transaction_service.get_transaction(db, invoice, lock=True)
        if tx.buyer_id != buyer_id:
            raise ForbiddenError("Not authorized to dispute this transaction")
        if TransactionStatus(tx.status) not in DISPUTABLE_STATUSES:
            raise InvalidTransactionStateError(tx.status, "PAID or SHIPPED")

        won = await transaction_service.compare_and_set_status(
            db,
            tx,
            DISPUTABLE_STATUSES,
            TransactionStatus.DISPUTE,
            dispute_reason=reason,
            dispute_evidence_url=evidence_url,
            disputed_at=_utcnow(),
        )
        if not won:
            current = await transaction_service.current_status(db, tx.id)
            raise InvalidTransactionStateError(current.value, "PAID or SHIPPED")

        room_created = await chat_service.ensure_room(db, tx, ROOM_ARBITRASE)
        system_msg = await chat_service.add_system_message(
            db, invoice, ROOM_ARBITRASE, DISPUTE_OPENED_MESSAGE
        )

    await db.refresh(tx)
    logger.info("Dispute opened on %s by buyer %s", invoice, buyer_id)

    _schedule_broadcast(tx, chat_service.serialize_message(system_msg))
    await _notify_dispute_opened(db, tx)
    return {"transaction": tx, "room_id": invoice, "room_type": ROOM_ARBITRASE, "room_created": room_created}


async def resolve_dispute(
    db: AsyncSession,
    invoice: str,
    arbiter_id: int,
    arbiter_role: str,
    decision: str,
    note: str | None = None,
) -> dict:
    """Apply an arbiter's binding decision to a DISPUTE transaction."""
    if not is_arbiter(arbiter_role):
        raise ForbiddenError("Only arbiters can resolve disputes")
    if decision not in DECISIONS:
        raise ValidationError('Decision must be either "refund" or "release"')
    note = (note or "").strip() or None

    async with unit_of_work(db):
        tx = await transaction_service.get_transaction(db, invoice, lock=True)
        if tx.status != TransactionStatus.DISPUTE.value:
            raise InvalidTransactionStateError(tx.status, TransactionStatus.DISPUTE.value)

        values = {"resolution": decision, "resolution_note": note, "resolved_by": arbiter_id}
        if decision == DECISION_REFUND:
            target = TransactionStatus.CANCELLED
        else:
            target = TransactionStatus.COMPLETED
            values["completed_at"] = _utcnow()

        won = await transaction_service.compare_and_set_status(
            db, tx, [TransactionStatus.DISPUTE], target, **values
        )
        if not won:
            current = await transaction_service.current_status(db, tx.id)
            raise InvalidTransactionStateError(current.value, TransactionStatus.DISPUTE.value)

        if decision == DECISION_REFUND:
            await ledger_service.credit_buyer(db, tx.buyer_id, tx.total_amount)
        else:
            await ledger_service.credit_merchant(db, tx.merchant_id, tx.amount_net)
            await ledger_service.record_buyer_success(db, tx.buyer_id)
            await ledger_service.record_merchant_success(db, tx.merchant_id)

        # Disputes opened before the room table existed still get a room
        await chat_service.ensure_room(db, tx, ROOM_ARBITRASE)
        system_msg = await chat_service.add_system_message(
            db, invoice, ROOM_ARBITRASE, _resolution_message(decision, note)
        )

    await db.refresh(tx)
    logger.info("Dispute on %s resolved by %s: %s -> %s", invoice, arbiter_id, decision, tx.status)

    _schedule_broadcast(tx, chat_service.serialize_message(system_msg))
    await _notify_dispute_resolved(db, tx, decision, note)
    return {"transaction": tx, "decision": decision}


async def _notify_dispute_opened(db: AsyncSession, tx: Transaction) -> None:
    try:
        owner_id = await identity_service.get_merchant_owner_id(db, tx.merchant_id)
        arbiter_ids = await identity_service.list_arbiter_ids(db)
        text = notification_service.format_event_message("dispute_opened", {
            "invoice": tx.invoice_number,
            "reason": tx.dispute_reason,
            "buyer_id": tx.buyer_id,
            "total_amount": tx.total_amount,
        })
        await notification_service.notify_users(db, [owner_id, *arbiter_ids], text)
    except Exception:
        logger.exception("Dispute notification failed for %s", tx.invoice_number)


async def _notify_dispute_resolved(
    db: AsyncSession, tx: Transaction, decision: str, note: str | None
) -> None:
    try:
        owner_id = await identity_service.get_merchant_owner_id(db, tx.merchant_id)
        text = notification_service.format_event_message("dispute_resolved", {
            "invoice": tx.invoice_number,
            "status": tx.status,
            "decision_label": _DECISION_LABELS[decision],
            "note_line": f"<b>Note:</b> {note}" if note else "",
        })
        await notification_service.notify_users(db, [tx.buyer_id, owner_id], text)
    except Exception:
        logger.exception("Dispute notification failed for %s", tx.invoice_number)
