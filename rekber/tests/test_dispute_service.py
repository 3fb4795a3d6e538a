"""Dispute opening and arbiter resolution."""

from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from rekber.core.exceptions import (
    ForbiddenError,
    InvalidTransactionStateError,
    TransactionNotFoundError,
    ValidationError,
)
from rekber.models.chat import ChatMessage, ChatRoom
from rekber.services import dispute_service, ledger_service


async def _messages(db, invoice, room_type="arbitrase"):
    result = await db.execute(
        select(ChatMessage)
        .where(ChatMessage.room_id == invoice, ChatMessage.room_type == room_type)
        .order_by(ChatMessage.id)
    )
    return list(result.scalars().all())


async def _rooms(db, invoice):
    result = await db.execute(select(ChatRoom).where(ChatRoom.room_id == invoice))
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# request_dispute
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("status", ["PAID", "SHIPPED"])
async def test_request_dispute_opens_arbitrase_room(db, escrow_parties, make_transaction, status):
    p = escrow_parties
    tx = await make_transaction(p["buyer"], p["merchant"], p["product"], status=status)

    result = await dispute_service.request_dispute(
        db, tx.invoice_number, p["buyer"].id, "Item not as described", "https://img.example/1.jpg"
    )

    disputed = result["transaction"]
    assert disputed.status == "DISPUTE"
    assert disputed.dispute_reason == "Item not as described"
    assert disputed.dispute_evidence_url == "https://img.example/1.jpg"
    assert disputed.disputed_at is not None
    assert result["room_created"] is True

    rooms = await _rooms(db, tx.invoice_number)
    assert [(r.room_type, r.transaction_id) for r in rooms] == [("arbitrase", tx.id)]

    messages = await _messages(db, tx.invoice_number)
    assert len(messages) == 1
    assert messages[0].sender_id is None
    assert messages[0].message_type == "system"
    assert messages[0].message == dispute_service.DISPUTE_OPENED_MESSAGE


async def test_only_the_buyer_may_open_a_dispute(db, escrow_parties, make_transaction):
    p = escrow_parties
    tx = await make_transaction(p["buyer"], p["merchant"], p["product"], status="PAID")
    invoice = tx.invoice_number
    for user_id in (p["owner"].id, p["arbiter"].id):
        with pytest.raises(ForbiddenError):
            await dispute_service.request_dispute(db, invoice, user_id, "because")
    assert await _rooms(db, invoice) == []


@pytest.mark.parametrize("status", ["UNPAID", "DISPUTE", "COMPLETED", "CANCELLED", "FAILED", "EXPIRED"])
async def test_dispute_rejected_outside_paid_or_shipped(db, escrow_parties, make_transaction, status):
    p = escrow_parties
    tx = await make_transaction(p["buyer"], p["merchant"], p["product"], status=status)
    invoice, buyer_id = tx.invoice_number, p["buyer"].id
    with pytest.raises(InvalidTransactionStateError):
        await dispute_service.request_dispute(db, invoice, buyer_id, "late")
    assert await _messages(db, invoice) == []


async def test_dispute_requires_reason(db, escrow_parties, make_transaction):
    p = escrow_parties
    tx = await make_transaction(p["buyer"], p["merchant"], p["product"], status="PAID")
    with pytest.raises(ValidationError):
        await dispute_service.request_dispute(db, tx.invoice_number, p["buyer"].id, "   ")


async def test_dispute_notifies_merchant_owner_and_arbiters(db, escrow_parties, make_transaction):
    p = escrow_parties
    tx = await make_transaction(p["buyer"], p["merchant"], p["product"], status="PAID")
    with patch(
        "rekber.services.notification_service.notify_users", new_callable=AsyncMock
    ) as notify:
        await dispute_service.request_dispute(db, tx.invoice_number, p["buyer"].id, "broken")

    notify.assert_awaited_once()
    recipients = set(notify.await_args.args[1])
    assert recipients == {p["owner"].id, p["arbiter"].id}
    assert tx.invoice_number in notify.await_args.args[2]


# ---------------------------------------------------------------------------
# resolve_dispute
# ---------------------------------------------------------------------------

async def test_refund_cancels_and_credits_buyer_total(db, escrow_parties, make_transaction):
    p = escrow_parties
    tx = await make_transaction(p["buyer"], p["merchant"], p["product"], quantity=2, status="PAID")
    await dispute_service.request_dispute(db, tx.invoice_number, p["buyer"].id, "never arrived")

    result = await dispute_service.resolve_dispute(
        db, tx.invoice_number, p["arbiter"].id, "admin", "refund", "Seller could not prove shipment"
    )

    resolved = result["transaction"]
    assert resolved.status == "CANCELLED"
    assert resolved.resolution == "refund"
    assert resolved.resolution_note == "Seller could not prove shipment"
    assert resolved.resolved_by == p["arbiter"].id
    assert resolved.completed_at is None

    balances = await ledger_service.get_balances(db, buyer_id=p["buyer"].id, merchant_id=p["merchant"].id)
    assert balances["buyer_credit"] == Decimal("207000")
    assert balances["merchant_balance"] == Decimal("0")

    messages = await _messages(db, tx.invoice_number)
    assert [m.message_type for m in messages] == ["system", "system"]
    assert "Refund to buyer" in messages[-1].message
    assert "Seller could not prove shipment" in messages[-1].message


async def test_release_completes_and_credits_merchant_net(db, escrow_parties, make_transaction):
    p = escrow_parties
    tx = await make_transaction(p["buyer"], p["merchant"], p["product"], quantity=2, status="SHIPPED")
    await dispute_service.request_dispute(db, tx.invoice_number, p["buyer"].id, "wrong colour")

    result = await dispute_service.resolve_dispute(db, tx.invoice_number, p["arbiter"].id, "admin", "release")

    resolved = result["transaction"]
    assert resolved.status == "COMPLETED"
    assert resolved.completed_at is not None
    assert resolved.resolution == "release"

    balances = await ledger_service.get_balances(db, buyer_id=p["buyer"].id, merchant_id=p["merchant"].id)
    assert balances["merchant_balance"] == Decimal("200000")
    assert balances["buyer_credit"] == Decimal("0")

    await db.refresh(p["buyer"])
    assert p["buyer"].total_success_trx == 1


async def test_resolve_from_paid_is_rejected_and_balances_untouched(db, escrow_parties, make_transaction):
    p = escrow_parties
    tx = await make_transaction(p["buyer"], p["merchant"], p["product"], status="PAID")
    invoice, arbiter_id = tx.invoice_number, p["arbiter"].id
    buyer_id, merchant_id = p["buyer"].id, p["merchant"].id

    with pytest.raises(InvalidTransactionStateError):
        await dispute_service.resolve_dispute(db, invoice, arbiter_id, "admin", "refund")

    balances = await ledger_service.get_balances(db, buyer_id=buyer_id, merchant_id=merchant_id)
    assert balances == {"buyer_credit": Decimal("0"), "merchant_balance": Decimal("0")}


async def test_resolve_twice_moves_money_once(db, escrow_parties, make_transaction):
    p = escrow_parties
    tx = await make_transaction(p["buyer"], p["merchant"], p["product"], status="DISPUTE")
    invoice, arbiter_id, total = tx.invoice_number, p["arbiter"].id, tx.total_amount
    buyer_id, merchant_id = p["buyer"].id, p["merchant"].id

    await dispute_service.resolve_dispute(db, invoice, arbiter_id, "admin", "refund")
    with pytest.raises(InvalidTransactionStateError):
        await dispute_service.resolve_dispute(db, invoice, arbiter_id, "admin", "release")

    balances = await ledger_service.get_balances(db, buyer_id=buyer_id, merchant_id=merchant_id)
    assert balances["buyer_credit"] == total
    assert balances["merchant_balance"] == Decimal("0")


async def test_resolve_requires_arbiter_role(db, escrow_parties, make_transaction):
    p = escrow_parties
    tx = await make_transaction(p["buyer"], p["merchant"], p["product"], status="DISPUTE")
    with pytest.raises(ForbiddenError):
        await dispute_service.resolve_dispute(db, tx.invoice_number, p["owner"].id, "merchant", "release")


async def test_resolve_rejects_unknown_decision(db, escrow_parties, make_transaction):
    p = escrow_parties
    tx = await make_transaction(p["buyer"], p["merchant"], p["product"], status="DISPUTE")
    with pytest.raises(ValidationError):
        await dispute_service.resolve_dispute(db, tx.invoice_number, p["arbiter"].id, "admin", "split")


async def test_resolve_unknown_invoice(db, escrow_parties):
    with pytest.raises(TransactionNotFoundError):
        await dispute_service.resolve_dispute(db, "TRX-0-FFFFFFFF", escrow_parties["arbiter"].id, "admin", "refund")


async def test_resolution_notifies_both_parties(db, escrow_parties, make_transaction):
    p = escrow_parties
    tx = await make_transaction(p["buyer"], p["merchant"], p["product"], status="DISPUTE")
    with patch(
        "rekber.services.notification_service.notify_users", new_callable=AsyncMock
    ) as notify:
        await dispute_service.resolve_dispute(db, tx.invoice_number, p["arbiter"].id, "admin", "release")

    notify.assert_awaited_once()
    assert set(notify.await_args.args[1]) == {p["buyer"].id, p["owner"].id}
