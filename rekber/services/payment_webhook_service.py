"""Duitku payment callback ingestion.

Verifies the callback, then hands the outcome to the transaction state
machine. Replays of an already-applied callback fall through the state
machine's no-op rule and are acknowledged without a second transition or
notification.
"""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation

from sqlalchemy.ext.asyncio import AsyncSession

from rekber.core.exceptions import (
    AmountMismatchError,
    GatewayConfigurationError,
    InvalidSignatureError,
    InvalidTransactionStateError,
    MerchantCodeMismatchError,
    ValidationError,
)
from rekber.models.transaction import TransactionStatus
from rekber.services import transaction_service
from rekber.services.duitku_service import get_duitku_service

logger = logging.getLogger(__name__)

CALLBACK_ACK = {"success": True, "message": "Callback processed successfully"}

_REQUIRED_FIELDS = ("merchantCode", "merchantOrderId", "amount", "resultCode", "signature")

_TRANSITIONS = {
    TransactionStatus.PAID.value: transaction_service.mark_paid,
    TransactionStatus.FAILED.value: transaction_service.mark_failed,
    TransactionStatus.EXPIRED.value: transaction_service.mark_expired,
}


def _field(payload: dict, name: str) -> str:
    value = payload.get(name)
    return "" if value is None else str(value).strip()


def _parse_amount(raw: str) -> Decimal:
    try:
        amount = Decimal(raw)
    except (InvalidOperation, ValueError):
        raise ValidationError("Invalid amount")
    if not amount.is_finite():
        raise ValidationError("Invalid amount")
    return amount


async def handle_callback(db: AsyncSession, payload: dict) -> dict:
    """Verify and apply one gateway callback. Returns the gateway acknowledgement.

    Checks, in order: gateway configured, merchant code, signature over the
    raw amount string, invoice exists, amount equals ``total_amount``. Only
    then is the result code mapped and the transition applied.
    """
    gateway = get_duitku_service()
    if not gateway.configured:
        logger.error("Duitku callback received but gateway is not configured")
        raise GatewayConfigurationError()

    missing = [name for name in _REQUIRED_FIELDS if not _field(payload, name)]
    if missing:
        raise ValidationError(f"Missing callback fields: {', '.join(missing)}")

    merchant_code = _field(payload, "merchantCode")
    invoice = _field(payload, "merchantOrderId")
    amount_raw = _field(payload, "amount")

    if not gateway.verify_merchant_code(merchant_code):
        logger.warning("Callback for %s rejected: merchant code mismatch", invoice)
        raise MerchantCodeMismatchError()

    if not gateway.verify_signature(merchant_code, invoice, amount_raw, _field(payload, "signature")):
        logger.warning("Callback for %s rejected: signature mismatch", invoice)
        raise InvalidSignatureError()

    tx = await transaction_service.get_transaction(db, invoice)
    amount = _parse_amount(amount_raw)
    if amount != Decimal(str(tx.total_amount)):
        logger.warning(
            "Callback for %s rejected: amount %s != total %s", invoice, amount, tx.total_amount
        )
        raise AmountMismatchError(tx.total_amount, amount_raw)

    outcome = gateway.map_result_code(_field(payload, "resultCode"))
    logger.info("Duitku callback for %s: resultCode=%s -> %s", invoice, payload.get("resultCode"), outcome)

    transition = _TRANSITIONS.get(outcome)
    if transition is None:
        # PENDING: payment still in flight at the gateway, nothing to apply yet
        return dict(CALLBACK_ACK)

    try:
        tx, changed = await transition(
            db,
            invoice,
            payment_reference=_field(payload, "reference") or None,
            gateway_payment_code=_field(payload, "paymentMethod") or _field(payload, "paymentCode") or None,
        )
    except InvalidTransactionStateError:
        # A late PAID replay after the buyer already moved on (DISPUTE, SHIPPED)
        current = await transaction_service.get_transaction(db, invoice)
        if outcome == TransactionStatus.PAID.value and current.paid_at is not None:
            logger.info("Callback for %s already applied; status is now %s", invoice, current.status)
            return dict(CALLBACK_ACK)
        raise
    if changed:
        await transaction_service.notify_status_change(db, tx)
    return dict(CALLBACK_ACK)
