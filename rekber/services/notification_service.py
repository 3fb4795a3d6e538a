"""Fire-and-forget Telegram notifications for transaction status changes.

Delivery is best effort. Nothing in this module raises into a caller: a lookup
or delivery failure is logged and dropped, and a committed transition is never
rolled back or retried because a message did not go out.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Iterable

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rekber.config import settings
from rekber.core.async_tasks import fire_and_forget
from rekber.models.user import User

logger = logging.getLogger(__name__)

_STATUS_LABELS: dict[str, str] = {
    "UNPAID": "Waiting for Payment",
    "PAID": "Payment Received",
    "FAILED": "Payment Failed",
    "EXPIRED": "Payment Expired",
    "DISPUTE": "Under Dispute",
    "COMPLETED": "Order Completed",
    "CANCELLED": "Order Cancelled",
}

EVENT_MESSAGES: dict[str, str] = {
    "order_update": (
        "<b>Order Update #{invoice}</b>\n\n"
        "<b>Status:</b> {status_label}\n"
        "<b>Product:</b> {product_name}\n"
        "<b>Quantity:</b> {quantity}\n"
        "<b>Total Amount:</b> Rp {total_amount}"
    ),
    "dispute_opened": (
        "<b>Dispute Alert</b>\n\n"
        "A dispute has been requested for transaction:\n"
        "<b>Invoice:</b> {invoice}\n"
        "<b>Reason:</b> {reason}\n"
        "<b>Buyer:</b> {buyer_id}\n"
        "<b>Amount:</b> Rp {total_amount}\n\n"
        "Please review and take necessary action."
    ),
    "dispute_resolved": (
        "<b>Dispute Resolved #{invoice}</b>\n\n"
        "<b>Decision:</b> {decision_label}\n"
        "<b>Status:</b> {status_label}\n"
        "{note_line}"
    ),
}


def format_rupiah(amount: Decimal | float | int) -> str:
    """Format with dot thousands separators, Indonesian style (1.234.567)."""
    value = Decimal(str(amount)).quantize(Decimal(1))
    return f"{value:,}".replace(",", ".")


def format_event_message(event_type: str, data: dict) -> str:
    template = EVENT_MESSAGES.get(event_type)
    if template is None:
        return f"Rekber event ({event_type})"
    fields = dict(data)
    if "status" in fields:
        fields.setdefault("status_label", _STATUS_LABELS.get(fields["status"], fields["status"]))
    if "total_amount" in fields:
        fields["total_amount"] = format_rupiah(fields["total_amount"])
    try:
        return template.format(**fields).strip()
    except (KeyError, ValueError):
        return f"Rekber event ({event_type})"


class TelegramNotifier:
    """Sends HTML messages through the Telegram Bot API. Log-only without a token."""

    def __init__(self, token: str = "", base_url: str = "", timeout: float = 10.0):
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def send(self, chat_id: str, text: str) -> bool:
        if not self.token:
            logger.info("Telegram not configured; notification for chat %s: %s", chat_id, text)
            return True
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(
                    f"{self.base_url}/bot{self.token}/sendMessage",
                    json={"chat_id": chat_id, "text": text, "parse_mode": "HTML"},
                )
            if resp.status_code != 200:
                logger.warning("Telegram delivery to %s failed: HTTP %s", chat_id, resp.status_code)
                return False
            return True
        except httpx.HTTPError as exc:
            logger.warning("Telegram delivery to %s failed: %s", chat_id, exc)
            return False


def get_notifier() -> TelegramNotifier:
    return TelegramNotifier(
        token=settings.telegram_bot_token,
        base_url=settings.telegram_api_base_url,
        timeout=settings.telegram_timeout_seconds,
    )


async def notify_users(db: AsyncSession, user_ids: Iterable[int | None], text: str) -> int:
    """Schedule *text* for every listed user with a linked Telegram chat.

    Returns the number of deliveries scheduled. Must be called after the
    triggering unit of work has committed.
    """
    ids = {uid for uid in user_ids if uid is not None}
    if not ids:
        return 0
    try:
        result = await db.execute(
            select(User.id, User.telegram_chat_id).where(
                User.id.in_(ids), User.telegram_chat_id.is_not(None)
            )
        )
        targets = [row.telegram_chat_id for row in result.all()]
    except Exception:
        logger.exception("Notification recipient lookup failed")
        return 0

    notifier = get_notifier()
    for chat_id in targets:
        fire_and_forget(notifier.send(chat_id, text), task_name="notify_telegram")
    return len(targets)


async def notify(db: AsyncSession, user_id: int, text: str) -> int:
    return await notify_users(db, [user_id], text)
