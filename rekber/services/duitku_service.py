"""Duitku payment gateway contract.

Only the parts the escrow core depends on are modelled: building the
payment-initiation handle returned to the buyer, verifying callback
signatures, and mapping gateway result codes. Operates in simulated mode
(sandbox payment URL, no outbound call) when no merchant code is configured.
"""

import hashlib
import hmac
import logging
from datetime import datetime
from decimal import Decimal

from rekber.config import settings
from rekber.models.transaction import TransactionStatus
from rekber.services.fee_service import format_money

logger = logging.getLogger(__name__)

# Gateway resultCode -> callback outcome. Anything unlisted counts as expired.
RESULT_CODE_STATUS: dict[str, str] = {
    "00": TransactionStatus.PAID.value,
    "01": TransactionStatus.FAILED.value,
    "02": "PENDING",
}
RESULT_CODE_DEFAULT = TransactionStatus.EXPIRED.value


def format_amount(amount: Decimal | int | str) -> str:
    """Render an amount the way the gateway signs it: no trailing zeros or exponent."""
    return format_money(amount)


class DuitkuPaymentService:
    """Duitku operations used by the transaction lifecycle."""

    def __init__(self, merchant_code: str = "", secret_key: str = "", base_url: str = ""):
        self.merchant_code = merchant_code
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self._simulated = not merchant_code

    @property
    def configured(self) -> bool:
        return bool(self.merchant_code and self.secret_key)

    def build_payment_handle(
        self,
        invoice: str,
        amount: Decimal,
        payment_method: str,
        expires_at: datetime,
    ) -> dict:
        """Payment-initiation handle handed back to the buyer on creation."""
        return {
            "payment_url": f"{self.base_url}/{invoice}",
            "method": payment_method,
            "amount": amount,
            "reference": invoice,
            "expires_at": expires_at,
            "callback_url": settings.duitku_callback_url,
            "simulated": self._simulated,
        }

    def compute_signature(self, merchant_code: str, merchant_order_id: str, amount: str) -> str:
        """SHA256(merchantCode + merchantOrderId + amount + merchantSecretKey), hex."""
        raw = f"{merchant_code}{merchant_order_id}{amount}{self.secret_key}"
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    def verify_signature(
        self, merchant_code: str, merchant_order_id: str, amount: str, signature: str
    ) -> bool:
        if not signature:
            return False
        expected = self.compute_signature(merchant_code, merchant_order_id, amount)
        return hmac.compare_digest(expected.lower(), signature.strip().lower())

    def verify_merchant_code(self, merchant_code: str) -> bool:
        return hmac.compare_digest(self.merchant_code or "", merchant_code or "")

    @staticmethod
    def map_result_code(result_code: str | None) -> str:
        return RESULT_CODE_STATUS.get((result_code or "").strip(), RESULT_CODE_DEFAULT)


def get_duitku_service() -> DuitkuPaymentService:
    """Build the gateway client from current settings (tests patch settings)."""
    return DuitkuPaymentService(
        merchant_code=settings.duitku_merchant_code,
        secret_key=settings.duitku_merchant_secret_key,
        base_url=settings.duitku_payment_base_url,
    )
