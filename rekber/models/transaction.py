from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Numeric, String, Text

from rekber.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class TransactionStatus(str, Enum):
    UNPAID = "UNPAID"
    PAID = "PAID"
    SHIPPED = "SHIPPED"  # Reserved: nothing transitions into it yet
    DISPUTE = "DISPUTE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"


TERMINAL_STATUSES = frozenset({
    TransactionStatus.FAILED,
    TransactionStatus.EXPIRED,
    TransactionStatus.CANCELLED,
    TransactionStatus.COMPLETED,
})


class Transaction(Base):
    """One escrow contract for one product purchase, keyed externally by invoice."""

    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    invoice_number = Column(String(64), nullable=False, unique=True)
    buyer_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    merchant_id = Column(Integer, ForeignKey("merchants.id"), nullable=False)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    quantity = Column(Integer, nullable=False)

    # Snapshot of the catalog price at purchase time plus the fee breakdown;
    # fixed at creation and never recomputed.
    price_per_item = Column(Numeric(18, 6), nullable=False)
    subtotal = Column(Numeric(18, 6), nullable=False)
    app_fee = Column(Numeric(18, 6), nullable=False)
    tier_discount = Column(Numeric(18, 6), nullable=False, default=0)
    gateway_fee = Column(Numeric(18, 6), nullable=False)
    total_amount = Column(Numeric(18, 6), nullable=False)
    amount_net = Column(Numeric(18, 6), nullable=False)

    payment_method = Column(String(30), nullable=False)  # duitku_qris | duitku_va | ...
    payment_reference = Column(String(100), nullable=True)  # Gateway reference, set once by the callback
    gateway_payment_code = Column(String(10), nullable=True)  # Gateway paymentMethod code from the callback

    # State machine: UNPAID -> PAID -> COMPLETED
    #                UNPAID -> FAILED | EXPIRED  (stock restored)
    #                PAID | SHIPPED -> DISPUTE -> CANCELLED (refund) | COMPLETED (release)
    status = Column(String(20), nullable=False, default=TransactionStatus.UNPAID.value)

    dispute_reason = Column(Text, nullable=True)
    dispute_evidence_url = Column(String(500), nullable=True)
    resolution = Column(String(20), nullable=True)  # refund | release
    resolution_note = Column(Text, nullable=True)
    resolved_by = Column(Integer, ForeignKey("users.id"), nullable=True)

    due_date = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    paid_at = Column(DateTime(timezone=True))
    disputed_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))

    __table_args__ = (
        Index("idx_trx_buyer", "buyer_id"),
        Index("idx_trx_merchant", "merchant_id"),
        Index("idx_trx_status", "status"),
        Index("idx_trx_status_due", "status", "due_date"),
    )
