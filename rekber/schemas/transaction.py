from datetime import datetime
from decimal import Decimal
from typing import Annotated

from pydantic import BaseModel, Field, PlainSerializer

from rekber.services.fee_service import format_money

# Money leaves the API as exact decimal text, never as a binary float
Money = Annotated[Decimal, PlainSerializer(format_money, return_type=str, when_used="json")]


class TransactionCreateRequest(BaseModel):
    product_id: int
    quantity: int = Field(..., gt=0)
    payment_method: str = Field(..., min_length=1, max_length=30)


class FeeBreakdownResponse(BaseModel):
    subtotal: Money
    platform_fee: Money
    tier_discount: Money
    gateway_fee: Money
    total: Money
    net_to_merchant: Money


class PaymentHandle(BaseModel):
    payment_url: str
    method: str
    amount: Money
    reference: str
    expires_at: datetime
    callback_url: str = ""
    simulated: bool = False


class TransactionCreateResponse(BaseModel):
    invoice: str
    status: str
    product_id: int
    product_name: str
    quantity: int
    buyer_tier: str
    fees: FeeBreakdownResponse
    payment: PaymentHandle
    expires_at: datetime


class TransactionCompleteRequest(BaseModel):
    transaction_id: str = Field(..., min_length=1, description="Invoice number")


class TransactionResponse(BaseModel):
    id: int
    invoice: str
    buyer_id: int
    merchant_id: int
    product_id: int
    quantity: int
    price_per_item: Money
    subtotal: Money
    app_fee: Money
    tier_discount: Money
    gateway_fee: Money
    total_amount: Money
    amount_net: Money
    payment_method: str
    payment_reference: str | None = None
    status: str
    dispute_reason: str | None = None
    dispute_evidence_url: str | None = None
    resolution: str | None = None
    resolution_note: str | None = None
    due_date: datetime
    created_at: datetime
    updated_at: datetime
    paid_at: datetime | None = None
    disputed_at: datetime | None = None
    completed_at: datetime | None = None


class TransactionCompleteResponse(BaseModel):
    transaction: TransactionResponse
    merchant_earnings: Money
    buyer_tier: str
    merchant_tier: str


class TransactionListResponse(BaseModel):
    total: int
    page: int
    page_size: int
    transactions: list[TransactionResponse]


class PaymentCallbackResponse(BaseModel):
    success: bool
    message: str
