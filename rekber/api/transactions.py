from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from rekber.core.auth import ROLE_BUYER, CurrentUser, get_current_user, require_roles
from rekber.database import get_db
from rekber.schemas.dispute import DisputeOpenedResponse, DisputeRequest
from rekber.schemas.transaction import (
    FeeBreakdownResponse,
    PaymentHandle,
    TransactionCompleteRequest,
    TransactionCompleteResponse,
    TransactionCreateRequest,
    TransactionCreateResponse,
    TransactionListResponse,
    TransactionResponse,
)
from rekber.services import dispute_service, transaction_service

router = APIRouter(prefix="/transactions", tags=["transactions"])


@router.post("", response_model=TransactionCreateResponse, status_code=201)
async def create_transaction(
    req: TransactionCreateRequest,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_roles(ROLE_BUYER)),
):
    result = await transaction_service.create_transaction(
        db, current_user.id, req.product_id, req.quantity, req.payment_method
    )
    tx = result["transaction"]
    fees = result["fees"]
    return TransactionCreateResponse(
        invoice=tx.invoice_number,
        status=tx.status,
        product_id=tx.product_id,
        product_name=result["product"].name,
        quantity=tx.quantity,
        buyer_tier=result["buyer_tier"],
        fees=FeeBreakdownResponse(**fees.as_dict()),
        payment=PaymentHandle(**result["payment"]),
        expires_at=result["expires_at"],
    )


@router.post("/complete", response_model=TransactionCompleteResponse)
async def complete_transaction(
    req: TransactionCompleteRequest,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    result = await transaction_service.complete_transaction(
        db, req.transaction_id, current_user.id, current_user.role
    )
    return TransactionCompleteResponse(
        transaction=tx_to_response(result["transaction"]),
        merchant_earnings=result["merchant_earnings"],
        buyer_tier=result["buyer_tier"],
        merchant_tier=result["merchant_tier"],
    )


@router.get("", response_model=TransactionListResponse)
async def list_transactions(
    status: str | None = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    txns, total = await transaction_service.list_transactions(
        db, current_user, status, page, page_size
    )
    return TransactionListResponse(
        total=total,
        page=page,
        page_size=page_size,
        transactions=[tx_to_response(t) for t in txns],
    )


@router.get("/{invoice}", response_model=TransactionResponse)
async def get_transaction(
    invoice: str,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    tx = await transaction_service.get_transaction_detail(db, invoice, current_user)
    return tx_to_response(tx)


@router.post("/{invoice}/dispute", response_model=DisputeOpenedResponse)
async def request_dispute(
    invoice: str,
    req: DisputeRequest,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    result = await dispute_service.request_dispute(
        db, invoice, current_user.id, req.reason, req.evidence_image_url
    )
    return DisputeOpenedResponse(
        transaction=tx_to_response(result["transaction"]),
        room_id=result["room_id"],
        room_type=result["room_type"],
    )


def tx_to_response(tx) -> TransactionResponse:
    return TransactionResponse(
        id=tx.id,
        invoice=tx.invoice_number,
        buyer_id=tx.buyer_id,
        merchant_id=tx.merchant_id,
        product_id=tx.product_id,
        quantity=tx.quantity,
        price_per_item=tx.price_per_item,
        subtotal=tx.subtotal,
        app_fee=tx.app_fee,
        tier_discount=tx.tier_discount,
        gateway_fee=tx.gateway_fee,
        total_amount=tx.total_amount,
        amount_net=tx.amount_net,
        payment_method=tx.payment_method,
        payment_reference=tx.payment_reference,
        status=tx.status,
        dispute_reason=tx.dispute_reason,
        dispute_evidence_url=tx.dispute_evidence_url,
        resolution=tx.resolution,
        resolution_note=tx.resolution_note,
        due_date=tx.due_date,
        created_at=tx.created_at,
        updated_at=tx.updated_at,
        paid_at=tx.paid_at,
        disputed_at=tx.disputed_at,
        completed_at=tx.completed_at,
    )
