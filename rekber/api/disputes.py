from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from rekber.api.transactions import tx_to_response
from rekber.core.auth import ARBITER_ROLES, CurrentUser, require_roles
from rekber.database import get_db
from rekber.schemas.dispute import DisputeResolvedResponse, DisputeResolveRequest
from rekber.services import dispute_service

router = APIRouter(prefix="/admin/disputes", tags=["disputes"])


@router.post("/{invoice}/resolve", response_model=DisputeResolvedResponse)
async def resolve_dispute(
    invoice: str,
    req: DisputeResolveRequest,
    db: AsyncSession = Depends(get_db),
    arbiter: CurrentUser = Depends(require_roles(*ARBITER_ROLES)),
):
    """Apply a binding refund or release decision to a disputed transaction."""
    result = await dispute_service.resolve_dispute(
        db, invoice, arbiter.id, arbiter.role, req.decision, req.note
    )
    return DisputeResolvedResponse(
        transaction=tx_to_response(result["transaction"]),
        decision=result["decision"],
    )
