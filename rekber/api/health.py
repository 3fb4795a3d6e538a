import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from rekber.database import get_db
from rekber.models.transaction import Transaction, TransactionStatus
from rekber.models.user import User
from rekber.realtime.connection_manager import chat_manager
from rekber.schemas.common import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

_VERSION = "0.1.0"


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_db)):
    users = (await db.execute(select(func.count(User.id)))).scalar() or 0
    txns = (await db.execute(select(func.count(Transaction.id)))).scalar() or 0
    disputes = (
        await db.execute(
            select(func.count(Transaction.id)).where(
                Transaction.status == TransactionStatus.DISPUTE.value
            )
        )
    ).scalar() or 0

    return HealthResponse(
        status="healthy",
        version=_VERSION,
        users_count=users,
        transactions_count=txns,
        open_disputes=disputes,
        chat_connections=chat_manager.connection_count,
    )


@router.get("/health/ready")
async def readiness_check(db: AsyncSession = Depends(get_db)):
    """Readiness probe: verifies DB connectivity."""
    try:
        await db.execute(text("SELECT 1"))
        return {"status": "ready", "database": "connected"}
    except Exception:
        logger.exception("Readiness check failed, database unreachable")
        return JSONResponse(
            status_code=503,
            content={"status": "not_ready", "database": "unavailable"},
        )
