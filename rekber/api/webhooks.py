"""Duitku payment callback endpoint.

The gateway posts a flat payload, as JSON or form-encoded. Failures are
returned as ``{"success": false, "message": ...}`` with a non-2xx status so
the gateway's own retry policy applies; a handled callback always answers 200.
"""

import json
import logging
from urllib.parse import parse_qsl

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from rekber.database import get_db
from rekber.schemas.transaction import PaymentCallbackResponse
from rekber.services import payment_webhook_service

router = APIRouter(tags=["webhooks"])
logger = logging.getLogger(__name__)


async def _read_payload(request: Request) -> dict | None:
    body = await request.body()
    content_type = request.headers.get("content-type", "")
    if "application/x-www-form-urlencoded" in content_type:
        return dict(parse_qsl(body.decode("utf-8", errors="replace"), keep_blank_values=True))
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, ValueError):
        return None
    return payload if isinstance(payload, dict) else None


@router.post("/transactions/payment/callback", response_model=PaymentCallbackResponse)
async def duitku_callback(request: Request, db: AsyncSession = Depends(get_db)):
    """Handle a Duitku payment result notification."""
    payload = await _read_payload(request)
    if payload is None:
        return JSONResponse(
            status_code=400,
            content={"success": False, "message": "Invalid callback payload"},
        )

    try:
        return await payment_webhook_service.handle_callback(db, payload)
    except HTTPException as exc:
        logger.warning(
            "Duitku callback for %s rejected: %s",
            payload.get("merchantOrderId"), exc.detail,
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "message": exc.detail},
            headers=exc.headers,
        )
