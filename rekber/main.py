import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from rekber.core.async_tasks import drain_background_tasks
from rekber.database import init_db
from rekber.models import *  # noqa: F403
from rekber.realtime import CHAT_WS_PATH

APP_VERSION = "0.1.0"
logger = logging.getLogger(__name__)


async def run_expiry_sweep() -> list[str]:
    """One pass of the unpaid-transaction expiry sweep."""
    from rekber.database import async_session
    from rekber.services.transaction_service import expire_overdue

    async with async_session() as db:
        return await expire_overdue(db)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup: create tables
    await init_db()
    from rekber.config import settings

    # Expire UNPAID transactions past their due date and restore their stock
    async def _expiry_loop() -> None:
        await asyncio.sleep(30)  # Wait 30s before first run
        while True:
            try:
                await run_expiry_sweep()
            except Exception:
                logger.exception("Background task error")
            await asyncio.sleep(settings.expiry_sweep_interval_seconds)

    expiry_task = asyncio.create_task(_expiry_loop())

    yield

    # Shutdown: stop the sweep, flush notifications, dispose connection pool
    expiry_task.cancel()
    await drain_background_tasks(timeout_seconds=5.0)

    from rekber.database import dispose_engine

    await dispose_engine()


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response: Response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["Permissions-Policy"] = (
            "camera=(), microphone=(), geolocation=(), payment=(), usb=()"
        )
        return response


def create_app() -> FastAPI:
    app = FastAPI(
        title="Rekber Escrow",
        description="Escrow transactions with payment callbacks, disputes and arbitration chat",
        version=APP_VERSION,
        lifespan=lifespan,
    )

    # CORS configurable via CORS_ORIGINS env var
    from rekber.config import settings

    allowed_origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Security headers
    app.add_middleware(SecurityHeadersMiddleware)

    # Register REST routers
    from rekber.api import API_PREFIX, API_ROUTERS

    for router in API_ROUTERS:
        app.include_router(router, prefix=API_PREFIX)

    # WebSocket for the arbitration chat (JWT-authenticated)
    @app.websocket(CHAT_WS_PATH)
    async def chat_socket(ws: WebSocket, token: str | None = Query(default=None)) -> None:
        from rekber.database import async_session
        from rekber.core.auth import load_current_user
        from rekber.realtime.chat_handler import handle_chat_event, handle_disconnect
        from rekber.realtime.connection_manager import chat_manager

        if not token:
            await ws.close(code=4001, reason="Missing token query parameter")
            return
        try:
            async with async_session() as db:
                user = await load_current_user(db, token)
        except HTTPException:
            await ws.close(code=4003, reason="Invalid or expired token")
            return

        connected = await chat_manager.connect(ws, user)
        if not connected:
            return
        try:
            while True:
                message = await ws.receive()
                if message["type"] == "websocket.disconnect":
                    break
                raw = message.get("text")
                if raw is None:
                    await chat_manager.send(ws, "error", {"message": "Binary frames are not supported", "code": 400})
                    continue
                try:
                    frame = json.loads(raw)
                except (json.JSONDecodeError, ValueError):
                    await chat_manager.send(ws, "error", {"message": "Invalid JSON frame", "code": 400})
                    continue
                # Fresh session per frame: every event re-reads role and status
                async with async_session() as db:
                    await handle_chat_event(ws, frame, db)
        except WebSocketDisconnect:
            pass
        except Exception:
            logger.exception("Chat socket failed for user %s", user.id)
            await ws.close(code=1011)
        finally:
            # Runs on every exit path so a dead socket never keeps a capacity slot
            await handle_disconnect(ws)

    return app


app = create_app()
