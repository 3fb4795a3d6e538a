"""API router registry used by the app factory.

This keeps route module imports and inclusion order in one place so
`rekber.main` stays focused on startup wiring.
"""

from __future__ import annotations

from fastapi import APIRouter

from . import chat, disputes, health, transactions, webhooks

API_PREFIX = "/api/v1"

API_ROUTERS: tuple[APIRouter, ...] = (
    health.router,
    webhooks.router,
    transactions.router,
    disputes.router,
    chat.router,
)

__all__ = ["API_PREFIX", "API_ROUTERS"]
