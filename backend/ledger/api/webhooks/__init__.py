"""Webhook API routes."""
from fastapi import APIRouter

from ledger.api.webhooks import routes_webhooks

router = APIRouter()

router.include_router(routes_webhooks.router, prefix="/webhooks", tags=["webhooks"])
