"""Payments API routes."""
from fastapi import APIRouter

from ledger.api.payments import routes_payments

router = APIRouter()

router.include_router(routes_payments.router, prefix="/payments", tags=["payments"])
