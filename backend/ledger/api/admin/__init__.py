"""Admin API routes."""
from fastapi import APIRouter

from ledger.api.admin import routes_admin

router = APIRouter()

router.include_router(routes_admin.router, prefix="/admin/payments", tags=["admin"])
