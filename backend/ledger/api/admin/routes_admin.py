"""Admin payment routes: configuration, ledger and payout listings, refunds."""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from ledger.api.deps import (
    get_configuration_service,
    get_ledger_service,
    get_purchase_service,
    require_admin,
)
from ledger.api.payments.routes_payments import (
    PaginationResponse,
    PayoutResponse,
    PurchaseResponse,
    TransactionResponse,
)
from ledger.domain.payments.configuration import ConfigurationService
from ledger.domain.payments.ledger import LedgerService
from ledger.domain.payments.models import (
    PayoutStatus,
    TransactionFilter,
    TransactionStatus,
    TransactionType,
)
from ledger.domain.payments.settlement import PurchaseService

router = APIRouter(dependencies=[Depends(require_admin)])


class ConfigurationResponse(BaseModel):
    """Payment configuration. Prices in cents."""
    platform_fee_percent: float
    min_pick_price: int
    max_pick_price: int
    min_subscription_price: int
    max_subscription_price: int
    withdrawal_minimum: int
    withdrawal_enabled: bool
    payment_provider: str


class AdminTransactionsResponse(BaseModel):
    transactions: List[TransactionResponse]
    pagination: PaginationResponse


class AdminPayoutsResponse(BaseModel):
    payouts: List[PayoutResponse]
    pagination: PaginationResponse
    pending_amount: int
    pending_count: int


class RefundRequest(BaseModel):
    """Refund request; omit amount for a full refund."""
    amount: Optional[int] = Field(default=None, gt=0)
    reason: Optional[str] = None


@router.get("/config", response_model=ConfigurationResponse)
async def get_configuration(service: ConfigurationService = Depends(get_configuration_service)):
    config = await service.get_configuration()
    return ConfigurationResponse(
        platform_fee_percent=config.platform_fee_percent,
        min_pick_price=config.min_pick_price,
        max_pick_price=config.max_pick_price,
        min_subscription_price=config.min_subscription_price,
        max_subscription_price=config.max_subscription_price,
        withdrawal_minimum=config.withdrawal_minimum,
        withdrawal_enabled=config.withdrawal_enabled,
        payment_provider=config.payment_provider,
    )


@router.get("/transactions", response_model=AdminTransactionsResponse)
async def list_transactions(
    type: Optional[TransactionType] = Query(None),
    status: Optional[TransactionStatus] = Query(None),
    user_id: Optional[str] = Query(None),
    min_amount: Optional[int] = Query(None, ge=0),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    service: LedgerService = Depends(get_ledger_service),
):
    result = await service.list_transactions(
        TransactionFilter(type=type, status=status, user_id=user_id, min_amount=min_amount),
        page=page,
        limit=limit,
    )
    return AdminTransactionsResponse(
        transactions=[TransactionResponse.from_entity(t) for t in result.items],
        pagination=PaginationResponse(
            page=result.page, limit=result.limit, total=result.total, total_pages=result.total_pages
        ),
    )


@router.get("/payouts", response_model=AdminPayoutsResponse)
async def list_payouts(
    status: Optional[PayoutStatus] = Query(None),
    user_id: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    service: LedgerService = Depends(get_ledger_service),
):
    result, totals = await service.list_payouts(status=status, user_id=user_id, page=page, limit=limit)
    return AdminPayoutsResponse(
        payouts=[PayoutResponse.from_entity(p) for p in result.items],
        pagination=PaginationResponse(
            page=result.page, limit=result.limit, total=result.total, total_pages=result.total_pages
        ),
        pending_amount=totals.pending_amount,
        pending_count=totals.pending_count,
    )


@router.post("/purchases/{purchase_id}/refund", response_model=PurchaseResponse)
async def refund_purchase(
    purchase_id: str,
    request: RefundRequest,
    service: PurchaseService = Depends(get_purchase_service),
):
    """Refund through the provider; the purchase stays COMPLETED if the provider fails."""
    purchase = await service.process_refund(purchase_id, request.amount, request.reason)
    return PurchaseResponse.from_entity(purchase)


@router.post("/purchases/reconcile/{provider_payment_id}", response_model=PurchaseResponse)
async def reconcile_purchase(
    provider_payment_id: str,
    service: PurchaseService = Depends(get_purchase_service),
):
    """Poll the provider for a PENDING purchase and settle it from the answer."""
    purchase = await service.reconcile_purchase(provider_payment_id)
    return PurchaseResponse.from_entity(purchase)
