"""Payments API routes: purchases, subscriptions, balance, history and withdrawals."""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from ledger.api.deps import (
    get_current_user_id,
    get_ledger_service,
    get_payout_service,
    get_purchase_service,
    get_subscription_service,
)
from ledger.domain.common.errors import AuthorizationError
from ledger.domain.payments.ledger import LedgerService
from ledger.domain.payments.models import (
    CreatorAccount,
    LedgerTransaction,
    Payout,
    PayoutMethod,
    Purchase,
    Subscription,
    TransactionType,
)
from ledger.domain.payments.payouts import PayoutService
from ledger.domain.payments.settlement import PurchaseService
from ledger.domain.payments.subscriptions import SubscriptionService
from ledger.settings import settings

router = APIRouter()


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# Request/Response Models
class PurchaseRequest(BaseModel):
    """Purchase request. Amount in cents."""
    item_id: str
    creator_id: str
    amount: int = Field(gt=0)
    description: Optional[str] = None


class PurchaseResponse(BaseModel):
    """Purchase response."""
    id: str
    item_id: str
    creator_id: str
    amount: int
    platform_fee: int
    creator_earnings: int
    provider_payment_id: str
    status: str
    refund_amount: Optional[int] = None
    refunded_at: Optional[str] = None
    created_at: str

    @classmethod
    def from_entity(cls, purchase: Purchase) -> "PurchaseResponse":
        return cls(
            id=purchase.id,
            item_id=purchase.item_id,
            creator_id=purchase.creator_id,
            amount=purchase.amount,
            platform_fee=purchase.platform_fee,
            creator_earnings=purchase.creator_earnings,
            provider_payment_id=purchase.provider_payment_id,
            status=purchase.status.value,
            refund_amount=purchase.refund_amount,
            refunded_at=_iso(purchase.refunded_at),
            created_at=purchase.created_at.isoformat(),
        )


class CheckoutResponse(BaseModel):
    """Initiated purchase and the provider checkout URL, if any."""
    purchase: PurchaseResponse
    checkout_url: Optional[str] = None


class SubscribeRequest(BaseModel):
    """Subscribe request; amount defaults to the creator's price."""
    creator_id: str
    amount: Optional[int] = Field(default=None, gt=0)


class SubscriptionResponse(BaseModel):
    """Subscription response."""
    id: str
    subscriber_id: str
    creator_id: str
    status: str
    amount: int
    platform_fee: int
    current_period_start: str
    current_period_end: str
    cancel_at_period_end: bool
    canceled_at: Optional[str] = None

    @classmethod
    def from_entity(cls, subscription: Subscription) -> "SubscriptionResponse":
        return cls(
            id=subscription.id,
            subscriber_id=subscription.subscriber_id,
            creator_id=subscription.creator_id,
            status=subscription.status.value,
            amount=subscription.amount,
            platform_fee=subscription.platform_fee,
            current_period_start=subscription.current_period_start.isoformat(),
            current_period_end=subscription.current_period_end.isoformat(),
            cancel_at_period_end=subscription.cancel_at_period_end,
            canceled_at=_iso(subscription.canceled_at),
        )


class SubscriptionStatusResponse(BaseModel):
    subscribed: bool
    subscription: Optional[SubscriptionResponse] = None


class CreatorStatsResponse(BaseModel):
    """Subscription stats. Money in cents, churn in percent."""
    active_subscribers: int
    total_subscribers: int
    mrr: int
    churn_rate: float
    average_value: int


class SubscriptionSettingsRequest(BaseModel):
    enabled: bool
    price: Optional[int] = Field(default=None, gt=0)


class TransactionResponse(BaseModel):
    """Ledger line response."""
    id: str
    user_id: str
    type: str
    amount: int
    platform_fee: Optional[int] = None
    status: str
    provider_reference_id: Optional[str] = None
    reference_id: Optional[str] = None
    description: Optional[str] = None
    metadata: Optional[dict] = None
    created_at: str

    @classmethod
    def from_entity(cls, transaction: LedgerTransaction) -> "TransactionResponse":
        return cls(
            id=transaction.id,
            user_id=transaction.user_id,
            type=transaction.type.value,
            amount=transaction.amount,
            platform_fee=transaction.platform_fee,
            status=transaction.status.value,
            provider_reference_id=transaction.provider_reference_id,
            reference_id=transaction.reference_id,
            description=transaction.description,
            metadata=transaction.metadata,
            created_at=transaction.created_at.isoformat(),
        )


class PaginationResponse(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class TransactionSummaryResponse(BaseModel):
    total_spent: int
    total_earned: int
    total_withdrawn: int
    net_earnings: int


class TransactionHistoryResponse(BaseModel):
    transactions: List[TransactionResponse]
    pagination: PaginationResponse
    summary: TransactionSummaryResponse


class BalanceResponse(BaseModel):
    """Withdrawable balance in cents."""
    balance: int
    currency: str


class PayoutResponse(BaseModel):
    """Payout response."""
    id: str
    user_id: str
    amount: int
    method: str
    status: str
    provider_transfer_id: Optional[str] = None
    failure_reason: Optional[str] = None
    processed_at: Optional[str] = None
    created_at: str

    @classmethod
    def from_entity(cls, payout: Payout) -> "PayoutResponse":
        return cls(
            id=payout.id,
            user_id=payout.user_id,
            amount=payout.amount,
            method=payout.method.value,
            status=payout.status.value,
            provider_transfer_id=payout.provider_transfer_id,
            failure_reason=payout.failure_reason,
            processed_at=_iso(payout.processed_at),
            created_at=payout.created_at.isoformat(),
        )


class WithdrawalRequest(BaseModel):
    """Manual withdrawal; omit amount to withdraw the full balance."""
    amount: Optional[int] = Field(default=None, gt=0)


class PayoutSettingsRequest(BaseModel):
    payout_method: Optional[PayoutMethod] = None
    bank_account_id: Optional[str] = None
    crypto_wallet_address: Optional[str] = None
    auto_withdraw: Optional[bool] = None
    min_payout: Optional[int] = Field(default=None, gt=0)
    provider_user_id: Optional[str] = None


class CreatorAccountResponse(BaseModel):
    user_id: str
    provider_user_id: Optional[str] = None
    payout_method: Optional[str] = None
    has_bank_account: bool
    has_crypto_wallet: bool
    auto_withdraw: bool
    min_payout: Optional[int] = None
    subscription_enabled: bool
    subscription_price: Optional[int] = None

    @classmethod
    def from_entity(cls, account: CreatorAccount) -> "CreatorAccountResponse":
        return cls(
            user_id=account.user_id,
            provider_user_id=account.provider_user_id,
            payout_method=account.payout_method.value if account.payout_method else None,
            has_bank_account=bool(account.bank_account_id),
            has_crypto_wallet=bool(account.crypto_wallet_address),
            auto_withdraw=account.auto_withdraw,
            min_payout=account.min_payout,
            subscription_enabled=account.subscription_enabled,
            subscription_price=account.subscription_price,
        )


# Purchases
@router.post("/purchases", response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED)
async def create_purchase(
    request: PurchaseRequest,
    user_id: str = Depends(get_current_user_id),
    service: PurchaseService = Depends(get_purchase_service),
):
    """Start a pick purchase; the purchase stays PENDING until the provider confirms."""
    checkout = await service.initiate_purchase(
        user_id=user_id,
        item_id=request.item_id,
        creator_id=request.creator_id,
        amount=request.amount,
        description=request.description,
    )
    return CheckoutResponse(
        purchase=PurchaseResponse.from_entity(checkout.purchase),
        checkout_url=checkout.checkout_url,
    )


@router.get("/purchases/{item_id}", response_model=PurchaseResponse)
async def get_purchase_status(
    item_id: str,
    user_id: str = Depends(get_current_user_id),
    service: PurchaseService = Depends(get_purchase_service),
):
    """Latest purchase attempt by the caller for an item."""
    purchase = await service.get_purchase_for_item(user_id, item_id)
    if purchase is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No purchase for this item")
    return PurchaseResponse.from_entity(purchase)


# Subscriptions
@router.post("/subscriptions", response_model=SubscriptionResponse, status_code=status.HTTP_201_CREATED)
async def subscribe(
    request: SubscribeRequest,
    user_id: str = Depends(get_current_user_id),
    service: SubscriptionService = Depends(get_subscription_service),
):
    subscription = await service.create_subscription(user_id, request.creator_id, request.amount)
    return SubscriptionResponse.from_entity(subscription)


@router.get("/subscriptions", response_model=List[SubscriptionResponse])
async def list_my_subscriptions(
    user_id: str = Depends(get_current_user_id),
    service: SubscriptionService = Depends(get_subscription_service),
):
    subscriptions = await service.get_user_subscriptions(user_id)
    return [SubscriptionResponse.from_entity(s) for s in subscriptions]


@router.get("/subscriptions/{creator_id}", response_model=SubscriptionStatusResponse)
async def get_subscription_status(
    creator_id: str,
    user_id: str = Depends(get_current_user_id),
    service: SubscriptionService = Depends(get_subscription_service),
):
    subscription = await service.get_subscription(user_id, creator_id)
    return SubscriptionStatusResponse(
        subscribed=await service.is_subscribed(user_id, creator_id),
        subscription=SubscriptionResponse.from_entity(subscription) if subscription else None,
    )


@router.delete("/subscriptions/{creator_id}", response_model=SubscriptionResponse)
async def cancel_subscription(
    creator_id: str,
    cancel_at_period_end: bool = Query(True),
    user_id: str = Depends(get_current_user_id),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Cancel; access continues to period end unless cancel_at_period_end=false."""
    subscription = await service.cancel_subscription(user_id, creator_id, cancel_at_period_end)
    return SubscriptionResponse.from_entity(subscription)


@router.get("/creators/{creator_id}/subscribers", response_model=List[SubscriptionResponse])
async def list_creator_subscribers(
    creator_id: str,
    user_id: str = Depends(get_current_user_id),
    service: SubscriptionService = Depends(get_subscription_service),
):
    if user_id != creator_id:
        raise AuthorizationError("Only the creator can view their subscribers")
    subscriptions = await service.get_creator_subscribers(creator_id)
    return [SubscriptionResponse.from_entity(s) for s in subscriptions]


@router.get("/creators/{creator_id}/stats", response_model=CreatorStatsResponse)
async def get_creator_stats(
    creator_id: str,
    user_id: str = Depends(get_current_user_id),
    service: SubscriptionService = Depends(get_subscription_service),
):
    if user_id != creator_id:
        raise AuthorizationError("Only the creator can view their stats")
    stats = await service.get_creator_stats(creator_id)
    return CreatorStatsResponse(
        active_subscribers=stats.active_subscribers,
        total_subscribers=stats.total_subscribers,
        mrr=stats.mrr,
        churn_rate=stats.churn_rate,
        average_value=stats.average_value,
    )


@router.put("/subscription-settings", response_model=CreatorAccountResponse)
async def update_subscription_settings(
    request: SubscriptionSettingsRequest,
    user_id: str = Depends(get_current_user_id),
    service: SubscriptionService = Depends(get_subscription_service),
):
    account = await service.update_subscription_settings(user_id, request.enabled, request.price)
    return CreatorAccountResponse.from_entity(account)


# Balance and history
@router.get("/balance", response_model=BalanceResponse)
async def get_balance(
    user_id: str = Depends(get_current_user_id),
    service: PayoutService = Depends(get_payout_service),
):
    balance = await service.calculate_creator_balance(user_id)
    return BalanceResponse(balance=balance, currency=settings.currency)


@router.get("/transactions", response_model=TransactionHistoryResponse)
async def get_transaction_history(
    type: Optional[TransactionType] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    user_id: str = Depends(get_current_user_id),
    service: LedgerService = Depends(get_ledger_service),
):
    """The caller's ledger lines, newest first, with totals."""
    result, summary = await service.get_transaction_history(user_id, type=type, page=page, limit=limit)
    return TransactionHistoryResponse(
        transactions=[TransactionResponse.from_entity(t) for t in result.items],
        pagination=PaginationResponse(
            page=result.page, limit=result.limit, total=result.total, total_pages=result.total_pages
        ),
        summary=TransactionSummaryResponse(
            total_spent=summary.total_spent,
            total_earned=summary.total_earned,
            total_withdrawn=summary.total_withdrawn,
            net_earnings=summary.net_earnings,
        ),
    )


# Payouts
@router.get("/payouts", response_model=List[PayoutResponse])
async def get_payout_history(
    limit: int = Query(50, ge=1, le=100),
    user_id: str = Depends(get_current_user_id),
    service: PayoutService = Depends(get_payout_service),
):
    payouts = await service.get_payout_history(user_id, limit=limit)
    return [PayoutResponse.from_entity(p) for p in payouts]


@router.post("/withdrawals", response_model=PayoutResponse, status_code=status.HTTP_201_CREATED)
async def request_withdrawal(
    request: WithdrawalRequest,
    user_id: str = Depends(get_current_user_id),
    service: PayoutService = Depends(get_payout_service),
):
    """Withdraw earnings; rejected while another payout is in flight."""
    payout = await service.request_withdrawal(user_id, request.amount)
    return PayoutResponse.from_entity(payout)


@router.get("/payout-settings", response_model=CreatorAccountResponse)
async def get_payout_settings(
    user_id: str = Depends(get_current_user_id),
    service: PayoutService = Depends(get_payout_service),
):
    account = await service.get_creator_account(user_id)
    if account is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No payment profile")
    return CreatorAccountResponse.from_entity(account)


@router.put("/payout-settings", response_model=CreatorAccountResponse)
async def update_payout_settings(
    request: PayoutSettingsRequest,
    user_id: str = Depends(get_current_user_id),
    service: PayoutService = Depends(get_payout_service),
):
    account = await service.update_payout_settings(
        user_id,
        payout_method=request.payout_method,
        bank_account_id=request.bank_account_id,
        crypto_wallet_address=request.crypto_wallet_address,
        auto_withdraw=request.auto_withdraw,
        min_payout=request.min_payout,
        provider_user_id=request.provider_user_id,
    )
    return CreatorAccountResponse.from_entity(account)
