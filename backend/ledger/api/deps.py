"""API dependencies."""
import hmac
from functools import lru_cache

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from ledger.domain.payments.configuration import ConfigurationService
from ledger.domain.payments.ledger import LedgerService
from ledger.domain.payments.payouts import PayoutService
from ledger.domain.payments.provider import PaymentProvider
from ledger.domain.payments.repositories import PaymentRepository
from ledger.domain.payments.settlement import PurchaseService
from ledger.domain.payments.subscriptions import SubscriptionService
from ledger.domain.payments.webhooks import WebhookProcessor
from ledger.infra.db.repositories.payment_repo import PaymentRepositoryImpl
from ledger.infra.db.session import get_db
from ledger.infra.vendors.payment_provider import PaymentProviderClient
from ledger.settings import settings

__all__ = [
    "get_db",
    "get_current_user_id",
    "require_admin",
    "get_payment_repo",
    "get_payment_provider",
    "get_configuration_service",
    "get_payout_service",
    "get_purchase_service",
    "get_subscription_service",
    "get_ledger_service",
    "get_webhook_processor",
]


async def get_current_user_id(x_user_id: str = Header(default="")) -> str:
    """Caller identity, set by the upstream gateway after authentication."""
    user_id = x_user_id.strip()
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Id header",
        )
    return user_id


async def require_admin(x_admin_token: str = Header(default="")) -> None:
    """Guard for admin routes: X-Admin-Token must match the configured token."""
    expected = settings.admin_api_token
    if not expected or not hmac.compare_digest(x_admin_token.encode(), expected.encode()):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")


@lru_cache
def get_payment_provider() -> PaymentProvider:
    """Process-wide provider client built from settings."""
    return PaymentProviderClient()


def get_payment_repo(db: AsyncSession = Depends(get_db)) -> PaymentRepository:
    return PaymentRepositoryImpl(db)


def get_configuration_service(repo: PaymentRepository = Depends(get_payment_repo)) -> ConfigurationService:
    return ConfigurationService(
        repo,
        platform_fee_percent=settings.platform_fee_percentage,
        withdrawal_minimum=settings.default_min_payout,
    )


def get_payout_service(
    repo: PaymentRepository = Depends(get_payment_repo),
    provider: PaymentProvider = Depends(get_payment_provider),
    config: ConfigurationService = Depends(get_configuration_service),
) -> PayoutService:
    return PayoutService(
        repo,
        provider,
        config,
        currency=settings.currency,
        auto_withdraw_threshold=settings.auto_withdraw_threshold,
    )


def get_purchase_service(
    repo: PaymentRepository = Depends(get_payment_repo),
    provider: PaymentProvider = Depends(get_payment_provider),
    config: ConfigurationService = Depends(get_configuration_service),
    payouts: PayoutService = Depends(get_payout_service),
) -> PurchaseService:
    return PurchaseService(repo, provider, config, payouts, currency=settings.currency)


def get_subscription_service(
    repo: PaymentRepository = Depends(get_payment_repo),
    provider: PaymentProvider = Depends(get_payment_provider),
    config: ConfigurationService = Depends(get_configuration_service),
    payouts: PayoutService = Depends(get_payout_service),
) -> SubscriptionService:
    return SubscriptionService(repo, provider, config, payouts)


def get_ledger_service(repo: PaymentRepository = Depends(get_payment_repo)) -> LedgerService:
    return LedgerService(repo)


def get_webhook_processor(
    repo: PaymentRepository = Depends(get_payment_repo),
    provider: PaymentProvider = Depends(get_payment_provider),
    purchases: PurchaseService = Depends(get_purchase_service),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
    payouts: PayoutService = Depends(get_payout_service),
) -> WebhookProcessor:
    return WebhookProcessor(
        repo, provider, purchases, subscriptions, payouts, provider_name=settings.provider_name
    )
