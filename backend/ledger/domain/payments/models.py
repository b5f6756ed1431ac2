"""Payments domain models."""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Generic, List, Optional, TypeVar


class PurchaseStatus(str, Enum):
    """Purchase status enum."""
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"


class TransactionType(str, Enum):
    """Ledger line type."""
    PICK_PURCHASE = "PICK_PURCHASE"
    PICK_SALE = "PICK_SALE"
    SUBSCRIPTION = "SUBSCRIPTION"
    SUBSCRIPTION_REVENUE = "SUBSCRIPTION_REVENUE"
    PLATFORM_FEE = "PLATFORM_FEE"
    PAYOUT = "PAYOUT"
    REFUND = "REFUND"
    ADJUSTMENT = "ADJUSTMENT"


class TransactionStatus(str, Enum):
    """Ledger line status."""
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class SubscriptionStatus(str, Enum):
    """Subscription status enum."""
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    CANCELED = "CANCELED"


class PayoutMethod(str, Enum):
    """Payout destination kind."""
    BANK = "BANK"
    CRYPTO = "CRYPTO"
    WHOP_BALANCE = "WHOP_BALANCE"


class PayoutStatus(str, Enum):
    """Payout status enum."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


# Transaction types that make up a creator's earnings.
EARNING_TYPES = (TransactionType.PICK_SALE, TransactionType.SUBSCRIPTION_REVENUE)
SPEND_TYPES = (TransactionType.PICK_PURCHASE, TransactionType.SUBSCRIPTION)

# Payouts that are subtracted from the balance.
OUTSTANDING_PAYOUT_STATUSES = (PayoutStatus.PENDING, PayoutStatus.PROCESSING, PayoutStatus.COMPLETED)
IN_FLIGHT_PAYOUT_STATUSES = (PayoutStatus.PENDING, PayoutStatus.PROCESSING)

# Purchases in these states do not block buying the same item again.
RETRYABLE_PURCHASE_STATUSES = (PurchaseStatus.FAILED, PurchaseStatus.REFUNDED)


@dataclass
class PaymentConfiguration:
    """Platform payment configuration (one row)."""
    id: str
    platform_fee_percent: float
    min_pick_price: int
    max_pick_price: int
    min_subscription_price: int
    max_subscription_price: int
    withdrawal_minimum: int
    withdrawal_enabled: bool
    payment_provider: str
    created_at: datetime
    updated_at: datetime


@dataclass
class FeeBreakdown:
    """Result of splitting an amount between platform and creator."""
    amount: int
    platform_fee: int
    creator_earnings: int
    fee_percent: float


@dataclass
class PriceValidation:
    """Outcome of a price range check."""
    valid: bool
    error: Optional[str] = None


@dataclass
class Purchase:
    """Purchase domain model."""
    id: str
    user_id: str
    item_id: str
    creator_id: str
    amount: int
    platform_fee: int
    creator_earnings: int
    provider_payment_id: str
    status: PurchaseStatus
    created_at: datetime
    updated_at: datetime
    payment_method: Optional[str] = None
    description: Optional[str] = None
    refunded_at: Optional[datetime] = None
    refund_amount: Optional[int] = None


@dataclass
class LedgerTransaction:
    """One immutable money movement affecting one user's balance."""
    id: str
    user_id: str
    type: TransactionType
    amount: int
    status: TransactionStatus
    idempotency_key: str
    created_at: datetime
    platform_fee: Optional[int] = None
    provider_reference_id: Optional[str] = None
    reference_id: Optional[str] = None
    description: Optional[str] = None
    metadata: Optional[dict] = None


@dataclass
class Subscription:
    """Subscription domain model."""
    id: str
    subscriber_id: str
    creator_id: str
    status: SubscriptionStatus
    amount: int
    platform_fee: int
    current_period_start: datetime
    current_period_end: datetime
    created_at: datetime
    updated_at: datetime
    provider_subscription_id: Optional[str] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None


@dataclass
class Payout:
    """Creator withdrawal record."""
    id: str
    user_id: str
    amount: int
    method: PayoutMethod
    status: PayoutStatus
    created_at: datetime
    updated_at: datetime
    provider_transfer_id: Optional[str] = None
    failure_reason: Optional[str] = None
    processed_at: Optional[datetime] = None


@dataclass
class CreatorAccount:
    """A user's payment profile (provider account, payout preferences)."""
    user_id: str
    created_at: datetime
    updated_at: datetime
    provider_user_id: Optional[str] = None
    payout_method: Optional[PayoutMethod] = None
    bank_account_id: Optional[str] = None
    crypto_wallet_address: Optional[str] = None
    auto_withdraw: bool = False
    min_payout: Optional[int] = None
    subscription_enabled: bool = False
    subscription_price: Optional[int] = None


@dataclass
class WebhookEvent:
    """A verified provider webhook delivery."""
    id: str
    provider: str
    event_type: str
    payload: dict
    created_at: datetime
    event_id: Optional[str] = None
    processed: bool = False
    processed_at: Optional[datetime] = None
    processing_error: Optional[str] = None
    attempts: int = 0


@dataclass
class CreatorStats:
    """Subscription statistics for a creator. Money in cents."""
    active_subscribers: int
    total_subscribers: int
    mrr: int
    churn_rate: float
    average_value: int


@dataclass
class TransactionSummary:
    """Totals over a user's completed ledger lines."""
    total_spent: int = 0
    total_earned: int = 0
    total_withdrawn: int = 0

    @property
    def net_earnings(self) -> int:
        return self.total_earned - self.total_withdrawn


T = TypeVar("T")


@dataclass
class Page(Generic[T]):
    """One page of results."""
    items: List[T]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        if self.limit <= 0:
            return 0
        return (self.total + self.limit - 1) // self.limit


@dataclass
class TransactionFilter:
    """Admin transaction listing filters."""
    type: Optional[TransactionType] = None
    status: Optional[TransactionStatus] = None
    user_id: Optional[str] = None
    min_amount: Optional[int] = None


@dataclass
class ProviderResult:
    """Normalized provider response: object id, status, and the raw body."""
    id: Optional[str]
    status: Optional[str]
    raw: dict = field(default_factory=dict)


@dataclass
class PurchaseCheckout:
    """A freshly initiated purchase and where to send the buyer to pay."""
    purchase: Purchase
    checkout_url: Optional[str] = None


@dataclass
class PayoutTotals:
    """Aggregate over in-flight payouts."""
    pending_amount: int = 0
    pending_count: int = 0
