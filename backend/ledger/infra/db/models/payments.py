"""Payment ledger database models."""

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from ledger.domain.common.types import utcnow
from ledger.domain.payments.models import (
    PayoutMethod,
    PayoutStatus,
    PurchaseStatus,
    SubscriptionStatus,
    TransactionStatus,
    TransactionType,
)
from ledger.infra.db.base import Base


def _enum(enum_cls, name: str) -> Enum:
    # Stored as VARCHAR; the same schema runs on Postgres and SQLite.
    return Enum(enum_cls, name=name, native_enum=False, length=32)


class PaymentConfigurationModel(Base):
    """Platform payment configuration (effectively one row)."""

    __tablename__ = "payment_configurations"

    id = Column(String, primary_key=True)
    platform_fee_percent = Column(Float, nullable=False)
    min_pick_price = Column(Integer, nullable=False)
    max_pick_price = Column(Integer, nullable=False)
    min_subscription_price = Column(Integer, nullable=False)
    max_subscription_price = Column(Integer, nullable=False)
    withdrawal_minimum = Column(Integer, nullable=False)
    withdrawal_enabled = Column(Boolean, default=True, nullable=False)
    payment_provider = Column(String, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "platform_fee_percent >= 0 AND platform_fee_percent <= 100",
            name="ck_payment_config_fee_range",
        ),
    )

    def to_entity(self):
        """Convert to domain entity."""
        from ledger.domain.payments.models import PaymentConfiguration
        return PaymentConfiguration(
            id=self.id,
            platform_fee_percent=self.platform_fee_percent,
            min_pick_price=self.min_pick_price,
            max_pick_price=self.max_pick_price,
            min_subscription_price=self.min_subscription_price,
            max_subscription_price=self.max_subscription_price,
            withdrawal_minimum=self.withdrawal_minimum,
            withdrawal_enabled=self.withdrawal_enabled,
            payment_provider=self.payment_provider,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    @classmethod
    def from_entity(cls, entity):
        """Create from domain entity."""
        return cls(
            id=entity.id,
            platform_fee_percent=entity.platform_fee_percent,
            min_pick_price=entity.min_pick_price,
            max_pick_price=entity.max_pick_price,
            min_subscription_price=entity.min_subscription_price,
            max_subscription_price=entity.max_subscription_price,
            withdrawal_minimum=entity.withdrawal_minimum,
            withdrawal_enabled=entity.withdrawal_enabled,
            payment_provider=entity.payment_provider,
            created_at=entity.created_at,
            updated_at=entity.updated_at,
        )


class PurchaseModel(Base):
    """One buyer's attempt to unlock one priced item."""

    __tablename__ = "purchases"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False)
    item_id = Column(String, nullable=False)
    creator_id = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)
    platform_fee = Column(Integer, nullable=False)
    creator_earnings = Column(Integer, nullable=False)
    provider_payment_id = Column(String, nullable=False)
    payment_method = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    status = Column(_enum(PurchaseStatus, "purchase_status"), nullable=False, default=PurchaseStatus.PENDING)
    refunded_at = Column(DateTime, nullable=True)
    refund_amount = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("provider_payment_id", name="uq_purchases_provider_payment_id"),
        CheckConstraint("amount > 0", name="ck_purchases_amount_positive"),
        CheckConstraint("platform_fee + creator_earnings = amount", name="ck_purchases_fee_split"),
        Index("ix_purchases_user_item", "user_id", "item_id"),
        Index("ix_purchases_status_created", "status", "created_at"),
    )

    def to_entity(self):
        """Convert to domain entity."""
        from ledger.domain.payments.models import Purchase
        return Purchase(
            id=self.id,
            user_id=self.user_id,
            item_id=self.item_id,
            creator_id=self.creator_id,
            amount=self.amount,
            platform_fee=self.platform_fee,
            creator_earnings=self.creator_earnings,
            provider_payment_id=self.provider_payment_id,
            payment_method=self.payment_method,
            description=self.description,
            status=self.status,
            refunded_at=self.refunded_at,
            refund_amount=self.refund_amount,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    @classmethod
    def from_entity(cls, entity):
        """Create from domain entity."""
        return cls(
            id=entity.id,
            user_id=entity.user_id,
            item_id=entity.item_id,
            creator_id=entity.creator_id,
            amount=entity.amount,
            platform_fee=entity.platform_fee,
            creator_earnings=entity.creator_earnings,
            provider_payment_id=entity.provider_payment_id,
            payment_method=entity.payment_method,
            description=entity.description,
            status=entity.status,
            refunded_at=entity.refunded_at,
            refund_amount=entity.refund_amount,
            created_at=entity.created_at,
            updated_at=entity.updated_at,
        )


class LedgerTransactionModel(Base):
    """Append-only ledger line. Rows are inserted, never updated."""

    __tablename__ = "ledger_transactions"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False)
    type = Column(_enum(TransactionType, "transaction_type"), nullable=False)
    amount = Column(Integer, nullable=False)
    platform_fee = Column(Integer, nullable=True)
    status = Column(_enum(TransactionStatus, "transaction_status"), nullable=False)
    idempotency_key = Column(String, nullable=False)
    provider_reference_id = Column(String, nullable=True)
    reference_id = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    metadata_ = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_ledger_transactions_idempotency_key"),
        Index("ix_ledger_transactions_user_type", "user_id", "type"),
        Index("ix_ledger_transactions_reference_id", "reference_id"),
        Index("ix_ledger_transactions_created_at", "created_at"),
    )

    def to_entity(self):
        """Convert to domain entity."""
        from ledger.domain.payments.models import LedgerTransaction
        return LedgerTransaction(
            id=self.id,
            user_id=self.user_id,
            type=self.type,
            amount=self.amount,
            platform_fee=self.platform_fee,
            status=self.status,
            idempotency_key=self.idempotency_key,
            provider_reference_id=self.provider_reference_id,
            reference_id=self.reference_id,
            description=self.description,
            metadata=self.metadata_,
            created_at=self.created_at,
        )

    @classmethod
    def from_entity(cls, entity):
        """Create from domain entity."""
        return cls(
            id=entity.id,
            user_id=entity.user_id,
            type=entity.type,
            amount=entity.amount,
            platform_fee=entity.platform_fee,
            status=entity.status,
            idempotency_key=entity.idempotency_key,
            provider_reference_id=entity.provider_reference_id,
            reference_id=entity.reference_id,
            description=entity.description,
            metadata_=entity.metadata,
            created_at=entity.created_at,
        )


class SubscriptionModel(Base):
    """Recurring subscription from a subscriber to a creator (one row per pair)."""

    __tablename__ = "subscriptions"

    id = Column(String, primary_key=True)
    subscriber_id = Column(String, nullable=False)
    creator_id = Column(String, nullable=False)
    provider_subscription_id = Column(String, nullable=True)
    status = Column(_enum(SubscriptionStatus, "subscription_status"), nullable=False)
    amount = Column(Integer, nullable=False)
    platform_fee = Column(Integer, nullable=False)
    current_period_start = Column(DateTime, nullable=False)
    current_period_end = Column(DateTime, nullable=False)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    canceled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("subscriber_id", "creator_id", name="uq_subscriptions_subscriber_creator"),
        UniqueConstraint("provider_subscription_id", name="uq_subscriptions_provider_subscription_id"),
        Index("ix_subscriptions_creator_status", "creator_id", "status"),
    )

    def to_entity(self):
        """Convert to domain entity."""
        from ledger.domain.payments.models import Subscription
        return Subscription(
            id=self.id,
            subscriber_id=self.subscriber_id,
            creator_id=self.creator_id,
            provider_subscription_id=self.provider_subscription_id,
            status=self.status,
            amount=self.amount,
            platform_fee=self.platform_fee,
            current_period_start=self.current_period_start,
            current_period_end=self.current_period_end,
            cancel_at_period_end=self.cancel_at_period_end,
            canceled_at=self.canceled_at,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    @classmethod
    def from_entity(cls, entity):
        """Create from domain entity."""
        return cls(
            id=entity.id,
            subscriber_id=entity.subscriber_id,
            creator_id=entity.creator_id,
            provider_subscription_id=entity.provider_subscription_id,
            status=entity.status,
            amount=entity.amount,
            platform_fee=entity.platform_fee,
            current_period_start=entity.current_period_start,
            current_period_end=entity.current_period_end,
            cancel_at_period_end=entity.cancel_at_period_end,
            canceled_at=entity.canceled_at,
            created_at=entity.created_at,
            updated_at=entity.updated_at,
        )


class PayoutModel(Base):
    """Creator withdrawal record."""

    __tablename__ = "payouts"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)
    method = Column(_enum(PayoutMethod, "payout_method"), nullable=False)
    status = Column(_enum(PayoutStatus, "payout_status"), nullable=False)
    provider_transfer_id = Column(String, nullable=True)
    failure_reason = Column(Text, nullable=True)
    processed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("provider_transfer_id", name="uq_payouts_provider_transfer_id"),
        CheckConstraint("amount > 0", name="ck_payouts_amount_positive"),
        Index("ix_payouts_user_status", "user_id", "status"),
    )

    def to_entity(self):
        """Convert to domain entity."""
        from ledger.domain.payments.models import Payout
        return Payout(
            id=self.id,
            user_id=self.user_id,
            amount=self.amount,
            method=self.method,
            status=self.status,
            provider_transfer_id=self.provider_transfer_id,
            failure_reason=self.failure_reason,
            processed_at=self.processed_at,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    @classmethod
    def from_entity(cls, entity):
        """Create from domain entity."""
        return cls(
            id=entity.id,
            user_id=entity.user_id,
            amount=entity.amount,
            method=entity.method,
            status=entity.status,
            provider_transfer_id=entity.provider_transfer_id,
            failure_reason=entity.failure_reason,
            processed_at=entity.processed_at,
            created_at=entity.created_at,
            updated_at=entity.updated_at,
        )


class CreatorAccountModel(Base):
    """Per-user payment profile."""

    __tablename__ = "creator_accounts"

    user_id = Column(String, primary_key=True)
    provider_user_id = Column(String, nullable=True)
    payout_method = Column(_enum(PayoutMethod, "payout_method"), nullable=True)
    bank_account_id = Column(String, nullable=True)
    crypto_wallet_address = Column(String, nullable=True)
    auto_withdraw = Column(Boolean, default=False, nullable=False)
    min_payout = Column(Integer, nullable=True)
    subscription_enabled = Column(Boolean, default=False, nullable=False)
    subscription_price = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    def to_entity(self):
        """Convert to domain entity."""
        from ledger.domain.payments.models import CreatorAccount
        return CreatorAccount(
            user_id=self.user_id,
            provider_user_id=self.provider_user_id,
            payout_method=self.payout_method,
            bank_account_id=self.bank_account_id,
            crypto_wallet_address=self.crypto_wallet_address,
            auto_withdraw=self.auto_withdraw,
            min_payout=self.min_payout,
            subscription_enabled=self.subscription_enabled,
            subscription_price=self.subscription_price,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    @classmethod
    def from_entity(cls, entity):
        """Create from domain entity."""
        return cls(
            user_id=entity.user_id,
            provider_user_id=entity.provider_user_id,
            payout_method=entity.payout_method,
            bank_account_id=entity.bank_account_id,
            crypto_wallet_address=entity.crypto_wallet_address,
            auto_withdraw=entity.auto_withdraw,
            min_payout=entity.min_payout,
            subscription_enabled=entity.subscription_enabled,
            subscription_price=entity.subscription_price,
            created_at=entity.created_at,
            updated_at=entity.updated_at,
        )


class WebhookEventModel(Base):
    """Verified provider webhook delivery and its processing outcome."""

    __tablename__ = "webhook_events"

    id = Column(String, primary_key=True)
    provider = Column(String, nullable=False)
    event_id = Column(String, nullable=True)
    event_type = Column(String, nullable=False)
    payload = Column(JSON, nullable=False)
    processed = Column(Boolean, default=False, nullable=False)
    processed_at = Column(DateTime, nullable=True)
    processing_error = Column(Text, nullable=True)
    attempts = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_webhook_events_provider_event_id"),
        Index("ix_webhook_events_type_created", "event_type", "created_at"),
    )

    def to_entity(self):
        """Convert to domain entity."""
        from ledger.domain.payments.models import WebhookEvent
        return WebhookEvent(
            id=self.id,
            provider=self.provider,
            event_id=self.event_id,
            event_type=self.event_type,
            payload=self.payload,
            processed=self.processed,
            processed_at=self.processed_at,
            processing_error=self.processing_error,
            attempts=self.attempts,
            created_at=self.created_at,
        )

    @classmethod
    def from_entity(cls, entity):
        """Create from domain entity."""
        return cls(
            id=entity.id,
            provider=entity.provider,
            event_id=entity.event_id,
            event_type=entity.event_type,
            payload=entity.payload,
            processed=entity.processed,
            processed_at=entity.processed_at,
            processing_error=entity.processing_error,
            attempts=entity.attempts,
            created_at=entity.created_at,
        )
