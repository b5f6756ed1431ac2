"""Database models."""
from ledger.infra.db.models.payments import (
    CreatorAccountModel,
    LedgerTransactionModel,
    PaymentConfigurationModel,
    PayoutModel,
    PurchaseModel,
    SubscriptionModel,
    WebhookEventModel,
)

__all__ = [
    "CreatorAccountModel",
    "LedgerTransactionModel",
    "PaymentConfigurationModel",
    "PayoutModel",
    "PurchaseModel",
    "SubscriptionModel",
    "WebhookEventModel",
]
