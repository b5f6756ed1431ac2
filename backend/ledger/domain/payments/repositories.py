"""Payments domain repository protocols.

Methods that take ``entries`` write the state change and every ledger line in
one storage transaction: either all of it is persisted or none of it is.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from ledger.domain.payments.models import (
    CreatorAccount,
    LedgerTransaction,
    PaymentConfiguration,
    Payout,
    PayoutStatus,
    Purchase,
    PurchaseStatus,
    Subscription,
    SubscriptionStatus,
    TransactionFilter,
    TransactionType,
    WebhookEvent,
)


class PaymentRepository(Protocol):
    """Storage for configuration, purchases, the ledger, subscriptions and payouts."""

    # Configuration
    async def get_configuration(self) -> Optional[PaymentConfiguration]:
        """Get the current payment configuration."""
        ...

    async def create_configuration(self, config: PaymentConfiguration) -> PaymentConfiguration:
        """Insert the configuration, or return the row a concurrent caller inserted first."""
        ...

    # Purchases
    async def get_purchase(self, purchase_id: str) -> Optional[Purchase]:
        ...

    async def get_purchase_by_provider_id(self, provider_payment_id: str) -> Optional[Purchase]:
        ...

    async def find_purchases(self, user_id: str, item_id: str) -> List[Purchase]:
        """All purchase attempts by a user for one item, newest first."""
        ...

    async def create_purchase(self, purchase: Purchase) -> Purchase:
        """Insert a purchase. Raises ConflictError if the provider payment id exists."""
        ...

    async def complete_purchase(
        self, provider_payment_id: str, completed_at: datetime, entries: Sequence[LedgerTransaction]
    ) -> Optional[Purchase]:
        """Move PENDING -> COMPLETED and write the ledger lines.

        Returns None (and writes nothing) if the purchase was not PENDING.
        """
        ...

    async def fail_purchase(self, provider_payment_id: str, failed_at: datetime) -> Optional[Purchase]:
        """Move PENDING -> FAILED. Returns None if the purchase was not PENDING."""
        ...

    async def refund_purchase(
        self,
        purchase_id: str,
        status: PurchaseStatus,
        refund_amount: int,
        refunded_at: datetime,
        entry: LedgerTransaction,
    ) -> Optional[Purchase]:
        """Move COMPLETED -> REFUNDED/PARTIALLY_REFUNDED and write the refund line.

        Returns None if the purchase was not COMPLETED or the refund line exists.
        """
        ...

    async def list_pending_purchases(self, created_before: datetime, limit: int = 100) -> List[Purchase]:
        ...

    # Ledger
    async def get_transaction_by_key(self, idempotency_key: str) -> Optional[LedgerTransaction]:
        ...

    async def sum_transactions(self, user_id: str, types: Sequence[TransactionType]) -> int:
        """Sum of COMPLETED ledger lines of the given types for a user."""
        ...

    async def summarize_transactions(self, user_id: str) -> Dict[TransactionType, int]:
        """Per-type sums of a user's COMPLETED ledger lines."""
        ...

    async def list_transactions(
        self, filters: TransactionFilter, offset: int = 0, limit: int = 50
    ) -> Tuple[List[LedgerTransaction], int]:
        """Filtered ledger lines, newest first, and the unpaged total."""
        ...

    # Subscriptions
    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        ...

    async def get_subscription_by_pair(self, subscriber_id: str, creator_id: str) -> Optional[Subscription]:
        ...

    async def get_subscription_by_provider_id(self, provider_subscription_id: str) -> Optional[Subscription]:
        ...

    async def save_pending_subscription(self, subscription: Subscription) -> Subscription:
        """Insert the pair's row, or reset the existing (non-ACTIVE) row in place."""
        ...

    async def update_subscription(self, subscription_id: str, changes: Dict[str, Any]) -> Subscription:
        ...

    async def apply_billing_event(
        self, subscription_id: str, changes: Dict[str, Any], entries: Sequence[LedgerTransaction]
    ) -> bool:
        """Apply subscription changes and write the billing lines.

        Returns False (and writes nothing) if any line's idempotency key exists.
        """
        ...

    async def list_subscriptions_by_creator(
        self, creator_id: str, status: Optional[SubscriptionStatus] = None
    ) -> List[Subscription]:
        ...

    async def list_subscriptions_by_subscriber(self, subscriber_id: str) -> List[Subscription]:
        ...

    # Payouts
    async def sum_payouts(self, user_id: str, statuses: Sequence[PayoutStatus]) -> int:
        ...

    async def has_payout_in_flight(self, user_id: str) -> bool:
        """True if the user has a PENDING or PROCESSING payout."""
        ...

    async def create_payout(self, payout: Payout) -> Payout:
        ...

    async def get_payout_by_transfer_id(self, provider_transfer_id: str) -> Optional[Payout]:
        ...

    async def transition_payout(
        self,
        payout_id: str,
        from_statuses: Sequence[PayoutStatus],
        status: PayoutStatus,
        processed_at: datetime,
        failure_reason: Optional[str] = None,
        entry: Optional[LedgerTransaction] = None,
    ) -> Optional[Payout]:
        """Conditionally move a payout to ``status`` (and write ``entry``).

        Returns None if the payout was not in ``from_statuses``.
        """
        ...

    async def list_payouts(
        self,
        user_id: Optional[str] = None,
        status: Optional[PayoutStatus] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> Tuple[List[Payout], int]:
        ...

    async def payout_totals(self, statuses: Sequence[PayoutStatus]) -> Tuple[int, int]:
        """(sum of amounts, count) over all payouts in the given statuses."""
        ...

    # Creator accounts
    async def get_creator_account(self, user_id: str) -> Optional[CreatorAccount]:
        ...

    async def save_creator_account(self, account: CreatorAccount) -> CreatorAccount:
        ...

    # Webhook events
    async def get_webhook_event(self, provider: str, event_id: str) -> Optional[WebhookEvent]:
        ...

    async def create_webhook_event(self, event: WebhookEvent) -> WebhookEvent:
        ...

    async def update_webhook_event(self, webhook_event_id: str, changes: Dict[str, Any]) -> WebhookEvent:
        ...
