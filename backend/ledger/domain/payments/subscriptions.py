"""Subscription lifecycle: PENDING -> ACTIVE -> CANCELED, billed per period."""
import calendar
import logging
from dataclasses import replace
from datetime import datetime
from typing import List, Optional

from ledger.domain.common.errors import ConflictError, DomainError, NotFoundError, ValidationError
from ledger.domain.common.locks import subscription_locks
from ledger.domain.common.types import generate_id, utcnow
from ledger.domain.payments.configuration import ConfigurationService
from ledger.domain.payments.models import (
    CreatorAccount,
    CreatorStats,
    LedgerTransaction,
    Subscription,
    SubscriptionStatus,
    TransactionStatus,
    TransactionType,
)
from ledger.domain.payments.payouts import PayoutService
from ledger.domain.payments.provider import PaymentProvider
from ledger.domain.payments.repositories import PaymentRepository

logger = logging.getLogger(__name__)


def add_one_month(moment: datetime) -> datetime:
    """Same day next month, clamped to the month's last day."""
    year = moment.year + moment.month // 12
    month = moment.month % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def billing_key(subscription: Subscription, period_end: datetime, kind: TransactionType) -> str:
    """Idempotency key for one billing line of one period."""
    anchor = subscription.provider_subscription_id or subscription.id
    return f"{anchor}:{period_end.isoformat()}:{kind.value}"


class SubscriptionService:
    """Creates, bills, renews and cancels creator subscriptions."""

    def __init__(
        self,
        repo: PaymentRepository,
        provider: PaymentProvider,
        config: ConfigurationService,
        payouts: Optional[PayoutService] = None,
    ):
        self.repo = repo
        self.provider = provider
        self.config = config
        self.payouts = payouts

    # Queries
    async def is_subscribed(self, subscriber_id: str, creator_id: str) -> bool:
        subscription = await self.repo.get_subscription_by_pair(subscriber_id, creator_id)
        return subscription is not None and subscription.status == SubscriptionStatus.ACTIVE

    async def get_subscription(self, subscriber_id: str, creator_id: str) -> Optional[Subscription]:
        return await self.repo.get_subscription_by_pair(subscriber_id, creator_id)

    async def get_user_subscriptions(self, subscriber_id: str) -> List[Subscription]:
        return await self.repo.list_subscriptions_by_subscriber(subscriber_id)

    async def get_creator_subscribers(self, creator_id: str) -> List[Subscription]:
        """Active subscriptions to a creator."""
        return await self.repo.list_subscriptions_by_creator(creator_id, status=SubscriptionStatus.ACTIVE)

    # Lifecycle
    async def create_subscription(
        self, subscriber_id: str, creator_id: str, amount: Optional[int] = None
    ) -> Subscription:
        """Start a subscription with the provider and record it as PENDING.

        ``amount`` defaults to the creator's configured subscription price.
        """
        if subscriber_id == creator_id:
            raise ValidationError("You cannot subscribe to yourself")

        async with subscription_locks.hold(f"pair:{subscriber_id}:{creator_id}"):
            if await self.is_subscribed(subscriber_id, creator_id):
                raise ValidationError("Already subscribed to this creator")

            creator = await self.repo.get_creator_account(creator_id)
            if creator is None or not creator.subscription_enabled:
                raise ValidationError("Creator does not offer subscriptions")
            if not creator.provider_user_id:
                raise ValidationError("Creator has not set up payment account")

            if amount is None:
                amount = creator.subscription_price
            if amount is None:
                raise ValidationError("Creator has not set a subscription price")

            validation = await self.config.validate_subscription_price(amount)
            if not validation.valid:
                raise ValidationError(validation.error)
            fees = await self.config.calculate_fees(amount)

            result = await self.provider.create_subscription(
                user_id=subscriber_id,
                plan_id=creator.provider_user_id,
                metadata={
                    "creator_id": creator_id,
                    "amount": fees.amount,
                    "platform_fee": fees.platform_fee,
                    "creator_earnings": fees.creator_earnings,
                },
            )

            now = utcnow()
            subscription = Subscription(
                id=generate_id(),
                subscriber_id=subscriber_id,
                creator_id=creator_id,
                provider_subscription_id=result.id,
                status=SubscriptionStatus.PENDING,
                amount=fees.amount,
                platform_fee=fees.platform_fee,
                current_period_start=now,
                current_period_end=add_one_month(now),
                created_at=now,
                updated_at=now,
            )
            saved = await self.repo.save_pending_subscription(subscription)

        logger.info(
            "Created pending subscription %s: %s -> %s (%s)",
            saved.id, subscriber_id, creator_id, saved.amount,
        )
        return saved

    async def activate_subscription(self, provider_subscription_id: str, current_period_end: datetime) -> Subscription:
        """PENDING -> ACTIVE and bill the first period.

        A redelivered activation for an already billed period is a no-op.
        """
        async with subscription_locks.hold(provider_subscription_id):
            subscription = await self._get_by_provider_id(provider_subscription_id)
            if await self._period_billed(subscription, current_period_end):
                logger.info("Subscription %s already activated for this period; no-op", subscription.id)
                return subscription
            if subscription.status == SubscriptionStatus.CANCELED:
                raise ConflictError(f"Subscription {subscription.id} is canceled and cannot be activated")

            now = utcnow()
            changes = {
                "status": SubscriptionStatus.ACTIVE,
                "current_period_end": current_period_end,
                "updated_at": now,
            }
            billed = replace(subscription, **changes)
            applied = await self.repo.apply_billing_event(
                subscription.id, changes, self._billing_entries(billed, current_period_end, now)
            )
            current = await self.repo.get_subscription(subscription.id)

        if not applied:
            logger.info("Subscription %s period already billed; no-op", subscription.id)
            return current
        logger.info("Activated subscription %s until %s", subscription.id, current_period_end.isoformat())
        await self._check_auto_withdrawal(subscription.creator_id)
        return current

    async def record_subscription_payment(self, subscription_id: str) -> bool:
        """Bill the subscription's current period: subscriber spend plus creator revenue.

        Returns False if the period was already billed.
        """
        subscription = await self._get_by_id(subscription_id)
        async with subscription_locks.hold(subscription.provider_subscription_id or subscription.id):
            subscription = await self._get_by_id(subscription_id)
            if subscription.status != SubscriptionStatus.ACTIVE:
                raise ValidationError("Subscription is not active")

            entries = self._billing_entries(subscription, subscription.current_period_end, utcnow())
            applied = await self.repo.apply_billing_event(subscription.id, {}, entries)
        if not applied:
            logger.info("Subscription %s period already billed; no-op", subscription.id)
            return False
        await self._check_auto_withdrawal(subscription.creator_id)
        return True

    async def renew_subscription(self, provider_subscription_id: str, new_period_end: datetime) -> Subscription:
        """Advance the billing period and bill it."""
        async with subscription_locks.hold(provider_subscription_id):
            subscription = await self._get_by_provider_id(provider_subscription_id)
            if (
                new_period_end == subscription.current_period_end
                or await self._period_billed(subscription, new_period_end)
            ):
                logger.info("Subscription %s already renewed for this period; no-op", subscription.id)
                return subscription
            if subscription.status != SubscriptionStatus.ACTIVE:
                raise ConflictError(
                    f"Subscription {subscription.id} is {subscription.status.value} and cannot be renewed"
                )
            if new_period_end < subscription.current_period_end:
                raise ConflictError(f"Renewal period for {subscription.id} ends before the current one")

            now = utcnow()
            changes = {
                "current_period_start": subscription.current_period_end,
                "current_period_end": new_period_end,
                "updated_at": now,
            }
            billed = replace(subscription, **changes)
            applied = await self.repo.apply_billing_event(
                subscription.id, changes, self._billing_entries(billed, new_period_end, now)
            )
            current = await self.repo.get_subscription(subscription.id)

        if not applied:
            logger.info("Subscription %s period already billed; no-op", subscription.id)
            return current
        logger.info("Renewed subscription %s until %s", subscription.id, new_period_end.isoformat())
        await self._check_auto_withdrawal(subscription.creator_id)
        return current

    async def cancel_subscription(
        self, subscriber_id: str, creator_id: str, cancel_at_period_end: bool = True
    ) -> Subscription:
        """Cancel at the provider; keep access until period end unless told otherwise."""
        subscription = await self.repo.get_subscription_by_pair(subscriber_id, creator_id)
        if subscription is None:
            raise NotFoundError("Subscription", f"{subscriber_id}:{creator_id}")
        if subscription.status != SubscriptionStatus.ACTIVE:
            raise ValidationError("Subscription is not active")
        if not subscription.provider_subscription_id:
            raise ValidationError("Cannot cancel: no provider subscription id")

        async with subscription_locks.hold(subscription.provider_subscription_id):
            # A provider webhook may have canceled it while we waited.
            subscription = await self._get_by_id(subscription.id)
            if subscription.status != SubscriptionStatus.ACTIVE:
                raise ValidationError("Subscription is not active")
            await self.provider.cancel_subscription(subscription.provider_subscription_id, cancel_at_period_end)

            now = utcnow()
            if cancel_at_period_end:
                changes = {"cancel_at_period_end": True, "canceled_at": now, "updated_at": now}
            else:
                changes = {"status": SubscriptionStatus.CANCELED, "canceled_at": now, "updated_at": now}
            updated = await self.repo.update_subscription(subscription.id, changes)

        logger.info(
            "Canceled subscription %s (%s)",
            subscription.id, "at period end" if cancel_at_period_end else "immediately",
        )
        return updated

    async def deactivate_subscription(self, provider_subscription_id: str) -> Subscription:
        """Hard cancel from the provider, whatever the period-end flag says."""
        async with subscription_locks.hold(provider_subscription_id):
            subscription = await self._get_by_provider_id(provider_subscription_id)
            if subscription.status == SubscriptionStatus.CANCELED:
                logger.info("Subscription %s already canceled; no-op", subscription.id)
                return subscription

            now = utcnow()
            updated = await self.repo.update_subscription(
                subscription.id,
                {
                    "status": SubscriptionStatus.CANCELED,
                    "canceled_at": subscription.canceled_at or now,
                    "updated_at": now,
                },
            )
        logger.info("Deactivated subscription %s", subscription.id)
        return updated

    async def get_creator_stats(self, creator_id: str, now: Optional[datetime] = None) -> CreatorStats:
        """Subscriber counts, MRR and this month's churn, derived from subscription rows."""
        subscriptions = await self.repo.list_subscriptions_by_creator(creator_id)
        now = now or utcnow()
        start_of_month = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)

        active = [s for s in subscriptions if s.status == SubscriptionStatus.ACTIVE]
        mrr = sum(s.amount for s in active)

        canceled_this_month = [
            s for s in subscriptions if s.canceled_at is not None and s.canceled_at >= start_of_month
        ]
        total_at_start = [
            s for s in subscriptions
            if s.created_at < start_of_month
            and (
                s.status == SubscriptionStatus.ACTIVE
                or (s.canceled_at is not None and s.canceled_at >= start_of_month)
            )
        ]
        churn_rate = len(canceled_this_month) / len(total_at_start) * 100 if total_at_start else 0.0

        return CreatorStats(
            active_subscribers=len(active),
            total_subscribers=len(subscriptions),
            mrr=mrr,
            churn_rate=round(churn_rate, 2),
            average_value=round(mrr / len(active)) if active else 0,
        )

    async def update_subscription_settings(
        self, creator_id: str, enabled: bool, price: Optional[int] = None
    ) -> CreatorAccount:
        """Turn subscriptions on or off for a creator and set the monthly price."""
        now = utcnow()
        account = await self.repo.get_creator_account(creator_id)
        if account is None:
            account = CreatorAccount(user_id=creator_id, created_at=now, updated_at=now)

        price = account.subscription_price if price is None else price
        if enabled:
            if price is None:
                raise ValidationError("A subscription price is required")
            validation = await self.config.validate_subscription_price(price)
            if not validation.valid:
                raise ValidationError(validation.error)

        account = replace(account, subscription_enabled=enabled, subscription_price=price, updated_at=now)
        return await self.repo.save_creator_account(account)

    async def _get_by_id(self, subscription_id: str) -> Subscription:
        subscription = await self.repo.get_subscription(subscription_id)
        if subscription is None:
            raise NotFoundError("Subscription", subscription_id)
        return subscription

    async def _get_by_provider_id(self, provider_subscription_id: str) -> Subscription:
        subscription = await self.repo.get_subscription_by_provider_id(provider_subscription_id)
        if subscription is None:
            logger.error("Event for unknown subscription %s", provider_subscription_id)
            raise NotFoundError("Subscription", provider_subscription_id)
        return subscription

    async def _period_billed(self, subscription: Subscription, period_end: datetime) -> bool:
        key = billing_key(subscription, period_end, TransactionType.SUBSCRIPTION)
        return await self.repo.get_transaction_by_key(key) is not None

    async def _check_auto_withdrawal(self, creator_id: str) -> None:
        if self.payouts is None:
            return
        try:
            await self.payouts.check_auto_withdrawal(creator_id)
        except DomainError:
            logger.exception("Auto-withdrawal check failed for creator %s", creator_id)

    @staticmethod
    def _billing_entries(
        subscription: Subscription, period_end: datetime, now: datetime
    ) -> List[LedgerTransaction]:
        reference = subscription.provider_subscription_id
        return [
            LedgerTransaction(
                id=generate_id(),
                user_id=subscription.subscriber_id,
                type=TransactionType.SUBSCRIPTION,
                amount=subscription.amount,
                platform_fee=subscription.platform_fee,
                status=TransactionStatus.COMPLETED,
                idempotency_key=billing_key(subscription, period_end, TransactionType.SUBSCRIPTION),
                provider_reference_id=reference,
                reference_id=subscription.id,
                description="Subscription payment",
                metadata={"creator_id": subscription.creator_id, "period_end": period_end.isoformat()},
                created_at=now,
            ),
            LedgerTransaction(
                id=generate_id(),
                user_id=subscription.creator_id,
                type=TransactionType.SUBSCRIPTION_REVENUE,
                amount=subscription.amount - subscription.platform_fee,
                status=TransactionStatus.COMPLETED,
                idempotency_key=billing_key(subscription, period_end, TransactionType.SUBSCRIPTION_REVENUE),
                provider_reference_id=reference,
                reference_id=subscription.id,
                description="Subscription revenue",
                metadata={"subscriber_id": subscription.subscriber_id, "period_end": period_end.isoformat()},
                created_at=now,
            ),
        ]
