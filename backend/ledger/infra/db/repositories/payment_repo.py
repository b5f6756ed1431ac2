"""Payment ledger repository implementation."""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ledger.domain.common.errors import ConflictError, NotFoundError
from ledger.domain.payments.configuration import DEFAULT_CONFIGURATION_ID
from ledger.domain.payments.models import (
    IN_FLIGHT_PAYOUT_STATUSES,
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
    TransactionStatus,
    TransactionType,
    WebhookEvent,
)
from ledger.domain.payments.repositories import PaymentRepository
from ledger.infra.db.models.payments import (
    CreatorAccountModel,
    LedgerTransactionModel,
    PaymentConfigurationModel,
    PayoutModel,
    PurchaseModel,
    SubscriptionModel,
    WebhookEventModel,
)

logger = logging.getLogger(__name__)


class PaymentRepositoryImpl(PaymentRepository):
    """SQLAlchemy implementation of the payment repository.

    Every public method ends its own database transaction (commit or rollback).
    Conditional updates are guarded by the row's current status, so a lost race
    shows up as zero updated rows rather than a double write.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _one(self, stmt):
        result = await self.session.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def _all(self, stmt) -> list:
        result = await self.session.execute(stmt.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def _commit_unit(self, entries: Sequence[LedgerTransaction]) -> bool:
        """Add ledger lines and commit the open unit; False (rolled back) on a duplicate key."""
        self.session.add_all([LedgerTransactionModel.from_entity(e) for e in entries])
        try:
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            logger.info("Ledger unit rolled back: duplicate idempotency key in %s",
                        [e.idempotency_key for e in entries])
            return False
        return True

    # Configuration
    async def get_configuration(self) -> Optional[PaymentConfiguration]:
        model = await self._one(
            select(PaymentConfigurationModel).where(PaymentConfigurationModel.id == DEFAULT_CONFIGURATION_ID)
        )
        return model.to_entity() if model else None

    async def create_configuration(self, config: PaymentConfiguration) -> PaymentConfiguration:
        self.session.add(PaymentConfigurationModel.from_entity(config))
        try:
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            logger.info("Payment configuration created concurrently; fetching existing row")
        existing = await self.get_configuration()
        if existing is None:
            raise NotFoundError("PaymentConfiguration", config.id)
        return existing

    # Purchases
    async def get_purchase(self, purchase_id: str) -> Optional[Purchase]:
        model = await self._one(select(PurchaseModel).where(PurchaseModel.id == purchase_id))
        return model.to_entity() if model else None

    async def get_purchase_by_provider_id(self, provider_payment_id: str) -> Optional[Purchase]:
        model = await self._one(
            select(PurchaseModel).where(PurchaseModel.provider_payment_id == provider_payment_id)
        )
        return model.to_entity() if model else None

    async def find_purchases(self, user_id: str, item_id: str) -> List[Purchase]:
        models = await self._all(
            select(PurchaseModel)
            .where(and_(PurchaseModel.user_id == user_id, PurchaseModel.item_id == item_id))
            .order_by(PurchaseModel.created_at.desc())
        )
        return [m.to_entity() for m in models]

    async def create_purchase(self, purchase: Purchase) -> Purchase:
        self.session.add(PurchaseModel.from_entity(purchase))
        try:
            await self.session.commit()
        except IntegrityError as exc:
            await self.session.rollback()
            raise ConflictError(
                f"Purchase for payment {purchase.provider_payment_id} already exists"
            ) from exc
        return await self.get_purchase(purchase.id)

    async def complete_purchase(
        self, provider_payment_id: str, completed_at: datetime, entries: Sequence[LedgerTransaction]
    ) -> Optional[Purchase]:
        result = await self.session.execute(
            update(PurchaseModel)
            .where(and_(
                PurchaseModel.provider_payment_id == provider_payment_id,
                PurchaseModel.status == PurchaseStatus.PENDING,
            ))
            .values(status=PurchaseStatus.COMPLETED, updated_at=completed_at)
        )
        if result.rowcount != 1:
            await self.session.rollback()
            return None
        if not await self._commit_unit(entries):
            return None
        return await self.get_purchase_by_provider_id(provider_payment_id)

    async def fail_purchase(self, provider_payment_id: str, failed_at: datetime) -> Optional[Purchase]:
        result = await self.session.execute(
            update(PurchaseModel)
            .where(and_(
                PurchaseModel.provider_payment_id == provider_payment_id,
                PurchaseModel.status == PurchaseStatus.PENDING,
            ))
            .values(status=PurchaseStatus.FAILED, updated_at=failed_at)
        )
        if result.rowcount != 1:
            await self.session.rollback()
            return None
        await self.session.commit()
        return await self.get_purchase_by_provider_id(provider_payment_id)

    async def refund_purchase(
        self,
        purchase_id: str,
        status: PurchaseStatus,
        refund_amount: int,
        refunded_at: datetime,
        entry: LedgerTransaction,
    ) -> Optional[Purchase]:
        result = await self.session.execute(
            update(PurchaseModel)
            .where(and_(
                PurchaseModel.id == purchase_id,
                PurchaseModel.status == PurchaseStatus.COMPLETED,
            ))
            .values(
                status=status,
                refund_amount=refund_amount,
                refunded_at=refunded_at,
                updated_at=refunded_at,
            )
        )
        if result.rowcount != 1:
            await self.session.rollback()
            return None
        if not await self._commit_unit([entry]):
            return None
        return await self.get_purchase(purchase_id)

    async def list_pending_purchases(self, created_before: datetime, limit: int = 100) -> List[Purchase]:
        models = await self._all(
            select(PurchaseModel)
            .where(and_(
                PurchaseModel.status == PurchaseStatus.PENDING,
                PurchaseModel.created_at < created_before,
            ))
            .order_by(PurchaseModel.created_at)
            .limit(limit)
        )
        return [m.to_entity() for m in models]

    # Ledger
    async def get_transaction_by_key(self, idempotency_key: str) -> Optional[LedgerTransaction]:
        model = await self._one(
            select(LedgerTransactionModel).where(LedgerTransactionModel.idempotency_key == idempotency_key)
        )
        return model.to_entity() if model else None

    async def sum_transactions(self, user_id: str, types: Sequence[TransactionType]) -> int:
        result = await self.session.execute(
            select(func.coalesce(func.sum(LedgerTransactionModel.amount), 0)).where(and_(
                LedgerTransactionModel.user_id == user_id,
                LedgerTransactionModel.type.in_(list(types)),
                LedgerTransactionModel.status == TransactionStatus.COMPLETED,
            ))
        )
        return int(result.scalar_one())

    async def summarize_transactions(self, user_id: str) -> Dict[TransactionType, int]:
        result = await self.session.execute(
            select(LedgerTransactionModel.type, func.sum(LedgerTransactionModel.amount))
            .where(and_(
                LedgerTransactionModel.user_id == user_id,
                LedgerTransactionModel.status == TransactionStatus.COMPLETED,
            ))
            .group_by(LedgerTransactionModel.type)
        )
        return {TransactionType(row[0]): int(row[1] or 0) for row in result.all()}

    async def list_transactions(
        self, filters: TransactionFilter, offset: int = 0, limit: int = 50
    ) -> Tuple[List[LedgerTransaction], int]:
        conditions = []
        if filters.type is not None:
            conditions.append(LedgerTransactionModel.type == filters.type)
        if filters.status is not None:
            conditions.append(LedgerTransactionModel.status == filters.status)
        if filters.user_id is not None:
            conditions.append(LedgerTransactionModel.user_id == filters.user_id)
        if filters.min_amount is not None:
            conditions.append(LedgerTransactionModel.amount >= filters.min_amount)

        total = await self.session.execute(
            select(func.count()).select_from(LedgerTransactionModel).where(*conditions)
        )
        models = await self._all(
            select(LedgerTransactionModel)
            .where(*conditions)
            .order_by(LedgerTransactionModel.created_at.desc(), LedgerTransactionModel.id)
            .offset(offset)
            .limit(limit)
        )
        return [m.to_entity() for m in models], int(total.scalar_one())

    # Subscriptions
    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        model = await self._one(select(SubscriptionModel).where(SubscriptionModel.id == subscription_id))
        return model.to_entity() if model else None

    async def get_subscription_by_pair(self, subscriber_id: str, creator_id: str) -> Optional[Subscription]:
        model = await self._one(
            select(SubscriptionModel).where(and_(
                SubscriptionModel.subscriber_id == subscriber_id,
                SubscriptionModel.creator_id == creator_id,
            ))
        )
        return model.to_entity() if model else None

    async def get_subscription_by_provider_id(self, provider_subscription_id: str) -> Optional[Subscription]:
        model = await self._one(
            select(SubscriptionModel).where(
                SubscriptionModel.provider_subscription_id == provider_subscription_id
            )
        )
        return model.to_entity() if model else None

    async def save_pending_subscription(self, subscription: Subscription) -> Subscription:
        existing = await self.get_subscription_by_pair(subscription.subscriber_id, subscription.creator_id)
        if existing is None:
            self.session.add(SubscriptionModel.from_entity(subscription))
            try:
                await self.session.commit()
            except IntegrityError as exc:
                await self.session.rollback()
                raise ConflictError("A subscription for this pair was created concurrently") from exc
            return await self.get_subscription(subscription.id)

        # Reset the pair's row in place; an ACTIVE row is never overwritten.
        result = await self.session.execute(
            update(SubscriptionModel)
            .where(and_(
                SubscriptionModel.id == existing.id,
                SubscriptionModel.status != SubscriptionStatus.ACTIVE,
            ))
            .values(
                provider_subscription_id=subscription.provider_subscription_id,
                status=subscription.status,
                amount=subscription.amount,
                platform_fee=subscription.platform_fee,
                current_period_start=subscription.current_period_start,
                current_period_end=subscription.current_period_end,
                cancel_at_period_end=False,
                canceled_at=None,
                updated_at=subscription.updated_at,
            )
        )
        if result.rowcount != 1:
            await self.session.rollback()
            raise ConflictError("Already subscribed to this creator")
        try:
            await self.session.commit()
        except IntegrityError as exc:
            await self.session.rollback()
            raise ConflictError("Provider subscription id already in use") from exc
        return await self.get_subscription(existing.id)

    async def update_subscription(self, subscription_id: str, changes: Dict[str, Any]) -> Subscription:
        result = await self.session.execute(
            update(SubscriptionModel).where(SubscriptionModel.id == subscription_id).values(**changes)
        )
        if result.rowcount != 1:
            await self.session.rollback()
            raise NotFoundError("Subscription", subscription_id)
        await self.session.commit()
        return await self.get_subscription(subscription_id)

    async def apply_billing_event(
        self, subscription_id: str, changes: Dict[str, Any], entries: Sequence[LedgerTransaction]
    ) -> bool:
        if changes:
            result = await self.session.execute(
                update(SubscriptionModel).where(SubscriptionModel.id == subscription_id).values(**changes)
            )
            if result.rowcount != 1:
                await self.session.rollback()
                raise NotFoundError("Subscription", subscription_id)
        return await self._commit_unit(entries)

    async def list_subscriptions_by_creator(
        self, creator_id: str, status: Optional[SubscriptionStatus] = None
    ) -> List[Subscription]:
        stmt = select(SubscriptionModel).where(SubscriptionModel.creator_id == creator_id)
        if status is not None:
            stmt = stmt.where(SubscriptionModel.status == status)
        models = await self._all(stmt.order_by(SubscriptionModel.created_at.desc()))
        return [m.to_entity() for m in models]

    async def list_subscriptions_by_subscriber(self, subscriber_id: str) -> List[Subscription]:
        models = await self._all(
            select(SubscriptionModel)
            .where(SubscriptionModel.subscriber_id == subscriber_id)
            .order_by(SubscriptionModel.created_at.desc())
        )
        return [m.to_entity() for m in models]

    # Payouts
    async def sum_payouts(self, user_id: str, statuses: Sequence[PayoutStatus]) -> int:
        result = await self.session.execute(
            select(func.coalesce(func.sum(PayoutModel.amount), 0)).where(and_(
                PayoutModel.user_id == user_id,
                PayoutModel.status.in_(list(statuses)),
            ))
        )
        return int(result.scalar_one())

    async def has_payout_in_flight(self, user_id: str) -> bool:
        result = await self.session.execute(
            select(PayoutModel.id)
            .where(and_(
                PayoutModel.user_id == user_id,
                PayoutModel.status.in_(list(IN_FLIGHT_PAYOUT_STATUSES)),
            ))
            .limit(1)
        )
        return result.first() is not None

    async def create_payout(self, payout: Payout) -> Payout:
        self.session.add(PayoutModel.from_entity(payout))
        try:
            await self.session.commit()
        except IntegrityError as exc:
            await self.session.rollback()
            raise ConflictError(f"Payout for transfer {payout.provider_transfer_id} already exists") from exc
        model = await self._one(select(PayoutModel).where(PayoutModel.id == payout.id))
        return model.to_entity()

    async def get_payout_by_transfer_id(self, provider_transfer_id: str) -> Optional[Payout]:
        model = await self._one(
            select(PayoutModel).where(PayoutModel.provider_transfer_id == provider_transfer_id)
        )
        return model.to_entity() if model else None

    async def transition_payout(
        self,
        payout_id: str,
        from_statuses: Sequence[PayoutStatus],
        status: PayoutStatus,
        processed_at: datetime,
        failure_reason: Optional[str] = None,
        entry: Optional[LedgerTransaction] = None,
    ) -> Optional[Payout]:
        values: Dict[str, Any] = {"status": status, "processed_at": processed_at, "updated_at": processed_at}
        if failure_reason is not None:
            values["failure_reason"] = failure_reason
        result = await self.session.execute(
            update(PayoutModel)
            .where(and_(PayoutModel.id == payout_id, PayoutModel.status.in_(list(from_statuses))))
            .values(**values)
        )
        if result.rowcount != 1:
            await self.session.rollback()
            return None
        if not await self._commit_unit([entry] if entry else []):
            return None
        model = await self._one(select(PayoutModel).where(PayoutModel.id == payout_id))
        return model.to_entity()

    async def list_payouts(
        self,
        user_id: Optional[str] = None,
        status: Optional[PayoutStatus] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> Tuple[List[Payout], int]:
        conditions = []
        if user_id is not None:
            conditions.append(PayoutModel.user_id == user_id)
        if status is not None:
            conditions.append(PayoutModel.status == status)

        total = await self.session.execute(select(func.count()).select_from(PayoutModel).where(*conditions))
        models = await self._all(
            select(PayoutModel)
            .where(*conditions)
            .order_by(PayoutModel.created_at.desc(), PayoutModel.id)
            .offset(offset)
            .limit(limit)
        )
        return [m.to_entity() for m in models], int(total.scalar_one())

    async def payout_totals(self, statuses: Sequence[PayoutStatus]) -> Tuple[int, int]:
        result = await self.session.execute(
            select(func.coalesce(func.sum(PayoutModel.amount), 0), func.count(PayoutModel.id))
            .where(PayoutModel.status.in_(list(statuses)))
        )
        amount, count = result.one()
        return int(amount), int(count)

    # Creator accounts
    async def get_creator_account(self, user_id: str) -> Optional[CreatorAccount]:
        model = await self._one(select(CreatorAccountModel).where(CreatorAccountModel.user_id == user_id))
        return model.to_entity() if model else None

    async def save_creator_account(self, account: CreatorAccount) -> CreatorAccount:
        await self.session.merge(CreatorAccountModel.from_entity(account))
        await self.session.commit()
        return await self.get_creator_account(account.user_id)

    # Webhook events
    async def get_webhook_event(self, provider: str, event_id: str) -> Optional[WebhookEvent]:
        model = await self._one(
            select(WebhookEventModel).where(and_(
                WebhookEventModel.provider == provider,
                WebhookEventModel.event_id == event_id,
            ))
        )
        return model.to_entity() if model else None

    async def create_webhook_event(self, event: WebhookEvent) -> WebhookEvent:
        self.session.add(WebhookEventModel.from_entity(event))
        try:
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            existing = await self.get_webhook_event(event.provider, event.event_id)
            if existing is None:
                raise
            return existing
        model = await self._one(select(WebhookEventModel).where(WebhookEventModel.id == event.id))
        return model.to_entity()

    async def update_webhook_event(self, webhook_event_id: str, changes: Dict[str, Any]) -> WebhookEvent:
        result = await self.session.execute(
            update(WebhookEventModel).where(WebhookEventModel.id == webhook_event_id).values(**changes)
        )
        if result.rowcount != 1:
            await self.session.rollback()
            raise NotFoundError("WebhookEvent", webhook_event_id)
        await self.session.commit()
        model = await self._one(select(WebhookEventModel).where(WebhookEventModel.id == webhook_event_id))
        return model.to_entity()
