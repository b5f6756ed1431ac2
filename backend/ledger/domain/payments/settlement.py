"""Purchase settlement: pick purchases from checkout to completion or refund."""
import logging
from typing import List, Optional

from ledger.domain.common.errors import (
    ConflictError,
    DomainError,
    InvariantViolationError,
    NotFoundError,
    ValidationError,
)
from ledger.domain.common.locks import purchase_locks
from ledger.domain.common.types import generate_id, utcnow
from ledger.domain.payments.configuration import ConfigurationService
from ledger.domain.payments.models import (
    RETRYABLE_PURCHASE_STATUSES,
    LedgerTransaction,
    Purchase,
    PurchaseCheckout,
    PurchaseStatus,
    TransactionStatus,
    TransactionType,
)
from ledger.domain.payments.payouts import PayoutService
from ledger.domain.payments.provider import PaymentProvider
from ledger.domain.payments.repositories import PaymentRepository

logger = logging.getLogger(__name__)

# Provider payment statuses understood by reconciliation.
PROVIDER_PAID_STATUSES = {"paid", "succeeded", "completed"}
PROVIDER_FAILED_STATUSES = {"failed", "canceled", "cancelled", "expired"}

SETTLED_STATUSES = (
    PurchaseStatus.COMPLETED,
    PurchaseStatus.REFUNDED,
    PurchaseStatus.PARTIALLY_REFUNDED,
)


class PurchaseService:
    """Drives one pick purchase through PENDING -> COMPLETED/FAILED -> REFUNDED."""

    def __init__(
        self,
        repo: PaymentRepository,
        provider: PaymentProvider,
        config: ConfigurationService,
        payouts: Optional[PayoutService] = None,
        currency: str = "USD",
    ):
        self.repo = repo
        self.provider = provider
        self.config = config
        self.payouts = payouts
        self.currency = currency

    async def check_duplicate_purchase(self, user_id: str, item_id: str) -> bool:
        """True if the user already holds a live purchase of the item.

        FAILED and REFUNDED attempts do not count, so buyers can retry.
        """
        purchases = await self.repo.find_purchases(user_id, item_id)
        return any(p.status not in RETRYABLE_PURCHASE_STATUSES for p in purchases)

    async def get_purchase_for_item(self, user_id: str, item_id: str) -> Optional[Purchase]:
        """Latest purchase attempt by the user for the item."""
        purchases = await self.repo.find_purchases(user_id, item_id)
        return purchases[0] if purchases else None

    async def initiate_purchase(
        self,
        user_id: str,
        item_id: str,
        creator_id: str,
        amount: int,
        description: Optional[str] = None,
    ) -> PurchaseCheckout:
        """Charge the buyer through the provider and record a PENDING purchase."""
        if user_id == creator_id:
            raise ValidationError("You cannot purchase your own pick")

        async with purchase_locks.hold(f"item:{user_id}:{item_id}"):
            if await self.check_duplicate_purchase(user_id, item_id):
                raise ValidationError("You have already purchased this pick")

            validation = await self.config.validate_pick_price(amount)
            if not validation.valid:
                raise ValidationError(validation.error)
            fees = await self.config.calculate_fees(amount)

            result = await self.provider.charge(
                user_id=user_id,
                amount=amount,
                currency=self.currency,
                description=description or f"Pick purchase {item_id}",
                metadata={
                    "item_id": item_id,
                    "buyer_id": user_id,
                    "seller_id": creator_id,
                    "platform_fee": fees.platform_fee,
                    "creator_earnings": fees.creator_earnings,
                },
            )
            if not result.id:
                raise ValidationError("Payment provider did not return a payment id")

            purchase = await self.create_pending_purchase(
                user_id=user_id,
                item_id=item_id,
                creator_id=creator_id,
                amount=amount,
                provider_payment_id=result.id,
                description=description,
            )
        return PurchaseCheckout(purchase=purchase, checkout_url=result.raw.get("checkout_url"))

    async def create_pending_purchase(
        self,
        user_id: str,
        item_id: str,
        creator_id: str,
        amount: int,
        provider_payment_id: str,
        payment_method: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Purchase:
        """Write a PENDING purchase keyed by the provider payment id."""
        validation = await self.config.validate_pick_price(amount)
        if not validation.valid:
            raise ValidationError(validation.error)
        fees = await self.config.calculate_fees(amount)

        now = utcnow()
        purchase = Purchase(
            id=generate_id(),
            user_id=user_id,
            item_id=item_id,
            creator_id=creator_id,
            amount=amount,
            platform_fee=fees.platform_fee,
            creator_earnings=fees.creator_earnings,
            provider_payment_id=provider_payment_id,
            status=PurchaseStatus.PENDING,
            payment_method=payment_method,
            description=description,
            created_at=now,
            updated_at=now,
        )
        created = await self.repo.create_purchase(purchase)
        logger.info(
            "Created pending purchase %s for item %s (payment %s, amount %s)",
            created.id, item_id, provider_payment_id, amount,
        )
        return created

    async def complete_purchase(self, provider_payment_id: str) -> Purchase:
        """Settle a purchase on provider confirmation.

        Redelivery is safe: a purchase that is already settled is returned
        unchanged and nothing is written. The three ledger lines are written
        together with the status change or not at all.
        """
        async with purchase_locks.hold(provider_payment_id):
            purchase = await self.repo.get_purchase_by_provider_id(provider_payment_id)
            if purchase is None:
                logger.error("Completion for unknown payment %s", provider_payment_id)
                raise NotFoundError("Purchase", provider_payment_id)

            if purchase.status in SETTLED_STATUSES:
                logger.info("Purchase %s already completed; no-op", purchase.id)
                return purchase
            if purchase.status == PurchaseStatus.FAILED:
                raise ConflictError(f"Purchase {purchase.id} already failed and cannot be completed")

            self._check_fee_split(purchase)
            now = utcnow()
            completed = await self.repo.complete_purchase(
                provider_payment_id, now, self._settlement_entries(purchase, now)
            )
            if completed is None:
                current = await self.repo.get_purchase_by_provider_id(provider_payment_id)
                if current is None or current.status not in SETTLED_STATUSES:
                    raise ConflictError(f"Purchase {purchase.id} changed state during completion")
                logger.info("Purchase %s already completed by a concurrent writer; no-op", purchase.id)
                return current

        logger.info(
            "Completed purchase %s: amount=%s fee=%s earnings=%s",
            completed.id, completed.amount, completed.platform_fee, completed.creator_earnings,
        )
        await self._check_auto_withdrawal(completed.creator_id)
        return completed

    async def fail_purchase(self, provider_payment_id: str, reason: Optional[str] = None) -> Purchase:
        """Mark a PENDING purchase FAILED. No ledger lines are written."""
        async with purchase_locks.hold(provider_payment_id):
            purchase = await self.repo.get_purchase_by_provider_id(provider_payment_id)
            if purchase is None:
                logger.error("Failure for unknown payment %s", provider_payment_id)
                raise NotFoundError("Purchase", provider_payment_id)

            if purchase.status == PurchaseStatus.FAILED:
                logger.info("Purchase %s already failed; no-op", purchase.id)
                return purchase
            if purchase.status != PurchaseStatus.PENDING:
                raise ConflictError(f"Purchase {purchase.id} is {purchase.status.value} and cannot fail")

            failed = await self.repo.fail_purchase(provider_payment_id, utcnow())
            if failed is None:
                current = await self.repo.get_purchase_by_provider_id(provider_payment_id)
                if current is not None and current.status == PurchaseStatus.FAILED:
                    return current
                raise ConflictError(f"Purchase {purchase.id} changed state before it could fail")

        logger.info("Purchase %s failed: %s", failed.id, reason or "no reason given")
        return failed

    async def process_refund(
        self, purchase_id: str, amount: Optional[int] = None, reason: Optional[str] = None
    ) -> Purchase:
        """Refund a COMPLETED purchase through the provider.

        If the provider call fails the purchase stays COMPLETED and the
        ProviderError propagates.
        """
        purchase = await self.repo.get_purchase(purchase_id)
        if purchase is None:
            raise NotFoundError("Purchase", purchase_id)

        async with purchase_locks.hold(purchase.provider_payment_id):
            purchase = await self.repo.get_purchase(purchase_id)
            if purchase.status != PurchaseStatus.COMPLETED:
                raise ValidationError("Only completed purchases can be refunded")

            refund_amount = purchase.amount if amount is None else amount
            self._check_refund_amount(purchase, refund_amount)

            result = await self.provider.refund(purchase.provider_payment_id, refund_amount, reason)
            provider_refund_id = result.id or purchase.provider_payment_id
            return await self._apply_refund(purchase, provider_refund_id, refund_amount, reason)

    async def record_provider_refund(
        self, provider_payment_id: str, provider_refund_id: str, amount: Optional[int] = None
    ) -> Purchase:
        """Apply a refund the provider already made (refund webhook)."""
        async with purchase_locks.hold(provider_payment_id):
            purchase = await self.repo.get_purchase_by_provider_id(provider_payment_id)
            if purchase is None:
                logger.error("Refund for unknown payment %s", provider_payment_id)
                raise NotFoundError("Purchase", provider_payment_id)

            if await self.repo.get_transaction_by_key(_refund_key(provider_refund_id)):
                logger.info("Refund %s already recorded; no-op", provider_refund_id)
                return purchase
            if purchase.status != PurchaseStatus.COMPLETED:
                raise ConflictError(f"Purchase {purchase.id} is {purchase.status.value} and cannot be refunded")

            refund_amount = purchase.amount if amount is None else amount
            self._check_refund_amount(purchase, refund_amount)
            return await self._apply_refund(purchase, provider_refund_id, refund_amount, "provider refund")

    async def reconcile_purchase(self, provider_payment_id: str) -> Purchase:
        """Poll the provider and settle a PENDING purchase from its answer.

        Non-terminal provider statuses leave the purchase PENDING.
        """
        purchase = await self.repo.get_purchase_by_provider_id(provider_payment_id)
        if purchase is None:
            raise NotFoundError("Purchase", provider_payment_id)
        if purchase.status != PurchaseStatus.PENDING:
            return purchase

        result = await self.provider.get_payment(provider_payment_id)
        status = (result.status or "").lower()
        if status in PROVIDER_PAID_STATUSES:
            return await self.complete_purchase(provider_payment_id)
        if status in PROVIDER_FAILED_STATUSES:
            return await self.fail_purchase(provider_payment_id, reason=f"provider status {status}")
        logger.info("Payment %s still %s at provider; leaving pending", provider_payment_id, status or "unknown")
        return purchase

    async def _apply_refund(
        self, purchase: Purchase, provider_refund_id: str, refund_amount: int, reason: Optional[str]
    ) -> Purchase:
        now = utcnow()
        status = (
            PurchaseStatus.REFUNDED
            if refund_amount >= purchase.amount
            else PurchaseStatus.PARTIALLY_REFUNDED
        )
        entry = LedgerTransaction(
            id=generate_id(),
            user_id=purchase.user_id,
            type=TransactionType.REFUND,
            amount=refund_amount,
            status=TransactionStatus.COMPLETED,
            idempotency_key=_refund_key(provider_refund_id),
            provider_reference_id=provider_refund_id,
            reference_id=purchase.id,
            description=f"Refund for purchase {purchase.id}" + (f": {reason}" if reason else ""),
            created_at=now,
        )
        refunded = await self.repo.refund_purchase(purchase.id, status, refund_amount, now, entry)
        if refunded is None:
            current = await self.repo.get_purchase(purchase.id)
            if await self.repo.get_transaction_by_key(entry.idempotency_key):
                logger.info("Refund %s already recorded; no-op", provider_refund_id)
                return current
            raise ConflictError(f"Purchase {purchase.id} changed state before the refund was recorded")

        logger.info("Refunded %s of purchase %s (%s)", refund_amount, purchase.id, status.value)
        return refunded

    async def _check_auto_withdrawal(self, creator_id: str) -> None:
        if self.payouts is None:
            return
        try:
            await self.payouts.check_auto_withdrawal(creator_id)
        except DomainError:
            logger.exception("Auto-withdrawal check failed for creator %s", creator_id)

    @staticmethod
    def _check_refund_amount(purchase: Purchase, refund_amount: int) -> None:
        if refund_amount <= 0 or refund_amount > purchase.amount:
            raise ValidationError(f"Refund amount must be between 1 and {purchase.amount}")

    @staticmethod
    def _check_fee_split(purchase: Purchase) -> None:
        if purchase.platform_fee + purchase.creator_earnings != purchase.amount:
            logger.critical(
                "Purchase %s fee split does not sum: amount=%s fee=%s earnings=%s",
                purchase.id, purchase.amount, purchase.platform_fee, purchase.creator_earnings,
            )
            raise InvariantViolationError(f"Purchase {purchase.id} fee split does not sum to the amount")

    @staticmethod
    def _settlement_entries(purchase: Purchase, now) -> List[LedgerTransaction]:
        pid = purchase.provider_payment_id
        label = purchase.description or purchase.item_id

        def line(user_id: str, kind: TransactionType, amount: int, description: str, **extra) -> LedgerTransaction:
            return LedgerTransaction(
                id=generate_id(),
                user_id=user_id,
                type=kind,
                amount=amount,
                status=TransactionStatus.COMPLETED,
                idempotency_key=f"{pid}:{kind.value}",
                provider_reference_id=pid,
                reference_id=purchase.id,
                description=description,
                created_at=now,
                **extra,
            )

        return [
            line(
                purchase.user_id,
                TransactionType.PICK_PURCHASE,
                purchase.amount,
                f"Purchased pick: {label}",
                platform_fee=purchase.platform_fee,
                metadata={"item_id": purchase.item_id, "creator_id": purchase.creator_id},
            ),
            line(
                purchase.creator_id,
                TransactionType.PICK_SALE,
                purchase.creator_earnings,
                f"Sold pick: {label}",
                metadata={"item_id": purchase.item_id, "buyer_id": purchase.user_id},
            ),
            line(
                purchase.creator_id,
                TransactionType.PLATFORM_FEE,
                purchase.platform_fee,
                f"Platform fee: {label}",
            ),
        ]


def _refund_key(provider_refund_id: str) -> str:
    return f"refund:{provider_refund_id}"
