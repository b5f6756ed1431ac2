"""Creator balances, withdrawals and payouts."""
import logging
from dataclasses import replace
from typing import List, Optional, Tuple

from ledger.domain.common.errors import ConflictError, NotFoundError, ProviderError, ValidationError
from ledger.domain.common.locks import payout_locks
from ledger.domain.common.types import generate_id, utcnow
from ledger.domain.payments.configuration import ConfigurationService, format_cents
from ledger.domain.payments.models import (
    EARNING_TYPES,
    IN_FLIGHT_PAYOUT_STATUSES,
    OUTSTANDING_PAYOUT_STATUSES,
    CreatorAccount,
    LedgerTransaction,
    Payout,
    PayoutMethod,
    PayoutStatus,
    TransactionStatus,
    TransactionType,
)
from ledger.domain.payments.provider import PaymentProvider
from ledger.domain.payments.repositories import PaymentRepository

logger = logging.getLogger(__name__)

DEFAULT_AUTO_WITHDRAW_THRESHOLD = 10000  # $100

# Method names the provider's transfer API expects.
PROVIDER_TRANSFER_METHODS = {
    PayoutMethod.BANK: "bank",
    PayoutMethod.CRYPTO: "crypto",
    PayoutMethod.WHOP_BALANCE: "balance",
}


class PayoutService:
    """Computes balances from the ledger and turns them into provider transfers.

    Payout creation is serialized per creator; a creator never has more than one
    PENDING/PROCESSING payout at a time.
    """

    def __init__(
        self,
        repo: PaymentRepository,
        provider: PaymentProvider,
        config: ConfigurationService,
        currency: str = "USD",
        auto_withdraw_threshold: int = DEFAULT_AUTO_WITHDRAW_THRESHOLD,
    ):
        self.repo = repo
        self.provider = provider
        self.config = config
        self.currency = currency
        self.auto_withdraw_threshold = auto_withdraw_threshold

    async def calculate_creator_balance(self, user_id: str) -> int:
        """Completed earnings minus every payout that is not FAILED."""
        earned = await self.repo.sum_transactions(user_id, EARNING_TYPES)
        paid_out = await self.repo.sum_payouts(user_id, OUTSTANDING_PAYOUT_STATUSES)
        return earned - paid_out

    async def check_auto_withdrawal(self, user_id: str) -> Optional[Payout]:
        """Pay out the whole balance if the creator opted in and crossed the threshold."""
        account = await self.repo.get_creator_account(user_id)
        if account is None or not account.auto_withdraw:
            return None

        config = await self.config.get_configuration()
        if not config.withdrawal_enabled:
            logger.info("Withdrawals disabled; skipping auto-withdrawal for %s", user_id)
            return None

        async with payout_locks.hold(user_id):
            if await self.repo.has_payout_in_flight(user_id):
                logger.info("Payout already in flight for %s; auto-withdrawal no-op", user_id)
                return None

            balance = await self.calculate_creator_balance(user_id)
            threshold = account.min_payout or self.auto_withdraw_threshold
            if balance <= 0 or balance < threshold:
                return None

            logger.info("Auto-withdrawal for %s: balance %s >= threshold %s", user_id, balance, threshold)
            return await self._create_payout(user_id, balance)

    async def create_payout_request(self, user_id: str, amount: int) -> Payout:
        """Request a transfer of ``amount`` to the creator's payout destination."""
        async with payout_locks.hold(user_id):
            if await self.repo.has_payout_in_flight(user_id):
                raise ConflictError("A payout is already in progress")
            return await self._create_payout(user_id, amount)

    async def request_withdrawal(self, user_id: str, amount: Optional[int] = None) -> Payout:
        """Manual withdrawal; defaults to the full available balance."""
        config = await self.config.get_configuration()
        if not config.withdrawal_enabled:
            raise ValidationError("Withdrawals are currently disabled")

        balance = await self.calculate_creator_balance(user_id)
        if balance <= 0:
            raise ValidationError("No balance available for withdrawal")

        if amount is None:
            amount = balance
        if amount > balance:
            raise ValidationError(f"Amount exceeds available balance of {format_cents(balance)}")
        if amount < config.withdrawal_minimum:
            raise ValidationError(f"Minimum withdrawal amount is {format_cents(config.withdrawal_minimum)}")

        return await self.create_payout_request(user_id, amount)

    async def mark_payout_completed(self, provider_transfer_id: str) -> Payout:
        """Transfer confirmed: payout COMPLETED plus one PAYOUT ledger line."""
        payout = await self._get_by_transfer(provider_transfer_id)
        async with payout_locks.hold(payout.user_id):
            payout = await self._get_by_transfer(provider_transfer_id)
            if payout.status == PayoutStatus.COMPLETED:
                logger.info("Payout %s already completed; no-op", payout.id)
                return payout
            if payout.status == PayoutStatus.FAILED:
                raise ConflictError(f"Payout {payout.id} already failed")

            now = utcnow()
            entry = LedgerTransaction(
                id=generate_id(),
                user_id=payout.user_id,
                type=TransactionType.PAYOUT,
                amount=payout.amount,
                status=TransactionStatus.COMPLETED,
                idempotency_key=f"payout:{payout.id}",
                provider_reference_id=provider_transfer_id,
                reference_id=payout.id,
                description=f"Payout via {payout.method.value}",
                created_at=now,
            )
            completed = await self.repo.transition_payout(
                payout.id, IN_FLIGHT_PAYOUT_STATUSES, PayoutStatus.COMPLETED, now, entry=entry
            )
            if completed is None:
                return await self._settled_elsewhere(provider_transfer_id, PayoutStatus.COMPLETED)

        logger.info("Payout %s completed (%s)", completed.id, completed.amount)
        return completed

    async def mark_payout_failed(self, provider_transfer_id: str, reason: Optional[str] = None) -> Payout:
        """Transfer failed: payout FAILED, its amount counts toward the balance again."""
        payout = await self._get_by_transfer(provider_transfer_id)
        async with payout_locks.hold(payout.user_id):
            payout = await self._get_by_transfer(provider_transfer_id)
            if payout.status == PayoutStatus.FAILED:
                logger.info("Payout %s already failed; no-op", payout.id)
                return payout
            if payout.status == PayoutStatus.COMPLETED:
                raise ConflictError(f"Payout {payout.id} already completed")

            failed = await self.repo.transition_payout(
                payout.id,
                IN_FLIGHT_PAYOUT_STATUSES,
                PayoutStatus.FAILED,
                utcnow(),
                failure_reason=reason or "Transfer failed",
            )
            if failed is None:
                return await self._settled_elsewhere(provider_transfer_id, PayoutStatus.FAILED)

        logger.warning("Payout %s failed: %s", failed.id, failed.failure_reason)
        return failed

    async def get_payout_history(self, user_id: str, limit: int = 50) -> List[Payout]:
        payouts, _ = await self.repo.list_payouts(user_id=user_id, offset=0, limit=limit)
        return payouts

    async def get_creator_account(self, user_id: str) -> Optional[CreatorAccount]:
        return await self.repo.get_creator_account(user_id)

    async def update_payout_settings(
        self,
        user_id: str,
        payout_method: Optional[PayoutMethod] = None,
        bank_account_id: Optional[str] = None,
        crypto_wallet_address: Optional[str] = None,
        auto_withdraw: Optional[bool] = None,
        min_payout: Optional[int] = None,
        provider_user_id: Optional[str] = None,
    ) -> CreatorAccount:
        """Update the creator's payout preferences. ``None`` leaves a field unchanged."""
        if min_payout is not None and min_payout <= 0:
            raise ValidationError("Minimum payout must be greater than 0")

        now = utcnow()
        account = await self.repo.get_creator_account(user_id)
        if account is None:
            account = CreatorAccount(user_id=user_id, created_at=now, updated_at=now)

        changes = {
            "payout_method": payout_method,
            "bank_account_id": bank_account_id,
            "crypto_wallet_address": crypto_wallet_address,
            "auto_withdraw": auto_withdraw,
            "min_payout": min_payout,
            "provider_user_id": provider_user_id,
        }
        account = replace(
            account,
            updated_at=now,
            **{key: value for key, value in changes.items() if value is not None},
        )
        return await self.repo.save_creator_account(account)

    async def _create_payout(self, user_id: str, amount: int) -> Payout:
        # Caller holds the creator's payout lock.
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError("Invalid payout amount: must be greater than zero")

        account = await self.repo.get_creator_account(user_id)
        if account is None or not account.provider_user_id:
            raise ValidationError("User does not have a payment provider account configured")
        method, destination = _payout_destination(account)

        balance = await self.calculate_creator_balance(user_id)
        if amount > balance:
            raise ValidationError(f"Amount exceeds available balance of {format_cents(max(balance, 0))}")

        result = await self.provider.transfer(
            destination_user_id=account.provider_user_id,
            amount=amount,
            currency=self.currency,
            method=PROVIDER_TRANSFER_METHODS[method],
            destination_account=destination,
            description="Creator payout for earnings",
        )
        if not result.id:
            logger.error("Transfer for %s returned no transfer id; no payout recorded", user_id)
            raise ProviderError(
                "MISSING_TRANSFER_ID", "Payment provider did not return a transfer id", payload=result.raw
            )

        now = utcnow()
        payout = Payout(
            id=generate_id(),
            user_id=user_id,
            amount=amount,
            method=method,
            status=PayoutStatus.PROCESSING,
            provider_transfer_id=result.id,
            created_at=now,
            updated_at=now,
        )
        created = await self.repo.create_payout(payout)
        logger.info("Created payout %s for %s: %s via %s", created.id, user_id, amount, method.value)
        return created

    async def _get_by_transfer(self, provider_transfer_id: str) -> Payout:
        payout = await self.repo.get_payout_by_transfer_id(provider_transfer_id)
        if payout is None:
            logger.error("Transfer event for unknown transfer %s", provider_transfer_id)
            raise NotFoundError("Payout", provider_transfer_id)
        return payout

    async def _settled_elsewhere(self, provider_transfer_id: str, wanted: PayoutStatus) -> Payout:
        current = await self._get_by_transfer(provider_transfer_id)
        if current.status == wanted:
            logger.info("Payout %s already %s; no-op", current.id, wanted.value)
            return current
        raise ConflictError(f"Payout {current.id} is {current.status.value}")


def _payout_destination(account: CreatorAccount) -> Tuple[PayoutMethod, str]:
    """Resolve the configured method and its destination account."""
    if account.payout_method is None:
        raise ValidationError("Payout method not configured. Please set your preferred payout method.")

    if account.payout_method == PayoutMethod.CRYPTO:
        wallet = (account.crypto_wallet_address or "").strip()
        if not wallet:
            raise ValidationError("Crypto wallet address is required for crypto payouts")
        return PayoutMethod.CRYPTO, wallet

    if account.payout_method == PayoutMethod.WHOP_BALANCE:
        return PayoutMethod.WHOP_BALANCE, account.provider_user_id

    bank_account = (account.bank_account_id or "").strip()
    if not bank_account:
        raise ValidationError("Bank account ID is required for bank payouts")
    return PayoutMethod.BANK, bank_account
