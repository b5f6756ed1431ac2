"""Tests for creator balances, withdrawals and payouts."""
import asyncio
from dataclasses import replace

import pytest

from ledger.domain.common.errors import ConflictError, NotFoundError, ProviderError, ValidationError
from ledger.domain.payments.models import PayoutMethod, PayoutStatus, ProviderResult, TransactionType


async def _sell(purchase_service, sample_users, payment_id, amount):
    """Record and settle one pick sale for the sample creator."""
    await purchase_service.create_pending_purchase(
        user_id=sample_users["buyer"],
        item_id=f"pick-{payment_id}",
        creator_id=sample_users["creator"],
        amount=amount,
        provider_payment_id=payment_id,
    )
    await purchase_service.complete_purchase(payment_id)


@pytest.fixture
async def creator_with_sales(purchase_service, payout_service, sample_users):
    """Creator with a bank payout destination and two completed sales (850 + 2125)."""
    await payout_service.update_payout_settings(
        sample_users["creator"],
        payout_method=PayoutMethod.BANK,
        bank_account_id="ba_123",
        provider_user_id="whop_creator",
    )
    await _sell(purchase_service, sample_users, "pay_a", 1000)
    await _sell(purchase_service, sample_users, "pay_b", 2500)
    return sample_users["creator"]


class TestBalance:
    """Balance = completed earnings - payouts that are not FAILED."""

    async def test_balance_from_sales(self, payout_service, creator_with_sales):
        assert await payout_service.calculate_creator_balance(creator_with_sales) == 2975

    async def test_buyer_has_no_balance(self, payout_service, creator_with_sales, sample_users):
        assert await payout_service.calculate_creator_balance(sample_users["buyer"]) == 0

    async def test_processing_payout_reduces_balance(self, payout_service, creator_with_sales):
        payout = await payout_service.request_withdrawal(creator_with_sales, 2000)

        assert payout.status == PayoutStatus.PROCESSING
        assert payout.amount == 2000
        assert await payout_service.calculate_creator_balance(creator_with_sales) == 975

    async def test_failed_payout_releases_funds(self, payout_service, creator_with_sales):
        payout = await payout_service.request_withdrawal(creator_with_sales, 2000)

        failed = await payout_service.mark_payout_failed(payout.provider_transfer_id, reason="account closed")

        assert failed.status == PayoutStatus.FAILED
        assert failed.failure_reason == "account closed"
        assert await payout_service.calculate_creator_balance(creator_with_sales) == 2975

    async def test_completed_payout_writes_payout_line(self, payout_service, repo, creator_with_sales):
        payout = await payout_service.request_withdrawal(creator_with_sales, 2000)

        completed = await payout_service.mark_payout_completed(payout.provider_transfer_id)

        assert completed.status == PayoutStatus.COMPLETED
        assert completed.processed_at is not None
        lines = repo.lines(type=TransactionType.PAYOUT)
        assert len(lines) == 1
        assert lines[0].amount == 2000
        assert lines[0].idempotency_key == f"payout:{payout.id}"
        assert await payout_service.calculate_creator_balance(creator_with_sales) == 975


class TestWithdrawals:
    """Manual withdrawal rules."""

    async def test_full_balance_by_default(self, payout_service, provider, creator_with_sales):
        payout = await payout_service.request_withdrawal(creator_with_sales)

        assert payout.amount == 2975
        assert payout.method == PayoutMethod.BANK
        transfer = provider.calls_to("transfer")[0]
        assert transfer == {
            "destination_user_id": "whop_creator",
            "amount": 2975,
            "currency": "USD",
            "method": "bank",
            "destination_account": "ba_123",
            "description": "Creator payout for earnings",
        }

    async def test_payout_in_flight_conflicts(self, payout_service, provider, creator_with_sales):
        await payout_service.request_withdrawal(creator_with_sales, 1000)

        with pytest.raises(ConflictError, match="already in progress"):
            await payout_service.request_withdrawal(creator_with_sales, 1000)
        assert len(provider.calls_to("transfer")) == 1

    async def test_amount_above_balance(self, payout_service, creator_with_sales):
        with pytest.raises(ValidationError, match="exceeds available balance"):
            await payout_service.request_withdrawal(creator_with_sales, 3000)

    async def test_amount_below_minimum(self, payout_service, creator_with_sales):
        with pytest.raises(ValidationError, match=r"Minimum withdrawal amount is \$10.00"):
            await payout_service.request_withdrawal(creator_with_sales, 500)

    async def test_no_balance(self, payout_service, sample_users):
        with pytest.raises(ValidationError, match="No balance available"):
            await payout_service.request_withdrawal(sample_users["creator"])

    async def test_withdrawals_disabled(self, payout_service, config_service, repo, creator_with_sales):
        config = await config_service.get_configuration()
        repo.configuration = replace(config, withdrawal_enabled=False)

        with pytest.raises(ValidationError, match="disabled"):
            await payout_service.request_withdrawal(creator_with_sales)

    async def test_requires_provider_account(self, payout_service, purchase_service, sample_users):
        await _sell(purchase_service, sample_users, "pay_a", 2500)

        with pytest.raises(ValidationError, match="payment provider account"):
            await payout_service.request_withdrawal(sample_users["creator"])

    async def test_crypto_requires_wallet(self, payout_service, creator_with_sales):
        await payout_service.update_payout_settings(creator_with_sales, payout_method=PayoutMethod.CRYPTO)

        with pytest.raises(ValidationError, match="wallet"):
            await payout_service.request_withdrawal(creator_with_sales)

    async def test_crypto_destination(self, payout_service, provider, creator_with_sales):
        await payout_service.update_payout_settings(
            creator_with_sales, payout_method=PayoutMethod.CRYPTO, crypto_wallet_address="0xabc"
        )

        payout = await payout_service.request_withdrawal(creator_with_sales)

        assert payout.method == PayoutMethod.CRYPTO
        transfer = provider.calls_to("transfer")[0]
        assert transfer["method"] == "crypto"
        assert transfer["destination_account"] == "0xabc"

    async def test_provider_failure_creates_no_payout(self, payout_service, provider, repo, creator_with_sales):
        provider.failures["transfer"] = ProviderError("INSUFFICIENT_FUNDS", "no funds", status_code=400)

        with pytest.raises(ProviderError):
            await payout_service.request_withdrawal(creator_with_sales)

        assert repo.payouts == {}
        assert await payout_service.calculate_creator_balance(creator_with_sales) == 2975

    async def test_transfer_without_id_creates_no_payout(
        self, payout_service, provider, repo, monkeypatch, creator_with_sales
    ):
        async def transfer_without_id(**kwargs):
            return ProviderResult(id=None, status="pending", raw={"status": "pending"})

        monkeypatch.setattr(provider, "transfer", transfer_without_id)

        with pytest.raises(ProviderError) as exc_info:
            await payout_service.request_withdrawal(creator_with_sales)

        assert exc_info.value.code == "MISSING_TRANSFER_ID"
        assert repo.payouts == {}
        assert await payout_service.calculate_creator_balance(creator_with_sales) == 2975

    async def test_history_newest_first(self, payout_service, creator_with_sales):
        first = await payout_service.request_withdrawal(creator_with_sales, 1000)
        await payout_service.mark_payout_failed(first.provider_transfer_id)
        second = await payout_service.request_withdrawal(creator_with_sales, 1500)

        history = await payout_service.get_payout_history(creator_with_sales)
        assert [p.id for p in history] == [second.id, first.id]


class TestAutoWithdrawal:
    """Automatic payouts once the balance crosses the creator's threshold."""

    async def test_not_opted_in(self, payout_service, creator_with_sales, repo):
        assert await payout_service.check_auto_withdrawal(creator_with_sales) is None
        assert repo.payouts == {}

    async def test_below_threshold(self, payout_service, creator_with_sales, repo):
        await payout_service.update_payout_settings(creator_with_sales, auto_withdraw=True, min_payout=5000)

        assert await payout_service.check_auto_withdrawal(creator_with_sales) is None
        assert repo.payouts == {}

    async def test_default_threshold(self, payout_service, creator_with_sales):
        """Without min_payout the service threshold ($100) applies."""
        await payout_service.update_payout_settings(creator_with_sales, auto_withdraw=True)

        assert await payout_service.check_auto_withdrawal(creator_with_sales) is None

    async def test_pays_out_full_balance(self, payout_service, creator_with_sales):
        await payout_service.update_payout_settings(creator_with_sales, auto_withdraw=True, min_payout=2000)

        payout = await payout_service.check_auto_withdrawal(creator_with_sales)

        assert payout.amount == 2975
        assert payout.status == PayoutStatus.PROCESSING

    async def test_concurrent_checks_create_one_payout(self, payout_service, provider, repo, creator_with_sales):
        await payout_service.update_payout_settings(creator_with_sales, auto_withdraw=True, min_payout=2000)

        results = await asyncio.gather(
            *(payout_service.check_auto_withdrawal(creator_with_sales) for _ in range(5))
        )

        assert sum(1 for r in results if r is not None) == 1
        assert len(repo.payouts) == 1
        assert len(provider.calls_to("transfer")) == 1
        assert await payout_service.calculate_creator_balance(creator_with_sales) == 0

    async def test_in_flight_payout_is_noop(self, payout_service, creator_with_sales):
        await payout_service.request_withdrawal(creator_with_sales, 1000)
        await payout_service.update_payout_settings(creator_with_sales, auto_withdraw=True, min_payout=1000)

        assert await payout_service.check_auto_withdrawal(creator_with_sales) is None


class TestTransferOutcomes:
    """Provider transfer results applied to payouts."""

    async def test_completion_is_idempotent(self, payout_service, repo, creator_with_sales):
        payout = await payout_service.request_withdrawal(creator_with_sales, 2000)

        await payout_service.mark_payout_completed(payout.provider_transfer_id)
        again = await payout_service.mark_payout_completed(payout.provider_transfer_id)

        assert again.status == PayoutStatus.COMPLETED
        assert len(repo.lines(type=TransactionType.PAYOUT)) == 1

    async def test_failure_after_completion_conflicts(self, payout_service, creator_with_sales):
        payout = await payout_service.request_withdrawal(creator_with_sales, 2000)
        await payout_service.mark_payout_completed(payout.provider_transfer_id)

        with pytest.raises(ConflictError):
            await payout_service.mark_payout_failed(payout.provider_transfer_id)

    async def test_completion_after_failure_conflicts(self, payout_service, repo, creator_with_sales):
        payout = await payout_service.request_withdrawal(creator_with_sales, 2000)
        await payout_service.mark_payout_failed(payout.provider_transfer_id)

        with pytest.raises(ConflictError):
            await payout_service.mark_payout_completed(payout.provider_transfer_id)
        assert repo.lines(type=TransactionType.PAYOUT) == []

    async def test_default_failure_reason(self, payout_service, creator_with_sales):
        payout = await payout_service.request_withdrawal(creator_with_sales, 2000)

        failed = await payout_service.mark_payout_failed(payout.provider_transfer_id)
        assert failed.failure_reason == "Transfer failed"

    async def test_unknown_transfer(self, payout_service):
        with pytest.raises(NotFoundError):
            await payout_service.mark_payout_completed("tr_missing")


class TestPayoutSettings:
    async def test_partial_update_keeps_other_fields(self, payout_service, creator_with_sales):
        account = await payout_service.update_payout_settings(creator_with_sales, auto_withdraw=True)

        assert account.auto_withdraw is True
        assert account.payout_method == PayoutMethod.BANK
        assert account.bank_account_id == "ba_123"
        assert account.provider_user_id == "whop_creator"

    async def test_min_payout_must_be_positive(self, payout_service, sample_users):
        with pytest.raises(ValidationError):
            await payout_service.update_payout_settings(sample_users["creator"], min_payout=0)


class TestRefundAfterPayout:
    async def test_refund_leaves_completed_payout_untouched(
        self, payout_service, purchase_service, repo, creator_with_sales
    ):
        payout = await payout_service.request_withdrawal(creator_with_sales, 2000)
        completed = await payout_service.mark_payout_completed(payout.provider_transfer_id)
        balance = await payout_service.calculate_creator_balance(creator_with_sales)
        assert balance == 975

        purchase = await repo.get_purchase_by_provider_id("pay_a")
        await purchase_service.process_refund(purchase.id)

        assert repo.payouts[payout.id] == completed
        assert len(repo.lines(type=TransactionType.REFUND)) == 1
        assert len(repo.lines(type=TransactionType.PAYOUT)) == 1
        assert await payout_service.calculate_creator_balance(creator_with_sales) == balance
