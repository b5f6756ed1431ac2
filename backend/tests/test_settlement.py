"""Tests for purchase settlement and refunds."""
import asyncio
from dataclasses import replace
from datetime import timedelta

import pytest

from ledger.domain.common.errors import (
    ConflictError,
    InvariantViolationError,
    NotFoundError,
    ProviderError,
    ValidationError,
)
from ledger.domain.common.types import utcnow
from ledger.domain.payments.models import (
    CreatorAccount,
    PayoutMethod,
    PayoutStatus,
    PurchaseStatus,
    TransactionStatus,
    TransactionType,
)


async def _pending(purchase_service, sample_users, amount=1000, item_id="pick-1", payment_id="pay_abc"):
    return await purchase_service.create_pending_purchase(
        user_id=sample_users["buyer"],
        item_id=item_id,
        creator_id=sample_users["creator"],
        amount=amount,
        provider_payment_id=payment_id,
    )


class TestInitiatePurchase:
    """Checkout: provider charge plus a PENDING purchase."""

    async def test_initiate_creates_pending_purchase(self, purchase_service, provider, repo, sample_users):
        checkout = await purchase_service.initiate_purchase(
            user_id=sample_users["buyer"],
            item_id="pick-1",
            creator_id=sample_users["creator"],
            amount=1000,
        )

        purchase = checkout.purchase
        assert purchase.status == PurchaseStatus.PENDING
        assert purchase.amount == 1000
        assert purchase.platform_fee == 150
        assert purchase.creator_earnings == 850
        assert purchase.provider_payment_id == "pay_1"
        assert checkout.checkout_url == "https://checkout.test/pay_1"
        assert repo.lines() == []

        charge = provider.calls_to("charge")[0]
        assert charge["amount"] == 1000
        assert charge["currency"] == "USD"
        assert charge["metadata"] == {
            "item_id": "pick-1",
            "buyer_id": sample_users["buyer"],
            "seller_id": sample_users["creator"],
            "platform_fee": 150,
            "creator_earnings": 850,
        }

    async def test_cannot_buy_own_pick(self, purchase_service, provider, sample_users):
        with pytest.raises(ValidationError, match="own pick"):
            await purchase_service.initiate_purchase(
                sample_users["creator"], "pick-1", sample_users["creator"], 1000
            )
        assert provider.calls == []

    async def test_price_out_of_range(self, purchase_service, provider, sample_users):
        with pytest.raises(ValidationError, match=r"at least \$0.50"):
            await purchase_service.initiate_purchase(sample_users["buyer"], "pick-1", sample_users["creator"], 49)
        assert provider.calls_to("charge") == []

    async def test_duplicate_purchase_rejected(self, purchase_service, provider, sample_users):
        """A live purchase of the same item blocks another attempt."""
        await purchase_service.initiate_purchase(sample_users["buyer"], "pick-1", sample_users["creator"], 1000)

        with pytest.raises(ValidationError, match="already purchased"):
            await purchase_service.initiate_purchase(sample_users["buyer"], "pick-1", sample_users["creator"], 1000)
        assert len(provider.calls_to("charge")) == 1

    async def test_concurrent_initiations_charge_once(self, purchase_service, provider, sample_users):
        results = await asyncio.gather(
            *(
                purchase_service.initiate_purchase(sample_users["buyer"], "pick-1", sample_users["creator"], 1000)
                for _ in range(3)
            ),
            return_exceptions=True,
        )

        assert sum(1 for r in results if not isinstance(r, Exception)) == 1
        assert all(isinstance(r, ValidationError) for r in results if isinstance(r, Exception))
        assert len(provider.calls_to("charge")) == 1

    async def test_failed_purchase_can_be_retried(self, purchase_service, sample_users):
        checkout = await purchase_service.initiate_purchase(
            sample_users["buyer"], "pick-1", sample_users["creator"], 1000
        )
        await purchase_service.fail_purchase(checkout.purchase.provider_payment_id, reason="card declined")

        assert await purchase_service.check_duplicate_purchase(sample_users["buyer"], "pick-1") is False
        retry = await purchase_service.initiate_purchase(
            sample_users["buyer"], "pick-1", sample_users["creator"], 1000
        )
        assert retry.purchase.status == PurchaseStatus.PENDING

        latest = await purchase_service.get_purchase_for_item(sample_users["buyer"], "pick-1")
        assert latest.id == retry.purchase.id

    async def test_provider_failure_records_nothing(self, purchase_service, provider, repo, sample_users):
        provider.failures["charge"] = ProviderError("NETWORK_ERROR", "down", retryable=True)

        with pytest.raises(ProviderError):
            await purchase_service.initiate_purchase(sample_users["buyer"], "pick-1", sample_users["creator"], 1000)
        assert repo.purchases == {}


class TestCompletePurchase:
    """Settlement writes exactly three ledger lines, once."""

    async def test_complete_writes_three_lines(self, purchase_service, repo, sample_users):
        purchase = await _pending(purchase_service, sample_users)

        completed = await purchase_service.complete_purchase("pay_abc")

        assert completed.status == PurchaseStatus.COMPLETED
        lines = repo.lines(reference_id=purchase.id)
        assert [(t.user_id, t.type, t.amount) for t in lines] == [
            (sample_users["buyer"], TransactionType.PICK_PURCHASE, 1000),
            (sample_users["creator"], TransactionType.PICK_SALE, 850),
            (sample_users["creator"], TransactionType.PLATFORM_FEE, 150),
        ]
        assert [t.idempotency_key for t in lines] == [
            "pay_abc:PICK_PURCHASE",
            "pay_abc:PICK_SALE",
            "pay_abc:PLATFORM_FEE",
        ]
        assert lines[0].platform_fee == 150
        assert all(t.status == TransactionStatus.COMPLETED for t in lines)
        assert all(t.provider_reference_id == "pay_abc" for t in lines)

    async def test_complete_is_idempotent(self, purchase_service, repo, sample_users):
        await _pending(purchase_service, sample_users)

        first = await purchase_service.complete_purchase("pay_abc")
        second = await purchase_service.complete_purchase("pay_abc")

        assert first.id == second.id
        assert second.status == PurchaseStatus.COMPLETED
        assert len(repo.lines()) == 3

    async def test_concurrent_completions_write_once(self, purchase_service, repo, sample_users):
        """Redelivered confirmations racing each other still produce three lines."""
        await _pending(purchase_service, sample_users)

        results = await asyncio.gather(*(purchase_service.complete_purchase("pay_abc") for _ in range(5)))

        assert {r.status for r in results} == {PurchaseStatus.COMPLETED}
        assert len(repo.lines()) == 3

    async def test_complete_unknown_payment(self, purchase_service):
        with pytest.raises(NotFoundError):
            await purchase_service.complete_purchase("pay_missing")

    async def test_complete_failed_purchase_conflicts(self, purchase_service, repo, sample_users):
        await _pending(purchase_service, sample_users)
        await purchase_service.fail_purchase("pay_abc")

        with pytest.raises(ConflictError):
            await purchase_service.complete_purchase("pay_abc")
        assert repo.lines() == []

    async def test_fail_completed_purchase_conflicts(self, purchase_service, sample_users):
        await _pending(purchase_service, sample_users)
        await purchase_service.complete_purchase("pay_abc")

        with pytest.raises(ConflictError):
            await purchase_service.fail_purchase("pay_abc")

    async def test_fail_is_idempotent(self, purchase_service, sample_users):
        await _pending(purchase_service, sample_users)

        await purchase_service.fail_purchase("pay_abc", reason="declined")
        failed = await purchase_service.fail_purchase("pay_abc", reason="declined")
        assert failed.status == PurchaseStatus.FAILED

    async def test_broken_fee_split_is_an_invariant_violation(self, purchase_service, repo, sample_users):
        purchase = await _pending(purchase_service, sample_users)
        repo.purchases[purchase.id] = replace(purchase, platform_fee=151)

        with pytest.raises(InvariantViolationError):
            await purchase_service.complete_purchase("pay_abc")
        assert repo.lines() == []
        assert repo.purchases[purchase.id].status == PurchaseStatus.PENDING

    async def test_completion_triggers_auto_withdrawal(self, purchase_service, provider, repo, sample_users):
        now = utcnow()
        repo.accounts[sample_users["creator"]] = CreatorAccount(
            user_id=sample_users["creator"],
            provider_user_id="whop_creator",
            payout_method=PayoutMethod.WHOP_BALANCE,
            auto_withdraw=True,
            min_payout=800,
            created_at=now,
            updated_at=now,
        )
        await _pending(purchase_service, sample_users)

        await purchase_service.complete_purchase("pay_abc")

        payouts = list(repo.payouts.values())
        assert len(payouts) == 1
        assert payouts[0].amount == 850
        assert payouts[0].status == PayoutStatus.PROCESSING
        transfer = provider.calls_to("transfer")[0]
        assert transfer["method"] == "balance"
        assert transfer["destination_account"] == "whop_creator"

    async def test_auto_withdrawal_failure_does_not_undo_completion(
        self, purchase_service, provider, repo, sample_users
    ):
        now = utcnow()
        repo.accounts[sample_users["creator"]] = CreatorAccount(
            user_id=sample_users["creator"],
            provider_user_id="whop_creator",
            payout_method=PayoutMethod.WHOP_BALANCE,
            auto_withdraw=True,
            min_payout=800,
            created_at=now,
            updated_at=now,
        )
        provider.failures["transfer"] = ProviderError("PROVIDER_API_ERROR", "boom", status_code=500, retryable=True)
        await _pending(purchase_service, sample_users)

        completed = await purchase_service.complete_purchase("pay_abc")

        assert completed.status == PurchaseStatus.COMPLETED
        assert len(repo.lines()) == 3
        assert repo.payouts == {}


class TestRefunds:
    """Refunds: one REFUND line per provider refund."""

    async def test_full_refund(self, purchase_service, provider, repo, sample_users):
        purchase = await _pending(purchase_service, sample_users)
        await purchase_service.complete_purchase("pay_abc")

        refunded = await purchase_service.process_refund(purchase.id, reason="requested")

        assert refunded.status == PurchaseStatus.REFUNDED
        assert refunded.refund_amount == 1000
        assert refunded.refunded_at is not None
        refunds = repo.lines(type=TransactionType.REFUND)
        assert len(refunds) == 1
        assert refunds[0].user_id == sample_users["buyer"]
        assert refunds[0].amount == 1000
        assert refunds[0].idempotency_key == "refund:re_1"
        assert provider.calls_to("refund")[0] == {"payment_id": "pay_abc", "amount": 1000, "reason": "requested"}

    async def test_partial_refund(self, purchase_service, repo, sample_users):
        purchase = await _pending(purchase_service, sample_users)
        await purchase_service.complete_purchase("pay_abc")

        refunded = await purchase_service.process_refund(purchase.id, amount=400)

        assert refunded.status == PurchaseStatus.PARTIALLY_REFUNDED
        assert refunded.refund_amount == 400
        assert repo.lines(type=TransactionType.REFUND)[0].amount == 400

    async def test_refund_requires_completed_purchase(self, purchase_service, provider, sample_users):
        purchase = await _pending(purchase_service, sample_users)

        with pytest.raises(ValidationError, match="Only completed purchases can be refunded"):
            await purchase_service.process_refund(purchase.id)
        assert provider.calls_to("refund") == []

    async def test_refund_twice_rejected(self, purchase_service, sample_users):
        purchase = await _pending(purchase_service, sample_users)
        await purchase_service.complete_purchase("pay_abc")
        await purchase_service.process_refund(purchase.id)

        with pytest.raises(ValidationError):
            await purchase_service.process_refund(purchase.id)

    @pytest.mark.parametrize("amount", [0, 1001])
    async def test_refund_amount_bounds(self, purchase_service, sample_users, amount):
        purchase = await _pending(purchase_service, sample_users)
        await purchase_service.complete_purchase("pay_abc")

        with pytest.raises(ValidationError):
            await purchase_service.process_refund(purchase.id, amount=amount)

    async def test_refund_unknown_purchase(self, purchase_service):
        with pytest.raises(NotFoundError):
            await purchase_service.process_refund("missing")

    async def test_provider_failure_leaves_purchase_completed(self, purchase_service, provider, repo, sample_users):
        purchase = await _pending(purchase_service, sample_users)
        await purchase_service.complete_purchase("pay_abc")
        provider.failures["refund"] = ProviderError("TIMEOUT", "refund timed out", retryable=True)

        with pytest.raises(ProviderError):
            await purchase_service.process_refund(purchase.id)

        assert repo.purchases[purchase.id].status == PurchaseStatus.COMPLETED
        assert repo.lines(type=TransactionType.REFUND) == []

    async def test_provider_refund_recorded_once(self, purchase_service, repo, sample_users):
        purchase = await _pending(purchase_service, sample_users)
        await purchase_service.complete_purchase("pay_abc")

        await purchase_service.record_provider_refund("pay_abc", "re_webhook")
        again = await purchase_service.record_provider_refund("pay_abc", "re_webhook")

        assert again.status == PurchaseStatus.REFUNDED
        assert len(repo.lines(type=TransactionType.REFUND)) == 1
        assert repo.purchases[purchase.id].refund_amount == 1000


class TestReconcile:
    """Polling the provider for purchases stuck in PENDING."""

    @pytest.mark.parametrize(
        "provider_status,expected",
        [
            ("paid", PurchaseStatus.COMPLETED),
            ("succeeded", PurchaseStatus.COMPLETED),
            ("failed", PurchaseStatus.FAILED),
            ("expired", PurchaseStatus.FAILED),
            ("pending", PurchaseStatus.PENDING),
        ],
    )
    async def test_reconcile(self, purchase_service, provider, sample_users, provider_status, expected):
        await _pending(purchase_service, sample_users)
        provider.payment_statuses["pay_abc"] = provider_status

        result = await purchase_service.reconcile_purchase("pay_abc")
        assert result.status == expected

    async def test_reconcile_skips_settled_purchase(self, purchase_service, provider, sample_users):
        await _pending(purchase_service, sample_users)
        await purchase_service.complete_purchase("pay_abc")

        result = await purchase_service.reconcile_purchase("pay_abc")

        assert result.status == PurchaseStatus.COMPLETED
        assert provider.calls_to("get_payment") == []

    async def test_list_pending_purchases(self, purchase_service, repo, sample_users):
        await _pending(purchase_service, sample_users, payment_id="pay_1", item_id="pick-1")
        await _pending(purchase_service, sample_users, payment_id="pay_2", item_id="pick-2")
        await purchase_service.complete_purchase("pay_2")

        pending = await repo.list_pending_purchases(utcnow() + timedelta(seconds=1))
        assert [p.provider_payment_id for p in pending] == ["pay_1"]
