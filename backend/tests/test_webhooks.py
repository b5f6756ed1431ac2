"""Tests for webhook verification and dispatch."""
import json
from datetime import datetime

import pytest

from ledger.domain.common.errors import ValidationError, WebhookProcessingError, WebhookSignatureError
from ledger.domain.payments.models import (
    PayoutMethod,
    PayoutStatus,
    PurchaseStatus,
    SubscriptionStatus,
    TransactionType,
)
from ledger.domain.payments.webhooks import from_unix_seconds


def _body(event_type: str, data: dict, event_id: str = "evt_1") -> bytes:
    return json.dumps({"id": event_id, "type": event_type, "data": data}).encode()


@pytest.fixture
def deliver(webhook_processor, provider):
    """Sign and deliver one event."""
    async def _deliver(event_type: str, data: dict, event_id: str = "evt_1"):
        body = _body(event_type, data, event_id)
        return await webhook_processor.process(body, provider.sign(body))
    return _deliver


@pytest.fixture
async def pending_purchase(purchase_service, sample_users):
    return await purchase_service.create_pending_purchase(
        user_id=sample_users["buyer"],
        item_id="pick-1",
        creator_id=sample_users["creator"],
        amount=1000,
        provider_payment_id="pay_abc",
    )


class TestSignature:
    """Nothing is stored or applied for an unverified delivery."""

    async def test_invalid_signature(self, webhook_processor, repo, pending_purchase):
        body = _body("payment.completed", {"id": "pay_abc"})

        with pytest.raises(WebhookSignatureError):
            await webhook_processor.process(body, "0" * 64)

        assert repo.webhook_events == {}
        assert repo.lines() == []

    async def test_missing_signature(self, webhook_processor, repo):
        with pytest.raises(WebhookSignatureError):
            await webhook_processor.process(_body("payment.completed", {"id": "pay_abc"}), None)
        assert repo.webhook_events == {}

    async def test_signature_covers_the_raw_body(self, webhook_processor, provider):
        body = _body("payment.completed", {"id": "pay_abc"})
        signature = provider.sign(body)

        with pytest.raises(WebhookSignatureError):
            await webhook_processor.process(body + b" ", signature)

    async def test_malformed_payload(self, webhook_processor, provider):
        body = b"not json"
        with pytest.raises(ValidationError):
            await webhook_processor.process(body, provider.sign(body))


class TestPaymentEvents:
    async def test_payment_completed(self, deliver, repo, pending_purchase):
        outcome = await deliver("payment.completed", {"id": "pay_abc"})

        assert outcome.status == "processed"
        assert repo.purchases[pending_purchase.id].status == PurchaseStatus.COMPLETED
        assert len(repo.lines()) == 3
        event = next(iter(repo.webhook_events.values()))
        assert event.processed is True
        assert event.attempts == 1
        assert event.processing_error is None

    async def test_duplicate_event_id(self, deliver, repo, pending_purchase):
        await deliver("payment.completed", {"id": "pay_abc"})

        outcome = await deliver("payment.completed", {"id": "pay_abc"})

        assert outcome.status == "duplicate"
        assert len(repo.webhook_events) == 1
        assert len(repo.lines()) == 3

    async def test_redelivery_under_new_event_id(self, deliver, repo, pending_purchase):
        """Different event ids for the same payment still settle once."""
        await deliver("payment.completed", {"id": "pay_abc"}, event_id="evt_1")

        outcome = await deliver("payment.completed", {"id": "pay_abc"}, event_id="evt_2")

        assert outcome.status == "processed"
        assert len(repo.lines()) == 3

    async def test_payment_failed(self, deliver, repo, pending_purchase):
        outcome = await deliver("payment.failed", {"id": "pay_abc", "failure_reason": "card declined"})

        assert outcome.status == "processed"
        assert repo.purchases[pending_purchase.id].status == PurchaseStatus.FAILED
        assert repo.lines() == []

    async def test_illegal_transition_is_acknowledged(self, deliver, repo, pending_purchase):
        await deliver("payment.completed", {"id": "pay_abc"}, event_id="evt_1")

        outcome = await deliver("payment.failed", {"id": "pay_abc"}, event_id="evt_2")

        assert outcome.status == "ignored"
        assert outcome.error
        assert repo.purchases[pending_purchase.id].status == PurchaseStatus.COMPLETED
        event = await repo.get_webhook_event("whop", "evt_2")
        assert event.processed is True
        assert event.processing_error

    async def test_unknown_payment_asks_for_redelivery(self, deliver, repo, purchase_service, sample_users):
        with pytest.raises(WebhookProcessingError):
            await deliver("payment.completed", {"id": "pay_late"})

        event = await repo.get_webhook_event("whop", "evt_1")
        assert event.processed is False
        assert event.attempts == 1
        assert "pay_late" in event.processing_error

        await purchase_service.create_pending_purchase(
            sample_users["buyer"], "pick-9", sample_users["creator"], 1000, "pay_late"
        )
        outcome = await deliver("payment.completed", {"id": "pay_late"})

        assert outcome.status == "processed"
        event = await repo.get_webhook_event("whop", "evt_1")
        assert event.processed is True
        assert event.attempts == 2

    async def test_missing_data_field_is_acknowledged(self, deliver):
        outcome = await deliver("payment.completed", {})
        assert outcome.status == "ignored"

    async def test_unhandled_event_type(self, deliver, repo):
        outcome = await deliver("membership.went_valid", {"id": "mem_1"})

        assert outcome.status == "unhandled"
        assert next(iter(repo.webhook_events.values())).processed is True


class TestRefundEvents:
    async def test_refund_completed(self, deliver, repo, purchase_service, pending_purchase):
        await purchase_service.complete_purchase("pay_abc")

        await deliver("refund.completed", {"id": "re_1", "payment_id": "pay_abc", "amount": 300}, event_id="evt_r1")
        await deliver("refund.completed", {"id": "re_1", "payment_id": "pay_abc", "amount": 300}, event_id="evt_r2")

        purchase = repo.purchases[pending_purchase.id]
        assert purchase.status == PurchaseStatus.PARTIALLY_REFUNDED
        assert purchase.refund_amount == 300
        assert len(repo.lines(type=TransactionType.REFUND)) == 1

    async def test_refund_amount_must_be_integer(self, deliver, purchase_service, pending_purchase):
        await purchase_service.complete_purchase("pay_abc")

        outcome = await deliver("refund.completed", {"id": "re_1", "payment_id": "pay_abc", "amount": "3.00"})
        assert outcome.status == "ignored"


class TestSubscriptionEvents:
    @pytest.fixture
    async def pending_subscription(self, repo, subscription_service, payout_service, sample_users):
        await payout_service.update_payout_settings(sample_users["creator"], provider_user_id="whop_creator")
        await subscription_service.update_subscription_settings(sample_users["creator"], enabled=True, price=999)
        return await subscription_service.create_subscription(sample_users["buyer"], sample_users["creator"])

    async def test_activated_and_renewed(self, deliver, repo, pending_subscription):
        first_end = 1795000000
        second_end = first_end + 30 * 86400

        await deliver(
            "subscription.activated",
            {"id": pending_subscription.provider_subscription_id, "current_period_end": first_end},
            event_id="evt_a",
        )
        await deliver(
            "subscription.renewed",
            {"id": pending_subscription.provider_subscription_id, "current_period_end": second_end},
            event_id="evt_b",
        )

        subscription = repo.subscriptions[pending_subscription.id]
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.current_period_end == from_unix_seconds(second_end)
        assert len(repo.lines(type=TransactionType.SUBSCRIPTION)) == 2
        assert len(repo.lines(type=TransactionType.SUBSCRIPTION_REVENUE)) == 2

    async def test_canceled(self, deliver, repo, pending_subscription):
        outcome = await deliver("subscription.canceled", {"id": pending_subscription.provider_subscription_id})

        assert outcome.status == "processed"
        assert repo.subscriptions[pending_subscription.id].status == SubscriptionStatus.CANCELED

    async def test_bad_timestamp_is_acknowledged(self, deliver, pending_subscription):
        outcome = await deliver(
            "subscription.activated",
            {"id": pending_subscription.provider_subscription_id, "current_period_end": "soon"},
        )
        assert outcome.status == "ignored"


class TestTransferEvents:
    @pytest.fixture
    async def payout(self, payout_service, purchase_service, pending_purchase, sample_users):
        await payout_service.update_payout_settings(
            sample_users["creator"],
            payout_method=PayoutMethod.WHOP_BALANCE,
            provider_user_id="whop_creator",
        )
        await purchase_service.complete_purchase("pay_abc")
        return await payout_service.create_payout_request(sample_users["creator"], 850)

    async def test_transfer_completed(self, deliver, repo, payout):
        await deliver("transfer.completed", {"id": payout.provider_transfer_id})

        assert repo.payouts[payout.id].status == PayoutStatus.COMPLETED
        assert len(repo.lines(type=TransactionType.PAYOUT)) == 1

    async def test_transfer_failed(self, deliver, repo, payout):
        await deliver("transfer.failed", {"id": payout.provider_transfer_id, "failure_reason": "invalid account"})

        failed = repo.payouts[payout.id]
        assert failed.status == PayoutStatus.FAILED
        assert failed.failure_reason == "invalid account"


def test_from_unix_seconds():
    assert from_unix_seconds(0) == datetime(1970, 1, 1)
    assert from_unix_seconds(1795000000).tzinfo is None
    with pytest.raises(ValidationError):
        from_unix_seconds("1795000000")
