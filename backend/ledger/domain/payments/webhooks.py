"""Provider webhook intake.

Verifies the signature over the raw body, stores the event, then hands it to
the idempotent engine method for its type. Nothing is stored or changed for a
delivery whose signature does not verify.
"""
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from ledger.domain.common.errors import (
    ConflictError,
    DomainError,
    ValidationError,
    WebhookProcessingError,
    WebhookSignatureError,
)
from ledger.domain.common.types import generate_id, utcnow
from ledger.domain.payments.models import WebhookEvent
from ledger.domain.payments.payouts import PayoutService
from ledger.domain.payments.provider import PaymentProvider
from ledger.domain.payments.repositories import PaymentRepository
from ledger.domain.payments.settlement import PurchaseService
from ledger.domain.payments.subscriptions import SubscriptionService

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"

# Errors that redelivery cannot fix; the event is acknowledged.
ACKNOWLEDGED_ERRORS = (ValidationError, ConflictError)


@dataclass
class WebhookOutcome:
    """What happened to one delivery."""
    event_type: str
    status: str  # processed | duplicate | ignored | unhandled
    event_id: Optional[str] = None
    error: Optional[str] = None


def from_unix_seconds(value: Any) -> datetime:
    """Unix seconds -> naive UTC datetime."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError("Expected a unix timestamp")
    return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)


def _require(data: Dict[str, Any], key: str) -> Any:
    value = data.get(key)
    if value in (None, ""):
        raise ValidationError(f"Webhook data is missing '{key}'")
    return value


class WebhookProcessor:
    """Dispatches verified provider events to the settlement, subscription and payout engines."""

    def __init__(
        self,
        repo: PaymentRepository,
        provider: PaymentProvider,
        purchases: PurchaseService,
        subscriptions: SubscriptionService,
        payouts: PayoutService,
        provider_name: str = "whop",
    ):
        self.repo = repo
        self.provider = provider
        self.purchases = purchases
        self.subscriptions = subscriptions
        self.payouts = payouts
        self.provider_name = provider_name
        self._handlers: Dict[str, Callable[[Dict[str, Any]], Awaitable[Any]]] = {
            "payment.completed": self._payment_completed,
            "payment.failed": self._payment_failed,
            "subscription.activated": self._subscription_activated,
            "subscription.renewed": self._subscription_renewed,
            "subscription.canceled": self._subscription_canceled,
            "refund.completed": self._refund_completed,
            "transfer.completed": self._transfer_completed,
            "transfer.failed": self._transfer_failed,
        }

    def verify(self, payload: bytes, signature: Optional[str]) -> None:
        if not signature or not self.provider.verify_webhook_signature(payload, signature):
            logger.warning("Rejected webhook with invalid signature")
            raise WebhookSignatureError()

    @staticmethod
    def parse(payload: bytes) -> Dict[str, Any]:
        try:
            envelope = json.loads(payload)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ValidationError(f"Invalid webhook payload: {exc}") from exc
        if not isinstance(envelope, dict) or not isinstance(envelope.get("type"), str):
            raise ValidationError("Webhook payload must be an object with a 'type'")
        if not isinstance(envelope.get("data", {}), dict):
            raise ValidationError("Webhook 'data' must be an object")
        return envelope

    async def process(self, payload: bytes, signature: Optional[str]) -> WebhookOutcome:
        """Verify, store and apply one delivery.

        Raises WebhookSignatureError for a bad signature and
        WebhookProcessingError when the provider should redeliver.
        """
        self.verify(payload, signature)
        envelope = self.parse(payload)
        event_type = envelope["type"]
        event_id = envelope.get("id")
        data = envelope.get("data") or {}

        event = await self._store(event_id, event_type, envelope)
        if event.processed:
            logger.info("Webhook event %s already processed; no-op", event_id)
            return WebhookOutcome(event_type=event_type, status="duplicate", event_id=event_id)

        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info("Unhandled webhook event type: %s", event_type)
            await self._finish(event, None)
            return WebhookOutcome(event_type=event_type, status="unhandled", event_id=event_id)

        try:
            await handler(data)
        except ACKNOWLEDGED_ERRORS as exc:
            logger.warning("Webhook %s (%s) ignored: %s", event_type, event_id, exc)
            await self._finish(event, str(exc))
            return WebhookOutcome(event_type=event_type, status="ignored", event_id=event_id, error=str(exc))
        except DomainError as exc:
            logger.error("Webhook %s (%s) failed: %s", event_type, event_id, exc)
            await self._record_failure(event, str(exc))
            raise WebhookProcessingError(event_type, str(exc)) from exc
        except Exception as exc:
            logger.exception("Webhook %s (%s) failed unexpectedly", event_type, event_id)
            await self._record_failure(event, str(exc))
            raise WebhookProcessingError(event_type, "Internal error") from exc

        await self._finish(event, None)
        logger.info("Processed webhook %s (%s)", event_type, event_id)
        return WebhookOutcome(event_type=event_type, status="processed", event_id=event_id)

    async def _store(self, event_id: Optional[str], event_type: str, envelope: Dict[str, Any]) -> WebhookEvent:
        if event_id:
            existing = await self.repo.get_webhook_event(self.provider_name, event_id)
            if existing is not None:
                return existing
        return await self.repo.create_webhook_event(
            WebhookEvent(
                id=generate_id(),
                provider=self.provider_name,
                event_id=event_id,
                event_type=event_type,
                payload=envelope,
                created_at=utcnow(),
            )
        )

    async def _finish(self, event: WebhookEvent, note: Optional[str]) -> None:
        await self.repo.update_webhook_event(
            event.id,
            {
                "processed": True,
                "processed_at": utcnow(),
                "processing_error": note,
                "attempts": event.attempts + 1,
            },
        )

    async def _record_failure(self, event: WebhookEvent, error: str) -> None:
        await self.repo.update_webhook_event(
            event.id, {"processing_error": error, "attempts": event.attempts + 1}
        )

    # Handlers
    async def _payment_completed(self, data: Dict[str, Any]) -> None:
        await self.purchases.complete_purchase(_require(data, "id"))

    async def _payment_failed(self, data: Dict[str, Any]) -> None:
        await self.purchases.fail_purchase(_require(data, "id"), reason=data.get("failure_reason"))

    async def _subscription_activated(self, data: Dict[str, Any]) -> None:
        await self.subscriptions.activate_subscription(
            _require(data, "id"), from_unix_seconds(_require(data, "current_period_end"))
        )

    async def _subscription_renewed(self, data: Dict[str, Any]) -> None:
        await self.subscriptions.renew_subscription(
            _require(data, "id"), from_unix_seconds(_require(data, "current_period_end"))
        )

    async def _subscription_canceled(self, data: Dict[str, Any]) -> None:
        await self.subscriptions.deactivate_subscription(_require(data, "id"))

    async def _refund_completed(self, data: Dict[str, Any]) -> None:
        amount = data.get("amount")
        if amount is not None and (isinstance(amount, bool) or not isinstance(amount, int)):
            raise ValidationError("Refund amount must be an integer")
        await self.purchases.record_provider_refund(
            _require(data, "payment_id"), _require(data, "id"), amount
        )

    async def _transfer_completed(self, data: Dict[str, Any]) -> None:
        await self.payouts.mark_payout_completed(_require(data, "id"))

    async def _transfer_failed(self, data: Dict[str, Any]) -> None:
        await self.payouts.mark_payout_failed(_require(data, "id"), reason=data.get("failure_reason"))
