"""Payment provider webhook endpoint."""
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel

from ledger.api.deps import get_webhook_processor
from ledger.domain.payments.webhooks import WebhookProcessor

router = APIRouter()


class WebhookAck(BaseModel):
    received: bool = True
    status: str
    event_type: str


@router.post("/payments", response_model=WebhookAck)
async def receive_payment_webhook(
    request: Request,
    x_webhook_signature: Optional[str] = Header(default=None),
    processor: WebhookProcessor = Depends(get_webhook_processor),
):
    """Verify and apply one provider event.

    401 for a bad signature, 500 when the provider should redeliver.
    """
    payload = await request.body()
    outcome = await processor.process(payload, x_webhook_signature)
    return WebhookAck(status=outcome.status, event_type=outcome.event_type)
