"""Payment provider protocol."""
from typing import Any, Dict, Optional, Protocol

from ledger.domain.payments.models import ProviderResult


class PaymentProvider(Protocol):
    """Operations the ledger needs from the external payment provider.

    Implementations raise ProviderError on any failure; they never return a
    result for a call that did not succeed.
    """

    async def charge(
        self,
        user_id: str,
        amount: int,
        currency: str,
        description: str,
        metadata: Dict[str, Any],
    ) -> ProviderResult:
        ...

    async def create_subscription(
        self,
        user_id: str,
        plan_id: str,
        metadata: Dict[str, Any],
        trial_days: int = 0,
    ) -> ProviderResult:
        ...

    async def cancel_subscription(self, subscription_id: str, cancel_at_period_end: bool = True) -> ProviderResult:
        ...

    async def transfer(
        self,
        destination_user_id: str,
        amount: int,
        currency: str,
        method: str,
        destination_account: str,
        description: str,
    ) -> ProviderResult:
        ...

    async def refund(
        self, payment_id: str, amount: Optional[int] = None, reason: Optional[str] = None
    ) -> ProviderResult:
        ...

    async def get_payment(self, payment_id: str) -> ProviderResult:
        ...

    def verify_webhook_signature(self, payload: bytes, signature: str) -> bool:
        ...
