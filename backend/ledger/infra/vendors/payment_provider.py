"""Payment provider (Whop) API client."""
import hashlib
import hmac
import logging
from typing import Any, Dict, Optional

import httpx

from ledger.domain.common.errors import ProviderError
from ledger.domain.payments.models import ProviderResult
from ledger.settings import settings

logger = logging.getLogger(__name__)


def compute_signature(secret: str, payload: bytes) -> str:
    """Hex HMAC-SHA256 of the raw webhook body."""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def _log_connection_error(operation: str, url: str, e: Exception) -> None:
    """Log a clear message when the provider API is unreachable."""
    if isinstance(e, httpx.ConnectError):
        logger.error("Payment provider unreachable at %s during %s (%s)", url, operation, e)
    else:
        logger.error("Payment provider %s failed: %s", operation, e)


class PaymentProviderClient:
    """Async client for the payment provider's REST API.

    Every call is bounded by ``timeout`` seconds. Failures raise ProviderError;
    network errors, timeouts, 429 and 5xx responses are marked retryable.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        app_id: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        environment: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.provider_api_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.provider_api_key
        self.app_id = app_id if app_id is not None else settings.provider_app_id
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.provider_webhook_secret
        self.environment = environment or settings.provider_environment
        self.timeout = timeout if timeout is not None else settings.provider_timeout_seconds
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "X-Whop-App-Id": self.app_id,
        }

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.request(method, url, headers=self._headers(), json=body, params=params)
        except httpx.TimeoutException as e:
            logger.error("Payment provider %s timed out after %ss", operation, self.timeout)
            raise ProviderError("TIMEOUT", f"{operation} timed out", retryable=True) from e
        except httpx.HTTPError as e:
            _log_connection_error(operation, url, e)
            raise ProviderError("NETWORK_ERROR", str(e) or "Network error occurred", retryable=True) from e

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {"data": data}

        if response.is_error:
            code = data.get("code") or "PROVIDER_API_ERROR"
            message = data.get("message") or f"HTTP {response.status_code}"
            retryable = response.status_code == 429 or response.status_code >= 500
            logger.error(
                "Payment provider %s failed: %s %s (HTTP %s)",
                operation, code, message, response.status_code,
            )
            raise ProviderError(
                code, message, payload=data, status_code=response.status_code, retryable=retryable
            )
        return data

    @staticmethod
    def _result(data: Dict[str, Any]) -> ProviderResult:
        return ProviderResult(id=data.get("id"), status=data.get("status"), raw=data)

    async def charge(
        self,
        user_id: str,
        amount: int,
        currency: str,
        description: str,
        metadata: Dict[str, Any],
    ) -> ProviderResult:
        """Create a one-time payment charge."""
        data = await self._request("charge", "POST", "/payments", {
            "user_id": user_id,
            "amount": amount,
            "currency": currency,
            "description": description,
            "metadata": metadata,
            "capture": True,
        })
        return self._result(data)

    async def create_subscription(
        self,
        user_id: str,
        plan_id: str,
        metadata: Dict[str, Any],
        trial_days: int = 0,
    ) -> ProviderResult:
        data = await self._request("create_subscription", "POST", "/subscriptions", {
            "user_id": user_id,
            "plan_id": plan_id,
            "trial_period_days": trial_days,
            "metadata": metadata,
        })
        return self._result(data)

    async def cancel_subscription(self, subscription_id: str, cancel_at_period_end: bool = True) -> ProviderResult:
        data = await self._request(
            "cancel_subscription", "DELETE", f"/subscriptions/{subscription_id}",
            {"cancel_at_period_end": cancel_at_period_end},
        )
        return self._result(data)

    async def get_subscription(self, subscription_id: str) -> ProviderResult:
        return self._result(await self._request("get_subscription", "GET", f"/subscriptions/{subscription_id}"))

    async def transfer(
        self,
        destination_user_id: str,
        amount: int,
        currency: str,
        method: str,
        destination_account: str,
        description: str,
    ) -> ProviderResult:
        """Transfer money to a user (payout)."""
        data = await self._request("transfer", "POST", "/transfers", {
            "destination": destination_user_id,
            "amount": amount,
            "currency": currency,
            "transfer_method": method,
            "destination_account": destination_account,
            "description": description,
        })
        return self._result(data)

    async def get_transfer(self, transfer_id: str) -> ProviderResult:
        return self._result(await self._request("get_transfer", "GET", f"/transfers/{transfer_id}"))

    async def refund(
        self, payment_id: str, amount: Optional[int] = None, reason: Optional[str] = None
    ) -> ProviderResult:
        body: Dict[str, Any] = {}
        if amount is not None:
            body["amount"] = amount
        if reason:
            body["reason"] = reason
        data = await self._request("refund", "POST", f"/payments/{payment_id}/refund", body)
        return self._result(data)

    async def get_payment(self, payment_id: str) -> ProviderResult:
        return self._result(await self._request("get_payment", "GET", f"/payments/{payment_id}"))

    async def get_balance(self, user_id: str) -> Dict[str, Any]:
        return await self._request("get_balance", "GET", f"/balances/{user_id}")

    def verify_webhook_signature(self, payload: bytes, signature: str) -> bool:
        """Constant-time check of the hex HMAC-SHA256 signature over the raw body."""
        if not self.webhook_secret:
            logger.error("Webhook secret is not configured; rejecting webhook")
            return False
        if not signature:
            return False
        expected = compute_signature(self.webhook_secret, payload)
        return hmac.compare_digest(expected.encode("utf-8"), signature.strip().lower().encode("utf-8"))

    def is_configured(self) -> bool:
        return bool(self.api_key and self.webhook_secret and self.app_id)

    def get_status(self) -> Dict[str, Any]:
        return {
            "configured": self.is_configured(),
            "environment": self.environment,
            "api_url": self.base_url,
            "has_api_key": bool(self.api_key),
            "has_webhook_secret": bool(self.webhook_secret),
            "has_app_id": bool(self.app_id),
        }
