"""Pytest configuration for tests directory."""
import sys
from pathlib import Path

# Add the backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

import pytest

from ledger.domain.payments.configuration import ConfigurationService
from ledger.domain.payments.ledger import LedgerService
from ledger.domain.payments.payouts import PayoutService
from ledger.domain.payments.settlement import PurchaseService
from ledger.domain.payments.subscriptions import SubscriptionService
from ledger.domain.payments.webhooks import WebhookProcessor
from tests.fakes import FakeProvider, InMemoryPaymentRepository

WEBHOOK_SECRET = "whsec_test"


def pytest_configure(config):
    """Register markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests that need a real DB (deselect with '-m \"not integration\"')"
    )


@pytest.fixture
def repo() -> InMemoryPaymentRepository:
    return InMemoryPaymentRepository()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider(webhook_secret=WEBHOOK_SECRET)


@pytest.fixture
def config_service(repo) -> ConfigurationService:
    return ConfigurationService(repo)


@pytest.fixture
def payout_service(repo, provider, config_service) -> PayoutService:
    return PayoutService(repo, provider, config_service)


@pytest.fixture
def purchase_service(repo, provider, config_service, payout_service) -> PurchaseService:
    return PurchaseService(repo, provider, config_service, payout_service)


@pytest.fixture
def subscription_service(repo, provider, config_service, payout_service) -> SubscriptionService:
    return SubscriptionService(repo, provider, config_service, payout_service)


@pytest.fixture
def ledger_service(repo) -> LedgerService:
    return LedgerService(repo)


@pytest.fixture
def webhook_processor(
    repo, provider, purchase_service, subscription_service, payout_service
) -> WebhookProcessor:
    return WebhookProcessor(repo, provider, purchase_service, subscription_service, payout_service)


@pytest.fixture
def sample_users() -> dict:
    return {"buyer": "user-buyer", "creator": "user-creator", "other": "user-other"}
