"""Tests for the payment configuration service."""
import asyncio

import pytest

from ledger.domain.payments.configuration import ConfigurationService, DEFAULT_CONFIGURATION_ID


class TestConfiguration:
    """Lazy creation and price validation."""

    async def test_created_with_defaults_on_first_read(self, config_service, repo):
        """First read creates the row with platform defaults."""
        config = await config_service.get_configuration()

        assert config.id == DEFAULT_CONFIGURATION_ID
        assert config.platform_fee_percent == 15.0
        assert config.min_pick_price == 50
        assert config.max_pick_price == 1_000_000
        assert config.min_subscription_price == 499
        assert config.max_subscription_price == 99_999
        assert config.withdrawal_minimum == 1000
        assert config.withdrawal_enabled is True
        assert config.payment_provider == "whop"
        assert repo.configuration_creates == 1

    async def test_concurrent_first_reads_create_one_row(self, config_service, repo):
        """Racing first reads all see the same single configuration."""
        configs = await asyncio.gather(*(config_service.get_configuration() for _ in range(5)))

        assert repo.configuration_creates == 1
        assert {c.id for c in configs} == {DEFAULT_CONFIGURATION_ID}

    async def test_existing_row_wins_over_constructor_defaults(self, repo):
        """Settings only seed a new row; an existing row is authoritative."""
        await ConfigurationService(repo, platform_fee_percent=20.0).get_configuration()

        config = await ConfigurationService(repo, platform_fee_percent=5.0).get_configuration()
        assert config.platform_fee_percent == 20.0

    async def test_calculate_fees_uses_configured_percent(self, repo):
        service = ConfigurationService(repo, platform_fee_percent=10.0)

        fees = await service.calculate_fees(1000)
        assert fees.platform_fee == 100
        assert fees.creator_earnings == 900

    async def test_calculate_fees_custom_percent(self, config_service):
        fees = await config_service.calculate_fees(1000, custom_fee_percent=20)
        assert fees.platform_fee == 200
        assert fees.creator_earnings == 800

    @pytest.mark.parametrize(
        "price,valid,error",
        [
            (49, False, "Price must be at least $0.50"),
            (50, True, None),
            (1_000_000, True, None),
            (1_000_001, False, "Price cannot exceed $10000.00"),
        ],
    )
    async def test_validate_pick_price(self, config_service, price, valid, error):
        result = await config_service.validate_pick_price(price)
        assert result.valid is valid
        assert result.error == error

    @pytest.mark.parametrize(
        "price,valid,error",
        [
            (498, False, "Subscription price must be at least $4.99"),
            (499, True, None),
            (99_999, True, None),
            (100_000, False, "Subscription price cannot exceed $999.99"),
        ],
    )
    async def test_validate_subscription_price(self, config_service, price, valid, error):
        result = await config_service.validate_subscription_price(price)
        assert result.valid is valid
        assert result.error == error
