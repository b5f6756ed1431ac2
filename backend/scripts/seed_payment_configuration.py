"""Create the payment configuration row from settings. Idempotent."""
import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from ledger.domain.payments.configuration import ConfigurationService, format_cents
from ledger.infra.db.repositories.payment_repo import PaymentRepositoryImpl
from ledger.infra.db.session import dispose_engine, get_sessionmaker
from ledger.settings import settings


async def seed_payment_configuration():
    """Create-or-fetch the configuration and print it."""
    async with get_sessionmaker()() as session:
        service = ConfigurationService(
            PaymentRepositoryImpl(session),
            platform_fee_percent=settings.platform_fee_percentage,
            withdrawal_minimum=settings.default_min_payout,
        )
        config = await service.get_configuration()
        print(f"Payment configuration '{config.id}':")
        print(f"  platform fee:      {config.platform_fee_percent}%")
        print(f"  pick price:        {format_cents(config.min_pick_price)} - {format_cents(config.max_pick_price)}")
        print(
            f"  subscription:      {format_cents(config.min_subscription_price)}"
            f" - {format_cents(config.max_subscription_price)}"
        )
        print(f"  withdrawal min:    {format_cents(config.withdrawal_minimum)}")
        print(f"  withdrawals:       {'enabled' if config.withdrawal_enabled else 'disabled'}")
        print(f"  provider:          {config.payment_provider}")
    await dispose_engine()


if __name__ == "__main__":
    asyncio.run(seed_payment_configuration())
