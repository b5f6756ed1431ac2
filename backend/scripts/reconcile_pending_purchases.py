#!/usr/bin/env python3
"""Settle purchases stuck in PENDING by polling the payment provider.

Run periodically (cron) to catch payments whose completion webhook never arrived.
Usage: python scripts/reconcile_pending_purchases.py [--older-than MINUTES] [--limit N]
"""
import argparse
import asyncio
import logging
import sys
from datetime import timedelta
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from ledger.domain.common.errors import DomainError
from ledger.domain.common.types import utcnow
from ledger.domain.payments.configuration import ConfigurationService
from ledger.domain.payments.payouts import PayoutService
from ledger.domain.payments.settlement import PurchaseService
from ledger.infra.db.repositories.payment_repo import PaymentRepositoryImpl
from ledger.infra.db.session import dispose_engine, get_sessionmaker
from ledger.infra.vendors.payment_provider import PaymentProviderClient
from ledger.settings import settings

logger = logging.getLogger("reconcile_pending_purchases")


async def reconcile(older_than_minutes: int, limit: int) -> int:
    """Reconcile up to ``limit`` pending purchases; returns how many changed state."""
    provider = PaymentProviderClient()
    changed = 0
    async with get_sessionmaker()() as session:
        repo = PaymentRepositoryImpl(session)
        config = ConfigurationService(
            repo,
            platform_fee_percent=settings.platform_fee_percentage,
            withdrawal_minimum=settings.default_min_payout,
        )
        payouts = PayoutService(
            repo, provider, config,
            currency=settings.currency,
            auto_withdraw_threshold=settings.auto_withdraw_threshold,
        )
        purchases = PurchaseService(repo, provider, config, payouts, currency=settings.currency)

        cutoff = utcnow() - timedelta(minutes=older_than_minutes)
        pending = await repo.list_pending_purchases(cutoff, limit=limit)
        print(f"Found {len(pending)} pending purchases older than {older_than_minutes} minutes")
        for purchase in pending:
            try:
                result = await purchases.reconcile_purchase(purchase.provider_payment_id)
            except DomainError as e:
                logger.error("Could not reconcile %s: %s", purchase.provider_payment_id, e)
                continue
            if result.status != purchase.status:
                changed += 1
            print(f"  {purchase.provider_payment_id}: {purchase.status.value} -> {result.status.value}")
    await dispose_engine()
    return changed


def main() -> int:
    parser = argparse.ArgumentParser(description="Reconcile pending purchases with the payment provider")
    parser.add_argument(
        "--older-than",
        type=int,
        default=settings.reconcile_pending_after_minutes,
        help="Only purchases pending for at least this many minutes",
    )
    parser.add_argument("--limit", type=int, default=100)
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    changed = asyncio.run(reconcile(args.older_than, args.limit))
    print(f"Reconciled {changed} purchases")
    return 0


if __name__ == "__main__":
    sys.exit(main())
