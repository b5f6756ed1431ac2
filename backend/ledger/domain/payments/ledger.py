"""Ledger queries: transaction history, summaries and admin listings."""
from typing import Optional, Tuple

from ledger.domain.common.errors import ValidationError
from ledger.domain.payments.models import (
    IN_FLIGHT_PAYOUT_STATUSES,
    SPEND_TYPES,
    EARNING_TYPES,
    LedgerTransaction,
    Page,
    Payout,
    PayoutStatus,
    PayoutTotals,
    TransactionFilter,
    TransactionSummary,
    TransactionType,
)
from ledger.domain.payments.repositories import PaymentRepository

MAX_PAGE_SIZE = 100


def _page_bounds(page: int, limit: int) -> Tuple[int, int]:
    if page < 1:
        raise ValidationError("Page must be at least 1")
    if limit < 1:
        raise ValidationError("Limit must be at least 1")
    limit = min(limit, MAX_PAGE_SIZE)
    return (page - 1) * limit, limit


class LedgerService:
    """Read side of the ledger. Never writes."""

    def __init__(self, repo: PaymentRepository):
        self.repo = repo

    async def get_transaction_summary(self, user_id: str) -> TransactionSummary:
        """Totals over the user's completed ledger lines."""
        sums = await self.repo.summarize_transactions(user_id)
        return TransactionSummary(
            total_spent=sum(sums.get(t, 0) for t in SPEND_TYPES),
            total_earned=sum(sums.get(t, 0) for t in EARNING_TYPES),
            total_withdrawn=sums.get(TransactionType.PAYOUT, 0),
        )

    async def get_transaction_history(
        self,
        user_id: str,
        type: Optional[TransactionType] = None,
        page: int = 1,
        limit: int = 50,
    ) -> Tuple[Page[LedgerTransaction], TransactionSummary]:
        """One page of the user's ledger lines (newest first) plus their summary."""
        offset, limit = _page_bounds(page, limit)
        items, total = await self.repo.list_transactions(
            TransactionFilter(type=type, user_id=user_id), offset=offset, limit=limit
        )
        summary = await self.get_transaction_summary(user_id)
        return Page(items=items, total=total, page=page, limit=limit), summary

    async def list_transactions(
        self, filters: TransactionFilter, page: int = 1, limit: int = 50
    ) -> Page[LedgerTransaction]:
        """Admin view over every ledger line."""
        offset, limit = _page_bounds(page, limit)
        items, total = await self.repo.list_transactions(filters, offset=offset, limit=limit)
        return Page(items=items, total=total, page=page, limit=limit)

    async def list_payouts(
        self,
        status: Optional[PayoutStatus] = None,
        user_id: Optional[str] = None,
        page: int = 1,
        limit: int = 50,
    ) -> Tuple[Page[Payout], PayoutTotals]:
        """Admin view over payouts plus the in-flight totals."""
        offset, limit = _page_bounds(page, limit)
        items, total = await self.repo.list_payouts(user_id=user_id, status=status, offset=offset, limit=limit)
        pending_amount, pending_count = await self.repo.payout_totals(IN_FLIGHT_PAYOUT_STATUSES)
        return (
            Page(items=items, total=total, page=page, limit=limit),
            PayoutTotals(pending_amount=pending_amount, pending_count=pending_count),
        )
