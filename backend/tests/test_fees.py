"""Tests for fee calculation."""
import pytest

from ledger.domain.common.errors import ValidationError
from ledger.domain.payments.configuration import calculate_fees, format_cents


class TestCalculateFees:
    """Platform fee / creator earnings split."""

    @pytest.mark.parametrize(
        "amount,percent,fee,earnings",
        [
            (1000, 15, 150, 850),
            (999, 15, 150, 849),
            (50, 15, 8, 42),
            (1, 15, 0, 1),
            (4, 12.5, 1, 3),
            (100, 33.33, 33, 67),
            (2500, 0, 0, 2500),
            (2500, 100, 2500, 0),
        ],
    )
    def test_split(self, amount, percent, fee, earnings):
        """Fee is rounded half-up and the creator gets the remainder."""
        result = calculate_fees(amount, percent)
        assert result.platform_fee == fee
        assert result.creator_earnings == earnings
        assert result.amount == amount
        assert result.fee_percent == float(percent)

    def test_split_always_sums_to_amount(self):
        """fee + earnings == amount across a sweep of prices and rates."""
        for amount in range(1, 3000, 7):
            for percent in (0, 2.5, 10, 15, 17.5, 33.33, 50, 99.99, 100):
                result = calculate_fees(amount, percent)
                assert result.platform_fee + result.creator_earnings == amount
                assert result.platform_fee >= 0
                assert result.creator_earnings >= 0

    @pytest.mark.parametrize("amount", [0, -1, -500])
    def test_rejects_non_positive_amount(self, amount):
        with pytest.raises(ValidationError):
            calculate_fees(amount, 15)

    @pytest.mark.parametrize("amount", [1.5, "100", None, True])
    def test_rejects_non_integer_amount(self, amount):
        """Amounts are integer cents only."""
        with pytest.raises(ValidationError):
            calculate_fees(amount, 15)

    @pytest.mark.parametrize("percent", [-0.01, 100.01, float("nan")])
    def test_rejects_out_of_range_percent(self, percent):
        with pytest.raises(ValidationError):
            calculate_fees(1000, percent)


def test_format_cents():
    assert format_cents(499) == "$4.99"
    assert format_cents(50) == "$0.50"
    assert format_cents(1_000_000) == "$10000.00"
