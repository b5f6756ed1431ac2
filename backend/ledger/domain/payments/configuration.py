"""Payment configuration and fee calculation."""
import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from ledger.domain.common.errors import InvariantViolationError, ValidationError
from ledger.domain.common.locks import KeyedLocks
from ledger.domain.common.types import utcnow
from ledger.domain.payments.models import FeeBreakdown, PaymentConfiguration, PriceValidation
from ledger.domain.payments.repositories import PaymentRepository

logger = logging.getLogger(__name__)

DEFAULT_CONFIGURATION_ID = "default"
DEFAULT_PLATFORM_FEE_PERCENT = 15.0
DEFAULT_MIN_PICK_PRICE = 50  # $0.50
DEFAULT_MAX_PICK_PRICE = 1_000_000  # $10,000
DEFAULT_MIN_SUBSCRIPTION_PRICE = 499  # $4.99
DEFAULT_MAX_SUBSCRIPTION_PRICE = 99_999  # $999.99
DEFAULT_WITHDRAWAL_MINIMUM = 1000  # $10.00
DEFAULT_PAYMENT_PROVIDER = "whop"

# Single-writer guard for lazy creation within this process.
_creation_locks = KeyedLocks()


def format_cents(amount: int) -> str:
    """Render cents as dollars, e.g. 499 -> '$4.99'."""
    return f"${amount / 100:.2f}"


def calculate_fees(amount: int, fee_percent: float) -> FeeBreakdown:
    """Split ``amount`` into platform fee and creator earnings.

    The fee is rounded half-up to whole cents and the creator gets the rest,
    so ``platform_fee + creator_earnings == amount`` for every valid input.
    """
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationError("Amount must be an integer (value in cents)")
    if amount <= 0:
        raise ValidationError("Amount must be greater than 0")
    fee = Decimal(str(fee_percent))
    if fee.is_nan() or fee < 0 or fee > 100:
        raise ValidationError("Fee percent must be between 0 and 100")

    platform_fee = int((Decimal(amount) * fee / Decimal(100)).quantize(Decimal(1), rounding=ROUND_HALF_UP))
    creator_earnings = amount - platform_fee

    if platform_fee + creator_earnings != amount or platform_fee < 0 or creator_earnings < 0:
        logger.critical(
            "Fee split invariant violated: amount=%s fee=%s earnings=%s percent=%s",
            amount, platform_fee, creator_earnings, fee_percent,
        )
        raise InvariantViolationError(f"Fee split for {amount} does not sum to the amount")

    return FeeBreakdown(
        amount=amount,
        platform_fee=platform_fee,
        creator_earnings=creator_earnings,
        fee_percent=float(fee_percent),
    )


class ConfigurationService:
    """Reads the payment configuration, creating it with defaults when absent."""

    def __init__(
        self,
        repo: PaymentRepository,
        platform_fee_percent: float = DEFAULT_PLATFORM_FEE_PERCENT,
        withdrawal_minimum: int = DEFAULT_WITHDRAWAL_MINIMUM,
    ):
        self.repo = repo
        self.platform_fee_percent = platform_fee_percent
        self.withdrawal_minimum = withdrawal_minimum

    def _defaults(self) -> PaymentConfiguration:
        now = utcnow()
        return PaymentConfiguration(
            id=DEFAULT_CONFIGURATION_ID,
            platform_fee_percent=self.platform_fee_percent,
            min_pick_price=DEFAULT_MIN_PICK_PRICE,
            max_pick_price=DEFAULT_MAX_PICK_PRICE,
            min_subscription_price=DEFAULT_MIN_SUBSCRIPTION_PRICE,
            max_subscription_price=DEFAULT_MAX_SUBSCRIPTION_PRICE,
            withdrawal_minimum=self.withdrawal_minimum,
            withdrawal_enabled=True,
            payment_provider=DEFAULT_PAYMENT_PROVIDER,
            created_at=now,
            updated_at=now,
        )

    async def get_configuration(self) -> PaymentConfiguration:
        """Get the configuration; create-or-fetch on first use."""
        config = await self.repo.get_configuration()
        if config:
            return config
        async with _creation_locks.hold(DEFAULT_CONFIGURATION_ID):
            config = await self.repo.get_configuration()
            if config:
                return config
            config = await self.repo.create_configuration(self._defaults())
            logger.info(
                "Created payment configuration: fee=%s%% withdrawal_minimum=%s",
                config.platform_fee_percent,
                format_cents(config.withdrawal_minimum),
            )
            return config

    async def calculate_fees(self, amount: int, custom_fee_percent: Optional[float] = None) -> FeeBreakdown:
        """Calculate platform fee and creator earnings using the configured fee."""
        if custom_fee_percent is None:
            config = await self.get_configuration()
            custom_fee_percent = config.platform_fee_percent
        return calculate_fees(amount, custom_fee_percent)

    async def validate_pick_price(self, price: int) -> PriceValidation:
        """Validate a pick price against the configured range."""
        config = await self.get_configuration()
        if price < config.min_pick_price:
            return PriceValidation(False, f"Price must be at least {format_cents(config.min_pick_price)}")
        if price > config.max_pick_price:
            return PriceValidation(False, f"Price cannot exceed {format_cents(config.max_pick_price)}")
        return PriceValidation(True)

    async def validate_subscription_price(self, price: int) -> PriceValidation:
        """Validate a subscription price against the configured range."""
        config = await self.get_configuration()
        if price < config.min_subscription_price:
            return PriceValidation(
                False, f"Subscription price must be at least {format_cents(config.min_subscription_price)}"
            )
        if price > config.max_subscription_price:
            return PriceValidation(
                False, f"Subscription price cannot exceed {format_cents(config.max_subscription_price)}"
            )
        return PriceValidation(True)
