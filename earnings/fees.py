"""
Platform fee policies.

The fee is always recomputed from a gross amount and never stored on its own.
Two rules exist and are exposed as named policies; a deployment picks one with
the ``FEE_POLICY`` setting and the same instance is shared by the earnings
aggregator and the payout scheduler so the dashboard and the payout rows agree.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from .config import Settings
from .errors import ConfigurationError
from .models import FeeResult

THRESHOLD_CENTS = 5000
FEE_PER_BLOCK_CENTS = 333
MONTHLY_THRESHOLD_CENTS = 5000
PLATFORM_FEE_BPS = 330


def effective_rate_bps(platform_fee_cents: int, gross_cents: int) -> int:
    if gross_cents <= 0:
        return 0
    rate = Decimal(platform_fee_cents) * Decimal(10000) / Decimal(gross_cents)
    return int(rate.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _check_gross(gross_cents: int) -> None:
    if gross_cents < 0:
        raise ValueError(f"gross_cents must be non-negative, got {gross_cents}")


class FeePolicy:
    name = "base"

    @property
    def threshold_cents(self) -> int:
        raise NotImplementedError

    def compute(self, gross_cents: int) -> FeeResult:
        raise NotImplementedError

    def _below_threshold(self, gross_cents: int) -> FeeResult:
        return FeeResult(
            platform_fee_cents=0,
            payout_cents=gross_cents,
            threshold_reached=False,
            platform_fee_rate_bps=0,
        )


class BlockFeePolicy(FeePolicy):
    """
    Flat fee per completed threshold block.

    Only full blocks are charged: 9999 cents is one block, 10000 is two. The
    remainder above the last full block is fee-free.
    """

    name = "block"

    def __init__(self, threshold_cents: int = THRESHOLD_CENTS, fee_per_block_cents: int = FEE_PER_BLOCK_CENTS):
        if threshold_cents <= 0:
            raise ConfigurationError("threshold_cents must be positive")
        self._threshold_cents = threshold_cents
        self.fee_per_block_cents = fee_per_block_cents

    @property
    def threshold_cents(self) -> int:
        return self._threshold_cents

    def compute(self, gross_cents: int) -> FeeResult:
        _check_gross(gross_cents)
        if gross_cents < self._threshold_cents:
            return self._below_threshold(gross_cents)

        blocks = gross_cents // self._threshold_cents
        platform_fee_cents = blocks * self.fee_per_block_cents
        return FeeResult(
            platform_fee_cents=platform_fee_cents,
            payout_cents=gross_cents - platform_fee_cents,
            threshold_reached=True,
            platform_fee_rate_bps=effective_rate_bps(platform_fee_cents, gross_cents),
        )


class BasisPointsFeePolicy(FeePolicy):
    """Percentage fee on the whole gross once the monthly threshold is reached."""

    name = "bps"

    def __init__(self, threshold_cents: int = MONTHLY_THRESHOLD_CENTS, fee_bps: int = PLATFORM_FEE_BPS):
        if threshold_cents < 0 or fee_bps < 0:
            raise ConfigurationError("threshold_cents and fee_bps must be non-negative")
        self._threshold_cents = threshold_cents
        self.fee_bps = fee_bps

    @property
    def threshold_cents(self) -> int:
        return self._threshold_cents

    def compute(self, gross_cents: int) -> FeeResult:
        _check_gross(gross_cents)
        if gross_cents < self._threshold_cents:
            return self._below_threshold(gross_cents)

        # Floor so the platform never rounds a fee up against the creator
        platform_fee_cents = gross_cents * self.fee_bps // 10000
        return FeeResult(
            platform_fee_cents=platform_fee_cents,
            payout_cents=gross_cents - platform_fee_cents,
            threshold_reached=True,
            platform_fee_rate_bps=effective_rate_bps(platform_fee_cents, gross_cents),
        )


_default_policy = BlockFeePolicy()


def compute_fee(gross_cents: int) -> FeeResult:
    """Apply the default block policy (5000-cent blocks, 333 cents each)."""
    return _default_policy.compute(gross_cents)


def get_fee_policy(name: Optional[str] = None, settings: Optional[Settings] = None) -> FeePolicy:
    settings = settings or Settings()
    name = (name or settings.FEE_POLICY).lower()

    if name == BlockFeePolicy.name:
        return BlockFeePolicy(settings.THRESHOLD_CENTS, settings.FEE_PER_BLOCK_CENTS)
    if name == BasisPointsFeePolicy.name:
        return BasisPointsFeePolicy(settings.MONTHLY_THRESHOLD_CENTS, settings.PLATFORM_FEE_BPS)
    raise ConfigurationError(f"Unknown fee policy '{name}'. Expected 'block' or 'bps'.")
