"""
Read views over the payment ledger for the creator earnings dashboard.

Every figure is derived from raw payment rows on request. The all-time platform
fee is recomputed month by month so it matches what the payout scheduler
charges for each period rather than applying the fee rule once to a lifetime
total.
"""

import logging
from collections import defaultdict
from datetime import datetime
from typing import Callable, Optional

from .fees import FeePolicy
from .ledger import PaymentLedger
from .models import (
    AllTimeEarnings,
    ConnectionStatus,
    Creator,
    EarningsDashboard,
    Payout,
    PayoutStatus,
    Period,
    PeriodSummary,
)
from .periods import current_month_range_utc, period_key, trailing_periods, utc_now
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)

TRAILING_PERIODS = 3
PAYOUT_HISTORY_LIMIT = 50


class EarningsAggregator:
    def __init__(
        self,
        storage: InMemoryStorage,
        ledger: PaymentLedger,
        fee_policy: FeePolicy,
        trailing_count: int = TRAILING_PERIODS,
        payout_history_limit: int = PAYOUT_HISTORY_LIMIT,
        now: Callable[[], datetime] = utc_now,
    ):
        self.storage = storage
        self.ledger = ledger
        self.fee_policy = fee_policy
        self.trailing_count = trailing_count
        self.payout_history_limit = payout_history_limit
        self.now = now

    def summarize_period(self, creator_slug: str, period: Period) -> PeriodSummary:
        totals = self.ledger.sum_for_period(creator_slug, period.period_start, period.period_end)
        fee = self.fee_policy.compute(totals.gross_cents)

        return PeriodSummary(
            creator_slug=creator_slug,
            period_start=period.period_start,
            period_end=period.period_end,
            gross_cents=totals.gross_cents,
            provider_fee_cents=totals.provider_fee_cents,
            net_cents=max(0, totals.gross_cents - totals.provider_fee_cents),
            threshold_cents=self.fee_policy.threshold_cents,
            platform_fee_rate_bps=fee.platform_fee_rate_bps,
            platform_fee_cents=fee.platform_fee_cents,
            payout_cents=max(0, totals.gross_cents - fee.platform_fee_cents - totals.provider_fee_cents),
            threshold_reached=fee.threshold_reached,
            fee_policy=self.fee_policy.name,
        )

    def current_period_summary(self, creator_slug: str) -> PeriodSummary:
        return self.summarize_period(creator_slug, current_month_range_utc(self.now()))

    def last_periods_summaries(self, creator_slug: str, n: Optional[int] = None) -> list[PeriodSummary]:
        count = self.trailing_count if n is None else n
        return [
            self.summarize_period(creator_slug, period)
            for period in trailing_periods(count, self.now())
        ]

    def all_time_earnings(self, creator_slug: str) -> AllTimeEarnings:
        gross_cents = 0
        provider_fee_cents = 0
        gross_by_month: dict[tuple[int, int], int] = defaultdict(int)

        for payment in self.ledger.succeeded_payments(creator_slug):
            gross_cents += payment.amount_gross
            provider_fee_cents += payment.provider_fee_cents
            gross_by_month[period_key(payment.created_at)] += payment.amount_gross

        platform_fee_cents = 0
        payout_cents = 0
        for month_gross in gross_by_month.values():
            fee = self.fee_policy.compute(month_gross)
            platform_fee_cents += fee.platform_fee_cents
            payout_cents += fee.payout_cents

        return AllTimeEarnings(
            creator_slug=creator_slug,
            all_time_gross_cents=gross_cents,
            all_time_provider_fee_cents=provider_fee_cents,
            all_time_platform_fee_cents=platform_fee_cents,
            all_time_payout_cents=max(0, payout_cents - provider_fee_cents),
        )

    def connection_status(self, creator_slug: str) -> ConnectionStatus:
        row = self.storage.get_creator(creator_slug)
        if row is None:
            return ConnectionStatus(connected=False)

        creator = Creator(**row)
        return ConnectionStatus(
            connected=creator.is_connected,
            stripe_account_id=creator.stripe_account_id,
            details_submitted=creator.payout_enabled,
        )

    def payout_history(self, creator_slug: str) -> list[Payout]:
        rows = self.storage.list_payouts(creator_slug, descending=True, take=self.payout_history_limit)
        return [Payout(**row) for row in rows]

    def dashboard(self, creator_slug: str) -> EarningsDashboard:
        logger.debug("Building earnings dashboard for %s", creator_slug)
        history = self.payout_history(creator_slug)
        upcoming = next((p for p in history if p.status == PayoutStatus.PENDING), None)

        return EarningsDashboard(
            creator_slug=creator_slug,
            connection=self.connection_status(creator_slug),
            current_period=self.current_period_summary(creator_slug),
            last_periods=self.last_periods_summaries(creator_slug),
            all_time=self.all_time_earnings(creator_slug),
            upcoming_payout=upcoming,
            payout_history=history,
        )
