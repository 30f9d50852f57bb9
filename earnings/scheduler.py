import logging
from datetime import datetime
from typing import Callable, Optional

from .errors import DuplicateKeyError, StorageError
from .fees import FeePolicy
from .ledger import PaymentLedger
from .models import (
    Creator,
    Payout,
    PayoutFailure,
    PayoutRunResult,
    PayoutStatus,
    Period,
)
from .periods import from_millis, month_range_utc, now_millis, previous_month
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)

CREATED = "created"
UPDATED = "updated"
SKIPPED = "skipped"


class PayoutScheduler:
    """
    Builds one pending payout row per creator per calendar month.

    The ``(creator_slug, period_start, period_end)`` triple is the idempotency
    key: a rerun for the same month overwrites the monetary fields of the
    existing row and puts it back to ``pending`` instead of adding a second
    row. Each creator is an independent unit; a failure is recorded on the
    run result and the loop moves on.
    """

    def __init__(
        self,
        storage: InMemoryStorage,
        ledger: PaymentLedger,
        fee_policy: FeePolicy,
        currency: str = "usd",
        payouts_disabled: bool = False,
        clock: Callable[[], int] = now_millis,
    ):
        self.storage = storage
        self.ledger = ledger
        self.fee_policy = fee_policy
        self.currency = currency
        self.payouts_disabled = payouts_disabled
        self.clock = clock

    def schedule_monthly_payouts(self, year: int, month: int) -> PayoutRunResult:
        period = month_range_utc(year, month)
        result = PayoutRunResult(period=period)
        logger.info("Scheduling payouts for %04d-%02d", year, month)

        for row in self.storage.list_creators_with_account():
            creator = Creator(**row)
            try:
                outcome = self._schedule_for_creator(creator, period)
            except Exception as e:
                logger.exception("Payout scheduling failed for %s", creator.slug)
                result.failed.append(PayoutFailure(creator_slug=creator.slug, error=str(e)))
                continue

            if outcome == CREATED:
                result.created += 1
            elif outcome == UPDATED:
                result.updated += 1
            elif outcome == SKIPPED:
                result.skipped += 1

        logger.info(
            "Payout run %04d-%02d done: created=%d updated=%d skipped=%d failed=%d",
            year, month, result.created, result.updated, result.skipped, len(result.failed),
        )
        return result

    def run_previous_month(self, now: Optional[datetime] = None) -> Optional[PayoutRunResult]:
        if self.payouts_disabled:
            logger.info("Skipping monthly payouts because payouts are disabled")
            return None
        year, month = previous_month(now or from_millis(self.clock()))
        return self.schedule_monthly_payouts(year, month)

    def _schedule_for_creator(self, creator: Creator, period: Period) -> Optional[str]:
        totals = self.ledger.sum_for_period(creator.slug, period.period_start, period.period_end)
        if totals.gross_cents == 0:
            return None

        fee = self.fee_policy.compute(totals.gross_cents)
        amounts = {
            "gross_cents": totals.gross_cents,
            "platform_fee_cents": fee.platform_fee_cents,
            "provider_fee_cents": totals.provider_fee_cents,
            "payout_cents": max(0, totals.gross_cents - fee.platform_fee_cents - totals.provider_fee_cents),
        }

        existing = self.storage.get_payout_by_period(creator.slug, period.period_start, period.period_end)
        if existing is None:
            try:
                self._insert_payout(creator, period, amounts)
                return CREATED
            except DuplicateKeyError:
                # Another run inserted the row between our read and write
                existing = self.storage.get_payout_by_period(creator.slug, period.period_start, period.period_end)
                if existing is None:
                    raise StorageError(f"Payout for {creator.slug} reported duplicate but is missing")

        return self._update_payout(Payout(**existing), amounts)

    def _insert_payout(self, creator: Creator, period: Period, amounts: dict) -> str:
        now = self.clock()
        payout_id = self.storage.insert_payout({
            "creator_slug": creator.slug,
            "period_start": period.period_start,
            "period_end": period.period_end,
            "currency": self.currency,
            "status": PayoutStatus.PENDING.value,
            "created_at": now,
            "updated_at": now,
            **amounts,
        })
        logger.info(
            "Created payout %s for %s: gross=%d fee=%d payout=%d",
            payout_id, creator.slug, amounts["gross_cents"],
            amounts["platform_fee_cents"], amounts["payout_cents"],
        )
        return payout_id

    def _update_payout(self, existing: Payout, amounts: dict) -> str:
        if existing.status == PayoutStatus.PAID:
            logger.warning(
                "Payout %s for %s is already paid, leaving it untouched",
                existing.id, existing.creator_slug,
            )
            return SKIPPED

        self.storage.patch_payout(existing.id, {
            **amounts,
            "status": PayoutStatus.PENDING.value,
            "updated_at": self.clock(),
        })
        logger.info(
            "Updated payout %s for %s: gross=%d fee=%d payout=%d",
            existing.id, existing.creator_slug, amounts["gross_cents"],
            amounts["platform_fee_cents"], amounts["payout_cents"],
        )
        return UPDATED
