"""
Unit Tests for the Payout Scheduler

Tests cover:
1. One payout per connected creator per month
2. Rerun idempotency and late-payment overwrite
3. Paid payouts are never rewritten
4. Per-creator failure isolation
5. Previous-month run and the disable switch
"""

from datetime import datetime, timezone

from earnings.errors import StorageError
from earnings.models import Payout, PayoutStatus, RecordPaymentRequest
from earnings.periods import month_range_utc

from fakes import add_creator, make_services, millis

YEAR, MONTH = 2025, 2


def record(services, creator, external_id, amount, created_at, **fields):
    services.ledger.record_payment(RecordPaymentRequest(
        creator_slug=creator,
        amount_gross=amount,
        external_id=external_id,
        created_at=created_at,
        **fields,
    ))


def payout_for(services, creator, year=YEAR, month=MONTH):
    period = month_range_utc(year, month)
    row = services.storage.get_payout_by_period(creator, period.period_start, period.period_end)
    return Payout(**row) if row else None


class TestScheduleMonthlyPayouts:
    """Tests for creating payout rows."""

    def test_creates_payout_per_creator(self):
        """Test that each connected creator with earnings gets one payout."""
        services = make_services()
        add_creator(services.storage, "ada")
        add_creator(services.storage, "grace")
        record(services, "ada", "pi_1", 6000, millis(2025, 2, 3))
        record(services, "grace", "pi_2", 1200, millis(2025, 2, 20))

        result = services.scheduler.schedule_monthly_payouts(YEAR, MONTH)

        assert result.created == 2
        assert result.failed == []
        ada = payout_for(services, "ada")
        assert ada.gross_cents == 6000
        assert ada.platform_fee_cents == 333
        assert ada.payout_cents == 5667
        assert ada.status == PayoutStatus.PENDING
        assert ada.period_end == month_range_utc(2025, 3).period_start
        assert payout_for(services, "grace").platform_fee_cents == 0

    def test_fee_plus_payout_equals_gross(self):
        """Test the fee invariant on a scheduled row."""
        services = make_services()
        add_creator(services.storage, "ada")
        record(services, "ada", "pi_1", 12345, millis(2025, 2, 3))

        services.scheduler.schedule_monthly_payouts(YEAR, MONTH)

        payout = payout_for(services, "ada")
        assert payout.platform_fee_cents + payout.payout_cents == payout.gross_cents

    def test_provider_fees_reduce_payout(self):
        """Test that processing fees are stored and deducted."""
        services = make_services()
        add_creator(services.storage, "ada")
        record(services, "ada", "pi_1", 6000, millis(2025, 2, 3), provider_fee_cents=204)

        services.scheduler.schedule_monthly_payouts(YEAR, MONTH)

        payout = payout_for(services, "ada")
        assert payout.provider_fee_cents == 204
        assert payout.payout_cents == 6000 - 333 - 204

    def test_zero_gross_creates_no_row(self):
        """Test that a creator with no earnings gets no payout."""
        services = make_services()
        add_creator(services.storage, "ada")
        record(services, "ada", "pi_jan", 6000, millis(2025, 1, 3))

        result = services.scheduler.schedule_monthly_payouts(YEAR, MONTH)

        assert result.created == 0
        assert payout_for(services, "ada") is None

    def test_creator_without_account_is_skipped(self):
        """Test that creators who never connected are not scheduled."""
        services = make_services()
        add_creator(services.storage, "ada", connected=False)
        record(services, "ada", "pi_1", 6000, millis(2025, 2, 3))

        result = services.scheduler.schedule_monthly_payouts(YEAR, MONTH)

        assert result.created == 0
        assert payout_for(services, "ada") is None

    def test_only_period_payments_count(self):
        """Test that payments on the boundaries land in the right month."""
        services = make_services()
        add_creator(services.storage, "ada")
        february = month_range_utc(YEAR, MONTH)
        record(services, "ada", "pi_first", 100, february.period_start)
        record(services, "ada", "pi_next", 900, february.period_end)

        services.scheduler.schedule_monthly_payouts(YEAR, MONTH)

        assert payout_for(services, "ada").gross_cents == 100


class TestRerunIdempotency:
    """Tests for running the same month more than once."""

    def test_rerun_creates_nothing_new(self):
        """Test that a second run updates in place with unchanged amounts."""
        services = make_services()
        add_creator(services.storage, "ada")
        add_creator(services.storage, "grace")
        record(services, "ada", "pi_1", 6000, millis(2025, 2, 3))
        record(services, "grace", "pi_2", 1200, millis(2025, 2, 20))

        first = services.scheduler.schedule_monthly_payouts(YEAR, MONTH)
        before = payout_for(services, "ada")
        second = services.scheduler.schedule_monthly_payouts(YEAR, MONTH)
        after = payout_for(services, "ada")

        assert first.created == 2
        assert second.created == 0
        assert second.updated == 2
        assert len(services.storage.payouts) == 2
        assert after.id == before.id
        assert (after.gross_cents, after.platform_fee_cents, after.payout_cents) == (
            before.gross_cents, before.platform_fee_cents, before.payout_cents,
        )

    def test_late_payment_overwrites_and_resets_status(self):
        """Test that a rerun after a late payment recomputes and sets pending."""
        services = make_services()
        add_creator(services.storage, "ada")
        record(services, "ada", "pi_1", 4000, millis(2025, 2, 3))
        services.scheduler.schedule_monthly_payouts(YEAR, MONTH)
        payout = payout_for(services, "ada")
        services.storage.patch_payout(payout.id, {"status": PayoutStatus.FAILED.value})

        record(services, "ada", "pi_late", 2000, millis(2025, 2, 27))
        result = services.scheduler.schedule_monthly_payouts(YEAR, MONTH)

        updated = payout_for(services, "ada")
        assert result.updated == 1
        assert updated.id == payout.id
        assert updated.gross_cents == 6000
        assert updated.platform_fee_cents == 333
        assert updated.payout_cents == 5667
        assert updated.status == PayoutStatus.PENDING

    def test_paid_payout_is_left_untouched(self):
        """Test that a rerun never rewrites money that has already been paid."""
        services = make_services()
        add_creator(services.storage, "ada")
        record(services, "ada", "pi_1", 4000, millis(2025, 2, 3))
        services.scheduler.schedule_monthly_payouts(YEAR, MONTH)
        payout = payout_for(services, "ada")
        services.storage.patch_payout(payout.id, {"status": PayoutStatus.PAID.value})

        record(services, "ada", "pi_late", 2000, millis(2025, 2, 27))
        result = services.scheduler.schedule_monthly_payouts(YEAR, MONTH)

        unchanged = payout_for(services, "ada")
        assert result.skipped == 1
        assert unchanged.status == PayoutStatus.PAID
        assert unchanged.gross_cents == 4000

    def test_concurrent_insert_falls_back_to_update(self):
        """Test that losing the insert race updates the winner's row."""
        services = make_services()
        add_creator(services.storage, "ada")
        record(services, "ada", "pi_1", 6000, millis(2025, 2, 3))
        period = month_range_utc(YEAR, MONTH)

        original_lookup = services.storage.get_payout_by_period
        calls = {"n": 0}

        def lookup_missing_once(creator_slug, start, end):
            calls["n"] += 1
            if calls["n"] == 1:
                services.storage.insert_payout({
                    "creator_slug": creator_slug,
                    "period_start": start,
                    "period_end": end,
                    "gross_cents": 1,
                    "platform_fee_cents": 0,
                    "payout_cents": 1,
                    "status": PayoutStatus.PENDING.value,
                    "created_at": period.period_end,
                })
                return None
            return original_lookup(creator_slug, start, end)

        services.storage.get_payout_by_period = lookup_missing_once
        result = services.scheduler.schedule_monthly_payouts(YEAR, MONTH)

        assert result.created == 0
        assert result.updated == 1
        assert len(services.storage.payouts) == 1
        assert payout_for(services, "ada").gross_cents == 6000


class TestFailureIsolation:
    """Tests for per-creator error handling."""

    def test_one_failure_does_not_stop_the_run(self):
        """Test that a failing creator is reported and the others still get payouts."""
        services = make_services()
        for slug in ("ada", "bob", "grace"):
            add_creator(services.storage, slug)
            record(services, slug, f"pi_{slug}", 6000, millis(2025, 2, 3))

        original_insert = services.storage.insert_payout

        def failing_insert(data):
            if data["creator_slug"] == "bob":
                raise StorageError("write timed out")
            return original_insert(data)

        services.storage.insert_payout = failing_insert
        result = services.scheduler.schedule_monthly_payouts(YEAR, MONTH)

        assert result.created == 2
        assert result.succeeded == 2
        assert [f.creator_slug for f in result.failed] == ["bob"]
        assert "write timed out" in result.failed[0].error
        assert payout_for(services, "bob") is None
        assert payout_for(services, "grace") is not None

    def test_retry_after_failure(self):
        """Test that rerunning after a failure completes the missing creator."""
        services = make_services()
        add_creator(services.storage, "ada")
        record(services, "ada", "pi_1", 6000, millis(2025, 2, 3))
        original_insert = services.storage.insert_payout

        def failing_insert(data):
            raise StorageError("unavailable")

        services.storage.insert_payout = failing_insert
        first = services.scheduler.schedule_monthly_payouts(YEAR, MONTH)
        services.storage.insert_payout = original_insert
        second = services.scheduler.schedule_monthly_payouts(YEAR, MONTH)

        assert len(first.failed) == 1
        assert second.created == 1
        assert second.failed == []


class TestPreviousMonthRun:
    """Tests for the cron-style entry."""

    def test_runs_previous_month(self):
        """Test that the job targets the month before now."""
        services = make_services()
        add_creator(services.storage, "ada")
        record(services, "ada", "pi_1", 6000, millis(2024, 12, 10))

        result = services.scheduler.run_previous_month(datetime(2025, 1, 1, 0, 5, tzinfo=timezone.utc))

        assert (result.period.year, result.period.month) == (2024, 12)
        assert result.created == 1

    def test_disabled(self):
        """Test that the disable switch skips the run entirely."""
        services = make_services(PAYOUTS_DISABLED=True)
        add_creator(services.storage, "ada")
        record(services, "ada", "pi_1", 6000, millis(2024, 12, 10))

        assert services.scheduler.run_previous_month(datetime(2025, 1, 1, tzinfo=timezone.utc)) is None
        assert services.storage.payouts == {}
