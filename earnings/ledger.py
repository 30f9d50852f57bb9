import logging
from typing import Callable, Iterator, Optional

from .errors import DuplicateKeyError, StorageError
from .models import (
    Payment,
    PaymentStatus,
    PeriodTotals,
    RecordPaymentRequest,
    RecordPaymentResult,
)
from .periods import now_millis
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)


class PaymentLedger:
    """
    Append-only record of captured payments.

    Rows are keyed by the provider's transaction id. Recording the same
    ``external_id`` again returns the stored row untouched, which is what makes
    webhook redelivery and repeated captures safe. Totals are always summed
    from the rows; there is no running balance.
    """

    def __init__(self, storage: InMemoryStorage, clock: Callable[[], int] = now_millis):
        self.storage = storage
        self.clock = clock

    def record_payment(self, request: RecordPaymentRequest) -> RecordPaymentResult:
        existing = self.get_payment_by_external_id(request.external_id)
        if existing:
            logger.info("Payment %s already recorded as %s, skipping", request.external_id, existing.id)
            return RecordPaymentResult(payment_id=existing.id, created=False)

        created_at = request.created_at if request.created_at is not None else self.clock()
        payment_data = {
            "creator_slug": request.creator_slug,
            "amount_gross": request.amount_gross,
            "currency": request.currency.lower(),
            "status": PaymentStatus(request.status).value,
            "provider": request.provider,
            "external_id": request.external_id,
            "created_at": created_at,
            "ticket_ref": request.ticket_ref,
            "provider_fee_cents": request.provider_fee_cents,
            "net_cents": request.net_cents,
        }

        try:
            payment_id = self.storage.insert_payment(payment_data)
        except DuplicateKeyError:
            # Lost a race with a concurrent delivery of the same event
            winner = self.get_payment_by_external_id(request.external_id)
            if winner is None:
                raise StorageError(f"Payment {request.external_id} reported duplicate but is missing")
            logger.info("Payment %s inserted concurrently as %s", request.external_id, winner.id)
            return RecordPaymentResult(payment_id=winner.id, created=False)

        logger.info(
            "Recorded payment %s for %s: %s %s (fee %s)",
            request.external_id, request.creator_slug, request.amount_gross,
            request.currency, request.provider_fee_cents,
        )
        return RecordPaymentResult(payment_id=payment_id, created=True)

    def get_payment_by_external_id(self, external_id: str) -> Optional[Payment]:
        row = self.storage.get_payment_by_external_id(external_id)
        return Payment(**row) if row else None

    def sum_for_period(self, creator_slug: str, period_start: int, period_end: int) -> PeriodTotals:
        return self._totals(self.succeeded_payments(creator_slug, period_start, period_end))

    def all_time_totals(self, creator_slug: str) -> PeriodTotals:
        return self._totals(self.succeeded_payments(creator_slug))

    def succeeded_payments(
        self,
        creator_slug: str,
        period_start: Optional[int] = None,
        period_end: Optional[int] = None,
    ) -> Iterator[Payment]:
        rows = self.storage.query_payments(
            creator_slug,
            start=period_start,
            end=period_end,
            status=PaymentStatus.SUCCEEDED.value,
        )
        for row in rows:
            yield Payment(**row)

    @staticmethod
    def _totals(payments) -> PeriodTotals:
        totals = PeriodTotals()
        for p in payments:
            totals.gross_cents += p.amount_gross
            totals.provider_fee_cents += p.provider_fee_cents
            totals.net_cents += p.effective_net_cents
        return totals
