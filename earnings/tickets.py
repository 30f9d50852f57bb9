"""
Ticket payment lifecycle.

    held ──authorized──▶ open ──approve──▶ approved ──close──▶ closed
      │                   │
      └──────expire───────┴──reject/expire──▶ rejected

A paid ticket starts ``held`` and only becomes ``open`` (visible to the
creator) once the provider confirms the authorization hold. Approval captures
the hold and records the payment; rejection releases the hold and writes
nothing to the ledger. ``approved`` and ``rejected`` are final for the money.
"""

import logging
from typing import Callable, Optional

from .errors import (
    InvalidStateTransitionError,
    PaymentIntentStateError,
    ProviderError,
    TicketNotFoundError,
)
from .ledger import PaymentLedger
from .models import (
    QueueKind,
    RecordPaymentRequest,
    RejectionReason,
    Ticket,
    TicketPaymentStatus,
    TicketResponse,
    TicketStatus,
)
from .periods import now_millis
from .provider import PaymentProvider
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)

DAY_MS = 24 * 60 * 60 * 1000
TICKET_EXPIRY_DAYS = 7


class TicketLifecycle:
    def __init__(
        self,
        storage: InMemoryStorage,
        ledger: PaymentLedger,
        provider: PaymentProvider,
        expiry_days: int = TICKET_EXPIRY_DAYS,
        clock: Callable[[], int] = now_millis,
    ):
        self.storage = storage
        self.ledger = ledger
        self.provider = provider
        self.expiry_days = expiry_days
        self.clock = clock

    def get_ticket(self, ref: str) -> Ticket:
        row = self.storage.get_ticket(ref)
        if not row:
            raise TicketNotFoundError(f"Ticket {ref} not found")
        return Ticket(**row)

    def register_hold(
        self,
        ref: str,
        creator_slug: str,
        tip_cents: int,
        payment_intent_id: Optional[str],
        queue_kind: QueueKind = QueueKind.PRIORITY,
        paid: bool = True,
    ) -> Ticket:
        existing = self.storage.get_ticket(ref)
        if existing:
            ticket = Ticket(**existing)
            if payment_intent_id and ticket.status == TicketStatus.HELD and ticket.payment_intent_id != payment_intent_id:
                # A new checkout attempt for the same ticket replaces the pending intent
                row = self.storage.patch_ticket(ref, {
                    "payment_intent_id": payment_intent_id,
                    "payment_status": TicketPaymentStatus.PENDING.value,
                })
                return Ticket(**row)
            return ticket

        # Free tickets have nothing to authorize
        status = TicketStatus.HELD if paid else TicketStatus.OPEN
        data = {
            "ref": ref,
            "creator_slug": creator_slug,
            "queue_kind": QueueKind(queue_kind).value,
            "tip_cents": tip_cents,
            "status": status.value,
            "payment_intent_id": payment_intent_id,
            "payment_status": TicketPaymentStatus.PENDING.value if paid else None,
            "created_at": self.clock(),
            "resolved_at": None,
            "rejection_reason": None,
        }
        self.storage.insert_ticket(data)
        logger.info("Registered ticket %s for %s as %s", ref, creator_slug, status.value)
        return Ticket(**data)

    def mark_authorized(self, ref: str, payment_intent_id: Optional[str] = None) -> TicketResponse:
        ticket = self.get_ticket(ref)
        if payment_intent_id and ticket.payment_intent_id and payment_intent_id != ticket.payment_intent_id:
            # A replaced checkout attempt was authorized late; its hold must not open the ticket
            logger.warning(
                "Authorization for %s does not match ticket %s intent %s, releasing it",
                payment_intent_id, ref, ticket.payment_intent_id,
            )
            self.provider.cancel_payment(payment_intent_id)
            return TicketResponse(ticket=ticket, message="Stale authorization released")

        if not ticket.can_authorize():
            # Redelivered authorization events land here
            logger.info("Ticket %s already %s, ignoring authorization", ref, ticket.status.value)
            return TicketResponse(ticket=ticket, message=f"Ticket already {ticket.status.value}")

        fields = {
            "status": TicketStatus.OPEN.value,
            "payment_status": TicketPaymentStatus.REQUIRES_CAPTURE.value,
        }
        if payment_intent_id and not ticket.payment_intent_id:
            fields["payment_intent_id"] = payment_intent_id
        row = self.storage.patch_ticket(ref, fields)
        logger.info("Payment authorized for ticket %s, now open", ref)
        return TicketResponse(ticket=Ticket(**row), message="Ticket opened")

    def approve(self, ref: str) -> TicketResponse:
        ticket = self.get_ticket(ref)
        if not ticket.can_decide():
            raise InvalidStateTransitionError(
                f"Cannot approve ticket in {ticket.status.value} state. Only open tickets can be approved."
            )

        payment_id = None
        if ticket.payment_intent_id:
            payment_id = self._capture_and_record(ticket)
        elif ticket.payment_status is not None:
            raise InvalidStateTransitionError(f"Ticket {ref} is paid but has no payment intent to capture")

        row = self.storage.patch_ticket(ref, {
            "status": TicketStatus.APPROVED.value,
            "payment_status": TicketPaymentStatus.SUCCEEDED.value if ticket.payment_intent_id else None,
            "resolved_at": self.clock(),
        })
        return TicketResponse(
            ticket=Ticket(**row),
            payment_id=payment_id,
            message="Ticket approved" if payment_id else "Ticket approved (no payment)",
        )

    def reject(self, ref: str) -> TicketResponse:
        ticket = self.get_ticket(ref)
        if not ticket.can_decide():
            raise InvalidStateTransitionError(
                f"Cannot reject ticket in {ticket.status.value} state. Only open tickets can be rejected."
            )
        return self._release(ticket, RejectionReason.CREATOR_REJECTED)

    def close(self, ref: str) -> TicketResponse:
        ticket = self.get_ticket(ref)
        if not ticket.can_close():
            raise InvalidStateTransitionError(
                f"Cannot close ticket in {ticket.status.value} state. Only approved tickets can be closed."
            )
        row = self.storage.patch_ticket(ref, {"status": TicketStatus.CLOSED.value})
        return TicketResponse(ticket=Ticket(**row), message="Ticket closed")

    def expire_stale(self, creator_slug: str, now: Optional[int] = None) -> list[Ticket]:
        now = self.clock() if now is None else now
        cutoff = now - self.expiry_days * DAY_MS
        rows = self.storage.list_tickets(
            creator_slug,
            statuses=[TicketStatus.HELD.value, TicketStatus.OPEN.value],
        )

        expired = []
        for row in rows:
            ticket = Ticket(**row)
            if not ticket.can_expire() or ticket.created_at > cutoff:
                continue
            age_days = (now - ticket.created_at) // DAY_MS
            logger.info("Auto-expiring ticket %s (%d days old)", ticket.ref, age_days)
            try:
                expired.append(self._release(ticket, RejectionReason.EXPIRED).ticket)
            except (InvalidStateTransitionError, ProviderError) as e:
                logger.error("Could not expire ticket %s: %s", ticket.ref, e)
        return expired

    def _capture_and_record(self, ticket: Ticket) -> str:
        try:
            captured = self.provider.capture_payment(ticket.payment_intent_id)
        except PaymentIntentStateError:
            # A previous approval captured the funds but did not finish
            logger.info("PaymentIntent %s was already captured, verifying", ticket.payment_intent_id)
            captured = self.provider.retrieve_payment(ticket.payment_intent_id)

        if captured.status != TicketPaymentStatus.SUCCEEDED.value:
            raise InvalidStateTransitionError(
                f"Capture of {ticket.payment_intent_id} for ticket {ticket.ref} ended in status {captured.status}"
            )

        result = self.ledger.record_payment(RecordPaymentRequest(
            creator_slug=ticket.creator_slug,
            amount_gross=captured.amount,
            currency=captured.currency,
            external_id=captured.intent_id,
            provider=self.provider.name,
            ticket_ref=ticket.ref,
            provider_fee_cents=captured.provider_fee_cents,
            net_cents=captured.net_cents,
        ))
        return result.payment_id

    def _release(self, ticket: Ticket, reason: RejectionReason) -> TicketResponse:
        if ticket.payment_intent_id:
            current = self.provider.retrieve_payment(ticket.payment_intent_id)
            if current.status == TicketPaymentStatus.REQUIRES_CAPTURE.value:
                self.provider.cancel_payment(ticket.payment_intent_id)
            elif current.status == TicketPaymentStatus.SUCCEEDED.value:
                raise InvalidStateTransitionError(
                    f"Funds for ticket {ticket.ref} were already captured and cannot be released"
                )
            else:
                logger.info(
                    "PaymentIntent %s is %s, nothing to cancel",
                    ticket.payment_intent_id, current.status,
                )

        row = self.storage.patch_ticket(ticket.ref, {
            "status": TicketStatus.REJECTED.value,
            "payment_status": TicketPaymentStatus.CANCELED.value if ticket.payment_intent_id else None,
            "rejection_reason": reason.value,
            "resolved_at": self.clock(),
        })
        logger.info("Ticket %s rejected (%s)", ticket.ref, reason.value)
        return TicketResponse(ticket=Ticket(**row), message=f"Ticket rejected ({reason.value})")
