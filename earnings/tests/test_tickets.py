"""
Unit Tests for the Ticket Payment Lifecycle

Tests cover:
1. Holds only open after authorization
2. Approval captures once and records exactly one payment
3. Rejection releases the hold and records nothing
4. Fail-closed behavior on provider errors
5. Stale ticket expiry
"""

import pytest

from earnings.errors import InvalidStateTransitionError, ProviderError, TicketNotFoundError
from earnings.models import RejectionReason, TicketPaymentStatus, TicketStatus

from fakes import DEFAULT_NOW, FakeClock, FakeProvider, add_creator, make_services

CREATOR = "ada"
DAY_MS = 24 * 60 * 60 * 1000


def held_ticket(services, provider, ref="T-1", amount=2500, intent_id="pi_hold_1"):
    provider.add_intent(intent_id, amount, status="requires_payment_method")
    return services.tickets.register_hold(ref, CREATOR, amount, intent_id)


def open_ticket(services, provider, ref="T-1", amount=2500, intent_id="pi_hold_1"):
    held_ticket(services, provider, ref, amount, intent_id)
    provider.authorize(intent_id)
    services.tickets.mark_authorized(ref)
    return services.tickets.get_ticket(ref)


class TestHoldAndAuthorization:
    """Tests for the held and open states."""

    def test_paid_ticket_starts_held(self):
        """Test that a paid ticket is not visible before authorization."""
        provider = FakeProvider()
        services = make_services(provider=provider)

        ticket = held_ticket(services, provider)

        assert ticket.status == TicketStatus.HELD
        assert ticket.payment_status == TicketPaymentStatus.PENDING

    def test_authorization_opens_ticket(self):
        """Test the held to open transition."""
        provider = FakeProvider()
        services = make_services(provider=provider)
        held_ticket(services, provider)

        response = services.tickets.mark_authorized("T-1")

        assert response.ticket.status == TicketStatus.OPEN
        assert response.ticket.payment_status == TicketPaymentStatus.REQUIRES_CAPTURE

    def test_redelivered_authorization_is_noop(self):
        """Test that a second authorization event changes nothing."""
        provider = FakeProvider()
        services = make_services(provider=provider)
        open_ticket(services, provider)
        services.tickets.approve("T-1")

        response = services.tickets.mark_authorized("T-1")

        assert response.ticket.status == TicketStatus.APPROVED
        assert "already" in response.message

    def test_authorization_fills_missing_intent(self):
        """Test that a session created without an intent learns it on authorization."""
        provider = FakeProvider()
        services = make_services(provider=provider)
        services.tickets.register_hold("T-1", CREATOR, 2500, None)

        response = services.tickets.mark_authorized("T-1", payment_intent_id="pi_late")

        assert response.ticket.payment_intent_id == "pi_late"
        assert response.ticket.status == TicketStatus.OPEN

    def test_register_hold_is_idempotent(self):
        """Test that registering the same ticket twice keeps one ticket."""
        provider = FakeProvider()
        services = make_services(provider=provider)
        held_ticket(services, provider)

        again = services.tickets.register_hold("T-1", CREATOR, 2500, "pi_hold_1")

        assert again.status == TicketStatus.HELD
        assert len(services.storage.tickets) == 1

    def test_new_checkout_replaces_pending_intent(self):
        """Test that a retried checkout swaps the intent on a held ticket."""
        provider = FakeProvider()
        services = make_services(provider=provider)
        held_ticket(services, provider)

        ticket = services.tickets.register_hold("T-1", CREATOR, 2500, "pi_hold_2")

        assert ticket.payment_intent_id == "pi_hold_2"

    def test_late_authorization_of_replaced_intent(self):
        """Test that the superseded intent is released and the ticket stays held."""
        provider = FakeProvider()
        services = make_services(provider=provider)
        held_ticket(services, provider, intent_id="pi_old")
        held_ticket(services, provider, intent_id="pi_new")
        provider.authorize("pi_old")

        response = services.tickets.mark_authorized("T-1", payment_intent_id="pi_old")

        assert response.ticket.status == TicketStatus.HELD
        assert response.ticket.payment_intent_id == "pi_new"
        assert services.tickets.get_ticket("T-1").status == TicketStatus.HELD
        assert provider.called("cancel_payment") == ["pi_old"]

    def test_free_ticket_starts_open(self):
        """Test that a ticket with nothing to authorize is open at once."""
        services = make_services()

        ticket = services.tickets.register_hold("T-free", CREATOR, 0, None, paid=False)

        assert ticket.status == TicketStatus.OPEN
        assert ticket.payment_status is None

    def test_unknown_ticket(self):
        """Test that an unknown ticket ref raises."""
        services = make_services()

        with pytest.raises(TicketNotFoundError):
            services.tickets.mark_authorized("missing")


class TestApprove:
    """Tests for approving a ticket."""

    def test_approve_captures_and_records_payment(self):
        """Test that approval records exactly one payment for the captured amount."""
        provider = FakeProvider(provider_fee_cents=103)
        services = make_services(provider=provider)
        add_creator(services.storage, CREATOR)
        open_ticket(services, provider)

        response = services.tickets.approve("T-1")

        assert response.ticket.status == TicketStatus.APPROVED
        assert response.ticket.payment_status == TicketPaymentStatus.SUCCEEDED
        assert len(services.storage.payments) == 1
        payment = services.ledger.get_payment_by_external_id("pi_hold_1")
        assert payment.id == response.payment_id
        assert payment.amount_gross == 2500
        assert payment.provider_fee_cents == 103
        assert payment.ticket_ref == "T-1"

    def test_held_ticket_cannot_be_approved(self):
        """Test that a ticket never skips authorization."""
        provider = FakeProvider()
        services = make_services(provider=provider)
        held_ticket(services, provider)

        with pytest.raises(InvalidStateTransitionError):
            services.tickets.approve("T-1")
        assert provider.called("capture_payment") == []
        assert services.storage.payments == {}

    def test_approve_twice_rejected(self):
        """Test that a second approval is refused without a second capture."""
        provider = FakeProvider()
        services = make_services(provider=provider)
        open_ticket(services, provider)
        services.tickets.approve("T-1")

        with pytest.raises(InvalidStateTransitionError):
            services.tickets.approve("T-1")
        assert len(provider.called("capture_payment")) == 1
        assert len(services.storage.payments) == 1

    def test_already_captured_intent_is_recorded_once(self):
        """Test recovery when a previous approval captured but did not finish."""
        provider = FakeProvider()
        services = make_services(provider=provider)
        open_ticket(services, provider)
        provider.intents["pi_hold_1"]["status"] = "succeeded"

        response = services.tickets.approve("T-1")

        assert response.ticket.status == TicketStatus.APPROVED
        assert provider.called("retrieve_payment") == ["pi_hold_1"]
        assert len(services.storage.payments) == 1

    def test_capture_failure_leaves_ticket_open(self):
        """Test that a provider error records nothing and keeps the ticket open."""
        provider = FakeProvider()
        services = make_services(provider=provider)
        open_ticket(services, provider)
        provider.fail_capture = True

        with pytest.raises(ProviderError):
            services.tickets.approve("T-1")

        assert services.tickets.get_ticket("T-1").status == TicketStatus.OPEN
        assert services.storage.payments == {}

    def test_canceled_intent_cannot_be_approved(self):
        """Test that an intent cancelled upstream is not recorded."""
        provider = FakeProvider()
        services = make_services(provider=provider)
        open_ticket(services, provider)
        provider.intents["pi_hold_1"]["status"] = "canceled"

        with pytest.raises(InvalidStateTransitionError):
            services.tickets.approve("T-1")
        assert services.tickets.get_ticket("T-1").status == TicketStatus.OPEN
        assert services.storage.payments == {}

    def test_free_ticket_approved_without_payment(self):
        """Test approval of a ticket with no payment attached."""
        services = make_services()
        services.tickets.register_hold("T-free", CREATOR, 0, None, paid=False)

        response = services.tickets.approve("T-free")

        assert response.ticket.status == TicketStatus.APPROVED
        assert response.payment_id is None
        assert services.storage.payments == {}

    def test_close_after_approve(self):
        """Test the approved to closed transition."""
        provider = FakeProvider()
        services = make_services(provider=provider)
        open_ticket(services, provider)
        services.tickets.approve("T-1")

        response = services.tickets.close("T-1")

        assert response.ticket.status == TicketStatus.CLOSED

    def test_close_open_ticket_rejected(self):
        """Test that only approved tickets can be closed."""
        provider = FakeProvider()
        services = make_services(provider=provider)
        open_ticket(services, provider)

        with pytest.raises(InvalidStateTransitionError):
            services.tickets.close("T-1")


class TestReject:
    """Tests for rejecting a ticket."""

    def test_reject_cancels_hold_and_records_nothing(self):
        """Test that rejection releases the authorization."""
        provider = FakeProvider()
        services = make_services(provider=provider)
        open_ticket(services, provider)

        response = services.tickets.reject("T-1")

        assert response.ticket.status == TicketStatus.REJECTED
        assert response.ticket.rejection_reason == RejectionReason.CREATOR_REJECTED
        assert response.ticket.payment_status == TicketPaymentStatus.CANCELED
        assert provider.called("cancel_payment") == ["pi_hold_1"]
        assert services.storage.payments == {}

    def test_reject_approved_ticket_refused(self):
        """Test that approved is final."""
        provider = FakeProvider()
        services = make_services(provider=provider)
        open_ticket(services, provider)
        services.tickets.approve("T-1")

        with pytest.raises(InvalidStateTransitionError):
            services.tickets.reject("T-1")

    def test_reject_refused_when_funds_captured(self):
        """Test that captured funds are never silently dropped."""
        provider = FakeProvider()
        services = make_services(provider=provider)
        open_ticket(services, provider)
        provider.intents["pi_hold_1"]["status"] = "succeeded"

        with pytest.raises(InvalidStateTransitionError):
            services.tickets.reject("T-1")
        assert services.tickets.get_ticket("T-1").status == TicketStatus.OPEN


class TestExpiry:
    """Tests for auto-expiring stale tickets."""

    def test_stale_tickets_expire(self):
        """Test that tickets older than the expiry window are released."""
        provider = FakeProvider()
        clock = FakeClock()
        services = make_services(provider=provider, clock=clock)
        open_ticket(services, provider, ref="T-old", intent_id="pi_old")
        held_ticket(services, provider, ref="T-held", intent_id="pi_held")

        expired = services.tickets.expire_stale(CREATOR, now=clock.millis() + 8 * DAY_MS)

        assert sorted(t.ref for t in expired) == ["T-held", "T-old"]
        old = services.tickets.get_ticket("T-old")
        assert old.status == TicketStatus.REJECTED
        assert old.rejection_reason == RejectionReason.EXPIRED
        assert provider.called("cancel_payment") == ["pi_old"]

    def test_recent_tickets_kept(self):
        """Test that tickets inside the window are untouched."""
        provider = FakeProvider()
        clock = FakeClock()
        services = make_services(provider=provider, clock=clock)
        open_ticket(services, provider)

        expired = services.tickets.expire_stale(CREATOR, now=clock.millis() + 6 * DAY_MS)

        assert expired == []
        assert services.tickets.get_ticket("T-1").status == TicketStatus.OPEN

    def test_decided_tickets_not_expired(self):
        """Test that approved tickets are left alone."""
        provider = FakeProvider()
        clock = FakeClock(DEFAULT_NOW)
        services = make_services(provider=provider, clock=clock)
        open_ticket(services, provider)
        services.tickets.approve("T-1")

        assert services.tickets.expire_stale(CREATOR, now=clock.millis() + 30 * DAY_MS) == []

    def test_expiry_continues_past_captured_ticket(self):
        """Test that one ticket that cannot be released does not block the rest."""
        provider = FakeProvider()
        clock = FakeClock()
        services = make_services(provider=provider, clock=clock)
        open_ticket(services, provider, ref="T-captured", intent_id="pi_captured")
        open_ticket(services, provider, ref="T-2", intent_id="pi_2")
        provider.intents["pi_captured"]["status"] = "succeeded"

        expired = services.tickets.expire_stale(CREATOR, now=clock.millis() + 8 * DAY_MS)

        assert [t.ref for t in expired] == ["T-2"]
        assert services.tickets.get_ticket("T-captured").status == TicketStatus.OPEN
