"""
Stripe webhook ingestion.

Delivery is at-least-once. Every ledger write uses the provider's payment
intent id as ``external_id`` so a redelivered event cannot add a second row,
and any processing error is allowed to propagate so the provider retries.
Nothing is parsed or written before the signature has been verified.
"""

import json
import logging
from typing import Callable, Optional

import stripe

from .errors import CreatorNotFoundError, ProviderError, TicketNotFoundError, WebhookSignatureError
from .ledger import PaymentLedger
from .models import RecordPaymentRequest, WebhookOutcome
from .onboarding import OnboardingService
from .provider import PaymentProvider
from .tickets import TicketLifecycle

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
AMOUNT_CAPTURABLE_UPDATED = "payment_intent.amount_capturable_updated"
PAYMENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_FAILED = "payment_intent.payment_failed"
ACCOUNT_UPDATED = "account.updated"


def verify_event(payload: bytes, signature_header: Optional[str], secret: str, tolerance: int = 300) -> dict:
    """Check the ``Stripe-Signature`` header and return the decoded event."""
    if not signature_header:
        raise WebhookSignatureError("Missing stripe-signature header")
    if not secret:
        raise WebhookSignatureError("Webhook secret is not configured")

    try:
        body = payload.decode("utf-8") if isinstance(payload, bytes) else payload
    except UnicodeDecodeError as e:
        raise WebhookSignatureError("Invalid payload") from e
    try:
        stripe.WebhookSignature.verify_header(body, signature_header, secret, tolerance)
    except stripe.SignatureVerificationError as e:
        raise WebhookSignatureError(f"Webhook signature verification failed: {e}") from e

    try:
        event = json.loads(body)
    except ValueError as e:
        raise WebhookSignatureError("Invalid payload") from e
    if not isinstance(event, dict) or "type" not in event:
        raise WebhookSignatureError("Invalid payload")
    return event


class WebhookProcessor:
    def __init__(
        self,
        ledger: PaymentLedger,
        tickets: TicketLifecycle,
        onboarding: OnboardingService,
        webhook_secret: str,
        tolerance_seconds: int = 300,
        provider: Optional[PaymentProvider] = None,
        provider_name: str = "stripe",
    ):
        self.ledger = ledger
        self.tickets = tickets
        self.onboarding = onboarding
        self.webhook_secret = webhook_secret
        self.tolerance_seconds = tolerance_seconds
        self.provider = provider
        self.provider_name = provider.name if provider is not None else provider_name

        self._handlers: dict[str, Callable[[dict, dict], WebhookOutcome]] = {
            CHECKOUT_COMPLETED: self._on_checkout_completed,
            AMOUNT_CAPTURABLE_UPDATED: self._on_amount_capturable_updated,
            PAYMENT_SUCCEEDED: self._on_payment_succeeded,
            PAYMENT_FAILED: self._on_payment_failed,
            ACCOUNT_UPDATED: self._on_account_updated,
        }

    def handle(self, payload: bytes, signature_header: Optional[str]) -> WebhookOutcome:
        try:
            event = verify_event(payload, signature_header, self.webhook_secret, self.tolerance_seconds)
        except WebhookSignatureError as e:
            logger.warning("Rejected webhook delivery: %s", e)
            raise

        event_type = event["type"]
        logger.info("Event received %s %s", event.get("id"), event_type)

        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info("Unhandled event type %s", event_type)
            return self._outcome(event, "ignored")

        obj = (event.get("data") or {}).get("object") or {}
        return handler(event, obj)

    def _on_checkout_completed(self, event: dict, session: dict) -> WebhookOutcome:
        if session.get("payment_status") != "paid":
            # Manual-capture sessions complete unpaid; the capture records the payment
            logger.info("Session %s not paid (%s), skipping", session.get("id"), session.get("payment_status"))
            return self._outcome(event, "skipped")

        metadata = session.get("metadata") or {}
        creator_slug = metadata.get("creatorSlug")
        ticket_ref = metadata.get("ticketRef")
        intent_id = self._object_id(session.get("payment_intent"))
        if not creator_slug or not intent_id:
            logger.warning(
                "Missing metadata on session %s, skipping payment record (metadata=%s, payment_intent=%s)",
                session.get("id"), metadata, intent_id,
            )
            return self._outcome(event, "skipped")

        return self._record(
            event,
            creator_slug=creator_slug,
            ticket_ref=ticket_ref,
            external_id=intent_id,
            amount=session.get("amount_total") or 0,
            currency=session.get("currency") or "usd",
        )

    def _on_amount_capturable_updated(self, event: dict, intent: dict) -> WebhookOutcome:
        ticket_ref = (intent.get("metadata") or {}).get("ticketRef")
        if not ticket_ref:
            logger.warning("Authorization for %s carries no ticketRef", intent.get("id"))
            return self._outcome(event, "skipped")

        logger.info("Payment authorized for ticket %s", ticket_ref)
        try:
            response = self.tickets.mark_authorized(ticket_ref, payment_intent_id=intent.get("id"))
        except TicketNotFoundError:
            logger.warning("Authorization for unknown ticket %s", ticket_ref)
            return self._outcome(event, "skipped")
        if intent.get("id") and response.ticket.payment_intent_id != intent.get("id"):
            return self._outcome(event, "stale_authorization")
        return self._outcome(event, "ticket_opened")

    def _on_payment_succeeded(self, event: dict, intent: dict) -> WebhookOutcome:
        if intent.get("status") != "succeeded":
            return self._outcome(event, "skipped")

        metadata = intent.get("metadata") or {}
        creator_slug = metadata.get("creatorSlug")
        if not creator_slug:
            logger.warning("Missing metadata on intent %s, skipping payment record", intent.get("id"))
            return self._outcome(event, "skipped")

        return self._record(
            event,
            creator_slug=creator_slug,
            ticket_ref=metadata.get("ticketRef"),
            external_id=intent["id"],
            amount=intent.get("amount_received") or intent.get("amount") or 0,
            currency=intent.get("currency") or "usd",
        )

    def _on_payment_failed(self, event: dict, intent: dict) -> WebhookOutcome:
        error = (intent.get("last_payment_error") or {}).get("message")
        logger.warning("Payment failed for %s: %s", intent.get("id"), error)
        return self._outcome(event, "logged")

    def _on_account_updated(self, event: dict, account: dict) -> WebhookOutcome:
        logger.info(
            "Account updated %s details_submitted=%s payouts_enabled=%s",
            account.get("id"), account.get("details_submitted"), account.get("payouts_enabled"),
        )
        if not (account.get("details_submitted") and account.get("payouts_enabled")):
            return self._outcome(event, "ignored")

        try:
            self.onboarding.mark_onboarding_complete(account["id"])
        except CreatorNotFoundError:
            logger.warning("No creator found for Stripe account %s", account.get("id"))
            return self._outcome(event, "skipped")
        return self._outcome(event, "onboarding_complete")

    def _record(self, event: dict, creator_slug: str, ticket_ref: Optional[str], external_id: str,
                amount: int, currency: str) -> WebhookOutcome:
        existing = self.ledger.get_payment_by_external_id(external_id)
        if existing:
            logger.info("Payment %s already recorded as %s", external_id, existing.id)
            return self._outcome(event, "duplicate", payment_id=existing.id)

        if self.ledger.storage.get_creator(creator_slug) is None:
            # Still recorded: the charge happened, but it needs a human to route it
            logger.warning("Payment %s names unknown creator %s", external_id, creator_slug)

        fee_cents, net_cents = self._provider_fees(external_id)
        created = event.get("created")
        result = self.ledger.record_payment(RecordPaymentRequest(
            creator_slug=creator_slug,
            amount_gross=amount,
            currency=currency,
            external_id=external_id,
            provider=self.provider_name,
            ticket_ref=ticket_ref,
            # Stripe reports event time in seconds
            created_at=created * 1000 if created else None,
            provider_fee_cents=fee_cents,
            net_cents=net_cents,
        ))
        action = "payment_recorded" if result.created else "duplicate"
        return self._outcome(event, action, payment_id=result.payment_id)

    def _provider_fees(self, intent_id: str) -> tuple[int, Optional[int]]:
        if self.provider is None:
            return 0, None
        try:
            details = self.provider.retrieve_payment(intent_id)
        except ProviderError as e:
            # The gross is authoritative; a missing fee only lowers the deduction
            logger.warning("Could not fetch fees for %s, recording without them: %s", intent_id, e)
            return 0, None
        return details.provider_fee_cents, details.net_cents

    @staticmethod
    def _object_id(value) -> Optional[str]:
        if isinstance(value, dict):
            return value.get("id")
        return value

    @staticmethod
    def _outcome(event: dict, action: str, payment_id: Optional[str] = None) -> WebhookOutcome:
        return WebhookOutcome(event_id=event.get("id"), event_type=event["type"], action=action, payment_id=payment_id)
