"""
Payment provider boundary.

``PaymentProvider`` is the interface the engine talks to. ``StripeProvider``
implements it on top of an explicitly constructed ``stripe.StripeClient`` so
the API key, timeout and retry policy belong to the instance built by the
process entry point, and tests can pass a fake provider instead.
"""

import logging
from contextlib import contextmanager
from typing import Optional

import stripe

from .errors import ConfigurationError, PaymentIntentStateError, ProviderError
from .models import (
    AccountLink,
    AccountStatus,
    CapturedPayment,
    CheckoutSession,
    CheckoutSessionRequest,
    Creator,
)

logger = logging.getLogger(__name__)

UNEXPECTED_STATE = "payment_intent_unexpected_state"


class PaymentProvider:
    name = "provider"

    def create_checkout_session(self, creator: Creator, request: CheckoutSessionRequest, currency: str) -> CheckoutSession:
        raise NotImplementedError

    def capture_payment(self, intent_id: str) -> CapturedPayment:
        raise NotImplementedError

    def retrieve_payment(self, intent_id: str) -> CapturedPayment:
        raise NotImplementedError

    def cancel_payment(self, intent_id: str) -> str:
        raise NotImplementedError

    def create_account(self) -> str:
        raise NotImplementedError

    def create_account_link(self, stripe_account_id: str, refresh_url: str, return_url: str) -> AccountLink:
        raise NotImplementedError

    def retrieve_account(self, stripe_account_id: str) -> AccountStatus:
        raise NotImplementedError


@contextmanager
def _stripe_call(action: str):
    try:
        yield
    except stripe.InvalidRequestError as e:
        if getattr(e, "code", None) == UNEXPECTED_STATE:
            raise PaymentIntentStateError(f"{action}: {e.user_message or str(e)}") from e
        raise ProviderError(f"{action} failed: {e.user_message or str(e)}") from e
    except stripe.StripeError as e:
        logger.error("Stripe call failed during %s: %s", action, e)
        raise ProviderError(f"{action} failed: {e.user_message or str(e)}") from e


def _object_id(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return getattr(value, "id", None)


class StripeProvider(PaymentProvider):
    name = "stripe"

    def __init__(
        self,
        api_key: str,
        timeout_seconds: int = 30,
        max_network_retries: int = 2,
        client: Optional[stripe.StripeClient] = None,
    ):
        if client is None:
            if not api_key:
                raise ConfigurationError("STRIPE_API_KEY is required")
            client = stripe.StripeClient(
                api_key,
                max_network_retries=max_network_retries,
                http_client=stripe.RequestsClient(timeout=timeout_seconds),
            )
        self.client = client

    def create_checkout_session(self, creator: Creator, request: CheckoutSessionRequest, currency: str) -> CheckoutSession:
        metadata = {"creatorSlug": request.creator_slug, "ticketRef": request.ticket_ref}
        with _stripe_call("create checkout session"):
            session = self.client.checkout.sessions.create(params={
                "payment_method_types": ["card"],
                "mode": "payment",
                "line_items": [{
                    "price_data": {
                        "currency": currency,
                        "product_data": {"name": f"Tipping {creator.display_name} for a favor"},
                        "unit_amount": request.amount_cents,
                    },
                    "quantity": 1,
                }],
                # Hold the funds; they are captured only when the creator approves
                "payment_intent_data": {"capture_method": "manual", "metadata": metadata},
                "success_url": request.success_url,
                "cancel_url": request.cancel_url,
                "metadata": metadata,
            })

        return CheckoutSession(
            id=session.id,
            url=getattr(session, "url", None),
            payment_intent_id=_object_id(getattr(session, "payment_intent", None)),
        )

    def capture_payment(self, intent_id: str) -> CapturedPayment:
        with _stripe_call(f"capture {intent_id}"):
            intent = self.client.payment_intents.capture(intent_id, params={"expand": ["latest_charge"]})
        return self._describe_intent(intent)

    def retrieve_payment(self, intent_id: str) -> CapturedPayment:
        with _stripe_call(f"retrieve {intent_id}"):
            intent = self.client.payment_intents.retrieve(intent_id, params={"expand": ["latest_charge"]})
        return self._describe_intent(intent)

    def cancel_payment(self, intent_id: str) -> str:
        with _stripe_call(f"cancel {intent_id}"):
            intent = self.client.payment_intents.cancel(intent_id)
        logger.info("Cancelled PaymentIntent %s", intent_id)
        return intent.status

    def create_account(self) -> str:
        with _stripe_call("create connected account"):
            account = self.client.accounts.create(params={"type": "express"})
        return account.id

    def create_account_link(self, stripe_account_id: str, refresh_url: str, return_url: str) -> AccountLink:
        with _stripe_call(f"create account link for {stripe_account_id}"):
            link = self.client.account_links.create(params={
                "account": stripe_account_id,
                "refresh_url": refresh_url,
                "return_url": return_url,
                "type": "account_onboarding",
                "collect": "eventually_due",
            })

        if not getattr(link, "url", None) or not getattr(link, "expires_at", None):
            raise ProviderError("Stripe account link response missing required fields")
        return AccountLink(url=link.url, expires_at=link.expires_at, stripe_account_id=stripe_account_id)

    def retrieve_account(self, stripe_account_id: str) -> AccountStatus:
        with _stripe_call(f"retrieve account {stripe_account_id}"):
            account = self.client.accounts.retrieve(stripe_account_id)
        return AccountStatus(
            stripe_account_id=account.id,
            details_submitted=bool(getattr(account, "details_submitted", False)),
            payouts_enabled=bool(getattr(account, "payouts_enabled", False)),
            charges_enabled=bool(getattr(account, "charges_enabled", False)),
        )

    def _describe_intent(self, intent) -> CapturedPayment:
        amount = intent.amount or 0
        currency = intent.currency or "usd"
        charge_id = _object_id(getattr(intent, "latest_charge", None))
        if not charge_id:
            logger.warning("No charge found on payment intent %s", intent.id)
            return CapturedPayment(intent_id=intent.id, status=intent.status, amount=amount, currency=currency)

        fee_cents, net_cents = self._charge_fees(charge_id)
        return CapturedPayment(
            intent_id=intent.id,
            status=intent.status,
            amount=amount,
            currency=currency,
            provider_fee_cents=fee_cents,
            net_cents=net_cents,
        )

    def _charge_fees(self, charge_id: str) -> tuple[int, Optional[int]]:
        with _stripe_call(f"retrieve charge {charge_id}"):
            charge = self.client.charges.retrieve(charge_id, params={"expand": ["balance_transaction"]})
            balance_tx = getattr(charge, "balance_transaction", None)
            if isinstance(balance_tx, str):
                balance_tx = self.client.balance_transactions.retrieve(balance_tx)

        if balance_tx is None:
            return 0, None

        fee = balance_tx.fee or 0
        net = balance_tx.net if balance_tx.net is not None else max(0, (charge.amount or 0) - fee)
        rate = getattr(balance_tx, "exchange_rate", None)
        if balance_tx.currency and charge.currency and balance_tx.currency != charge.currency:
            if rate:
                # Settlement currency differs; express fees in the charge currency
                return round(fee / rate), round(net / rate)
            logger.warning(
                "Currency mismatch without exchange_rate on %s (%s vs %s)",
                charge_id, balance_tx.currency, charge.currency,
            )
        return fee, net
