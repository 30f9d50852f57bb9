"""
Service wiring.

The process entry point builds one ``EarningsServices`` and hands it to the
HTTP app or the cron handler. Every service shares the same storage, ledger and
fee policy instance, so the dashboard and the payout rows apply the same rule.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from .aggregator import EarningsAggregator
from .checkout import CheckoutService
from .config import Settings, get_settings
from .fees import FeePolicy, get_fee_policy
from .ledger import PaymentLedger
from .onboarding import OnboardingService
from .periods import now_millis, utc_now
from .provider import PaymentProvider, StripeProvider
from .scheduler import PayoutScheduler
from .storage import InMemoryStorage
from .tickets import TicketLifecycle
from .webhooks import WebhookProcessor

logger = logging.getLogger(__name__)


@dataclass
class EarningsServices:
    settings: Settings
    storage: InMemoryStorage
    provider: PaymentProvider
    fee_policy: FeePolicy
    ledger: PaymentLedger
    aggregator: EarningsAggregator
    scheduler: PayoutScheduler
    tickets: TicketLifecycle
    onboarding: OnboardingService
    checkout: CheckoutService
    webhooks: WebhookProcessor


def build_services(
    settings: Optional[Settings] = None,
    provider: Optional[PaymentProvider] = None,
    storage: Optional[InMemoryStorage] = None,
    clock: Callable[[], int] = now_millis,
    now: Callable[[], datetime] = utc_now,
) -> EarningsServices:
    settings = settings or get_settings()
    storage = storage or InMemoryStorage()
    if provider is None:
        provider = StripeProvider(
            settings.STRIPE_API_KEY,
            timeout_seconds=settings.STRIPE_TIMEOUT_SECONDS,
            max_network_retries=settings.STRIPE_MAX_NETWORK_RETRIES,
        )

    fee_policy = get_fee_policy(settings=settings)
    ledger = PaymentLedger(storage, clock=clock)
    tickets = TicketLifecycle(
        storage, ledger, provider,
        expiry_days=settings.TICKET_EXPIRY_DAYS,
        clock=clock,
    )
    onboarding = OnboardingService(storage, provider, settings.BASE_URL)

    logger.info("Earnings services ready (fee policy %s, env %s)", fee_policy.name, settings.ENVIRONMENT)
    return EarningsServices(
        settings=settings,
        storage=storage,
        provider=provider,
        fee_policy=fee_policy,
        ledger=ledger,
        aggregator=EarningsAggregator(
            storage, ledger, fee_policy,
            trailing_count=settings.TRAILING_PERIODS,
            payout_history_limit=settings.PAYOUT_HISTORY_LIMIT,
            now=now,
        ),
        scheduler=PayoutScheduler(
            storage, ledger, fee_policy,
            currency=settings.DEFAULT_CURRENCY,
            payouts_disabled=settings.PAYOUTS_DISABLED,
            clock=clock,
        ),
        tickets=tickets,
        onboarding=onboarding,
        checkout=CheckoutService(storage, provider, tickets, default_currency=settings.DEFAULT_CURRENCY),
        webhooks=WebhookProcessor(
            ledger, tickets, onboarding,
            webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
            tolerance_seconds=settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
            provider=provider,
        ),
    )
