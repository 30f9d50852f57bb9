import logging

from .errors import CreatorNotFoundError, ProviderError
from .models import AccountLink, Creator, OnboardingSyncResponse
from .provider import PaymentProvider
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)


class OnboardingService:
    """Connected-account onboarding. Only this flow writes ``stripe_account_id`` and ``payout_enabled``."""

    def __init__(self, storage: InMemoryStorage, provider: PaymentProvider, base_url: str):
        self.storage = storage
        self.provider = provider
        self.base_url = base_url.rstrip("/")

    def _get_creator(self, creator_slug: str) -> Creator:
        row = self.storage.get_creator(creator_slug)
        if not row:
            raise CreatorNotFoundError(f"Creator {creator_slug} not found")
        return Creator(**row)

    def earnings_url(self, creator_slug: str) -> str:
        return f"{self.base_url}/{creator_slug}/dashboard?tab=earnings"

    def create_account_link(self, creator_slug: str) -> AccountLink:
        creator = self._get_creator(creator_slug)

        stripe_account_id = creator.stripe_account_id
        if not stripe_account_id:
            stripe_account_id = self.provider.create_account()
            # Payouts stay disabled until the provider confirms onboarding
            self.storage.patch_creator(creator.slug, {
                "stripe_account_id": stripe_account_id,
                "payout_enabled": False,
            })
            logger.info("Created connected account %s for %s", stripe_account_id, creator.slug)

        url = self.earnings_url(creator.slug)
        return self.provider.create_account_link(stripe_account_id, refresh_url=url, return_url=url)

    def mark_onboarding_complete(self, stripe_account_id: str) -> Creator:
        row = self.storage.get_creator_by_account(stripe_account_id)
        if not row:
            raise CreatorNotFoundError(f"No creator found for Stripe account {stripe_account_id}")

        creator = Creator(**row)
        if not creator.payout_enabled:
            row = self.storage.patch_creator(creator.slug, {"payout_enabled": True})
            logger.info("Marked payout_enabled=true for creator %s", creator.slug)
        return Creator(**row)

    def sync_account_status(self, creator_slug: str) -> OnboardingSyncResponse:
        try:
            creator = self._get_creator(creator_slug)
        except CreatorNotFoundError:
            return OnboardingSyncResponse(success=False, reason="creator_not_found")

        if not creator.stripe_account_id:
            return OnboardingSyncResponse(success=False, reason="no_stripe_account")

        try:
            status = self.provider.retrieve_account(creator.stripe_account_id)
        except ProviderError as e:
            logger.error("Failed to verify account for %s: %s", creator_slug, e)
            return OnboardingSyncResponse(success=False, reason="stripe_api_error")

        if status.onboarding_complete and not creator.payout_enabled:
            self.mark_onboarding_complete(creator.stripe_account_id)

        return OnboardingSyncResponse(
            success=True,
            onboarding_complete=status.onboarding_complete,
            details_submitted=status.details_submitted,
            payouts_enabled=status.payouts_enabled,
        )
