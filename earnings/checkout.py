import logging

from .errors import CreatorNotConnectedError, CreatorNotFoundError, ValidationError
from .models import CheckoutSession, CheckoutSessionRequest, Creator
from .provider import PaymentProvider
from .storage import InMemoryStorage
from .tickets import TicketLifecycle

logger = logging.getLogger(__name__)


class CheckoutService:
    """Hosted checkout that places an authorization hold for a ticket."""

    def __init__(
        self,
        storage: InMemoryStorage,
        provider: PaymentProvider,
        tickets: TicketLifecycle,
        default_currency: str = "usd",
    ):
        self.storage = storage
        self.provider = provider
        self.tickets = tickets
        self.default_currency = default_currency

    def create_checkout_session(self, request: CheckoutSessionRequest) -> CheckoutSession:
        if request.amount_cents <= 0:
            raise ValidationError("Amount must be greater than zero")

        row = self.storage.get_creator(request.creator_slug)
        if not row:
            raise CreatorNotFoundError(f"Creator {request.creator_slug} not found")
        creator = Creator(**row)
        if not creator.stripe_account_id:
            raise CreatorNotConnectedError("Creator does not have a connected Stripe account")

        currency = request.currency or self.default_currency
        session = self.provider.create_checkout_session(creator, request, currency)
        logger.info(
            "Created checkout session %s for ticket %s (%s %s)",
            session.id, request.ticket_ref, request.amount_cents, currency,
        )

        self.tickets.register_hold(
            ref=request.ticket_ref,
            creator_slug=creator.slug,
            tip_cents=request.amount_cents,
            payment_intent_id=session.payment_intent_id,
            queue_kind=request.queue_kind,
        )
        return session
