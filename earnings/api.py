import hmac
import logging
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware

from .container import EarningsServices
from .errors import (
    CreatorNotFoundError,
    InvalidStateTransitionError,
    ProviderError,
    StorageError,
    TicketNotFoundError,
    ValidationError,
    WebhookSignatureError,
)
from .models import (
    AccountLink,
    AllTimeEarnings,
    CheckoutSession,
    CheckoutSessionRequest,
    EarningsDashboard,
    OnboardingSyncResponse,
    PayoutRunRequest,
    PayoutRunResult,
    PeriodSummary,
    TicketResponse,
    WebhookOutcome,
)

logger = logging.getLogger(__name__)


def get_services(request: Request) -> EarningsServices:
    return request.app.state.services


def require_admin(
    services: EarningsServices = Depends(get_services),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
) -> None:
    expected = services.settings.ADMIN_API_TOKEN
    if not expected:
        return
    if not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        logger.warning("Rejected admin request with invalid token")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


def _require_creator(services: EarningsServices, creator_slug: str) -> None:
    if services.storage.get_creator(creator_slug) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Creator {creator_slug} not found")


def _ticket_action(action, ref: str) -> TicketResponse:
    try:
        return action(ref)
    except TicketNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Ticket {ref} not found")
    except InvalidStateTransitionError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except ProviderError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))


def create_app(services: EarningsServices, root_path: str = "") -> FastAPI:
    app = FastAPI(
        title="Creator Earnings API",
        description="Payment ledger, platform fees and monthly payouts for creator tips",
        version="1.0.0",
        root_path=root_path,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=services.settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "creator-earnings"}

    @app.post("/webhooks/stripe", response_model=WebhookOutcome, tags=["Webhooks"])
    async def stripe_webhook(request: Request, services: EarningsServices = Depends(get_services)) -> WebhookOutcome:
        payload = await request.body()
        try:
            return services.webhooks.handle(payload, request.headers.get("stripe-signature"))
        except WebhookSignatureError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        except (StorageError, ProviderError) as e:
            # 5xx makes Stripe redeliver; ingestion is idempotent by external id
            logger.exception("Webhook processing failed")
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))

    @app.post("/payments/session", response_model=CheckoutSession, status_code=status.HTTP_201_CREATED, tags=["Payments"])
    def create_checkout_session(
        request: CheckoutSessionRequest,
        services: EarningsServices = Depends(get_services),
    ) -> CheckoutSession:
        try:
            return services.checkout.create_checkout_session(request)
        except CreatorNotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
        except ValidationError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        except ProviderError as e:
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    @app.post("/tickets/{ref}/approve", response_model=TicketResponse, tags=["Tickets"])
    def approve_ticket(ref: str, services: EarningsServices = Depends(get_services)) -> TicketResponse:
        return _ticket_action(services.tickets.approve, ref)

    @app.post("/tickets/{ref}/reject", response_model=TicketResponse, tags=["Tickets"])
    def reject_ticket(ref: str, services: EarningsServices = Depends(get_services)) -> TicketResponse:
        return _ticket_action(services.tickets.reject, ref)

    @app.post("/tickets/{ref}/close", response_model=TicketResponse, tags=["Tickets"])
    def close_ticket(ref: str, services: EarningsServices = Depends(get_services)) -> TicketResponse:
        return _ticket_action(services.tickets.close, ref)

    @app.get("/creators/{creator_slug}/earnings", response_model=EarningsDashboard, tags=["Earnings"])
    def get_dashboard(creator_slug: str, services: EarningsServices = Depends(get_services)) -> EarningsDashboard:
        _require_creator(services, creator_slug)
        return services.aggregator.dashboard(creator_slug)

    @app.get("/creators/{creator_slug}/earnings/current", response_model=PeriodSummary, tags=["Earnings"])
    def get_current_period(creator_slug: str, services: EarningsServices = Depends(get_services)) -> PeriodSummary:
        _require_creator(services, creator_slug)
        return services.aggregator.current_period_summary(creator_slug)

    @app.get("/creators/{creator_slug}/earnings/periods", response_model=list[PeriodSummary], tags=["Earnings"])
    def get_last_periods(
        creator_slug: str,
        n: Optional[int] = Query(default=None, ge=1, le=24),
        services: EarningsServices = Depends(get_services),
    ) -> list[PeriodSummary]:
        _require_creator(services, creator_slug)
        return services.aggregator.last_periods_summaries(creator_slug, n)

    @app.get("/creators/{creator_slug}/earnings/all-time", response_model=AllTimeEarnings, tags=["Earnings"])
    def get_all_time(creator_slug: str, services: EarningsServices = Depends(get_services)) -> AllTimeEarnings:
        _require_creator(services, creator_slug)
        return services.aggregator.all_time_earnings(creator_slug)

    @app.post("/creators/{creator_slug}/onboarding", response_model=AccountLink, tags=["Onboarding"])
    def create_onboarding_link(creator_slug: str, services: EarningsServices = Depends(get_services)) -> AccountLink:
        try:
            return services.onboarding.create_account_link(creator_slug)
        except CreatorNotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
        except ProviderError as e:
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    @app.post("/creators/{creator_slug}/onboarding/sync", response_model=OnboardingSyncResponse, tags=["Onboarding"])
    def sync_onboarding(creator_slug: str, services: EarningsServices = Depends(get_services)) -> OnboardingSyncResponse:
        return services.onboarding.sync_account_status(creator_slug)

    @app.post("/admin/payouts", response_model=PayoutRunResult, dependencies=[Depends(require_admin)], tags=["Admin"])
    def run_payouts(request: PayoutRunRequest, services: EarningsServices = Depends(get_services)) -> PayoutRunResult:
        logger.info("Admin triggered payout run for %04d-%02d", request.year, request.month)
        try:
            return services.scheduler.schedule_monthly_payouts(request.year, request.month)
        except ValueError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return app


if __name__ == "__main__":
    import uvicorn

    from .config import get_settings
    from .container import build_services
    from .logging_config import setup_logging

    settings = get_settings()
    setup_logging(settings.LOG_LEVEL)
    uvicorn.run(create_app(build_services(settings)), host="0.0.0.0", port=8000)
