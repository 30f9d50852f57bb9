from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict, model_validator


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


class PayoutStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"


class TicketStatus(str, Enum):
    HELD = "held"
    OPEN = "open"
    APPROVED = "approved"
    REJECTED = "rejected"
    CLOSED = "closed"


class TicketPaymentStatus(str, Enum):
    PENDING = "pending"
    REQUIRES_CAPTURE = "requires_capture"
    SUCCEEDED = "succeeded"
    CANCELED = "canceled"


class RejectionReason(str, Enum):
    CREATOR_REJECTED = "creator_rejected"
    EXPIRED = "expired"


class QueueKind(str, Enum):
    PERSONAL = "personal"
    PRIORITY = "priority"


class Creator(BaseModel):
    slug: str
    display_name: str
    min_priority_tip_cents: int = 1500
    email: Optional[str] = None
    stripe_account_id: Optional[str] = None
    payout_enabled: bool = False

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_connected(self) -> bool:
        return bool(self.stripe_account_id) and self.payout_enabled


class Payment(BaseModel):
    id: str
    creator_slug: str
    amount_gross: int
    currency: str = "usd"
    status: PaymentStatus
    provider: str = "stripe"
    external_id: str
    created_at: int
    ticket_ref: Optional[str] = None
    # Provider processing fee; 0 until the provider reports one
    provider_fee_cents: int = 0
    # None means "not reported separately": amount_gross - provider_fee_cents
    net_cents: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def effective_net_cents(self) -> int:
        if self.net_cents is not None:
            return self.net_cents
        return max(0, self.amount_gross - self.provider_fee_cents)


class RecordPaymentRequest(BaseModel):
    creator_slug: str
    amount_gross: int = Field(..., ge=0)
    currency: str = "usd"
    external_id: str = Field(..., min_length=1, description="Provider transaction id")
    provider: str = "stripe"
    status: PaymentStatus = PaymentStatus.SUCCEEDED
    created_at: Optional[int] = Field(default=None, description="Event time in epoch millis")
    ticket_ref: Optional[str] = None
    provider_fee_cents: int = Field(default=0, ge=0)
    net_cents: Optional[int] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "creator_slug": "ada",
            "amount_gross": 2500,
            "currency": "usd",
            "external_id": "pi_3Nf0example",
            "provider": "stripe",
            "status": "succeeded",
            "ticket_ref": "TCK-1042",
        }
    })


class RecordPaymentResult(BaseModel):
    payment_id: str
    created: bool


class Payout(BaseModel):
    id: str
    creator_slug: str
    period_start: int
    period_end: int
    gross_cents: int
    platform_fee_cents: int
    provider_fee_cents: int = 0
    payout_cents: int
    currency: str = "usd"
    status: PayoutStatus = PayoutStatus.PENDING
    created_at: int
    updated_at: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)


class Period(BaseModel):
    year: int
    month: int
    period_start: int
    period_end: int

    def contains(self, timestamp_ms: int) -> bool:
        return self.period_start <= timestamp_ms < self.period_end


class FeeResult(BaseModel):
    platform_fee_cents: int
    payout_cents: int
    threshold_reached: bool
    platform_fee_rate_bps: int


class PeriodTotals(BaseModel):
    gross_cents: int = 0
    provider_fee_cents: int = 0
    net_cents: int = 0


class PeriodSummary(BaseModel):
    creator_slug: str
    period_start: int
    period_end: int
    gross_cents: int
    provider_fee_cents: int
    net_cents: int
    threshold_cents: int
    platform_fee_rate_bps: int
    platform_fee_cents: int
    payout_cents: int
    threshold_reached: bool
    fee_policy: str


class AllTimeEarnings(BaseModel):
    creator_slug: str
    all_time_gross_cents: int
    all_time_provider_fee_cents: int
    all_time_platform_fee_cents: int
    all_time_payout_cents: int


class ConnectionStatus(BaseModel):
    connected: bool
    stripe_account_id: Optional[str] = None
    details_submitted: bool = False


class EarningsDashboard(BaseModel):
    creator_slug: str
    connection: ConnectionStatus
    current_period: PeriodSummary
    last_periods: list[PeriodSummary]
    all_time: AllTimeEarnings
    upcoming_payout: Optional[Payout] = None
    payout_history: list[Payout] = Field(default_factory=list)


class PayoutFailure(BaseModel):
    creator_slug: str
    error: str


class PayoutRunRequest(BaseModel):
    year: int = Field(..., ge=1970)
    month: int = Field(..., ge=1, le=12)


class PayoutRunResult(BaseModel):
    period: Period
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: list[PayoutFailure] = Field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return self.created + self.updated


class Ticket(BaseModel):
    ref: str
    creator_slug: str
    queue_kind: QueueKind = QueueKind.PRIORITY
    tip_cents: int = 0
    status: TicketStatus
    payment_intent_id: Optional[str] = None
    payment_status: Optional[TicketPaymentStatus] = None
    created_at: int
    resolved_at: Optional[int] = None
    rejection_reason: Optional[RejectionReason] = None

    model_config = ConfigDict(from_attributes=True)

    def can_authorize(self) -> bool:
        return self.status == TicketStatus.HELD

    def can_decide(self) -> bool:
        return self.status == TicketStatus.OPEN

    def can_expire(self) -> bool:
        return self.status in (TicketStatus.HELD, TicketStatus.OPEN)

    def can_close(self) -> bool:
        return self.status == TicketStatus.APPROVED


class TicketResponse(BaseModel):
    ticket: Ticket
    payment_id: Optional[str] = None
    message: str


class CheckoutSessionRequest(BaseModel):
    creator_slug: str
    ticket_ref: str
    amount_cents: int
    currency: Optional[str] = None
    success_url: str
    cancel_url: str
    queue_kind: QueueKind = QueueKind.PRIORITY

    @model_validator(mode="after")
    def normalize_currency(self):
        if self.currency:
            self.currency = self.currency.lower()
        return self


class CheckoutSession(BaseModel):
    id: str
    url: Optional[str] = None
    payment_intent_id: Optional[str] = None


class AccountLink(BaseModel):
    url: str
    expires_at: int
    stripe_account_id: str


class AccountStatus(BaseModel):
    stripe_account_id: str
    details_submitted: bool = False
    payouts_enabled: bool = False
    charges_enabled: bool = False

    @property
    def onboarding_complete(self) -> bool:
        return self.details_submitted and self.payouts_enabled


class OnboardingSyncResponse(BaseModel):
    success: bool
    reason: Optional[str] = None
    onboarding_complete: bool = False
    details_submitted: bool = False
    payouts_enabled: bool = False


class CapturedPayment(BaseModel):
    """Provider view of a captured or capturable payment intent."""

    intent_id: str
    status: str
    amount: int
    currency: str
    provider_fee_cents: int = 0
    net_cents: Optional[int] = None


class WebhookOutcome(BaseModel):
    event_id: Optional[str] = None
    event_type: str
    action: str
    payment_id: Optional[str] = None
