"""Pydantic v2 schemas for API request/response validation."""

from datetime import date, datetime, timedelta

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from premarket_platform.domain.enums import Bathrooms, Bedrooms, WebhookOutcome

PRICE_MIN = 0
PRICE_MAX = 10_000_000_000
DESCRIPTION_MAX_LENGTH = 500
MIN_MOVING_DAYS_AHEAD = 0
MAX_MOVING_DAYS_AHEAD = 365


# ---------------------------------------------------------------------------
# Pre-market requests
# ---------------------------------------------------------------------------


class PriceRange(BaseModel):
    min: float = Field(ge=PRICE_MIN)
    max: float = Field(le=PRICE_MAX)

    @model_validator(mode="after")
    def _min_not_above_max(self):
        if self.min > self.max:
            raise ValueError("Minimum price must not exceed maximum price")
        return self


class MovingDateRange(BaseModel):
    earliest: date
    latest: date

    @model_validator(mode="after")
    def _ordered(self):
        if self.earliest > self.latest:
            raise ValueError("Earliest moving date must not be after latest moving date")
        return self

    def check_window(self, today: date) -> None:
        """Both dates must fall in [today, today + 365d]. Only enforced at creation."""
        first = today + timedelta(days=MIN_MOVING_DAYS_AHEAD)
        last = today + timedelta(days=MAX_MOVING_DAYS_AHEAD)
        for label, value in (("earliest", self.earliest), ("latest", self.latest)):
            if not first <= value <= last:
                raise ValueError(
                    f"Moving date {label}={value.isoformat()} must be between "
                    f"{first.isoformat()} and {last.isoformat()}"
                )


class PreMarketRequestCreate(BaseModel):
    """Schema for a renter creating a pre-market request."""

    request_name: str = Field(min_length=1, max_length=100)
    bedrooms: list[Bedrooms] = Field(min_length=1)
    bathrooms: list[Bathrooms] = Field(min_length=1)
    price_range: PriceRange
    moving_date_range: MovingDateRange
    description: str | None = Field(default=None, max_length=DESCRIPTION_MAX_LENGTH)

    @field_validator("request_name")
    @classmethod
    def _strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Request name cannot be blank")
        return v


class PreMarketRequestUpdate(BaseModel):
    """Partial update by the owner or an admin while the request is active."""

    request_name: str | None = Field(default=None, min_length=1, max_length=100)
    bedrooms: list[Bedrooms] | None = Field(default=None, min_length=1)
    bathrooms: list[Bathrooms] | None = Field(default=None, min_length=1)
    price_range: PriceRange | None = None
    moving_date_range: MovingDateRange | None = None
    description: str | None = Field(default=None, max_length=DESCRIPTION_MAX_LENGTH)

    @field_validator("request_name")
    @classmethod
    def _strip_name(cls, v: str | None) -> str | None:
        if v is None:
            return v
        v = v.strip()
        if not v:
            raise ValueError("Request name cannot be blank")
        return v


class PreMarketRequestSummary(BaseModel):
    """What an agent sees before access is unlocked, without the renter identity."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    request_id: str
    bedrooms: list[str]
    bathrooms: list[str]
    price_min: float
    price_max: float
    moving_date_earliest: date
    moving_date_latest: date
    status: str
    created_at: datetime | None = None


class PreMarketRequestDetail(PreMarketRequestSummary):
    """Full request details, visible to the owner, admins and unlocked agents."""

    renter_id: str
    request_name: str
    description: str | None = None
    updated_at: datetime | None = None


class AgentRequestView(BaseModel):
    full_access: bool
    request: PreMarketRequestDetail | PreMarketRequestSummary


class VisibilityResponse(BaseModel):
    request_id: str
    agent_id: str
    full_access: bool


# ---------------------------------------------------------------------------
# Grant access
# ---------------------------------------------------------------------------


class GrantAccessCreate(BaseModel):
    request_id: str
    agent_id: str | None = None  # admins only; agents always request for themselves
    agent_email: str | None = None
    admin_override: bool = False


class GrantRejectRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=255)


class PaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    grant_id: str
    amount: float
    currency: str
    status: str
    attempt_count: int
    provider_reference: str | None = None
    charge_requested_at: datetime | None = None
    last_webhook_at: datetime | None = None
    succeeded_at: datetime | None = None
    failed_at: datetime | None = None
    created_at: datetime | None = None


class GrantAccessResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    request_id: str
    agent_id: str
    status: str
    payment_status: str
    charge_amount: float
    currency: str
    attempts: int
    rejection_reason: str | None = None
    unlocked_at: datetime | None = None
    expires_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class GrantWithPayment(BaseModel):
    grant: GrantAccessResponse
    payment: PaymentResponse | None = None


class CascadeRejectResponse(BaseModel):
    request_id: str
    rejected_grant_ids: list[str]


class PaymentStatsResponse(BaseModel):
    """Admin totals. total_* counts grants by payment_status; revenue sums succeeded payments."""

    total_grants: int
    total_free: int
    total_pending: int
    total_paid: int
    total_failed: int
    total_revenue: float
    average_payment: float
    grants_by_status: dict[str, int]


# ---------------------------------------------------------------------------
# Payment webhook
# ---------------------------------------------------------------------------


class PaymentWebhookEvent(BaseModel):
    """Notification delivered by the payment provider."""

    provider_event_id: str = Field(min_length=1, max_length=100)
    provider_reference: str = Field(min_length=1, max_length=100)
    outcome: WebhookOutcome
    timestamp: datetime


class ReconcileResponse(BaseModel):
    result: str
    grant_id: str | None = None
    grant_status: str | None = None
    payment_status: str | None = None
    attempts: int | None = None
