"""SQLAlchemy ORM models for the pre-market platform.

All models use SQLite-compatible types:
- String(36) for UUID primary keys
- JSON for structured data (no JSONB)
- DateTime for timestamps (no TIMESTAMPTZ)

GrantAccess and Payment carry a version_id_col so a concurrent writer that
loses the race gets StaleDataError instead of overwriting committed state.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
)

from premarket_platform.infra.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Pre-market requests
# ---------------------------------------------------------------------------


class PreMarketRequest(Base):
    """A renter's private request for an upcoming rental."""

    __tablename__ = "pre_market_requests"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    request_id = Column(String(16), unique=True, nullable=False, index=True)  # "R" + hex
    renter_id = Column(String(36), nullable=False, index=True)
    request_name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)

    bedrooms = Column(JSON, nullable=False, default=list)  # list[Bedrooms]
    bathrooms = Column(JSON, nullable=False, default=list)  # list[Bathrooms]
    price_min = Column(Float, nullable=False)
    price_max = Column(Float, nullable=False)
    moving_date_earliest = Column(Date, nullable=False)
    moving_date_latest = Column(Date, nullable=False)

    status = Column(String(20), nullable=False, default="active", index=True)  # RequestStatus
    deleted_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)


# ---------------------------------------------------------------------------
# Grant access
# ---------------------------------------------------------------------------


class GrantAccess(Base):
    """An agent's access grant to one pre-market request."""

    __tablename__ = "grant_access"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    request_id = Column(String(36), ForeignKey("pre_market_requests.id"), nullable=False, index=True)
    agent_id = Column(String(36), nullable=False, index=True)
    agent_email = Column(String(255), nullable=True)

    status = Column(String(20), nullable=False, default="pending", index=True)  # GrantStatus
    payment_status = Column(String(20), nullable=False, default="pending")  # PaymentStatus
    charge_amount = Column(Numeric(12, 2, asdecimal=False), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="USD")
    attempts = Column(Integer, nullable=False, default=0)
    rejection_reason = Column(String(255), nullable=True)

    # "<request_id>:<agent_id>" while the grant is active, NULL once rejected or expired.
    active_key = Column(String(80), unique=True, nullable=True)

    unlocked_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class Payment(Base):
    """Charge backing a priced grant. Exists only when pricing resolved to charged."""

    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    grant_id = Column(String(36), ForeignKey("grant_access.id"), unique=True, nullable=False)
    amount = Column(Numeric(12, 2, asdecimal=False), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    status = Column(String(20), nullable=False, default="pending", index=True)  # PaymentStatus
    attempt_count = Column(Integer, nullable=False, default=0)

    provider_reference = Column(String(100), nullable=True, index=True)
    charge_requested_at = Column(DateTime, nullable=True)  # NULL when no charge is outstanding
    last_webhook_at = Column(DateTime, nullable=True)
    succeeded_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class PaymentCharge(Base):
    """One row per charge ever issued for a payment.

    Payment.provider_reference only holds the latest charge; webhooks for an
    earlier charge are resolved through this table.
    """

    __tablename__ = "payment_charges"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    payment_id = Column(String(36), ForeignKey("payments.id"), nullable=False, index=True)
    provider_reference = Column(String(100), unique=True, nullable=False)
    attempt = Column(Integer, nullable=False)  # 1-based attempt this charge was issued for
    created_at = Column(DateTime, default=_utcnow)


class ProcessedWebhookEvent(Base):
    """Idempotency ledger: one row per provider event id ever seen."""

    __tablename__ = "processed_webhook_events"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    provider_event_id = Column(String(100), unique=True, nullable=False)
    provider_reference = Column(String(100), nullable=True)
    payment_id = Column(String(36), ForeignKey("payments.id"), nullable=True)
    outcome = Column(String(20), nullable=False)  # WebhookOutcome
    applied = Column(Boolean, nullable=False, default=False)
    occurred_at = Column(DateTime, nullable=True)
    received_at = Column(DateTime, default=_utcnow)


class GrantAccessEvent(Base):
    """Immutable audit trail entry for grant transitions."""

    __tablename__ = "grant_access_events"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    grant_id = Column(String(36), ForeignKey("grant_access.id"), nullable=False, index=True)
    event_type = Column(String(50), nullable=False)  # GrantEventType
    actor = Column(String(20), nullable=False)  # ActorRole
    actor_id = Column(String(36), nullable=True)
    from_status = Column(String(20), nullable=True)
    to_status = Column(String(20), nullable=True)
    data = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=_utcnow)


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class Notification(Base):
    """In-app notification shown to an agent."""

    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    recipient_id = Column(String(36), nullable=False, index=True)
    type = Column(String(30), nullable=False)  # NotificationType
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    grant_id = Column(String(36), nullable=True)
    request_id = Column(String(36), nullable=True)
    read = Column(Boolean, default=False)
    created_at = Column(DateTime, default=_utcnow)
