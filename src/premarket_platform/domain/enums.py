"""Domain enumerations for the pre-market platform.

All enums use the (str, Enum) pattern to ensure JSON serialization compatibility.
"""

from enum import Enum


class Bedrooms(str, Enum):
    """Bedroom count a renter is looking for."""

    STUDIO = "Studio"
    ONE = "1BR"
    TWO = "2BR"
    THREE = "3BR"
    FOUR_PLUS = "4BR+"


class Bathrooms(str, Enum):
    """Bathroom count a renter is looking for."""

    ONE = "1"
    TWO = "2"
    THREE = "3"
    FOUR_PLUS = "4+"


class RequestStatus(str, Enum):
    """Lifecycle of a pre-market request. Only moves toward DELETED."""

    ACTIVE = "active"
    ARCHIVED = "archived"
    DELETED = "deleted"


class GrantStatus(str, Enum):
    """Lifecycle of an agent's access grant to a request."""

    PENDING = "pending"
    APPROVED = "approved"  # priced and awaiting payment, not yet unlocked
    FREE = "free"
    REJECTED = "rejected"
    PAID = "paid"


class PaymentStatus(str, Enum):
    """Lifecycle of the payment backing a charged grant."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    FREE = "free"


class WebhookOutcome(str, Enum):
    """Outcome reported by a payment-provider notification."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ReconcileResult(str, Enum):
    """What the webhook reconciler did with a notification."""

    APPLIED = "applied"
    RETRY_PENDING = "retry_pending"
    EXHAUSTED = "exhausted"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    NOT_DUE = "not_due"


class ActorRole(str, Enum):
    """Role of the caller performing an operation."""

    RENTER = "renter"
    AGENT = "agent"
    ADMIN = "admin"
    SYSTEM = "system"


class GrantEventType(str, Enum):
    """Audit event types recorded for grant transitions."""

    REQUESTED = "requested"
    PRICED_FREE = "priced_free"
    PRICED_CHARGED = "priced_charged"
    CHARGE_CREATED = "charge_created"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_ATTEMPT_FAILED = "payment_attempt_failed"
    PAYMENT_TIMED_OUT = "payment_timed_out"
    ATTEMPTS_EXHAUSTED = "attempts_exhausted"
    ADMIN_REJECTED = "admin_rejected"
    CASCADE_REJECTED = "cascade_rejected"
    EXPIRED = "expired"


class NotificationType(str, Enum):
    """In-app notification types for agents, renters and admins."""

    ACCESS_UNLOCKED = "access_unlocked"
    PAYMENT_FAILED = "payment_failed"
    GRANT_REJECTED = "grant_rejected"
    RENTER_ACCESS_GRANTED = "renter_access_granted"
    ACCESS_REQUESTED = "access_requested"
