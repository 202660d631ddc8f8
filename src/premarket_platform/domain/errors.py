"""Domain exceptions for pre-market requests, grants and payments.

Routes translate these into HTTP status codes; services never raise
HTTPException themselves.
"""


class PreMarketError(Exception):
    """Base class for all domain errors."""


class ValidationError(PreMarketError):
    """Malformed input. Raised before any state is mutated."""


class PermissionDenied(PreMarketError):
    """Caller is neither the owner of the entity nor an admin."""


# ---------------------------------------------------------------------------
# Not found
# ---------------------------------------------------------------------------


class NotFoundError(PreMarketError):
    """Unknown entity. Surfaced to the caller, never retried."""


class RequestNotFound(NotFoundError):
    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Pre-market request {request_id} not found")


class GrantNotFound(NotFoundError):
    def __init__(self, grant_id: str):
        self.grant_id = grant_id
        super().__init__(f"Grant access {grant_id} not found")


class PaymentNotFound(NotFoundError):
    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(f"No payment matches {reference}")


# ---------------------------------------------------------------------------
# Conflicts
# ---------------------------------------------------------------------------


class ConflictError(PreMarketError):
    """The operation collides with existing state. Callers may retry with backoff."""


class DuplicateActiveGrant(ConflictError):
    def __init__(self, request_id: str, agent_id: str):
        self.request_id = request_id
        self.agent_id = agent_id
        super().__init__(
            f"Agent {agent_id} already has an active grant for request {request_id}"
        )


class GrantPreviouslyRejected(ConflictError):
    def __init__(self, request_id: str, agent_id: str):
        self.request_id = request_id
        self.agent_id = agent_id
        super().__init__(
            f"Agent {agent_id} was rejected for request {request_id}; admin override required"
        )


class RequestDeleted(ConflictError):
    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Pre-market request {request_id} is deleted")


class ConcurrentWriteConflict(ConflictError):
    """Optimistic version check kept losing after the retry budget."""


class PaymentAttemptsExhausted(ConflictError):
    def __init__(self, grant_id: str, attempts: int):
        self.grant_id = grant_id
        self.attempts = attempts
        super().__init__(
            f"Grant {grant_id} used all {attempts} payment attempts; manual intervention required"
        )


# ---------------------------------------------------------------------------
# Pricing / provider
# ---------------------------------------------------------------------------


class PricingError(PreMarketError):
    """Pricing policy is misconfigured. Fatal: no grant is created."""


class InvalidPricingConfig(PricingError):
    pass


class PaymentProviderError(PreMarketError):
    """Outbound call to the payment provider failed."""


# ---------------------------------------------------------------------------
# Invariants
# ---------------------------------------------------------------------------


class InvariantViolation(PreMarketError):
    """A programming error: the requested change breaks a lifecycle invariant."""


class InvalidTransitionError(InvariantViolation):
    """Raised when a grant, payment or request state transition is not allowed."""

    def __init__(self, entity: str, current_status, target_status, reason: str):
        self.entity = entity
        self.current_status = current_status
        self.target_status = target_status
        self.reason = reason
        super().__init__(
            f"Invalid {entity} transition from {_value(current_status)} "
            f"to {_value(target_status)}: {reason}"
        )


def _value(status) -> str:
    return getattr(status, "value", status)
