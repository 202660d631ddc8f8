"""Grant, payment and request state machines: validate transitions and enforce invariants.

Each lifecycle has an explicit transition map. Re-entering the current
terminal state is reported as a no-op so callers can skip side effects; any
other move out of a terminal state raises InvalidTransitionError.
"""

from premarket_platform.domain.enums import (
    ActorRole,
    GrantStatus,
    PaymentStatus,
    RequestStatus,
)
from premarket_platform.domain.errors import InvalidTransitionError

G = GrantStatus
P = PaymentStatus
R = RequestStatus
A = ActorRole


# ---------------------------------------------------------------------------
# Grant access: from_status -> {to_status: set_of_allowed_actors}
# ---------------------------------------------------------------------------

GRANT_TRANSITIONS: dict[GrantStatus, dict[GrantStatus, set[ActorRole]]] = {
    G.PENDING: {
        G.FREE: {A.SYSTEM},
        G.APPROVED: {A.SYSTEM},
        G.REJECTED: {A.SYSTEM, A.ADMIN},
    },
    G.APPROVED: {
        G.PAID: {A.SYSTEM},
        G.REJECTED: {A.SYSTEM, A.ADMIN},
    },
}

GRANT_TERMINAL_STATES: set[GrantStatus] = {G.FREE, G.PAID, G.REJECTED}

UNLOCKED_STATES: set[GrantStatus] = {G.FREE, G.PAID}


# ---------------------------------------------------------------------------
# Payment: FREE is an initial assignment only, never a transition target.
# ---------------------------------------------------------------------------

PAYMENT_TRANSITIONS: dict[PaymentStatus, set[PaymentStatus]] = {
    P.PENDING: {P.SUCCEEDED, P.FAILED},
}

PAYMENT_TERMINAL_STATES: set[PaymentStatus] = {P.SUCCEEDED, P.FAILED, P.FREE}


# ---------------------------------------------------------------------------
# Pre-market request: one-directional toward DELETED
# ---------------------------------------------------------------------------

REQUEST_TRANSITIONS: dict[RequestStatus, set[RequestStatus]] = {
    R.ACTIVE: {R.ARCHIVED, R.DELETED},
    R.ARCHIVED: {R.DELETED},
}


def _coerce(enum_cls, status):
    return status if isinstance(status, enum_cls) else enum_cls(status)


class GrantAccessStateMachine:
    """Validates grant and payment transitions."""

    def validate_transition(
        self,
        current_status: GrantStatus,
        target_status: GrantStatus,
        actor: ActorRole = A.SYSTEM,
    ) -> bool:
        """Return True if the transition should be applied, False if it is an idempotent no-op.

        Raises InvalidTransitionError when the move is not allowed.
        """
        current_status = _coerce(GrantStatus, current_status)
        target_status = _coerce(GrantStatus, target_status)

        if current_status == target_status and current_status in GRANT_TERMINAL_STATES:
            return False

        allowed_targets = GRANT_TRANSITIONS.get(current_status)
        if allowed_targets is None:
            raise InvalidTransitionError(
                "grant",
                current_status,
                target_status,
                f"{current_status.value} is terminal",
            )

        if target_status not in allowed_targets:
            raise InvalidTransitionError(
                "grant",
                current_status,
                target_status,
                f"Transition from {current_status.value} to {target_status.value} is not allowed",
            )

        allowed_actors = allowed_targets[target_status]
        if actor not in allowed_actors:
            raise InvalidTransitionError(
                "grant",
                current_status,
                target_status,
                f"Actor {actor.value} is not permitted for this transition "
                f"(allowed: {', '.join(sorted(a.value for a in allowed_actors))})",
            )

        return True

    def validate_payment_transition(
        self,
        current_status: PaymentStatus,
        target_status: PaymentStatus,
    ) -> bool:
        """Same contract as validate_transition, for the payment sub-state."""
        current_status = _coerce(PaymentStatus, current_status)
        target_status = _coerce(PaymentStatus, target_status)

        if current_status == target_status and current_status in PAYMENT_TERMINAL_STATES:
            return False

        if target_status not in PAYMENT_TRANSITIONS.get(current_status, set()):
            raise InvalidTransitionError(
                "payment",
                current_status,
                target_status,
                f"Transition from {current_status.value} to {target_status.value} is not allowed",
            )
        return True

    def is_terminal(self, status: GrantStatus) -> bool:
        return _coerce(GrantStatus, status) in GRANT_TERMINAL_STATES

    def is_unlocked(self, status: GrantStatus) -> bool:
        return _coerce(GrantStatus, status) in UNLOCKED_STATES


def validate_request_transition(current_status: RequestStatus, target_status: RequestStatus) -> bool:
    """Return True to apply, False when already in the target state.

    Raises InvalidTransitionError for moves back toward ACTIVE.
    """
    current_status = _coerce(RequestStatus, current_status)
    target_status = _coerce(RequestStatus, target_status)

    if current_status == target_status:
        return False
    if target_status not in REQUEST_TRANSITIONS.get(current_status, set()):
        raise InvalidTransitionError(
            "request",
            current_status,
            target_status,
            "Request status only moves toward deleted",
        )
    return True
