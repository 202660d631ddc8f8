"""Payment Lifecycle Manager: owns the Payment sub-state of a charged grant.

States: pending -> succeeded | failed. FREE is assigned on the grant at
pricing time and never reached by transition. attempt_count counts failed
attempts only; reaching max_payment_attempts fails the payment and rejects
the grant in the same unit of work.

Nothing here commits. Callers wrap these calls in commit_with_retry().
"""

import logging
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from premarket_platform.app.config import GrantAccessConfig
from premarket_platform.domain.enums import (
    ActorRole,
    GrantEventType,
    GrantStatus,
    PaymentStatus,
)
from premarket_platform.domain.errors import InvalidTransitionError
from premarket_platform.domain.models import GrantAccess, Payment, PaymentCharge
from premarket_platform.services.grant_transitions import (
    record_grant_event,
    state_machine,
    transition_grant,
    utcnow,
)

logger = logging.getLogger(__name__)


class PaymentLifecycleManager:
    """Creates payments and applies succeeded / failed / attempt transitions."""

    def __init__(self, db: AsyncSession, config: GrantAccessConfig):
        self.db = db
        self.config = config

    def create_payment(self, grant: GrantAccess, amount: float, currency: str) -> Payment:
        payment = Payment(
            id=str(uuid.uuid4()),
            grant_id=grant.id,
            amount=amount,
            currency=currency,
            status=PaymentStatus.PENDING.value,
            attempt_count=0,
        )
        self.db.add(payment)
        grant.payment_status = PaymentStatus.PENDING.value
        grant.attempts = 0
        return payment

    def register_charge(self, payment: Payment, reference: str, now: Optional[datetime] = None) -> PaymentCharge:
        """Record an issued provider reference so its webhooks can always be matched."""
        charge = PaymentCharge(
            id=str(uuid.uuid4()),
            payment_id=payment.id,
            provider_reference=reference,
            attempt=payment.attempt_count + 1,
            created_at=now or utcnow(),
        )
        self.db.add(charge)
        return charge

    def start_charge(self, payment: Payment, grant: GrantAccess, reference: str, now: Optional[datetime] = None) -> None:
        """Make reference the outstanding charge and start the webhook timeout window."""
        if payment.status != PaymentStatus.PENDING.value:
            raise InvalidTransitionError(
                "payment", payment.status, PaymentStatus.PENDING,
                "A charge can only be started for a pending payment",
            )
        now = now or utcnow()
        self.register_charge(payment, reference, now)
        payment.provider_reference = reference
        payment.charge_requested_at = now
        record_grant_event(
            self.db, grant, GrantEventType.CHARGE_CREATED, ActorRole.SYSTEM,
            from_status=grant.status,
            data={"provider_reference": reference, "attempt": payment.attempt_count + 1},
        )

    def mark_succeeded(self, payment: Payment, grant: GrantAccess, now: Optional[datetime] = None, data: Optional[dict] = None) -> bool:
        """pending -> succeeded and approved -> paid together. False if already succeeded."""
        if not state_machine.validate_payment_transition(payment.status, PaymentStatus.SUCCEEDED):
            return False
        now = now or utcnow()
        payment.status = PaymentStatus.SUCCEEDED.value
        payment.succeeded_at = now
        payment.charge_requested_at = None
        grant.payment_status = PaymentStatus.SUCCEEDED.value
        transition_grant(
            self.db, grant, GrantStatus.PAID,
            actor=ActorRole.SYSTEM,
            event_type=GrantEventType.PAYMENT_SUCCEEDED,
            data=data,
            now=now,
            ttl_days=self.config.grant_ttl_days,
        )
        return True

    def mark_failed(
        self,
        payment: Payment,
        grant: GrantAccess,
        *,
        reason: str,
        event_type: GrantEventType,
        actor: ActorRole = ActorRole.SYSTEM,
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
        data: Optional[dict] = None,
    ) -> bool:
        """pending -> failed with the grant rejected. False if already failed."""
        if not state_machine.validate_payment_transition(payment.status, PaymentStatus.FAILED):
            return False
        now = now or utcnow()
        payment.status = PaymentStatus.FAILED.value
        payment.failed_at = now
        payment.charge_requested_at = None
        grant.payment_status = PaymentStatus.FAILED.value
        grant.rejection_reason = reason
        transition_grant(
            self.db, grant, GrantStatus.REJECTED,
            actor=actor,
            actor_id=actor_id,
            event_type=event_type,
            data=data,
            now=now,
        )
        return True

    def record_attempt(
        self,
        payment: Payment,
        grant: GrantAccess,
        *,
        event_type: GrantEventType = GrantEventType.PAYMENT_ATTEMPT_FAILED,
        now: Optional[datetime] = None,
        data: Optional[dict] = None,
    ) -> bool:
        """Count one failed attempt. Returns True when the ceiling is reached.

        At the ceiling the payment fails and the grant is rejected no matter
        what outcome triggered the call; the count never passes the ceiling.
        """
        if payment.status != PaymentStatus.PENDING.value:
            raise InvalidTransitionError(
                "payment", payment.status, PaymentStatus.FAILED,
                "Attempts can only be recorded on a pending payment",
            )
        now = now or utcnow()
        ceiling = self.config.max_payment_attempts

        if payment.attempt_count < ceiling:
            payment.attempt_count += 1
        grant.attempts = payment.attempt_count
        payment.charge_requested_at = None

        record_grant_event(
            self.db, grant, event_type, ActorRole.SYSTEM,
            from_status=grant.status,
            data={**(data or {}), "attempt": payment.attempt_count, "max_attempts": ceiling},
        )
        logger.info(
            "Payment %s attempt %d/%d failed (grant=%s)",
            payment.id, payment.attempt_count, ceiling, grant.id,
        )

        if payment.attempt_count >= ceiling:
            self.mark_failed(
                payment, grant,
                reason="payment_attempts_exhausted",
                event_type=GrantEventType.ATTEMPTS_EXHAUSTED,
                now=now,
                data={"attempts": payment.attempt_count},
            )
            logger.warning(
                "Payment %s exhausted %d attempts; grant %s rejected, manual intervention required",
                payment.id, ceiling, grant.id,
            )
            return True
        return False
