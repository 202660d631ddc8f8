"""Webhook Reconciler: maps payment-provider notifications onto grant transitions.

Each provider event id is applied at most once: the ProcessedWebhookEvent
ledger is checked first, and its unique constraint makes a concurrent replay
lose at commit. Late notifications for a payment that is already terminal
are written to the ledger with applied=False and change nothing else.

Provider references resolve through PaymentCharge, so a notification for a
charge that a retry replaced still finds its payment. Its success settles the
payment; its failure is recorded only.

Charges that never get a notification are failed by handle_timeout() once
webhook_timeout_ms has elapsed; the background loop calls sweep_timeouts().
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from premarket_platform.app.config import GrantAccessConfig, get_grant_config
from premarket_platform.domain.enums import (
    GrantEventType,
    GrantStatus,
    PaymentStatus,
    ReconcileResult,
    WebhookOutcome,
)
from premarket_platform.domain.errors import GrantNotFound, PaymentNotFound, ValidationError
from premarket_platform.domain.models import GrantAccess, Payment, PaymentCharge, ProcessedWebhookEvent
from premarket_platform.domain.schemas import PaymentWebhookEvent
from premarket_platform.services.grant_transitions import (
    as_utc,
    commit_with_retry,
    load_grant,
    load_payment_for_grant,
    utcnow,
)
from premarket_platform.services.notification_service import GrantNotifier
from premarket_platform.services.payment_service import PaymentLifecycleManager

logger = logging.getLogger(__name__)


@dataclass
class ReconcileOutcome:
    result: ReconcileResult
    grant: Optional[GrantAccess] = None
    payment: Optional[Payment] = None


class WebhookReconciler:
    """Applies provider notifications and charge timeouts exactly once."""

    def __init__(
        self,
        db: AsyncSession,
        config: Optional[GrantAccessConfig] = None,
        notifier: Optional[GrantNotifier] = None,
    ):
        self.db = db
        self.config = config or get_grant_config()
        self.notifier = notifier or GrantNotifier(db)
        self.payments = PaymentLifecycleManager(db, self.config)

    async def handle_webhook(self, event: Union[PaymentWebhookEvent, dict]) -> ReconcileOutcome:
        """Apply one provider notification.

        Returns DUPLICATE for a replayed event id, IGNORED when the payment is
        already terminal, APPLIED on success, RETRY_PENDING or EXHAUSTED on
        failure. Raises PaymentNotFound for an unknown provider reference.
        """
        if isinstance(event, dict):
            try:
                event = PaymentWebhookEvent.model_validate(event)
            except PydanticValidationError as e:
                raise ValidationError(str(e)) from e

        async def operation() -> ReconcileOutcome:
            seen = await self.db.execute(
                select(ProcessedWebhookEvent.id).where(
                    ProcessedWebhookEvent.provider_event_id == event.provider_event_id
                )
            )
            if seen.scalar_one_or_none() is not None:
                return ReconcileOutcome(ReconcileResult.DUPLICATE)

            result = await self.db.execute(
                select(Payment)
                .join(PaymentCharge, PaymentCharge.payment_id == Payment.id)
                .where(PaymentCharge.provider_reference == event.provider_reference)
                .execution_options(populate_existing=True)
            )
            payment = result.scalar_one_or_none()
            if payment is None:
                raise PaymentNotFound(event.provider_reference)
            grant = await load_grant(self.db, payment.grant_id)
            superseded = payment.provider_reference != event.provider_reference

            ledger = ProcessedWebhookEvent(
                provider_event_id=event.provider_event_id,
                provider_reference=event.provider_reference,
                payment_id=payment.id,
                outcome=event.outcome.value,
                applied=False,
                occurred_at=event.timestamp,
            )
            self.db.add(ledger)

            if payment.status != PaymentStatus.PENDING.value:
                logger.info(
                    "Late %s notification %s for payment %s already %s; recorded only",
                    event.outcome.value, event.provider_event_id, payment.id, payment.status,
                )
                return ReconcileOutcome(ReconcileResult.IGNORED, grant, payment)

            # A failure for a replaced charge was already counted when it was replaced.
            if superseded and event.outcome == WebhookOutcome.FAILED:
                logger.info(
                    "Failure %s for replaced charge %s on payment %s; recorded only",
                    event.provider_event_id, event.provider_reference, payment.id,
                )
                return ReconcileOutcome(ReconcileResult.IGNORED, grant, payment)

            now = utcnow()
            payment.last_webhook_at = now
            ledger.applied = True
            data = {"provider_event_id": event.provider_event_id}

            if event.outcome == WebhookOutcome.SUCCEEDED:
                if superseded:
                    data["replaced_by"] = payment.provider_reference
                    logger.warning(
                        "Charge %s succeeded after being replaced by %s on payment %s",
                        event.provider_reference, payment.provider_reference, payment.id,
                    )
                self.payments.mark_succeeded(payment, grant, now=now, data=data)
                return ReconcileOutcome(ReconcileResult.APPLIED, grant, payment)

            exhausted = self.payments.record_attempt(payment, grant, now=now, data=data)
            result = ReconcileResult.EXHAUSTED if exhausted else ReconcileResult.RETRY_PENDING
            return ReconcileOutcome(result, grant, payment)

        try:
            outcome = await commit_with_retry(self.db, operation, f"webhook({event.provider_event_id})")
        except IntegrityError:
            await self.db.rollback()
            logger.info("Webhook %s applied concurrently; treated as replay", event.provider_event_id)
            return ReconcileOutcome(ReconcileResult.DUPLICATE)

        if outcome.result == ReconcileResult.DUPLICATE:
            logger.info("Webhook %s already processed; discarded", event.provider_event_id)
        else:
            logger.info(
                "Webhook %s (%s) -> %s: grant=%s",
                event.provider_event_id, event.outcome.value, outcome.result.value,
                outcome.grant.id if outcome.grant else None,
            )
        await self._notify(outcome)
        return outcome

    async def handle_timeout(self, grant_id: str, now: Optional[datetime] = None) -> ReconcileOutcome:
        """Synthesize a failed outcome for an outstanding charge past its timeout.

        NOT_DUE unless the grant is approved, its payment pending with a charge
        outstanding and webhook_timeout_ms has elapsed since the charge.
        """
        now = now or utcnow()
        timeout = timedelta(milliseconds=self.config.webhook_timeout_ms)

        async def operation() -> ReconcileOutcome:
            grant = await load_grant(self.db, grant_id)
            payment = await load_payment_for_grant(self.db, grant_id)
            if (
                payment is None
                or grant.status != GrantStatus.APPROVED.value
                or payment.status != PaymentStatus.PENDING.value
                or payment.charge_requested_at is None
                or as_utc(payment.charge_requested_at) + timeout > now
            ):
                return ReconcileOutcome(ReconcileResult.NOT_DUE, grant, payment)

            self.db.add(
                ProcessedWebhookEvent(
                    provider_event_id=f"timeout:{payment.id}:{payment.attempt_count + 1}",
                    provider_reference=payment.provider_reference,
                    payment_id=payment.id,
                    outcome=WebhookOutcome.FAILED.value,
                    applied=True,
                    occurred_at=now,
                )
            )
            exhausted = self.payments.record_attempt(
                payment, grant,
                event_type=GrantEventType.PAYMENT_TIMED_OUT,
                now=now,
                data={"timeout_ms": self.config.webhook_timeout_ms},
            )
            result = ReconcileResult.EXHAUSTED if exhausted else ReconcileResult.RETRY_PENDING
            return ReconcileOutcome(result, grant, payment)

        try:
            outcome = await commit_with_retry(self.db, operation, f"timeout({grant_id})")
        except IntegrityError:
            await self.db.rollback()
            logger.info("Timeout for grant %s already recorded concurrently", grant_id)
            return ReconcileOutcome(ReconcileResult.NOT_DUE)

        if outcome.result != ReconcileResult.NOT_DUE:
            logger.info(
                "Charge timed out for grant %s: attempt %d -> %s",
                grant_id, outcome.payment.attempt_count, outcome.result.value,
            )
        await self._notify(outcome)
        return outcome

    async def sweep_timeouts(self, now: Optional[datetime] = None) -> int:
        """Run handle_timeout for every overdue outstanding charge. Returns the number failed."""
        now = now or utcnow()
        cutoff = now - timedelta(milliseconds=self.config.webhook_timeout_ms)
        # Stored datetimes are naive UTC on SQLite.
        result = await self.db.execute(
            select(Payment.grant_id).where(
                Payment.status == PaymentStatus.PENDING.value,
                Payment.charge_requested_at.isnot(None),
                Payment.charge_requested_at <= cutoff.replace(tzinfo=None),
            )
        )
        grant_ids = list(result.scalars().all())
        await self.db.commit()

        timed_out = 0
        for grant_id in grant_ids:
            try:
                outcome = await self.handle_timeout(grant_id, now=now)
            except GrantNotFound:
                logger.error("Payment references missing grant %s", grant_id)
                continue
            if outcome.result != ReconcileResult.NOT_DUE:
                timed_out += 1
        return timed_out

    async def _notify(self, outcome: ReconcileOutcome) -> None:
        if outcome.result == ReconcileResult.APPLIED:
            await self.notifier.access_unlocked(outcome.grant)
        elif outcome.result == ReconcileResult.EXHAUSTED:
            await self.notifier.payment_failed(outcome.grant)
