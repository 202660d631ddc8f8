"""Grant-Access Lifecycle Manager: creates, prices, charges and rejects grants.

Flow for a new grant:
  pending --(pricing free)--> free (unlocked, no Payment row)
  pending --(pricing charged)--> approved + Payment(pending) --> provider charge

The charge call happens after the grant and payment are committed and outside
any transaction. Outcomes come back through the webhook reconciler. Notifications
are sent only after the transition that triggers them has committed.
"""

import logging
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from premarket_platform.app.config import GrantAccessConfig, get_grant_config
from premarket_platform.domain.enums import (
    ActorRole,
    GrantEventType,
    GrantStatus,
    PaymentStatus,
    RequestStatus,
)
from premarket_platform.domain.errors import (
    DuplicateActiveGrant,
    GrantPreviouslyRejected,
    InvalidTransitionError,
    PaymentAttemptsExhausted,
    PaymentProviderError,
    PermissionDenied,
    RequestDeleted,
)
from premarket_platform.domain.models import GrantAccess, Payment, PreMarketRequest
from premarket_platform.domain.schemas import PaymentStatsResponse
from premarket_platform.infra.payment_provider import PaymentProviderClient
from premarket_platform.services.auth_service import Actor
from premarket_platform.services.grant_transitions import (
    as_utc,
    commit_with_retry,
    is_active,
    load_grant,
    load_payment_for_grant,
    load_request,
    record_grant_event,
    state_machine,
    transition_grant,
    utcnow,
)
from premarket_platform.services.notification_service import GrantNotifier
from premarket_platform.services.payment_service import PaymentLifecycleManager
from premarket_platform.services.pricing_resolver import PricingResolver

logger = logging.getLogger(__name__)

UNSETTLED_STATUSES = {status.value for status in GrantStatus if not state_machine.is_terminal(status)}


def active_key_for(request: PreMarketRequest, agent_id: str) -> str:
    return f"{request.id}:{agent_id}"


class GrantAccessService:
    """Entry point for every grant-access operation."""

    def __init__(
        self,
        db: AsyncSession,
        config: Optional[GrantAccessConfig] = None,
        provider: Optional[PaymentProviderClient] = None,
        notifier: Optional[GrantNotifier] = None,
    ):
        self.db = db
        self.config = config or get_grant_config()
        self.provider = provider or PaymentProviderClient()
        self.notifier = notifier or GrantNotifier(db)
        self.pricing = PricingResolver(self.config)
        self.payments = PaymentLifecycleManager(db, self.config)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_grant(
        self,
        request_id: str,
        agent_id: str,
        agent_email: Optional[str] = None,
        admin_override: bool = False,
    ) -> GrantAccess:
        """Create and price a grant for agent_id on request_id.

        Raises:
            RequestNotFound, RequestDeleted: unknown or deleted request.
            DuplicateActiveGrant: the agent already holds an active grant.
            GrantPreviouslyRejected: the agent was rejected before and neither
                admin_override nor the re-grant setting allows another one.
            PricingError: pricing policy is misconfigured. Nothing is written.
        """

        async def operation() -> GrantAccess:
            request = await load_request(self.db, request_id)
            if request.status == RequestStatus.DELETED.value:
                raise RequestDeleted(request.request_id)

            decision = self.pricing.resolve(request, agent_id)

            await self._release_expired_or_refuse(request, agent_id, admin_override)

            grant = GrantAccess(
                id=str(uuid.uuid4()),
                request_id=request.id,
                agent_id=agent_id,
                agent_email=agent_email,
                status=GrantStatus.PENDING.value,
                payment_status=PaymentStatus.PENDING.value,
                charge_amount=decision.amount,
                currency=decision.currency,
                attempts=0,
                active_key=active_key_for(request, agent_id),
            )
            self.db.add(grant)
            await self.db.flush()
            record_grant_event(
                self.db, grant, GrantEventType.REQUESTED, ActorRole.AGENT,
                actor_id=agent_id,
                to_status=GrantStatus.PENDING.value,
                data={"admin_override": admin_override},
            )

            if decision.is_free:
                grant.payment_status = PaymentStatus.FREE.value
                transition_grant(
                    self.db, grant, GrantStatus.FREE,
                    actor=ActorRole.SYSTEM,
                    event_type=GrantEventType.PRICED_FREE,
                    data={"reason": decision.reason},
                    ttl_days=self.config.grant_ttl_days,
                )
            else:
                transition_grant(
                    self.db, grant, GrantStatus.APPROVED,
                    actor=ActorRole.SYSTEM,
                    event_type=GrantEventType.PRICED_CHARGED,
                    data={"reason": decision.reason, "amount": decision.amount, "currency": decision.currency},
                )
                self.payments.create_payment(grant, decision.amount, decision.currency)
            return grant

        try:
            grant = await commit_with_retry(self.db, operation, f"create_grant({request_id}, {agent_id})")
        except IntegrityError:
            await self.db.rollback()
            raise DuplicateActiveGrant(request_id, agent_id)

        logger.info(
            "Grant created: id=%s request=%s agent=%s status=%s amount=%.2f",
            grant.id, grant.request_id, agent_id, grant.status, grant.charge_amount,
        )
        grant_id = grant.id
        await self.notifier.access_requested(grant)
        grant = await load_grant(self.db, grant_id)

        if grant.status == GrantStatus.FREE.value:
            await self.notifier.access_unlocked(grant)
            return grant

        await self._start_charge(grant_id)
        return await load_grant(self.db, grant_id)

    async def _release_expired_or_refuse(self, request: PreMarketRequest, agent_id: str, admin_override: bool) -> None:
        """Clear expired active grants for the pair, then enforce uniqueness and re-grant policy."""
        result = await self.db.execute(
            select(GrantAccess)
            .where(GrantAccess.request_id == request.id, GrantAccess.agent_id == agent_id)
            .execution_options(populate_existing=True)
        )
        existing = result.scalars().all()
        now = utcnow()

        for grant in existing:
            if grant.active_key is None:
                continue
            if is_active(grant, now):
                raise DuplicateActiveGrant(request.request_id, agent_id)
            grant.active_key = None
            record_grant_event(
                self.db, grant, GrantEventType.EXPIRED, ActorRole.SYSTEM,
                from_status=grant.status,
                data={"expired_at": as_utc(grant.expires_at).isoformat() if grant.expires_at else None},
            )
            logger.info("Grant %s expired; released active slot for agent %s", grant.id, agent_id)

        rejected_before = any(g.status == GrantStatus.REJECTED.value for g in existing)
        if rejected_before and not (admin_override or self.config.allow_regrant_after_rejection):
            raise GrantPreviouslyRejected(request.request_id, agent_id)

    # ------------------------------------------------------------------
    # Charging
    # ------------------------------------------------------------------

    async def retry_charge(self, grant_id: str) -> GrantAccess:
        """Issue a fresh provider charge after a failed or timed-out attempt.

        A no-op while a charge is still outstanding.
        """
        grant = await load_grant(self.db, grant_id)
        payment = await load_payment_for_grant(self.db, grant_id)

        if payment is not None and payment.attempt_count >= self.config.max_payment_attempts:
            raise PaymentAttemptsExhausted(grant_id, payment.attempt_count)
        if payment is None or grant.status != GrantStatus.APPROVED.value or payment.status != PaymentStatus.PENDING.value:
            raise InvalidTransitionError(
                "grant", grant.status, GrantStatus.APPROVED,
                "Only an approved grant with a pending payment can be charged",
            )
        if payment.charge_requested_at is not None:
            logger.info("Grant %s already has an outstanding charge; retry skipped", grant_id)
            return grant

        # Close the read transaction before the provider call.
        await self.db.commit()
        await self._start_charge(grant_id)
        return await load_grant(self.db, grant_id)

    async def _start_charge(self, grant_id: str) -> None:
        grant = await load_grant(self.db, grant_id)
        payment = await load_payment_for_grant(self.db, grant_id)
        if payment is None or grant.status != GrantStatus.APPROVED.value or payment.status != PaymentStatus.PENDING.value:
            return

        amount, currency = payment.amount, payment.currency
        metadata = {
            "grant_id": grant.id,
            "payment_id": payment.id,
            "idempotency_key": f"{payment.id}:{payment.attempt_count + 1}",
        }
        await self.db.commit()

        try:
            reference = await self.provider.create_charge(amount, currency, metadata)
        except PaymentProviderError as e:
            logger.warning("Charge for grant %s failed at the provider: %s", grant_id, e)
            await self._record_provider_failure(grant_id, str(e))
            return

        async def store_reference() -> None:
            grant = await load_grant(self.db, grant_id)
            payment = await load_payment_for_grant(self.db, grant_id)
            if grant.status != GrantStatus.APPROVED.value or payment.status != PaymentStatus.PENDING.value:
                logger.info("Grant %s settled before charge %s was stored", grant_id, reference)
                self.payments.register_charge(payment, reference)
                return
            self.payments.start_charge(payment, grant, reference)

        await commit_with_retry(self.db, store_reference, f"start_charge({grant_id})")

    async def _record_provider_failure(self, grant_id: str, error: str) -> None:
        async def operation() -> bool:
            grant = await load_grant(self.db, grant_id)
            payment = await load_payment_for_grant(self.db, grant_id)
            if grant.status != GrantStatus.APPROVED.value or payment.status != PaymentStatus.PENDING.value:
                return False
            return self.payments.record_attempt(payment, grant, data={"provider_error": error})

        exhausted = await commit_with_retry(self.db, operation, f"provider_failure({grant_id})")
        if exhausted:
            await self.notifier.payment_failed(await load_grant(self.db, grant_id))

    # ------------------------------------------------------------------
    # Rejection
    # ------------------------------------------------------------------

    async def reject_grant(self, grant_id: str, actor: Actor, reason: Optional[str] = None) -> GrantAccess:
        """Admin rejection of a pending or approved grant. Rejecting twice is a no-op."""
        if not actor.is_admin:
            raise PermissionDenied("Only admins can reject a grant")

        async def operation() -> bool:
            grant = await load_grant(self.db, grant_id)
            if grant.status == GrantStatus.REJECTED.value:
                return False
            return self._reject(
                grant,
                await load_payment_for_grant(self.db, grant_id),
                reason=reason or "admin_rejected",
                event_type=GrantEventType.ADMIN_REJECTED,
                actor=ActorRole.ADMIN,
                actor_id=actor.id,
            )

        changed = await commit_with_retry(self.db, operation, f"reject_grant({grant_id})")
        grant = await load_grant(self.db, grant_id)
        if changed:
            logger.info("Grant %s rejected by admin %s", grant_id, actor.id)
            await self.notifier.grant_rejected(grant)
        return grant

    async def reject_unsettled(self, request: PreMarketRequest, now: Optional[datetime] = None) -> list[GrantAccess]:
        """Reject every pending/approved grant on request. Does not commit."""
        result = await self.db.execute(
            select(GrantAccess)
            .where(GrantAccess.request_id == request.id, GrantAccess.status.in_(UNSETTLED_STATUSES))
            .execution_options(populate_existing=True)
        )
        rejected = []
        for grant in result.scalars().all():
            payment = await load_payment_for_grant(self.db, grant.id)
            self._reject(
                grant, payment,
                reason="request_deleted",
                event_type=GrantEventType.CASCADE_REJECTED,
                actor=ActorRole.SYSTEM,
                now=now,
            )
            rejected.append(grant)
        return rejected

    async def cascade_reject(self, request_id: str) -> list[GrantAccess]:
        """Re-run the deletion cascade on a deleted request.

        Rejects any grant still pending or approved. Raises
        InvalidTransitionError while the request is active or archived.
        """
        request = await load_request(self.db, request_id)
        if request.status != RequestStatus.DELETED.value:
            raise InvalidTransitionError(
                "request", request.status, RequestStatus.DELETED,
                "Grants are cascade-rejected only once the request is deleted",
            )

        async def operation() -> list[GrantAccess]:
            return await self.reject_unsettled(await load_request(self.db, request.id))

        rejected = await commit_with_retry(self.db, operation, f"cascade_reject({request.request_id})")
        logger.info("Cascade reject on %s: %d grants rejected", request.request_id, len(rejected))
        for grant in rejected:
            await self.notifier.grant_rejected(grant)
        return rejected

    def _reject(
        self,
        grant: GrantAccess,
        payment: Optional[Payment],
        *,
        reason: str,
        event_type: GrantEventType,
        actor: ActorRole,
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        if payment is not None and payment.status == PaymentStatus.PENDING.value:
            return self.payments.mark_failed(
                payment, grant,
                reason=reason, event_type=event_type, actor=actor, actor_id=actor_id, now=now,
            )
        grant.rejection_reason = reason
        return transition_grant(
            self.db, grant, GrantStatus.REJECTED,
            actor=actor, actor_id=actor_id, event_type=event_type, now=now,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_grant(self, grant_id: str) -> GrantAccess:
        return await load_grant(self.db, grant_id)

    async def get_payment(self, grant_id: str) -> Optional[Payment]:
        return await load_payment_for_grant(self.db, grant_id)

    async def list_grants_for_request(self, request_id: str) -> list[GrantAccess]:
        request = await load_request(self.db, request_id)
        result = await self.db.execute(
            select(GrantAccess)
            .where(GrantAccess.request_id == request.id)
            .order_by(GrantAccess.created_at)
        )
        return list(result.scalars().all())

    async def list_grants_for_agent(self, agent_id: str) -> list[GrantAccess]:
        result = await self.db.execute(
            select(GrantAccess)
            .where(GrantAccess.agent_id == agent_id)
            .order_by(GrantAccess.created_at.desc())
        )
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Admin reporting
    # ------------------------------------------------------------------

    async def list_payments(
        self,
        status: Optional[PaymentStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Payment]:
        """Newest payments first, optionally filtered by status."""
        query = select(Payment)
        if status is not None:
            query = query.where(Payment.status == PaymentStatus(status).value)
        result = await self.db.execute(
            query.order_by(Payment.created_at.desc(), Payment.id).offset(offset).limit(limit)
        )
        return list(result.scalars().all())

    async def payment_stats(self) -> PaymentStatsResponse:
        """Grant counts by payment status plus revenue from succeeded payments."""
        by_payment = dict(
            (await self.db.execute(
                select(GrantAccess.payment_status, func.count(GrantAccess.id)).group_by(GrantAccess.payment_status)
            )).all()
        )
        by_status = dict(
            (await self.db.execute(
                select(GrantAccess.status, func.count(GrantAccess.id)).group_by(GrantAccess.status)
            )).all()
        )
        paid_count, revenue = (await self.db.execute(
            select(func.count(Payment.id), func.coalesce(func.sum(Payment.amount), 0))
            .where(Payment.status == PaymentStatus.SUCCEEDED.value)
        )).one()

        revenue = round(float(revenue), 2)
        return PaymentStatsResponse(
            total_grants=sum(by_payment.values()),
            total_free=by_payment.get(PaymentStatus.FREE.value, 0),
            total_pending=by_payment.get(PaymentStatus.PENDING.value, 0),
            total_paid=by_payment.get(PaymentStatus.SUCCEEDED.value, 0),
            total_failed=by_payment.get(PaymentStatus.FAILED.value, 0),
            total_revenue=revenue,
            average_payment=round(revenue / paid_count, 2) if paid_count else 0.0,
            grants_by_status=by_status,
        )
