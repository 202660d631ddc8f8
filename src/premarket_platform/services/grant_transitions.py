"""Shared helpers for committing grant and payment transitions.

Every mutation of a GrantAccess or Payment goes through transition_grant()
and is committed by commit_with_retry(), which re-runs the whole operation
against freshly loaded rows when the optimistic version check fails.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional, TypeVar

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from premarket_platform.domain.enums import ActorRole, GrantEventType, GrantStatus
from premarket_platform.domain.errors import (
    ConcurrentWriteConflict,
    GrantNotFound,
    PreMarketError,
    RequestNotFound,
)
from premarket_platform.domain.models import GrantAccess, GrantAccessEvent, Payment, PreMarketRequest
from premarket_platform.services.grant_state_machine import GrantAccessStateMachine

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Lost optimistic-concurrency races tolerated before giving up
CONFLICT_RETRY_LIMIT = 3
CONFLICT_BACKOFF_SECONDS = 0.01

state_machine = GrantAccessStateMachine()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_active(grant: GrantAccess, now: Optional[datetime] = None) -> bool:
    """Non-rejected and non-expired."""
    if grant.active_key is None or grant.status == GrantStatus.REJECTED.value:
        return False
    expires_at = as_utc(grant.expires_at)
    return expires_at is None or expires_at > (now or utcnow())


async def commit_with_retry(db: AsyncSession, operation: Callable[[], Awaitable[T]], label: str) -> T:
    """Run operation() and commit; on a version conflict roll back and run it again.

    operation must reload every row it mutates so the retry sees committed state.
    """
    for attempt in range(1, CONFLICT_RETRY_LIMIT + 1):
        try:
            result = await operation()
            await db.commit()
            return result
        except StaleDataError:
            await db.rollback()
            logger.warning(
                "Version conflict on %s (attempt %d/%d); retrying against committed state",
                label, attempt, CONFLICT_RETRY_LIMIT,
            )
            await asyncio.sleep(CONFLICT_BACKOFF_SECONDS * attempt)
        except PreMarketError:
            await db.rollback()
            raise
    raise ConcurrentWriteConflict(f"{label}: lost {CONFLICT_RETRY_LIMIT} concurrent write races")


async def load_request(db: AsyncSession, request_id: str) -> PreMarketRequest:
    """Look a request up by primary key or by its public "R..." id. Deleted rows included."""
    result = await db.execute(
        select(PreMarketRequest)
        .where(or_(PreMarketRequest.id == request_id, PreMarketRequest.request_id == request_id))
        .execution_options(populate_existing=True)
    )
    request = result.scalar_one_or_none()
    if request is None:
        raise RequestNotFound(request_id)
    return request


async def load_grant(db: AsyncSession, grant_id: str) -> GrantAccess:
    result = await db.execute(
        select(GrantAccess)
        .where(GrantAccess.id == grant_id)
        .execution_options(populate_existing=True)
    )
    grant = result.scalar_one_or_none()
    if grant is None:
        raise GrantNotFound(grant_id)
    return grant


async def load_payment_for_grant(db: AsyncSession, grant_id: str) -> Optional[Payment]:
    result = await db.execute(
        select(Payment)
        .where(Payment.grant_id == grant_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def record_grant_event(
    db: AsyncSession,
    grant: GrantAccess,
    event_type: GrantEventType,
    actor: ActorRole,
    actor_id: Optional[str] = None,
    from_status: Optional[str] = None,
    to_status: Optional[str] = None,
    data: Optional[dict] = None,
) -> GrantAccessEvent:
    event = GrantAccessEvent(
        id=str(uuid.uuid4()),
        grant_id=grant.id,
        event_type=event_type.value,
        actor=actor.value,
        actor_id=actor_id or ("system" if actor == ActorRole.SYSTEM else None),
        from_status=from_status,
        to_status=to_status if to_status is not None else grant.status,
        data=data,
    )
    db.add(event)
    return event


def transition_grant(
    db: AsyncSession,
    grant: GrantAccess,
    target: GrantStatus,
    *,
    actor: ActorRole,
    event_type: GrantEventType,
    actor_id: Optional[str] = None,
    data: Optional[dict] = None,
    now: Optional[datetime] = None,
    ttl_days: Optional[int] = None,
) -> bool:
    """Move grant to target and write the audit event.

    Returns False (and changes nothing) when grant is already in target's
    terminal state. Raises InvalidTransitionError for illegal moves.
    """
    if not state_machine.validate_transition(grant.status, target, actor):
        logger.info("Grant %s already %s; transition skipped", grant.id, target.value)
        return False

    now = now or utcnow()
    old_status = grant.status
    grant.status = target.value
    grant.updated_at = now

    if state_machine.is_unlocked(target):
        grant.unlocked_at = now
        if ttl_days:
            grant.expires_at = now + timedelta(days=ttl_days)
    elif target == GrantStatus.REJECTED:
        grant.active_key = None

    record_grant_event(
        db, grant, event_type, actor,
        actor_id=actor_id, from_status=old_status, to_status=target.value, data=data,
    )
    logger.info("Grant %s: %s -> %s (%s)", grant.id, old_status, target.value, event_type.value)
    return True
