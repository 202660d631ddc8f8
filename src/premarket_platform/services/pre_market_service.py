"""Pre-Market Request Manager: renter-owned requests and agent visibility gating.

Requests only move toward deleted (active -> archived -> deleted). Deletion
is soft and rejects every unsettled grant in the same commit.
can_view_full_details() is the single read surface that decides whether an
agent sees the renter's identity and description.
"""

import logging
import secrets
from datetime import date
from typing import Optional, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from premarket_platform.domain.enums import RequestStatus
from premarket_platform.domain.errors import (
    PermissionDenied,
    RequestDeleted,
    RequestNotFound,
    ValidationError,
)
from premarket_platform.domain.models import GrantAccess, PreMarketRequest
from premarket_platform.domain.schemas import (
    AgentRequestView,
    PreMarketRequestCreate,
    PreMarketRequestDetail,
    PreMarketRequestSummary,
    PreMarketRequestUpdate,
)
from premarket_platform.services.auth_service import Actor
from premarket_platform.services.grant_access_service import GrantAccessService
from premarket_platform.services.grant_state_machine import validate_request_transition
from premarket_platform.services.grant_transitions import (
    commit_with_retry,
    is_active,
    load_request,
    state_machine,
    utcnow,
)

logger = logging.getLogger(__name__)

REQUEST_ID_PREFIX = "R"


def generate_request_id() -> str:
    return REQUEST_ID_PREFIX + secrets.token_hex(4).upper()


def _validation_message(e: PydanticValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" if err["loc"] else err["msg"]
        for err in e.errors()
    )


class PreMarketRequestService:
    """CRUD for pre-market requests plus the agent visibility check."""

    def __init__(self, db: AsyncSession, grants: Optional[GrantAccessService] = None):
        self.db = db
        self.grants = grants or GrantAccessService(db)

    # ------------------------------------------------------------------
    # Create / read
    # ------------------------------------------------------------------

    async def create_request(
        self,
        renter_id: str,
        payload: Union[PreMarketRequestCreate, dict],
        today: Optional[date] = None,
    ) -> PreMarketRequest:
        """Validate and store a new active request. Raises ValidationError before writing anything."""
        if isinstance(payload, dict):
            try:
                payload = PreMarketRequestCreate.model_validate(payload)
            except PydanticValidationError as e:
                raise ValidationError(_validation_message(e)) from e
        try:
            payload.moving_date_range.check_window(today or utcnow().date())
        except ValueError as e:
            raise ValidationError(str(e)) from e

        request_id = generate_request_id()
        while await self._request_id_taken(request_id):
            request_id = generate_request_id()

        request = PreMarketRequest(
            request_id=request_id,
            renter_id=renter_id,
            request_name=payload.request_name,
            description=payload.description,
            bedrooms=[b.value for b in payload.bedrooms],
            bathrooms=[b.value for b in payload.bathrooms],
            price_min=payload.price_range.min,
            price_max=payload.price_range.max,
            moving_date_earliest=payload.moving_date_range.earliest,
            moving_date_latest=payload.moving_date_range.latest,
            status=RequestStatus.ACTIVE.value,
        )
        self.db.add(request)
        await self.db.commit()
        logger.info("Pre-market request created: %s renter=%s", request.request_id, renter_id)
        return request

    async def _request_id_taken(self, request_id: str) -> bool:
        result = await self.db.execute(
            select(PreMarketRequest.id).where(PreMarketRequest.request_id == request_id)
        )
        return result.scalar_one_or_none() is not None

    async def get_request(self, request_id: str) -> PreMarketRequest:
        return await load_request(self.db, request_id)

    async def list_requests_for_renter(self, renter_id: str, include_deleted: bool = False) -> list[PreMarketRequest]:
        query = select(PreMarketRequest).where(PreMarketRequest.renter_id == renter_id)
        if not include_deleted:
            query = query.where(PreMarketRequest.status != RequestStatus.DELETED.value)
        result = await self.db.execute(query.order_by(PreMarketRequest.created_at.desc()))
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def update_request(
        self,
        request_id: str,
        actor: Actor,
        payload: Union[PreMarketRequestUpdate, dict],
    ) -> PreMarketRequest:
        """Partial update by the owner or an admin. Only active requests are editable."""
        if isinstance(payload, dict):
            try:
                payload = PreMarketRequestUpdate.model_validate(payload)
            except PydanticValidationError as e:
                raise ValidationError(_validation_message(e)) from e

        request = await load_request(self.db, request_id)
        self._check_owner(request, actor)
        if request.status != RequestStatus.ACTIVE.value:
            raise ValidationError(f"Request {request.request_id} is {request.status} and can no longer be edited")

        fields = payload.model_dump(exclude_unset=True)
        if "request_name" in fields and payload.request_name is not None:
            request.request_name = payload.request_name
        if "description" in fields:
            request.description = payload.description
        if payload.bedrooms is not None:
            request.bedrooms = [b.value for b in payload.bedrooms]
        if payload.bathrooms is not None:
            request.bathrooms = [b.value for b in payload.bathrooms]
        if payload.price_range is not None:
            request.price_min = payload.price_range.min
            request.price_max = payload.price_range.max
        if payload.moving_date_range is not None:
            request.moving_date_earliest = payload.moving_date_range.earliest
            request.moving_date_latest = payload.moving_date_range.latest

        await self.db.commit()
        logger.info("Pre-market request %s updated by %s (%s)", request.request_id, actor.id, ", ".join(fields))
        return request

    async def archive_request(self, request_id: str, actor: Actor) -> PreMarketRequest:
        """Hide a request from new activity. Existing grants are untouched and it stays grantable."""
        request = await load_request(self.db, request_id)
        self._check_owner(request, actor)
        if request.status == RequestStatus.DELETED.value:
            raise RequestDeleted(request.request_id)
        if validate_request_transition(request.status, RequestStatus.ARCHIVED):
            request.status = RequestStatus.ARCHIVED.value
            await self.db.commit()
            logger.info("Pre-market request %s archived by %s", request.request_id, actor.id)
        return request

    async def delete_request(self, request_id: str, actor: Actor) -> PreMarketRequest:
        """Soft delete and cascade-reject unsettled grants in one commit. Idempotent."""
        request = await load_request(self.db, request_id)
        self._check_owner(request, actor)
        pk = request.id

        async def operation() -> tuple[PreMarketRequest, list[GrantAccess]]:
            request = await load_request(self.db, pk)
            if not validate_request_transition(request.status, RequestStatus.DELETED):
                return request, []
            now = utcnow()
            request.status = RequestStatus.DELETED.value
            request.deleted_at = now
            return request, await self.grants.reject_unsettled(request, now=now)

        request, rejected = await commit_with_retry(self.db, operation, f"delete_request({request_id})")
        logger.info(
            "Pre-market request %s deleted by %s; %d unsettled grants rejected",
            request.request_id, actor.id, len(rejected),
        )
        for grant in rejected:
            await self.grants.notifier.grant_rejected(grant)
        return request

    def _check_owner(self, request: PreMarketRequest, actor: Actor) -> None:
        if actor.is_admin or actor.id == request.renter_id:
            return
        logger.info("Permission denied: actor=%s request=%s", actor.id, request.request_id)
        raise PermissionDenied(f"Only the owner or an admin can modify request {request.request_id}")

    # ------------------------------------------------------------------
    # Visibility
    # ------------------------------------------------------------------

    async def can_view_full_details(self, request_id: str, agent_id: str) -> bool:
        """True iff the agent holds an unexpired free/paid grant and the request is not deleted."""
        try:
            request = await load_request(self.db, request_id)
        except RequestNotFound:
            return False
        if request.status == RequestStatus.DELETED.value:
            return False

        result = await self.db.execute(
            select(GrantAccess).where(
                GrantAccess.request_id == request.id,
                GrantAccess.agent_id == agent_id,
            )
        )
        now = utcnow()
        return any(
            state_machine.is_unlocked(grant.status) and is_active(grant, now)
            for grant in result.scalars().all()
        )

    async def get_request_for_agent(self, request_id: str, agent_id: str) -> AgentRequestView:
        """Full details for unlocked agents, the redacted summary for everyone else."""
        request = await load_request(self.db, request_id)
        if request.status == RequestStatus.DELETED.value:
            raise RequestNotFound(request_id)

        if await self.can_view_full_details(request.id, agent_id):
            return AgentRequestView(full_access=True, request=PreMarketRequestDetail.model_validate(request))
        return AgentRequestView(full_access=False, request=PreMarketRequestSummary.model_validate(request))
