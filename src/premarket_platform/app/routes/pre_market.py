"""Pre-market request API endpoints for renters, agents and admins."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from premarket_platform.app.routes.auth import get_current_actor, require_role
from premarket_platform.app.routes.errors import http_error
from premarket_platform.app.routes.grant_access import get_grant_service
from premarket_platform.domain.enums import ActorRole
from premarket_platform.domain.errors import PreMarketError
from premarket_platform.domain.schemas import (
    AgentRequestView,
    PreMarketRequestCreate,
    PreMarketRequestDetail,
    PreMarketRequestUpdate,
    VisibilityResponse,
)
from premarket_platform.infra.database import get_db
from premarket_platform.services.auth_service import Actor
from premarket_platform.services.grant_access_service import GrantAccessService
from premarket_platform.services.pre_market_service import PreMarketRequestService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/pre-market-requests", tags=["pre-market"])


def get_request_service(
    db: AsyncSession = Depends(get_db),
    grants: GrantAccessService = Depends(get_grant_service),
) -> PreMarketRequestService:
    return PreMarketRequestService(db, grants)


# ---------------------------------------------------------------------------
# Renter endpoints
# ---------------------------------------------------------------------------


@router.post("", response_model=PreMarketRequestDetail, status_code=201)
async def create_request(
    body: PreMarketRequestCreate,
    actor: Actor = Depends(require_role(ActorRole.RENTER)),
    service: PreMarketRequestService = Depends(get_request_service),
):
    try:
        return await service.create_request(actor.id, body)
    except PreMarketError as e:
        raise http_error(e)


@router.get("", response_model=list[PreMarketRequestDetail])
async def list_my_requests(
    actor: Actor = Depends(require_role(ActorRole.RENTER)),
    service: PreMarketRequestService = Depends(get_request_service),
):
    return await service.list_requests_for_renter(actor.id)


@router.get("/{request_id}", response_model=PreMarketRequestDetail)
async def get_request(
    request_id: str,
    actor: Actor = Depends(require_role(ActorRole.RENTER, ActorRole.ADMIN)),
    service: PreMarketRequestService = Depends(get_request_service),
):
    try:
        request = await service.get_request(request_id)
    except PreMarketError as e:
        raise http_error(e)
    if not (actor.is_admin or request.renter_id == actor.id):
        raise HTTPException(status_code=403, detail="Access denied")
    return request


@router.patch("/{request_id}", response_model=PreMarketRequestDetail)
async def update_request(
    request_id: str,
    body: PreMarketRequestUpdate,
    actor: Actor = Depends(require_role(ActorRole.RENTER, ActorRole.ADMIN)),
    service: PreMarketRequestService = Depends(get_request_service),
):
    try:
        return await service.update_request(request_id, actor, body)
    except PreMarketError as e:
        raise http_error(e)


@router.post("/{request_id}/archive", response_model=PreMarketRequestDetail)
async def archive_request(
    request_id: str,
    actor: Actor = Depends(require_role(ActorRole.RENTER, ActorRole.ADMIN)),
    service: PreMarketRequestService = Depends(get_request_service),
):
    try:
        return await service.archive_request(request_id, actor)
    except PreMarketError as e:
        raise http_error(e)


@router.delete("/{request_id}", response_model=PreMarketRequestDetail)
async def delete_request(
    request_id: str,
    actor: Actor = Depends(require_role(ActorRole.RENTER, ActorRole.ADMIN)),
    service: PreMarketRequestService = Depends(get_request_service),
):
    """Soft delete. Every unsettled grant on the request is rejected."""
    try:
        return await service.delete_request(request_id, actor)
    except PreMarketError as e:
        raise http_error(e)


# ---------------------------------------------------------------------------
# Agent endpoints
# ---------------------------------------------------------------------------


@router.get("/{request_id}/agent-view", response_model=AgentRequestView)
async def get_request_for_agent(
    request_id: str,
    actor: Actor = Depends(require_role(ActorRole.AGENT)),
    service: PreMarketRequestService = Depends(get_request_service),
):
    """Full details once access is unlocked, otherwise the anonymous summary."""
    try:
        return await service.get_request_for_agent(request_id, actor.id)
    except PreMarketError as e:
        raise http_error(e)


@router.get("/{request_id}/visibility", response_model=VisibilityResponse)
async def can_view_full_details(
    request_id: str,
    agent_id: str | None = None,
    actor: Actor = Depends(get_current_actor),
    service: PreMarketRequestService = Depends(get_request_service),
):
    """Whether an agent may see full details. Admins may ask on behalf of any agent."""
    if agent_id and agent_id != actor.id and not actor.is_admin:
        raise HTTPException(status_code=403, detail="Access denied")
    target = agent_id or actor.id
    return VisibilityResponse(
        request_id=request_id,
        agent_id=target,
        full_access=await service.can_view_full_details(request_id, target),
    )
