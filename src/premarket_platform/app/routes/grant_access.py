"""Grant-access API endpoints: creation, reads, charge retries and admin actions."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from premarket_platform.app.config import GrantAccessConfig, get_grant_config
from premarket_platform.app.routes.auth import get_current_actor, require_role
from premarket_platform.app.routes.errors import http_error
from premarket_platform.domain.enums import ActorRole, PaymentStatus
from premarket_platform.domain.errors import PreMarketError
from premarket_platform.domain.schemas import (
    CascadeRejectResponse,
    GrantAccessCreate,
    GrantAccessResponse,
    GrantRejectRequest,
    GrantWithPayment,
    PaymentResponse,
    PaymentStatsResponse,
    ReconcileResponse,
)
from premarket_platform.infra.database import get_db
from premarket_platform.services.auth_service import Actor
from premarket_platform.services.grant_access_service import GrantAccessService
from premarket_platform.services.grant_transitions import load_request
from premarket_platform.services.webhook_reconciler import WebhookReconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/grants", tags=["grant-access"])


def get_grant_service(
    db: AsyncSession = Depends(get_db),
    config: GrantAccessConfig = Depends(get_grant_config),
) -> GrantAccessService:
    return GrantAccessService(db, config)


def get_reconciler(
    db: AsyncSession = Depends(get_db),
    config: GrantAccessConfig = Depends(get_grant_config),
) -> WebhookReconciler:
    return WebhookReconciler(db, config)


async def _with_payment(service: GrantAccessService, grant) -> GrantWithPayment:
    payment = await service.get_payment(grant.id)
    return GrantWithPayment(
        grant=GrantAccessResponse.model_validate(grant),
        payment=PaymentResponse.model_validate(payment) if payment else None,
    )


def _check_grant_owner(grant, actor: Actor) -> None:
    if actor.is_admin or grant.agent_id == actor.id:
        return
    raise HTTPException(status_code=403, detail="Access denied")


# ---------------------------------------------------------------------------
# Agent endpoints
# ---------------------------------------------------------------------------


@router.post("", response_model=GrantWithPayment, status_code=201)
async def create_grant(
    body: GrantAccessCreate,
    actor: Actor = Depends(require_role(ActorRole.AGENT, ActorRole.ADMIN)),
    service: GrantAccessService = Depends(get_grant_service),
):
    """Request access to a pre-market request. Priced immediately; charged grants start a charge."""
    if actor.is_admin:
        if not body.agent_id:
            raise HTTPException(status_code=422, detail="agent_id is required when an admin creates a grant")
        agent_id, agent_email = body.agent_id, body.agent_email
    else:
        if body.admin_override:
            raise HTTPException(status_code=403, detail="Only admins can override a previous rejection")
        agent_id, agent_email = actor.id, actor.email

    try:
        grant = await service.create_grant(
            body.request_id, agent_id,
            agent_email=agent_email,
            admin_override=body.admin_override,
        )
        return await _with_payment(service, grant)
    except PreMarketError as e:
        raise http_error(e)


@router.get("/mine", response_model=list[GrantAccessResponse])
async def list_my_grants(
    actor: Actor = Depends(require_role(ActorRole.AGENT)),
    service: GrantAccessService = Depends(get_grant_service),
):
    return await service.list_grants_for_agent(actor.id)


@router.get("/request/{request_id}", response_model=list[GrantAccessResponse])
async def list_grants_for_request(
    request_id: str,
    actor: Actor = Depends(get_current_actor),
    service: GrantAccessService = Depends(get_grant_service),
):
    """All grants on a request. Visible to the renter who owns it and to admins."""
    try:
        request = await load_request(service.db, request_id)
        if not (actor.is_admin or request.renter_id == actor.id):
            raise HTTPException(status_code=403, detail="Access denied")
        return await service.list_grants_for_request(request.id)
    except PreMarketError as e:
        raise http_error(e)


@router.get("/{grant_id}", response_model=GrantWithPayment)
async def get_grant(
    grant_id: str,
    actor: Actor = Depends(get_current_actor),
    service: GrantAccessService = Depends(get_grant_service),
):
    try:
        grant = await service.get_grant(grant_id)
    except PreMarketError as e:
        raise http_error(e)
    _check_grant_owner(grant, actor)
    return await _with_payment(service, grant)


@router.post("/{grant_id}/retry-charge", response_model=GrantWithPayment)
async def retry_charge(
    grant_id: str,
    actor: Actor = Depends(require_role(ActorRole.AGENT, ActorRole.ADMIN)),
    service: GrantAccessService = Depends(get_grant_service),
):
    """Start a fresh charge after a failed or timed-out attempt."""
    try:
        _check_grant_owner(await service.get_grant(grant_id), actor)
        grant = await service.retry_charge(grant_id)
        return await _with_payment(service, grant)
    except PreMarketError as e:
        raise http_error(e)


# ---------------------------------------------------------------------------
# Admin endpoints
# ---------------------------------------------------------------------------


@router.post("/{grant_id}/reject", response_model=GrantAccessResponse)
async def reject_grant(
    grant_id: str,
    body: GrantRejectRequest,
    actor: Actor = Depends(require_role(ActorRole.ADMIN)),
    service: GrantAccessService = Depends(get_grant_service),
):
    try:
        return await service.reject_grant(grant_id, actor, body.reason)
    except PreMarketError as e:
        raise http_error(e)


@router.post("/{grant_id}/timeout", response_model=ReconcileResponse)
async def expire_outstanding_charge(
    grant_id: str,
    actor: Actor = Depends(require_role(ActorRole.ADMIN)),
    reconciler: WebhookReconciler = Depends(get_reconciler),
):
    """Apply the webhook timeout to this grant now instead of waiting for the sweep."""
    try:
        outcome = await reconciler.handle_timeout(grant_id)
    except PreMarketError as e:
        raise http_error(e)
    logger.info("Admin %s ran timeout check on grant %s: %s", actor.id, grant_id, outcome.result.value)
    return ReconcileResponse(
        result=outcome.result.value,
        grant_id=grant_id,
        grant_status=outcome.grant.status if outcome.grant else None,
        payment_status=outcome.payment.status if outcome.payment else None,
        attempts=outcome.payment.attempt_count if outcome.payment else None,
    )


@router.post("/request/{request_id}/cascade-reject", response_model=CascadeRejectResponse)
async def cascade_reject(
    request_id: str,
    actor: Actor = Depends(require_role(ActorRole.ADMIN)),
    service: GrantAccessService = Depends(get_grant_service),
):
    try:
        rejected = await service.cascade_reject(request_id)
    except PreMarketError as e:
        raise http_error(e)
    logger.info("Admin %s cascade-rejected %d grants on %s", actor.id, len(rejected), request_id)
    return CascadeRejectResponse(request_id=request_id, rejected_grant_ids=[g.id for g in rejected])


@router.get("/admin/payments", response_model=list[PaymentResponse])
async def list_payments(
    status: Optional[PaymentStatus] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    actor: Actor = Depends(require_role(ActorRole.ADMIN)),
    service: GrantAccessService = Depends(get_grant_service),
):
    """Payments across all grants, newest first."""
    return await service.list_payments(status=status, limit=limit, offset=offset)


@router.get("/admin/payments/stats", response_model=PaymentStatsResponse)
async def payment_stats(
    actor: Actor = Depends(require_role(ActorRole.ADMIN)),
    service: GrantAccessService = Depends(get_grant_service),
):
    return await service.payment_stats()
