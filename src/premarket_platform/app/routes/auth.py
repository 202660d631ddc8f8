"""Caller identity dependencies shared by the API routers."""

import logging

from fastapi import Depends, HTTPException, Request, status

from premarket_platform.domain.enums import ActorRole
from premarket_platform.services.auth_service import Actor, actor_from_claims, decode_token

logger = logging.getLogger(__name__)


async def get_current_actor(request: Request) -> Actor:
    """Dependency: extract the current caller from the Bearer token."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid token",
        )
    token = auth_header.removeprefix("Bearer ")
    actor = actor_from_claims(decode_token(token))
    if actor is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )
    return actor


def require_role(*roles: ActorRole):
    """Factory: dependency that checks the caller has one of the required roles."""

    async def checker(actor: Actor = Depends(get_current_actor)) -> Actor:
        if actor.role not in roles:
            logger.info("Role check failed: actor=%s role=%s needed=%s", actor.id, actor.role.value, roles)
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return actor

    return checker
