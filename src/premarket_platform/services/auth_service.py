"""Authentication service: JWT token encoding and decoding.

Tokens are issued by the identity service; this platform only reads the
caller's id, role and e-mail from them. create_access_token exists for
tooling and tests.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from premarket_platform.app.config import get_settings
from premarket_platform.domain.enums import ActorRole


@dataclass(frozen=True)
class Actor:
    """The authenticated caller."""

    id: str
    role: ActorRole
    email: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == ActorRole.ADMIN


def create_access_token(user_id: str, role: str, email: Optional[str] = None, minutes: int = 60) -> str:
    settings = get_settings()
    expire = datetime.now(timezone.utc) + timedelta(minutes=minutes)
    payload = {"sub": user_id, "role": role, "exp": expire}
    if email:
        payload["email"] = email
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict | None:
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


def actor_from_claims(payload: dict) -> Actor | None:
    """Build an Actor from decoded claims; None if sub or role is missing or unknown."""
    if not payload or "sub" not in payload:
        return None
    try:
        role = ActorRole(payload.get("role", ""))
    except ValueError:
        return None
    if role == ActorRole.SYSTEM:
        return None
    return Actor(id=str(payload["sub"]), role=role, email=payload.get("email"))
