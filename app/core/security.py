"""
Connection Identity

Builds the explicit ``Actor`` value handed to every engine call. Staff
present a JWT issued by the user service (claims ``{"user": {"id",
"role", "username"}}``); anyone without a credential is a ``Guest`` so
customers can browse and order without an account.
"""

import logging
import uuid
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.config import get_settings

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


class Role(str, Enum):
    """Actor roles. Staff roles double as realtime room names."""
    ADMIN = "Admin"
    WAITER = "Waiter"
    KITCHEN = "Kitchen"
    GUEST = "Guest"


STAFF_ROLES = frozenset({Role.ADMIN, Role.WAITER, Role.KITCHEN})


class AuthenticationError(Exception):
    """Raised when a credential is presented but cannot be verified."""


@dataclass(frozen=True)
class Actor:
    """Who is asking. Reconstructed per connection, never persisted."""
    actor_id: str
    role: Role
    tab_id: Optional[str] = None
    username: Optional[str] = None

    @property
    def is_guest(self) -> bool:
        return self.role == Role.GUEST

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

    def with_tab(self, tab_id: Optional[str]) -> "Actor":
        """Return a copy bound to ``tab_id`` (ignored when empty)."""
        if not tab_id or tab_id == self.tab_id:
            return self
        return replace(self, tab_id=tab_id)


def guest_actor(tab_id: Optional[str] = None) -> Actor:
    """Anonymous actor with a fresh, connection-unique id."""
    return Actor(actor_id=f"guest:{uuid.uuid4().hex}", role=Role.GUEST, tab_id=tab_id or None)


def decode_token(token: str) -> Actor:
    """
    Verify a staff JWT and return the matching actor.

    Raises:
        AuthenticationError: bad signature, expired token, malformed claims
            or a role that is not a staff role
    """
    settings = get_settings()
    if not settings.jwt_secret:
        raise AuthenticationError("Server configuration issue")

    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.PyJWTError as e:
        raise AuthenticationError("Invalid token") from e

    user = payload.get("user") or {}
    user_id = user.get("id")
    try:
        role = Role(user.get("role"))
    except ValueError:
        raise AuthenticationError("Invalid token")
    if not user_id or role not in STAFF_ROLES:
        raise AuthenticationError("Invalid token")

    return Actor(actor_id=str(user_id), role=role, username=user.get("username"))


def resolve_actor(token: Optional[str], tab_id: Optional[str] = None) -> Actor:
    """Staff actor for a token, Guest when no token is presented."""
    if not token:
        return guest_actor(tab_id)
    return decode_token(token)


# =============================================================================
# FASTAPI DEPENDENCIES
# =============================================================================

async def get_current_actor(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Actor:
    """Resolve the caller from the ``Authorization`` header."""
    token = credentials.credentials if credentials else None
    try:
        return resolve_actor(token)
    except AuthenticationError as e:
        logger.warning(f"Rejected HTTP credential: {e}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authorized, token failed",
        )


def role_required(*roles: Role):
    """Dependency enforcing that the caller has one of ``roles``."""

    def dependency(actor: Actor = Depends(get_current_actor)) -> Actor:
        if actor.is_guest:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Not authorized, no token",
            )
        if actor.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"User role {actor.role.value} is not authorized to access this route",
            )
        return actor

    return dependency
