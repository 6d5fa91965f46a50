"""FastAPI dependencies for authentication and payment gateways."""

from dataclasses import dataclass, field
from functools import lru_cache
from typing import Optional

import jwt
from fastapi import Depends, Header
from jwt import PyJWTError

from ..gateways.registry import GatewayRegistry
from .config import settings
from .exceptions import AuthenticationError, AuthorizationError


@dataclass(frozen=True)
class CurrentUser:
    """Identity extracted from a validated bearer token."""

    user_id: str
    email: Optional[str] = None
    roles: list[str] = field(default_factory=list)

    @property
    def is_admin(self) -> bool:
        return "admin" in self.roles


async def get_current_user(
    authorization: Optional[str] = Header(None, alias="Authorization")
) -> CurrentUser:
    """
    Authentication dependency that validates Bearer tokens.

    Args:
        authorization: Authorization header with Bearer token

    Returns:
        CurrentUser: Identity from the validated token

    Raises:
        AuthenticationError: If token is invalid or missing
    """
    if not authorization:
        raise AuthenticationError("Authorization header missing")

    try:
        scheme, token = authorization.split()
    except ValueError:
        raise AuthenticationError("Invalid authorization header format")

    if scheme.lower() != "bearer":
        raise AuthenticationError("Invalid authentication scheme")

    try:
        # PyJWT verifies "exp" when present
        payload = jwt.decode(
            token,
            settings.bearer_token_secret,
            algorithms=["HS256"]
        )
    except PyJWTError:
        raise AuthenticationError("Invalid or expired token")

    user_id = payload.get("sub")
    if user_id is None:
        raise AuthenticationError("Invalid token payload")

    return CurrentUser(
        user_id=str(user_id),
        email=payload.get("email"),
        roles=list(payload.get("roles", [])),
    )


async def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    """Allow only tokens carrying the admin role."""
    if not user.is_admin:
        raise AuthorizationError(required_permissions=["admin"])
    return user


@lru_cache
def _default_registry() -> GatewayRegistry:
    return GatewayRegistry.from_settings(settings)


def get_gateway_registry() -> GatewayRegistry:
    """Gateway adapters built from injected config; overridden in tests."""
    return _default_registry()


RequiredAuth = Depends(get_current_user)
AdminAuth = Depends(require_admin)
Gateways = Depends(get_gateway_registry)
