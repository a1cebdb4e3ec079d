"""FastAPI dependencies for database, authentication, and job triggers."""

import secrets
from typing import AsyncGenerator, Optional

import jwt
from fastapi import Depends, Header
from jwt import PyJWTError
from sqlalchemy.ext.asyncio import AsyncSession

from ..services.gateway import PaymentGateway, get_payment_gateway
from ..services.notifications import NotificationSender, get_notification_sender
from .config import settings
from .database import get_async_session
from .exceptions import AuthenticationError, AuthorizationError


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Database dependency that provides async database sessions.

    Yields:
        AsyncSession: Database session
    """
    async for session in get_async_session():
        yield session


def get_gateway() -> PaymentGateway:
    return get_payment_gateway()


def get_notifier() -> NotificationSender:
    return get_notification_sender()


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise AuthenticationError(detail="Authorization header missing")
    try:
        scheme, token = authorization.split()
    except ValueError:
        raise AuthenticationError(detail="Invalid authorization header format")
    if scheme.lower() != "bearer":
        raise AuthenticationError(detail="Invalid authentication scheme")
    return token


async def get_current_user(
    authorization: Optional[str] = Header(None, alias="Authorization")
) -> dict:
    """
    Authentication dependency that validates Bearer tokens.

    Args:
        authorization: Authorization header with Bearer token

    Returns:
        dict: User information from validated token

    Raises:
        AuthenticationError: If token is invalid or missing
    """
    token = _bearer_token(authorization)

    try:
        payload = jwt.decode(
            token,
            settings.bearer_token_secret,
            algorithms=["HS256"]
        )
    except PyJWTError as e:
        raise AuthenticationError(detail=f"Token validation failed: {str(e)}")

    user_id = payload.get("sub")
    if user_id is None:
        raise AuthenticationError(detail="Invalid token payload")

    return {
        "user_id": user_id,
        "username": payload.get("username"),
        "email": payload.get("email"),
        "roles": payload.get("roles", []),
    }


async def require_admin(user: dict = Depends(get_current_user)) -> dict:
    """
    Gate for every mutating admin endpoint.

    Raises:
        AuthorizationError: If the token does not carry the admin role
    """
    if "admin" not in user["roles"]:
        raise AuthorizationError(detail="Admin role required")
    return user


def actor_name(user: dict) -> str:
    """Audit-log identity for an authenticated user."""
    return user.get("email") or user.get("username") or user["user_id"]


async def require_cron_secret(
    authorization: Optional[str] = Header(None, alias="Authorization")
) -> None:
    """
    Shared-secret check for scheduler-triggered jobs.

    Fails closed: with no secret configured every request is refused.

    Raises:
        AuthenticationError: If the secret is unset, missing or wrong
    """
    if not settings.cron_secret:
        raise AuthenticationError(detail="Job triggers are disabled")

    expected = f"Bearer {settings.cron_secret}"
    if not authorization or not secrets.compare_digest(authorization.encode(), expected.encode()):
        raise AuthenticationError(detail="Invalid job trigger credentials")
