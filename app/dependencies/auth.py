"""
Request authentication dependencies.

Callers are identified by an ordered chain of strategies. The first
strategy whose credentials are present on the request decides the
outcome; later strategies are not consulted.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from fastapi import Depends, Request
from fastapi.security.utils import get_authorization_scheme_param
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.context import AppContext
from app.core.exceptions import AuthError, NotAuthenticated, UserNotFound
from app.db.session import get_db
from app.models.user import User


logger = logging.getLogger(__name__)


def get_context(request: Request) -> AppContext:
    """Dependency returning the application context."""
    return request.app.state.context


@dataclass
class AuthResult:
    """An authenticated caller and the mechanism that identified them."""

    user: User
    method: str


class AuthStrategy:
    """One way of identifying a caller."""

    method: str = ""

    def applies(self, request: Request, context: AppContext) -> bool:
        raise NotImplementedError

    async def authenticate(self, request: Request, context: AppContext, db: AsyncSession) -> User:
        raise NotImplementedError


class BearerTokenStrategy(AuthStrategy):
    """``Authorization: Bearer <jwt>``. The user is always reloaded from the store."""

    method = "token"

    def applies(self, request: Request, context: AppContext) -> bool:
        scheme, _ = get_authorization_scheme_param(request.headers.get("Authorization"))
        return scheme.lower() == "bearer"

    async def authenticate(self, request: Request, context: AppContext, db: AsyncSession) -> User:
        _, token = get_authorization_scheme_param(request.headers.get("Authorization"))
        user_id = context.token_issuer.validate(token)

        user = await db.get(User, user_id)
        if not user:
            raise UserNotFound()
        return user


class SessionCookieStrategy(AuthStrategy):
    """Server-side session referenced by the session cookie."""

    method = "session"

    def applies(self, request: Request, context: AppContext) -> bool:
        return bool(request.cookies.get(context.settings.session_cookie_name))

    async def authenticate(self, request: Request, context: AppContext, db: AsyncSession) -> User:
        raw_id = request.cookies[context.settings.session_cookie_name]
        user_id = await context.sessions.get_user_id(raw_id, db)
        if not user_id:
            raise NotAuthenticated()

        user = await db.get(User, user_id)
        if not user:
            raise NotAuthenticated()
        return user


AUTH_STRATEGIES: Sequence[AuthStrategy] = (
    BearerTokenStrategy(),
    SessionCookieStrategy(),
)


async def authenticate_request(
    request: Request,
    context: AppContext,
    db: AsyncSession,
    strategies: Sequence[AuthStrategy] = AUTH_STRATEGIES,
) -> AuthResult:
    """
    Identify the caller using the first applicable strategy.

    On success the user and method are also attached to ``request.state``.

    Raises:
        AuthError: If the applicable strategy rejects the credentials, or
            no credentials were presented at all.
    """
    for strategy in strategies:
        if strategy.applies(request, context):
            user = await strategy.authenticate(request, context, db)
            request.state.user = user
            request.state.auth_method = strategy.method
            return AuthResult(user=user, method=strategy.method)

    raise NotAuthenticated()


async def get_auth_result(
    request: Request,
    context: AppContext = Depends(get_context),
    db: AsyncSession = Depends(get_db),
) -> AuthResult:
    """
    Dependency requiring an authenticated caller.

    Raises:
        AuthError: Rendered as a 401 with the distinguishing kind.
    """
    try:
        return await authenticate_request(request, context, db)
    except AuthError as e:
        logger.warning(f"Rejected request to {request.url.path}: {e.kind}")
        raise


async def get_current_user(auth: AuthResult = Depends(get_auth_result)) -> User:
    """Dependency to get the current authenticated user."""
    return auth.user


async def get_optional_auth(
    request: Request,
    context: AppContext = Depends(get_context),
    db: AsyncSession = Depends(get_db),
) -> Optional[AuthResult]:
    """
    Dependency identifying the caller when possible.

    Never rejects: any authentication failure leaves the request anonymous.
    """
    try:
        return await authenticate_request(request, context, db)
    except AuthError:
        return None


async def get_optional_user(auth: Optional[AuthResult] = Depends(get_optional_auth)) -> Optional[User]:
    return auth.user if auth else None
