
import logging
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.context import AppContext
from app.core.exceptions import OAuthError
from app.db.session import get_db
from app.dependencies.auth import (
    AuthResult,
    get_context,
    get_current_user,
    get_optional_auth,
)
from app.models.user import AuthProvider, User
from app.schemas.user import (
    AuthResponse,
    AuthStatusResponse,
    ChangePasswordRequest,
    LoginRequest,
    MessageResponse,
    ProfileResponse,
    RegisterRequest,
    UpdateProfileRequest,
    UserResponse,
)
from app.services.identity_service import LocalLogin

# Set up logger
logger = logging.getLogger(__name__)

auth_router = APIRouter()

OAUTH_STATE_COOKIE = "oauth_state"
OAUTH_STATE_MAX_AGE = 600


def _set_session_cookie(response: Response, context: AppContext, raw_id: str) -> None:
    response.set_cookie(
        key=context.settings.session_cookie_name,
        value=raw_id,
        max_age=context.sessions.max_age_seconds,
        httponly=True,
        secure=context.settings.is_production,
        samesite="lax",
    )


def _clear_session_cookie(response: Response, context: AppContext) -> None:
    response.delete_cookie(
        key=context.settings.session_cookie_name,
        httponly=True,
        secure=context.settings.is_production,
        samesite="lax",
    )


def _auth_response(context: AppContext, user: User, message: str) -> AuthResponse:
    return AuthResponse(
        message=message,
        user=UserResponse.model_validate(user),
        token=context.token_issuer.issue(user.id),
    )


@auth_router.post("/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
async def register(
    payload: RegisterRequest,
    context: AppContext = Depends(get_context),
    db: AsyncSession = Depends(get_db),
):
    """
    Register a new local account.

    Returns:
        AuthResponse: The created user (without password) and a bearer token.
    """
    user = await context.identity.register_local(
        username=payload.username,
        first_name=payload.first_name,
        last_name=payload.last_name,
        email=payload.email,
        age=payload.age,
        password=payload.password,
        db=db,
    )
    return _auth_response(context, user, "User registered successfully")


@auth_router.post("/login", response_model=AuthResponse)
async def login(
    payload: LoginRequest,
    response: Response,
    context: AppContext = Depends(get_context),
    db: AsyncSession = Depends(get_db),
):
    """
    Log in with email and password.

    Issues a bearer token and also starts a cookie session.
    """
    user = await context.identity.resolve(LocalLogin(payload.email, payload.password), db)

    raw_id = await context.sessions.create(user.id, db)
    _set_session_cookie(response, context, raw_id)

    return _auth_response(context, user, "Login successful")


@auth_router.post("/logout", response_model=MessageResponse)
async def logout(
    request: Request,
    response: Response,
    context: AppContext = Depends(get_context),
    db: AsyncSession = Depends(get_db),
):
    """
    End the current cookie session.

    Bearer tokens are stateless and stay valid until they expire.
    """
    raw_id = request.cookies.get(context.settings.session_cookie_name)
    if raw_id:
        await context.sessions.destroy(raw_id, db)
    _clear_session_cookie(response, context)
    return MessageResponse(message="Logout successful")


@auth_router.get("/profile", response_model=ProfileResponse)
async def get_profile(current_user: User = Depends(get_current_user)):
    """Return the current user's profile."""
    return ProfileResponse(
        message="Profile retrieved successfully",
        user=UserResponse.model_validate(current_user),
    )


@auth_router.put("/profile", response_model=ProfileResponse)
async def update_profile(
    payload: UpdateProfileRequest,
    current_user: User = Depends(get_current_user),
    context: AppContext = Depends(get_context),
    db: AsyncSession = Depends(get_db),
):
    """Update username, email, name or age of the current user."""
    user = await context.identity.update_profile(
        current_user,
        db,
        username=payload.username,
        first_name=payload.first_name,
        last_name=payload.last_name,
        email=payload.email,
        age=payload.age,
    )
    return ProfileResponse(
        message="Profile updated successfully",
        user=UserResponse.model_validate(user),
    )


@auth_router.put("/change-password", response_model=MessageResponse)
async def change_password(
    payload: ChangePasswordRequest,
    current_user: User = Depends(get_current_user),
    context: AppContext = Depends(get_context),
    db: AsyncSession = Depends(get_db),
):
    """Change the password of a local account."""
    await context.identity.change_password(
        current_user, payload.current_password, payload.new_password, db
    )
    return MessageResponse(message="Password changed successfully")


@auth_router.delete("/delete-account", response_model=MessageResponse)
async def delete_account(
    response: Response,
    current_user: User = Depends(get_current_user),
    context: AppContext = Depends(get_context),
    db: AsyncSession = Depends(get_db),
):
    """Delete the current user and every session they hold."""
    await context.identity.delete_account(current_user, db)
    _clear_session_cookie(response, context)
    return MessageResponse(message="Account deleted successfully")


@auth_router.get("/status", response_model=AuthStatusResponse)
async def auth_status(auth: Optional[AuthResult] = Depends(get_optional_auth)):
    """
    Report how the caller is authenticated, if at all.

    Invalid or expired credentials are reported as anonymous.
    """
    if not auth:
        return AuthStatusResponse(authenticated=False)
    return AuthStatusResponse(
        authenticated=True,
        method=auth.method,
        user=UserResponse.model_validate(auth.user),
    )


def _oauth_redirect(provider: AuthProvider, context: AppContext) -> RedirectResponse:
    client = context.oauth_clients[provider]

    # Random state for CSRF protection
    state = secrets.token_urlsafe(32)
    response = RedirectResponse(url=client.get_authorization_url(state), status_code=302)
    response.set_cookie(
        key=OAUTH_STATE_COOKIE,
        value=state,
        max_age=OAUTH_STATE_MAX_AGE,
        httponly=True,
        secure=context.settings.is_production,
        samesite="lax",
    )
    return response


async def _oauth_callback(
    provider: AuthProvider,
    request: Request,
    response: Response,
    code: Optional[str],
    state: Optional[str],
    error: Optional[str],
    context: AppContext,
    db: AsyncSession,
) -> AuthResponse:
    if error:
        raise OAuthError(f"OAuth error: {error}")

    if not code:
        raise OAuthError("Authorization code missing")

    expected_state = request.cookies.get(OAUTH_STATE_COOKIE)
    if not state or not expected_state or not secrets.compare_digest(state, expected_state):
        raise OAuthError("OAuth state mismatch")

    client = context.oauth_clients[provider]
    profile = await client.fetch_profile(code)
    user = await context.identity.resolve(profile, db)

    raw_id = await context.sessions.create(user.id, db)
    _set_session_cookie(response, context, raw_id)
    response.delete_cookie(OAUTH_STATE_COOKIE)

    logger.info(f"Successfully issued JWT token for {provider.value} user: {user.id}")
    return _auth_response(context, user, f"{client.display_name} OAuth login successful")


@auth_router.get("/google", response_class=RedirectResponse)
async def google_auth(context: AppContext = Depends(get_context)):
    """Initiate Google OAuth2 login flow."""
    return _oauth_redirect(AuthProvider.GOOGLE, context)


@auth_router.get("/google/callback", response_model=AuthResponse)
async def google_auth_callback(
    request: Request,
    response: Response,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    context: AppContext = Depends(get_context),
    db: AsyncSession = Depends(get_db),
):
    """
    Handle Google OAuth2 callback.

    Verifies the ID token, links or creates the user, and issues a JWT.
    """
    return await _oauth_callback(
        AuthProvider.GOOGLE, request, response, code, state, error, context, db
    )


@auth_router.get("/github", response_class=RedirectResponse)
async def github_auth(context: AppContext = Depends(get_context)):
    """Initiate GitHub OAuth login flow."""
    return _oauth_redirect(AuthProvider.GITHUB, context)


@auth_router.get("/github/callback", response_model=AuthResponse)
async def github_auth_callback(
    request: Request,
    response: Response,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    context: AppContext = Depends(get_context),
    db: AsyncSession = Depends(get_db),
):
    """
    Handle GitHub OAuth callback.

    Reads the GitHub profile and emails, links or creates the user, and
    issues a JWT.
    """
    return await _oauth_callback(
        AuthProvider.GITHUB, request, response, code, state, error, context, db
    )
