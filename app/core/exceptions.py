"""
Authentication error taxonomy.

Every error carries a stable machine-readable ``kind``, the HTTP status it
maps to, and a human message safe to show to clients.
"""

from typing import Optional

from fastapi import status


class AuthError(Exception):
    """Base class for authentication and identity errors."""

    kind = "auth_error"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Authentication error"

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class AlreadyExists(AuthError):
    """Registration collided with an existing email or username."""

    kind = "already_exists"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "User already exists"

    EMAIL_MESSAGE = "User with this email already exists"
    USERNAME_MESSAGE = "Username is already taken"

    def __init__(self, field: str) -> None:
        self.field = field
        super().__init__(self.EMAIL_MESSAGE if field == "email" else self.USERNAME_MESSAGE)


class InvalidCredentials(AuthError):
    # Same message for unknown email and wrong password.
    kind = "invalid_credentials"
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Invalid email or password"


class OAuthAccountOnly(AuthError):
    kind = "oauth_account_only"
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Please use OAuth to login"


class TokenExpired(AuthError):
    kind = "token_expired"
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Token expired"


class TokenMalformed(AuthError):
    kind = "token_malformed"
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Invalid token"


class UserNotFound(AuthError):
    """A valid token references a user that no longer exists."""

    kind = "user_not_found"
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "User not found"


class NotAuthenticated(AuthError):
    kind = "not_authenticated"
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Please log in to access this resource"


class ProfileConflict(AuthError):
    """Profile update requested a username or email owned by another user."""

    kind = "conflict"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Conflict"

    def __init__(self, field: str) -> None:
        self.field = field
        super().__init__(
            "Username is already taken" if field == "username" else "Email is already in use"
        )


class PasswordChangeNotAllowed(AuthError):
    kind = "password_change_not_allowed"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Cannot change password for OAuth users"


class IncorrectPassword(AuthError):
    kind = "incorrect_password"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Current password is incorrect"


class OAuthError(AuthError):
    """The OAuth provider rejected the exchange or returned unusable data."""

    kind = "oauth_failed"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "OAuth verification failed"


class ProviderNotConfigured(AuthError):
    kind = "provider_not_configured"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "OAuth provider is not configured"
