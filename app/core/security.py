

import hashlib
import logging
import secrets
import uuid
from datetime import datetime, timezone
from typing import Optional, Union

import argon2
from jose import ExpiredSignatureError, JWTError, jwt
from starlette.concurrency import run_in_threadpool

from app.core.config import Settings
from app.core.exceptions import TokenExpired, TokenMalformed
from app.utils.expiry import expiry_from, validate_expiry_format


logger = logging.getLogger(__name__)


class PasswordHasher:
    """
    One-way salted password hashing backed by argon2.

    Hashing is CPU-bound, so the async helpers run it in a worker thread.
    """

    def __init__(self, time_cost: int = 3, memory_cost: int = 65536, parallelism: int = 4):
        self._ph = argon2.PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            hash_len=32,
            salt_len=16,
        )
        # Verified against when no account exists for a login
        self.dummy_digest = self._ph.hash(secrets.token_urlsafe(16))

    @classmethod
    def from_settings(cls, settings: Settings) -> "PasswordHasher":
        return cls(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
            parallelism=settings.password_hash_parallelism,
        )

    def hash(self, plaintext: str) -> str:
        """
        Hash a password.

        Args:
            plaintext: The raw password.

        Returns:
            str: Encoded argon2 digest including its salt and parameters.
        """
        return self._ph.hash(plaintext)

    def verify(self, plaintext: str, digest: Optional[str]) -> bool:
        """
        Verify a password against its digest.

        Never raises for a wrong password or a malformed digest.

        Args:
            plaintext: The password to check.
            digest: The stored digest.

        Returns:
            bool: True if the password matches the digest.
        """
        if not digest:
            return False
        try:
            return self._ph.verify(digest, plaintext)
        except argon2.exceptions.VerifyMismatchError:
            return False
        except (argon2.exceptions.VerificationError, argon2.exceptions.InvalidHashError):
            logger.warning("Password verification failed on an unreadable digest")
            return False

    async def hash_async(self, plaintext: str) -> str:
        return await run_in_threadpool(self.hash, plaintext)

    async def verify_async(self, plaintext: str, digest: Optional[str]) -> bool:
        return await run_in_threadpool(self.verify, plaintext, digest)


class TokenIssuer:
    """
    Creates and validates signed, time-limited bearer tokens.

    Tokens are stateless JWTs carrying the user id as ``sub``. Changing the
    signing secret invalidates every outstanding token.
    """

    def __init__(self, secret_key: str, algorithm: str = "HS256", expires_in: str = "7D"):
        if not validate_expiry_format(expires_in):
            raise ValueError(f"Invalid token expiry: {expires_in!r}")
        self._secret_key = secret_key
        self._algorithm = algorithm
        self.expires_in = expires_in

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenIssuer":
        return cls(
            secret_key=settings.secret_key,
            algorithm=settings.algorithm,
            expires_in=settings.token_expires_in,
        )

    def issue(self, user_id: Union[uuid.UUID, str], expires_at: Optional[datetime] = None) -> str:
        """
        Create a signed access token for a user.

        Args:
            user_id: Identifier of the user the token authenticates.
            expires_at: Optional explicit expiry; defaults to the configured window.

        Returns:
            str: Encoded JWT.
        """
        now = datetime.now(timezone.utc)
        claims = {
            "sub": str(user_id),
            "iat": now,
            "exp": expires_at or expiry_from(self.expires_in, now),
        }
        return jwt.encode(claims, self._secret_key, algorithm=self._algorithm)

    def validate(self, token: str) -> uuid.UUID:
        """
        Validate a token and return the user id it encodes.

        Args:
            token: Encoded JWT.

        Returns:
            uuid.UUID: The user id from the ``sub`` claim.

        Raises:
            TokenExpired: If the token's expiry has passed.
            TokenMalformed: If the signature or structure is invalid.
        """
        try:
            payload = jwt.decode(token, self._secret_key, algorithms=[self._algorithm])
        except ExpiredSignatureError:
            raise TokenExpired()
        except JWTError:
            raise TokenMalformed()

        try:
            return uuid.UUID(payload["sub"])
        except (KeyError, TypeError, ValueError):
            raise TokenMalformed()


def generate_session_id() -> str:
    """Generate an opaque session identifier for the session cookie."""
    return secrets.token_urlsafe(32)


def hash_session_id(session_id: str) -> str:
    """
    Hash a session identifier for storage.

    Only the digest is persisted.
    """
    return hashlib.sha256(session_id.encode("utf-8")).hexdigest()
