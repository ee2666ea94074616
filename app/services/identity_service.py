
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Optional, Union
from uuid import UUID

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from app.core.exceptions import (
    AlreadyExists,
    IncorrectPassword,
    InvalidCredentials,
    OAuthAccountOnly,
    PasswordChangeNotAllowed,
    ProfileConflict,
)
from app.core.oauth import OAuthProfile
from app.core.security import PasswordHasher
from app.models.user import AuthProvider, User
from app.services.session_service import SessionService


logger = logging.getLogger(__name__)

DEFAULT_OAUTH_AGE = 18
DEFAULT_FIRST_NAME = "Unknown"
DEFAULT_LAST_NAME = "User"
MAX_USERNAME_BASE = 40
OAUTH_CREATE_ATTEMPTS = 3


@dataclass
class LocalLogin:
    """Email and password credentials for a local account."""

    email: str
    password: str


Credential = Union[LocalLogin, OAuthProfile]


def placeholder_email(provider: AuthProvider, handle: str) -> str:
    """Deterministic address for provider accounts that expose no email."""
    return f"{handle}@{provider.value}.local"


class IdentityService:
    """
    Creates and locates user identity records.

    Handles local registration and login, OAuth account resolution with
    linking by provider id or email, and the profile/password lifecycle.
    The store's unique constraints stay the final authority; the existence
    checks here only pick the right error message.
    """

    def __init__(
        self,
        password_hasher: PasswordHasher,
        sessions: SessionService,
        link_by_email: bool = True,
    ):
        self.password_hasher = password_hasher
        self.sessions = sessions
        self.link_by_email = link_by_email

    async def resolve(self, credential: Credential, db: AsyncSession) -> User:
        """
        Resolve any supported credential to its user record.

        Args:
            credential: Local email/password or a provider profile.
            db: Database session.

        Returns:
            User: The authenticated or linked user.
        """
        if isinstance(credential, LocalLogin):
            return await self.login_local(credential.email, credential.password, db)
        if isinstance(credential, OAuthProfile):
            return await self.resolve_oauth(credential, db)
        raise TypeError(f"Unsupported credential: {type(credential).__name__}")

    async def _collision_field(
        self, db: AsyncSession, email: str, username: str
    ) -> Optional[str]:
        result = await db.execute(
            select(User).where(or_(User.email == email, User.username == username))
        )
        existing = result.scalars().all()
        if any(user.email == email for user in existing):
            return "email"
        if existing:
            return "username"
        return None

    async def register_local(
        self,
        username: str,
        first_name: str,
        last_name: str,
        email: str,
        age: int,
        password: str,
        db: AsyncSession,
    ) -> User:
        """
        Create a local account.

        Raises:
            AlreadyExists: If the email or username is taken; email wins
                when both collide.
        """
        field = await self._collision_field(db, email, username)
        if field:
            raise AlreadyExists(field)

        user = User(
            username=username,
            first_name=first_name,
            last_name=last_name,
            email=email,
            age=age,
            password=await self.password_hasher.hash_async(password),
            provider=AuthProvider.LOCAL,
        )
        db.add(user)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            field = await self._collision_field(db, email, username)
            logger.info(f"Registration lost a uniqueness race on {field or 'unknown field'}")
            raise AlreadyExists(field or "email")

        await db.refresh(user)
        logger.info(f"Registered local user: {user.id}")
        return user

    async def login_local(self, email: str, password: str, db: AsyncSession) -> User:
        """
        Authenticate a local account by email and password.

        Raises:
            InvalidCredentials: Unknown email or wrong password.
            OAuthAccountOnly: The account has no password.
        """
        result = await db.execute(select(User).where(User.email == email))
        user = result.scalars().first()

        if not user:
            # Same verification cost as a wrong password
            await self.password_hasher.verify_async(password, self.password_hasher.dummy_digest)
            raise InvalidCredentials()

        if not user.has_password:
            raise OAuthAccountOnly()

        if not await self.password_hasher.verify_async(password, user.password):
            raise InvalidCredentials()

        logger.info(f"Local login for user: {user.id}")
        return user

    async def _find_oauth_match(
        self, profile: OAuthProfile, email: str, db: AsyncSession
    ) -> Optional[User]:
        # A provider-id match outranks an email match on a different row
        result = await db.execute(
            select(User).where(
                or_(
                    and_(User.provider == profile.provider, User.provider_id == profile.external_id),
                    User.email == email,
                )
            )
        )
        matches = result.scalars().all()
        for user in matches:
            if user.provider == profile.provider and user.provider_id == profile.external_id:
                return user
        return matches[0] if matches else None

    async def _link(self, user: User, profile: OAuthProfile, db: AsyncSession) -> User:
        already_linked = (
            user.provider == profile.provider and user.provider_id == profile.external_id
        )
        if not already_linked and not self.link_by_email:
            logger.warning(
                f"Refused to link {profile.provider.value} account {profile.external_id} "
                f"to existing user {user.id}"
            )
            raise AlreadyExists("email")

        if not already_linked:
            logger.info(
                f"Linking {profile.provider.value} account {profile.external_id} "
                f"to existing user {user.id} (was {user.provider.value})"
            )
        user.provider = profile.provider
        user.provider_id = profile.external_id
        if profile.refresh_token is not None:
            user.refresh_token = profile.refresh_token
        await db.commit()
        await db.refresh(user)
        return user

    def _synthesize_username(self, email: str, attempt: int) -> str:
        base = email.split("@", 1)[0][:MAX_USERNAME_BASE] or "user"
        suffix = str(int(time.time() * 1000))
        if attempt:
            suffix = f"{suffix}{secrets.token_hex(2)}"
        return f"{base}_{suffix}"

    async def resolve_oauth(self, profile: OAuthProfile, db: AsyncSession) -> User:
        """
        Find, link or create the user for an OAuth login.

        An existing record matching the provider id, or failing that the
        email, is updated with the provider linkage. Otherwise a new
        passwordless record is created with defaults for missing fields.

        Args:
            profile: Normalized identity from the provider.
            db: Database session.

        Returns:
            User: The linked or newly created user.
        """
        if profile.provider == AuthProvider.LOCAL:
            raise ValueError("Local credentials cannot be resolved as OAuth")

        email = (
            profile.emails[0]
            if profile.emails
            else placeholder_email(profile.provider, profile.username or profile.external_id)
        )

        for attempt in range(OAUTH_CREATE_ATTEMPTS):
            existing = await self._find_oauth_match(profile, email, db)
            if existing:
                return await self._link(existing, profile, db)

            user = User(
                username=self._synthesize_username(email, attempt),
                first_name=profile.given_name or DEFAULT_FIRST_NAME,
                last_name=profile.family_name or DEFAULT_LAST_NAME,
                email=email,
                age=DEFAULT_OAUTH_AGE,
                provider=profile.provider,
                provider_id=profile.external_id,
                refresh_token=profile.refresh_token,
            )
            db.add(user)
            try:
                await db.commit()
            except IntegrityError:
                # Concurrent login created the row, or the username collided
                await db.rollback()
                logger.info(f"OAuth user creation conflicted, retrying (attempt {attempt + 1})")
                continue

            await db.refresh(user)
            logger.info(f"Created {profile.provider.value} user: {user.id}")
            return user

        raise AlreadyExists("username")

    async def update_profile(
        self,
        user: User,
        db: AsyncSession,
        username: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        email: Optional[str] = None,
        age: Optional[int] = None,
    ) -> User:
        """
        Update the supplied profile fields.

        Raises:
            ProfileConflict: If another user holds the username or email.
        """
        user_id = user.id
        field = await self._profile_conflict_field(db, user_id, username, email)
        if field:
            raise ProfileConflict(field)

        updates = {
            "username": username,
            "first_name": first_name,
            "last_name": last_name,
            "email": email,
            "age": age,
        }
        for name, value in updates.items():
            if value is not None:
                setattr(user, name, value)

        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            field = await self._profile_conflict_field(db, user_id, username, email)
            logger.info(f"Profile update lost a uniqueness race on {field or 'unknown field'}")
            raise ProfileConflict(field or "email")

        await db.refresh(user)
        logger.info(f"Updated profile for user: {user_id}")
        return user

    async def _profile_conflict_field(
        self,
        db: AsyncSession,
        user_id: UUID,
        username: Optional[str],
        email: Optional[str],
    ) -> Optional[str]:
        clauses = []
        if username:
            clauses.append(User.username == username)
        if email:
            clauses.append(User.email == email)
        if not clauses:
            return None

        result = await db.execute(select(User).where(User.id != user_id, or_(*clauses)))
        existing = result.scalars().all()
        if username and any(other.username == username for other in existing):
            return "username"
        if existing:
            return "email"
        return None

    async def change_password(
        self, user: User, current_password: str, new_password: str, db: AsyncSession
    ) -> None:
        """
        Replace a local account's password.

        Raises:
            PasswordChangeNotAllowed: The account has no password (OAuth only).
            IncorrectPassword: The current password does not verify.
        """
        if not user.has_password:
            raise PasswordChangeNotAllowed()

        if not await self.password_hasher.verify_async(current_password, user.password):
            raise IncorrectPassword()

        user.password = await self.password_hasher.hash_async(new_password)
        await db.commit()
        logger.info(f"Changed password for user: {user.id}")

    async def delete_account(self, user: User, db: AsyncSession) -> None:
        """Delete a user and terminate all of their sessions."""
        user_id = user.id
        await self.sessions.destroy_all_for_user(user_id, db, commit=False)
        await db.delete(user)
        await db.commit()
        logger.info(f"Deleted account: {user_id}")
