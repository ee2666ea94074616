
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from app.core.security import generate_session_id, hash_session_id
from app.models.session import Session


logger = logging.getLogger(__name__)


class SessionService:
    """Server-side login sessions keyed by an opaque cookie value."""

    def __init__(self, max_age_days: int = 7):
        self.max_age = timedelta(days=max_age_days)

    @property
    def max_age_seconds(self) -> int:
        return int(self.max_age.total_seconds())

    async def create(self, user_id: UUID, db: AsyncSession) -> str:
        """
        Start a session for a user.

        Args:
            user_id: User the session belongs to.
            db: Database session.

        Returns:
            str: Raw session id to place in the cookie.
        """
        raw_id = generate_session_id()
        db.add(Session(
            id=hash_session_id(raw_id),
            user_id=user_id,
            expires_at=datetime.now(timezone.utc) + self.max_age,
        ))
        await db.commit()
        logger.info(f"Created session for user {user_id}")
        return raw_id

    async def get_user_id(self, raw_id: str, db: AsyncSession) -> Optional[UUID]:
        """
        Resolve a cookie value to its user id.

        Expired sessions are removed and treated as absent.

        Returns:
            Optional[UUID]: The session's user id, or None.
        """
        result = await db.execute(
            select(Session).where(Session.id == hash_session_id(raw_id))
        )
        session = result.scalars().first()
        if not session:
            return None

        if session.is_expired():
            await db.delete(session)
            await db.commit()
            return None

        return session.user_id

    async def destroy(self, raw_id: str, db: AsyncSession) -> None:
        """Delete a single session."""
        result = await db.execute(delete(Session).where(Session.id == hash_session_id(raw_id)))
        await db.commit()
        if result.rowcount:
            logger.info("Destroyed session on logout")

    async def destroy_all_for_user(self, user_id: UUID, db: AsyncSession, commit: bool = True) -> int:
        """
        Delete every session belonging to a user.

        Args:
            user_id: User whose sessions are revoked.
            db: Database session.
            commit: Commit immediately; pass False to join a larger unit of work.

        Returns:
            int: Number of sessions removed.
        """
        result = await db.execute(delete(Session).where(Session.user_id == user_id))
        if commit:
            await db.commit()
        if result.rowcount:
            logger.info(f"Destroyed {result.rowcount} session(s) for user {user_id}")
        return result.rowcount or 0
