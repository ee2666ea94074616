

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Index, String, Uuid
from sqlalchemy.sql import func

from app.db.base import Base


class Session(Base):
    """
    Server-side login session.

    Keyed by the SHA-256 digest of the opaque id carried in the session
    cookie. Deleting the row revokes the session.
    """

    __tablename__ = "sessions"

    id = Column(String(64), primary_key=True)
    user_id = Column(
        Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    expires_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index('ix_sessions_user_id', 'user_id'),
    )

    def is_expired(self) -> bool:
        """Check if the session has expired."""
        expires_at = self.expires_at
        # SQLite drops tzinfo on read
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return datetime.now(timezone.utc) >= expires_at
