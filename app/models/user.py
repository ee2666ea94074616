

import enum
import uuid

from sqlalchemy import Column, DateTime, Enum, Integer, String, UniqueConstraint, Uuid
from sqlalchemy.sql import func

from app.db.base import Base


class AuthProvider(str, enum.Enum):
    """Origin of a user's credentials."""

    LOCAL = "local"
    GOOGLE = "google"
    GITHUB = "github"


class User(Base):
    """
    User identity record.

    Local accounts carry a password hash; accounts created through Google
    or GitHub have no password and are identified by (provider, provider_id).
    """

    __tablename__ = "users"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    username = Column(String(64), unique=True, nullable=False, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    first_name = Column(String(50), nullable=False)
    last_name = Column(String(50), nullable=False)
    age = Column(Integer, nullable=False)
    password = Column(String, nullable=True)
    provider = Column(
        Enum(
            AuthProvider,
            name="auth_provider",
            values_callable=lambda members: [m.value for m in members],
        ),
        nullable=False,
        default=AuthProvider.LOCAL,
    )
    provider_id = Column(String(255), nullable=True)
    refresh_token = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint('provider', 'provider_id', name='uq_users_provider_provider_id'),
    )

    @property
    def has_password(self) -> bool:
        """Check if the user can log in with a local password."""
        return bool(self.password)

    def __repr__(self) -> str:
        return f"<User {self.username} ({self.provider.value if self.provider else None})>"
