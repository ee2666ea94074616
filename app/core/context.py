
from dataclasses import dataclass
from typing import Dict, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from app.core.config import Settings
from app.core.oauth import OAuthClient, build_oauth_clients
from app.core.security import PasswordHasher, TokenIssuer
from app.db.session import create_engine, create_session_factory
from app.models.user import AuthProvider
from app.services.identity_service import IdentityService
from app.services.session_service import SessionService


@dataclass
class AppContext:
    """
    Process-wide collaborators, built once at startup.

    Stored on ``app.state.context`` and handed to request dependencies.
    """

    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    password_hasher: PasswordHasher
    token_issuer: TokenIssuer
    sessions: SessionService
    identity: IdentityService
    oauth_clients: Dict[AuthProvider, OAuthClient]


def build_context(
    settings: Settings,
    engine: Optional[AsyncEngine] = None,
    oauth_clients: Optional[Dict[AuthProvider, OAuthClient]] = None,
) -> AppContext:
    """
    Construct the application context from settings.

    Args:
        settings: Application settings.
        engine: Optional pre-built engine (tests pass an in-memory one).
        oauth_clients: Optional provider clients replacing the defaults.

    Returns:
        AppContext: Fully wired context.
    """
    engine = engine or create_engine(settings.database_url)
    password_hasher = PasswordHasher.from_settings(settings)
    sessions = SessionService(max_age_days=settings.session_max_age_days)
    return AppContext(
        settings=settings,
        engine=engine,
        session_factory=create_session_factory(engine),
        password_hasher=password_hasher,
        token_issuer=TokenIssuer.from_settings(settings),
        sessions=sessions,
        identity=IdentityService(
            password_hasher,
            sessions,
            link_by_email=settings.oauth_link_by_email,
        ),
        oauth_clients=oauth_clients or build_oauth_clients(settings),
    )
