"""Pytest fixtures for testing."""
from collections.abc import AsyncGenerator

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.config import Settings
from app.core.context import AppContext
from app.core.exceptions import OAuthError
from app.core.oauth import GitHubOAuthClient, GoogleOAuthClient, OAuthProfile
from app.db.session import init_db
from app.main import create_app
from app.models.user import AuthProvider


TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


class FakeProfilesMixin:
    """Returns canned profiles by authorization code instead of calling the provider."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.profiles: dict[str, OAuthProfile] = {}

    async def fetch_profile(self, code: str) -> OAuthProfile:
        self.ensure_configured()
        if code not in self.profiles:
            raise OAuthError("Unknown authorization code")
        return self.profiles[code]


class FakeGoogleClient(FakeProfilesMixin, GoogleOAuthClient):
    pass


class FakeGitHubClient(FakeProfilesMixin, GitHubOAuthClient):
    pass


@pytest.fixture
def settings() -> Settings:
    """Settings for tests: in-memory store, cheap hashing, fake OAuth credentials."""
    return Settings(
        environment="test",
        database_url=TEST_DATABASE_URL,
        secret_key="test-secret-key",
        algorithm="HS256",
        token_expires_in="7D",
        session_cookie_name="sid",
        session_max_age_days=7,
        password_hash_time_cost=1,
        password_hash_memory_cost=8,
        password_hash_parallelism=1,
        oauth_link_by_email=True,
        google_client_id="google-client",
        google_client_secret="google-secret",
        google_redirect_uri="http://test/api/v1/auth/google/callback",
        github_client_id="github-client",
        github_client_secret="github-secret",
        github_redirect_uri="http://test/api/v1/auth/github/callback",
    )


@pytest.fixture
async def async_engine() -> AsyncGenerator[AsyncEngine]:
    """Create an in-memory engine shared by every connection of a test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_db(engine)

    yield engine

    await engine.dispose()


@pytest.fixture
def oauth_clients(settings: Settings) -> dict:
    return {
        AuthProvider.GOOGLE: FakeGoogleClient(
            settings.google_client_id,
            settings.google_client_secret,
            settings.google_redirect_uri,
        ),
        AuthProvider.GITHUB: FakeGitHubClient(
            settings.github_client_id,
            settings.github_client_secret,
            settings.github_redirect_uri,
        ),
    }


@pytest.fixture
def app(settings: Settings, async_engine: AsyncEngine, oauth_clients: dict) -> FastAPI:
    return create_app(settings, engine=async_engine, oauth_clients=oauth_clients)


@pytest.fixture
def context(app: FastAPI) -> AppContext:
    return app.state.context


@pytest.fixture
async def db_session(context: AppContext) -> AsyncGenerator[AsyncSession]:
    """Session on the same in-memory database the app uses."""
    async with context.session_factory() as session:
        yield session


@pytest.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient]:
    """Create a test client bound to the app."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as test_client:
        yield test_client


def _register_payload(**overrides) -> dict:
    payload = {
        "username": "jdoe",
        "firstName": "John",
        "lastName": "Doe",
        "email": "j@x.com",
        "age": 30,
        "password": "Secur3!@#",
        "confirmPassword": "Secur3!@#",
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def register_payload():
    """Factory for a valid registration body in the API's camelCase format."""
    return _register_payload

