import logging
from contextlib import asynccontextmanager
from typing import Dict, Optional

from fastapi import Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncEngine

from app.api.v1.auth_route import auth_router
from app.core.config import Settings, settings as default_settings
from app.core.context import build_context
from app.core.exceptions import AuthError
from app.core.oauth import OAuthClient
from app.db.session import init_db
from app.dependencies.auth import get_optional_user
from app.models.user import AuthProvider, User


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan context manager.

    Handles startup and shutdown events. Initializes database tables on
    startup and disposes of the engine on shutdown.
    """
    # Startup: create tables
    await init_db(app.state.context.engine)
    yield
    await app.state.context.engine.dispose()


def register_exception_handlers(app: FastAPI) -> None:
    """Render errors as ``{"error": kind, "message": ...}`` bodies."""

    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError):
        headers = None
        if exc.status_code == status.HTTP_401_UNAUTHORIZED:
            headers = {"WWW-Authenticate": "Bearer"}
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.kind, "message": exc.message},
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        details = [
            {
                "field": ".".join(str(part) for part in error["loc"] if part != "body"),
                "message": error["msg"],
            }
            for error in exc.errors()
        ]
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "error": "validation_error",
                "message": "Invalid input data",
                "details": details,
            },
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        content = {"error": "internal_error", "message": "Internal server error"}
        if not request.app.state.context.settings.is_production:
            content["details"] = str(exc)
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=content)


def create_app(
    settings: Optional[Settings] = None,
    engine: Optional[AsyncEngine] = None,
    oauth_clients: Optional[Dict[AuthProvider, OAuthClient]] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Builds the application context, sets up CORS middleware, error
    handlers, health checks, and routing for authentication endpoints.

    Args:
        settings: Settings to use instead of the environment-loaded ones.
        engine: Optional pre-built database engine.
        oauth_clients: Optional OAuth provider clients.

    Returns:
        FastAPI: Configured FastAPI application instance.
    """
    settings = settings or default_settings

    app = FastAPI(
        title="Postboard API",
        description="Blog backend with local, Google and GitHub authentication",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.context = build_context(settings, engine=engine, oauth_clients=oauth_clients)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    # Include routers
    app.include_router(auth_router, prefix="/api/v1/auth", tags=["auth"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """
        Health check endpoint for load balancers and monitoring.

        Returns:
            dict: Health status response.
        """
        return {"status": "healthy"}

    # Root endpoint
    @app.get("/")
    async def root(user: Optional[User] = Depends(get_optional_user)):
        """
        Root endpoint providing basic API information.

        Greets the caller by username when they are logged in.

        Returns:
            dict: Welcome message.
        """
        if user:
            return {"message": f"Postboard API - welcome back, {user.username}"}
        return {"message": "Postboard API"}

    return app
