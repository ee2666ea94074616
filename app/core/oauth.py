
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx
from google.auth.transport import requests
from google.oauth2 import id_token
from starlette.concurrency import run_in_threadpool

from app.core.config import Settings
from app.core.exceptions import OAuthError, ProviderNotConfigured
from app.models.user import AuthProvider


logger = logging.getLogger(__name__)


@dataclass
class OAuthProfile:
    """
    Normalized identity reported by an OAuth provider.

    ``emails`` is ordered by preference; it may be empty for GitHub
    accounts that keep every address private.
    """

    provider: AuthProvider
    external_id: str
    emails: List[str] = field(default_factory=list)
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    display_name: Optional[str] = None
    username: Optional[str] = None
    refresh_token: Optional[str] = None


class OAuthClient:
    """
    Base HTTP client for an OAuth2 authorization-code provider.

    Subclasses define the provider endpoints and how a profile is read
    from the provider's responses.
    """

    provider: AuthProvider
    display_name: str = "OAuth"
    authorize_url: str = ""
    token_url: str = ""
    scope: str = ""

    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        redirect_uri: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout = timeout
        self.transport = transport

    def is_configured(self) -> bool:
        """Check if client credentials are present."""
        return bool(self.client_id and self.client_secret)

    def ensure_configured(self) -> None:
        if not self.is_configured():
            raise ProviderNotConfigured(f"{self.display_name} OAuth is not configured")

    def authorization_params(self, state: str) -> Dict[str, str]:
        return {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": self.scope,
            "response_type": "code",
            "state": state,
        }

    def get_authorization_url(self, state: str) -> str:
        """
        Build the provider's authorization URL.

        Args:
            state: Random state string for CSRF protection.

        Returns:
            str: URL to redirect the browser to.
        """
        self.ensure_configured()
        return f"{self.authorize_url}?{urlencode(self.authorization_params(state))}"

    def _handle_response(self, response: httpx.Response) -> Any:
        """
        Decode a provider response with error checking.

        Raises:
            OAuthError: If the provider returned an error status or invalid JSON.
        """
        try:
            data = response.json()
        except ValueError:
            logger.error(f"Invalid JSON response from {self.display_name}: {response.status_code}")
            raise OAuthError(f"Invalid response from {self.display_name}")

        if not response.is_success:
            error_msg = None
            if isinstance(data, dict):
                error_msg = data.get("error_description") or data.get("error") or data.get("message")
            logger.error(f"{self.display_name} API error ({response.status_code}): {error_msg}")
            raise OAuthError(f"{self.display_name} OAuth error: {error_msg or response.status_code}")

        return data

    async def _request(self, client: httpx.AsyncClient, method: str, url: str, **kwargs) -> Any:
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException:
            logger.error(f"Timeout calling {self.display_name}: {url}")
            raise OAuthError(f"{self.display_name} request timed out")
        except httpx.HTTPError as e:
            logger.error(f"HTTP error calling {self.display_name} {url}: {e}")
            raise OAuthError(f"Could not reach {self.display_name}")
        return self._handle_response(response)

    async def exchange_code(self, client: httpx.AsyncClient, code: str) -> Dict[str, Any]:
        """Exchange an authorization code for the provider's token response."""
        token_data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": self.redirect_uri,
        }
        token_info = await self._request(
            client, "POST", self.token_url, data=token_data, headers={"Accept": "application/json"}
        )
        if not isinstance(token_info, dict):
            raise OAuthError(f"Unexpected token response from {self.display_name}")
        if token_info.get("error"):
            error = token_info.get("error_description") or token_info["error"]
            raise OAuthError(f"{self.display_name} OAuth error: {error}")
        return token_info

    async def fetch_profile(self, code: str) -> OAuthProfile:
        """
        Complete the authorization-code flow and return the caller's profile.

        Args:
            code: Authorization code from the provider callback.

        Returns:
            OAuthProfile: Normalized provider identity.
        """
        self.ensure_configured()
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            token_info = await self.exchange_code(client, code)
            profile = await self._read_profile(client, token_info)
        logger.info(f"{self.display_name} OAuth profile fetched for external id {profile.external_id}")
        return profile

    async def _read_profile(self, client: httpx.AsyncClient, token_info: Dict[str, Any]) -> OAuthProfile:
        raise NotImplementedError


class GoogleOAuthClient(OAuthClient):
    """Google OAuth2 client verifying the returned OpenID Connect ID token."""

    provider = AuthProvider.GOOGLE
    display_name = "Google"
    authorize_url = "https://accounts.google.com/o/oauth2/auth"
    token_url = "https://oauth2.googleapis.com/token"
    scope = "openid email profile"

    def authorization_params(self, state: str) -> Dict[str, str]:
        params = super().authorization_params(state)
        params.update({"access_type": "offline", "prompt": "consent"})
        return params

    def _verify_id_token(self, id_token_value: str) -> Dict[str, Any]:
        # Clock tolerance for development environments
        return id_token.verify_oauth2_token(
            id_token_value,
            requests.Request(),
            self.client_id,
            clock_skew_in_seconds=10,
        )

    async def _read_profile(self, client: httpx.AsyncClient, token_info: Dict[str, Any]) -> OAuthProfile:
        id_token_value = token_info.get("id_token")
        if not id_token_value:
            raise OAuthError("ID token missing from response")

        try:
            id_info = await run_in_threadpool(self._verify_id_token, id_token_value)
        except ValueError as e:
            logger.warning(f"Google ID token rejected: {e}")
            raise OAuthError("Google ID token verification failed")

        # Unverified addresses are never used for matching
        email = id_info.get("email") if id_info.get("email_verified") else None
        return OAuthProfile(
            provider=self.provider,
            external_id=str(id_info["sub"]),
            emails=[email] if email else [],
            given_name=id_info.get("given_name"),
            family_name=id_info.get("family_name"),
            display_name=id_info.get("name"),
            refresh_token=token_info.get("refresh_token"),
        )


class GitHubOAuthClient(OAuthClient):
    """GitHub OAuth app client reading the user and their email addresses."""

    provider = AuthProvider.GITHUB
    display_name = "GitHub"
    authorize_url = "https://github.com/login/oauth/authorize"
    token_url = "https://github.com/login/oauth/access_token"
    api_base_url = "https://api.github.com"
    scope = "user:email"

    def authorization_params(self, state: str) -> Dict[str, str]:
        params = super().authorization_params(state)
        params.pop("response_type")
        return params

    async def _read_profile(self, client: httpx.AsyncClient, token_info: Dict[str, Any]) -> OAuthProfile:
        access_token = token_info.get("access_token")
        if not access_token:
            raise OAuthError("Access token missing from response")

        headers = {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/vnd.github+json",
        }
        user = await self._request(client, "GET", f"{self.api_base_url}/user", headers=headers)

        emails: List[str] = []
        try:
            listed = await self._request(client, "GET", f"{self.api_base_url}/user/emails", headers=headers)
        except OAuthError:
            # Token without the user:email scope
            listed = []
        # Primary address first, unverified addresses are ignored
        for entry in sorted(listed, key=lambda e: not e.get("primary")):
            if entry.get("verified") and entry.get("email"):
                emails.append(entry["email"])
        if not emails and user.get("email"):
            emails.append(user["email"])

        display_name = user.get("name")
        name_parts = display_name.split() if display_name else []
        return OAuthProfile(
            provider=self.provider,
            external_id=str(user["id"]),
            emails=emails,
            given_name=name_parts[0] if name_parts else None,
            family_name=" ".join(name_parts[1:]) or None,
            display_name=display_name,
            username=user.get("login"),
            refresh_token=token_info.get("refresh_token"),
        )


def build_oauth_clients(settings: Settings) -> Dict[AuthProvider, OAuthClient]:
    """
    Create the OAuth clients for every supported provider.

    Args:
        settings: Application settings with provider credentials.

    Returns:
        Dict mapping provider tag to its client.
    """
    return {
        AuthProvider.GOOGLE: GoogleOAuthClient(
            settings.google_client_id,
            settings.google_client_secret,
            settings.google_redirect_uri,
        ),
        AuthProvider.GITHUB: GitHubOAuthClient(
            settings.github_client_id,
            settings.github_client_secret,
            settings.github_redirect_uri,
        ),
    }
