"""Google OAuth endpoints."""

import logging
from typing import Optional
from urllib.parse import urlencode

import httpx

from labcal.errors import AuthenticationRequired, ExchangeFailed, TransientProviderError

logger = logging.getLogger(__name__)

PROVIDER = "google"

# Google OAuth endpoints
GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"

CALENDAR_SCOPES = [
    "openid",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/calendar.readonly",
]

# Error codes in a 400/401 token response that mean the grant itself is dead
PERMANENT_GRANT_ERRORS = {"invalid_grant", "unauthorized_client", "invalid_client"}


def build_auth_url(
    client_id: str,
    redirect_uri: str,
    scopes: list[str],
    state: str,
    login_hint: Optional[str] = None,
    prompt: str = "consent",
) -> str:
    """Build Google OAuth authorization URL.

    ``access_type=offline`` and ``prompt=consent`` make Google issue a
    refresh token on every link.
    """
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": " ".join(scopes),
        "access_type": "offline",
        "state": state,
        "prompt": prompt,
    }

    if login_hint:
        params["login_hint"] = login_hint

    return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"


def _error_code(response: httpx.Response) -> str:
    try:
        return str(response.json().get("error", ""))
    except ValueError:
        return ""


def _is_transient(response: httpx.Response) -> bool:
    return response.status_code == 429 or response.status_code >= 500


class GoogleOAuthClient:
    """Token endpoint client for the authorization-code flow."""

    def __init__(self, client_id: str, client_secret: str, timeout: float = 30.0):
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout

    def authorization_url(self, redirect_uri: str, state: str, login_hint: Optional[str] = None) -> str:
        return build_auth_url(self.client_id, redirect_uri, CALENDAR_SCOPES, state, login_hint=login_hint)

    async def _post(self, url: str, data: dict) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                return await client.post(url, data=data)
        except httpx.TransportError as e:
            raise TransientProviderError(f"Google token endpoint unreachable: {e}") from e

    async def exchange_code(self, code: str, redirect_uri: str) -> dict:
        """Exchange authorization code for tokens.

        Returns the raw token response (access_token, refresh_token, expires_in).
        """
        response = await self._post(
            GOOGLE_TOKEN_URL,
            {
                "code": code,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "redirect_uri": redirect_uri,
                "grant_type": "authorization_code",
            },
        )

        if _is_transient(response):
            raise TransientProviderError(
                f"Token exchange failed with HTTP {response.status_code}", response.status_code
            )
        if response.status_code != 200:
            logger.error(f"Token exchange rejected: HTTP {response.status_code} {_error_code(response)}")
            raise ExchangeFailed(f"Token exchange rejected: {_error_code(response) or response.status_code}")

        return response.json()

    async def refresh_access_token(self, refresh_token: str) -> dict:
        """Refresh an access token. The response may or may not carry a rotated refresh token."""
        response = await self._post(
            GOOGLE_TOKEN_URL,
            {
                "refresh_token": refresh_token,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "grant_type": "refresh_token",
            },
        )

        if _is_transient(response):
            raise TransientProviderError(
                f"Token refresh failed with HTTP {response.status_code}", response.status_code
            )
        if response.status_code != 200:
            error = _error_code(response)
            logger.error(f"Token refresh rejected: HTTP {response.status_code} {error}")
            if error in PERMANENT_GRANT_ERRORS or response.status_code in (400, 401):
                raise AuthenticationRequired(f"Refresh token rejected: {error or response.status_code}")
            raise TransientProviderError(
                f"Token refresh failed with HTTP {response.status_code}", response.status_code
            )

        return response.json()

    async def get_user_info(self, access_token: str) -> dict:
        """Get user info from Google."""
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(
                    GOOGLE_USERINFO_URL,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
        except httpx.TransportError as e:
            raise TransientProviderError(f"Google userinfo unreachable: {e}") from e

        if response.status_code != 200:
            logger.error(f"Failed to get user info: HTTP {response.status_code}")
            raise ExchangeFailed(f"Failed to get user info: HTTP {response.status_code}")

        return response.json()

    async def revoke_token(self, token: str) -> bool:
        """Revoke a token at Google. Returns False when Google did not accept it."""
        response = await self._post(GOOGLE_REVOKE_URL, {"token": token})
        if response.status_code != 200:
            logger.warning(f"Token revocation returned HTTP {response.status_code}")
            return False
        return True
