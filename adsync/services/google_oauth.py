"""Google OAuth client for the credential vault.

WHAT:
    Builds the consent URL, exchanges authorization codes and refreshes access
    tokens against Google's OAuth endpoints.

WHY:
    The vault only depends on `refresh_access_token`; keeping the HTTP calls
    here lets tests swap in a fake refresher.

REFERENCES:
    - https://developers.google.com/identity/protocols/oauth2/web-server
    - adsync/services/token_service.py (store_connection_tokens, CredentialVault)
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional
from urllib.parse import urlencode

import httpx

from adsync.config import Settings, get_settings
from adsync.exceptions import AuthError
from adsync.schemas import OAuthTokens, RefreshedToken
from adsync.utils.dates import utcnow

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_SCOPES = [
    "https://www.googleapis.com/auth/adwords",
    "https://www.googleapis.com/auth/userinfo.email",
]

# Google omits expires_in on some refresh responses; assume the standard hour
DEFAULT_TOKEN_LIFETIME = timedelta(hours=1)


class GoogleOAuthClient:
    """Thin httpx wrapper around the Google OAuth 2.0 endpoints."""

    def __init__(self, settings: Optional[Settings] = None, http_client: Optional[httpx.Client] = None):
        self.settings = settings or get_settings()
        self._http = http_client or httpx.Client(timeout=self.settings.HTTP_TIMEOUT_SECONDS)

    def build_authorization_url(self, state: str) -> str:
        """Consent URL; `state` round-trips the organization id to the callback."""
        params = {
            "client_id": self.settings.GOOGLE_CLIENT_ID,
            "redirect_uri": self.settings.GOOGLE_REDIRECT_URI,
            "response_type": "code",
            "scope": " ".join(GOOGLE_SCOPES),
            "access_type": "offline",  # Request refresh token
            "prompt": "consent",  # Force consent screen to ensure refresh token
            "state": state,
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    def exchange_code(self, code: str) -> OAuthTokens:
        """Exchange an authorization code for tokens plus the account email.

        Raises:
            AuthError: If Google rejects the code or returns no access token.
        """
        token_data = self._post_token({
            "code": code,
            "client_id": self.settings.GOOGLE_CLIENT_ID,
            "client_secret": self.settings.GOOGLE_CLIENT_SECRET,
            "redirect_uri": self.settings.GOOGLE_REDIRECT_URI,
            "grant_type": "authorization_code",
        })

        access_token = token_data["access_token"]
        email = None
        try:
            response = self._http.get(GOOGLE_USERINFO_URL, headers={"Authorization": f"Bearer {access_token}"})
            if response.is_success:
                email = response.json().get("email")
            else:
                logger.warning("[GOOGLE_OAUTH] userinfo returned %s", response.status_code)
        except httpx.HTTPError as e:
            logger.warning("[GOOGLE_OAUTH] userinfo lookup failed: %s", e)

        logger.info("[GOOGLE_OAUTH] Exchanged authorization code (email=%s)", email)
        return OAuthTokens(
            access_token=access_token,
            refresh_token=token_data.get("refresh_token"),
            expires_at=self._expiry_from(token_data),
            email=email,
            scopes=(token_data.get("scope") or "").split(),
        )

    def refresh_access_token(self, refresh_token: str) -> RefreshedToken:
        """Exchange a refresh token for a new access token.

        Raises:
            AuthError: If Google rejects the refresh (revoked or expired grant).
        """
        token_data = self._post_token({
            "refresh_token": refresh_token,
            "client_id": self.settings.GOOGLE_CLIENT_ID,
            "client_secret": self.settings.GOOGLE_CLIENT_SECRET,
            "grant_type": "refresh_token",
        })
        return RefreshedToken(
            access_token=token_data["access_token"],
            expires_at=self._expiry_from(token_data),
        )

    def _post_token(self, data: dict) -> dict:
        try:
            response = self._http.post(GOOGLE_TOKEN_URL, data=data)
        except httpx.HTTPError as e:
            raise AuthError(f"Token endpoint unreachable: {e}") from e

        if not response.is_success:
            # Body carries {"error": "invalid_grant", ...}; never log the request
            raise AuthError(f"Token endpoint returned {response.status_code}: {response.text[:200]}")

        token_data = response.json()
        if not token_data.get("access_token"):
            raise AuthError("Token endpoint response missing access_token")
        return token_data

    @staticmethod
    def _expiry_from(token_data: dict) -> datetime:
        expires_in = token_data.get("expires_in")
        if expires_in:
            return utcnow() + timedelta(seconds=int(expires_in))
        return utcnow() + DEFAULT_TOKEN_LIFETIME
