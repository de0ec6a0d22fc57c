# app/integrations/google/oauth.py
import logging
import os
from typing import Any, Dict, List, Optional

import requests
from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow
from googleapiclient.discovery import build

from app.core.config import settings
from app.core.exceptions import IntegrationException

# Google may answer with a superset of the requested scopes (openid expands
# to the userinfo scopes), which oauthlib otherwise reports as an error
os.environ.setdefault("OAUTHLIB_RELAX_TOKEN_SCOPE", "1")

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URI = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"
GOOGLE_REVOKE_URI = "https://oauth2.googleapis.com/revoke"


class GoogleOAuthClient:
    """Client for Google OAuth authentication."""

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        scopes: Optional[List[str]] = None,
    ):
        self.client_id = client_id if client_id is not None else settings.GOOGLE_CLIENT_ID
        self.client_secret = (
            client_secret if client_secret is not None else settings.GOOGLE_CLIENT_SECRET
        )
        self.scopes = scopes or settings.GOOGLE_INTEGRATION_SCOPES.split()

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id)

    @staticmethod
    def default_redirect_uri() -> str:
        return f"{settings.SERVER_HOST}{settings.API_V1_STR}/integrations/google_calendar/oauth-callback"

    def _client_config(self) -> Dict[str, Any]:
        return {
            "web": {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "auth_uri": GOOGLE_AUTH_URI,
                "token_uri": GOOGLE_TOKEN_URI,
            }
        }

    def create_oauth_flow(self, redirect_uri: Optional[str] = None) -> Flow:
        """
        Create an OAuth flow for the calendar scopes.

        PKCE is turned off: the authorize URL and the code exchange happen in
        different requests, so a generated code verifier would be lost.
        """
        return Flow.from_client_config(
            self._client_config(),
            scopes=self.scopes,
            redirect_uri=redirect_uri or self.default_redirect_uri(),
            autogenerate_code_verifier=False,
        )

    def build_authorize_url(self, state: str, redirect_uri: Optional[str] = None) -> str:
        flow = self.create_oauth_flow(redirect_uri)
        auth_url, _ = flow.authorization_url(
            access_type="offline",
            prompt="consent",
            state=state,
        )
        return auth_url

    def exchange_code(self, code: str, redirect_uri: Optional[str] = None) -> Credentials:
        """Exchange an authorization code for credentials. Blocking."""
        flow = self.create_oauth_flow(redirect_uri)
        try:
            flow.fetch_token(code=code)
        except Exception as e:
            logger.error(f"Google token exchange failed: {e}")
            raise IntegrationException(
                message=f"Failed to exchange Google authorization code: {e}",
                code="GOOGLE_TOKEN_EXCHANGE_FAILED",
            ) from e
        return flow.credentials

    def get_credentials(
        self, access_token: Optional[str], refresh_token: Optional[str] = None
    ) -> Credentials:
        return Credentials(
            token=access_token,
            refresh_token=refresh_token,
            token_uri=GOOGLE_TOKEN_URI,
            client_id=self.client_id,
            client_secret=self.client_secret,
            scopes=self.scopes,
        )

    def refresh(self, refresh_token: str) -> Optional[Credentials]:
        """Refresh an access token. Blocking. Returns None on failure."""
        credentials = self.get_credentials(None, refresh_token)
        try:
            credentials.refresh(Request())
        except GoogleAuthError as e:
            logger.error(f"Google token refresh failed: {e}")
            return None
        return credentials

    @staticmethod
    def get_user_info(credentials: Credentials) -> Dict[str, Any]:
        """Fetch the /oauth2/v2/userinfo profile. Blocking."""
        service = build("oauth2", "v2", credentials=credentials, cache_discovery=False)
        return service.userinfo().get().execute()

    @staticmethod
    def revoke(token: str) -> bool:
        """Revoke a token. Blocking. Returns True when Google accepted it."""
        response = requests.post(
            GOOGLE_REVOKE_URI,
            params={"token": token},
            headers={"content-type": "application/x-www-form-urlencoded"},
            timeout=settings.DEFAULT_TIMEOUT,
        )
        return response.status_code == 200
