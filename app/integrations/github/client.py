# app/integrations/github/client.py
import logging
import re
from datetime import datetime
from typing import Any, Dict, List, NamedTuple, Optional
from urllib.parse import urlencode, urlparse

import httpx

from app.core.config import settings
from app.core.constants import GITHUB_EXTERNAL_ID_PREFIX
from app.core.exceptions import IntegrationException, RateLimitException

logger = logging.getLogger(__name__)

GITHUB_AUTHORIZE_URL = "https://github.com/login/oauth/authorize"
GITHUB_TOKEN_URL = "https://github.com/login/oauth/access_token"
GITHUB_API_URL = "https://api.github.com"

_PULL_REQUEST_PATH = re.compile(r"^/repos/([^/]+)/([^/]+)/(?:pulls|issues)/(\d+)/?$")


class PullRequestRef(NamedTuple):
    owner: str
    repo: str
    number: int

    @property
    def external_id(self) -> str:
        return f"{GITHUB_EXTERNAL_ID_PREFIX}:{self.owner}/{self.repo}#{self.number}"

    @property
    def html_url(self) -> str:
        return f"https://github.com/{self.owner}/{self.repo}/pull/{self.number}"


def parse_pull_request_url(url: Optional[str]) -> Optional[PullRequestRef]:
    """
    Parse owner/repo/number out of a notification subject URL.

    Format: https://api.github.com/repos/{owner}/{repo}/pulls/{number}
    """
    if not url:
        return None
    match = _PULL_REQUEST_PATH.match(urlparse(url).path)
    if not match:
        return None
    owner, repo, number = match.groups()
    return PullRequestRef(owner, repo, int(number))


def _api_headers(access_token: str) -> Dict[str, str]:
    return {
        "Authorization": f"Bearer {access_token}",
        "Accept": "application/vnd.github+json",
        "X-GitHub-Api-Version": "2022-11-28",
    }


class GitHubOAuthClient:
    """Authorization-code grant against GitHub OAuth apps."""

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.client_id = client_id if client_id is not None else settings.GITHUB_CLIENT_ID
        self.client_secret = (
            client_secret if client_secret is not None else settings.GITHUB_CLIENT_SECRET
        )
        self.timeout = timeout or settings.DEFAULT_TIMEOUT

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id)

    def build_authorize_url(
        self, state: str, scopes: str, redirect_uri: Optional[str] = None
    ) -> str:
        params = {"client_id": self.client_id, "scope": scopes, "state": state}
        if redirect_uri:
            params["redirect_uri"] = redirect_uri
        return f"{GITHUB_AUTHORIZE_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: Optional[str] = None) -> str:
        """Exchange an authorization code for an access token."""
        data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "code": code,
        }
        if redirect_uri:
            data["redirect_uri"] = redirect_uri

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                GITHUB_TOKEN_URL, data=data, headers={"Accept": "application/json"}
            )
            response.raise_for_status()
            token_data = response.json()

        # GitHub answers 200 with an error body for bad codes
        access_token = token_data.get("access_token")
        if not access_token:
            error = token_data.get("error_description") or token_data.get("error")
            raise IntegrationException(
                message=f"Failed to exchange GitHub authorization code: {error or 'no token returned'}",
                code="GITHUB_TOKEN_EXCHANGE_FAILED",
            )
        return access_token

    async def get_user(self, access_token: str) -> Dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.get(
                f"{GITHUB_API_URL}/user", headers=_api_headers(access_token)
            )
            response.raise_for_status()
            return response.json()

    async def revoke_token(self, access_token: str) -> bool:
        """Revoke a token through the OAuth application API. Returns True on 204."""
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.request(
                "DELETE",
                f"{GITHUB_API_URL}/applications/{self.client_id}/token",
                auth=(self.client_id, self.client_secret),
                json={"access_token": access_token},
                headers={"Accept": "application/vnd.github+json"},
            )
        return response.status_code == 204


class GitHubClient:
    """
    Minimal GitHub REST client for the endpoints the sync uses.

    Use as an async context manager so the connection pool is shared
    across pages of one sync.
    """

    def __init__(self, access_token: str, timeout: Optional[float] = None):
        self._client = httpx.AsyncClient(
            base_url=GITHUB_API_URL,
            headers=_api_headers(access_token),
            timeout=timeout or settings.DEFAULT_TIMEOUT,
        )

    async def __aenter__(self) -> "GitHubClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        response = await self._client.get(path, params=params)
        self._raise_for_rate_limit(response)
        response.raise_for_status()
        return response.json()

    @staticmethod
    def _raise_for_rate_limit(response: httpx.Response) -> None:
        if response.status_code == 429 or (
            response.status_code == 403
            and response.headers.get("x-ratelimit-remaining") == "0"
        ):
            raise RateLimitException(
                message="GitHub API rate limit exceeded",
                code="GITHUB_RATE_LIMITED",
                details={"reset": response.headers.get("x-ratelimit-reset")},
            )

    async def get_rate_limit_remaining(self) -> int:
        """Remaining core API quota. The /rate_limit call itself is free."""
        data = await self._get("/rate_limit")
        return int(data["resources"]["core"]["remaining"])

    async def list_notifications(
        self,
        page: int = 1,
        per_page: int = 50,
        since: Optional[datetime] = None,
        all: bool = True,
        participating: bool = True,
    ) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {
            "all": str(all).lower(),
            "participating": str(participating).lower(),
            "per_page": per_page,
            "page": page,
        }
        if since is not None:
            params["since"] = since.strftime("%Y-%m-%dT%H:%M:%SZ")
        return await self._get("/notifications", params=params)
