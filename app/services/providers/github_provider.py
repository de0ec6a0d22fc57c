import asyncio
import logging
from datetime import timedelta
from typing import Callable, Optional, Set

import httpx
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import IntegrationException, RateLimitException
from app.integrations.github.client import (
    GitHubClient,
    GitHubOAuthClient,
    parse_pull_request_url,
)
from app.models.inbox_item import InboxItemType, InboxPriority, InboxSource
from app.models.integration import Integration, IntegrationProvider
from app.repositories.inbox_repository import InboxRepository
from app.schemas.integration import OAuthConfig, OAuthTokenResult, SyncResult
from app.services.oauth_state_service import OAuthStateService
from app.services.providers.base import IntegrationProviderService, is_stopped
from app.services.token_encryption_service import TokenEncryptionService
from app.utils.clock import utcnow

logger = logging.getLogger(__name__)

PAGE_SIZE = 50
FIRST_SYNC_LOOKBACK = timedelta(days=7)


def _is_review_request(notification: dict) -> bool:
    subject = notification.get("subject") or {}
    return (
        subject.get("type") == "PullRequest"
        and notification.get("reason") == "review_requested"
    )


class GitHubProviderService(IntegrationProviderService):
    """
    Imports pull requests awaiting the user's review into the inbox.

    Source data is the notifications API, which works with the
    ``notifications`` scope alone and avoids asking for ``repo``.
    """

    provider = IntegrationProvider.GITHUB

    def __init__(
        self,
        db: Session,
        state_service: OAuthStateService,
        encryption: TokenEncryptionService,
        oauth_client: Optional[GitHubOAuthClient] = None,
        client_factory: Optional[Callable[[str], GitHubClient]] = None,
        max_items: Optional[int] = None,
        rate_limit_threshold: Optional[int] = None,
    ):
        self.db = db
        self.state_service = state_service
        self.encryption = encryption
        self.inbox_repository = InboxRepository(db)
        self.oauth_client = oauth_client or GitHubOAuthClient()
        self.client_factory = client_factory or GitHubClient
        self.max_items = (
            max_items if max_items is not None else settings.GITHUB_MAX_ITEMS_PER_SYNC
        )
        self.rate_limit_threshold = (
            rate_limit_threshold
            if rate_limit_threshold is not None
            else settings.GITHUB_RATE_LIMIT_THRESHOLD
        )

    async def get_auth_url(
        self,
        user_id: int,
        redirect_uri: Optional[str] = None,
        mobile_redirect_uri: Optional[str] = None,
    ) -> OAuthConfig:
        if not self.oauth_client.is_configured:
            raise IntegrationException(
                message="GitHub integration is not configured",
                code="GITHUB_NOT_CONFIGURED",
            )

        state = self.state_service.generate_state(
            user_id, self.provider, mobile_redirect_uri
        )
        auth_url = self.oauth_client.build_authorize_url(
            state, settings.GITHUB_INTEGRATION_SCOPES, redirect_uri
        )
        return OAuthConfig(auth_url=auth_url, state=state)

    async def exchange_code(
        self, code: str, redirect_uri: Optional[str] = None
    ) -> OAuthTokenResult:
        try:
            access_token = await self.oauth_client.exchange_code(code, redirect_uri)
            user = await self.oauth_client.get_user(access_token)
        except httpx.HTTPError as e:
            logger.error(f"GitHub token exchange failed: {e}")
            raise IntegrationException(
                message=f"Failed to exchange GitHub authorization code: {e}",
                code="GITHUB_TOKEN_EXCHANGE_FAILED",
            ) from e

        # GitHub OAuth app tokens do not expire and carry no refresh token
        return OAuthTokenResult(
            access_token=access_token,
            refresh_token=None,
            expires_at=None,
            external_user_id=str(user["id"]),
            external_username=user.get("login"),
            external_avatar_url=user.get("avatar_url"),
        )

    async def sync(
        self,
        integration: Integration,
        user_id: int,
        stop_event: Optional[asyncio.Event] = None,
    ) -> SyncResult:
        access_token = self.encryption.decrypt(integration.access_token)
        since = integration.last_sync_at or (utcnow() - FIRST_SYNC_LOOKBACK)

        items_synced = 0
        total_processed = 0
        page = 1

        async with self.client_factory(access_token) as client:
            while total_processed < self.max_items:
                if is_stopped(stop_event):
                    break

                try:
                    remaining = await client.get_rate_limit_remaining()
                    if remaining < self.rate_limit_threshold:
                        logger.warning(
                            f"GitHub rate limit low ({remaining} remaining), "
                            f"stopping sync for user {user_id}"
                        )
                        break

                    notifications = await client.list_notifications(
                        page=page, per_page=PAGE_SIZE, since=since
                    )
                except RateLimitException:
                    logger.warning(f"GitHub rate limited on page {page} for user {user_id}")
                    break
                except httpx.TransportError as e:
                    logger.warning(
                        f"GitHub network error on page {page} for user {user_id}: {e}"
                    )
                    break

                if not notifications:
                    break

                for notification in notifications:
                    if is_stopped(stop_event) or total_processed >= self.max_items:
                        break
                    total_processed += 1

                    if not _is_review_request(notification):
                        continue

                    ref = parse_pull_request_url(notification["subject"].get("url"))
                    if ref is None:
                        continue

                    if self.inbox_repository.get_by_external_id(user_id, ref.external_id):
                        continue

                    self.inbox_repository.create(
                        {
                            "user_id": user_id,
                            "integration_id": integration.id,
                            "title": f"PR: {notification['subject'].get('title') or ''}",
                            "description": f"Review requested · {ref.owner}/{ref.repo} #{ref.number}",
                            "source": InboxSource.GITHUB,
                            "type": InboxItemType.TASK,
                            "priority": InboxPriority.HIGH,
                            "external_id": ref.external_id,
                            "external_url": ref.html_url,
                        }
                    )
                    items_synced += 1

                if len(notifications) < PAGE_SIZE:
                    break
                page += 1

            dismissed = await self._cleanup_stale_items(
                client, integration, user_id, stop_event
            )

        logger.info(
            f"GitHub sync completed for user {user_id}: {items_synced} items synced, "
            f"{total_processed} notifications processed, {dismissed} auto-dismissed"
        )
        return SyncResult(items_synced=items_synced, synced_at=utcnow())

    async def _cleanup_stale_items(
        self,
        client: GitHubClient,
        integration: Integration,
        user_id: int,
        stop_event: Optional[asyncio.Event] = None,
    ) -> int:
        """
        Dismiss GitHub inbox items whose pull request left the active set.

        The active set is every current PullRequest notification, whatever
        its reason, fetched without a date filter. Failures are logged only.
        """
        try:
            github_items = [
                item
                for item in self.inbox_repository.get_by_integration_id(
                    integration.id, source=InboxSource.GITHUB, include_dismissed=False
                )
                if item.external_id
            ]
            if not github_items:
                return 0

            active_ids: Set[str] = set()
            page = 1
            while True:
                if is_stopped(stop_event):
                    # A partial active set would dismiss live items
                    return 0

                notifications = await client.list_notifications(
                    page=page, per_page=PAGE_SIZE
                )
                if not notifications:
                    break

                for notification in notifications:
                    if (notification.get("subject") or {}).get("type") != "PullRequest":
                        continue
                    ref = parse_pull_request_url(notification["subject"].get("url"))
                    if ref is not None:
                        active_ids.add(ref.external_id)

                if len(notifications) < PAGE_SIZE:
                    break
                page += 1

            dismissed = 0
            for item in github_items:
                if is_stopped(stop_event):
                    break
                if item.external_id not in active_ids:
                    self.inbox_repository.dismiss(item)
                    dismissed += 1

            if dismissed:
                logger.info(
                    f"GitHub cleanup: auto-dismissed {dismissed} stale items for user {user_id}"
                )
            return dismissed
        except Exception as e:
            self.db.rollback()
            logger.warning(
                f"GitHub cleanup phase failed for user {user_id}: {e}", exc_info=True
            )
            return 0

    async def refresh_token(self, integration: Integration) -> Optional[OAuthTokenResult]:
        # GitHub OAuth app tokens never expire
        return None

    async def revoke_access(self, integration: Integration) -> None:
        try:
            access_token = self.encryption.decrypt(integration.access_token)
            revoked = await self.oauth_client.revoke_token(access_token)
            if not revoked:
                logger.warning(
                    f"GitHub did not confirm token revocation for integration {integration.id}"
                )
        except Exception as e:
            logger.warning(
                f"Failed to revoke GitHub token for integration {integration.id}: {e}"
            )
