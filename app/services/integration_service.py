import asyncio
import logging
import time
from datetime import timedelta
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.constants import AuditAction
from app.core.exceptions import (
    DuplicateResourceException,
    IntegrationException,
    ResourceNotFoundException,
    ValidationException,
)
from app.core.logging import log_context
from app.models.integration import Integration, IntegrationProvider
from app.repositories.inbox_repository import InboxRepository
from app.repositories.integration_repository import IntegrationRepository
from app.schemas.integration import (
    IntegrationRead,
    OAuthConfig,
    OAuthStateData,
    SyncAllResult,
    SyncResult,
)
from app.services.audit_service import AuditService
from app.services.oauth_state_service import OAuthStateService, get_oauth_state_service
from app.services.providers import build_provider_adapters
from app.services.providers.base import IntegrationProviderService, token_expires_soon
from app.services.token_encryption_service import (
    TokenEncryptionService,
    get_token_encryption_service,
)
from app.utils.clock import utcnow

logger = logging.getLogger(__name__)


class IntegrationService:
    """
    Orchestrates connect, callback, sync and disconnect across providers.

    Owns the token lifecycle: tokens are encrypted here before they are
    persisted and refreshed here before a sync when close to expiry.
    """

    def __init__(
        self,
        db: Session,
        providers: Optional[Dict[IntegrationProvider, IntegrationProviderService]] = None,
        encryption: Optional[TokenEncryptionService] = None,
        state_service: Optional[OAuthStateService] = None,
        audit_service: Optional[AuditService] = None,
    ):
        self.db = db
        self.repository = IntegrationRepository(db)
        self.inbox_repository = InboxRepository(db)
        self.encryption = encryption or get_token_encryption_service()
        self.state_service = state_service or get_oauth_state_service()
        self.audit_service = audit_service or AuditService(db)
        self.providers = (
            providers
            if providers is not None
            else build_provider_adapters(db, self.state_service, self.encryption)
        )

    def _get_provider_service(self, provider: IntegrationProvider) -> IntegrationProviderService:
        service = self.providers.get(provider)
        if service is None:
            raise ValidationException(
                message=f"Integration provider {provider} is not supported",
                code="PROVIDER_NOT_SUPPORTED",
            )
        return service

    def _get_integration(self, user_id: int, provider: IntegrationProvider) -> Integration:
        integration = self.repository.get_by_provider(user_id, provider)
        if integration is None:
            raise ResourceNotFoundException(
                message=f"{provider.value} integration not found",
                code="INTEGRATION_NOT_FOUND",
            )
        return integration

    def _ensure_not_connected(self, user_id: int, provider: IntegrationProvider) -> None:
        if self.repository.get_by_provider(user_id, provider) is not None:
            raise DuplicateResourceException(
                message=f"{provider.value} is already connected. Disconnect first to reconnect.",
                code="INTEGRATION_ALREADY_CONNECTED",
            )

    async def get_all(self, user_id: int) -> List[IntegrationRead]:
        return [
            IntegrationRead.model_validate(integration)
            for integration in self.repository.get_by_user_id(user_id)
        ]

    async def connect(
        self,
        user_id: int,
        provider: IntegrationProvider,
        callback_url: Optional[str] = None,
        mobile_redirect_uri: Optional[str] = None,
    ) -> OAuthConfig:
        """Start the OAuth flow. Fails with a conflict if the provider is already connected."""
        self._ensure_not_connected(user_id, provider)
        provider_service = self._get_provider_service(provider)
        return await provider_service.get_auth_url(user_id, callback_url, mobile_redirect_uri)

    def validate_oauth_state(self, state: str) -> Optional[OAuthStateData]:
        return self.state_service.validate_state(state)

    async def callback(
        self,
        user_id: int,
        provider: IntegrationProvider,
        code: str,
        state: Optional[str] = None,
        redirect_uri: Optional[str] = None,
    ) -> IntegrationRead:
        """
        Complete the OAuth flow and persist the integration.

        ``state`` may be omitted when the caller already consumed it, as the
        browser redirect endpoint does.
        """
        if state is not None:
            state_data = self.state_service.validate_state(state)
            if state_data is None:
                raise ValidationException(
                    message="OAuth state is invalid or expired", code="INVALID_STATE"
                )
            if state_data.user_id != user_id or state_data.provider != provider:
                raise ValidationException(
                    message="OAuth state does not match the request", code="STATE_MISMATCH"
                )

        # The unique constraint still backs this check if another device wins the race
        self._ensure_not_connected(user_id, provider)

        provider_service = self._get_provider_service(provider)
        token_result = await provider_service.exchange_code(code, redirect_uri)

        integration = self.repository.create(
            {
                "user_id": user_id,
                "provider": provider,
                "access_token": self.encryption.encrypt(token_result.access_token),
                "refresh_token": (
                    self.encryption.encrypt(token_result.refresh_token)
                    if token_result.refresh_token
                    else None
                ),
                "token_expires_at": token_result.expires_at,
                "external_user_id": token_result.external_user_id,
                "external_username": token_result.external_username,
                "external_avatar_url": token_result.external_avatar_url,
            }
        )

        self.audit_service.record(
            AuditAction.INTEGRATION_CONNECT,
            user_id=user_id,
            entity_id=integration.id,
            new_values={
                "provider": provider.value,
                "external_username": integration.external_username,
            },
        )
        logger.info(
            f"Integration connected: {provider.value} for user {user_id} "
            f"({token_result.external_username})"
        )

        # Initial sync so the user sees data right away
        try:
            result = await self.sync(user_id, provider)
            logger.info(
                f"Initial sync after connect: {result.items_synced} items "
                f"for {provider.value}, user {user_id}"
            )
        except IntegrationException as e:
            logger.warning(
                f"Initial sync after connect failed (non-critical) for {provider.value}, "
                f"user {user_id}: {e.message}"
            )

        self.db.refresh(integration)
        return IntegrationRead.model_validate(integration)

    async def _refresh_if_needed(
        self, integration: Integration, provider_service: IntegrationProviderService
    ) -> None:
        """Refresh a token close to expiry. On failure keep the stored token."""
        if not token_expires_soon(integration):
            return

        try:
            refreshed = await provider_service.refresh_token(integration)
        except Exception as e:
            logger.warning(
                f"Token refresh failed for integration {integration.id}, "
                f"continuing with stored token: {e}"
            )
            return

        if refreshed is None:
            logger.info(
                f"No refreshed token for integration {integration.id}, using stored token"
            )
            return

        integration.access_token = self.encryption.encrypt(refreshed.access_token)
        if refreshed.refresh_token:
            integration.refresh_token = self.encryption.encrypt(refreshed.refresh_token)
        integration.token_expires_at = refreshed.expires_at
        self.repository.save(integration)
        logger.info(f"Refreshed access token for integration {integration.id}")

    async def sync(
        self,
        user_id: int,
        provider: IntegrationProvider,
        stop_event: Optional[asyncio.Event] = None,
    ) -> SyncResult:
        """
        Sync one integration and record the outcome on its row.

        Raises:
            ResourceNotFoundException: no integration for this provider
            IntegrationException: the provider sync failed; the error is
                also stored in ``last_sync_error``
        """
        integration = self._get_integration(user_id, provider)
        provider_service = self._get_provider_service(provider)

        with log_context(
            user_id=user_id, provider=provider.value, integration_id=integration.id
        ):
            await self._refresh_if_needed(integration, provider_service)

            started = time.perf_counter()
            try:
                result = await provider_service.sync(integration, user_id, stop_event)
            except Exception as e:
                duration_ms = round((time.perf_counter() - started) * 1000)
                error_message = getattr(e, "message", None) or str(e) or type(e).__name__

                # Items committed before the failure stay
                self.db.rollback()
                integration.last_sync_error = error_message
                self.repository.save(integration)

                self.audit_service.record(
                    AuditAction.INTEGRATION_SYNC_FAILED,
                    user_id=user_id,
                    entity_id=integration.id,
                    new_values={
                        "provider": provider.value,
                        "error": error_message,
                        "duration_ms": duration_ms,
                    },
                )
                logger.error(
                    f"Integration sync failed for {provider.value}, user {user_id}: {error_message}",
                    exc_info=True,
                )
                raise IntegrationException(
                    message=f"Failed to sync {provider.value}: {error_message}",
                    code="SYNC_FAILED",
                ) from e

            duration_ms = round((time.perf_counter() - started) * 1000)
            integration.last_sync_at = result.synced_at
            integration.last_sync_error = None
            self.repository.save(integration)

            self.audit_service.record(
                AuditAction.INTEGRATION_SYNC,
                user_id=user_id,
                entity_id=integration.id,
                new_values={
                    "provider": provider.value,
                    "items_synced": result.items_synced,
                    "synced_at": result.synced_at,
                    "duration_ms": duration_ms,
                },
            )
            logger.info(
                f"Integration synced: {provider.value} for user {user_id}, "
                f"{result.items_synced} items in {duration_ms} ms"
            )
            return result

    async def sync_all(
        self,
        user_id: int,
        min_interval_seconds: Optional[int] = None,
        stop_event: Optional[asyncio.Event] = None,
    ) -> SyncAllResult:
        """
        Sync every connected provider not synced within ``min_interval_seconds``.

        One provider failing never blocks the others.
        """
        if min_interval_seconds is None:
            min_interval_seconds = settings.INTEGRATION_SYNC_DEBOUNCE_SECONDS

        active = [i for i in self.repository.get_by_user_id(user_id) if i.access_token]
        cutoff = utcnow() - timedelta(seconds=min_interval_seconds)
        due = [i for i in active if i.last_sync_at is None or i.last_sync_at < cutoff]

        result = SyncAllResult(skipped=len(active) - len(due))
        if not due:
            logger.debug(f"Sync all skipped, all integrations synced recently for user {user_id}")
            return result

        # Snapshot the providers; sync() rolls back and expires rows on failure
        providers = [integration.provider for integration in due]
        for provider in providers:
            if stop_event is not None and stop_event.is_set():
                break

            result.attempted += 1
            try:
                sync_result = await self.sync(user_id, provider, stop_event)
            except (IntegrationException, ResourceNotFoundException) as e:
                result.failed += 1
                logger.warning(
                    f"Sync all: {provider.value} failed for user {user_id}: {e.message}"
                )
                continue
            except Exception as e:
                # Bookkeeping or token persistence failed; the session may be poisoned
                self.db.rollback()
                result.failed += 1
                logger.error(
                    f"Sync all: unexpected error for {provider.value}, user {user_id}: {e}",
                    exc_info=True,
                )
                continue

            result.succeeded += 1
            result.items_synced += sync_result.items_synced

        return result

    async def disconnect(self, user_id: int, provider: IntegrationProvider) -> None:
        """Revoke at the provider, then delete the row. Inbox items are kept, detached."""
        integration = self._get_integration(user_id, provider)
        provider_service = self._get_provider_service(provider)

        try:
            await provider_service.revoke_access(integration)
        except Exception as e:
            logger.warning(
                f"Failed to revoke {provider.value} access for user {user_id}, "
                f"continuing with disconnect: {e}"
            )

        integration_id = integration.id
        external_username = integration.external_username

        detached = self.inbox_repository.detach_integration(integration_id)
        self.repository.delete(integration_id)

        self.audit_service.record(
            AuditAction.INTEGRATION_DISCONNECT,
            user_id=user_id,
            entity_id=integration_id,
            old_values={"provider": provider.value, "external_username": external_username},
            new_values={"detached_items": detached},
        )
        logger.info(
            f"Integration disconnected: {provider.value} for user {user_id}, "
            f"{detached} inbox items kept"
        )
