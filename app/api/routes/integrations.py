# app/api/routes/integrations.py
import logging
from typing import List, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query, Request, Response, status
from fastapi.responses import RedirectResponse

from app import models
from app.api import deps
from app.core.config import settings
from app.core.exceptions import BusinessException
from app.models.integration import IntegrationProvider
from app.schemas.integration import (
    ConnectIntegrationResponse,
    IntegrationCallbackRequest,
    IntegrationRead,
    SyncAllResult,
    SyncResponse,
)
from app.services.integration_service import IntegrationService

router = APIRouter()
logger = logging.getLogger(__name__)


def _oauth_callback_url(request: Request, provider: IntegrationProvider) -> str:
    """The API URL the provider redirects back to; must match on connect and exchange."""
    return str(request.url_for("integration_oauth_callback", provider=provider.value))


def _mobile_redirect(base_uri: str, **params: str) -> RedirectResponse:
    separator = "&" if "?" in base_uri else "?"
    return RedirectResponse(
        url=f"{base_uri}{separator}{urlencode(params)}",
        status_code=status.HTTP_302_FOUND,
    )


@router.get("/", response_model=List[IntegrationRead])
async def list_integrations(
    current_user: models.User = Depends(deps.get_current_active_user),
    integration_service: IntegrationService = Depends(deps.get_integration_service()),
):
    """List the current user's connected integrations."""
    return await integration_service.get_all(current_user.id)


@router.post("/{provider}/connect", response_model=ConnectIntegrationResponse)
async def connect_integration(
    provider: IntegrationProvider,
    request: Request,
    redirect_uri: Optional[str] = Query(
        None, description="Mobile deep link to return to after authorization"
    ),
    current_user: models.User = Depends(deps.get_current_active_user),
    integration_service: IntegrationService = Depends(deps.get_integration_service()),
):
    """Start the OAuth flow and return the provider's authorization URL."""
    config = await integration_service.connect(
        current_user.id,
        provider,
        callback_url=_oauth_callback_url(request, provider),
        mobile_redirect_uri=redirect_uri,
    )
    logger.info(f"OAuth flow started for {provider.value}, user {current_user.id}")
    return ConnectIntegrationResponse(auth_url=config.auth_url, state=config.state)


@router.get("/{provider}/oauth-callback", name="integration_oauth_callback")
async def oauth_callback(
    provider: IntegrationProvider,
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    integration_service: IntegrationService = Depends(deps.get_integration_service()),
):
    """
    Browser redirect target for the provider.

    Anonymous: the user is identified by the state token, which is consumed
    here. Always answers with a redirect to the mobile app.
    """
    default_redirect = f"{settings.MOBILE_CALLBACK_SCHEME}://integrations/callback"

    if error or not code or not state:
        error_message = error or "Missing code or state parameter"
        logger.warning(f"OAuth callback error for {provider.value}: {error_message}")
        return _mobile_redirect(default_redirect, error=error_message, provider=provider.value)

    state_data = integration_service.validate_oauth_state(state)
    if state_data is None or state_data.provider != provider:
        return _mobile_redirect(
            default_redirect, error="Invalid or expired state", provider=provider.value
        )

    mobile_redirect_uri = state_data.mobile_redirect_uri or default_redirect
    try:
        await integration_service.callback(
            state_data.user_id,
            provider,
            code,
            state=None,
            redirect_uri=_oauth_callback_url(request, provider),
        )
    except BusinessException as e:
        logger.warning(f"OAuth callback failed for {provider.value}: {e.message}")
        return _mobile_redirect(default_redirect, error=e.message, provider=provider.value)

    logger.info(
        f"Integration connected via OAuth callback: {provider.value}, user {state_data.user_id}"
    )
    return _mobile_redirect(mobile_redirect_uri, success="true", provider=provider.value)


@router.post(
    "/{provider}/callback",
    response_model=IntegrationRead,
    status_code=status.HTTP_201_CREATED,
)
async def integration_callback(
    provider: IntegrationProvider,
    callback_in: IntegrationCallbackRequest,
    current_user: models.User = Depends(deps.get_current_active_user),
    integration_service: IntegrationService = Depends(deps.get_integration_service()),
):
    """Complete the OAuth flow with a code the mobile app received directly."""
    return await integration_service.callback(
        current_user.id,
        provider,
        callback_in.code,
        state=callback_in.state,
        redirect_uri=callback_in.redirect_uri,
    )


@router.delete("/{provider}", status_code=status.HTTP_204_NO_CONTENT)
async def disconnect_integration(
    provider: IntegrationProvider,
    current_user: models.User = Depends(deps.get_current_active_user),
    integration_service: IntegrationService = Depends(deps.get_integration_service()),
):
    """Disconnect an integration. Synced inbox items are kept."""
    await integration_service.disconnect(current_user.id, provider)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/sync-all", response_model=SyncAllResult)
async def sync_all_integrations(
    current_user: models.User = Depends(deps.get_current_active_user),
    integration_service: IntegrationService = Depends(deps.get_integration_service()),
):
    """Sync every integration not synced within the debounce window."""
    return await integration_service.sync_all(current_user.id)


@router.post("/{provider}/sync", response_model=SyncResponse)
async def sync_integration(
    provider: IntegrationProvider,
    current_user: models.User = Depends(deps.get_current_active_user),
    integration_service: IntegrationService = Depends(deps.get_integration_service()),
):
    """Sync one integration now."""
    result = await integration_service.sync(current_user.id, provider)
    return SyncResponse(
        provider=provider, items_synced=result.items_synced, synced_at=result.synced_at
    )
