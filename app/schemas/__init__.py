# app/schemas/__init__.py
from app.schemas.integration import (
    ConnectIntegrationResponse,
    IntegrationCallbackRequest,
    IntegrationRead,
    OAuthConfig,
    OAuthStateData,
    OAuthTokenResult,
    SyncAllResult,
    SyncResponse,
    SyncResult,
)
