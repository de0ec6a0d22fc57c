from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from app.models.integration import IntegrationProvider


# Provider adapter results
class OAuthConfig(BaseModel):
    auth_url: str
    state: str


class OAuthTokenResult(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    external_user_id: str = ""
    external_username: Optional[str] = None
    external_avatar_url: Optional[str] = None


class SyncResult(BaseModel):
    items_synced: int = 0
    synced_at: datetime


class SyncAllResult(BaseModel):
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    items_synced: int = 0


class OAuthStateData(BaseModel):
    user_id: int
    provider: IntegrationProvider
    mobile_redirect_uri: Optional[str] = None
    expires_at: datetime


# Request schemas
class IntegrationCallbackRequest(BaseModel):
    code: str = Field(..., min_length=1)
    state: Optional[str] = None
    redirect_uri: Optional[str] = None


# Response schemas
class IntegrationRead(BaseModel):
    """Integration as shown to clients. Tokens are never exposed."""

    id: int
    provider: IntegrationProvider
    external_user_id: str
    external_username: Optional[str] = None
    external_avatar_url: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    last_sync_at: Optional[datetime] = None
    last_sync_error: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ConnectIntegrationResponse(BaseModel):
    auth_url: str
    state: str


class SyncResponse(BaseModel):
    provider: IntegrationProvider
    items_synced: int
    synced_at: datetime
