"""
Provider adapters.

Dispatch is an explicit provider -> adapter class table so that adding a
provider is a one-line change here.
"""
from typing import Dict, Type

from sqlalchemy.orm import Session

from app.models.integration import IntegrationProvider
from app.services.oauth_state_service import OAuthStateService
from app.services.providers.base import IntegrationProviderService
from app.services.providers.github_provider import GitHubProviderService
from app.services.providers.google_calendar_provider import GoogleCalendarProviderService
from app.services.token_encryption_service import TokenEncryptionService

PROVIDER_ADAPTERS: Dict[IntegrationProvider, Type[IntegrationProviderService]] = {
    IntegrationProvider.GITHUB: GitHubProviderService,
    IntegrationProvider.GOOGLE_CALENDAR: GoogleCalendarProviderService,
}


def build_provider_adapters(
    db: Session,
    state_service: OAuthStateService,
    encryption: TokenEncryptionService,
) -> Dict[IntegrationProvider, IntegrationProviderService]:
    return {
        provider: adapter_class(db, state_service, encryption)
        for provider, adapter_class in PROVIDER_ADAPTERS.items()
    }
