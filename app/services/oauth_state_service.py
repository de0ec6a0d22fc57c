import logging
import secrets
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Dict, Optional

from app.core.config import settings
from app.models.integration import IntegrationProvider
from app.schemas.integration import OAuthStateData
from app.utils.clock import utcnow

logger = logging.getLogger(__name__)


class OAuthStateStore(ABC):
    """
    Key-value store for pending OAuth states.

    The in-memory implementation only works for a single process. A
    horizontally scaled deployment needs a shared store with TTL support.
    """

    @abstractmethod
    def put(self, state: str, data: OAuthStateData) -> None:
        pass

    @abstractmethod
    def pop(self, state: str) -> Optional[OAuthStateData]:
        """Remove and return the entry for a state, if any."""
        pass

    @abstractmethod
    def sweep_expired(self, now: datetime) -> int:
        """Remove expired entries and return how many were removed."""
        pass


class InMemoryOAuthStateStore(OAuthStateStore):
    def __init__(self):
        self._states: Dict[str, OAuthStateData] = {}
        self._lock = threading.Lock()

    def put(self, state: str, data: OAuthStateData) -> None:
        with self._lock:
            self._states[state] = data

    def pop(self, state: str) -> Optional[OAuthStateData]:
        with self._lock:
            return self._states.pop(state, None)

    def sweep_expired(self, now: datetime) -> int:
        with self._lock:
            expired = [key for key, data in self._states.items() if data.expires_at <= now]
            for key in expired:
                del self._states[key]
            return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._states)


class OAuthStateService:
    """Issues and consumes single-use CSRF state tokens for the OAuth round trip."""

    def __init__(
        self,
        store: Optional[OAuthStateStore] = None,
        ttl: Optional[timedelta] = None,
    ):
        self.store = store if store is not None else InMemoryOAuthStateStore()
        self.ttl = (
            ttl if ttl is not None else timedelta(minutes=settings.OAUTH_STATE_TTL_MINUTES)
        )

    def generate_state(
        self,
        user_id: int,
        provider: IntegrationProvider,
        mobile_redirect_uri: Optional[str] = None,
    ) -> str:
        now = utcnow()
        swept = self.store.sweep_expired(now)
        if swept:
            logger.debug(f"Swept {swept} expired OAuth states")

        state = secrets.token_urlsafe(32)
        self.store.put(
            state,
            OAuthStateData(
                user_id=user_id,
                provider=provider,
                mobile_redirect_uri=mobile_redirect_uri,
                expires_at=now + self.ttl,
            ),
        )
        return state

    def validate_state(self, state: str) -> Optional[OAuthStateData]:
        """
        Consume a state token.

        The entry is removed whatever the outcome, so a token can only be
        presented once. Returns None for unknown or expired tokens.
        """
        if not state:
            return None

        data = self.store.pop(state)
        if data is None:
            logger.warning("OAuth state not found or already used")
            return None

        if data.expires_at <= utcnow():
            logger.warning(f"OAuth state expired for user {data.user_id}")
            return None

        return data


@lru_cache()
def get_oauth_state_service() -> OAuthStateService:
    """Process-wide state service. Callbacks must reach the instance that issued the state."""
    return OAuthStateService()
