"""
Process-wide ephemeral stores for the OAuth handshake.

- OAuthStateStore: CSRF state binding an authorization request to its user
- TempTokenStore: freshly exchanged tokens awaiting the user's account choice

Both are plain in-memory maps guarded by a lock, so any request handler or
worker thread may use them. A StoreSweeper task purges expired entries.
"""

import asyncio
import secrets
import threading
from datetime import datetime, timedelta
from typing import Generic, Iterable, Optional, TypeVar

import structlog
from pydantic import BaseModel

from adconnect.config import Settings, settings
from adconnect.core.clock import utcnow
from adconnect.core.enums import Platform
from adconnect.schemas import TokenData

logger = structlog.get_logger()


def _short(value: str) -> str:
    return value[:10] + "..."


# =============================================================================
# Entries
# =============================================================================

class OAuthState(BaseModel):
    """OAuth state for CSRF protection."""
    state: str
    platform: Platform
    user_id: str
    redirect_uri: str
    created_at: datetime
    expires_at: datetime


class TemporaryToken(BaseModel):
    """Exchanged token held until the user picks the accounts to connect."""
    id: str
    user_id: str
    platform: Platform
    token: TokenData
    created_at: datetime
    expires_at: datetime


E = TypeVar("E", bound=BaseModel)


class ExpiringStore(Generic[E]):
    """Lock-guarded map of entries carrying an ``expires_at``."""

    name = "ephemeral"

    def __init__(self, ttl: timedelta):
        self.ttl = ttl
        self._entries: dict[str, E] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """
        Remove expired entries.

        Returns:
            Number of entries removed
        """
        now = now or utcnow()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
            for key in expired:
                del self._entries[key]

        if expired:
            logger.info(f"{self.name}_entries_cleaned", count=len(expired))

        return len(expired)


# =============================================================================
# OAuth State
# =============================================================================

class OAuthStateStore(ExpiringStore[OAuthState]):
    name = "oauth_state"

    def generate(self, user_id: str, platform: Platform, redirect_uri: str) -> str:
        """
        Generate a secure OAuth state parameter.

        Args:
            user_id: User initiating the connection
            platform: Ad platform
            redirect_uri: Where to redirect after auth

        Returns:
            Secure state token
        """
        state = secrets.token_urlsafe(32)
        now = utcnow()

        entry = OAuthState(
            state=state,
            platform=platform,
            user_id=user_id,
            redirect_uri=redirect_uri,
            created_at=now,
            expires_at=now + self.ttl,
        )
        with self._lock:
            self._entries[state] = entry

        logger.info(
            "oauth_state_generated",
            platform=entry.platform.value,
            user_id=user_id,
            expires_in_minutes=int(self.ttl.total_seconds() // 60),
        )
        return state

    def validate(self, state: str, user_id: str) -> Optional[OAuthState]:
        """
        Validate and consume an OAuth state.

        A state presented by a different user is rejected but left in place,
        so the rightful owner can still complete the flow.

        Returns:
            OAuthState if valid, None otherwise
        """
        with self._lock:
            entry = self._entries.get(state)

            if entry is None:
                logger.warning("oauth_state_not_found", state=_short(state))
                return None

            if entry.user_id != user_id:
                logger.warning("oauth_state_user_mismatch", state=_short(state))
                return None

            del self._entries[state]

        if utcnow() >= entry.expires_at:
            logger.warning("oauth_state_expired", state=_short(state))
            return None

        return entry


# =============================================================================
# Temporary Tokens
# =============================================================================

class TempTokenStore(ExpiringStore[TemporaryToken]):
    name = "temp_token"

    def store(self, user_id: str, platform: Platform, token: TokenData) -> str:
        """Keep ``token`` for the account-selection step; returns its id."""
        token_id = secrets.token_urlsafe(24)
        now = utcnow()
        entry = TemporaryToken(
            id=token_id,
            user_id=user_id,
            platform=platform,
            token=token,
            created_at=now,
            expires_at=now + self.ttl,
        )
        with self._lock:
            self._entries[token_id] = entry

        logger.info("temp_token_stored", platform=entry.platform.value, user_id=user_id)
        return token_id

    def retrieve(self, token_id: str, user_id: Optional[str] = None) -> Optional[TemporaryToken]:
        """Return the entry if present, unexpired and (optionally) owned by ``user_id``."""
        with self._lock:
            entry = self._entries.get(token_id)
            if entry is None:
                return None
            if utcnow() >= entry.expires_at:
                del self._entries[token_id]
                logger.info("temp_token_expired", token_id=_short(token_id))
                return None

        if user_id is not None and entry.user_id != user_id:
            logger.warning("temp_token_user_mismatch", token_id=_short(token_id))
            return None
        return entry

    def remove(self, token_id: str) -> bool:
        with self._lock:
            return self._entries.pop(token_id, None) is not None


# =============================================================================
# Sweeper
# =============================================================================

class StoreSweeper:
    """Background task purging expired entries from the ephemeral stores."""

    def __init__(self, stores: Iterable[ExpiringStore], interval_seconds: float):
        self.stores = list(stores)
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def sweep(self) -> int:
        return sum(store.purge_expired() for store in self.stores)

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                self.sweep()
            except Exception as e:
                logger.error("ephemeral_sweep_failed", error=str(e))

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info("ephemeral_sweeper_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("ephemeral_sweeper_stopped")


def create_state_store(config: Optional[Settings] = None) -> OAuthStateStore:
    config = config or settings
    return OAuthStateStore(timedelta(minutes=config.oauth_state_ttl_minutes))


def create_temp_token_store(config: Optional[Settings] = None) -> TempTokenStore:
    config = config or settings
    return TempTokenStore(timedelta(minutes=config.temp_token_ttl_minutes))
