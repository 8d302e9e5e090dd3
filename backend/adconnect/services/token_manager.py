"""
Token Manager

Guarantees a usable access token for a connection before any platform call.

Lifecycle of a stored credential:
- valid: returned as-is
- expired (past ``expires_at`` minus a skew, or rejected by the platform when
  no expiry is known): exchanged through the adapter's refresh call and the
  renewal persisted through the Connection Store
- unrefreshable (no refresh token, or the platform rejects it):
  ReauthenticationRequiredError, the user must reconnect

Refreshes are pull-based and single-flight per connection: concurrent callers
for the same connection share one exchange.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

import structlog

from adconnect.adapters import get_adapter
from adconnect.adapters.base import PermanentProviderError, PlatformAdsClient, TransientProviderError
from adconnect.config import settings
from adconnect.core.clock import utcnow
from adconnect.core.errors import (
    ConnectionNotFoundError,
    DecryptionFailureError,
    ReauthenticationRequiredError,
)
from adconnect.core.metrics import TOKEN_REFRESHES
from adconnect.schemas import ConnectionRecord, ConnectionUpdate
from adconnect.services.connection_store import ConnectionStore

logger = structlog.get_logger()


class TokenManager:
    """Validates and refreshes connection credentials."""

    def __init__(
        self,
        store: ConnectionStore,
        adapter_factory: Callable[[str], PlatformAdsClient] = get_adapter,
        skew_seconds: Optional[int] = None,
        validate_without_expiry: Optional[bool] = None,
    ):
        self.store = store
        self.adapter_factory = adapter_factory
        if skew_seconds is None:
            skew_seconds = settings.token_expiry_skew_seconds
        self.skew = timedelta(seconds=skew_seconds)
        if validate_without_expiry is None:
            validate_without_expiry = settings.validate_tokens_without_expiry
        self.validate_without_expiry = validate_without_expiry
        self._inflight: Dict[str, asyncio.Task] = {}

    def is_expired(self, connection: ConnectionRecord, now: Optional[datetime] = None) -> bool:
        """True once ``expires_at`` is within the skew window. Unknown expiry is not expired."""
        if connection.expires_at is None:
            return False
        return connection.expires_at <= (now or utcnow()) + self.skew

    async def ensure_valid_token(self, connection: ConnectionRecord) -> str:
        """
        Return a usable access token for ``connection``, refreshing if needed.

        Raises:
            DecryptionFailureError: If the stored token cannot be decrypted
            ReauthenticationRequiredError: If the token cannot be refreshed
            TransientProviderError: If the platform is temporarily unreachable
        """
        if not connection.access_token:
            logger.error(
                "token_decryption_failed",
                connection_id=connection.id,
                platform=connection.platform.value,
            )
            raise DecryptionFailureError(connection.id, connection.platform.value)

        if connection.expires_at is not None:
            if not self.is_expired(connection):
                return connection.access_token
        elif not self.validate_without_expiry:
            return connection.access_token
        else:
            adapter = self.adapter_factory(connection.platform)
            if await adapter.validate_token(connection.access_token):
                return connection.access_token
            logger.info("token_rejected_by_platform", connection_id=connection.id)

        return await self.refresh(connection)

    async def refresh(self, connection: ConnectionRecord) -> str:
        """Refresh ``connection``'s token, joining an in-flight refresh if there is one."""
        task = self._inflight.get(connection.id)
        if task is None:
            task = asyncio.ensure_future(self._refresh(connection))
            self._inflight[connection.id] = task
            task.add_done_callback(lambda done: self._forget(connection.id, done))
        else:
            logger.debug("token_refresh_joined", connection_id=connection.id)

        # One caller being cancelled must not cancel the shared refresh
        return await asyncio.shield(task)

    def _forget(self, connection_id: str, task: asyncio.Task) -> None:
        if self._inflight.get(connection_id) is task:
            del self._inflight[connection_id]

    async def _refresh(self, connection: ConnectionRecord) -> str:
        platform = connection.platform.value

        current = await self.store.get(connection.user_id, connection.id)
        if current is None:
            raise ConnectionNotFoundError(connection.id)

        # Renewed elsewhere since the caller loaded it
        if (
            current.access_token
            and current.access_token != connection.access_token
            and current.expires_at is not None
            and not self.is_expired(current)
        ):
            return current.access_token

        if not current.refresh_token:
            TOKEN_REFRESHES.labels(platform=platform, outcome="unrefreshable").inc()
            logger.warning("token_refresh_unavailable", connection_id=current.id, platform=platform)
            raise ReauthenticationRequiredError(
                current.id, platform, reason="token expired and no refresh token is stored"
            )

        adapter = self.adapter_factory(current.platform)
        try:
            renewed = await adapter.refresh_token(current.refresh_token)
        except TransientProviderError as e:
            TOKEN_REFRESHES.labels(platform=platform, outcome="transient_error").inc()
            logger.warning(
                "token_refresh_transient_failure",
                connection_id=current.id,
                platform=platform,
                error=str(e),
            )
            raise
        except PermanentProviderError as e:
            TOKEN_REFRESHES.labels(platform=platform, outcome="rejected").inc()
            logger.warning(
                "token_refresh_rejected",
                connection_id=current.id,
                platform=platform,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise ReauthenticationRequiredError(
                current.id, platform, reason="the platform rejected the stored authorization"
            ) from e

        changes = {
            "access_token": renewed.access_token,
            "expires_at": (
                utcnow() + timedelta(seconds=renewed.expires_in)
                if renewed.expires_in
                else None
            ),
        }
        if renewed.refresh_token:
            changes["refresh_token"] = renewed.refresh_token

        updated = await self.store.update(current.id, ConnectionUpdate(**changes))
        if updated is None:
            raise ConnectionNotFoundError(current.id)

        TOKEN_REFRESHES.labels(platform=platform, outcome="success").inc()
        logger.info(
            "token_refreshed",
            connection_id=current.id,
            platform=platform,
            expires_at=updated.expires_at.isoformat() if updated.expires_at else None,
            refresh_token_rotated=bool(renewed.refresh_token),
        )
        return renewed.access_token
