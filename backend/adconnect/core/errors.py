"""
Domain errors raised by the connection lifecycle services.

Provider-side failures live in ``adconnect.adapters.base``; these cover
conditions the caller is expected to present to the user.
"""

from typing import Optional


class AdConnectError(Exception):
    """Base exception for connection lifecycle errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ConnectionNotFoundError(AdConnectError):
    """Connection does not exist, is inactive, or belongs to another user."""

    def __init__(self, connection_id: str, message: Optional[str] = None):
        self.connection_id = connection_id
        super().__init__(
            message or f"Connection {connection_id} not found",
            details={"connection_id": connection_id},
        )


class QuotaExceededError(AdConnectError):
    """The user's plan does not allow another connection on this platform."""

    def __init__(self, profile: str, limit: int, current: int):
        self.profile = profile
        self.limit = limit
        self.current = current
        super().__init__(
            f"Maximum connections reached for {profile} plan. Limit: {limit}",
            details={"profile": profile, "limit": limit, "current": current},
        )


class ReauthenticationRequiredError(AdConnectError):
    """Stored credential can no longer be used; the user must reconnect."""

    def __init__(
        self,
        connection_id: str,
        platform: str,
        reason: str = "token expired and could not be refreshed",
    ):
        self.connection_id = connection_id
        self.platform = platform
        self.reason = reason
        super().__init__(
            f"Your {platform} connection needs attention ({reason}). "
            "Please reconnect your account.",
            details={"connection_id": connection_id, "platform": platform},
        )


class DecryptionFailureError(ReauthenticationRequiredError):
    """Stored credential could not be decrypted."""

    def __init__(self, connection_id: str, platform: str):
        super().__init__(connection_id, platform, reason="stored credential is unreadable")


class UserNotFoundError(AdConnectError):
    """The user owning a new connection does not exist."""

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"User {user_id} not found", details={"user_id": user_id})


class TemporaryTokenNotFoundError(AdConnectError):
    """The OAuth hand-off token expired or was never issued to this user."""

    def __init__(self, token_id: str):
        super().__init__(
            "Authorization expired. Please start the connection again.",
            details={"token_id": token_id[:10]},
        )
