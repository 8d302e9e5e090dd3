"""
OAuth 2.0 Infrastructure for Ad Platform Connections.

Implements the authorization-code flow for:
- Google Ads API
- Meta (Facebook) Marketing API
- TikTok Marketing API

Security features:
- CSRF protection via single-use state bound to the initiating user
- Tokens handed to the caller, never logged
"""

from datetime import datetime, timedelta
from typing import Optional, Tuple
from urllib.parse import urlencode

import httpx
import structlog
from authlib.integrations.base_client import OAuthError
from authlib.integrations.httpx_client import AsyncOAuth2Client
from pydantic import BaseModel

from adconnect.config import settings
from adconnect.core.clock import utcnow
from adconnect.core.enums import Platform
from adconnect.core.ephemeral import OAuthStateStore
from adconnect.schemas import TokenData

logger = structlog.get_logger()


# =============================================================================
# OAuth Provider Configurations
# =============================================================================

class OAuthProviderConfig(BaseModel):
    """Endpoints and app credentials for one platform's authorization-code flow."""
    client_id: str
    client_secret: str
    authorize_url: str
    token_url: str
    scopes: list[str]
    redirect_uri: str


# Platform -> (authorize URL, token URL, settings field prefix)
PROVIDER_ENDPOINTS = {
    Platform.GOOGLE: (
        "https://accounts.google.com/o/oauth2/v2/auth",
        "https://oauth2.googleapis.com/token",
        "google_ads",
    ),
    Platform.FACEBOOK: (
        "https://www.facebook.com/v19.0/dialog/oauth",
        "https://graph.facebook.com/v19.0/oauth/access_token",
        "meta",
    ),
    Platform.TIKTOK: (
        "https://business-api.tiktok.com/portal/auth",
        "https://business-api.tiktok.com/open_api/v1.3/oauth2/access_token/",
        "tiktok",
    ),
}

STATIC_SCOPES = {
    Platform.GOOGLE: ["https://www.googleapis.com/auth/adwords"],
    Platform.TIKTOK: ["user.info.basic", "ads.read"],
}


def get_provider_config(platform: str) -> OAuthProviderConfig:
    """
    Resolve the OAuth configuration for ``platform`` from current settings.

    Raises:
        ValueError: If the platform is unknown
    """
    try:
        platform = Platform(platform)
    except ValueError:
        raise ValueError(f"Unknown platform: {platform}")

    authorize_url, token_url, prefix = PROVIDER_ENDPOINTS[platform]
    # Google names its credentials client_*, Meta and TikTok app_*
    id_field, secret_field = (
        ("client_id", "client_secret") if platform == Platform.GOOGLE else ("app_id", "app_secret")
    )

    return OAuthProviderConfig(
        client_id=getattr(settings, f"{prefix}_{id_field}") or "",
        client_secret=getattr(settings, f"{prefix}_{secret_field}") or "",
        authorize_url=authorize_url,
        token_url=token_url,
        scopes=STATIC_SCOPES.get(platform, settings.meta_scopes),
        redirect_uri=getattr(settings, f"{prefix}_redirect_uri"),
    )


# =============================================================================
# OAuth Client Factory
# =============================================================================

class OAuthClientFactory:
    """Builds Authlib clients and authorization URLs bound to a state store."""

    def __init__(
        self,
        state_store: OAuthStateStore,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.state_store = state_store
        self._transport = transport

    def create_client(self, platform: str) -> AsyncOAuth2Client:
        """
        Create an OAuth client for a platform.

        Args:
            platform: Ad platform name

        Returns:
            Configured AsyncOAuth2Client
        """
        config = get_provider_config(platform)

        return AsyncOAuth2Client(
            client_id=config.client_id,
            client_secret=config.client_secret,
            redirect_uri=config.redirect_uri,
            scope=" ".join(config.scopes),
            timeout=settings.http_timeout_seconds,
            transport=self._transport,
        )

    def get_authorization_url(self, platform: str, user_id: str) -> Tuple[str, str]:
        """
        Generate OAuth authorization URL.

        Args:
            platform: Ad platform
            user_id: User ID

        Returns:
            Tuple of (authorization_url, state)
        """
        platform = Platform(platform)
        config = get_provider_config(platform)
        state = self.state_store.generate(
            user_id=user_id,
            platform=platform,
            redirect_uri=config.redirect_uri,
        )

        params = {
            "client_id": config.client_id,
            "redirect_uri": config.redirect_uri,
            "response_type": "code",
            "scope": " ".join(config.scopes),
            "state": state,
        }

        # Platform-specific adjustments
        if platform == Platform.GOOGLE:
            params["access_type"] = "offline"  # For refresh tokens
            params["prompt"] = "consent"  # Always show consent to get refresh token
        elif platform == Platform.FACEBOOK:
            params["scope"] = ",".join(config.scopes)
        elif platform == Platform.TIKTOK:
            params["app_id"] = config.client_id
            del params["client_id"]

        auth_url = f"{config.authorize_url}?{urlencode(params)}"

        logger.info(
            "oauth_authorization_url_generated",
            platform=platform.value,
            user_id=user_id,
        )

        return auth_url, state

    async def exchange_code_for_tokens(
        self,
        platform: str,
        code: str,
        state: str,
        user_id: str,
    ) -> Optional[TokenData]:
        """
        Exchange authorization code for access tokens.

        Args:
            platform: Ad platform
            code: Authorization code from callback
            state: State parameter for validation
            user_id: User completing the flow

        Returns:
            TokenData if successful, None otherwise
        """
        platform = Platform(platform)
        oauth_state = self.state_store.validate(state, user_id)
        if not oauth_state:
            return None

        if oauth_state.platform != platform:
            logger.error(
                "oauth_platform_mismatch",
                expected=oauth_state.platform.value,
                received=platform.value,
            )
            return None

        config = get_provider_config(platform)
        client = self.create_client(platform)

        try:
            token = await client.fetch_token(
                config.token_url,
                code=code,
                grant_type="authorization_code",
            )
        except (OAuthError, httpx.HTTPError, ValueError) as e:
            logger.error(
                "oauth_token_exchange_failed",
                platform=platform.value,
                error=str(e),
            )
            return None
        finally:
            await client.aclose()

        token_data = token_data_from_response(token)

        logger.info(
            "oauth_tokens_exchanged",
            platform=platform.value,
            user_id=oauth_state.user_id,
            has_refresh_token=bool(token_data.refresh_token),
        )

        return token_data


def token_data_from_response(token: dict, now: Optional[datetime] = None) -> TokenData:
    """Build TokenData from a token endpoint response."""
    now = now or utcnow()

    expires_at = None
    if token.get("expires_in"):
        expires_at = now + timedelta(seconds=int(token["expires_in"]))
    elif token.get("expires_at"):
        expires_at = datetime.fromtimestamp(token["expires_at"], tz=now.tzinfo)

    scope = token.get("scope") or ""
    return TokenData(
        access_token=token["access_token"],
        refresh_token=token.get("refresh_token"),
        token_type=token.get("token_type", "Bearer"),
        expires_at=expires_at,
        scopes=scope.replace(",", " ").split(),
    )
