# storefront/services/auth.py
import logging
from typing import Optional

import httpx
from pydantic import BaseModel, ConfigDict

from storefront.core.config import settings

logger = logging.getLogger(__name__)


class HostedAuthError(Exception):
    """The auth provider could not be asked about a token."""
    def __init__(self, message="Hosted auth request failed", status_code=None, details=None):
        self.message = message
        self.status_code = status_code
        self.details = details
        super().__init__(self.message)


class AuthUser(BaseModel):
    model_config = ConfigDict(extra='ignore')

    id: str
    email: Optional[str] = None
    phone: Optional[str] = None


class HostedAuthService:
    """
    Resolves bearer tokens to users through the hosted auth provider's `/auth/v1/user` endpoint.
    """
    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url if base_url is not None else settings.SUPABASE_URL) or ""
        self.api_key = api_key if api_key is not None else settings.SUPABASE_ANON_KEY
        timeouts = httpx.Timeout(5.0, connect=3.0)
        self._client = httpx.AsyncClient(
            base_url=self.base_url.rstrip('/'),
            headers={"apikey": self.api_key or ""},
            timeout=timeouts,
            transport=transport,
        )
        logger.info(f"HostedAuthService initialized for URL: {self.base_url or '<not configured>'}")

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url and self.api_key)

    async def close_client(self):
        if hasattr(self, '_client') and self._client:
            await self._client.aclose()
            logger.info("Hosted auth HTTP client closed.")

    async def get_user(self, access_token: str) -> Optional[AuthUser]:
        """Returns the token's user, or None when the token is rejected."""
        if not access_token:
            return None
        if not self.is_configured:
            raise HostedAuthError("Hosted auth is not configured")

        try:
            response = await self._client.get(
                "/auth/v1/user",
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.TimeoutException as e:
            logger.error(f"Hosted auth request timeout: {e}")
            raise HostedAuthError("Hosted auth request timed out") from e
        except httpx.RequestError as e:
            logger.error(f"Network error while contacting hosted auth: {e}")
            raise HostedAuthError("Network error while contacting hosted auth") from e

        if response.status_code in (401, 403):
            logger.debug(f"Hosted auth rejected token with status {response.status_code}")
            return None
        if response.status_code != 200:
            logger.error(f"Unexpected hosted auth response {response.status_code}: {response.text[:500]}")
            raise HostedAuthError(
                f"HTTP error {response.status_code} from hosted auth",
                status_code=response.status_code,
                details=response.text,
            )
        return AuthUser.model_validate(response.json())
