# storefront/dependencies.py
import logging
import hmac
from fastapi import Request, HTTPException, status, Depends, Header, Security
from fastapi.security import APIKeyHeader
from typing import Annotated, Optional

from storefront.core.config import settings
from storefront.services.auth import AuthUser, HostedAuthError, HostedAuthService
from storefront.services.shopify import ShopifyService

logger = logging.getLogger(__name__)

api_key_header_admin = APIKeyHeader(name="X-Admin-API-Key", auto_error=False)


class AuthenticationRequired(Exception):
    """Raised by endpoints that need a signed-in user; rendered as 401 {"message": "Unauthorized"}."""


async def verify_admin_api_key(api_key: str = Security(api_key_header_admin)):
    """
    Checks the X-Admin-API-Key header against the configured admin key.
    """
    if not settings.ADMIN_API_KEY:
        logger.critical("Admin API Key is not configured on the server!")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin functions are temporarily unavailable."
        )
    if not api_key or not hmac.compare_digest(api_key, settings.ADMIN_API_KEY):
        logger.warning("Invalid or missing Admin API Key received.")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid or missing admin API key."
        )
    return True


async def get_shopify_service(request: Request) -> ShopifyService:
    service = getattr(request.app.state, 'shopify_service', None)
    if not service or not isinstance(service, ShopifyService):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Shopify service is unavailable."
        )
    return service


async def get_auth_service(request: Request) -> HostedAuthService:
    service = getattr(request.app.state, 'auth_service', None)
    if not service or not isinstance(service, HostedAuthService):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication service is unavailable."
        )
    return service


# --- Signed-in user ---

async def get_current_user_optional(
    request: Request,
    authorization: Annotated[Optional[str], Header(description="Bearer access token of the hosted auth provider")] = None,
) -> Optional[AuthUser]:
    """Resolves the bearer token to a user. Anonymous requests yield None."""
    if not authorization or not authorization.lower().startswith("bearer "):
        return None

    auth_service = await get_auth_service(request)
    token = authorization[7:].strip()
    try:
        return await auth_service.get_user(token)
    except HostedAuthError as e:
        logger.error(f"Could not resolve user from bearer token: {e.message}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication service is unavailable."
        ) from e


async def get_current_user(
    user: Annotated[Optional[AuthUser], Depends(get_current_user_optional)],
) -> AuthUser:
    if user is None:
        raise AuthenticationRequired()
    return user
