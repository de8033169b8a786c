# storefront/core/config.py
import os
import logging
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Dict, List, Optional
from dotenv import load_dotenv
from pydantic import computed_field

load_dotenv()

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    PROJECT_NAME: str = "Storefront Backend"
    API_PREFIX: str = "/api"
    LOGGING_LEVEL: str = os.getenv("LOGGING_LEVEL", "INFO")

    # --- Hosted database ---
    DATABASE_URL: str = "sqlite+aiosqlite:///./storefront.db"
    DATABASE_ECHO: bool = False

    # --- Hosted auth ---
    SUPABASE_URL: Optional[str] = None
    SUPABASE_ANON_KEY: Optional[str] = None
    SUPABASE_SERVICE_ROLE_KEY: Optional[str] = None

    # --- Shopify ---
    SHOPIFY_SHOP: Optional[str] = None
    SHOPIFY_ACCESS_TOKEN: Optional[str] = None
    SHOPIFY_TOKEN: Optional[str] = None  # legacy name for the access token
    SHOPIFY_SHOP_NAME: Optional[str] = None
    SHOPIFY_API_VERSION: str = "2024-10"

    # --- Site ---
    SITE_URL: str = "http://localhost:3000"
    STORE_NAME: str = "Storefront"
    ADMIN_API_KEY: Optional[str] = None
    CORS_ORIGINS: str = "http://localhost:3000"

    # --- Experience tracking ---
    EXPERIENCE_TRACKING_ENABLED: bool = True

    # --- Analytics pixels (each one is enabled only when its ID is set) ---
    GA_MEASUREMENT_ID: Optional[str] = None
    GTM_CONTAINER_ID: Optional[str] = None
    FACEBOOK_PIXEL_ID: Optional[str] = None
    TIKTOK_PIXEL_ID: Optional[str] = None
    PINTEREST_TAG_ID: Optional[str] = None
    SNAPCHAT_PIXEL_ID: Optional[str] = None
    MICROSOFT_UET_TAG_ID: Optional[str] = None
    TWITTER_PIXEL_ID: Optional[str] = None

    # --- Anonymous carts ---
    ANONYMOUS_CART_TTL_DAYS: int = 7
    CART_ABANDON_AFTER_HOURS: int = 24

    # --- Derived/Helper Settings ---
    @property
    def SHOPIFY_ACCESS_TOKEN_RESOLVED(self) -> Optional[str]:
        return self.SHOPIFY_ACCESS_TOKEN or self.SHOPIFY_TOKEN

    @computed_field(return_type=bool)
    @property
    def SHOPIFY_ENABLED(self) -> bool:
        return bool(self.SHOPIFY_SHOP and self.SHOPIFY_ACCESS_TOKEN_RESOLVED)

    @property
    def CORS_ORIGINS_LIST(self) -> List[str]:
        return [origin.strip().rstrip("/") for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    @property
    def ANALYTICS_PIXELS(self) -> Dict[str, Optional[str]]:
        """Pixel name -> configured ID (None when the pixel is not configured)."""
        return {
            "googleAnalytics": self.GA_MEASUREMENT_ID,
            "googleTagManager": self.GTM_CONTAINER_ID,
            "facebookPixel": self.FACEBOOK_PIXEL_ID,
            "tiktokPixel": self.TIKTOK_PIXEL_ID,
            "pinterestPixel": self.PINTEREST_TAG_ID,
            "snapchatPixel": self.SNAPCHAT_PIXEL_ID,
            "microsoftAdvertising": self.MICROSOFT_UET_TAG_ID,
            "twitterPixel": self.TWITTER_PIXEL_ID,
        }

    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        case_sensitive=False,
        extra='ignore'
    )


settings = Settings()

if not settings.SHOPIFY_ENABLED:
    logger.warning("SHOPIFY_SHOP / SHOPIFY_ACCESS_TOKEN are not set. Draft orders are disabled.")
if not settings.SUPABASE_URL:
    logger.warning("SUPABASE_URL is not set. Signed-in users cannot be resolved.")
if not settings.ADMIN_API_KEY:
    logger.warning("ADMIN_API_KEY is not set. Admin analytics endpoints are locked.")
