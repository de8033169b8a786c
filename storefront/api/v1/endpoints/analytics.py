# storefront/api/v1/endpoints/analytics.py
from typing import Any, Dict

from fastapi import APIRouter

from storefront.core.config import settings

router = APIRouter()

# Pixel name -> key its ID is published under
PIXEL_ID_KEYS = {
    "googleAnalytics": "measurementId",
    "googleTagManager": "containerId",
    "facebookPixel": "pixelId",
    "tiktokPixel": "pixelId",
    "pinterestPixel": "tagId",
    "snapchatPixel": "pixelId",
    "microsoftAdvertising": "uetTagId",
    "twitterPixel": "pixelId",
}


@router.get("/config", summary="Marketing pixel configuration")
async def get_analytics_config() -> Dict[str, Any]:
    """
    Tells the storefront which marketing pixels to load. A pixel is enabled
    exactly when its ID is configured.
    """
    config: Dict[str, Any] = {}
    for name, pixel_id in settings.ANALYTICS_PIXELS.items():
        config[name] = {PIXEL_ID_KEYS[name]: pixel_id or "", "enabled": bool(pixel_id)}
    config["experienceTracking"] = {"enabled": settings.EXPERIENCE_TRACKING_ENABLED}
    return config
