# storefront/api/v1/endpoints/checkout.py
import logging
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.db import get_db
from storefront.dependencies import get_current_user_optional
from storefront.models.order import CheckoutRequest, CheckoutResult
from storefront.services.auth import AuthUser
from storefront.services.checkout import CheckoutError, CheckoutService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "",
    response_model=CheckoutResult,
    response_model_exclude_none=True,
    summary="Place an order",
    description="Creates a pending order from the posted cart. When a Shopify invoice is available the response redirects to it.",
)
async def checkout(
    payload: CheckoutRequest,
    request: Request,
    user: Annotated[Optional[AuthUser], Depends(get_current_user_optional)],
    db: AsyncSession = Depends(get_db),
):
    shopify_service = getattr(request.app.state, 'shopify_service', None)
    try:
        result = await CheckoutService(db, shopify_service).checkout(payload, user)
    except CheckoutError as e:
        return JSONResponse(status_code=e.status_code, content={"success": False, "error": e.message})
    except Exception as e:
        logger.exception(f"Checkout error: {e}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "error": "An unexpected error occurred during checkout"},
        )

    if result.invoice_url:
        logger.info(f"Redirecting order {result.order_id} to Shopify invoice")
        return RedirectResponse(result.invoice_url, status_code=status.HTTP_303_SEE_OTHER)

    return JSONResponse(content=result.model_dump(by_alias=True, exclude_none=True))
