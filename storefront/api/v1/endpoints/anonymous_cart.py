# storefront/api/v1/endpoints/anonymous_cart.py
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.db import get_db
from storefront.models.cart import AnonymousCart, AnonymousCartOut, CartContext, CartProduct, CartVariant
from storefront.services.anonymous_cart import AnonymousCartService

logger = logging.getLogger(__name__)

router = APIRouter()


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _cart_response(cart: AnonymousCart) -> Dict[str, Any]:
    return {"cart": AnonymousCartOut.model_validate(cart).model_dump(mode="json")}


def get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.headers.get("cf-connecting-ip") or request.headers.get("x-real-ip") or "unknown"


def get_cart_context(request: Request) -> CartContext:
    """Attribution of a cart, taken from the request that creates it."""
    params = request.query_params
    return CartContext(
        utm_source=params.get("utm_source"),
        utm_medium=params.get("utm_medium"),
        utm_campaign=params.get("utm_campaign"),
        referrer=request.headers.get("referer"),
        user_agent=request.headers.get("user-agent"),
        ip_address=get_client_ip(request),
    )


@router.get("", summary="Get or create the guest cart of a session")
async def get_anonymous_cart(request: Request, session_id: Optional[str] = None, db: AsyncSession = Depends(get_db)):
    if not session_id:
        return _error(status.HTTP_400_BAD_REQUEST, "session_id is required")
    try:
        cart = await AnonymousCartService(db).get_or_create(session_id, get_cart_context(request))
        return _cart_response(cart)
    except Exception as e:
        logger.exception(f"Error fetching anonymous cart for session {session_id}: {e}")
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to fetch cart")


@router.post("", summary="Create or update the guest cart", description="`action` selects the change: add_item, update_item, update_customer or mark_abandoned. Without an action the cart is just returned.")
async def update_anonymous_cart(request: Request, db: AsyncSession = Depends(get_db)):
    try:
        body = await request.json()
        if not isinstance(body, dict):
            body = {}
        action = body.get("action")
        session_id = body.get("session_id")

        if not session_id:
            return _error(status.HTTP_400_BAD_REQUEST, "session_id is required")

        service = AnonymousCartService(db)

        if action == "add_item":
            if not body.get("product"):
                return _error(status.HTTP_400_BAD_REQUEST, "product is required")
            try:
                product = CartProduct.model_validate(body["product"])
                variant = CartVariant.model_validate(body["variant"]) if body.get("variant") else None
            except ValidationError as e:
                logger.warning(f"Invalid product for anonymous cart {session_id}: {e.errors()}")
                return _error(status.HTTP_400_BAD_REQUEST, "product is required")
            quantity = body.get("quantity", 1)
            if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
                return _error(status.HTTP_400_BAD_REQUEST, "quantity must be a positive integer")
            cart = await service.add_item(session_id, product, variant, quantity)

        elif action == "update_item":
            item_id = body.get("item_id")
            quantity = body.get("quantity")
            if not item_id or not isinstance(quantity, (int, float)) or isinstance(quantity, bool):
                return _error(status.HTTP_400_BAD_REQUEST, "item_id and quantity are required")
            cart = await service.update_item(session_id, int(item_id), int(quantity))

        elif action == "update_customer":
            cart = await service.update_customer(session_id, body.get("email"), body.get("phone"))

        elif action == "mark_abandoned":
            await service.mark_abandoned(session_id)
            cart = await service.get_or_create(session_id, get_cart_context(request))

        else:
            cart = await service.get_or_create(session_id, get_cart_context(request))

        return _cart_response(cart)

    except Exception as e:
        logger.exception(f"Error updating anonymous cart: {e}")
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to update cart")


@router.put("", summary="Batch update guest cart item quantities")
async def batch_update_anonymous_cart(request: Request, db: AsyncSession = Depends(get_db)):
    try:
        body = await request.json()
        session_id = body.get("session_id") if isinstance(body, dict) else None
        items = body.get("items") if isinstance(body, dict) else None

        if not session_id or not isinstance(items, list):
            return _error(status.HTTP_400_BAD_REQUEST, "session_id and items array are required")

        service = AnonymousCartService(db)
        for item in items:
            item_id = item.get("id") if isinstance(item, dict) else None
            quantity = item.get("quantity") if isinstance(item, dict) else None
            # Malformed entries are skipped
            if item_id and isinstance(quantity, int) and not isinstance(quantity, bool):
                await service.update_item(session_id, int(item_id), quantity)

        cart = await service.get_or_create(session_id, get_cart_context(request))
        return _cart_response(cart)

    except Exception as e:
        logger.exception(f"Error batch updating cart items: {e}")
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to update cart items")


@router.delete("", summary="Clear the guest cart of a session")
async def clear_anonymous_cart(session_id: Optional[str] = None, db: AsyncSession = Depends(get_db)):
    if not session_id:
        return _error(status.HTTP_400_BAD_REQUEST, "session_id is required")
    try:
        await AnonymousCartService(db).clear(session_id)
        return {"success": True}
    except Exception as e:
        logger.exception(f"Error clearing anonymous cart for session {session_id}: {e}")
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to clear cart")
