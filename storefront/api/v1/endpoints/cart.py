# storefront/api/v1/endpoints/cart.py
import logging
from datetime import datetime, timezone
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.db import get_db
from storefront.dependencies import get_current_user
from storefront.models.cart import Cart, CartItem, CartItemCreate, CartItemOut, CartItemUpdate, CartOut
from storefront.services.auth import AuthUser

logger = logging.getLogger(__name__)
router = APIRouter()


def _error(e: Exception) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"message": str(e)})


async def _get_cart(db: AsyncSession, user_id: str) -> Optional[Cart]:
    result = await db.execute(
        select(Cart).where(Cart.user_id == user_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


@router.get(
    "",
    response_model=Optional[CartOut],
    summary="Get the signed-in user's cart",
    description="Returns the cart with its items, or null when the user has no cart yet.",
)
async def get_user_cart(
    user: Annotated[AuthUser, Depends(get_current_user)],
    db: AsyncSession = Depends(get_db),
):
    try:
        cart = await _get_cart(db, user.id)
    except SQLAlchemyError as e:
        logger.error(f"Failed to fetch cart for user {user.id}: {e}")
        return _error(e)
    return CartOut.model_validate(cart) if cart else None


@router.post("", response_model=CartOut, status_code=status.HTTP_201_CREATED, summary="Create a cart for the signed-in user")
async def create_user_cart(
    user: Annotated[AuthUser, Depends(get_current_user)],
    db: AsyncSession = Depends(get_db),
):
    try:
        existing = await _get_cart(db, user.id)
        if existing:
            return CartOut.model_validate(existing)
        db.add(Cart(user_id=user.id))
        await db.commit()
        logger.info(f"Created cart for user {user.id}")
        return CartOut.model_validate(await _get_cart(db, user.id))
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(f"Failed to create cart for user {user.id}: {e}")
        return _error(e)


@router.post("/items", response_model=CartItemOut, status_code=status.HTTP_201_CREATED, summary="Add an item to the cart")
async def add_cart_item(
    item: CartItemCreate,
    user: Annotated[AuthUser, Depends(get_current_user)],
    db: AsyncSession = Depends(get_db),
):
    try:
        cart = await _get_cart(db, user.id)
        if not cart:
            cart = Cart(user_id=user.id)
            db.add(cart)
            await db.flush()

        cart_item = CartItem(cart_id=cart.id, **item.model_dump())
        db.add(cart_item)
        await db.commit()
        return CartItemOut.model_validate(cart_item)
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(f"Failed to add item to cart of user {user.id}: {e}")
        return _error(e)


@router.put("/items", response_model=CartItemOut, summary="Change the quantity of a cart item")
async def update_cart_item(
    item: CartItemUpdate,
    user: Annotated[AuthUser, Depends(get_current_user)],
    db: AsyncSession = Depends(get_db),
):
    try:
        cart = await _get_cart(db, user.id)
        if not cart:
            return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"message": "Cart not found"})

        result = await db.execute(
            update(CartItem)
            .where(CartItem.id == item.id, CartItem.cart_id == cart.id)
            .values(quantity=item.quantity, updated_at=datetime.now(timezone.utc))
        )
        if not result.rowcount:
            await db.rollback()
            return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"message": "Cart item not found"})
        await db.commit()

        updated = await db.execute(
            select(CartItem).where(CartItem.id == item.id).execution_options(populate_existing=True)
        )
        return CartItemOut.model_validate(updated.scalar_one())
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(f"Failed to update cart item {item.id} of user {user.id}: {e}")
        return _error(e)


@router.delete("/items/{item_id}", summary="Remove an item from the cart")
async def remove_cart_item(
    item_id: int,
    user: Annotated[AuthUser, Depends(get_current_user)],
    db: AsyncSession = Depends(get_db),
):
    try:
        cart = await _get_cart(db, user.id)
        if cart:
            await db.execute(delete(CartItem).where(CartItem.id == item_id, CartItem.cart_id == cart.id))
            await db.commit()
        return {"message": "Item removed"}
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(f"Failed to remove cart item {item_id} of user {user.id}: {e}")
        return _error(e)
