# storefront/services/anonymous_cart.py
import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from storefront.core.config import settings
from storefront.models.cart import (
    AnonymousCart, AnonymousCartItem, CartAnalytics, CartContext, CartProduct, CartStatus, CartSummary,
    CartVariant, AnonymousCartItemOut,
)

logger = logging.getLogger(__name__)


class AnonymousCartError(Exception):
    """Base error of the guest cart store."""
    def __init__(self, message="Cart operation failed", details=None):
        self.message = message
        self.details = details
        super().__init__(self.message)


class AnonymousCartService:
    """
    Guest carts keyed by browser session id.

    Every mutation is followed by a full re-read of the cart; callers never get a
    locally patched copy.
    """
    def __init__(self, db: AsyncSession, ttl_days: Optional[int] = None):
        self.db = db
        self.ttl_days = ttl_days if ttl_days is not None else settings.ANONYMOUS_CART_TTL_DAYS

    async def _commit(self, action: str):
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Anonymous cart error while trying to {action}: {e}")
            raise AnonymousCartError(f"Failed to {action}", details=str(e)) from e

    async def _find(self, session_id: str) -> Optional[AnonymousCart]:
        result = await self.db.execute(
            select(AnonymousCart)
            .options(selectinload(AnonymousCart.items))
            .where(AnonymousCart.session_id == session_id)
            .order_by(AnonymousCart.id.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_or_create(self, session_id: str, context: Optional[CartContext] = None) -> AnonymousCart:
        """Returns the session's cart with its items, creating an active one if there is none."""
        cart = await self._find(session_id)
        if cart:
            return cart

        now = datetime.now(timezone.utc)
        context = context or CartContext()
        cart = AnonymousCart(
            session_id=session_id,
            expires_at=now + timedelta(days=self.ttl_days),
            cart_data={},
            total_value=0.0,
            item_count=0,
            status=CartStatus.ACTIVE.value,
            **context.model_dump(),
        )
        self.db.add(cart)
        await self._commit("create cart")
        logger.info(f"Created anonymous cart {cart.id} for session {session_id}")
        return await self._find(session_id)

    async def _recalculate(self, cart_id: int):
        totals = await self.db.execute(
            select(
                func.coalesce(func.sum(AnonymousCartItem.price * AnonymousCartItem.quantity), 0.0),
                func.coalesce(func.sum(AnonymousCartItem.quantity), 0),
            ).where(AnonymousCartItem.cart_id == cart_id)
        )
        total_value, item_count = totals.one()
        await self.db.execute(
            update(AnonymousCart)
            .where(AnonymousCart.id == cart_id)
            .values(total_value=round(float(total_value), 2), item_count=int(item_count),
                    updated_at=datetime.now(timezone.utc))
        )

    async def add_item(
        self,
        session_id: str,
        product: CartProduct,
        variant: Optional[CartVariant] = None,
        quantity: int = 1,
    ) -> AnonymousCart:
        cart = await self.get_or_create(session_id)
        variant_id = variant.id if variant else None

        existing = next(
            (item for item in cart.items if item.product_id == product.id and item.variant_id == variant_id),
            None,
        )
        if existing:
            existing.quantity = existing.quantity + quantity
        else:
            price = variant.price if variant and variant.price is not None else product.price
            self.db.add(AnonymousCartItem(
                cart_id=cart.id,
                product_id=product.id,
                variant_id=variant_id,
                product_title=product.title,
                product_image=product.images[0].src if product.images else None,
                price=price,
                quantity=quantity,
            ))
        await self.db.flush()
        await self._recalculate(cart.id)
        await self._commit("add item to cart")
        return await self.get_or_create(session_id)

    async def update_item(self, session_id: str, item_id: int, quantity: int) -> AnonymousCart:
        """Sets an item's quantity; zero or less removes the item."""
        cart = await self.get_or_create(session_id)
        if quantity <= 0:
            await self.db.execute(
                delete(AnonymousCartItem)
                .where(AnonymousCartItem.id == item_id, AnonymousCartItem.cart_id == cart.id)
            )
        else:
            await self.db.execute(
                update(AnonymousCartItem)
                .where(AnonymousCartItem.id == item_id, AnonymousCartItem.cart_id == cart.id)
                .values(quantity=quantity, updated_at=datetime.now(timezone.utc))
            )
        await self._recalculate(cart.id)
        await self._commit("update cart item")
        return await self.get_or_create(session_id)

    async def remove_item(self, session_id: str, item_id: int) -> AnonymousCart:
        return await self.update_item(session_id, item_id, 0)

    async def clear(self, session_id: str) -> None:
        result = await self.db.execute(select(AnonymousCart.id).where(AnonymousCart.session_id == session_id))
        cart_ids = list(result.scalars().all())
        if not cart_ids:
            return
        await self.db.execute(delete(AnonymousCartItem).where(AnonymousCartItem.cart_id.in_(cart_ids)))
        for cart_id in cart_ids:
            await self._recalculate(cart_id)
        await self._commit("clear cart")
        logger.info(f"Cleared anonymous cart(s) {cart_ids} for session {session_id}")

    async def update_customer(self, session_id: str, email: Optional[str] = None, phone: Optional[str] = None) -> AnonymousCart:
        """Stores contact details on the active cart for remarketing."""
        await self.db.execute(
            update(AnonymousCart)
            .where(AnonymousCart.session_id == session_id, AnonymousCart.status == CartStatus.ACTIVE.value)
            .values(email=email, phone=phone)
        )
        await self._commit("update cart customer info")
        return await self.get_or_create(session_id)

    async def mark_abandoned(self, session_id: str) -> None:
        await self.db.execute(
            update(AnonymousCart)
            .where(AnonymousCart.session_id == session_id, AnonymousCart.status == CartStatus.ACTIVE.value)
            .values(status=CartStatus.ABANDONED.value)
        )
        await self._commit("mark cart as abandoned")

    async def mark_converted(self, session_id: str) -> None:
        await self.db.execute(
            update(AnonymousCart)
            .where(AnonymousCart.session_id == session_id)
            .values(status=CartStatus.CONVERTED.value)
        )
        await self._commit("mark cart as converted")

    async def summary(self, session_id: str) -> CartSummary:
        cart = await self.get_or_create(session_id)
        return CartSummary(
            total_value=cart.total_value,
            item_count=cart.item_count,
            items=[AnonymousCartItemOut.model_validate(item) for item in cart.items],
        )

    async def migrate_to_user(self, user_id: str, session_id: str) -> None:
        """Hands the guest cart over to a signed-in user by retiring it."""
        await self.mark_converted(session_id)
        logger.info(f"Anonymous cart of session {session_id} migrated to user {user_id}")

    # --- Maintenance ---

    async def cleanup_expired(self, now: Optional[datetime] = None) -> int:
        """Deletes carts past their expiry that never converted. Returns the number deleted."""
        now = now or datetime.now(timezone.utc)
        result = await self.db.execute(
            select(AnonymousCart.id).where(
                AnonymousCart.expires_at < now,
                AnonymousCart.status != CartStatus.CONVERTED.value,
            )
        )
        cart_ids: List[int] = list(result.scalars().all())
        if cart_ids:
            await self.db.execute(delete(AnonymousCartItem).where(AnonymousCartItem.cart_id.in_(cart_ids)))
            await self.db.execute(delete(AnonymousCart).where(AnonymousCart.id.in_(cart_ids)))
            await self._commit("clean up expired carts")
        logger.info(f"Deleted {len(cart_ids)} expired anonymous carts")
        return len(cart_ids)

    async def mark_stale_abandoned(self, idle_hours: Optional[int] = None, now: Optional[datetime] = None) -> int:
        """Marks active carts with items that have been idle too long as abandoned."""
        now = now or datetime.now(timezone.utc)
        idle_hours = idle_hours if idle_hours is not None else settings.CART_ABANDON_AFTER_HOURS
        result = await self.db.execute(
            update(AnonymousCart)
            .where(
                AnonymousCart.status == CartStatus.ACTIVE.value,
                AnonymousCart.item_count > 0,
                AnonymousCart.updated_at < now - timedelta(hours=idle_hours),
            )
            .values(status=CartStatus.ABANDONED.value)
        )
        await self._commit("mark stale carts as abandoned")
        logger.info(f"Marked {result.rowcount} anonymous carts as abandoned")
        return result.rowcount

    async def analytics(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> CartAnalytics:
        """Cart performance for carts created in [start, end). Defaults to the last 30 days."""
        end = end or datetime.now(timezone.utc)
        start = start or end - timedelta(days=30)

        result = await self.db.execute(
            select(AnonymousCart.status, AnonymousCart.total_value, AnonymousCart.item_count)
            .where(AnonymousCart.created_at >= start, AnonymousCart.created_at < end)
        )
        rows = result.all()
        total = len(rows)
        if not total:
            return CartAnalytics()

        by_status = {status.value: 0 for status in CartStatus}
        for row in rows:
            by_status[row.status] = by_status.get(row.status, 0) + 1

        return CartAnalytics(
            total_carts=total,
            active_carts=by_status[CartStatus.ACTIVE.value],
            abandoned_carts=by_status[CartStatus.ABANDONED.value],
            converted_carts=by_status[CartStatus.CONVERTED.value],
            avg_cart_value=round(sum(row.total_value for row in rows) / total, 2),
            avg_items_per_cart=round(sum(row.item_count for row in rows) / total, 2),
            conversion_rate=round(by_status[CartStatus.CONVERTED.value] / total * 100, 2),
            abandonment_rate=round(by_status[CartStatus.ABANDONED.value] / total * 100, 2),
        )
