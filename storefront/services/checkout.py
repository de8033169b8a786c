# storefront/services/checkout.py
import logging
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.models.cart import Cart, CartItem
from storefront.models.order import (
    CheckoutRequest, CheckoutResult, DraftOrderInput, DraftOrderLineItem, Order, OrderItem,
)
from storefront.services.anonymous_cart import AnonymousCartError, AnonymousCartService
from storefront.services.auth import AuthUser
from storefront.services.shopify import ShopifyService, ShopifyServiceError

logger = logging.getLogger(__name__)


class CheckoutError(Exception):
    def __init__(self, message="An unexpected error occurred during checkout", status_code=500, details=None):
        self.message = message
        self.status_code = status_code
        self.details = details
        super().__init__(self.message)


class CheckoutService:
    """
    Turns a cart into a pending order, clears the cart and, when Shopify is
    configured, opens a draft order whose invoice page takes the payment.
    """
    def __init__(self, db: AsyncSession, shopify_service: Optional[ShopifyService] = None):
        self.db = db
        self.shopify_service = shopify_service

    async def checkout(self, data: CheckoutRequest, user: Optional[AuthUser] = None) -> CheckoutResult:
        if user is None and not data.session_id:
            raise CheckoutError("Authentication required", status_code=401)

        order = await self._create_order(data, user)
        await self._create_order_items(order, data)
        await self._clear_cart(data, user)

        invoice_url = await self._create_draft_order(order, data)

        return CheckoutResult(
            success=True,
            order_id=order.id,
            message="Order created successfully",
            invoice_url=invoice_url,
        )

    async def _create_order(self, data: CheckoutRequest, user: Optional[AuthUser]) -> Order:
        address = data.customer.to_order_address().model_dump()
        order = Order(
            user_id=user.id if user else None,
            session_id=None if user else data.session_id,
            status="Pending",
            total=data.totals.total,
            shipping_address=address,
            billing_address=dict(address),
        )
        try:
            self.db.add(order)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Order creation error: {e}")
            raise CheckoutError("Failed to create order", details=str(e)) from e
        logger.info(f"Created order {order.id} for {'user ' + user.id if user else 'session ' + data.session_id}")
        return order

    async def _create_order_items(self, order: Order, data: CheckoutRequest):
        try:
            self.db.add_all([
                OrderItem(
                    order_id=order.id,
                    product_id=item.product_id,
                    variant_id=item.variant_id,
                    quantity=item.quantity,
                    price=item.price,
                )
                for item in data.items
            ])
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Order items creation error for order {order.id}: {e}")
            raise CheckoutError("Failed to create order items", details=str(e)) from e

    async def _clear_cart(self, data: CheckoutRequest, user: Optional[AuthUser]):
        """Empties the cart the order came from. Failures are logged only."""
        try:
            if user is not None:
                result = await self.db.execute(select(Cart.id).where(Cart.user_id == user.id))
                cart_id = result.scalar_one_or_none()
                if cart_id is not None:
                    await self.db.execute(delete(CartItem).where(CartItem.cart_id == cart_id))
                    await self.db.commit()
            else:
                cart_service = AnonymousCartService(self.db)
                await cart_service.clear(data.session_id)
                await cart_service.mark_converted(data.session_id)
        except (SQLAlchemyError, AnonymousCartError) as e:
            await self.db.rollback()
            logger.error(f"Cart clearing error: {e}")

    async def _create_draft_order(self, order: Order, data: CheckoutRequest) -> Optional[str]:
        """Returns the draft order's invoice URL, or None when there is none."""
        if not self.shopify_service or not self.shopify_service.is_configured:
            return None

        customer = data.customer
        address = customer.to_mailing_address()
        draft_input = DraftOrderInput(
            line_items=[
                DraftOrderLineItem(
                    title=f"Product {item.product_id}",
                    product_id=item.product_id,
                    variant_id=item.variant_id,
                    quantity=item.quantity,
                    price=item.price,
                )
                for item in data.items
            ],
            email=customer.email,
            shipping_address=address,
            billing_address=address,
            use_customer_default_address=False,
            note=f"Order #{order.id}",
        )
        try:
            draft_order = await self.shopify_service.create_draft_order(draft_input)
            if not draft_order.invoice_url:
                return None
            order.draft_order_id = draft_order.id
            order.invoice_url = draft_order.invoice_url
            await self.db.commit()
            return draft_order.invoice_url
        except (ShopifyServiceError, SQLAlchemyError) as e:
            await self.db.rollback()
            logger.error(f"Shopify integration error for order {order.id}: {e}")
            return None
