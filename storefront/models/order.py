# storefront/models/order.py
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import Field
from sqlalchemy import Column, Integer, String, Text, Float, DateTime, ForeignKey, JSON
from sqlalchemy.orm import relationship

from storefront.core.db import Base
from storefront.models.analytics import utcnow
from storefront.models.common import MailingAddress, OrderAddress
from storefront.models.tracking import CamelModel

VARIANT_GID_PREFIX = "gid://shopify/ProductVariant/"


# --- Tables ---

class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    # Exactly one of user_id / session_id identifies the buyer
    user_id = Column(String(64), nullable=True, index=True)
    session_id = Column(String(64), nullable=True, index=True)
    status = Column(String(32), nullable=False, default="Pending")
    total = Column(Float, nullable=False, default=0.0)
    shipping_address = Column(JSON, nullable=True)
    billing_address = Column(JSON, nullable=True)
    draft_order_id = Column(String(128), nullable=True)
    invoice_url = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan", lazy="selectin")


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(String(128), nullable=False)
    variant_id = Column(String(128), nullable=True)
    quantity = Column(Integer, nullable=False)
    price = Column(Float, nullable=False)

    order = relationship("Order", back_populates="items")


# --- Checkout ---

class CheckoutItem(CamelModel):
    product_id: str
    variant_id: Optional[str] = None
    quantity: int = Field(..., gt=0)
    price: float


class CustomerAddress(CamelModel):
    street: str
    city: str
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: str


class CheckoutCustomer(CamelModel):
    email: str
    first_name: str
    last_name: str
    address: CustomerAddress
    phone: Optional[str] = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def to_order_address(self) -> OrderAddress:
        return OrderAddress(
            name=self.full_name,
            address=self.address.street,
            city=self.address.city,
            state=self.address.state or "",
            postal_code=self.address.postal_code or "",
            country=self.address.country,
            phone=self.phone or "",
        )

    def to_mailing_address(self) -> MailingAddress:
        return MailingAddress(
            first_name=self.first_name,
            last_name=self.last_name,
            address1=self.address.street,
            city=self.address.city,
            province=self.address.state or None,
            zip=self.address.postal_code or "",
            country=self.address.country,
            phone=self.phone or "",
        )


class CheckoutTotals(CamelModel):
    subtotal: float = 0.0
    shipping: float = 0.0
    tax: float = 0.0
    total: float


class CheckoutRequest(CamelModel):
    items: List[CheckoutItem] = Field(..., min_length=1)
    customer: CheckoutCustomer
    totals: CheckoutTotals
    # Guests identify themselves by their anonymous cart session
    session_id: Optional[str] = None


class CheckoutResult(CamelModel):
    success: bool
    order_id: Optional[int] = None
    message: Optional[str] = None
    error: Optional[str] = None
    invoice_url: Optional[str] = None


# --- Shopify draft orders ---

def to_variant_gid(variant_id: Union[str, int, None]) -> Optional[str]:
    """Numeric variant ids become Admin API global ids; gids pass through."""
    if variant_id is None or variant_id == "":
        return None
    variant_id = str(variant_id)
    if variant_id.startswith("gid://"):
        return variant_id
    return f"{VARIANT_GID_PREFIX}{variant_id}"


class DraftOrderLineItem(CamelModel):
    title: Optional[str] = None
    variant_id: Optional[str] = None
    product_id: Optional[str] = None
    quantity: int
    price: Optional[float] = None
    sku: Optional[str] = None
    grams: Optional[int] = None
    taxable: Optional[bool] = None
    requires_shipping: Optional[bool] = None

    def to_graphql(self) -> Dict[str, Any]:
        """Shopify DraftOrderLineItemInput. Items without a variant are sent as custom items."""
        data: Dict[str, Any] = {"quantity": self.quantity}
        variant_gid = to_variant_gid(self.variant_id)
        if variant_gid:
            data["variantId"] = variant_gid
        else:
            data["title"] = self.title or f"Product {self.product_id}"
            data["originalUnitPrice"] = f"{self.price or 0:.2f}"
        if self.sku:
            data["sku"] = self.sku
        if self.grams is not None:
            data["weight"] = {"value": float(self.grams), "unit": "GRAMS"}
        if self.taxable is not None:
            data["taxable"] = self.taxable
        if self.requires_shipping is not None:
            data["requiresShipping"] = self.requires_shipping
        return data


class DraftOrderInput(CamelModel):
    line_items: List[DraftOrderLineItem]
    email: Optional[str] = None
    phone: Optional[str] = None
    shipping_address: Optional[MailingAddress] = None
    billing_address: Optional[MailingAddress] = None
    note: Optional[str] = None
    tags: Optional[Union[str, List[str]]] = None
    use_customer_default_address: Optional[bool] = None

    def to_graphql(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"lineItems": [item.to_graphql() for item in self.line_items]}
        if self.email:
            data["email"] = self.email
        if self.phone:
            data["phone"] = self.phone
        if self.shipping_address:
            data["shippingAddress"] = self.shipping_address.to_wire()
        if self.billing_address:
            data["billingAddress"] = self.billing_address.to_wire()
        if self.note:
            data["note"] = self.note
        if self.tags:
            tags = self.tags.split(",") if isinstance(self.tags, str) else self.tags
            data["tags"] = [tag.strip() for tag in tags if tag.strip()]
        if self.use_customer_default_address is not None:
            data["useCustomerDefaultAddress"] = self.use_customer_default_address
        return data


class InvoiceEmail(CamelModel):
    """Shopify EmailInput."""
    to: Optional[str] = None
    from_: Optional[str] = Field(None, alias="from")
    subject: Optional[str] = None
    custom_message: Optional[str] = None


class DraftOrderCustomer(CamelModel):
    id: Optional[str] = None
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class DraftOrder(CamelModel):
    """Subset of the Shopify DraftOrder object returned by the mutations."""
    id: str
    name: Optional[str] = None
    invoice_url: Optional[str] = None
    total_price: Optional[str] = None
    subtotal_price: Optional[str] = None
    total_tax: Optional[str] = None
    currency_code: Optional[str] = None
    customer: Optional[DraftOrderCustomer] = None
    note: Optional[str] = None
    tags: List[str] = []
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class DraftOrderLineItemRequest(CamelModel):
    """Line item as posted by the storefront; quantity is validated by the route."""
    title: Optional[str] = None
    variant_id: Optional[str] = None
    product_id: Optional[str] = None
    quantity: Optional[int] = None
    price: Optional[Union[str, float]] = None
    sku: Optional[str] = None
    grams: Optional[int] = None
    taxable: Optional[bool] = None
    requires_shipping: Optional[bool] = None


class InvoiceData(CamelModel):
    subject: Optional[str] = None
    custom_message: Optional[str] = None
    from_: Optional[str] = Field(None, alias="from")


class DraftOrderRequest(CamelModel):
    line_items: Optional[List[DraftOrderLineItemRequest]] = None
    customer_email: Optional[str] = None
    customer_first_name: Optional[str] = None
    customer_last_name: Optional[str] = None
    customer_phone: Optional[str] = None
    shipping_address: Optional[MailingAddress] = None
    billing_address: Optional[MailingAddress] = None
    note: Optional[str] = None
    tags: Optional[Union[str, List[str]]] = None
    send_invoice: bool = False
    invoice_data: Optional[InvoiceData] = None
