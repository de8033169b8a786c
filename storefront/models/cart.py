# storefront/models/cart.py
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import Column, Integer, String, Text, Float, DateTime, ForeignKey, JSON
from sqlalchemy.orm import relationship

from storefront.core.db import Base
from storefront.models.analytics import utcnow
from storefront.models.tracking import CamelModel


class CartStatus(str, Enum):
    ACTIVE = "active"
    ABANDONED = "abandoned"
    CONVERTED = "converted"
    EXPIRED = "expired"


# --- Tables ---

class AnonymousCart(Base):
    """Guest cart keyed by the browser's session id, kept for remarketing."""
    __tablename__ = "anonymous_carts"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(String(64), nullable=False, index=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    email = Column(String(255), nullable=True)
    phone = Column(String(64), nullable=True)
    cart_data = Column(JSON, nullable=False, default=dict)
    # Denormalized from the items, recomputed after every item change
    total_value = Column(Float, nullable=False, default=0.0)
    item_count = Column(Integer, nullable=False, default=0)
    utm_source = Column(String(255), nullable=True)
    utm_medium = Column(String(255), nullable=True)
    utm_campaign = Column(String(255), nullable=True)
    referrer = Column(Text, nullable=True)
    user_agent = Column(Text, nullable=True)
    ip_address = Column(String(64), nullable=True)
    status = Column(String(16), nullable=False, default=CartStatus.ACTIVE.value, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    items = relationship(
        "AnonymousCartItem", back_populates="cart", cascade="all, delete-orphan",
        lazy="selectin", order_by="AnonymousCartItem.id",
    )


class AnonymousCartItem(Base):
    __tablename__ = "anonymous_cart_items"

    id = Column(Integer, primary_key=True, index=True)
    cart_id = Column(Integer, ForeignKey("anonymous_carts.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(String(128), nullable=False)
    variant_id = Column(String(128), nullable=True)
    product_title = Column(Text, nullable=False)
    product_image = Column(Text, nullable=True)
    price = Column(Float, nullable=False, default=0.0)
    quantity = Column(Integer, nullable=False, default=1)
    added_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    cart = relationship("AnonymousCart", back_populates="items")


class Cart(Base):
    """Cart of a signed-in user."""
    __tablename__ = "carts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False, unique=True, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    items = relationship(
        "CartItem", back_populates="cart", cascade="all, delete-orphan",
        lazy="selectin", order_by="CartItem.id",
    )


class CartItem(Base):
    __tablename__ = "cart_items"

    id = Column(Integer, primary_key=True, index=True)
    cart_id = Column(Integer, ForeignKey("carts.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(String(128), nullable=False)
    variant_id = Column(String(128), nullable=True)
    quantity = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    cart = relationship("Cart", back_populates="items")


# --- API models ---

class CartContext(BaseModel):
    """Where a guest cart came from; captured once, when the cart is created."""
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    referrer: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None


class ProductImage(BaseModel):
    src: str
    alt: Optional[str] = None


class CartProduct(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    id: str
    title: str
    price: float = 0.0
    images: List[ProductImage] = []


class CartVariant(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    id: str
    price: Optional[float] = None


class AnonymousCartItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    product_id: str
    variant_id: Optional[str] = None
    product_title: str
    product_image: Optional[str] = None
    price: float
    quantity: int
    added_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class AnonymousCartOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    session_id: str
    expires_at: datetime
    email: Optional[str] = None
    phone: Optional[str] = None
    cart_data: Dict[str, Any] = {}
    total_value: float
    item_count: int
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    referrer: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    status: CartStatus
    items: List[AnonymousCartItemOut] = []


class CartSummary(BaseModel):
    total_value: float
    item_count: int
    items: List[AnonymousCartItemOut] = []


class CartAnalytics(CamelModel):
    total_carts: int = 0
    active_carts: int = 0
    abandoned_carts: int = 0
    converted_carts: int = 0
    avg_cart_value: float = 0.0
    avg_items_per_cart: float = 0.0
    conversion_rate: float = 0.0
    abandonment_rate: float = 0.0


class CartItemCreate(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    product_id: str
    variant_id: Optional[str] = None
    quantity: int = Field(1, gt=0)


class CartItemUpdate(BaseModel):
    id: int
    quantity: int


class CartItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    product_id: str
    variant_id: Optional[str] = None
    quantity: int


class CartOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: str
    items: List[CartItemOut] = []
