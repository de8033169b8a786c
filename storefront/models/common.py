# storefront/models/common.py
from typing import Optional

from pydantic import BaseModel

from storefront.models.tracking import CamelModel


class OrderAddress(BaseModel):
    """Address as stored on a local order (shipping and billing share it)."""
    name: str
    address: str
    city: str
    state: str = ""
    postal_code: str = ""
    country: str
    phone: str = ""


class MailingAddress(CamelModel):
    """Shopify MailingAddressInput."""
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    company: Optional[str] = None
    address1: Optional[str] = None
    address2: Optional[str] = None
    city: Optional[str] = None
    province: Optional[str] = None
    country: Optional[str] = None
    zip: Optional[str] = None
    phone: Optional[str] = None
