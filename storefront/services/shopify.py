# storefront/services/shopify.py
import json
import logging
from typing import Any, Dict, List, Optional

import httpx

from storefront.core.config import settings
from storefront.models.order import DraftOrder, DraftOrderInput, DraftOrderLineItem, InvoiceEmail

logger = logging.getLogger(__name__)

DRAFT_ORDER_FIELDS = """
    id
    name
    invoiceUrl
    customer {
      id
      email
      firstName
      lastName
    }
    totalPrice
    subtotalPrice
    totalTax
    currencyCode
    note
    tags
    createdAt
    updatedAt
"""

DRAFT_ORDER_CREATE = f"""
mutation draftOrderCreate($input: DraftOrderInput!) {{
  draftOrderCreate(input: $input) {{
    draftOrder {{{DRAFT_ORDER_FIELDS}    }}
    userErrors {{
      field
      message
    }}
  }}
}}
"""

DRAFT_ORDER_INVOICE_SEND = """
mutation draftOrderInvoiceSend($id: ID!, $email: EmailInput) {
  draftOrderInvoiceSend(id: $id, email: $email) {
    draftOrder {
      id
      name
      invoiceUrl
    }
    userErrors {
      field
      message
    }
  }
}
"""


class ShopifyServiceError(Exception):
    """Base error of the Shopify Admin API client."""
    def __init__(self, message="Shopify Admin API request failed", status_code=None, details=None):
        self.message = message
        self.status_code = status_code
        self.details = details
        super().__init__(self.message)


class ShopifyService:
    """
    Async client of the Shopify Admin GraphQL API, used for draft orders.
    """
    def __init__(
        self,
        shop: Optional[str] = None,
        access_token: Optional[str] = None,
        api_version: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.shop = (shop if shop is not None else settings.SHOPIFY_SHOP) or ""
        self.access_token = access_token if access_token is not None else settings.SHOPIFY_ACCESS_TOKEN_RESOLVED
        self.api_version = api_version or settings.SHOPIFY_API_VERSION

        domain = self.shop.replace("https://", "").replace("http://", "").rstrip("/")
        self.graphql_url = f"https://{domain}/admin/api/{self.api_version}/graphql.json"

        timeouts = httpx.Timeout(10.0, read=20.0, write=10.0, connect=5.0)
        self._client = httpx.AsyncClient(
            headers={"X-Shopify-Access-Token": self.access_token or "", "Content-Type": "application/json"},
            timeout=timeouts,
            transport=transport,
        )
        if self.is_configured:
            logger.info(f"ShopifyService initialized for URL: {self.graphql_url}")
        else:
            logger.warning("ShopifyService initialized without shop or access token; draft orders are disabled.")

    @property
    def is_configured(self) -> bool:
        return bool(self.shop and self.access_token)

    async def close_client(self):
        if hasattr(self, '_client') and self._client:
            await self._client.aclose()
            logger.info("Shopify HTTP client closed.")

    async def _request(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Executes a GraphQL operation and returns its `data` object.
        Transport, HTTP and top-level GraphQL errors raise ShopifyServiceError.
        """
        if not self.is_configured:
            raise ShopifyServiceError("Shopify is not configured")

        logger.debug(f"Shopify GraphQL request | Variables: {variables!r}")
        try:
            response = await self._client.post(self.graphql_url, json={"query": query, "variables": variables or {}})
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            error_status_code = e.response.status_code
            logger.error(f"Shopify API HTTP error: {error_status_code} for {e.request.url}. Response text: {e.response.text[:500]}...")
            raise ShopifyServiceError(
                message=f"HTTP error {error_status_code} from Shopify API",
                status_code=error_status_code,
                details=e.response.text,
            ) from e
        except httpx.TimeoutException as e:
            logger.error(f"Request timeout: {e} for {e.request.url}")
            raise ShopifyServiceError("Shopify API request timed out") from e
        except httpx.RequestError as e:
            logger.error(f"Network error: {e} for {e.request.url}")
            raise ShopifyServiceError("Network error while connecting to Shopify API") from e
        except json.JSONDecodeError as e:
            logger.error(f"Failed to decode Shopify response: {e}. Response text: {response.text[:500]}...")
            raise ShopifyServiceError("Could not decode Shopify response", status_code=response.status_code,
                                      details=response.text) from e

        errors = payload.get("errors")
        if errors:
            messages = [error.get("message", str(error)) for error in errors] if isinstance(errors, list) else [str(errors)]
            logger.error(f"Shopify GraphQL errors: {messages}")
            raise ShopifyServiceError(f"Shopify API errors: {', '.join(messages)}", details=errors)

        return payload.get("data") or {}

    @staticmethod
    def _raise_for_user_errors(result: Dict[str, Any]):
        user_errors: List[Dict[str, Any]] = result.get("userErrors") or []
        if user_errors:
            messages = ", ".join(error.get("message", "") for error in user_errors)
            logger.error(f"Shopify user errors: {user_errors}")
            raise ShopifyServiceError(f"Shopify API errors: {messages}", details=user_errors)

    # --- Draft orders ---

    async def create_draft_order(self, order_data: DraftOrderInput) -> DraftOrder:
        data = await self._request(DRAFT_ORDER_CREATE, {"input": order_data.to_graphql()})
        result = data.get("draftOrderCreate") or {}
        self._raise_for_user_errors(result)

        draft_order = result.get("draftOrder")
        if not draft_order:
            raise ShopifyServiceError("Shopify returned no draft order", details=result)
        logger.info(f"Created Shopify draft order {draft_order.get('name')} ({draft_order.get('id')})")
        return DraftOrder.model_validate(draft_order)

    async def send_draft_order_invoice(self, draft_order_id: str, email: Optional[InvoiceEmail] = None) -> DraftOrder:
        variables = {"id": draft_order_id, "email": email.to_wire() if email else None}
        data = await self._request(DRAFT_ORDER_INVOICE_SEND, variables)
        result = data.get("draftOrderInvoiceSend") or {}
        self._raise_for_user_errors(result)

        logger.info(f"Sent invoice for Shopify draft order {draft_order_id}")
        return DraftOrder.model_validate(result.get("draftOrder") or {"id": draft_order_id})

    async def create_simple_draft_order(
        self,
        product_title: str,
        price: float,
        quantity: int,
        variant_id: Optional[str] = None,
        product_id: Optional[str] = None,
        customer_email: Optional[str] = None,
        note: Optional[str] = None,
    ) -> DraftOrder:
        """Single-line draft order, used by buy-now flows."""
        order_data = DraftOrderInput(
            line_items=[DraftOrderLineItem(
                title=product_title,
                variant_id=variant_id,
                product_id=product_id,
                quantity=quantity,
                price=price,
            )],
            email=customer_email,
            note=note,
            use_customer_default_address=True,
        )
        return await self.create_draft_order(order_data)
