# storefront/api/v1/endpoints/draft_orders.py
import logging

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from storefront.dependencies import get_shopify_service
from storefront.models.order import (
    DraftOrderInput, DraftOrderLineItem, DraftOrderRequest, InvoiceEmail,
)
from storefront.services.shopify import ShopifyService, ShopifyServiceError

logger = logging.getLogger(__name__)

router = APIRouter()


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


def build_draft_order_input(body: DraftOrderRequest) -> DraftOrderInput:
    line_items = [
        DraftOrderLineItem(
            title=item.title,
            variant_id=item.variant_id,
            product_id=item.product_id,
            quantity=item.quantity,
            price=float(item.price) if item.price not in (None, "") else None,
            sku=item.sku,
            grams=item.grams,
            taxable=item.taxable,
            requires_shipping=item.requires_shipping,
        )
        for item in body.line_items
    ]
    return DraftOrderInput(
        line_items=line_items,
        email=body.customer_email,
        phone=body.customer_phone,
        shipping_address=body.shipping_address,
        billing_address=body.billing_address,
        note=body.note,
        tags=body.tags,
        use_customer_default_address=body.shipping_address is None,
    )


@router.post(
    "",
    summary="Create a Shopify draft order",
    description="Creates a draft order and optionally emails its invoice to the customer.",
)
async def create_draft_order(
    request: Request,
    shopify: ShopifyService = Depends(get_shopify_service),
):
    try:
        try:
            body = DraftOrderRequest.model_validate(await request.json())
        except ValidationError as e:
            logger.warning(f"Invalid draft order request: {e.errors()}")
            return _error(status.HTTP_400_BAD_REQUEST, "Line items are required")

        if not body.line_items:
            return _error(status.HTTP_400_BAD_REQUEST, "Line items are required")
        for item in body.line_items:
            if not item.quantity or item.quantity < 1:
                return _error(status.HTTP_400_BAD_REQUEST, "Each line item must have a valid quantity")

        draft_order = await shopify.create_draft_order(build_draft_order_input(body))

        invoice_sent = False
        invoice_error = None
        if body.send_invoice and draft_order.id and body.customer_email:
            invoice_data = body.invoice_data
            try:
                await shopify.send_draft_order_invoice(draft_order.id, InvoiceEmail(
                    to=body.customer_email,
                    subject=(invoice_data.subject if invoice_data else None) or f"Invoice #{draft_order.name or draft_order.id}",
                    custom_message=invoice_data.custom_message if invoice_data else None,
                    from_=invoice_data.from_ if invoice_data else None,
                ))
                invoice_sent = True
            except ShopifyServiceError as e:
                logger.error(f"Failed to send invoice for draft order {draft_order.id}: {e.message}")
                invoice_error = e.message or "Failed to send invoice"

        content = {
            "success": True,
            "draftOrder": draft_order.model_dump(
                mode="json", by_alias=True,
                include={"id", "name", "invoice_url", "total_price", "subtotal_price", "total_tax",
                         "currency_code", "customer", "note", "tags", "created_at", "updated_at"},
            ),
            "invoiceSent": invoice_sent,
        }
        if invoice_error:
            content["invoiceError"] = invoice_error
        return JSONResponse(content=content)

    except ShopifyServiceError as e:
        logger.error(f"Draft order creation error: {e.message} | Details: {e.details}")
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, e.message)
    except Exception as e:
        logger.exception(f"Draft order creation error: {e}")
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")


@router.get("", summary="Draft orders can only be created")
async def draft_orders_get_not_allowed():
    return _error(
        status.HTTP_405_METHOD_NOT_ALLOWED,
        "This endpoint only accepts POST requests. Use POST to create draft orders.",
    )
