# storefront/api/v1/router.py
from fastapi import APIRouter
from storefront.api.v1.endpoints import experience_tracking, anonymous_cart, cart, draft_orders, checkout, analytics
from storefront.api.v1.endpoints import admin_analytics

api_router_v1 = APIRouter()

api_router_v1.include_router(experience_tracking.router, prefix="/experience-tracking", tags=["Experience Tracking"])
api_router_v1.include_router(anonymous_cart.router, prefix="/anonymous-cart", tags=["Anonymous Cart"])
api_router_v1.include_router(cart.router, prefix="/cart", tags=["Cart"])
api_router_v1.include_router(draft_orders.router, prefix="/draft-orders", tags=["Draft Orders"])
api_router_v1.include_router(checkout.router, prefix="/checkout", tags=["Checkout"])
api_router_v1.include_router(analytics.router, prefix="/analytics", tags=["Analytics"])
api_router_v1.include_router(admin_analytics.router)
