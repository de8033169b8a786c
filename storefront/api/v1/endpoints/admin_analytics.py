# storefront/api/v1/endpoints/admin_analytics.py
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import select, func, distinct
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.dependencies import verify_admin_api_key
from storefront.core.db import get_db
from storefront.models.analytics import ExperienceTrack
from storefront.models.tracking import EventType
from storefront.services.anonymous_cart import AnonymousCartService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/analytics", tags=["Admin Analytics"], dependencies=[Depends(verify_admin_api_key)])


@router.get("/dau")
async def get_daily_active_users(db: AsyncSession = Depends(get_db)):
    """Number of distinct visitors (anonymous ids) seen today."""
    today_start = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)

    query = select(func.count(distinct(ExperienceTrack.anonymous_id))).\
        where(ExperienceTrack.created_at >= today_start, ExperienceTrack.anonymous_id.is_not(None))

    result = await db.execute(query)
    count = result.scalar_one()
    return {"date": today_start.date(), "dau": count}


@router.get("/top_viewed_products")
async def get_top_viewed_products(limit: int = 10, db: AsyncSession = Depends(get_db)):
    """Most viewed products by product_view events."""
    views = func.count(ExperienceTrack.id)
    query = select(ExperienceTrack.product_id, views.label('views')).\
        where(ExperienceTrack.event_type == EventType.PRODUCT_VIEW.value, ExperienceTrack.product_id.is_not(None)).\
        group_by(ExperienceTrack.product_id).\
        order_by(views.desc()).\
        limit(limit)

    result = await db.execute(query)
    return [{"product_id": row.product_id, "views": row.views} for row in result.all()]


@router.get("/carts")
async def get_cart_analytics(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    db: AsyncSession = Depends(get_db),
):
    """Guest cart performance; the last 30 days unless both dates are given."""
    try:
        if start_date and end_date:
            analytics = await AnonymousCartService(db).analytics(start_date, end_date)
        else:
            analytics = await AnonymousCartService(db).analytics()
    except Exception as e:
        logger.exception(f"Error fetching cart analytics: {e}")
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"error": "Failed to fetch analytics"})
    return analytics.to_wire()


@router.post("/carts")
async def run_cart_maintenance(request: Request, db: AsyncSession = Depends(get_db)):
    """Runs a guest cart maintenance action: cleanup_expired or mark_abandoned."""
    try:
        body = await request.json()
        action = body.get("action") if isinstance(body, dict) else None
        service = AnonymousCartService(db)

        if action == "cleanup_expired":
            return {"deleted_carts": await service.cleanup_expired()}
        if action == "mark_abandoned":
            return {"marked_abandoned": await service.mark_stale_abandoned()}

        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "Invalid action. Use 'cleanup_expired' or 'mark_abandoned'"},
        )
    except Exception as e:
        logger.exception(f"Error in cart maintenance: {e}")
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"error": "Failed to execute maintenance action"})
