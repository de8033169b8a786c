# storefront/api/v1/endpoints/experience_tracking.py
import logging
from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.config import settings
from storefront.core.db import get_db
from storefront.models.tracking import JourneyCompletion, JourneyStep, TrackingBatch, TrackingResponse
from storefront.services.tracking import TrackingIngestionService, TrackingStorageError, get_client_info

logger = logging.getLogger(__name__)

router = APIRouter()


def _error(status_code: int, message: str) -> JSONResponse:
    body = TrackingResponse(success=False, error=message)
    return JSONResponse(status_code=status_code, content=body.model_dump(by_alias=True, exclude_unset=True))


@router.post(
    "",
    response_model=TrackingResponse,
    summary="Ingest a batch of tracking events",
    description="Stores every event of the batch and creates or refreshes the browser session row.",
)
async def ingest_tracking_batch(request: Request, db: AsyncSession = Depends(get_db)):
    try:
        payload = await request.json()

        events = payload.get("events") if isinstance(payload, dict) else None
        if not isinstance(events, list) or not events:
            return _error(status.HTTP_400_BAD_REQUEST, "Invalid or empty events array")

        try:
            batch = TrackingBatch.model_validate(payload)
        except ValidationError as e:
            logger.warning(f"Rejected tracking batch {payload.get('batchId')}: {e.errors()}")
            return _error(status.HTTP_400_BAD_REQUEST, "Invalid or empty events array")

        client_info = get_client_info(request.headers)
        service = TrackingIngestionService(db)

        try:
            processed = await service.ingest_batch(batch, client_info)
        except TrackingStorageError as e:
            logger.error(f"Failed to store tracking batch {batch.batch_id}: {e.details}")
            return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to store events")

        response = TrackingResponse(success=True, processed_events=processed, batch_id=batch.batch_id)
        return JSONResponse(content=response.model_dump(by_alias=True, exclude_none=True))

    except Exception as e:
        logger.exception(f"Experience tracking API error: {e}")
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")


@router.post("/journey", summary="Record a user journey step")
async def record_journey_step(request: Request, db: AsyncSession = Depends(get_db)):
    if not settings.EXPERIENCE_TRACKING_ENABLED:
        return _error(status.HTTP_403_FORBIDDEN, "Experience tracking is disabled")

    try:
        try:
            step = JourneyStep.model_validate(await request.json())
        except ValidationError:
            return _error(status.HTTP_400_BAD_REQUEST, "Missing required journey data")

        if not step.session_id or not step.journey_type or not step.journey_step:
            return _error(status.HTTP_400_BAD_REQUEST, "Missing required journey data")

        try:
            await TrackingIngestionService(db).record_journey_step(step)
        except TrackingStorageError:
            return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to store journey step")

        return {"success": True}

    except Exception as e:
        logger.exception(f"Journey tracking API error: {e}")
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")


@router.post("/journey/complete", summary="Mark a user journey step as completed")
async def complete_journey_step(request: Request, db: AsyncSession = Depends(get_db)):
    if not settings.EXPERIENCE_TRACKING_ENABLED:
        return _error(status.HTTP_403_FORBIDDEN, "Experience tracking is disabled")

    try:
        try:
            completion = JourneyCompletion.model_validate(await request.json())
        except ValidationError:
            return _error(status.HTTP_400_BAD_REQUEST, "Missing required completion data")

        if not completion.session_id or not completion.journey_type or not completion.step:
            return _error(status.HTTP_400_BAD_REQUEST, "Missing required completion data")

        try:
            updated = await TrackingIngestionService(db).complete_journey_step(completion)
        except TrackingStorageError:
            return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to update journey step")

        logger.debug(f"Journey step {completion.step} completed for session {completion.session_id} ({updated} rows)")
        return {"success": True}

    except Exception as e:
        logger.exception(f"Journey completion API error: {e}")
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")
