# storefront/tracker/transport.py
import asyncio
import logging
from typing import Optional, Protocol, Set

import httpx

from storefront.models.tracking import JourneyCompletion, JourneyStep, TrackingBatch, TrackingResponse

logger = logging.getLogger(__name__)


class TransportError(Exception):
    """A batch did not reach the ingestion endpoint or was refused by it."""
    def __init__(self, message="Failed to send tracking batch", status_code=None, details=None):
        self.message = message
        self.status_code = status_code
        self.details = details
        super().__init__(self.message)


def _rejection_reason(response: httpx.Response) -> Optional[str]:
    """The `error` of a `{success: false, error}` body, if the server sent one."""
    try:
        return TrackingResponse.model_validate_json(response.content).error
    except ValueError:
        return None


class Transport(Protocol):
    async def send(self, batch: TrackingBatch) -> TrackingResponse: ...

    def send_beacon(self, batch: TrackingBatch) -> bool: ...

    async def send_journey(self, step: JourneyStep) -> bool: ...

    async def send_journey_completion(self, completion: JourneyCompletion) -> bool: ...


class HttpTransport:
    """
    Delivers batches to the ingestion endpoint with httpx.

    `send` is the acknowledged path. `send_beacon` mirrors navigator.sendBeacon:
    the POST is scheduled and forgotten, so a beacon batch may be lost.
    """
    def __init__(self, endpoint: str, client: Optional[httpx.AsyncClient] = None, base_url: str = ""):
        self.endpoint = endpoint.rstrip('/')
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=httpx.Timeout(10.0, connect=5.0))
        self._pending: Set[asyncio.Task] = set()

    async def close(self):
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        if self._owns_client:
            await self._client.aclose()

    async def _post(self, url: str, payload: dict) -> httpx.Response:
        try:
            response = await self._client.post(url, json=payload)
        except (httpx.InvalidURL, httpx.UnsupportedProtocol) as e:
            raise TransportError(f"Invalid tracking URL {url}", details=str(e)) from e
        except httpx.HTTPError as e:
            raise TransportError(f"Network error while posting to {url}: {type(e).__name__}", details=str(e)) from e
        if not response.is_success:
            reason = _rejection_reason(response)
            message = f"HTTP {response.status_code}: {reason}" if reason else f"HTTP {response.status_code}"
            raise TransportError(message, status_code=response.status_code, details=response.text)
        return response

    async def send(self, batch: TrackingBatch) -> TrackingResponse:
        response = await self._post(self.endpoint, batch.to_wire())
        try:
            return TrackingResponse.model_validate(response.json())
        except ValueError as e:
            raise TransportError("Malformed ingestion response", status_code=response.status_code,
                                 details=response.text) from e

    def send_beacon(self, batch: TrackingBatch) -> bool:
        """Queues the batch for delivery and returns at once. The outcome is never reported."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"No running event loop; beacon batch {batch.batch_id} dropped")
            return False

        task = loop.create_task(self._deliver_beacon(batch))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return True

    async def _deliver_beacon(self, batch: TrackingBatch):
        try:
            await self._post(self.endpoint, batch.to_wire())
        except TransportError as e:
            logger.debug(f"Beacon batch {batch.batch_id} lost: {e.message}")

    async def send_journey(self, step: JourneyStep) -> bool:
        try:
            await self._post(f"{self.endpoint}/journey", step.to_wire())
            return True
        except TransportError as e:
            logger.warning(f"Failed to send journey step {step.journey_step}: {e.message}")
            return False

    async def send_journey_completion(self, completion: JourneyCompletion) -> bool:
        try:
            await self._post(f"{self.endpoint}/journey/complete", completion.to_wire())
            return True
        except TransportError as e:
            logger.warning(f"Failed to send journey completion {completion.step}: {e.message}")
            return False
