import logging
import os
from typing import Any, Protocol, runtime_checkable

import httpx

from .config import METRICS_SINK_TIMEOUT, METRICS_SINK_URL
from .models import ExperimentMetricEvent

logger = logging.getLogger(__name__)


@runtime_checkable
class EventSink(Protocol):
    async def publish(self, event: ExperimentMetricEvent) -> None: ...


class LoggingEventSink:
    """Writes experiment events to the application log."""

    def __init__(self, level: int = logging.INFO):
        self.level = level

    async def publish(self, event: ExperimentMetricEvent) -> None:
        logger.log(
            self.level,
            f"experiment event {event.event_type.value}: user={event.user_id} "
            f"experiment={event.experiment_id} variant={event.variant_id} "
            f"control={event.is_control} duration_ms={event.duration_ms} "
            f"content={event.content_count}/{event.candidate_count}",
        )


class HttpEventSink:
    """Posts experiment events as JSON to an external collector."""

    def __init__(self, url: str | None = None, api_key: str | None = None, timeout: float = METRICS_SINK_TIMEOUT):
        self.url = url or METRICS_SINK_URL
        self.api_key = api_key or os.getenv("FEED_METRICS_API_KEY", "")
        self.timeout = timeout
        if not self.url:
            raise ValueError("FEED_METRICS_URL must be set")

    def _headers(self) -> dict[str, str]:
        headers = {"User-Agent": "feed-ranker/0.1.0"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _post(self, payload: dict[str, Any]) -> None:
        async with httpx.AsyncClient() as client:
            response = await client.post(self.url, json=payload, headers=self._headers(), timeout=self.timeout)
            response.raise_for_status()

    async def publish(self, event: ExperimentMetricEvent) -> None:
        await self._post(event.model_dump(mode="json"))
