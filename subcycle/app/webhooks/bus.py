"""Queue of domain events fanned out to registered webhook endpoints."""
from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Deque, List, Mapping, Optional, Protocol, Set
from uuid import uuid4

import httpx

from ...config import EngineConfig
from .models import DeliveryResult, DomainEvent, EventType, WebhookEndpoint, WebhookStats
from .registry import EndpointRegistry
from .signing import (
    EVENT_ID_HEADER,
    EVENT_TYPE_HEADER,
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    signature_header,
)

logger = logging.getLogger(__name__)

USER_AGENT = "subcycle-webhooks/1.0"


class EventEmitter(Protocol):
    """Producer-side view of the bus; ``emit`` must never block on delivery."""

    def emit(self, event_type: EventType, payload: Mapping[str, Any]) -> DomainEvent:
        ...


def _unix_now() -> int:
    return int(time.time())


class EventBus(EventEmitter):
    """Buffers events and delivers them, one event at a time, to matching endpoints.

    ``emit`` is safe to call from any thread. Delivery runs on the event loop
    the bus was started on: each emit schedules a drain there, and a periodic
    drain bounds latency for anything left behind. Within a drain the next
    event is only dequeued once every endpoint attempt for the current one has
    finished, which keeps queue order intact.
    """

    def __init__(
        self,
        registry: EndpointRegistry,
        config: EngineConfig,
        *,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], int] = _unix_now,
    ) -> None:
        self._registry = registry
        self._config = config
        self._client = client
        self._owns_client = False
        self._clock = clock
        self._queue: Deque[DomainEvent] = deque()
        self._draining = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._runner: Optional[asyncio.Task] = None
        self._pending_drains: Set[asyncio.Task] = set()

    @property
    def registry(self) -> EndpointRegistry:
        return self._registry

    def pending(self) -> int:
        return len(self._queue)

    def emit(self, event_type: EventType, payload: Mapping[str, Any]) -> DomainEvent:
        event = DomainEvent(
            id=f"evt_{uuid4().hex}",
            type=EventType(event_type),
            payload=dict(payload),
            timestamp=self._clock(),
        )
        self._queue.append(event)
        logger.info("Queued webhook event %s (%s)", event.type.value, event.id)

        loop = self._loop
        if loop is not None and not loop.is_closed():
            loop.call_soon_threadsafe(self._schedule_drain)
        return event

    def _schedule_drain(self) -> None:
        if self._draining or not self._queue or self._loop is None:
            return
        task = self._loop.create_task(self.drain())
        self._pending_drains.add(task)
        task.add_done_callback(self._pending_drains.discard)

    async def drain(self) -> List[DeliveryResult]:
        """Deliver queued events in order; a no-op while another drain is running."""

        if self._draining:
            return []
        self._draining = True
        results: List[DeliveryResult] = []
        try:
            if self._queue:
                logger.info("Processing %s webhook events", len(self._queue))
            while self._queue:
                event = self._queue.popleft()
                results.extend(await self._dispatch(event))
        finally:
            self._draining = False
        return results

    async def _dispatch(self, event: DomainEvent) -> List[DeliveryResult]:
        endpoints = self._registry.matching(event.type)
        if not endpoints:
            logger.debug("No webhooks registered for event type %s", event.type.value)
            return []

        logger.info("Sending event %s to %s webhooks", event.id, len(endpoints))
        outcomes = await asyncio.gather(
            *(self.deliver(endpoint, event) for endpoint in endpoints),
            return_exceptions=True,
        )
        results: List[DeliveryResult] = []
        for endpoint, outcome in zip(endpoints, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(
                    "Unexpected error delivering event %s to webhook %s",
                    event.id,
                    endpoint.id,
                    exc_info=outcome,
                )
                continue
            results.append(outcome)
        return results

    async def deliver(self, endpoint: WebhookEndpoint, event: DomainEvent) -> DeliveryResult:
        """POST one signed event to one endpoint and record the endpoint's health."""

        body = event.serialize()
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            SIGNATURE_HEADER: signature_header(body, endpoint.secret),
            TIMESTAMP_HEADER: str(self._clock()),
            EVENT_TYPE_HEADER: event.type.value,
            EVENT_ID_HEADER: event.id,
        }
        started = time.perf_counter()
        status_code: Optional[int] = None
        try:
            response = await self._get_client().post(
                endpoint.url,
                content=body,
                headers=headers,
                timeout=self._config.delivery_timeout_seconds,
            )
            status_code = response.status_code
            error = None if response.is_success else f"HTTP {response.status_code}: {response.reason_phrase}"
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            error = f"{type(exc).__name__}: {exc}"
        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        attempted_at = datetime.now(timezone.utc)

        if error is None:
            self._registry.record_success(endpoint.id, at=attempted_at)
            logger.info("Webhook %s delivered successfully to %s", endpoint.id, endpoint.url)
            return DeliveryResult(
                endpoint_id=endpoint.id,
                event_id=event.id,
                success=True,
                status_code=status_code,
                duration_ms=duration_ms,
            )

        logger.error("Failed to deliver webhook %s to %s: %s", endpoint.id, endpoint.url, error)
        threshold = self._config.endpoint_disable_threshold
        updated = self._registry.record_failure(endpoint.id, threshold=threshold, at=attempted_at)
        if updated is not None and endpoint.active and not updated.active:
            logger.warning(
                "Disabling webhook %s after %s consecutive failures",
                endpoint.id,
                updated.failure_count,
            )
        return DeliveryResult(
            endpoint_id=endpoint.id,
            event_id=event.id,
            success=False,
            status_code=status_code,
            error=error,
            duration_ms=duration_ms,
        )

    async def send_test_event(self, endpoint_id: str) -> DeliveryResult:
        """Deliver a ``webhook.test`` event straight to one endpoint, bypassing the queue."""

        endpoint = self._registry.require(endpoint_id)
        event = DomainEvent(
            id=f"test_{uuid4().hex}",
            type=EventType.WEBHOOK_TEST,
            payload={
                "message": "This is a test webhook event",
                "sent_at": datetime.now(timezone.utc).isoformat(),
            },
            timestamp=self._clock(),
        )
        return await self.deliver(endpoint, event)

    def get_stats(self) -> WebhookStats:
        endpoints = self._registry.list()
        return WebhookStats(
            total_endpoints=len(endpoints),
            active_endpoints=sum(1 for endpoint in endpoints if endpoint.active),
            queued_events=len(self._queue),
            failing_endpoints=sum(1 for endpoint in endpoints if endpoint.failure_count > 0),
        )

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._config.delivery_timeout_seconds)
            self._owns_client = True
        return self._client

    async def run(self) -> None:
        """Periodic drain so nothing waits longer than the drain interval."""

        interval = self._config.delivery_drain_interval_seconds
        while True:
            await asyncio.sleep(interval)
            if not self._queue or self._draining:
                continue
            try:
                await self.drain()
            except Exception:  # pragma: no cover
                logger.exception("Webhook drain failed")

    async def start(self) -> None:
        if self._runner is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._runner = self._loop.create_task(self.run())
        self._schedule_drain()
        logger.info(
            "Webhook delivery started",
            extra={"drain_interval_seconds": self._config.delivery_drain_interval_seconds},
        )

    async def close(self) -> None:
        """Stop the periodic drain, flush what is queued, release the HTTP client."""

        runner, self._runner = self._runner, None
        if runner is not None:
            runner.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await runner
        if self._pending_drains:
            await asyncio.gather(*list(self._pending_drains), return_exceptions=True)
        await self.drain()
        self._loop = None
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
            self._owns_client = False
        logger.info("Webhook delivery stopped")


__all__ = ["EventBus", "EventEmitter", "USER_AGENT"]
