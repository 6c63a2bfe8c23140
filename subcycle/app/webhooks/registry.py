"""In-process registry of webhook endpoints and their delivery health."""
from __future__ import annotations

import logging
import secrets
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4

from pydantic import ValidationError as PydanticValidationError

from ..errors import NotFoundError, ValidationError
from .models import EventType, WebhookEndpoint

logger = logging.getLogger(__name__)


class EndpointRegistry:
    """Holds endpoints; every mutation replaces the frozen record under a lock."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._endpoints: Dict[str, WebhookEndpoint] = {}

    def register(
        self,
        url: str,
        event_types: Iterable[EventType | str],
        secret: Optional[str] = None,
    ) -> WebhookEndpoint:
        try:
            types = frozenset(EventType(value) for value in event_types)
            endpoint = WebhookEndpoint(
                id=f"webhook_{uuid4().hex[:16]}",
                url=url,
                event_types=types,
                secret=secret or secrets.token_hex(32),
            )
        except (ValueError, PydanticValidationError) as exc:
            raise ValidationError(f"Invalid webhook registration: {exc}") from exc

        with self._lock:
            self._endpoints[endpoint.id] = endpoint
        logger.info("Registered webhook %s for URL %s", endpoint.id, endpoint.url)
        return endpoint

    def list(self) -> List[WebhookEndpoint]:
        with self._lock:
            return list(self._endpoints.values())

    def get(self, endpoint_id: str) -> Optional[WebhookEndpoint]:
        with self._lock:
            return self._endpoints.get(endpoint_id)

    def require(self, endpoint_id: str) -> WebhookEndpoint:
        endpoint = self.get(endpoint_id)
        if endpoint is None:
            raise NotFoundError(f"Webhook {endpoint_id} not found")
        return endpoint

    def update(self, endpoint_id: str, **changes: Any) -> WebhookEndpoint:
        with self._lock:
            current = self._endpoints.get(endpoint_id)
            if current is None:
                raise NotFoundError(f"Webhook {endpoint_id} not found")
            data = current.model_dump()
            data.update(changes)
            try:
                updated = WebhookEndpoint.model_validate(data)
            except PydanticValidationError as exc:
                raise ValidationError(f"Invalid webhook update: {exc}") from exc
            self._endpoints[endpoint_id] = updated
        logger.info("Updated webhook %s", endpoint_id)
        return updated

    def delete(self, endpoint_id: str) -> bool:
        with self._lock:
            deleted = self._endpoints.pop(endpoint_id, None) is not None
        if deleted:
            logger.info("Deleted webhook %s", endpoint_id)
        return deleted

    def matching(self, event_type: EventType) -> List[WebhookEndpoint]:
        with self._lock:
            return [endpoint for endpoint in self._endpoints.values() if endpoint.accepts(event_type)]

    def record_success(self, endpoint_id: str, at: Optional[datetime] = None) -> Optional[WebhookEndpoint]:
        with self._lock:
            current = self._endpoints.get(endpoint_id)
            if current is None:
                return None
            updated = current.model_copy(
                update={"failure_count": 0, "last_delivery_attempt": at or datetime.now(timezone.utc)}
            )
            self._endpoints[endpoint_id] = updated
            return updated

    def record_failure(
        self,
        endpoint_id: str,
        *,
        threshold: int,
        at: Optional[datetime] = None,
    ) -> Optional[WebhookEndpoint]:
        """Count a failed delivery; the endpoint is disabled once ``threshold`` is reached."""

        with self._lock:
            current = self._endpoints.get(endpoint_id)
            if current is None:
                return None
            failures = current.failure_count + 1
            updated = current.model_copy(
                update={
                    "failure_count": failures,
                    "last_delivery_attempt": at or datetime.now(timezone.utc),
                    "active": current.active and failures < threshold,
                }
            )
            self._endpoints[endpoint_id] = updated
            return updated

    def reactivate(self, endpoint_id: str) -> WebhookEndpoint:
        endpoint = self.update(endpoint_id, active=True, failure_count=0)
        logger.info("Reactivated webhook %s", endpoint_id)
        return endpoint


__all__ = ["EndpointRegistry"]
