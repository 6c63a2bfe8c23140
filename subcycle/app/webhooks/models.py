"""Domain events and webhook endpoint records."""
from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

SCHEMA_VERSION = "1.0"


class EventType(str, Enum):
    """Billing lifecycle events delivered to registered endpoints."""

    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"
    SUBSCRIPTION_PAUSED = "subscription.paused"
    SUBSCRIPTION_RESUMED = "subscription.resumed"
    PAYMENT_PROCESSED = "payment.processed"
    PAYMENT_FAILED = "payment.failed"
    PLAN_CREATED = "plan.created"
    PLAN_UPDATED = "plan.updated"
    PLAN_DEACTIVATED = "plan.deactivated"
    WEBHOOK_TEST = "webhook.test"


class DomainEvent(BaseModel):
    """Immutable event queued for delivery."""

    id: str
    type: EventType
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: int
    schema_version: str = SCHEMA_VERSION

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def to_wire(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "data": self.payload,
            "timestamp": self.timestamp,
            "version": self.schema_version,
        }

    def serialize(self) -> bytes:
        """Compact JSON body; key order is fixed so signatures are reproducible."""
        return json.dumps(self.to_wire(), sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")


class WebhookEndpoint(BaseModel):
    """An external receiver of domain events."""

    id: str
    url: str
    event_types: FrozenSet[EventType]
    secret: str = Field(repr=False)
    active: bool = True
    failure_count: int = Field(default=0, ge=0)
    last_delivery_attempt: Optional[datetime] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("event_types")
    @classmethod
    def _non_empty(cls, value: FrozenSet[EventType]) -> FrozenSet[EventType]:
        if not value:
            raise ValueError("event_types must not be empty")
        return value

    @field_validator("url")
    @classmethod
    def _http_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("url must be an http(s) URL")
        return value

    def accepts(self, event_type: EventType) -> bool:
        return self.active and event_type in self.event_types


class DeliveryResult(BaseModel):
    """Outcome of a single POST to one endpoint."""

    endpoint_id: str
    event_id: str
    success: bool
    status_code: Optional[int] = None
    error: Optional[str] = None
    duration_ms: float = 0.0

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class WebhookStats(BaseModel):
    total_endpoints: int = 0
    active_endpoints: int = 0
    queued_events: int = 0
    failing_endpoints: int = 0

    model_config = ConfigDict(populate_by_name=True, frozen=True)


__all__ = [
    "DeliveryResult",
    "DomainEvent",
    "EventType",
    "SCHEMA_VERSION",
    "WebhookEndpoint",
    "WebhookStats",
]
