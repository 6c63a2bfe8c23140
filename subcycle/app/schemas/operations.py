"""API schemas for the operator surface."""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..webhooks import EventType, WebhookEndpoint


class WebhookRegistrationRequest(BaseModel):
    url: str
    event_types: List[EventType] = Field(alias="eventTypes", min_length=1)
    secret: Optional[str] = Field(default=None, min_length=16)

    model_config = ConfigDict(populate_by_name=True)


class WebhookEndpointResponse(BaseModel):
    id: str
    url: str
    event_types: List[EventType] = Field(alias="eventTypes")
    active: bool
    failure_count: int = Field(alias="failureCount")
    last_delivery_attempt: Optional[datetime] = Field(alias="lastDeliveryAttempt", default=None)
    created_at: datetime = Field(alias="createdAt")
    secret: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_endpoint(cls, endpoint: WebhookEndpoint, *, include_secret: bool = False) -> "WebhookEndpointResponse":
        return cls(
            id=endpoint.id,
            url=endpoint.url,
            event_types=sorted(endpoint.event_types, key=lambda value: value.value),
            active=endpoint.active,
            failure_count=endpoint.failure_count,
            last_delivery_attempt=endpoint.last_delivery_attempt,
            created_at=endpoint.created_at,
            secret=endpoint.secret if include_secret else None,
        )


class WebhookListResponse(BaseModel):
    webhooks: List[WebhookEndpointResponse]


class ProcessDueResponse(BaseModel):
    ran: bool
    message: str
