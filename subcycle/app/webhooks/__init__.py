"""Event bus delivering signed billing events to external webhook endpoints."""

from .bus import EventBus, EventEmitter
from .models import DeliveryResult, DomainEvent, EventType, WebhookEndpoint, WebhookStats
from .registry import EndpointRegistry
from .signing import compute_signature, verify_signature, verify_timestamp, verify_webhook_request

__all__ = [
    "DeliveryResult",
    "DomainEvent",
    "EndpointRegistry",
    "EventBus",
    "EventEmitter",
    "EventType",
    "WebhookEndpoint",
    "WebhookStats",
    "compute_signature",
    "verify_signature",
    "verify_timestamp",
    "verify_webhook_request",
]
