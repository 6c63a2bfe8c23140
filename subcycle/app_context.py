"""Explicitly constructed application context holding stores, services and config."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional

import httpx

from .app.billing.gateway import (
    HttpSettlementGateway,
    SandboxSettlementGateway,
    SettlementGateway,
    TimeoutBoundGateway,
)
from .app.billing.processor import PaymentProcessor
from .app.billing.repository import PostgresPlanStore, PostgresSubscriptionStore, connection_factory
from .app.billing.stores import InMemoryPlanStore, InMemorySubscriptionStore, PlanStore, SubscriptionStore
from .app.billing.subscriptions import SubscriptionService
from .app.webhooks.bus import EventBus
from .app.webhooks.models import EventType, WebhookEndpoint
from .app.webhooks.registry import EndpointRegistry
from .config import EngineConfig
from .scheduler import PaymentScheduler

logger = logging.getLogger(__name__)


@dataclass
class BillingContext:
    """Everything a running engine needs, passed down instead of held in globals."""

    config: EngineConfig
    subscriptions: SubscriptionStore
    plans: PlanStore
    gateway: SettlementGateway
    registry: EndpointRegistry
    events: EventBus
    processor: PaymentProcessor
    scheduler: PaymentScheduler
    service: SubscriptionService
    _closers: List[Callable[[], None]] = field(default_factory=list, repr=False)

    def register_endpoint(
        self,
        url: str,
        event_types: Iterable[EventType | str],
        secret: Optional[str] = None,
    ) -> WebhookEndpoint:
        return self.registry.register(url, event_types, secret)

    def list_endpoints(self) -> List[WebhookEndpoint]:
        return self.registry.list()

    def close(self) -> None:
        """Release gateway and store resources; call after the scheduler has stopped."""

        for closer in reversed(self._closers):
            try:
                closer()
            except Exception:  # pragma: no cover
                logger.exception("Error releasing context resource")
        self._closers.clear()


def build_context(
    config: EngineConfig,
    *,
    subscriptions: Optional[SubscriptionStore] = None,
    plans: Optional[PlanStore] = None,
    gateway: Optional[SettlementGateway] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> BillingContext:
    """Wire stores, gateway, event bus, processor and scheduler for ``config``."""

    closers: List[Callable[[], None]] = []

    if subscriptions is None or plans is None:
        if config.db_config:
            factory = connection_factory(config.db_config)
            subscriptions = subscriptions or PostgresSubscriptionStore(factory=factory)
            plans = plans or PostgresPlanStore(factory=factory)
        else:
            logger.info("No database configured; using in-memory stores")
            subscriptions = subscriptions or InMemorySubscriptionStore()
            plans = plans or InMemoryPlanStore()

    if gateway is None:
        if config.settlement_url:
            http_gateway = HttpSettlementGateway(config.settlement_url, timeout=config.settlement_timeout_seconds)
            closers.append(http_gateway.close)
            gateway = http_gateway
        else:
            logger.warning("SETTLEMENT_URL not set; using the sandbox settlement gateway")
            gateway = SandboxSettlementGateway()
    bounded = TimeoutBoundGateway(gateway, timeout=config.settlement_timeout_seconds)
    closers.append(bounded.close)

    registry = EndpointRegistry()
    events = EventBus(registry, config, client=client)
    processor = PaymentProcessor(
        subscriptions=subscriptions,
        plans=plans,
        gateway=bounded,
        events=events,
        config=config,
    )
    scheduler = PaymentScheduler(processor, config, events=events)
    service = SubscriptionService(subscriptions=subscriptions, plans=plans, events=events)

    return BillingContext(
        config=config,
        subscriptions=subscriptions,
        plans=plans,
        gateway=bounded,
        registry=registry,
        events=events,
        processor=processor,
        scheduler=scheduler,
        service=service,
        _closers=closers,
    )


__all__ = ["BillingContext", "build_context"]
