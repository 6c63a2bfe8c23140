from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import pytest

from subcycle.app.billing import (
    InMemoryPlanStore,
    InMemorySubscriptionStore,
    Plan,
    SettlementReference,
    Subscription,
)
from subcycle.app.errors import SettlementError
from subcycle.app.webhooks import DomainEvent, EventType
from subcycle.config import EngineConfig

NOW = 1_700_000_000


class RecordingEmitter:
    def __init__(self) -> None:
        self.events: List[DomainEvent] = []

    def emit(self, event_type: EventType, payload: Mapping[str, Any]) -> DomainEvent:
        event = DomainEvent(
            id=f"evt_{len(self.events) + 1}",
            type=EventType(event_type),
            payload=dict(payload),
            timestamp=NOW,
        )
        self.events.append(event)
        return event

    def types(self) -> List[EventType]:
        return [event.type for event in self.events]


class ScriptedGateway:
    """Replays a script of references and exceptions, one entry per call."""

    def __init__(self, script: Sequence[Union[str, Exception]] = ()) -> None:
        self._script = list(script)
        self.calls: List[Dict[str, Any]] = []

    def settle(self, payer_id: str, payee_id: str, amount: int) -> SettlementReference:
        self.calls.append({"payer": payer_id, "payee": payee_id, "amount": amount})
        outcome = self._script.pop(0) if self._script else f"ref_{len(self.calls)}"
        if isinstance(outcome, Exception):
            raise outcome
        return SettlementReference(reference=outcome)


class FakeClock:
    def __init__(self, now: int = NOW) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now


def make_plan(**overrides: Any) -> Plan:
    data: Dict[str, Any] = {
        "creator_id": "creator-1",
        "plan_id": "gold",
        "name": "Gold",
        "price": 1_000_000,
        "interval_seconds": 2_592_000,
    }
    data.update(overrides)
    return Plan(**data)


def make_subscription(**overrides: Any) -> Subscription:
    data: Dict[str, Any] = {
        "subscription_id": "sub_1",
        "subscriber_id": "subscriber-1",
        "creator_id": "creator-1",
        "plan_id": "gold",
        "next_payment": NOW - 10,
    }
    data.update(overrides)
    return Subscription(**data)


def settlement_failure(message: str = "insufficient balance") -> SettlementError:
    return SettlementError(message)


@pytest.fixture
def config() -> EngineConfig:
    return EngineConfig(
        retry_base_delay_seconds=0.0,
        retry_max_delay_seconds=0.0,
        batch_delay_seconds=0.0,
        grace_period_seconds=3600,
        cancellation_threshold=3,
    )


@pytest.fixture
def emitter() -> RecordingEmitter:
    return RecordingEmitter()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def plan_store() -> InMemoryPlanStore:
    return InMemoryPlanStore([make_plan()])


@pytest.fixture
def subscription_store() -> InMemorySubscriptionStore:
    return InMemorySubscriptionStore()


def seed(store: InMemorySubscriptionStore, *subscriptions: Subscription) -> InMemorySubscriptionStore:
    for subscription in subscriptions:
        store.insert(subscription)
    return store


def first(events: Sequence[DomainEvent], event_type: EventType) -> Optional[DomainEvent]:
    return next((event for event in events if event.type == event_type), None)
