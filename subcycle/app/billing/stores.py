"""Store interfaces consumed by the billing engine plus in-memory implementations."""
from __future__ import annotations

from threading import RLock
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from ..errors import ConflictError
from .models import Plan, Subscription, SubscriptionFilter, SubscriptionStatus


class SubscriptionStore(Protocol):
    """Durable record of subscriber/plan relationships and their billing cursors."""

    def find_due_active(self, now: int, limit: int) -> Sequence[Subscription]:
        ...

    def get(self, subscription_id: str) -> Optional[Subscription]:
        ...

    def find_active(self, subscriber_id: str, creator_id: str, plan_id: str) -> Optional[Subscription]:
        ...

    def insert(self, subscription: Subscription) -> Subscription:
        ...

    def update(
        self,
        subscription_id: str,
        fields: Mapping[str, Any],
        *,
        expected_status: Optional[SubscriptionStatus] = None,
    ) -> Optional[Subscription]:
        """Atomically apply ``fields``.

        Returns ``None`` when the row does not exist or, if ``expected_status``
        is given, when the stored status no longer matches it.
        """

    def count(self, filter: SubscriptionFilter) -> int:
        ...


class PlanStore(Protocol):
    """Durable record of billing terms keyed by creator and plan."""

    def get(self, creator_id: str, plan_id: str) -> Optional[Plan]:
        ...

    def save(self, plan: Plan) -> Plan:
        ...

    def adjust_subscribers(self, creator_id: str, plan_id: str, delta: int) -> Optional[Plan]:
        ...


class InMemorySubscriptionStore(SubscriptionStore):
    """Lock-guarded store for local runs and tests."""

    def __init__(self, subscriptions: Optional[Sequence[Subscription]] = None) -> None:
        self._lock = RLock()
        self._rows: Dict[str, Subscription] = {}
        for subscription in subscriptions or ():
            self._rows[subscription.subscription_id] = subscription

    def find_due_active(self, now: int, limit: int) -> Sequence[Subscription]:
        with self._lock:
            due = [row for row in self._rows.values() if row.is_due(now)]
        due.sort(key=lambda row: (row.next_payment, row.subscription_id))
        return due[:limit]

    def get(self, subscription_id: str) -> Optional[Subscription]:
        with self._lock:
            return self._rows.get(subscription_id)

    def find_active(self, subscriber_id: str, creator_id: str, plan_id: str) -> Optional[Subscription]:
        with self._lock:
            for row in self._rows.values():
                if (
                    row.subscriber_id == subscriber_id
                    and row.plan_key == (creator_id, plan_id)
                    and row.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAUSED)
                ):
                    return row
        return None

    def insert(self, subscription: Subscription) -> Subscription:
        with self._lock:
            if subscription.subscription_id in self._rows:
                raise ConflictError(f"Subscription {subscription.subscription_id} already exists")
            self._rows[subscription.subscription_id] = subscription
        return subscription

    def update(
        self,
        subscription_id: str,
        fields: Mapping[str, Any],
        *,
        expected_status: Optional[SubscriptionStatus] = None,
    ) -> Optional[Subscription]:
        with self._lock:
            current = self._rows.get(subscription_id)
            if current is None:
                return None
            if expected_status is not None and current.status != expected_status:
                return None
            updated = current.with_changes(**dict(fields))
            self._rows[subscription_id] = updated
            return updated

    def count(self, filter: SubscriptionFilter) -> int:
        with self._lock:
            return sum(1 for row in self._rows.values() if filter.matches(row))

    def all(self) -> List[Subscription]:
        with self._lock:
            return list(self._rows.values())


class InMemoryPlanStore(PlanStore):
    def __init__(self, plans: Optional[Sequence[Plan]] = None) -> None:
        self._lock = RLock()
        self._plans: Dict[Tuple[str, str], Plan] = {}
        for plan in plans or ():
            self._plans[plan.key] = plan

    def get(self, creator_id: str, plan_id: str) -> Optional[Plan]:
        with self._lock:
            return self._plans.get((creator_id, plan_id))

    def save(self, plan: Plan) -> Plan:
        """Insert or update terms; an existing row keeps its stored subscriber count."""

        with self._lock:
            current = self._plans.get(plan.key)
            if current is not None:
                count = current.current_subscribers
                if plan.max_subscribers is not None and count > plan.max_subscribers:
                    raise ConflictError(
                        f"Plan {plan.creator_id}/{plan.plan_id} has more subscribers than max_subscribers allows"
                    )
                plan = plan.model_copy(update={"current_subscribers": count})
            self._plans[plan.key] = plan
        return plan

    def adjust_subscribers(self, creator_id: str, plan_id: str, delta: int) -> Optional[Plan]:
        with self._lock:
            plan = self._plans.get((creator_id, plan_id))
            if plan is None:
                return None
            target = plan.current_subscribers + delta
            if target < 0 or (plan.max_subscribers is not None and target > plan.max_subscribers):
                return None
            updated = plan.with_changes(current_subscribers=target)
            self._plans[plan.key] = updated
            return updated


__all__ = [
    "InMemoryPlanStore",
    "InMemorySubscriptionStore",
    "PlanStore",
    "SubscriptionStore",
]
