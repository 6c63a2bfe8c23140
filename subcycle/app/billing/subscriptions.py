"""Creator and subscriber actions on plans and subscriptions."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional
from uuid import uuid4

from pydantic import ValidationError as PydanticValidationError

from ..errors import ConflictError, NotFoundError, PermissionDeniedError, ValidationError
from ..webhooks.bus import EventEmitter
from ..webhooks.models import EventType
from .models import Plan, Subscription, SubscriptionStatus
from .stores import PlanStore, SubscriptionStore

logger = logging.getLogger(__name__)

_STATUS_EVENTS = {
    SubscriptionStatus.CANCELLED: EventType.SUBSCRIPTION_CANCELLED,
    SubscriptionStatus.PAUSED: EventType.SUBSCRIPTION_PAUSED,
    SubscriptionStatus.ACTIVE: EventType.SUBSCRIPTION_RESUMED,
}


def _plan_payload(plan: Plan) -> Dict[str, Any]:
    return plan.model_dump(mode="json")


def _subscription_payload(subscription: Subscription) -> Dict[str, Any]:
    return subscription.model_dump(mode="json")


@dataclass
class SubscriptionService:
    """Applies explicit creator/subscriber mutations, emitting one event per change."""

    subscriptions: SubscriptionStore
    plans: PlanStore
    events: EventEmitter
    clock: Callable[[], int] = lambda: int(time.time())

    def create_plan(
        self,
        *,
        creator_id: str,
        plan_id: str,
        price: int,
        interval_seconds: int,
        name: str = "",
        currency: str = "SOL",
        max_subscribers: Optional[int] = None,
        metadata_uri: Optional[str] = None,
    ) -> Plan:
        if self.plans.get(creator_id, plan_id) is not None:
            raise ConflictError(f"Plan {creator_id}/{plan_id} already exists")
        try:
            plan = Plan(
                creator_id=creator_id,
                plan_id=plan_id,
                name=name,
                price=price,
                currency=currency,
                interval_seconds=interval_seconds,
                max_subscribers=max_subscribers,
                metadata_uri=metadata_uri,
            )
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid plan: {exc}") from exc

        stored = self.plans.save(plan)
        logger.info("Created plan %s/%s price=%s interval=%ss", creator_id, plan_id, price, interval_seconds)
        self.events.emit(EventType.PLAN_CREATED, _plan_payload(stored))
        return stored

    def update_plan(
        self,
        creator_id: str,
        plan_id: str,
        *,
        actor_id: str,
        price: Optional[int] = None,
        interval_seconds: Optional[int] = None,
        max_subscribers: Optional[int] = None,
        metadata_uri: Optional[str] = None,
    ) -> Plan:
        plan = self._require_plan(creator_id, plan_id)
        if actor_id != plan.creator_id:
            raise PermissionDeniedError("Only the plan's creator may update it")

        changes: Dict[str, Any] = {}
        if price is not None:
            changes["price"] = price
        if interval_seconds is not None:
            changes["interval_seconds"] = interval_seconds
        if max_subscribers is not None:
            changes["max_subscribers"] = max_subscribers
        if metadata_uri is not None:
            changes["metadata_uri"] = metadata_uri
        if not changes:
            return plan

        try:
            updated = plan.with_changes(**changes)
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid plan update: {exc}") from exc

        stored = self.plans.save(updated)
        logger.info("Updated plan %s/%s fields=%s", creator_id, plan_id, sorted(changes))
        self.events.emit(EventType.PLAN_UPDATED, _plan_payload(stored))
        return stored

    def deactivate_plan(self, creator_id: str, plan_id: str, *, actor_id: str) -> Plan:
        plan = self._require_plan(creator_id, plan_id)
        if actor_id != plan.creator_id:
            raise PermissionDeniedError("Only the plan's creator may deactivate it")
        if not plan.is_active:
            return plan

        stored = self.plans.save(plan.with_changes(is_active=False))
        logger.info("Deactivated plan %s/%s", creator_id, plan_id)
        self.events.emit(EventType.PLAN_DEACTIVATED, _plan_payload(stored))
        return stored

    def subscribe(self, subscriber_id: str, creator_id: str, plan_id: str, *, now: Optional[int] = None) -> Subscription:
        plan = self._require_plan(creator_id, plan_id)
        if not plan.is_active:
            raise ValidationError(f"Plan {creator_id}/{plan_id} is not active")
        if self.subscriptions.find_active(subscriber_id, creator_id, plan_id) is not None:
            raise ConflictError("Subscriber already has a subscription to this plan")
        if self.plans.adjust_subscribers(creator_id, plan_id, 1) is None:
            raise ConflictError(f"Plan {creator_id}/{plan_id} has reached its subscriber limit")

        subscription = Subscription(
            subscription_id=f"sub_{uuid4().hex}",
            subscriber_id=subscriber_id,
            creator_id=creator_id,
            plan_id=plan_id,
            next_payment=self.clock() if now is None else now,
        )
        try:
            stored = self.subscriptions.insert(subscription)
        except Exception:
            self.plans.adjust_subscribers(creator_id, plan_id, -1)
            raise

        logger.info("Subscriber %s subscribed to plan %s/%s", subscriber_id, creator_id, plan_id)
        self.events.emit(EventType.SUBSCRIPTION_CREATED, _subscription_payload(stored))
        return stored

    def cancel(self, subscription_id: str, *, actor_id: str) -> Subscription:
        cancelled = self._transition(subscription_id, actor_id=actor_id, target=SubscriptionStatus.CANCELLED)
        self.plans.adjust_subscribers(cancelled.creator_id, cancelled.plan_id, -1)
        return cancelled

    def pause(self, subscription_id: str, *, actor_id: str) -> Subscription:
        return self._transition(subscription_id, actor_id=actor_id, target=SubscriptionStatus.PAUSED)

    def resume(self, subscription_id: str, *, actor_id: str) -> Subscription:
        return self._transition(subscription_id, actor_id=actor_id, target=SubscriptionStatus.ACTIVE)

    def _require_plan(self, creator_id: str, plan_id: str) -> Plan:
        plan = self.plans.get(creator_id, plan_id)
        if plan is None:
            raise NotFoundError(f"Plan {creator_id}/{plan_id} not found")
        return plan

    def _transition(
        self,
        subscription_id: str,
        *,
        actor_id: str,
        target: SubscriptionStatus,
    ) -> Subscription:
        current = self.subscriptions.get(subscription_id)
        if current is None:
            raise NotFoundError(f"Subscription {subscription_id} not found")
        if actor_id != current.subscriber_id:
            raise PermissionDeniedError("Only the subscriber may change this subscription")
        if not current.status.can_transition_to(target):
            raise ConflictError(
                f"Cannot move subscription from {current.status.value} to {target.value}",
                detail={"status": current.status.value},
            )

        # Conditional on the status we just read, so an in-flight settlement is never overwritten.
        updated = self.subscriptions.update(
            subscription_id,
            {"status": target},
            expected_status=current.status,
        )
        if updated is None:
            raise ConflictError("Subscription changed concurrently; retry the request")

        logger.info(
            "Subscription %s moved %s -> %s by %s",
            subscription_id,
            current.status.value,
            target.value,
            actor_id,
        )
        self.events.emit(_STATUS_EVENTS[target], _subscription_payload(updated))
        return updated


__all__ = ["SubscriptionService"]
