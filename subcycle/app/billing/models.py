"""Domain models for recurring billing."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubscriptionStatus(str, Enum):
    """Lifecycle status of a subscriber's agreement with a plan."""

    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    def can_transition_to(self, target: "SubscriptionStatus") -> bool:
        return target in _ALLOWED_TRANSITIONS[self]


_ALLOWED_TRANSITIONS: Dict[SubscriptionStatus, FrozenSet[SubscriptionStatus]] = {
    SubscriptionStatus.ACTIVE: frozenset({SubscriptionStatus.PAUSED, SubscriptionStatus.CANCELLED}),
    SubscriptionStatus.PAUSED: frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED}),
    SubscriptionStatus.CANCELLED: frozenset(),
    SubscriptionStatus.EXPIRED: frozenset(),
}


class SettlementState(str, Enum):
    """Terminal state reached by a single settlement attempt sequence."""

    SETTLED = "settled"
    GRACE_EXTENDED = "grace_extended"
    CANCELLED = "cancelled"
    PLAN_INACTIVE = "plan_inactive"
    ERRORED = "errored"


class FailureReason(str, Enum):
    """Reasons attached to ``payment.failed`` events."""

    PLAN_INACTIVE = "plan_inactive"
    GATEWAY_FAILURE = "gateway_failure"


class Plan(BaseModel):
    """Billing terms offered by a creator."""

    creator_id: str
    plan_id: str
    name: str = ""
    price: int = Field(gt=0, description="Amount in the smallest currency unit")
    currency: str = Field(default="SOL", min_length=1, max_length=10)
    interval_seconds: int = Field(ge=1)
    max_subscribers: Optional[int] = Field(default=None, ge=1)
    current_subscribers: int = Field(default=0, ge=0)
    is_active: bool = True
    metadata_uri: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @model_validator(mode="after")
    def _check_capacity(self) -> "Plan":
        if self.max_subscribers is not None and self.current_subscribers > self.max_subscribers:
            raise ValueError("current_subscribers cannot exceed max_subscribers")
        return self

    @property
    def key(self) -> tuple[str, str]:
        return (self.creator_id, self.plan_id)

    @property
    def has_capacity(self) -> bool:
        return self.max_subscribers is None or self.current_subscribers < self.max_subscribers

    def with_changes(self, **changes: Any) -> "Plan":
        """Return a re-validated copy; ``model_copy`` alone skips validation."""

        data = self.model_dump()
        data.update(changes)
        if "updated_at" not in changes:
            data["updated_at"] = _utcnow()
        return Plan.model_validate(data)


class Subscription(BaseModel):
    """A subscriber's billing cursor against one plan."""

    subscription_id: str
    subscriber_id: str
    creator_id: str
    plan_id: str
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    next_payment: int = Field(description="Unix time at which the next charge is due")
    last_payment: Optional[int] = None
    failed_payments: int = Field(default=0, ge=0)
    total_payments: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def plan_key(self) -> tuple[str, str]:
        return (self.creator_id, self.plan_id)

    def is_due(self, now: int) -> bool:
        """Return ``True`` when the subscription is active and its charge has come due."""
        return self.status == SubscriptionStatus.ACTIVE and self.next_payment <= now

    def with_changes(self, **changes: Any) -> "Subscription":
        data = self.model_dump()
        data.update(changes)
        if "updated_at" not in changes:
            data["updated_at"] = _utcnow()
        return Subscription.model_validate(data)


class SettlementReference(BaseModel):
    """Receipt returned by the settlement gateway for a completed transfer."""

    reference: str
    settled_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class PaymentOutcome(BaseModel):
    """Per-subscription result of a settlement attempt sequence."""

    subscription_id: str
    success: bool
    state: SettlementState
    reason: Optional[str] = None
    error: Optional[str] = None
    settlement_reference: Optional[str] = None
    attempts: int = Field(default=0, ge=0)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ProcessingStats(BaseModel):
    """Counts used for operational visibility."""

    total_active: int = 0
    due_for_payment: int = 0
    subscriptions_with_failures: int = 0
    cancelled_in_last_day: int = 0

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class SubscriptionFilter(BaseModel):
    """Conjunctive filter understood by :meth:`SubscriptionStore.count`."""

    status: Optional[SubscriptionStatus] = None
    due_before: Optional[int] = None
    min_failed_payments: Optional[int] = None
    updated_since: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)

    def matches(self, subscription: Subscription) -> bool:
        if self.status is not None and subscription.status != self.status:
            return False
        if self.due_before is not None and subscription.next_payment > self.due_before:
            return False
        if self.min_failed_payments is not None and subscription.failed_payments < self.min_failed_payments:
            return False
        if self.updated_since is not None and subscription.updated_at < self.updated_since:
            return False
        return True


__all__ = [
    "FailureReason",
    "PaymentOutcome",
    "Plan",
    "ProcessingStats",
    "SettlementReference",
    "SettlementState",
    "Subscription",
    "SubscriptionFilter",
    "SubscriptionStatus",
]
