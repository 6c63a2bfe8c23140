"""Billing domain package: plans, subscriptions, and recurring settlement."""

from .gateway import HttpSettlementGateway, SandboxSettlementGateway, SettlementGateway, TimeoutBoundGateway
from .models import (
    FailureReason,
    PaymentOutcome,
    Plan,
    ProcessingStats,
    SettlementReference,
    SettlementState,
    Subscription,
    SubscriptionFilter,
    SubscriptionStatus,
)
from .processor import PaymentProcessor
from .stores import InMemoryPlanStore, InMemorySubscriptionStore, PlanStore, SubscriptionStore
from .subscriptions import SubscriptionService

__all__ = [
    "FailureReason",
    "HttpSettlementGateway",
    "InMemoryPlanStore",
    "InMemorySubscriptionStore",
    "PaymentOutcome",
    "PaymentProcessor",
    "Plan",
    "PlanStore",
    "ProcessingStats",
    "SandboxSettlementGateway",
    "SettlementGateway",
    "SettlementReference",
    "SettlementState",
    "Subscription",
    "SubscriptionFilter",
    "SubscriptionService",
    "SubscriptionStatus",
    "SubscriptionStore",
    "TimeoutBoundGateway",
]
