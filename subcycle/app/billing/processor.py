"""Recurring settlement of due subscriptions."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from ...config import EngineConfig
from ..errors import PersistenceError, SettlementError, UnresolvedSettlementError
from ..webhooks.bus import EventEmitter
from ..webhooks.models import EventType
from .gateway import SettlementGateway
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
from .stores import PlanStore, SubscriptionStore

logger = logging.getLogger(__name__)

_ONE_DAY_SECONDS = 24 * 60 * 60


def _unix_now() -> int:
    return int(time.time())


@dataclass
class PaymentProcessor:
    """Turns "subscription X owes a payment" into a durable success or a bounded failure.

    A subscription moves through ``Evaluating -> Attempting(n) -> {Settled,
    GraceExtended, Cancelled}``. Every terminal write either leaves the active
    set or pushes ``next_payment`` past the current time, so discovery in the
    same cycle never returns a row that was just handled.
    """

    subscriptions: SubscriptionStore
    plans: PlanStore
    gateway: SettlementGateway
    events: EventEmitter
    config: EngineConfig = field(default_factory=EngineConfig)
    clock: Callable[[], int] = _unix_now
    sleep: Callable[[float], None] = time.sleep

    def run_cycle(self) -> List[PaymentOutcome]:
        """Settle one batch of due subscriptions sequentially."""

        started_at = self.clock()
        due = self.subscriptions.find_due_active(started_at, self.config.batch_size)
        logger.info("Found %s subscriptions due for payment", len(due))

        outcomes: List[PaymentOutcome] = []
        for index, subscription in enumerate(due):
            if index:
                self.sleep(self.config.batch_delay_seconds)
            try:
                outcome = self.settle_one(subscription, now=started_at)
            except Exception as exc:
                logger.exception("Error processing subscription %s", subscription.subscription_id)
                outcome = PaymentOutcome(
                    subscription_id=subscription.subscription_id,
                    success=False,
                    state=SettlementState.ERRORED,
                    error=f"{type(exc).__name__}: {exc}",
                )
            outcomes.append(outcome)

        succeeded = sum(1 for outcome in outcomes if outcome.success)
        logger.info(
            "Processed %s payments. Success: %s, Failed: %s",
            len(outcomes),
            succeeded,
            len(outcomes) - succeeded,
            extra={"cycle_started_at": started_at},
        )
        return outcomes

    def settle_one(self, subscription: Subscription, *, now: Optional[int] = None) -> PaymentOutcome:
        now = self.clock() if now is None else now
        plan = self.plans.get(subscription.creator_id, subscription.plan_id)
        if plan is None or not plan.is_active:
            return self._reject_inactive_plan(subscription, plan, now)

        attempts = self.config.retry_attempts
        last_error: Optional[Exception] = None
        for attempt in range(1, attempts + 1):
            try:
                reference = self.gateway.settle(subscription.subscriber_id, subscription.creator_id, plan.price)
            except SettlementError as exc:
                last_error = exc
                logger.warning(
                    "Payment attempt %s/%s failed for subscription %s: %s",
                    attempt,
                    attempts,
                    subscription.subscription_id,
                    exc,
                )
                if attempt < attempts:
                    self.sleep(self.config.retry_delay(attempt))
                continue
            return self._complete_settlement(subscription, plan, reference, attempt, now)

        return self._handle_exhausted(subscription, plan, last_error, attempts, now)

    def _reject_inactive_plan(self, subscription: Subscription, plan: Optional[Plan], now: int) -> PaymentOutcome:
        # Configuration failure: no retry is consumed and failed_payments is untouched.
        error = (
            f"Plan {subscription.creator_id}/{subscription.plan_id} not found"
            if plan is None
            else f"Plan {subscription.creator_id}/{subscription.plan_id} is not active"
        )
        logger.warning("Skipping subscription %s: %s", subscription.subscription_id, error)
        self.subscriptions.update(
            subscription.subscription_id,
            {"next_payment": max(subscription.next_payment, now + self.config.grace_period_seconds)},
            expected_status=SubscriptionStatus.ACTIVE,
        )
        self.events.emit(
            EventType.PAYMENT_FAILED,
            {
                **_subscription_payload(subscription),
                "reason": FailureReason.PLAN_INACTIVE.value,
                "error": error,
            },
        )
        return PaymentOutcome(
            subscription_id=subscription.subscription_id,
            success=False,
            state=SettlementState.PLAN_INACTIVE,
            reason=FailureReason.PLAN_INACTIVE.value,
            error=error,
        )

    def _complete_settlement(
        self,
        subscription: Subscription,
        plan: Plan,
        reference: SettlementReference,
        attempts: int,
        now: int,
    ) -> PaymentOutcome:
        updated = self._persist_settlement(
            subscription,
            {
                "last_payment": now,
                "next_payment": now + plan.interval_seconds,
                "failed_payments": 0,
                "total_payments": subscription.total_payments + 1,
            },
            reference,
        )
        logger.info(
            "Payment successful for subscription %s, transaction: %s",
            subscription.subscription_id,
            reference.reference,
        )
        self.events.emit(
            EventType.PAYMENT_PROCESSED,
            {
                **_subscription_payload(updated),
                "amount": plan.price,
                "currency": plan.currency,
                "settlement_reference": reference.reference,
                "payment_number": updated.total_payments,
            },
        )
        return PaymentOutcome(
            subscription_id=subscription.subscription_id,
            success=True,
            state=SettlementState.SETTLED,
            settlement_reference=reference.reference,
            attempts=attempts,
        )

    def _persist_settlement(
        self,
        subscription: Subscription,
        fields: Mapping[str, Any],
        reference: SettlementReference,
    ) -> Subscription:
        """Write a completed charge back; funds already moved, so the write is retried."""

        attempts = self.config.store_write_attempts
        last_error: Optional[BaseException] = None
        for attempt in range(1, attempts + 1):
            try:
                updated = self.subscriptions.update(subscription.subscription_id, fields)
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "Store write %s/%s failed after settlement %s for subscription %s: %s",
                    attempt,
                    attempts,
                    reference.reference,
                    subscription.subscription_id,
                    exc,
                )
                if attempt < attempts:
                    self.sleep(self.config.retry_delay(attempt))
                continue
            if updated is None:
                last_error = PersistenceError(f"Subscription {subscription.subscription_id} disappeared")
                break
            return updated

        logger.critical(
            "Unresolved settlement %s for subscription %s: funds moved but the subscription was not updated",
            reference.reference,
            subscription.subscription_id,
            extra={
                "subscription_id": subscription.subscription_id,
                "settlement_reference": reference.reference,
                "pending_fields": dict(fields),
            },
        )
        raise UnresolvedSettlementError(
            f"Settlement {reference.reference} recorded by the gateway but not persisted",
            detail={
                "subscription_id": subscription.subscription_id,
                "settlement_reference": reference.reference,
            },
        ) from last_error

    def _handle_exhausted(
        self,
        subscription: Subscription,
        plan: Plan,
        last_error: Optional[Exception],
        attempts: int,
        now: int,
    ) -> PaymentOutcome:
        failed_payments = subscription.failed_payments + 1
        error = str(last_error) if last_error else "Payment failed after all retry attempts"
        cancel = failed_payments >= self.config.cancellation_threshold

        if cancel:
            fields: Dict[str, Any] = {
                "failed_payments": failed_payments,
                "status": SubscriptionStatus.CANCELLED,
            }
        else:
            fields = {
                "failed_payments": failed_payments,
                "next_payment": max(subscription.next_payment, now + self.config.grace_period_seconds),
            }

        updated = self.subscriptions.update(
            subscription.subscription_id,
            fields,
            expected_status=SubscriptionStatus.ACTIVE,
        )
        if updated is None:
            logger.info(
                "Subscription %s changed status during settlement; leaving it untouched",
                subscription.subscription_id,
            )
            return PaymentOutcome(
                subscription_id=subscription.subscription_id,
                success=False,
                state=SettlementState.ERRORED,
                reason="subscription_changed",
                error=error,
                attempts=attempts,
            )

        if cancel:
            logger.warning(
                "Subscription %s cancelled due to %s failed payments",
                subscription.subscription_id,
                failed_payments,
            )
            if self.plans.adjust_subscribers(updated.creator_id, updated.plan_id, -1) is None:
                logger.warning(
                    "Could not release plan capacity for cancelled subscription %s",
                    subscription.subscription_id,
                )
            self.events.emit(
                EventType.SUBSCRIPTION_CANCELLED,
                {
                    **_subscription_payload(updated),
                    "reason": "payment_failures",
                    "error": error,
                },
            )
            return PaymentOutcome(
                subscription_id=subscription.subscription_id,
                success=False,
                state=SettlementState.CANCELLED,
                reason=FailureReason.GATEWAY_FAILURE.value,
                error=error,
                attempts=attempts,
            )

        self.events.emit(
            EventType.PAYMENT_FAILED,
            {
                **_subscription_payload(updated),
                "amount": plan.price,
                "currency": plan.currency,
                "reason": FailureReason.GATEWAY_FAILURE.value,
                "error": error,
            },
        )
        return PaymentOutcome(
            subscription_id=subscription.subscription_id,
            success=False,
            state=SettlementState.GRACE_EXTENDED,
            reason=FailureReason.GATEWAY_FAILURE.value,
            error=error,
            attempts=attempts,
        )

    def get_processing_stats(self) -> ProcessingStats:
        now = self.clock()
        day_ago = datetime.fromtimestamp(now - _ONE_DAY_SECONDS, tz=timezone.utc)
        return ProcessingStats(
            total_active=self.subscriptions.count(SubscriptionFilter(status=SubscriptionStatus.ACTIVE)),
            due_for_payment=self.subscriptions.count(
                SubscriptionFilter(status=SubscriptionStatus.ACTIVE, due_before=now)
            ),
            subscriptions_with_failures=self.subscriptions.count(SubscriptionFilter(min_failed_payments=1)),
            cancelled_in_last_day=self.subscriptions.count(
                SubscriptionFilter(status=SubscriptionStatus.CANCELLED, updated_since=day_ago)
            ),
        )


def _subscription_payload(subscription: Subscription) -> Dict[str, Any]:
    return {
        "subscription_id": subscription.subscription_id,
        "subscriber": subscription.subscriber_id,
        "creator": subscription.creator_id,
        "plan_id": subscription.plan_id,
        "status": subscription.status.value,
        "next_payment": subscription.next_payment,
        "last_payment": subscription.last_payment,
        "failed_payments": subscription.failed_payments,
        "total_payments": subscription.total_payments,
    }


__all__ = ["PaymentProcessor"]
