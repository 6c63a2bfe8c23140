"""Interval scheduler driving the payment cycle and the maintenance job."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from threading import Event, Lock, Thread
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict

from .app.billing.models import PaymentOutcome, ProcessingStats
from .app.billing.processor import PaymentProcessor
from .app.webhooks.bus import EventBus
from .config import EngineConfig

logger = logging.getLogger(__name__)


class SchedulerStatus(BaseModel):
    is_running: bool
    cycle_in_progress: bool
    next_run_at: Optional[datetime] = None
    stats: Optional[ProcessingStats] = None
    metrics: Dict[str, Any] = {}

    model_config = ConfigDict(frozen=True)


class _IntervalWorker(Thread):
    def __init__(self, name: str, job: Callable[[], object], *, initial_delay: float, interval: float):
        super().__init__(name=name, daemon=True)
        self._job = job
        self._initial_delay = max(0.0, initial_delay)
        self._interval = max(1.0, interval)
        self._stop_event = Event()

    def stop(self) -> None:
        self._stop_event.set()

    def run(self) -> None:  # pragma: no cover - thread execution
        if self._stop_event.wait(self._initial_delay):
            return
        while not self._stop_event.is_set():
            try:
                self._job()
            except Exception:
                logger.exception("Scheduled job %s failed", self.name)
            if self._stop_event.wait(self._interval):
                break


def _fresh_metrics() -> Dict[str, Any]:
    return {
        "cycles_run": 0,
        "ticks_skipped": 0,
        "payments_succeeded": 0,
        "payments_failed": 0,
        "last_run_at": None,
        "last_success_at": None,
        "last_error": None,
        "last_maintenance_at": None,
    }


class PaymentScheduler:
    """Runs at most one payment cycle at a time, however the trigger fires.

    A tick that arrives while a cycle is in progress is dropped, not queued.
    ``stop`` never interrupts a cycle; it waits for it to finish.
    """

    def __init__(
        self,
        processor: PaymentProcessor,
        config: EngineConfig,
        *,
        events: Optional[EventBus] = None,
    ) -> None:
        self._processor = processor
        self._config = config
        self._events = events
        self._cycle_lock = Lock()
        self._state_lock = Lock()
        self._metrics_lock = Lock()
        self._workers: List[_IntervalWorker] = []
        self._running = False
        self._next_run_at: Optional[datetime] = None
        self._metrics = _fresh_metrics()

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        with self._state_lock:
            if self._running:
                logger.warning("Payment scheduler is already running")
                return
            if not self._config.scheduler_enabled:
                logger.info("Payment scheduler is disabled via configuration")
                return
            self._running = True

        logger.info(
            "Starting payment scheduler",
            extra={
                "cycle_interval_seconds": self._config.cycle_interval_seconds,
                "maintenance_interval_seconds": self._config.maintenance_interval_seconds,
            },
        )
        self.tick()

        with self._state_lock:
            if not self._running:
                return
            interval = self._config.cycle_interval_seconds
            self._workers = [
                _IntervalWorker("payment-cycle", self.tick, initial_delay=interval, interval=interval),
                _IntervalWorker(
                    "maintenance",
                    self.run_maintenance,
                    initial_delay=self._config.maintenance_interval_seconds,
                    interval=self._config.maintenance_interval_seconds,
                ),
            ]
            for worker in self._workers:
                worker.start()
            self._next_run_at = datetime.now(timezone.utc) + timedelta(seconds=interval)
        logger.info("Payment scheduler started successfully")

    def stop(self, timeout: Optional[float] = None) -> None:
        with self._state_lock:
            workers = list(self._workers)
            self._workers = []
            was_running = self._running
            self._running = False
            self._next_run_at = None
        for worker in workers:
            worker.stop()
        for worker in workers:
            worker.join(timeout=timeout)
        # A manual trigger may still hold the cycle lock; wait for it too.
        if self._cycle_lock.acquire(timeout=-1 if timeout is None else timeout):
            self._cycle_lock.release()
        else:
            logger.warning("Payment cycle still running after %ss shutdown wait", timeout)
        if was_running:
            logger.info("Payment scheduler stopped")

    def tick(self) -> bool:
        """Run one cycle unless another is in progress; returns whether it ran."""

        if not self._cycle_lock.acquire(blocking=False):
            logger.warning("Payment cycle already in progress; skipping tick")
            with self._metrics_lock:
                self._metrics["ticks_skipped"] += 1
            return False
        try:
            self._run_cycle()
        finally:
            self._cycle_lock.release()
        return True

    def process_due_now(self) -> bool:
        """Manual trigger; obeys the same overlap rule as a timer tick."""

        return self.tick()

    def _run_cycle(self) -> None:
        started_at = datetime.now(timezone.utc)
        with self._metrics_lock:
            self._metrics["last_run_at"] = started_at
        logger.info("Starting payment processing cycle")
        self._log_stats("Pre-processing stats")

        try:
            outcomes = self._processor.run_cycle()
        except Exception as exc:
            with self._metrics_lock:
                self._metrics["last_error"] = f"{type(exc).__name__}: {exc}"
            logger.exception("Error during payment processing cycle")
            return
        finally:
            if self._running:
                self._next_run_at = datetime.now(timezone.utc) + timedelta(
                    seconds=self._config.cycle_interval_seconds
                )

        self._record_outcomes(outcomes, completed_at=datetime.now(timezone.utc))
        self._log_stats("Post-processing stats")

    def _record_outcomes(self, outcomes: List[PaymentOutcome], *, completed_at: datetime) -> None:
        succeeded = sum(1 for outcome in outcomes if outcome.success)
        failed = len(outcomes) - succeeded
        with self._metrics_lock:
            self._metrics["cycles_run"] += 1
            self._metrics["payments_succeeded"] += succeeded
            self._metrics["payments_failed"] += failed
            self._metrics["last_success_at"] = completed_at
            self._metrics["last_error"] = None

        logger.info(
            "Payment processing cycle completed. Processed: %s, Successful: %s, Failed: %s",
            len(outcomes),
            succeeded,
            failed,
        )
        if failed:
            logger.warning(
                "Payment failures: %s",
                [
                    {"subscription_id": outcome.subscription_id, "state": outcome.state.value, "error": outcome.error}
                    for outcome in outcomes
                    if not outcome.success
                ],
            )

    def _log_stats(self, label: str) -> Optional[ProcessingStats]:
        try:
            stats = self._processor.get_processing_stats()
        except Exception:
            logger.exception("Error getting payment processor stats")
            return None
        logger.info("%s: %s", label, stats.model_dump())
        return stats

    def run_maintenance(self) -> None:
        """Low-frequency housekeeping: report billing and webhook health."""

        logger.info("Running scheduled maintenance")
        self._log_stats("Maintenance stats")
        if self._events is not None:
            webhook_stats = self._events.get_stats()
            logger.info("Webhook stats: %s", webhook_stats.model_dump())
            if webhook_stats.active_endpoints < webhook_stats.total_endpoints:
                logger.warning(
                    "%s webhook endpoints are disabled",
                    webhook_stats.total_endpoints - webhook_stats.active_endpoints,
                )
        with self._metrics_lock:
            self._metrics["last_maintenance_at"] = datetime.now(timezone.utc)

    def get_status(self) -> SchedulerStatus:
        stats: Optional[ProcessingStats]
        try:
            stats = self._processor.get_processing_stats()
        except Exception:
            logger.exception("Error getting payment processor stats")
            stats = None
        return SchedulerStatus(
            is_running=self._running,
            cycle_in_progress=self._cycle_lock.locked(),
            next_run_at=self._next_run_at,
            stats=stats,
            metrics=self.get_metrics(),
        )

    def get_metrics(self) -> Dict[str, Any]:
        with self._metrics_lock:
            snapshot = dict(self._metrics)
        for key in ("last_run_at", "last_success_at", "last_maintenance_at"):
            value = snapshot.get(key)
            snapshot[key] = value.isoformat() if value else None
        return snapshot


__all__ = ["PaymentScheduler", "SchedulerStatus"]
