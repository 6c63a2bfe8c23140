from __future__ import annotations

import threading
from typing import List

from subcycle.app.billing import PaymentOutcome, ProcessingStats, SettlementState
from subcycle.config import EngineConfig
from subcycle.scheduler import PaymentScheduler


class BlockingProcessor:
    def __init__(self) -> None:
        self.started = threading.Event()
        self.release = threading.Event()
        self.calls = 0

    def run_cycle(self) -> List[PaymentOutcome]:
        self.calls += 1
        self.started.set()
        self.release.wait(timeout=5)
        return [PaymentOutcome(subscription_id="sub_1", success=True, state=SettlementState.SETTLED)]

    def get_processing_stats(self) -> ProcessingStats:
        return ProcessingStats(total_active=1, due_for_payment=1)


class StaticProcessor:
    def __init__(self, outcomes=None, error: Exception | None = None) -> None:
        self.outcomes = outcomes or []
        self.error = error
        self.calls = 0

    def run_cycle(self) -> List[PaymentOutcome]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.outcomes)

    def get_processing_stats(self) -> ProcessingStats:
        return ProcessingStats()


def test_overlapping_tick_is_skipped():
    processor = BlockingProcessor()
    scheduler = PaymentScheduler(processor, EngineConfig())

    first = threading.Thread(target=scheduler.tick)
    first.start()
    assert processor.started.wait(timeout=5)

    assert scheduler.tick() is False
    assert scheduler.get_status().cycle_in_progress is True

    processor.release.set()
    first.join(timeout=5)

    assert processor.calls == 1
    metrics = scheduler.get_metrics()
    assert metrics["ticks_skipped"] == 1
    assert metrics["cycles_run"] == 1


def test_manual_trigger_obeys_overlap_rule():
    processor = BlockingProcessor()
    scheduler = PaymentScheduler(processor, EngineConfig())

    worker = threading.Thread(target=scheduler.process_due_now)
    worker.start()
    assert processor.started.wait(timeout=5)

    assert scheduler.process_due_now() is False

    processor.release.set()
    worker.join(timeout=5)
    assert scheduler.process_due_now() is True
    assert processor.calls == 2


def test_cycle_error_is_recorded_and_next_tick_runs():
    processor = StaticProcessor(error=RuntimeError("store offline"))
    scheduler = PaymentScheduler(processor, EngineConfig())

    assert scheduler.tick() is True
    metrics = scheduler.get_metrics()
    assert metrics["last_error"] == "RuntimeError: store offline"
    assert metrics["cycles_run"] == 0

    processor.error = None
    assert scheduler.tick() is True
    assert scheduler.get_metrics()["last_error"] is None


def test_outcomes_are_tallied():
    outcomes = [
        PaymentOutcome(subscription_id="a", success=True, state=SettlementState.SETTLED),
        PaymentOutcome(subscription_id="b", success=False, state=SettlementState.GRACE_EXTENDED, error="declined"),
        PaymentOutcome(subscription_id="c", success=False, state=SettlementState.CANCELLED, error="declined"),
    ]
    scheduler = PaymentScheduler(StaticProcessor(outcomes), EngineConfig())

    scheduler.tick()

    metrics = scheduler.get_metrics()
    assert metrics["payments_succeeded"] == 1
    assert metrics["payments_failed"] == 2
    assert metrics["last_success_at"] is not None


def test_start_runs_first_cycle_immediately_and_stop_is_clean():
    processor = StaticProcessor()
    scheduler = PaymentScheduler(processor, EngineConfig(cycle_interval_seconds=3600))

    scheduler.start()
    try:
        assert processor.calls == 1
        assert scheduler.is_running is True
        status = scheduler.get_status()
        assert status.next_run_at is not None
    finally:
        scheduler.stop(timeout=5)

    assert scheduler.is_running is False
    assert scheduler.get_status().next_run_at is None


def test_start_twice_is_a_no_op():
    processor = StaticProcessor()
    scheduler = PaymentScheduler(processor, EngineConfig(cycle_interval_seconds=3600))

    scheduler.start()
    try:
        scheduler.start()
        assert processor.calls == 1
    finally:
        scheduler.stop(timeout=5)


def test_disabled_scheduler_does_not_start():
    processor = StaticProcessor()
    scheduler = PaymentScheduler(processor, EngineConfig(scheduler_enabled=False))

    scheduler.start()

    assert processor.calls == 0
    assert scheduler.is_running is False


def test_maintenance_records_timestamp():
    scheduler = PaymentScheduler(StaticProcessor(), EngineConfig())

    scheduler.run_maintenance()

    assert scheduler.get_metrics()["last_maintenance_at"] is not None


def test_stop_waits_for_in_flight_cycle():
    processor = BlockingProcessor()
    scheduler = PaymentScheduler(processor, EngineConfig())

    cycle = threading.Thread(target=scheduler.tick)
    cycle.start()
    assert processor.started.wait(timeout=5)

    stopper = threading.Thread(target=scheduler.stop)
    stopper.start()
    stopper.join(timeout=0.2)
    assert stopper.is_alive()
    assert scheduler.get_metrics()["cycles_run"] == 0

    processor.release.set()
    cycle.join(timeout=5)
    stopper.join(timeout=5)

    assert not stopper.is_alive()
    assert scheduler.get_metrics()["cycles_run"] == 1
    assert scheduler.get_status().cycle_in_progress is False
