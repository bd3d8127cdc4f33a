from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone

import pytest

from reminder_delivery.delivery_queue import DeliveryQueue
from reminder_delivery.delivery_service import DeliveryRequest, DeliveryService
from reminder_delivery.delivery_store import InMemoryDeliveryStore
from reminder_delivery.escalation import EscalationEngine
from reminder_delivery.reminders import InMemoryReminderRepository
from reminder_delivery.results import Ok
from reminder_delivery.time_resolver import TimeResolver
from reminder_delivery.transport import StubTransport
from reminder_delivery.worker import DeliveryWorker, main


class _FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


def _make_worker(clock: _FakeClock, **kwargs: float) -> tuple[DeliveryWorker, DeliveryService, InMemoryDeliveryStore]:
    store = InMemoryDeliveryStore()
    reminders = InMemoryReminderRepository()
    service = DeliveryService(
        queue=DeliveryQueue(store, clock=clock),
        resolver=TimeResolver(clock=clock),
        transport=StubTransport(enabled=True, clock=clock),
        clock=clock,
        reminders=reminders,
        history_retention=timedelta(days=30),
    )
    engine = EscalationEngine(reminders=reminders, service=service, clock=clock)
    worker = DeliveryWorker(service=service, engine=engine, clock=clock, **kwargs)
    return worker, service, store


def _schedule(service: DeliveryService, reminder_id: str, scheduled_time: str) -> None:
    result = service.schedule_delivery(
        DeliveryRequest(
            reminder_id=reminder_id,
            recipient_id="U1",
            message="hello",
            timezone="UTC",
            scheduled_time=scheduled_time,
        )
    )
    assert isinstance(result, Ok)


def test_run_once_processes_due_items_and_scans() -> None:
    clock = _FakeClock()
    worker, service, store = _make_worker(clock)
    _schedule(service, "rem-1", "2024-06-01T12:01")
    clock.advance(minutes=1)

    summary, scan = worker.run_once()

    assert summary is not None and summary.successful == 1
    assert scan is not None and scan.checked == 0
    assert store.count_history("delivered") == 1


def test_history_is_pruned_at_most_once_per_interval() -> None:
    clock = _FakeClock()
    worker, service, store = _make_worker(clock)
    _schedule(service, "rem-old", "2024-06-01T12:01")
    clock.advance(minutes=1)
    worker.process_once()

    clock.advance(days=31)
    _schedule(service, "rem-new", "2024-07-02T12:02")
    clock.advance(minutes=1)
    worker.process_once()

    assert store.count_history("delivered") == 1
    assert [record.item.reminder_id for record in store.list_history("delivered")] == ["rem-new"]


def test_start_and_stop_threads() -> None:
    clock = _FakeClock()
    worker, service, store = _make_worker(clock, poll_interval=0.01, escalation_interval=0.01)
    _schedule(service, "rem-1", "2024-06-01T12:01")
    clock.advance(minutes=1)

    worker.start()
    try:
        deadline = time.monotonic() + 2.0
        while store.count_history("delivered") == 0 and time.monotonic() < deadline:
            time.sleep(0.01)
        assert worker.running
    finally:
        worker.stop()

    assert not worker.running
    assert store.count_history("delivered") == 1


def test_worker_rejects_non_positive_intervals() -> None:
    clock = _FakeClock()
    with pytest.raises(ValueError):
        _make_worker(clock, poll_interval=0)


def test_main_once_runs_a_single_cycle(capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["--once"]) == 0
    output = capsys.readouterr().out
    assert "deliveries:" in output
    assert "escalations:" in output
