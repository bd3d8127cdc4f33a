from __future__ import annotations

import argparse
import logging
import threading
from datetime import datetime, timedelta
from typing import Callable

from .clock import Clock, coerce_utc, now_utc
from .config import get_settings
from .delivery_service import DeliveryService, ProcessSummary
from .escalation import EscalationEngine, EscalationScanSummary
from .results import Failure, Ok
from .runtime import build_runtime

logger = logging.getLogger(__name__)

PRUNE_INTERVAL = timedelta(days=1)


class DeliveryWorker:
    """Periodic driver: one thread polls due deliveries, one scans escalations."""

    def __init__(
        self,
        *,
        service: DeliveryService,
        engine: EscalationEngine,
        poll_interval: float = 60.0,
        escalation_interval: float = 300.0,
        prune_interval: timedelta = PRUNE_INTERVAL,
        clock: Clock = now_utc,
    ) -> None:
        if poll_interval <= 0 or escalation_interval <= 0:
            raise ValueError("worker intervals must be positive")
        self._service = service
        self._engine = engine
        self._poll_interval = poll_interval
        self._escalation_interval = escalation_interval
        self._prune_interval = prune_interval
        self._clock = clock
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._last_prune: datetime | None = None

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def process_once(self) -> ProcessSummary | None:
        result = self._service.process_due_deliveries()
        if isinstance(result, Failure):
            logger.error("delivery cycle failed (%s): %s", result.code, result.error.message)
            return None
        self._maybe_prune()
        return result.value

    def scan_once(self) -> EscalationScanSummary | None:
        result = self._engine.scan()
        if isinstance(result, Failure):
            logger.error("escalation scan failed (%s): %s", result.code, result.error.message)
            return None
        return result.value

    def run_once(self) -> tuple[ProcessSummary | None, EscalationScanSummary | None]:
        return self.process_once(), self.scan_once()

    def _maybe_prune(self) -> None:
        now = coerce_utc(self._clock())
        if self._last_prune is not None and now - self._last_prune < self._prune_interval:
            return
        self._last_prune = now
        result = self._service.prune_history(now)
        if isinstance(result, Ok) and result.value:
            logger.info("history pruning removed %d records", result.value)

    def _loop(self, name: str, interval: float, cycle: Callable[[], object]) -> None:
        logger.info("%s loop started (interval %.0fs)", name, interval)
        while not self._stop.is_set():
            try:
                cycle()
            except Exception:
                logger.exception("%s cycle crashed", name)
            self._stop.wait(interval)
        logger.info("%s loop stopped", name)

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._threads = [
            threading.Thread(
                target=self._loop,
                args=("delivery", self._poll_interval, self.process_once),
                name="delivery-poller",
                daemon=True,
            ),
            threading.Thread(
                target=self._loop,
                args=("escalation", self._escalation_interval, self.scan_once),
                name="escalation-scanner",
                daemon=True,
            ),
        ]
        for thread in self._threads:
            thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run the reminder delivery and escalation loops.")
    parser.add_argument("--once", action="store_true", help="Run a single delivery cycle and escalation scan, then exit.")
    parser.add_argument("--poll-interval", type=float, default=None, help="Seconds between delivery cycles.")
    parser.add_argument("--escalation-interval", type=float, default=None, help="Seconds between escalation scans.")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    settings = get_settings()
    runtime = build_runtime(settings)
    worker = DeliveryWorker(
        service=runtime.service,
        engine=runtime.engine,
        poll_interval=args.poll_interval or settings.poll_interval_seconds,
        escalation_interval=args.escalation_interval or settings.escalation_scan_interval_seconds,
    )

    if args.once:
        summary, scan = worker.run_once()
        print(f"deliveries: {summary}")
        print(f"escalations: {scan}")
        return 0 if summary is not None and scan is not None else 1

    worker.start()
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        logger.info("shutting down")
    finally:
        worker.stop()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
