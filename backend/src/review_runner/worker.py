"""Long-running consumer for the dispatch queue."""

from __future__ import annotations

import argparse
import logging
import random
import signal
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Sequence

from .config import Settings, get_settings
from .delivery import DeliveryAdapterError
from .dispatch_queue import DispatchJob, DispatchQueue
from .runtime import build_runtime
from .state_machine import RequestStateMachine
from .store import StoreError

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class WorkerBatchResult:
    claimed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    retried: int = 0
    gave_up: int = 0


class DispatchWorker:
    """Claims due jobs and fires them one at a time."""

    def __init__(
        self,
        queue: DispatchQueue,
        state_machine: RequestStateMachine,
        settings: Settings,
        *,
        jitter: bool = True,
    ) -> None:
        self._queue = queue
        self._state_machine = state_machine
        self._settings = settings
        self._jitter = jitter

    def retry_delay(self, attempts: int) -> float:
        base_delay = min(
            self._settings.worker_retry_base_seconds * (2 ** max(0, attempts)),
            self._settings.worker_retry_max_seconds,
        )
        if not self._jitter:
            return base_delay
        return base_delay + random.uniform(0, min(self._settings.worker_retry_max_seconds / 10, base_delay * 0.1))

    def run_once(self, now: datetime | None = None) -> WorkerBatchResult:
        current = now or _now_utc()
        jobs = self._queue.claim_due(current, limit=max(1, self._settings.worker_batch_size))
        counts = {"sent": 0, "failed": 0, "skipped": 0, "retried": 0, "gave_up": 0}
        for job in jobs:
            counts[self._process(job, current)] += 1
        result = WorkerBatchResult(claimed=len(jobs), **counts)
        if jobs:
            logger.info("dispatch.worker.batch_complete", extra=result.__dict__)
        return result

    def _process(self, job: DispatchJob, now: datetime) -> str:
        try:
            outcome = self._state_machine.fire(job.request_id, now=now)
        except (DeliveryAdapterError, StoreError) as exc:
            return self._retry_or_give_up(job, now, exc)
        except Exception as exc:
            logger.exception("dispatch.worker.fire_crashed", extra={"request_id": job.request_id})
            return self._retry_or_give_up(job, now, exc)

        if outcome.reason == "not_due" and outcome.record is not None and outcome.record.scheduled_for is not None:
            # Rescheduled after this job was claimed.
            delay = (outcome.record.scheduled_for - now).total_seconds()
            if self._queue.retry(job, delay_seconds=delay, error="not_due", now=now) is not None:
                logger.warning("dispatch.worker.requeued_not_due", extra={"request_id": job.request_id})
            return outcome.result

        self._queue.complete(job)
        logger.info(
            "dispatch.worker.fired",
            extra={"request_id": job.request_id, "result": outcome.result, "attempt": job.attempts},
        )
        return outcome.result

    def _retry_or_give_up(self, job: DispatchJob, now: datetime, exc: Exception) -> str:
        error = f"{type(exc).__name__}: {exc}"
        next_attempt = job.attempts + 1
        if next_attempt >= max(1, self._settings.worker_max_attempts):
            logger.error(
                "dispatch.worker.gave_up",
                extra={"request_id": job.request_id, "attempt": next_attempt, "error": error},
            )
            self._state_machine.fail(job.request_id, f"Delivery failed after {next_attempt} attempts: {exc}")
            self._queue.complete(job)
            return "gave_up"

        delay = self.retry_delay(job.attempts)
        logger.warning(
            "dispatch.worker.retry",
            extra={
                "request_id": job.request_id,
                "attempt": next_attempt,
                "delay_seconds": round(delay, 3),
                "error": error,
            },
        )
        if self._queue.retry(job, delay_seconds=delay, error=error, now=now) is None:
            logger.warning("dispatch.worker.retry_superseded", extra={"request_id": job.request_id})
        return "retried"

    def run_forever(self, stop_event: threading.Event) -> None:
        interval = max(0.05, self._settings.worker_poll_interval_seconds)
        lease = timedelta(seconds=max(1, self._settings.worker_lease_seconds))
        logger.info("dispatch.worker.started", extra={"poll_interval_seconds": interval})
        try:
            while not stop_event.is_set():
                try:
                    now = _now_utc()
                    released = self._queue.release_stale(now - lease)
                    if released:
                        logger.warning("dispatch.worker.released_stale", extra={"count": released})
                    result = self.run_once(now)
                except Exception:
                    logger.exception("dispatch.worker.loop_failed")
                    stop_event.wait(interval)
                    continue
                if result.claimed < self._settings.worker_batch_size:
                    stop_event.wait(interval)
        finally:
            logger.info("dispatch.worker.stopped")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Fire due review request dispatch jobs.")
    parser.add_argument("--once", action="store_true", help="Process one batch of due jobs and exit.")
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=None,
        help="Seconds to wait between polls when the queue is idle.",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    settings = get_settings()
    if args.poll_interval is not None:
        settings = Settings(**{**settings.__dict__, "worker_poll_interval_seconds": args.poll_interval})

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    runtime = build_runtime(settings)
    worker = DispatchWorker(runtime.queue, runtime.state_machine, settings)
    try:
        if args.once:
            result = worker.run_once()
            logger.info("dispatch.worker.once", extra=result.__dict__)
            return 0

        stop_event = threading.Event()

        def _handle_signal(signum, _frame) -> None:
            logger.info("dispatch.worker.signal", extra={"signal": signum})
            stop_event.set()

        signal.signal(signal.SIGINT, _handle_signal)
        signal.signal(signal.SIGTERM, _handle_signal)
        worker.run_forever(stop_event)
        return 0
    finally:
        runtime.close()


if __name__ == "__main__":  # pragma: no cover - module entrypoint
    raise SystemExit(main())
