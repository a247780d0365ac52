from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from review_runner.dispatch_queue import (
    NORMAL_PRIORITY,
    SEND_NOW_PRIORITY,
    DuplicateJobError,
    InMemoryDispatchQueue,
    SqlAlchemyDispatchQueue,
    create_dispatch_queue,
)

NOW = datetime(2026, 10, 18, 9, 0, tzinfo=timezone.utc)


@pytest.fixture(params=["inmemory", "sqlite"])
def queue(request: pytest.FixtureRequest, tmp_path: Path):
    if request.param == "inmemory":
        instance = InMemoryDispatchQueue()
    else:
        instance = SqlAlchemyDispatchQueue(f"sqlite:///{tmp_path / 'dispatch.db'}")
    yield instance
    instance.close()


def test_enqueue_rejects_a_second_job_for_the_same_request(queue) -> None:
    queue.enqueue("rr_1", delay_seconds=60, now=NOW)

    with pytest.raises(DuplicateJobError) as exc_info:
        queue.enqueue("rr_1", delay_seconds=0, now=NOW)

    assert exc_info.value.request_id == "rr_1"
    assert len(queue.list_pending()) == 1


def test_replace_keeps_a_single_job_per_request(queue) -> None:
    first = queue.enqueue("rr_1", delay_seconds=3600, now=NOW)
    second = queue.replace("rr_1", delay_seconds=0, priority=SEND_NOW_PRIORITY, now=NOW)

    pending = queue.list_pending()
    assert [job.request_id for job in pending] == ["rr_1"]
    assert pending[0].job_id == second.job_id != first.job_id
    assert pending[0].priority == SEND_NOW_PRIORITY
    assert pending[0].run_at == NOW


def test_replace_creates_a_job_when_none_exists(queue) -> None:
    job = queue.replace("rr_new", delay_seconds=30, now=NOW)

    assert queue.get("rr_new") == job
    assert job.run_at == NOW + timedelta(seconds=30)
    assert job.priority == NORMAL_PRIORITY


def test_claim_due_skips_future_jobs_and_orders_by_priority(queue) -> None:
    queue.enqueue("rr_early", delay_seconds=0, now=NOW - timedelta(minutes=5))
    queue.enqueue("rr_urgent", delay_seconds=0, priority=SEND_NOW_PRIORITY, now=NOW)
    queue.enqueue("rr_later", delay_seconds=0, now=NOW - timedelta(minutes=1))
    queue.enqueue("rr_future", delay_seconds=600, now=NOW)

    claimed = queue.claim_due(NOW, limit=10)

    assert [job.request_id for job in claimed] == ["rr_urgent", "rr_early", "rr_later"]
    assert all(job.status == "processing" for job in claimed)
    assert all(job.claimed_at == NOW for job in claimed)
    assert queue.claim_due(NOW, limit=10) == []
    assert [job.request_id for job in queue.list_pending()] == ["rr_future"]


def test_claim_due_honours_limit(queue) -> None:
    for index in range(3):
        queue.enqueue(f"rr_{index}", delay_seconds=0, now=NOW - timedelta(seconds=index))

    assert len(queue.claim_due(NOW, limit=2)) == 2
    assert len(queue.claim_due(NOW, limit=2)) == 1


def test_complete_ignores_a_superseded_job_handle(queue) -> None:
    queue.enqueue("rr_1", delay_seconds=0, now=NOW)
    [claimed] = queue.claim_due(NOW)
    replacement = queue.replace("rr_1", delay_seconds=300, now=NOW)

    assert queue.complete(claimed) is False
    assert queue.get("rr_1") == replacement
    assert queue.complete(replacement) is True
    assert queue.get("rr_1") is None


def test_retry_increments_attempts_and_delays(queue) -> None:
    queue.enqueue("rr_1", delay_seconds=0, now=NOW)
    [claimed] = queue.claim_due(NOW)

    retried = queue.retry(claimed, delay_seconds=10, error="DeliveryTransportError: down", now=NOW)

    assert retried is not None
    assert retried.status == "pending"
    assert retried.attempts == 1
    assert retried.run_at == NOW + timedelta(seconds=10)
    assert retried.last_error == "DeliveryTransportError: down"
    assert retried.claimed_at is None
    assert queue.claim_due(NOW) == []
    assert [job.request_id for job in queue.claim_due(NOW + timedelta(seconds=10))] == ["rr_1"]


def test_retry_of_removed_job_returns_none(queue) -> None:
    queue.enqueue("rr_1", delay_seconds=0, now=NOW)
    [claimed] = queue.claim_due(NOW)
    queue.remove("rr_1")

    assert queue.retry(claimed, delay_seconds=5, error="boom", now=NOW) is None


def test_release_stale_returns_abandoned_claims(queue) -> None:
    queue.enqueue("rr_1", delay_seconds=0, now=NOW)
    queue.enqueue("rr_2", delay_seconds=0, now=NOW)
    queue.claim_due(NOW, limit=1)
    later = NOW + timedelta(minutes=10)
    queue.claim_due(later, limit=1)

    released = queue.release_stale(NOW + timedelta(minutes=5))

    assert released == 1
    assert len(queue.list_pending()) == 1


def test_remove_and_reset(queue) -> None:
    queue.enqueue("rr_1", delay_seconds=0, now=NOW)
    queue.enqueue("rr_2", delay_seconds=0, now=NOW)

    assert queue.remove("rr_1") is True
    assert queue.remove("rr_1") is False

    queue.reset()
    assert queue.list_pending() == []


def test_create_dispatch_queue_selects_backend(tmp_path: Path) -> None:
    assert isinstance(create_dispatch_queue(backend="inmemory", database_url=""), InMemoryDispatchQueue)

    durable = create_dispatch_queue(backend="postgres", database_url=f"sqlite:///{tmp_path / 'q.db'}")
    assert isinstance(durable, SqlAlchemyDispatchQueue)
    durable.close()

    with pytest.raises(RuntimeError, match="unsupported DISPATCH_QUEUE_BACKEND"):
        create_dispatch_queue(backend="redis", database_url="")
    with pytest.raises(RuntimeError, match="DATABASE_URL is required"):
        create_dispatch_queue(backend="postgres", database_url="")
