from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import pytest

from review_runner.config import Settings
from review_runner.delivery import DeliveryRequest, DeliveryResult, DeliveryTransportError, StubDeliveryAdapter
from review_runner.dispatch_queue import (
    NORMAL_PRIORITY,
    SEND_NOW_PRIORITY,
    DispatchQueueError,
    InMemoryDispatchQueue,
)
from review_runner.errors import InvalidStateError, NotFoundError, QueueInconsistencyError, ValidationError
from review_runner.models import (
    CreateBulkReviewRequests,
    CreateCampaign,
    CreateReviewRequest,
    DeliveryStatusUpdate,
    ScheduledRequestFilters,
)
from review_runner.scheduling import SchedulingService, is_valid_email, is_valid_phone, next_weekday_at
from review_runner.state_machine import RequestStateMachine
from review_runner.store import BusinessRecord, CustomerRecord, InMemoryReviewStore, StoreError
from review_runner.worker import DispatchWorker

# A Sunday.
NOW = datetime(2026, 10, 18, 9, 0, tzinfo=timezone.utc)
REVIEW_URL = "https://g.page/acme/review"


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@dataclass
class _Harness:
    store: InMemoryReviewStore
    queue: InMemoryDispatchQueue
    adapter: object
    state_machine: RequestStateMachine
    service: SchedulingService
    worker: DispatchWorker
    clock: _Clock
    settings: Settings


def _make_harness(*, store=None, queue=None, adapter=None) -> _Harness:
    settings = Settings()
    resolved_store = store or InMemoryReviewStore()
    resolved_queue = queue or InMemoryDispatchQueue()
    resolved_adapter = adapter or StubDeliveryAdapter()
    clock = _Clock(NOW)
    state_machine = RequestStateMachine(resolved_store, resolved_adapter, settings)
    service = SchedulingService(
        resolved_store,
        resolved_queue,
        state_machine,
        settings,
        send_time_policy=next_weekday_at(1, 14, 0),
        clock=clock,
    )
    resolved_store.upsert_business(
        BusinessRecord(business_id="biz-1", name="Acme Dental", google_review_url="https://g.page/acme/default")
    )
    resolved_store.upsert_business(BusinessRecord(business_id="biz-2", name="Other Co"))
    resolved_store.upsert_customer(
        CustomerRecord(
            customer_id="cust-1",
            business_id="biz-1",
            first_name="Ada",
            last_name="Lovelace",
            email="ada@example.com",
            phone="+447700900123",
        )
    )
    resolved_store.upsert_customer(
        CustomerRecord(customer_id="cust-2", business_id="biz-1", first_name="Grace", phone="+447700900456")
    )
    resolved_store.upsert_customer(
        CustomerRecord(customer_id="cust-3", business_id="biz-2", first_name="Alan", email="alan@example.com")
    )
    return _Harness(
        store=resolved_store,
        queue=resolved_queue,
        adapter=resolved_adapter,
        state_machine=state_machine,
        service=service,
        worker=DispatchWorker(resolved_queue, state_machine, settings, jitter=False),
        clock=clock,
        settings=settings,
    )


def _email_payload(
    *,
    customer_id: str = "cust-1",
    scheduled_for: datetime | None = None,
    subject: str | None = "How was your visit, {{firstName}}?",
    content: str = "Hi {{firstName}}, please review {{businessName}}: {{trackingUrl}}",
) -> CreateReviewRequest:
    return CreateReviewRequest(
        customer_id=customer_id,
        channel="EMAIL",
        message_content=content,
        subject=subject,
        review_url=REVIEW_URL,
        scheduled_for=scheduled_for,
    )


def _event_types(harness: _Harness, request_id: str) -> list[str]:
    return [event.event_type for event in harness.store.list_events(request_id)]


def test_scheduled_request_lifecycle_reschedule_send_now_and_fire() -> None:
    harness = _make_harness()
    created = harness.service.create("biz-1", _email_payload(scheduled_for=NOW + timedelta(days=1)))
    request_id = created.record.request_id

    assert created.record.status == "QUEUED"
    assert created.record.scheduled_for == NOW + timedelta(days=1)
    assert created.job.run_at == NOW + timedelta(days=1)
    assert created.job.priority == NORMAL_PRIORITY
    assert harness.adapter.sent == []

    rescheduled = harness.service.reschedule("biz-1", request_id, NOW + timedelta(days=2))
    assert rescheduled.record.scheduled_for == NOW + timedelta(days=2)
    assert harness.queue.get(request_id).run_at == NOW + timedelta(days=2)

    sent_now = harness.service.send_now("biz-1", request_id)
    assert sent_now.record.status == "QUEUED"
    assert sent_now.record.scheduled_for is None
    assert sent_now.job.priority == SEND_NOW_PRIORITY
    assert sent_now.job.run_at == NOW

    batch = harness.worker.run_once(NOW)

    assert batch.claimed == 1
    assert batch.sent == 1
    record = harness.service.get("biz-1", request_id)
    assert record.status == "SENT"
    assert harness.queue.get(request_id) is None
    assert len(harness.adapter.sent) == 1
    assert harness.adapter.sent[0].subject == "How was your visit, Ada?"
    assert _event_types(harness, request_id) == [
        "REQUEST_CREATED",
        "REQUEST_QUEUED",
        "REQUEST_RESCHEDULED",
        "REQUEST_QUEUED",
        "REQUEST_SENT",
    ]


def test_at_most_one_pending_job_per_request() -> None:
    harness = _make_harness()
    created = harness.service.create("biz-1", _email_payload(scheduled_for=NOW + timedelta(days=1)))
    request_id = created.record.request_id

    harness.service.reschedule("biz-1", request_id, NOW + timedelta(days=3))
    harness.service.reschedule("biz-1", request_id, NOW + timedelta(hours=5))
    harness.service.send_now("biz-1", request_id)

    assert [job.request_id for job in harness.queue.list_pending()] == [request_id]


def test_immediate_create_sends_inline() -> None:
    harness = _make_harness()

    outcome = harness.service.create("biz-1", _email_payload())

    assert outcome.job is None
    assert outcome.record.status == "SENT"
    assert outcome.record.scheduled_for is None
    assert harness.queue.list_pending() == []
    assert _event_types(harness, outcome.record.request_id) == ["REQUEST_CREATED", "REQUEST_SENT"]


def test_past_schedule_is_treated_as_immediate() -> None:
    harness = _make_harness()

    outcome = harness.service.create("biz-1", _email_payload(scheduled_for=NOW - timedelta(minutes=1)))

    assert outcome.record.status == "SENT"
    assert outcome.job is None


def test_immediate_create_defers_to_queue_when_provider_is_unreachable() -> None:
    class _UnreachableAdapter:
        def send(self, payload: DeliveryRequest) -> DeliveryResult:
            raise DeliveryTransportError("connection_error", "Connection error: refused")

    harness = _make_harness(adapter=_UnreachableAdapter())

    outcome = harness.service.create("biz-1", _email_payload())

    assert outcome.record.status == "QUEUED"
    assert outcome.job.priority == SEND_NOW_PRIORITY
    assert outcome.job.run_at == NOW
    assert _event_types(harness, outcome.record.request_id) == ["REQUEST_CREATED", "REQUEST_QUEUED"]


def test_immediate_create_defers_to_queue_when_the_adapter_crashes() -> None:
    class _ResetAdapter:
        def send(self, payload: DeliveryRequest) -> DeliveryResult:
            raise ConnectionResetError(104, "Connection reset by peer")

    harness = _make_harness(adapter=_ResetAdapter())

    outcome = harness.service.create("biz-1", _email_payload())

    request_id = outcome.record.request_id
    assert harness.store.get_request(request_id).status == "QUEUED"
    assert harness.queue.get(request_id).priority == SEND_NOW_PRIORITY
    [queued] = [event for event in harness.store.list_events(request_id) if event.event_type == "REQUEST_QUEUED"]
    assert queued.metadata["error_code"] == "ConnectionResetError"


def test_suppressed_contact_fails_at_fire_time_without_sending() -> None:
    harness = _make_harness()
    created = harness.service.create("biz-1", _email_payload(scheduled_for=NOW + timedelta(hours=1)))
    harness.store.add_suppression(
        business_id="biz-1",
        contact="ada@example.com",
        channel="EMAIL",
        reason="OPTED_OUT",
        source="user",
    )

    batch = harness.worker.run_once(NOW + timedelta(hours=1))

    assert batch.failed == 1
    record = harness.service.get("biz-1", created.record.request_id)
    assert record.status == "FAILED"
    assert record.error_message == "Contact is suppressed for EMAIL: OPTED_OUT"
    assert harness.adapter.sent == []
    assert harness.queue.get(created.record.request_id) is None


def test_firing_twice_sends_once() -> None:
    harness = _make_harness()
    created = harness.service.create("biz-1", _email_payload(scheduled_for=NOW + timedelta(hours=1)))
    request_id = created.record.request_id

    first = harness.state_machine.fire(request_id, now=NOW + timedelta(hours=1))
    second = harness.state_machine.fire(request_id, now=NOW + timedelta(hours=1))

    assert first.result == "sent"
    assert second.result == "skipped"
    assert len(harness.adapter.sent) == 1


class _ReschedulingQueue(InMemoryDispatchQueue):
    """Runs a hook right after jobs are claimed, before the worker fires them."""

    def __init__(self) -> None:
        super().__init__()
        self.after_claim = None

    def claim_due(self, now=None, *, limit=10):
        claimed = super().claim_due(now, limit=limit)
        if self.after_claim is not None:
            hook, self.after_claim = self.after_claim, None
            hook()
        return claimed


def test_claimed_job_does_not_send_early_after_a_reschedule() -> None:
    queue = _ReschedulingQueue()
    harness = _make_harness(queue=queue)
    due = NOW + timedelta(minutes=2)
    created = harness.service.create("biz-1", _email_payload(scheduled_for=due))
    request_id = created.record.request_id
    harness.clock.now = due
    queue.after_claim = lambda: harness.service.reschedule("biz-1", request_id, NOW + timedelta(hours=3))

    batch = harness.worker.run_once(due)

    assert batch.claimed == 1
    assert batch.skipped == 1
    assert harness.adapter.sent == []
    record = harness.store.get_request(request_id)
    assert record.status == "QUEUED"
    assert record.scheduled_for == NOW + timedelta(hours=3)
    job = harness.queue.get(request_id)
    assert job.run_at == NOW + timedelta(hours=3)
    assert job.attempts == 0

    later = harness.worker.run_once(NOW + timedelta(hours=3))
    assert later.sent == 1
    assert harness.store.get_request(request_id).status == "SENT"


def test_job_is_not_claimed_before_it_is_due() -> None:
    harness = _make_harness()
    harness.service.create("biz-1", _email_payload(scheduled_for=NOW + timedelta(hours=1)))

    assert harness.worker.run_once(NOW + timedelta(minutes=59)).claimed == 0
    assert harness.adapter.sent == []


def test_reschedule_rejects_past_and_far_future_times() -> None:
    harness = _make_harness()
    created = harness.service.create("biz-1", _email_payload(scheduled_for=NOW + timedelta(days=1)))
    request_id = created.record.request_id

    with pytest.raises(ValidationError, match="future"):
        harness.service.reschedule("biz-1", request_id, NOW)
    with pytest.raises(ValidationError, match="6 months"):
        harness.service.reschedule("biz-1", request_id, NOW + timedelta(days=200))

    assert harness.queue.get(request_id).run_at == NOW + timedelta(days=1)


def test_reschedule_requires_a_queued_scheduled_request() -> None:
    harness = _make_harness()
    immediate = harness.service.create("biz-1", _email_payload())
    scheduled = harness.service.create("biz-1", _email_payload(scheduled_for=NOW + timedelta(days=1)))
    harness.service.cancel("biz-1", scheduled.record.request_id)

    with pytest.raises(InvalidStateError) as sent_exc:
        harness.service.reschedule("biz-1", immediate.record.request_id, NOW + timedelta(days=1))
    with pytest.raises(InvalidStateError) as cancelled_exc:
        harness.service.reschedule("biz-1", scheduled.record.request_id, NOW + timedelta(days=1))

    assert sent_exc.value.current_status == "SENT"
    assert cancelled_exc.value.current_status == "CANCELLED"


def test_cancel_removes_job_and_rejects_a_second_cancel() -> None:
    harness = _make_harness()
    created = harness.service.create("biz-1", _email_payload(scheduled_for=NOW + timedelta(days=1)))
    request_id = created.record.request_id

    cancelled = harness.service.cancel("biz-1", request_id)

    assert cancelled.record.status == "CANCELLED"
    assert cancelled.record.error_message == "Cancelled by user"
    assert harness.queue.get(request_id) is None
    assert _event_types(harness, request_id)[-1] == "REQUEST_CANCELLED"

    with pytest.raises(InvalidStateError) as exc_info:
        harness.service.cancel("biz-1", request_id)
    assert exc_info.value.current_status == "CANCELLED"


class _FlakyQueue(InMemoryDispatchQueue):
    def __init__(self) -> None:
        super().__init__()
        self.fail_enqueue = False
        self.fail_replace = False
        self.fail_remove = False

    def enqueue(self, request_id, *, delay_seconds, priority=NORMAL_PRIORITY, now=None):
        if self.fail_enqueue:
            raise DispatchQueueError("queue unavailable")
        return super().enqueue(request_id, delay_seconds=delay_seconds, priority=priority, now=now)

    def replace(self, request_id, *, delay_seconds, priority=NORMAL_PRIORITY, now=None):
        if self.fail_replace:
            raise DispatchQueueError("queue unavailable")
        return super().replace(request_id, delay_seconds=delay_seconds, priority=priority, now=now)

    def remove(self, request_id):
        if self.fail_remove:
            raise DispatchQueueError("queue unavailable")
        return super().remove(request_id)


class _FlakyScheduleStore(InMemoryReviewStore):
    def __init__(self) -> None:
        super().__init__()
        self.fail_schedule_writes = False

    def update_request_if_status(self, request_id, *, expected_status, changes):
        if self.fail_schedule_writes and "scheduled_for" in changes and "status" not in changes:
            raise StoreError("database is locked")
        return super().update_request_if_status(request_id, expected_status=expected_status, changes=changes)


def test_cancelled_request_with_surviving_job_fires_as_no_op() -> None:
    queue = _FlakyQueue()
    harness = _make_harness(queue=queue)
    created = harness.service.create("biz-1", _email_payload(scheduled_for=NOW + timedelta(hours=1)))
    queue.fail_remove = True

    harness.service.cancel("biz-1", created.record.request_id)
    assert queue.get(created.record.request_id) is not None

    batch = harness.worker.run_once(NOW + timedelta(hours=1))

    assert batch.skipped == 1
    assert harness.adapter.sent == []
    assert harness.service.get("biz-1", created.record.request_id).status == "CANCELLED"
    assert queue.get(created.record.request_id) is None


class _RecordingStore(InMemoryReviewStore):
    def __init__(self) -> None:
        super().__init__()
        self.created_ids: list[str] = []

    def create_request(self, record):
        self.created_ids.append(record.request_id)
        return super().create_request(record)


def test_create_marks_request_failed_when_enqueue_fails() -> None:
    store = _RecordingStore()
    queue = _FlakyQueue()
    queue.fail_enqueue = True
    harness = _make_harness(store=store, queue=queue)

    with pytest.raises(QueueInconsistencyError):
        harness.service.create("biz-1", _email_payload(scheduled_for=NOW + timedelta(days=1)))

    [request_id] = store.created_ids
    record = store.get_request(request_id)
    assert record.status == "FAILED"
    assert record.error_message == "Failed to schedule dispatch job"
    assert _event_types(harness, request_id) == ["REQUEST_CREATED", "REQUEST_FAILED"]
    assert queue.list_pending() == []


def test_reschedule_restores_the_job_when_the_store_write_fails() -> None:
    store = _FlakyScheduleStore()
    harness = _make_harness(store=store)
    created = harness.service.create("biz-1", _email_payload(scheduled_for=NOW + timedelta(days=1)))
    request_id = created.record.request_id
    store.fail_schedule_writes = True

    with pytest.raises(QueueInconsistencyError):
        harness.service.reschedule("biz-1", request_id, NOW + timedelta(days=2))

    job = harness.queue.get(request_id)
    assert job.run_at == NOW + timedelta(days=1)
    assert job.priority == NORMAL_PRIORITY
    assert harness.service.get("biz-1", request_id).scheduled_for == NOW + timedelta(days=1)


def test_reschedule_leaves_everything_untouched_when_the_queue_fails() -> None:
    queue = _FlakyQueue()
    harness = _make_harness(queue=queue)
    created = harness.service.create("biz-1", _email_payload(scheduled_for=NOW + timedelta(days=1)))
    queue.fail_replace = True

    with pytest.raises(QueueInconsistencyError):
        harness.service.reschedule("biz-1", created.record.request_id, NOW + timedelta(days=2))

    assert harness.service.get("biz-1", created.record.request_id).scheduled_for == NOW + timedelta(days=1)
    assert queue.get(created.record.request_id).job_id == created.job.job_id


def test_send_now_restores_schedule_when_the_queue_fails() -> None:
    queue = _FlakyQueue()
    harness = _make_harness(queue=queue)
    created = harness.service.create("biz-1", _email_payload(scheduled_for=NOW + timedelta(days=1)))
    queue.fail_replace = True

    with pytest.raises(QueueInconsistencyError):
        harness.service.send_now("biz-1", created.record.request_id)

    record = harness.service.get("biz-1", created.record.request_id)
    assert record.status == "QUEUED"
    assert record.scheduled_for == NOW + timedelta(days=1)
    assert queue.get(created.record.request_id).job_id == created.job.job_id


def test_send_now_requires_queued_status() -> None:
    harness = _make_harness()
    sent = harness.service.create("biz-1", _email_payload())

    with pytest.raises(InvalidStateError):
        harness.service.send_now("biz-1", sent.record.request_id)


def test_requests_are_isolated_per_business() -> None:
    harness = _make_harness()
    created = harness.service.create("biz-1", _email_payload(scheduled_for=NOW + timedelta(days=1)))

    with pytest.raises(NotFoundError):
        harness.service.get("biz-2", created.record.request_id)
    with pytest.raises(NotFoundError):
        harness.service.cancel("biz-2", created.record.request_id)
    with pytest.raises(NotFoundError):
        harness.service.create("biz-1", _email_payload(customer_id="cust-3"))


def test_create_validation_errors() -> None:
    harness = _make_harness()

    with pytest.raises(NotFoundError):
        harness.service.create("biz-missing", _email_payload())
    with pytest.raises(NotFoundError):
        harness.service.create("biz-1", _email_payload(customer_id="cust-missing"))
    with pytest.raises(ValidationError, match="email address"):
        harness.service.create("biz-1", _email_payload(customer_id="cust-2"))
    with pytest.raises(ValidationError, match="subject"):
        harness.service.create("biz-1", _email_payload(subject=None))
    with pytest.raises(ValidationError, match="6 months"):
        harness.service.create("biz-1", _email_payload(scheduled_for=NOW + timedelta(days=184)))

    assert harness.adapter.sent == []
    assert harness.queue.list_pending() == []


def test_create_reports_content_warnings() -> None:
    harness = _make_harness()

    outcome = harness.service.create(
        "biz-1",
        CreateReviewRequest(
            customer_id="cust-2",
            channel="SMS",
            message_content="Hi {{firstName}} {{coupon.code}} " + "x" * 170,
            review_url=REVIEW_URL,
            scheduled_for=NOW + timedelta(hours=2),
        ),
    )

    assert len(outcome.warnings) == 2
    assert "segments" in outcome.warnings[0]
    assert outcome.warnings[1] == "Unknown placeholders will render empty: coupon.code"
    assert outcome.record.subject is None


def test_bulk_create_reports_partial_failures() -> None:
    harness = _make_harness()

    outcome = harness.service.create_bulk(
        "biz-1",
        CreateBulkReviewRequests(
            customer_ids=["cust-1", "cust-missing", "cust-2"],
            channel="SMS",
            message_content="Hi {{firstName}}, review us: {{trackingUrl}}",
            review_url=REVIEW_URL,
            scheduled_for=NOW + timedelta(hours=3),
        ),
    )

    assert outcome.kind == "bulk"
    assert [record.customer_id for record in outcome.successful] == ["cust-1", "cust-2"]
    assert [(item.customer_id, item.error_code) for item in outcome.failed] == [("cust-missing", "not_found")]
    assert len(harness.queue.list_pending()) == 2


class _FailingCreateStore(InMemoryReviewStore):
    def __init__(self, failing_customer_id: str) -> None:
        super().__init__()
        self.failing_customer_id = failing_customer_id

    def create_request(self, record):
        if record.customer_id == self.failing_customer_id:
            raise StoreError("db down")
        return super().create_request(record)


def test_bulk_create_keeps_going_when_the_store_fails_for_one_customer() -> None:
    harness = _make_harness(store=_FailingCreateStore("cust-1"))

    outcome = harness.service.create_bulk(
        "biz-1",
        CreateBulkReviewRequests(
            customer_ids=["cust-1", "cust-2"],
            channel="SMS",
            message_content="Hi {{firstName}}, review us: {{trackingUrl}}",
            review_url=REVIEW_URL,
        ),
    )

    assert [record.customer_id for record in outcome.successful] == ["cust-2"]
    assert outcome.successful[0].status == "SENT"
    assert [(item.customer_id, item.error_code, item.error) for item in outcome.failed] == [
        ("cust-1", "store_error", "db down")
    ]


def test_bulk_create_reports_unexpected_errors_per_item() -> None:
    class _ExplodingStore(InMemoryReviewStore):
        def create_request(self, record):
            if record.customer_id == "cust-2":
                raise KeyError("boom")
            return super().create_request(record)

    harness = _make_harness(store=_ExplodingStore())

    outcome = harness.service.create_bulk(
        "biz-1",
        CreateBulkReviewRequests(
            customer_ids=["cust-2", "cust-1"],
            channel="SMS",
            message_content="Hi {{firstName}}",
            review_url=REVIEW_URL,
            scheduled_for=NOW + timedelta(hours=1),
        ),
    )

    assert [record.customer_id for record in outcome.successful] == ["cust-1"]
    [failure] = outcome.failed
    assert failure.customer_id == "cust-2"
    assert failure.error_code == "internal_error"
    assert failure.error.startswith("KeyError")


def test_optimal_campaign_uses_the_send_time_policy_and_business_review_url() -> None:
    harness = _make_harness()

    outcome = harness.service.create_campaign(
        "biz-1",
        CreateCampaign(
            name="October follow-up",
            channel="EMAIL",
            customer_ids=["cust-1"],
            message_content="Hi {{firstName}}",
            subject="Thanks for visiting",
            scheduling_type="OPTIMAL",
        ),
    )

    expected = datetime(2026, 10, 20, 14, 0, tzinfo=timezone.utc)
    assert outcome.kind == "campaign"
    assert outcome.campaign_id.startswith("cmp_")
    assert outcome.scheduled_for == expected
    [record] = outcome.successful
    assert record.campaign_id == outcome.campaign_id
    assert record.scheduled_for == expected
    assert record.review_url == "https://g.page/acme/default"


def test_campaign_is_persisted_with_name_and_description() -> None:
    harness = _make_harness()

    outcome = harness.service.create_campaign(
        "biz-1",
        CreateCampaign(
            name="Spring follow-up",
            description="Customers seen in March",
            channel="EMAIL",
            customer_ids=["cust-1"],
            message_content="Hi {{firstName}}",
            subject="Thanks",
            scheduling_type="SCHEDULED",
            scheduled_for=NOW + timedelta(days=1),
        ),
    )

    campaign = harness.service.get_campaign("biz-1", outcome.campaign_id)
    assert outcome.campaign == campaign
    assert campaign.name == "Spring follow-up"
    assert campaign.description == "Customers seen in March"
    assert campaign.scheduling_type == "SCHEDULED"
    assert campaign.scheduled_for == NOW + timedelta(days=1)
    assert campaign.created_at == NOW
    with pytest.raises(NotFoundError):
        harness.service.get_campaign("biz-2", outcome.campaign_id)


def test_immediate_campaign_sends_to_every_customer() -> None:
    harness = _make_harness()

    outcome = harness.service.create_campaign(
        "biz-1",
        CreateCampaign(
            name="Blast",
            channel="SMS",
            customer_ids=["cust-1", "cust-2"],
            message_content="Hi {{firstName}}",
            review_url=REVIEW_URL,
        ),
    )

    assert [record.status for record in outcome.successful] == ["SENT", "SENT"]
    assert outcome.scheduled_for is None
    assert len(harness.adapter.sent) == 2


def test_campaign_without_any_review_url_is_rejected() -> None:
    harness = _make_harness()

    with pytest.raises(ValidationError):
        harness.service.create_campaign(
            "biz-2",
            CreateCampaign(
                name="No link",
                channel="EMAIL",
                customer_ids=["cust-3"],
                message_content="Hi",
                subject="Hello",
            ),
        )


def test_list_scheduled_paginates() -> None:
    harness = _make_harness()
    for hours in (3, 1, 2):
        harness.service.create("biz-1", _email_payload(scheduled_for=NOW + timedelta(hours=hours)))
    harness.service.create("biz-1", _email_payload())

    first_page = harness.service.list_scheduled("biz-1", ScheduledRequestFilters(page=1, limit=2))
    second_page = harness.service.list_scheduled("biz-1", ScheduledRequestFilters(page=2, limit=2))

    assert [record.scheduled_for for record in first_page.records] == [
        NOW + timedelta(hours=1),
        NOW + timedelta(hours=2),
    ]
    assert first_page.pagination.total_count == 3
    assert first_page.pagination.total_pages == 2
    assert first_page.pagination.has_next_page is True
    assert first_page.pagination.has_prev_page is False
    assert len(second_page.records) == 1
    assert second_page.pagination.has_next_page is False

    empty = harness.service.list_scheduled("biz-2", ScheduledRequestFilters())
    assert empty.records == []
    assert empty.pagination.total_pages == 0


def test_delivery_status_and_click_tracking() -> None:
    harness = _make_harness()
    outcome = harness.service.create("biz-1", _email_payload())

    delivered = harness.service.apply_delivery_status(
        DeliveryStatusUpdate(external_id=outcome.record.external_id, status="DELIVERED")
    )
    clicked = harness.service.track_click(outcome.record.tracking_uuid)

    assert delivered.status == "DELIVERED"
    assert clicked.status == "CLICKED"
    with pytest.raises(NotFoundError):
        harness.service.apply_delivery_status(DeliveryStatusUpdate(external_id="unknown", status="DELIVERED"))
    with pytest.raises(NotFoundError):
        harness.service.track_click("unknown-token")


def test_mark_completed_requires_a_clicked_request() -> None:
    harness = _make_harness()
    outcome = harness.service.create("biz-1", _email_payload())
    request_id = outcome.record.request_id

    with pytest.raises(InvalidStateError) as exc_info:
        harness.service.mark_completed("biz-1", request_id)
    assert exc_info.value.current_status == "SENT"

    harness.service.track_click(outcome.record.tracking_uuid)
    completed = harness.service.mark_completed("biz-1", request_id)

    assert completed.status == "COMPLETED"
    assert completed.completed_at is not None
    assert _event_types(harness, request_id)[-1] == "REQUEST_COMPLETED"
    with pytest.raises(NotFoundError):
        harness.service.mark_completed("biz-2", request_id)


def test_next_weekday_at() -> None:
    tuesday_policy = next_weekday_at(1, 14, 0)

    assert tuesday_policy(NOW) == datetime(2026, 10, 20, 14, 0, tzinfo=timezone.utc)
    assert tuesday_policy(datetime(2026, 10, 20, 13, 0, tzinfo=timezone.utc)) == datetime(
        2026, 10, 20, 14, 0, tzinfo=timezone.utc
    )
    assert tuesday_policy(datetime(2026, 10, 20, 14, 0, tzinfo=timezone.utc)) == datetime(
        2026, 10, 27, 14, 0, tzinfo=timezone.utc
    )
    with pytest.raises(ValueError):
        next_weekday_at(7)


def test_contact_validators() -> None:
    assert is_valid_email("ada@example.com")
    assert not is_valid_email("ada@example")
    assert not is_valid_email("not an email")
    assert is_valid_phone("+44 7700 900123")
    assert is_valid_phone("(020) 7946-0018")
    assert not is_valid_phone("12345")
    assert not is_valid_phone("+44 7700 abc")
