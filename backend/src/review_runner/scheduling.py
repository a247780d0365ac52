from __future__ import annotations

import logging
import math
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable

from .config import Settings
from .delivery import DeliveryAdapterError
from .dispatch_queue import (
    NORMAL_PRIORITY,
    SEND_NOW_PRIORITY,
    DispatchJob,
    DispatchQueue,
    DispatchQueueError,
)
from .errors import (
    InvalidStateError,
    NotFoundError,
    QueueInconsistencyError,
    ReviewRunnerError,
    ValidationError,
)
from .models import (
    Channel,
    CreateBulkReviewRequests,
    CreateCampaign,
    CreateReviewRequest,
    DeliveryStatusUpdate,
    PaginationInfo,
    ScheduledRequestFilters,
)
from .state_machine import RequestStateMachine
from .store import (
    BusinessRecord,
    CampaignRecord,
    CustomerRecord,
    EventRecord,
    ReviewRequestRecord,
    ReviewStore,
    ScheduledQuery,
    StoreError,
    new_request_id,
    new_tracking_uuid,
)
from .templating import KNOWN_VARIABLES, find_placeholders, sms_segment_count

logger = logging.getLogger(__name__)

SendTimePolicy = Callable[[datetime], datetime]

CANCELLED_BY_USER = "Cancelled by user"

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_PHONE_RE = re.compile(r"^\+?[0-9 ()\-]+$")


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def next_weekday_at(weekday: int = 1, hour: int = 14, minute: int = 0) -> SendTimePolicy:
    """Return a policy picking the next ``weekday`` (Monday is 0) at ``hour:minute`` UTC."""
    if not 0 <= weekday <= 6:
        raise ValueError("weekday must be between 0 and 6")

    def _policy(now: datetime) -> datetime:
        current = _coerce_utc(now)
        candidate = current.replace(hour=hour, minute=minute, second=0, microsecond=0)
        candidate += timedelta(days=(weekday - current.weekday()) % 7)
        if candidate <= current:
            candidate += timedelta(days=7)
        return candidate

    return _policy


def is_valid_email(value: str) -> bool:
    return bool(_EMAIL_RE.match(value.strip()))


def is_valid_phone(value: str) -> bool:
    normalized = value.strip()
    if not _PHONE_RE.match(normalized):
        return False
    digits = sum(1 for ch in normalized if ch.isdigit())
    return 7 <= digits <= 15


@dataclass(frozen=True)
class CreateOutcome:
    record: ReviewRequestRecord
    job: DispatchJob | None = None
    warnings: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class BulkItemError:
    customer_id: str
    error_code: str
    error: str


@dataclass(frozen=True)
class BulkOutcome:
    kind: str
    successful: list[ReviewRequestRecord]
    failed: list[BulkItemError]
    warnings: list[str] = field(default_factory=list)
    campaign_id: str | None = None
    scheduled_for: datetime | None = None
    campaign: CampaignRecord | None = None


@dataclass(frozen=True)
class ActionOutcome:
    record: ReviewRequestRecord
    job: DispatchJob | None = None


@dataclass(frozen=True)
class ScheduledListing:
    records: list[ReviewRequestRecord]
    pagination: PaginationInfo


class SchedulingService:
    """Create, reschedule, cancel and send-now operations on review requests.

    Each operation keeps the review request row and its dispatch job in step.
    When one side fails after the other succeeded, the succeeded side is rolled
    back and ``QueueInconsistencyError`` is raised.
    """

    def __init__(
        self,
        store: ReviewStore,
        queue: DispatchQueue,
        state_machine: RequestStateMachine,
        settings: Settings,
        *,
        send_time_policy: SendTimePolicy | None = None,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        self._store = store
        self._queue = queue
        self._state_machine = state_machine
        self._settings = settings
        self._send_time_policy = send_time_policy or next_weekday_at()
        self._clock = clock

    @property
    def horizon(self) -> timedelta:
        return timedelta(days=self._settings.schedule_horizon_days)

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create(
        self,
        business_id: str,
        payload: CreateReviewRequest,
        *,
        campaign_id: str | None = None,
    ) -> CreateOutcome:
        business = self._require_business(business_id)
        now = self._clock()
        customer = self._require_customer(business_id, payload.customer_id)
        self._validate_contact(customer, payload.channel)
        self._validate_subject(payload.channel, payload.subject)
        scheduled_for = self._resolve_create_time(payload.scheduled_for, now)
        warnings = self._content_warnings(payload.channel, payload.message_content, payload.subject)

        tracking_uuid = new_tracking_uuid()
        record = ReviewRequestRecord(
            request_id=new_request_id(),
            business_id=business_id,
            customer_id=customer.customer_id,
            campaign_id=campaign_id,
            channel=payload.channel,
            message_content=payload.message_content,
            subject=payload.subject if payload.channel == "EMAIL" else None,
            review_url=payload.review_url,
            tracking_uuid=tracking_uuid,
            tracking_url=f"{self._settings.app_base_url.rstrip('/')}/r/{tracking_uuid}",
            status="QUEUED",
            scheduled_for=scheduled_for,
            created_at=now,
            updated_at=now,
        )
        self._store.create_request(record)
        self._append_event(
            record,
            "REQUEST_CREATED",
            f"Review request created for {business.name}",
            {"channel": record.channel, "scheduled_for": _iso(scheduled_for), "campaign_id": campaign_id},
        )
        logger.info(
            "scheduling.create",
            extra={"request_id": record.request_id, "business_id": business_id, "scheduled": scheduled_for is not None},
        )

        if scheduled_for is None:
            return self._send_immediately(record, warnings)

        delay_seconds = (scheduled_for - now).total_seconds()
        job = self._enqueue_or_compensate(record, delay_seconds=delay_seconds, priority=NORMAL_PRIORITY, now=now)
        self._append_event(
            record,
            "REQUEST_QUEUED",
            f"Scheduled for {scheduled_for.isoformat()}",
            {"run_at": _iso(job.run_at), "priority": job.priority},
        )
        return CreateOutcome(record=record, job=job, warnings=warnings)

    def create_bulk(self, business_id: str, payload: CreateBulkReviewRequests) -> BulkOutcome:
        self._require_business(business_id)
        successful, failed, warnings = self._create_many(
            business_id,
            payload.customer_ids,
            channel=payload.channel,
            message_content=payload.message_content,
            subject=payload.subject,
            review_url=payload.review_url,
            scheduled_for=payload.scheduled_for,
            campaign_id=None,
        )
        return BulkOutcome(kind="bulk", successful=successful, failed=failed, warnings=warnings)

    def create_campaign(self, business_id: str, payload: CreateCampaign) -> BulkOutcome:
        business = self._require_business(business_id)
        review_url = payload.review_url or business.google_review_url
        if not review_url:
            raise ValidationError("review_url is required when the business has no Google review URL")

        if payload.scheduling_type == "SCHEDULED":
            scheduled_for = payload.scheduled_for
        elif payload.scheduling_type == "OPTIMAL":
            scheduled_for = self._send_time_policy(self._clock())
        else:
            scheduled_for = None

        campaign = self._store.create_campaign(
            CampaignRecord(
                campaign_id=f"cmp_{uuid.uuid4().hex}",
                business_id=business_id,
                name=payload.name,
                description=payload.description,
                channel=payload.channel,
                scheduling_type=payload.scheduling_type,
                scheduled_for=scheduled_for,
                created_at=self._clock(),
            )
        )
        campaign_id = campaign.campaign_id
        logger.info(
            "scheduling.campaign.create",
            extra={
                "campaign_id": campaign_id,
                "business_id": business_id,
                "campaign_name": campaign.name,
                "scheduling_type": payload.scheduling_type,
                "customer_count": len(payload.customer_ids),
            },
        )
        successful, failed, warnings = self._create_many(
            business_id,
            payload.customer_ids,
            channel=payload.channel,
            message_content=payload.message_content,
            subject=payload.subject,
            review_url=review_url,
            scheduled_for=scheduled_for,
            campaign_id=campaign_id,
        )
        return BulkOutcome(
            kind="campaign",
            successful=successful,
            failed=failed,
            warnings=warnings,
            campaign_id=campaign_id,
            scheduled_for=scheduled_for,
            campaign=campaign,
        )

    # ------------------------------------------------------------------
    # Overrides on a pending request
    # ------------------------------------------------------------------

    def reschedule(self, business_id: str, request_id: str, new_time: datetime) -> ActionOutcome:
        record = self.get(business_id, request_id)
        if record.status != "QUEUED" or record.scheduled_for is None:
            raise InvalidStateError(
                f"only scheduled requests in QUEUED status can be rescheduled (status: {record.status})",
                current_status=record.status,
            )
        now = self._clock()
        target = _coerce_utc(new_time)
        if target <= now:
            raise ValidationError("scheduled_for must be in the future")
        if target > now + self.horizon:
            raise ValidationError("scheduled_for cannot be more than 6 months in the future")

        previous_job = self._queue.get(request_id)
        try:
            job = self._queue.replace(
                request_id,
                delay_seconds=(target - now).total_seconds(),
                priority=NORMAL_PRIORITY,
                now=now,
            )
        except DispatchQueueError as exc:
            logger.error("scheduling.reschedule.queue_failed", extra={"request_id": request_id}, exc_info=True)
            raise QueueInconsistencyError("failed to update the dispatch queue; the request was not changed") from exc

        try:
            updated = self._store.update_request_if_status(
                request_id,
                expected_status="QUEUED",
                changes={"scheduled_for": target},
            )
        except StoreError as exc:
            self._restore_job(request_id, previous_job, now)
            raise QueueInconsistencyError("failed to save the new schedule; the dispatch job was restored") from exc

        if updated is None:
            self._restore_job(request_id, previous_job, now)
            current = self.get(business_id, request_id)
            raise InvalidStateError(
                f"request changed status while rescheduling (status: {current.status})",
                current_status=current.status,
            )

        self._append_event(
            updated,
            "REQUEST_RESCHEDULED",
            f"Rescheduled to {target.isoformat()}",
            {"previous_scheduled_for": _iso(record.scheduled_for), "scheduled_for": _iso(target)},
            source="user",
        )
        logger.info("scheduling.reschedule", extra={"request_id": request_id, "run_at": _iso(job.run_at)})
        return ActionOutcome(record=updated, job=job)

    def cancel(self, business_id: str, request_id: str) -> ActionOutcome:
        record = self.get(business_id, request_id)
        if record.status != "QUEUED":
            raise InvalidStateError(
                f"only QUEUED requests can be cancelled (status: {record.status})",
                current_status=record.status,
            )
        updated = self._state_machine.transition(
            record,
            "CANCELLED",
            changes={"error_message": CANCELLED_BY_USER},
            event_type="REQUEST_CANCELLED",
            source="user",
            description=CANCELLED_BY_USER,
        )
        if updated is None:
            current = self.get(business_id, request_id)
            raise InvalidStateError(
                f"request changed status while cancelling (status: {current.status})",
                current_status=current.status,
            )

        try:
            self._queue.remove(request_id)
        except DispatchQueueError:
            # A job that survives fires as a no-op against the CANCELLED status.
            logger.warning("scheduling.cancel.queue_remove_failed", extra={"request_id": request_id}, exc_info=True)
        logger.info("scheduling.cancel", extra={"request_id": request_id})
        return ActionOutcome(record=updated)

    def send_now(self, business_id: str, request_id: str) -> ActionOutcome:
        record = self.get(business_id, request_id)
        if record.status != "QUEUED":
            raise InvalidStateError(
                f"only QUEUED requests can be sent now (status: {record.status})",
                current_status=record.status,
            )
        updated = self._store.update_request_if_status(
            request_id,
            expected_status="QUEUED",
            changes={"scheduled_for": None},
        )
        if updated is None:
            current = self.get(business_id, request_id)
            raise InvalidStateError(
                f"request changed status before send-now (status: {current.status})",
                current_status=current.status,
            )

        now = self._clock()
        try:
            job = self._queue.replace(request_id, delay_seconds=0, priority=SEND_NOW_PRIORITY, now=now)
        except DispatchQueueError as exc:
            logger.error("scheduling.send_now.queue_failed", extra={"request_id": request_id}, exc_info=True)
            restored = self._store.update_request_if_status(
                request_id,
                expected_status="QUEUED",
                changes={"scheduled_for": record.scheduled_for},
            )
            if restored is None:
                logger.error("scheduling.send_now.rollback_skipped", extra={"request_id": request_id})
            raise QueueInconsistencyError("failed to queue the immediate send; the schedule was restored") from exc

        self._append_event(
            updated,
            "REQUEST_QUEUED",
            "Send now requested",
            {"previous_scheduled_for": _iso(record.scheduled_for), "priority": job.priority},
            source="user",
        )
        logger.info("scheduling.send_now", extra={"request_id": request_id})
        return ActionOutcome(record=updated, job=job)

    # ------------------------------------------------------------------
    # Reads and provider callbacks
    # ------------------------------------------------------------------

    def get(self, business_id: str, request_id: str) -> ReviewRequestRecord:
        record = self._store.get_request(request_id, business_id=business_id)
        if record is None:
            raise NotFoundError(f"review request not found: {request_id}")
        return record

    def list_events(self, business_id: str, request_id: str) -> list[EventRecord]:
        self.get(business_id, request_id)
        return self._store.list_events(request_id)

    def list_scheduled(self, business_id: str, filters: ScheduledRequestFilters) -> ScheduledListing:
        records, total = self._store.list_scheduled(
            ScheduledQuery(
                business_id=business_id,
                channel=filters.channel,
                scheduled_after=filters.scheduled_after,
                scheduled_before=filters.scheduled_before,
                offset=(filters.page - 1) * filters.limit,
                limit=filters.limit,
            )
        )
        total_pages = math.ceil(total / filters.limit) if total else 0
        return ScheduledListing(
            records=records,
            pagination=PaginationInfo(
                page=filters.page,
                limit=filters.limit,
                total_count=total,
                total_pages=total_pages,
                has_next_page=filters.page < total_pages,
                has_prev_page=filters.page > 1,
            ),
        )

    def apply_delivery_status(self, update: DeliveryStatusUpdate) -> ReviewRequestRecord | None:
        record = self._store.get_request_by_external_id(update.external_id)
        if record is None:
            raise NotFoundError(f"no review request for external id: {update.external_id}")
        metadata: dict[str, object] = {"external_id": update.external_id}
        if update.reason:
            metadata["reason"] = update.reason
        return self._state_machine.apply_provider_status(
            record.request_id,
            update.status,
            occurred_at=update.occurred_at,
            metadata=metadata,
        )

    def track_click(self, tracking_uuid: str) -> ReviewRequestRecord:
        record = self._state_machine.record_click(tracking_uuid)
        if record is None:
            raise NotFoundError("tracking link not found")
        return record

    def mark_completed(self, business_id: str, request_id: str) -> ReviewRequestRecord:
        record = self.get(business_id, request_id)
        if record.status != "CLICKED":
            raise InvalidStateError(
                f"only clicked requests can be marked completed (status: {record.status})",
                current_status=record.status,
            )
        updated = self._state_machine.record_completion(request_id)
        if updated is None:
            current = self.get(business_id, request_id)
            raise InvalidStateError(
                f"review request changed status concurrently (status: {current.status})",
                current_status=current.status,
            )
        return updated

    def get_campaign(self, business_id: str, campaign_id: str) -> CampaignRecord:
        campaign = self._store.get_campaign(campaign_id, business_id=business_id)
        if campaign is None:
            raise NotFoundError(f"campaign not found: {campaign_id}")
        return campaign

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _create_many(
        self,
        business_id: str,
        customer_ids: list[str],
        *,
        channel: Channel,
        message_content: str,
        subject: str | None,
        review_url: str,
        scheduled_for: datetime | None,
        campaign_id: str | None,
    ) -> tuple[list[ReviewRequestRecord], list[BulkItemError], list[str]]:
        successful: list[ReviewRequestRecord] = []
        failed: list[BulkItemError] = []
        warnings: list[str] = []
        for customer_id in customer_ids:
            try:
                outcome = self.create(
                    business_id,
                    CreateReviewRequest(
                        customer_id=customer_id,
                        channel=channel,
                        message_content=message_content,
                        subject=subject,
                        review_url=review_url,
                        scheduled_for=scheduled_for,
                    ),
                    campaign_id=campaign_id,
                )
            except ReviewRunnerError as exc:
                failed.append(BulkItemError(customer_id=customer_id, error_code=exc.code, error=exc.message))
                continue
            except StoreError as exc:
                logger.error(
                    "scheduling.bulk.item_store_failed",
                    extra={"business_id": business_id, "customer_id": customer_id},
                    exc_info=True,
                )
                failed.append(BulkItemError(customer_id=customer_id, error_code="store_error", error=str(exc)))
                continue
            except DeliveryAdapterError as exc:
                failed.append(BulkItemError(customer_id=customer_id, error_code=exc.error_code, error=exc.message))
                continue
            except Exception as exc:
                logger.exception(
                    "scheduling.bulk.item_crashed",
                    extra={"business_id": business_id, "customer_id": customer_id},
                )
                failed.append(
                    BulkItemError(customer_id=customer_id, error_code="internal_error", error=f"{type(exc).__name__}: {exc}")
                )
                continue
            successful.append(outcome.record)
            for warning in outcome.warnings:
                if warning not in warnings:
                    warnings.append(warning)
        logger.info(
            "scheduling.bulk.complete",
            extra={"business_id": business_id, "succeeded": len(successful), "failed": len(failed)},
        )
        return successful, failed, warnings

    def _send_immediately(self, record: ReviewRequestRecord, warnings: list[str]) -> CreateOutcome:
        now = self._clock()
        try:
            outcome = self._state_machine.fire(record.request_id, now=now)
        except DeliveryAdapterError as exc:
            # Provider unreachable or misconfigured: hand the send to the worker's retry loop.
            logger.warning(
                "scheduling.create.deferred_to_queue",
                extra={"request_id": record.request_id, "error_code": exc.error_code},
            )
            return self._defer_to_queue(record, warnings, exc.error_code, now)
        except Exception as exc:
            logger.exception("scheduling.create.send_crashed", extra={"request_id": record.request_id})
            return self._defer_to_queue(record, warnings, type(exc).__name__, now)
        current = outcome.record or self._store.get_request(record.request_id) or record
        return CreateOutcome(record=current, job=None, warnings=warnings)

    def _defer_to_queue(
        self,
        record: ReviewRequestRecord,
        warnings: list[str],
        error_code: str,
        now: datetime,
    ) -> CreateOutcome:
        job = self._enqueue_or_compensate(record, delay_seconds=0, priority=SEND_NOW_PRIORITY, now=now)
        self._append_event(
            record,
            "REQUEST_QUEUED",
            "Immediate send deferred to the dispatch queue",
            {"error_code": error_code, "priority": job.priority},
        )
        return CreateOutcome(record=record, job=job, warnings=warnings)

    def _enqueue_or_compensate(
        self,
        record: ReviewRequestRecord,
        *,
        delay_seconds: float,
        priority: int,
        now: datetime,
    ) -> DispatchJob:
        try:
            return self._queue.enqueue(record.request_id, delay_seconds=delay_seconds, priority=priority, now=now)
        except DispatchQueueError as exc:
            logger.error("scheduling.create.queue_failed", extra={"request_id": record.request_id}, exc_info=True)
            self._state_machine.fail(record.request_id, "Failed to schedule dispatch job")
            raise QueueInconsistencyError("failed to schedule the review request; it was marked FAILED") from exc

    def _restore_job(self, request_id: str, previous: DispatchJob | None, now: datetime) -> None:
        try:
            if previous is None:
                self._queue.remove(request_id)
            else:
                self._queue.replace(
                    request_id,
                    delay_seconds=previous.delay_seconds(now),
                    priority=previous.priority,
                    now=now,
                )
        except DispatchQueueError:
            logger.error("scheduling.reschedule.restore_failed", extra={"request_id": request_id}, exc_info=True)

    def _require_business(self, business_id: str) -> BusinessRecord:
        business = self._store.get_business(business_id)
        if business is None:
            raise NotFoundError(f"business not found: {business_id}")
        return business

    def _require_customer(self, business_id: str, customer_id: str) -> CustomerRecord:
        customer = self._store.get_customer(business_id, customer_id)
        if customer is None or not customer.is_active:
            raise NotFoundError(f"customer not found or inactive: {customer_id}")
        return customer

    def _validate_contact(self, customer: CustomerRecord, channel: Channel) -> None:
        if channel == "EMAIL":
            if not customer.email or not is_valid_email(customer.email):
                raise ValidationError(f"customer {customer.customer_id} has no valid email address")
            return
        if not customer.phone or not is_valid_phone(customer.phone):
            raise ValidationError(f"customer {customer.customer_id} has no valid phone number")

    def _validate_subject(self, channel: Channel, subject: str | None) -> None:
        if channel == "EMAIL" and not (subject or "").strip():
            raise ValidationError("subject is required for email review requests")

    def _resolve_create_time(self, scheduled_for: datetime | None, now: datetime) -> datetime | None:
        if scheduled_for is None:
            return None
        target = _coerce_utc(scheduled_for)
        if target <= now:
            return None
        if target > now + self.horizon:
            raise ValidationError("scheduled_for cannot be more than 6 months in the future")
        return target

    def _content_warnings(self, channel: Channel, content: str, subject: str | None) -> list[str]:
        warnings: list[str] = []
        if channel == "SMS" and len(content) > self._settings.sms_soft_limit:
            warnings.append(
                f"SMS content is {len(content)} characters and may be sent as "
                f"{sms_segment_count(content)} segments"
            )
        unknown = [name for name in find_placeholders(f"{subject or ''} {content}") if name not in KNOWN_VARIABLES]
        if unknown:
            warnings.append(f"Unknown placeholders will render empty: {', '.join(unknown)}")
        return warnings

    def _append_event(
        self,
        record: ReviewRequestRecord,
        event_type,
        description: str,
        metadata: dict[str, object],
        *,
        source: str = "system",
    ) -> None:
        try:
            self._store.append_event(
                business_id=record.business_id,
                request_id=record.request_id,
                event_type=event_type,
                source=source,  # type: ignore[arg-type]
                description=description,
                metadata=metadata,
            )
        except StoreError:
            logger.error(
                "scheduling.event.write_failed",
                extra={"request_id": record.request_id, "event_type": event_type},
                exc_info=True,
            )


def _iso(value: datetime | None) -> str | None:
    return None if value is None else value.isoformat()

