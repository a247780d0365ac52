from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal

from .config import Settings
from .delivery import DeliveryAdapter, DeliveryRequest, mask_contact_target
from .models import EventSource, EventType, RequestStatus
from .store import CustomerRecord, ReviewRequestRecord, ReviewStore, StoreError
from .templating import DEFAULT_EMAIL_SUBJECT, build_variables, render

logger = logging.getLogger(__name__)

TRANSITIONS: dict[str, frozenset[str]] = {
    "QUEUED": frozenset({"SENT", "FAILED", "CANCELLED"}),
    "SENT": frozenset({"DELIVERED", "BOUNCED", "OPTED_OUT", "CLICKED"}),
    "DELIVERED": frozenset({"CLICKED", "OPTED_OUT"}),
    "CLICKED": frozenset({"COMPLETED"}),
    "COMPLETED": frozenset(),
    "FAILED": frozenset(),
    "CANCELLED": frozenset(),
    "BOUNCED": frozenset(),
    "OPTED_OUT": frozenset(),
}

TERMINAL_STATUSES = frozenset(status for status, targets in TRANSITIONS.items() if not targets)

_PROVIDER_EVENTS: dict[str, EventType] = {
    "DELIVERED": "REQUEST_DELIVERED",
    "BOUNCED": "REQUEST_BOUNCED",
    "OPTED_OUT": "REQUEST_OPTED_OUT",
}

FiringResult = Literal["sent", "failed", "skipped"]


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


@dataclass(frozen=True)
class FiringOutcome:
    request_id: str
    result: FiringResult
    reason: str | None = None
    record: ReviewRequestRecord | None = None


def _destination(customer: CustomerRecord, channel: str) -> str:
    raw = customer.email if channel == "EMAIL" else customer.phone
    return (raw or "").strip()


class RequestStateMachine:
    """Owns every status write on a review request.

    Each write is a conditional update keyed on the status the caller read, so
    a duplicate or stale firing loses the race and becomes a no-op.
    """

    def __init__(self, store: ReviewStore, adapter: DeliveryAdapter, settings: Settings) -> None:
        self._store = store
        self._adapter = adapter
        self._settings = settings

    def fire(self, request_id: str, *, now: datetime | None = None) -> FiringOutcome:
        record = self._store.get_request(request_id)
        if record is None:
            logger.info("dispatch.fire.skipped", extra={"request_id": request_id, "reason": "not_found"})
            return FiringOutcome(request_id=request_id, result="skipped", reason="not_found")
        if record.status != "QUEUED":
            logger.info(
                "dispatch.fire.skipped",
                extra={"request_id": request_id, "reason": "not_queued", "status": record.status},
            )
            return FiringOutcome(request_id=request_id, result="skipped", reason="not_queued", record=record)
        current = now or _now_utc()
        if record.scheduled_for is not None and record.scheduled_for > current:
            logger.info(
                "dispatch.fire.skipped",
                extra={"request_id": request_id, "reason": "not_due", "scheduled_for": record.scheduled_for.isoformat()},
            )
            return FiringOutcome(request_id=request_id, result="skipped", reason="not_due", record=record)

        customer = self._store.get_customer(record.business_id, record.customer_id)
        if customer is None or not customer.is_active:
            return self._fail_before_send(record, "Customer not found or inactive")
        business = self._store.get_business(record.business_id)
        if business is None:
            return self._fail_before_send(record, "Business not found")

        destination = _destination(customer, record.channel)
        if not destination:
            label = "email address" if record.channel == "EMAIL" else "phone number"
            return self._fail_before_send(record, f"Customer has no {label} for {record.channel}")

        suppression = self._store.find_active_suppression(record.business_id, destination, record.channel, now=current)
        if suppression is not None:
            return self._fail_before_send(
                record,
                f"Contact is suppressed for {record.channel}: {suppression.reason}",
                metadata={"suppression_id": suppression.suppression_id},
            )

        variables = build_variables(customer, business, record, self._settings.app_base_url)
        subject = (record.subject or DEFAULT_EMAIL_SUBJECT) if record.channel == "EMAIL" else None
        rendered = render(record.message_content, subject, variables)
        masked = mask_contact_target(destination, record.channel)

        result = self._adapter.send(
            DeliveryRequest(
                channel=record.channel,
                destination=destination,
                content=rendered.content,
                subject=rendered.subject,
                recipient_name=variables["customerName"] or variables["firstName"],
                sender_name=business.name,
                request_id=record.request_id,
                business_id=record.business_id,
                tracking_uuid=record.tracking_uuid,
            )
        )

        if result.ok:
            updated = self._write_status(
                record,
                "SENT",
                {
                    "sent_at": result.attempted_at,
                    "external_id": result.external_id,
                    "error_message": None,
                },
            )
            if updated is None:
                logger.warning(
                    "dispatch.fire.lost_race",
                    extra={"request_id": record.request_id, "external_id": result.external_id},
                )
                return FiringOutcome(request_id=record.request_id, result="skipped", reason="status_changed")
            self._append_event(
                updated,
                "REQUEST_SENT",
                "system",
                f"Review request sent via {record.channel}",
                {"external_id": result.external_id, "destination": masked},
            )
            logger.info(
                "dispatch.fire.sent",
                extra={"request_id": record.request_id, "channel": record.channel, "destination": masked},
            )
            return FiringOutcome(request_id=record.request_id, result="sent", record=updated)

        reason = result.error_message or "Delivery failed"
        updated = self._write_status(record, "FAILED", {"error_message": reason})
        if updated is None:
            return FiringOutcome(request_id=record.request_id, result="skipped", reason="status_changed")
        self._append_event(
            updated,
            "REQUEST_FAILED",
            "system",
            f"Delivery failed: {reason}",
            {"error_code": result.error_code, "destination": masked},
        )
        logger.warning(
            "dispatch.fire.failed",
            extra={
                "request_id": record.request_id,
                "channel": record.channel,
                "destination": masked,
                "error_code": result.error_code,
            },
        )
        return FiringOutcome(request_id=record.request_id, result="failed", reason=reason, record=updated)

    def fail(self, request_id: str, reason: str) -> ReviewRequestRecord | None:
        """Move a still-queued request to FAILED, e.g. once the queue gives up on it."""
        record = self._store.get_request(request_id)
        if record is None or record.status != "QUEUED":
            return None
        updated = self._write_status(record, "FAILED", {"error_message": reason})
        if updated is not None:
            self._append_event(updated, "REQUEST_FAILED", "system", reason, {})
        return updated

    def transition(
        self,
        record: ReviewRequestRecord,
        target: RequestStatus,
        *,
        changes: dict[str, object] | None = None,
        event_type: EventType,
        source: EventSource,
        description: str,
        metadata: dict[str, object] | None = None,
    ) -> ReviewRequestRecord | None:
        if not can_transition(record.status, target):
            return None
        updated = self._store.update_request_if_status(
            record.request_id,
            expected_status=record.status,
            changes={**(changes or {}), "status": target},
        )
        if updated is not None:
            self._append_event(updated, event_type, source, description, metadata or {})
        return updated

    def apply_provider_status(
        self,
        request_id: str,
        status: RequestStatus,
        *,
        occurred_at: datetime | None = None,
        metadata: dict[str, object] | None = None,
    ) -> ReviewRequestRecord | None:
        event_type = _PROVIDER_EVENTS.get(status)
        if event_type is None:
            raise ValueError(f"unsupported provider status: {status}")
        record = self._store.get_request(request_id)
        if record is None:
            return None
        if not can_transition(record.status, status):
            logger.info(
                "dispatch.provider_status.ignored",
                extra={"request_id": request_id, "status": record.status, "target": status},
            )
            return None

        at = occurred_at or _now_utc()
        changes: dict[str, object] = {}
        if status == "DELIVERED":
            changes["delivered_at"] = at
        else:
            reason = (metadata or {}).get("reason")
            changes["error_message"] = str(reason) if reason else f"Provider reported {status}"

        updated = self.transition(
            record,
            status,
            changes=changes,
            event_type=event_type,
            source="provider",
            description=f"Provider reported {status}",
            metadata=metadata,
        )
        if updated is not None and status in {"BOUNCED", "OPTED_OUT"}:
            self._suppress_contact(updated, status)
        return updated

    def record_click(self, tracking_uuid: str, *, metadata: dict[str, object] | None = None) -> ReviewRequestRecord | None:
        """Resolve a tracking token, recording the first click. Returns the request either way."""
        record = self._store.get_request_by_tracking_uuid(tracking_uuid)
        if record is None:
            return None
        if not can_transition(record.status, "CLICKED"):
            return record
        updated = self.transition(
            record,
            "CLICKED",
            changes={"clicked_at": _now_utc()},
            event_type="REQUEST_CLICKED",
            source="user",
            description="Review link clicked",
            metadata=metadata,
        )
        return updated or record

    def record_completion(self, request_id: str) -> ReviewRequestRecord | None:
        record = self._store.get_request(request_id)
        if record is None:
            return None
        return self.transition(
            record,
            "COMPLETED",
            changes={"completed_at": _now_utc()},
            event_type="REQUEST_COMPLETED",
            source="user",
            description="Customer completed the review",
        )

    def _fail_before_send(
        self,
        record: ReviewRequestRecord,
        reason: str,
        *,
        metadata: dict[str, object] | None = None,
    ) -> FiringOutcome:
        updated = self._write_status(record, "FAILED", {"error_message": reason})
        if updated is None:
            return FiringOutcome(request_id=record.request_id, result="skipped", reason="status_changed")
        self._append_event(updated, "REQUEST_FAILED", "system", reason, metadata or {})
        logger.warning("dispatch.fire.blocked", extra={"request_id": record.request_id, "reason": reason})
        return FiringOutcome(request_id=record.request_id, result="failed", reason=reason, record=updated)

    def _write_status(
        self,
        record: ReviewRequestRecord,
        target: RequestStatus,
        changes: dict[str, object],
    ) -> ReviewRequestRecord | None:
        payload = {**changes, "status": target}
        try:
            return self._store.update_request_if_status(
                record.request_id, expected_status=record.status, changes=payload
            )
        except StoreError:
            logger.warning(
                "dispatch.status_write.retry",
                extra={"request_id": record.request_id, "target": target},
                exc_info=True,
            )
        return self._store.update_request_if_status(record.request_id, expected_status=record.status, changes=payload)

    def _append_event(
        self,
        record: ReviewRequestRecord,
        event_type: EventType,
        source: EventSource,
        description: str,
        metadata: dict[str, object],
    ) -> None:
        for attempt in (1, 2):
            try:
                self._store.append_event(
                    business_id=record.business_id,
                    request_id=record.request_id,
                    event_type=event_type,
                    source=source,
                    description=description,
                    metadata=metadata,
                )
                return
            except StoreError:
                logger.warning(
                    "dispatch.event.write_failed",
                    extra={"request_id": record.request_id, "event_type": event_type, "attempt": attempt},
                    exc_info=True,
                )
        logger.error(
            "dispatch.event.dropped",
            extra={"request_id": record.request_id, "event_type": event_type},
        )

    def _suppress_contact(self, record: ReviewRequestRecord, status: str) -> None:
        customer = self._store.get_customer(record.business_id, record.customer_id)
        if customer is None:
            return
        destination = _destination(customer, record.channel)
        if not destination:
            return
        self._store.add_suppression(
            business_id=record.business_id,
            contact=destination,
            channel=record.channel,
            reason=status,
            source="provider",
        )
        logger.info(
            "dispatch.suppression.added",
            extra={
                "request_id": record.request_id,
                "channel": record.channel,
                "destination": mask_contact_target(destination, record.channel),
            },
        )
