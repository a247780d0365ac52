from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Protocol

from .models import Channel, EventSource, EventType, RequestStatus, SchedulingType

_PHONE_FORMATTING_RE = re.compile(r"[\s().\-]")

# Columns the request CAS may change. Identity, tenant and content are fixed at creation.
MUTABLE_REQUEST_FIELDS = frozenset(
    {
        "status",
        "scheduled_for",
        "external_id",
        "error_message",
        "sent_at",
        "delivered_at",
        "clicked_at",
        "completed_at",
    }
)


class StoreError(RuntimeError):
    """Raised when a persistence backend cannot complete a read or write."""


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def new_request_id() -> str:
    return f"rr_{uuid.uuid4().hex}"


def new_event_id() -> str:
    return f"evt_{uuid.uuid4().hex}"


def new_tracking_uuid() -> str:
    return str(uuid.uuid4())


def normalize_contact(value: str) -> str:
    """Lowercase emails; strip spaces, dots, dashes and brackets from phone numbers."""
    normalized = value.strip().lower()
    if "@" in normalized:
        return normalized
    return _PHONE_FORMATTING_RE.sub("", normalized)


@dataclass(frozen=True)
class BusinessRecord:
    business_id: str
    name: str
    phone: str | None = None
    email: str | None = None
    website: str | None = None
    google_review_url: str | None = None
    created_at: datetime = field(default_factory=_now_utc)


@dataclass(frozen=True)
class CustomerRecord:
    customer_id: str
    business_id: str
    first_name: str
    last_name: str | None = None
    email: str | None = None
    phone: str | None = None
    is_active: bool = True
    created_at: datetime = field(default_factory=_now_utc)


@dataclass(frozen=True)
class SuppressionRecord:
    suppression_id: str
    business_id: str
    contact: str
    channel: Channel | None
    reason: str
    source: str
    is_active: bool
    expires_at: datetime | None
    created_at: datetime

    def applies_to(self, channel: Channel, now: datetime) -> bool:
        if not self.is_active:
            return False
        if self.channel is not None and self.channel != channel:
            return False
        return self.expires_at is None or self.expires_at > now


@dataclass(frozen=True)
class ReviewRequestRecord:
    request_id: str
    business_id: str
    customer_id: str
    channel: Channel
    message_content: str
    subject: str | None
    review_url: str
    tracking_uuid: str
    tracking_url: str
    status: RequestStatus
    created_at: datetime
    updated_at: datetime
    campaign_id: str | None = None
    scheduled_for: datetime | None = None
    external_id: str | None = None
    error_message: str | None = None
    sent_at: datetime | None = None
    delivered_at: datetime | None = None
    clicked_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass(frozen=True)
class CampaignRecord:
    campaign_id: str
    business_id: str
    name: str
    channel: Channel
    scheduling_type: SchedulingType
    created_at: datetime
    description: str | None = None
    scheduled_for: datetime | None = None


@dataclass(frozen=True)
class EventRecord:
    event_id: str
    business_id: str
    request_id: str
    event_type: EventType
    source: EventSource
    description: str
    metadata: dict[str, object]
    created_at: datetime


@dataclass(frozen=True)
class ScheduledQuery:
    business_id: str
    channel: Channel | None = None
    scheduled_after: datetime | None = None
    scheduled_before: datetime | None = None
    offset: int = 0
    limit: int = 20


def matches_scheduled_query(record: ReviewRequestRecord, query: ScheduledQuery) -> bool:
    if record.business_id != query.business_id:
        return False
    if record.status != "QUEUED" or record.scheduled_for is None:
        return False
    if query.channel is not None and record.channel != query.channel:
        return False
    if query.scheduled_after is not None and record.scheduled_for < query.scheduled_after:
        return False
    if query.scheduled_before is not None and record.scheduled_for > query.scheduled_before:
        return False
    return True


def _check_changes(changes: dict[str, object]) -> None:
    unknown = set(changes) - MUTABLE_REQUEST_FIELDS
    if unknown:
        raise ValueError(f"immutable review request fields: {', '.join(sorted(unknown))}")


class ReviewStore(Protocol):
    def reset(self) -> None: ...

    def close(self) -> None: ...

    def upsert_business(self, business: BusinessRecord) -> BusinessRecord: ...

    def get_business(self, business_id: str) -> BusinessRecord | None: ...

    def upsert_customer(self, customer: CustomerRecord) -> CustomerRecord: ...

    def get_customer(self, business_id: str, customer_id: str) -> CustomerRecord | None: ...

    def create_campaign(self, campaign: CampaignRecord) -> CampaignRecord: ...

    def get_campaign(self, campaign_id: str, *, business_id: str | None = None) -> CampaignRecord | None: ...

    def create_request(self, record: ReviewRequestRecord) -> ReviewRequestRecord: ...

    def get_request(self, request_id: str, *, business_id: str | None = None) -> ReviewRequestRecord | None: ...

    def get_request_by_tracking_uuid(self, tracking_uuid: str) -> ReviewRequestRecord | None: ...

    def get_request_by_external_id(self, external_id: str) -> ReviewRequestRecord | None: ...

    def update_request_if_status(
        self,
        request_id: str,
        *,
        expected_status: RequestStatus,
        changes: dict[str, object],
    ) -> ReviewRequestRecord | None: ...

    def list_scheduled(self, query: ScheduledQuery) -> tuple[list[ReviewRequestRecord], int]: ...

    def append_event(
        self,
        *,
        business_id: str,
        request_id: str,
        event_type: EventType,
        source: EventSource,
        description: str,
        metadata: dict[str, object] | None = None,
    ) -> EventRecord: ...

    def list_events(self, request_id: str) -> list[EventRecord]: ...

    def add_suppression(
        self,
        *,
        business_id: str,
        contact: str,
        channel: Channel | None,
        reason: str,
        source: str,
        expires_at: datetime | None = None,
    ) -> SuppressionRecord: ...

    def find_active_suppression(
        self,
        business_id: str,
        contact: str,
        channel: Channel,
        *,
        now: datetime | None = None,
    ) -> SuppressionRecord | None: ...


class InMemoryReviewStore:
    """Lock-guarded dictionaries. Suitable for tests and single-process development."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._businesses: dict[str, BusinessRecord] = {}
        self._customers: dict[tuple[str, str], CustomerRecord] = {}
        self._campaigns: dict[str, CampaignRecord] = {}
        self._requests: dict[str, ReviewRequestRecord] = {}
        self._events: dict[str, list[EventRecord]] = {}
        self._suppressions: list[SuppressionRecord] = []

    def reset(self) -> None:
        with self._lock:
            self._businesses.clear()
            self._customers.clear()
            self._campaigns.clear()
            self._requests.clear()
            self._events.clear()
            self._suppressions.clear()

    def close(self) -> None:
        return None

    def upsert_business(self, business: BusinessRecord) -> BusinessRecord:
        with self._lock:
            self._businesses[business.business_id] = business
            return business

    def get_business(self, business_id: str) -> BusinessRecord | None:
        with self._lock:
            return self._businesses.get(business_id)

    def upsert_customer(self, customer: CustomerRecord) -> CustomerRecord:
        with self._lock:
            self._customers[(customer.business_id, customer.customer_id)] = customer
            return customer

    def get_customer(self, business_id: str, customer_id: str) -> CustomerRecord | None:
        with self._lock:
            return self._customers.get((business_id, customer_id))

    def create_campaign(self, campaign: CampaignRecord) -> CampaignRecord:
        with self._lock:
            if campaign.campaign_id in self._campaigns:
                raise StoreError(f"campaign already exists: {campaign.campaign_id}")
            self._campaigns[campaign.campaign_id] = campaign
            return campaign

    def get_campaign(self, campaign_id: str, *, business_id: str | None = None) -> CampaignRecord | None:
        with self._lock:
            campaign = self._campaigns.get(campaign_id)
        if campaign is None or (business_id is not None and campaign.business_id != business_id):
            return None
        return campaign

    def create_request(self, record: ReviewRequestRecord) -> ReviewRequestRecord:
        with self._lock:
            if record.request_id in self._requests:
                raise StoreError(f"review request already exists: {record.request_id}")
            self._requests[record.request_id] = record
            self._events.setdefault(record.request_id, [])
            return record

    def get_request(self, request_id: str, *, business_id: str | None = None) -> ReviewRequestRecord | None:
        with self._lock:
            record = self._requests.get(request_id)
        if record is None:
            return None
        if business_id is not None and record.business_id != business_id:
            return None
        return record

    def get_request_by_tracking_uuid(self, tracking_uuid: str) -> ReviewRequestRecord | None:
        with self._lock:
            for record in self._requests.values():
                if record.tracking_uuid == tracking_uuid:
                    return record
        return None

    def get_request_by_external_id(self, external_id: str) -> ReviewRequestRecord | None:
        with self._lock:
            for record in self._requests.values():
                if record.external_id == external_id:
                    return record
        return None

    def update_request_if_status(
        self,
        request_id: str,
        *,
        expected_status: RequestStatus,
        changes: dict[str, object],
    ) -> ReviewRequestRecord | None:
        _check_changes(changes)
        with self._lock:
            record = self._requests.get(request_id)
            if record is None or record.status != expected_status:
                return None
            updated = ReviewRequestRecord(**{**record.__dict__, **changes, "updated_at": _now_utc()})
            self._requests[request_id] = updated
            return updated

    def list_scheduled(self, query: ScheduledQuery) -> tuple[list[ReviewRequestRecord], int]:
        with self._lock:
            matching = [record for record in self._requests.values() if matches_scheduled_query(record, query)]
        matching.sort(key=lambda value: (value.scheduled_for, value.created_at, value.request_id))
        return matching[query.offset : query.offset + query.limit], len(matching)

    def append_event(
        self,
        *,
        business_id: str,
        request_id: str,
        event_type: EventType,
        source: EventSource,
        description: str,
        metadata: dict[str, object] | None = None,
    ) -> EventRecord:
        event = EventRecord(
            event_id=new_event_id(),
            business_id=business_id,
            request_id=request_id,
            event_type=event_type,
            source=source,
            description=description,
            metadata=dict(metadata or {}),
            created_at=_now_utc(),
        )
        with self._lock:
            self._events.setdefault(request_id, []).append(event)
        return event

    def list_events(self, request_id: str) -> list[EventRecord]:
        with self._lock:
            return list(self._events.get(request_id, []))

    def add_suppression(
        self,
        *,
        business_id: str,
        contact: str,
        channel: Channel | None,
        reason: str,
        source: str,
        expires_at: datetime | None = None,
    ) -> SuppressionRecord:
        record = SuppressionRecord(
            suppression_id=f"sup_{uuid.uuid4().hex}",
            business_id=business_id,
            contact=normalize_contact(contact),
            channel=channel,
            reason=reason,
            source=source,
            is_active=True,
            expires_at=_coerce_utc(expires_at),
            created_at=_now_utc(),
        )
        with self._lock:
            self._suppressions.append(record)
        return record

    def find_active_suppression(
        self,
        business_id: str,
        contact: str,
        channel: Channel,
        *,
        now: datetime | None = None,
    ) -> SuppressionRecord | None:
        normalized = normalize_contact(contact)
        current = now or _now_utc()
        with self._lock:
            for record in self._suppressions:
                if record.business_id != business_id or record.contact != normalized:
                    continue
                if record.applies_to(channel, current):
                    return record
        return None
