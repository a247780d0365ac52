from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

Channel = Literal["EMAIL", "SMS"]
RequestStatus = Literal[
    "QUEUED",
    "SENT",
    "DELIVERED",
    "CLICKED",
    "COMPLETED",
    "FAILED",
    "CANCELLED",
    "BOUNCED",
    "OPTED_OUT",
]
EventType = Literal[
    "REQUEST_CREATED",
    "REQUEST_QUEUED",
    "REQUEST_RESCHEDULED",
    "REQUEST_CANCELLED",
    "REQUEST_SENT",
    "REQUEST_FAILED",
    "REQUEST_DELIVERED",
    "REQUEST_CLICKED",
    "REQUEST_COMPLETED",
    "REQUEST_BOUNCED",
    "REQUEST_OPTED_OUT",
]
EventSource = Literal["system", "user", "provider"]
SchedulingType = Literal["IMMEDIATE", "SCHEDULED", "OPTIMAL"]
ScheduledAction = Literal["reschedule", "cancel"]
ProviderStatus = Literal["DELIVERED", "BOUNCED", "OPTED_OUT"]

MAX_MESSAGE_LENGTH = 1600
MAX_SUBJECT_LENGTH = 200


def _coerce_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _normalize_optional_text(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip()
    return normalized or None


class _MessageFields(BaseModel):
    channel: Channel
    message_content: str = Field(min_length=1, max_length=MAX_MESSAGE_LENGTH)
    subject: str | None = Field(default=None, max_length=MAX_SUBJECT_LENGTH)
    review_url: str = Field(min_length=1, max_length=2048)
    scheduled_for: datetime | None = None

    @field_validator("message_content", "review_url")
    @classmethod
    def _normalize_text(cls, value: str) -> str:
        normalized = str(value).strip()
        if not normalized:
            raise ValueError("text fields cannot be blank")
        return normalized

    @field_validator("subject")
    @classmethod
    def _normalize_subject(cls, value: str | None) -> str | None:
        return _normalize_optional_text(value)

    @field_validator("scheduled_for")
    @classmethod
    def _normalize_scheduled_for(cls, value: datetime | None) -> datetime | None:
        return _coerce_utc(value)


def _normalize_customer_ids(value: list[str]) -> list[str]:
    normalized: list[str] = []
    seen: set[str] = set()
    for raw_id in value:
        customer_id = str(raw_id).strip()
        if not customer_id:
            raise ValueError("customer_ids entries cannot be blank")
        if customer_id in seen:
            raise ValueError("customer_ids entries must be unique")
        seen.add(customer_id)
        normalized.append(customer_id)
    return normalized


class CreateReviewRequest(_MessageFields):
    kind: Literal["single"] = "single"
    customer_id: str = Field(min_length=1, max_length=128)

    @field_validator("customer_id")
    @classmethod
    def _normalize_customer_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("customer_id cannot be blank")
        return normalized


class CreateBulkReviewRequests(_MessageFields):
    kind: Literal["bulk"] = "bulk"
    customer_ids: list[str] = Field(min_length=1, max_length=1000)

    @field_validator("customer_ids")
    @classmethod
    def _normalize_ids(cls, value: list[str]) -> list[str]:
        return _normalize_customer_ids(value)


class CreateCampaign(BaseModel):
    kind: Literal["campaign"] = "campaign"
    name: str = Field(min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    channel: Channel
    customer_ids: list[str] = Field(min_length=1, max_length=1000)
    message_content: str = Field(min_length=1, max_length=MAX_MESSAGE_LENGTH)
    subject: str | None = Field(default=None, max_length=MAX_SUBJECT_LENGTH)
    review_url: str | None = Field(default=None, max_length=2048)
    scheduling_type: SchedulingType = "IMMEDIATE"
    scheduled_for: datetime | None = None

    @field_validator("name", "message_content")
    @classmethod
    def _normalize_text(cls, value: str) -> str:
        normalized = str(value).strip()
        if not normalized:
            raise ValueError("text fields cannot be blank")
        return normalized

    @field_validator("description", "subject", "review_url")
    @classmethod
    def _normalize_optional(cls, value: str | None) -> str | None:
        return _normalize_optional_text(value)

    @field_validator("customer_ids")
    @classmethod
    def _normalize_ids(cls, value: list[str]) -> list[str]:
        return _normalize_customer_ids(value)

    @field_validator("scheduled_for")
    @classmethod
    def _normalize_scheduled_for(cls, value: datetime | None) -> datetime | None:
        return _coerce_utc(value)

    @model_validator(mode="after")
    def _validate_schedule(self) -> CreateCampaign:
        if self.scheduling_type == "SCHEDULED" and self.scheduled_for is None:
            raise ValueError("scheduled_for is required when scheduling_type is SCHEDULED")
        if self.scheduling_type != "SCHEDULED" and self.scheduled_for is not None:
            raise ValueError("scheduled_for is only accepted when scheduling_type is SCHEDULED")
        return self


class ScheduledRequestUpdate(BaseModel):
    action: ScheduledAction
    scheduled_for: datetime | None = None

    @field_validator("scheduled_for")
    @classmethod
    def _normalize_scheduled_for(cls, value: datetime | None) -> datetime | None:
        return _coerce_utc(value)


class ScheduledRequestFilters(BaseModel):
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=100)
    channel: Channel | None = None
    scheduled_after: datetime | None = None
    scheduled_before: datetime | None = None

    @field_validator("scheduled_after", "scheduled_before")
    @classmethod
    def _normalize_bounds(cls, value: datetime | None) -> datetime | None:
        return _coerce_utc(value)

    @model_validator(mode="after")
    def _validate_window(self) -> ScheduledRequestFilters:
        if (
            self.scheduled_after is not None
            and self.scheduled_before is not None
            and self.scheduled_before < self.scheduled_after
        ):
            raise ValueError("scheduled_before must be greater than or equal to scheduled_after")
        return self


class DeliveryStatusUpdate(BaseModel):
    external_id: str = Field(min_length=1, max_length=256)
    status: ProviderStatus
    occurred_at: datetime | None = None
    reason: str | None = Field(default=None, max_length=512)

    @field_validator("external_id")
    @classmethod
    def _normalize_external_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("external_id cannot be blank")
        return normalized

    @field_validator("occurred_at")
    @classmethod
    def _normalize_occurred_at(cls, value: datetime | None) -> datetime | None:
        return _coerce_utc(value)


class DispatchJobView(BaseModel):
    request_id: str
    run_at: datetime
    priority: int
    attempts: int
    status: str


class ReviewRequestView(BaseModel):
    request_id: str
    business_id: str
    customer_id: str
    campaign_id: str | None = None
    channel: Channel
    status: RequestStatus
    subject: str | None = None
    message_content: str
    review_url: str
    tracking_uuid: str
    tracking_url: str
    scheduled_for: datetime | None = None
    external_id: str | None = None
    error_message: str | None = None
    sent_at: datetime | None = None
    delivered_at: datetime | None = None
    clicked_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class ReviewRequestCreateResponse(BaseModel):
    kind: Literal["single"] = "single"
    request: ReviewRequestView
    dispatch_job: DispatchJobView | None = None
    warnings: list[str] = Field(default_factory=list)


class CampaignView(BaseModel):
    campaign_id: str
    business_id: str
    name: str
    description: str | None = None
    channel: Channel
    scheduling_type: SchedulingType
    scheduled_for: datetime | None = None
    created_at: datetime


class BulkItemFailure(BaseModel):
    customer_id: str
    error_code: str
    error: str


class BulkCreateResponse(BaseModel):
    kind: Literal["bulk", "campaign"]
    campaign_id: str | None = None
    campaign: CampaignView | None = None
    scheduled_for: datetime | None = None
    successful: list[ReviewRequestView]
    failed: list[BulkItemFailure]
    warnings: list[str] = Field(default_factory=list)


class PaginationInfo(BaseModel):
    page: int
    limit: int
    total_count: int
    total_pages: int
    has_next_page: bool
    has_prev_page: bool


class ScheduledRequestPage(BaseModel):
    requests: list[ReviewRequestView]
    pagination: PaginationInfo


class ScheduledRequestActionResponse(BaseModel):
    request: ReviewRequestView
    action: Literal["reschedule", "cancel", "send_now"]
    message: str
    dispatch_job: DispatchJobView | None = None


class EventItem(BaseModel):
    event_id: str
    request_id: str
    event_type: EventType
    source: EventSource
    description: str
    metadata: dict[str, object]
    created_at: datetime


class EventListResponse(BaseModel):
    request_id: str
    items: list[EventItem]


class DeliveryStatusResponse(BaseModel):
    request_id: str | None = None
    applied: bool
    status: RequestStatus | None = None
