from __future__ import annotations

from datetime import datetime
from typing import Annotated, Union

import pydantic
from fastapi import APIRouter, Body, Depends, Header, HTTPException, Request, status
from fastapi.responses import RedirectResponse

from .dispatch_queue import DispatchJob
from .errors import (
    InvalidStateError,
    NotFoundError,
    QueueInconsistencyError,
    ReviewRunnerError,
    ValidationError,
)
from .models import (
    BulkCreateResponse,
    BulkItemFailure,
    CampaignView,
    Channel,
    CreateBulkReviewRequests,
    CreateCampaign,
    CreateReviewRequest,
    DeliveryStatusResponse,
    DeliveryStatusUpdate,
    DispatchJobView,
    EventItem,
    EventListResponse,
    ReviewRequestCreateResponse,
    ReviewRequestView,
    ScheduledRequestActionResponse,
    ScheduledRequestFilters,
    ScheduledRequestPage,
    ScheduledRequestUpdate,
)
from .runtime import Runtime
from .scheduling import BulkOutcome, SchedulingService
from .store import CampaignRecord, EventRecord, ReviewRequestRecord

router = APIRouter(tags=["review-requests"])
tracking_router = APIRouter(tags=["tracking"])

CreatePayload = Annotated[
    Union[CreateReviewRequest, CreateBulkReviewRequests, CreateCampaign],
    Body(discriminator="kind"),
]

_ERROR_STATUS: dict[type[ReviewRunnerError], int] = {
    ValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    InvalidStateError: status.HTTP_409_CONFLICT,
    QueueInconsistencyError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def _runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def _scheduling(request: Request) -> SchedulingService:
    return _runtime(request).scheduling


def _business_id(x_business_id: Annotated[str | None, Header()] = None) -> str:
    normalized = (x_business_id or "").strip()
    if not normalized:
        raise HTTPException(status_code=400, detail="X-Business-Id header is required")
    return normalized


def _http_error(exc: ReviewRunnerError) -> HTTPException:
    detail: dict[str, object] = {"code": exc.code, "message": exc.message}
    if isinstance(exc, InvalidStateError) and exc.current_status is not None:
        detail["current_status"] = exc.current_status
    if isinstance(exc, QueueInconsistencyError):
        detail["retryable"] = True
    for error_type, status_code in _ERROR_STATUS.items():
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=detail)
    return HTTPException(status_code=500, detail=detail)


def _request_view(record: ReviewRequestRecord) -> ReviewRequestView:
    return ReviewRequestView(**record.__dict__)


def _campaign_view(campaign: CampaignRecord | None) -> CampaignView | None:
    if campaign is None:
        return None
    return CampaignView(**campaign.__dict__)


def _job_view(job: DispatchJob | None) -> DispatchJobView | None:
    if job is None:
        return None
    return DispatchJobView(
        request_id=job.request_id,
        run_at=job.run_at,
        priority=job.priority,
        attempts=job.attempts,
        status=job.status,
    )


def _event_item(event: EventRecord) -> EventItem:
    return EventItem(
        event_id=event.event_id,
        request_id=event.request_id,
        event_type=event.event_type,
        source=event.source,
        description=event.description,
        metadata=event.metadata,
        created_at=event.created_at,
    )


def _bulk_response(outcome: BulkOutcome) -> BulkCreateResponse:
    return BulkCreateResponse(
        kind=outcome.kind,  # type: ignore[arg-type]
        campaign_id=outcome.campaign_id,
        campaign=_campaign_view(outcome.campaign),
        scheduled_for=outcome.scheduled_for,
        successful=[_request_view(record) for record in outcome.successful],
        failed=[
            BulkItemFailure(customer_id=item.customer_id, error_code=item.error_code, error=item.error)
            for item in outcome.failed
        ],
        warnings=outcome.warnings,
    )


@router.post(
    "/review-requests",
    response_model=Union[ReviewRequestCreateResponse, BulkCreateResponse],
    status_code=status.HTTP_201_CREATED,
)
def create_review_requests(
    payload: CreatePayload,
    business_id: Annotated[str, Depends(_business_id)],
    scheduling: Annotated[SchedulingService, Depends(_scheduling)],
) -> ReviewRequestCreateResponse | BulkCreateResponse:
    try:
        if isinstance(payload, CreateReviewRequest):
            outcome = scheduling.create(business_id, payload)
            return ReviewRequestCreateResponse(
                request=_request_view(outcome.record),
                dispatch_job=_job_view(outcome.job),
                warnings=outcome.warnings,
            )
        if isinstance(payload, CreateBulkReviewRequests):
            return _bulk_response(scheduling.create_bulk(business_id, payload))
        return _bulk_response(scheduling.create_campaign(business_id, payload))
    except ReviewRunnerError as exc:
        raise _http_error(exc) from exc


@router.get("/review-requests/scheduled", response_model=ScheduledRequestPage)
def list_scheduled_requests(
    business_id: Annotated[str, Depends(_business_id)],
    scheduling: Annotated[SchedulingService, Depends(_scheduling)],
    page: int = 1,
    limit: int = 20,
    channel: Channel | None = None,
    scheduled_after: datetime | None = None,
    scheduled_before: datetime | None = None,
) -> ScheduledRequestPage:
    try:
        filters = ScheduledRequestFilters(
            page=page,
            limit=limit,
            channel=channel,
            scheduled_after=scheduled_after,
            scheduled_before=scheduled_before,
        )
    except pydantic.ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=[{"loc": list(error["loc"]), "msg": error["msg"]} for error in exc.errors()],
        ) from exc
    listing = scheduling.list_scheduled(business_id, filters)
    return ScheduledRequestPage(
        requests=[_request_view(record) for record in listing.records],
        pagination=listing.pagination,
    )


@router.put("/review-requests/scheduled/{request_id}", response_model=ScheduledRequestActionResponse)
def update_scheduled_request(
    request_id: str,
    payload: ScheduledRequestUpdate,
    business_id: Annotated[str, Depends(_business_id)],
    scheduling: Annotated[SchedulingService, Depends(_scheduling)],
) -> ScheduledRequestActionResponse:
    try:
        if payload.action == "reschedule":
            if payload.scheduled_for is None:
                raise ValidationError("scheduled_for is required for reschedule")
            outcome = scheduling.reschedule(business_id, request_id, payload.scheduled_for)
            message = "Review request rescheduled"
        else:
            outcome = scheduling.cancel(business_id, request_id)
            message = "Review request cancelled"
    except ReviewRunnerError as exc:
        raise _http_error(exc) from exc
    return ScheduledRequestActionResponse(
        request=_request_view(outcome.record),
        action=payload.action,
        message=message,
        dispatch_job=_job_view(outcome.job),
    )


@router.post("/review-requests/{request_id}/send-now", response_model=ScheduledRequestActionResponse)
def send_review_request_now(
    request_id: str,
    business_id: Annotated[str, Depends(_business_id)],
    scheduling: Annotated[SchedulingService, Depends(_scheduling)],
) -> ScheduledRequestActionResponse:
    try:
        outcome = scheduling.send_now(business_id, request_id)
    except ReviewRunnerError as exc:
        raise _http_error(exc) from exc
    return ScheduledRequestActionResponse(
        request=_request_view(outcome.record),
        action="send_now",
        message="Review request queued for immediate delivery",
        dispatch_job=_job_view(outcome.job),
    )


@router.get("/review-requests/{request_id}", response_model=ReviewRequestView)
def get_review_request(
    request_id: str,
    business_id: Annotated[str, Depends(_business_id)],
    scheduling: Annotated[SchedulingService, Depends(_scheduling)],
) -> ReviewRequestView:
    try:
        return _request_view(scheduling.get(business_id, request_id))
    except ReviewRunnerError as exc:
        raise _http_error(exc) from exc


@router.get("/review-requests/{request_id}/events", response_model=EventListResponse)
def list_review_request_events(
    request_id: str,
    business_id: Annotated[str, Depends(_business_id)],
    scheduling: Annotated[SchedulingService, Depends(_scheduling)],
) -> EventListResponse:
    try:
        events = scheduling.list_events(business_id, request_id)
    except ReviewRunnerError as exc:
        raise _http_error(exc) from exc
    return EventListResponse(request_id=request_id, items=[_event_item(event) for event in events])


@router.post("/review-requests/{request_id}/complete", response_model=ReviewRequestView)
def complete_review_request(
    request_id: str,
    business_id: Annotated[str, Depends(_business_id)],
    scheduling: Annotated[SchedulingService, Depends(_scheduling)],
) -> ReviewRequestView:
    try:
        return _request_view(scheduling.mark_completed(business_id, request_id))
    except ReviewRunnerError as exc:
        raise _http_error(exc) from exc


@router.get("/campaigns/{campaign_id}", response_model=CampaignView)
def get_campaign(
    campaign_id: str,
    business_id: Annotated[str, Depends(_business_id)],
    scheduling: Annotated[SchedulingService, Depends(_scheduling)],
) -> CampaignView:
    try:
        return CampaignView(**scheduling.get_campaign(business_id, campaign_id).__dict__)
    except ReviewRunnerError as exc:
        raise _http_error(exc) from exc


@router.post("/delivery-status", response_model=DeliveryStatusResponse)
def ingest_delivery_status(
    payload: DeliveryStatusUpdate,
    scheduling: Annotated[SchedulingService, Depends(_scheduling)],
) -> DeliveryStatusResponse:
    try:
        updated = scheduling.apply_delivery_status(payload)
    except ReviewRunnerError as exc:
        raise _http_error(exc) from exc
    if updated is None:
        return DeliveryStatusResponse(applied=False)
    return DeliveryStatusResponse(request_id=updated.request_id, applied=True, status=updated.status)


@tracking_router.get("/r/{tracking_uuid}", include_in_schema=False)
def follow_tracking_link(
    tracking_uuid: str,
    scheduling: Annotated[SchedulingService, Depends(_scheduling)],
) -> RedirectResponse:
    try:
        record = scheduling.track_click(tracking_uuid)
    except ReviewRunnerError as exc:
        raise _http_error(exc) from exc
    return RedirectResponse(record.review_url, status_code=status.HTTP_302_FOUND)
