from __future__ import annotations

import json
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    create_engine,
    func,
    select,
    update,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from .models import Channel, EventSource, EventType, RequestStatus
from .store import (
    BusinessRecord,
    CampaignRecord,
    CustomerRecord,
    EventRecord,
    InMemoryReviewStore,
    ReviewRequestRecord,
    ReviewStore,
    ScheduledQuery,
    StoreError,
    SuppressionRecord,
    _check_changes,
    _coerce_utc,
    _now_utc,
    new_event_id,
    normalize_contact,
)


class ReviewStoreBase(DeclarativeBase):
    pass


class _BusinessRow(ReviewStoreBase):
    __tablename__ = "businesses"

    business_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    website: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    google_review_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _CustomerRow(ReviewStoreBase):
    __tablename__ = "customers"

    business_id: Mapped[str] = mapped_column(String(64), ForeignKey("businesses.business_id"), primary_key=True)
    customer_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    first_name: Mapped[str] = mapped_column(String(128), nullable=False)
    last_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _SuppressionRow(ReviewStoreBase):
    __tablename__ = "suppressions"

    suppression_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    business_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    contact: Mapped[str] = mapped_column(String(320), nullable=False, index=True)
    channel: Mapped[str | None] = mapped_column(String(16), nullable=True)
    reason: Mapped[str] = mapped_column(String(64), nullable=False)
    source: Mapped[str] = mapped_column(String(64), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _CampaignRow(ReviewStoreBase):
    __tablename__ = "campaigns"

    campaign_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    business_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    scheduling_type: Mapped[str] = mapped_column(String(16), nullable=False)
    scheduled_for: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _ReviewRequestRow(ReviewStoreBase):
    __tablename__ = "review_requests"

    request_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    business_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    customer_id: Mapped[str] = mapped_column(String(128), nullable=False)
    campaign_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    message_content: Mapped[str] = mapped_column(Text, nullable=False)
    subject: Mapped[str | None] = mapped_column(String(200), nullable=True)
    review_url: Mapped[str] = mapped_column(Text, nullable=False)
    tracking_uuid: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    tracking_url: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    scheduled_for: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    external_id: Mapped[str | None] = mapped_column(String(256), nullable=True, index=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    clicked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _RequestEventRow(ReviewStoreBase):
    __tablename__ = "request_events"

    sequence: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    business_id: Mapped[str] = mapped_column(String(64), nullable=False)
    request_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("review_requests.request_id"), nullable=False, index=True
    )
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    metadata_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _to_business(row: _BusinessRow) -> BusinessRecord:
    return BusinessRecord(
        business_id=row.business_id,
        name=row.name,
        phone=row.phone,
        email=row.email,
        website=row.website,
        google_review_url=row.google_review_url,
        created_at=_coerce_utc(row.created_at),
    )


def _to_customer(row: _CustomerRow) -> CustomerRecord:
    return CustomerRecord(
        customer_id=row.customer_id,
        business_id=row.business_id,
        first_name=row.first_name,
        last_name=row.last_name,
        email=row.email,
        phone=row.phone,
        is_active=row.is_active,
        created_at=_coerce_utc(row.created_at),
    )


def _to_suppression(row: _SuppressionRow) -> SuppressionRecord:
    return SuppressionRecord(
        suppression_id=row.suppression_id,
        business_id=row.business_id,
        contact=row.contact,
        channel=row.channel,  # type: ignore[arg-type]
        reason=row.reason,
        source=row.source,
        is_active=row.is_active,
        expires_at=_coerce_utc(row.expires_at),
        created_at=_coerce_utc(row.created_at),
    )


def _to_campaign(row: _CampaignRow) -> CampaignRecord:
    return CampaignRecord(
        campaign_id=row.campaign_id,
        business_id=row.business_id,
        name=row.name,
        description=row.description,
        channel=row.channel,  # type: ignore[arg-type]
        scheduling_type=row.scheduling_type,  # type: ignore[arg-type]
        scheduled_for=_coerce_utc(row.scheduled_for),
        created_at=_coerce_utc(row.created_at),
    )


def _to_request(row: _ReviewRequestRow) -> ReviewRequestRecord:
    return ReviewRequestRecord(
        request_id=row.request_id,
        business_id=row.business_id,
        customer_id=row.customer_id,
        campaign_id=row.campaign_id,
        channel=row.channel,  # type: ignore[arg-type]
        message_content=row.message_content,
        subject=row.subject,
        review_url=row.review_url,
        tracking_uuid=row.tracking_uuid,
        tracking_url=row.tracking_url,
        status=row.status,  # type: ignore[arg-type]
        scheduled_for=_coerce_utc(row.scheduled_for),
        external_id=row.external_id,
        error_message=row.error_message,
        sent_at=_coerce_utc(row.sent_at),
        delivered_at=_coerce_utc(row.delivered_at),
        clicked_at=_coerce_utc(row.clicked_at),
        completed_at=_coerce_utc(row.completed_at),
        created_at=_coerce_utc(row.created_at),
        updated_at=_coerce_utc(row.updated_at),
    )


def _to_event(row: _RequestEventRow) -> EventRecord:
    return EventRecord(
        event_id=row.event_id,
        business_id=row.business_id,
        request_id=row.request_id,
        event_type=row.event_type,  # type: ignore[arg-type]
        source=row.source,  # type: ignore[arg-type]
        description=row.description,
        metadata=json.loads(row.metadata_json or "{}"),
        created_at=_coerce_utc(row.created_at),
    )


class SqlAlchemyReviewStore:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for REVIEW_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            ReviewStoreBase.metadata.create_all(self._engine)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with self._session_factory() as session:
                with session.begin():
                    yield session
        except SQLAlchemyError as exc:
            raise StoreError(f"review store operation failed: {exc}") from exc

    def close(self) -> None:
        self._engine.dispose()

    def reset(self) -> None:
        with self._session() as session:
            session.query(_RequestEventRow).delete()
            session.query(_ReviewRequestRow).delete()
            session.query(_CampaignRow).delete()
            session.query(_SuppressionRow).delete()
            session.query(_CustomerRow).delete()
            session.query(_BusinessRow).delete()

    def upsert_business(self, business: BusinessRecord) -> BusinessRecord:
        with self._session() as session:
            row = session.get(_BusinessRow, business.business_id)
            if row is None:
                row = _BusinessRow(business_id=business.business_id, created_at=business.created_at)
                session.add(row)
            row.name = business.name
            row.phone = business.phone
            row.email = business.email
            row.website = business.website
            row.google_review_url = business.google_review_url
            session.flush()
            return _to_business(row)

    def get_business(self, business_id: str) -> BusinessRecord | None:
        with self._session() as session:
            row = session.get(_BusinessRow, business_id)
            return None if row is None else _to_business(row)

    def upsert_customer(self, customer: CustomerRecord) -> CustomerRecord:
        with self._session() as session:
            row = session.get(_CustomerRow, (customer.business_id, customer.customer_id))
            if row is None:
                row = _CustomerRow(
                    business_id=customer.business_id,
                    customer_id=customer.customer_id,
                    created_at=customer.created_at,
                )
                session.add(row)
            row.first_name = customer.first_name
            row.last_name = customer.last_name
            row.email = customer.email
            row.phone = customer.phone
            row.is_active = customer.is_active
            session.flush()
            return _to_customer(row)

    def get_customer(self, business_id: str, customer_id: str) -> CustomerRecord | None:
        with self._session() as session:
            row = session.get(_CustomerRow, (business_id, customer_id))
            return None if row is None else _to_customer(row)

    def create_campaign(self, campaign: CampaignRecord) -> CampaignRecord:
        with self._session() as session:
            session.add(_CampaignRow(**campaign.__dict__))
        return campaign

    def get_campaign(self, campaign_id: str, *, business_id: str | None = None) -> CampaignRecord | None:
        with self._session() as session:
            row = session.get(_CampaignRow, campaign_id)
            if row is None or (business_id is not None and row.business_id != business_id):
                return None
            return _to_campaign(row)

    def create_request(self, record: ReviewRequestRecord) -> ReviewRequestRecord:
        with self._session() as session:
            session.add(_ReviewRequestRow(**record.__dict__))
        return record

    def get_request(self, request_id: str, *, business_id: str | None = None) -> ReviewRequestRecord | None:
        with self._session() as session:
            row = session.get(_ReviewRequestRow, request_id)
            if row is None:
                return None
            if business_id is not None and row.business_id != business_id:
                return None
            return _to_request(row)

    def get_request_by_tracking_uuid(self, tracking_uuid: str) -> ReviewRequestRecord | None:
        with self._session() as session:
            row = session.execute(
                select(_ReviewRequestRow).where(_ReviewRequestRow.tracking_uuid == tracking_uuid)
            ).scalar_one_or_none()
            return None if row is None else _to_request(row)

    def get_request_by_external_id(self, external_id: str) -> ReviewRequestRecord | None:
        with self._session() as session:
            row = session.execute(
                select(_ReviewRequestRow).where(_ReviewRequestRow.external_id == external_id).limit(1)
            ).scalar_one_or_none()
            return None if row is None else _to_request(row)

    def update_request_if_status(
        self,
        request_id: str,
        *,
        expected_status: RequestStatus,
        changes: dict[str, object],
    ) -> ReviewRequestRecord | None:
        _check_changes(changes)
        with self._session() as session:
            result = session.execute(
                update(_ReviewRequestRow)
                .where(
                    _ReviewRequestRow.request_id == request_id,
                    _ReviewRequestRow.status == expected_status,
                )
                .values(**changes, updated_at=_now_utc())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return None
            row = session.get(_ReviewRequestRow, request_id, populate_existing=True)
            return None if row is None else _to_request(row)

    def list_scheduled(self, query: ScheduledQuery) -> tuple[list[ReviewRequestRecord], int]:
        conditions = [
            _ReviewRequestRow.business_id == query.business_id,
            _ReviewRequestRow.status == "QUEUED",
            _ReviewRequestRow.scheduled_for.is_not(None),
        ]
        if query.channel is not None:
            conditions.append(_ReviewRequestRow.channel == query.channel)
        if query.scheduled_after is not None:
            conditions.append(_ReviewRequestRow.scheduled_for >= query.scheduled_after)
        if query.scheduled_before is not None:
            conditions.append(_ReviewRequestRow.scheduled_for <= query.scheduled_before)

        with self._session() as session:
            total = session.execute(
                select(func.count()).select_from(_ReviewRequestRow).where(*conditions)
            ).scalar_one()
            rows = session.execute(
                select(_ReviewRequestRow)
                .where(*conditions)
                .order_by(
                    _ReviewRequestRow.scheduled_for.asc(),
                    _ReviewRequestRow.created_at.asc(),
                    _ReviewRequestRow.request_id.asc(),
                )
                .offset(query.offset)
                .limit(query.limit)
            ).scalars()
            return [_to_request(row) for row in rows], int(total)

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
        row = _RequestEventRow(
            event_id=new_event_id(),
            business_id=business_id,
            request_id=request_id,
            event_type=event_type,
            source=source,
            description=description,
            metadata_json=json.dumps(metadata or {}, sort_keys=True, separators=(",", ":"), default=str),
            created_at=_now_utc(),
        )
        with self._session() as session:
            session.add(row)
            session.flush()
            return _to_event(row)

    def list_events(self, request_id: str) -> list[EventRecord]:
        with self._session() as session:
            rows = session.execute(
                select(_RequestEventRow)
                .where(_RequestEventRow.request_id == request_id)
                .order_by(_RequestEventRow.sequence.asc())
            ).scalars()
            return [_to_event(row) for row in rows]

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
        row = _SuppressionRow(
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
        with self._session() as session:
            session.add(row)
            session.flush()
            return _to_suppression(row)

    def find_active_suppression(
        self,
        business_id: str,
        contact: str,
        channel: Channel,
        *,
        now: datetime | None = None,
    ) -> SuppressionRecord | None:
        current = now or _now_utc()
        with self._session() as session:
            rows = session.execute(
                select(_SuppressionRow)
                .where(
                    _SuppressionRow.business_id == business_id,
                    _SuppressionRow.contact == normalize_contact(contact),
                    _SuppressionRow.is_active.is_(True),
                )
                .order_by(_SuppressionRow.created_at.asc())
            ).scalars()
            for row in rows:
                record = _to_suppression(row)
                if record.applies_to(channel, current):
                    return record
        return None


def create_review_store(*, backend: str, database_url: str) -> ReviewStore:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyReviewStore(database_url)
    if normalized == "inmemory":
        return InMemoryReviewStore()
    raise RuntimeError(f"unsupported REVIEW_STORE_BACKEND: {backend}")
