from __future__ import annotations

import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Iterator, Literal, Protocol

from sqlalchemy import DateTime, Integer, String, Text, create_engine, delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

NORMAL_PRIORITY = 5
SEND_NOW_PRIORITY = 10

JobStatus = Literal["pending", "processing"]


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _new_job_id() -> str:
    return f"job_{uuid.uuid4().hex}"


class DispatchQueueError(RuntimeError):
    """Raised when the queue substrate rejects or cannot complete an operation."""


class DuplicateJobError(DispatchQueueError):
    """Raised by enqueue when a job already exists for the request id."""

    def __init__(self, request_id: str) -> None:
        super().__init__(f"dispatch job already exists for request: {request_id}")
        self.request_id = request_id


@dataclass(frozen=True)
class DispatchJob:
    request_id: str
    job_id: str
    run_at: datetime
    priority: int
    attempts: int
    status: JobStatus
    created_at: datetime
    last_error: str | None = None
    claimed_at: datetime | None = None

    def delay_seconds(self, now: datetime | None = None) -> float:
        current = now or _now_utc()
        return max(0.0, (self.run_at - current).total_seconds())


def _new_job(request_id: str, *, delay_seconds: float, priority: int, now: datetime) -> DispatchJob:
    return DispatchJob(
        request_id=request_id,
        job_id=_new_job_id(),
        run_at=now + timedelta(seconds=max(0.0, delay_seconds)),
        priority=priority,
        attempts=0,
        status="pending",
        created_at=now,
    )


def _claim_order(job: DispatchJob) -> tuple[int, datetime, datetime]:
    return (-job.priority, job.run_at, job.created_at)


class DispatchQueue(Protocol):
    def enqueue(
        self,
        request_id: str,
        *,
        delay_seconds: float,
        priority: int = NORMAL_PRIORITY,
        now: datetime | None = None,
    ) -> DispatchJob: ...

    def replace(
        self,
        request_id: str,
        *,
        delay_seconds: float,
        priority: int = NORMAL_PRIORITY,
        now: datetime | None = None,
    ) -> DispatchJob: ...

    def remove(self, request_id: str) -> bool: ...

    def get(self, request_id: str) -> DispatchJob | None: ...

    def list_pending(self, *, limit: int = 100) -> list[DispatchJob]: ...

    def claim_due(self, now: datetime | None = None, *, limit: int = 10) -> list[DispatchJob]: ...

    def complete(self, job: DispatchJob) -> bool: ...

    def retry(
        self,
        job: DispatchJob,
        *,
        delay_seconds: float,
        error: str,
        now: datetime | None = None,
    ) -> DispatchJob | None: ...

    def release_stale(self, older_than: datetime) -> int: ...

    def reset(self) -> None: ...

    def close(self) -> None: ...


class InMemoryDispatchQueue:
    """Single-process queue keyed by request id."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._jobs: dict[str, DispatchJob] = {}

    def reset(self) -> None:
        with self._lock:
            self._jobs.clear()

    def close(self) -> None:
        return None

    def enqueue(
        self,
        request_id: str,
        *,
        delay_seconds: float,
        priority: int = NORMAL_PRIORITY,
        now: datetime | None = None,
    ) -> DispatchJob:
        job = _new_job(request_id, delay_seconds=delay_seconds, priority=priority, now=now or _now_utc())
        with self._lock:
            if request_id in self._jobs:
                raise DuplicateJobError(request_id)
            self._jobs[request_id] = job
        return job

    def replace(
        self,
        request_id: str,
        *,
        delay_seconds: float,
        priority: int = NORMAL_PRIORITY,
        now: datetime | None = None,
    ) -> DispatchJob:
        job = _new_job(request_id, delay_seconds=delay_seconds, priority=priority, now=now or _now_utc())
        with self._lock:
            self._jobs[request_id] = job
        return job

    def remove(self, request_id: str) -> bool:
        with self._lock:
            return self._jobs.pop(request_id, None) is not None

    def get(self, request_id: str) -> DispatchJob | None:
        with self._lock:
            return self._jobs.get(request_id)

    def list_pending(self, *, limit: int = 100) -> list[DispatchJob]:
        with self._lock:
            pending = [job for job in self._jobs.values() if job.status == "pending"]
        pending.sort(key=_claim_order)
        return pending[:limit]

    def claim_due(self, now: datetime | None = None, *, limit: int = 10) -> list[DispatchJob]:
        current = now or _now_utc()
        with self._lock:
            due = [job for job in self._jobs.values() if job.status == "pending" and job.run_at <= current]
            due.sort(key=_claim_order)
            claimed: list[DispatchJob] = []
            for job in due[:limit]:
                updated = DispatchJob(**{**job.__dict__, "status": "processing", "claimed_at": current})
                self._jobs[job.request_id] = updated
                claimed.append(updated)
            return claimed

    def complete(self, job: DispatchJob) -> bool:
        with self._lock:
            current = self._jobs.get(job.request_id)
            if current is None or current.job_id != job.job_id:
                return False
            del self._jobs[job.request_id]
            return True

    def retry(
        self,
        job: DispatchJob,
        *,
        delay_seconds: float,
        error: str,
        now: datetime | None = None,
    ) -> DispatchJob | None:
        current_time = now or _now_utc()
        with self._lock:
            current = self._jobs.get(job.request_id)
            if current is None or current.job_id != job.job_id:
                return None
            updated = DispatchJob(
                **{
                    **current.__dict__,
                    "status": "pending",
                    "attempts": current.attempts + 1,
                    "run_at": current_time + timedelta(seconds=max(0.0, delay_seconds)),
                    "last_error": error,
                    "claimed_at": None,
                }
            )
            self._jobs[job.request_id] = updated
            return updated

    def release_stale(self, older_than: datetime) -> int:
        released = 0
        with self._lock:
            for request_id, job in list(self._jobs.items()):
                if job.status != "processing" or job.claimed_at is None or job.claimed_at >= older_than:
                    continue
                self._jobs[request_id] = DispatchJob(**{**job.__dict__, "status": "pending", "claimed_at": None})
                released += 1
        return released


class DispatchQueueBase(DeclarativeBase):
    pass


class _DispatchJobRow(DispatchQueueBase):
    __tablename__ = "dispatch_jobs"

    request_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    job_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=NORMAL_PRIORITY)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending", index=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _to_job(row: _DispatchJobRow) -> DispatchJob:
    return DispatchJob(
        request_id=row.request_id,
        job_id=row.job_id,
        run_at=_coerce_utc(row.run_at),
        priority=row.priority,
        attempts=row.attempts,
        status=row.status,  # type: ignore[arg-type]
        last_error=row.last_error,
        claimed_at=_coerce_utc(row.claimed_at),
        created_at=_coerce_utc(row.created_at),
    )


def _to_row(job: DispatchJob) -> _DispatchJobRow:
    return _DispatchJobRow(**job.__dict__)


class SqlAlchemyDispatchQueue:
    """Durable queue on the ``dispatch_jobs`` table, one row per request id."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for DISPATCH_QUEUE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            DispatchQueueBase.metadata.create_all(self._engine)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with self._session_factory() as session:
                with session.begin():
                    yield session
        except IntegrityError:
            raise
        except SQLAlchemyError as exc:
            raise DispatchQueueError(f"dispatch queue operation failed: {exc}") from exc

    def close(self) -> None:
        self._engine.dispose()

    def reset(self) -> None:
        with self._session() as session:
            session.execute(delete(_DispatchJobRow))

    def enqueue(
        self,
        request_id: str,
        *,
        delay_seconds: float,
        priority: int = NORMAL_PRIORITY,
        now: datetime | None = None,
    ) -> DispatchJob:
        job = _new_job(request_id, delay_seconds=delay_seconds, priority=priority, now=now or _now_utc())
        try:
            with self._session() as session:
                if session.get(_DispatchJobRow, request_id) is not None:
                    raise DuplicateJobError(request_id)
                session.add(_to_row(job))
        except IntegrityError as exc:
            raise DuplicateJobError(request_id) from exc
        return job

    def replace(
        self,
        request_id: str,
        *,
        delay_seconds: float,
        priority: int = NORMAL_PRIORITY,
        now: datetime | None = None,
    ) -> DispatchJob:
        job = _new_job(request_id, delay_seconds=delay_seconds, priority=priority, now=now or _now_utc())
        try:
            with self._session() as session:
                session.execute(delete(_DispatchJobRow).where(_DispatchJobRow.request_id == request_id))
                session.add(_to_row(job))
        except IntegrityError as exc:
            raise DispatchQueueError(f"concurrent replace for request: {request_id}") from exc
        return job

    def remove(self, request_id: str) -> bool:
        with self._session() as session:
            result = session.execute(delete(_DispatchJobRow).where(_DispatchJobRow.request_id == request_id))
            return result.rowcount > 0

    def get(self, request_id: str) -> DispatchJob | None:
        with self._session() as session:
            row = session.get(_DispatchJobRow, request_id)
            return None if row is None else _to_job(row)

    def list_pending(self, *, limit: int = 100) -> list[DispatchJob]:
        with self._session() as session:
            rows = session.execute(
                select(_DispatchJobRow)
                .where(_DispatchJobRow.status == "pending")
                .order_by(
                    _DispatchJobRow.priority.desc(),
                    _DispatchJobRow.run_at.asc(),
                    _DispatchJobRow.created_at.asc(),
                )
                .limit(limit)
            ).scalars()
            return [_to_job(row) for row in rows]

    def claim_due(self, now: datetime | None = None, *, limit: int = 10) -> list[DispatchJob]:
        current = now or _now_utc()
        with self._session() as session:
            rows = list(
                session.execute(
                    select(_DispatchJobRow)
                    .where(
                        _DispatchJobRow.status == "pending",
                        _DispatchJobRow.run_at <= current,
                    )
                    .order_by(
                        _DispatchJobRow.priority.desc(),
                        _DispatchJobRow.run_at.asc(),
                        _DispatchJobRow.created_at.asc(),
                    )
                    .limit(limit)
                    .with_for_update(skip_locked=True)
                ).scalars()
            )
            for row in rows:
                row.status = "processing"
                row.claimed_at = current
            session.flush()
            return [_to_job(row) for row in rows]

    def complete(self, job: DispatchJob) -> bool:
        with self._session() as session:
            result = session.execute(
                delete(_DispatchJobRow).where(
                    _DispatchJobRow.request_id == job.request_id,
                    _DispatchJobRow.job_id == job.job_id,
                )
            )
            return result.rowcount > 0

    def retry(
        self,
        job: DispatchJob,
        *,
        delay_seconds: float,
        error: str,
        now: datetime | None = None,
    ) -> DispatchJob | None:
        current_time = now or _now_utc()
        with self._session() as session:
            result = session.execute(
                update(_DispatchJobRow)
                .where(
                    _DispatchJobRow.request_id == job.request_id,
                    _DispatchJobRow.job_id == job.job_id,
                )
                .values(
                    status="pending",
                    attempts=_DispatchJobRow.attempts + 1,
                    run_at=current_time + timedelta(seconds=max(0.0, delay_seconds)),
                    last_error=error,
                    claimed_at=None,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return None
            row = session.get(_DispatchJobRow, job.request_id, populate_existing=True)
            return None if row is None else _to_job(row)

    def release_stale(self, older_than: datetime) -> int:
        with self._session() as session:
            result = session.execute(
                update(_DispatchJobRow)
                .where(
                    _DispatchJobRow.status == "processing",
                    _DispatchJobRow.claimed_at < older_than,
                )
                .values(status="pending", claimed_at=None)
                .execution_options(synchronize_session=False)
            )
            return int(result.rowcount or 0)


def create_dispatch_queue(*, backend: str, database_url: str) -> DispatchQueue:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyDispatchQueue(database_url)
    if normalized == "inmemory":
        return InMemoryDispatchQueue()
    raise RuntimeError(f"unsupported DISPATCH_QUEUE_BACKEND: {backend}")
