from __future__ import annotations

import copy
import threading
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Column, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from sqlmodel import Field, Session, SQLModel, create_engine, select

from ..core.errors import StoreUnavailable
from ..core.models import JobState, QueueEntry


def _claimable(entry: QueueEntry, now: int) -> bool:
    if entry.state in (JobState.WAITING, JobState.STALLED):
        return True
    return entry.state is JobState.DELAYED and entry.available_at <= now


class JobStore:
    """Queue state for every named queue.

    ``claim_next`` is the only way a job becomes active: it picks the highest
    priority claimable job (FIFO by ``seq`` among equals) and flips it to
    ``active`` atomically. ``update`` with ``expect_state`` is a
    compare-and-set on the stored state.
    """

    def add(self, entry: QueueEntry) -> None:
        raise NotImplementedError

    def claim_next(self, queue: str, now: int) -> Optional[QueueEntry]:
        raise NotImplementedError

    def update(self, entry: QueueEntry, expect_state: Optional[JobState] = None) -> bool:
        raise NotImplementedError

    def get(self, queue: str, job_id: str) -> Optional[QueueEntry]:
        raise NotImplementedError

    def list_by_state(self, queue: str, state: JobState) -> List[QueueEntry]:
        raise NotImplementedError

    def remove(self, queue: str, job_id: str) -> None:
        raise NotImplementedError

    def counts(self, queue: str) -> Dict[str, int]:
        raise NotImplementedError

    def next_seq(self, queue: str) -> int:
        raise NotImplementedError


class InMemoryJobStore(JobStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._jobs: Dict[str, Dict[str, QueueEntry]] = {}
        self._seq: Dict[str, int] = {}

    def _queue(self, queue: str) -> Dict[str, QueueEntry]:
        return self._jobs.setdefault(queue, {})

    def add(self, entry):
        with self._lock:
            self._queue(entry.queue)[entry.job_id] = copy.deepcopy(entry)

    def claim_next(self, queue, now):
        with self._lock:
            candidates = [e for e in self._queue(queue).values() if _claimable(e, now)]
            if not candidates:
                return None
            entry = min(candidates, key=lambda e: (-e.priority, e.seq))
            entry.state = JobState.ACTIVE
            entry.processed_at = now
            entry.heartbeat_at = now
            return copy.deepcopy(entry)

    def update(self, entry, expect_state=None):
        with self._lock:
            jobs = self._queue(entry.queue)
            current = jobs.get(entry.job_id)
            if current is None:
                return False
            if expect_state is not None and current.state is not expect_state:
                return False
            jobs[entry.job_id] = copy.deepcopy(entry)
            return True

    def get(self, queue, job_id):
        with self._lock:
            entry = self._queue(queue).get(job_id)
            return copy.deepcopy(entry) if entry else None

    def list_by_state(self, queue, state):
        with self._lock:
            found = [e for e in self._queue(queue).values() if e.state is state]
            return [copy.deepcopy(e) for e in sorted(found, key=lambda e: e.seq)]

    def remove(self, queue, job_id):
        with self._lock:
            self._queue(queue).pop(job_id, None)

    def counts(self, queue):
        out = {s.value: 0 for s in JobState}
        with self._lock:
            for e in self._queue(queue).values():
                out[e.state.value] += 1
        return out

    def next_seq(self, queue):
        with self._lock:
            self._seq[queue] = self._seq.get(queue, 0) + 1
            return self._seq[queue]


class QueueJob(SQLModel, table=True):
    __tablename__ = "queue_jobs"

    id: str = Field(primary_key=True)
    queue: str = Field(index=True)
    name: str
    payload: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    priority: int = 0
    seq: int = Field(default=0, index=True)
    state: str = Field(default=JobState.WAITING.value, index=True)
    attempts_made: int = 0
    max_attempts: int = 1
    backoff_ms: int = 0
    progress: int = 0
    result: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    failed_reason: Optional[str] = None
    stalled_count: int = 0
    created_at: int = 0
    available_at: int = 0
    processed_at: Optional[int] = None
    finished_at: Optional[int] = None
    heartbeat_at: Optional[int] = None


def _to_row(entry: QueueEntry) -> QueueJob:
    return QueueJob(
        id=entry.job_id,
        queue=entry.queue,
        name=entry.name,
        payload=entry.data,
        priority=entry.priority,
        seq=entry.seq,
        state=entry.state.value,
        attempts_made=entry.attempts_made,
        max_attempts=entry.max_attempts,
        backoff_ms=entry.backoff_ms,
        progress=entry.progress,
        result=entry.result,
        failed_reason=entry.failed_reason,
        stalled_count=entry.stalled_count,
        created_at=entry.created_at,
        available_at=entry.available_at,
        processed_at=entry.processed_at,
        finished_at=entry.finished_at,
        heartbeat_at=entry.heartbeat_at,
    )


def _to_entry(row: QueueJob) -> QueueEntry:
    return QueueEntry(
        job_id=row.id,
        queue=row.queue,
        name=row.name,
        data=dict(row.payload or {}),
        priority=row.priority,
        seq=row.seq,
        state=JobState(row.state),
        attempts_made=row.attempts_made,
        max_attempts=row.max_attempts,
        backoff_ms=row.backoff_ms,
        progress=row.progress,
        result=row.result,
        failed_reason=row.failed_reason,
        stalled_count=row.stalled_count,
        created_at=row.created_at,
        available_at=row.available_at,
        processed_at=row.processed_at,
        finished_at=row.finished_at,
        heartbeat_at=row.heartbeat_at,
    )


class SqlJobStore(JobStore):
    """SQLModel-backed queue state; survives a restart of the service."""

    def __init__(self, url: str = "sqlite:///./judgebox.db"):
        connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
        self.engine = create_engine(url, connect_args=connect_args)
        SQLModel.metadata.create_all(self.engine)
        # rows handed back to callers stay readable after the session closes
        self.SessionLocal = sessionmaker(bind=self.engine, class_=Session, expire_on_commit=False)
        # sqlite has no row locks; serialize writers in-process
        self._lock = threading.Lock()
        self._seq: Dict[str, int] = {}

    def _session(self) -> Session:
        return self.SessionLocal()

    def add(self, entry):
        try:
            with self._lock, self._session() as s:
                s.add(_to_row(entry))
                s.commit()
        except SQLAlchemyError as e:
            raise StoreUnavailable(str(e)) from e

    def claim_next(self, queue, now):
        claimable = (QueueJob.state.in_([JobState.WAITING.value, JobState.STALLED.value])) | (
            (QueueJob.state == JobState.DELAYED.value) & (QueueJob.available_at <= now)
        )
        stmt = (
            select(QueueJob)
            .where(QueueJob.queue == queue)
            .where(claimable)
            .order_by(QueueJob.priority.desc(), QueueJob.seq.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        try:
            with self._lock, self._session() as s:
                row = s.exec(stmt).first()
                if row is None:
                    return None
                row.state = JobState.ACTIVE.value
                row.processed_at = now
                row.heartbeat_at = now
                s.add(row)
                s.commit()
                return _to_entry(row)
        except SQLAlchemyError as e:
            raise StoreUnavailable(str(e)) from e

    def update(self, entry, expect_state=None):
        try:
            with self._lock, self._session() as s:
                row = s.exec(
                    select(QueueJob).where(QueueJob.queue == entry.queue, QueueJob.id == entry.job_id)
                ).first()
                if row is None:
                    return False
                if expect_state is not None and row.state != expect_state.value:
                    return False
                s.merge(_to_row(entry))
                s.commit()
                return True
        except SQLAlchemyError as e:
            raise StoreUnavailable(str(e)) from e

    def get(self, queue, job_id):
        try:
            with self._session() as s:
                row = s.exec(
                    select(QueueJob).where(QueueJob.queue == queue, QueueJob.id == job_id)
                ).first()
                return _to_entry(row) if row else None
        except SQLAlchemyError as e:
            raise StoreUnavailable(str(e)) from e

    def list_by_state(self, queue, state):
        try:
            with self._session() as s:
                rows = s.exec(
                    select(QueueJob)
                    .where(QueueJob.queue == queue, QueueJob.state == state.value)
                    .order_by(QueueJob.seq.asc())
                ).all()
                return [_to_entry(r) for r in rows]
        except SQLAlchemyError as e:
            raise StoreUnavailable(str(e)) from e

    def remove(self, queue, job_id):
        try:
            with self._lock, self._session() as s:
                row = s.exec(
                    select(QueueJob).where(QueueJob.queue == queue, QueueJob.id == job_id)
                ).first()
                if row is not None:
                    s.delete(row)
                    s.commit()
        except SQLAlchemyError as e:
            raise StoreUnavailable(str(e)) from e

    def counts(self, queue):
        out = {s.value: 0 for s in JobState}
        try:
            with self._session() as s:
                rows = s.exec(
                    select(QueueJob.state, func.count())
                    .where(QueueJob.queue == queue)
                    .group_by(QueueJob.state)
                ).all()
        except SQLAlchemyError as e:
            raise StoreUnavailable(str(e)) from e
        for state, n in rows:
            out[state] = n
        return out

    def next_seq(self, queue):
        with self._lock:
            if queue not in self._seq:
                try:
                    with self._session() as s:
                        top = s.exec(
                            select(func.max(QueueJob.seq)).where(QueueJob.queue == queue)
                        ).one()
                except SQLAlchemyError as e:
                    raise StoreUnavailable(str(e)) from e
                self._seq[queue] = top or 0
            self._seq[queue] += 1
            return self._seq[queue]
