from __future__ import annotations

import json
import threading
import uuid
from contextlib import contextmanager
from copy import deepcopy
from datetime import datetime
from typing import Dict, Iterable, Iterator, List, Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    Integer,
    String,
    Text,
    UniqueConstraint,
    case,
    create_engine,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .errors import PersistenceError
from .models import (
    BatchJob,
    Finding,
    ItemStatus,
    JobItemRecord,
    JobKind,
    JobPriority,
    JobStatus,
    Resource,
    Subscription,
    SubscriptionStatus,
    SubscriptionTier,
    UsageRecord,
    utcnow,
)

Base = declarative_base()


class BatchJobModel(Base):
    __tablename__ = "batch_jobs"
    id = Column(String, primary_key=True)
    owner_id = Column(String, index=True)
    kind = Column(Enum(JobKind))
    status = Column(Enum(JobStatus))
    total_items = Column(Integer, default=0)
    completed_items = Column(Integer, default=0)
    failed_items = Column(Integer, default=0)
    priority = Column(Enum(JobPriority))
    created_at = Column(DateTime, index=True)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    error_message = Column(String)
    result_summary = Column(String)


class JobItemModel(Base):
    __tablename__ = "job_items"
    id = Column(String, primary_key=True)
    job_id = Column(String, index=True)
    position = Column(Integer)
    url = Column(String)
    status = Column(Enum(ItemStatus))
    error_reason = Column(String)
    findings_json = Column(Text)
    raw_content = Column(Text)
    title = Column(String)
    venue = Column(String)
    updated_at = Column(DateTime)


class SubscriptionModel(Base):
    __tablename__ = "subscriptions"
    id = Column(String, primary_key=True)
    owner_id = Column(String, index=True)
    tier = Column(Enum(SubscriptionTier))
    status = Column(Enum(SubscriptionStatus))
    current_period_start = Column(DateTime)
    current_period_end = Column(DateTime)
    cancel_at_period_end = Column(Boolean, default=False)
    trial_ends_at = Column(DateTime)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)


class UsageRecordModel(Base):
    __tablename__ = "usage_records"
    __table_args__ = (UniqueConstraint("owner_id", "period_start", name="uq_usage_owner_period"),)
    id = Column(String, primary_key=True)
    owner_id = Column(String, index=True)
    period_start = Column(DateTime)
    period_end = Column(DateTime)
    items_processed = Column(Integer, default=0)
    api_calls = Column(Integer, default=0)
    export_count = Column(Integer, default=0)
    last_updated = Column(DateTime)


class BatchRepository:
    """
    Abstract persistence boundary for batch jobs, their items, subscriptions
    and usage records. Reads return copies, so callers can never mutate
    stored state by accident. Counter updates and status transitions are
    atomic at the store level.
    """

    # Job operations
    def save_job(self, job: BatchJob) -> None:
        raise NotImplementedError

    def get_job(self, job_id: str) -> Optional[BatchJob]:
        raise NotImplementedError

    def list_jobs(self, owner_id: str, limit: int = 20) -> List[BatchJob]:
        raise NotImplementedError

    def transition_job(self, job_id: str, from_statuses: Iterable[JobStatus], to_status: JobStatus, **fields) -> bool:
        """Set ``to_status`` (plus ``fields``) only if the job is currently in ``from_statuses``."""
        raise NotImplementedError

    def record_item_outcome(self, job_id: str, failed: bool) -> Optional[BatchJob]:
        """Atomically count one more terminal item for the job."""
        raise NotImplementedError

    # Item operations
    def save_items(self, items: Iterable[JobItemRecord]) -> None:
        raise NotImplementedError

    def update_item(self, item: JobItemRecord) -> None:
        raise NotImplementedError

    def list_items(self, job_id: str) -> List[JobItemRecord]:
        raise NotImplementedError

    # Subscription operations
    def save_subscription(self, subscription: Subscription) -> None:
        raise NotImplementedError

    def get_subscription(self, owner_id: str) -> Optional[Subscription]:
        """Most recently created subscription for the owner."""
        raise NotImplementedError

    # Usage operations
    def create_usage_record(self, record: UsageRecord) -> UsageRecord:
        """Insert a record, or return the existing one for the same (owner, period_start)."""
        raise NotImplementedError

    def find_usage_record(self, owner_id: str, at: datetime) -> Optional[UsageRecord]:
        """Record whose period contains ``at``."""
        raise NotImplementedError

    def list_usage_records(self, owner_id: str) -> List[UsageRecord]:
        raise NotImplementedError

    def increment_usage(
        self,
        record_id: str,
        resource: Resource,
        amount: int = 1,
        limit: Optional[int] = None,
    ) -> Optional[UsageRecord]:
        """
        Add ``amount`` to one counter. With a ``limit`` (other than -1) the
        increment happens only if the new value stays within it; returns
        None when refused or when the record does not exist.
        """
        raise NotImplementedError

    def decrement_usage(self, record_id: str, resource: Resource, amount: int) -> Optional[UsageRecord]:
        """Subtract ``amount`` from one counter, never going below zero."""
        raise NotImplementedError


class InMemoryBatchRepository(BatchRepository):
    """
    In-memory store for local runs and tests. A single lock serializes
    writes so counter updates behave like the SQL store's single-statement
    updates.
    """

    def __init__(self):
        self.jobs: Dict[str, BatchJob] = {}
        self.items: Dict[str, JobItemRecord] = {}
        self.subscriptions: Dict[str, Subscription] = {}
        self.usage_records: Dict[str, UsageRecord] = {}
        self._lock = threading.RLock()

    def _clone(self, obj):
        return deepcopy(obj)

    def save_job(self, job: BatchJob) -> None:
        with self._lock:
            self.jobs[job.id] = self._clone(job)

    def get_job(self, job_id: str) -> Optional[BatchJob]:
        with self._lock:
            job = self.jobs.get(job_id)
            return self._clone(job) if job else None

    def list_jobs(self, owner_id: str, limit: int = 20) -> List[BatchJob]:
        with self._lock:
            owned = [(i, j) for i, j in enumerate(self.jobs.values()) if j.owner_id == owner_id]
            # Ties on created_at go to the later insert.
            owned.sort(key=lambda pair: (pair[1].created_at, pair[0]), reverse=True)
            return [self._clone(j) for _, j in owned[:limit]]

    def transition_job(self, job_id: str, from_statuses: Iterable[JobStatus], to_status: JobStatus, **fields) -> bool:
        with self._lock:
            job = self.jobs.get(job_id)
            if not job or job.status not in tuple(from_statuses):
                return False
            job.status = to_status
            for name, value in fields.items():
                setattr(job, name, value)
            return True

    def record_item_outcome(self, job_id: str, failed: bool) -> Optional[BatchJob]:
        with self._lock:
            job = self.jobs.get(job_id)
            if not job:
                return None
            job.completed_items += 1
            if failed:
                job.failed_items += 1
            return self._clone(job)

    def save_items(self, items: Iterable[JobItemRecord]) -> None:
        with self._lock:
            for item in items:
                self.items[item.id] = self._clone(item)

    def update_item(self, item: JobItemRecord) -> None:
        with self._lock:
            item.updated_at = utcnow()
            self.items[item.id] = self._clone(item)

    def list_items(self, job_id: str) -> List[JobItemRecord]:
        with self._lock:
            rows = [i for i in self.items.values() if i.job_id == job_id]
            return [self._clone(i) for i in sorted(rows, key=lambda i: i.position)]

    def save_subscription(self, subscription: Subscription) -> None:
        with self._lock:
            if not subscription.id:
                subscription.id = str(uuid.uuid4())
            self.subscriptions[subscription.id] = self._clone(subscription)

    def get_subscription(self, owner_id: str) -> Optional[Subscription]:
        with self._lock:
            owned = [(i, s) for i, s in enumerate(self.subscriptions.values()) if s.owner_id == owner_id]
            if not owned:
                return None
            # Ties on created_at go to the later insert.
            _, latest = max(owned, key=lambda pair: (pair[1].created_at, pair[0]))
            return self._clone(latest)

    def create_usage_record(self, record: UsageRecord) -> UsageRecord:
        with self._lock:
            for existing in self.usage_records.values():
                if existing.owner_id == record.owner_id and existing.period_start == record.period_start:
                    return self._clone(existing)
            if not record.id:
                record.id = str(uuid.uuid4())
            self.usage_records[record.id] = self._clone(record)
            return self._clone(record)

    def find_usage_record(self, owner_id: str, at: datetime) -> Optional[UsageRecord]:
        with self._lock:
            for record in self.usage_records.values():
                if record.owner_id == owner_id and record.period_start <= at < record.period_end:
                    return self._clone(record)
            return None

    def list_usage_records(self, owner_id: str) -> List[UsageRecord]:
        with self._lock:
            owned = [r for r in self.usage_records.values() if r.owner_id == owner_id]
            owned.sort(key=lambda r: r.period_start, reverse=True)
            return [self._clone(r) for r in owned]

    def increment_usage(
        self,
        record_id: str,
        resource: Resource,
        amount: int = 1,
        limit: Optional[int] = None,
    ) -> Optional[UsageRecord]:
        field_name = Resource(resource).value
        with self._lock:
            record = self.usage_records.get(record_id)
            if not record:
                return None
            projected = getattr(record, field_name) + amount
            if limit is not None and limit != -1 and projected > limit:
                return None
            setattr(record, field_name, projected)
            record.last_updated = utcnow()
            return self._clone(record)

    def decrement_usage(self, record_id: str, resource: Resource, amount: int) -> Optional[UsageRecord]:
        field_name = Resource(resource).value
        with self._lock:
            record = self.usage_records.get(record_id)
            if not record:
                return None
            setattr(record, field_name, max(0, getattr(record, field_name) - amount))
            record.last_updated = utcnow()
            return self._clone(record)


class SqlAlchemyBatchRepository(BatchRepository):
    """
    SQL-backed repository using SQLAlchemy. Works with SQLite/Postgres URLs.
    Driver errors surface as PersistenceError.
    """

    def __init__(self, database_url: str):
        self.engine = create_engine(database_url, future=True)
        Base.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False, future=True)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self.SessionLocal()
        try:
            yield session
        except IntegrityError:
            session.rollback()
            raise
        except SQLAlchemyError as exc:
            session.rollback()
            raise PersistenceError(str(exc)) from exc
        finally:
            session.close()

    # region Job operations
    def _job_from_model(self, model: BatchJobModel) -> BatchJob:
        return BatchJob(
            id=model.id,
            owner_id=model.owner_id,
            kind=model.kind,
            status=model.status,
            total_items=model.total_items or 0,
            completed_items=model.completed_items or 0,
            failed_items=model.failed_items or 0,
            priority=model.priority,
            created_at=model.created_at,
            started_at=model.started_at,
            completed_at=model.completed_at,
            error_message=model.error_message,
            result_summary=model.result_summary,
        )

    def save_job(self, job: BatchJob) -> None:
        with self._session() as session:
            model = BatchJobModel(
                id=job.id,
                owner_id=job.owner_id,
                kind=job.kind,
                status=job.status,
                total_items=job.total_items,
                completed_items=job.completed_items,
                failed_items=job.failed_items,
                priority=job.priority,
                created_at=job.created_at,
                started_at=job.started_at,
                completed_at=job.completed_at,
                error_message=job.error_message,
                result_summary=job.result_summary,
            )
            session.merge(model)
            session.commit()

    def get_job(self, job_id: str) -> Optional[BatchJob]:
        with self._session() as session:
            model = session.get(BatchJobModel, job_id)
            return self._job_from_model(model) if model else None

    def list_jobs(self, owner_id: str, limit: int = 20) -> List[BatchJob]:
        with self._session() as session:
            stmt = (
                select(BatchJobModel)
                .where(BatchJobModel.owner_id == owner_id)
                .order_by(BatchJobModel.created_at.desc())
                .limit(limit)
            )
            return [self._job_from_model(m) for m in session.execute(stmt).scalars().all()]

    def transition_job(self, job_id: str, from_statuses: Iterable[JobStatus], to_status: JobStatus, **fields) -> bool:
        with self._session() as session:
            stmt = (
                update(BatchJobModel)
                .where(BatchJobModel.id == job_id, BatchJobModel.status.in_(list(from_statuses)))
                .values(status=to_status, **fields)
            )
            result = session.execute(stmt)
            session.commit()
            return result.rowcount == 1

    def record_item_outcome(self, job_id: str, failed: bool) -> Optional[BatchJob]:
        with self._session() as session:
            stmt = (
                update(BatchJobModel)
                .where(BatchJobModel.id == job_id)
                .values(
                    completed_items=BatchJobModel.completed_items + 1,
                    failed_items=BatchJobModel.failed_items + (1 if failed else 0),
                )
            )
            session.execute(stmt)
            session.commit()
        return self.get_job(job_id)

    # endregion

    # region Item operations
    def _item_model(self, item: JobItemRecord) -> JobItemModel:
        return JobItemModel(
            id=item.id,
            job_id=item.job_id,
            position=item.position,
            url=item.url,
            status=item.status,
            error_reason=item.error_reason,
            findings_json=json.dumps([f.to_dict() for f in item.findings]),
            raw_content=item.raw_content,
            title=item.title,
            venue=item.venue,
            updated_at=item.updated_at,
        )

    def save_items(self, items: Iterable[JobItemRecord]) -> None:
        with self._session() as session:
            for item in items:
                session.merge(self._item_model(item))
            session.commit()

    def update_item(self, item: JobItemRecord) -> None:
        item.updated_at = utcnow()
        self.save_items([item])

    def list_items(self, job_id: str) -> List[JobItemRecord]:
        with self._session() as session:
            stmt = select(JobItemModel).where(JobItemModel.job_id == job_id).order_by(JobItemModel.position)
            return [
                JobItemRecord(
                    id=m.id,
                    job_id=m.job_id,
                    position=m.position,
                    url=m.url,
                    status=m.status,
                    error_reason=m.error_reason,
                    findings=[Finding.from_dict(f) for f in json.loads(m.findings_json or "[]")],
                    raw_content=m.raw_content,
                    title=m.title,
                    venue=m.venue,
                    updated_at=m.updated_at,
                )
                for m in session.execute(stmt).scalars().all()
            ]

    # endregion

    # region Subscription operations
    def save_subscription(self, subscription: Subscription) -> None:
        if not subscription.id:
            subscription.id = str(uuid.uuid4())
        with self._session() as session:
            model = SubscriptionModel(
                id=subscription.id,
                owner_id=subscription.owner_id,
                tier=subscription.tier,
                status=subscription.status,
                current_period_start=subscription.current_period_start,
                current_period_end=subscription.current_period_end,
                cancel_at_period_end=subscription.cancel_at_period_end,
                trial_ends_at=subscription.trial_ends_at,
                created_at=subscription.created_at,
                updated_at=subscription.updated_at,
            )
            session.merge(model)
            session.commit()

    def get_subscription(self, owner_id: str) -> Optional[Subscription]:
        with self._session() as session:
            stmt = (
                select(SubscriptionModel)
                .where(SubscriptionModel.owner_id == owner_id)
                .order_by(SubscriptionModel.created_at.desc())
                .limit(1)
            )
            model = session.execute(stmt).scalars().first()
            if not model:
                return None
            return Subscription(
                id=model.id,
                owner_id=model.owner_id,
                tier=model.tier,
                status=model.status,
                current_period_start=model.current_period_start,
                current_period_end=model.current_period_end,
                cancel_at_period_end=bool(model.cancel_at_period_end),
                trial_ends_at=model.trial_ends_at,
                created_at=model.created_at,
                updated_at=model.updated_at,
            )

    # endregion

    # region Usage operations
    def _usage_from_model(self, model: UsageRecordModel) -> UsageRecord:
        return UsageRecord(
            id=model.id,
            owner_id=model.owner_id,
            period_start=model.period_start,
            period_end=model.period_end,
            items_processed=model.items_processed or 0,
            api_calls=model.api_calls or 0,
            export_count=model.export_count or 0,
            last_updated=model.last_updated,
        )

    def _get_usage_by_period(self, owner_id: str, period_start: datetime) -> Optional[UsageRecord]:
        with self._session() as session:
            stmt = select(UsageRecordModel).where(
                UsageRecordModel.owner_id == owner_id,
                UsageRecordModel.period_start == period_start,
            )
            model = session.execute(stmt).scalars().first()
            return self._usage_from_model(model) if model else None

    def create_usage_record(self, record: UsageRecord) -> UsageRecord:
        existing = self._get_usage_by_period(record.owner_id, record.period_start)
        if existing:
            return existing
        if not record.id:
            record.id = str(uuid.uuid4())
        try:
            with self._session() as session:
                session.add(
                    UsageRecordModel(
                        id=record.id,
                        owner_id=record.owner_id,
                        period_start=record.period_start,
                        period_end=record.period_end,
                        items_processed=record.items_processed,
                        api_calls=record.api_calls,
                        export_count=record.export_count,
                        last_updated=record.last_updated,
                    )
                )
                session.commit()
        except IntegrityError:
            # Another writer created the period's record first.
            existing = self._get_usage_by_period(record.owner_id, record.period_start)
            if existing:
                return existing
            raise PersistenceError(f"Could not create usage record for {record.owner_id}")
        return deepcopy(record)

    def find_usage_record(self, owner_id: str, at: datetime) -> Optional[UsageRecord]:
        with self._session() as session:
            stmt = select(UsageRecordModel).where(
                UsageRecordModel.owner_id == owner_id,
                UsageRecordModel.period_start <= at,
                UsageRecordModel.period_end > at,
            )
            model = session.execute(stmt).scalars().first()
            return self._usage_from_model(model) if model else None

    def list_usage_records(self, owner_id: str) -> List[UsageRecord]:
        with self._session() as session:
            stmt = (
                select(UsageRecordModel)
                .where(UsageRecordModel.owner_id == owner_id)
                .order_by(UsageRecordModel.period_start.desc())
            )
            return [self._usage_from_model(m) for m in session.execute(stmt).scalars().all()]

    def increment_usage(
        self,
        record_id: str,
        resource: Resource,
        amount: int = 1,
        limit: Optional[int] = None,
    ) -> Optional[UsageRecord]:
        field_name = Resource(resource).value
        column = getattr(UsageRecordModel, field_name)
        with self._session() as session:
            stmt = update(UsageRecordModel).where(UsageRecordModel.id == record_id)
            if limit is not None and limit != -1:
                stmt = stmt.where(column + amount <= limit)
            result = session.execute(stmt.values(**{field_name: column + amount, "last_updated": utcnow()}))
            session.commit()
            if result.rowcount != 1:
                return None
            model = session.get(UsageRecordModel, record_id)
            return self._usage_from_model(model) if model else None

    def decrement_usage(self, record_id: str, resource: Resource, amount: int) -> Optional[UsageRecord]:
        field_name = Resource(resource).value
        column = getattr(UsageRecordModel, field_name)
        with self._session() as session:
            stmt = (
                update(UsageRecordModel)
                .where(UsageRecordModel.id == record_id)
                .values(**{field_name: case((column > amount, column - amount), else_=0), "last_updated": utcnow()})
            )
            result = session.execute(stmt)
            session.commit()
            if result.rowcount != 1:
                return None
            model = session.get(UsageRecordModel, record_id)
            return self._usage_from_model(model) if model else None

    # endregion
