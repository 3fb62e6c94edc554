from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING, Iterable, List, Optional

from tenacity import Retrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_exponential

from .errors import CancelledError, JobNotFoundError, JobOwnershipError, PersistenceError, QuotaExceededError
from .indexing import FindingIndexer, NoopIndexer
from .models import (
    BatchJob,
    ItemStatus,
    JobItemRecord,
    JobKind,
    JobPriority,
    JobStatus,
    ProcessingItem,
    utcnow,
)
from .pipeline import ItemProcessor
from .quota import QuotaGate, resource_for_kind
from .ratelimit import RateLimiter
from .repository import BatchRepository
from .validation import DEFAULT_MAX_ITEMS, validate_urls

if TYPE_CHECKING:
    from .job_queue import JobQueue

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Cancelled by user"
ACTIVE_STATUSES = (JobStatus.QUEUED, JobStatus.PROCESSING)


class BatchJobOrchestrator:
    """
    Owns the durable batch job lifecycle: admission (validation, rate limit,
    quota), persistence of the Queued job, the per-item processing loop and
    cancellation. The orchestrator is stateless between calls; all job state
    lives in the repository so any worker process can run ``process``.
    """

    def __init__(
        self,
        repository: BatchRepository,
        quota_gate: QuotaGate,
        processor: Optional[ItemProcessor] = None,
        queue: Optional["JobQueue"] = None,
        indexer: Optional[FindingIndexer] = None,
        rate_limiter: Optional[RateLimiter] = None,
        max_items: int = DEFAULT_MAX_ITEMS,
        persist_attempts: int = 3,
        persist_backoff: float = 0.5,
    ):
        self.repo = repository
        self.quota_gate = quota_gate
        self.processor = processor
        self.queue = queue
        self.indexer = indexer or NoopIndexer()
        self.rate_limiter = rate_limiter
        self.max_items = max_items
        self.persist_attempts = max(1, persist_attempts)
        self.persist_backoff = persist_backoff
        # In-process queues run jobs through this orchestrator.
        if queue is not None and hasattr(queue, "bind") and getattr(queue, "runner", None) is None:
            queue.bind(self.process)

    def create_job(
        self,
        owner_id: str,
        kind: JobKind,
        items: Iterable[str],
        priority: JobPriority = JobPriority.NORMAL,
    ) -> BatchJob:
        kind = JobKind(kind)
        priority = JobPriority(priority)
        urls = validate_urls(items, max_items=self.max_items, allow_empty=True)
        if self.rate_limiter:
            self.rate_limiter.check(owner_id, "create_job")

        resource = resource_for_kind(kind)
        check = self.quota_gate.consume(owner_id, resource, len(urls))
        if not check.allowed:
            raise QuotaExceededError(check)

        job = BatchJob(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            kind=kind,
            status=JobStatus.QUEUED,
            total_items=len(urls),
            priority=priority,
        )
        records = [
            JobItemRecord(id=f"{job.id}-i{position}", job_id=job.id, position=position, url=url)
            for position, url in enumerate(urls)
        ]
        try:
            self._persist(self.repo.save_job, job)
            self._persist(self.repo.save_items, records)
        except PersistenceError:
            logger.exception("Could not store job %s; refunding %s unit(s) to %s", job.id, job.total_items, owner_id)
            self.quota_gate.release(owner_id, resource, job.total_items)
            self._fail(job.id, "Could not store job items")
            raise
        logger.info("Created %s job %s for %s with %s item(s)", kind.value, job.id, owner_id, job.total_items)

        if job.total_items == 0:
            now = utcnow()
            self.repo.transition_job(
                job.id,
                [JobStatus.QUEUED],
                JobStatus.COMPLETED,
                started_at=now,
                completed_at=now,
                result_summary="No items to process",
            )
        elif self.queue is not None:
            self.queue.enqueue(job.id, priority)
        return self.get_job(job.id)

    def process(self, job_id: str) -> Optional[BatchJob]:
        """
        Run a Queued job to completion. Jobs that are no longer Queued (already
        picked up, or cancelled before they started) are left untouched.
        """
        if self.processor is None:
            raise RuntimeError("Orchestrator has no item processor; jobs run on workers")
        job = self.repo.get_job(job_id)
        if not job:
            raise JobNotFoundError(f"Batch job {job_id} not found")
        if not self._persist(self.repo.transition_job, job_id, [JobStatus.QUEUED], JobStatus.PROCESSING, started_at=utcnow()):
            logger.info("Job %s is %s; skipping", job_id, job.status.value)
            return self.repo.get_job(job_id)

        try:
            for item in self.repo.list_items(job_id):
                if item.status.is_terminal:
                    continue
                self._ensure_active(job_id)
                self.processor.process(item, on_transition=self._save_item)
                self._persist(self.repo.record_item_outcome, job_id, item.status == ItemStatus.ERROR)
            self._finish(job_id)
        except CancelledError:
            logger.info("Job %s cancelled; leaving remaining items pending", job_id)
        except PersistenceError as exc:
            logger.exception("Job %s failed on a store write", job_id)
            self._fail(job_id, f"Persistence error: {exc}")
        except Exception as exc:  # noqa: BLE001
            logger.exception("Job %s failed unexpectedly", job_id)
            self._fail(job_id, str(exc) or exc.__class__.__name__)
        return self.repo.get_job(job_id)

    def get_job(self, job_id: str) -> Optional[BatchJob]:
        return self.repo.get_job(job_id)

    def list_jobs(self, owner_id: str, limit: int = 20) -> List[BatchJob]:
        return self.repo.list_jobs(owner_id, limit=limit)

    def get_items(self, job_id: str) -> List[JobItemRecord]:
        return self.repo.list_items(job_id)

    def cancel(self, job_id: str, by_owner_id: str) -> BatchJob:
        job = self.repo.get_job(job_id)
        if not job:
            raise JobNotFoundError(f"Batch job {job_id} not found")
        if job.owner_id != by_owner_id:
            raise JobOwnershipError(f"Job {job_id} does not belong to {by_owner_id}")
        if self.repo.transition_job(
            job_id,
            ACTIVE_STATUSES,
            JobStatus.FAILED,
            error_message=CANCELLED_MESSAGE,
            completed_at=utcnow(),
        ):
            logger.info("Job %s cancelled by %s", job_id, by_owner_id)
        else:
            logger.info("Cancel of job %s ignored; already %s", job_id, job.status.value)
        return self.repo.get_job(job_id)

    def _ensure_active(self, job_id: str) -> None:
        job = self._persist(self.repo.get_job, job_id)
        if job is None or job.status != JobStatus.PROCESSING:
            raise CancelledError(f"Job {job_id} is no longer processing")

    def _save_item(self, item: ProcessingItem) -> None:
        self._persist(self.repo.update_item, item)

    def _finish(self, job_id: str) -> None:
        job = self.repo.get_job(job_id)
        summary = (
            f"Processed {job.completed_items} of {job.total_items} items: "
            f"{job.succeeded_items} succeeded, {job.failed_items} failed"
        )
        completed = self._persist(
            self.repo.transition_job,
            job_id,
            [JobStatus.PROCESSING],
            JobStatus.COMPLETED,
            completed_at=utcnow(),
            result_summary=summary,
        )
        if not completed:
            logger.info("Job %s ended as %s", job_id, self.repo.get_job(job_id).status.value)
            return
        logger.info("Job %s completed: %s", job_id, summary)
        try:
            self.indexer.index_job(job_id, job.owner_id, self.repo.list_items(job_id))
        except Exception:  # noqa: BLE001
            logger.exception("Indexing findings for job %s failed", job_id)

    def _fail(self, job_id: str, message: str) -> None:
        try:
            self.repo.transition_job(job_id, ACTIVE_STATUSES, JobStatus.FAILED, error_message=message, completed_at=utcnow())
        except PersistenceError:
            logger.exception("Could not mark job %s as failed", job_id)

    def _persist(self, fn, *args, **kwargs):
        retrying = Retrying(
            stop=stop_after_attempt(self.persist_attempts),
            wait=wait_exponential(multiplier=self.persist_backoff, max=5),
            retry=retry_if_exception_type(PersistenceError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        return retrying(fn, *args, **kwargs)
