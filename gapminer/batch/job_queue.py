from __future__ import annotations

import itertools
import logging
import os
import queue
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, List, Optional, Protocol

from redis import Redis
from rq import Queue, Worker

from .collaborators import ContentFetcher, FindingExtractor, load_object
from .indexing import FindingIndexer, NoopIndexer, WhooshFindingIndexer
from .ledger import UsageLedger
from .models import JobPriority
from .orchestrator import BatchJobOrchestrator
from .pipeline import ItemProcessor
from .quota import QuotaGate
from .repository import BatchRepository, SqlAlchemyBatchRepository
from .validation import DEFAULT_MAX_ITEMS

logger = logging.getLogger(__name__)

Runner = Callable[[str], Any]


@dataclass
class WorkerConfig:
    database_url: str = "sqlite+pysqlite:///./data/gapminer.db"
    redis_url: str = "redis://localhost:6379/0"
    queue_name: str = "batch-jobs"
    findings_index_dir: Optional[str] = None
    content_fetcher: str = ""
    finding_extractor: str = ""
    fetch_timeout: float = 30.0
    analyze_timeout: float = 120.0
    fetch_attempts: int = 2
    retry_backoff: float = 1.0
    max_items: int = DEFAULT_MAX_ITEMS

    @classmethod
    def from_env(cls) -> "WorkerConfig":
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            redis_url=os.getenv("REDIS_URL", cls.redis_url),
            queue_name=os.getenv("BATCH_QUEUE_NAME", cls.queue_name),
            findings_index_dir=os.getenv("FINDINGS_INDEX_DIR") or None,
            content_fetcher=os.getenv("CONTENT_FETCHER", ""),
            finding_extractor=os.getenv("FINDING_EXTRACTOR", ""),
            fetch_timeout=float(os.getenv("FETCH_TIMEOUT", cls.fetch_timeout)),
            analyze_timeout=float(os.getenv("ANALYZE_TIMEOUT", cls.analyze_timeout)),
            fetch_attempts=int(os.getenv("FETCH_ATTEMPTS", cls.fetch_attempts)),
            retry_backoff=float(os.getenv("RETRY_BACKOFF", cls.retry_backoff)),
            max_items=int(os.getenv("MAX_BATCH_ITEMS", cls.max_items)),
        )


def build_orchestrator(
    config: WorkerConfig,
    repository: Optional[BatchRepository] = None,
    fetcher: Optional[ContentFetcher] = None,
    extractor: Optional[FindingExtractor] = None,
    queue: Optional["JobQueue"] = None,
    indexer: Optional[FindingIndexer] = None,
    **kwargs,
) -> BatchJobOrchestrator:
    """
    Wire an orchestrator from config. Collaborators not passed in are
    loaded from the ``module:attribute`` paths in the config.
    """
    repo = repository or SqlAlchemyBatchRepository(config.database_url)
    if fetcher is None:
        if not config.content_fetcher:
            raise ValueError("No content fetcher configured (set CONTENT_FETCHER)")
        fetcher = load_object(config.content_fetcher)
    if extractor is None:
        if not config.finding_extractor:
            raise ValueError("No finding extractor configured (set FINDING_EXTRACTOR)")
        extractor = load_object(config.finding_extractor)
    if indexer is None:
        indexer = WhooshFindingIndexer(Path(config.findings_index_dir)) if config.findings_index_dir else NoopIndexer()

    processor = ItemProcessor(
        fetcher=fetcher,
        extractor=extractor,
        fetch_timeout=config.fetch_timeout,
        analyze_timeout=config.analyze_timeout,
        fetch_attempts=config.fetch_attempts,
        retry_backoff=config.retry_backoff,
    )
    return BatchJobOrchestrator(
        repository=repo,
        quota_gate=QuotaGate(UsageLedger(repo)),
        processor=processor,
        queue=queue,
        indexer=indexer,
        max_items=config.max_items,
        **kwargs,
    )


def run_batch_job(job_id: str, config: WorkerConfig) -> None:
    """
    RQ task entrypoint. Builds the orchestrator from config and processes one job.
    """
    from ..logging_config import configure_logging

    configure_logging()
    orchestrator = build_orchestrator(config)
    orchestrator.process(job_id)


class JobQueue(Protocol):
    def enqueue(self, job_id: str, priority: JobPriority = JobPriority.NORMAL) -> Any:
        ...


class InlineJobQueue:
    """
    Runs each job synchronously inside ``enqueue``. Used by tests and scripts
    where a separate worker is not wanted.
    """

    def __init__(self, runner: Optional[Runner] = None):
        self.runner = runner
        self.enqueued: List[str] = []

    def bind(self, runner: Runner) -> None:
        self.runner = runner

    def enqueue(self, job_id: str, priority: JobPriority = JobPriority.NORMAL) -> None:
        self.enqueued.append(job_id)
        if self.runner is None:
            raise RuntimeError("InlineJobQueue has no runner bound")
        self.runner(job_id)


class ThreadJobQueue:
    """
    In-process worker pool draining a priority queue. High priority jobs are
    picked before normal and low ones; equal priorities run in FIFO order.
    """

    def __init__(self, runner: Optional[Runner] = None, workers: int = 1):
        self.runner = runner
        self.workers = max(1, workers)
        self._queue: "queue.PriorityQueue" = queue.PriorityQueue()
        self._counter = itertools.count()
        self._threads: List[threading.Thread] = []
        self._lock = threading.Lock()

    def bind(self, runner: Runner) -> None:
        self.runner = runner

    def enqueue(self, job_id: str, priority: JobPriority = JobPriority.NORMAL) -> None:
        self._ensure_started()
        self._queue.put((JobPriority(priority).rank, next(self._counter), job_id))

    def join(self) -> None:
        """Block until every enqueued job has been processed."""
        self._queue.join()

    def shutdown(self) -> None:
        for _ in self._threads:
            self._queue.put((float("inf"), next(self._counter), None))
        for thread in self._threads:
            thread.join()
        self._threads = []

    def _ensure_started(self) -> None:
        with self._lock:
            if self._threads:
                return
            for index in range(self.workers):
                thread = threading.Thread(target=self._work, name=f"gapminer-worker-{index}", daemon=True)
                thread.start()
                self._threads.append(thread)

    def _work(self) -> None:
        while True:
            _, _, job_id = self._queue.get()
            try:
                if job_id is None:
                    return
                if self.runner is None:
                    logger.error("No runner bound; dropping job %s", job_id)
                    continue
                self.runner(job_id)
            except Exception:  # noqa: BLE001
                logger.exception("Batch job %s crashed in worker", job_id)
            finally:
                self._queue.task_done()


class RQJobQueue:
    """
    Redis-backed job queue using RQ. The queue pushes jobs to Redis and workers
    can be started by calling `work()` in a dedicated process.
    """

    def __init__(self, config: WorkerConfig, redis: Optional[Redis] = None):
        self.config = config
        self.redis = redis or Redis.from_url(config.redis_url)
        self.queue = Queue(config.queue_name, connection=self.redis)

    def enqueue(self, job_id: str, priority: JobPriority = JobPriority.NORMAL):
        """
        Enqueue a batch job. The RQ job id is derived from the batch job id for
        idempotency; high priority jobs jump to the front of the queue.
        """
        return self.queue.enqueue(
            run_batch_job,
            job_id,
            self.config,
            job_id=f"batch-{job_id}",
            at_front=JobPriority(priority) == JobPriority.HIGH,
        )

    def work(self):
        worker = Worker([self.queue], connection=self.redis)
        worker.work(with_scheduler=True)
