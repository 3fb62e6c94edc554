import threading

import pytest

from conftest import FakeExtractor, FakeFetcher
from gapminer.batch import (
    BatchJob,
    BatchJobOrchestrator,
    InlineJobQueue,
    InMemoryBatchRepository,
    InMemoryRateLimitStore,
    ItemProcessor,
    ItemStatus,
    JobKind,
    JobNotFoundError,
    JobOwnershipError,
    JobPriority,
    JobStatus,
    PersistenceError,
    QuotaExceededError,
    RateLimitedError,
    RateLimiter,
    Resource,
    ThreadJobQueue,
    ValidationError,
)

OWNER = "owner-1"
URLS = [f"https://arxiv.org/abs/2402.{n:05d}" for n in range(1, 6)]


def build(repo, gate, processor=None, **kwargs):
    return BatchJobOrchestrator(repo, gate, processor, persist_backoff=0, **kwargs)


def test_create_job_runs_through_inline_queue(repo, gate):
    fetcher = FakeFetcher(failing=[URLS[1]])
    processor = ItemProcessor(fetcher, FakeExtractor(), retry_backoff=0)
    queue = InlineJobQueue()
    orchestrator = build(repo, gate, processor, queue=queue)

    job = orchestrator.create_job(OWNER, JobKind.GAP_EXTRACTION, URLS[:3])

    assert queue.enqueued == [job.id]
    assert job.status == JobStatus.COMPLETED
    assert job.total_items == 3
    assert job.completed_items == 3
    assert job.failed_items == 1
    assert job.progress_percent == 100
    assert job.started_at and job.completed_at
    assert job.result_summary == "Processed 3 of 3 items: 2 succeeded, 1 failed"
    items = orchestrator.get_items(job.id)
    assert [i.status for i in items] == [ItemStatus.SUCCESS, ItemStatus.ERROR, ItemStatus.SUCCESS]
    assert items[1].error_reason
    assert items[0].findings and not items[1].findings


def test_invalid_batch_creates_nothing(repo, gate, processor):
    orchestrator = build(repo, gate, processor)
    with pytest.raises(ValidationError):
        orchestrator.create_job(OWNER, JobKind.GAP_EXTRACTION, [URLS[0], "ftp://x.org/p.pdf", URLS[2]])
    assert orchestrator.list_jobs(OWNER) == []
    assert gate.analytics(OWNER).record.items_processed == 0


def test_quota_exceeded_creates_no_job(repo, gate, processor):
    gate.record(OWNER, Resource.ITEMS_PROCESSED, 50)
    orchestrator = build(repo, gate, processor)

    with pytest.raises(QuotaExceededError) as excinfo:
        orchestrator.create_job(OWNER, JobKind.GAP_EXTRACTION, URLS[:1])

    check = excinfo.value.check
    assert not check.allowed
    assert check.remaining == 0
    assert check.limit == 50
    assert check.upgrade_required
    assert orchestrator.list_jobs(OWNER) == []
    assert gate.analytics(OWNER).record.items_processed == 50


def test_cancel_mid_run_leaves_rest_pending(repo, gate, fetcher):
    orchestrator = build(repo, gate)
    job = orchestrator.create_job(OWNER, JobKind.GAP_EXTRACTION, URLS)
    assert job.status == JobStatus.QUEUED
    used_before = gate.analytics(OWNER).record.items_processed

    def cancel_on_second(call_count):
        if call_count == 2:
            orchestrator.cancel(job.id, OWNER)

    orchestrator.processor = ItemProcessor(fetcher, FakeExtractor(on_call=cancel_on_second), retry_backoff=0)
    final = orchestrator.process(job.id)

    assert final.status == JobStatus.FAILED
    assert final.error_message == "Cancelled by user"
    assert final.completed_items == 2
    assert final.failed_items == 0
    statuses = [i.status for i in orchestrator.get_items(job.id)]
    assert statuses == [ItemStatus.SUCCESS, ItemStatus.SUCCESS, ItemStatus.PENDING, ItemStatus.PENDING, ItemStatus.PENDING]
    assert fetcher.calls == URLS[:2]
    assert gate.analytics(OWNER).record.items_processed == used_before == 5


def test_empty_job_completes_immediately(repo, gate, processor):
    queue = InlineJobQueue()
    orchestrator = build(repo, gate, processor, queue=queue)
    job = orchestrator.create_job(OWNER, JobKind.SUMMARIZATION, ["", "   "])
    assert job.status == JobStatus.COMPLETED
    assert job.total_items == 0
    assert job.progress_percent == 100
    assert queue.enqueued == []


def test_get_job_snapshots_are_stable(repo, gate, processor):
    orchestrator = build(repo, gate, processor)
    job = orchestrator.create_job(OWNER, JobKind.TREND_ANALYSIS, URLS[:2], JobPriority.HIGH)
    assert orchestrator.get_job(job.id) == orchestrator.get_job(job.id)
    assert orchestrator.get_job(job.id).priority == JobPriority.HIGH
    assert orchestrator.get_job("missing") is None


def test_list_jobs_newest_first(repo, gate, processor):
    orchestrator = build(repo, gate, processor)
    first = orchestrator.create_job(OWNER, JobKind.GAP_EXTRACTION, URLS[:1])
    second = orchestrator.create_job(OWNER, JobKind.GAP_EXTRACTION, URLS[1:2])
    orchestrator.create_job("someone-else", JobKind.GAP_EXTRACTION, URLS[2:3])
    assert [j.id for j in orchestrator.list_jobs(OWNER)] == [second.id, first.id]
    assert [j.id for j in orchestrator.list_jobs(OWNER, limit=1)] == [second.id]


def test_cancel_checks_existence_and_ownership(repo, gate, processor):
    orchestrator = build(repo, gate, processor)
    job = orchestrator.create_job(OWNER, JobKind.GAP_EXTRACTION, URLS[:2])
    with pytest.raises(JobNotFoundError):
        orchestrator.cancel("missing", OWNER)
    with pytest.raises(JobOwnershipError):
        orchestrator.cancel(job.id, "intruder")
    assert orchestrator.get_job(job.id).status == JobStatus.QUEUED


def test_cancelled_queued_job_is_never_processed(repo, gate, fetcher, processor):
    orchestrator = build(repo, gate, processor)
    job = orchestrator.create_job(OWNER, JobKind.GAP_EXTRACTION, URLS[:2])
    cancelled = orchestrator.cancel(job.id, OWNER)
    assert cancelled.status == JobStatus.FAILED

    final = orchestrator.process(job.id)
    assert final.status == JobStatus.FAILED
    assert fetcher.calls == []
    assert all(i.status == ItemStatus.PENDING for i in orchestrator.get_items(job.id))


def test_cancel_after_completion_is_a_no_op(repo, gate, processor):
    orchestrator = build(repo, gate, processor, queue=InlineJobQueue())
    job = orchestrator.create_job(OWNER, JobKind.GAP_EXTRACTION, URLS[:1])
    assert orchestrator.cancel(job.id, OWNER).status == JobStatus.COMPLETED


def test_process_unknown_job(repo, gate, processor):
    with pytest.raises(JobNotFoundError):
        build(repo, gate, processor).process("missing")


def test_process_requires_a_processor(repo, gate):
    orchestrator = build(repo, gate)
    job = orchestrator.create_job(OWNER, JobKind.GAP_EXTRACTION, URLS[:1])
    with pytest.raises(RuntimeError):
        orchestrator.process(job.id)


def test_rate_limit_applies_per_owner(repo, gate, processor):
    limiter = RateLimiter(InMemoryRateLimitStore(), max_requests=2, window_seconds=60)
    orchestrator = build(repo, gate, processor, rate_limiter=limiter)
    orchestrator.create_job(OWNER, JobKind.GAP_EXTRACTION, URLS[:1])
    orchestrator.create_job(OWNER, JobKind.GAP_EXTRACTION, URLS[1:2])
    with pytest.raises(RateLimitedError):
        orchestrator.create_job(OWNER, JobKind.GAP_EXTRACTION, URLS[2:3])
    orchestrator.create_job("other-owner", JobKind.GAP_EXTRACTION, URLS[2:3])
    assert len(orchestrator.list_jobs(OWNER)) == 2


class FlakyItemRepository(InMemoryBatchRepository):
    def __init__(self, failures):
        super().__init__()
        self.failures = failures

    def update_item(self, item):
        if self.failures > 0:
            self.failures -= 1
            raise PersistenceError("database is locked")
        super().update_item(item)


def test_item_writes_are_retried(gate, processor):
    repo = FlakyItemRepository(failures=1)
    orchestrator = build(repo, gate, processor)
    job = orchestrator.create_job(OWNER, JobKind.GAP_EXTRACTION, URLS[:2])
    final = orchestrator.process(job.id)
    assert final.status == JobStatus.COMPLETED
    assert final.completed_items == 2


def test_persistent_store_failure_fails_job(gate, processor):
    repo = FlakyItemRepository(failures=100)
    orchestrator = build(repo, gate, processor)
    job = orchestrator.create_job(OWNER, JobKind.GAP_EXTRACTION, URLS[:2])
    final = orchestrator.process(job.id)
    assert final.status == JobStatus.FAILED
    assert final.error_message.startswith("Persistence error")


class BrokenIndexer:
    def index_job(self, job_id, owner_id, items):
        raise OSError("index directory is read-only")


def test_indexing_failure_keeps_job_completed(repo, gate, processor):
    orchestrator = build(repo, gate, processor, queue=InlineJobQueue(), indexer=BrokenIndexer())
    job = orchestrator.create_job(OWNER, JobKind.GAP_EXTRACTION, URLS[:1])
    assert job.status == JobStatus.COMPLETED


def test_thread_queue_serves_high_priority_first():
    order = []
    started = threading.Event()
    release = threading.Event()

    def runner(job_id):
        if job_id == "blocker":
            started.set()
            release.wait(timeout=5)
        order.append(job_id)

    queue = ThreadJobQueue(runner)
    queue.enqueue("blocker")
    assert started.wait(timeout=5)
    queue.enqueue("low", JobPriority.LOW)
    queue.enqueue("normal-1")
    queue.enqueue("high", JobPriority.HIGH)
    queue.enqueue("normal-2")
    release.set()
    queue.join()
    queue.shutdown()

    assert order == ["blocker", "high", "normal-1", "normal-2", "low"]


def test_thread_queue_processes_jobs(repo, gate, processor):
    queue = ThreadJobQueue(workers=2)
    orchestrator = build(repo, gate, processor, queue=queue)
    jobs = [orchestrator.create_job(OWNER, JobKind.GAP_EXTRACTION, [url]) for url in URLS[:3]]
    queue.join()
    queue.shutdown()
    assert all(orchestrator.get_job(j.id).status == JobStatus.COMPLETED for j in jobs)


def test_progress_is_monotonic_and_rounds_half_up(repo, gate, fetcher):
    urls = [f"https://arxiv.org/abs/2403.{n:05d}" for n in range(1, 9)]
    orchestrator = build(repo, gate)
    job = orchestrator.create_job(OWNER, JobKind.GAP_EXTRACTION, urls)
    snapshots = []

    def snapshot(call_count):
        snapshots.append(orchestrator.get_job(job.id))

    orchestrator.processor = ItemProcessor(fetcher, FakeExtractor(on_call=snapshot), retry_backoff=0)
    final = orchestrator.process(job.id)

    percents = [s.progress_percent for s in snapshots] + [final.progress_percent]
    assert percents == [0, 13, 25, 38, 50, 63, 75, 88, 100]
    assert percents == sorted(percents)
    for s in snapshots:
        assert s.status == JobStatus.PROCESSING
        assert s.progress_percent == (200 * s.completed_items + s.total_items) // (2 * s.total_items)


class NoneFetcher(FakeFetcher):
    def fetch(self, url):
        if url == URLS[1]:
            return None
        return super().fetch(url)


def test_malformed_fetch_result_only_fails_its_item(repo, gate):
    processor = ItemProcessor(NoneFetcher(), FakeExtractor(), fetch_attempts=1, retry_backoff=0)
    orchestrator = build(repo, gate, processor, queue=InlineJobQueue())
    job = orchestrator.create_job(OWNER, JobKind.GAP_EXTRACTION, URLS[:3])

    assert job.status == JobStatus.COMPLETED
    assert (job.completed_items, job.failed_items) == (3, 1)
    statuses = [i.status for i in orchestrator.get_items(job.id)]
    assert statuses == [ItemStatus.SUCCESS, ItemStatus.ERROR, ItemStatus.SUCCESS]


class ExplodingProcessor(ItemProcessor):
    def process(self, item, on_transition=None):
        if item.url == URLS[1]:
            raise RuntimeError("processor crashed")
        return super().process(item, on_transition=on_transition)


def test_unexpected_error_fails_job(repo, gate):
    orchestrator = build(repo, gate, ExplodingProcessor(FakeFetcher(), FakeExtractor(), retry_backoff=0))
    job = orchestrator.create_job(OWNER, JobKind.GAP_EXTRACTION, URLS[:3])

    final = orchestrator.process(job.id)

    assert final.status == JobStatus.FAILED
    assert final.error_message == "processor crashed"
    assert final.completed_at is not None
    assert final.completed_items == 1


class UnsavableJobRepository(InMemoryBatchRepository):
    def __init__(self, failures):
        super().__init__()
        self.failures = failures

    def save_job(self, job):
        if self.failures > 0:
            self.failures -= 1
            raise PersistenceError("disk I/O error")
        super().save_job(job)


def test_failed_job_write_refunds_quota(gate):
    repo = UnsavableJobRepository(failures=100)
    orchestrator = build(repo, gate)

    with pytest.raises(PersistenceError):
        orchestrator.create_job(OWNER, JobKind.GAP_EXTRACTION, URLS[:3])

    assert orchestrator.list_jobs(OWNER) == []
    assert gate.analytics(OWNER).record.items_processed == 0


def test_job_write_is_retried(gate):
    repo = UnsavableJobRepository(failures=1)
    orchestrator = build(repo, gate)

    job = orchestrator.create_job(OWNER, JobKind.GAP_EXTRACTION, URLS[:3])

    assert job.status == JobStatus.QUEUED
    assert gate.analytics(OWNER).record.items_processed == 3


def test_list_jobs_breaks_timestamp_ties_by_insertion(repo):
    created = BatchJob(id="job-0", owner_id=OWNER, kind=JobKind.GAP_EXTRACTION).created_at
    for n in range(3):
        repo.save_job(BatchJob(id=f"job-{n}", owner_id=OWNER, kind=JobKind.GAP_EXTRACTION, created_at=created))
    assert [j.id for j in repo.list_jobs(OWNER)] == ["job-2", "job-1", "job-0"]
