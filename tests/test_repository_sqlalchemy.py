from datetime import datetime, timedelta

from conftest import FakeExtractor, FakeFetcher, FixedClock
from gapminer.batch import (
    BatchJob,
    BatchJobOrchestrator,
    Finding,
    FindingCategory,
    InlineJobQueue,
    ItemProcessor,
    ItemStatus,
    JobItemRecord,
    JobKind,
    JobPriority,
    JobStatus,
    QuotaGate,
    Resource,
    SqlAlchemyBatchRepository,
    Subscription,
    SubscriptionStatus,
    SubscriptionTier,
    UsageLedger,
    UsageRecord,
    utcnow,
)


def make_repo(tmp_path):
    return SqlAlchemyBatchRepository(f"sqlite+pysqlite:///{tmp_path / 'gapminer.db'}")


def test_job_and_items_roundtrip(tmp_path):
    repo = make_repo(tmp_path)
    job = BatchJob(id="job-1", owner_id="owner-1", kind=JobKind.CITATION_ANALYSIS, total_items=2, priority=JobPriority.LOW)
    repo.save_job(job)
    repo.save_items(
        [
            JobItemRecord(id="job-1-i1", job_id="job-1", position=1, url="https://b.org/2"),
            JobItemRecord(id="job-1-i0", job_id="job-1", position=0, url="https://a.org/1"),
        ]
    )

    fetched = repo.get_job("job-1")
    assert fetched == job
    assert fetched.kind == JobKind.CITATION_ANALYSIS

    items = repo.list_items("job-1")
    assert [i.url for i in items] == ["https://a.org/1", "https://b.org/2"]

    first = items[0]
    first.status = ItemStatus.SUCCESS
    first.title = "A paper"
    first.findings = [Finding("No dataset for X", FindingCategory.DATA, 0.9)]
    repo.update_item(first)
    reloaded = repo.list_items("job-1")[0]
    assert reloaded.status == ItemStatus.SUCCESS
    assert reloaded.findings == first.findings
    assert repo.get_job("missing") is None


def test_transition_job_is_compare_and_set(tmp_path):
    repo = make_repo(tmp_path)
    repo.save_job(BatchJob(id="job-1", owner_id="owner-1", kind=JobKind.GAP_EXTRACTION, total_items=3))

    started = datetime(2024, 1, 1, 9, 0, 0)
    assert repo.transition_job("job-1", [JobStatus.QUEUED], JobStatus.PROCESSING, started_at=started)
    assert not repo.transition_job("job-1", [JobStatus.QUEUED], JobStatus.PROCESSING)
    assert repo.get_job("job-1").started_at == started

    repo.record_item_outcome("job-1", failed=False)
    updated = repo.record_item_outcome("job-1", failed=True)
    assert (updated.completed_items, updated.failed_items) == (2, 1)
    assert updated.progress_percent == 67


def test_list_jobs_orders_by_creation(tmp_path):
    repo = make_repo(tmp_path)
    base = datetime(2024, 1, 1)
    for n in range(3):
        repo.save_job(
            BatchJob(id=f"job-{n}", owner_id="owner-1", kind=JobKind.GAP_EXTRACTION, created_at=base + timedelta(hours=n))
        )
    assert [j.id for j in repo.list_jobs("owner-1")] == ["job-2", "job-1", "job-0"]
    assert [j.id for j in repo.list_jobs("owner-1", limit=2)] == ["job-2", "job-1"]


def test_latest_subscription_wins(tmp_path):
    repo = make_repo(tmp_path)
    start = datetime(2024, 1, 1)
    for n, tier in enumerate([SubscriptionTier.FREE, SubscriptionTier.TEAM]):
        repo.save_subscription(
            Subscription(
                owner_id="owner-1",
                tier=tier,
                status=SubscriptionStatus.ACTIVE,
                current_period_start=start,
                current_period_end=datetime(2024, 2, 1),
                created_at=start + timedelta(days=n),
            )
        )
    current = repo.get_subscription("owner-1")
    assert current.tier == SubscriptionTier.TEAM
    assert current.id


def test_usage_record_unique_per_period_and_conditional_increment(tmp_path):
    repo = make_repo(tmp_path)
    period = dict(owner_id="owner-1", period_start=datetime(2024, 1, 1), period_end=datetime(2024, 2, 1))
    record = repo.create_usage_record(UsageRecord(**period))
    again = repo.create_usage_record(UsageRecord(**period))
    assert again.id == record.id

    assert repo.increment_usage(record.id, Resource.EXPORT_COUNT, 40, limit=50).export_count == 40
    assert repo.increment_usage(record.id, Resource.EXPORT_COUNT, 11, limit=50) is None
    assert repo.increment_usage(record.id, Resource.EXPORT_COUNT, 10, limit=50).export_count == 50
    assert repo.increment_usage(record.id, Resource.EXPORT_COUNT, 5, limit=-1).export_count == 55
    assert repo.find_usage_record("owner-1", datetime(2024, 1, 20)).export_count == 55
    assert repo.decrement_usage(record.id, Resource.EXPORT_COUNT, 5).export_count == 50
    assert repo.decrement_usage(record.id, Resource.EXPORT_COUNT, 100).export_count == 0
    assert repo.decrement_usage("missing", Resource.EXPORT_COUNT, 1) is None
    assert repo.find_usage_record("owner-1", datetime(2024, 2, 1)) is None
    assert len(repo.list_usage_records("owner-1")) == 1


def test_orchestrator_end_to_end_on_sqlite(tmp_path):
    repo = make_repo(tmp_path)
    clock = FixedClock(utcnow())
    gate = QuotaGate(UsageLedger(repo, clock=clock))
    processor = ItemProcessor(FakeFetcher(failing=["https://b.org/2"]), FakeExtractor(), retry_backoff=0)
    orchestrator = BatchJobOrchestrator(repo, gate, processor, queue=InlineJobQueue(), persist_backoff=0)

    job = orchestrator.create_job("owner-1", JobKind.GAP_EXTRACTION, ["https://a.org/1", "https://b.org/2", "https://c.org/3"])

    assert job.status == JobStatus.COMPLETED
    assert (job.completed_items, job.failed_items) == (3, 1)
    assert [i.status for i in orchestrator.get_items(job.id)] == [ItemStatus.SUCCESS, ItemStatus.ERROR, ItemStatus.SUCCESS]
    assert gate.analytics("owner-1").record.items_processed == 3
