"""
Batch subsystem exports.
"""

from .collaborators import ContentFetcher, FindingExtractor, load_object
from .errors import (
    AnalysisError,
    CancelledError,
    FetchError,
    GapMinerError,
    InvalidTransitionError,
    JobNotFoundError,
    JobOwnershipError,
    PersistenceError,
    QuotaExceededError,
    RateLimitedError,
    ValidationError,
)
from .indexing import FindingIndexer, NoopIndexer, WhooshFindingIndexer
from .job_queue import InlineJobQueue, RQJobQueue, ThreadJobQueue, WorkerConfig, build_orchestrator, run_batch_job
from .ledger import UsageLedger
from .models import (
    BatchJob,
    FetchedDocument,
    Finding,
    FindingCategory,
    ItemStatus,
    JobItemRecord,
    JobKind,
    JobPriority,
    JobStatus,
    ProcessingItem,
    ProgressEvent,
    QuotaCheck,
    Resource,
    Subscription,
    SubscriptionStatus,
    SubscriptionTier,
    UsageRecord,
    utcnow,
)
from .orchestrator import BatchJobOrchestrator
from .pipeline import ItemProcessor, PipelineExecutor, RunHandle
from .quota import TIER_LIMITS, QuotaGate, TierLimits, UsageAnalytics
from .ratelimit import InMemoryRateLimitStore, RateLimiter, RedisRateLimitStore
from .repository import BatchRepository, InMemoryBatchRepository, SqlAlchemyBatchRepository
from .subscriptions import SubscriptionService
from .validation import normalize_url, validate_urls

__all__ = [
    "AnalysisError",
    "BatchJob",
    "BatchJobOrchestrator",
    "BatchRepository",
    "CancelledError",
    "ContentFetcher",
    "FetchError",
    "FetchedDocument",
    "Finding",
    "FindingCategory",
    "FindingExtractor",
    "FindingIndexer",
    "GapMinerError",
    "InMemoryBatchRepository",
    "InMemoryRateLimitStore",
    "InlineJobQueue",
    "InvalidTransitionError",
    "ItemProcessor",
    "ItemStatus",
    "JobItemRecord",
    "JobKind",
    "JobNotFoundError",
    "JobOwnershipError",
    "JobPriority",
    "JobStatus",
    "NoopIndexer",
    "PersistenceError",
    "PipelineExecutor",
    "ProcessingItem",
    "ProgressEvent",
    "QuotaCheck",
    "QuotaExceededError",
    "QuotaGate",
    "RQJobQueue",
    "RateLimitedError",
    "RateLimiter",
    "RedisRateLimitStore",
    "Resource",
    "RunHandle",
    "SqlAlchemyBatchRepository",
    "Subscription",
    "SubscriptionService",
    "SubscriptionStatus",
    "SubscriptionTier",
    "TIER_LIMITS",
    "ThreadJobQueue",
    "TierLimits",
    "UsageAnalytics",
    "UsageLedger",
    "UsageRecord",
    "ValidationError",
    "WhooshFindingIndexer",
    "WorkerConfig",
    "build_orchestrator",
    "load_object",
    "normalize_url",
    "run_batch_job",
    "utcnow",
    "validate_urls",
]
