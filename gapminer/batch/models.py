from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every store in this package persists."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ItemStatus(str, Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    ANALYZING = "analyzing"
    SUCCESS = "success"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (ItemStatus.SUCCESS, ItemStatus.ERROR)


# Forward-only item lifecycle; an item may fail out of any non-terminal state.
ITEM_TRANSITIONS: Dict[ItemStatus, tuple] = {
    ItemStatus.PENDING: (ItemStatus.FETCHING, ItemStatus.ERROR),
    ItemStatus.FETCHING: (ItemStatus.ANALYZING, ItemStatus.ERROR),
    ItemStatus.ANALYZING: (ItemStatus.SUCCESS, ItemStatus.ERROR),
    ItemStatus.SUCCESS: (),
    ItemStatus.ERROR: (),
}


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class JobKind(str, Enum):
    GAP_EXTRACTION = "gap_extraction"
    SUMMARIZATION = "summarization"
    CITATION_ANALYSIS = "citation_analysis"
    TREND_ANALYSIS = "trend_analysis"


class JobPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"

    @property
    def rank(self) -> int:
        # Lower ranks are served first.
        return {JobPriority.HIGH: 0, JobPriority.NORMAL: 1, JobPriority.LOW: 2}[self]


class FindingCategory(str, Enum):
    DATA = "data"
    COMPUTE = "compute"
    EVALUATION = "evaluation"
    METHODOLOGY = "methodology"


class SubscriptionTier(str, Enum):
    FREE = "free"
    PRO = "pro"
    TEAM = "team"
    ENTERPRISE = "enterprise"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class Resource(str, Enum):
    ITEMS_PROCESSED = "items_processed"
    API_CALLS = "api_calls"
    EXPORT_COUNT = "export_count"


@dataclass
class Finding:
    problem_statement: str
    category: FindingCategory
    confidence: float

    def __post_init__(self):
        self.category = FindingCategory(self.category)
        self.confidence = min(1.0, max(0.0, float(self.confidence)))

    def to_dict(self) -> dict:
        return {
            "problem_statement": self.problem_statement,
            "category": self.category.value,
            "confidence": self.confidence,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Finding":
        return cls(
            problem_statement=data["problem_statement"],
            category=FindingCategory(data["category"]),
            confidence=data["confidence"],
        )


@dataclass
class FetchedDocument:
    title: str
    raw_content: str
    venue: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "FetchedDocument":
        raw_content = data.get("raw_content", data.get("rawContent"))
        if raw_content is None:
            raise ValueError("Fetched document has no content")
        return cls(title=data.get("title") or "", raw_content=raw_content, venue=data.get("venue"))


@dataclass
class ProcessingItem:
    url: str
    status: ItemStatus = ItemStatus.PENDING
    error_reason: Optional[str] = None
    findings: List[Finding] = field(default_factory=list)
    raw_content: Optional[str] = None
    title: Optional[str] = None
    venue: Optional[str] = None


@dataclass
class JobItemRecord(ProcessingItem):
    """A ProcessingItem persisted as part of a batch job."""

    id: str = ""
    job_id: str = ""
    position: int = 0
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class BatchJob:
    id: str
    owner_id: str
    kind: JobKind
    status: JobStatus = JobStatus.QUEUED
    total_items: int = 0
    completed_items: int = 0
    failed_items: int = 0
    priority: JobPriority = JobPriority.NORMAL
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    result_summary: Optional[str] = None

    @property
    def progress_percent(self) -> int:
        return progress_percent(self.completed_items, self.total_items)

    @property
    def succeeded_items(self) -> int:
        return self.completed_items - self.failed_items


def percent_of(part: int, whole: int) -> int:
    """Whole-number percentage of ``part`` in ``whole``, halves rounded up."""
    return (200 * part + whole) // (2 * whole)


def progress_percent(completed: int, total: int) -> int:
    if total <= 0:
        return 100
    return min(100, percent_of(completed, total))


@dataclass
class Subscription:
    owner_id: str
    tier: SubscriptionTier
    status: SubscriptionStatus
    current_period_start: datetime
    current_period_end: datetime
    id: str = ""
    cancel_at_period_end: bool = False
    trial_ends_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class UsageRecord:
    owner_id: str
    period_start: datetime
    period_end: datetime
    items_processed: int = 0
    api_calls: int = 0
    export_count: int = 0
    id: str = ""
    last_updated: datetime = field(default_factory=utcnow)

    def counter(self, resource: Resource) -> int:
        return getattr(self, Resource(resource).value)


@dataclass
class QuotaCheck:
    allowed: bool
    remaining: int
    limit: int
    reset_at: datetime
    upgrade_required: bool
    resource: Resource = Resource.ITEMS_PROCESSED
    current: int = 0

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "remaining": self.remaining,
            "limit": self.limit,
            "reset_at": self.reset_at.isoformat(),
            "upgrade_required": self.upgrade_required,
            "resource": self.resource.value,
            "current": self.current,
        }


@dataclass
class ProgressEvent:
    completed: int
    total: int

    @property
    def percent(self) -> int:
        return progress_percent(self.completed, self.total)
