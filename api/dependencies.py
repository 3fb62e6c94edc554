from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from redis import Redis

from gapminer.batch import (
    BatchJobOrchestrator,
    BatchRepository,
    QuotaGate,
    RateLimiter,
    RedisRateLimitStore,
    RQJobQueue,
    SqlAlchemyBatchRepository,
    UsageLedger,
    WhooshFindingIndexer,
    WorkerConfig,
)


@lru_cache(maxsize=1)
def get_config() -> WorkerConfig:
    return WorkerConfig.from_env()


@lru_cache(maxsize=1)
def get_repo() -> BatchRepository:
    return SqlAlchemyBatchRepository(get_config().database_url)


@lru_cache(maxsize=1)
def get_indexer() -> WhooshFindingIndexer:
    index_dir = get_config().findings_index_dir or "./data/whoosh"
    return WhooshFindingIndexer(Path(index_dir))


@lru_cache(maxsize=1)
def get_ledger() -> UsageLedger:
    return UsageLedger(get_repo())


@lru_cache(maxsize=1)
def get_quota_gate() -> QuotaGate:
    return QuotaGate(get_ledger())


@lru_cache(maxsize=1)
def get_rate_limiter() -> RateLimiter:
    redis = Redis.from_url(get_config().redis_url)
    return RateLimiter(
        RedisRateLimitStore(redis),
        max_requests=int(os.getenv("RATE_LIMIT_REQUESTS", "10")),
        window_seconds=float(os.getenv("RATE_LIMIT_WINDOW", "60")),
    )


@lru_cache(maxsize=1)
def get_orchestrator() -> BatchJobOrchestrator:
    """
    API-side orchestrator: admits jobs and pushes them to RQ. Processing
    happens in workers started with ``rq worker`` or ``RQJobQueue.work()``.
    """
    config = get_config()
    return BatchJobOrchestrator(
        repository=get_repo(),
        quota_gate=get_quota_gate(),
        queue=RQJobQueue(config),
        indexer=get_indexer(),
        rate_limiter=get_rate_limiter(),
        max_items=config.max_items,
    )
