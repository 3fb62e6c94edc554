from __future__ import annotations

from typing import List, Optional

from .models import QuotaCheck


class GapMinerError(Exception):
    """Base class for every error raised by the batch core."""


class ValidationError(GapMinerError):
    """Bad input detected before any work starts; rejects the whole submission."""

    def __init__(self, message: str, invalid: Optional[List[str]] = None):
        super().__init__(message)
        self.invalid = list(invalid or [])


class FetchError(GapMinerError):
    """Content could not be fetched for a single item."""


class AnalysisError(GapMinerError):
    """Finding extraction failed for a single item."""


class QuotaExceededError(GapMinerError):
    def __init__(self, check: QuotaCheck):
        super().__init__(
            f"Quota exceeded for {check.resource.value}: "
            f"{check.current}/{check.limit} used, {check.remaining} remaining"
        )
        self.check = check


class RateLimitedError(GapMinerError):
    def __init__(self, key: str, retry_after: float):
        super().__init__(f"Rate limit reached for {key}; retry in {retry_after:.0f}s")
        self.key = key
        self.retry_after = retry_after


class CancelledError(GapMinerError):
    """A run or job was stopped by request."""


class PersistenceError(GapMinerError):
    """A store read or write failed."""


class JobNotFoundError(GapMinerError):
    pass


class JobOwnershipError(GapMinerError):
    pass


class InvalidTransitionError(GapMinerError):
    pass
