import threading
import time
from datetime import datetime, timedelta

import pytest

from gapminer.batch import (
    ContentFetcher,
    FetchedDocument,
    FetchError,
    Finding,
    FindingCategory,
    FindingExtractor,
    InMemoryBatchRepository,
    ItemProcessor,
    QuotaGate,
    UsageLedger,
)


class FakeFetcher(ContentFetcher):
    """Serves canned documents; ``failing`` URLs always fail, ``flaky`` ones fail N times first."""

    def __init__(self, failing=(), flaky=None, delay=0.0):
        self.failing = set(failing)
        self.flaky = dict(flaky or {})
        self.delay = delay
        self.calls = []
        self._lock = threading.Lock()

    def fetch(self, url):
        with self._lock:
            self.calls.append(url)
            remaining = self.flaky.get(url, 0)
            if remaining:
                self.flaky[url] = remaining - 1
        if self.delay:
            time.sleep(self.delay)
        if url in self.failing:
            raise FetchError(f"404 Not Found: {url}")
        if remaining:
            raise FetchError(f"Connection reset: {url}")
        return FetchedDocument(
            title=f"Paper at {url}",
            raw_content=f"Abstract for {url}. There is no public benchmark for low-resource speech.",
            venue="arXiv",
        )


class FakeExtractor(FindingExtractor):
    """Returns one finding per document; ``on_call`` runs before each extraction with the call count."""

    def __init__(self, on_call=None, fail_with=None):
        self.on_call = on_call
        self.fail_with = fail_with
        self.calls = 0

    def extract(self, raw_content):
        self.calls += 1
        if self.on_call:
            self.on_call(self.calls)
        if self.fail_with:
            raise self.fail_with
        return [Finding("No public benchmark for low-resource speech", FindingCategory.DATA, 0.8)]


class FixedClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def repo():
    return InMemoryBatchRepository()


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def extractor():
    return FakeExtractor()


@pytest.fixture
def processor(fetcher, extractor):
    return ItemProcessor(fetcher, extractor, fetch_timeout=2.0, analyze_timeout=2.0, retry_backoff=0)


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 1, 15, 12, 0, 0))


@pytest.fixture
def gate(repo):
    return QuotaGate(UsageLedger(repo))
