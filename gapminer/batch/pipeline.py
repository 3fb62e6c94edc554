from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional

from tenacity import Retrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_exponential

from .collaborators import ContentFetcher, FindingExtractor
from .errors import AnalysisError, FetchError, InvalidTransitionError
from .models import (
    ITEM_TRANSITIONS,
    FetchedDocument,
    Finding,
    ItemStatus,
    ProcessingItem,
    ProgressEvent,
)
from .validation import CONTENT_MAX_LENGTH, DEFAULT_MAX_ITEMS, truncate_content, validate_urls

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], None]
TransitionCallback = Callable[[ProcessingItem], None]


def advance_item(item: ProcessingItem, status: ItemStatus) -> None:
    if status not in ITEM_TRANSITIONS[item.status]:
        raise InvalidTransitionError(f"Item {item.url} cannot move from {item.status.value} to {status.value}")
    item.status = status


class ItemProcessor:
    """
    Drives a single item through fetch -> analyze. Every collaborator call
    runs under a timeout, fetches are retried with exponential backoff, and
    any stage failure is recorded on the item instead of being raised.
    """

    def __init__(
        self,
        fetcher: ContentFetcher,
        extractor: FindingExtractor,
        fetch_timeout: float = 30.0,
        analyze_timeout: float = 120.0,
        fetch_attempts: int = 2,
        retry_backoff: float = 1.0,
        content_limit: int = CONTENT_MAX_LENGTH,
    ):
        self.fetcher = fetcher
        self.extractor = extractor
        self.fetch_timeout = fetch_timeout
        self.analyze_timeout = analyze_timeout
        self.fetch_attempts = max(1, fetch_attempts)
        self.retry_backoff = retry_backoff
        self.content_limit = content_limit

    def process(self, item: ProcessingItem, on_transition: Optional[TransitionCallback] = None) -> ProcessingItem:
        notify = on_transition or (lambda _item: None)
        try:
            advance_item(item, ItemStatus.FETCHING)
            notify(item)
            document = self._fetch(item.url)
            item.title = document.title
            item.venue = document.venue
            item.raw_content = document.raw_content

            advance_item(item, ItemStatus.ANALYZING)
            notify(item)
            item.findings = self._extract(item.raw_content or "")
            advance_item(item, ItemStatus.SUCCESS)
        except (FetchError, AnalysisError) as exc:
            item.error_reason = str(exc) or exc.__class__.__name__
            advance_item(item, ItemStatus.ERROR)
            logger.warning("Item %s failed: %s", item.url, item.error_reason)
        notify(item)
        return item

    def _fetch(self, url: str) -> FetchedDocument:
        def run(target: str) -> FetchedDocument:
            document = self.fetcher.fetch(target)
            if isinstance(document, dict):
                document = FetchedDocument.from_dict(document)
            if not isinstance(document, FetchedDocument):
                raise FetchError(f"Fetcher returned {type(document).__name__} instead of a document")
            return FetchedDocument(
                title=document.title,
                raw_content=truncate_content(document.raw_content, self.content_limit),
                venue=document.venue,
            )

        retrying = Retrying(
            stop=stop_after_attempt(self.fetch_attempts),
            wait=wait_exponential(multiplier=self.retry_backoff, max=10),
            retry=retry_if_exception_type(FetchError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        return retrying(self._call_with_timeout, run, url, self.fetch_timeout, FetchError, "fetch")

    def _extract(self, raw_content: str) -> List[Finding]:
        def run(content: str) -> List[Finding]:
            results = self.extractor.extract(content) or []
            return [f if isinstance(f, Finding) else Finding.from_dict(f) for f in results]

        return self._call_with_timeout(run, raw_content, self.analyze_timeout, AnalysisError, "analysis")

    def _call_with_timeout(self, fn, arg, timeout: float, error_cls, stage: str):
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"gapminer-{stage}")
        future = pool.submit(fn, arg)
        try:
            return future.result(timeout=timeout)
        except FuturesTimeoutError as exc:
            future.cancel()
            raise error_cls(f"{stage} timed out after {timeout:g}s") from exc
        except error_cls:
            raise
        except Exception as exc:  # noqa: BLE001
            raise error_cls(str(exc) or exc.__class__.__name__) from exc
        finally:
            # A hung collaborator keeps its thread; the run moves on regardless.
            pool.shutdown(wait=False)


@dataclass
class RunHandle:
    id: str
    items: List[ProcessingItem]
    _cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def total(self) -> int:
        return len(self.items)

    @property
    def completed(self) -> int:
        return sum(1 for item in self.items if item.status.is_terminal)

    @property
    def failed(self) -> int:
        return sum(1 for item in self.items if item.status == ItemStatus.ERROR)

    @property
    def finished(self) -> bool:
        return all(item.status.is_terminal for item in self.items)


class PipelineExecutor:
    """
    In-memory batch runner: validates a URL list up front, then processes
    the items one after another with per-item failure isolation.
    """

    def __init__(self, processor: ItemProcessor, max_items: int = DEFAULT_MAX_ITEMS):
        self.processor = processor
        self.max_items = max_items

    def submit(self, urls: Iterable[str]) -> RunHandle:
        accepted = validate_urls(urls, max_items=self.max_items)
        handle = RunHandle(id=str(uuid.uuid4()), items=[ProcessingItem(url=u) for u in accepted])
        logger.info("Run %s submitted with %s item(s)", handle.id, handle.total)
        return handle

    def run(self, handle: RunHandle, on_progress: Optional[ProgressCallback] = None) -> RunHandle:
        for item in handle.items:
            if handle.cancelled:
                logger.info("Run %s cancelled; %s item(s) left pending", handle.id, handle.total - handle.completed)
                break
            if item.status.is_terminal:
                continue
            self.processor.process(item)
            if on_progress:
                on_progress(ProgressEvent(completed=handle.completed, total=handle.total))
        logger.info(
            "Run %s finished: %s/%s processed, %s failed",
            handle.id,
            handle.completed,
            handle.total,
            handle.failed,
        )
        return handle

    def cancel(self, handle: RunHandle) -> None:
        handle._cancel_event.set()
