from __future__ import annotations

import importlib
from typing import Any, List

from .models import FetchedDocument, Finding


class ContentFetcher:
    """
    Abstract content fetcher. Implementations turn a paper URL into its
    title, venue and raw text (a FetchedDocument, or a mapping with
    ``title`` and ``raw_content``/``rawContent``), and raise FetchError when
    they cannot.
    """

    def fetch(self, url: str) -> FetchedDocument:
        raise NotImplementedError


class FindingExtractor:
    """
    Abstract finding extractor. Implementations analyze raw paper text and
    return the unsolved problems it states, raising AnalysisError on failure.
    """

    def extract(self, raw_content: str) -> List[Finding]:
        raise NotImplementedError


def load_object(path: str) -> Any:
    """
    Resolve a ``package.module:attribute`` path. Callables are invoked with
    no arguments so the path may name a factory or a class.
    """
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Expected 'module:attribute', got {path!r}")
    target = getattr(importlib.import_module(module_name), attr)
    return target() if callable(target) else target
