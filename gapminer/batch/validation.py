from __future__ import annotations

import logging
from typing import Iterable, List, Optional
from urllib.parse import urlsplit, urlunsplit

from .errors import ValidationError

logger = logging.getLogger(__name__)

URL_MAX_LENGTH = 2048
CONTENT_MAX_LENGTH = 100_000
DEFAULT_MAX_ITEMS = 25

ALLOWED_SCHEMES = ("http", "https")


def normalize_url(url: str) -> Optional[str]:
    """
    Return the canonical form of an absolute http(s) URL, or None when the
    value is not acceptable (wrong scheme, no host, too long, unparsable).
    """
    candidate = url.strip()
    if not candidate or len(candidate) > URL_MAX_LENGTH:
        return None
    try:
        parts = urlsplit(candidate)
        # Accessing .port validates it.
        parts.port
    except ValueError:
        return None
    scheme = parts.scheme.lower()
    if scheme not in ALLOWED_SCHEMES or not parts.hostname:
        return None
    if any(ch.isspace() for ch in candidate):
        return None
    return urlunsplit((scheme, parts.netloc.lower(), parts.path, parts.query, parts.fragment))


def validate_urls(
    urls: Iterable[str],
    max_items: int = DEFAULT_MAX_ITEMS,
    allow_empty: bool = False,
) -> List[str]:
    """
    Validate, dedup and cap a batch of URLs.

    Blank entries are ignored. Any malformed entry rejects the whole batch
    with a ValidationError naming every offender, so nothing is started
    for a partially valid submission. Duplicates keep their first
    position; entries past ``max_items`` are dropped.
    """
    if isinstance(urls, str):
        raise ValidationError("Expected a list of URLs, got a single string")

    entries = [u.strip() for u in urls if u is not None and u.strip()]
    invalid: List[str] = []
    accepted: List[str] = []
    seen = set()
    for entry in entries:
        normalized = normalize_url(entry)
        if normalized is None:
            invalid.append(entry)
            continue
        if normalized in seen:
            continue
        seen.add(normalized)
        accepted.append(normalized)

    if invalid:
        raise ValidationError(
            f"{len(invalid)} invalid URL(s); only absolute http/https URLs up to "
            f"{URL_MAX_LENGTH} characters are accepted",
            invalid=invalid,
        )
    if not accepted and not allow_empty:
        raise ValidationError("No URLs submitted")
    if len(accepted) > max_items:
        logger.warning("Batch of %s URLs capped to %s", len(accepted), max_items)
        accepted = accepted[:max_items]
    return accepted


def truncate_content(content: Optional[str], limit: int = CONTENT_MAX_LENGTH) -> Optional[str]:
    if content is None or len(content) <= limit:
        return content
    return content[: limit - 3] + "..."
