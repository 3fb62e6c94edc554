from __future__ import annotations

from pathlib import Path
from typing import Iterable, List, Optional, Protocol

from whoosh import index
from whoosh.fields import ID, NUMERIC, TEXT, Schema
from whoosh.qparser import QueryParser
from whoosh.query import Term

from .models import ItemStatus, JobItemRecord


class FindingIndexer(Protocol):
    def index_job(self, job_id: str, owner_id: str, items: Iterable[JobItemRecord]) -> None:
        ...


class NoopIndexer:
    """
    Default indexer. Keeps the orchestrator wired without pulling in Whoosh.
    """

    def index_job(self, job_id: str, owner_id: str, items: Iterable[JobItemRecord]) -> None:
        return None


class WhooshFindingIndexer:
    """
    File-system backed Whoosh index of findings from completed jobs.
    Re-indexing a job first deletes its existing documents.
    """

    def __init__(self, index_dir: Path):
        self.index_dir = Path(index_dir)
        self.index_dir.mkdir(parents=True, exist_ok=True)
        self.schema = Schema(
            finding_id=ID(stored=True, unique=True),
            job_id=ID(stored=True),
            owner_id=ID(stored=True),
            url=ID(stored=True),
            title=TEXT(stored=True),
            category=ID(stored=True),
            confidence=NUMERIC(float, stored=True, sortable=True),
            text=TEXT(stored=True),
        )
        if index.exists_in(self.index_dir):
            self.ix = index.open_dir(self.index_dir)
        else:
            self.ix = index.create_in(self.index_dir, self.schema)

    def index_job(self, job_id: str, owner_id: str, items: Iterable[JobItemRecord]) -> None:
        writer = self.ix.writer()
        writer.delete_by_term("job_id", job_id)
        for item in items:
            if item.status != ItemStatus.SUCCESS:
                continue
            for position, finding in enumerate(item.findings):
                writer.add_document(
                    finding_id=f"{item.id}-f{position}",
                    job_id=job_id,
                    owner_id=owner_id,
                    url=item.url,
                    title=item.title or "",
                    category=finding.category.value,
                    confidence=finding.confidence,
                    text=finding.problem_statement,
                )
        writer.commit()

    def delete_job(self, job_id: str) -> None:
        writer = self.ix.writer()
        writer.delete_by_term("job_id", job_id)
        writer.commit()

    def search(self, query_str: str, owner_id: Optional[str] = None, limit: int = 10) -> List[dict]:
        """
        Return a list of plain dicts so callers are safe after the searcher closes.
        """
        qp = QueryParser("text", schema=self.schema)
        q = qp.parse(query_str)
        with self.ix.searcher() as searcher:
            owner_filter = Term("owner_id", owner_id) if owner_id else None
            results = searcher.search(q, limit=limit, filter=owner_filter)
            hits = []
            for hit in results:
                fields = hit.fields()
                hits.append(
                    {
                        "finding_id": fields.get("finding_id"),
                        "job_id": fields.get("job_id"),
                        "url": fields.get("url"),
                        "title": fields.get("title"),
                        "category": fields.get("category"),
                        "confidence": fields.get("confidence"),
                        "text": fields.get("text"),
                    }
                )
            return hits
