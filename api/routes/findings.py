from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from api.dependencies import get_indexer
from gapminer.batch import WhooshFindingIndexer

router = APIRouter(prefix="/findings", tags=["findings"])


@router.get("/search")
def search_findings(
    q: str = Query(..., min_length=1),
    owner_id: Optional[str] = None,
    limit: int = Query(10, ge=1, le=100),
    indexer: WhooshFindingIndexer = Depends(get_indexer),
):
    return {"query": q, "hits": indexer.search(q, owner_id=owner_id, limit=limit)}
