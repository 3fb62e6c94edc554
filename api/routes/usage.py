from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query

from api.dependencies import get_quota_gate
from gapminer.batch import QuotaGate, Resource, ValidationError

router = APIRouter(prefix="/usage", tags=["usage"])


@router.get("/{owner_id}")
def get_usage(owner_id: str, gate: QuotaGate = Depends(get_quota_gate)):
    return gate.analytics(owner_id).to_dict()


@router.get("/{owner_id}/quota")
def check_quota(
    owner_id: str,
    resource: Resource = Resource.ITEMS_PROCESSED,
    amount: int = Query(1, ge=0),
    gate: QuotaGate = Depends(get_quota_gate),
):
    """Read-only admission check; nothing is consumed."""
    try:
        return gate.admit(owner_id, resource, amount).to_dict()
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


@router.get("/{owner_id}/history")
def get_usage_history(owner_id: str, gate: QuotaGate = Depends(get_quota_gate)):
    return [
        {
            "period_start": record.period_start.isoformat(),
            "period_end": record.period_end.isoformat(),
            **{resource.value: record.counter(resource) for resource in Resource},
        }
        for record in gate.history(owner_id)
    ]
