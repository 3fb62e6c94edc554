from __future__ import annotations

import math
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from api.dependencies import get_orchestrator
from gapminer.batch import (
    BatchJob,
    BatchJobOrchestrator,
    JobItemRecord,
    JobKind,
    JobNotFoundError,
    JobOwnershipError,
    JobPriority,
    QuotaExceededError,
    RateLimitedError,
    ValidationError,
)

router = APIRouter(prefix="/jobs", tags=["jobs"])


class CreateJobRequest(BaseModel):
    owner_id: str = Field(..., min_length=1)
    kind: JobKind = JobKind.GAP_EXTRACTION
    items: List[str] = Field(default_factory=list)
    priority: JobPriority = JobPriority.NORMAL


def _job_payload(job: BatchJob) -> dict:
    return {
        "id": job.id,
        "owner_id": job.owner_id,
        "kind": job.kind.value,
        "status": job.status.value,
        "priority": job.priority.value,
        "total_items": job.total_items,
        "completed_items": job.completed_items,
        "failed_items": job.failed_items,
        "progress_percent": job.progress_percent,
        "created_at": job.created_at.isoformat(),
        "started_at": job.started_at.isoformat() if job.started_at else None,
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
        "error_message": job.error_message,
        "result_summary": job.result_summary,
    }


def _item_payload(item: JobItemRecord) -> dict:
    return {
        "id": item.id,
        "position": item.position,
        "url": item.url,
        "status": item.status.value,
        "title": item.title,
        "venue": item.venue,
        "error_reason": item.error_reason,
        "findings": [f.to_dict() for f in item.findings],
    }


def _require_job(orchestrator: BatchJobOrchestrator, job_id: str, owner_id: str) -> BatchJob:
    job = orchestrator.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
    if job.owner_id != owner_id:
        raise HTTPException(status_code=403, detail=f"Job {job_id} does not belong to {owner_id}")
    return job


@router.post("", status_code=201)
def create_job(request: CreateJobRequest, orchestrator: BatchJobOrchestrator = Depends(get_orchestrator)):
    try:
        job = orchestrator.create_job(request.owner_id, request.kind, request.items, request.priority)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail={"message": str(exc), "invalid": exc.invalid})
    except RateLimitedError as exc:
        raise HTTPException(
            status_code=429,
            detail=str(exc),
            headers={"Retry-After": str(math.ceil(exc.retry_after))},
        )
    except QuotaExceededError as exc:
        raise HTTPException(status_code=402, detail={"message": str(exc), "quota": exc.check.to_dict()})
    return _job_payload(job)


@router.get("")
def list_jobs(
    owner_id: str = Query(..., min_length=1),
    limit: int = Query(20, ge=1, le=100),
    orchestrator: BatchJobOrchestrator = Depends(get_orchestrator),
):
    return [_job_payload(job) for job in orchestrator.list_jobs(owner_id, limit=limit)]


@router.get("/{job_id}")
def get_job(
    job_id: str,
    owner_id: str = Query(..., min_length=1),
    orchestrator: BatchJobOrchestrator = Depends(get_orchestrator),
):
    return _job_payload(_require_job(orchestrator, job_id, owner_id))


@router.get("/{job_id}/items")
def get_job_items(
    job_id: str,
    owner_id: str = Query(..., min_length=1),
    orchestrator: BatchJobOrchestrator = Depends(get_orchestrator),
):
    _require_job(orchestrator, job_id, owner_id)
    return [_item_payload(item) for item in orchestrator.get_items(job_id)]


@router.post("/{job_id}/cancel")
def cancel_job(
    job_id: str,
    owner_id: str = Query(..., min_length=1),
    orchestrator: BatchJobOrchestrator = Depends(get_orchestrator),
):
    try:
        job = orchestrator.cancel(job_id, owner_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
    except JobOwnershipError as exc:
        raise HTTPException(status_code=403, detail=str(exc))
    return _job_payload(job)
