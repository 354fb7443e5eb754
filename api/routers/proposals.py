"""Proposal ingestion and review routes."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from repositories import proposal_repo
from services.job_tracker import JobStatus, JobTracker
from services.scoring import InvalidScore, set_score

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/proposals", tags=["Proposals"])


class ScoreUpdateRequest(BaseModel):
    score: float = Field(..., description="Manual score between 0 and 100.")


def get_job_tracker(request: Request) -> JobTracker:
    tracker = getattr(request.app.state, "job_tracker", None)
    if tracker is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Ingestion service is not available",
        )
    return tracker


@router.post("/refresh", status_code=status.HTTP_202_ACCEPTED)
def start_refresh(request: Request) -> Dict[str, Any]:
    """Start a background ingestion run and return its job id."""

    tracker = get_job_tracker(request)
    job_id = tracker.start()
    return {
        "success": True,
        "message": "Refresh started in background",
        "job_id": job_id,
        "status_url": f"/proposals/refresh/status/{job_id}",
    }


@router.get("/refresh/status/{job_id}")
def refresh_status(job_id: str, request: Request) -> Dict[str, Any]:
    tracker = get_job_tracker(request)
    snapshot = tracker.status(job_id)
    if snapshot is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return {"success": True, "job": snapshot}


@router.post("/refresh-sync")
async def refresh_sync(request: Request) -> Dict[str, Any]:
    """Run ingestion to completion and return the final counters."""

    tracker = get_job_tracker(request)
    job = await run_in_threadpool(tracker.run_blocking)
    if job.status is JobStatus.FAILED:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=job.message or "Failed to refresh proposals",
        )
    return {
        "success": True,
        "message": job.message,
        **job.counters(),
        "errors": job.errors,
    }


@router.get("")
def list_proposals(
    solicitation_id: Optional[str] = None, vendor_id: Optional[str] = None
) -> Dict[str, Any]:
    rows = proposal_repo.list_proposals(solicitation_id=solicitation_id, vendor_id=vendor_id)
    return {"success": True, "data": [row.to_dict() for row in rows]}


@router.get("/{proposal_id}")
def get_proposal(proposal_id: str) -> Dict[str, Any]:
    row = proposal_repo.get_proposal(proposal_id)
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Proposal not found")
    return {"success": True, "data": row.to_dict()}


@router.put("/{proposal_id}/score")
def update_score(proposal_id: str, payload: ScoreUpdateRequest) -> Dict[str, Any]:
    try:
        row = set_score(proposal_id, payload.score)
    except InvalidScore as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Proposal not found") from exc
    return {"success": True, "data": row.to_dict()}
