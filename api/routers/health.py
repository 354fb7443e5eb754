from typing import Any, Dict

from fastapi import APIRouter, Request

from services.db import using_sqlite

router = APIRouter(tags=["System"])


@router.get("/health", summary="Service liveness and wiring")
def health(request: Request) -> Dict[str, Any]:
    state = request.app.state
    tracker = getattr(state, "job_tracker", None)
    client = getattr(state, "extraction_client", None)
    return {
        "status": "ok" if tracker is not None and client is not None else "degraded",
        "database": "sqlite" if using_sqlite() else "postgresql",
        "ingestion_ready": tracker is not None,
        "tracked_jobs": len(tracker.store) if tracker is not None else 0,
        "extraction_models": list(getattr(client, "models", []) or []),
    }
