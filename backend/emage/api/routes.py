"""API routes for starting compression runs and reading their progress."""
import logging
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Body, HTTPException, Query

from emage.config import HISTORY_LIMIT, STEP_TIMEOUT
from emage.compression.engines import ALGORITHMS, algorithms_for, tool_status
from emage.compression.service import get_compression_service
from emage.db import get_history_stats, get_recent_runs, get_run_from_db

logger = logging.getLogger("emage.api")
router = APIRouter(prefix="/api", tags=["emage"])

MEDIA_TYPES = {
    "jpeg": ["image/jpeg", "image/jpg"],
    "png": ["image/png"],
    "svg": ["image/svg+xml"],
    "gif": ["image/gif"],
}


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/algorithms")
def get_algorithms():
    """Algorithm families and the media types each one accepts."""
    return {
        family: {"algorithms": list(members), "media_types": MEDIA_TYPES[family]}
        for family, members in ALGORITHMS.items()
    }


@router.get("/tools")
def get_tools():
    """Configured optimizer binaries and where they were found (null when missing)."""
    return {"tools": tool_status()}


@router.get("/algorithms/{media_type:path}")
def get_algorithms_for(media_type: str):
    members = algorithms_for(media_type)
    if not members:
        raise HTTPException(404, f"Unsupported media type: {media_type}")
    return {"media_type": media_type, "algorithms": members}


@router.post("/runs")
def start_run(
    path: str = Body(..., embed=True),
    algorithms: list[str] = Body(..., embed=True),
    keep_source: Optional[bool] = Body(None, embed=True),
    media_type: Optional[str] = Body(None, embed=True),
    wait: bool = Query(False, description="Block until the run has finished"),
):
    """Start compressing a local image with the given algorithms, in order."""
    source = Path((path or "").strip()).expanduser()
    if not source.is_file():
        raise HTTPException(404, f"File not found: {path}")
    svc = get_compression_service()
    try:
        run = svc.start(source, algorithms, keep_source=keep_source, media_type=media_type)
    except OSError as e:
        logger.exception("Could not start run for %s: %s", source, e)
        raise HTTPException(500, str(e))
    if wait:
        run.wait(timeout=STEP_TIMEOUT * max(1, len(algorithms)))
    return run.to_dict()


@router.get("/runs")
def list_runs():
    """Runs held in memory, finished or not."""
    return {"runs": [r.to_dict() for r in get_compression_service().list_runs()]}


@router.get("/runs/{run_id}")
def get_run(run_id: str):
    """Get run status and progress. Falls back to the history for runs no longer in memory."""
    run = get_compression_service().get_run(run_id)
    if run is not None:
        return run.to_dict()
    row = get_run_from_db(run_id)
    if row is None:
        raise HTTPException(404, "Run not found")
    return row


@router.get("/runs/{run_id}/events")
def get_run_events(run_id: str):
    run = get_compression_service().get_run(run_id)
    if run is None:
        raise HTTPException(404, "Run not found")
    return {"run_id": run_id, "finished": run.finished, "events": [e.to_dict() for e in run.events]}


@router.delete("/runs/{run_id}")
def forget_run(run_id: str):
    """Drop a finished run from memory. The working file is left on disk."""
    svc = get_compression_service()
    run = svc.get_run(run_id)
    if run is None:
        raise HTTPException(404, "Run not found")
    if not run.finished:
        raise HTTPException(409, "Run is still in progress")
    svc.forget(run_id)
    return {"ok": True}


@router.get("/history")
def history(limit: int = Query(HISTORY_LIMIT, ge=1, le=500)):
    """Finished runs, newest first."""
    return {"runs": get_recent_runs(limit=limit)}


@router.get("/history/stats")
def history_stats():
    return get_history_stats()
