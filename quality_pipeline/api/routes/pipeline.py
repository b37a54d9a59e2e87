"""Admin API for the quality pipeline: runs, duplicate candidates, stats and diagnostics."""

import logging
from datetime import datetime
from typing import List, Optional
from uuid import uuid4

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from quality_pipeline.api.deps import get_database, get_orchestrator, require_admin_api_key
from quality_pipeline.db.models import DuplicateCandidate, ScoringRun
from quality_pipeline.dedup.candidate_store import DuplicateCandidateStore
from quality_pipeline.exceptions import (
    CandidateReviewError,
    PipelineError,
    ReportNotFoundError,
    RunInProgressError,
    RunNotFoundError,
    RunNotResumableError,
)
from quality_pipeline.worker.orchestrator import (
    DEDUP_SWEEP,
    RESCORE_ALL,
    SCORE_ALL,
    SCORE_BATCH,
    SCORE_SINGLE,
    PipelineOrchestrator,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/admin/pipeline",
    tags=["pipeline"],
    dependencies=[Depends(require_admin_api_key)],
)

BACKGROUND_OPERATIONS = (SCORE_BATCH, RESCORE_ALL, SCORE_ALL, DEDUP_SWEEP)


# Response models
class ScoringRunResponse(BaseModel):
    """Response model for a pipeline run."""
    id: str
    kind: str
    trigger: Optional[str]
    status: str
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    total_items: int
    reports_processed: int
    reports_succeeded: int
    reports_failed: int
    reports_unchanged: int
    candidates_created: int
    candidates_updated: int
    exact_duplicates_linked: int
    comparisons: int
    scorer_version: Optional[str]
    snapshot_version: Optional[int]
    error_message: Optional[str]
    errors: Optional[list]
    created_at: datetime
    progress_percent: float

    class Config:
        from_attributes = True


class DuplicateCandidateResponse(BaseModel):
    """Response model for a duplicate candidate."""
    id: int
    report_a_id: str
    report_b_id: str
    title_similarity: float
    location_similarity: float
    date_similarity: float
    content_similarity: float
    confidence: float
    confidence_label: str
    details: Optional[str]
    status: str
    reviewed_by: Optional[str]
    reviewed_at: Optional[datetime]
    review_notes: Optional[str]
    detected_at: datetime
    last_detected_at: datetime

    class Config:
        from_attributes = True


class OperationRequest(BaseModel):
    """Optional parameters for a pipeline operation."""
    limit: Optional[int] = None
    report_id: Optional[str] = None


class ReviewRequest(BaseModel):
    """Moderator decision on a duplicate candidate."""
    status: str  # confirmed | rejected
    reviewed_by: str
    notes: Optional[str] = None


async def _run_in_background(orchestrator: PipelineOrchestrator, operation: str, **kwargs):
    try:
        await orchestrator.run_operation(operation, **kwargs)
    except RunInProgressError as e:
        logger.info(f"Background {operation} not started: {e}")


async def _ensure_lock_free(orchestrator: PipelineOrchestrator):
    if orchestrator.lock_manager is None:
        return
    lock_info = await orchestrator.lock_manager.get_lock_info()
    if lock_info:
        raise HTTPException(
            status_code=409,
            detail={"message": "Another pipeline run is in progress", "lock": lock_info},
        )


@router.get("/runs", response_model=List[ScoringRunResponse])
async def list_runs(
    limit: int = 20,
    kind: Optional[str] = None,
    status: Optional[str] = None,
    db: AsyncSession = Depends(get_database),
):
    """List recent pipeline runs."""
    query = select(ScoringRun).order_by(ScoringRun.created_at.desc()).limit(limit)
    if kind:
        query = query.where(ScoringRun.kind == kind)
    if status:
        query = query.where(ScoringRun.status == status)
    result = await db.execute(query)
    return result.scalars().all()


@router.get("/runs/{run_id}", response_model=ScoringRunResponse)
async def get_run(run_id: str, db: AsyncSession = Depends(get_database)):
    """Get a single pipeline run."""
    run = await db.get(ScoringRun, run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Run not found")
    return run


@router.post("/runs/{run_id}/cancel")
async def cancel_run(
    run_id: str,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    """Cancel a pending or running run."""
    try:
        return await orchestrator.cancel(run_id)
    except RunNotFoundError:
        raise HTTPException(status_code=404, detail="Run not found")
    except PipelineError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/runs/{run_id}/resume")
async def resume_run(
    run_id: str,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_database),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    """Resume a failed or cancelled run under the same run id."""
    run = await db.get(ScoringRun, run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Run not found")
    if run.status != "failed":
        raise HTTPException(status_code=409, detail=str(RunNotResumableError(run_id, run.status)))
    await _ensure_lock_free(orchestrator)

    background_tasks.add_task(_run_in_background, orchestrator, "resume", run_id=run_id)
    return {"message": "Run resumed", "run_id": run_id, "kind": run.kind}


@router.get("/candidates", response_model=List[DuplicateCandidateResponse])
async def list_candidates(
    status: Optional[str] = "pending",
    limit: int = 50,
    offset: int = 0,
    min_confidence: Optional[float] = None,
    db: AsyncSession = Depends(get_database),
):
    """List duplicate candidates, highest confidence first."""
    store = DuplicateCandidateStore(db)
    return await store.list_candidates(
        status=status or None, limit=limit, offset=offset, min_confidence=min_confidence
    )


@router.get("/candidates/{candidate_id}", response_model=DuplicateCandidateResponse)
async def get_candidate(candidate_id: int, db: AsyncSession = Depends(get_database)):
    """Get a single duplicate candidate."""
    candidate = await db.get(DuplicateCandidate, candidate_id)
    if not candidate:
        raise HTTPException(status_code=404, detail="Candidate not found")
    return candidate


@router.post("/candidates/{candidate_id}/review", response_model=DuplicateCandidateResponse)
async def review_candidate(
    candidate_id: int,
    request: ReviewRequest,
    db: AsyncSession = Depends(get_database),
):
    """Confirm or reject a pending duplicate candidate."""
    store = DuplicateCandidateStore(db)
    try:
        return await store.review(
            candidate_id, request.status, reviewed_by=request.reviewed_by, notes=request.notes
        )
    except CandidateReviewError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.get("/stats")
async def get_stats(orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    """Grade distribution, unscored count, pending candidates and score range."""
    return await orchestrator.stats()


@router.get("/check")
async def run_check(orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    """Read-only diagnostics."""
    return await orchestrator.check()


@router.get("/lock")
async def get_lock(orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    """Current run lock holder, if any."""
    if orchestrator.lock_manager is None:
        return {"enabled": False, "lock_info": None, "heartbeat_age_seconds": None}
    return {
        "enabled": True,
        "lock_info": await orchestrator.lock_manager.get_lock_info(),
        "heartbeat_age_seconds": await orchestrator.lock_manager.get_heartbeat_age(),
    }


@router.post("/lock/force-unlock")
async def force_unlock(
    db: AsyncSession = Depends(get_database),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    """
    Force unlock a stuck run.

    This endpoint:
    1. Marks the RUNNING run that holds the lock as FAILED
    2. Deletes the Redis lock
    """
    if orchestrator.lock_manager is None:
        raise HTTPException(status_code=400, detail="Run lock is disabled")

    lock_info = await orchestrator.lock_manager.get_lock_info()
    if not lock_info:
        return {"message": "No lock found", "lock_info": None, "runs_updated": 0}

    runs_updated = 0
    run_id = lock_info.get("run_id")
    if run_id:
        run = await db.get(ScoringRun, run_id)
        if run and run.status == "running":
            run.status = "failed"
            run.completed_at = datetime.utcnow()
            run.error_message = "Forced unlock by admin"
            runs_updated = 1
            await db.commit()

    await orchestrator.lock_manager.force_unlock()
    logger.warning(
        f"Admin force-unlock executed (run_id: {run_id[:16] if run_id else 'unknown'}..., "
        f"runs_updated: {runs_updated})"
    )
    return {"message": "Lock force-unlocked", "lock_info": lock_info, "runs_updated": runs_updated}


@router.post("/{operation}")
async def trigger_operation(
    operation: str,
    background_tasks: BackgroundTasks,
    request: Optional[OperationRequest] = None,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    """
    Trigger a pipeline operation.

    Mutating runs execute in the background and return their run id
    immediately; check, stats and refresh-corpus return their result.
    """
    request = request or OperationRequest()

    if operation in ("check", "stats"):
        return await orchestrator.run_operation(operation)

    if operation == "refresh-corpus":
        try:
            return await orchestrator.refresh_corpus(trigger="manual")
        except RunInProgressError as e:
            raise HTTPException(status_code=409, detail=str(e))

    if operation == SCORE_SINGLE:
        # Scored inline
        if not request.report_id:
            raise HTTPException(status_code=422, detail="report_id is required for score-single")
        try:
            summary = await orchestrator.score_single(request.report_id, trigger="manual")
        except ReportNotFoundError:
            raise HTTPException(status_code=404, detail="Report not found")
        except RunInProgressError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return summary.to_dict()

    if operation not in BACKGROUND_OPERATIONS:
        raise HTTPException(status_code=404, detail=f"Unknown operation '{operation}'")

    kwargs = {}
    if operation == SCORE_BATCH and request.limit:
        kwargs["limit"] = request.limit

    await _ensure_lock_free(orchestrator)
    run_id = uuid4().hex
    background_tasks.add_task(
        _run_in_background, orchestrator, operation, trigger="manual", run_id=run_id, **kwargs
    )
    return {"message": f"{operation} started", "operation": operation, "run_id": run_id}
