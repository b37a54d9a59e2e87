"""Pipeline orchestrator: scoring runs, dedup sweeps, diagnostics, resume and cancel."""

import asyncio
import logging
import math
import threading
import time
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager, suppress
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

import redis.asyncio as redis
from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from quality_pipeline import metrics
from quality_pipeline.config import settings
from quality_pipeline.db.models import DuplicateCandidate, Report, ScoringRun
from quality_pipeline.db.session import AsyncSessionLocal
from quality_pipeline.dedup.blocking import Block, BlockStrategy, build_blocks
from quality_pipeline.dedup.candidate_store import DuplicateCandidateStore
from quality_pipeline.dedup.fingerprint import fingerprint, group_exact_duplicates
from quality_pipeline.dedup.similarity import SIGNAL_WEIGHTS, SimilarityEngine
from quality_pipeline.exceptions import (
    PipelineError,
    ReportNotFoundError,
    RunInProgressError,
    RunNotFoundError,
    RunNotResumableError,
    SnapshotUnavailableError,
)
from quality_pipeline.logging_config import get_logger
from quality_pipeline.normalize.processor import ReportNormalizer
from quality_pipeline.scoring.aggregator import SCORER_VERSION
from quality_pipeline.scoring.coherence import CoherenceScorer, get_coherence_scorer
from quality_pipeline.scoring.dimensions import DIMENSION_WEIGHTS
from quality_pipeline.scoring.scorer import QualityScorer
from quality_pipeline.scoring.snapshot import (
    CorpusSnapshot,
    CorpusStatisticsBuilder,
    load_provenance,
    load_snapshot,
)
from quality_pipeline.worker.run_lock import RunLockManager, refresh_lock_heartbeat, run_lock_manager

logger = logging.getLogger(__name__)

SCORE_BATCH = "score-batch"
RESCORE_ALL = "rescore-all"
SCORE_ALL = "score-all"
SCORE_SINGLE = "score-single"
DEDUP_SWEEP = "dedup-sweep"

SCORING_KINDS = (SCORE_BATCH, RESCORE_ALL, SCORE_ALL, SCORE_SINGLE)
RUN_KINDS = SCORING_KINDS + (DEDUP_SWEEP,)

CANCELLED_MESSAGE = "cancelled by operator"

_DEFAULT_LOCK = object()


class CancellationToken:
    """Thread-safe cancellation flag checked before every report and pair."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class RunSummary:
    """JSON-shaped result of a pipeline run."""

    run_id: str
    kind: str
    trigger: str
    status: str = "running"
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    unchanged: int = 0
    candidates_created: int = 0
    candidates_updated: int = 0
    exact_duplicates_linked: int = 0
    comparisons: int = 0
    blocks: int = 0
    blocks_skipped: int = 0
    grade_distribution: dict[str, int] = field(default_factory=dict)
    errors: list[dict] = field(default_factory=list)
    error_message: Optional[str] = None
    scorer_version: str = SCORER_VERSION
    snapshot_version: Optional[int] = None
    resumed: bool = False
    duration_seconds: float = 0.0

    def record_error(self, entry: dict, cap: int):
        if len(self.errors) < cap:
            self.errors.append(entry)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["duration_seconds"] = round(self.duration_seconds, 3)
        return data


@dataclass
class _RunContext:
    run_id: str
    kind: str
    parameters: dict
    summary: RunSummary
    token: CancellationToken
    checkpoint: dict
    started: float = field(default_factory=time.monotonic)
    units_done: int = 0
    progress_lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class PipelineOrchestrator:
    """
    Runs the quality pipeline operations.

    Every mutating operation:
    1. Acquires the distributed run lock (when one is configured)
    2. Creates (or, on resume, reopens) the ScoringRun record
    3. Starts a lock heartbeat task
    4. Processes reports/blocks with bounded concurrency, checkpointing progress
    5. Marks the run completed or failed
    6. Releases the lock in a finally block
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        coherence_scorer: CoherenceScorer | None = None,
        lock_manager: RunLockManager | None | object = _DEFAULT_LOCK,
        scoring_workers: int | None = None,
        dedup_workers: int | None = None,
        batch_size: int | None = None,
        checkpoint_every: int | None = None,
        duplicate_threshold: float | None = None,
        block_strategy: str | None = None,
        boundary_days: int | None = None,
        max_run_errors: int | None = None,
    ):
        self.session_factory = session_factory or AsyncSessionLocal
        self.coherence_scorer = coherence_scorer or get_coherence_scorer()
        if lock_manager is _DEFAULT_LOCK:
            lock_manager = run_lock_manager if settings.run_lock_enabled else None
        self.lock_manager: RunLockManager | None = lock_manager
        self.scoring_workers = scoring_workers or settings.scoring_workers
        self.dedup_workers = dedup_workers or settings.dedup_workers
        self.batch_size = batch_size or settings.score_batch_size
        self.checkpoint_every = checkpoint_every or settings.checkpoint_every
        self.duplicate_threshold = (
            settings.duplicate_threshold if duplicate_threshold is None else duplicate_threshold
        )
        self.block_strategy = BlockStrategy(block_strategy or settings.dedup_block_strategy)
        self.boundary_days = settings.dedup_boundary_days if boundary_days is None else boundary_days
        self.max_run_errors = max_run_errors or settings.max_run_errors
        self.normalizer = ReportNormalizer()
        self._active: dict[str, CancellationToken] = {}

    # ==================================================================
    # Public operations
    # ==================================================================

    async def score_batch(
        self,
        limit: int | None = None,
        trigger: str = "manual",
        run_id: str | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> RunSummary:
        """Score every report that has no quality score yet."""
        return await self._execute(
            SCORE_BATCH, trigger, {"limit": limit}, run_id=run_id, cancel_token=cancel_token
        )

    async def rescore_all(
        self,
        trigger: str = "manual",
        run_id: str | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> RunSummary:
        """Re-score reports whose scorer_version differs from the current one."""
        return await self._execute(RESCORE_ALL, trigger, {}, run_id=run_id, cancel_token=cancel_token)

    async def score_all(
        self,
        trigger: str = "manual",
        run_id: str | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> RunSummary:
        """Re-evaluate every report. Unchanged reports are still not written."""
        return await self._execute(SCORE_ALL, trigger, {}, run_id=run_id, cancel_token=cancel_token)

    async def score_single(
        self,
        report_id: str,
        trigger: str = "manual",
        run_id: str | None = None,
    ) -> RunSummary:
        """Score one report by id."""
        async with self.session_factory() as db:
            if await db.get(Report, report_id) is None:
                raise ReportNotFoundError(report_id)
        return await self._execute(SCORE_SINGLE, trigger, {"report_id": report_id}, run_id=run_id)

    async def dedup_sweep(
        self,
        trigger: str = "manual",
        run_id: str | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> RunSummary:
        """Link exact duplicates, then compare approved reports block by block."""
        return await self._execute(DEDUP_SWEEP, trigger, {}, run_id=run_id, cancel_token=cancel_token)

    async def resume(
        self,
        run_id: str,
        cancel_token: CancellationToken | None = None,
    ) -> RunSummary:
        """
        Resume a failed or cancelled run under the same run id.

        Reports already written by this run and dedup blocks recorded in the
        checkpoint are skipped.

        Raises:
            RunNotFoundError: Unknown run
            RunNotResumableError: Run is not in the failed state
        """
        async with self.session_factory() as db:
            run = await db.get(ScoringRun, run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        if run.status != "failed":
            raise RunNotResumableError(run_id, run.status)

        return await self._execute(
            run.kind,
            run.trigger or "manual",
            dict(run.parameters or {}),
            run_id=run_id,
            cancel_token=cancel_token,
            resume=True,
        )

    async def cancel(self, run_id: str) -> dict:
        """
        Request cancellation of a pending or running run.

        A run executing in this process stops before its next report or pair.
        A run owned by another process is marked failed here and notices at
        its next checkpoint.
        """
        token = self._active.get(run_id)
        async with self.session_factory() as db:
            run = await db.get(ScoringRun, run_id)
            if run is None:
                raise RunNotFoundError(run_id)
            if run.status not in ("pending", "running"):
                raise PipelineError(f"Run {run_id} is already {run.status}")

            if token is not None:
                token.cancel()
                logger.info(f"Cancellation requested for run {run_id[:16]}...")
                return {"run_id": run_id, "status": "cancelling"}

            run.status = "failed"
            run.error_message = CANCELLED_MESSAGE
            run.completed_at = datetime.utcnow()
            await db.commit()

        logger.info(f"Run {run_id[:16]}... marked cancelled")
        return {"run_id": run_id, "status": "failed"}

    async def refresh_corpus(self, trigger: str = "manual") -> dict:
        """Rebuild corpus statistics from approved reports."""
        run_id = uuid4().hex
        async with self._run_lock(run_id, "refresh-corpus"):
            async with self.session_factory() as db:
                snapshot = await CorpusStatisticsBuilder().refresh(db)

        logger.info(f"Corpus refreshed (trigger: {trigger}, version: {snapshot.version})")
        return {
            "version": snapshot.version,
            "document_count": snapshot.document_count,
            "terms": len(snapshot.document_frequencies),
            "built_at": snapshot.built_at.isoformat() if snapshot.built_at else None,
        }

    async def stats(self) -> dict:
        """Grade distribution, unscored count, pending candidates and score range."""
        async with self.session_factory() as db:
            total = await db.scalar(select(func.count(Report.id))) or 0
            unscored = await db.scalar(
                select(func.count(Report.id)).where(Report.quality_score.is_(None))
            ) or 0
            stale = await db.scalar(
                select(func.count(Report.id)).where(
                    Report.scorer_version.is_not(None),
                    Report.scorer_version != SCORER_VERSION,
                )
            ) or 0
            exact_duplicates = await db.scalar(
                select(func.count(Report.id)).where(Report.duplicate_of_id.is_not(None))
            ) or 0

            grades = await db.execute(
                select(Report.quality_grade, func.count(Report.id))
                .where(Report.quality_grade.is_not(None))
                .group_by(Report.quality_grade)
            )
            distribution = {grade: 0 for grade in "ABCDF"}
            distribution.update({grade: count for grade, count in grades.all()})

            score_range = (
                await db.execute(
                    select(
                        func.avg(Report.quality_score),
                        func.min(Report.quality_score),
                        func.max(Report.quality_score),
                    )
                )
            ).one()

            candidates = await db.execute(
                select(DuplicateCandidate.status, func.count(DuplicateCandidate.id))
                .group_by(DuplicateCandidate.status)
            )
            by_status = {status: count for status, count in candidates.all()}
            pending = await DuplicateCandidateStore(db).count_pending()

        avg_score, min_score, max_score = score_range
        return {
            "total_reports": total,
            "scored": total - unscored,
            "unscored": unscored,
            "stale_scorer_version": stale,
            "scorer_version": SCORER_VERSION,
            "grade_distribution": distribution,
            "score_avg": round(float(avg_score), 1) if avg_score is not None else None,
            "score_min": min_score,
            "score_max": max_score,
            "exact_duplicates": exact_duplicates,
            "pending_candidates": pending,
            "candidates_by_status": by_status,
        }

    async def check(self) -> dict:
        """
        Diagnose configuration and data without changing anything.

        Returns:
            {"ok": bool, "issues": [{"level", "code", "message"}], "info": {...}}
        """
        issues: list[dict] = []
        info: dict[str, Any] = {"scorer_version": SCORER_VERSION}

        def issue(level: str, code: str, message: str):
            issues.append({"level": level, "code": code, "message": message})

        if not math.isclose(sum(SIGNAL_WEIGHTS.values()), 1.0, abs_tol=1e-9):
            issue("error", "similarity_weights", f"Similarity weights sum to {sum(SIGNAL_WEIGHTS.values())}")
        if any(weight <= 0 for weight in DIMENSION_WEIGHTS.values()):
            issue("error", "dimension_weights", "Every dimension weight must be positive")

        async with self.session_factory() as db:
            try:
                snapshot = await load_snapshot(db)
            except SnapshotUnavailableError:
                issue("warning", "snapshot_missing", "No corpus snapshot; the next run will build one")
            else:
                info["snapshot_version"] = snapshot.version
                info["snapshot_documents"] = snapshot.document_count
                if snapshot.is_stale(settings.corpus_max_age_hours):
                    issue(
                        "warning",
                        "snapshot_stale",
                        f"Corpus snapshot v{snapshot.version} is older than {settings.corpus_max_age_hours}h",
                    )

            _, provenance_version = await load_provenance(db)
            if provenance_version == 0:
                issue("warning", "provenance_empty", "source_provenance is empty; using built-in tiers")

            stale = await db.scalar(
                select(func.count(Report.id)).where(
                    Report.scorer_version.is_not(None),
                    Report.scorer_version != SCORER_VERSION,
                )
            ) or 0
            unscored = await db.scalar(
                select(func.count(Report.id)).where(Report.quality_score.is_(None))
            ) or 0
            info["stale_scorer_version"] = stale
            info["unscored"] = unscored
            if stale:
                issue("info", "stale_scores", f"{stale} reports were scored by an older scorer version")

        if settings.coherence_api_url and not settings.coherence_api_key:
            issue("warning", "coherence_credentials", "Coherence endpoint configured without an API key")

        if self.lock_manager is None:
            info["run_lock"] = "disabled"
        else:
            available = await self.lock_manager.ping()
            info["run_lock"] = "available" if available else "unavailable"
            if not available:
                issue("warning", "redis_unavailable", "Redis is unreachable; mutating runs will fail")

        return {
            "ok": not any(i["level"] == "error" for i in issues),
            "issues": issues,
            "info": info,
        }

    async def run_operation(self, operation: str, **kwargs) -> dict:
        """Dispatch an operation by name (API / CLI / scheduler) and return a JSON summary."""
        handlers: dict[str, Callable[..., Awaitable[Any]]] = {
            SCORE_BATCH: self.score_batch,
            RESCORE_ALL: self.rescore_all,
            SCORE_ALL: self.score_all,
            SCORE_SINGLE: self.score_single,
            DEDUP_SWEEP: self.dedup_sweep,
            "check": self.check,
            "stats": self.stats,
            "resume": self.resume,
            "cancel": self.cancel,
            "refresh-corpus": self.refresh_corpus,
        }
        handler = handlers.get(operation)
        if handler is None:
            raise PipelineError(f"Unknown operation '{operation}'")
        result = await handler(**kwargs)
        return result.to_dict() if isinstance(result, RunSummary) else result

    # ==================================================================
    # Run lifecycle
    # ==================================================================

    @asynccontextmanager
    async def _run_lock(self, run_id: str, kind: str):
        if self.lock_manager is None:
            yield None
            return

        token = await self.lock_manager.acquire(run_id)
        metrics.record_run_lock(kind, token is not None)
        if token is None:
            raise RunInProgressError(await self.lock_manager.get_lock_info())

        heartbeat = asyncio.create_task(refresh_lock_heartbeat(self.lock_manager, run_id, token))
        try:
            yield token
        finally:
            heartbeat.cancel()
            with suppress(asyncio.CancelledError):
                await heartbeat
            try:
                await self.lock_manager.release(run_id, token)
            except redis.RedisError as e:
                logger.warning(f"Failed to release run lock for run_id {run_id[:16]}...: {e}")

    async def _execute(
        self,
        kind: str,
        trigger: str,
        parameters: dict,
        run_id: str | None = None,
        cancel_token: CancellationToken | None = None,
        resume: bool = False,
    ) -> RunSummary:
        run_id = run_id or uuid4().hex
        worker = self._dedup if kind == DEDUP_SWEEP else self._score

        async with self._run_lock(run_id, kind):
            ctx = await self._begin_run(run_id, kind, trigger, parameters, resume, cancel_token)
            log = get_logger(__name__, run_id=run_id, kind=kind)
            log.info(f"Starting {kind} run {run_id[:16]}... (trigger: {trigger}, resume: {resume})")

            self._active[run_id] = ctx.token
            try:
                await worker(ctx)
            except Exception as e:
                log.error(f"{kind} run {run_id[:16]}... failed: {e}", exc_info=True)
                await self._finish_run(ctx, "failed", str(e)[:500])
                raise
            finally:
                self._active.pop(run_id, None)

            if ctx.token.cancelled:
                await self._finish_run(ctx, "failed", CANCELLED_MESSAGE)
                log.warning(f"{kind} run {run_id[:16]}... cancelled after {ctx.summary.processed} items")
            else:
                await self._finish_run(ctx, "completed")
                log.info(
                    f"{kind} run {run_id[:16]}... completed: processed={ctx.summary.processed} "
                    f"succeeded={ctx.summary.succeeded} failed={ctx.summary.failed} "
                    f"unchanged={ctx.summary.unchanged} candidates={ctx.summary.candidates_created}"
                )

        return ctx.summary

    async def _begin_run(
        self,
        run_id: str,
        kind: str,
        trigger: str,
        parameters: dict,
        resume: bool,
        cancel_token: CancellationToken | None,
    ) -> _RunContext:
        async with self.session_factory() as db:
            if resume:
                run = await db.get(ScoringRun, run_id)
                if run is None:
                    raise RunNotFoundError(run_id)
            else:
                run = ScoringRun(
                    id=run_id,
                    kind=kind,
                    trigger=trigger,
                    status="pending",
                    parameters=parameters,
                    scorer_version=SCORER_VERSION,
                    checkpoint={},
                    errors=[],
                )
                db.add(run)
                await db.commit()

            run.status = "running"
            run.started_at = run.started_at or datetime.utcnow()
            run.completed_at = None
            run.error_message = None
            await db.commit()

            checkpoint = dict(run.checkpoint or {})
            summary = RunSummary(
                run_id=run_id,
                kind=kind,
                trigger=trigger,
                processed=run.reports_processed,
                succeeded=run.reports_succeeded,
                failed=run.reports_failed,
                unchanged=run.reports_unchanged,
                candidates_created=run.candidates_created,
                candidates_updated=run.candidates_updated,
                exact_duplicates_linked=run.exact_duplicates_linked,
                comparisons=run.comparisons,
                grade_distribution=dict(checkpoint.get("grade_distribution", {})),
                errors=list(run.errors or []),
                resumed=resume,
            )
            if resume and kind != DEDUP_SWEEP:
                await self._recount_scoring(db, summary)

        return _RunContext(
            run_id=run_id,
            kind=kind,
            parameters=parameters,
            summary=summary,
            token=cancel_token or CancellationToken(),
            checkpoint=checkpoint,
        )

    @staticmethod
    async def _recount_scoring(db: AsyncSession, summary: RunSummary):
        """
        Rebuild scoring counters of a resumed run from the reports it wrote.

        Checkpointed counters lag behind writes made after the last checkpoint.
        Unchanged and failed reports carry no run id and are evaluated again
        on resume, so their counters start over.
        """
        result = await db.execute(
            select(Report.quality_grade, func.count(Report.id))
            .where(Report.scoring_run_id == summary.run_id)
            .group_by(Report.quality_grade)
        )
        grades = {grade: count for grade, count in result.all() if grade is not None}
        summary.succeeded = sum(grades.values())
        summary.grade_distribution = grades
        summary.processed = summary.succeeded
        summary.unchanged = 0
        summary.failed = 0
        summary.errors = []

    @staticmethod
    def _apply_summary(run: ScoringRun, ctx: _RunContext):
        summary = ctx.summary
        run.reports_processed = summary.processed
        run.reports_succeeded = summary.succeeded
        run.reports_failed = summary.failed
        run.reports_unchanged = summary.unchanged
        run.candidates_created = summary.candidates_created
        run.candidates_updated = summary.candidates_updated
        run.exact_duplicates_linked = summary.exact_duplicates_linked
        run.comparisons = summary.comparisons
        run.snapshot_version = summary.snapshot_version
        run.errors = list(summary.errors)
        ctx.checkpoint["grade_distribution"] = dict(summary.grade_distribution)
        run.checkpoint = dict(ctx.checkpoint)
        run.checkpoint_at = datetime.utcnow()

    async def _save_progress(self, ctx: _RunContext):
        """Persist counters and checkpoint; pick up cancellation from other processes."""
        async with ctx.progress_lock:
            async with self.session_factory() as db:
                run = await db.get(ScoringRun, ctx.run_id)
                if run is None:
                    return
                if run.status == "failed" and run.error_message == CANCELLED_MESSAGE:
                    ctx.token.cancel()
                self._apply_summary(run, ctx)
                await db.commit()

    async def _finish_run(self, ctx: _RunContext, status: str, error_message: str | None = None):
        ctx.summary.status = status
        ctx.summary.error_message = error_message
        ctx.summary.duration_seconds = time.monotonic() - ctx.started

        async with ctx.progress_lock:
            async with self.session_factory() as db:
                run = await db.get(ScoringRun, ctx.run_id)
                if run is not None:
                    self._apply_summary(run, ctx)
                    run.status = status
                    run.error_message = error_message
                    run.completed_at = datetime.utcnow()
                    await db.commit()

        metrics.record_run_finished(ctx.kind, status, ctx.summary.duration_seconds)

    async def _tick(self, ctx: _RunContext):
        ctx.units_done += 1
        if ctx.units_done % self.checkpoint_every == 0:
            await self._save_progress(ctx)

    async def _load_snapshot(self) -> CorpusSnapshot:
        async with self.session_factory() as db:
            try:
                return await load_snapshot(db)
            except SnapshotUnavailableError:
                logger.warning("No corpus snapshot found; building one from approved reports")
                return await CorpusStatisticsBuilder().refresh(db)

    # ==================================================================
    # Scoring
    # ==================================================================

    async def _score(self, ctx: _RunContext):
        snapshot = await self._load_snapshot()
        ctx.summary.snapshot_version = snapshot.version
        scorer = QualityScorer(snapshot, self.coherence_scorer, self.normalizer)

        report_ids = await self._select_report_ids(ctx)
        async with self.session_factory() as db:
            await db.execute(
                update(ScoringRun)
                .where(ScoringRun.id == ctx.run_id)
                .values(total_items=ctx.summary.processed + len(report_ids))
            )
            await db.commit()
        logger.info(f"{ctx.kind}: {len(report_ids)} reports to evaluate (snapshot v{snapshot.version})")

        semaphore = asyncio.Semaphore(self.scoring_workers)
        for start in range(0, len(report_ids), self.batch_size):
            if ctx.token.cancelled:
                break
            reports = await self._load_reports(report_ids[start:start + self.batch_size])
            await asyncio.gather(
                *(self._score_one(ctx, scorer, report, semaphore) for report in reports)
            )

        await self._save_progress(ctx)

    async def _select_report_ids(self, ctx: _RunContext) -> list[str]:
        query = select(Report.id).order_by(Report.id)

        if ctx.kind == SCORE_BATCH:
            query = query.where(Report.quality_score.is_(None))
        elif ctx.kind == RESCORE_ALL:
            query = query.where(
                or_(Report.scorer_version.is_(None), Report.scorer_version != SCORER_VERSION)
            )
        elif ctx.kind == SCORE_SINGLE:
            query = query.where(Report.id == ctx.parameters["report_id"])

        if ctx.summary.resumed:
            query = query.where(
                or_(Report.scoring_run_id.is_(None), Report.scoring_run_id != ctx.run_id)
            )

        limit = ctx.parameters.get("limit")
        if limit:
            remaining = limit - ctx.summary.processed
            if remaining <= 0:
                return []
            query = query.limit(remaining)

        async with self.session_factory() as db:
            result = await db.execute(query)
            return list(result.scalars().all())

    async def _load_reports(self, report_ids: list[str]) -> list[Report]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Report).where(Report.id.in_(report_ids)).order_by(Report.id)
            )
            return list(result.scalars().all())

    @staticmethod
    def _is_unchanged(report: Report, input_hash: str) -> bool:
        return (
            report.quality_score is not None
            and report.scorer_version == SCORER_VERSION
            and report.quality_input_hash == input_hash
            and not report.coherence_degraded
        )

    async def _score_one(
        self,
        ctx: _RunContext,
        scorer: QualityScorer,
        report: Report,
        semaphore: asyncio.Semaphore,
    ):
        async with semaphore:
            if ctx.token.cancelled:
                return

            grade = None
            try:
                normalized, input_hash = scorer.prepare(report)
                if self._is_unchanged(report, input_hash):
                    ctx.summary.unchanged += 1
                    outcome = "unchanged"
                else:
                    scored = await scorer.score(report, normalized)
                    await self._write_score(ctx.run_id, scored)
                    grade = scored.aggregate.grade
                    ctx.summary.succeeded += 1
                    ctx.summary.grade_distribution[grade] = (
                        ctx.summary.grade_distribution.get(grade, 0) + 1
                    )
                    outcome = "scored"
            except Exception as e:
                logger.warning(f"Scoring failed for report {report.id}: {e}")
                ctx.summary.failed += 1
                ctx.summary.record_error(
                    {"report_id": report.id, "error": str(e)[:300]}, self.max_run_errors
                )
                outcome = "failed"

            ctx.summary.processed += 1
            metrics.record_report_outcome(ctx.kind, outcome, grade)
            await self._tick(ctx)

    async def _write_score(self, run_id: str, scored):
        """Single UPDATE of the pipeline-owned columns of one report."""
        async with self.session_factory() as db:
            await db.execute(
                update(Report)
                .where(Report.id == scored.report_id)
                .values(
                    quality_score=scored.aggregate.score,
                    quality_grade=scored.aggregate.grade,
                    quality_dimensions=scored.dimensions_payload(),
                    quality_scored_at=datetime.utcnow(),
                    scorer_version=scored.aggregate.scorer_version,
                    quality_input_hash=scored.input_hash,
                    coherence_degraded=scored.coherence.degraded,
                    scoring_run_id=run_id,
                    recommended_status=scored.aggregate.recommended_status,
                    fingerprint=scored.fingerprint,
                )
            )
            await db.commit()

    # ==================================================================
    # Deduplication
    # ==================================================================

    async def _dedup(self, ctx: _RunContext):
        snapshot = await self._load_snapshot()
        ctx.summary.snapshot_version = snapshot.version

        async with self.session_factory() as db:
            result = await db.execute(
                select(Report).where(Report.status == "approved").order_by(Report.id)
            )
            reports = list(result.scalars().all())

        normalized = [self.normalizer.normalize(report) for report in reports]
        ctx.summary.processed = len(normalized)
        digests = {n.id: fingerprint(n) for n in normalized}
        groups = group_exact_duplicates(digests)

        if not ctx.checkpoint.get("fingerprints_done"):
            linked = await self._link_exact_duplicates(reports, digests, groups)
            ctx.summary.exact_duplicates_linked += linked
            metrics.exact_duplicates_linked_total.inc(linked)
            ctx.checkpoint["fingerprints_done"] = True
            await self._save_progress(ctx)

        linked_ids = {report_id for others in groups.values() for report_id in others}
        blocks = build_blocks(
            [n for n in normalized if n.id not in linked_ids],
            strategy=self.block_strategy,
            boundary_days=self.boundary_days,
        )
        ctx.summary.blocks = len(blocks)
        completed = set(ctx.checkpoint.get("completed_blocks", []))
        logger.info(
            f"dedup-sweep: {len(normalized)} approved reports, {len(linked_ids)} exact duplicates, "
            f"{len(blocks)} blocks ({len(completed)} already done)"
        )

        engine = SimilarityEngine(snapshot)
        semaphore = asyncio.Semaphore(self.dedup_workers)
        await asyncio.gather(
            *(self._sweep_block(ctx, engine, block, completed, semaphore) for block in blocks)
        )
        await self._save_progress(ctx)

    async def _link_exact_duplicates(
        self,
        reports: list[Report],
        digests: dict[str, str],
        groups: dict[str, list[str]],
    ) -> int:
        """Store fingerprints and point non-canonical group members at the canonical id."""
        canonical_of = {
            report_id: canonical for canonical, others in groups.items() for report_id in others
        }
        linked = 0

        async with self.session_factory() as db:
            for report in reports:
                values = {}
                if report.fingerprint != digests[report.id]:
                    values["fingerprint"] = digests[report.id]
                canonical = canonical_of.get(report.id)
                if canonical and report.duplicate_of_id != canonical:
                    values["duplicate_of_id"] = canonical
                    linked += 1
                if values:
                    await db.execute(update(Report).where(Report.id == report.id).values(**values))
            await db.commit()

        if linked:
            logger.info(f"Linked {linked} exact duplicates across {len(groups)} fingerprint groups")
        return linked

    async def _sweep_block(
        self,
        ctx: _RunContext,
        engine: SimilarityEngine,
        block: Block,
        completed: set[str],
        semaphore: asyncio.Semaphore,
    ):
        async with semaphore:
            if block.key in completed:
                ctx.summary.blocks_skipped += 1
                return
            if ctx.token.cancelled:
                return
            if block.size > settings.dedup_max_block_size:
                logger.warning(f"Block {block.key} has {block.size} reports ({block.pair_count} pairs)")

            outcome = await asyncio.to_thread(
                engine.compare_block,
                block.key,
                block.members,
                block.spillover,
                self.duplicate_threshold,
                ctx.token.is_cancelled,
            )
            ctx.summary.comparisons += outcome.comparisons
            metrics.record_block_compared(block.size, outcome.comparisons)

            for error in outcome.errors:
                metrics.dedup_pair_errors_total.inc()
                ctx.summary.record_error(
                    {"pair": [error.report_a_id, error.report_b_id], "error": error.error[:300]},
                    self.max_run_errors,
                )

            if outcome.candidates:
                async with self.session_factory() as db:
                    store = DuplicateCandidateStore(db)
                    for result in outcome.candidates:
                        if await store.upsert(result, run_id=ctx.run_id):
                            ctx.summary.candidates_created += 1
                        else:
                            ctx.summary.candidates_updated += 1
                    await db.commit()

            if outcome.cancelled:
                return
            completed.add(block.key)
            ctx.checkpoint["completed_blocks"] = sorted(completed)
            await self._tick(ctx)


# Global orchestrator instance
pipeline_orchestrator = PipelineOrchestrator()
