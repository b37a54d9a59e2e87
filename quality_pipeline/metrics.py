"""Prometheus metrics for the quality pipeline."""

import time

from prometheus_client import Counter, Gauge, Histogram, Info

# Application info
app_info = Info("quality_pipeline", "Report quality pipeline application info")
app_info.info({"version": "0.1.0", "name": "report-quality-pipeline"})

# Run metrics
pipeline_runs_total = Counter(
    "pipeline_runs_total",
    "Total number of pipeline runs",
    ["kind", "status"],
)

pipeline_run_duration_seconds = Histogram(
    "pipeline_run_duration_seconds",
    "Wall-clock duration of pipeline runs",
    ["kind"],
    buckets=[1.0, 5.0, 30.0, 60.0, 300.0, 900.0, 3600.0, 14400.0],
)

pipeline_last_run_timestamp = Gauge(
    "pipeline_last_run_timestamp",
    "Timestamp of the last finished run",
    ["kind"],
)

# Scoring metrics
reports_scored_total = Counter(
    "reports_scored_total",
    "Reports processed by scoring runs",
    ["kind", "outcome"],  # outcome: scored, unchanged, failed
)

report_grades_total = Counter(
    "report_grades_total",
    "Grades assigned by scoring runs",
    ["grade"],
)

coherence_fallbacks_total = Counter(
    "coherence_fallbacks_total",
    "Narrative coherence scores replaced by the fallback value",
    ["reason"],
)

# Dedup metrics
dedup_comparisons_total = Counter(
    "dedup_comparisons_total",
    "Pairwise similarity comparisons performed",
)

dedup_pair_errors_total = Counter(
    "dedup_pair_errors_total",
    "Pairwise comparisons skipped because of an error",
)

duplicate_candidates_total = Counter(
    "duplicate_candidates_total",
    "Duplicate candidates written by dedup sweeps",
    ["action"],  # created, updated
)

exact_duplicates_linked_total = Counter(
    "exact_duplicates_linked_total",
    "Reports linked as exact (fingerprint) duplicates",
)

dedup_block_size = Histogram(
    "dedup_block_size",
    "Number of reports compared within a block",
    buckets=[2, 10, 50, 100, 500, 1000, 5000],
)

# Run lock metrics
run_lock_acquired_total = Counter(
    "run_lock_acquired_total",
    "Run lock acquisitions",
    ["kind"],
)

run_lock_skipped_total = Counter(
    "run_lock_skipped_total",
    "Runs refused because another run holds the lock",
    ["kind"],
)


def record_run_finished(kind: str, status: str, duration: float):
    """Record a finished pipeline run."""
    pipeline_runs_total.labels(kind=kind, status=status).inc()
    pipeline_run_duration_seconds.labels(kind=kind).observe(duration)
    pipeline_last_run_timestamp.labels(kind=kind).set(time.time())


def record_report_outcome(kind: str, outcome: str, grade: str | None = None):
    """Record the outcome of scoring one report."""
    reports_scored_total.labels(kind=kind, outcome=outcome).inc()
    if grade:
        report_grades_total.labels(grade=grade).inc()


def record_coherence_fallback(reason: str):
    """Record a degraded narrative coherence score."""
    coherence_fallbacks_total.labels(reason=reason).inc()


def record_candidate_upsert(created: bool):
    """Record a duplicate candidate write."""
    action = "created" if created else "updated"
    duplicate_candidates_total.labels(action=action).inc()


def record_block_compared(size: int, comparisons: int):
    """Record one compared dedup block."""
    dedup_block_size.observe(size)
    dedup_comparisons_total.inc(comparisons)


def record_run_lock(kind: str, acquired: bool):
    """Record a run lock attempt."""
    if acquired:
        run_lock_acquired_total.labels(kind=kind).inc()
    else:
        run_lock_skipped_total.labels(kind=kind).inc()
