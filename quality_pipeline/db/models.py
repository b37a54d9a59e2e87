"""SQLAlchemy database models."""

from datetime import date, datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Float,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class Report(Base):
    """A submitted report of an observed event."""

    __tablename__ = "reports"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    category: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    linked_categories: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)

    # When
    event_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True, index=True)
    event_date_precision: Mapped[Optional[str]] = mapped_column(
        String(16), nullable=True
    )  # exact, approximate, unknown
    event_time: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    # Where
    location_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    city: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    state_province: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    country: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Who / evidence
    witness_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    witnesses_named: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    witness_background: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    has_photo_video: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    has_physical_evidence: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    has_official_report: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    evidence_summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tags: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)

    # Origin
    source_type: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    original_report_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    status: Mapped[str] = mapped_column(String(32), default="pending", nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    # Pipeline-owned fields (written only by scoring runs)
    quality_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    quality_grade: Mapped[Optional[str]] = mapped_column(String(1), nullable=True)
    quality_dimensions: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    quality_scored_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    scorer_version: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, index=True)
    quality_input_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    coherence_degraded: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    scoring_run_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    recommended_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    # Dedup-owned fields
    fingerprint: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    duplicate_of_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "quality_score IS NULL OR (quality_score >= 0 AND quality_score <= 100)",
            name="ck_report_quality_score_range",
        ),
    )


class DuplicateCandidate(Base):
    """A pair of reports suspected to describe the same event."""

    __tablename__ = "duplicate_candidates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    report_a_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    report_b_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)

    # Signal breakdown
    title_similarity: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    location_similarity: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    date_similarity: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    content_similarity: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    confidence_label: Mapped[str] = mapped_column(String(16), nullable=False)  # definite, likely, possible
    details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Review
    status: Mapped[str] = mapped_column(String(16), default="pending", nullable=False, index=True)
    reviewed_by: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    review_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    detected_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    last_detected_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    detected_run_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    __table_args__ = (
        UniqueConstraint("report_a_id", "report_b_id", name="uq_duplicate_candidate_pair"),
        CheckConstraint("report_a_id < report_b_id", name="ck_duplicate_candidate_ordering"),
        CheckConstraint(
            "confidence >= 0 AND confidence <= 1", name="ck_duplicate_candidate_confidence"
        ),
    )


class ScoringRun(Base):
    """Tracks pipeline run progress, results and resume checkpoints."""

    __tablename__ = "scoring_runs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)  # UUID hex, also the lock run_id
    kind: Mapped[str] = mapped_column(String(32), nullable=False)  # score-batch, rescore-all, score-all, dedup-sweep
    trigger: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)  # manual, scheduled, cli
    status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False, index=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Progress tracking
    total_items: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    reports_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    reports_succeeded: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    reports_failed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    reports_unchanged: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Dedup results
    candidates_created: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    candidates_updated: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    exact_duplicates_linked: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    comparisons: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Context
    scorer_version: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    snapshot_version: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    parameters: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    checkpoint: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    checkpoint_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    errors: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    @property
    def progress_percent(self) -> float:
        """Calculate progress percentage."""
        if self.total_items == 0:
            return 0.0
        return (self.reports_processed / self.total_items) * 100


class CorpusSnapshotRecord(Base):
    """Persisted corpus term statistics used for content originality."""

    __tablename__ = "corpus_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    document_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    term_document_frequencies: Mapped[dict] = mapped_column(JSONType, nullable=False)
    built_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )


class SourceProvenance(Base):
    """Reliability tier of a report source."""

    __tablename__ = "source_provenance"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    source_type: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    tier: Mapped[str] = mapped_column(String(32), nullable=False)  # curated_archive, aggregator_feed, user_submission
    table_version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )
