"""Corpus statistics snapshot used for content originality and rare-term matching.

A snapshot is loaded once per run and passed explicitly to the scorers and the
similarity engine. It is never modified after construction.
"""

import logging
import math
from collections import Counter
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from types import MappingProxyType

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from quality_pipeline.config import settings
from quality_pipeline.db.models import CorpusSnapshotRecord, Report, SourceProvenance
from quality_pipeline.exceptions import SnapshotUnavailableError
from quality_pipeline.normalize.processor import fold_code, fold_text

logger = logging.getLogger(__name__)

CURATED_ARCHIVE = "curated_archive"
AGGREGATOR_FEED = "aggregator_feed"
USER_SUBMISSION = "user_submission"

PROVENANCE_TIERS = (CURATED_ARCHIVE, AGGREGATOR_FEED, USER_SUBMISSION)

# Used when the source_provenance table is empty
DEFAULT_PROVENANCE = {
    "nuforc": CURATED_ARCHIVE,
    "bfro": CURATED_ARCHIVE,
    "mufon": CURATED_ARCHIVE,
    "nderf": CURATED_ARCHIVE,
    "iands": CURATED_ARCHIVE,
    "historical_archive": CURATED_ARCHIVE,
    "wikipedia": AGGREGATOR_FEED,
    "reddit": AGGREGATOR_FEED,
    "ghostsofamerica": AGGREGATOR_FEED,
    "shadowlands": AGGREGATOR_FEED,
    "user": USER_SUBMISSION,
}


def _frozen(mapping: Mapping) -> Mapping:
    return MappingProxyType(dict(mapping))


@dataclass(frozen=True)
class CorpusSnapshot:
    """Immutable corpus term statistics plus the source provenance table."""

    version: int
    document_count: int
    document_frequencies: Mapping[str, int] = field(default_factory=dict)
    provenance: Mapping[str, str] = field(default_factory=dict)
    provenance_version: int = 0
    built_at: datetime | None = None
    rare_term_max_document_ratio: float = 0.05

    def __post_init__(self):
        # Read-only views over private copies
        object.__setattr__(self, "document_frequencies", _frozen(self.document_frequencies))
        object.__setattr__(self, "provenance", _frozen(self.provenance))

    def document_frequency(self, term: str) -> int:
        return self.document_frequencies.get(term, 0)

    def idf(self, term: str) -> float:
        """Smoothed inverse document frequency: ln((1 + N) / (1 + df)) + 1."""
        return math.log((1 + self.document_count) / (1 + self.document_frequency(term))) + 1

    @property
    def max_idf(self) -> float:
        """IDF of a term that appears in no document."""
        return math.log(1 + self.document_count) + 1

    def is_rare(self, term: str) -> bool:
        """A term is rare when it appears in at most the configured share of documents."""
        return self.document_frequency(term) <= self.rare_term_max_document_ratio * self.document_count

    def tier_for(self, source_type: str | None) -> str | None:
        """Provenance tier of a source, or None when unknown."""
        if not source_type:
            return None
        return self.provenance.get(source_type)

    def is_stale(self, max_age_hours: int, now: datetime | None = None) -> bool:
        if self.built_at is None:
            return True
        now = now or datetime.utcnow()
        return now - self.built_at > timedelta(hours=max_age_hours)


def empty_snapshot(provenance: Mapping[str, str] | None = None) -> CorpusSnapshot:
    """A version-0 snapshot with no documents (content originality scores 0)."""
    return CorpusSnapshot(
        version=0,
        document_count=0,
        provenance=provenance if provenance is not None else DEFAULT_PROVENANCE,
        rare_term_max_document_ratio=settings.rare_term_max_document_ratio,
    )


async def load_provenance(session: AsyncSession) -> tuple[dict[str, str], int]:
    """
    Load the provenance table.

    Returns:
        (source_type -> tier, table version). Falls back to the built-in
        table with version 0 when the table is empty.
    """
    result = await session.execute(select(SourceProvenance))
    rows = result.scalars().all()
    if not rows:
        return dict(DEFAULT_PROVENANCE), 0
    table = {fold_code(row.source_type): row.tier for row in rows}
    return table, max(row.table_version for row in rows)


async def load_snapshot(session: AsyncSession) -> CorpusSnapshot:
    """
    Load the latest stored corpus snapshot together with the provenance table.

    Raises:
        SnapshotUnavailableError: If no snapshot has been built yet
    """
    result = await session.execute(
        select(CorpusSnapshotRecord).order_by(CorpusSnapshotRecord.version.desc()).limit(1)
    )
    record = result.scalar_one_or_none()
    if record is None:
        raise SnapshotUnavailableError("No corpus snapshot has been built")

    provenance, provenance_version = await load_provenance(session)
    return CorpusSnapshot(
        version=record.version,
        document_count=record.document_count,
        document_frequencies=record.term_document_frequencies or {},
        provenance=provenance,
        provenance_version=provenance_version,
        built_at=record.built_at,
        rare_term_max_document_ratio=settings.rare_term_max_document_ratio,
    )


class CorpusStatisticsBuilder:
    """Recompute document frequencies from approved reports and store a new snapshot."""

    @staticmethod
    def count_documents(descriptions: Iterable[str | None]) -> tuple[int, dict[str, int]]:
        """
        Count documents and per-term document frequencies.

        Args:
            descriptions: Raw description texts, one per document

        Returns:
            (document count, term -> number of documents containing it)
        """
        document_count = 0
        frequencies: Counter = Counter()
        for description in descriptions:
            document_count += 1
            frequencies.update(set(fold_text(description).split()))
        return document_count, dict(frequencies)

    async def refresh(self, session: AsyncSession) -> CorpusSnapshot:
        """
        Build and persist a new snapshot version.

        Args:
            session: Database session (committed by this call)

        Returns:
            The newly stored snapshot
        """
        stream = await session.stream(
            select(Report.description)
            .where(Report.status == "approved")
            .execution_options(yield_per=1000)
        )
        descriptions = [description async for description in stream.scalars()]
        document_count, frequencies = self.count_documents(descriptions)

        current = await session.scalar(select(func.max(CorpusSnapshotRecord.version)))
        record = CorpusSnapshotRecord(
            version=(current or 0) + 1,
            document_count=document_count,
            term_document_frequencies=frequencies,
            built_at=datetime.utcnow(),
        )
        session.add(record)
        await session.commit()

        logger.info(
            f"Corpus snapshot v{record.version} built: {document_count} documents, "
            f"{len(frequencies)} terms"
        )

        provenance, provenance_version = await load_provenance(session)
        return CorpusSnapshot(
            version=record.version,
            document_count=document_count,
            document_frequencies=frequencies,
            provenance=provenance,
            provenance_version=provenance_version,
            built_at=record.built_at,
            rare_term_max_document_ratio=settings.rare_term_max_document_ratio,
        )
