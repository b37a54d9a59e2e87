"""Persistence of duplicate candidates keyed by canonical report pair."""

import logging
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from quality_pipeline.db.models import DuplicateCandidate
from quality_pipeline.dedup.similarity import SimilarityResult
from quality_pipeline.exceptions import CandidateReviewError
from quality_pipeline.metrics import record_candidate_upsert

logger = logging.getLogger(__name__)

REVIEW_STATUSES = ("confirmed", "rejected")


def canonical_pair(report_id_x: str, report_id_y: str) -> tuple[str, str]:
    """Order a pair so that (A, B) and (B, A) map to the same key."""
    return min(report_id_x, report_id_y), max(report_id_x, report_id_y)


class DuplicateCandidateStore:
    """Read and write duplicate candidates.

    Rows are created by dedup sweeps and only ever transitioned out of
    ``pending`` by a moderator. A later sweep refreshes the signal scores of
    an existing row without touching its review status.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    def _insert(self):
        if self.session.get_bind().dialect.name == "sqlite":
            return sqlite_insert(DuplicateCandidate)
        return pg_insert(DuplicateCandidate)

    async def upsert(self, result: SimilarityResult, run_id: str | None = None) -> bool:
        """
        Insert a candidate or refresh the signals of the existing row.

        The caller owns the transaction.

        Args:
            result: Similarity result for the pair
            run_id: Run that detected the pair

        Returns:
            True if a new row was created, False if an existing one was updated
        """
        report_a_id, report_b_id = canonical_pair(result.report_a_id, result.report_b_id)
        now = datetime.utcnow()
        values = {
            "title_similarity": result.signals.get("title", 0.0),
            "location_similarity": result.signals.get("location", 0.0),
            "date_similarity": result.signals.get("date", 0.0),
            "content_similarity": result.signals.get("content", 0.0),
            "confidence": result.confidence,
            "confidence_label": result.confidence_label,
            "details": result.details,
            "last_detected_at": now,
        }

        stmt = (
            self._insert()
            .values(
                report_a_id=report_a_id,
                report_b_id=report_b_id,
                status="pending",
                detected_at=now,
                detected_run_id=run_id,
                **values,
            )
            .on_conflict_do_nothing(index_elements=["report_a_id", "report_b_id"])
        )
        inserted = await self.session.execute(stmt)
        created = inserted.rowcount == 1

        if not created:
            await self.session.execute(
                update(DuplicateCandidate)
                .where(
                    DuplicateCandidate.report_a_id == report_a_id,
                    DuplicateCandidate.report_b_id == report_b_id,
                )
                .values(**values)
            )

        record_candidate_upsert(created)
        return created

    async def get_by_pair(self, report_id_x: str, report_id_y: str) -> DuplicateCandidate | None:
        report_a_id, report_b_id = canonical_pair(report_id_x, report_id_y)
        result = await self.session.execute(
            select(DuplicateCandidate).where(
                DuplicateCandidate.report_a_id == report_a_id,
                DuplicateCandidate.report_b_id == report_b_id,
            )
        )
        return result.scalar_one_or_none()

    async def get(self, candidate_id: int) -> DuplicateCandidate | None:
        return await self.session.get(DuplicateCandidate, candidate_id)

    async def list_candidates(
        self,
        status: str | None = "pending",
        limit: int = 50,
        offset: int = 0,
        min_confidence: float | None = None,
    ) -> list[DuplicateCandidate]:
        """List candidates, highest confidence first."""
        query = select(DuplicateCandidate)
        if status:
            query = query.where(DuplicateCandidate.status == status)
        if min_confidence is not None:
            query = query.where(DuplicateCandidate.confidence >= min_confidence)
        query = (
            query.order_by(DuplicateCandidate.confidence.desc(), DuplicateCandidate.id)
            .limit(limit)
            .offset(offset)
        )
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def count_pending(self) -> int:
        count = await self.session.scalar(
            select(func.count(DuplicateCandidate.id)).where(DuplicateCandidate.status == "pending")
        )
        return count or 0

    async def review(
        self,
        candidate_id: int,
        status: str,
        reviewed_by: str,
        notes: str | None = None,
    ) -> DuplicateCandidate:
        """
        Record a moderator decision on a pending candidate.

        Args:
            candidate_id: Candidate id
            status: "confirmed" or "rejected"
            reviewed_by: Moderator identifier
            notes: Optional review notes

        Returns:
            The updated candidate

        Raises:
            CandidateReviewError: Unknown candidate, invalid status, or
                candidate already reviewed
        """
        if status not in REVIEW_STATUSES:
            raise CandidateReviewError(
                f"Invalid review status '{status}', expected one of {', '.join(REVIEW_STATUSES)}"
            )

        candidate = await self.get(candidate_id)
        if candidate is None:
            raise CandidateReviewError(f"Duplicate candidate {candidate_id} not found")
        if candidate.status != "pending":
            raise CandidateReviewError(
                f"Duplicate candidate {candidate_id} was already {candidate.status}"
            )

        candidate.status = status
        candidate.reviewed_by = reviewed_by
        candidate.reviewed_at = datetime.utcnow()
        candidate.review_notes = notes
        await self.session.commit()

        logger.info(f"Duplicate candidate {candidate_id} {status} by {reviewed_by}")
        return candidate
