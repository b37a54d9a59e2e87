"""Tests for duplicate candidate persistence and review."""

import pytest
from sqlalchemy import func, select

from quality_pipeline.db.models import DuplicateCandidate
from quality_pipeline.dedup.candidate_store import DuplicateCandidateStore, canonical_pair
from quality_pipeline.dedup.similarity import SimilarityResult
from quality_pipeline.exceptions import CandidateReviewError


def similarity(a: str, b: str, confidence: float = 0.82) -> SimilarityResult:
    return SimilarityResult(
        report_a_id=a,
        report_b_id=b,
        signals={"title": 0.9, "location": 0.8, "date": 0.7, "content": 0.6},
        confidence=confidence,
        confidence_label="likely",
        details="similar titles (90%)",
    )


def test_canonical_pair():
    assert canonical_pair("b", "a") == ("a", "b")
    assert canonical_pair("a", "b") == ("a", "b")


@pytest.mark.asyncio
async def test_reversed_pair_maps_to_one_row(db_session):
    store = DuplicateCandidateStore(db_session)

    assert await store.upsert(similarity("a", "b"), run_id="run-1") is True
    assert await store.upsert(similarity("b", "a", confidence=0.9), run_id="run-2") is False
    await db_session.commit()

    count = await db_session.scalar(select(func.count(DuplicateCandidate.id)))
    assert count == 1

    candidate = await store.get_by_pair("b", "a")
    assert (candidate.report_a_id, candidate.report_b_id) == ("a", "b")
    assert candidate.confidence == pytest.approx(0.9)
    assert candidate.detected_run_id == "run-1"


@pytest.mark.asyncio
async def test_resweep_keeps_review_status(db_session):
    store = DuplicateCandidateStore(db_session)
    await store.upsert(similarity("a", "b"))
    await db_session.commit()

    candidate = await store.get_by_pair("a", "b")
    await store.review(candidate.id, "rejected", reviewed_by="mod-1", notes="different nights")

    await store.upsert(similarity("a", "b", confidence=0.95))
    await db_session.commit()
    db_session.expire_all()

    candidate = await store.get_by_pair("a", "b")
    assert candidate.status == "rejected"
    assert candidate.reviewed_by == "mod-1"
    assert candidate.confidence == pytest.approx(0.95)


@pytest.mark.asyncio
async def test_review_rules(db_session):
    store = DuplicateCandidateStore(db_session)
    await store.upsert(similarity("c", "d"))
    await db_session.commit()
    candidate = await store.get_by_pair("c", "d")

    with pytest.raises(CandidateReviewError):
        await store.review(candidate.id, "maybe", reviewed_by="mod-1")

    with pytest.raises(CandidateReviewError):
        await store.review(9999, "confirmed", reviewed_by="mod-1")

    reviewed = await store.review(candidate.id, "confirmed", reviewed_by="mod-1")
    assert reviewed.status == "confirmed"
    assert reviewed.reviewed_at is not None

    with pytest.raises(CandidateReviewError):
        await store.review(candidate.id, "rejected", reviewed_by="mod-2")


@pytest.mark.asyncio
async def test_list_and_count_pending(db_session):
    store = DuplicateCandidateStore(db_session)
    await store.upsert(similarity("a", "b", confidence=0.78))
    await store.upsert(similarity("a", "c", confidence=0.93))
    await store.upsert(similarity("b", "c", confidence=0.85))
    await db_session.commit()

    pending = await store.list_candidates()
    assert [c.confidence for c in pending] == pytest.approx([0.93, 0.85, 0.78])
    assert await store.count_pending() == 3

    high = await store.list_candidates(min_confidence=0.8)
    assert len(high) == 2

    await store.review(pending[0].id, "confirmed", reviewed_by="mod-1")
    assert await store.count_pending() == 2
