"""Tests for dimension scoring, aggregation and the end-to-end report scorer."""

import math
from datetime import date

import pytest

from quality_pipeline.normalize.processor import ReportNormalizer
from quality_pipeline.scoring.aggregator import (
    SCORER_VERSION,
    aggregate,
    grade_for,
    recommended_status_for,
)
from quality_pipeline.scoring.coherence import CoherenceResult
from quality_pipeline.scoring.dimensions import (
    DIMENSION_WEIGHTS,
    Dimension,
    DimensionScore,
    DimensionScorer,
)
from quality_pipeline.scoring.scorer import QualityScorer, quality_input_hash
from quality_pipeline.scoring.snapshot import CorpusSnapshot, empty_snapshot

from factories import StubCoherenceScorer

normalizer = ReportNormalizer()
scorer = DimensionScorer(word_cap=800, keyword_density_target=0.02)

DETAILED_SENTENCE = (
    "I saw a bright white light that hovered silently above the field then moved north "
    "while my brother and I watched from the porch of the house. "
)


def detailed_description(words: int = 500) -> str:
    base = DETAILED_SENTENCE.split()
    text = []
    while len(text) < words:
        text.extend(base)
    return " ".join(text[:words])


def scenario_report(**overrides) -> dict:
    report = {
        "id": "scenario-1",
        "title": "Silent white light above the north field",
        "summary": "Silent light hovered and moved north",
        "description": detailed_description(500),
        "category": "ufo",
        "event_date": date(2022, 9, 2),
        "event_date_precision": "exact",
        "event_time": "22:40",
        "location_name": "Miller farm",
        "city": "Ames",
        "state_province": "Iowa",
        "country": "USA",
        "latitude": 42.03,
        "longitude": -93.62,
        "witness_count": 3,
        "witnesses_named": True,
        "has_photo_video": True,
        "has_physical_evidence": True,
        "has_official_report": False,
        "evidence_summary": "Phone video and scorched grass",
        "tags": ["light", "hovering", "silent"],
        "linked_categories": ["ufo"],
        "source_type": "nuforc",
    }
    report.update(overrides)
    return report


def by_name(scores):
    return {s.name: s for s in scores}


def test_weights_are_positive():
    assert all(weight > 0 for weight in DIMENSION_WEIGHTS.values())
    assert len(DIMENSION_WEIGHTS) == 10


@pytest.mark.parametrize(
    "score,grade",
    [(100, "A"), (80, "A"), (79, "B"), (65, "B"), (64, "C"), (50, "C"), (49, "D"), (35, "D"), (34, "F"), (0, "F")],
)
def test_grade_boundaries(score, grade):
    assert grade_for(score) == grade


def test_recommended_status():
    assert recommended_status_for(60) == "approved"
    assert recommended_status_for(59) == "pending_review"
    assert recommended_status_for(35) == "pending_review"
    assert recommended_status_for(34) == "rejected"


def test_aggregate_rounds_half_up():
    result = aggregate([
        DimensionScore(name="a", weight=1.0, raw=64.5),
        DimensionScore(name="b", weight=1.0, raw=64.5),
    ])
    assert result.score == 65
    assert result.grade == "B"
    assert result.scorer_version == SCORER_VERSION


def test_aggregate_weighted_mean_and_clamp():
    result = aggregate([
        DimensionScore(name="a", weight=3.0, raw=100.0),
        DimensionScore(name="b", weight=1.0, raw=0.0),
    ])
    assert result.score == 75

    assert aggregate([]).score == 0


@pytest.mark.parametrize(
    "flags,expected",
    [
        ((False, False, False), 0.0),
        ((True, False, False), 35.0),
        ((True, True, False), 70.0),
        ((True, True, True), 100.0),
    ],
)
def test_evidence_strength_tiers(flags, expected):
    photo, physical, official = flags
    report = normalizer.normalize({
        "id": "e",
        "has_photo_video": photo,
        "has_physical_evidence": physical,
        "has_official_report": official,
    })
    raw, _ = scorer.evidence_strength(report)
    assert raw == expected


def test_null_description_scores_zero_detail_without_failing():
    report = normalizer.normalize({"id": "n", "title": "No text", "description": None})
    scores = by_name(scorer.score(report, empty_snapshot(), 50.0))

    assert scores[Dimension.DESCRIPTION_DETAIL.value].raw == 0.0
    assert scores[Dimension.CONTENT_ORIGINALITY.value].raw == 0.0
    assert len(scores) == 10


def test_description_detail_saturates_at_word_cap():
    long_report = normalizer.normalize({"id": "l", "description": detailed_description(1600)})
    capped = normalizer.normalize({"id": "c", "description": detailed_description(800)})

    assert scorer.description_detail(long_report)[0] == pytest.approx(
        scorer.description_detail(capped)[0]
    )
    assert scorer.description_detail(capped)[0] == pytest.approx(100.0)


def test_source_reliability_unknown_source():
    report = normalizer.normalize({"id": "s", "source_type": "mystery_blog"})
    raw, details = scorer.source_reliability(report, empty_snapshot())
    assert raw == 20.0
    assert "unknown source" in details


def test_temporal_precision_levels():
    exact_time = normalizer.normalize({"id": "t1", "event_date": "2020-01-01", "event_time": "03:00"})
    exact = normalizer.normalize({"id": "t2", "event_date": "2020-01-01"})
    approx = normalizer.normalize(
        {"id": "t3", "event_date": "2020-01-01", "event_date_precision": "approximate"}
    )
    undated = normalizer.normalize({"id": "t4"})

    assert scorer.temporal_precision(exact_time)[0] == 100.0
    assert scorer.temporal_precision(exact)[0] == 75.0
    assert scorer.temporal_precision(approx)[0] == 40.0
    assert scorer.temporal_precision(undated)[0] == 0.0


def test_content_originality_uses_snapshot():
    snapshot = CorpusSnapshot(
        version=3,
        document_count=100,
        document_frequencies={"light": 90, "orb": 40, "zigzagging": 1},
    )
    common = normalizer.normalize({"id": "o1", "description": "light light"})
    rare = normalizer.normalize({"id": "o2", "description": "zigzagging"})

    common_raw, _ = scorer.content_originality(common, snapshot)
    rare_raw, _ = scorer.content_originality(rare, snapshot)
    assert 0.0 <= common_raw < rare_raw <= 100.0

    unseen = normalizer.normalize({"id": "o3", "description": "neverseenbefore"})
    assert scorer.content_originality(unseen, snapshot)[0] == pytest.approx(100.0)


def test_cross_reference_curve():
    none = normalizer.normalize({"id": "x1"})
    some = normalizer.normalize({"id": "x2", "tags": ["a", "b"], "linked_categories": ["c"]})

    assert scorer.cross_reference(none)[0] == 0.0
    assert scorer.cross_reference(some)[0] == pytest.approx(100 * (1 - math.exp(-1)))


def test_degraded_coherence_is_reported_in_details():
    report = normalizer.normalize({"id": "d"})
    scores = by_name(
        scorer.score(report, empty_snapshot(), CoherenceResult(score=50.0, degraded=True, reason="timeout"))
    )
    coherence = scores[Dimension.NARRATIVE_COHERENCE.value]
    assert coherence.raw == 50.0
    assert "fallback" in coherence.details


@pytest.mark.asyncio
async def test_well_documented_report_grades_a_or_b_reproducibly():
    snapshot = empty_snapshot()
    quality_scorer = QualityScorer(snapshot, StubCoherenceScorer(70.0))

    first = await quality_scorer.score(scenario_report())
    second = await quality_scorer.score(scenario_report())

    dimensions = by_name(first.dimensions)
    assert dimensions[Dimension.EVIDENCE_STRENGTH.value].raw == 70.0
    assert dimensions[Dimension.LOCATION_SPECIFICITY.value].raw == 100.0
    assert dimensions[Dimension.TEMPORAL_PRECISION.value].raw == 100.0
    assert first.aggregate.grade in {"A", "B"}
    assert first.aggregate == second.aggregate
    assert first.input_hash == second.input_hash
    assert [d.raw for d in first.dimensions] == [d.raw for d in second.dimensions]


@pytest.mark.asyncio
async def test_all_three_evidence_flags_score_full_evidence():
    quality_scorer = QualityScorer(empty_snapshot(), StubCoherenceScorer(70.0))
    result = await quality_scorer.score(scenario_report(has_official_report=True))

    assert by_name(result.dimensions)[Dimension.EVIDENCE_STRENGTH.value].raw == 100.0
    assert result.aggregate.grade in {"A", "B"}


def test_input_hash_tracks_snapshot_and_provenance_versions():
    report = normalizer.normalize(scenario_report())
    v1 = CorpusSnapshot(version=1, document_count=0)
    v2 = CorpusSnapshot(version=2, document_count=0)
    v1_new_provenance = CorpusSnapshot(version=1, document_count=0, provenance_version=4)

    assert quality_input_hash(report, v1) == quality_input_hash(report, v1)
    assert quality_input_hash(report, v1) != quality_input_hash(report, v2)
    assert quality_input_hash(report, v1) != quality_input_hash(report, v1_new_provenance)
