"""Aggregate dimension scores into a final score, grade and recommended status."""

from collections.abc import Sequence
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from quality_pipeline.scoring.dimensions import DimensionScore

SCORER_VERSION = "3.0.0"

# Non-overlapping, inclusive lower bounds
GRADE_BANDS = (
    (80, "A"),
    (65, "B"),
    (50, "C"),
    (35, "D"),
    (0, "F"),
)

APPROVE_THRESHOLD = 60
REVIEW_THRESHOLD = 35


@dataclass(frozen=True)
class AggregateScore:
    """Final quality score of a report."""

    score: int  # 0 - 100
    grade: str
    scorer_version: str
    recommended_status: str  # approved, pending_review, rejected


def grade_for(score: int) -> str:
    """Letter grade of an integer score."""
    for lower_bound, grade in GRADE_BANDS:
        if score >= lower_bound:
            return grade
    return "F"


def recommended_status_for(score: int) -> str:
    if score >= APPROVE_THRESHOLD:
        return "approved"
    if score >= REVIEW_THRESHOLD:
        return "pending_review"
    return "rejected"


def aggregate(dimension_scores: Sequence[DimensionScore]) -> AggregateScore:
    """
    Combine dimension scores into a weighted mean.

    score = sum(raw * weight) / sum(weight), rounded half-up and clamped to [0, 100].

    Args:
        dimension_scores: Scored dimensions

    Returns:
        AggregateScore tagged with SCORER_VERSION
    """
    total_weight = sum(Decimal(str(d.weight)) for d in dimension_scores)
    if total_weight <= 0:
        score = 0
    else:
        weighted = sum(Decimal(str(d.raw)) * Decimal(str(d.weight)) for d in dimension_scores)
        mean = (weighted / total_weight).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        score = max(0, min(int(mean), 100))

    return AggregateScore(
        score=score,
        grade=grade_for(score),
        scorer_version=SCORER_VERSION,
        recommended_status=recommended_status_for(score),
    )
