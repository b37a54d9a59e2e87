"""Per-dimension quality scoring of normalized reports.

Each dimension produces a raw score in [0, 100]. Scoring is deterministic given
the normalized report, the pinned corpus snapshot and the coherence value.
"""

import logging
import math
from dataclasses import dataclass
from enum import Enum

from quality_pipeline.config import settings
from quality_pipeline.normalize.processor import NormalizedReport
from quality_pipeline.scoring.coherence import CoherenceResult
from quality_pipeline.scoring.snapshot import (
    AGGREGATOR_FEED,
    CURATED_ARCHIVE,
    USER_SUBMISSION,
    CorpusSnapshot,
)

logger = logging.getLogger(__name__)


class Dimension(str, Enum):
    """Quality dimensions."""

    EVIDENCE_STRENGTH = "evidence_strength"
    DESCRIPTION_DETAIL = "description_detail"
    SOURCE_RELIABILITY = "source_reliability"
    WITNESS_CREDIBILITY = "witness_credibility"
    NARRATIVE_COHERENCE = "narrative_coherence"
    LOCATION_SPECIFICITY = "location_specificity"
    TEMPORAL_PRECISION = "temporal_precision"
    DATA_COMPLETENESS = "data_completeness"
    CONTENT_ORIGINALITY = "content_originality"
    CROSS_REFERENCE = "cross_reference"


DIMENSION_WEIGHTS: dict[Dimension, float] = {
    Dimension.EVIDENCE_STRENGTH: 1.2,
    Dimension.DESCRIPTION_DETAIL: 1.3,
    Dimension.SOURCE_RELIABILITY: 1.1,
    Dimension.WITNESS_CREDIBILITY: 1.0,
    Dimension.NARRATIVE_COHERENCE: 1.0,
    Dimension.LOCATION_SPECIFICITY: 0.9,
    Dimension.TEMPORAL_PRECISION: 0.9,
    Dimension.DATA_COMPLETENESS: 0.8,
    Dimension.CONTENT_ORIGINALITY: 0.8,
    Dimension.CROSS_REFERENCE: 0.7,
}

EVIDENCE_POINTS = {0: 0.0, 1: 35.0, 2: 70.0, 3: 100.0}

TIER_POINTS = {
    CURATED_ARCHIVE: 90.0,
    AGGREGATOR_FEED: 65.0,
    USER_SUBMISSION: 40.0,
}
UNKNOWN_SOURCE_POINTS = 20.0

# Sensory, measurement and behavioral words that signal a detailed account
DETAIL_KEYWORDS = frozenset({
    # sight
    "saw", "seen", "looked", "appeared", "visible", "bright", "dark", "glowing",
    "shining", "luminous", "color", "colour", "red", "green", "blue", "white", "orange",
    # sound
    "heard", "sound", "noise", "silent", "loud", "humming", "buzzing", "roaring",
    "whisper", "screech", "bang", "crack",
    # touch / smell
    "felt", "feeling", "sensation", "cold", "hot", "warm", "tingling", "pressure",
    "vibration", "electric", "numb", "smell", "odor", "stench", "sulfur", "ozone",
    "burning", "metallic",
    # measurement
    "foot", "feet", "ft", "inch", "inches", "meter", "meters", "metre", "yard", "yards",
    "mile", "miles", "km", "altitude", "elevation", "height", "diameter", "wingspan",
    "speed", "mph", "kph", "knots",
    # behavior
    "moved", "hovered", "flew", "descended", "ascended", "zigzag", "darted", "glided",
    "vanished", "disappeared", "materialized", "approached", "retreated", "circled",
    "followed", "chased", "fled", "ran", "walked", "crawled",
})

COMPLETENESS_FIELDS = (
    "summary",
    "description",
    "category",
    "location_name",
    "city",
    "state_province",
    "country",
    "coordinates",
    "event_date",
    "event_time",
    "witness_count",
    "evidence_summary",
    "source_type",
    "tags",
)


@dataclass(frozen=True)
class DimensionScore:
    """Raw score of one dimension."""

    name: str
    weight: float
    raw: float  # 0 - 100
    details: str = ""

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "weight": self.weight,
            "raw": round(self.raw, 2),
            "details": self.details,
        }


def _clamp(value: float) -> float:
    return max(0.0, min(float(value), 100.0))


class DimensionScorer:
    """Compute the ten quality dimensions of a normalized report."""

    def __init__(
        self,
        word_cap: int | None = None,
        keyword_density_target: float | None = None,
    ):
        self.word_cap = word_cap or settings.description_word_cap
        self.keyword_density_target = (
            keyword_density_target or settings.description_keyword_density_target
        )

    def score(
        self,
        report: NormalizedReport,
        snapshot: CorpusSnapshot,
        coherence: CoherenceResult | float,
    ) -> list[DimensionScore]:
        """
        Score every dimension.

        Args:
            report: Normalized report
            snapshot: Pinned corpus snapshot
            coherence: Narrative coherence value (or resolved result)

        Returns:
            One DimensionScore per dimension, in weight-table order
        """
        if not isinstance(coherence, CoherenceResult):
            coherence = CoherenceResult(score=float(coherence))

        scorers = {
            Dimension.EVIDENCE_STRENGTH: lambda: self.evidence_strength(report),
            Dimension.DESCRIPTION_DETAIL: lambda: self.description_detail(report),
            Dimension.SOURCE_RELIABILITY: lambda: self.source_reliability(report, snapshot),
            Dimension.WITNESS_CREDIBILITY: lambda: self.witness_credibility(report),
            Dimension.NARRATIVE_COHERENCE: lambda: self.narrative_coherence(coherence),
            Dimension.LOCATION_SPECIFICITY: lambda: self.location_specificity(report),
            Dimension.TEMPORAL_PRECISION: lambda: self.temporal_precision(report),
            Dimension.DATA_COMPLETENESS: lambda: self.data_completeness(report),
            Dimension.CONTENT_ORIGINALITY: lambda: self.content_originality(report, snapshot),
            Dimension.CROSS_REFERENCE: lambda: self.cross_reference(report),
        }

        results = []
        for dimension, weight in DIMENSION_WEIGHTS.items():
            try:
                raw, details = scorers[dimension]()
            except (TypeError, ValueError, AttributeError, ArithmeticError) as e:
                logger.debug(f"Dimension {dimension.value} failed for report {report.id}: {e}")
                raw, details = 0.0, "malformed input"
            results.append(
                DimensionScore(name=dimension.value, weight=weight, raw=_clamp(raw), details=details)
            )
        return results

    # ------------------------------------------------------------------
    # Dimensions
    # ------------------------------------------------------------------

    def evidence_strength(self, report: NormalizedReport) -> tuple[float, str]:
        flags = [
            name
            for name, present in (
                ("photo/video", report.has_photo_video),
                ("physical evidence", report.has_physical_evidence),
                ("official report", report.has_official_report),
            )
            if present
        ]
        details = ", ".join(flags) if flags else "no evidence flags"
        return EVIDENCE_POINTS[len(flags)], details

    def description_detail(self, report: NormalizedReport) -> tuple[float, str]:
        tokens = report.description_tokens
        words = len(tokens)
        if words == 0:
            return 0.0, "no description"

        length_points = 70 * math.sqrt(min(words, self.word_cap) / self.word_cap)
        keyword_count = sum(1 for token in tokens if token in DETAIL_KEYWORDS)
        density = keyword_count / words
        keyword_points = 30 * min(1.0, density / self.keyword_density_target)
        return length_points + keyword_points, f"{words} words, keyword density {density:.1%}"

    def source_reliability(
        self, report: NormalizedReport, snapshot: CorpusSnapshot
    ) -> tuple[float, str]:
        tier = snapshot.tier_for(report.source_type)
        if tier is None:
            return UNKNOWN_SOURCE_POINTS, f"unknown source '{report.source_type or 'none'}'"
        return TIER_POINTS.get(tier, UNKNOWN_SOURCE_POINTS), f"{report.source_type}: {tier}"

    def witness_credibility(self, report: NormalizedReport) -> tuple[float, str]:
        count = report.witness_count or 0
        if count >= 5:
            points = 70.0
        elif count >= 3:
            points = 60.0
        elif count == 2:
            points = 45.0
        elif count == 1:
            points = 30.0
        else:
            points = 0.0

        factors = [f"{count} witnesses"]
        if report.witnesses_named:
            points += 15
            factors.append("named")
        if report.witness_background:
            points += 15
            factors.append("professional background")
        return points, ", ".join(factors)

    def narrative_coherence(self, coherence: CoherenceResult) -> tuple[float, str]:
        if coherence.degraded:
            return coherence.score, f"fallback ({coherence.reason})"
        return coherence.score, "scored"

    def location_specificity(self, report: NormalizedReport) -> tuple[float, str]:
        if report.has_coordinates:
            return 100.0, "coordinates"
        if report.location_name:
            return 70.0, "named location"
        if report.location_key:
            return 40.0, "city/state/country"
        return 0.0, "no location"

    def temporal_precision(self, report: NormalizedReport) -> tuple[float, str]:
        if report.event_date is None or report.event_date_precision == "unknown":
            return 0.0, "unknown date"
        if report.event_date_precision == "approximate":
            return 40.0, "approximate date"
        if report.event_time:
            return 100.0, "exact date and time"
        return 75.0, "exact date"

    def data_completeness(self, report: NormalizedReport) -> tuple[float, str]:
        populated = 0
        for name in COMPLETENESS_FIELDS:
            if name == "coordinates":
                present = report.has_coordinates
            else:
                value = getattr(report, name)
                present = value is not None and value != "" and value != ()
            populated += int(present)
        return populated / len(COMPLETENESS_FIELDS) * 100, f"{populated}/{len(COMPLETENESS_FIELDS)} fields"

    def content_originality(
        self, report: NormalizedReport, snapshot: CorpusSnapshot
    ) -> tuple[float, str]:
        unique_tokens = set(report.description_tokens)
        if not unique_tokens or snapshot.document_count == 0:
            return 0.0, "no corpus statistics" if unique_tokens else "no description"

        max_idf = snapshot.max_idf
        if max_idf <= 1:
            return 0.0, "no corpus statistics"
        mean_idf = sum(snapshot.idf(token) for token in unique_tokens) / len(unique_tokens)
        return (mean_idf - 1) / (max_idf - 1) * 100, f"mean idf {mean_idf:.2f} of {max_idf:.2f}"

    def cross_reference(self, report: NormalizedReport) -> tuple[float, str]:
        tags = len(report.tags)
        links = len(report.linked_categories)
        points = 100 * (1 - math.exp(-(tags + 2 * links) / 4))
        return points, f"{tags} tags, {links} linked categories"
