"""Weighted multi-signal similarity between normalized reports."""

import logging
import math
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from quality_pipeline.normalize.processor import NormalizedReport
from quality_pipeline.scoring.snapshot import CorpusSnapshot

logger = logging.getLogger(__name__)

SIGNAL_WEIGHTS = {
    "title": 0.40,
    "location": 0.25,
    "date": 0.20,
    "content": 0.15,
}

# Distance at which location similarity reaches zero
LOCATION_RADIUS_KM = 50.0
EARTH_RADIUS_KM = 6371.0

DEFINITE_THRESHOLD = 0.9
LIKELY_THRESHOLD = 0.8


@dataclass(frozen=True)
class SimilarityResult:
    """Signal breakdown and confidence for a canonical pair (report_a_id < report_b_id)."""

    report_a_id: str
    report_b_id: str
    signals: dict[str, float]
    confidence: float
    confidence_label: str
    details: str

    @property
    def pair(self) -> tuple[str, str]:
        return self.report_a_id, self.report_b_id


@dataclass
class PairError:
    """A comparison that raised and was skipped."""

    report_a_id: str
    report_b_id: str
    error: str


@dataclass
class BlockComparison:
    """Outcome of comparing all pairs of one block."""

    key: str
    candidates: list[SimilarityResult] = field(default_factory=list)
    comparisons: int = 0
    skipped: int = 0
    errors: list[PairError] = field(default_factory=list)
    cancelled: bool = False


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points in kilometres."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    h = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(h)))


def confidence_label(confidence: float) -> str:
    if confidence >= DEFINITE_THRESHOLD:
        return "definite"
    if confidence >= LIKELY_THRESHOLD:
        return "likely"
    return "possible"


def should_compare(a: NormalizedReport, b: NormalizedReport) -> bool:
    """Pairs imported from the same source record are never candidates."""
    if a.id == b.id:
        return False
    if (
        a.source_type == b.source_type
        and a.original_report_id
        and a.original_report_id == b.original_report_id
    ):
        return False
    return True


class SimilarityEngine:
    """Compare normalized reports on title, location, date and content signals.

    Content similarity uses the pinned corpus snapshot: only rare terms
    count, weighted by their inverse document frequency.
    """

    def __init__(self, snapshot: CorpusSnapshot):
        self.snapshot = snapshot

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    @staticmethod
    def title_similarity(a: NormalizedReport, b: NormalizedReport) -> float:
        """Jaccard similarity of title trigram sets."""
        if not a.title_trigrams or not b.title_trigrams:
            return 0.0
        union = a.title_trigrams | b.title_trigrams
        return len(a.title_trigrams & b.title_trigrams) / len(union)

    @staticmethod
    def location_similarity(a: NormalizedReport, b: NormalizedReport) -> float:
        if (
            a.city
            and a.city == b.city
            and a.state_province == b.state_province
            and a.country == b.country
        ):
            return 1.0
        if a.has_coordinates and b.has_coordinates:
            km = haversine_km(a.latitude, a.longitude, b.latitude, b.longitude)
            return max(0.0, 1 - km / LOCATION_RADIUS_KM)
        return 0.0

    @staticmethod
    def date_similarity(a: NormalizedReport, b: NormalizedReport) -> float:
        if a.event_date is None or b.event_date is None:
            return 0.0
        if a.event_date == b.event_date:
            return 1.0
        if a.event_date.year == b.event_date.year:
            if a.event_date.month == b.event_date.month:
                return 0.7
            return 0.3
        return 0.0

    def content_similarity(self, a: NormalizedReport, b: NormalizedReport) -> float:
        """IDF-weighted Jaccard similarity over rare description terms."""
        rare_a = {t for t in a.description_tokens if self.snapshot.is_rare(t)}
        rare_b = {t for t in b.description_tokens if self.snapshot.is_rare(t)}
        union = rare_a | rare_b
        if not union:
            return 0.0
        shared_weight = sum(self.snapshot.idf(t) for t in rare_a & rare_b)
        total_weight = sum(self.snapshot.idf(t) for t in union)
        return shared_weight / total_weight if total_weight else 0.0

    # ------------------------------------------------------------------
    # Comparison
    # ------------------------------------------------------------------

    def compare(self, a: NormalizedReport, b: NormalizedReport) -> SimilarityResult:
        """
        Compare two reports.

        Args:
            a: First report
            b: Second report

        Returns:
            SimilarityResult with confidence in [0, 1]. The result is the
            same regardless of argument order.
        """
        if b.id < a.id:
            a, b = b, a

        signals = {
            "title": self.title_similarity(a, b),
            "location": self.location_similarity(a, b),
            "date": self.date_similarity(a, b),
            "content": self.content_similarity(a, b),
        }
        confidence = sum(signals[name] * weight for name, weight in SIGNAL_WEIGHTS.items())
        confidence = max(0.0, min(confidence, 1.0))

        return SimilarityResult(
            report_a_id=a.id,
            report_b_id=b.id,
            signals={name: round(value, 4) for name, value in signals.items()},
            confidence=round(confidence, 4),
            confidence_label=confidence_label(confidence),
            details=self._details(signals),
        )

    @staticmethod
    def _details(signals: dict[str, float]) -> str:
        parts = []
        if signals["title"] >= 0.7:
            parts.append(f"similar titles ({signals['title']:.0%})")
        if signals["location"] >= 0.5:
            parts.append(f"same area ({signals['location']:.0%})")
        if signals["date"] >= 0.5:
            parts.append(f"similar dates ({signals['date']:.0%})")
        if signals["content"] >= 0.4:
            parts.append(f"similar content ({signals['content']:.0%})")
        return "; ".join(parts) or "moderate cross-signal similarity"

    def compare_block(
        self,
        key: str,
        members: list[NormalizedReport],
        spillover: Iterable[NormalizedReport] = (),
        threshold: float = 0.75,
        is_cancelled: Callable[[], bool] | None = None,
    ) -> BlockComparison:
        """
        Compare every pair within a block.

        Pairs are members x members plus members x spillover. Runs
        synchronously; callers move it off the event loop.

        Args:
            key: Block key (for logging)
            members: Reports owned by the block
            spillover: Reports from the previous bucket near its boundary
            threshold: Minimum confidence for a candidate
            is_cancelled: Checked before every pair

        Returns:
            BlockComparison with candidates at or above threshold
        """
        outcome = BlockComparison(key=key)
        spillover = list(spillover)

        def pairs():
            for i, a in enumerate(members):
                for b in members[i + 1:]:
                    yield a, b
                for b in spillover:
                    yield a, b

        for a, b in pairs():
            if is_cancelled is not None and is_cancelled():
                outcome.cancelled = True
                break
            if not should_compare(a, b):
                outcome.skipped += 1
                continue
            try:
                result = self.compare(a, b)
            except Exception as e:
                logger.warning(f"Skipping pair ({a.id}, {b.id}) in block {key}: {e}")
                outcome.errors.append(PairError(a.id, b.id, str(e)))
                continue
            outcome.comparisons += 1
            if result.confidence >= threshold:
                outcome.candidates.append(result)

        return outcome
