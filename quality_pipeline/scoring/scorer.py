"""End-to-end scoring of one report: normalize, score dimensions, aggregate."""

import hashlib
import json
import logging
from dataclasses import asdict, dataclass
from typing import Any

from quality_pipeline.dedup.fingerprint import fingerprint
from quality_pipeline.normalize.processor import NormalizedReport, ReportNormalizer
from quality_pipeline.scoring.aggregator import AggregateScore, aggregate
from quality_pipeline.scoring.coherence import (
    CoherenceResult,
    CoherenceScorer,
    HeuristicCoherenceScorer,
    resolve_coherence,
)
from quality_pipeline.scoring.dimensions import DimensionScore, DimensionScorer
from quality_pipeline.scoring.snapshot import CorpusSnapshot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScoredReport:
    """Everything a scoring run writes back for one report."""

    report_id: str
    normalized: NormalizedReport
    dimensions: list[DimensionScore]
    aggregate: AggregateScore
    coherence: CoherenceResult
    input_hash: str
    fingerprint: str

    def dimensions_payload(self) -> dict:
        """Breakdown persisted in Report.quality_dimensions."""
        return {
            "dimensions": [d.to_dict() for d in self.dimensions],
            "coherence_degraded": self.coherence.degraded,
        }


def _json_default(value: Any):
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    return str(value)


def quality_input_hash(normalized: NormalizedReport, snapshot: CorpusSnapshot) -> str:
    """
    Hash of everything a score depends on apart from coherence.

    Covers the normalized report fields, the snapshot version and the
    provenance table version.
    """
    payload = {
        "report": asdict(normalized),
        "snapshot_version": snapshot.version,
        "provenance_version": snapshot.provenance_version,
    }
    encoded = json.dumps(payload, sort_keys=True, default=_json_default)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def coherence_text(report: Any) -> str:
    """Raw narrative text handed to the coherence scorer (punctuation preserved)."""
    description = getattr(report, "description", None)
    if description is None and isinstance(report, dict):
        description = report.get("description")
    return description or ""


class QualityScorer:
    """Score reports against a pinned snapshot."""

    def __init__(
        self,
        snapshot: CorpusSnapshot,
        coherence_scorer: CoherenceScorer | None = None,
        normalizer: ReportNormalizer | None = None,
        dimension_scorer: DimensionScorer | None = None,
    ):
        self.snapshot = snapshot
        self.coherence_scorer = coherence_scorer or HeuristicCoherenceScorer()
        self.normalizer = normalizer or ReportNormalizer()
        self.dimension_scorer = dimension_scorer or DimensionScorer()

    def prepare(self, report: Any) -> tuple[NormalizedReport, str]:
        """Normalize a report and compute its input hash."""
        normalized = self.normalizer.normalize(report)
        return normalized, quality_input_hash(normalized, self.snapshot)

    async def score(self, report: Any, normalized: NormalizedReport | None = None) -> ScoredReport:
        """
        Score one report.

        Args:
            report: Report row or mapping
            normalized: Already-normalized form, if the caller has it

        Returns:
            ScoredReport
        """
        if normalized is None:
            normalized = self.normalizer.normalize(report)

        coherence = await resolve_coherence(self.coherence_scorer, coherence_text(report))
        dimensions = self.dimension_scorer.score(normalized, self.snapshot, coherence)
        result = aggregate(dimensions)

        return ScoredReport(
            report_id=normalized.id,
            normalized=normalized,
            dimensions=dimensions,
            aggregate=result,
            coherence=coherence,
            input_hash=quality_input_hash(normalized, self.snapshot),
            fingerprint=fingerprint(normalized),
        )
