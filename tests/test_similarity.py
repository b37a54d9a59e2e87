"""Tests for pairwise similarity and blocking."""

from collections import Counter
from datetime import date
from unittest.mock import patch

import pytest

from quality_pipeline.dedup.blocking import BlockStrategy, block_key, build_blocks
from quality_pipeline.dedup.similarity import (
    SIGNAL_WEIGHTS,
    SimilarityEngine,
    confidence_label,
    haversine_km,
    should_compare,
)
from quality_pipeline.normalize.processor import ReportNormalizer
from quality_pipeline.scoring.snapshot import CorpusSnapshot

normalizer = ReportNormalizer()

SNAPSHOT = CorpusSnapshot(
    version=1,
    document_count=1000,
    document_frequencies={"light": 600, "bright": 400, "sky": 500, "triangular": 3, "amber": 8},
)


def report(report_id, **fields):
    return normalizer.normalize({"id": report_id, **fields})


def test_signal_weights_sum_to_one():
    assert sum(SIGNAL_WEIGHTS.values()) == pytest.approx(1.0)


def test_haversine_known_distance():
    # Paris to London is roughly 344 km
    assert haversine_km(48.8566, 2.3522, 51.5074, -0.1278) == pytest.approx(344, abs=5)


def test_identical_reports_are_definite():
    fields = {
        "title": "Triangular craft over Phoenix",
        "description": "Three amber lights in a triangular formation",
        "event_date": "1997-03-13",
        "city": "Phoenix",
        "state_province": "Arizona",
        "country": "USA",
    }
    engine = SimilarityEngine(SNAPSHOT)
    result = engine.compare(report("b", **fields), report("a", **fields))

    assert result.pair == ("a", "b")
    assert result.confidence == pytest.approx(1.0)
    assert result.confidence_label == "definite"


def test_compare_is_symmetric_and_bounded():
    engine = SimilarityEngine(SNAPSHOT)
    a = report("a", title="Bright light in the sky", event_date="2020-05-01", latitude=40.0, longitude=-105.0)
    b = report("b", title="Strange bright sky light", event_date="2020-05-20", latitude=40.1, longitude=-105.1)

    forward = engine.compare(a, b)
    backward = engine.compare(b, a)
    assert forward == backward
    assert 0.0 <= forward.confidence <= 1.0
    assert forward.signals["date"] == 0.7


def test_far_apart_reports_in_different_months_are_not_candidates():
    engine = SimilarityEngine(SNAPSHOT)
    a = report(
        "a",
        title="Bright light over the lake",
        description="bright light in the sky",
        event_date="2021-03-10",
        city="Reno",
        country="USA",
        latitude=39.53,
        longitude=-119.81,
    )
    b = report(
        "b",
        title="Bright light over the lake",
        description="light sky bright",
        event_date="2021-07-22",
        city="Sacramento",
        country="USA",
        latitude=38.58,
        longitude=-121.49,
    )

    assert haversine_km(a.latitude, a.longitude, b.latitude, b.longitude) > 150
    result = engine.compare(a, b)
    assert result.signals["location"] == 0.0
    assert result.signals["content"] == 0.0
    assert result.confidence < 0.75

    outcome = engine.compare_block("2021:usa", [a, b], threshold=0.75)
    assert outcome.candidates == []
    assert outcome.comparisons == 1


def test_same_source_record_is_never_compared():
    a = report("a", source_type="reddit", original_report_id="t3_abc")
    b = report("b", source_type="reddit", original_report_id="t3_abc")
    c = report("c", source_type="nuforc", original_report_id="t3_abc")

    assert not should_compare(a, b)
    assert should_compare(a, c)


def test_confidence_labels():
    assert confidence_label(0.95) == "definite"
    assert confidence_label(0.85) == "likely"
    assert confidence_label(0.76) == "possible"


def test_compare_block_stops_when_cancelled():
    engine = SimilarityEngine(SNAPSHOT)
    members = [report(f"m{i}", title="same title", event_date="2020-01-01") for i in range(5)]

    outcome = engine.compare_block("k", members, is_cancelled=lambda: True)
    assert outcome.cancelled
    assert outcome.comparisons == 0


def test_compare_block_records_failing_pair_and_continues():
    engine = SimilarityEngine(SNAPSHOT)
    members = [report(f"m{i}", title="same title", event_date="2020-01-01") for i in range(3)]
    original_compare = SimilarityEngine.compare

    def flaky_compare(self, a, b):
        if {a.id, b.id} == {"m0", "m1"}:
            raise RuntimeError("corrupt tokens")
        return original_compare(self, a, b)

    with patch.object(SimilarityEngine, "compare", autospec=True, side_effect=flaky_compare):
        outcome = engine.compare_block("2020|", members, threshold=0.0)

    assert [(e.report_a_id, e.report_b_id) for e in outcome.errors] == [("m0", "m1")]
    assert "corrupt tokens" in outcome.errors[0].error
    assert outcome.comparisons == 2
    assert {c.pair for c in outcome.candidates} == {("m0", "m2"), ("m1", "m2")}
    assert not outcome.cancelled


def test_block_keys_per_strategy():
    r = report("a", event_date="2020-02-10", country="Canada")
    undated = report("b", country="Canada")

    assert block_key(r, BlockStrategy.YEAR_COUNTRY) == "2020:canada"
    assert block_key(r, BlockStrategy.YEAR) == "2020"
    assert block_key(r, BlockStrategy.MONTH_COUNTRY) == "2020-02:canada"
    assert block_key(undated, "year_country") == "undated:canada"


def test_boundary_pairs_compared_exactly_once():
    reports = [
        report("a", event_date=date(2020, 12, 30), country="USA"),
        report("b", event_date=date(2020, 6, 1), country="USA"),
        report("c", event_date=date(2021, 1, 1), country="USA"),
        report("d", event_date=date(2021, 8, 1), country="USA"),
    ]
    blocks = build_blocks(reports, BlockStrategy.YEAR_COUNTRY, boundary_days=3)

    pairs = Counter()
    for block in blocks:
        members = block.members
        for i, x in enumerate(members):
            for y in members[i + 1:]:
                pairs[frozenset((x.id, y.id))] += 1
            for y in block.spillover:
                pairs[frozenset((x.id, y.id))] += 1

    assert pairs[frozenset(("a", "c"))] == 1
    assert pairs[frozenset(("a", "d"))] == 1
    assert all(count == 1 for count in pairs.values())
    # b is far from the boundary and never meets 2021 reports
    assert pairs[frozenset(("b", "c"))] == 0


def test_singleton_blocks_dropped():
    reports = [
        report("a", event_date="2020-05-05", country="USA"),
        report("b", event_date="2020-05-06", country="Mexico"),
    ]
    assert build_blocks(reports, BlockStrategy.YEAR_COUNTRY) == []
