"""Tests for coherence scorers and the fallback path."""

import asyncio

import httpx
import pytest

from quality_pipeline.exceptions import CoherenceUnavailableError
from quality_pipeline.scoring.coherence import (
    HeuristicCoherenceScorer,
    RemoteCoherenceScorer,
    resolve_coherence,
)

NARRATIVE = (
    "I was driving home from work when I noticed a light above the hills. "
    "At first I thought it was a plane, but it was completely silent.\n\n"
    "Then it stopped and hovered for about two minutes while I pulled over. "
    "I got out of the car and watched it through the windshield glare.\n\n"
    "Suddenly it shot off toward the east and was gone within seconds. "
    "Later I found out my neighbor had seen the same thing from her porch."
)


def remote(handler) -> RemoteCoherenceScorer:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return RemoteCoherenceScorer("https://nlp.example.test/coherence", client=client)


def test_heuristic_scores_structured_narrative_higher():
    scorer = HeuristicCoherenceScorer()
    structured = scorer.score_text(NARRATIVE)
    shouting = scorer.score_text("SAW IT!!!! HUGE!!!! RUN!!!!")

    assert 0.0 <= shouting < structured <= 100.0
    assert scorer.score_text("") == 0.0


@pytest.mark.asyncio
async def test_remote_scorer_posts_text_and_clamps():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = request.content
        return httpx.Response(200, json={"score": 140})

    scorer = remote(handler)
    try:
        assert await scorer.score("hello") == 100.0
    finally:
        await scorer.close()
    assert b'"text"' in seen["body"]


@pytest.mark.asyncio
async def test_remote_scorer_http_error_raises_unavailable():
    scorer = remote(lambda request: httpx.Response(503, text="overloaded"))
    try:
        with pytest.raises(CoherenceUnavailableError):
            await scorer.score("hello")
    finally:
        await scorer.close()


@pytest.mark.asyncio
async def test_remote_scorer_missing_score_raises_unavailable():
    scorer = remote(lambda request: httpx.Response(200, json={"result": "ok"}))
    try:
        with pytest.raises(CoherenceUnavailableError):
            await scorer.score("hello")
    finally:
        await scorer.close()


@pytest.mark.asyncio
async def test_resolve_falls_back_when_unavailable():
    scorer = remote(lambda request: httpx.Response(500))
    try:
        result = await resolve_coherence(scorer, "hello", timeout=1, fallback=50)
    finally:
        await scorer.close()

    assert result.score == 50
    assert result.degraded is True
    assert result.reason == "unavailable"


@pytest.mark.asyncio
async def test_resolve_falls_back_on_timeout():
    class SlowScorer:
        async def score(self, text: str) -> float:
            await asyncio.sleep(5)
            return 90.0

    result = await resolve_coherence(SlowScorer(), "hello", timeout=0.05, fallback=42)
    assert result.score == 42
    assert result.degraded is True
    assert result.reason == "timeout"


@pytest.mark.asyncio
async def test_resolve_passes_through_healthy_score():
    result = await resolve_coherence(HeuristicCoherenceScorer(), NARRATIVE, timeout=1, fallback=50)
    assert result.degraded is False
    assert result.score == HeuristicCoherenceScorer().score_text(NARRATIVE)


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [ConnectionError("reset"), OSError("broken pipe"), RuntimeError("bad model")])
async def test_resolve_falls_back_on_any_scorer_error(error):
    class BrokenScorer:
        async def score(self, text: str) -> float:
            raise error

    result = await resolve_coherence(BrokenScorer(), "hello", timeout=1, fallback=50)
    assert result.score == 50
    assert result.degraded is True
    assert result.reason == "error"


@pytest.mark.asyncio
async def test_resolve_lets_cancellation_through():
    class CancelledScorer:
        async def score(self, text: str) -> float:
            raise asyncio.CancelledError()

    with pytest.raises(asyncio.CancelledError):
        await resolve_coherence(CancelledScorer(), "hello", timeout=1, fallback=50)
