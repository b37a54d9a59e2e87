"""Narrative coherence scoring.

The coherence dimension is produced by an injected scorer. A remote scorer is
used when an endpoint is configured; otherwise a local heuristic runs. Any
failure degrades to a configured fallback value instead of failing the report.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Protocol

import httpx

from quality_pipeline.config import settings
from quality_pipeline.exceptions import CoherenceUnavailableError
from quality_pipeline.metrics import record_coherence_fallback

logger = logging.getLogger(__name__)


class CoherenceScorer(Protocol):
    """Scores how coherent a narrative is, in [0, 100]."""

    async def score(self, text: str) -> float:
        ...


@dataclass(frozen=True)
class CoherenceResult:
    """Coherence value plus whether it came from the fallback."""

    score: float
    degraded: bool = False
    reason: str | None = None


class HeuristicCoherenceScorer:
    """Local deterministic coherence heuristic.

    Points (out of 10, scaled to 100):
    - sentence count (0-2)
    - average sentence length (0-2)
    - paragraph structure (0-1.5)
    - consistent first-person voice (0-1.5)
    - flow words (0-2)
    - penalties for shouting (caps) and excessive exclamation
    """

    FLOW_WORDS = [
        "then", "after", "before", "when", "while", "suddenly", "next",
        "finally", "at first", "eventually", "later", "meanwhile",
    ]

    _SENTENCE_SPLIT = re.compile(r"[.!?]+")
    _PARAGRAPH_SPLIT = re.compile(r"\n\s*\n+")
    _FIRST_PERSON = re.compile(r"\bI\b")
    _THIRD_PERSON = re.compile(r"\b(he|she|they|it)\b", re.IGNORECASE)

    async def score(self, text: str) -> float:
        return self.score_text(text)

    def score_text(self, text: str) -> float:
        if not text or not text.strip():
            return 0.0

        points = 0.0
        sentences = [s for s in self._SENTENCE_SPLIT.split(text) if len(s.strip()) > 10]
        sentence_count = len(sentences)

        if sentence_count >= 5:
            points += 2
        elif sentence_count >= 3:
            points += 1

        if sentences:
            avg_words = sum(len(s.split()) for s in sentences) / sentence_count
            if 10 <= avg_words <= 25:
                points += 2
            elif 6 <= avg_words <= 35:
                points += 1

        paragraphs = [p for p in self._PARAGRAPH_SPLIT.split(text) if len(p.strip()) > 30]
        if len(paragraphs) >= 3:
            points += 1.5
        elif len(paragraphs) >= 2:
            points += 0.75

        first_person = len(self._FIRST_PERSON.findall(text))
        third_person = len(self._THIRD_PERSON.findall(text))
        if first_person > 5 and first_person > third_person * 2:
            points += 1.5
        elif first_person > 0:
            points += 0.5

        lowered = text.lower()
        flow_count = sum(1 for word in self.FLOW_WORDS if re.search(rf"\b{word}\b", lowered))
        if flow_count >= 4:
            points += 2
        elif flow_count >= 2:
            points += 1

        letters = [ch for ch in text if ch.isalpha()]
        if letters and sum(1 for ch in letters if ch.isupper()) / len(letters) > 0.4:
            points -= 2
        if text.count("!") / max(sentence_count, 1) > 2:
            points -= 1

        points = max(0.0, min(points, 10.0))
        return points * 10


class RemoteCoherenceScorer:
    """Coherence scorer backed by an HTTP endpoint.

    Request:  POST {"text": "..."} with a bearer token
    Response: {"score": <number 0-100>}
    """

    def __init__(
        self,
        api_url: str,
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.api_url = api_url
        self.api_key = api_key
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            headers = {}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._client = httpx.AsyncClient(timeout=30.0, headers=headers)
        return self._client

    async def close(self):
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def score(self, text: str) -> float:
        client = await self._get_client()
        try:
            response = await client.post(self.api_url, json={"text": text})
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise CoherenceUnavailableError(f"Coherence endpoint failed: {e}") from e

        value = payload.get("score") if isinstance(payload, dict) else None
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise CoherenceUnavailableError(f"Coherence endpoint returned no score: {payload!r}")
        return max(0.0, min(float(value), 100.0))


def get_coherence_scorer() -> CoherenceScorer:
    """Build the configured coherence scorer."""
    if settings.coherence_api_url:
        return RemoteCoherenceScorer(settings.coherence_api_url, settings.coherence_api_key or None)
    return HeuristicCoherenceScorer()


async def resolve_coherence(
    scorer: CoherenceScorer,
    text: str,
    timeout: float | None = None,
    fallback: float | None = None,
) -> CoherenceResult:
    """
    Score text with a timeout, falling back on failure.

    Args:
        scorer: Coherence scorer
        text: Narrative text (raw, punctuation preserved)
        timeout: Seconds to wait (defaults to settings)
        fallback: Value used when the scorer fails (defaults to settings)

    Returns:
        CoherenceResult, degraded when the fallback was used
    """
    timeout = settings.coherence_timeout_seconds if timeout is None else timeout
    fallback = settings.coherence_fallback_score if fallback is None else fallback

    try:
        value = float(await asyncio.wait_for(scorer.score(text), timeout=timeout))
    except asyncio.TimeoutError:
        reason = "timeout"
    except CoherenceUnavailableError as e:
        logger.warning(f"Coherence scorer unavailable: {e}")
        reason = "unavailable"
    except Exception as e:
        # Any scorer failure degrades this dimension only; CancelledError still propagates
        logger.warning(f"Coherence scorer failed ({type(e).__name__}: {e}), using fallback {fallback}")
        reason = "error"
    else:
        return CoherenceResult(score=max(0.0, min(value, 100.0)))

    if reason == "timeout":
        logger.warning(f"Coherence scorer timed out after {timeout}s, using fallback {fallback}")
    record_coherence_fallback(reason)
    return CoherenceResult(score=fallback, degraded=True, reason=reason)
