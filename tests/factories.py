"""Report factories and test doubles."""

from datetime import date
from itertools import count

from quality_pipeline.db.models import Report

_ids = count(1)


def make_report(**overrides) -> Report:
    """Build an approved, reasonably complete report; overrides win."""
    n = next(_ids)
    fields = {
        "id": f"r-{n:05d}",
        "title": f"Glowing orb sighting number {n}",
        "summary": "Glowing orb seen over the ridge",
        "description": (
            "I saw a bright orange orb hovering above the ridge. Then it moved slowly "
            "to the north and I heard a faint humming sound. After a minute it "
            "disappeared behind the trees."
        ),
        "category": "ufo",
        "event_date": date(2023, 6, 14),
        "event_date_precision": "exact",
        "event_time": "21:30",
        "location_name": "Eagle Ridge trailhead",
        "city": "Boulder",
        "state_province": "Colorado",
        "country": "USA",
        "latitude": 40.015,
        "longitude": -105.27,
        "witness_count": 2,
        "witnesses_named": False,
        "has_photo_video": False,
        "has_physical_evidence": False,
        "has_official_report": False,
        "tags": ["orb", "night"],
        "source_type": "nuforc",
        "status": "approved",
    }
    fields.update(overrides)
    return Report(**fields)


class StubCoherenceScorer:
    """Deterministic coherence scorer that counts calls."""

    def __init__(self, value: float = 60.0, on_call=None):
        self.value = value
        self.calls = 0
        self.on_call = on_call

    async def score(self, text: str) -> float:
        self.calls += 1
        if self.on_call is not None:
            self.on_call(self.calls)
        return self.value


async def add_reports(session_factory, reports):
    async with session_factory() as db:
        db.add_all(reports)
        await db.commit()
