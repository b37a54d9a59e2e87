"""Tests for report normalization."""

from datetime import date, datetime

from quality_pipeline.normalize.processor import (
    NormalizedReport,
    ReportNormalizer,
    fold_code,
    fold_text,
    title_trigrams,
)


def test_fold_text_lowercases_strips_accents_and_punctuation():
    assert fold_text("  Bright   Light — over CAFÉ!! ") == "bright light over cafe"
    assert fold_text("snake_case-words") == "snake case words"
    assert fold_text(None) == ""


def test_fold_code():
    assert fold_code(" Historical  Archive ") == "historical_archive"
    assert fold_code(None) == ""


def test_title_trigrams_short_titles():
    assert title_trigrams("") == frozenset()
    assert title_trigrams("ab") == frozenset({"ab"})
    assert title_trigrams("abcd") == frozenset({"abc", "bcd"})


def test_normalize_mapping():
    normalizer = ReportNormalizer()
    normalized = normalizer.normalize({
        "id": "r1",
        "title": "Bright Light over Lake Tahoe",
        "description": "It was HUGE, then it vanished.",
        "event_date": "2021-08-03T22:15:00",
        "city": " South Lake Tahoe ",
        "country": "USA",
        "tags": ["Lights", "lights ", "Lake"],
        "linked_categories": ["UFO Sightings"],
        "source_type": "NUFORC",
        "witness_count": "3",
    })

    assert normalized.title == "bright light over lake tahoe"
    assert normalized.event_date == date(2021, 8, 3)
    assert normalized.event_date_precision == "exact"
    assert normalized.city == "south lake tahoe"
    assert normalized.tags == ("lake", "lights")
    assert normalized.linked_categories == ("ufo_sightings",)
    assert normalized.source_type == "nuforc"
    assert normalized.witness_count == 3
    assert normalized.description_tokens == ("it", "was", "huge", "then", "it", "vanished")
    assert normalized.location_key == "south lake tahoe||usa"


def test_normalize_malformed_fields_become_empty():
    normalizer = ReportNormalizer()
    normalized = normalizer.normalize({
        "id": "r2",
        "title": None,
        "event_date": "sometime in the 90s",
        "event_date_precision": "exact",
        "event_time": "night",
        "latitude": "north",
        "longitude": 12.0,
        "witness_count": -4,
        "tags": 17,
    })

    assert normalized.title == ""
    assert normalized.event_date is None
    assert normalized.event_date_precision == "unknown"
    assert normalized.event_time == ""
    assert normalized.latitude is None and normalized.longitude is None
    assert normalized.witness_count is None
    assert normalized.tags == ()


def test_out_of_range_coordinates_dropped():
    normalized = ReportNormalizer().normalize({"id": "r3", "latitude": 95.0, "longitude": 10.0})
    assert not normalized.has_coordinates


def test_normalize_is_idempotent():
    normalizer = ReportNormalizer()
    once = normalizer.normalize({
        "id": "r4",
        "title": "  Shadow FIGURE in the Hallway ",
        "summary": "Tall figure",
        "description": "I saw it; then it walked away...",
        "category": "Ghost Sighting",
        "event_date": datetime(2019, 10, 31, 23, 0),
        "event_date_precision": "Approximate",
        "event_time": "23:00",
        "city": "Salem",
        "state_province": "MA",
        "country": "United States",
        "latitude": 42.52,
        "longitude": -70.9,
        "witness_count": 1,
        "witnesses_named": True,
        "tags": ["Shadow People", "hallway"],
        "source_type": "Ghosts Of America",
        "status": "Approved",
    })
    twice = normalizer.normalize(once)

    assert isinstance(twice, NormalizedReport)
    assert twice == once


# Latin, IPA/phonetic modifiers, Greek, Cyrillic, Armenian, Georgian, Cherokee,
# letterlike and number forms, enclosed alphanumerics, ligatures, fullwidth,
# mathematical alphanumerics and a slice of Hangul syllables
UNICODE_RANGES = (
    (0x20, 0x250),
    (0x250, 0x370),
    (0x370, 0x530),
    (0x530, 0x590),
    (0x10A0, 0x1100),
    (0x13A0, 0x1400),
    (0x1C90, 0x1CC0),
    (0x1D00, 0x1DC0),
    (0x1E00, 0x2000),
    (0x2100, 0x2190),
    (0x2460, 0x2500),
    (0xAB70, 0xABC0),
    (0xAC00, 0xAC40),
    (0xFB00, 0xFB50),
    (0xFF00, 0xFFF0),
    (0x1D400, 0x1D800),
)


def unicode_sample(width: int = 6) -> list[str]:
    chars = [chr(cp) for start, stop in UNICODE_RANGES for cp in range(start, stop)]
    return [" ".join(chars[i:i + width]) for i in range(0, len(chars), width)]


def test_fold_text_handles_compatibility_uppercase():
    assert fold_text("ℌᴬ Light") == "ha light"
    assert fold_text("İstanbul") == "istanbul"
    assert fold_text("STRAẞE") == "strasse"


def test_fold_text_is_idempotent_across_scripts():
    for text in unicode_sample():
        once = fold_text(text)
        assert fold_text(once) == once, repr(text)


def test_normalize_is_idempotent_for_unicode_fields():
    normalizer = ReportNormalizer()
    for i, text in enumerate(unicode_sample(width=10)):
        once = normalizer.normalize({
            "id": f"u{i}",
            "title": text,
            "description": text,
            "city": text,
            "country": text,
            "tags": [text],
            "source_type": text,
        })
        assert normalizer.normalize(once) == once, repr(text)


def test_location_key_keeps_empty_slots():
    normalizer = ReportNormalizer()
    city_only = normalizer.normalize({"id": "a", "city": "New York", "country": "USA"})
    split = normalizer.normalize({"id": "b", "city": "New", "state_province": "York", "country": "USA"})

    assert city_only.location_key == "new york||usa"
    assert split.location_key == "new|york|usa"
    assert normalizer.normalize({"id": "c"}).location_key == ""
