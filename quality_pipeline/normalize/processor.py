"""Normalize raw reports into a canonical form for scoring and matching."""

import logging
import math
import re
import unicodedata
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

logger = logging.getLogger(__name__)

_NON_WORD = re.compile(r"[^\w\s]|_", re.UNICODE)
_WHITESPACE = re.compile(r"\s+")

DATE_PRECISIONS = ("exact", "approximate", "unknown")


@dataclass(frozen=True)
class NormalizedReport:
    """Canonical normalized report.

    Attribute names mirror the raw report so that a NormalizedReport can be
    normalized again (the result is equal to the input).
    """

    id: str
    title: str = ""
    summary: str = ""
    description: str = ""
    category: str = ""
    linked_categories: tuple[str, ...] = ()
    event_date: date | None = None
    event_date_precision: str = "unknown"  # "exact", "approximate", "unknown"
    event_time: str = ""
    location_name: str = ""
    city: str = ""
    state_province: str = ""
    country: str = ""
    latitude: float | None = None
    longitude: float | None = None
    witness_count: int | None = None
    witnesses_named: bool = False
    witness_background: str = ""
    has_photo_video: bool = False
    has_physical_evidence: bool = False
    has_official_report: bool = False
    evidence_summary: str = ""
    tags: tuple[str, ...] = ()
    source_type: str = ""
    original_report_id: str = ""
    status: str = ""
    description_tokens: tuple[str, ...] = ()
    title_trigrams: frozenset[str] = frozenset()

    @property
    def location_key(self) -> str:
        """City, state and country joined with "|" (empty slots kept), or empty."""
        parts = (self.city, self.state_province, self.country)
        if not any(parts):
            return ""
        return "|".join(parts)

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None


def _strip_marks(text: str) -> str:
    text = unicodedata.normalize("NFKD", text)
    return "".join(ch for ch in text if not unicodedata.combining(ch))


def fold_text(value: Any) -> str:
    """
    Fold free text to a comparable form.

    Strips diacritics (NFKD with combining marks dropped) and case folds
    until stable, then replaces punctuation with spaces and collapses
    whitespace. The result folds to itself.
    """
    if value is None:
        return ""
    text = str(value)
    # Compatibility forms can decompose to uppercase (U+210C) and case
    # folding can emit combining marks (U+0130)
    for _ in range(4):
        folded = _strip_marks(text).casefold()
        folded = _strip_marks(folded)
        if folded == text:
            break
        text = folded
    text = _NON_WORD.sub(" ", text)
    return _WHITESPACE.sub(" ", text).strip()


def fold_code(value: Any) -> str:
    """Fold an identifier-like value (source type, category): lowercase, underscores for spaces."""
    if value is None:
        return ""
    text = _WHITESPACE.sub(" ", str(value).strip().lower())
    return text.replace(" ", "_")


def title_trigrams(title: str) -> frozenset[str]:
    """Character trigrams of a normalized title."""
    if not title:
        return frozenset()
    if len(title) < 3:
        return frozenset({title})
    return frozenset(title[i:i + 3] for i in range(len(title) - 2))


class ReportNormalizer:
    """Normalize report rows, dicts or already-normalized reports.

    Normalization is total: malformed optional fields become empty values
    rather than raising.
    """

    def normalize(self, report: Any) -> NormalizedReport:
        """
        Normalize a report.

        Args:
            report: Report ORM row, mapping of report fields, or NormalizedReport

        Returns:
            NormalizedReport
        """
        get = self._accessor(report)

        title = fold_text(get("title"))
        description = fold_text(get("description"))
        event_date = self._parse_date(get("event_date"))
        precision = self._parse_precision(get("event_date_precision"), event_date)
        latitude, longitude = self._parse_coordinates(get("latitude"), get("longitude"))

        return NormalizedReport(
            id=str(get("id") or ""),
            title=title,
            summary=fold_text(get("summary")),
            description=description,
            category=fold_code(get("category")),
            linked_categories=self._canonical_list(get("linked_categories"), fold_code),
            event_date=event_date,
            event_date_precision=precision,
            event_time=str(get("event_time") or "").strip() if event_date else "",
            location_name=fold_text(get("location_name")),
            city=fold_text(get("city")),
            state_province=fold_text(get("state_province")),
            country=fold_text(get("country")),
            latitude=latitude,
            longitude=longitude,
            witness_count=self._parse_count(get("witness_count")),
            witnesses_named=bool(get("witnesses_named")),
            witness_background=fold_text(get("witness_background")),
            has_photo_video=bool(get("has_photo_video")),
            has_physical_evidence=bool(get("has_physical_evidence")),
            has_official_report=bool(get("has_official_report")),
            evidence_summary=fold_text(get("evidence_summary")),
            tags=self._canonical_list(get("tags"), fold_text),
            source_type=fold_code(get("source_type")),
            original_report_id=str(get("original_report_id") or "").strip(),
            status=fold_code(get("status")),
            description_tokens=tuple(description.split()) if description else (),
            title_trigrams=title_trigrams(title),
        )

    @staticmethod
    def _accessor(report: Any):
        if isinstance(report, Mapping):
            return report.get
        return lambda name: getattr(report, name, None)

    @staticmethod
    def _canonical_list(values: Any, folder) -> tuple[str, ...]:
        if not values:
            return ()
        if isinstance(values, str):
            values = [values]
        try:
            folded = {folder(v) for v in values}
        except TypeError:
            logger.debug(f"Ignoring malformed list value: {values!r}")
            return ()
        folded.discard("")
        return tuple(sorted(folded))

    @staticmethod
    def _parse_date(value: Any) -> date | None:
        if value is None or value == "":
            return None
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        try:
            return date.fromisoformat(str(value).strip()[:10])
        except ValueError:
            logger.debug(f"Ignoring malformed event_date: {value!r}")
            return None

    @staticmethod
    def _parse_precision(value: Any, event_date: date | None) -> str:
        if event_date is None:
            return "unknown"
        precision = fold_code(value)
        if precision in ("exact", "approximate"):
            return precision
        # A date without a stated precision is taken at face value
        return "exact"

    @staticmethod
    def _parse_coordinates(lat: Any, lng: Any) -> tuple[float | None, float | None]:
        try:
            latitude = float(lat)
            longitude = float(lng)
        except (TypeError, ValueError):
            return None, None
        if not (math.isfinite(latitude) and math.isfinite(longitude)):
            return None, None
        if not (-90.0 <= latitude <= 90.0 and -180.0 <= longitude <= 180.0):
            return None, None
        return latitude, longitude

    @staticmethod
    def _parse_count(value: Any) -> int | None:
        if value is None or isinstance(value, bool):
            return None
        try:
            count = int(value)
        except (TypeError, ValueError):
            return None
        return count if count >= 0 else None
