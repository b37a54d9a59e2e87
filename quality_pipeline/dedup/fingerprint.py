"""Exact-duplicate fingerprints for normalized reports."""

import hashlib

from quality_pipeline.normalize.processor import NormalizedReport

UNKNOWN_DATE = "unknown"


def fingerprint_material(normalized: NormalizedReport) -> str:
    """The string that is hashed: title, ISO date (or "unknown") and location."""
    event_date = normalized.event_date.isoformat() if normalized.event_date else UNKNOWN_DATE
    return "|".join((normalized.title, event_date, normalized.location_key))


def fingerprint(normalized: NormalizedReport) -> str:
    """
    Compute the SHA-256 fingerprint of a normalized report.

    Two reports with equal fingerprints are exact duplicates.

    Args:
        normalized: Normalized report

    Returns:
        Hex digest
    """
    return hashlib.sha256(fingerprint_material(normalized).encode("utf-8")).hexdigest()


def group_exact_duplicates(fingerprints: dict[str, str]) -> dict[str, list[str]]:
    """
    Group report ids that share a fingerprint.

    Args:
        fingerprints: Mapping of report id to fingerprint

    Returns:
        Mapping of canonical id (lexicographically smallest of the group) to
        the other ids in the group, sorted. Singletons are omitted.
    """
    by_fingerprint: dict[str, list[str]] = {}
    for report_id, digest in fingerprints.items():
        by_fingerprint.setdefault(digest, []).append(report_id)

    groups = {}
    for ids in by_fingerprint.values():
        if len(ids) < 2:
            continue
        ordered = sorted(ids)
        groups[ordered[0]] = ordered[1:]
    return groups
