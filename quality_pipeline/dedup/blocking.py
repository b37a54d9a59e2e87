"""Blocking: partition reports so pairwise comparison stays tractable."""

import calendar
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date
from enum import Enum

from quality_pipeline.normalize.processor import NormalizedReport

logger = logging.getLogger(__name__)

UNDATED = "undated"
UNKNOWN_COUNTRY = "unknown"


class BlockStrategy(str, Enum):
    """How reports are grouped before comparison."""

    YEAR_COUNTRY = "year_country"
    YEAR = "year"
    MONTH_COUNTRY = "month_country"


@dataclass
class Block:
    """Reports compared with each other.

    Members are compared pairwise; spillover reports (from the end of the
    previous time bucket) are compared against members only.
    """

    key: str
    members: list[NormalizedReport] = field(default_factory=list)
    spillover: list[NormalizedReport] = field(default_factory=list)

    @property
    def size(self) -> int:
        return len(self.members) + len(self.spillover)

    @property
    def pair_count(self) -> int:
        m = len(self.members)
        return m * (m - 1) // 2 + m * len(self.spillover)


def _period(event_date: date, strategy: BlockStrategy) -> tuple[int, int]:
    if strategy == BlockStrategy.MONTH_COUNTRY:
        return event_date.year, event_date.month
    return event_date.year, 0


def _next_period(period: tuple[int, int], strategy: BlockStrategy) -> tuple[int, int]:
    year, month = period
    if strategy == BlockStrategy.MONTH_COUNTRY:
        return (year + 1, 1) if month == 12 else (year, month + 1)
    return year + 1, 0


def _period_end(period: tuple[int, int], strategy: BlockStrategy) -> date:
    year, month = period
    if strategy == BlockStrategy.MONTH_COUNTRY:
        return date(year, month, calendar.monthrange(year, month)[1])
    return date(year, 12, 31)


def _key(period: tuple[int, int], country: str, strategy: BlockStrategy) -> str:
    year, month = period
    if strategy == BlockStrategy.YEAR:
        return f"{year}"
    if strategy == BlockStrategy.MONTH_COUNTRY:
        return f"{year}-{month:02d}:{country}"
    return f"{year}:{country}"


def block_key(report: NormalizedReport, strategy: BlockStrategy | str) -> str:
    """Key of the block a report belongs to."""
    strategy = BlockStrategy(strategy)
    country = report.country or UNKNOWN_COUNTRY
    if report.event_date is None:
        return f"{UNDATED}:{country}"
    return _key(_period(report.event_date, strategy), country, strategy)


def build_blocks(
    reports: Iterable[NormalizedReport],
    strategy: BlockStrategy | str = BlockStrategy.YEAR_COUNTRY,
    boundary_days: int = 3,
) -> list[Block]:
    """
    Partition reports into comparison blocks.

    Undated reports fall into one bucket per country. A dated report within
    ``boundary_days`` of the end of its time bucket is also placed as
    spillover in the next bucket, so pairs straddling the boundary are
    compared exactly once (in the later block).

    Args:
        reports: Normalized reports to partition
        strategy: Blocking strategy
        boundary_days: Spillover window in days (0 disables spillover)

    Returns:
        Blocks sorted by key. Blocks with nothing to compare are dropped.
    """
    strategy = BlockStrategy(strategy)
    blocks: dict[str, Block] = {}
    pending_spill: list[tuple[str, NormalizedReport]] = []

    for report in reports:
        key = block_key(report, strategy)
        blocks.setdefault(key, Block(key=key)).members.append(report)

        if report.event_date is None or boundary_days <= 0:
            continue
        period = _period(report.event_date, strategy)
        days_to_end = (_period_end(period, strategy) - report.event_date).days
        if days_to_end < boundary_days:
            country = report.country or UNKNOWN_COUNTRY
            pending_spill.append((_key(_next_period(period, strategy), country, strategy), report))

    for key, report in pending_spill:
        # Spill only into buckets that have members of their own
        if key in blocks:
            blocks[key].spillover.append(report)

    result = [block for _, block in sorted(blocks.items()) if block.pair_count > 0]
    logger.debug(f"Built {len(result)} blocks from {len(blocks)} buckets (strategy={strategy.value})")
    return result
