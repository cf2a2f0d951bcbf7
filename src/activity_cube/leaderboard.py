"""
Leaderboard - Period-over-period comparison of one measure per key

Given the current and the previous period's results for the same measure
grouped by the same key (e.g. memberId):
1. totals are the ungrouped measure values of each period
2. previous values are indexed by key; a key missing from the previous
   period counts as 0
3. every current row with a positive value gets
   countDiff = count - previousCount and share = round(count / total * 100)
4. rows are ranked by count descending, ties by key ascending

Shares are rounded half-up per row and never renormalized, so they can sum
to slightly more or less than 100.
"""

import logging
import math
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Union

from .errors import IncomparablePeriods
from .query_executor import ResultSet

logger = logging.getLogger(__name__)

# deltaPercentage when the previous period total is 0 and the current one is not
UNBOUNDED_GROWTH = math.inf


def percentage_change(previous: Union[int, float], current: Union[int, float]) -> float:
    """
    Change from previous to current in percent.

    Example:
        >>> percentage_change(100, 120)
        20.0
        >>> percentage_change(0, 5)
        inf
    """
    previous = previous or 0
    current = current or 0
    if previous > 0:
        return (current - previous) / previous * 100
    if current > 0:
        return UNBOUNDED_GROWTH
    return 0.0


def percentage_of_rounded(value: Union[int, float], total: Union[int, float]) -> int:
    """value as a percentage of total, rounded half-up to an integer (0 when total is 0)."""
    if not total or total <= 0:
        return 0
    pct = Decimal(str(value)) * 100 / Decimal(str(total))
    return int(pct.quantize(Decimal('1'), rounding=ROUND_HALF_UP))


@dataclass
class LeaderboardRow:
    key: Any
    count: int
    previous_count: int
    count_diff: int
    share: int
    rank: int
    attributes: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        row = {'id': self.key}
        row.update(self.attributes)
        row.update({
            'count': self.count,
            'previousCount': self.previous_count,
            'countDiff': self.count_diff,
            'share': self.share,
            'rank': self.rank,
        })
        return row


@dataclass
class PeriodComparison:
    measure: str
    key: str
    total_current: int
    total_previous: int
    delta_percentage: float
    rows: List[LeaderboardRow]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'totalCurrent': self.total_current,
            'totalPrevious': self.total_previous,
            'deltaPercentage': self.delta_percentage,
            'currentList': [r.to_dict() for r in self.rows],
        }


def _sort_key(row: LeaderboardRow):
    # count desc, then key asc with missing keys last
    return (-row.count, row.key is None, row.key)


class LeaderboardComparator:
    """Joins two period results by key and ranks the current period."""

    def _check(self, name: str, current: ResultSet, previous: ResultSet, attr: str, member: str):
        mine = getattr(current, attr).get(member)
        theirs = getattr(previous, attr).get(member)
        if mine is None or theirs is None:
            raise IncomparablePeriods(f"{name} '{member}' is missing from one of the periods")
        if mine != theirs:
            raise IncomparablePeriods(
                f"{name} '{member}' was computed with different definitions: {mine} != {theirs}"
            )

    def _total(self, measure: str, total: Optional[Union[ResultSet, int]], rows: ResultSet) -> int:
        if isinstance(total, ResultSet):
            if total.measure_fingerprints.get(measure) != rows.measure_fingerprints.get(measure):
                raise IncomparablePeriods(f"Total for '{measure}' uses a different measure definition")
            return total.scalar(measure) or 0
        if total is not None:
            return total
        # Only additive measures can be totalled from grouped rows
        return sum(v or 0 for v in rows.frame[rows.column_for(measure)].to_list())

    def compare(
        self,
        current: ResultSet,
        previous: ResultSet,
        measure: str,
        key: str,
        total_current: Optional[Union[ResultSet, int]] = None,
        total_previous: Optional[Union[ResultSet, int]] = None,
        attributes: Optional[Dict[str, str]] = None,
    ) -> PeriodComparison:
        """
        Rank the current period against the previous one.

        Args:
            current: Current period grouped by key
            previous: Previous period grouped by the same key
            measure: Qualified measure name compared
            key: Qualified grouping dimension joining the periods
            total_current: Ungrouped current total (result set or number)
            total_previous: Ungrouped previous total (result set or number)
            attributes: Output field -> qualified member copied from current rows
                (e.g. {'username': 'Activities.username'})

        Raises:
            IncomparablePeriods: measure or key definitions differ between periods
        """
        self._check('Measure', current, previous, 'measure_fingerprints', measure)
        self._check('Key', current, previous, 'key_fingerprints', key)
        attributes = attributes or {}

        tc = self._total(measure, total_current, current)
        tp = self._total(measure, total_previous, previous)

        previous_by_key: Dict[Any, int] = {}
        for row in previous.rows():
            previous_by_key.setdefault(row[previous.column_for(key)], row[previous.column_for(measure)] or 0)

        rows = []
        for row in current.rows():
            count = row[current.column_for(measure)] or 0
            if count <= 0:
                continue
            key_value = row[current.column_for(key)]
            prev = previous_by_key.get(key_value, 0)
            rows.append(LeaderboardRow(
                key=key_value,
                count=count,
                previous_count=prev,
                count_diff=count - prev,
                share=percentage_of_rounded(count, tc),
                rank=0,
                attributes={name: row.get(current.column_for(member)) for name, member in attributes.items()},
            ))

        rows.sort(key=_sort_key)
        for rank, row in enumerate(rows, 1):
            row.rank = rank

        delta = percentage_change(tp, tc)
        logger.debug(f"Compared {measure} by {key}: {len(rows)} rows, "
                     f"total {tp} -> {tc} ({delta:.1f}%)")
        return PeriodComparison(measure, key, tc, tp, delta, rows)
