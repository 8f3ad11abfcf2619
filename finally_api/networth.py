from __future__ import annotations

import calendar
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, List, Optional, Tuple

ZERO = Decimal("0")
HISTORY_MONTHS = 6
PROJECTION_LOOKBACK_MONTHS = 4
PROJECTION_HORIZON_MONTHS = 6


@dataclass(frozen=True)
class MonthlyTotal:
    year: int
    month: int
    total: Decimal


@dataclass(frozen=True)
class HistoryPoint:
    month: str
    value: Decimal


@dataclass(frozen=True)
class ProjectionPoint:
    month: str
    projected: Decimal
    actual: Optional[Decimal] = None


def shift_period(year: int, month: int, months: int) -> Tuple[int, int]:
    total_month = year * 12 + (month - 1) + months
    return total_month // 12, total_month % 12 + 1


def trailing_periods(year: int, month: int, count: int) -> List[Tuple[int, int]]:
    """Return ``count`` periods ending at (year, month), oldest first."""
    return [shift_period(year, month, offset) for offset in range(-(count - 1), 1)]


def month_label(month: int) -> str:
    return calendar.month_abbr[month]


def sum_by_period(rows: Iterable[Tuple[int, int, Decimal]]) -> List[MonthlyTotal]:
    totals: dict[Tuple[int, int], Decimal] = {}
    for year, month, total in rows:
        key = (year, month)
        totals[key] = totals.get(key, ZERO) + _coerce_amount(total)
    return [
        MonthlyTotal(year=year, month=month, total=totals[(year, month)])
        for year, month in sorted(totals)
    ]


def build_history(totals: Iterable[MonthlyTotal]) -> List[HistoryPoint]:
    """Label each month that has snapshots; months without any are left out."""
    ordered = sorted(totals, key=lambda item: (item.year, item.month))
    return [HistoryPoint(month=month_label(item.month), value=item.total) for item in ordered]


def project_net_worth(
    totals: Iterable[MonthlyTotal],
    year: int,
    month: int,
    horizon: int = PROJECTION_HORIZON_MONTHS,
) -> List[ProjectionPoint]:
    """Extrapolate net worth linearly from the mean month-over-month change.

    Point 0 is the anchor month and also carries the latest actual total so
    the historical and projected series meet.
    """
    ordered = sorted(totals, key=lambda item: (item.year, item.month))
    if len(ordered) < 2:
        return []

    values = [item.total for item in ordered]
    growths = [values[index] - values[index - 1] for index in range(1, len(values))]
    avg_growth = sum(growths, ZERO) / len(growths)
    current_value = values[-1]

    projection: List[ProjectionPoint] = []
    for offset in range(horizon + 1):
        _, target_month = shift_period(year, month, offset)
        projection.append(
            ProjectionPoint(
                month=month_label(target_month),
                projected=current_value + avg_growth * offset,
                actual=current_value if offset == 0 else None,
            )
        )
    return projection


def _coerce_amount(amount: Decimal) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
