from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, List, Mapping, Optional

from finally_api.percentages import NO_SHARE, ZERO, AllocationShare, percent_of


@dataclass(frozen=True)
class AssetSnapshot:
    asset_id: int
    asset_name: str
    category: str
    category_name: str
    total: Decimal
    ticker: Optional[str] = None
    market_cap: Optional[Decimal] = None
    has_market_cap_targets: bool = False


@dataclass
class AssetAllocation:
    id: int
    name: str
    ticker: Optional[str]
    category: str
    category_name: str
    current_value: Decimal
    previous_value: Decimal
    market_cap: Optional[Decimal]


@dataclass
class CategoryAllocation:
    category: str
    category_name: str
    has_market_cap_targets: bool
    current_value: Decimal
    previous_value: Decimal
    current_percentage: Decimal
    previous_percentage: Decimal
    target_percentage: Decimal
    target_value: Decimal
    delta: Decimal
    delta_percentage: Decimal
    assets: List[AssetAllocation] = field(default_factory=list)


@dataclass(frozen=True)
class AllocationSummary:
    categories: List[CategoryAllocation]
    total_value: Decimal
    previous_total_value: Decimal
    total_change: Decimal


def previous_period(year: int, month: int) -> tuple[int, int]:
    if month == 1:
        return year - 1, 12
    return year, month - 1


def compute_allocation(
    current: Iterable[AssetSnapshot],
    previous: Iterable[AssetSnapshot],
    targets: Mapping[str, AllocationShare],
) -> AllocationSummary:
    """Group snapshots by category and compare them with allocation targets.

    Only categories with at least one current-period snapshot are reported.
    ``delta`` is ``current - target``: positive means over-allocated.
    """
    current = list(current)
    previous = list(previous)
    current_total = sum((snapshot.total for snapshot in current), ZERO)
    previous_total = sum((snapshot.total for snapshot in previous), ZERO)

    grouped: dict[str, dict] = {}
    for snapshot in current:
        entry = grouped.setdefault(
            snapshot.category,
            {
                "category_name": snapshot.category_name,
                "has_market_cap_targets": snapshot.has_market_cap_targets,
                "current_value": ZERO,
                "previous_value": ZERO,
                "assets": {},
            },
        )
        entry["current_value"] += snapshot.total
        asset = entry["assets"].get(snapshot.asset_id)
        if asset is None:
            entry["assets"][snapshot.asset_id] = AssetAllocation(
                id=snapshot.asset_id,
                name=snapshot.asset_name,
                ticker=snapshot.ticker,
                category=snapshot.category,
                category_name=snapshot.category_name,
                current_value=snapshot.total,
                previous_value=ZERO,
                market_cap=snapshot.market_cap,
            )
        else:
            asset.current_value += snapshot.total

    for snapshot in previous:
        entry = grouped.get(snapshot.category)
        if entry is None:
            continue
        entry["previous_value"] += snapshot.total
        asset = entry["assets"].get(snapshot.asset_id)
        if asset is not None:
            asset.previous_value += snapshot.total

    categories: List[CategoryAllocation] = []
    for code, entry in grouped.items():
        share = targets.get(code, NO_SHARE)
        current_pct = percent_of(entry["current_value"], current_total)
        target_value = share.of(current_total)
        categories.append(
            CategoryAllocation(
                category=code,
                category_name=entry["category_name"],
                has_market_cap_targets=entry["has_market_cap_targets"],
                current_value=entry["current_value"],
                previous_value=entry["previous_value"],
                current_percentage=current_pct,
                previous_percentage=percent_of(entry["previous_value"], previous_total),
                target_percentage=share.as_percent(),
                target_value=target_value,
                delta=entry["current_value"] - target_value,
                delta_percentage=current_pct - share.as_percent(),
                assets=list(entry["assets"].values()),
            )
        )

    return AllocationSummary(
        categories=categories,
        total_value=current_total,
        previous_total_value=previous_total,
        total_change=current_total - previous_total,
    )
