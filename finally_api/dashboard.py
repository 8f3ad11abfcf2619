from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, List, Mapping, Optional

ZERO = Decimal("0")
HUNDRED = Decimal("100")
REBALANCE_TOLERANCE = Decimal("0.01")


@dataclass(frozen=True)
class CashFlowMetrics:
    total_income: Decimal
    total_expenses: Decimal
    net_savings: Decimal
    savings_rate: Decimal


@dataclass(frozen=True)
class AssetMetrics:
    total_value: Decimal
    count_with_values: int
    total_assets: int
    completion_rate: Decimal


@dataclass(frozen=True)
class NetWorthChange:
    monthly_change: Decimal
    monthly_change_percent: Decimal
    is_positive_change: bool


@dataclass(frozen=True)
class BudgetMetrics:
    total_budget: Decimal
    total_actual: Decimal
    remaining: Decimal
    utilization_rate: Decimal
    over_budget: List[str]


@dataclass(frozen=True)
class RebalanceSuggestion:
    category: str
    category_name: str
    action: str
    amount: Decimal


def calculate_cash_flow_metrics(
    incomings: Iterable[Mapping[str, object]] = (),
    expenses: Iterable[Mapping[str, object]] = (),
) -> CashFlowMetrics:
    total_income = _sum(item.get("amount") for item in incomings)
    total_expenses = _sum(item.get("amount") for item in expenses)
    net_savings = total_income - total_expenses
    savings_rate = net_savings / total_income * HUNDRED if total_income > ZERO else ZERO
    return CashFlowMetrics(
        total_income=total_income,
        total_expenses=total_expenses,
        net_savings=net_savings,
        savings_rate=savings_rate,
    )


def calculate_asset_metrics(
    assets: Iterable[Mapping[str, object]],
    values: Mapping[int, object],
) -> AssetMetrics:
    """Summarise how many assets have a snapshot for the month.

    ``values`` maps asset id to the month's total for the assets that have one.
    """
    assets = list(assets)
    entered = [values[asset["id"]] for asset in assets if values.get(asset["id"]) is not None]
    total_assets = len(assets)
    completion_rate = (
        Decimal(len(entered)) / Decimal(total_assets) * HUNDRED if total_assets else ZERO
    )
    return AssetMetrics(
        total_value=_sum(entered),
        count_with_values=len(entered),
        total_assets=total_assets,
        completion_rate=completion_rate,
    )


def calculate_net_worth_change(current: object, previous: object) -> NetWorthChange:
    current_value = _to_decimal(current)
    previous_value = _to_decimal(previous)
    change = current_value - previous_value
    percent = change / previous_value * HUNDRED if previous_value > ZERO else ZERO
    return NetWorthChange(
        monthly_change=change,
        monthly_change_percent=percent.quantize(Decimal("0.1")),
        is_positive_change=change >= ZERO,
    )


def latest_and_previous(history: Iterable[Mapping[str, object]]) -> tuple[Decimal, Decimal]:
    """Return the last two values of a net-worth history, zero where missing."""
    values = [_to_decimal(point.get("value")) for point in history]
    latest = values[-1] if values else ZERO
    previous = values[-2] if len(values) > 1 else ZERO
    return latest, previous


def calculate_budget_metrics(budgets: Iterable[Mapping[str, object]]) -> BudgetMetrics:
    budgets = list(budgets)
    total_budget = _sum(line.get("budget_amount") for line in budgets)
    total_actual = _sum(line.get("actual_amount") for line in budgets)
    over_budget = [
        str(line.get("category"))
        for line in budgets
        if line.get("has_budget", True)
        and _to_decimal(line.get("actual_amount")) > _to_decimal(line.get("budget_amount"))
    ]
    return BudgetMetrics(
        total_budget=total_budget,
        total_actual=total_actual,
        remaining=total_budget - total_actual,
        utilization_rate=total_actual / total_budget * HUNDRED if total_budget > ZERO else ZERO,
        over_budget=over_budget,
    )


def rebalancing_suggestions(
    categories: Iterable[Mapping[str, object]],
    tolerance: Decimal = REBALANCE_TOLERANCE,
) -> List[RebalanceSuggestion]:
    """Turn allocation deltas into add/remove actions.

    A positive delta is over-allocated (remove funds), a negative one is
    under-allocated (add funds). Categories without a target are skipped.
    """
    suggestions: List[RebalanceSuggestion] = []
    for category in categories:
        if _to_decimal(category.get("target_percentage")) <= ZERO:
            continue
        delta = _to_decimal(category.get("delta"))
        if abs(delta) <= tolerance:
            continue
        suggestions.append(
            RebalanceSuggestion(
                category=str(category.get("category")),
                category_name=str(category.get("category_name", category.get("category"))),
                action="remove" if delta > ZERO else "add",
                amount=abs(delta),
            )
        )
    suggestions.sort(key=lambda item: item.amount, reverse=True)
    return suggestions


def _sum(values: Iterable[object]) -> Decimal:
    return sum((_to_decimal(value) for value in values), ZERO)


def _to_decimal(value: Optional[object]) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))
