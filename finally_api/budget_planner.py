from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List, Mapping, Set, Tuple

ZERO = Decimal("0")
CENT = Decimal("0.01")
AUTO_ADJUST_LOOKBACK_MONTHS = 3


@dataclass(frozen=True)
class CatalogCategory:
    code: str
    name: str


@dataclass(frozen=True)
class StoredBudget:
    amount: Decimal
    calculated: bool


@dataclass(frozen=True)
class BudgetLine:
    category: str
    category_name: str
    budget_amount: Decimal
    actual_amount: Decimal
    remaining: Decimal
    calculated: bool
    has_budget: bool


def complete_budget_listing(
    catalog: Iterable[CatalogCategory],
    budgets: Mapping[str, StoredBudget],
    actuals: Mapping[str, Decimal],
) -> List[BudgetLine]:
    """Report every catalog category, zero-filled where nothing is stored."""
    lines: List[BudgetLine] = []
    for category in catalog:
        stored = budgets.get(category.code)
        budget_amount = stored.amount if stored else ZERO
        actual_amount = actuals.get(category.code, ZERO)
        lines.append(
            BudgetLine(
                category=category.code,
                category_name=category.name,
                budget_amount=budget_amount,
                actual_amount=actual_amount,
                remaining=budget_amount - actual_amount,
                calculated=stored.calculated if stored else False,
                has_budget=stored is not None,
            )
        )
    return lines


def sum_by_category(rows: Iterable[Tuple[str, Decimal]]) -> dict[str, Decimal]:
    totals: dict[str, Decimal] = {}
    for category, amount in rows:
        totals[category] = totals.get(category, ZERO) + _coerce_amount(amount)
    return totals


def suggest_budgets(
    monthly_spend: Mapping[str, Mapping[Tuple[int, int], Decimal]],
    user_set_categories: Set[str],
) -> dict[str, Decimal]:
    """Derive budgets from the mean of months that had spending.

    Categories with a user-entered budget or without any history get no
    suggestion.
    """
    suggestions: dict[str, Decimal] = {}
    for category, by_month in monthly_spend.items():
        if category in user_set_categories:
            continue
        spent = [amount for amount in by_month.values() if amount > ZERO]
        if not spent:
            continue
        average = sum(spent, ZERO) / len(spent)
        suggestions[category] = average.quantize(CENT, rounding=ROUND_HALF_UP)
    return suggestions


def _coerce_amount(amount: Decimal) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
