import unittest
from decimal import Decimal

from finally_api.budget_planner import (
    CatalogCategory,
    StoredBudget,
    complete_budget_listing,
    sum_by_category,
    suggest_budgets,
)


class BudgetPlannerTests(unittest.TestCase):
    def test_listing_zero_fills_catalog(self) -> None:
        catalog = [
            CatalogCategory("RENT", "Rent"),
            CatalogCategory("GROCERIES", "Groceries"),
            CatalogCategory("TRAVEL", "Travel"),
        ]
        budgets = {"RENT": StoredBudget(Decimal("1000"), False)}
        actuals = {"RENT": Decimal("900"), "GROCERIES": Decimal("120")}

        lines = complete_budget_listing(catalog, budgets, actuals)

        self.assertEqual([line.category for line in lines], ["RENT", "GROCERIES", "TRAVEL"])
        rent, groceries, travel = lines
        self.assertEqual(rent.remaining, Decimal("100"))
        self.assertTrue(rent.has_budget)
        self.assertFalse(rent.calculated)
        self.assertEqual(groceries.budget_amount, Decimal("0"))
        self.assertEqual(groceries.remaining, Decimal("-120"))
        self.assertFalse(groceries.has_budget)
        self.assertEqual(travel.actual_amount, Decimal("0"))

    def test_sum_by_category(self) -> None:
        totals = sum_by_category(
            [("RENT", Decimal("10")), ("RENT", Decimal("5")), ("DINING", 2)]
        )

        self.assertEqual(totals, {"RENT": Decimal("15"), "DINING": Decimal("2")})

    def test_suggestions_average_months_with_spend(self) -> None:
        monthly = {
            "GROCERIES": {
                (2024, 1): Decimal("100"),
                (2024, 2): Decimal("0"),
                (2024, 3): Decimal("201"),
            },
            "DINING": {(2024, 3): Decimal("10.005")},
            "RENT": {(2024, 3): Decimal("900")},
            "TRAVEL": {(2024, 1): Decimal("0")},
        }

        suggestions = suggest_budgets(monthly, {"RENT"})

        self.assertEqual(suggestions["GROCERIES"], Decimal("150.50"))
        self.assertEqual(suggestions["DINING"], Decimal("10.01"))
        self.assertNotIn("RENT", suggestions)
        self.assertNotIn("TRAVEL", suggestions)


if __name__ == "__main__":
    unittest.main()
