import unittest
from decimal import Decimal

from finally_api.dashboard import (
    calculate_asset_metrics,
    calculate_budget_metrics,
    calculate_cash_flow_metrics,
    calculate_net_worth_change,
    latest_and_previous,
    rebalancing_suggestions,
)


class DashboardTests(unittest.TestCase):
    def test_cash_flow_metrics(self) -> None:
        metrics = calculate_cash_flow_metrics(
            [{"amount": 3000}, {"amount": 1000.5}],
            [{"amount": 2000.5}],
        )

        self.assertEqual(metrics.total_income, Decimal("4000.5"))
        self.assertEqual(metrics.net_savings, Decimal("2000"))
        self.assertEqual(metrics.savings_rate.quantize(Decimal("0.01")), Decimal("49.99"))

    def test_savings_rate_without_income_is_zero(self) -> None:
        metrics = calculate_cash_flow_metrics([], [{"amount": 10}])

        self.assertEqual(metrics.savings_rate, Decimal("0"))
        self.assertEqual(metrics.net_savings, Decimal("-10"))

    def test_asset_completion_rate(self) -> None:
        assets = [{"id": 1}, {"id": 2}, {"id": 3}, {"id": 4}]

        metrics = calculate_asset_metrics(assets, {1: 100, 3: 50})

        self.assertEqual(metrics.total_value, Decimal("150"))
        self.assertEqual(metrics.count_with_values, 2)
        self.assertEqual(metrics.completion_rate, Decimal("50"))

    def test_net_worth_change(self) -> None:
        change = calculate_net_worth_change(110, 100)

        self.assertEqual(change.monthly_change, Decimal("10"))
        self.assertEqual(change.monthly_change_percent, Decimal("10.0"))
        self.assertTrue(change.is_positive_change)

        flat = calculate_net_worth_change(10, 0)
        self.assertEqual(flat.monthly_change_percent, Decimal("0.0"))

    def test_latest_and_previous(self) -> None:
        self.assertEqual(
            latest_and_previous([{"value": 1}, {"value": 2}, {"value": 3}]),
            (Decimal("3"), Decimal("2")),
        )
        self.assertEqual(latest_and_previous([]), (Decimal("0"), Decimal("0")))

    def test_budget_metrics_flags_overspending(self) -> None:
        metrics = calculate_budget_metrics(
            [
                {"category": "RENT", "budget_amount": 1000, "actual_amount": 1100, "has_budget": True},
                {"category": "DINING", "budget_amount": 200, "actual_amount": 100, "has_budget": True},
                {"category": "TRAVEL", "budget_amount": 0, "actual_amount": 50, "has_budget": False},
            ]
        )

        self.assertEqual(metrics.total_budget, Decimal("1200"))
        self.assertEqual(metrics.total_actual, Decimal("1250"))
        self.assertEqual(metrics.remaining, Decimal("-50"))
        self.assertEqual(metrics.over_budget, ["RENT"])

    def test_rebalancing_follows_delta_sign(self) -> None:
        categories = [
            {"category": "SINGLE_STOCKS", "category_name": "Single Stocks", "target_percentage": 50, "delta": 15},
            {"category": "CASH", "category_name": "Cash", "target_percentage": 50, "delta": -40},
            {"category": "CRYPTO", "category_name": "Crypto", "target_percentage": 0, "delta": 30},
            {"category": "ETF_BONDS", "category_name": "ETF Bonds", "target_percentage": 10, "delta": 0},
        ]

        suggestions = rebalancing_suggestions(categories)

        self.assertEqual([item.category for item in suggestions], ["CASH", "SINGLE_STOCKS"])
        self.assertEqual(suggestions[0].action, "add")
        self.assertEqual(suggestions[0].amount, Decimal("40"))
        self.assertEqual(suggestions[1].action, "remove")


if __name__ == "__main__":
    unittest.main()
